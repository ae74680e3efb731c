"""Public entry point for running executables and shell scripts."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Collection, Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from piperun.lib.exec.classifier import (
    CategoryRules,
    CategorySignal,
    OutputClassifier,
    normalize_mapping,
)
from piperun.lib.exec.drain import Sink
from piperun.lib.exec.environment import child_environment
from piperun.lib.exec.errors import PipeSetupFailure, StartFailure
from piperun.lib.exec.execution import Execution, ExecutionResult
from piperun.lib.exec.launcher import Launcher, LaunchRequest, SubprocessLauncher
from piperun.lib.exec.timeout import DEFAULT_KILL_GRACE_SECONDS

if TYPE_CHECKING:
    from piperun.lib.config.settings import PiperunConfig

logger = structlog.get_logger(__name__)


class Command:
    """Reusable command configuration plus blocking and background run modes.

    Each launch snapshots the configuration, so changing it afterwards only
    affects later runs. Every run classifies its output into its own
    ``CategorySignal``; a ``category_signal`` passed here additionally
    receives every match, for callers that want one shared "last error".
    """

    def __init__(
        self,
        launcher: Launcher | None = None,
        *,
        category_signal: CategorySignal | None = None,
        timeout_seconds: float | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        self._launcher: Launcher = launcher or SubprocessLauncher()
        self._shared_signal = category_signal
        self._timeout_seconds = timeout_seconds
        self._kill_grace_seconds = kill_grace_seconds
        self._dir: Path | None = None
        self._stdout: Sink | None = None
        self._stderr: Sink | None = None
        self._env: tuple[str, ...] = ()
        self._rules: CategoryRules = ()

    @classmethod
    def from_config(cls, config: PiperunConfig, launcher: Launcher | None = None) -> Command:
        command = cls(
            launcher,
            timeout_seconds=config.timeout_seconds,
            kill_grace_seconds=config.kill_grace_seconds,
        )
        command.set_error_category_mapping(config.category_mapping())
        return command

    def set_working_directory(self, path: str | Path | None) -> None:
        """Run in ``path``; empty means the caller's cwd. Checked only at launch."""

        self._dir = Path(path) if path else None

    def set_output_sinks(self, stdout: Sink | None = None, stderr: Sink | None = None) -> None:
        """Replace the sinks; ``None`` means the process streams at launch time."""

        self._stdout = stdout
        self._stderr = stderr

    def set_environment_overrides(self, entries: Sequence[str]) -> None:
        self._env = tuple(entries)

    def set_error_category_mapping(self, mapping: Mapping[str, Collection[str]]) -> None:
        """Replace classification patterns; an empty mapping disables classification."""

        self._rules = normalize_mapping(mapping)

    async def run_shell(
        self,
        shell: str,
        script: str,
        *,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        """Run ``shell`` with ``script`` on its stdin and wait for completion."""

        logger.info("Running shell script.", shell=shell, script=script)
        context = f"running shell script failed with {shell}"
        execution = self._prepare(
            shell,
            (),
            stdin_data=script.encode("utf-8"),
            timeout_seconds=timeout_seconds,
            failure_context=context,
        )
        await _start(execution, context)
        return await execution.join()

    async def run_executable(
        self,
        executable: str,
        *args: str,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        """Run ``executable`` with ``args`` and wait for completion."""

        logger.info("Running command.", executable=executable, args=list(args))
        context = f"running command '{executable}' failed"
        execution = self._prepare(
            executable,
            args,
            timeout_seconds=timeout_seconds,
            failure_context=context,
        )
        await _start(execution, context)
        return await execution.join()

    async def run_executable_in_background(
        self,
        executable: str,
        *args: str,
        timeout_seconds: float | None = None,
    ) -> Execution:
        """Start ``executable`` and return its handle once drains are attached."""

        logger.info("Running command.", executable=executable, args=list(args))
        execution = self._prepare(
            executable,
            args,
            timeout_seconds=timeout_seconds,
            failure_context=f"running command '{executable}' failed",
        )
        await _start(execution, f"starting command '{executable}' failed")
        return execution

    def run_shell_sync(
        self,
        shell: str,
        script: str,
        *,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        return asyncio.run(self.run_shell(shell, script, timeout_seconds=timeout_seconds))

    def run_executable_sync(
        self,
        executable: str,
        *args: str,
        timeout_seconds: float | None = None,
    ) -> ExecutionResult:
        return asyncio.run(
            self.run_executable(executable, *args, timeout_seconds=timeout_seconds)
        )

    def _prepare(
        self,
        executable: str,
        args: Sequence[str],
        *,
        stdin_data: bytes | None = None,
        timeout_seconds: float | None,
        failure_context: str,
    ) -> Execution:
        run_signal = CategorySignal()
        signals = [run_signal]
        if self._shared_signal is not None:
            signals.append(self._shared_signal)

        return Execution(
            launcher=self._launcher,
            request=LaunchRequest(
                argv=(executable, *args),
                cwd=self._dir,
                env=child_environment(self._env),
                feed_stdin=stdin_data is not None,
            ),
            stdout=self._stdout if self._stdout is not None else sys.stdout,
            stderr=self._stderr if self._stderr is not None else sys.stderr,
            classifier=OutputClassifier(self._rules, signals),
            category_signal=run_signal,
            stdin_data=stdin_data,
            timeout_seconds=(
                timeout_seconds if timeout_seconds is not None else self._timeout_seconds
            ),
            kill_grace_seconds=self._kill_grace_seconds,
            failure_context=failure_context,
        )


async def _start(execution: Execution, context: str) -> None:
    # Only launch-stage failures are re-raised with the operation context;
    # anything else a custom launcher raises passes through untouched.
    try:
        await execution.start()
    except (StartFailure, PipeSetupFailure) as exc:
        raise type(exc)(
            f"{context}: {exc}",
            executable=exc.executable,
            command_args=exc.command_args,
        ) from exc
