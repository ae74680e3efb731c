"""Failure taxonomy for command execution."""

from __future__ import annotations

import signal
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from piperun.lib.exec.execution import ExecutionResult


def _with_context(context: str | None, detail: str) -> str:
    if not context:
        return detail
    return f"{context}: {detail}"


class CommandError(Exception):
    """Base error for one launched (or attempted) command.

    ``result`` is attached once the run reached the join stage, so the
    classified category is still available to callers handling the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        executable: str,
        command_args: Sequence[str] = (),
        result: ExecutionResult | None = None,
    ) -> None:
        super().__init__(message)
        self.executable = executable
        self.command_args = tuple(command_args)
        self.result = result


class StartFailure(CommandError):
    """The process could not be created (missing executable, permission denied)."""


class PipeSetupFailure(CommandError):
    """Output pipes could not be obtained, so the process was never started."""


class StreamCopyError(Exception):
    """One drain task failed to move bytes from its pipe to its sink."""

    def __init__(self, stream: str, cause: BaseException, *, copied: int = 0) -> None:
        self.stream = stream
        self.cause = cause
        self.copied = copied
        super().__init__(f"copying {stream} failed: {cause}")


class StreamCopyFailure(CommandError):
    """At least one drain task failed; both stream errors are reported."""

    def __init__(
        self,
        *,
        executable: str,
        command_args: Sequence[str] = (),
        stdout_error: StreamCopyError | None,
        stderr_error: StreamCopyError | None,
        exit_code: int | None,
        stdin_error: StreamCopyError | None = None,
        context: str | None = None,
        result: ExecutionResult | None = None,
    ) -> None:
        detail = f"failed to capture stdout/stderr: '{stdout_error}'/'{stderr_error}'"
        if stdin_error is not None:
            detail = f"{detail}; {stdin_error}"
        if exit_code not in (None, 0):
            detail = f"{detail} (exit code {exit_code})"
        super().__init__(
            _with_context(context, detail),
            executable=executable,
            command_args=command_args,
            result=result,
        )
        self.stdout_error = stdout_error
        self.stderr_error = stderr_error
        self.stdin_error = stdin_error
        self.exit_code = exit_code


class NonZeroExit(CommandError):
    """The process completed with a non-success status.

    Output is not part of the message; it was already streamed to the sinks.
    """

    def __init__(
        self,
        *,
        executable: str,
        command_args: Sequence[str] = (),
        exit_code: int,
        context: str | None = None,
        result: ExecutionResult | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.signal = terminating_signal(exit_code)
        if self.signal is not None:
            status = f"terminated by {self.signal.name}"
        else:
            status = f"exit status {exit_code}"
        rendered = " ".join((executable, *command_args))
        super().__init__(
            _with_context(context, f"'{rendered}' finished with {status}"),
            executable=executable,
            command_args=command_args,
            result=result,
        )


class RunTimeoutError(CommandError, TimeoutError):
    """Raised when a process exceeds its deadline and was terminated."""

    def __init__(
        self,
        timeout_seconds: float,
        *,
        executable: str,
        command_args: Sequence[str] = (),
        context: str | None = None,
        result: ExecutionResult | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            _with_context(context, f"Run exceeded timeout after {timeout_seconds:.3f}s"),
            executable=executable,
            command_args=command_args,
            result=result,
        )


class RunCancelled(CommandError):
    """Raised by join when the run was cancelled through its handle."""


def terminating_signal(exit_code: int) -> signal.Signals | None:
    """Return the signal behind a negative asyncio return code, if any."""

    if exit_code >= 0:
        return None
    try:
        return signal.Signals(-exit_code)
    except ValueError:
        return None
