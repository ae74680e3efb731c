"""Joinable handle for one launched process and its drain tasks."""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass
from enum import StrEnum

import structlog

from piperun.lib.exec.classifier import Category, CategorySignal, OutputClassifier
from piperun.lib.exec.drain import CopyJob, CopyOutcome, DrainPump, Sink
from piperun.lib.exec.errors import (
    NonZeroExit,
    RunCancelled,
    RunTimeoutError,
    StreamCopyError,
    StreamCopyFailure,
)
from piperun.lib.exec.launcher import Launcher, LaunchRequest
from piperun.lib.exec.timeout import (
    DEFAULT_KILL_GRACE_SECONDS,
    DeadlineExceeded,
    terminate_process,
    wait_for_process_exit,
)

logger = structlog.get_logger(__name__)


class ExecutionState(StrEnum):
    CREATED = "created"
    STARTED = "started"
    DRAINING = "draining"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one run, available once join has returned or raised."""

    executable: str
    args: tuple[str, ...]
    exit_code: int | None
    category: Category
    stdout_bytes: int
    stderr_bytes: int
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False
    copy_failed: bool = False

    @property
    def ok(self) -> bool:
        return (
            self.exit_code == 0
            and not self.timed_out
            and not self.cancelled
            and not self.copy_failed
        )


async def _feed_stdin(writer: asyncio.StreamWriter, data: bytes) -> StreamCopyError | None:
    try:
        writer.write(data)
        await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The child exited without consuming all of its input.
        return None
    except OSError as exc:
        return StreamCopyError("stdin", exc)
    finally:
        writer.close()
    return None


class Execution:
    """Lifecycle of one child process: launch, drain, join.

    ``join`` may be awaited any number of times and from several tasks; the
    first call does the work and every caller observes the same result or the
    same error.
    """

    def __init__(
        self,
        *,
        launcher: Launcher,
        request: LaunchRequest,
        stdout: Sink,
        stderr: Sink,
        classifier: OutputClassifier,
        category_signal: CategorySignal,
        stdin_data: bytes | None = None,
        timeout_seconds: float | None = None,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        failure_context: str | None = None,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0 when provided.")

        self._launcher = launcher
        self._request = request
        self._stdout = stdout
        self._stderr = stderr
        self._classifier = classifier
        self._category_signal = category_signal
        self._stdin_data = stdin_data
        self._timeout_seconds = timeout_seconds
        self._kill_grace_seconds = kill_grace_seconds
        self._failure_context = failure_context

        self._state = ExecutionState.CREATED
        self._process: asyncio.subprocess.Process | None = None
        self._pump: DrainPump | None = None
        self._stdin_task: asyncio.Task[StreamCopyError | None] | None = None
        self._join_task: asyncio.Task[ExecutionResult] | None = None
        self._result: ExecutionResult | None = None
        self._cancel_requested = False
        self._started_at = 0.0

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def executable(self) -> str:
        return self._request.argv[0]

    @property
    def args(self) -> tuple[str, ...]:
        return self._request.argv[1:]

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def category(self) -> Category:
        return self._category_signal.get()

    @property
    def result(self) -> ExecutionResult | None:
        return self._result

    async def start(self) -> None:
        """Launch the process and attach both drains before returning."""

        if self._state is not ExecutionState.CREATED:
            raise RuntimeError(f"Execution already {self._state}.")

        process = await self._launcher.launch(self._request)
        self._process = process
        self._started_at = time.monotonic()
        self._state = ExecutionState.STARTED

        assert process.stdout is not None and process.stderr is not None
        self._pump = DrainPump(
            CopyJob(process.stdout, self._stdout, "stdout", self._classifier.observe),
            CopyJob(process.stderr, self._stderr, "stderr", self._classifier.observe),
        )
        self._pump.start()
        if self._stdin_data is not None:
            assert process.stdin is not None
            self._stdin_task = asyncio.create_task(_feed_stdin(process.stdin, self._stdin_data))
        self._state = ExecutionState.DRAINING
        logger.debug("Process started.", executable=self.executable, pid=process.pid)

    async def join(self) -> ExecutionResult:
        """Wait for process exit and both drains, then report the aggregate."""

        if self._state is ExecutionState.CREATED:
            raise RuntimeError("Execution was never started.")

        if self._join_task is None:
            self._join_task = asyncio.create_task(self._complete())
            self._join_task.add_done_callback(_retrieve_outcome)

        try:
            return await asyncio.shield(self._join_task)
        except asyncio.CancelledError:
            if not self._join_task.done():
                # The waiter was cancelled: behave like Ctrl-C for the child.
                await self._terminate(signal.SIGINT)
            raise

    async def cancel(self) -> None:
        """Cooperatively stop the run; a pending or later join raises RunCancelled."""

        if self._state in (ExecutionState.CREATED, ExecutionState.COMPLETED):
            return
        await self._terminate(signal.SIGINT)

    async def _terminate(self, first_signal: signal.Signals) -> None:
        assert self._process is not None
        if self._process.returncode is not None:
            return
        self._cancel_requested = True
        await terminate_process(
            self._process,
            grace_seconds=self._kill_grace_seconds,
            first_signal=first_signal,
        )

    async def _complete(self) -> ExecutionResult:
        assert self._process is not None and self._pump is not None
        process = self._process

        timed_out = False
        try:
            exit_code: int | None = await wait_for_process_exit(
                process,
                timeout_seconds=self._timeout_seconds,
                kill_grace_seconds=self._kill_grace_seconds,
            )
        except DeadlineExceeded:
            timed_out = True
            exit_code = process.returncode

        outcome = await self._pump.wait()
        stdin_error = await self._stdin_task if self._stdin_task is not None else None

        self._state = ExecutionState.COMPLETED
        result = self._build_result(
            exit_code=exit_code,
            outcome=outcome,
            timed_out=timed_out,
            copy_failed=not outcome.ok or stdin_error is not None,
        )
        self._result = result
        logger.debug(
            "Process completed.",
            executable=self.executable,
            exit_code=exit_code,
            category=str(result.category),
            duration_seconds=round(result.duration_seconds, 3),
        )
        self._raise_for_outcome(result, outcome, stdin_error)
        return result

    def _build_result(
        self,
        *,
        exit_code: int | None,
        outcome: CopyOutcome,
        timed_out: bool,
        copy_failed: bool,
    ) -> ExecutionResult:
        return ExecutionResult(
            executable=self.executable,
            args=self.args,
            exit_code=exit_code,
            category=self._category_signal.get(),
            stdout_bytes=outcome.stdout_bytes,
            stderr_bytes=outcome.stderr_bytes,
            duration_seconds=time.monotonic() - self._started_at,
            timed_out=timed_out,
            cancelled=self._cancel_requested,
            copy_failed=copy_failed,
        )

    def _raise_for_outcome(
        self,
        result: ExecutionResult,
        outcome: CopyOutcome,
        stdin_error: StreamCopyError | None,
    ) -> None:
        context = self._failure_context
        if result.cancelled:
            message = "run was cancelled"
            raise RunCancelled(
                f"{context}: {message}" if context else message,
                executable=self.executable,
                command_args=self.args,
                result=result,
            )

        if result.timed_out:
            assert self._timeout_seconds is not None
            raise RunTimeoutError(
                self._timeout_seconds,
                executable=self.executable,
                command_args=self.args,
                context=context,
                result=result,
            )

        if not outcome.ok or stdin_error is not None:
            raise StreamCopyFailure(
                executable=self.executable,
                command_args=self.args,
                stdout_error=outcome.stdout_error,
                stderr_error=outcome.stderr_error,
                stdin_error=stdin_error,
                exit_code=result.exit_code,
                context=context,
                result=result,
            ) from (outcome.stdout_error or outcome.stderr_error or stdin_error)

        if result.exit_code != 0:
            assert result.exit_code is not None
            raise NonZeroExit(
                executable=self.executable,
                command_args=self.args,
                exit_code=result.exit_code,
                context=context,
                result=result,
            )


def _retrieve_outcome(task: asyncio.Task[ExecutionResult]) -> None:
    # Marks the exception as retrieved when no caller is left awaiting the join.
    if not task.cancelled():
        task.exception()
