"""Deadline and termination helpers for launched processes."""

from __future__ import annotations

import asyncio
import signal

from piperun.lib.config.settings import PiperunConfig
from piperun.lib.exec.process_groups import signal_process_group

DEFAULT_KILL_GRACE_SECONDS = PiperunConfig().kill_grace_seconds


class DeadlineExceeded(TimeoutError):
    """Internal marker: the process outlived its deadline and was terminated."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Run exceeded timeout after {timeout_seconds:.3f}s")


async def terminate_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    first_signal: signal.Signals = signal.SIGTERM,
) -> None:
    """Signal the process group and SIGKILL it if it does not exit in time."""

    if process.returncode is not None:
        return

    signal_process_group(process, first_signal)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        if process.returncode is None:
            signal_process_group(process, signal.SIGKILL)
            await process.wait()


async def wait_for_process_exit(
    process: asyncio.subprocess.Process,
    *,
    timeout_seconds: float | None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> int:
    """Wait for process completion, terminating it when the deadline passes."""

    if timeout_seconds is None:
        return await process.wait()

    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0 when provided.")

    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout_seconds)
    except TimeoutError as exc:
        await terminate_process(process, grace_seconds=kill_grace_seconds)
        raise DeadlineExceeded(timeout_seconds) from exc
