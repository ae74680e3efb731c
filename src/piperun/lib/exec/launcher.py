"""Injectable process-launch capability."""

from __future__ import annotations

import asyncio
import errno
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from piperun.lib.exec.errors import PipeSetupFailure, StartFailure

# Descriptor exhaustion surfaces while the pipes are being created.
_PIPE_SETUP_ERRNOS = frozenset({errno.EMFILE, errno.ENFILE})


@dataclass(frozen=True, slots=True)
class LaunchRequest:
    """Everything a launcher needs to start one child process."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: dict[str, str] | None = None
    feed_stdin: bool = False


class Launcher(Protocol):
    """Start a child process with piped stdout/stderr.

    Implementations must return a process whose ``stdout`` and ``stderr``
    readers already exist, and a ``stdin`` writer when ``feed_stdin`` is set.
    """

    async def launch(self, request: LaunchRequest) -> asyncio.subprocess.Process: ...


class SubprocessLauncher:
    """Default launcher backed by ``asyncio.create_subprocess_exec``."""

    async def launch(self, request: LaunchRequest) -> asyncio.subprocess.Process:
        if not request.argv:
            raise ValueError("Cannot launch process: argv is empty.")

        executable = request.argv[0]
        try:
            process = await asyncio.create_subprocess_exec(
                *request.argv,
                cwd=str(request.cwd) if request.cwd is not None else None,
                env=request.env,
                start_new_session=True,
                stdin=(
                    asyncio.subprocess.PIPE if request.feed_stdin else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            if exc.errno in _PIPE_SETUP_ERRNOS:
                raise PipeSetupFailure(
                    f"getting command pipes failed: {exc}",
                    executable=executable,
                    command_args=request.argv[1:],
                ) from exc
            raise StartFailure(
                f"starting command failed: {exc}",
                executable=executable,
                command_args=request.argv[1:],
            ) from exc

        ensure_pipes(process, request)
        return process


def ensure_pipes(process: asyncio.subprocess.Process, request: LaunchRequest) -> None:
    """Reject a launched process that does not expose the required pipes."""

    missing = [
        name
        for name, pipe in (("stdout", process.stdout), ("stderr", process.stderr))
        if pipe is None
    ]
    if request.feed_stdin and process.stdin is None:
        missing.append("stdin")
    if not missing:
        return

    if process.returncode is None:
        process.kill()
    raise PipeSetupFailure(
        f"getting {'/'.join(missing)} pipe failed",
        executable=request.argv[0],
        command_args=request.argv[1:],
    )
