"""Shared pytest fixtures for execution and CLI checks."""

from __future__ import annotations

import asyncio
import os
import subprocess
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from piperun.lib.exec.launcher import LaunchRequest, SubprocessLauncher

if TYPE_CHECKING:
    from collections.abc import Callable

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
HELPER_SCRIPT = PACKAGE_ROOT / "tests" / "helper_process.py"


class HelperLauncher:
    """Launcher that runs every request through tests/helper_process.py.

    The requested executable becomes the helper's COMMAND argument, so
    ``echo``, ``env`` or ``/bin/bash`` behave the same on every host.
    """

    def __init__(self) -> None:
        self._inner = SubprocessLauncher()
        self.requests: list[LaunchRequest] = []

    async def launch(self, request: LaunchRequest) -> asyncio.subprocess.Process:
        self.requests.append(request)
        argv = (sys.executable, str(HELPER_SCRIPT), *request.argv)
        return await self._inner.launch(replace(request, argv=argv))


@dataclass(frozen=True, slots=True)
class CliResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


@pytest.fixture
def package_root() -> Path:
    return PACKAGE_ROOT


@pytest.fixture
def helper_launcher() -> HelperLauncher:
    return HelperLauncher()


@pytest.fixture
def helper_argv() -> tuple[str, ...]:
    return (sys.executable, str(HELPER_SCRIPT))


@pytest.fixture
def cli_env(package_root: Path) -> dict[str, str]:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH", "")
    root = str(package_root / "src")
    env["PYTHONPATH"] = root if not existing else f"{root}:{existing}"
    for name in ("PIPERUN_KILL_GRACE_SECONDS", "PIPERUN_TIMEOUT_SECONDS", "PIPERUN_SHELL"):
        env.pop(name, None)
    return env


@pytest.fixture
def run_piperun(cli_env: dict[str, str], tmp_path: Path) -> Callable[..., CliResult]:
    def _run(args: list[str], timeout: float = 15.0, cwd: Path | None = None) -> CliResult:
        completed = subprocess.run(
            [sys.executable, "-m", "piperun", *args],
            cwd=cwd or tmp_path,
            env=cli_env,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
        return CliResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    return _run
