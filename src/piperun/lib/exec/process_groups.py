"""Signal delivery to a child and everything it spawned."""

from __future__ import annotations

import asyncio
import os
import signal


def child_group(process: asyncio.subprocess.Process) -> int | None:
    """Return the child's own process group, or None when it shares ours.

    ``SubprocessLauncher`` starts every child in a new session. A custom
    launcher might not, and signalling a shared group would hit this process.
    """

    try:
        pgid = os.getpgid(process.pid)
    except ProcessLookupError:
        return None
    if pgid == os.getpgrp():
        return None
    return pgid


def signal_process_group(
    process: asyncio.subprocess.Process,
    signum: signal.Signals,
) -> None:
    """Send ``signum`` to the child's group, or to the child alone.

    The child may exit between the returncode check and delivery;
    ProcessLookupError is an expected race.
    """

    if process.returncode is not None:
        return

    pgid = child_group(process)
    try:
        if pgid is None:
            process.send_signal(signum)
        else:
            os.killpg(pgid, signum)
    except ProcessLookupError:
        return
