"""Cyclopts CLI entry point for piperun."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from cyclopts import App, Parameter

from piperun import __version__
from piperun.lib.config.settings import load_config
from piperun.lib.exec.command import Command
from piperun.lib.exec.errors import (
    CommandError,
    NonZeroExit,
    PipeSetupFailure,
    RunCancelled,
    RunTimeoutError,
    StartFailure,
)
from piperun.lib.exec.execution import ExecutionResult
from piperun.lib.serialization import to_jsonable, write_json

if TYPE_CHECKING:
    from collections.abc import Sequence

EXIT_FAILURE = 1
EXIT_TIMEOUT = 124
EXIT_NOT_STARTED = 127
EXIT_INTERRUPTED = 130

_GLOBAL_FLAGS = frozenset({"-v", "--verbose", "-q", "--quiet", "--json"})

app = App(
    name="piperun",
    help="Run pipeline step executables and shell scripts.",
    version=__version__,
    help_formatter="plain",
)


def _build_command(
    *,
    cwd: str | None,
    env: tuple[str, ...],
) -> tuple[Command, float | None, str]:
    config = load_config(Path.cwd())
    command = Command.from_config(config)
    command.set_working_directory(cwd)
    command.set_environment_overrides(env)
    return command, config.timeout_seconds, config.default_shell


def _exit_code_for(error: CommandError) -> int:
    if isinstance(error, (StartFailure, PipeSetupFailure)):
        return EXIT_NOT_STARTED
    if isinstance(error, RunTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(error, RunCancelled):
        return EXIT_INTERRUPTED
    if isinstance(error, NonZeroExit):
        if error.signal is not None:
            return 128 + int(error.signal)
        return error.exit_code
    return EXIT_FAILURE


def _result_payload(result: ExecutionResult) -> dict[str, object]:
    payload = to_jsonable(result)
    payload["ok"] = result.ok
    return payload


def _run_and_exit(
    run: Callable[[], Awaitable[ExecutionResult]],
    result_file: str | None,
) -> None:
    try:
        result = asyncio.run(run())
    except CommandError as exc:
        print(f"error: {exc}", file=sys.stderr)
        if result_file is not None and exc.result is not None:
            write_json(Path(result_file), _result_payload(exc.result))
        raise SystemExit(_exit_code_for(exc)) from None

    if result_file is not None:
        write_json(Path(result_file), _result_payload(result))


@app.command(name="exec")
def exec_command(
    executable: str,
    *args: str,
    cwd: Annotated[
        str | None,
        Parameter(name="--cwd", help="Working directory for the child process."),
    ] = None,
    env: Annotated[
        tuple[str, ...],
        Parameter(
            name="--env",
            help="Environment override in KEY=VALUE form (repeatable).",
            negative_iterable=(),
        ),
    ] = (),
    timeout: Annotated[
        float | None,
        Parameter(name="--timeout", help="Terminate the run after this many seconds."),
    ] = None,
    result_file: Annotated[
        str | None,
        Parameter(name="--result-file", help="Write the run result as JSON to this path."),
    ] = None,
) -> None:
    """Run one executable; pass its own flags after `--`."""

    command, default_timeout, _shell = _build_command(cwd=cwd, env=env)
    _run_and_exit(
        lambda: command.run_executable(
            executable,
            *args,
            timeout_seconds=timeout if timeout is not None else default_timeout,
        ),
        result_file,
    )


@app.command(name="shell")
def shell_command(
    script: Annotated[
        str | None,
        Parameter(name="--script", help="Script text fed to the shell's stdin."),
    ] = None,
    script_file: Annotated[
        str | None,
        Parameter(name="--script-file", help="File whose content is fed to the shell."),
    ] = None,
    shell: Annotated[
        str | None,
        Parameter(name="--shell", help="Shell executable (defaults to config)."),
    ] = None,
    cwd: Annotated[
        str | None,
        Parameter(name="--cwd", help="Working directory for the shell."),
    ] = None,
    env: Annotated[
        tuple[str, ...],
        Parameter(
            name="--env",
            help="Environment override in KEY=VALUE form (repeatable).",
            negative_iterable=(),
        ),
    ] = (),
    timeout: Annotated[
        float | None,
        Parameter(name="--timeout", help="Terminate the run after this many seconds."),
    ] = None,
    result_file: Annotated[
        str | None,
        Parameter(name="--result-file", help="Write the run result as JSON to this path."),
    ] = None,
) -> None:
    """Run a shell script through the configured shell."""

    if (script is None) == (script_file is None):
        raise ValueError("Provide exactly one of --script or --script-file.")
    script_text = (
        script if script is not None else Path(script_file or "").read_text(encoding="utf-8")
    )

    command, default_timeout, default_shell = _build_command(cwd=cwd, env=env)
    _run_and_exit(
        lambda: command.run_shell(
            shell or default_shell,
            script_text,
            timeout_seconds=timeout if timeout is not None else default_timeout,
        ),
        result_file,
    )


def _extract_global_options(argv: Sequence[str]) -> tuple[list[str], bool, int]:
    # Only leading flags are ours; anything later may belong to the child.
    json_mode = False
    verbosity = 0
    index = 0
    while index < len(argv) and argv[index] in _GLOBAL_FLAGS:
        if argv[index] == "--json":
            json_mode = True
        elif argv[index] in ("-q", "--quiet"):
            verbosity = -1
        else:
            verbosity += 1
        index += 1
    return list(argv[index:]), json_mode, verbosity


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point used by `piperun` and `python -m piperun`."""

    from piperun.lib.logging import configure_logging

    args = list(sys.argv[1:] if argv is None else argv)
    cleaned_args, json_mode, verbosity = _extract_global_options(args)
    configure_logging(json_mode=json_mode, verbosity=verbosity)

    try:
        app(cleaned_args)
    except (ValueError, FileNotFoundError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_FAILURE) from None
