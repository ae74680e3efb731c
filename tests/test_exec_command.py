"""Command dispatcher tests."""

from __future__ import annotations

import io
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from structlog.testing import capture_logs

from piperun.lib.config.settings import PiperunConfig
from piperun.lib.exec.classifier import CategorySignal, ErrorCategory
from piperun.lib.exec.command import Command
from piperun.lib.exec.errors import (
    NonZeroExit,
    PipeSetupFailure,
    StartFailure,
    StreamCopyFailure,
)
from piperun.lib.exec.launcher import LaunchRequest

if TYPE_CHECKING:
    import asyncio

    from conftest import HelperLauncher


class BrokenSink(io.BytesIO):
    def write(self, data: object) -> int:
        raise OSError("disk full")


class PipelessLauncher:
    """Launcher whose processes never expose pipes."""

    async def launch(self, request: LaunchRequest) -> asyncio.subprocess.Process:
        raise PipeSetupFailure(
            "getting stdout pipe failed",
            executable=request.argv[0],
            command_args=request.argv[1:],
        )


@pytest.fixture
def sinks() -> tuple[io.BytesIO, io.BytesIO]:
    return io.BytesIO(), io.BytesIO()


@pytest.mark.asyncio
async def test_run_shell_feeds_script_verbatim(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)

    await command.run_shell("/bin/bash", "myScript")

    assert stdout.getvalue() == b"Stdout: command /bin/bash - Stdin: myScript\n"
    assert stderr.getvalue() == b"Stderr: command /bin/bash\n"
    assert helper_launcher.requests[0].argv == ("/bin/bash",)
    assert helper_launcher.requests[0].feed_stdin is True


@pytest.mark.asyncio
async def test_run_shell_keeps_multiline_script_untouched(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    script = "set -e\necho 'ünïcode'\n\n  trailing spaces  \n"

    await command.run_shell("sh", script)

    assert stdout.getvalue().decode("utf-8") == f"Stdout: command sh - Stdin: {script}\n"


@pytest.mark.asyncio
async def test_run_executable_joins_arguments(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)

    result = await command.run_executable("echo", "foo bar", "baz")

    assert stdout.getvalue() == b"foo bar baz\n"
    assert stderr.getvalue() == b"Stderr: command echo\n"
    assert result.ok
    assert result.args == ("foo bar", "baz")
    assert helper_launcher.requests[0].feed_stdin is False


@pytest.mark.asyncio
async def test_run_executable_classifies_output(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_error_category_mapping({"config": ["command echo"]})

    result = await command.run_executable("echo", "foo bar", "baz")

    assert result.category == ErrorCategory.CONFIGURATION


@pytest.mark.asyncio
async def test_default_sinks_resolve_at_launch(
    helper_launcher: HelperLauncher,
    capsys: pytest.CaptureFixture[str],
) -> None:
    command = Command(helper_launcher)
    command.set_output_sinks(io.BytesIO(), io.BytesIO())
    command.set_output_sinks()

    # Unconfigured structlog prints to stdout; keep log events out of the child stream.
    with capture_logs() as logs:
        await command.run_executable("echo", "to", "stdout")

    captured = capsys.readouterr()
    assert any(entry["event"] == "Running command." for entry in logs)
    assert captured.out == "to stdout\n"
    assert captured.err == "Stderr: command echo\n"


@pytest.mark.asyncio
async def test_text_sinks_receive_decoded_output(helper_launcher: HelperLauncher) -> None:
    stdout, stderr = io.StringIO(), io.StringIO()
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)

    await command.run_executable("echo", "grüße")

    assert stdout.getvalue() == "grüße\n"


@pytest.mark.asyncio
async def test_environment_overrides_reach_child(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PIPERUN_TEST_SHARED", "parent")
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_environment_overrides(["DEBUG=true", "PIPERUN_TEST_SHARED=child"])

    await command.run_executable("env")

    lines = stdout.getvalue().decode("utf-8").splitlines()
    assert "DEBUG=true" in lines
    assert "PIPERUN_TEST_SHARED=child" in lines
    assert "PIPERUN_TEST_SHARED=parent" not in lines


@pytest.mark.asyncio
async def test_without_overrides_child_inherits_environment(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PIPERUN_TEST_INHERITED", "yes")
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_environment_overrides(["A=1"])
    command.set_environment_overrides([])

    await command.run_executable("env")

    assert helper_launcher.requests[0].env is None
    assert b"PIPERUN_TEST_INHERITED=yes\n" in stdout.getvalue()


@pytest.mark.asyncio
async def test_working_directory_applies_at_launch(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
    tmp_path: Path,
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_working_directory(tmp_path)

    await command.run_executable("pwd")

    assert Path(stdout.getvalue().decode().strip()).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_empty_working_directory_inherits_cwd(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_working_directory("")

    await command.run_executable("pwd")

    assert helper_launcher.requests[0].cwd is None
    assert Path(stdout.getvalue().decode().strip()).resolve() == Path(os.getcwd()).resolve()


@pytest.mark.asyncio
async def test_invalid_working_directory_surfaces_at_launch(
    sinks: tuple[io.BytesIO, io.BytesIO],
    tmp_path: Path,
) -> None:
    stdout, stderr = sinks
    command = Command()
    command.set_output_sinks(stdout, stderr)
    command.set_working_directory(tmp_path / "missing")

    with pytest.raises(StartFailure) as exc_info:
        await command.run_executable(sys.executable, "-c", "pass")

    assert isinstance(exc_info.value.__cause__, StartFailure)
    assert isinstance(exc_info.value.__cause__.__cause__, OSError)


@pytest.mark.asyncio
async def test_nonexistent_executable_is_start_failure(tmp_path: Path) -> None:
    missing = str(tmp_path / "no-such-tool")
    command = Command()

    with pytest.raises(StartFailure) as exc_info:
        await command.run_executable_in_background(missing, "--flag")

    error = exc_info.value
    assert error.executable == missing
    assert error.command_args == ("--flag",)
    assert error.result is None
    assert f"starting command '{missing}' failed" in str(error)
    root_cause = error.__cause__.__cause__ if error.__cause__ is not None else None
    assert isinstance(root_cause, FileNotFoundError)


@pytest.mark.asyncio
async def test_shell_start_failure_names_the_shell(tmp_path: Path) -> None:
    missing_shell = str(tmp_path / "nosh")
    command = Command()

    with pytest.raises(StartFailure, match=f"running shell script failed with {missing_shell}"):
        await command.run_shell(missing_shell, "echo hi")


@pytest.mark.asyncio
async def test_pipe_setup_failure_is_wrapped() -> None:
    command = Command(PipelessLauncher())

    with pytest.raises(PipeSetupFailure, match="running command 'tool' failed"):
        await command.run_executable("tool")


@pytest.mark.asyncio
async def test_nonzero_exit_is_wrapped_with_identity_and_category(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_error_category_mapping({"infrastructure": ["no space left"]})

    with pytest.raises(NonZeroExit) as exc_info:
        await command.run_executable("diskfull")

    error = exc_info.value
    assert error.exit_code == 4
    assert error.signal is None
    assert error.executable == "diskfull"
    assert error.command_args == ()
    assert "running command 'diskfull' failed" in str(error)
    assert "exit status 4" in str(error)
    assert "no space left" not in str(error)
    assert stderr.getvalue() == b"write error: no space left on device\n"
    assert error.result is not None
    assert error.result.category == ErrorCategory.INFRASTRUCTURE


@pytest.mark.asyncio
async def test_copy_failure_reports_both_streams(helper_launcher: HelperLauncher) -> None:
    command = Command(helper_launcher)
    command.set_output_sinks(BrokenSink(), BrokenSink())

    with pytest.raises(StreamCopyFailure) as exc_info:
        await command.run_executable("echo", "lost")

    error = exc_info.value
    assert error.stdout_error is not None and error.stdout_error.stream == "stdout"
    assert error.stderr_error is not None and error.stderr_error.stream == "stderr"
    assert error.exit_code == 0
    assert error.__cause__ is error.stdout_error
    assert "failed to capture stdout/stderr" in str(error)


@pytest.mark.asyncio
async def test_copy_failure_takes_precedence_over_exit_status(
    helper_launcher: HelperLauncher,
) -> None:
    command = Command(helper_launcher)
    command.set_output_sinks(io.BytesIO(), BrokenSink())

    with pytest.raises(StreamCopyFailure) as exc_info:
        await command.run_executable("fail", "2", "oops")

    assert exc_info.value.stdout_error is None
    assert exc_info.value.exit_code == 2
    assert "exit code 2" in str(exc_info.value)


@pytest.mark.asyncio
async def test_shared_signal_collects_last_match_across_runs(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    shared = CategorySignal()
    command = Command(helper_launcher, category_signal=shared)
    command.set_output_sinks(stdout, stderr)
    command.set_error_category_mapping({"build": ["compile error"]})

    await command.run_executable("lines", "out:compile error")
    clean = await command.run_executable("lines", "out:fine")

    assert clean.category == ErrorCategory.UNDEFINED
    assert shared.get() == ErrorCategory.BUILD


@pytest.mark.asyncio
async def test_configuration_changes_do_not_affect_started_runs(
    helper_launcher: HelperLauncher,
) -> None:
    first_out, second_out = io.BytesIO(), io.BytesIO()
    command = Command(helper_launcher)
    command.set_output_sinks(first_out, io.BytesIO())

    execution = await command.run_executable_in_background("echo", "first")
    command.set_output_sinks(second_out, io.BytesIO())
    await command.run_executable("echo", "second")
    await execution.join()

    assert first_out.getvalue() == b"first\n"
    assert second_out.getvalue() == b"second\n"


@pytest.mark.asyncio
async def test_each_launch_logs_one_info_event(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)

    with capture_logs() as logs:
        await command.run_executable("echo", "a", "b")
        await command.run_shell("/bin/bash", "true")

    info_events = [entry for entry in logs if entry["log_level"] == "info"]
    assert [entry["event"] for entry in info_events] == [
        "Running command.",
        "Running shell script.",
    ]
    assert info_events[0]["executable"] == "echo"
    assert info_events[0]["args"] == ["a", "b"]
    assert info_events[1]["shell"] == "/bin/bash"
    assert info_events[1]["script"] == "true"


def test_run_executable_sync_blocks_until_completion(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)

    result = command.run_executable_sync("echo", "sync")
    shell_result = command.run_shell_sync("sh", "x")

    assert result.ok and shell_result.ok
    assert stdout.getvalue() == b"sync\nStdout: command sh - Stdin: x\n"


def test_from_config_applies_mapping_and_timeouts(helper_launcher: HelperLauncher) -> None:
    config = PiperunConfig(
        kill_grace_seconds=0.5,
        timeout_seconds=2.0,
        error_categories=(("test", ("FAILED",)),),
    )
    command = Command.from_config(config, helper_launcher)
    stdout, stderr = io.BytesIO(), io.BytesIO()
    command.set_output_sinks(stdout, stderr)

    result = command.run_executable_sync("lines", "out:1 FAILED, 2 passed")
    assert result.category == ErrorCategory.TEST

    with pytest.raises(TimeoutError):
        command.run_executable_sync("sleep", "30")


class RejectingLauncher:
    """Launcher that reports a finished-run error instead of starting anything."""

    def __init__(self) -> None:
        self.error = NonZeroExit(executable="tool", command_args=("x",), exit_code=9)

    async def launch(self, request: LaunchRequest) -> asyncio.subprocess.Process:
        raise self.error


@pytest.mark.asyncio
async def test_other_launcher_errors_pass_through_unwrapped() -> None:
    launcher = RejectingLauncher()
    command = Command(launcher)

    with pytest.raises(NonZeroExit) as exc_info:
        await command.run_executable("tool", "x")

    assert exc_info.value is launcher.error


@pytest.mark.asyncio
async def test_custom_category_label_is_reported(
    helper_launcher: HelperLauncher,
    sinks: tuple[io.BytesIO, io.BytesIO],
) -> None:
    stdout, stderr = sinks
    command = Command(helper_launcher)
    command.set_output_sinks(stdout, stderr)
    command.set_error_category_mapping({"Lint": ["E501"], "build": ["make: ***"]})

    result = await command.run_executable("lines", "out:app.py:3:80: E501 line too long")

    assert result.category == "lint"
