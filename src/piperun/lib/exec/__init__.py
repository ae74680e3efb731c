"""Execution engine primitives."""

from piperun.lib.exec.classifier import Category, CategorySignal, ErrorCategory, OutputClassifier
from piperun.lib.exec.command import Command
from piperun.lib.exec.drain import CopyJob, CopyOutcome, DrainPump, copy_in_parallel, copy_stream
from piperun.lib.exec.environment import (
    child_environment,
    effective_environment,
    environment_mapping,
)
from piperun.lib.exec.errors import (
    CommandError,
    NonZeroExit,
    PipeSetupFailure,
    RunCancelled,
    RunTimeoutError,
    StartFailure,
    StreamCopyError,
    StreamCopyFailure,
)
from piperun.lib.exec.execution import Execution, ExecutionResult, ExecutionState
from piperun.lib.exec.launcher import Launcher, LaunchRequest, SubprocessLauncher

__all__ = [
    "Category",
    "CategorySignal",
    "Command",
    "CommandError",
    "CopyJob",
    "CopyOutcome",
    "DrainPump",
    "ErrorCategory",
    "Execution",
    "ExecutionResult",
    "ExecutionState",
    "LaunchRequest",
    "Launcher",
    "NonZeroExit",
    "OutputClassifier",
    "PipeSetupFailure",
    "RunCancelled",
    "RunTimeoutError",
    "StartFailure",
    "StreamCopyError",
    "StreamCopyFailure",
    "SubprocessLauncher",
    "child_environment",
    "copy_in_parallel",
    "copy_stream",
    "effective_environment",
    "environment_mapping",
]
