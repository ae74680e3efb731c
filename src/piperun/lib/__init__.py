"""Core piperun library exports."""

from piperun.lib.exec import Command, ErrorCategory, Execution, ExecutionResult

__all__ = ["Command", "ErrorCategory", "Execution", "ExecutionResult"]
