"""Process execution for CI pipeline steps."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("piperun")
except PackageNotFoundError:
    __version__ = "0.0.0"
