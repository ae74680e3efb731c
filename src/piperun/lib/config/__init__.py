"""Configuration loading."""

from piperun.lib.config.settings import PiperunConfig, load_config

__all__ = ["PiperunConfig", "load_config"]
