"""Core runtime: configuration, errors, session and event bus."""

from peelog.core.config import Config, get_config

__all__ = ["Config", "get_config"]
