"""Configuration management components."""

from .manager import ConfigManager
from .schema import EngineConfig, RunConfiguration, ValidationError

__all__ = ["ConfigManager", "EngineConfig", "RunConfiguration", "ValidationError"]
