"""
Release Pipeline - a reusable, parameterized build-and-release pipeline engine.
"""

__version__ = "0.1.0"
__author__ = "Release Pipeline Team"

from .core import PipelineOrchestrator
from .config import ConfigManager

__all__ = ["PipelineOrchestrator", "ConfigManager"]
