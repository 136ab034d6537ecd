"""
Platform adapters for the pipeline engine.

This module provides concrete agent platforms, credential stores and docker
CLI-backed image builder/registry implementations.
"""

from .local import LocalAgentPlatform
from .credentials import FileCredentialStore
from .docker import DockerCliBuilder, DockerCliRegistry

__all__ = [
    'LocalAgentPlatform',
    'FileCredentialStore',
    'DockerCliBuilder',
    'DockerCliRegistry'
]
