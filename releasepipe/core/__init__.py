"""Core pipeline execution components."""

from .orchestrator import PipelineOrchestrator
from .registry import TemplateRegistry
from .binder import ParameterBinder
from .provisioner import AgentProvisioner
from .runner import StageRunner
from .publisher import RegistryPublisher
from .reporter import StatusReporter

__all__ = [
    "PipelineOrchestrator",
    "TemplateRegistry",
    "ParameterBinder",
    "AgentProvisioner",
    "StageRunner",
    "RegistryPublisher",
    "StatusReporter",
]
