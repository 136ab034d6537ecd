"""Wiring: builds a ready-to-use orchestrator from an EngineConfig."""

import logging
from typing import Optional

from .config.manager import ConfigManager
from .config.schema import EngineConfig
from .core.binder import ParameterBinder
from .core.errors import ErrorHandler, RetryPolicy
from .core.interfaces import AgentPlatform, CredentialStore, StatusSink
from .core.orchestrator import PipelineOrchestrator
from .core.provisioner import AgentProvisioner
from .core.publisher import RegistryPublisher
from .core.registry import TemplateRegistry
from .core.reporter import HttpStatusSink, LogStatusSink, StatusReporter
from .core.runner import StageRunner
from .platform.credentials import FileCredentialStore
from .platform.docker import DockerCliBuilder, DockerCliRegistry
from .platform.local import LocalAgentPlatform

logger = logging.getLogger(__name__)


def create_orchestrator(config: EngineConfig,
                        platform: Optional[AgentPlatform] = None,
                        registry: Optional[TemplateRegistry] = None,
                        credential_store: Optional[CredentialStore] = None,
                        sink: Optional[StatusSink] = None,
                        publisher: Optional[RegistryPublisher] = None) -> PipelineOrchestrator:
    """Factory function to create a pipeline orchestrator.

    Collaborators default to the local platform, file credentials, the docker
    CLI for build/push, and HTTP status delivery when any binding has a
    ``status_url`` (logging otherwise).
    """
    settings = config.settings

    if registry is None:
        registry = ConfigManager().build_registry(config.templates_dir)
    if platform is None:
        platform = LocalAgentPlatform()
    if credential_store is None and config.credentials_dir:
        credential_store = FileCredentialStore(config.credentials_dir)
    if sink is None:
        if any(binding.status_url for binding in config.bindings):
            sink = HttpStatusSink()
        else:
            sink = LogStatusSink()

    provisioner = AgentProvisioner(platform, timeout=settings.provision_timeout,
                                   poll_interval=settings.provision_poll_interval)
    if publisher is None:
        publisher = RegistryPublisher(
            DockerCliBuilder(provisioner, timeout=settings.stage_timeout),
            DockerCliRegistry(provisioner, timeout=settings.stage_timeout),
            RetryPolicy(max_attempts=settings.push_max_attempts, retry_delay=settings.push_backoff),
        )

    runner = StageRunner(
        provisioner,
        publisher,
        stage_timeout=settings.stage_timeout,
        output_limit=settings.output_limit,
        error_handler=ErrorHandler(settings.error_log_path),
    )
    reporter = StatusReporter(
        sink,
        RetryPolicy(max_attempts=settings.report_max_attempts, retry_delay=settings.report_backoff),
    )

    logger.info(f"Engine ready: {len(registry)} template(s), {len(config.bindings)} binding(s)")
    return PipelineOrchestrator(
        registry,
        runner,
        reporter,
        config.binding_table(),
        binder=ParameterBinder(),
        credential_store=credential_store,
        max_concurrent_runs=settings.max_concurrent_runs,
        run_retention=settings.run_retention,
    )
