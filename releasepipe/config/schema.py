"""Configuration schema definitions using Pydantic models."""

from typing import Dict, List, Optional, Any, FrozenSet
from pydantic import BaseModel, Field, field_validator, model_validator

from ..core.errors import ConfigError
from ..core.interfaces import (
    AgentSpec, CommandAction, CommandUnit, ContainerSpec, PipelineTemplate,
    StageDefinition, VolumeMount
)


class RunConfiguration(BaseModel):
    """Caller-supplied parameters bound into a template."""
    image_name: str = Field(..., alias="imageName", min_length=1, description="Image repository name")
    image_tag: str = Field(..., alias="imageTag", min_length=1, description="Image tag")
    port: int = Field(..., ge=1, le=65535, description="Port the service listens on")
    dockerfile_path: str = Field("./Dockerfile", alias="dockerfilePath", min_length=1,
                                 description="Dockerfile path relative to the checkout")
    repo_url: str = Field(..., alias="repoUrl", min_length=1, description="Source repository URL")
    continue_on_stage_failure: FrozenSet[str] = Field(default_factory=frozenset,
                                                      alias="continueOnStageFailure",
                                                      description="Stages whose failure does not abort the run")

    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "frozen": True,
    }

    @field_validator('image_tag', 'image_name')
    @classmethod
    def validate_no_whitespace(cls, v):
        """Image references cannot contain whitespace."""
        if any(ch.isspace() for ch in v):
            raise ValueError("must not contain whitespace")
        return v

    def variables(self) -> Dict[str, str]:
        """Placeholder values available to command units."""
        return {
            "imageName": self.image_name,
            "imageTag": self.image_tag,
            "port": str(self.port),
            "dockerfilePath": self.dockerfile_path,
            "repoUrl": self.repo_url,
        }


class PublishConfig(BaseModel):
    """Parameters of a publish command unit."""
    image: str = Field("${imageName}", description="Image name")
    tag: str = Field("${imageTag}", description="Image tag")
    dockerfile: str = Field("${dockerfilePath}", description="Dockerfile path")
    context: str = Field(".", description="Build context directory")

    model_config = {"extra": "forbid"}


class CommandConfig(BaseModel):
    """One command unit: either an argv list or a publish step."""
    exec: Optional[List[str]] = Field(None, description="Argument vector to execute")
    publish: Optional[PublishConfig] = Field(None, description="Build and push an image")
    container: Optional[str] = Field(None, description="Container to run in (default: agent default)")

    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def validate_single_action(self):
        """Exactly one of exec/publish must be given."""
        if (self.exec is None) == (self.publish is None):
            raise ValueError("a command needs exactly one of 'exec' or 'publish'")
        if self.exec is not None and not self.exec:
            raise ValueError("exec needs at least one argument")
        return self

    def to_unit(self) -> CommandUnit:
        if self.publish is not None:
            return CommandUnit(
                action=CommandAction.PUBLISH,
                params=tuple(self.publish.model_dump().items()),
                container=self.container,
            )
        return CommandUnit(action=CommandAction.EXEC, args=tuple(self.exec), container=self.container)


class StageConfig(BaseModel):
    """A stage in a template document."""
    name: str = Field(..., min_length=1, description="Stage name")
    commands: List[CommandConfig] = Field(..., min_length=1, description="Ordered command units")
    abort_on_failure: bool = Field(True, description="Abort the run when this stage fails")
    timeout: Optional[float] = Field(None, gt=0, description="Stage timeout in seconds")

    model_config = {"extra": "forbid"}


class ContainerConfig(BaseModel):
    """A container in an agent definition."""
    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    command: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cpu: Optional[str] = Field(None, description="CPU request, e.g. '500m'")
    memory: Optional[str] = Field(None, description="Memory request, e.g. '1Gi'")

    model_config = {"extra": "forbid"}


class VolumeConfig(BaseModel):
    """A volume mount in an agent definition."""
    name: str = Field(..., min_length=1)
    mount_path: str = Field(..., min_length=1)
    credential: bool = Field(False, description="Mounts the run's registry credential")

    model_config = {"extra": "forbid"}


class AgentConfig(BaseModel):
    """Agent section of a template document."""
    containers: List[ContainerConfig] = Field(..., min_length=1)
    default_container: Optional[str] = Field(None, description="Defaults to the first container")
    volumes: List[VolumeConfig] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def validate_containers(self):
        """Container names must be unique and include the default container."""
        names = [container.name for container in self.containers]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate container names: {names}")
        if self.default_container is not None and self.default_container not in names:
            raise ValueError(f"default_container '{self.default_container}' is not one of {names}")
        return self

    def to_spec(self) -> AgentSpec:
        return AgentSpec(
            containers=tuple(
                ContainerSpec(
                    name=c.name,
                    image=c.image,
                    command=tuple(c.command),
                    env=tuple(sorted(c.env.items())),
                    cpu=c.cpu,
                    memory=c.memory,
                )
                for c in self.containers
            ),
            default_container=self.default_container or self.containers[0].name,
            volumes=tuple(VolumeMount(v.name, v.mount_path, v.credential) for v in self.volumes),
            labels=tuple(sorted(self.labels.items())),
        )


class TemplateDocument(BaseModel):
    """A pipeline template as written in YAML."""
    name: str = Field(..., min_length=1, description="Template name")
    version: str = Field(..., min_length=1, description="Template version")
    description: str = Field("", description="Template description")
    agent: AgentConfig = Field(..., description="Agent definition")
    stages: List[StageConfig] = Field(..., min_length=1, description="Ordered stages")

    model_config = {"extra": "forbid"}

    @field_validator('version', mode='before')
    @classmethod
    def coerce_version(cls, v):
        """YAML turns 1.0 into a float; versions are strings."""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @model_validator(mode='after')
    def validate_stages(self):
        """Stage names must be unique and containers must exist."""
        names = [stage.name for stage in self.stages]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate stage names: {names}")

        containers = {container.name for container in self.agent.containers}
        for stage in self.stages:
            for command in stage.commands:
                if command.container and command.container not in containers:
                    raise ValueError(f"stage '{stage.name}' uses unknown container '{command.container}'")
        return self

    def to_template(self) -> PipelineTemplate:
        return PipelineTemplate(
            name=self.name,
            version=self.version,
            description=self.description,
            agent=self.agent.to_spec(),
            stages=tuple(
                StageDefinition(
                    name=stage.name,
                    commands=tuple(command.to_unit() for command in stage.commands),
                    abort_on_failure=stage.abort_on_failure,
                    timeout=stage.timeout,
                )
                for stage in self.stages
            ),
        )


class EngineSettings(BaseModel):
    """Operational tuning for the pipeline engine."""
    provision_timeout: float = Field(120.0, gt=0, description="Seconds to wait for agent readiness")
    provision_poll_interval: float = Field(1.0, gt=0, description="Seconds between readiness checks")
    stage_timeout: float = Field(1800.0, gt=0, description="Default per-stage timeout in seconds")
    output_limit: int = Field(65536, ge=1024, description="Characters of output kept per stage")
    push_max_attempts: int = Field(3, ge=1, le=10, description="Registry push attempts")
    push_backoff: float = Field(2.0, ge=0, description="Base push retry delay in seconds")
    report_max_attempts: int = Field(3, ge=1, le=10, description="Status delivery attempts")
    report_backoff: float = Field(1.0, ge=0, description="Base status retry delay in seconds")
    max_concurrent_runs: int = Field(4, ge=1, description="Runs executed in parallel")
    run_retention: int = Field(1000, ge=1, description="Finished runs kept for inspection")
    error_log_path: Optional[str] = Field(None, description="JSON-lines error log path")

    model_config = {"extra": "forbid"}


class TriggerBinding(BaseModel):
    """Which template and configuration a repository's pushes run."""
    repository: str = Field(..., min_length=1, description="Repository identifier")
    template: str = Field(..., min_length=1, description="Template name")
    version: Optional[str] = Field(None, description="Template version (default: latest)")
    config: Dict[str, Any] = Field(default_factory=dict, description="Run configuration")
    credential: Optional[str] = Field(None, description="Registry credential reference")
    status_url: Optional[str] = Field(None, description="Where terminal status is posted")

    model_config = {"extra": "forbid"}

    @field_validator('version', mode='before')
    @classmethod
    def coerce_version(cls, v):
        if isinstance(v, (int, float)):
            return str(v)
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field("INFO", description="Logging level")
    format: str = Field("%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="Log format")
    file_path: Optional[str] = Field(None, description="Log file path")


class EngineConfig(BaseModel):
    """Main engine configuration."""
    settings: EngineSettings = Field(default_factory=EngineSettings, description="Engine tuning")
    templates_dir: Optional[str] = Field(None, description="Template directory (default: bundled)")
    credentials_dir: Optional[str] = Field(None, description="Root of credential directories")
    bindings: List[TriggerBinding] = Field(default_factory=list, description="Repository bindings")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    model_config = {
        "extra": "forbid",
        "validate_assignment": True,
    }

    @model_validator(mode='after')
    def validate_unique_bindings(self):
        """Each repository binds to exactly one template."""
        seen = set()
        for binding in self.bindings:
            if binding.repository in seen:
                raise ValueError(f"repository bound twice: {binding.repository}")
            seen.add(binding.repository)
        return self

    def binding_table(self) -> Dict[str, TriggerBinding]:
        return {binding.repository: binding for binding in self.bindings}


class ValidationError(ConfigError):
    """Configuration file validation error."""

    def __init__(self, message: str, errors: List[str] = None):
        super().__init__(message)
        self.errors = errors or []


class ValidationResult(BaseModel):
    """Result of configuration validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    config: Optional[EngineConfig] = None
