"""Core data model and collaborator interfaces for pipeline runs."""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum

from .errors import RunStateError


class RunStatus(Enum):
    """Pipeline run status."""
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageOutcome(Enum):
    """Outcome of a single stage."""
    SUCCESS = "Success"
    FAILURE = "Failure"
    SKIPPED = "Skipped"


class CommandAction(str, Enum):
    """Kinds of command units a stage can hold."""
    EXEC = "exec"
    PUBLISH = "publish"


_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.PROVISIONING, RunStatus.FAILED, RunStatus.ABORTED},
    RunStatus.PROVISIONING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.ABORTED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED},
}


@dataclass(frozen=True)
class CommandUnit:
    """One structured command: an argv list to exec, or an image publication."""
    action: CommandAction = CommandAction.EXEC
    args: Tuple[str, ...] = ()
    params: Tuple[Tuple[str, str], ...] = ()
    container: Optional[str] = None

    @property
    def param_map(self) -> Dict[str, str]:
        return dict(self.params)

    def describe(self) -> str:
        if self.action == CommandAction.PUBLISH:
            params = self.param_map
            return f"publish {params.get('image')}:{params.get('tag')} from {params.get('dockerfile')}"
        return " ".join(self.args)


@dataclass(frozen=True)
class StageDefinition:
    """A named, ordered list of command units."""
    name: str
    commands: Tuple[CommandUnit, ...]
    abort_on_failure: bool = True
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ContainerSpec:
    """A container inside an agent."""
    name: str
    image: str
    command: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    cpu: Optional[str] = None
    memory: Optional[str] = None


@dataclass(frozen=True)
class VolumeMount:
    """A volume mounted into every container of an agent."""
    name: str
    mount_path: str
    credential: bool = False


@dataclass(frozen=True)
class AgentSpec:
    """Declarative description of an ephemeral execution agent."""
    containers: Tuple[ContainerSpec, ...]
    default_container: str
    volumes: Tuple[VolumeMount, ...] = ()
    labels: Tuple[Tuple[str, str], ...] = ()

    def container_names(self) -> List[str]:
        return [container.name for container in self.containers]


@dataclass(frozen=True)
class PipelineTemplate:
    """A named, versioned, immutable stage skeleton."""
    name: str
    version: str
    stages: Tuple[StageDefinition, ...]
    agent: AgentSpec
    description: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.version)

    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]


@dataclass(frozen=True)
class TriggerEvent:
    """Inbound push event."""
    repository: str
    ref: str
    commit: str

    def variables(self) -> Dict[str, str]:
        return {"repository": self.repository, "ref": self.ref, "commit": self.commit}


@dataclass(frozen=True)
class Credential:
    """Opaque handle to registry auth material, referenced by mount path only."""
    ref: str
    mount_path: str = field(repr=False)


@dataclass(frozen=True)
class ImageDigest:
    """A pushed image."""
    image: str
    tag: str
    digest: str
    attempts: int = 1

    @property
    def reference(self) -> str:
        return f"{self.image}:{self.tag}@{self.digest}"


@dataclass(frozen=True)
class AgentHandle:
    """Reference to a provisioned agent."""
    agent_id: str
    spec: AgentSpec
    workspace: Optional[str] = None

    @property
    def default_container(self) -> str:
        return self.spec.default_container


@dataclass(frozen=True)
class ExecResult:
    """Result of running one command unit in an agent."""
    exit_status: int
    output: str = ""

    @property
    def success(self) -> bool:
        return self.exit_status == 0


@dataclass
class StageResult:
    """Recorded outcome of one stage."""
    name: str
    outcome: StageOutcome
    output: str = ""
    duration: float = 0.0
    error: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        summary = {
            "name": self.name,
            "outcome": self.outcome.value,
            "durationSeconds": round(self.duration, 3),
        }
        if self.error:
            summary["error"] = self.error
        return summary


@dataclass
class PipelineRun:
    """A bound pipeline run and its execution record.

    Stage order and count are fixed when the run is bound. Status changes go
    through ``transition``; once the run is terminal every mutation raises
    ``RunStateError``.
    """
    run_id: str
    template_name: str
    template_version: str
    configuration: Any
    stages: Tuple[StageDefinition, ...]
    agent: AgentSpec
    trigger: Optional[TriggerEvent] = None
    status: RunStatus = RunStatus.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    reason: Optional[str] = None
    _results: List[StageResult] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def stage_results(self) -> Tuple[StageResult, ...]:
        with self._lock:
            return tuple(self._results)

    def transition(self, status: RunStatus, reason: Optional[str] = None) -> None:
        """Move to ``status`` if the state machine allows it."""
        with self._lock:
            if status not in _TRANSITIONS.get(self.status, set()):
                raise RunStateError(f"Run {self.run_id}: illegal transition "
                                    f"{self.status.value} -> {status.value}")
            self.status = status
            if status == RunStatus.PROVISIONING:
                self.started_at = time.time()
            if status.is_terminal:
                if len(self._results) != len(self.stages):
                    raise RunStateError(f"Run {self.run_id}: {len(self._results)} of "
                                        f"{len(self.stages)} stages recorded at completion")
                self.ended_at = time.time()
                self.reason = reason

    def record_stage(self, result: StageResult) -> None:
        """Append the next stage result; names must follow bind order."""
        with self._lock:
            if self.status.is_terminal:
                raise RunStateError(f"Run {self.run_id} is {self.status.value}; no further stages")
            index = len(self._results)
            if index >= len(self.stages) or self.stages[index].name != result.name:
                raise RunStateError(f"Run {self.run_id}: unexpected stage result {result.name}")
            self._results.append(result)

    def skip_remaining(self, reason: str = "") -> None:
        """Mark every stage without a result as skipped."""
        with self._lock:
            if self.status.is_terminal:
                raise RunStateError(f"Run {self.run_id} is {self.status.value}; no further stages")
            for stage in self.stages[len(self._results):]:
                self._results.append(StageResult(name=stage.name, outcome=StageOutcome.SKIPPED,
                                                 error=reason or None))

    def failed_stages(self) -> List[str]:
        return [result.name for result in self.stage_results if result.outcome == StageOutcome.FAILURE]

    def duration(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "template": self.template_name,
            "version": self.template_version,
            "status": self.status.value,
            "reason": self.reason,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "stages": [result.summary() for result in self.stage_results],
        }


class AgentPlatform(ABC):
    """Compute platform that schedules ephemeral agents."""

    @abstractmethod
    def acquire(self, spec: AgentSpec) -> AgentHandle:
        """Request an agent; raises ProvisionError if the AgentSpec is rejected."""
        pass

    @abstractmethod
    def is_ready(self, handle: AgentHandle) -> bool:
        """Whether a requested agent is ready to execute commands."""
        pass

    @abstractmethod
    def execute(self, handle: AgentHandle, container: str, args: List[str],
                timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> ExecResult:
        """Run an argv list in one container of the agent."""
        pass

    @abstractmethod
    def release(self, handle: AgentHandle) -> None:
        """Tear down a ready agent."""
        pass

    def abandon(self, handle: AgentHandle) -> None:
        """Withdraw a request for an agent that never became ready."""
        pass


class CredentialStore(ABC):
    """Read-only source of registry credentials."""

    @abstractmethod
    def resolve(self, ref: str) -> Credential:
        """Resolve a credential reference; raises CredentialNotFound."""
        pass


class ImageBuilder(ABC):
    """Builds a container image from a Dockerfile."""

    @abstractmethod
    def build(self, image_ref: str, dockerfile_path: str, context: str = ".",
              agent: Optional[AgentHandle] = None,
              cancel_event: Optional[threading.Event] = None,
              timeout: Optional[float] = None) -> None:
        """Build ``image_ref`` within ``timeout`` seconds; raises BuildError."""
        pass


class ImageRegistry(ABC):
    """Target image registry."""

    @abstractmethod
    def push(self, image_name: str, image_tag: str, credential: Optional[Credential],
             agent: Optional[AgentHandle] = None,
             cancel_event: Optional[threading.Event] = None,
             timeout: Optional[float] = None) -> str:
        """Push an image within ``timeout`` seconds and return its digest.

        Raises AuthError for rejected credentials and TransientPushError for
        failures worth retrying.
        """
        pass


class StatusSink(ABC):
    """Destination for terminal run notifications."""

    @abstractmethod
    def post(self, notification: Mapping[str, Any], target: Optional[str] = None) -> None:
        """Deliver one notification; raises ReportError."""
        pass
