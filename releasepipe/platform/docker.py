"""Image builder and registry client that drive the docker CLI inside an agent."""

import logging
import re
import threading
from typing import List, Optional

from ..core.errors import AuthError, BuildError, ExecutionError, TransientPushError
from ..core.interfaces import AgentHandle, Credential, ImageBuilder, ImageRegistry
from ..core.provisioner import AgentProvisioner

logger = logging.getLogger(__name__)

DIGEST_PATTERN = re.compile(r'digest:\s*(sha256:[0-9a-f]{64})')

AUTH_FAILURE_MARKERS = (
    "unauthorized",
    "authentication required",
    "denied: requested access",
    "incorrect username or password",
    "no basic auth credentials",
)


def _effective_timeout(configured: float, timeout: Optional[float]) -> float:
    return configured if timeout is None else min(configured, timeout)


def _require_agent(agent: Optional[AgentHandle]) -> AgentHandle:
    if agent is None:
        raise ExecutionError("The docker CLI runs inside an agent; no agent given")
    return agent


class DockerCliBuilder(ImageBuilder):
    """Runs ``docker build`` in one of the agent's containers."""

    def __init__(self, provisioner: AgentProvisioner, container: Optional[str] = None,
                 timeout: float = 1800.0, extra_args: Optional[List[str]] = None):
        self.provisioner = provisioner
        self.container = container
        self.timeout = timeout
        self.extra_args = extra_args or []

    def build(self, image_ref: str, dockerfile_path: str, context: str = ".",
              agent: Optional[AgentHandle] = None,
              cancel_event: Optional[threading.Event] = None,
              timeout: Optional[float] = None) -> None:
        agent = _require_agent(agent)
        args = ["docker", "build", "--file", dockerfile_path, "--tag", image_ref, *self.extra_args, context]
        try:
            result = self.provisioner.execute(agent, self.container or agent.default_container, args,
                                              timeout=_effective_timeout(self.timeout, timeout),
                                              cancel_event=cancel_event)
        except ExecutionError as e:
            raise BuildError(f"Build of {image_ref} could not run: {str(e)}") from e

        if not result.success:
            tail = result.output.strip().splitlines()[-1:] or ["no output"]
            raise BuildError(f"Build of {image_ref} failed (exit {result.exit_status}): {tail[0]}",
                             {"output": result.output})
        logger.info(f"Built {image_ref}")


class DockerCliRegistry(ImageRegistry):
    """Runs ``docker push`` with the credential directory as docker config."""

    def __init__(self, provisioner: AgentProvisioner, container: Optional[str] = None,
                 timeout: float = 900.0):
        self.provisioner = provisioner
        self.container = container
        self.timeout = timeout

    def push(self, image_name: str, image_tag: str, credential: Optional[Credential],
             agent: Optional[AgentHandle] = None,
             cancel_event: Optional[threading.Event] = None,
             timeout: Optional[float] = None) -> str:
        agent = _require_agent(agent)
        image_ref = f"{image_name}:{image_tag}"
        args = ["docker"]
        if credential is not None:
            args += ["--config", credential.mount_path]
        args += ["push", image_ref]

        try:
            result = self.provisioner.execute(agent, self.container or agent.default_container, args,
                                              timeout=_effective_timeout(self.timeout, timeout),
                                              cancel_event=cancel_event)
        except ExecutionError as e:
            raise TransientPushError(f"Push of {image_ref} could not run: {str(e)}") from e

        output = result.output.lower()
        if not result.success:
            if any(marker in output for marker in AUTH_FAILURE_MARKERS):
                raise AuthError(f"Registry rejected credentials for {image_ref}")
            raise TransientPushError(f"Push of {image_ref} exited {result.exit_status}")

        match = DIGEST_PATTERN.search(result.output)
        if match is None:
            raise TransientPushError(f"Push of {image_ref} reported no digest")
        return match.group(1)
