"""Agent provisioning with bounded readiness waits and guaranteed teardown."""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .interfaces import AgentHandle, AgentPlatform, AgentSpec, ExecResult
from .errors import ExecutionError, PipelineError, ProvisionError, ProvisionTimeout, RunAborted


class AgentProvisioner:
    """Acquires and releases ephemeral agents on an AgentPlatform."""

    def __init__(self, platform: AgentPlatform, timeout: float = 120.0, poll_interval: float = 1.0):
        """
        Initialize provisioner.

        Args:
            platform: Platform that schedules agents
            timeout: Seconds to wait for an agent to become ready
            poll_interval: Seconds between readiness checks
        """
        self.platform = platform
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._active: Dict[str, AgentHandle] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def acquire(self, spec: AgentSpec, cancel_event: Optional[threading.Event] = None) -> AgentHandle:
        """
        Acquire a ready agent.

        Raises:
            ProvisionError: The platform rejected the AgentSpec or the agent failed
            ProvisionTimeout: The agent was not ready in time
            RunAborted: ``cancel_event`` was set while waiting
        """
        cancel_event = cancel_event or threading.Event()
        if cancel_event.is_set():
            raise RunAborted("Run aborted before provisioning")

        try:
            handle = self.platform.acquire(spec)
        except PipelineError:
            raise
        except Exception as e:
            raise ProvisionError(f"Agent request failed: {str(e)}") from e

        self.logger.info(f"Requested agent {handle.agent_id}, waiting up to {self.timeout:g}s")
        deadline = time.monotonic() + self.timeout

        try:
            while not self.platform.is_ready(handle):
                if cancel_event.is_set():
                    raise RunAborted(f"Run aborted while provisioning agent {handle.agent_id}")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProvisionTimeout(self.timeout, {"agent_id": handle.agent_id})
                cancel_event.wait(min(self.poll_interval, remaining))
        except PipelineError:
            self._abandon(handle)
            raise
        except Exception as e:
            self._abandon(handle)
            raise ProvisionError(f"Agent {handle.agent_id} failed to start: {str(e)}") from e

        with self._lock:
            self._active[handle.agent_id] = handle
        self.logger.info(f"Agent {handle.agent_id} ready")
        return handle

    def _abandon(self, handle: AgentHandle) -> None:
        try:
            self.platform.abandon(handle)
        except Exception as e:
            self.logger.warning(f"Failed to withdraw agent request {handle.agent_id}: {str(e)}")

    def release(self, handle: AgentHandle) -> None:
        """Tear down an agent. Idempotent; never raises."""
        with self._lock:
            if self._active.pop(handle.agent_id, None) is None:
                self.logger.debug(f"Agent {handle.agent_id} already released")
                return

        try:
            self.platform.release(handle)
            self.logger.info(f"Released agent {handle.agent_id}")
        except Exception as e:
            self.logger.error(f"Teardown of agent {handle.agent_id} failed: {str(e)}")

    @contextmanager
    def agent(self, spec: AgentSpec, cancel_event: Optional[threading.Event] = None) -> Iterator[AgentHandle]:
        """Scoped acquisition: the agent is released on every exit path."""
        handle = self.acquire(spec, cancel_event)
        try:
            yield handle
        finally:
            self.release(handle)

    def execute(self, handle: AgentHandle, container: str, args: List[str],
                timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> ExecResult:
        """Run an argv list in the agent; platform faults become ExecutionError."""
        if container not in handle.spec.container_names():
            raise ExecutionError(f"Agent {handle.agent_id} has no container '{container}'")
        try:
            return self.platform.execute(handle, container, list(args), timeout=timeout,
                                         cancel_event=cancel_event)
        except PipelineError:
            raise
        except Exception as e:
            raise ExecutionError(f"Could not run '{args[0] if args else ''}' in {container}: {str(e)}") from e

    def active_agents(self) -> List[str]:
        """Ids of agents acquired and not yet released."""
        with self._lock:
            return list(self._active)
