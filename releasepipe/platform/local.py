"""
Local agent platform: each agent is a private temporary workspace on the host.

Containers named in the agent spec are not started; every command runs on the
host in the agent's workspace with the container's environment applied. This
is enough to run templates on a developer machine or a CI host that already
has the docker CLI.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
import uuid
from typing import Dict, List, Optional

from ..core.errors import ExecutionError, ProvisionError, StageTimeout
from ..core.interfaces import AgentHandle, AgentPlatform, AgentSpec, ExecResult

logger = logging.getLogger(__name__)


class LocalAgentPlatform(AgentPlatform):
    """Runs agents as temporary directories and commands as subprocesses."""

    def __init__(self, base_dir: Optional[str] = None, poll_interval: float = 0.2,
                 max_agents: Optional[int] = None):
        """
        Initialize local platform.

        Args:
            base_dir: Parent directory for agent workspaces (default: system temp)
            poll_interval: Seconds between checks for cancellation while a command runs
            max_agents: Reject requests beyond this many live agents
        """
        self.base_dir = base_dir
        self.poll_interval = poll_interval
        self.max_agents = max_agents
        self._workspaces: Dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, spec: AgentSpec) -> AgentHandle:
        with self._lock:
            if self.max_agents is not None and len(self._workspaces) >= self.max_agents:
                raise ProvisionError(f"Agent quota exhausted ({self.max_agents} live agents)")
            agent_id = f"local-{uuid.uuid4().hex[:12]}"
            workspace = tempfile.mkdtemp(prefix=f"{agent_id}-", dir=self.base_dir)
            self._workspaces[agent_id] = workspace

        logger.info(f"Created agent {agent_id} in {workspace}")
        return AgentHandle(agent_id=agent_id, spec=spec, workspace=workspace)

    def is_ready(self, handle: AgentHandle) -> bool:
        with self._lock:
            workspace = self._workspaces.get(handle.agent_id)
        if workspace is None:
            raise ProvisionError(f"Unknown agent {handle.agent_id}")
        return os.path.isdir(workspace)

    def abandon(self, handle: AgentHandle) -> None:
        self._remove(handle)

    def release(self, handle: AgentHandle) -> None:
        self._remove(handle)

    def _remove(self, handle: AgentHandle) -> None:
        with self._lock:
            workspace = self._workspaces.pop(handle.agent_id, None)
        if workspace:
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info(f"Removed agent {handle.agent_id}")

    def live_agents(self) -> List[str]:
        with self._lock:
            return list(self._workspaces)

    def _environment(self, handle: AgentHandle, container: str) -> Dict[str, str]:
        env = dict(os.environ)
        for spec in handle.spec.containers:
            if spec.name == container:
                env.update(dict(spec.env))
        env["AGENT_ID"] = handle.agent_id
        env["AGENT_CONTAINER"] = container
        return env

    def execute(self, handle: AgentHandle, container: str, args: List[str],
                timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> ExecResult:
        with self._lock:
            workspace = self._workspaces.get(handle.agent_id)
        if workspace is None:
            raise ExecutionError(f"Agent {handle.agent_id} is not running")
        if not args:
            raise ExecutionError("Empty command")

        logger.debug(f"[{handle.agent_id}/{container}] exec {args[0]}")
        try:
            process = subprocess.Popen(
                args,
                cwd=workspace,
                env=self._environment(handle, container),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except OSError as e:
            raise ExecutionError(f"Cannot run {args[0]}: {str(e)}") from e

        deadline = time.monotonic() + timeout if timeout else None
        while True:
            try:
                output, _ = process.communicate(timeout=self.poll_interval)
                return ExecResult(exit_status=process.returncode, output=output or "")
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                output = self._stop(process)
                return ExecResult(exit_status=-1, output=output + "\n[cancelled]")
            if deadline is not None and time.monotonic() >= deadline:
                self._stop(process)
                raise StageTimeout(timeout, {"agent_id": handle.agent_id, "command": args[0]})

    def _stop(self, process: subprocess.Popen) -> str:
        process.kill()
        output, _ = process.communicate()
        return output or ""
