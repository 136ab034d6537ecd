"""Pipeline orchestrator: accepts triggers and runs pipelines concurrently."""

import logging
import threading
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Deque, Dict, List, Mapping, Optional

from ..config.schema import TriggerBinding
from .interfaces import Credential, CredentialStore, PipelineRun, TriggerEvent
from .binder import ParameterBinder
from .registry import TemplateRegistry
from .reporter import StatusReporter
from .runner import StageRunner
from .errors import BindingNotFound, CredentialNotFound, OrchestratorShutDown


class PipelineOrchestrator:
    """Turns trigger events into concurrently executing pipeline runs.

    Each run gets its own worker thread, cancel event and agent. Template,
    configuration and credential errors surface from ``on_trigger`` before
    any agent is requested.
    """

    def __init__(self, registry: TemplateRegistry, runner: StageRunner, reporter: StatusReporter,
                 bindings: Mapping[str, TriggerBinding],
                 binder: Optional[ParameterBinder] = None,
                 credential_store: Optional[CredentialStore] = None,
                 max_concurrent_runs: int = 4, run_retention: int = 1000):
        self.registry = registry
        self.runner = runner
        self.reporter = reporter
        self.bindings = dict(bindings)
        self.binder = binder or ParameterBinder()
        self.credential_store = credential_store
        self.max_concurrent_runs = max_concurrent_runs
        self.run_retention = run_retention
        self.logger = self._setup_structured_logger()

        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_runs,
                                            thread_name_prefix="pipeline-run")
        # Futures and cancel events exist only while a run is in flight.
        self._runs: "OrderedDict[str, PipelineRun]" = OrderedDict()
        self._futures: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._execution_history: Deque[Dict[str, Any]] = deque(maxlen=run_retention)
        self._shut_down = False
        self._lock = threading.Lock()

    def _setup_structured_logger(self) -> logging.Logger:
        """Setup structured logger with correlation ID support."""
        logger = logging.getLogger(self.__class__.__name__)

        class CorrelationFormatter(logging.Formatter):
            def format(self, record):
                correlation_id = getattr(threading.current_thread(), 'correlation_id', None)
                record.correlation_id = correlation_id or 'N/A'
                return super().format(record)

        formatter = CorrelationFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] - %(message)s'
        )

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)

        return logger

    def on_trigger(self, event: TriggerEvent) -> str:
        """
        Start a run for a push event and return its id without waiting.

        Raises:
            OrchestratorShutDown: ``shutdown`` was already called
            BindingNotFound: The repository has no binding
            CredentialNotFound: The binding's credential cannot be resolved
            ConfigError: The binding's configuration is invalid
            TemplateError: The template cannot be resolved or bound
        """
        if self._shut_down:
            raise OrchestratorShutDown(f"Orchestrator is shut down; ignoring push to {event.repository}")

        binding = self.bindings.get(event.repository)
        if binding is None:
            self.logger.warning(f"Ignoring push to unbound repository {event.repository}")
            raise BindingNotFound(event.repository)

        credential = self._resolve_credential(binding)
        template = self.registry.resolve(binding.template, binding.version)
        run = self.binder.bind(template, binding.config, trigger=event)

        cancel_event = threading.Event()
        with self._lock:
            if self._shut_down:
                raise OrchestratorShutDown(f"Orchestrator is shut down; ignoring push to {event.repository}")
            future = self._executor.submit(
                self._execute_run, run, credential, cancel_event, binding.status_url
            )
            self._runs[run.run_id] = run
            self._futures[run.run_id] = future
            self._cancel_events[run.run_id] = cancel_event
            self._execution_history.append({
                "run_id": run.run_id,
                "repository": event.repository,
                "ref": event.ref,
                "commit": event.commit,
                "template": template.name,
                "version": template.version,
                "created_at": run.created_at,
            })

        self.logger.info(f"Accepted push {event.commit} on {event.repository}@{event.ref} as {run.run_id}")
        return run.run_id

    def _resolve_credential(self, binding: TriggerBinding) -> Optional[Credential]:
        if not binding.credential:
            return None
        if self.credential_store is None:
            raise CredentialNotFound(binding.credential)
        return self.credential_store.resolve(binding.credential)

    def _execute_run(self, run: PipelineRun, credential: Optional[Credential],
                     cancel_event: threading.Event, status_url: Optional[str]) -> PipelineRun:
        threading.current_thread().correlation_id = run.run_id
        try:
            self.runner.execute(run, credential, cancel_event)
        finally:
            if run.is_terminal:
                try:
                    self.reporter.on_run_terminal(run, status_url)
                except Exception as e:
                    self.logger.error(f"Status reporting for {run.run_id} failed: {str(e)}")
            else:
                self.logger.error(f"Run {run.run_id} left {run.status.value}; not reported")
            self._forget(run.run_id)
            threading.current_thread().correlation_id = None
        return run

    def _forget(self, run_id: str) -> None:
        """Drop a finished run's future and cancel event; evict the oldest finished runs."""
        with self._lock:
            self._futures.pop(run_id, None)
            self._cancel_events.pop(run_id, None)
            finished = [rid for rid in self._runs if rid not in self._futures]
            for rid in finished[:max(0, len(finished) - self.run_retention)]:
                del self._runs[rid]

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; returns False if the run is unknown or finished."""
        with self._lock:
            cancel_event = self._cancel_events.get(run_id)
            run = self._runs.get(run_id)
        if cancel_event is None or run is None or run.is_terminal:
            return False
        cancel_event.set()
        self.logger.info(f"Cancellation requested for {run_id}")
        return True

    def wait(self, run_id: str, timeout: Optional[float] = None) -> PipelineRun:
        """Block until a run finishes and return it."""
        with self._lock:
            future = self._futures.get(run_id)
            run = self._runs.get(run_id)
        if future is not None:
            return future.result(timeout=timeout)
        if run is None:
            raise KeyError(f"Unknown run: {run_id}")
        return run

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self) -> List[PipelineRun]:
        with self._lock:
            return list(self._runs.values())

    def get_execution_history(self) -> List[Dict[str, Any]]:
        """Get the execution history."""
        with self._lock:
            return list(self._execution_history)

    def clear_execution_history(self) -> None:
        """Clear the execution history."""
        with self._lock:
            self._execution_history.clear()

    def shutdown(self, wait: bool = True, cancel_runs: bool = False) -> None:
        """Stop accepting work; optionally cancel runs in flight."""
        with self._lock:
            self._shut_down = True
            events = list(self._cancel_events.values())
        if cancel_runs:
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait)
        self.logger.info("Orchestrator shut down")
