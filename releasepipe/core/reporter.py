"""Terminal status reporting back to the trigger origin."""

import datetime
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from .interfaces import PipelineRun, StatusSink
from .errors import ReportError, RetryPolicy


def _isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).isoformat()


def build_notification(run: PipelineRun) -> Dict[str, Any]:
    """Terminal notification payload for a run."""
    trigger = run.trigger
    return {
        "runId": run.run_id,
        "repository": trigger.repository if trigger else None,
        "commit": trigger.commit if trigger else None,
        "outcome": run.status.value,
        "reason": run.reason,
        "template": f"{run.template_name}@{run.template_version}",
        "stageSummaries": [result.summary() for result in run.stage_results],
        "startedAt": _isoformat(run.started_at),
        "endedAt": _isoformat(run.ended_at),
    }


class HttpStatusSink(StatusSink):
    """Posts notifications as JSON to an HTTP endpoint."""

    def __init__(self, default_url: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None, headers: Optional[Dict[str, str]] = None):
        self.default_url = default_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = headers or {}

    def post(self, notification: Mapping[str, Any], target: Optional[str] = None) -> None:
        url = target or self.default_url
        if not url:
            raise ReportError("No status URL configured")
        try:
            response = self.session.post(url, json=dict(notification), headers=self.headers,
                                         timeout=self.timeout)
        except requests.RequestException as e:
            raise ReportError(f"Status delivery to {url} failed: {str(e)}") from e
        if response.status_code >= 300:
            raise ReportError(f"Status endpoint {url} returned {response.status_code}")


class LogStatusSink(StatusSink):
    """Writes notifications to the log."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def post(self, notification: Mapping[str, Any], target: Optional[str] = None) -> None:
        stages = ", ".join(f"{s['name']}={s['outcome']}" for s in notification.get("stageSummaries", []))
        self.logger.info(f"Run {notification['runId']} {notification['outcome']}: "
                         f"{notification.get('reason')} [{stages}]")


class StatusReporter:
    """Posts exactly one terminal status per run, with bounded retry.

    Delivery failures are logged and never change the run's outcome. Only the
    most recent ``max_tracked`` run ids are remembered for deduplication.
    """

    def __init__(self, sink: StatusSink, retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep, max_tracked: int = 10000):
        self.sink = sink
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, retry_delay=1.0)
        self.sleep = sleep
        self.max_tracked = max_tracked
        self._reported: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def on_run_terminal(self, run: PipelineRun, target: Optional[str] = None) -> bool:
        """Deliver the run's terminal status; returns whether delivery succeeded."""
        if not run.is_terminal:
            raise ValueError(f"Run {run.run_id} is {run.status.value}, not terminal")

        with self._lock:
            if run.run_id in self._reported:
                self.logger.warning(f"Run {run.run_id} already reported; ignoring")
                return False
            self._reported[run.run_id] = None
            while len(self._reported) > self.max_tracked:
                self._reported.popitem(last=False)

        notification = build_notification(run)
        max_attempts = self.retry_policy.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                self.sink.post(notification, target)
                self.logger.info(f"Reported {run.run_id} as {run.status.value}")
                return True
            except ReportError as e:
                if attempt == max_attempts:
                    self.logger.error(f"Giving up reporting {run.run_id} after {attempt} attempts: {str(e)}")
                    return False
                delay = self.retry_policy.delay_for(attempt)
                self.logger.warning(f"Reporting {run.run_id} failed ({str(e)}), retrying in {delay:g}s")
                self.sleep(delay)
        return False

    def was_reported(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._reported
