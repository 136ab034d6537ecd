"""Error taxonomy, retry policies and error recording for pipeline runs."""

import time
import json
import logging
import traceback
import uuid
from collections import deque
from typing import Deque, Dict, Any, Optional, Tuple
from enum import Enum
from dataclasses import dataclass
from pathlib import Path


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of pipeline errors."""
    CONFIGURATION = "configuration"
    TEMPLATE = "template"
    PROVISIONING = "provisioning"
    EXECUTION = "execution"
    BUILD = "build"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    REPORTING = "reporting"
    CANCELLATION = "cancellation"
    SYSTEM = "system"


@dataclass
class RetryPolicy:
    """Bounded retry with optional exponential backoff."""
    max_attempts: int = 3
    retry_delay: float = 1.0
    exponential_backoff: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        if self.exponential_backoff:
            return self.retry_delay * (2 ** (attempt - 1))
        return self.retry_delay


@dataclass
class ErrorContext:
    """Context information for an error."""
    error_id: str
    timestamp: float
    run_id: str
    stage_name: str
    error_message: str
    exception_type: str
    stack_trace: str
    category: ErrorCategory
    severity: ErrorSeverity
    metadata: Dict[str, Any]


class PipelineError(Exception):
    """Base class for pipeline-specific errors."""

    def __init__(self, message: str, category: ErrorCategory, severity: ErrorSeverity,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or {}
        self.timestamp = time.time()


class ConfigError(PipelineError):
    """Caller-supplied configuration is invalid."""

    def __init__(self, message: str, key: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, ErrorSeverity.HIGH, context)
        self.key = key


class BindingNotFound(ConfigError):
    """No trigger binding exists for a repository."""

    def __init__(self, repository: str):
        super().__init__(f"No pipeline binding for repository: {repository}", key="repository")
        self.repository = repository


class CredentialNotFound(ConfigError):
    """A credential reference could not be resolved."""

    def __init__(self, ref: str):
        super().__init__(f"Credential not found: {ref}", key="credential")
        self.ref = ref


class TemplateError(PipelineError):
    """A template is malformed (an authoring bug, not a caller bug)."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.TEMPLATE, ErrorSeverity.HIGH, context)


class TemplateNotFound(TemplateError):
    """No template is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Template not found: {name}", {"name": name})
        self.name = name


class VersionNotFound(TemplateError):
    """The template exists but not in the requested version."""

    def __init__(self, name: str, version: str):
        super().__init__(f"Template {name} has no version {version}", {"name": name, "version": version})
        self.name = name
        self.version = version


class DuplicateVersion(TemplateError):
    """A (name, version) slot is already published."""

    def __init__(self, name: str, version: str):
        super().__init__(f"Template {name} version {version} is already published",
                         {"name": name, "version": version})
        self.name = name
        self.version = version


class ProvisionError(PipelineError):
    """The agent platform rejected or failed an agent request."""

    def __init__(self, message: str, severity: ErrorSeverity = ErrorSeverity.HIGH,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.PROVISIONING, severity, context)


class ProvisionTimeout(ProvisionError):
    """The agent did not become ready within the provisioning timeout."""

    def __init__(self, timeout: float, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Agent not ready after {timeout:g} seconds", context=context)
        self.timeout = timeout


class ExecutionError(PipelineError):
    """A stage command could not be run at all."""

    def __init__(self, message: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.EXECUTION, severity, context)


class StageTimeout(ExecutionError):
    """A stage command exceeded its time limit and was stopped."""

    def __init__(self, timeout: float, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Command timed out after {timeout:g} seconds", context=context)
        self.timeout = timeout


class BuildError(PipelineError):
    """Image build failed (bad Dockerfile, missing context)."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.BUILD, ErrorSeverity.MEDIUM, context)


class AuthError(PipelineError):
    """Registry rejected the credential."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH, context)


class TransientPushError(PipelineError):
    """Push failed for a reason worth retrying (network, registry 5xx)."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.NETWORK, ErrorSeverity.LOW, context)


class PublishError(PipelineError):
    """Push failed after exhausting retries."""

    def __init__(self, message: str, attempts: int = 0, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, context)
        self.attempts = attempts


class ReportError(PipelineError):
    """Status delivery to the trigger origin failed."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.REPORTING, ErrorSeverity.LOW, context)


class RunAborted(PipelineError):
    """The run was cancelled while waiting on the platform."""

    def __init__(self, message: str = "Run aborted", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CANCELLATION, ErrorSeverity.MEDIUM, context)


class OrchestratorShutDown(PipelineError):
    """A trigger arrived after the orchestrator stopped accepting work."""

    def __init__(self, message: str = "Orchestrator is shut down", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.SYSTEM, ErrorSeverity.HIGH, context)


class RunStateError(PipelineError):
    """Illegal state transition or mutation of a terminal run."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL, context)


class ErrorHandler:
    """Classifies and records errors raised while running stages."""

    def __init__(self, error_log_path: Optional[str] = None, max_history: int = 1000):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.error_log_path = Path(error_log_path) if error_log_path else None
        self.error_history: Deque[ErrorContext] = deque(maxlen=max_history)

        if self.error_log_path:
            self.error_log_path.parent.mkdir(parents=True, exist_ok=True)

    def classify_error(self, exception: Exception, context: Dict[str, Any]) -> ErrorContext:
        """Classify an error and create error context."""
        category, severity = self._categorize_error(exception)

        error_context = ErrorContext(
            error_id=str(uuid.uuid4()),
            timestamp=time.time(),
            run_id=context.get('run_id', 'unknown'),
            stage_name=context.get('stage_name', 'unknown'),
            error_message=str(exception),
            exception_type=type(exception).__name__,
            stack_trace="".join(traceback.format_exception(type(exception), exception,
                                                           exception.__traceback__)),
            category=category,
            severity=severity,
            metadata=context.copy()
        )

        self._log_error(error_context)
        self.error_history.append(error_context)

        return error_context

    def _categorize_error(self, exception: Exception) -> Tuple[ErrorCategory, ErrorSeverity]:
        """Categorize an error based on its type."""
        if isinstance(exception, PipelineError):
            return exception.category, exception.severity

        if isinstance(exception, (ConnectionError, TimeoutError)):
            return ErrorCategory.NETWORK, ErrorSeverity.MEDIUM

        if isinstance(exception, OSError):
            return ErrorCategory.SYSTEM, ErrorSeverity.HIGH

        return ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM

    def _log_error(self, error_context: ErrorContext) -> None:
        """Log error to file and logger."""
        log_entry = {
            'error_id': error_context.error_id,
            'timestamp': error_context.timestamp,
            'run_id': error_context.run_id,
            'stage_name': error_context.stage_name,
            'error_message': error_context.error_message,
            'exception_type': error_context.exception_type,
            'category': error_context.category.value,
            'severity': error_context.severity.value,
        }

        if error_context.severity in [ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]:
            self.logger.error(f"Pipeline error [{error_context.error_id}] in "
                              f"{error_context.run_id}/{error_context.stage_name}: "
                              f"{error_context.error_message}")
        else:
            self.logger.warning(f"Pipeline warning [{error_context.error_id}] in "
                                f"{error_context.run_id}/{error_context.stage_name}: "
                                f"{error_context.error_message}")

        if self.error_log_path:
            try:
                with open(self.error_log_path, 'a') as f:
                    f.write(json.dumps(log_entry) + '\n')
            except OSError as e:
                self.logger.error(f"Failed to write error log: {str(e)}")

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics from history."""
        if not self.error_history:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(self.error_history),
            "by_category": {},
            "by_severity": {},
            "by_stage": {},
        }

        for error in self.error_history:
            category = error.category.value
            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

            severity = error.severity.value
            stats["by_severity"][severity] = stats["by_severity"].get(severity, 0) + 1

            stage = error.stage_name
            stats["by_stage"][stage] = stats["by_stage"].get(stage, 0) + 1

        return stats

    def clear_error_history(self) -> None:
        """Clear the error history."""
        self.error_history.clear()
        self.logger.info("Error history cleared")

    def export_error_report(self, output_path: str) -> None:
        """Export detailed error report to file."""
        report = {
            "generated_at": time.time(),
            "statistics": self.get_error_statistics(),
            "errors": [
                {
                    "error_id": error.error_id,
                    "timestamp": error.timestamp,
                    "run_id": error.run_id,
                    "stage_name": error.stage_name,
                    "error_message": error.error_message,
                    "category": error.category.value,
                    "severity": error.severity.value,
                }
                for error in self.error_history
            ]
        }

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)

        self.logger.info(f"Error report exported to {output_path}")
