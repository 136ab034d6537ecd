"""Tests for error classification and recording."""

import json
import os
import shutil
import tempfile

from releasepipe.core.errors import (
    AuthError, BindingNotFound, BuildError, ConfigError, ErrorCategory, ErrorHandler,
    ErrorSeverity, PipelineError, ProvisionTimeout, RetryPolicy, StageTimeout,
    TransientPushError
)


class TestErrorTaxonomy:
    """Test the error hierarchy."""

    def test_categories(self):
        assert ProvisionTimeout(120).category == ErrorCategory.PROVISIONING
        assert StageTimeout(30).category == ErrorCategory.EXECUTION
        assert BuildError("bad").category == ErrorCategory.BUILD
        assert AuthError("denied").severity == ErrorSeverity.HIGH
        assert TransientPushError("502").severity == ErrorSeverity.LOW

    def test_binding_not_found_is_config_error(self):
        error = BindingNotFound("github.com/example/app")

        assert isinstance(error, ConfigError)
        assert isinstance(error, PipelineError)
        assert error.key == "repository"
        assert "github.com/example/app" in error.message

    def test_timeout_messages(self):
        assert str(ProvisionTimeout(120)) == "Agent not ready after 120 seconds"
        assert str(StageTimeout(1.5)) == "Command timed out after 1.5 seconds"

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_attempts=5, retry_delay=0.5)

        assert [policy.delay_for(attempt) for attempt in range(1, 5)] == [0.5, 1.0, 2.0, 4.0]


class TestErrorHandler:
    """Test error handler functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.log_path = os.path.join(self.temp_dir, "logs", "errors.jsonl")
        self.error_handler = ErrorHandler(self.log_path)

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_classify_pipeline_error(self):
        context = self.error_handler.classify_error(
            BuildError("COPY failed"), {"run_id": "run-000001", "stage_name": "build-and-push"}
        )

        assert context.category == ErrorCategory.BUILD
        assert context.severity == ErrorSeverity.MEDIUM
        assert context.exception_type == "BuildError"
        assert context.run_id == "run-000001"
        assert context.stage_name == "build-and-push"

    def test_classify_builtin_errors(self):
        network = self.error_handler.classify_error(ConnectionError("reset"), {})
        system = self.error_handler.classify_error(PermissionError("denied"), {})
        other = self.error_handler.classify_error(ValueError("odd"), {})

        assert network.category == ErrorCategory.NETWORK
        assert system.category == ErrorCategory.SYSTEM
        assert system.severity == ErrorSeverity.HIGH
        assert other.severity == ErrorSeverity.MEDIUM
        assert network.run_id == "unknown"

    def test_error_log_file(self):
        self.error_handler.classify_error(AuthError("unauthorized"), {"run_id": "run-000002", "stage_name": "push"})

        with open(self.log_path) as f:
            entries = [json.loads(line) for line in f]

        assert len(entries) == 1
        assert entries[0]["category"] == "authentication"
        assert entries[0]["run_id"] == "run-000002"

    def test_statistics(self):
        self.error_handler.classify_error(BuildError("a"), {"stage_name": "build"})
        self.error_handler.classify_error(BuildError("b"), {"stage_name": "build"})
        self.error_handler.classify_error(StageTimeout(10), {"stage_name": "test"})

        stats = self.error_handler.get_error_statistics()

        assert stats["total_errors"] == 3
        assert stats["by_category"] == {"build": 2, "execution": 1}
        assert stats["by_stage"] == {"build": 2, "test": 1}

        self.error_handler.clear_error_history()
        assert self.error_handler.get_error_statistics() == {"total_errors": 0}

    def test_history_is_bounded(self):
        handler = ErrorHandler(max_history=2)

        for message in ("a", "b", "c"):
            handler.classify_error(BuildError(message), {"stage_name": "build"})

        assert [error.error_message for error in handler.error_history] == ["b", "c"]
        assert handler.get_error_statistics()["total_errors"] == 2

    def test_export_report(self):
        self.error_handler.classify_error(BuildError("a"), {"run_id": "run-000003", "stage_name": "build"})
        report_path = os.path.join(self.temp_dir, "reports", "errors.json")

        self.error_handler.export_error_report(report_path)

        with open(report_path) as f:
            report = json.load(f)
        assert report["statistics"]["total_errors"] == 1
        assert report["errors"][0]["run_id"] == "run-000003"
