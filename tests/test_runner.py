"""Tests for the stage runner state machine."""

import threading

import pytest

from releasepipe.core.binder import ParameterBinder
from releasepipe.core.errors import (
    AuthError, BuildError, ErrorHandler, ProvisionError, RetryPolicy, RunStateError, StageTimeout,
    TransientPushError
)
from releasepipe.core.interfaces import (
    Credential, ExecResult, RunStatus, StageOutcome, StageResult
)
from releasepipe.core.provisioner import AgentProvisioner
from releasepipe.core.publisher import RegistryPublisher
from releasepipe.core.runner import TRUNCATION_MARKER, StageRunner, bound_output

from fakes import DIGEST, FakeBuilder, FakePlatform, FakeRegistry, VALID_CONFIG, release_template


def outcomes(run):
    return [result.outcome for result in run.stage_results]


def failing(*words, exit_status=1):
    """Handler failing any command that contains one of ``words``."""
    def handler(container, args):
        if any(word in args for word in words):
            return ExecResult(exit_status=exit_status, output=f"{args[0]} failed")
        return ExecResult(exit_status=0, output="ok")
    return handler


class TestStageRunner:
    """Test stage execution, failure policy and teardown."""

    def setup_method(self):
        """Set up test fixtures."""
        self.platform = FakePlatform()
        self.provisioner = AgentProvisioner(self.platform, timeout=1.0, poll_interval=0.01)
        self.builder = FakeBuilder()
        self.registry = FakeRegistry()
        self.publisher = RegistryPublisher(self.builder, self.registry,
                                           RetryPolicy(max_attempts=3, retry_delay=0.0),
                                           sleep=lambda _: None)
        self.error_handler = ErrorHandler()
        self.runner = StageRunner(self.provisioner, self.publisher, error_handler=self.error_handler)
        self.binder = ParameterBinder()
        self.credential = Credential(ref="registry", mount_path="/secrets/registry")

    def bind(self, **overrides):
        return self.binder.bind(release_template(), dict(VALID_CONFIG, **overrides))

    def test_all_stages_succeed(self):
        run = self.runner.execute(self.bind(), self.credential)

        assert run.status == RunStatus.SUCCEEDED
        assert outcomes(run) == [StageOutcome.SUCCESS] * 4
        assert run.started_at is not None and run.ended_at >= run.started_at
        assert self.platform.released == ["fake-1"]
        assert self.builder.builds == [("logger:20", "./Dockerfile", ".")]
        assert self.registry.pushes == [("logger", "20", self.credential)]

    def test_exec_commands_run_in_order_on_their_containers(self):
        self.runner.execute(self.bind())

        assert [(container, args[0]) for _, container, args in self.platform.executed] == [
            ("python", "pip"), ("python", "python"), ("docker", "docker")
        ]

    def test_build_failure_skips_later_stages(self):
        self.builder.error = BuildError("Dockerfile not found: ./Dockerfil")

        run = self.runner.execute(self.bind(dockerfilePath="./Dockerfil"))

        assert run.status == RunStatus.FAILED
        assert outcomes(run) == [StageOutcome.SUCCESS, StageOutcome.SUCCESS,
                                 StageOutcome.FAILURE, StageOutcome.SKIPPED]
        assert "BuildError" in run.stage_results[2].error
        assert "build-and-push" in run.reason
        assert self.platform.released == ["fake-1"]
        assert self.error_handler.get_error_statistics()["by_category"] == {"build": 1}

    def test_failure_without_continue_skips_rest(self):
        self.platform.handler = failing("pytest")

        run = self.runner.execute(self.bind())

        assert run.status == RunStatus.FAILED
        assert outcomes(run) == [StageOutcome.SUCCESS, StageOutcome.FAILURE,
                                 StageOutcome.SKIPPED, StageOutcome.SKIPPED]
        assert self.builder.builds == []

    def test_failure_with_continue_runs_next_stage(self):
        self.platform.handler = failing("pytest")

        run = self.runner.execute(self.bind(continueOnStageFailure=["test"]))

        assert run.status == RunStatus.FAILED
        assert outcomes(run) == [StageOutcome.SUCCESS, StageOutcome.FAILURE,
                                 StageOutcome.SUCCESS, StageOutcome.SUCCESS]
        assert run.reason == "Stages failed: test"

    def test_provision_timeout_runs_nothing(self):
        platform = FakePlatform(never_ready=True)
        runner = StageRunner(AgentProvisioner(platform, timeout=0.05, poll_interval=0.01), self.publisher)

        run = runner.execute(self.bind())

        assert run.status == RunStatus.FAILED
        assert run.reason.startswith("ProvisionTimeout")
        assert outcomes(run) == [StageOutcome.SKIPPED] * 4
        assert platform.executed == []
        assert platform.released == []

    def test_cancel_during_provisioning_aborts(self):
        platform = FakePlatform(never_ready=True)
        runner = StageRunner(AgentProvisioner(platform, timeout=5.0, poll_interval=0.01), self.publisher)
        cancel_event = threading.Event()
        timer = threading.Timer(0.05, cancel_event.set)
        timer.start()

        run = runner.execute(self.bind(), cancel_event=cancel_event)

        timer.join()
        assert run.status == RunStatus.ABORTED
        assert outcomes(run) == [StageOutcome.SKIPPED] * 4
        assert platform.released == []
        assert platform.abandoned == ["fake-1"]
        assert platform.executed == []

    def test_rejected_agent_request_fails_run(self):
        platform = FakePlatform(acquire_error=ProvisionError("quota exceeded"))
        runner = StageRunner(AgentProvisioner(platform, timeout=1.0, poll_interval=0.01), self.publisher)

        run = runner.execute(self.bind())

        assert run.status == RunStatus.FAILED
        assert run.reason == "ProvisionError: quota exceeded"
        assert outcomes(run) == [StageOutcome.SKIPPED] * 4
        assert platform.released == []
        assert platform.executed == []

    def test_unexpected_collaborator_error_fails_only_its_stage(self):
        self.registry.outcomes = [RuntimeError("registry client bug")]

        run = self.runner.execute(self.bind(continueOnStageFailure=["build-and-push"]))

        assert run.status == RunStatus.FAILED
        assert outcomes(run) == [StageOutcome.SUCCESS, StageOutcome.SUCCESS,
                                 StageOutcome.FAILURE, StageOutcome.SUCCESS]
        assert run.stage_results[2].error == "RuntimeError: registry client bug"
        assert run.reason == "Stages failed: build-and-push"
        assert self.platform.released == ["fake-1"]

    def test_unexpected_collaborator_error_honours_abort_policy(self):
        self.builder.error = ValueError("bad build args")

        run = self.runner.execute(self.bind())

        assert outcomes(run) == [StageOutcome.SUCCESS, StageOutcome.SUCCESS,
                                 StageOutcome.FAILURE, StageOutcome.SKIPPED]
        assert run.reason.startswith("Stage 'build-and-push' failed: ValueError")

    def test_publish_stage_respects_its_timeout(self):
        self.builder.delay = 0.3
        run = self.binder.bind(release_template(publish_timeout=0.1), VALID_CONFIG)

        run = self.runner.execute(run)

        result = run.stage_results[2]
        assert result.outcome == StageOutcome.FAILURE
        assert result.error.startswith("StageTimeout")
        assert self.builder.timeouts[0] <= 0.1
        assert self.registry.pushes == []
        assert run.status == RunStatus.FAILED

    def test_publish_calls_receive_remaining_stage_time(self):
        run = self.binder.bind(release_template(publish_timeout=60), VALID_CONFIG)

        self.runner.execute(run)

        assert 0 < self.builder.timeouts[0] <= 60
        assert 0 < self.registry.timeouts[0] <= self.builder.timeouts[0]

    def test_auth_failure_not_retried(self):
        self.registry.outcomes = [AuthError("unauthorized")]

        run = self.runner.execute(self.bind())

        assert run.status == RunStatus.FAILED
        assert len(self.registry.pushes) == 1
        assert run.stage_results[2].error.startswith("AuthError")

    def test_transient_push_retried_within_stage(self):
        self.registry.outcomes = [TransientPushError("502"), TransientPushError("502"), DIGEST]

        run = self.runner.execute(self.bind())

        assert run.status == RunStatus.SUCCEEDED
        assert run.stage_results[2].outcome == StageOutcome.SUCCESS
        assert "after 3 attempt(s)" in run.stage_results[2].output
        assert len(self.registry.pushes) == 3

    def test_command_timeout_fails_stage(self):
        def handler(container, args):
            if "pytest" in args:
                raise StageTimeout(1800)
            return ExecResult(exit_status=0)

        self.platform.handler = handler

        run = self.runner.execute(self.bind())

        assert run.stage_results[1].outcome == StageOutcome.FAILURE
        assert run.stage_results[1].error.startswith("StageTimeout")
        assert self.platform.released == ["fake-1"]

    def test_cancel_during_stage_aborts(self):
        cancel_event = threading.Event()

        def handler(container, args):
            if "pytest" in args:
                cancel_event.set()
                return ExecResult(exit_status=-1, output="[cancelled]")
            return ExecResult(exit_status=0)

        self.platform.handler = handler

        run = self.runner.execute(self.bind(), cancel_event=cancel_event)

        assert run.status == RunStatus.ABORTED
        assert outcomes(run) == [StageOutcome.SUCCESS, StageOutcome.FAILURE,
                                 StageOutcome.SKIPPED, StageOutcome.SKIPPED]
        assert run.stage_results[1].error.startswith("aborted")
        assert self.platform.released == ["fake-1"]

    def test_cancel_before_start(self):
        cancel_event = threading.Event()
        cancel_event.set()

        run = self.runner.execute(self.bind(), cancel_event=cancel_event)

        assert run.status == RunStatus.ABORTED
        assert outcomes(run) == [StageOutcome.SKIPPED] * 4
        assert self.platform.acquired == []

    def test_release_exactly_once_on_every_path(self):
        scenarios = [
            failing(),
            failing("pytest"),
            failing("pip", "pytest", "docker"),
        ]
        for handler in scenarios:
            platform = FakePlatform(handler=handler)
            runner = StageRunner(AgentProvisioner(platform, timeout=1.0, poll_interval=0.01), self.publisher)

            run = runner.execute(self.bind())

            assert run.is_terminal
            assert platform.released == platform.acquired == ["fake-1"]

    def test_platform_fault_fails_run_and_releases(self):
        def handler(container, args):
            raise KeyError("bug in platform")

        self.platform.handler = handler

        run = self.runner.execute(self.bind())

        assert run.status == RunStatus.FAILED
        assert self.platform.released == ["fake-1"]
        assert len(run.stage_results) == 4

    def test_publish_without_publisher_fails_stage(self):
        runner = StageRunner(self.provisioner)

        run = runner.execute(self.bind())

        assert run.stage_results[2].outcome == StageOutcome.FAILURE
        assert "no publisher" in run.stage_results[2].error

    def test_output_is_bounded(self):
        self.platform.handler = lambda container, args: ExecResult(exit_status=0, output="x" * 5000)
        runner = StageRunner(self.provisioner, self.publisher, output_limit=1024)

        run = runner.execute(self.bind())

        output = run.stage_results[0].output
        assert output.startswith(TRUNCATION_MARKER)
        assert len(output) == len(TRUNCATION_MARKER) + 1024

    def test_terminal_run_rejects_mutation(self):
        run = self.runner.execute(self.bind())

        with pytest.raises(RunStateError):
            run.record_stage(StageResult(name="install", outcome=StageOutcome.SUCCESS))
        with pytest.raises(RunStateError):
            run.transition(RunStatus.RUNNING)

    def test_run_to_dict(self):
        run = self.runner.execute(self.bind())

        summary = run.to_dict()
        assert summary["status"] == "Succeeded"
        assert [stage["name"] for stage in summary["stages"]] == ["install", "test", "build-and-push", "cleanup"]


class TestBoundOutput:
    """Test stage output truncation."""

    def test_short_output_unchanged(self):
        assert bound_output("hello", 10) == "hello"

    def test_keeps_tail(self):
        assert bound_output("abcdefghij", 4) == TRUNCATION_MARKER + "ghij"
