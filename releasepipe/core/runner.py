"""Stage runner: drives a bound run through provisioning, stages and teardown."""

import logging
import threading
import time
from typing import List, Optional, Tuple

from .interfaces import (
    AgentHandle, CommandAction, CommandUnit, Credential, PipelineRun, RunStatus,
    StageDefinition, StageOutcome, StageResult
)
from .errors import (
    ErrorHandler, ExecutionError, ProvisionError, RunAborted, StageTimeout
)
from .provisioner import AgentProvisioner
from .publisher import RegistryPublisher


TRUNCATION_MARKER = "[... output truncated ...]\n"


def bound_output(output: str, limit: int) -> str:
    """Keep the last ``limit`` characters of ``output``."""
    if len(output) <= limit:
        return output
    return TRUNCATION_MARKER + output[-limit:]


class StageRunner:
    """Executes a PipelineRun's stages in order inside a private agent.

    State machine: Pending -> Provisioning -> Running -> Succeeded | Failed |
    Aborted. The agent is released before the terminal status is assigned,
    on every path that acquired one.
    """

    def __init__(self, provisioner: AgentProvisioner, publisher: Optional[RegistryPublisher] = None,
                 stage_timeout: float = 1800.0, output_limit: int = 65536,
                 error_handler: Optional[ErrorHandler] = None):
        self.provisioner = provisioner
        self.publisher = publisher
        self.stage_timeout = stage_timeout
        self.output_limit = output_limit
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(self.__class__.__name__)

    def execute(self, run: PipelineRun, credential: Optional[Credential] = None,
                cancel_event: Optional[threading.Event] = None) -> PipelineRun:
        """Run ``run`` to a terminal state and return it."""
        cancel_event = cancel_event or threading.Event()

        if cancel_event.is_set():
            run.skip_remaining("run aborted")
            run.transition(RunStatus.ABORTED, "Run aborted before it started")
            return run

        run.transition(RunStatus.PROVISIONING)
        self.logger.info(f"Run {run.run_id}: provisioning agent")

        try:
            handle = self.provisioner.acquire(run.agent, cancel_event)
        except RunAborted as e:
            run.skip_remaining("run aborted")
            run.transition(RunStatus.ABORTED, str(e))
            self.logger.warning(f"Run {run.run_id}: aborted during provisioning")
            return run
        except ProvisionError as e:
            run.skip_remaining("agent not provisioned")
            run.transition(RunStatus.FAILED, f"{type(e).__name__}: {str(e)}")
            self.logger.error(f"Run {run.run_id}: provisioning failed: {str(e)}")
            return run

        status, reason = RunStatus.FAILED, "Run ended unexpectedly"
        try:
            run.transition(RunStatus.RUNNING)
            status, reason = self._run_stages(run, handle, credential, cancel_event)
        except Exception as e:
            self.logger.exception(f"Run {run.run_id}: unexpected error while running stages")
            reason = f"Unexpected error: {str(e)}"
            if not run.is_terminal:
                run.skip_remaining("run ended unexpectedly")
        finally:
            self.provisioner.release(handle)

        run.transition(status, reason)
        self.logger.info(f"Run {run.run_id}: {status.value} ({reason})")
        return run

    def _run_stages(self, run: PipelineRun, handle: AgentHandle, credential: Optional[Credential],
                    cancel_event: threading.Event) -> Tuple[RunStatus, str]:
        failed: List[str] = []

        for stage in run.stages:
            if cancel_event.is_set():
                run.skip_remaining("run aborted")
                return RunStatus.ABORTED, f"Run aborted before stage '{stage.name}'"

            result = self._execute_stage(run, stage, handle, credential, cancel_event)
            run.record_stage(result)

            if cancel_event.is_set():
                run.skip_remaining("run aborted")
                return RunStatus.ABORTED, f"Run aborted during stage '{stage.name}'"

            if result.outcome == StageOutcome.FAILURE:
                failed.append(stage.name)
                if stage.abort_on_failure:
                    run.skip_remaining(f"stage '{stage.name}' failed")
                    return RunStatus.FAILED, f"Stage '{stage.name}' failed: {result.error}"
                self.logger.warning(f"Run {run.run_id}: stage {stage.name} failed, continuing")

        if failed:
            return RunStatus.FAILED, f"Stages failed: {', '.join(failed)}"
        return RunStatus.SUCCEEDED, f"All {len(run.stages)} stages succeeded"

    def _execute_stage(self, run: PipelineRun, stage: StageDefinition, handle: AgentHandle,
                       credential: Optional[Credential], cancel_event: threading.Event) -> StageResult:
        self.logger.info(f"Run {run.run_id}: executing stage {stage.name}")
        start_time = time.monotonic()
        limit = stage.timeout or self.stage_timeout
        deadline = start_time + limit
        outputs: List[str] = []
        outcome, error = StageOutcome.SUCCESS, None

        try:
            for unit in stage.commands:
                ok, output = self._execute_unit(unit, handle, credential, cancel_event,
                                                deadline - time.monotonic())
                outputs.append(output)
                if not ok:
                    outcome, error = StageOutcome.FAILURE, f"'{unit.describe()}' exited unsuccessfully"
                    break
                if time.monotonic() > deadline:
                    raise StageTimeout(limit, {"stage": stage.name})
        except Exception as e:
            error_context = self.error_handler.classify_error(e, {
                'run_id': run.run_id,
                'stage_name': stage.name,
            })
            outcome, error = StageOutcome.FAILURE, f"{error_context.exception_type}: {error_context.error_message}"
            outputs.append(str(e))

        if cancel_event.is_set() and outcome == StageOutcome.FAILURE:
            error = f"aborted ({error})"

        duration = time.monotonic() - start_time
        if outcome == StageOutcome.SUCCESS:
            self.logger.info(f"Run {run.run_id}: stage {stage.name} succeeded in {duration:.2f} seconds")
        else:
            self.logger.warning(f"Run {run.run_id}: stage {stage.name} failed: {error}")

        return StageResult(
            name=stage.name,
            outcome=outcome,
            output=bound_output("\n".join(o for o in outputs if o), self.output_limit),
            duration=duration,
            error=error,
        )

    def _execute_unit(self, unit: CommandUnit, handle: AgentHandle, credential: Optional[Credential],
                      cancel_event: threading.Event, timeout: float) -> Tuple[bool, str]:
        if unit.action == CommandAction.PUBLISH:
            if self.publisher is None:
                raise ExecutionError("Stage publishes an image but no publisher is configured")
            params = unit.param_map
            digest = self.publisher.build_and_push(
                params["image"], params["tag"], params["dockerfile"], credential,
                agent=handle, cancel_event=cancel_event, context=params.get("context", "."),
                timeout=timeout,
            )
            return True, f"Published {digest.reference} after {digest.attempts} attempt(s)"

        container = unit.container or handle.default_container
        result = self.provisioner.execute(handle, container, list(unit.args),
                                          timeout=timeout, cancel_event=cancel_event)
        return result.success, result.output
