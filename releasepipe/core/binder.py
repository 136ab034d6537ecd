"""Parameter binding: validates caller configuration and produces bound runs."""

import itertools
import logging
import re
import threading
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..config.schema import RunConfiguration
from .interfaces import CommandUnit, PipelineRun, PipelineTemplate, StageDefinition, TriggerEvent
from .errors import ConfigError, TemplateError


PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


class ParameterBinder:
    """Binds a RunConfiguration into a template's command units."""

    def __init__(self, id_prefix: str = "run"):
        self.id_prefix = id_prefix
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def next_run_id(self) -> str:
        with self._counter_lock:
            return f"{self.id_prefix}-{next(self._counter):06d}"

    def validate(self, config: Union[RunConfiguration, Mapping[str, Any]]) -> RunConfiguration:
        """
        Validate caller configuration.

        Raises:
            ConfigError: naming the first offending key
        """
        if isinstance(config, RunConfiguration):
            return config
        if not isinstance(config, Mapping):
            raise ConfigError(f"Configuration must be a mapping, got {type(config).__name__}")

        try:
            return RunConfiguration.model_validate(dict(config))
        except PydanticValidationError as e:
            errors = e.errors()
            first = errors[0]
            key = str(first['loc'][0]) if first['loc'] else None
            if first['type'] == 'extra_forbidden':
                message = f"Unrecognized configuration key: {key}"
            elif first['type'] == 'missing':
                message = f"Missing required configuration key: {key}"
            else:
                message = f"Invalid value for {key}: {first['msg']}"
            details = ["{}: {}".format(" -> ".join(str(loc) for loc in error['loc']), error['msg'])
                       for error in errors]
            raise ConfigError(message, key=key, context={"errors": details}) from None

    def bind(self, template: PipelineTemplate, config: Union[RunConfiguration, Mapping[str, Any]],
             variables: Optional[Mapping[str, str]] = None,
             trigger: Optional[TriggerEvent] = None) -> PipelineRun:
        """
        Bind configuration into a template.

        Args:
            template: Resolved template
            config: Raw configuration mapping or validated RunConfiguration
            variables: Extra placeholder values
            trigger: Event that caused the run; its fields become placeholders

        Returns:
            PipelineRun: Pending run with a fresh identity

        Raises:
            ConfigError: Invalid caller configuration
            TemplateError: Placeholders left unresolved after substitution
        """
        configuration = self.validate(config)

        unknown = sorted(configuration.continue_on_stage_failure - set(template.stage_names()))
        if unknown:
            raise ConfigError(f"continueOnStageFailure names unknown stages: {', '.join(unknown)}",
                              key="continueOnStageFailure")

        values: Dict[str, str] = {}
        if trigger is not None:
            values.update(trigger.variables())
        if variables:
            values.update({k: str(v) for k, v in variables.items()})
        values.update(configuration.variables())

        unresolved: List[str] = []
        stages = []
        for stage in template.stages:
            commands = tuple(self._bind_unit(unit, values, stage.name, unresolved) for unit in stage.commands)
            stages.append(StageDefinition(
                name=stage.name,
                commands=commands,
                abort_on_failure=stage.abort_on_failure and stage.name not in configuration.continue_on_stage_failure,
                timeout=stage.timeout,
            ))

        if unresolved:
            raise TemplateError(
                f"Template {template.name} {template.version} has unresolved placeholders: "
                f"{', '.join(unresolved)}",
                {"template": template.name, "version": template.version, "unresolved": unresolved}
            )

        run = PipelineRun(
            run_id=self.next_run_id(),
            template_name=template.name,
            template_version=template.version,
            configuration=configuration,
            stages=tuple(stages),
            agent=template.agent,
            trigger=trigger,
        )
        self.logger.info(f"Bound {run.run_id} to template {template.name} {template.version} "
                         f"({len(stages)} stages)")
        return run

    def _bind_unit(self, unit: CommandUnit, values: Mapping[str, str], stage_name: str,
                   unresolved: List[str]) -> CommandUnit:
        def substitute(text: str) -> str:
            def replace(match):
                name = match.group(1)
                if name in values:
                    return values[name]
                unresolved.append(f"{stage_name}: ${{{name}}}")
                return match.group(0)
            return PLACEHOLDER.sub(replace, text)

        return CommandUnit(
            action=unit.action,
            args=tuple(substitute(arg) for arg in unit.args),
            params=tuple((key, substitute(value)) for key, value in unit.params),
            container=unit.container,
        )

    def render(self, run: PipelineRun) -> Dict[str, List[str]]:
        """Bound commands per stage, for dry runs."""
        return {stage.name: [unit.describe() for unit in stage.commands] for stage in run.stages}
