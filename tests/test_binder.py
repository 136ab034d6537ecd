"""Tests for parameter binding."""

import pytest

from releasepipe.config.schema import RunConfiguration
from releasepipe.core.binder import ParameterBinder
from releasepipe.core.errors import ConfigError, TemplateError
from releasepipe.core.interfaces import (
    CommandAction, PipelineTemplate, RunStatus, StageDefinition, TriggerEvent
)

from fakes import VALID_CONFIG, agent_spec, exec_unit, release_template


class TestParameterBinder:
    """Test binding configuration into templates."""

    def setup_method(self):
        """Set up test fixtures."""
        self.binder = ParameterBinder()
        self.template = release_template()

    def test_bind_preserves_stage_count_and_order(self):
        for tag in ["1", "20", "v2.3.4"]:
            run = self.binder.bind(self.template, dict(VALID_CONFIG, imageTag=tag))

            assert [stage.name for stage in run.stages] == self.template.stage_names()
            assert run.status == RunStatus.PENDING
            assert run.stage_results == ()

    def test_placeholders_substituted_per_argument(self):
        run = self.binder.bind(self.template, VALID_CONFIG)

        test_stage = run.stages[1]
        assert test_stage.commands[0].args == ("python", "-m", "pytest", "--port", "5000")

        cleanup = run.stages[3]
        assert cleanup.commands[0].args == ("docker", "rmi", "logger:20")
        assert cleanup.commands[0].container == "docker"

    def test_publish_params_substituted(self):
        run = self.binder.bind(self.template, dict(VALID_CONFIG, dockerfilePath="docker/Dockerfile"))

        unit = run.stages[2].commands[0]
        assert unit.action == CommandAction.PUBLISH
        assert unit.param_map == {"image": "logger", "tag": "20",
                                  "dockerfile": "docker/Dockerfile", "context": "."}

    def test_substituted_values_stay_single_arguments(self):
        template = PipelineTemplate(
            name="clone",
            version="1",
            agent=agent_spec(),
            stages=(StageDefinition("checkout", (exec_unit("git", "clone", "${repoUrl}", "."),)),),
        )

        run = self.binder.bind(template, dict(VALID_CONFIG, repoUrl="https://x/y.git; rm -rf /"))

        assert run.stages[0].commands[0].args == ("git", "clone", "https://x/y.git; rm -rf /", ".")

    def test_missing_port_names_key(self):
        config = dict(VALID_CONFIG)
        del config["port"]

        with pytest.raises(ConfigError) as exc_info:
            self.binder.bind(self.template, config)

        assert exc_info.value.key == "port"
        assert "port" in str(exc_info.value)

    def test_out_of_range_port(self):
        with pytest.raises(ConfigError) as exc_info:
            self.binder.bind(self.template, dict(VALID_CONFIG, port=70000))

        assert exc_info.value.key == "port"

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            self.binder.bind(self.template, dict(VALID_CONFIG, imageTga="20"))

        assert exc_info.value.key == "imageTga"

    def test_empty_image_tag_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            self.binder.bind(self.template, dict(VALID_CONFIG, imageTag=""))

        assert exc_info.value.key == "imageTag"

    def test_non_mapping_config_rejected(self):
        with pytest.raises(ConfigError):
            self.binder.bind(self.template, ["imageName", "logger"])

    def test_accepts_validated_configuration(self):
        configuration = RunConfiguration(**VALID_CONFIG)

        run = self.binder.bind(self.template, configuration)

        assert run.configuration is configuration

    def test_continue_on_stage_failure_flips_abort_policy(self):
        run = self.binder.bind(self.template, dict(VALID_CONFIG, continueOnStageFailure=["test"]))

        policies = {stage.name: stage.abort_on_failure for stage in run.stages}
        assert policies == {"install": True, "test": False, "build-and-push": True, "cleanup": True}

    def test_continue_on_unknown_stage_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            self.binder.bind(self.template, dict(VALID_CONFIG, continueOnStageFailure=["deploy"]))

        assert exc_info.value.key == "continueOnStageFailure"

    def test_unresolved_placeholder_is_template_error(self):
        template = PipelineTemplate(
            name="broken",
            version="1",
            agent=agent_spec(),
            stages=(StageDefinition("deploy", (exec_unit("kubectl", "apply", "-n", "${namespace}"),)),),
        )

        with pytest.raises(TemplateError) as exc_info:
            self.binder.bind(template, VALID_CONFIG)

        assert "${namespace}" in str(exc_info.value)
        assert exc_info.value.context["unresolved"] == ["deploy: ${namespace}"]

    def test_trigger_variables_available(self):
        template = PipelineTemplate(
            name="tagged",
            version="1",
            agent=agent_spec(),
            stages=(StageDefinition("label", (exec_unit("echo", "${repository}@${commit}"),)),),
        )
        trigger = TriggerEvent(repository="github.com/example/app", ref="refs/heads/main", commit="abc123")

        run = self.binder.bind(template, VALID_CONFIG, trigger=trigger)

        assert run.stages[0].commands[0].args == ("echo", "github.com/example/app@abc123")
        assert run.trigger is trigger

    def test_configuration_wins_over_extra_variables(self):
        template = PipelineTemplate(
            name="vars",
            version="1",
            agent=agent_spec(),
            stages=(StageDefinition("echo", (exec_unit("echo", "${imageTag}", "${extra}"),)),),
        )

        run = self.binder.bind(template, VALID_CONFIG, variables={"imageTag": "other", "extra": "x"})

        assert run.stages[0].commands[0].args == ("echo", "20", "x")

    def test_run_ids_are_unique(self):
        ids = {self.binder.bind(self.template, VALID_CONFIG).run_id for _ in range(5)}

        assert len(ids) == 5
        assert all(run_id.startswith("run-") for run_id in ids)

    def test_template_is_not_mutated(self):
        before = self.template.stages[1].commands[0].args

        self.binder.bind(self.template, VALID_CONFIG)

        assert self.template.stages[1].commands[0].args == before
        assert "${port}" in before

    def test_render(self):
        run = self.binder.bind(self.template, VALID_CONFIG)

        rendered = self.binder.render(run)

        assert list(rendered) == self.template.stage_names()
        assert rendered["build-and-push"] == ["publish logger:20 from ./Dockerfile"]
