"""Example running release pipelines on the local agent platform."""

import sys
import tempfile
import threading
from pathlib import Path

import yaml

from releasepipe.config.manager import ConfigManager
from releasepipe.config.schema import EngineConfig
from releasepipe.core.interfaces import TriggerEvent
from releasepipe.engine import create_orchestrator


def write_template(templates_dir: Path):
    """A template that needs only a Python interpreter."""
    template = {
        "name": "python-check",
        "version": "1.0.0",
        "description": "Minimal pipeline for the local demo",
        "agent": {"containers": [{"name": "python", "image": "python:3.11-slim",
                                  "env": {"PYTHONUNBUFFERED": "1"}}]},
        "stages": [
            {"name": "prepare", "commands": [
                {"exec": [sys.executable, "-c", "open('app.py', 'w').write('print(40 + 2)')"]},
            ]},
            {"name": "test", "commands": [
                {"exec": [sys.executable, "app.py"]},
            ]},
            {"name": "package", "commands": [
                {"exec": [sys.executable, "-c", "print('packaging ${imageName}:${imageTag} on ${port}')"]},
            ]},
            {"name": "slow", "abort_on_failure": False, "commands": [
                {"exec": [sys.executable, "-c", "import time; time.sleep(20)"]},
            ]},
        ],
    }
    with open(templates_dir / "python_check.yaml", "w") as f:
        yaml.dump(template, f, sort_keys=False)


def build_config(work_dir: Path) -> EngineConfig:
    """Engine configuration with two bound repositories."""
    templates_dir = work_dir / "templates"
    templates_dir.mkdir()
    write_template(templates_dir)

    config = {
        "settings": {"provision_timeout": 10, "provision_poll_interval": 0.1, "stage_timeout": 60},
        "templates_dir": str(templates_dir),
        "bindings": [
            {
                "repository": "github.com/example/flaskapp-logger",
                "template": "python-check",
                "config": {"imageName": "example/logger", "imageTag": "20", "port": 5000,
                           "repoUrl": "https://github.com/example/flaskapp-logger.git",
                           "continueOnStageFailure": ["slow"]},
            },
            {
                "repository": "github.com/example/billing",
                "template": "python-check",
                "config": {"imageName": "example/billing", "imageTag": "7", "port": 8080,
                           "repoUrl": "https://github.com/example/billing.git"},
            },
        ],
    }
    config_path = work_dir / "releasepipe.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f, sort_keys=False)

    return ConfigManager().load_config(str(config_path))


def print_run(run):
    print(f"\n{run.run_id} ({run.trigger.repository}): {run.status.value}")
    print(f"  reason: {run.reason}")
    for result in run.stage_results:
        print(f"  {result.name:<10} {result.outcome.value:<8} {result.duration:6.2f}s  {result.error or ''}")


def main():
    """Run two pipelines concurrently and cancel one of them."""
    print("RELEASE PIPELINE DEMONSTRATION")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as temp_dir:
        config = build_config(Path(temp_dir))
        orchestrator = create_orchestrator(config)

        try:
            logger_run = orchestrator.on_trigger(
                TriggerEvent("github.com/example/flaskapp-logger", "refs/heads/main", "a1b2c3d"))
            billing_run = orchestrator.on_trigger(
                TriggerEvent("github.com/example/billing", "refs/heads/main", "e4f5a6b"))
            print(f"Started {logger_run} and {billing_run}")

            # Both runs reach the slow stage; give up on the billing one.
            threading.Timer(3.0, orchestrator.cancel, args=(billing_run,)).start()

            for run_id in (logger_run, billing_run):
                print_run(orchestrator.wait(run_id, timeout=120))
        finally:
            orchestrator.shutdown(wait=True, cancel_runs=True)


if __name__ == "__main__":
    main()
