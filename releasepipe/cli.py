"""Command-line interface for Release Pipeline."""

import click
import logging
import sys
import time
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from . import __version__
from .config.manager import ConfigManager, BUNDLED_TEMPLATES_DIR
from .config.schema import EngineConfig, ValidationError
from .core.binder import ParameterBinder
from .core.errors import PipelineError
from .core.interfaces import PipelineRun, RunStatus, StageOutcome, TriggerEvent
from .engine import create_orchestrator


console = Console()

OUTCOME_STYLES = {
    StageOutcome.SUCCESS: "green",
    StageOutcome.FAILURE: "red",
    StageOutcome.SKIPPED: "dim",
}

STATUS_STYLES = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.ABORTED: "yellow",
}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        logging.getLogger().addHandler(file_handler)


@click.group(invoke_without_command=True)
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(), help='Log file path')
@click.option('--version', is_flag=True, help='Show version and exit')
@click.pass_context
def cli(ctx, verbose: bool, log_file: Optional[str], version: bool):
    """Release Pipeline - build, publish and smoke-test container images."""
    if version:
        console.print(f"Release Pipeline version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['log_file'] = log_file

    setup_logging(verbose, log_file)


@cli.command()
@click.option('--output', '-o', type=click.Path(), default='./releasepipe.yaml',
              help='Output path for the engine configuration')
@click.option('--format', type=click.Choice(['yaml', 'json']), default='yaml',
              help='Output format')
def init(output: str, format: str):
    """Create a starter engine configuration."""
    try:
        config_manager = ConfigManager()
        config = EngineConfig(**config_manager.get_default_config())
        config_manager.save_config(config, output, format=format)

        console.print(f"[green]✓[/green] Configuration created: {output}")
        panel = Panel(
            f"""[bold]Next Steps:[/bold]

1. Edit the bindings in {output}
2. Put a docker config.json under ./credentials/registry/
3. Check it: releasepipe validate --config {output}
4. Run a push: releasepipe trigger --config {output} --repository <repo> --commit <sha>""",
            title="Getting Started",
            border_style="green"
        )
        console.print(panel)

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--config', '-c', required=True, type=click.Path(exists=True),
              help='Path to engine configuration file to validate')
def validate(config: str):
    """Validate an engine configuration and the templates it uses."""
    try:
        config_manager = ConfigManager()
        with console.status("[bold green]Validating configuration..."):
            validation_result = config_manager.validate_schema(
                config_manager.resolve_variables(config_manager._load_raw_config(Path(config)) or {})
            )

        if not validation_result.valid:
            console.print(f"[red]✗[/red] Configuration is invalid: {config}")
            console.print("\n[red]Errors:[/red]")
            for error in validation_result.errors:
                console.print(f"  [red]•[/red] {error}")
            sys.exit(1)

        engine_config = config_manager.load_config(config, validate=False)
        registry = config_manager.build_registry(engine_config.templates_dir)
        binder = ParameterBinder()

        problems = []
        for binding in engine_config.bindings:
            try:
                template = registry.resolve(binding.template, binding.version)
                binder.bind(template, binding.config)
            except PipelineError as e:
                problems.append(f"{binding.repository}: {e.message}")

        if problems:
            console.print(f"[red]✗[/red] Bindings are invalid: {config}")
            for problem in problems:
                console.print(f"  [red]•[/red] {problem}")
            sys.exit(1)

        console.print(f"[green]✓[/green] Configuration is valid: {config}")
        if validation_result.warnings:
            console.print("\n[yellow]Warnings:[/yellow]")
            for warning in validation_result.warnings:
                console.print(f"  [yellow]•[/yellow] {warning}")
        console.print(f"{len(registry)} template(s), {len(engine_config.bindings)} binding(s)")

    except (ValidationError, PipelineError, OSError) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--templates-dir', '-t', type=click.Path(exists=True),
              help='Template directory (default: bundled templates)')
@click.option('--detailed', is_flag=True, help='Show stages of each template')
def templates(templates_dir: Optional[str], detailed: bool):
    """List available pipeline templates."""
    try:
        registry = ConfigManager().build_registry(templates_dir or str(BUNDLED_TEMPLATES_DIR))
    except (PipelineError, OSError) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Stages", style="yellow")
    table.add_column("Description", style="dim")

    for template in registry.list_templates():
        stages = ", ".join(template.stage_names()) if detailed else str(len(template.stages))
        table.add_row(template.name, template.version, stages, template.description)

    console.print(table)


@cli.command()
@click.option('--config', '-c', required=True, type=click.Path(exists=True),
              help='Path to engine configuration file')
@click.option('--repository', '-r', required=True, help='Repository identifier')
@click.option('--ref', default='refs/heads/main', help='Branch or ref')
@click.option('--commit', default='HEAD', help='Commit identifier')
def render(config: str, repository: str, ref: str, commit: str):
    """Bind a repository's configuration and show the commands without running them."""
    try:
        config_manager = ConfigManager()
        engine_config = config_manager.load_config(config)
        bindings = engine_config.binding_table()
        if repository not in bindings:
            console.print(f"[red]Error:[/red] No binding for repository {repository}")
            sys.exit(1)
        binding = bindings[repository]

        registry = config_manager.build_registry(engine_config.templates_dir)
        template = registry.resolve(binding.template, binding.version)
        binder = ParameterBinder()
        run = binder.bind(template, binding.config, trigger=TriggerEvent(repository, ref, commit))

        console.print(f"[bold]{template.name} {template.version}[/bold] for {repository}\n")
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Stage", style="cyan")
        table.add_column("Abort on failure", style="yellow")
        table.add_column("Commands", style="green")
        for stage in run.stages:
            commands = "\n".join(unit.describe() for unit in stage.commands)
            table.add_row(stage.name, "yes" if stage.abort_on_failure else "no", commands)
        console.print(table)

    except (PipelineError, OSError) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@click.option('--config', '-c', required=True, type=click.Path(exists=True),
              help='Path to engine configuration file')
@click.option('--repository', '-r', required=True, help='Repository identifier')
@click.option('--ref', default='refs/heads/main', help='Branch or ref')
@click.option('--commit', required=True, help='Commit identifier')
@click.option('--timeout', type=float, default=None, help='Seconds to wait before aborting the run')
@click.pass_context
def trigger(ctx, config: str, repository: str, ref: str, commit: str, timeout: Optional[float]):
    """Run the pipeline bound to a repository for one push."""
    orchestrator = None
    try:
        engine_config = ConfigManager().load_config(config)
        orchestrator = create_orchestrator(engine_config)

        run_id = orchestrator.on_trigger(TriggerEvent(repository=repository, ref=ref, commit=commit))
        console.print(f"[blue]Started {run_id} for {repository}@{ref} ({commit})[/blue]")

        started = time.monotonic()
        with console.status(f"[bold green]Running {run_id}..."):
            run = orchestrator.get_run(run_id)
            while not run.is_terminal:
                if timeout is not None and time.monotonic() - started > timeout:
                    orchestrator.cancel(run_id)
                    break
                time.sleep(0.5)
            run = orchestrator.wait(run_id)

        _display_run(run)
        if run.status != RunStatus.SUCCEEDED:
            sys.exit(1)

    except (PipelineError, OSError) as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)
    finally:
        if orchestrator is not None:
            orchestrator.shutdown(wait=True)


def _display_run(run: PipelineRun):
    """Display the per-stage breakdown of a finished run."""
    style = STATUS_STYLES.get(run.status, "white")
    console.print(f"\n[{style}]{run.run_id} {run.status.value}[/{style}]: {run.reason}")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="cyan")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", style="dim")

    for result in run.stage_results:
        outcome_style = OUTCOME_STYLES[result.outcome]
        table.add_row(
            result.name,
            f"[{outcome_style}]{result.outcome.value}[/{outcome_style}]",
            f"{result.duration:.1f}s",
            result.error or "",
        )

    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
