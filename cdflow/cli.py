"""Command-line interface for cdflow."""

import click
import getpass
import json
import logging
import sys
import yaml
from pathlib import Path
from typing import Optional, Tuple
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config.manager import ConfigManager
from .config.schema import LoggingConfig, PipelineConfig
from .core.interfaces import ActionStatus, Decision, RunStatus
from .core.orchestrator import PipelineEngine
from .core.state import RunState


# Initialize rich console for better output formatting
console = Console()

STATUS_STYLES = {
    RunStatus.SUCCEEDED.value: "green",
    ActionStatus.SUCCEEDED.value: "green",
    "Completed": "green",
    RunStatus.RUNNING.value: "yellow",
    ActionStatus.IN_PROGRESS.value: "yellow",
    "AwaitingApproval": "yellow",
    RunStatus.FAILED.value: "red",
    RunStatus.CANCELLED.value: "red",
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


def _apply_logging_config(ctx, logging_config: LoggingConfig):
    """Apply the configuration's logging section on top of the CLI flags."""
    root_logger = logging.getLogger()
    if not (ctx.obj and ctx.obj.get('verbose')):
        root_logger.setLevel(getattr(logging, logging_config.level.upper(), logging.INFO))

    if logging_config.file_path:
        Path(logging_config.file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logging_config.file_path)
        file_handler.setFormatter(logging.Formatter(logging_config.format))
        root_logger.addHandler(file_handler)


def _load_engine(ctx, config_path: str) -> Tuple[PipelineConfig, PipelineEngine]:
    config_manager = ConfigManager()
    pipeline_config = config_manager.load_config(config_path)
    _apply_logging_config(ctx, pipeline_config.logging)
    engine = config_manager.build_engine(pipeline_config)
    return pipeline_config, engine


def _styled(value: Optional[str]) -> str:
    if value is None:
        return "-"
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _fail(ctx, error: Exception):
    console.print(f"[red]Error:[/red] {str(error)}")
    if ctx.obj and ctx.obj.get('verbose'):
        console.print_exception()
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--log-file', type=click.Path(), help='Log file path')
@click.option('--version', is_flag=True, help='Show version and exit')
@click.pass_context
def cli(ctx, verbose: bool, log_file: Optional[str], version: bool):
    """cdflow - stage-sequencing pipelines with artifact passing and approval gates."""
    if version:
        console.print(f"cdflow version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        return

    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['log_file'] = log_file

    setup_logging(verbose, log_file)


config_option = click.option('--config', '-c', required=True, type=click.Path(exists=True),
                             help='Path to pipeline configuration file')


@cli.command()
@config_option
@click.option('--ref', help='Source ref to build (overrides the configured ref)')
@click.option('--trigger', type=click.Choice(['manual', 'source-change']), default='manual',
              help='What triggered the run')
@click.option('--wait/--no-wait', default=False, help='Keep polling until the run finishes')
@click.option('--timeout', type=float, help='Stop waiting after this many seconds')
@click.pass_context
def run(ctx, config: str, ref: Optional[str], trigger: str, wait: bool, timeout: Optional[float]):
    """Start a pipeline run and drive it as far as it can go."""
    try:
        with console.status("[bold green]Loading configuration..."):
            pipeline_config, engine = _load_engine(ctx, config)

        payload = {"trigger": trigger}
        if ref:
            payload["ref"] = ref

        run_id = engine.start_run(pipeline_config.pipeline.name, payload)
        console.print(f"[blue]Started run {run_id} of pipeline {pipeline_config.pipeline.name}[/blue]")

        if wait:
            state = engine.wait(run_id, timeout=timeout)
        else:
            state = engine.advance(run_id)

        _display_run_status(state)
        if state.status in (RunStatus.FAILED, RunStatus.CANCELLED):
            sys.exit(1)

    except Exception as e:
        _fail(ctx, e)


@cli.command()
@config_option
@click.argument('run_id', type=int)
@click.pass_context
def advance(ctx, config: str, run_id: int):
    """Resume a run from its persisted state."""
    try:
        _, engine = _load_engine(ctx, config)
        state = engine.advance(run_id)
        _display_run_status(state)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@config_option
@click.argument('run_id', type=int)
@click.option('--format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_context
def status(ctx, config: str, run_id: int, format: str):
    """Show the status of a run."""
    try:
        _, engine = _load_engine(ctx, config)
        state = engine.get_status(run_id)
        if format == 'json':
            console.print_json(json.dumps(state.model_dump(mode='json')))
        else:
            _display_run_status(state)
    except Exception as e:
        _fail(ctx, e)


def _decide(ctx, config: str, request_id: str, decision: Decision,
            approver: Optional[str], comment: Optional[str]):
    try:
        _, engine = _load_engine(ctx, config)
        state = engine.decide(request_id, decision, approver or getpass.getuser(), comment)
        console.print(f"[green]✓[/green] Recorded {decision.value} for request {request_id}")
        _display_run_status(state)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@config_option
@click.argument('request_id')
@click.option('--approver', help='Name recorded as the approver (defaults to the current user)')
@click.option('--comment', help='Comment stored with the decision')
@click.pass_context
def approve(ctx, config: str, request_id: str, approver: Optional[str], comment: Optional[str]):
    """Approve a pending approval request and resume its run."""
    _decide(ctx, config, request_id, Decision.APPROVED, approver, comment)


@cli.command()
@config_option
@click.argument('request_id')
@click.option('--approver', help='Name recorded as the approver (defaults to the current user)')
@click.option('--comment', help='Comment stored with the decision')
@click.pass_context
def reject(ctx, config: str, request_id: str, approver: Optional[str], comment: Optional[str]):
    """Reject a pending approval request; its run fails."""
    _decide(ctx, config, request_id, Decision.REJECTED, approver, comment)


@cli.command()
@config_option
@click.pass_context
def approvals(ctx, config: str):
    """List pending approval requests."""
    try:
        _, engine = _load_engine(ctx, config)
        pending = engine.gate.pending()

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Request ID", style="cyan")
        table.add_column("Run", style="green")
        table.add_column("Stage", style="yellow")
        table.add_column("Action", style="blue")

        for request in pending:
            table.add_row(request.request_id, str(request.run_id), request.stage_name,
                          request.action_name or "-")

        console.print(table)
        console.print(f"\n[dim]{len(pending)} pending approval requests[/dim]")
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@config_option
@click.argument('run_id', type=int)
@click.pass_context
def cancel(ctx, config: str, run_id: int):
    """Cancel a run."""
    try:
        _, engine = _load_engine(ctx, config)
        state = engine.cancel(run_id)
        _display_run_status(state)
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@config_option
@click.option('--limit', type=int, default=10, help='Limit number of results')
@click.option('--format', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
@click.pass_context
def history(ctx, config: str, limit: int, format: str):
    """List recent runs of the configured pipeline."""
    try:
        pipeline_config, engine = _load_engine(ctx, config)
        runs = engine.get_execution_history(pipeline_config.pipeline.name, limit=limit)

        if format == 'json':
            console.print_json(json.dumps(runs))
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Run", style="cyan")
        table.add_column("Status")
        table.add_column("Stage", style="yellow")
        table.add_column("Reason", style="dim")

        for summary in runs:
            table.add_row(
                str(summary['run_id']),
                _styled(summary['status']),
                summary['stage'] or "-",
                summary['reason'] or "-"
            )

        console.print(table)
        console.print(f"\n[dim]Showing {len(runs)} runs[/dim]")
    except Exception as e:
        _fail(ctx, e)


@cli.command()
@click.option('--output', '-o', type=click.Path(), default='./cdflow.yaml',
              help='Output path for configuration template')
@click.option('--format', type=click.Choice(['yaml', 'json']), default='yaml',
              help='Output format')
def init(output: str, format: str):
    """Initialize a new pipeline configuration template."""
    try:
        config_manager = ConfigManager()
        default_config = config_manager.get_default_config()

        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            if format == 'yaml':
                yaml.dump(default_config, f, default_flow_style=False, indent=2, sort_keys=False)
            else:
                json.dump(default_config, f, indent=2)

        console.print(f"[green]✓[/green] Configuration template created: {output_path}")

        panel = Panel(
            f"""[bold]Next Steps:[/bold]

1. Edit the configuration file: {output_path}
2. Validate it: cdflow validate --config {output_path}
3. Start a run: cdflow run --config {output_path}
4. Approve the production deploy: cdflow approve --config {output_path} <request-id>

[dim]For more help, run: cdflow --help[/dim]""",
            title="Getting Started",
            border_style="green"
        )
        console.print(panel)

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


@cli.command()
@config_option
def validate(config: str):
    """Validate a pipeline configuration file."""
    try:
        with console.status("[bold green]Validating configuration..."):
            config_manager = ConfigManager()
            validation_result = config_manager.validate_schema(
                config_manager.resolve_variables(config_manager._load_raw_config(Path(config)) or {})
            )

        if validation_result.valid:
            console.print(f"[green]✓[/green] Configuration is valid: {config}")

            if validation_result.warnings:
                console.print("\n[yellow]Warnings:[/yellow]")
                for warning in validation_result.warnings:
                    console.print(f"  [yellow]•[/yellow] {warning}")

            _display_config_summary(validation_result.config)
        else:
            console.print(f"[red]✗[/red] Configuration is invalid: {config}")
            console.print("\n[red]Errors:[/red]")
            for error in validation_result.errors:
                console.print(f"  [red]•[/red] {error}")
            sys.exit(1)

    except Exception as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        sys.exit(1)


def _display_config_summary(config: PipelineConfig):
    """Display the stages and actions of a configuration."""
    console.print(f"\n[bold]Pipeline:[/bold] {config.pipeline.name}")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="cyan")
    table.add_column("Action", style="green")
    table.add_column("Capability", style="yellow")
    table.add_column("Run Order", style="blue")
    table.add_column("Artifacts", style="dim")

    for stage in config.pipeline.stages:
        for action in stage.actions:
            artifacts = f"{action.input_artifact or '-'} -> {action.output_artifact or '-'}"
            table.add_row(stage.name, action.name, action.capability.value,
                          str(action.run_order), artifacts)

    console.print(table)


def _display_run_status(state: RunState):
    """Display a run's stages, actions and pending approvals."""
    console.print(f"\n[bold]Run {state.run_id}[/bold] ({state.pipeline_name}): {_styled(state.status.value)}")
    if state.reason:
        console.print(f"[red]Reason:[/red] {state.reason} - {state.reason_detail}")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="cyan")
    table.add_column("Stage Status")
    table.add_column("Action", style="green")
    table.add_column("Action Status")
    table.add_column("Attempts", style="dim")

    for action_state in sorted(state.actions.values(),
                               key=lambda a: (a.stage_index, a.action_index)):
        stage_state = state.stages[action_state.stage_index]
        table.add_row(
            stage_state.name,
            _styled(stage_state.status.value),
            action_state.name,
            _styled(action_state.status.value),
            str(action_state.attempts)
        )

    console.print(table)

    for request in state.pending_approvals():
        console.print(f"[yellow]Awaiting approval:[/yellow] {request.stage_name}/{request.action_name} "
                      f"request [cyan]{request.request_id}[/cyan]")


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
