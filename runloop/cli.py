"""CLI interface for runloop."""

from contextlib import contextmanager
from typing import Optional

import typer

from .backend import BackendClient
from .config import load_config
from .errors import BackendError, ConfigurationError, SpawnError
from .launcher import LaunchRequest, RunLauncher
from .models import RunStatus
from .supervisor import RunSupervisor
from . import ui


app = typer.Typer(
    name="runloop",
    help="Autonomous coding-agent run loop: launch, supervise, cancel and retry runs",
    no_args_is_help=True,
)


@contextmanager
def open_backend():
    """Load configuration and yield (config, client); exits 1 on bad configuration."""
    try:
        config = load_config()
        client = BackendClient.from_config(config)
    except ConfigurationError as e:
        ui.print_error(str(e))
        raise typer.Exit(1)
    with client:
        yield config, client


@app.command()
def supervise(
    run_id: str = typer.Option(..., "--run-id", "-r", help="Run to execute"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Echo agent output to the console"),
):
    """Execute a run's iteration loop (normally started by 'runloop start')."""
    with open_backend() as (config, client):
        supervisor = RunSupervisor(client, run_id, config=config, verbose=verbose)
        try:
            run = supervisor.run()
        except BackendError as e:
            ui.print_error(f"Could not load run {run_id}: {e}")
            raise typer.Exit(1)

    if run.status == RunStatus.FAILED or supervisor.persist_failed:
        raise typer.Exit(1)


@app.command()
def start(
    branch: str = typer.Option(..., "--branch", "-b", help="Sandbox branch the agent commits to"),
    sprint: Optional[str] = typer.Option(None, "--sprint", "-s", help="Sprint ID (default: latest non-archived)"),
    board: Optional[str] = typer.Option(None, "--board", help="Legacy alias for --sprint"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-i", help="Iteration cap (default: project setting, else 5)"),
):
    """Create a run and start its supervisor in the background."""
    request = LaunchRequest(
        branch_name=branch,
        sprint_id=sprint,
        board_id=board,
        max_iterations=max_iterations,
    )
    with open_backend() as (config, client):
        try:
            run = RunLauncher(client, config).start(request)
        except (ConfigurationError, SpawnError, BackendError) as e:
            ui.print_error(str(e))
            raise typer.Exit(1)

    ui.print_run_table(run.to_dict())


@app.command()
def cancel(
    run_id: str = typer.Argument(..., help="Run to cancel"),
):
    """Request cancellation. Repeat to force-stop the supervisor process."""
    with open_backend() as (config, client):
        try:
            run = RunLauncher(client, config).cancel(run_id)
        except BackendError as e:
            ui.print_error(str(e))
            raise typer.Exit(1)

    color = ui.STATUS_COLORS.get(run.status.value, ui.WHITE)
    ui.console.print(f"[{color}]{run.run_id}: {run.status.value}[/]")
    if run.last_message:
        ui.console.print(f"[{ui.DIM}]{run.last_message}[/]")


@app.command()
def retry(
    run_id: str = typer.Argument(..., help="Finished run to retry"),
):
    """Start a fresh run over the same sprint and branch."""
    with open_backend() as (config, client):
        try:
            run = RunLauncher(client, config).retry(run_id)
        except (ConfigurationError, SpawnError, BackendError) as e:
            ui.print_error(str(e))
            raise typer.Exit(1)

    ui.print_run_table(run.to_dict())


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run to show"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of YAML"),
    table: bool = typer.Option(False, "--table", "-t", help="Print a formatted table"),
):
    """Show a run record."""
    with open_backend() as (config, client):
        try:
            run = client.read_run(run_id)
        except BackendError as e:
            ui.print_error(str(e))
            raise typer.Exit(1)

    if table:
        ui.print_run_table(run.to_dict())
    elif as_json:
        typer.echo(run.to_json())
    else:
        typer.echo(run.to_yaml())


if __name__ == "__main__":
    app()
