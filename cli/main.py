"""
Main CLI interface for PropQueue

Provides command-line interface for queue management using typer.
"""

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box
from rich.markup import escape

from propqueue.config import QueueConfig
from propqueue.entry import Action, System
from propqueue.errors import PropQueueError
from propqueue.storage import QueueStorage
from propqueue.worker import Processor
from propqueue.utils import calculate_age, setup_logging, truncate_string

# Initialize typer app
app = typer.Typer(
    name="propqueue",
    help="Queue and propagate account changes to identity systems",
    add_completion=False
)

# Initialize consoles for rich output
console = Console()
err_console = Console(stderr=True)


def print_error(message: str):
    """Print error message"""
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str):
    """Print success message"""
    console.print(f"[green]Success:[/green] {escape(message)}")


def print_warning(message: str):
    """Print warning message"""
    console.print(f"[yellow]Warning:[/yellow] {escape(message)}")


def get_config(ctx: typer.Context) -> QueueConfig:
    return ctx.obj["config"]


def get_storage(ctx: typer.Context) -> QueueStorage:
    """Get or initialize storage for this invocation"""
    if ctx.obj.get("storage") is None:
        ctx.obj["storage"] = QueueStorage(get_config(ctx))
    return ctx.obj["storage"]


def fail(message: str):
    print_error(message)
    raise typer.Exit(1)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: $PROPQUEUE_CONFIG or ~/.propqueue/config.json)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
):
    """Load site configuration once per invocation"""
    try:
        config = QueueConfig.load(config_file)
    except PropQueueError as e:
        fail(str(e))

    level = (log_level or config.log_level).upper()
    setup_logging(level)
    ctx.obj = {"config": config, "storage": None}


def _enqueue(ctx: typer.Context, username: str, system: str, action: Action, payload=()):
    try:
        name = get_storage(ctx).enqueue(username, system, action, payload=payload)
    except PropQueueError as e:
        fail(f"Failed to queue {action.value} for '{username}': {e}")
    print_success(f"Queued {action.value} for '{name.username}' on {name.system.value}")
    console.print(f"Entry: {name.filename}")


@app.command()
def enable(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Account to enable"),
    system: str = typer.Option(System.AD.value, "--system", "-s", help="Target identity system"),
):
    """Queue enabling an account"""
    _enqueue(ctx, username, system, Action.ENABLE)


@app.command()
def disable(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Account to disable"),
    system: str = typer.Option(System.AD.value, "--system", "-s", help="Target identity system"),
):
    """Queue disabling an account"""
    _enqueue(ctx, username, system, Action.DISABLE)


@app.command()
def password(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Account whose password changes"),
    system: str = typer.Option(..., "--system", "-s", help="Target identity system (ad or afs)"),
    stdin: bool = typer.Option(False, "--stdin", help="Read the new password from the first line of stdin"),
):
    """Queue a password change.

    The password is prompted for without echo unless --stdin is given.

    Examples:
        propqueue password jdoe --system ad
        echo 'n3w-secret' | propqueue password jdoe --system afs --stdin
    """
    if stdin:
        new_password = sys.stdin.readline().rstrip('\r\n')
    else:
        new_password = typer.prompt("New password", hide_input=True, confirmation_prompt=True)

    if not new_password:
        fail("Password must not be empty")

    _enqueue(ctx, username, system, Action.PASSWORD, payload=[new_password])


@app.command("list")
def list_entries(ctx: typer.Context):
    """List pending queue entries"""
    try:
        rows = get_storage(ctx).list_entries()
    except PropQueueError as e:
        fail(f"Failed to list queue: {e}")

    if not rows:
        console.print("[yellow]No pending entries[/yellow]")
        return

    table = Table(title=f"Pending changes ({len(rows)} total)", box=box.ROUNDED)
    table.add_column("User", style="cyan")
    table.add_column("Action", style="white")
    table.add_column("System", style="green")
    table.add_column("Queued", style="yellow")
    table.add_column("Age", style="blue")

    for row in rows:
        action_color = {
            Action.PASSWORD.value: "magenta",
            Action.ENABLE.value: "green",
            Action.DISABLE.value: "red",
        }.get(row.action, "white")

        table.add_row(
            escape(truncate_string(row.username, 30)),
            f"[{action_color}]{row.action}[/{action_color}]",
            row.system,
            row.timestamp,
            calculate_age(row.queued_at),
        )

    console.print(table)


@app.command()
def process(
    ctx: typer.Context,
    silent: bool = typer.Option(
        False, "--silent", "-s", help="Only report failures that match no ignore pattern"
    ),
):
    """Run the worker over every queued entry"""
    config = get_config(ctx)
    try:
        summary = Processor(get_storage(ctx), config).process(silent=silent)
    except PropQueueError as e:
        fail(f"Queue processing aborted: {e}")

    if not silent and summary.results:
        console.print(
            f"Processed {len(summary.results)} entries: "
            f"[green]{summary.succeeded} succeeded[/green], "
            f"[red]{summary.failed} failed[/red], "
            f"[yellow]{summary.skipped} deferred[/yellow]"
        )


@app.command()
def purge(
    ctx: typer.Context,
    days: float = typer.Argument(..., help="Delete entries older than this many days"),
):
    """Delete queue entries older than DAYS"""
    try:
        summary = get_storage(ctx).purge(days)
    except PropQueueError as e:
        fail(f"Failed to purge queue: {e}")

    if summary.removed:
        print_success(f"Purged {len(summary.removed)} of {summary.examined} entries")
    if summary.failed:
        print_warning(f"Could not purge {len(summary.failed)} entries")


@app.command("config")
def show_config(ctx: typer.Context):
    """Show effective site configuration"""
    config = get_config(ctx)
    data = config.to_dict()
    patterns = data.pop('ignore_patterns')

    lines = [f"[bold]{key}:[/bold] {escape(str(value))}" for key, value in data.items()]
    lines.append("[bold]ignore_patterns:[/bold]")
    lines.extend(f"  • {escape(pattern)}" for pattern in patterns)
    if not patterns:
        lines.append("  (none)")

    console.print(Panel("\n".join(lines), title="PropQueue Configuration", expand=False))


def main():
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
