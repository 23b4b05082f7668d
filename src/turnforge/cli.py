"""Turnforge Command Line Interface.

Usage:
    turnforge apply RESPONSE     Parse a model response and apply its actions
    turnforge checkpoints        List checkpoints recorded in a project
    turnforge revert ID          Restore a project to a checkpoint
    turnforge auth login         Authorize this device in a browser
    turnforge auth status        Show the stored credential's status
    turnforge auth logout        Forget the stored credential
    turnforge config show        Show the effective configuration
"""

from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from typer import Argument, Option

from turnforge.config import Config, get_config
from turnforge.errors import CheckpointNotFound, DeviceAuthError, TurnforgeError, VersionControlError
from turnforge.logging_config import setup_logging
from turnforge.paths import paths

app = typer.Typer(
    name="turnforge",
    help="Turnforge - apply model-written actions to a project, one checkpoint per turn",
    add_completion=True,
    no_args_is_help=True,
)

auth_app = typer.Typer(help="Device authorization")
config_app = typer.Typer(help="Configuration management")

app.add_typer(auth_app, name="auth")
app.add_typer(config_app, name="config")

console = Console()

STATE_STYLES = {
    "applied": "green",
    "approved": "cyan",
    "pending_approval": "yellow",
    "rejected": "yellow",
    "failed": "red",
}


def _get_version() -> str:
    """Get package version."""
    try:
        from importlib.metadata import version

        return version("turnforge")
    except Exception:
        return "0.0.0a0"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Turnforge version {_get_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        Option("--version", "-V", callback=version_callback, is_eager=True, help="Show version"),
    ] = False,
    verbose: Annotated[
        bool,
        Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """Turnforge - apply model-written actions to a project, one checkpoint per turn."""
    config = get_config()
    setup_logging(
        level="DEBUG" if verbose else config.general.log_level,
        format=config.general.log_format,  # type: ignore[arg-type]
        max_bytes=config.general.log_max_bytes,
        backup_count=config.general.log_backup_count,
    )


# =============================================================================
# Pipeline Commands
# =============================================================================


def _read_response(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source)
    if not path.is_file():
        console.print(f"[red]Response file not found: {source}[/red]")
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8")


def _print_pending(snapshot: dict) -> None:
    batch = snapshot["batch"] or {}

    table = Table(title=f"Turn {snapshot['sequence']} - proposed actions", show_header=True)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Kind", style="cyan")
    table.add_column("Action")
    for i, action in enumerate(batch.get("actions", [])):
        table.add_row(str(i), action["kind"], action["description"])
    console.print(table)

    for rejection in batch.get("rejections", []):
        console.print(
            f"[yellow]Rejected <{rejection['kind']}> #{rejection['position']}: "
            f"{rejection['reason']}[/yellow]"
        )
    for warning in batch.get("warnings", []):
        console.print(f"[yellow]Warning: {warning}[/yellow]")

    preview = snapshot.get("preview") or {}
    for change in preview.get("changes", []):
        if change["diff_text"]:
            console.print(Panel(
                Syntax(change["diff_text"], "diff", theme="ansi_dark"),
                title=f"{change['change_type']}: {change['path']}",
                expand=False,
            ))


def _print_outcome(snapshot: dict) -> None:
    report = snapshot.get("report")
    if report:
        table = Table(show_header=True)
        table.add_column("#", style="dim", justify="right")
        table.add_column("Status")
        table.add_column("Action")
        table.add_column("Error", style="red")
        for outcome in report["outcomes"]:
            status = outcome["status"]
            style = {"applied": "green", "failed": "red"}.get(status, "yellow")
            table.add_row(
                str(outcome["index"]),
                f"[{style}]{status}[/{style}]",
                outcome["action"]["description"],
                outcome["error"] or "",
            )
        console.print(table)

    state = snapshot["state"]
    style = STATE_STYLES.get(state, "white")
    console.print(f"Turn state: [{style}]{state}[/{style}]")
    if snapshot.get("checkpoint"):
        console.print(f"Checkpoint: [bold]{snapshot['checkpoint']['id'][:10]}[/bold]")
    if snapshot.get("error"):
        console.print(f"[red]{snapshot['error']}[/red]")


@app.command()
def apply(
    response: Annotated[str, Argument(help="File with the model response, or - for stdin")],
    project: Annotated[Path, Option("--project", "-p", help="Project root")] = Path("."),
    yes: Annotated[bool, Option("--yes", "-y", help="Approve without asking")] = False,
    chunk_size: Annotated[
        Optional[int], Option("--chunk-size", help="Feed the response in chunks of this size")
    ] = None,
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Parse a model response and apply its actions to a project."""
    from turnforge.pipeline.actions import ApprovalState
    from turnforge.pipeline.session import build_controller

    config = get_config()
    text = _read_response(response)
    size = max(1, chunk_size or config.pipeline.chunk_size)

    controller = build_controller(project.resolve(), config)
    try:
        controller.start()
        for i in range(0, len(text), size):
            controller.ingest(text[i:i + size])
        state = controller.finish()

        if state is ApprovalState.PENDING_APPROVAL:
            if not json_output:
                _print_pending(controller.snapshot())
            if yes or (not json_output and typer.confirm("Apply these actions?", default=False)):
                controller.approve()
            else:
                controller.reject()
    except TurnforgeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        controller.close()

    snapshot = controller.snapshot()
    if json_output:
        console.print_json(json.dumps(snapshot))
    else:
        text_only = controller.text.strip()
        if text_only:
            console.print(Panel(text_only, title="Response", expand=False))
        _print_outcome(snapshot)

    if snapshot["state"] == ApprovalState.FAILED.value:
        raise typer.Exit(1)


@app.command()
def checkpoints(
    project: Annotated[Path, Option("--project", "-p", help="Project root")] = Path("."),
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """List checkpoints recorded in a project, oldest first."""
    from turnforge.pipeline.checkpoints import GitVersionManager

    config = get_config()
    manager = GitVersionManager(
        project.resolve(),
        author_name=config.checkpoints.author_name,
        author_email=config.checkpoints.author_email,
    )
    try:
        items = manager.list_checkpoints()
    except VersionControlError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if json_output:
        console.print_json(json.dumps([c.to_dict() for c in items]))
        return

    if not items:
        console.print("[yellow]No checkpoints yet[/yellow]")
        return

    table = Table(title="Checkpoints", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Turn", justify="right")
    table.add_column("Created")
    table.add_column("Summary")
    for c in items:
        table.add_row(
            c.short_id,
            str(c.sequence) if c.sequence is not None else "",
            c.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            c.subject,
        )
    console.print(table)


@app.command()
def revert(
    checkpoint_id: Annotated[str, Argument(help="Checkpoint id (full or abbreviated)")],
    project: Annotated[Path, Option("--project", "-p", help="Project root")] = Path("."),
) -> None:
    """Restore the project's files to a checkpoint."""
    from turnforge.pipeline.checkpoints import GitVersionManager
    from turnforge.pipeline.session import get_turn_registry

    root = project.resolve()
    if get_turn_registry().active_turn(root):
        console.print("[red]A turn is in progress on this project[/red]")
        raise typer.Exit(1)

    config = get_config()
    manager = GitVersionManager(
        root,
        author_name=config.checkpoints.author_name,
        author_email=config.checkpoints.author_email,
    )
    try:
        manager.revert(checkpoint_id)
    except CheckpointNotFound as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except VersionControlError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Restored {root} to checkpoint {checkpoint_id}[/green]")


# =============================================================================
# Auth Commands
# =============================================================================


def _credential_store(config: Config):
    from turnforge.credentials import KeyringCredentialStore

    return KeyringCredentialStore(config.auth.keyring_service)


@auth_app.command("login")
def auth_login(
    no_browser: Annotated[bool, Option("--no-browser", help="Do not open a browser")] = False,
) -> None:
    """Authorize this device and store the credential in the keyring."""
    from turnforge.device_auth import DeviceAuthController, DeviceAuthSession, open_verification_url

    config = get_config()
    controller = DeviceAuthController(config.auth)
    cancel_event = threading.Event()

    def show(session: DeviceAuthSession) -> None:
        console.print(Panel(
            f"Open [link={session.verification_url}]{session.verification_url}[/link]\n"
            f"and enter the code [bold cyan]{session.user_code}[/bold cyan]",
            title="Authorize Turnforge",
            expand=False,
        ))
        if not no_browser:
            open_verification_url(session.verification_url)
        console.print("[dim]Waiting for authorization (Ctrl+C to cancel)...[/dim]")

    try:
        credential = controller.authorize(cancel_event=cancel_event, on_session=show)
    except KeyboardInterrupt:
        cancel_event.set()
        controller.cancel()
        console.print("[yellow]Authorization cancelled[/yellow]")
        raise typer.Exit(1)
    except DeviceAuthError as e:
        console.print(f"[red]Authorization failed: {e}[/red]")
        raise typer.Exit(1)
    finally:
        controller.transport.close()

    try:
        _credential_store(config).save(credential)
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Authorized. Token expires {credential.expires_at:%Y-%m-%d %H:%M} UTC[/green]")


@auth_app.command("status")
def auth_status(
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Show whether a valid credential is stored."""
    from turnforge.device_auth import credential_status

    config = get_config()
    credential = _credential_store(config).load()
    status = credential_status(credential, datetime.now(timezone.utc))

    if json_output:
        console.print_json(json.dumps({
            "is_setup": status.is_setup,
            "is_expired": status.is_expired,
            "expires_in_days": status.expires_in_days,
            "resource_url": credential.resource_url if credential else None,
        }))
        return

    if status.is_setup:
        console.print(f"[green]✓ Authorized[/green] (expires in {status.expires_in_days} day(s))")
        if credential and credential.resource_url:
            console.print(f"[dim]Resource URL: {credential.resource_url}[/dim]")
    elif status.is_expired:
        console.print("[yellow]✗ Credential expired - run 'turnforge auth login'[/yellow]")
    else:
        console.print("[yellow]✗ Not authorized - run 'turnforge auth login'[/yellow]")


@auth_app.command("logout")
def auth_logout() -> None:
    """Forget the stored credential."""
    if _credential_store(get_config()).delete():
        console.print("[green]Credential removed[/green]")
    else:
        console.print("[yellow]No credential was stored[/yellow]")


# =============================================================================
# Config Commands
# =============================================================================


@config_app.command("show")
def config_show(
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Show current configuration."""
    config_data = get_config().to_dict()

    if json_output:
        console.print_json(json.dumps(config_data))
        return

    table = Table(title="Turnforge Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for section, values in config_data.items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", str(value))

    console.print(table)


@config_app.command("path")
def config_path() -> None:
    """Show configuration file path."""
    console.print(str(paths.config_file))


if __name__ == "__main__":
    app()
