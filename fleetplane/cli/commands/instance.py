"""``fleetplane instance`` — register and inspect agent instances."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from rich.panel import Panel
from rich.table import Table

from fleetplane.cli.commands.common import OPERATOR_ERRORS, STORE_OPTION, console, fail, open_store
from fleetplane.models.instances import Instance, InstanceStatus

instance_app = typer.Typer(help="Register and inspect agent instances.", no_args_is_help=True)

_STATUS_STYLE = {
    InstanceStatus.RUNNING: "green",
    InstanceStatus.DEGRADED: "yellow",
    InstanceStatus.ERROR: "red",
    InstanceStatus.CREATING: "cyan",
    InstanceStatus.RECONCILING: "cyan",
    InstanceStatus.PAUSED: "magenta",
}


def styled_status(status: InstanceStatus) -> str:
    style = _STATUS_STYLE.get(status, "dim")
    return f"[{style}]{status.value}[/{style}]"


@instance_app.command(name="create", help="Register a new instance in PENDING.")
def create_cmd(
    name: str = typer.Argument(..., help="Instance name."),
    workspace: str = typer.Option("default", "--workspace", "-w", help="Owning workspace id."),
    fleet: str = typer.Option("default", "--fleet", "-f", help="Fleet id."),
    deployment_type: str = typer.Option(
        "simulated", "--type", "-t", help="Adapter type used to deploy the instance."
    ),
    delegate: Optional[List[str]] = typer.Option(
        None, "--delegate", "-d", help="Delegation target (repeatable)."
    ),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    store = open_store(store_path)
    instance = store.create_instance(
        Instance(
            name=name,
            workspace_id=workspace,
            fleet_id=fleet,
            deployment_type=deployment_type,
            delegation_targets=delegate or [],
        )
    )
    console.print(f"[bold green]Created instance[/bold green] {instance.name}")
    console.print(f"[bold]{instance.id}[/bold]")


@instance_app.command(name="show", help="Show one instance.")
def show_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    store = open_store(store_path)
    try:
        instance = store.require_instance(instance_id)
    except OPERATOR_ERRORS as exc:
        fail(exc)

    lines = [
        f"[bold]Name:[/bold]         {instance.name}",
        f"[bold]Status:[/bold]       {styled_status(instance.status)}",
        f"[bold]Health:[/bold]       {instance.health.value}",
        f"[bold]Adapter:[/bold]      {instance.deployment_type}",
        f"[bold]Manifest:[/bold]     {instance.desired_manifest_id or '-'}",
        f"[bold]Fingerprint:[/bold]  {instance.config_fingerprint or '-'}",
        f"[bold]Gateway:[/bold]      "
        + (f"{instance.gateway_host}:{instance.gateway_port}" if instance.gateway_host else "-"),
        f"[bold]Errors:[/bold]       {instance.error_count}",
    ]
    if instance.last_error is not None:
        lines.append(f"[bold]Last error:[/bold]   [red]{instance.last_error.message}[/red]")
    console.print(Panel("\n".join(lines), title=f"[bold]{instance.id}[/bold]", border_style="cyan"))


@instance_app.command(name="list", help="List instances.")
def list_cmd(
    status: Optional[List[str]] = typer.Option(
        None, "--status", help="Only show instances in this status (repeatable)."
    ),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    try:
        statuses = [InstanceStatus(s.lower()) for s in status] if status else None
    except ValueError as exc:
        console.print(f"[bold red]Unknown status:[/bold red] {exc}")
        raise typer.Exit(code=1)

    instances = open_store(store_path).list_instances(statuses)
    if not instances:
        console.print("[dim]No instances.[/dim]")
        return

    table = Table(title="Instances")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Adapter")
    table.add_column("Errors", justify="right")
    table.add_column("Updated", style="dim")
    for instance in instances:
        table.add_row(
            instance.id,
            instance.name,
            styled_status(instance.status),
            instance.deployment_type,
            str(instance.error_count),
            instance.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
