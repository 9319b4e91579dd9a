"""``fleetplane adapters`` — list the adapter catalogue."""

from __future__ import annotations

import typer
from rich.table import Table

from fleetplane.adapters.registry import get_registry
from fleetplane.cli.commands.common import console
from fleetplane.models.adapters import AdapterStatus

_STATUS_STYLE = {
    AdapterStatus.READY: "[green]ready[/green]",
    AdapterStatus.BETA: "[yellow]beta[/yellow]",
    AdapterStatus.COMING_SOON: "[dim]coming soon[/dim]",
}


def adapters_cmd(
    tiers: bool = typer.Option(False, "--tiers", help="Also show tier sizing per adapter."),
) -> None:
    """List registered adapters with their status and capabilities."""
    registry = get_registry()

    table = Table(title="Adapters")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Capabilities")
    for metadata in registry.list_metadata():
        caps = metadata.capabilities.model_dump()
        table.add_row(
            metadata.type,
            metadata.display_name,
            _STATUS_STYLE[metadata.status],
            ", ".join(name for name, enabled in caps.items() if enabled) or "-",
        )
    console.print(table)

    if not tiers:
        return
    sizing = Table(title="Tiers")
    sizing.add_column("Adapter", style="cyan")
    sizing.add_column("Tier")
    sizing.add_column("CPU", justify="right")
    sizing.add_column("Memory (MiB)", justify="right")
    sizing.add_column("Disk (GB)", justify="right")
    sizing.add_column("Machine")
    for metadata in registry.list_metadata():
        for tier in metadata.tier_specs:
            sizing.add_row(
                metadata.type,
                tier.tier,
                f"{tier.cpu:g}",
                str(tier.memory_mib),
                str(tier.disk_gb),
                tier.machine_type or "-",
            )
    console.print(sizing)
