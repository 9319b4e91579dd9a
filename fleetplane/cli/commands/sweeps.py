"""Fleet-wide commands: drift, sweep-stuck, serve."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from fleetplane.cli.commands.common import (
    OPERATOR_ERRORS,
    STORE_OPTION,
    ControlPlane,
    console,
    fail,
    open_store,
)
from fleetplane.cli.commands.instance import styled_status
from fleetplane.models.drift import DriftAssessment, DriftResult

logger = logging.getLogger(__name__)

_ASSESSMENT_STYLE = {
    DriftAssessment.IN_SYNC: "[green]in sync[/green]",
    DriftAssessment.DRIFTED: "[red]drifted[/red]",
    DriftAssessment.UNKNOWN: "[yellow]unknown[/yellow]",
}


def _control_plane(store_path: Optional[Path]) -> ControlPlane:
    try:
        return ControlPlane(open_store(store_path))
    except OPERATOR_ERRORS as exc:
        fail(exc)


def _render_drift(results: list[DriftResult]) -> None:
    if not results:
        console.print("[dim]No running instances to check.[/dim]")
        return
    table = Table(title="Drift")
    table.add_column("Instance", style="cyan")
    table.add_column("Assessment")
    table.add_column("Desired", style="dim")
    table.add_column("Live", style="dim")
    table.add_column("Detail")
    for result in results:
        detail = result.error or ""
        if result.diff:
            detail = ", ".join(sorted(result.diff))
        table.add_row(
            result.instance_id,
            _ASSESSMENT_STYLE[result.assessment],
            (result.desired_hash or "-")[:12],
            (result.live_hash or "-")[:12],
            detail,
        )
    console.print(table)


def drift_cmd(
    reconcile: bool = typer.Option(
        False, "--reconcile", help="Reconcile drifted instances after the check."
    ),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Run one drift sweep and print the results."""
    plane = _control_plane(store_path)

    async def sweep() -> list[DriftResult]:
        try:
            results = await plane.detector.check_fleet()
            if reconcile:
                for result in results:
                    if result.has_drift:
                        plane.engine.submit(result.instance_id)
            return results
        finally:
            await plane.close()

    try:
        results = asyncio.run(sweep())
    except OPERATOR_ERRORS as exc:
        fail(exc)
    _render_drift(results)


def sweep_stuck_cmd(
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Move instances stuck in CREATING or RECONCILING to ERROR."""
    plane = _control_plane(store_path)
    moved = asyncio.run(plane.scheduler.run_stuck_sweep())
    if not moved:
        console.print("[dim]No stuck instances.[/dim]")
        return
    for instance in moved:
        console.print(f"{instance.id} -> {styled_status(instance.status)}")


def serve_cmd(
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Run the drift and stuck sweeps until interrupted."""
    plane = _control_plane(store_path)

    async def run() -> None:
        async with plane.scheduler:
            try:
                await asyncio.Event().wait()
            finally:
                await plane.close()

    console.print(
        f"[bold]fleetplane[/bold] serving {plane.store.path} "
        f"(auto-reconcile {'on' if plane.scheduler.config.auto_reconcile_on_drift else 'off'})"
    )
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    console.print("[dim]Stopped.[/dim]")
