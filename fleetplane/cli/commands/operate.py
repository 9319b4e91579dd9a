"""Instance operations: reconcile, stop, pause, resume, delete.

Each command runs to completion in the foreground. ``reconcile`` prints
the outcome of the converge, including the preprocessor changes that
shaped the effective configuration.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from fleetplane.cli.commands.common import (
    OPERATOR_ERRORS,
    STORE_OPTION,
    console,
    fail,
    open_store,
)
from fleetplane.cli.commands.instance import styled_status
from fleetplane.reconcile.engine import ReconciliationEngine

ACTOR_OPTION = typer.Option("cli", "--actor", help="Recorded on the audit trail.")


def reconcile_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Converge an instance to its desired manifest now."""
    engine = ReconciliationEngine(open_store(store_path))
    try:
        result = asyncio.run(engine.reconcile(instance_id))
    except OPERATOR_ERRORS as exc:
        fail(exc)

    if result.chain is not None:
        for change in result.chain.changes:
            console.print(f"  [dim]preprocessor[/dim] {change}")
        for failure in result.chain.failures:
            console.print(f"  [yellow]preprocessor failed[/yellow] {failure}")

    if not result.success:
        console.print(f"[bold red]Reconcile failed:[/bold red] {result.error}")
        raise typer.Exit(code=1)
    console.print(
        f"[bold green]Reconciled[/bold green] {instance_id} -> {styled_status(result.status)}"
    )
    console.print(f"[dim]fingerprint {result.config_fingerprint}[/dim]")


def stop_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    actor: str = ACTOR_OPTION,
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Mark an instance stopped."""
    engine = ReconciliationEngine(open_store(store_path))
    try:
        instance = asyncio.run(engine.stop(instance_id, actor=actor))
    except OPERATOR_ERRORS as exc:
        fail(exc)
    console.print(f"{instance_id} -> {styled_status(instance.status)}")


def pause_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    actor: str = ACTOR_OPTION,
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Pause an instance; sweeps and reconciles leave it alone until resumed."""
    engine = ReconciliationEngine(open_store(store_path))
    try:
        instance = asyncio.run(engine.pause(instance_id, actor=actor))
    except OPERATOR_ERRORS as exc:
        fail(exc)
    console.print(f"{instance_id} -> {styled_status(instance.status)}")


def resume_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    actor: str = ACTOR_OPTION,
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Resume a paused instance into the status it was paused from."""
    engine = ReconciliationEngine(open_store(store_path))
    try:
        instance = asyncio.run(engine.resume(instance_id, actor=actor))
    except OPERATOR_ERRORS as exc:
        fail(exc)
    console.print(f"{instance_id} -> {styled_status(instance.status)}")


def delete_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    actor: str = ACTOR_OPTION,
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    """Tear down an instance's workload and remove it with its manifests."""
    if not yes:
        typer.confirm(f"Delete {instance_id} and all of its manifests?", abort=True)
    engine = ReconciliationEngine(open_store(store_path))
    try:
        asyncio.run(engine.delete(instance_id, actor=actor))
    except OPERATOR_ERRORS as exc:
        fail(exc)
    console.print(f"[bold]Deleted[/bold] {instance_id}")
