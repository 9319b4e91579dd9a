"""``fleetplane manifest`` — create, inspect, and validate manifest versions.

Manifest documents are read from JSON files. ``create`` persists the next
version and moves the instance to CREATING; it does not run the
reconcile itself (use ``fleetplane reconcile``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.syntax import Syntax
from rich.table import Table

from fleetplane.cli.commands.common import OPERATOR_ERRORS, STORE_OPTION, console, fail, open_store
from fleetplane.core.manifests import ManifestService
from fleetplane.core.policy import PolicyEngine
from fleetplane.models.manifests import ManifestVersion
from fleetplane.models.policy import PolicyResult, Severity

manifest_app = typer.Typer(help="Create, inspect, and validate manifests.", no_args_is_help=True)


def _load_document(path: Path) -> dict[str, Any]:
    try:
        content = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[bold red]Cannot read manifest {path}:[/bold red] {exc}")
        raise typer.Exit(code=1)
    if not isinstance(content, dict):
        console.print(f"[bold red]Manifest {path} must contain a JSON object[/bold red]")
        raise typer.Exit(code=1)
    return content


def _print_violations(result: PolicyResult) -> None:
    table = Table(title="Policy violations")
    table.add_column("Severity")
    table.add_column("Code", style="cyan")
    table.add_column("Path", style="dim")
    table.add_column("Message")
    for violation in result.violations:
        severity = (
            "[red]error[/red]" if violation.severity == Severity.ERROR else "[yellow]warning[/yellow]"
        )
        table.add_row(severity, violation.code, violation.path or "", violation.message)
    console.print(table)


def _print_manifest(manifest: ManifestVersion) -> None:
    console.print(
        f"[bold]{manifest.id}[/bold]  v{manifest.version}  "
        f"[dim]{manifest.created_at:%Y-%m-%d %H:%M:%S} by {manifest.created_by}[/dim]"
    )
    if manifest.description:
        console.print(manifest.description)
    console.print(Syntax(json.dumps(manifest.content, indent=2, sort_keys=True), "json"))


@manifest_app.command(name="create", help="Persist the next manifest version for an instance.")
def create_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    file: Path = typer.Option(..., "--file", "-f", help="Manifest JSON document."),
    description: Optional[str] = typer.Option(None, "--description", "-m", help="Change note."),
    author: str = typer.Option("cli", "--author", help="Recorded as created_by."),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    content = _load_document(file)
    service = ManifestService(open_store(store_path))
    try:
        manifest = service.create(instance_id, content, description=description, created_by=author)
    except OPERATOR_ERRORS as exc:
        fail(exc)
    console.print(
        f"[bold green]Created manifest v{manifest.version}[/bold green] for {instance_id}"
    )
    console.print(f"[bold]{manifest.id}[/bold]")


@manifest_app.command(name="list", help="List manifest versions, newest first.")
def list_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    service = ManifestService(open_store(store_path))
    try:
        versions = service.list_versions(instance_id)
    except OPERATOR_ERRORS as exc:
        fail(exc)
    if not versions:
        console.print("[dim]No manifests.[/dim]")
        return

    table = Table(title=f"Manifests for {instance_id}")
    table.add_column("Version", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Created", style="dim")
    table.add_column("By")
    table.add_column("Description")
    for manifest in versions:
        table.add_row(
            str(manifest.version),
            manifest.id,
            manifest.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            manifest.created_by,
            manifest.description or "",
        )
    console.print(table)


@manifest_app.command(name="latest", help="Show the newest manifest version.")
def latest_cmd(
    instance_id: str = typer.Argument(..., help="Instance id."),
    store_path: Optional[Path] = STORE_OPTION,
) -> None:
    service = ManifestService(open_store(store_path))
    try:
        manifest = service.get_latest(instance_id)
    except OPERATOR_ERRORS as exc:
        fail(exc)
    _print_manifest(manifest)


@manifest_app.command(name="validate", help="Validate a manifest document without saving it.")
def validate_cmd(
    file: Path = typer.Argument(..., help="Manifest JSON document."),
) -> None:
    result = PolicyEngine().validate(_load_document(file))
    if result.violations:
        _print_violations(result)
    if not result.valid:
        console.print("[bold red]Manifest is invalid.[/bold red]")
        raise typer.Exit(code=1)
    console.print("[bold green]Manifest is valid.[/bold green]")
