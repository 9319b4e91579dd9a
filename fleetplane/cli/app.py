"""Main Typer application — imports and registers all CLI commands.

Entry point: ``fleetplane`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

from typing import Optional

import typer

from fleetplane.cli.commands.adapters import adapters_cmd
from fleetplane.cli.commands.common import configure_logging
from fleetplane.cli.commands.instance import instance_app
from fleetplane.cli.commands.manifest import manifest_app
from fleetplane.cli.commands.operate import (
    delete_cmd,
    pause_cmd,
    reconcile_cmd,
    resume_cmd,
    stop_cmd,
)
from fleetplane.cli.commands.sweeps import drift_cmd, serve_cmd, sweep_stuck_cmd
from fleetplane.config import config

app = typer.Typer(
    name="fleetplane",
    help="Fleetplane: declarative control plane for fleets of agent instances.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def _root(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to FLEETPLANE_LOG_LEVEL)."
    ),
) -> None:
    configure_logging(log_level or config.log_level)


# Register subcommands
app.add_typer(instance_app, name="instance")
app.add_typer(manifest_app, name="manifest")
app.command(name="adapters", help="List the adapter catalogue.")(adapters_cmd)
app.command(name="reconcile", help="Converge an instance to its desired manifest.")(reconcile_cmd)
app.command(name="stop", help="Mark an instance stopped.")(stop_cmd)
app.command(name="pause", help="Pause an instance.")(pause_cmd)
app.command(name="resume", help="Resume a paused instance.")(resume_cmd)
app.command(name="delete", help="Delete an instance and its workload.")(delete_cmd)
app.command(name="drift", help="Run one drift sweep over the fleet.")(drift_cmd)
app.command(name="sweep-stuck", help="Fail instances stuck in a transitional status.")(sweep_stuck_cmd)
app.command(name="serve", help="Run the periodic sweeps until interrupted.")(serve_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
