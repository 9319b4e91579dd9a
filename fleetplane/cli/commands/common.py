"""Shared wiring for CLI commands.

Every command opens the store named by ``--store`` (default from
``config.store_path``) and builds only the components it needs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console

from fleetplane.config import ProdConfig, config
from fleetplane.core.errors import FleetplaneError, PolicyRejectedError
from fleetplane.core.manifests import ManifestService
from fleetplane.core.store import FleetStore
from fleetplane.drift.detector import DriftDetector
from fleetplane.gateway.channel import InstanceGateway
from fleetplane.gateway.client import ReconnectOptions
from fleetplane.gateway.errors import GatewayError
from fleetplane.gateway.manager import GatewayManager
from fleetplane.reconcile.engine import ReconciliationEngine
from fleetplane.reconcile.scheduler import ReconcileScheduler
from fleetplane.secrets.store import LocalSecretStore, SecretStoreError

console = Console()

STORE_OPTION = typer.Option(
    None,
    "--store",
    "-s",
    help="Path to the fleet SQLite database.",
)


def open_store(store_path: Path | None) -> FleetStore:
    return FleetStore(store_path or config.store_path)


def fail(exc: Exception) -> NoReturn:
    """Print *exc* in red and exit with code 1."""
    if isinstance(exc, PolicyRejectedError):
        console.print("[bold red]Manifest rejected by policy:[/bold red]")
        for violation in exc.violations:
            console.print(f"  [red]{violation.code}[/red] {violation.message}")
    else:
        console.print(f"[bold red]{type(exc).__name__}:[/bold red] {exc}")
    raise typer.Exit(code=1)


# Errors a command reports to the operator instead of a traceback.
OPERATOR_ERRORS = (FleetplaneError, GatewayError, SecretStoreError)


class ControlPlane:
    """The components a long-running command needs, wired from settings."""

    def __init__(self, store: FleetStore, settings: ProdConfig | None = None) -> None:
        self.settings = settings or config
        self.store = store
        self.secrets = LocalSecretStore(
            self.settings.secrets_path,
            key=bytes.fromhex(self.settings.secrets_key) if self.settings.secrets_key else None,
            create_key=not self.settings.is_production,
        )
        self.gateways = GatewayManager(
            timeout=self.settings.gateway_timeout_seconds,
            reconnect=ReconnectOptions(
                enabled=self.settings.gateway_reconnect_enabled,
                max_attempts=self.settings.gateway_reconnect_max_attempts,
                base_delay_ms=self.settings.gateway_reconnect_base_delay_ms,
                max_delay_ms=self.settings.gateway_reconnect_max_delay_ms,
            ),
        )
        self.channel = InstanceGateway(self.gateways, self.secrets)
        self.engine = ReconciliationEngine(store, gateway=self.channel)
        self.manifests = ManifestService(store, dispatcher=self.engine)
        scheduler_config = self.settings.scheduler_config()
        self.detector = DriftDetector(
            store,
            self.channel,
            concurrency=scheduler_config.drift_concurrency,
            timeout=scheduler_config.drift_check_timeout_seconds,
            desired_config=self.engine.effective_config,
        )
        self.scheduler = ReconcileScheduler(store, self.detector, self.engine, scheduler_config)

    async def close(self) -> None:
        await self.engine.wait_idle()
        await self.gateways.disconnect_all()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
