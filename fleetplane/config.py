"""Production configuration, read from the environment.

Centralized config using pydantic-settings. Reads from a .env file and
FLEETPLANE_* environment variables. Components never read the environment
themselves: the scheduler receives an explicit ``SchedulerConfig`` built
from this object.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerConfig(BaseModel):
    """Explicit settings for the reconcile scheduler.

    ``auto_reconcile_on_drift`` defaults to disabled: a drift sweep only
    logs drifted instances unless an operator opts in.
    """

    model_config = ConfigDict(frozen=True)

    auto_reconcile_on_drift: bool = False
    drift_interval_seconds: float = Field(default=300.0, gt=0)
    stuck_interval_seconds: float = Field(default=60.0, gt=0)
    stuck_threshold_seconds: float = Field(default=600.0, gt=0)
    drift_concurrency: int = Field(default=8, ge=1)
    drift_check_timeout_seconds: float = Field(default=15.0, gt=0)
    sweep_timeout_seconds: float = Field(default=120.0, gt=0)


class ProdConfig(BaseSettings):
    """Production configuration with environment variable overrides.

    All settings can be overridden via FLEETPLANE_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export FLEETPLANE_ENVIRONMENT=staging
        export FLEETPLANE_LOG_LEVEL=DEBUG
        export FLEETPLANE_AUTO_RECONCILE_ON_DRIFT=true

    Or via .env file::

        FLEETPLANE_STORE_PATH=/data/fleet.db
        FLEETPLANE_DRIFT_INTERVAL_SECONDS=120
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FLEETPLANE_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    store_path: Path = Path(".fleetplane/fleet.db")
    secrets_path: Path = Path(".fleetplane/secrets.json")
    secrets_key: str = ""  # hex-encoded 32-byte key; when empty a key file is used, generated outside production

    # Scheduler
    auto_reconcile_on_drift: bool = False
    drift_interval_seconds: float = 300.0
    stuck_interval_seconds: float = 60.0
    stuck_threshold_seconds: float = 600.0
    drift_concurrency: int = 8
    drift_check_timeout_seconds: float = 15.0
    sweep_timeout_seconds: float = 120.0

    # Gateway channel
    gateway_timeout_seconds: float = 30.0
    gateway_reconnect_enabled: bool = True
    gateway_reconnect_max_attempts: int = 10
    gateway_reconnect_base_delay_ms: int = 1000
    gateway_reconnect_max_delay_ms: int = 30000

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    def scheduler_config(self) -> SchedulerConfig:
        """Snapshot the scheduler-related settings into a frozen model."""
        return SchedulerConfig(
            auto_reconcile_on_drift=self.auto_reconcile_on_drift,
            drift_interval_seconds=self.drift_interval_seconds,
            stuck_interval_seconds=self.stuck_interval_seconds,
            stuck_threshold_seconds=self.stuck_threshold_seconds,
            drift_concurrency=self.drift_concurrency,
            drift_check_timeout_seconds=self.drift_check_timeout_seconds,
            sweep_timeout_seconds=self.sweep_timeout_seconds,
        )


# Module-level singleton: import as `from fleetplane.config import config`
config = ProdConfig()
