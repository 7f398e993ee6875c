"""Application configuration via environment variables.

Uses pydantic-settings to load config from env vars with FEEDRELAY_ prefix.
No config files. Every knob is an env var (12-factor app style).

Learn: pydantic-settings auto-loads from environment, validates types,
provides defaults. Decimal fields accept strings like "245.67" so prices
never pass through a float.
"""

from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All app configuration. Set via FEEDRELAY_* env vars."""

    # Server
    environment: str = "development"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # CORS
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Greeting sent in the "connected" frame
    connect_message: str = "Connected to feed relay"

    # Price simulator (stand-in upstream feed)
    simulator_enabled: bool = True
    simulator_feed_id: int = 6
    simulator_start_price: Decimal = Decimal("245.67")
    simulator_min_price: Decimal = Decimal("197.89")
    simulator_max_price: Decimal = Decimal("201.67")
    simulator_interval_seconds: float = 0.5
    simulator_step_min: Decimal = Decimal("0.01")
    simulator_step_max: Decimal = Decimal("0.10")
    simulator_flip_probability: float = 0.1

    model_config = {"env_prefix": "FEEDRELAY_"}

    @model_validator(mode="after")
    def validate_simulator_settings(self):
        """Reject simulator bounds that cannot produce a walk."""
        if self.simulator_min_price > self.simulator_max_price:
            raise ValueError(
                "FEEDRELAY_SIMULATOR_MIN_PRICE must not exceed "
                "FEEDRELAY_SIMULATOR_MAX_PRICE"
            )
        if self.simulator_step_min > self.simulator_step_max:
            raise ValueError(
                "FEEDRELAY_SIMULATOR_STEP_MIN must not exceed "
                "FEEDRELAY_SIMULATOR_STEP_MAX"
            )
        if self.simulator_interval_seconds <= 0:
            raise ValueError("FEEDRELAY_SIMULATOR_INTERVAL_SECONDS must be positive")
        if self.simulator_feed_id <= 0:
            raise ValueError("FEEDRELAY_SIMULATOR_FEED_ID must be a positive integer")
        return self


# Singleton — import this everywhere
settings = Settings()
