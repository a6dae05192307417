"""Configuration management for the digit bot.

Rules:
- YAML provides defaults for non-secret config (timings, default strategy, API).
- Secrets (Deriv token, app id) come from .env / environment variables and override YAML.
- We do NOT inject YAML into os.environ.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from digitbot.models.trade_models import StrategyConfig
from digitbot.services.market.volatility_indices import is_known_symbol


class DerivConfig(BaseModel):
    """Deriv API configuration."""

    app_id: str = Field(default="1089", description="Deriv application ID")
    api_token: str = Field(default="PLACEHOLDER", description="Deriv API token")
    currency: str = Field(default="USD")
    account_type: str = Field(default="demo")
    websocket_url: str = Field(
        default="wss://ws.derivws.com/websockets/v3",
        description="Deriv WebSocket URL",
    )

    @field_validator("app_id")
    @classmethod
    def validate_app_id(cls, v: str) -> str:
        if not v or not str(v).isdigit():
            raise ValueError("app_id must be a non-empty numeric string")
        return str(v)

    @field_validator("api_token")
    @classmethod
    def validate_api_token(cls, v: str) -> str:
        if not v:
            raise ValueError("api_token must not be empty")

        # Placeholder tokens are allowed in YAML; env vars replace them in real runs
        if str(v).upper() in {"DUMMY", "PLACEHOLDER", "CHANGEME"}:
            return str(v)

        if len(str(v)) < 10:
            raise ValueError("api_token must be at least 10 characters long")

        return str(v)

    @field_validator("account_type")
    @classmethod
    def validate_account_type(cls, v: str) -> str:
        if str(v).lower() not in ("demo", "real"):
            raise ValueError("account_type must be 'demo' or 'real'")
        return str(v).lower()

    @property
    def has_real_token(self) -> bool:
        return self.api_token.upper() not in {"DUMMY", "PLACEHOLDER", "CHANGEME"}


class TimingConfig(BaseModel):
    """Timeouts, retries and reconnect delays for the exchange connections (seconds)."""

    send_timeout: float = Field(default=4.0, gt=0)
    ready_poll_interval: float = Field(default=0.1, gt=0)
    proposal_timeout: float = Field(default=4.0, gt=0)
    buy_timeout: float = Field(default=4.0, gt=0)
    proposal_retries: int = Field(default=3, ge=0, le=10)
    retry_delay: float = Field(default=0.5, ge=0)
    session_reconnect_delay: float = Field(default=3.0, ge=0)
    stream_reconnect_delay: float = Field(default=1.2, ge=0)
    max_reconnect_attempts: Optional[int] = Field(
        default=None, ge=1, description="None = reconnect for as long as the run is active"
    )


class ScannerConfig(BaseModel):
    """Tick stream feeding the digit prediction (scan) feature."""

    symbol: str = Field(default="R_10")
    window_size: int = Field(default=50, ge=30, le=500)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        if not is_known_symbol(v):
            raise ValueError(f"unknown volatility index: {v}")
        return v


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class BotSettings(BaseSettings):
    """Main configuration class for the bot.

    YAML is parsed as base config, then env overrides are applied for secrets.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    deriv: DerivConfig = Field(default_factory=DerivConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    strategy: StrategyConfig = Field(default_factory=lambda: StrategyConfig(digit=0))
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "BotSettings":
        """Load configuration from YAML without polluting the environment.

        Steps:
        1) Parse YAML -> base config dict
        2) Validate into model
        3) Apply env overrides (DERIV__API_TOKEN, etc.) on top
        """
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        try:
            base = cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")

        return apply_env_overrides(base)


def apply_env_overrides(base: BotSettings) -> BotSettings:
    deriv_updates = {}
    if os.getenv("DERIV__APP_ID"):
        deriv_updates["app_id"] = os.environ["DERIV__APP_ID"]
    if os.getenv("DERIV__API_TOKEN"):
        deriv_updates["api_token"] = os.environ["DERIV__API_TOKEN"]
    if os.getenv("DERIV__CURRENCY"):
        deriv_updates["currency"] = os.environ["DERIV__CURRENCY"]

    updates = {}
    if deriv_updates:
        # re-validate so a malformed env value is rejected like a YAML one
        updates["deriv"] = DerivConfig.model_validate({**base.deriv.model_dump(), **deriv_updates})
    if os.getenv("LOG_LEVEL"):
        updates["log_level"] = os.environ["LOG_LEVEL"].upper()

    return base.model_copy(update=updates) if updates else base


def load_config(config_path: Optional[Path] = None) -> BotSettings:
    """Load configuration from YAML + .env (env wins for secrets)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return BotSettings.from_yaml(config_path)
