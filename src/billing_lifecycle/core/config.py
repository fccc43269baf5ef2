from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from billing_lifecycle.core.exceptions import ConfigurationError
from billing_lifecycle.dunning.policy import DunningPolicy
from billing_lifecycle.usage.models import UsageBand, default_usage_bands


class EngineConfig(BaseModel):
    processor_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    """Upper bound on a single charge call; a timeout counts as ``processor_error``."""
    max_pause_days: int = Field(default=90, ge=1, le=3650)
    invoice_due_days: int = Field(default=0, ge=0, le=365)
    default_currency: str = Field(default="USD", min_length=3, max_length=3)
    persistence_read_retries: int = Field(default=3, ge=0, le=10)
    persistence_retry_backoff: float = Field(default=0.05, ge=0.0)
    usage_bands: list[UsageBand] = Field(default_factory=default_usage_bands)
    dunning: DunningPolicy = Field(default_factory=DunningPolicy)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create an :class:`EngineConfig` from ``BILLING_*`` environment variables.

        Reads the following env vars (all optional):

        * ``BILLING_CONFIG_FILE`` → JSON policy document loaded first
        * ``BILLING_PROCESSOR_TIMEOUT`` → ``processor_timeout_seconds`` (float seconds)
        * ``BILLING_MAX_PAUSE_DAYS`` → ``max_pause_days``
        * ``BILLING_INVOICE_DUE_DAYS`` → ``invoice_due_days``
        * ``BILLING_CURRENCY`` → ``default_currency``
        * ``BILLING_PERSISTENCE_RETRIES`` → ``persistence_read_retries``
        * ``BILLING_LOG_LEVEL`` → ``log_level``
        * ``BILLING_LOG_JSON`` → ``log_json`` (``"0"``/``"false"`` disables)

        Any variable that is not set or is empty is left at its default value
        (or at the value from the policy document).

        Raises:
            ConfigurationError: If a value cannot be parsed or validated.
        """
        kwargs: dict[str, Any] = {}

        config_file = os.environ.get("BILLING_CONFIG_FILE")
        if config_file:
            kwargs.update(_read_json(Path(config_file)))

        timeout = os.environ.get("BILLING_PROCESSOR_TIMEOUT")
        if timeout:
            kwargs["processor_timeout_seconds"] = timeout

        max_pause = os.environ.get("BILLING_MAX_PAUSE_DAYS")
        if max_pause:
            kwargs["max_pause_days"] = max_pause

        due_days = os.environ.get("BILLING_INVOICE_DUE_DAYS")
        if due_days:
            kwargs["invoice_due_days"] = due_days

        currency = os.environ.get("BILLING_CURRENCY")
        if currency:
            kwargs["default_currency"] = currency.upper()

        retries = os.environ.get("BILLING_PERSISTENCE_RETRIES")
        if retries:
            kwargs["persistence_read_retries"] = retries

        log_level = os.environ.get("BILLING_LOG_LEVEL")
        if log_level:
            kwargs["log_level"] = log_level.upper()

        log_json = os.environ.get("BILLING_LOG_JSON")
        if log_json:
            kwargs["log_json"] = log_json.strip().lower() not in ("0", "false", "no")

        return cls._build(kwargs)

    @classmethod
    def from_json_file(cls, path: str | Path) -> EngineConfig:
        """Load a full policy document (thresholds, dunning tables, limits)."""
        return cls._build(_read_json(Path(path)))

    @classmethod
    def _build(cls, data: dict[str, Any]) -> EngineConfig:
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ConfigurationError(
                f"Invalid billing configuration: {exc}",
                code="invalid_config",
            ) from exc


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(
            f"Cannot read billing configuration from {path}: {exc}",
            code="invalid_config",
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Billing configuration in {path} must be a JSON object",
            code="invalid_config",
        )
    return data
