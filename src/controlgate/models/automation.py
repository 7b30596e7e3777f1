"""Automation feature flags stored in settings."""

from typing import Any

from pydantic import BaseModel, field_validator

from controlgate.config import clamp

AUTOMATION_CONFIG_KEY = "automation:config"


class AutomationConfig(BaseModel):
    """Runtime switches read by every scheduler tick."""

    auto_dispatch_enabled: bool = True
    notification_delivery_enabled: bool = True
    notification_batch_size: int = 10
    heartbeat_enabled: bool = True

    @field_validator("notification_batch_size", mode="before")
    @classmethod
    def clamp_batch_size(cls, v: Any) -> int:
        try:
            value = int(v)
        except (TypeError, ValueError):
            return 10
        return clamp(value, 1, 50)

    @field_validator(
        "auto_dispatch_enabled",
        "notification_delivery_enabled",
        "heartbeat_enabled",
        mode="before",
    )
    @classmethod
    def coerce_flag(cls, v: Any, info) -> bool:
        if isinstance(v, bool):
            return v
        return cls.model_fields[info.field_name].default

    @classmethod
    def from_stored(cls, value: Any) -> "AutomationConfig":
        """Build from a stored settings value; anything malformed yields defaults."""
        if not isinstance(value, dict):
            return cls()
        known = {k: v for k, v in value.items() if k in cls.model_fields}
        return cls(**known)
