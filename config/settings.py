"""
Settings for the CRM automation engine, loaded from YAML.
String values may reference environment variables as ${VAR}.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class ChannelConfig:
    enabled: bool = True
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./crm_engine.db"             # postgresql:// or sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    automation_workers: int = 2          # concurrent stage-automation jobs
    poller_enabled: bool = False         # run sweeps in-process instead of via cron
    message_poll_interval: int = 120     # seconds between message queue passes
    tracking_poll_interval: int = 300    # seconds between meeting tracking passes


@dataclass
class EngineConfig:
    site_url: str = "https://paxbespoke.uk"
    message_batch_size: int = 50
    tracking_batch_size: int = 20
    check_grace_minutes: int = 10        # wait after scheduled end before first look
    no_show_grace_minutes: int = 15      # wait after scheduled end before no-show verdict
    reschedule_drift_minutes: int = 5
    no_response_window_hours: int = 6
    upcoming_window_hours: int = 24
    activity_min_delta_seconds: int = 60
    external_call_timeout: float = 20.0
    deposit_ratio: float = 0.3
    payment_link_placeholder: str = "[Payment link will be sent separately]"


@dataclass
class CalendarConfig:
    access_token: str = ""
    calendar_id: str = "primary"
    owner_email: str = ""
    base_url: str = "https://www.googleapis.com/calendar/v3"

    @property
    def configured(self) -> bool:
        return bool(self.access_token)


@dataclass
class PaymentConfig:
    stripe_secret_key: str = ""
    currency: str = "gbp"
    product_name: str = "PaxBespoke Deposit"


@dataclass
class Settings:
    app_name: str = "PaxBespoke CRM Engine"
    debug: bool = False
    timezone: str = "Europe/London"
    log_level: str = "INFO"
    cron_secret: str = ""
    webhook_secret: str = ""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")

_SCALARS = ("app_name", "debug", "timezone", "log_level", "cron_secret", "webhook_secret")
_SECTIONS = {
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "engine": EngineConfig,
    "calendar": CalendarConfig,
    "payments": PaymentConfig,
}


def _expand(node: Any) -> Any:
    """Fill ${VAR} references from the environment, walking dicts and lists.

    An unset variable becomes "" so a missing secret reads as not configured.
    """
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), node)
    if isinstance(node, dict):
        return {key: _expand(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    return node


def _section(cls, data: Optional[dict[str, Any]]):
    # unknown keys are dropped so older YAML files keep loading
    names = set(cls.__dataclass_fields__)
    return cls(**{k: v for k, v in (data or {}).items() if k in names})


def load_settings(config_path: str = None) -> Settings:
    """Read the YAML settings file (CRM_ENGINE_CONFIG or the bundled default)."""
    global _settings

    path = Path(config_path or os.environ.get(
        "CRM_ENGINE_CONFIG", Path(__file__).parent / "settings.yaml",
    ))
    settings = Settings()

    if path.exists():
        raw = _expand(yaml.safe_load(path.read_text()) or {})

        for name in _SCALARS:
            if raw.get(name) is not None:
                setattr(settings, name, raw[name])
        for name, cls in _SECTIONS.items():
            if name in raw:
                setattr(settings, name, _section(cls, raw[name]))
        for channel, data in (raw.get("channels") or {}).items():
            data = data or {}
            settings.channels[channel] = ChannelConfig(
                enabled=data.get("enabled", True),
                credentials=data.get("credentials") or {},
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    global _settings
    _settings = None
