"""Configuration model for the WAN watchdog."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from netwatch.errors import ConfigError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "/etc/netwatch-agent/config.yaml"

HEALTH_CHECK_MODES = ("icmp", "tcp", "http")
FPING_MODES = ("auto", "yes", "no")
WEBHOOK_EVENT_KINDS = ("down", "recovery", "reboot", "startup", "health")

_TCP_TARGET_RE = re.compile(r"^([^:]+):([0-9]+)$")

# Environment variable -> (section, field). Section None means top level.
ENV_KEYS: dict[str, tuple[str | None, str]] = {
    "HEALTH_CHECK_MODE": (None, "health_check_mode"),
    "TARGETS": (None, "targets"),
    "TCP_TARGETS": (None, "tcp_targets"),
    "HTTP_TARGETS": (None, "http_targets"),
    "HTTP_EXPECTED_CODE": (None, "http_expected_code"),
    "MIN_OK": (None, "min_ok"),
    "PING_COUNT": (None, "ping_count"),
    "PING_TIMEOUT": (None, "ping_timeout"),
    "USE_FPING": (None, "use_fping"),
    "CHECK_INTERVAL": (None, "check_interval"),
    "DOWN_WINDOW_SECONDS": (None, "down_window_seconds"),
    "BOOT_GRACE": (None, "boot_grace"),
    "COOLDOWN_SECONDS": (None, "cooldown_seconds"),
    "DISABLE_FILE": (None, "disable_file"),
    "DRY_RUN": (None, "dry_run"),
    "STATE_DIR": (None, "state_dir"),
    "WEBHOOK_ENABLED": ("webhook", "enabled"),
    "WEBHOOK_URL": ("webhook", "url"),
    "WEBHOOK_METHOD": ("webhook", "method"),
    "WEBHOOK_HEADERS": ("webhook", "headers"),
    "WEBHOOK_BODY_TEMPLATE": ("webhook", "body_template"),
    "WEBHOOK_EVENTS": ("webhook", "events"),
    "WEBHOOK_TIMEOUT": ("webhook", "timeout"),
    "WEBHOOK_HEALTH_INTERVAL": ("webhook", "health_interval"),
}


def _split_list(value: Any) -> list[str]:
    """Accept a YAML list or a whitespace/comma separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item for item in re.split(r"[\s,]+", value) if item]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item or "").strip()]
    raise ValueError(f"expected a list or a separated string, got {type(value).__name__}")


def parse_tcp_target(target: str) -> tuple[str, int] | None:
    """Split "host:port"; None when malformed or the port is out of range."""
    m = _TCP_TARGET_RE.match((target or "").strip())
    if not m:
        return None
    port = int(m.group(2))
    if not (0 < port < 65536):
        return None
    return m.group(1), port


class WebhookConfig(BaseModel):
    """Webhook notification settings."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = Field(default=False, description="Send webhook notifications")
    url: str = Field(default="", description="Webhook endpoint")
    method: str = Field(default="POST", description="HTTP method")
    headers: list[str] = Field(default_factory=list, description="'Name: Value' header entries")
    body_template: str = Field(default="", description="Custom body with {PLACEHOLDER} fields")
    events: list[str] = Field(default_factory=lambda: list(WEBHOOK_EVENT_KINDS), description="Event kinds to send")
    timeout: int = Field(default=10, ge=1, description="Request timeout in seconds")
    health_interval: int = Field(default=86400, ge=0, description="Seconds between health reports, 0 disables")

    @field_validator("url", "body_template", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> str:
        method = str(value or "POST").strip().upper()
        return method or "POST"

    @field_validator("headers", mode="before")
    @classmethod
    def _split_headers(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [h.strip() for h in value.split(";") if h.strip()]
        if isinstance(value, dict):
            return [f"{k}: {v}" for k, v in value.items()]
        return [str(h).strip() for h in value if str(h or "").strip()]

    @field_validator("events", mode="before")
    @classmethod
    def _split_events(cls, value: Any) -> list[str]:
        return [e.lower() for e in _split_list(value)]


class WatchdogConfig(BaseModel):
    """Validated, immutable snapshot of all tunables for one run."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    health_check_mode: str = Field(default="icmp", description="icmp, tcp or http")
    targets: list[str] = Field(default_factory=lambda: ["1.1.1.1", "8.8.8.8", "9.9.9.9"])
    tcp_targets: list[str] = Field(default_factory=lambda: ["1.1.1.1:853", "8.8.8.8:443", "9.9.9.9:443"])
    http_targets: list[str] = Field(
        default_factory=lambda: ["https://1.1.1.1", "https://8.8.8.8", "https://9.9.9.9"]
    )
    http_expected_code: str = Field(default="200", description="Status code counted as success")
    min_ok: int = Field(default=1, ge=1, description="Targets that must succeed per cycle")
    ping_count: int = Field(default=1, ge=1, description="Echo requests per ICMP target")
    ping_timeout: int = Field(default=1, ge=1, description="Per-target probe timeout in seconds")
    use_fping: str = Field(default="auto", description="auto, yes or no")
    check_interval: int = Field(default=10, ge=1, description="Seconds between cycles")
    down_window_seconds: int = Field(default=600, ge=0, description="Continuous outage before reboot")
    boot_grace: int = Field(default=180, ge=0, description="Minimum system uptime before monitoring")
    cooldown_seconds: int = Field(default=1200, ge=0, description="Minimum spacing between reboots")
    dry_run: bool = Field(default=False, description="Log instead of rebooting")
    disable_file: str = Field(default="/etc/netwatch-agent.disable", description="Pause while this path exists")
    state_dir: str = Field(default="/run/netwatch-agent", description="Directory for persisted metrics")
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)

    @field_validator("health_check_mode", mode="before")
    @classmethod
    def _fallback_mode(cls, value: Any) -> str:
        mode = str(value or "").strip().lower()
        if mode not in HEALTH_CHECK_MODES:
            logger.warning("invalid_health_check_mode", mode=value, expected=list(HEALTH_CHECK_MODES), fallback="icmp")
            return "icmp"
        return mode

    @field_validator("use_fping", mode="before")
    @classmethod
    def _check_fping(cls, value: Any) -> str:
        mode = str(value or "auto").strip().lower()
        if mode not in FPING_MODES:
            raise ValueError(f"use_fping must be one of {', '.join(FPING_MODES)}")
        return mode

    @field_validator("targets", "tcp_targets", "http_targets", mode="before")
    @classmethod
    def _split_targets(cls, value: Any) -> list[str]:
        return _split_list(value)

    @field_validator("http_expected_code", mode="before")
    @classmethod
    def _code_as_str(cls, value: Any) -> str:
        return str(value).strip()

    @field_validator("webhook", mode="before")
    @classmethod
    def _none_webhook(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _check_min_ok(self) -> "WatchdogConfig":
        targets = self.active_targets
        if self.health_check_mode == "tcp":
            for target in targets:
                if parse_tcp_target(target) is None:
                    logger.warning("invalid_tcp_target", target=target, expected="host:port")
            # Malformed entries are skipped at probe time and can never succeed.
            targets = [t for t in targets if parse_tcp_target(t) is not None]
        count = len(targets)
        if count == 0:
            raise ValueError(f"no targets configured for health_check_mode={self.health_check_mode}")
        if self.min_ok > count:
            raise ValueError(f"min_ok={self.min_ok} exceeds the {count} usable configured targets")
        return self

    @property
    def active_targets(self) -> list[str]:
        if self.health_check_mode == "tcp":
            return list(self.tcp_targets)
        if self.health_check_mode == "http":
            return list(self.http_targets)
        return list(self.targets)

    @property
    def metrics_path(self) -> Path:
        return Path(self.state_dir) / "metrics.json"

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.health_check_mode,
            "targets": self.active_targets,
            "min_ok": self.min_ok,
            "check_interval": self.check_interval,
            "down_window_seconds": self.down_window_seconds,
            "cooldown_seconds": self.cooldown_seconds,
            "boot_grace": self.boot_grace,
            "dry_run": self.dry_run,
            "webhook_enabled": self.webhook.enabled,
        }


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config YAML must be a mapping: {path}")
    return data


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay the legacy upper-case environment keys onto file values."""
    merged = dict(data)
    webhook = dict(merged.get("webhook") or {})
    for env_key, (section, field) in ENV_KEYS.items():
        value = environ.get(env_key)
        if value is None:
            continue
        if section == "webhook":
            webhook[field] = value
        else:
            merged[field] = value
    if webhook:
        merged["webhook"] = webhook
    return merged


def build_config(data: Mapping[str, Any]) -> WatchdogConfig:
    try:
        return WatchdogConfig(**dict(data))
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def load_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> WatchdogConfig:
    """Load configuration from a YAML file and environment variables.

    A missing file is not an error: every key has a default. Environment
    variables take precedence over file values; unknown keys are ignored.
    """
    config_path = Path(path or os.getenv("NETWATCH_CONFIG", DEFAULT_CONFIG_PATH))
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = _read_yaml(config_path)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    else:
        logger.info("config_file_missing", path=str(config_path))

    data = apply_env_overrides(data, os.environ if environ is None else environ)
    return build_config(data)
