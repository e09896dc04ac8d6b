from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from netwatch.config import WatchdogConfig, apply_env_overrides, build_config, load_config
from netwatch.errors import ConfigError


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.yaml", environ={})
    assert cfg.health_check_mode == "icmp"
    assert cfg.active_targets == ["1.1.1.1", "8.8.8.8", "9.9.9.9"]
    assert cfg.min_ok == 1
    assert cfg.check_interval == 10
    assert cfg.down_window_seconds == 600
    assert cfg.boot_grace == 180
    assert cfg.cooldown_seconds == 1200
    assert cfg.dry_run is False
    assert cfg.webhook.enabled is False
    assert cfg.webhook.events == ["down", "recovery", "reboot", "startup", "health"]
    assert cfg.webhook.health_interval == 86400
    assert cfg.metrics_path == Path("/run/netwatch-agent/metrics.json")


def test_yaml_file_with_unknown_keys(tmp_path: Path) -> None:
    p = tmp_path / "config.yaml"
    p.write_text(
        "\n".join(
            [
                "health_check_mode: http",
                "http_targets: [http://10.0.0.1, http://10.0.0.2]",
                "http_expected_code: 204",
                "min_ok: 2",
                "something_else: 42",
                "webhook:",
                "  enabled: true",
                "  url: https://hooks.example/notify",
                "  method: put",
                "  headers: 'Authorization: Bearer x; X-Env: prod'",
                "  events: down,reboot",
            ]
        ),
        encoding="utf-8",
    )
    cfg = load_config(p, environ={})
    assert cfg.health_check_mode == "http"
    assert cfg.active_targets == ["http://10.0.0.1", "http://10.0.0.2"]
    assert cfg.http_expected_code == "204"
    assert cfg.min_ok == 2
    assert cfg.webhook.enabled is True
    assert cfg.webhook.method == "PUT"
    assert cfg.webhook.headers == ["Authorization: Bearer x", "X-Env: prod"]
    assert cfg.webhook.events == ["down", "reboot"]


def test_env_overrides_file_values(tmp_path: Path) -> None:
    p = tmp_path / "config.yaml"
    p.write_text("health_check_mode: icmp\nmin_ok: 1\nwebhook:\n  url: https://a.example\n", encoding="utf-8")
    cfg = load_config(
        p,
        environ={
            "HEALTH_CHECK_MODE": "tcp",
            "TCP_TARGETS": "10.0.0.1:443 10.0.0.2:443,10.0.0.3:853",
            "MIN_OK": "2",
            "DRY_RUN": "1",
            "WEBHOOK_ENABLED": "1",
            "WEBHOOK_HEALTH_INTERVAL": "0",
        },
    )
    assert cfg.health_check_mode == "tcp"
    assert cfg.active_targets == ["10.0.0.1:443", "10.0.0.2:443", "10.0.0.3:853"]
    assert cfg.min_ok == 2
    assert cfg.dry_run is True
    assert cfg.webhook.enabled is True
    assert cfg.webhook.url == "https://a.example"
    assert cfg.webhook.health_interval == 0


def test_apply_env_overrides_ignores_unrelated_variables() -> None:
    merged = apply_env_overrides({"min_ok": 1}, {"PATH": "/bin", "BOOT_GRACE": "5"})
    assert merged == {"min_ok": 1, "boot_grace": "5"}


def test_unknown_mode_falls_back_to_icmp() -> None:
    cfg = WatchdogConfig(health_check_mode="carrier-pigeon")
    assert cfg.health_check_mode == "icmp"
    assert cfg.active_targets == cfg.targets


@pytest.mark.parametrize(
    "data",
    [
        {"min_ok": 0},
        {"min_ok": 4},
        {"targets": ["1.1.1.1"], "min_ok": 2},
        {"targets": []},
        {"down_window_seconds": -1},
        {"cooldown_seconds": -5},
        {"check_interval": 0},
        {"use_fping": "sometimes"},
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, data: dict) -> None:
    p = tmp_path / "config.yaml"
    p.write_text("\n".join(f"{k}: {v!r}" if isinstance(v, str) else f"{k}: {v}" for k, v in data.items()), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p, environ={})


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    p = tmp_path / "config.yaml"
    p.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p, environ={})


def test_config_is_immutable() -> None:
    cfg = WatchdogConfig()
    with pytest.raises(ValidationError):
        cfg.min_ok = 3  # type: ignore[misc]


def test_min_ok_counts_only_well_formed_tcp_targets() -> None:
    data = {"health_check_mode": "tcp", "tcp_targets": ["127.0.0.1:1", "bad-target"], "min_ok": 2}
    with pytest.raises(ConfigError, match="min_ok=2"):
        build_config(data)

    cfg = build_config({**data, "min_ok": 1})
    assert cfg.active_targets == ["127.0.0.1:1", "bad-target"]


def test_tcp_mode_with_only_malformed_targets_is_rejected() -> None:
    with pytest.raises(ConfigError):
        build_config({"health_check_mode": "tcp", "tcp_targets": ["no-port", "host:99999"]})
