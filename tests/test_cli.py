from __future__ import annotations

from pathlib import Path

import pytest

import netwatch.main as cli
from netwatch.config import WatchdogConfig
from netwatch.prober import ProbeOutcome


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda level="INFO": None)
    for key in ("MIN_OK", "HEALTH_CHECK_MODE", "WEBHOOK_ENABLED", "WEBHOOK_URL"):
        monkeypatch.delenv(key, raising=False)


def _patch_probe(monkeypatch: pytest.MonkeyPatch, success_count: int) -> None:
    async def fake_probe(config: WatchdogConfig) -> ProbeOutcome:
        return ProbeOutcome(success_count=success_count, total=3)

    monkeypatch.setattr(cli, "check_probe_dependencies", lambda config: None)
    monkeypatch.setattr(cli, "probe", fake_probe)


@pytest.mark.parametrize(("success_count", "exit_code"), [(3, 0), (0, 1)])
def test_once_exit_code_reflects_reachability(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, success_count: int, exit_code: int
) -> None:
    _patch_probe(monkeypatch, success_count)
    assert cli.main(["--config", str(tmp_path / "none.yaml"), "--once"]) == exit_code


def test_invalid_config_is_fatal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MIN_OK", "9")
    assert cli.main(["--config", str(tmp_path / "none.yaml"), "--once"]) == 1


def test_test_webhook_requires_configuration(tmp_path: Path) -> None:
    assert cli.main(["--config", str(tmp_path / "none.yaml"), "--test-webhook"]) == 1
