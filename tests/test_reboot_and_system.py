from __future__ import annotations

import socket
from pathlib import Path

import pytest

from netwatch.reboot import FALLBACK_REBOOT_COMMAND, PRIMARY_REBOOT_COMMAND, RebootExecutor
from netwatch.system import sd_notify, system_uptime_seconds


def _executor(exit_codes: dict[str, int | None], calls: list[str]) -> RebootExecutor:
    executor = RebootExecutor(sync_filesystems=lambda: calls.append("sync"))

    async def fake_run(argv: list[str]) -> int | None:
        calls.append(argv[0])
        return exit_codes.get(argv[0])

    executor._run = fake_run  # type: ignore[method-assign]
    return executor


@pytest.mark.asyncio
async def test_primary_reboot_path() -> None:
    calls: list[str] = []
    executor = _executor({PRIMARY_REBOOT_COMMAND[0]: 0}, calls)
    await executor.reboot()
    assert calls == ["sync", PRIMARY_REBOOT_COMMAND[0]]


@pytest.mark.asyncio
@pytest.mark.parametrize("primary_code", [1, None])
async def test_fallback_when_primary_fails(primary_code: int | None) -> None:
    calls: list[str] = []
    executor = _executor({PRIMARY_REBOOT_COMMAND[0]: primary_code, FALLBACK_REBOOT_COMMAND[0]: 0}, calls)
    await executor.reboot()
    assert calls == ["sync", PRIMARY_REBOOT_COMMAND[0], FALLBACK_REBOOT_COMMAND[0]]


@pytest.mark.asyncio
async def test_missing_binaries_do_not_raise() -> None:
    executor = RebootExecutor(
        primary=["/nonexistent/systemctl", "reboot", "-i"],
        fallback=["/nonexistent/reboot", "now"],
        sync_filesystems=lambda: None,
    )
    await executor.reboot()


def test_system_uptime_from_proc_file(tmp_path: Path) -> None:
    p = tmp_path / "uptime"
    p.write_text("12345.67 54321.00\n", encoding="utf-8")
    assert system_uptime_seconds(p) == 12345

    p.write_text("garbage", encoding="utf-8")
    assert isinstance(system_uptime_seconds(p), int)


def test_sd_notify_without_socket_is_a_no_op(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert sd_notify("READY=1") is False


def test_sd_notify_sends_datagram(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = str(tmp_path / "notify.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    server.bind(path)
    server.settimeout(2.0)
    try:
        monkeypatch.setenv("NOTIFY_SOCKET", path)
        assert sd_notify("WATCHDOG=1") is True
        assert server.recv(64) == b"WATCHDOG=1"
    finally:
        server.close()
