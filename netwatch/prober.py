from __future__ import annotations

import asyncio
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from netwatch.config import WatchdogConfig, parse_tcp_target
from netwatch.errors import ProbeUnavailableError

logger = structlog.get_logger(__name__)

# Extra time allowed on top of the per-target timeout before a probe is abandoned.
PROBE_GRACE_SECONDS = 1.0

# fping -q summary line: "1.1.1.1 : xmt/rcv/%loss = 1/1/0%" (optionally followed by min/avg/max)
_FPING_SUMMARY_RE = re.compile(r"xmt/rcv/%loss\s*=\s*(\d+)/(\d+)/")


@dataclass(frozen=True)
class ProbeOutcome:
    success_count: int
    total: int

    def is_up(self, min_ok: int) -> bool:
        return self.success_count >= int(min_ok)


def _first_executable(candidates: list[str], name: str) -> str | None:
    for path in candidates:
        if Path(path).is_file():
            return path
    return shutil.which(name)


def find_fping_executable() -> str | None:
    return _first_executable(["/usr/sbin/fping", "/usr/bin/fping"], "fping")


def find_ping_executable() -> str | None:
    return _first_executable(["/bin/ping", "/usr/bin/ping", "/usr/sbin/ping"], "ping")


def check_probe_dependencies(config: WatchdogConfig) -> None:
    """Raise ProbeUnavailableError when the configured mode cannot probe at all.

    TCP and HTTP probing run in-process (asyncio sockets, httpx), so only ICMP
    depends on external binaries.
    """
    if config.health_check_mode != "icmp":
        return
    fping = find_fping_executable() if config.use_fping != "no" else None
    if config.use_fping == "yes" and fping is None:
        logger.warning("fping_missing", use_fping="yes", fallback="ping")
    if fping is None and find_ping_executable() is None:
        raise ProbeUnavailableError("ICMP mode requires fping or ping, neither was found")


def parse_fping_output(output: str) -> int:
    """Count targets with at least one received reply in fping -q output.

    Lines that do not look like a summary line are ignored.
    """
    ok = 0
    for line in (output or "").splitlines():
        if "xmt/rcv/%loss" not in line:
            continue
        m = _FPING_SUMMARY_RE.search(line)
        if not m:
            continue
        try:
            received = int(m.group(2))
        except ValueError:
            continue
        if received >= 1:
            ok += 1
    return ok


async def _run_command(argv: list[str], timeout_seconds: float) -> tuple[int | None, str]:
    """Run a command, returning (exit_code, combined output).

    exit_code is None when the command could not be started or was killed
    after timeout_seconds; the output read until then is still returned.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except (OSError, ValueError) as e:
        # ValueError: an argument with an embedded NUL byte.
        logger.error("probe_command_failed", argv=argv[0], error=f"{type(e).__name__}: {e}")
        return None, ""

    chunks: list[bytes] = []

    async def _collect() -> int:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(4096)
            if not chunk:
                break
            chunks.append(chunk)
        return await proc.wait()

    code: int | None
    try:
        code = await asyncio.wait_for(_collect(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        code = None
    except asyncio.CancelledError:
        proc.kill()
        raise
    return code, b"".join(chunks).decode("utf-8", errors="replace")


def _icmp_budget_seconds(config: WatchdogConfig) -> float:
    # ping/fping space echo requests one second apart.
    return float(config.ping_timeout + config.ping_count - 1) + PROBE_GRACE_SECONDS


async def probe_icmp(config: WatchdogConfig) -> ProbeOutcome:
    targets = list(config.targets)
    budget = _icmp_budget_seconds(config)

    fping = find_fping_executable() if config.use_fping != "no" else None
    if fping is not None:
        logger.debug("icmp_probe_fping", fping=fping, targets=targets)
        argv = [fping, "-c", str(config.ping_count), "-t", str(config.ping_timeout * 1000), "-q", *targets]
        # fping exits non-zero when any target is unreachable; only the summary matters.
        _code, output = await _run_command(argv, budget)
        return ProbeOutcome(success_count=parse_fping_output(output), total=len(targets))

    ping = find_ping_executable() or "ping"

    async def _ping_one(host: str) -> bool:
        argv = [ping, "-n", "-q", "-c", str(config.ping_count), "-W", str(config.ping_timeout), host]
        code, _output = await _run_command(argv, budget)
        ok = code == 0
        logger.debug("icmp_probe_result", target=host, ok=ok, exit_code=code)
        return ok

    results = await asyncio.gather(*(_ping_one(t) for t in targets))
    return ProbeOutcome(success_count=sum(1 for r in results if r), total=len(targets))


async def _tcp_connect(host: str, port: int, timeout_seconds: float) -> bool:
    started = time.perf_counter()
    writer = None
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host=host, port=port),
            timeout=timeout_seconds,
        )
        logger.debug(
            "tcp_probe_result",
            target=f"{host}:{port}",
            ok=True,
            elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        return True
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug("tcp_probe_result", target=f"{host}:{port}", ok=False, error=type(e).__name__)
        return False
    finally:
        if writer is not None:
            try:
                writer.close()
                await asyncio.wait_for(writer.wait_closed(), timeout=PROBE_GRACE_SECONDS)
            except Exception:
                pass


async def probe_tcp(config: WatchdogConfig) -> ProbeOutcome:
    endpoints: list[tuple[str, int]] = []
    for target in config.tcp_targets:
        parsed = parse_tcp_target(target)
        if parsed is None:
            logger.warning("invalid_tcp_target", target=target, expected="host:port")
            continue
        endpoints.append(parsed)

    results = await asyncio.gather(*(_tcp_connect(h, p, float(config.ping_timeout)) for h, p in endpoints))
    return ProbeOutcome(success_count=sum(1 for r in results if r), total=len(endpoints))


async def http_status_check(
    client: httpx.AsyncClient, url: str, *, expected_code: str, timeout_seconds: float
) -> bool:
    started = time.perf_counter()
    try:
        resp = await client.get(url, timeout=timeout_seconds)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.debug("http_probe_result", target=url, ok=False, error=f"{type(e).__name__}: {e}")
        return False

    ok = str(resp.status_code) == str(expected_code).strip()
    logger.debug(
        "http_probe_result",
        target=url,
        ok=ok,
        status_code=resp.status_code,
        elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
    )
    return ok


async def probe_http(config: WatchdogConfig, client: httpx.AsyncClient | None = None) -> ProbeOutcome:
    urls = list(config.http_targets)
    timeout = float(config.ping_timeout)

    async def _run(c: httpx.AsyncClient) -> list[bool]:
        async def _bounded(url: str) -> bool:
            try:
                return await asyncio.wait_for(
                    http_status_check(c, url, expected_code=config.http_expected_code, timeout_seconds=timeout),
                    timeout=timeout + PROBE_GRACE_SECONDS,
                )
            except asyncio.TimeoutError:
                logger.debug("http_probe_result", target=url, ok=False, error="deadline")
                return False

        return list(await asyncio.gather(*(_bounded(u) for u in urls)))

    if client is not None:
        results = await _run(client)
    else:
        # Targets are operator-chosen IPs, so certificate names will not match.
        async with httpx.AsyncClient(verify=False, follow_redirects=False) as owned:
            results = await _run(owned)
    return ProbeOutcome(success_count=sum(1 for r in results if r), total=len(urls))


PROBES = {
    "icmp": probe_icmp,
    "tcp": probe_tcp,
    "http": probe_http,
}


async def probe(config: WatchdogConfig) -> ProbeOutcome:
    """Run one reachability check across all targets of the configured mode."""
    strategy = PROBES.get(config.health_check_mode)
    if strategy is None:
        logger.error("invalid_health_check_mode", mode=config.health_check_mode, fallback="icmp")
        strategy = probe_icmp
    outcome = await strategy(config)
    logger.debug(
        "probe_complete",
        mode=config.health_check_mode,
        success_count=outcome.success_count,
        total=outcome.total,
    )
    return outcome
