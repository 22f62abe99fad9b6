from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import re
import shutil
import socket
import sys
import time
from typing import List, Optional

from . import config
from .models import ProbeResult, ProbeType, Target

logger = logging.getLogger(__name__)

# Error tags carried in ProbeResult.error
TIMEOUT = "timeout"
REFUSED = "refused"
DNS_FAILED = "dns_failed"
UNREACHABLE = "unreachable"
PING_FAILED = "ping_failed"
ICMP_UNSUPPORTED = "icmp_unsupported"
PROBE_ERROR = "probe_error"

PING_RTT_RE = re.compile(r"time\s*([=<])\s*([0-9]*\.?[0-9]+)\s*ms", re.IGNORECASE)
PING_DENIED_RE = re.compile(r"operation not permitted|permission denied", re.IGNORECASE)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _with_detail(tag: str, detail: object) -> str:
    text = str(detail).strip()
    return f"{tag}: {text}" if text else tag


async def tcp_probe(target: Target, timeout: float) -> ProbeResult:
    """Time a single TCP handshake to target.host:target.port.

    The socket is closed as soon as the handshake completes or fails.
    Resolution time counts towards the latency.
    """
    timestamp = time.time()
    start = time.perf_counter()
    loop = asyncio.get_running_loop()
    writer: Optional[asyncio.StreamWriter] = None

    async def _connect() -> asyncio.StreamWriter:
        infos = await loop.getaddrinfo(
            target.host, target.port, type=socket.SOCK_STREAM
        )
        if not infos:
            raise socket.gaierror(f"no address for {target.host}")
        family, _, _, _, sockaddr = infos[0]
        _, w = await asyncio.open_connection(
            host=sockaddr[0], port=sockaddr[1], family=family
        )
        return w

    try:
        writer = await asyncio.wait_for(_connect(), timeout=timeout)
        return ProbeResult.success(target.id, _elapsed_ms(start), timestamp)
    except asyncio.TimeoutError:
        return ProbeResult.failure(target.id, TIMEOUT, timestamp, _elapsed_ms(start))
    except socket.gaierror as exc:
        return ProbeResult.failure(
            target.id, _with_detail(DNS_FAILED, exc), timestamp, _elapsed_ms(start)
        )
    except ConnectionRefusedError as exc:
        return ProbeResult.failure(
            target.id, _with_detail(REFUSED, exc), timestamp, _elapsed_ms(start)
        )
    except OSError as exc:
        return ProbeResult.failure(
            target.id, _with_detail(UNREACHABLE, exc), timestamp, _elapsed_ms(start)
        )
    finally:
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()


# Set once ping itself refuses to open a raw socket
_icmp_denied = False


@functools.lru_cache(maxsize=None)
def _ping_binary_present() -> bool:
    available = shutil.which("ping") is not None
    if not available:
        logger.warning("ping binary not found; ICMP targets are unsupported")
    return available


def icmp_available() -> bool:
    """Whether this environment can send echo requests at all.

    Echoes go through the system ping binary, so its absence means ICMP is
    unsupported here rather than every ICMP target being down. The same
    holds once ping reports it is not permitted to send them.
    """
    return not _icmp_denied and _ping_binary_present()


def mark_icmp_unsupported(reason: str):
    global _icmp_denied
    if not _icmp_denied:
        logger.warning("ICMP not permitted here (%s); ICMP targets are unsupported", reason)
    _icmp_denied = True


async def _reap(proc: asyncio.subprocess.Process):
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    with contextlib.suppress(ProcessLookupError):
        await proc.wait()


def ping_command(host: str, timeout: float, platform: str = sys.platform) -> List[str]:
    seconds = max(1, int(round(timeout)))
    if platform.startswith("win"):
        return ["ping", "-n", "1", "-w", str(int(timeout * 1000)), host]
    if platform == "darwin":
        return ["ping", "-c", "1", "-t", str(seconds), host]
    # Linux / Android
    return ["ping", "-n", "-c", "1", "-W", str(seconds), host]


def parse_ping_latency(output: str) -> Optional[float]:
    """Extract the RTT from ping output; "time<1ms" counts as 1 ms."""
    match = PING_RTT_RE.search(output)
    if not match:
        return None
    value = float(match.group(2))
    if match.group(1) == "<":
        return max(value, 1.0)
    return value


async def icmp_probe(target: Target, timeout: float) -> ProbeResult:
    """Send one echo request to target.host via the system ping binary."""
    timestamp = time.time()
    if not icmp_available():
        return ProbeResult.failure(target.id, ICMP_UNSUPPORTED, timestamp)

    start = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            *ping_command(target.host, timeout),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except (PermissionError, FileNotFoundError) as exc:
        mark_icmp_unsupported(str(exc))
        return ProbeResult.failure(
            target.id, _with_detail(ICMP_UNSUPPORTED, exc), timestamp
        )

    try:
        out_bytes, _ = await asyncio.wait_for(
            proc.communicate(), timeout=timeout + config.PROBE_GRACE_SECONDS
        )
    except asyncio.TimeoutError:
        await _reap(proc)
        return ProbeResult.failure(target.id, TIMEOUT, timestamp, _elapsed_ms(start))
    except asyncio.CancelledError:
        await asyncio.shield(_reap(proc))
        raise

    elapsed = _elapsed_ms(start)
    output = out_bytes.decode(errors="replace")
    if proc.returncode == 0:
        rtt_ms = parse_ping_latency(output)
        return ProbeResult.success(
            target.id, rtt_ms if rtt_ms is not None else elapsed, timestamp
        )
    if PING_DENIED_RE.search(output):
        mark_icmp_unsupported(output.strip())
        return ProbeResult.failure(
            target.id, _with_detail(ICMP_UNSUPPORTED, output.strip()), timestamp
        )
    tag = TIMEOUT if "100% packet loss" in output else PING_FAILED
    return ProbeResult.failure(target.id, tag, timestamp, elapsed)


async def probe(target: Target, timeout: float = config.PROBE_TIMEOUT_SECONDS) -> ProbeResult:
    """Run the prober matching target.probe_type once."""
    if target.probe_type is ProbeType.ICMP:
        result = await icmp_probe(target, timeout)
    else:
        result = await tcp_probe(target, timeout)
    if not result.ok:
        logger.debug("%s (%s) failed: %s", target.name, target.address, result.error)
    return result
