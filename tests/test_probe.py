import asyncio
import socket

import pytest

from endpoint_monitor import probe as probe_mod
from endpoint_monitor.models import ProbeType, Target
from endpoint_monitor.probe import (
    DNS_FAILED,
    ICMP_UNSUPPORTED,
    PING_FAILED,
    REFUSED,
    TIMEOUT,
    parse_ping_latency,
    ping_command,
    probe,
)


def tcp_target(port, host="127.0.0.1"):
    return Target("t1", "local", host, port, ProbeType.TCP)


def ping_target(host="192.0.2.1"):
    return Target("p1", "ping", host, 0, ProbeType.ICMP)


class FakeProcess:
    def __init__(self, output, returncode=0, delay=0.0):
        self.output = output.encode()
        self.returncode = returncode
        self.delay = delay
        self.killed = False
        self.waited = False

    async def communicate(self):
        await asyncio.sleep(self.delay)
        return self.output, None

    def kill(self):
        self.killed = True

    async def wait(self):
        self.waited = True
        return self.returncode


def fake_exec(monkeypatch, proc, calls=None):
    async def _exec(*args, **kwargs):
        if calls is not None:
            calls.append(args)
        return proc

    monkeypatch.setattr(probe_mod, "_ping_binary_present", lambda: True)
    monkeypatch.setattr(probe_mod, "_icmp_denied", False)
    monkeypatch.setattr(probe_mod.asyncio, "create_subprocess_exec", _exec)


@pytest.mark.asyncio
async def test_tcp_probe_connects_to_listening_port():
    connections = []

    async def handle(reader, writer):
        connections.append(True)
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        result = await probe(tcp_target(port), timeout=2.0)
    finally:
        server.close()
        await server.wait_closed()

    assert result.ok
    assert result.error is None
    assert result.target_id == "t1"
    assert result.latency_ms >= 0


@pytest.mark.asyncio
async def test_tcp_probe_refused_on_closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    result = await probe(tcp_target(port), timeout=2.0)
    assert not result.ok
    assert result.error_tag == REFUSED


@pytest.mark.asyncio
async def test_tcp_probe_dns_failure(monkeypatch):
    loop = asyncio.get_running_loop()

    async def no_such_host(*args, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(loop, "getaddrinfo", no_such_host)
    result = await probe(tcp_target(443, host="no-such-host.invalid"), timeout=1.0)
    assert not result.ok
    assert result.error_tag == DNS_FAILED


@pytest.mark.asyncio
async def test_tcp_probe_times_out_within_bound(monkeypatch):
    loop = asyncio.get_running_loop()

    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    monkeypatch.setattr(loop, "getaddrinfo", hang)
    started = loop.time()
    result = await probe(tcp_target(443, host="slow.example"), timeout=0.1)
    assert loop.time() - started < 1.0
    assert not result.ok
    assert result.error == TIMEOUT


@pytest.mark.asyncio
async def test_icmp_unsupported_is_reported_distinctly(monkeypatch):
    monkeypatch.setattr(probe_mod, "icmp_available", lambda: False)
    result = await probe(ping_target(), timeout=1.0)
    assert not result.ok
    assert result.error == ICMP_UNSUPPORTED


@pytest.mark.asyncio
async def test_icmp_probe_parses_rtt(monkeypatch):
    calls = []
    output = "64 bytes from 192.0.2.1: icmp_seq=1 ttl=57 time=12.3 ms\n"
    fake_exec(monkeypatch, FakeProcess(output), calls)
    result = await probe(ping_target(), timeout=2.0)
    assert result.ok
    assert result.latency_ms == pytest.approx(12.3)
    assert calls[0][0] == "ping"
    assert calls[0][-1] == "192.0.2.1"


@pytest.mark.asyncio
async def test_icmp_probe_failure(monkeypatch):
    output = "1 packets transmitted, 0 received, 100% packet loss\n"
    fake_exec(monkeypatch, FakeProcess(output, returncode=1))
    result = await probe(ping_target(), timeout=2.0)
    assert not result.ok
    assert result.error == TIMEOUT

    fake_exec(monkeypatch, FakeProcess("Destination Host Unreachable", returncode=1))
    result = await probe(ping_target(), timeout=2.0)
    assert result.error == PING_FAILED


@pytest.mark.asyncio
async def test_icmp_probe_permission_denied_is_unsupported(monkeypatch):
    output = "ping: socket: Operation not permitted\n"
    fake_exec(monkeypatch, FakeProcess(output, returncode=2))
    result = await probe(ping_target(), timeout=2.0)
    assert result.error_tag == ICMP_UNSUPPORTED


@pytest.mark.asyncio
async def test_denied_ping_marks_icmp_unavailable(monkeypatch):
    calls = []
    output = "ping: socket: Operation not permitted\n"
    fake_exec(monkeypatch, FakeProcess(output, returncode=2), calls)
    assert probe_mod.icmp_available()

    await probe(ping_target(), timeout=2.0)
    assert not probe_mod.icmp_available()

    # later echoes are not attempted at all
    result = await probe(ping_target(), timeout=2.0)
    assert result.error == ICMP_UNSUPPORTED
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_icmp_probe_kills_hung_ping(monkeypatch):
    proc = FakeProcess("", delay=10)
    fake_exec(monkeypatch, proc)
    monkeypatch.setattr(probe_mod.config, "PROBE_GRACE_SECONDS", 0.05)
    result = await probe(ping_target(), timeout=0.05)
    assert result.error == TIMEOUT
    assert proc.killed
    assert proc.waited


@pytest.mark.asyncio
async def test_cancelled_icmp_probe_reaps_ping(monkeypatch):
    proc = FakeProcess("", delay=10)
    fake_exec(monkeypatch, proc)
    task = asyncio.create_task(probe(ping_target(), timeout=5.0))
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert proc.killed
    assert proc.waited


def test_parse_ping_latency_formats():
    assert parse_ping_latency("time=5ms") == 5.0
    assert parse_ping_latency("Reply from 1.1.1.1: bytes=32 time=0.456 ms") == 0.456
    assert parse_ping_latency("Reply from 1.1.1.1: bytes=32 time<1ms TTL=57") == 1.0
    assert parse_ping_latency("Request timed out.") is None


def test_ping_command_per_platform():
    assert ping_command("h", 2.0, "win32") == ["ping", "-n", "1", "-w", "2000", "h"]
    assert ping_command("h", 2.0, "darwin") == ["ping", "-c", "1", "-t", "2", "h"]
    assert ping_command("h", 2.0, "linux") == ["ping", "-n", "-c", "1", "-W", "2", "h"]
