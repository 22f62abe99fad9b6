import asyncio

import pytest

from endpoint_monitor.errors import SchedulerError
from endpoint_monitor.models import ProbeResult, ProbeType, Target
from endpoint_monitor.scheduler import Scheduler
from endpoint_monitor.stream import ResultStream


def make_targets(n):
    return [Target(f"t{i}", f"target {i}", f"10.0.0.{i}", 443, ProbeType.TCP) for i in range(n)]


class FakeProber:
    """Sleeps a per-target delay and records concurrency."""

    def __init__(self, delays=None, default=0.0, fail_ids=()):
        self.delays = delays or {}
        self.default = default
        self.fail_ids = set(fail_ids)
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.active_per_target = {}
        self.max_per_target = 0

    async def __call__(self, target, timeout):
        self.calls.append(target.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        count = self.active_per_target.get(target.id, 0) + 1
        self.active_per_target[target.id] = count
        self.max_per_target = max(self.max_per_target, count)
        try:
            await asyncio.sleep(self.delays.get(target.id, self.default))
            if target.id in self.fail_ids:
                raise RuntimeError("boom")
            return ProbeResult.success(target.id, 10.0, 0.0)
        finally:
            self.active -= 1
            self.active_per_target[target.id] -= 1


# -- stream ------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_broadcasts_to_every_subscriber_in_order():
    stream = ResultStream()
    first = stream.subscribe()
    second = stream.subscribe()
    results = [ProbeResult.success(f"t{i}", i, i) for i in range(3)]
    for r in results:
        stream.publish(r)
    stream.close()

    assert [r async for r in first] == results
    assert [r async for r in second] == results


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest_without_blocking():
    stream = ResultStream()
    sub = stream.subscribe(maxsize=2)
    for i in range(5):
        stream.publish(ProbeResult.success(f"t{i}", i, i))
    assert sub.dropped == 3
    assert sub.get_nowait().target_id == "t3"
    assert sub.get_nowait().target_id == "t4"
    assert sub.get_nowait() is None


@pytest.mark.asyncio
async def test_unsubscribe_ends_iteration():
    stream = ResultStream()
    sub = stream.subscribe()
    stream.publish(ProbeResult.success("a", 1, 1))
    sub.close()
    stream.publish(ProbeResult.success("b", 1, 1))
    assert [r.target_id async for r in sub] == ["a"]
    assert stream.subscriber_count == 0


# -- scheduler ---------------------------------------------------------


@pytest.mark.asyncio
async def test_tick_probes_concurrently_and_publishes_in_completion_order():
    targets = make_targets(3)
    prober = FakeProber(delays={"t0": 0.3, "t1": 0.1, "t2": 0.2})
    published = []
    scheduler = Scheduler(lambda: targets, published.append, prober=prober, timeout=1.0)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await scheduler.run_tick()
    elapsed = loop.time() - started

    assert [r.target_id for r in published] == ["t1", "t2", "t0"]
    assert prober.max_active == 3
    # bounded by the slowest probe, not the sum
    assert elapsed < 0.55


@pytest.mark.asyncio
async def test_results_are_published_before_tick_finishes():
    targets = make_targets(2)
    prober = FakeProber(delays={"t0": 0.05, "t1": 0.5})
    published = []
    scheduler = Scheduler(lambda: targets, published.append, prober=prober, timeout=1.0)

    tick = asyncio.create_task(scheduler.run_tick())
    await asyncio.sleep(0.2)
    assert [r.target_id for r in published] == ["t0"]
    await tick
    assert len(published) == 2


@pytest.mark.asyncio
async def test_prober_crash_becomes_failed_result():
    targets = make_targets(2)
    prober = FakeProber(fail_ids={"t0"})
    published = []
    scheduler = Scheduler(lambda: targets, published.append, prober=prober, timeout=1.0)
    await scheduler.run_tick()

    by_id = {r.target_id: r for r in published}
    assert not by_id["t0"].ok
    assert by_id["t0"].error_tag == "probe_error"
    assert by_id["t1"].ok


@pytest.mark.asyncio
async def test_prober_ignoring_timeout_is_cut_off(monkeypatch):
    from endpoint_monitor import scheduler as scheduler_mod

    monkeypatch.setattr(scheduler_mod.config, "PROBE_GRACE_SECONDS", 0.05)
    targets = make_targets(1)
    prober = FakeProber(default=10)
    published = []
    scheduler = Scheduler(lambda: targets, published.append, prober=prober, timeout=0.05)
    await asyncio.wait_for(scheduler.run_tick(), timeout=1.0)
    assert published[0].error == "timeout"


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped():
    targets = make_targets(2)
    prober = FakeProber(default=0.25)
    published = []
    scheduler = Scheduler(
        lambda: targets, published.append, prober=prober, interval=0.05, timeout=1.0
    )
    scheduler.start()
    await asyncio.sleep(0.4)
    await scheduler.stop()

    assert scheduler.skipped_ticks >= 1
    assert prober.max_per_target == 1
    assert not scheduler.running


@pytest.mark.asyncio
async def test_snapshot_changes_between_ticks():
    targets = make_targets(1)
    prober = FakeProber()
    published = []
    scheduler = Scheduler(
        lambda: tuple(targets), published.append, prober=prober, interval=0.05
    )
    scheduler.start()
    await asyncio.sleep(0.08)
    targets[:] = make_targets(3)[1:]
    await asyncio.sleep(0.12)
    targets.clear()
    await asyncio.sleep(0.08)
    await scheduler.stop()

    ids = set(prober.calls)
    assert {"t0", "t1", "t2"} <= ids
    assert scheduler.fatal_error is None


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_probes():
    targets = make_targets(2)
    prober = FakeProber(default=0.15)
    published = []
    scheduler = Scheduler(
        lambda: targets, published.append, prober=prober, interval=10, timeout=1.0
    )
    scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert len(published) == 2
    assert prober.active == 0
    assert scheduler.done.is_set()


@pytest.mark.asyncio
async def test_stop_cancels_probes_past_their_timeout(monkeypatch):
    from endpoint_monitor import scheduler as scheduler_mod

    monkeypatch.setattr(scheduler_mod.config, "PROBE_GRACE_SECONDS", 0.05)

    async def stuck(target, timeout):
        await asyncio.Event().wait()

    scheduler = Scheduler(
        lambda: make_targets(1), lambda r: None, prober=stuck, interval=10, timeout=0.05
    )
    scheduler.start()
    await asyncio.sleep(0.01)
    await asyncio.wait_for(scheduler.stop(), timeout=1.0)
    assert not scheduler.running


@pytest.mark.asyncio
async def test_spawn_failure_is_fatal():
    scheduler = Scheduler(lambda: make_targets(2), lambda r: None, prober=FakeProber())

    def cannot_spawn(coro, name):
        coro.close()
        raise SchedulerError("cannot spawn probe work: out of memory")

    scheduler._spawn = cannot_spawn
    await scheduler.run_tick()

    assert isinstance(scheduler.fatal_error, SchedulerError)
    assert scheduler.done.is_set()


@pytest.mark.asyncio
async def test_long_gap_between_ticks_reports_stall():
    now = [1000.0]
    gaps = []
    scheduler = Scheduler(
        lambda: (),
        lambda r: None,
        on_stall=gaps.append,
        stall_threshold=30,
        clock=lambda: now[0],
    )
    scheduler._check_stall()
    now[0] += 5
    scheduler._check_stall()
    assert gaps == []
    now[0] += 120
    scheduler._check_stall()
    assert gaps == [120]


@pytest.mark.asyncio
async def test_interval_longer_than_stall_threshold_is_not_a_stall():
    now = [1000.0]
    gaps = []
    scheduler = Scheduler(
        lambda: (),
        lambda r: None,
        interval=45,
        timeout=2,
        on_stall=gaps.append,
        stall_threshold=30,
        clock=lambda: now[0],
    )
    assert scheduler.stall_cutoff == 92
    for _ in range(4):
        scheduler._check_stall()
        now[0] += 45
    assert gaps == []
    now[0] += 300
    scheduler._check_stall()
    assert gaps == [345]


@pytest.mark.asyncio
async def test_probe_once_uses_same_contract():
    prober = FakeProber()
    scheduler = Scheduler(lambda: (), lambda r: None, prober=prober)
    result = await scheduler.probe_once(make_targets(1)[0])
    assert result.ok
    assert result.target_id == "t0"
    assert result.dispatched is not None
