from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence, Set

from . import config
from .errors import SchedulerError
from .models import ProbeResult, Target
from .probe import PROBE_ERROR, TIMEOUT, probe

logger = logging.getLogger(__name__)

Prober = Callable[[Target, float], Awaitable[ProbeResult]]


class Scheduler:
    """Probes every target once per tick and publishes results as they land.

    Overlap policy: a tick whose predecessor is still running is skipped, so
    at most one tick's worth of probes is ever outstanding. Deadlines missed
    while the loop was stalled are skipped as well, never replayed.
    """

    def __init__(
        self,
        snapshot: Callable[[], Sequence[Target]],
        publish: Callable[[ProbeResult], None],
        prober: Prober = probe,
        interval: float = config.PROBE_INTERVAL_SECONDS,
        timeout: float = config.PROBE_TIMEOUT_SECONDS,
        on_stall: Optional[Callable[[float], None]] = None,
        stall_threshold: float = config.STALL_THRESHOLD_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._snapshot = snapshot
        self._publish = publish
        self._prober = prober
        self.interval = interval
        self.timeout = timeout
        self._on_stall = on_stall
        self.stall_threshold = stall_threshold
        self._clock = clock

        self._driver: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._probe_tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self.done = asyncio.Event()
        self.fatal_error: Optional[SchedulerError] = None
        self.ticks = 0
        self.skipped_ticks = 0
        self._last_tick_wall: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._driver is not None and not self._driver.done()

    @property
    def stall_cutoff(self) -> float:
        """Gap between ticks that counts as a suspension at this cadence."""
        return max(self.stall_threshold, 2 * self.interval + self.timeout)

    def start(self):
        if self.running:
            return
        self._stopping.clear()
        self.done.clear()
        self.fatal_error = None
        self._last_tick_wall = None
        self._driver = asyncio.create_task(self._run(), name="probe-scheduler")

    async def stop(self):
        """Cancel the timer, let in-flight probes finish, cancel stragglers."""
        self._stopping.set()
        if self._driver is not None:
            self._driver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._driver
            self._driver = None
        await self._drain()
        self.done.set()

    async def _drain(self):
        tick = self._tick_task
        if tick is None or tick.done():
            return
        grace = self.timeout + config.PROBE_GRACE_SECONDS
        try:
            await asyncio.wait_for(asyncio.shield(tick), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("probes still running after %.1fs; cancelling", grace)
            for task in list(self._probe_tasks):
                task.cancel()
            tick.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await tick

    async def _run(self):
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        try:
            while not self._stopping.is_set():
                self._check_stall()
                if self._tick_task is not None and not self._tick_task.done():
                    self.skipped_ticks += 1
                    logger.warning(
                        "previous tick still running; skipping tick %d", self.ticks + 1
                    )
                else:
                    self._tick_task = self._spawn(self.run_tick(), "probe-tick")
                self.ticks += 1

                deadline += self.interval
                now = loop.time()
                if now > deadline:
                    missed = int((now - deadline) // self.interval) + 1
                    self.skipped_ticks += missed
                    deadline += missed * self.interval
                await asyncio.sleep(deadline - now)
        except SchedulerError as exc:
            self._fail(exc, cancel_driver=False)

    def _check_stall(self):
        now = self._clock()
        last, self._last_tick_wall = self._last_tick_wall, now
        if last is None:
            return
        gap = now - last
        if gap > self.stall_cutoff:
            logger.info("resumed after %.0fs without ticks", gap)
            if self._on_stall is not None:
                self._on_stall(gap)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        try:
            return asyncio.create_task(coro, name=name)
        except (RuntimeError, MemoryError, OSError) as exc:
            coro.close()
            raise SchedulerError(f"cannot spawn probe work: {exc}") from exc

    async def run_tick(self, targets: Optional[Sequence[Target]] = None):
        """Probe each target of one snapshot concurrently.

        Results are published the moment each probe finishes, in completion
        order.
        """
        snapshot = tuple(self._snapshot() if targets is None else targets)
        if not snapshot:
            return
        tasks = []
        for target in snapshot:
            try:
                task = self._spawn(self._probe_and_publish(target), f"probe-{target.id}")
            except SchedulerError as exc:
                if not tasks:
                    self._fail(exc)
                    return
                # partial fan-out: this target waits for the next tick
                logger.error("could not probe %s this tick: %s", target.name, exc)
                continue
            tasks.append(task)
            self._probe_tasks.add(task)
            task.add_done_callback(self._probe_tasks.discard)
        await asyncio.gather(*tasks, return_exceptions=True)

    def _fail(self, exc: SchedulerError, cancel_driver: bool = True):
        self.fatal_error = exc
        logger.critical("probe scheduler stopped: %s", exc)
        self._stopping.set()
        self.done.set()
        if cancel_driver and self._driver is not None:
            self._driver.cancel()

    async def _probe_and_publish(self, target: Target):
        result = await self.probe_once(target)
        self._publish(result)

    async def probe_once(self, target: Target) -> ProbeResult:
        """Single probe under the scheduler's timeout; never raises for probe faults."""
        timestamp = self._clock()
        dispatched = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._prober(target, self.timeout),
                timeout=self.timeout + config.PROBE_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            result = ProbeResult.failure(target.id, TIMEOUT, timestamp)
        except Exception as exc:
            logger.exception("prober crashed for %s (%s)", target.name, target.address)
            result = ProbeResult.failure(target.id, f"{PROBE_ERROR}: {exc}", timestamp)
        return dataclasses.replace(result, dispatched=dispatched)
