from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, Iterable, List, Optional, Set

from . import config
from .errors import SchedulerError, TargetError
from .health import classify_summary
from .models import ProbeResult, ProbeType, Target, TargetStatus, WindowSummary
from .probe import ICMP_UNSUPPORTED, icmp_available, probe
from .registry import RegistryChange, TargetRegistry
from .scheduler import Prober, Scheduler
from .stats import WindowAggregator
from .stream import ResultStream, Subscription

logger = logging.getLogger(__name__)


class Monitor:
    """Wires the registry, scheduler, result stream and window aggregator.

    This is the whole surface the outside world talks to: feed it targets,
    subscribe to results, ask it for summaries.
    """

    def __init__(
        self,
        targets: Iterable[Target] = (),
        interval: float = config.PROBE_INTERVAL_SECONDS,
        timeout: float = config.PROBE_TIMEOUT_SECONDS,
        window_seconds: float = config.WINDOW_SECONDS,
        prober: Prober = probe,
        clock: Callable[[], float] = time.time,
        on_status: Optional[Callable[[TargetStatus], None]] = None,
    ):
        self.registry = TargetRegistry(targets)
        self.aggregator = WindowAggregator(window_seconds, clock=clock)
        self.stream = ResultStream()
        self.scheduler = Scheduler(
            self.registry.snapshot,
            self.stream.publish,
            prober=prober,
            interval=interval,
            timeout=timeout,
            on_stall=self._on_stall,
            clock=clock,
        )
        self.on_status = on_status
        self._recorder: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._unsupported: Set[str] = set()

    # -- lifecycle -----------------------------------------------------

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @property
    def fatal_error(self) -> Optional[SchedulerError]:
        return self.scheduler.fatal_error

    @property
    def icmp_available(self) -> bool:
        return icmp_available()

    async def start(self):
        if self._recorder is None:
            self._subscription = self.stream.subscribe()
            self._recorder = asyncio.create_task(
                self._record_loop(self._subscription), name="result-recorder"
            )
        self.scheduler.start()
        logger.info(
            "monitoring %d targets every %.1fs", len(self.registry), self.scheduler.interval
        )

    async def stop(self):
        await self.scheduler.stop()
        self.stream.close()
        if self._recorder is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._recorder
            self._recorder = None
            self._subscription = None

    async def wait_closed(self):
        """Block until the scheduler stops; raise if it stopped on a fatal error."""
        await self.scheduler.done.wait()
        if self.fatal_error is not None:
            raise self.fatal_error

    async def _record_loop(self, subscription: Subscription):
        async for result in subscription:
            self.record(result)

    def record(self, result: ProbeResult) -> bool:
        target = self.registry.get(result.target_id)
        if target is None:
            # deleted while its probe was in flight
            return False
        if result.error_tag == ICMP_UNSUPPORTED:
            # says nothing about the endpoint, so it stays out of the window
            if target.probe_type is ProbeType.ICMP and target.id not in self._unsupported:
                self._unsupported.add(target.id)
                if self.on_status is not None:
                    self.on_status(self._status_for(target))
            return False
        if not self.aggregator.record(result):
            return False
        self._unsupported.discard(target.id)
        if self.on_status is not None:
            self.on_status(self._status_for(target))
        return True

    def _on_stall(self, gap: float):
        logger.info("discarding statistics gathered before a %.0fs suspension", gap)
        self.refresh_all()

    # -- input boundary ------------------------------------------------

    def set_targets(self, targets: Iterable[Target]) -> RegistryChange:
        """Replace the target list used from the next tick on.

        Targets that disappeared lose their window; targets whose host, port
        or probe type changed start over with an empty one.
        """
        change = self.registry.replace(targets)
        for target_id in change.removed:
            self.aggregator.discard(target_id)
            self._unsupported.discard(target_id)
        for target_id in change.reconfigured:
            self.aggregator.reset(target_id)
            self._unsupported.discard(target_id)
        if not change.empty:
            logger.debug(
                "targets changed: +%d -%d ~%d",
                len(change.added),
                len(change.removed),
                len(change.reconfigured),
            )
        return change

    def add_target(self, target: Target) -> RegistryChange:
        return self.set_targets(self.registry.with_added(target))

    def update_target(self, target: Target) -> RegistryChange:
        return self.set_targets(self.registry.with_updated(target))

    def remove_target(self, target_id: str) -> RegistryChange:
        return self.set_targets(self.registry.with_removed(target_id))

    def move_target(self, target_id: str, index: int) -> RegistryChange:
        return self.set_targets(self.registry.with_moved(target_id, index))

    def refresh_target(self, target_id: str):
        if target_id not in self.registry:
            raise TargetError(f"unknown target id {target_id!r}")
        self.aggregator.reset(target_id)

    def refresh_all(self):
        self.aggregator.reset_all()

    async def probe_once(self, target: Target) -> ProbeResult:
        """Probe outside the schedule; the result is returned, not recorded."""
        return await self.scheduler.probe_once(target)

    # -- output boundary -----------------------------------------------

    def subscribe(self, maxsize: int = config.SUBSCRIBER_QUEUE_SIZE) -> Subscription:
        return self.stream.subscribe(maxsize)

    def summarize(self, target_id: str) -> WindowSummary:
        return self.aggregator.summarize(target_id)

    def _status_for(self, target: Target) -> TargetStatus:
        summary = self.aggregator.summarize(target.id)
        return TargetStatus(
            target,
            summary,
            classify_summary(summary),
            unsupported=target.id in self._unsupported,
        )

    def status(self, target_id: str) -> TargetStatus:
        target = self.registry.get(target_id)
        if target is None:
            raise TargetError(f"unknown target id {target_id!r}")
        return self._status_for(target)

    def statuses(self) -> List[TargetStatus]:
        return [self._status_for(t) for t in self.registry.snapshot()]
