from __future__ import annotations

import os
import time
from datetime import datetime
from typing import Dict, Optional, TextIO, Tuple

from . import config
from .models import Health, TargetStatus


class TransitionLogger:
    def __init__(self, path: str):
        self.path = path

    def _open(self) -> TextIO:
        self._maybe_rotate_log()
        return open(self.path, "a", encoding="utf-8")

    def log_transition(
        self, status: TargetStatus, old: Health, ts: Optional[float] = None
    ):
        ts = time.time() if ts is None else ts
        ts_str = datetime.fromtimestamp(ts).strftime(config.LOG_TIME_FORMAT)
        target = status.target
        summary = status.summary
        rate = (
            f"{summary.success_rate * 100:.1f}%"
            if summary.success_rate is not None
            else "-"
        )
        line = (
            f"{ts_str} | HEALTH {target.name} ({target.address}) "
            f"{old.value} -> {status.health.value} success={rate}"
        )
        if summary.last_result is not None and summary.last_result.error:
            line += f" last_error={summary.last_result.error}"
        with self._open() as f:
            f.write(line + "\n")

    def _maybe_rotate_log(self):
        # Rotate log if it hasn't been written to for LOG_ROTATE_DAYS
        try:
            last_mod_time = os.path.getmtime(self.path)
            if time.time() - last_mod_time > config.LOG_ROTATE_DAYS * 24 * 60 * 60:
                new_name = (
                    self.path
                    + "."
                    + datetime.fromtimestamp(last_mod_time).strftime("%Y%m%d%H%M%S")
                )
                os.rename(self.path, new_name)
        except FileNotFoundError:
            pass  # file doesn't exist yet, that's ok


class TransitionTracker:
    """Remembers each target's last health and reports changes."""

    def __init__(self, logger: Optional[TransitionLogger] = None):
        self.logger = logger
        self._last: Dict[str, Health] = {}

    def update(self, status: TargetStatus) -> Optional[Tuple[Health, Health]]:
        target_id = status.target.id
        old = self._last.get(target_id, Health.UNKNOWN)
        self._last[target_id] = status.health
        if old is status.health:
            return None
        if self.logger is not None:
            self.logger.log_transition(status, old)
        return old, status.health
