from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .errors import TargetError
from .models import Target


@dataclass(frozen=True)
class RegistryChange:
    """What a replacement did to the previous target list."""

    added: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()
    reconfigured: Tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.reconfigured)


class TargetRegistry:
    """Ordered, id-unique list of targets.

    Readers only ever get an immutable snapshot, so a tick already in
    progress is unaffected by later edits.
    """

    def __init__(self, targets: Iterable[Target] = ()):
        self._lock = threading.Lock()
        self._targets: Tuple[Target, ...] = ()
        self.replace(targets)

    def snapshot(self) -> Tuple[Target, ...]:
        with self._lock:
            return self._targets

    def get(self, target_id: str) -> Optional[Target]:
        for target in self.snapshot():
            if target.id == target_id:
                return target
        return None

    def __contains__(self, target_id: object) -> bool:
        return any(t.id == target_id for t in self.snapshot())

    def __len__(self) -> int:
        return len(self.snapshot())

    def replace(self, targets: Iterable[Target]) -> RegistryChange:
        new = tuple(targets)
        ids = [t.id for t in new]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise TargetError(f"duplicate target ids: {', '.join(dupes)}")
        with self._lock:
            old = {t.id: t for t in self._targets}
            self._targets = new
        new_ids = set(ids)
        return RegistryChange(
            added=tuple(i for i in ids if i not in old),
            removed=tuple(i for i in old if i not in new_ids),
            reconfigured=tuple(
                t.id
                for t in new
                if t.id in old and old[t.id].connection_key() != t.connection_key()
            ),
        )

    def _require(self, targets: List[Target], target_id: str) -> int:
        for idx, target in enumerate(targets):
            if target.id == target_id:
                return idx
        raise TargetError(f"unknown target id {target_id!r}")

    def with_added(self, target: Target) -> List[Target]:
        targets = list(self.snapshot())
        if any(t.id == target.id for t in targets):
            raise TargetError(f"target id {target.id!r} already exists")
        targets.append(target)
        return targets

    def with_updated(self, target: Target) -> List[Target]:
        targets = list(self.snapshot())
        targets[self._require(targets, target.id)] = target
        return targets

    def with_removed(self, target_id: str) -> List[Target]:
        targets = list(self.snapshot())
        del targets[self._require(targets, target_id)]
        return targets

    def with_moved(self, target_id: str, index: int) -> List[Target]:
        targets = list(self.snapshot())
        target = targets.pop(self._require(targets, target_id))
        index = max(0, min(index, len(targets)))
        targets.insert(index, target)
        return targets
