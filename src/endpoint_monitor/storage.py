"""
Reads and writes the JSON target list.

The file holds an array of ``{id, name, host, port, probe_type}`` objects,
with ``probe_type`` either "tcp" or "ping". A ``targets.json`` next to the
program switches to portable mode; otherwise the file lives in the per-user
data directory.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from . import config
from .errors import StorageError, TargetError
from .models import Target

logger = logging.getLogger(__name__)

PORTABLE = "portable"
APPDATA = "appdata"


@dataclass(frozen=True)
class StorageLocation:
    mode: str
    path: Path


_cached_location: Optional[StorageLocation] = None


def program_dir() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(sys.argv[0] or ".").resolve().parent


def user_data_dir() -> Path:
    if sys.platform.startswith("win"):
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / config.APP_DIR_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / config.APP_DIR_NAME
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / config.APP_DIR_NAME


def detect_storage(refresh: bool = False) -> StorageLocation:
    global _cached_location
    if _cached_location is not None and not refresh:
        return _cached_location

    portable_path = program_dir() / config.TARGETS_FILE_NAME
    if portable_path.exists():
        _cached_location = StorageLocation(PORTABLE, portable_path)
    else:
        data_dir = user_data_dir()
        data_dir.mkdir(parents=True, exist_ok=True)
        _cached_location = StorageLocation(APPDATA, data_dir / config.TARGETS_FILE_NAME)
    logger.debug(
        "targets file (%s): %s", _cached_location.mode, _cached_location.path
    )
    return _cached_location


def _valid_entry(entry: object) -> bool:
    return (
        isinstance(entry, dict)
        and isinstance(entry.get("id"), str)
        and isinstance(entry.get("name"), str)
        and isinstance(entry.get("host"), str)
        and isinstance(entry.get("port"), (int, float))
        and not isinstance(entry.get("port"), bool)
    )


def parse_targets_json(text: str) -> Optional[List[Target]]:
    """Parse a target array; None when the text is not a JSON array at all.

    Entries missing a string id/name/host or a numeric port, or that fail
    target validation, are skipped.
    """
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, list):
        return None

    targets: List[Target] = []
    seen = set()
    for entry in data:
        if not _valid_entry(entry) or entry["id"] in seen:
            continue
        try:
            target = Target.from_dict(entry)
        except TargetError as e:
            logger.warning("skipping target %r: %s", entry.get("name"), e)
            continue
        seen.add(target.id)
        targets.append(target)
    return targets


def dump_targets(targets: Iterable[Target]) -> str:
    return json.dumps([t.to_dict() for t in targets], indent=2)


def save_targets(path: Path, targets: Iterable[Target]):
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dump_targets(targets) + "\n", encoding="utf-8")
    except OSError as e:
        logger.error("Failed to save targets to %s: %s", path, e)


def load_targets(path: Path) -> List[Target]:
    """Load the saved list; a missing file is created empty."""
    path = Path(path)
    try:
        if not path.exists():
            save_targets(path, [])
            return []
        targets = parse_targets_json(path.read_text(encoding="utf-8"))
    except OSError as e:
        logger.error("Failed to load targets from %s: %s", path, e)
        return []
    if targets is None:
        logger.error("Failed to load targets from %s: not a JSON array", path)
        return []
    return targets


def import_targets(path: Path) -> List[Target]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise StorageError(f"cannot read {path}: {e}") from e
    targets = parse_targets_json(text)
    if not targets:
        raise StorageError(f"{path} contains no importable targets")
    return targets


def export_targets(path: Path, targets: Iterable[Target]):
    try:
        Path(path).write_text(dump_targets(targets) + "\n", encoding="utf-8")
    except OSError as e:
        raise StorageError(f"cannot write {path}: {e}") from e
