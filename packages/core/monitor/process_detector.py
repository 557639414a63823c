from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

import psutil

from .types import ProcessRecord

log = logging.getLogger(__name__)

_SNAPSHOT_ATTRS = ["pid", "name", "exe", "create_time"]


def normalize_path(path: Optional[str]) -> str:
    """Trim whitespace and quotes, then make absolute. Returns "" if that fails."""
    if not path or not path.strip():
        return ""
    try:
        cleaned = path.strip().strip('"').strip("'").strip()
        if not cleaned:
            return ""
        return os.path.normpath(os.path.abspath(cleaned))
    except (TypeError, ValueError, OSError):
        return ""


def display_name(name: Optional[str]) -> str:
    """Process name without a trailing .exe, e.g. "notepad.exe" -> "notepad"."""
    if not name:
        return ""
    n = str(name).strip()
    if n.lower().endswith(".exe"):
        n = n[:-4]
    return n


def _start_time(create_time: Optional[float]) -> Optional[datetime]:
    if create_time is None:
        return None
    try:
        return datetime.fromtimestamp(float(create_time), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def snapshot() -> List[ProcessRecord]:
    """
    Processes that have a resolvable executable path.

    Never raises: a process we cannot inspect is skipped, and a failure to
    enumerate at all yields an empty list.
    """
    records: List[ProcessRecord] = []
    try:
        for p in psutil.process_iter(attrs=_SNAPSHOT_ATTRS):
            try:
                info = p.info
                path = normalize_path(info.get("exe"))
                name = display_name(info.get("name"))
                if not path or not name:
                    continue
                records.append(ProcessRecord(
                    pid=int(info["pid"]),
                    name=name,
                    executable_path=path,
                    start_time=_start_time(info.get("create_time")),
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                log.debug("Skipping process pid=%s", getattr(p, "pid", "?"))
                continue
    except (psutil.Error, OSError):
        log.exception("Failed to enumerate processes")
        return []

    log.debug("Snapshot: %d processes with resolvable paths", len(records))
    return records
