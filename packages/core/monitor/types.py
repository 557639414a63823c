from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Literal, Optional

from packages.core.storage.models import App

MonitorStatus = Literal["STOPPED", "RUNNING"]


@dataclass(frozen=True)
class ProcessRecord:
    """One running process as seen by the snapshot provider."""
    pid: int
    name: str  # display name, ".exe" stripped
    executable_path: str  # normalized absolute path
    start_time: Optional[datetime] = None


@dataclass(frozen=True)
class MonitorConfig:
    poll_interval_ms: int
    enforce_block_rules: bool = True


@dataclass
class LiveRun:
    """Cached open run for an app observed live."""
    run_id: int
    app: App
    start_utc: datetime
    end_utc: datetime


@dataclass
class ScanState:
    """
    In-memory caches owned by a single ScanLoop.

    apps_by_path is keyed by storage.models.path_key(); open_runs by app id.
    Only the loop's own thread reads or writes these.
    """
    apps_by_path: Dict[str, App] = field(default_factory=dict)
    open_runs: Dict[int, LiveRun] = field(default_factory=dict)
    loaded: bool = False


@dataclass
class MonitorState:
    status: MonitorStatus = "STOPPED"
    scans: int = 0
    live_count: int = 0
    last_scan_at: Optional[datetime] = None
    last_error: Optional[str] = None
