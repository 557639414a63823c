from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from packages.core.storage.repository import Repository

from .blocklist import BlocklistEnforcer, KillResult
from .process_detector import snapshot as default_snapshot
from .registry import AppRegistry
from .tracker import RunSessionTracker, ScanDiff
from .types import MonitorConfig, MonitorState, ProcessRecord, ScanState

log = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanReport:
    started_at: datetime
    diff: ScanDiff
    kills: List[KillResult] = field(default_factory=list)


class ScanLoop:
    """
    Background loop: snapshot -> track runs -> enforce block rules, every period.

    Scans never overlap. Caches live in self._scan_state and are only touched
    from scan_once(), which runs on the loop thread (or the caller's thread
    when used directly).
    """

    def __init__(
        self,
        config: dict,
        repository: Repository,
        snapshot: Optional[Callable[[], List[ProcessRecord]]] = None,
        enforcer: Optional[BlocklistEnforcer] = None,
    ) -> None:
        self._cfg = MonitorConfig(**config)
        self._repo = repository
        self._snapshot = snapshot or default_snapshot
        self._enforcer = enforcer or BlocklistEnforcer()

        self._registry = AppRegistry(repository)
        self._tracker = RunSessionTracker(repository, self._registry)
        self._scan_state = ScanState()

        self._state = MonitorState()
        self._lock = threading.Lock()

        self._event_cb: Optional[Callable[[dict], None]] = None
        self._error_cb: Optional[Callable[[str], None]] = None

        self._thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()

    def on_event(self, cb: Callable[[dict], None]) -> None:
        self._event_cb = cb

    def on_error(self, cb: Callable[[str], None]) -> None:
        self._error_cb = cb

    def update_config(self, config: dict) -> None:
        with self._lock:
            self._cfg = MonitorConfig(**config)

    def get_state(self) -> MonitorState:
        with self._lock:
            return MonitorState(
                status=self._state.status,
                scans=self._state.scans,
                live_count=self._state.live_count,
                last_scan_at=self._state.last_scan_at,
                last_error=self._state.last_error,
            )

    def start(self) -> None:
        with self._lock:
            if self._state.status == "RUNNING":
                return
            self._state.status = "RUNNING"

        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run, name="ScanLoop", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_evt.set()
        with self._lock:
            self._state.status = "STOPPED"

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def stopping(self) -> bool:
        return self._stop_evt.is_set()

    def _emit(self, evt: dict) -> None:
        if self._event_cb:
            self._event_cb(evt)

    def _emit_error(self, msg: str) -> None:
        if self._error_cb:
            self._error_cb(msg)

    def _prepare(self) -> None:
        self._registry.load(self._scan_state)
        closed = self._repo.close_stale_runs()
        if closed:
            log.info("Closed %d run(s) left open by a previous instance", closed)
        self._scan_state.open_runs.clear()
        self._scan_state.loaded = True

    def scan_once(self, now: Optional[datetime] = None) -> ScanReport:
        """
        Run one full scan. Storage errors propagate to the caller.

        The first call loads the app cache and closes stale runs before
        scanning.
        """
        if not self._scan_state.loaded:
            self._prepare()

        now = now or _now_utc()
        with self._lock:
            cfg = self._cfg
            last = self._state.last_scan_at
        # Wall clock stepped back: keep run timestamps non-decreasing
        if last is not None and now < last:
            now = last

        records = self._snapshot()
        diff = self._tracker.apply(self._scan_state, records, now, should_stop=self.stopping)
        report = ScanReport(started_at=now, diff=diff)

        for live in diff.opened:
            self._emit({"type": "RUN_OPENED", "app_id": live.app.id, "name": live.app.name, "at": now.isoformat()})
        for live in diff.closed:
            self._emit({"type": "RUN_CLOSED", "app_id": live.app.id, "name": live.app.name, "at": now.isoformat()})

        if cfg.enforce_block_rules and diff.complete and not self.stopping():
            rules = self._repo.list_block_rules()
            if rules:
                report.kills = self._enforcer.enforce(
                    self._scan_state.open_runs.values(), rules, should_stop=self.stopping
                )
            for k in report.kills:
                self._emit({
                    "type": "PROCESS_KILLED" if k.succeeded else "PROCESS_KILL_FAILED",
                    "name": k.target,
                    "pid": k.pid,
                    "error": k.error,
                    "at": now.isoformat(),
                })

        with self._lock:
            self._state.scans += 1
            self._state.live_count = len(self._scan_state.open_runs)
            self._state.last_scan_at = now
            self._state.last_error = None

        log.info(
            "Scan done: %d live, %d+ / %d-, %d kill(s)",
            len(self._scan_state.open_runs), len(diff.opened), len(diff.closed), len(report.kills),
        )
        return report

    def _run(self) -> None:
        while not self._stop_evt.is_set():
            try:
                self.scan_once()
            except Exception as e:
                log.exception("Scan error")
                with self._lock:
                    self._state.last_error = str(e)
                self._emit_error(str(e))

            with self._lock:
                period_s = self._cfg.poll_interval_ms / 1000.0
            self._stop_evt.wait(period_s)
