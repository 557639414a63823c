"""
Run session tracking.

Each app is either Absent (no cached open run) or Live (cached open run).
One call to RunSessionTracker.apply() moves every app one step:

    Absent -> Live    observed, nothing cached      open_run
    Live   -> Live    observed, cached               extend_run
    Live   -> Absent  not observed, cached           close_run
    Absent -> Absent  not observed, nothing cached   (nothing)

The observed set is built in full before any run is closed, so an app is
never closed and reopened within the same scan. A Live app whose extend
touches no row has lost its open run in storage and is treated as Absent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from packages.core.storage.models import App
from packages.core.storage.repository import Repository

from .registry import AppRegistry
from .types import LiveRun, ProcessRecord, ScanState

log = logging.getLogger(__name__)


@dataclass
class ScanDiff:
    opened: List[LiveRun] = field(default_factory=list)
    extended: List[LiveRun] = field(default_factory=list)
    closed: List[LiveRun] = field(default_factory=list)
    observed: Dict[int, App] = field(default_factory=dict)
    complete: bool = True


class RunSessionTracker:
    def __init__(self, repository: Repository, registry: AppRegistry) -> None:
        self._repo = repository
        self._registry = registry

    def observe(
        self,
        state: ScanState,
        records: Iterable[ProcessRecord],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> tuple[Dict[int, App], bool]:
        """Resolve records to apps. Returns (observed apps by id, completed?)."""
        observed: Dict[int, App] = {}
        for rec in records:
            if should_stop is not None and should_stop():
                return observed, False
            if not rec.executable_path:
                continue
            app = self._registry.resolve(state, rec.executable_path, rec.name)
            observed.setdefault(app.id, app)
        return observed, True

    def apply(
        self,
        state: ScanState,
        records: Iterable[ProcessRecord],
        now: datetime,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ScanDiff:
        diff = ScanDiff()
        diff.observed, diff.complete = self.observe(state, records, should_stop)

        for app_id, app in diff.observed.items():
            live = state.open_runs.get(app_id)
            if live is not None and self._repo.extend_run(app_id, now):
                live.end_utc = now
                diff.extended.append(live)
            else:
                if live is not None:
                    # Open row closed behind our back (e.g. another instance's startup sweep)
                    log.warning("No open run in storage for app id=%s, opening a new one", app_id)
                    state.open_runs.pop(app_id)
                run_id = self._repo.open_run(app_id, now)
                live = LiveRun(run_id=run_id, app=app, start_utc=now, end_utc=now)
                state.open_runs[app_id] = live
                diff.opened.append(live)

        # A partial observed set would close runs that are still live
        if not diff.complete:
            log.info("Scan interrupted, skipping run closure")
            return diff

        for app_id in [a for a in state.open_runs if a not in diff.observed]:
            self._repo.close_run(app_id, now)
            live = state.open_runs.pop(app_id)
            live.end_utc = now
            diff.closed.append(live)

        return diff
