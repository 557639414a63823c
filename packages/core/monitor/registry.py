from __future__ import annotations

import logging
from datetime import datetime, timezone

from packages.core.storage.models import App, path_key
from packages.core.storage.repository import Repository

from .types import ScanState

log = logging.getLogger(__name__)


class AppRegistry:
    """Maps executable paths to stable App ids, caching in ScanState.apps_by_path."""

    def __init__(self, repository: Repository) -> None:
        self._repo = repository

    def load(self, state: ScanState) -> int:
        """Replace the cache with every App row in storage."""
        apps = self._repo.list_apps()
        state.apps_by_path = {path_key(a.full_path): a for a in apps}
        log.info("Loaded %d known apps", len(apps))
        return len(apps)

    def lookup(self, state: ScanState, full_path: str) -> App | None:
        return state.apps_by_path.get(path_key(full_path))

    def resolve(self, state: ScanState, full_path: str, name: str) -> App:
        if not full_path:
            raise ValueError("cannot resolve an empty path")

        cached = self.lookup(state, full_path)
        if cached is not None:
            return cached

        app_id = self._repo.upsert_app(name, full_path)
        # Prefer the stored row so an earlier first-seen name wins
        app = self._repo.get_app_by_path(full_path) or App(
            id=app_id,
            name=name,
            full_path=full_path,
            created_at=datetime.now(timezone.utc),
        )
        state.apps_by_path[path_key(full_path)] = app
        return app
