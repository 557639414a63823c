from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

import psutil

from packages.core.storage.models import BlockRule, BlockType, path_key

from .process_detector import display_name
from .types import LiveRun

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class KillResult:
    target: str
    pid: Optional[int]
    succeeded: bool
    error: Optional[str] = None


def _match_full_path(rule: BlockRule, run: LiveRun) -> bool:
    return path_key(rule.block_value.strip()) == path_key(run.app.full_path)


def _match_process_name(rule: BlockRule, run: LiveRun) -> bool:
    return rule.block_value.strip().lower() == run.app.name.lower()


def _match_window_title(rule: BlockRule, run: LiveRun) -> bool:
    # Titles are not captured by the snapshot; see DESIGN.md
    return False


def _match_app_id(rule: BlockRule, run: LiveRun) -> bool:
    return rule.block_value.strip() == str(run.app.id)


_MATCHERS: Dict[BlockType, Callable[[BlockRule, LiveRun], bool]] = {
    BlockType.FULL_PATH: _match_full_path,
    BlockType.PROCESS_NAME: _match_process_name,
    BlockType.WINDOW_TITLE: _match_window_title,
    BlockType.APP_ID: _match_app_id,
}
if set(_MATCHERS) != set(BlockType):
    raise RuntimeError(f"no block rule matcher for {sorted(set(BlockType) - set(_MATCHERS))}")


def build_kill_set(live_runs: Iterable[LiveRun], rules: Iterable[BlockRule]) -> Set[str]:
    """Lower-cased display names of live apps matched by any rule."""
    runs = list(live_runs)
    kill_set: Set[str] = set()
    for rule in rules:
        try:
            matcher = _MATCHERS[BlockType(rule.block_type)]
        except ValueError:
            log.warning("Ignoring block rule id=%s with unknown type %s", rule.id, rule.block_type)
            continue
        if rule.block_type == BlockType.WINDOW_TITLE:
            log.debug("Block rule id=%s uses WindowTitle, which never matches", rule.id)
        for run in runs:
            if matcher(rule, run):
                kill_set.add(run.app.name.lower())
    return kill_set


def _os_processes() -> Iterable[psutil.Process]:
    return psutil.process_iter(attrs=["name"])


class BlocklistEnforcer:
    """Terminates OS processes whose names match a rule for a live app."""

    def __init__(self, process_source: Optional[Callable[[], Iterable[psutil.Process]]] = None) -> None:
        self._process_source = process_source or _os_processes

    def enforce(
        self,
        live_runs: Iterable[LiveRun],
        rules: Iterable[BlockRule],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> List[KillResult]:
        kill_set = build_kill_set(live_runs, rules)
        if not kill_set:
            return []
        log.info("Blocked process names: %s", ", ".join(sorted(kill_set)))
        return self.terminate(kill_set, should_stop)

    def terminate(
        self,
        kill_set: Set[str],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> List[KillResult]:
        results: List[KillResult] = []
        try:
            for proc in self._process_source():
                if should_stop is not None and should_stop():
                    break
                try:
                    name = display_name(proc.info.get("name"))
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
                if not name or name.lower() not in kill_set:
                    continue

                try:
                    proc.kill()
                    log.info("Killed blocked process %s (pid=%s)", name, proc.pid)
                    results.append(KillResult(target=name, pid=proc.pid, succeeded=True))
                except (psutil.NoSuchProcess, psutil.AccessDenied, OSError) as e:
                    log.error("Failed to kill process %s (pid=%s): %s", name, proc.pid, e)
                    results.append(KillResult(target=name, pid=proc.pid, succeeded=False, error=str(e)))
        except (psutil.Error, OSError):
            log.exception("Failed to enumerate processes for termination")
        return results
