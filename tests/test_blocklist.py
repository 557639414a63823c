import psutil
import pytest

from packages.core.monitor.blocklist import BlocklistEnforcer, KillResult, build_kill_set
from packages.core.monitor.types import LiveRun
from packages.core.storage.models import App, BlockRule, BlockType

from conftest import FakeProcess, T0


def live(app_id, name, path):
    app = App(id=app_id, name=name, full_path=path, created_at=T0)
    return LiveRun(run_id=app_id * 10, app=app, start_utc=T0, end_utc=T0)


def rule(block_type, value, rule_id=1):
    return BlockRule(
        id=rule_id,
        block_type=int(block_type),
        block_type_name="test",
        block_value=value,
        created_at=T0,
        updated_at=T0,
    )


NOTEPAD = live(1, "notepad", "C:\\Windows\\notepad.exe")
CALC = live(2, "calc", "C:\\Windows\\System32\\calc.exe")


@pytest.mark.parametrize("r,expected", [
    (rule(BlockType.PROCESS_NAME, "notepad"), {"notepad"}),
    (rule(BlockType.PROCESS_NAME, "NOTEPAD"), {"notepad"}),
    (rule(BlockType.PROCESS_NAME, "note"), set()),
    (rule(BlockType.FULL_PATH, "c:\\windows\\system32\\CALC.EXE"), {"calc"}),
    (rule(BlockType.FULL_PATH, "C:\\Windows\\calc.exe"), set()),
    (rule(BlockType.APP_ID, "2"), {"calc"}),
    (rule(BlockType.APP_ID, "3"), set()),
    (rule(BlockType.WINDOW_TITLE, "Untitled - Notepad"), set()),
    (rule(9, "notepad"), set()),
])
def test_build_kill_set(r, expected):
    assert build_kill_set([NOTEPAD, CALC], [r]) == expected


def test_rules_are_disjunctive():
    rules = [rule(BlockType.PROCESS_NAME, "notepad", 1), rule(BlockType.APP_ID, "2", 2)]
    assert build_kill_set([NOTEPAD, CALC], rules) == {"notepad", "calc"}


def test_only_live_apps_are_matched():
    assert build_kill_set([CALC], [rule(BlockType.PROCESS_NAME, "notepad")]) == set()


def test_enforce_kills_every_process_with_blocked_name():
    procs = [
        FakeProcess(10, "notepad.exe"),
        FakeProcess(11, "Notepad.exe"),  # different path, same name
        FakeProcess(12, "calc.exe"),
    ]
    enforcer = BlocklistEnforcer(process_source=lambda: procs)

    results = enforcer.enforce([NOTEPAD, CALC], [rule(BlockType.PROCESS_NAME, "notepad")])

    assert [p.killed for p in procs] == [True, True, False]
    assert results == [
        KillResult(target="notepad", pid=10, succeeded=True),
        KillResult(target="Notepad", pid=11, succeeded=True),
    ]


def test_kill_failure_does_not_stop_remaining_targets():
    procs = [
        FakeProcess(10, "notepad.exe", kill_error=psutil.AccessDenied(pid=10)),
        FakeProcess(11, "notepad.exe", kill_error=psutil.NoSuchProcess(pid=11)),
        FakeProcess(12, "notepad.exe"),
    ]
    enforcer = BlocklistEnforcer(process_source=lambda: procs)

    results = enforcer.enforce([NOTEPAD], [rule(BlockType.PROCESS_NAME, "notepad")])

    assert [r.succeeded for r in results] == [False, False, True]
    assert all(r.error for r in results[:2])
    assert procs[2].killed


def test_enforce_without_matches_does_not_enumerate():
    def boom():
        raise AssertionError("should not enumerate processes")

    enforcer = BlocklistEnforcer(process_source=boom)
    assert enforcer.enforce([CALC], [rule(BlockType.PROCESS_NAME, "notepad")]) == []


def test_enumeration_failure_is_contained():
    def broken():
        raise psutil.AccessDenied()

    enforcer = BlocklistEnforcer(process_source=broken)
    assert enforcer.terminate({"notepad"}) == []


def test_terminate_stops_when_asked():
    procs = [FakeProcess(10, "notepad.exe"), FakeProcess(11, "notepad.exe")]
    flags = iter([False, True])
    enforcer = BlocklistEnforcer(process_source=lambda: procs)

    results = enforcer.terminate({"notepad"}, should_stop=lambda: next(flags))

    assert [r.pid for r in results] == [10]
    assert not procs[1].killed


def test_every_block_type_has_a_matcher():
    from packages.core.monitor.blocklist import _MATCHERS

    assert set(_MATCHERS) == set(BlockType)


def test_full_path_rule_folds_non_ascii_case():
    app = live(5, "Ärger", "C:\\Spiele\\Ärger.exe")
    assert build_kill_set([app], [rule(BlockType.FULL_PATH, "c:\\spiele\\ärger.exe")]) == {"ärger"}
