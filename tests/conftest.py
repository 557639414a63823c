from datetime import datetime, timedelta, timezone

import pytest

from packages.core.monitor.types import ProcessRecord
from packages.core.storage.repository import Repository


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


def record(path: str, name: str | None = None, pid: int = 100) -> ProcessRecord:
    if name is None:
        name = path.replace("\\", "/").rsplit("/", 1)[-1].rsplit(".", 1)[0]
    return ProcessRecord(pid=pid, name=name, executable_path=path)


class FakeProcess:
    """Stands in for psutil.Process as yielded by process_iter(attrs=[...])."""

    def __init__(self, pid, name, exe=None, create_time=None, kill_error=None):
        self.pid = pid
        self.info = {"pid": pid, "name": name, "exe": exe, "create_time": create_time}
        self.kill_error = kill_error
        self.killed = False

    def kill(self):
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True


@pytest.fixture
def repo(tmp_path):
    return Repository(tmp_path / "tracker.db")
