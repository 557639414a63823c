import json

import pytest

from apps.service import main as cli


@pytest.fixture
def run_cli(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("APPDATA", str(tmp_path))
    monkeypatch.setattr(cli, "setup_logging", lambda verbose=False: None)
    db = str(tmp_path / "cli.db")

    def run(*argv):
        code = cli.main(["--db", db, *argv])
        out, err = capsys.readouterr()
        return code, out, err

    return run


def test_rule_commands(run_cli):
    code, out, _ = run_cli("add-rule", "process-name", "notepad")
    assert code == 0
    created = json.loads(out)
    assert created["block_value"] == "notepad"
    assert created["block_type_name"] == "ProcessName"

    code, out, _ = run_cli("update-rule", str(created["id"]), "app-id", "7")
    assert code == 0
    assert json.loads(out)["block_type"] == 4

    code, out, _ = run_cli("rules")
    assert [r["block_value"] for r in json.loads(out)] == ["7"]

    assert run_cli("delete-rule", str(created["id"]))[0] == 0
    assert run_cli("delete-rule", str(created["id"]))[0] == 1


def test_blank_rule_value_is_rejected(run_cli):
    code, _, err = run_cli("add-rule", "full-path", "   ")
    assert code == 2
    assert "Invalid block rule" in err


def test_update_missing_rule(run_cli):
    code, _, err = run_cli("update-rule", "12", "process-name", "x")
    assert code == 1
    assert "not found" in err


def test_listing_commands_on_empty_db(run_cli):
    assert json.loads(run_cli("apps")[1]) == []
    assert json.loads(run_cli("runs", "--limit", "5")[1]) == []
    types = json.loads(run_cli("block-types")[1])
    assert [t["name"] for t in types] == ["Unknown", "FullPath", "ProcessName", "WindowTitle", "AppId"]
