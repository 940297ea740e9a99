"""Tests for the operator CLI."""

import json

import pytest

import db
from cli import main


@pytest.fixture
def run(tmp_path, capsys):
    path = str(tmp_path / "cli.db")

    def _run(*argv):
        main(["--db", path, *argv])
        return capsys.readouterr().out

    yield _run
    db.get_coordinator().close()
    db.set_coordinator(None)


def test_full_cycle(run):
    assert "User 1 registered" in run("user-add", "--username", "ops", "--email",
                                      "ops@example.com", "--password-hash", "h")
    assert "Instance 1 created" in run("instance-add", "--user-id", "1", "--country", "US",
                                       "--phone", "+15550001234")
    assert "[inactive] 1 | US +15550001234" in run("instances", "1")
    assert "Billing window 1 opened" in run("activate", "1")
    assert "Window 1 closed: 0c" in run("deactivate", "1")

    summary = json.loads(run("billing", "1", "--json"))
    assert summary["total_cents"] == 0
    assert len(summary["records"]) == 1
    assert "Ledger consistent." in run("reconcile")
    assert json.loads(run("status"))["health"]["ok"] is True


def test_domain_error_exits_1(run, capsys):
    with pytest.raises(SystemExit) as exc:
        run("activate", "99")
    assert exc.value.code == 1
    assert "not_found" in capsys.readouterr().err


def test_invalid_input_exits_2(run, capsys):
    run("user-add", "--username", "ops", "--email", "ops@example.com", "--password-hash", "h")
    with pytest.raises(SystemExit) as exc:
        run("instance-add", "--user-id", "1", "--country", "USA", "--phone", "+15550001234")
    assert exc.value.code == 2
