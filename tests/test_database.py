import sqlite3
from datetime import datetime, timezone

import pytest

from ccdc_scoring import database
from ccdc_scoring.tasks import CheckResult

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _check(team_id, name, status, points=5, error="", debug=""):
    return CheckResult(team_id=team_id, service_name=name, status=status,
                       points=points if status else 0, error=error, debug=debug)


def test_sanitize():
    assert database.sanitize("plain text") == "plain text"
    assert database.sanitize("a\x00b") == "ab"
    assert database.sanitize(b"ok\xff") == "ok�"
    assert database.sanitize("\ud800x") == "?x"
    assert database.sanitize(None) == ""


@pytest.mark.parametrize("value", [
    "plain text",
    "a\x00b\x00",
    b"ok\xff\xfe",
    "\ud800x\udfff",
    b"\x00\xc3\x28",
    "caf\u00e9 \U0001f512",
])
def test_sanitize_is_idempotent(value):
    once = database.sanitize(value)
    assert database.sanitize(once) == once
    assert "\x00" not in once
    once.encode("utf-8")


def test_configure_accepts_sqlite_urls(monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", "unchanged")
    database.configure("sqlite:/tmp/event.db")
    assert database.DB_PATH == "/tmp/event.db"
    database.configure("sqlite:///tmp/other.db")
    assert database.DB_PATH == "tmp/other.db"
    with pytest.raises(ValueError):
        database.configure("postgres://scoring@localhost/scoring")


def test_create_round_persists_checks(db):
    db.create_round(1, NOW, [_check(1, "web", True), _check(1, "ssh", False, error="bad\x00")])

    assert db.get_last_round()["id"] == 1
    checks = db.get_round_checks(1)
    assert [c["service_name"] for c in checks] == ["ssh", "web"]
    assert checks[0]["error"] == "bad"
    assert db.get_round_count() == 1


def test_create_round_twice_fails_and_keeps_first(db):
    db.create_round(1, NOW, [_check(1, "web", True)])
    with pytest.raises(sqlite3.IntegrityError):
        db.create_round(1, NOW, [_check(1, "web", False)])
    assert db.get_round_checks(1)[0]["result"] == 1


def test_get_last_round_empty(db):
    assert db.get_last_round() is None
    assert db.get_service_check_sum_by_round() == []


def test_scores_and_cumulative_view(db):
    db.add_teams(["team1", "team2"])
    db.create_round(1, NOW, [_check(1, "web", True), _check(2, "web", False)])
    db.create_round(2, NOW, [_check(1, "web", True), _check(2, "web", True)])
    db.create_sla(1, 2, "web", 3)
    db.refresh_scores()

    assert db.get_team_score(1) == (10, 1, 3)
    assert db.get_service_check_sum_by_team() == {1: 10, 2: 5}
    assert db.get_service_check_sum_by_round() == [{1: 5, 2: 0}, {1: 7, 2: 5}]
    scores = {(s["team_id"], s["service_name"]): s for s in db.get_service_scores()}
    assert scores[(1, "web")]["violations"] == 1
    assert scores[(2, "web")]["points"] == 5


def test_load_slas_wraps_at_threshold(db):
    for round_id in range(1, 5):
        db.create_round(round_id, NOW, [_check(1, "web", False), _check(1, "dns", round_id == 4)])

    counters = db.load_slas(3)
    assert counters[(1, "web")] == 1
    assert counters[(1, "dns")] == 0
    assert db.load_uptimes()[(1, "dns")] == {"passed": 1, "total": 4}


def test_reset_scores_keeps_teams_and_credentials(db):
    db.add_teams(["team1"])
    db.seed_original_credentials("users.credlist", [("alice", "pw")])
    db.seed_team_credentials(1)
    db.create_round(1, NOW, [_check(1, "web", True)])
    db.create_sla(1, 1, "web", 3)
    db.refresh_scores()

    db.reset_scores()

    assert db.get_last_round() is None
    assert db.get_slas() == []
    assert db.get_cumulative_scores() == []
    assert len(db.get_teams()) == 1
    assert db.get_team_credentials(1, "users.credlist") == [("alice", "pw")]


def test_teams(db):
    db.add_teams(["team1", "team2"])
    db.add_teams(["team1"])

    assert [t["name"] for t in db.get_teams()] == ["team1", "team2"]
    assert db.get_active_teams() == []
    assert db.update_team(2, "12", True)
    assert not db.update_team(99, "x", True)
    assert [t["identifier"] for t in db.get_active_teams()] == ["12"]
    assert db.get_team_by_username("team2")["active"] is True


def test_team_summary_and_history(db):
    db.add_teams(["team1"])
    for round_id in range(1, 13):
        db.create_round(round_id, NOW, [_check(1, "web", round_id % 2 == 0)])
    db.create_sla(1, 3, "web", 3)

    summary = db.get_team_summary(1)
    assert summary[0]["service_name"] == "web"
    assert summary[0]["sla_count"] == 1
    assert len(summary[0]["last_10_rounds"]) == 10
    assert summary[0]["last_10_rounds"][0]["id"] == 12

    history = db.get_service_all_checks_by_team(1, "web")
    assert len(history) == 12
    assert history[0]["round_id"] == 12


def test_team_service_overlay(db):
    assert db.is_team_service_enabled(1, "web")
    db.set_team_service_enabled(1, "web", False)
    assert not db.is_team_service_enabled(1, "web")
    db.set_team_service_enabled(1, "web", True)
    assert db.get_all_team_service_checks() == [
        {"id": 1, "team_id": 1, "service_name": "web", "enabled": True}
    ]


def test_credential_updates_are_audited(db):
    db.add_teams(["team1"])
    db.seed_original_credentials("users.credlist", [("alice", "pw1"), ("bob", "pw2")])
    db.seed_team_credentials(1)

    assert db.update_credential(1, "users.credlist", "alice", "new", "team1")
    assert not db.update_credential(1, "users.credlist", "mallory", "x", "team1")
    assert db.get_team_credentials(1, "users.credlist") == [("alice", "new"), ("bob", "pw2")]

    assert db.reset_team_credlist(1, "users.credlist", "admin") == 1
    history = db.get_pcr_history(1)
    assert [(h["username"], h["new_password"]) for h in history] == [("alice", "new"), ("alice", "pw1")]
    assert db.get_credlist_usernames("users.credlist") == ["alice", "bob"]
