import socket
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from ccdc_scoring import database
from ccdc_scoring.checks import Custom, Tcp, Web
from ccdc_scoring.checks.web import UrlData
from ccdc_scoring.config import Credlist
from ccdc_scoring.engine import ScoringEngine
from ccdc_scoring.tasks import CheckResult, Task
from ccdc_scoring.transport import EVENTS, RESULTS, TASKS
from ccdc_scoring.worker import Worker
from tests.conftest import BrokenTransport, make_config


def closed_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def wait_for(predicate, timeout=10.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class _PortalHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b"team portal"
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def worker(transport):
    stop = threading.Event()
    runner = Worker(transport, concurrency=4, poll=0.1, name="test-runner")
    thread = threading.Thread(target=runner.serve, args=(stop,), daemon=True)
    thread.start()
    yield runner
    stop.set()
    thread.join(timeout=5)


def _engine(conf, transport, db, activate=True):
    engine = ScoringEngine(conf, transport, poll=0.1)
    engine.prepare()
    if activate:
        for team in db.get_teams():
            db.update_team(team["id"], str(team["id"]), True)
    return engine


def test_web_round_is_scored(db, transport, worker):
    server = HTTPServer(("127.0.0.1", 0), _PortalHandler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    try:
        web = Web(port=server.server_address[1], url=[UrlData(path="/", status=200, regex="portal")])
        engine = _engine(make_config(web), transport, db)

        assert engine.run_round()
    finally:
        server.shutdown()
        server.server_close()

    [check] = db.get_round_checks(1)
    assert check["team_id"] == 1
    assert check["service_name"] == "box-web"
    assert check["result"] == 1
    assert check["points"] == 1
    assert engine.current_round == 2
    assert (EVENTS, "round_finish") in transport.published
    assert db.get_cumulative_scores() == [{"round_id": 1, "team_id": 1, "cumulative_points": 1}]


def test_sla_after_threshold_failures(db, transport, worker):
    engine = _engine(make_config(Tcp(port=closed_port()), sla_threshold=3), transport, db)

    for _ in range(3):
        assert engine.run_round()

    [sla] = db.get_slas(1)
    assert sla["round_id"] == 3
    assert sla["penalty"] == 3
    assert engine.state.consecutive_failures[(1, "box-tcp")] == 0
    assert engine.state.uptime[(1, "box-tcp")] == {"passed": 0, "total": 3}
    assert db.get_service_check_sum_by_round()[-1] == {1: -3}


def test_two_teams_both_scored(db, transport, worker):
    conf = make_config(Tcp(port=closed_port()), teams=("team1", "team2"))
    engine = _engine(conf, transport, db)

    assert engine.run_round()
    assert [(c["team_id"], c["result"]) for c in db.get_round_checks(1)] == [(1, 0), (2, 0)]


def test_missing_results_become_timeouts(db, transport):
    engine = _engine(make_config(Tcp(port=closed_port()), delay=1), transport, db)

    assert engine.run_round()

    [check] = db.get_round_checks(1)
    assert check["result"] == 0
    assert check["error"] == "check timeout exceeded"
    assert engine.state.uptime[(1, "box-tcp")]["total"] == 1


def test_tasks_carry_team_credentials(db, transport, tmp_path):
    (tmp_path / "credlists").mkdir()
    (tmp_path / "credlists" / "users.credlist").write_text("alice,Changeme1\nbob,Changeme2\n")
    conf = make_config(Custom(command="true", credlists=["users.credlist"]), delay=1)
    conf.credlists = [Credlist("Users", "users.credlist", "user,password")]
    conf.config_dir = str(tmp_path)
    engine = _engine(conf, transport, db)
    engine.credentials.update_credentials(1, "users.credlist", ["bob"], ["Rotated!"], "team1")

    engine.run_round()

    [raw] = transport.drain(TASKS)
    task = Task.decode(raw)
    assert task.round_id == 1
    assert [(c.username, c.password) for c in task.credentials] == [("alice", "Changeme1"), ("bob", "Rotated!")]
    assert task.deadline == engine.next_round_start_time


def test_disabled_service_is_skipped(db, transport, worker):
    engine = _engine(make_config(Tcp(port=closed_port())), transport, db)
    db.set_team_service_enabled(1, "box-tcp", False)

    assert engine.run_round()

    assert db.get_last_round()["id"] == 1
    assert db.get_round_checks(1) == []
    assert engine.state.uptime == {}


def test_round_without_teams_still_commits(db, transport):
    engine = _engine(make_config(Tcp(port=closed_port())), transport, db, activate=False)

    assert engine.run_round()
    assert db.get_last_round()["id"] == 1
    assert engine.current_round == 2


def test_persistence_failure_drops_round(db, transport, worker, monkeypatch):
    engine = _engine(make_config(Tcp(port=closed_port())), transport, db)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")
    monkeypatch.setattr(database, "create_round", locked)

    assert not engine.run_round()
    assert engine.current_round == 1
    assert engine.state.uptime == {}


def test_transport_failure_drops_round(db):
    engine = _engine(make_config(Tcp(port=closed_port())), BrokenTransport(), db)

    assert not engine.run_round()
    assert engine.current_round == 1
    assert db.get_last_round() is None


def test_collect_filters_and_deduplicates(db, transport):
    engine = _engine(make_config(Tcp(port=closed_port())), transport, db)
    deadline = datetime.now(timezone.utc) + timedelta(seconds=2)
    expected = {(1, "a"): None, (1, "b"): None}

    for result in (
        CheckResult(team_id=1, service_name="a", round_id=9, status=True),
        CheckResult(team_id=0, service_name="a", round_id=1, status=True),
        CheckResult(team_id=1, service_name="zzz", round_id=1, status=True),
        CheckResult(team_id=1, service_name="a", round_id=1, status=False),
        CheckResult(team_id=1, service_name="a", round_id=1, status=True),
        CheckResult(team_id=1, service_name="b", round_id=1, status=False),
    ):
        transport.push(RESULTS, result.encode())
    transport.push(RESULTS, b"garbage")

    collected = engine._collect(1, expected, deadline)

    assert set(collected) == {(1, "a"), (1, "b")}
    assert collected[(1, "a")].status is True


def test_reset_scores(db, transport, worker):
    engine = _engine(make_config(Tcp(port=closed_port())), transport, db)
    engine.run_round()
    engine.run_round()
    engine.pause()

    engine.reset_scores()

    assert engine.current_round == 1
    assert engine.is_paused
    assert db.get_last_round() is None
    assert engine.state.uptime == {}
    assert (EVENTS, "reset") in transport.published

    assert engine.run_round()
    assert db.get_last_round()["id"] == 1


def test_reset_aborts_round_in_flight(db, transport):
    engine = _engine(make_config(Tcp(port=closed_port()), delay=5), transport, db)
    outcome = {}
    thread = threading.Thread(target=lambda: outcome.setdefault("committed", engine.run_round()))
    thread.start()
    assert wait_for(lambda: transport.length(TASKS) == 1)

    engine.reset_scores()
    thread.join(timeout=5)

    assert outcome["committed"] is False
    assert db.get_last_round() is None
    assert transport.length(TASKS) == 0
    assert engine.current_round == 1


def test_scheduler_loop_runs_rounds(db, transport, worker):
    engine = _engine(make_config(Tcp(port=closed_port()), delay=1), transport, db)
    thread = threading.Thread(target=engine.start, daemon=True)
    thread.start()
    try:
        assert wait_for(lambda: engine.current_round >= 3)
    finally:
        engine.stop()
        thread.join(timeout=5)
    assert not thread.is_alive()
    assert db.get_round_count() >= 2


def test_start_paused_waits_for_resume(db, transport, worker):
    conf = make_config(Tcp(port=closed_port()), delay=1)
    conf.misc.start_paused = True
    engine = _engine(conf, transport, db)
    thread = threading.Thread(target=engine.start, daemon=True)
    thread.start()
    try:
        time.sleep(0.5)
        assert engine.is_paused
        assert db.get_last_round() is None

        engine.resume()
        assert wait_for(lambda: engine.current_round >= 2)
    finally:
        engine.stop()
        thread.join(timeout=5)
    assert (EVENTS, "resume") in transport.published


def test_prepare_resumes_after_last_round(db, transport, worker):
    conf = make_config(Tcp(port=closed_port()), sla_threshold=3)
    first = _engine(conf, transport, db)
    first.run_round()
    first.run_round()

    second = _engine(conf, transport, db)

    assert second.current_round == 3
    assert second.state.consecutive_failures == {(1, "box-tcp"): 2}
    assert second.status()["current_round"] == 3


def test_prepare_fails_on_missing_credlist(db, transport, tmp_path):
    conf = make_config(Tcp(port=closed_port()))
    conf.credlists = [Credlist("Users", "users.credlist", "user,password")]
    conf.config_dir = str(tmp_path)
    engine = ScoringEngine(conf, transport, poll=0.1)

    with pytest.raises(FileNotFoundError):
        engine.prepare()


def test_start_does_not_prepare_twice(db, transport, worker, monkeypatch):
    engine = _engine(make_config(Tcp(port=closed_port()), delay=1), transport, db)

    def prepare_again():
        raise AssertionError("prepare ran twice")
    monkeypatch.setattr(engine, "prepare", prepare_again)

    thread = threading.Thread(target=engine.start, daemon=True)
    thread.start()
    try:
        assert wait_for(lambda: engine.current_round >= 2)
    finally:
        engine.stop()
        thread.join(timeout=5)


def test_services_outside_their_window_are_not_dispatched(db, transport, worker):
    now = datetime.now(timezone.utc)
    later = Tcp(port=closed_port(), display="later", launch_time=now + timedelta(hours=1))
    retired = Tcp(port=closed_port(), display="retired", stop_time=now - timedelta(hours=1))
    engine = _engine(make_config(later, retired, Custom(command="true")), transport, db)

    assert engine.run_round()

    assert [c["service_name"] for c in db.get_round_checks(1)] == ["box-custom"]
    assert set(engine.state.uptime) == {(1, "box-custom")}


def test_teams_are_scored_independently(db, transport, worker):
    # only team 2 (identifier "2") passes
    custom = Custom(command="test TEAMIDENTIFIER = 2")
    engine = _engine(make_config(custom, teams=("team1", "team2"), sla_threshold=3), transport, db)

    for _ in range(3):
        assert engine.run_round()

    [sla] = db.get_slas(1)
    assert sla["round_id"] == 3
    assert db.get_slas(2) == []
    assert engine.state.uptime[(1, "box-custom")] == {"passed": 0, "total": 3}
    assert engine.state.uptime[(2, "box-custom")] == {"passed": 3, "total": 3}


def test_disabled_pair_keeps_its_counters(db, transport, worker):
    conf = make_config(Tcp(port=closed_port()), Custom(command="true"), teams=("team1", "team2"))
    engine = _engine(conf, transport, db)
    assert engine.run_round()
    db.set_team_service_enabled(2, "box-tcp", False)

    assert engine.run_round()
    assert engine.run_round()

    for round_id in (2, 3):
        pairs = {(c["team_id"], c["service_name"]) for c in db.get_round_checks(round_id)}
        assert pairs == {(1, "box-tcp"), (1, "box-custom"), (2, "box-custom")}
    assert engine.state.consecutive_failures[(2, "box-tcp")] == 1
    assert engine.state.uptime[(2, "box-tcp")] == {"passed": 0, "total": 1}
    assert engine.state.consecutive_failures[(1, "box-tcp")] == 0
    assert engine.state.uptime[(1, "box-tcp")] == {"passed": 0, "total": 3}
    assert engine.state.uptime[(2, "box-custom")] == {"passed": 3, "total": 3}
