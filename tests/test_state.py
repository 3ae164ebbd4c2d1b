from datetime import datetime, timezone

from ccdc_scoring.state import ServiceState
from ccdc_scoring.tasks import CheckResult


def _result(status, round_id, team_id=1, name="box-tcp"):
    return CheckResult(team_id=team_id, service_name=name, round_id=round_id, status=status)


def test_sla_fires_only_on_consecutive_failures():
    state = ServiceState()
    outcomes = [False, False, True, False, False, False]
    slas = []
    for round_id, status in enumerate(outcomes, start=1):
        sla = state.record(_result(status, round_id), threshold=3, penalty=9, round_id=round_id)
        if sla:
            slas.append(sla)

    assert len(slas) == 1
    assert slas[0].round_id == 6
    assert slas[0].penalty == 9
    assert state.consecutive_failures[(1, "box-tcp")] == 0
    assert state.uptime[(1, "box-tcp")] == {"passed": 1, "total": 6}


def test_counter_restarts_after_sla():
    state = ServiceState()
    fired = [
        state.record(_result(False, r), threshold=2, penalty=1, round_id=r) is not None
        for r in range(1, 6)
    ]
    assert fired == [False, True, False, True, False]


def test_rebuild_matches_live_counters(db):
    outcomes = {
        (1, "box-tcp"): [False, False, True, False, False, False, False],
        (1, "box-web"): [True, False, False],
        (2, "box-tcp"): [False, False, False, False],
    }
    live = ServiceState()
    rounds = max(len(v) for v in outcomes.values())
    for round_id in range(1, rounds + 1):
        results = []
        for (team_id, name), statuses in outcomes.items():
            if round_id <= len(statuses):
                result = _result(statuses[round_id - 1], round_id, team_id, name)
                results.append(result)
                live.record(result, threshold=3, penalty=3, round_id=round_id)
        db.create_round(round_id, datetime.now(timezone.utc), results)

    rebuilt = ServiceState()
    rebuilt.rebuild(3)

    assert rebuilt.consecutive_failures == live.consecutive_failures
    assert rebuilt.uptime == live.uptime


def test_reset_and_snapshot_are_independent():
    state = ServiceState()
    state.record(_result(True, 1), threshold=3, penalty=3, round_id=1)
    snap = state.snapshot()
    state.reset()

    assert snap["uptime"] == {(1, "box-tcp"): {"passed": 1, "total": 1}}
    assert state.uptime == {}
    assert state.consecutive_failures == {}
