"""
Round scheduler and control plane.

Each round: snapshot teams, enabled services and credentials, enqueue one
task per (team, service) pair, collect results until every pair answered
or the round deadline passed, then commit the round, update SLA/uptime
state and refresh the cumulative scores. A round is either committed
whole or dropped; the round id only advances on commit.
"""

import logging
import random
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

from ccdc_scoring import database
from ccdc_scoring.credentials import CredentialStore
from ccdc_scoring.state import ServiceState
from ccdc_scoring.tasks import TIMEOUT_ERROR, CheckResult, MalformedRecord, Task, format_time
from ccdc_scoring.transport import (
    EVENT_PAUSE,
    EVENT_RESET,
    EVENT_RESUME,
    EVENT_ROUND_FINISH,
    EVENTS,
    RESULTS,
    TASKS,
    TransportError,
)

log = logging.getLogger("scoring.engine")


class ScoringEngine:
    def __init__(self, config, transport, credentials=None, clock=None, poll=1.0):
        self.config = config
        self.transport = transport
        self.credentials = credentials or CredentialStore(config)
        self.state = ServiceState()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.poll = poll

        self._round_id = 1
        self._round_start = None
        self._next_round_start = None

        self._unpaused = threading.Event()
        if not config.misc.start_paused:
            self._unpaused.set()
        self._abort = threading.Event()
        self._interrupt = threading.Event()
        self._stop = threading.Event()
        self._round_lock = threading.Lock()
        self._prepared = False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def current_round(self):
        return self._round_id

    @property
    def current_round_start_time(self):
        return self._round_start

    @property
    def next_round_start_time(self):
        return self._next_round_start

    @property
    def is_paused(self):
        return not self._unpaused.is_set()

    def status(self):
        start, nxt = self._round_start, self._next_round_start
        return {
            "event_name": self.config.required.event_name,
            "current_round": self._round_id,
            "current_round_start_time": format_time(start) if start else None,
            "next_round_start_time": format_time(nxt) if nxt else None,
            "is_paused": self.is_paused,
        }

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _threshold_for(self, conf):
        services = conf.services_by_name()

        def threshold(service_name):
            service = services.get(service_name)
            return service.sla_threshold if service else conf.misc.sla_threshold
        return threshold

    def prepare(self):
        """Create configured teams, seed credentials and rebuild state from the database."""
        database.add_teams([team.name for team in self.config.teams])
        self.credentials.load()
        last = database.get_last_round()
        self._round_id = last["id"] + 1 if last else 1
        self.state.rebuild(self._threshold_for(self.config))
        self._prepared = True
        log.info("Engine ready, next round is %d", self._round_id)

    def set_config(self, conf):
        """Swap in a reloaded config. The round in flight keeps the old one."""
        self.config = conf
        self.credentials.config = conf
        try:
            self.credentials.load()
        except (OSError, ValueError, sqlite3.Error) as exc:
            log.error("Failed to load credlists from reloaded config: %s", exc)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _publish(self, message):
        try:
            self.transport.publish(EVENTS, message)
        except TransportError as exc:
            log.error("Failed to publish %s: %s", message, exc)

    def pause(self):
        if not self.is_paused:
            self._unpaused.clear()
            log.info("Engine paused")
            self._publish(EVENT_PAUSE)

    def resume(self):
        if self.is_paused:
            self._unpaused.set()
            log.info("Engine resumed")
            self._publish(EVENT_RESUME)

    def reset_scores(self):
        """
        Abandon the round in flight, truncate round data, empty the queues
        and zero the in-memory state. The pause flag is left as it was.
        """
        log.info("Resetting scores and clearing queues")
        self._abort.set()
        self._interrupt.set()
        with self._round_lock:
            try:
                database.reset_scores()
                self.transport.clear()
                self.state.reset()
                self._round_id = 1
                self._round_start = None
                self._next_round_start = None
            finally:
                self._abort.clear()
        self._publish(EVENT_RESET)
        log.info("Scores reset, next round is 1")

    def stop(self):
        self._stop.set()
        self._abort.set()
        self._interrupt.set()

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    def start(self):
        """Run rounds until stop() is called. Prepares the engine first unless prepare() already ran."""
        if not self._prepared:
            self.prepare()
        if self.config.required.event_type == "koth":
            log.warning("koth events are scored with the rvb round rules")

        while not self._stop.is_set():
            log.info("Queueing up for round %d", self._round_id)
            while not self._unpaused.wait(self.poll):
                if self._stop.is_set():
                    return
            if self._stop.is_set():
                return

            try:
                self.run_round()
            except Exception:
                log.exception("Unhandled error in round %d", self._round_id)

            self._sleep_until_next_round()
        log.info("Engine loop ending")

    def _sleep_until_next_round(self):
        target = self._next_round_start
        if target is not None:
            remaining = (target - self.clock()).total_seconds()
            if remaining > 0:
                log.info("Round %d will start in %.0fs, sleeping...", self._round_id, remaining)
                self._interrupt.wait(remaining)
        self._interrupt.clear()

    def _build_tasks(self, conf, round_start, deadline):
        teams = database.get_active_teams()
        enabled = {
            (row["team_id"], row["service_name"]): row["enabled"]
            for row in database.get_all_team_service_checks()
        }

        tasks = []
        for team in teams:
            for _, service in conf.runners():
                if not service.runnable(round_start):
                    continue
                if not enabled.get((team["id"], service.name), True):
                    continue
                tasks.append(Task(
                    team_id=team["id"],
                    team_identifier=team["identifier"],
                    service_type=service.service_type,
                    service_name=service.name,
                    deadline=deadline,
                    round_id=self._round_id,
                    attempts=service.attempts,
                    check_data=service.to_dict(),
                    credentials=self.credentials.snapshot(team["id"], service.credlists),
                ))
        return tasks

    def _collect(self, round_id, expected, deadline):
        """
        Gather results for this round until every expected pair answered or
        the deadline passed. Returns {(team_id, service_name): CheckResult},
        or None when a reset aborted the round.
        """
        collected = {}
        while len(collected) < len(expected):
            if self._abort.is_set():
                return None
            remaining = (deadline - self.clock()).total_seconds()
            if remaining <= 0:
                log.warning("Timeout waiting for results, %d missing", len(expected) - len(collected))
                break
            raw = self.transport.blocking_pop(RESULTS, min(self.poll, remaining))
            if raw is None:
                continue
            try:
                result = CheckResult.decode(raw)
            except MalformedRecord as exc:
                log.warning("Discarding malformed result: %s", exc)
                continue
            if result.round_id != round_id:
                log.warning("Ignoring out of round result (round %d, current %d)", result.round_id, round_id)
                continue
            if not result.team_id or not result.service_name:
                log.warning("Rejecting result without team or service name")
                continue
            if result.key not in expected:
                log.warning("Ignoring unexpected result for team %d %s", result.team_id, result.service_name)
                continue
            collected[result.key] = result
        if self._abort.is_set():
            return None
        return collected

    def run_round(self):
        """Run one full round. Returns True when the round was committed."""
        with self._round_lock:
            if self._abort.is_set():
                return False

            conf = self.config
            misc = conf.misc
            round_id = self._round_id
            round_start = self.clock()
            jitter = random.randint(-misc.jitter, misc.jitter) if misc.jitter else 0
            deadline = round_start + timedelta(seconds=misc.delay + jitter)
            self._round_start = round_start
            self._next_round_start = deadline
            log.info("=== Starting round %d (deadline in %ds) ===", round_id, misc.delay + jitter)

            try:
                tasks = self._build_tasks(conf, round_start, deadline)
            except sqlite3.Error as exc:
                log.error("Dropping round %d, could not snapshot teams: %s", round_id, exc)
                return False
            expected = {(t.team_id, t.service_name): t for t in tasks}

            collected = {}
            if tasks:
                try:
                    self.transport.clear()
                    for task in tasks:
                        self.transport.push(TASKS, task.encode())
                    log.info("Enqueued %d checks", len(tasks))
                    collected = self._collect(round_id, expected, deadline)
                except TransportError as exc:
                    log.error("Dropping round %d, transport failed: %s", round_id, exc)
                    return False
                if collected is None:
                    log.warning("Round %d aborted by reset", round_id)
                    return False
            else:
                log.warning("No runnable checks for round %d", round_id)

            results = []
            for key, task in expected.items():
                result = collected.get(key)
                if result is None:
                    result = CheckResult(
                        team_id=task.team_id,
                        service_name=task.service_name,
                        service_type=task.service_type,
                        round_id=round_id,
                        error=TIMEOUT_ERROR,
                        debug="no result received before the round deadline",
                    )
                results.append(result)

            try:
                database.create_round(round_id, round_start, results)
            except sqlite3.Error as exc:
                log.error("Dropping round %d, failed to persist: %s", round_id, exc)
                return False

            services = conf.services_by_name()
            for result in results:
                service = services[result.service_name]
                sla = self.state.record(result, service.sla_threshold, service.sla_penalty, round_id)
                if sla is None:
                    continue
                log.warning(
                    "SLA violation: team %d %s (-%d)", sla.team_id, sla.service_name, sla.penalty
                )
                try:
                    database.create_sla(sla.team_id, sla.round_id, sla.service_name, sla.penalty)
                except sqlite3.Error as exc:
                    log.error("Failed to record SLA for team %d %s: %s", sla.team_id, sla.service_name, exc)

            try:
                database.refresh_scores()
            except sqlite3.Error as exc:
                log.error("Failed to refresh cumulative scores: %s", exc)

            passed = sum(1 for r in results if r.status)
            log.info("Round %d complete: %d/%d checks up", round_id, passed, len(results))
            self._publish(EVENT_ROUND_FINISH)
            self._round_id = round_id + 1
            return True
