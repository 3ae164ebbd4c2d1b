"""
In-memory SLA / uptime counters, keyed by (team_id, service_name).

Only the scheduler thread mutates them. API readers take copies through
snapshot() and may see counters one round behind.
"""

import logging
import threading
from dataclasses import dataclass

from ccdc_scoring import database

log = logging.getLogger("scoring.state")


@dataclass
class Sla:
    team_id: int
    service_name: str
    round_id: int
    penalty: int


class ServiceState:
    def __init__(self):
        self.consecutive_failures = {}
        self.uptime = {}
        self._lock = threading.Lock()

    def record(self, result, threshold, penalty, round_id):
        """
        Fold one collected result into the counters. Returns an Sla when the
        failure streak reaches the threshold (the streak then restarts at 0).
        """
        key = result.key
        with self._lock:
            up = self.uptime.setdefault(key, {"passed": 0, "total": 0})
            up["total"] += 1
            if result.status:
                up["passed"] += 1
                self.consecutive_failures[key] = 0
                return None

            failures = self.consecutive_failures.get(key, 0) + 1
            if failures >= threshold:
                self.consecutive_failures[key] = 0
                return Sla(result.team_id, result.service_name, round_id, penalty)
            self.consecutive_failures[key] = failures
            return None

    def rebuild(self, threshold):
        """Re-derive both maps from persisted checks (threshold: int or callable by service name)."""
        uptime = database.load_uptimes()
        failures = database.load_slas(threshold)
        with self._lock:
            self.uptime = uptime
            self.consecutive_failures = failures
        log.info("Rebuilt SLA/uptime state for %d team services", len(uptime))

    def reset(self):
        with self._lock:
            self.consecutive_failures = {}
            self.uptime = {}

    def snapshot(self):
        with self._lock:
            return {
                "uptime": {k: dict(v) for k, v in self.uptime.items()},
                "consecutive_failures": dict(self.consecutive_failures),
            }
