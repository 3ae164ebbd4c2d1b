import collections
import threading

import pytest

from ccdc_scoring import database
from ccdc_scoring.config import Box, EventConfig, MiscSettings, RequiredSettings, User
from ccdc_scoring.transport import RESULTS, TASKS, TransportError


class MemoryTransport:
    """In-process stand-in for the Redis transport."""

    def __init__(self):
        self.queues = collections.defaultdict(collections.deque)
        self.published = []
        self._cond = threading.Condition()

    def push(self, queue, payload):
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        with self._cond:
            self.queues[queue].append(payload)
            self._cond.notify_all()

    def blocking_pop(self, queue, timeout):
        with self._cond:
            self._cond.wait_for(lambda: self.queues[queue], timeout=max(timeout, 0.01))
            if not self.queues[queue]:
                return None
            return self.queues[queue].popleft()

    def length(self, queue):
        with self._cond:
            return len(self.queues[queue])

    def drain(self, queue):
        with self._cond:
            items = list(self.queues[queue])
            self.queues[queue].clear()
            return items

    def clear(self):
        return len(self.drain(TASKS)) + len(self.drain(RESULTS))

    def publish(self, channel, message):
        self.published.append((channel, message))

    def subscribe(self, channel, stop_event=None, poll=1.0):
        while stop_event is not None and not stop_event.wait(poll):
            pass
        return
        yield


class BrokenTransport(MemoryTransport):
    def push(self, queue, payload):
        raise TransportError("connection refused")


@pytest.fixture
def transport():
    return MemoryTransport()


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "scores.db"))
    database.init_db()
    return database


def make_config(*services, teams=("team1",), delay=3, timeout=1, sla_threshold=3, points=1):
    """EventConfig with every service on one box at 127.0.0.1, already verified."""
    misc = MiscSettings(
        delay=delay,
        jitter=0,
        timeout=timeout,
        points=points,
        sla_threshold=sla_threshold,
        sla_penalty=sla_threshold * points,
        port=8080,
    )
    box = Box(name="box", ip="127.0.0.1", runners=list(services))
    for service in services:
        service.verify(box.name, box.ip, misc.points, misc.timeout, misc.sla_penalty, misc.sla_threshold)
    return EventConfig(
        required=RequiredSettings(
            event_name="Test Event",
            event_type="rvb",
            db_connect_url="sqlite:scores.db",
            bind_address="127.0.0.1",
        ),
        misc=misc,
        boxes=[box],
        teams=[User(name=name, pw="pw") for name in teams],
    )
