import fakeredis
import pytest
import redis

from ccdc_scoring.transport import RESULTS, TASKS, Transport, TransportError


@pytest.fixture
def redis_transport():
    return Transport(fakeredis.FakeRedis())


class _DownClient:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")
        return fail


def test_push_and_pop_in_order(redis_transport):
    redis_transport.push(TASKS, b"one")
    redis_transport.push(TASKS, b"two")

    assert redis_transport.length(TASKS) == 2
    assert redis_transport.blocking_pop(TASKS, 0.1) == b"one"
    assert redis_transport.blocking_pop(TASKS, 0.1) == b"two"
    assert redis_transport.blocking_pop(TASKS, 0.1) is None


def test_drain_and_clear(redis_transport):
    for payload in (b"a", b"b", b"c"):
        redis_transport.push(TASKS, payload)
    redis_transport.push(RESULTS, b"stale")

    assert redis_transport.drain(TASKS) == [b"a", b"b", b"c"]
    assert redis_transport.length(TASKS) == 0
    assert redis_transport.clear() == 1
    assert redis_transport.length(RESULTS) == 0


def test_errors_are_wrapped():
    transport = Transport(_DownClient())
    with pytest.raises(TransportError):
        transport.push(TASKS, b"x")
    with pytest.raises(TransportError):
        transport.blocking_pop(RESULTS, 1)
    with pytest.raises(TransportError):
        transport.publish("events", "pause")
