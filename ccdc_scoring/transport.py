"""
Redis transport between the scheduler and the workers.

  tasks    list   scheduler RPUSH, workers BLPOP
  results  list   workers RPUSH, scheduler BLPOP
  events   pubsub pause / resume / reset / round_finish
"""

import logging
import os

import redis

log = logging.getLogger("scoring.transport")

TASKS = "tasks"
RESULTS = "results"
EVENTS = "events"

EVENT_PAUSE = "pause"
EVENT_RESUME = "resume"
EVENT_RESET = "reset"
EVENT_ROUND_FINISH = "round_finish"

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class TransportError(RuntimeError):
    """The queue backend is unreachable or returned an error."""


class Transport:
    def __init__(self, client):
        self.client = client

    @classmethod
    def from_env(cls):
        url = os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
        password = os.environ.get("REDIS_PASSWORD") or None
        return cls(redis.from_url(url, password=password))

    def push(self, queue, payload):
        try:
            self.client.rpush(queue, payload)
        except redis.RedisError as exc:
            raise TransportError(f"push to {queue} failed: {exc}") from exc

    def blocking_pop(self, queue, timeout):
        """Next payload from the queue, or None once `timeout` seconds pass."""
        # BLPOP treats 0 as "block forever"
        timeout = max(timeout, 0.01)
        try:
            item = self.client.blpop([queue], timeout=timeout)
        except redis.RedisError as exc:
            raise TransportError(f"pop from {queue} failed: {exc}") from exc
        if item is None:
            return None
        return item[1]

    def length(self, queue):
        try:
            return self.client.llen(queue)
        except redis.RedisError as exc:
            raise TransportError(f"length of {queue} failed: {exc}") from exc

    def drain(self, queue):
        """Atomically empty the queue and return what was in it."""
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.lrange(queue, 0, -1)
            pipe.delete(queue)
            items, _ = pipe.execute()
        except redis.RedisError as exc:
            raise TransportError(f"drain of {queue} failed: {exc}") from exc
        return items

    def clear(self):
        """Drop any residue of an earlier round from both queues."""
        leftovers = len(self.drain(TASKS)) + len(self.drain(RESULTS))
        if leftovers:
            log.info("Cleared %d stale queue entries", leftovers)
        return leftovers

    def publish(self, channel, message):
        try:
            self.client.publish(channel, message)
        except redis.RedisError as exc:
            raise TransportError(f"publish on {channel} failed: {exc}") from exc

    def subscribe(self, channel, stop_event=None, poll=1.0):
        """Yield utf-8 messages from the channel until stop_event is set."""
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(channel)
            while stop_event is None or not stop_event.is_set():
                message = pubsub.get_message(timeout=poll)
                if message is None or message["type"] != "message":
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8", errors="replace")
                yield data
        except redis.RedisError as exc:
            raise TransportError(f"subscription to {channel} failed: {exc}") from exc
        finally:
            pubsub.close()
