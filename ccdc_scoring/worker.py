"""
Check worker.

A worker pops tasks from the transport, rebuilds the probe named by the
task's service_type, runs it under the task's deadline with retries and
pushes exactly one result back. Workers share nothing with each other or
with the scheduler except the transport.
"""

import logging
import os
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from ccdc_scoring.checks import UnknownServiceType, build_runner
from ccdc_scoring.tasks import TIMEOUT_ERROR, CheckResult, MalformedRecord, Task
from ccdc_scoring.transport import EVENTS, RESULTS, TASKS, TransportError

log = logging.getLogger("scoring.worker")

DEFAULT_CONCURRENCY = 32
TRANSPORT_RETRY_DELAY = 2.0


def runner_id():
    return os.environ.get("RUNNER_ID") or socket.gethostname() or "unknown"


# ---------------------------------------------------------------------------
# Task execution
# ---------------------------------------------------------------------------

def run_attempt(service, task, timeout):
    """
    Run one probe attempt on its own thread and wait at most `timeout`
    seconds. Returns the CheckResult, or None when the probe is still
    running; an abandoned probe finishes in the background and is ignored.
    """
    outcome = {}
    finished = threading.Event()

    def probe():
        try:
            outcome["result"] = service.run(task.team_id, task.team_identifier, task.round_id)
        finally:
            finished.set()

    thread = threading.Thread(target=probe, name=f"probe-{task.service_name}", daemon=True)
    thread.start()
    if not finished.wait(timeout):
        return None
    return outcome.get("result")


def execute_task(task, now=None):
    """Turn one task into exactly one CheckResult. Never raises for probe errors."""
    now = now or (lambda: datetime.now(timezone.utc))
    result = CheckResult(
        team_id=task.team_id,
        service_name=task.service_name,
        service_type=task.service_type,
        round_id=task.round_id,
        error=TIMEOUT_ERROR,
        debug="round ended before check completed",
    )

    try:
        build_runner(task.service_type, task.check_data)
    except UnknownServiceType:
        log.warning("Unknown service type %r for %s", task.service_type, task.service_name)
        result.error = "unknown service type"
        result.debug = f"no probe registered for {task.service_type!r}"
        return result
    except (KeyError, TypeError, ValueError) as exc:
        log.warning("Malformed check data for %s: %s", task.service_name, exc)
        result.error = "malformed check data"
        result.debug = str(exc)
        return result

    for attempt in range(1, max(task.attempts, 1) + 1):
        remaining = (task.deadline - now()).total_seconds()
        if remaining <= 0:
            break

        # Fresh probe per attempt; an abandoned one may still be running
        service = build_runner(task.service_type, task.check_data)
        service.set_task_credentials(task.credentials)
        budget = min(service.timeout, remaining) if service.timeout else remaining

        log.debug(
            "Running check: round=%d team=%d %s attempt=%d budget=%.1fs",
            task.round_id, task.team_id, task.service_name, attempt, budget,
        )
        outcome = run_attempt(service, task, budget)
        if outcome is None:
            result.status = False
            result.points = 0
            result.error = TIMEOUT_ERROR
            if budget < remaining:
                result.debug = f"attempt {attempt} did not finish within {service.timeout}s"
            else:
                result.debug = "round ended before check completed"
        else:
            result = outcome

        result.team_id = task.team_id
        result.service_name = task.service_name
        result.service_type = task.service_type
        result.round_id = task.round_id
        if result.status:
            break

    if not result.status:
        result.points = 0
    return result


# ---------------------------------------------------------------------------
# Worker loop
# ---------------------------------------------------------------------------

class Worker:
    def __init__(self, transport, concurrency=DEFAULT_CONCURRENCY, poll=1.0, name=None):
        self.transport = transport
        self.concurrency = concurrency
        self.poll = poll
        self.name = name or runner_id()

    def handle(self, raw):
        try:
            task = Task.decode(raw)
        except MalformedRecord as exc:
            log.error("[%s] Dropping undecodable task: %s", self.name, exc)
            return None

        log.info(
            "[%s] Task: round=%d team=%d (%s) %s %s",
            self.name, task.round_id, task.team_id, task.team_identifier,
            task.service_type, task.service_name,
        )
        result = execute_task(task)
        try:
            self.transport.push(RESULTS, result.encode())
        except TransportError as exc:
            log.error("[%s] Failed to push result for %s: %s", self.name, task.service_name, exc)
            return None

        log.info(
            "[%s] Result: round=%d team=%d %s %s %s",
            self.name, result.round_id, result.team_id, result.service_name,
            "UP" if result.status else "DOWN", result.error,
        )
        return result

    def _listen_events(self, stop_event):
        try:
            for message in self.transport.subscribe(EVENTS, stop_event):
                log.info("[%s] Received event: %s", self.name, message)
        except TransportError as exc:
            log.error("[%s] Event subscription ended: %s", self.name, exc)

    def serve(self, stop_event):
        """Pop and run tasks until stop_event is set."""
        log.info("[%s] Worker started with %d slots", self.name, self.concurrency)
        listener = threading.Thread(
            target=self._listen_events, args=(stop_event,), name="worker-events", daemon=True
        )
        listener.start()

        slots = threading.BoundedSemaphore(self.concurrency)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="task") as pool:
            while not stop_event.is_set():
                if not slots.acquire(timeout=self.poll):
                    continue
                try:
                    raw = self.transport.blocking_pop(TASKS, self.poll)
                except TransportError as exc:
                    slots.release()
                    log.error("[%s] Error getting task: %s", self.name, exc)
                    stop_event.wait(TRANSPORT_RETRY_DELAY)
                    continue
                if raw is None:
                    slots.release()
                    continue
                future = pool.submit(self.handle, raw)
                future.add_done_callback(lambda f: self._task_done(f, slots))
        log.info("[%s] Worker stopped", self.name)

    def _task_done(self, future, slots):
        slots.release()
        exc = future.exception()
        if exc is not None:
            log.error("[%s] Task handler failed: %r", self.name, exc, exc_info=exc)
