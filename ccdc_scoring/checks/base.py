"""
Common plumbing shared by every probe.

A probe is a dataclass subclass of Service. The configuration file fills
its fields, verify() applies defaults and validates it, and the worker
calls run() once per attempt. Probes implement check(), which returns a
(status, error, debug) tuple built with ok() / fail().
"""

import dataclasses
import hashlib
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar

from ccdc_scoring.tasks import CheckResult, Credential


class CredentialsError(Exception):
    """The probe needs credentials but the task carried none."""


def camel_to_snake(key):
    """Map an event.conf key (SlaPenalty, CredLists, DBConnectURL) to an attribute name."""
    snake = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", key)
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", snake).lower()
    return "credlists" if snake == "cred_lists" else snake


def string_hash(content):
    """sha256 hex digest of str or bytes content."""
    if isinstance(content, str):
        content = content.encode("utf-8", errors="surrogateescape")
    return hashlib.sha256(content).hexdigest()


def _as_datetime(value):
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        # TOML local date-times are wall-clock times on the scoring host
        value = value.astimezone()
    return value


def build_dataclass(cls, data):
    """
    Build a dataclass instance from a dict with CamelCase or snake_case keys.
    Returns (instance, unknown_keys).
    """
    known = {f.name: f for f in dataclasses.fields(cls) if f.init}
    nested = getattr(cls, "nested", {})
    kwargs, unknown = {}, []
    for raw_key, value in data.items():
        key = camel_to_snake(raw_key) if raw_key not in known else raw_key
        if key not in known:
            unknown.append(raw_key)
            continue
        if key in nested and isinstance(value, list):
            items = []
            for item in value:
                if not isinstance(item, dict):
                    raise TypeError(f"{raw_key} entries must be tables, got {type(item).__name__}")
                obj, extra = build_dataclass(nested[key], item)
                items.append(obj)
                unknown.extend(f"{raw_key}.{e}" for e in extra)
            value = items
        elif key in ("launch_time", "stop_time"):
            value = _as_datetime(value)
        kwargs[key] = value
    return cls(**kwargs), unknown


@dataclass
class Service:
    name: str = ""
    display: str = ""
    credlists: list = field(default_factory=list)
    port: int = 0
    points: int = 0
    timeout: int = 0
    sla_penalty: int = 0
    sla_threshold: int = 0
    launch_time: datetime = None
    stop_time: datetime = None
    disabled: bool = False
    target: str = ""
    attempts: int = 0

    service_type: ClassVar[str] = ""
    default_port: ClassVar[int] = 0
    requires_port: ClassVar[bool] = False
    nested: ClassVar[dict] = {}

    def __post_init__(self):
        self.task_credentials = []

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def verify(self, box, ip, points, timeout, sla_penalty, sla_threshold):
        """Fill unset fields from the box and global defaults, then validate."""
        if not self.target:
            self.target = ip
        if not self.points:
            self.points = points
        if not self.timeout:
            self.timeout = timeout
        if not self.sla_penalty:
            self.sla_penalty = sla_penalty
        if not self.sla_threshold:
            self.sla_threshold = sla_threshold
        if not self.attempts:
            self.attempts = 1
        if not self.display:
            self.display = self.service_type.lower()
        if not self.name:
            self.name = f"{box}-{self.display}"
        if not self.port:
            self.port = self.default_port

        if self.requires_port and not self.port:
            raise ValueError("port is required")
        if self.port < 0 or self.points < 0 or self.sla_penalty < 0:
            raise ValueError("port, points and sla penalty must not be negative")
        if self.timeout < 1 or self.sla_threshold < 1 or self.attempts < 1:
            raise ValueError("timeout, sla threshold and attempts must be at least 1")
        for credlist in self.credlists:
            if not credlist.endswith(".credlist"):
                raise ValueError(f"check {self.name} has invalid credlist name {credlist!r}")
        self.validate()

    def validate(self):
        """Type-specific checks; raise ValueError on a bad configuration."""

    def runnable(self, now=None):
        now = now or datetime.now(timezone.utc)
        if self.disabled:
            return False
        if self.launch_time is not None and now < self.launch_time:
            return False
        if self.stop_time is not None and now >= self.stop_time:
            return False
        return True

    # ------------------------------------------------------------------
    # Serialization (check_data payload)
    # ------------------------------------------------------------------

    def to_dict(self):
        data = dataclasses.asdict(self)
        for key in ("launch_time", "stop_time"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data):
        service, _ = build_dataclass(cls, data)
        return service

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def set_task_credentials(self, credentials):
        self.task_credentials = [
            c if isinstance(c, Credential) else Credential(c["username"], c["password"])
            for c in credentials
        ]

    def pick_credentials(self):
        """One (username, password) chosen uniformly from the task snapshot."""
        if not self.task_credentials:
            raise CredentialsError(f"no credentials available for {self.name}")
        cred = random.choice(self.task_credentials)
        return cred.username, cred.password

    def run(self, team_id, team_identifier, round_id):
        target = self.target.replace("_", team_identifier)
        result = CheckResult(
            team_id=team_id,
            service_name=self.name,
            service_type=self.service_type,
            round_id=round_id,
        )
        try:
            status, error, debug = self.check(target, team_identifier, round_id)
        except CredentialsError as exc:
            status, error, debug = False, "error getting creds", str(exc)
        except Exception as exc:
            status, error, debug = False, "check raised an exception", f"{type(exc).__name__}: {exc}"
        result.status = status
        result.error = error
        result.debug = debug
        result.points = self.points if status else 0
        return result

    def check(self, target, team_identifier, round_id):
        raise NotImplementedError

    @staticmethod
    def ok(debug=""):
        return True, "", debug

    @staticmethod
    def fail(error, debug=""):
        return False, error, debug
