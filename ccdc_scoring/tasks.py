"""
Wire records exchanged between the scheduler and the workers.

  Task        - one probe to run: (team, service, round, deadline, check_data)
  CheckResult - the outcome of that probe, pushed back on the results queue

Both are encoded as JSON objects. Deadlines are RFC 3339 strings.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone


TIMEOUT_ERROR = "check timeout exceeded"


class MalformedRecord(ValueError):
    """A task or result payload could not be decoded."""


@dataclass
class Credential:
    username: str
    password: str

    def to_dict(self):
        return {"username": self.username, "password": self.password}


@dataclass
class Task:
    team_id: int
    team_identifier: str
    service_type: str
    service_name: str
    deadline: datetime
    round_id: int
    attempts: int = 1
    check_data: dict = field(default_factory=dict)
    credentials: list = field(default_factory=list)

    def encode(self):
        return json.dumps({
            "team_id": self.team_id,
            "team_identifier": self.team_identifier,
            "service_type": self.service_type,
            "service_name": self.service_name,
            "deadline": format_time(self.deadline),
            "round_id": self.round_id,
            "attempts": self.attempts,
            "check_data": self.check_data,
            "credentials": [c.to_dict() for c in self.credentials],
        })

    @classmethod
    def decode(cls, raw):
        data = _load_object(raw, "task")
        try:
            return cls(
                team_id=int(data["team_id"]),
                team_identifier=str(data.get("team_identifier", "")),
                service_type=str(data["service_type"]),
                service_name=str(data["service_name"]),
                deadline=parse_time(data["deadline"]),
                round_id=int(data["round_id"]),
                attempts=int(data.get("attempts") or 1),
                check_data=data.get("check_data") or {},
                credentials=[
                    Credential(str(c["username"]), str(c["password"]))
                    for c in data.get("credentials") or []
                ],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedRecord(f"invalid task record: {exc}") from exc


@dataclass
class CheckResult:
    team_id: int = 0
    service_name: str = ""
    service_type: str = ""
    round_id: int = 0
    status: bool = False
    points: int = 0
    error: str = ""
    debug: str = ""

    def encode(self):
        return json.dumps({
            "team_id": self.team_id,
            "service_name": self.service_name,
            "service_type": self.service_type,
            "round_id": self.round_id,
            "status": self.status,
            "points": self.points,
            "error": self.error,
            "debug": self.debug,
        })

    @classmethod
    def decode(cls, raw):
        data = _load_object(raw, "result")
        try:
            return cls(
                team_id=int(data.get("team_id") or 0),
                service_name=str(data.get("service_name") or ""),
                service_type=str(data.get("service_type") or ""),
                round_id=int(data.get("round_id") or 0),
                status=bool(data.get("status", False)),
                points=int(data.get("points") or 0),
                error=str(data.get("error") or ""),
                debug=str(data.get("debug") or ""),
            )
        except (TypeError, ValueError) as exc:
            raise MalformedRecord(f"invalid result record: {exc}") from exc

    @property
    def key(self):
        return (self.team_id, self.service_name)


def format_time(value):
    """RFC 3339 with an explicit offset; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_time(value):
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_object(raw, kind):
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedRecord(f"{kind} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedRecord(f"{kind} must be a JSON object")
    return data
