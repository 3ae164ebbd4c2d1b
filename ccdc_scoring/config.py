"""
Event configuration.

The event is described by one TOML file (event.conf):

  [RequiredSettings]   EventName, EventType, DBConnectURL, BindAddress
  [MiscSettings]       Delay, Jitter, Timeout, Points, SlaThreshold, ...
  [CredlistSettings]   Credlist = [{CredlistName, CredlistPath, ...}]
  [[Box]]              Name, IP and one array per check type
  [[Team]] [[Admin]] [[Red]]

Credlist CSV files live in <config dir>/credlists/, SSH private keys in
<config dir>/scoredfiles/.
"""

import logging
import os
import threading
import time
import tomllib
from dataclasses import dataclass, field

from ccdc_scoring.checks import CONFIG_KEYS, service_from_config
from ccdc_scoring.checks.base import build_dataclass

log = logging.getLogger("scoring.config")

SUPPORTED_EVENTS = ("rvb", "koth")

# MiscSettings defaults
DEFAULT_DELAY = 60
DEFAULT_JITTER = 5
DEFAULT_POINTS = 1
DEFAULT_SLA_THRESHOLD = 5
DEFAULT_PORT = 80


class ConfigError(ValueError):
    """The configuration file is invalid. Carries every problem found."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("\n".join(self.problems))


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass
class RequiredSettings:
    event_name: str = ""
    event_type: str = ""
    db_connect_url: str = ""
    bind_address: str = ""


@dataclass
class MiscSettings:
    delay: int = 0
    jitter: int = 0
    timeout: int = 0
    points: int = 0
    sla_threshold: int = 0
    sla_penalty: int = 0
    start_paused: bool = False
    log_file: str = ""
    port: int = 0
    easy_pcr: bool = False
    show_debug_to_blue_team: bool = False


@dataclass
class Credlist:
    credlist_name: str = ""
    credlist_path: str = ""
    credlist_explain_text: str = ""


@dataclass
class User:
    name: str = ""
    pw: str = ""


@dataclass
class Box:
    name: str = ""
    ip: str = ""
    runners: list = field(default_factory=list)


@dataclass
class EventConfig:
    required: RequiredSettings = field(default_factory=RequiredSettings)
    misc: MiscSettings = field(default_factory=MiscSettings)
    credlists: list = field(default_factory=list)
    boxes: list = field(default_factory=list)
    teams: list = field(default_factory=list)
    admins: list = field(default_factory=list)
    reds: list = field(default_factory=list)
    config_dir: str = "."

    @property
    def credlist_dir(self):
        return os.path.join(self.config_dir, "credlists")

    def runners(self):
        """Every configured (box, service) pair, in box order."""
        return [(box, service) for box in self.boxes for service in box.runners]

    def services_by_name(self):
        return {service.name: service for _, service in self.runners()}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _section(cls, data, label):
    if not isinstance(data, dict):
        raise ConfigError([f"{label} must be a table"])
    obj, unknown = build_dataclass(cls, data)
    for key in unknown:
        log.warning('undecoded configuration key "%s.%s" will not be used.', label, key)
    return obj


def load_config(path):
    """Read, parse and validate a configuration file. Raises ConfigError."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as exc:
        raise ConfigError([f"configuration file ({path}) not found: {exc}"]) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError([f"configuration file ({path}) is not valid TOML: {exc}"]) from exc
    return parse_config(data, config_dir=os.path.dirname(os.path.abspath(path)))


def parse_config(data, config_dir="."):
    problems = []
    known = {"RequiredSettings", "MiscSettings", "CredlistSettings", "Box", "Team", "Admin", "Red"}
    for key in data:
        if key not in known:
            log.warning('undecoded configuration key "%s" will not be used.', key)

    conf = EventConfig(config_dir=os.path.abspath(config_dir))
    conf.required = _section(RequiredSettings, data.get("RequiredSettings", {}), "RequiredSettings")
    conf.misc = _section(MiscSettings, data.get("MiscSettings", {}), "MiscSettings")

    credlist_settings = data.get("CredlistSettings", {})
    conf.credlists = [
        _section(Credlist, item, "CredlistSettings.Credlist")
        for item in credlist_settings.get("Credlist", [])
    ]
    conf.teams = [_section(User, u, "Team") for u in data.get("Team", [])]
    conf.admins = [_section(User, u, "Admin") for u in data.get("Admin", [])]
    conf.reds = [_section(User, u, "Red") for u in data.get("Red", [])]

    for raw_box in data.get("Box", []):
        box = Box(name=raw_box.get("Name", ""), ip=raw_box.get("IP", ""))
        for key, value in raw_box.items():
            if key in ("Name", "IP"):
                continue
            if key not in CONFIG_KEYS:
                log.warning('undecoded configuration key "Box.%s" will not be used.', key)
                continue
            for item in value:
                service, unknown = service_from_config(key, item)
                for extra in unknown:
                    log.warning('undecoded configuration key "Box.%s.%s" will not be used.', key, extra)
                box.runners.append(service)
        conf.boxes.append(box)

    problems.extend(check_config(conf))
    if problems:
        raise ConfigError(problems)
    return conf


def check_config(conf):
    """
    Apply defaults and validate. Returns a list of problems (empty when the
    configuration is usable). Safe to call more than once.
    """
    problems = []
    req, misc = conf.required, conf.misc

    if not req.event_name:
        problems.append("event title blank or not specified")
    if req.event_type not in SUPPORTED_EVENTS:
        problems.append(f"not a valid event type: {req.event_type!r}")
    if not req.db_connect_url:
        problems.append("no db connect url specified")
    if not req.bind_address:
        problems.append("no bind address specified")

    for label, users in (("admin", conf.admins), ("red", conf.reds), ("team", conf.teams)):
        for user in users:
            if not user.name or not user.pw:
                problems.append(f"{label} {user.name} missing required property")

    if not misc.delay:
        misc.delay = DEFAULT_DELAY
    if not misc.jitter:
        misc.jitter = DEFAULT_JITTER
    if not misc.port:
        misc.port = DEFAULT_PORT
    if misc.jitter >= misc.delay:
        problems.append("jitter must be smaller than delay")
    if not misc.timeout:
        misc.timeout = misc.delay // 2
    if misc.timeout >= misc.delay - misc.jitter:
        problems.append("timeout must be smaller than delay minus jitter")
    if not misc.points:
        misc.points = DEFAULT_POINTS
    if not misc.sla_threshold:
        misc.sla_threshold = DEFAULT_SLA_THRESHOLD
    if not misc.sla_penalty:
        misc.sla_penalty = misc.sla_threshold * misc.points

    declared = set()
    for credlist in conf.credlists:
        if not credlist.credlist_name or not credlist.credlist_path:
            problems.append("credlist entries need a CredlistName and a CredlistPath")
        elif not credlist.credlist_path.endswith(".credlist"):
            problems.append(f"credlist {credlist.credlist_path} must end in .credlist")
        declared.add(credlist.credlist_path)

    for box in conf.boxes:
        box.ip = box.ip.lower()
    conf.boxes.sort(key=lambda b: b.ip)

    box_names, service_names = set(), set()
    for i, box in enumerate(conf.boxes):
        if not box.name:
            problems.append(f"no name found for box {i}")
            continue
        if box.name in box_names:
            problems.append(f"duplicate box name found: {box.name}")
        box_names.add(box.name)
        if not box.ip:
            problems.append(f"no ip found for box {box.name}")
            continue

        for service in box.runners:
            try:
                service.verify(box.name, box.ip, misc.points, misc.timeout, misc.sla_penalty, misc.sla_threshold)
            except (ValueError, TypeError) as exc:
                problems.append(f"{service.service_type.lower()} check {service.name} failed verification: {exc}")
                continue
            if service.name in service_names:
                problems.append(f"duplicate runner name found: {service.name}")
            service_names.add(service.name)
            for credlist in service.credlists:
                if credlist not in declared:
                    problems.append(f"check {service.name} uses undeclared credlist {credlist}")
            priv_key = getattr(service, "priv_key", "")
            if priv_key and not os.path.isabs(priv_key):
                service.priv_key = os.path.join(conf.config_dir, "scoredfiles", priv_key)

    return problems


# ---------------------------------------------------------------------------
# Reload watcher
# ---------------------------------------------------------------------------

class ConfigWatcher:
    """
    Poll the config file and hand a freshly validated EventConfig to
    on_reload once the file has stopped changing for `debounce` seconds.
    An invalid file is logged and the previous config stays in effect.
    """

    def __init__(self, path, on_reload, debounce=1.0, interval=0.5):
        self.path = path
        self.on_reload = on_reload
        self.debounce = max(debounce, 1.0)
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None
        self._last_mtime = self._mtime()

    def _mtime(self):
        try:
            return os.stat(self.path).st_mtime_ns
        except OSError:
            return None

    def start(self):
        self._thread = threading.Thread(target=self._loop, name="config-watcher", daemon=True)
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def _loop(self):
        changed_at = None
        while not self._stop.wait(self.interval):
            mtime = self._mtime()
            if mtime != self._last_mtime:
                self._last_mtime = mtime
                changed_at = time.monotonic()
                continue
            if changed_at is not None and time.monotonic() - changed_at >= self.debounce:
                changed_at = None
                self.reload()

    def reload(self):
        try:
            conf = load_config(self.path)
        except ConfigError as exc:
            log.error("failed to reload config, keeping the previous one:\n%s", exc)
            return False
        log.info("Configuration reloaded from %s", self.path)
        self.on_reload(conf)
        return True
