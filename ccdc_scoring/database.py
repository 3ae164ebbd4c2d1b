"""
SQLite persistence layer for the scoring engine.
Schema:
  team                - competing teams (identifier is substituted into targets)
  round               - one row per committed round
  service_check       - one row per (team, round, service), child of round
  sla                 - SLA penalties, emitted on the round the threshold was hit
  team_service_check  - per-team service enable overlay (absent = enabled)
  cumulative_scores   - running score per (round, team), rebuilt after each round
  original_credential - seeded credlist contents
  credential          - per-team credentials (changed through PCRs)
  pcr_history         - audit log of credential changes
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from ccdc_scoring.tasks import format_time

log = logging.getLogger("scoring.database")

DB_PATH = "scores.db"


def configure(url):
    """Point the module at a database given as sqlite:<path> or a bare path."""
    global DB_PATH
    if "://" in url and not url.startswith("sqlite:"):
        raise ValueError(f"unsupported database url {url!r} (only sqlite is supported)")
    path = url[len("sqlite:"):] if url.startswith("sqlite:") else url
    if path.startswith("///"):
        path = path[3:]
    if not path:
        raise ValueError("database url has no path")
    DB_PATH = path


def _connect():
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def _session(immediate=False):
    """One connection, one transaction: commit on success, roll back on error."""
    conn = _connect()
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Create tables if they don't exist."""
    with _session() as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS team (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                name        TEXT    NOT NULL UNIQUE,
                identifier  TEXT    NOT NULL DEFAULT '',
                active      INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS round (
                id          INTEGER PRIMARY KEY,
                start_time  TEXT    NOT NULL
            );

            CREATE TABLE IF NOT EXISTS service_check (
                team_id      INTEGER NOT NULL,
                round_id     INTEGER NOT NULL,
                service_name TEXT    NOT NULL,
                points       INTEGER NOT NULL DEFAULT 0,
                result       INTEGER NOT NULL,   -- 1=pass, 0=fail
                error        TEXT    NOT NULL DEFAULT '',
                debug        TEXT    NOT NULL DEFAULT '',
                PRIMARY KEY (team_id, round_id, service_name),
                FOREIGN KEY (round_id) REFERENCES round(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS sla (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id      INTEGER NOT NULL,
                round_id     INTEGER NOT NULL,
                service_name TEXT    NOT NULL,
                penalty      INTEGER NOT NULL,
                FOREIGN KEY (round_id) REFERENCES round(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS team_service_check (
                id           INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id      INTEGER NOT NULL,
                service_name TEXT    NOT NULL,
                enabled      INTEGER NOT NULL DEFAULT 1,
                UNIQUE (team_id, service_name)
            );

            CREATE TABLE IF NOT EXISTS cumulative_scores (
                round_id          INTEGER NOT NULL,
                team_id           INTEGER NOT NULL,
                cumulative_points INTEGER NOT NULL,
                PRIMARY KEY (round_id, team_id)
            );

            CREATE TABLE IF NOT EXISTS original_credential (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                credlist_name TEXT NOT NULL,
                username      TEXT NOT NULL,
                password      TEXT NOT NULL,
                UNIQUE (credlist_name, username)
            );

            CREATE TABLE IF NOT EXISTS credential (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id       INTEGER NOT NULL,
                credlist_name TEXT NOT NULL,
                username      TEXT NOT NULL,
                password      TEXT NOT NULL,
                updated_at    TEXT NOT NULL,
                UNIQUE (team_id, credlist_name, username)
            );

            CREATE TABLE IF NOT EXISTS pcr_history (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                team_id       INTEGER NOT NULL,
                credlist_name TEXT NOT NULL,
                username      TEXT NOT NULL,
                old_password  TEXT NOT NULL DEFAULT '',
                new_password  TEXT NOT NULL,
                changed_by    TEXT NOT NULL DEFAULT '',
                changed_at    TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sc_round   ON service_check(round_id);
            CREATE INDEX IF NOT EXISTS idx_sc_service ON service_check(team_id, service_name);
            CREATE INDEX IF NOT EXISTS idx_sla_team   ON sla(team_id, service_name);
            CREATE INDEX IF NOT EXISTS idx_pcr_team   ON pcr_history(team_id);
        """)


def sanitize(value):
    """
    Make probe output safe to store: invalid unicode is replaced and NUL
    bytes are removed. Clean strings come back unchanged.
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    elif not isinstance(value, str):
        value = str(value)
    value = value.encode("utf-8", errors="replace").decode("utf-8")
    return value.replace("\x00", "")


def _now():
    return format_time(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------

def create_round(round_id, start_time, checks):
    """
    Persist a round and its checks in one exclusive transaction.
    checks: iterable of CheckResult. Returns the round id.
    """
    with _session(immediate=True) as conn:
        conn.execute(
            "INSERT INTO round (id, start_time) VALUES (?, ?)",
            (round_id, format_time(start_time)),
        )
        conn.executemany(
            """INSERT INTO service_check
               (team_id, round_id, service_name, points, result, error, debug)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (team_id, round_id, service_name) DO NOTHING""",
            [
                (c.team_id, round_id, sanitize(c.service_name), c.points,
                 1 if c.status else 0, sanitize(c.error), sanitize(c.debug))
                for c in checks
            ],
        )
    return round_id


def get_last_round():
    """The most recent round as a dict, or None when no round exists."""
    with _session() as conn:
        row = conn.execute("SELECT * FROM round ORDER BY id DESC LIMIT 1").fetchone()
        return dict(row) if row else None


def get_round_count():
    with _session() as conn:
        return conn.execute("SELECT COUNT(*) FROM round").fetchone()[0]


def get_round_checks(round_id):
    with _session() as conn:
        rows = conn.execute(
            "SELECT * FROM service_check WHERE round_id = ? ORDER BY team_id, service_name",
            (round_id,),
        ).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# SLA / uptime reconstruction
# ---------------------------------------------------------------------------

def load_uptimes():
    """{(team_id, service_name): {"passed": n, "total": n}} over every persisted check."""
    with _session() as conn:
        rows = conn.execute("""
            SELECT team_id, service_name,
                   SUM(result) AS passed,
                   COUNT(*)    AS total
            FROM service_check
            GROUP BY team_id, service_name
        """).fetchall()
        return {
            (r["team_id"], r["service_name"]): {"passed": r["passed"], "total": r["total"]}
            for r in rows
        }


def load_slas(threshold):
    """
    Replay persisted results in round order and return the consecutive
    failure counter per (team_id, service_name). A pass zeroes it, a
    failure increments it modulo the SLA threshold. `threshold` is an int
    or a callable taking the service name.
    """
    threshold_for = threshold if callable(threshold) else (lambda _name: threshold)
    counters = {}
    with _session() as conn:
        rows = conn.execute(
            "SELECT team_id, service_name, result FROM service_check ORDER BY round_id"
        ).fetchall()
    for r in rows:
        key = (r["team_id"], r["service_name"])
        if r["result"]:
            counters[key] = 0
        else:
            counters[key] = (counters.get(key, 0) + 1) % max(threshold_for(r["service_name"]), 1)
    return counters


def create_sla(team_id, round_id, service_name, penalty):
    with _session() as conn:
        conn.execute(
            "INSERT INTO sla (team_id, round_id, service_name, penalty) VALUES (?, ?, ?, ?)",
            (team_id, round_id, service_name, penalty),
        )


def get_slas(team_id=None):
    with _session() as conn:
        if team_id is None:
            rows = conn.execute("SELECT * FROM sla ORDER BY round_id, id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM sla WHERE team_id = ? ORDER BY round_id, id", (team_id,)
            ).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

def add_teams(names):
    """Create any configured team that doesn't exist yet (inactive, no identifier)."""
    with _session() as conn:
        conn.executemany(
            "INSERT OR IGNORE INTO team (name) VALUES (?)",
            [(name,) for name in names],
        )


def get_teams():
    with _session() as conn:
        rows = conn.execute("SELECT * FROM team ORDER BY id").fetchall()
        return [_team(r) for r in rows]


def get_active_teams():
    with _session() as conn:
        rows = conn.execute("SELECT * FROM team WHERE active = 1 ORDER BY id").fetchall()
        return [_team(r) for r in rows]


def get_team_by_username(name):
    with _session() as conn:
        row = conn.execute("SELECT * FROM team WHERE name = ?", (name,)).fetchone()
        return _team(row) if row else None


def update_team(team_id, identifier, active):
    """Returns False when no team has that id."""
    with _session() as conn:
        cur = conn.execute(
            "UPDATE team SET identifier = ?, active = ? WHERE id = ?",
            (identifier, 1 if active else 0, team_id),
        )
        return cur.rowcount > 0


def _team(row):
    team = dict(row)
    team["active"] = bool(team["active"])
    return team


def get_team_summary(team_id):
    """Per service: SLA count and the team's checks over the last 10 rounds."""
    with _session() as conn:
        names = [
            r[0] for r in conn.execute(
                "SELECT DISTINCT service_name FROM service_check WHERE team_id = ? ORDER BY service_name",
                (team_id,),
            )
        ]
        recent = [
            dict(r) for r in conn.execute("SELECT * FROM round ORDER BY id DESC LIMIT 10")
        ]
        summaries = []
        for name in names:
            sla_count = conn.execute(
                "SELECT COUNT(*) FROM sla WHERE team_id = ? AND service_name = ?",
                (team_id, name),
            ).fetchone()[0]
            last_rounds = []
            for rnd in recent:
                checks = conn.execute(
                    """SELECT * FROM service_check
                       WHERE round_id = ? AND team_id = ? AND service_name = ?""",
                    (rnd["id"], team_id, name),
                ).fetchall()
                last_rounds.append({**rnd, "checks": [_check(c) for c in checks]})
            summaries.append({"service_name": name, "sla_count": sla_count, "last_10_rounds": last_rounds})
        return summaries


def get_team_score(team_id):
    """(service points from passed checks, SLA count, SLA penalty points)."""
    with _session() as conn:
        points = conn.execute(
            "SELECT COALESCE(SUM(points), 0) FROM service_check WHERE team_id = ? AND result = 1",
            (team_id,),
        ).fetchone()[0]
        row = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(penalty), 0) FROM sla WHERE team_id = ?",
            (team_id,),
        ).fetchone()
        return points, row[0], row[1]


# ---------------------------------------------------------------------------
# Service checks
# ---------------------------------------------------------------------------

def _check(row):
    check = dict(row)
    check["result"] = bool(check["result"])
    return check


def get_service_all_checks_by_team(team_id, service_name):
    """Every check of one team's service, newest round first."""
    with _session() as conn:
        rows = conn.execute(
            """SELECT sc.*, r.start_time
               FROM service_check sc JOIN round r ON r.id = sc.round_id
               WHERE sc.team_id = ? AND sc.service_name = ?
               ORDER BY sc.round_id DESC""",
            (team_id, service_name),
        ).fetchall()
        return [_check(r) for r in rows]


def get_service_check_sum_by_team():
    """{team_id: points from passed checks}."""
    with _session() as conn:
        rows = conn.execute(
            """SELECT team_id, SUM(points) AS total
               FROM service_check WHERE result = 1
               GROUP BY team_id"""
        ).fetchall()
        return {r["team_id"]: r["total"] for r in rows}


def get_service_check_sum_by_round():
    """
    Running score per round: element i is {team_id: cumulative points}
    after round i + 1, SLA penalties subtracted.
    """
    last = get_last_round()
    if last is None:
        return []
    totals = [{} for _ in range(last["id"])]
    for row in get_cumulative_scores():
        idx = row["round_id"] - 1
        if 0 <= idx < len(totals):
            totals[idx][row["team_id"]] = row["cumulative_points"]
    return totals


def get_service_scores():
    """Points, SLA violations and penalty per (team, service)."""
    with _session() as conn:
        rows = conn.execute("""
            SELECT sc.team_id, sc.service_name,
                   SUM(CASE WHEN sc.result = 1 THEN sc.points ELSE 0 END) AS points,
                   COALESCE(s.violations, 0) AS violations,
                   COALESCE(s.penalty, 0)    AS penalty
            FROM service_check sc
            LEFT JOIN (
                SELECT team_id, service_name, COUNT(*) AS violations, SUM(penalty) AS penalty
                FROM sla GROUP BY team_id, service_name
            ) s ON s.team_id = sc.team_id AND s.service_name = sc.service_name
            GROUP BY sc.team_id, sc.service_name
            ORDER BY sc.team_id, sc.service_name
        """).fetchall()
        return [dict(r) for r in rows]


def get_cumulative_scores():
    with _session() as conn:
        rows = conn.execute(
            "SELECT * FROM cumulative_scores ORDER BY round_id, team_id"
        ).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Per-team service enable overlay
# ---------------------------------------------------------------------------

def is_team_service_enabled(team_id, service_name):
    with _session() as conn:
        row = conn.execute(
            "SELECT enabled FROM team_service_check WHERE team_id = ? AND service_name = ?",
            (team_id, service_name),
        ).fetchone()
        return True if row is None else bool(row["enabled"])


def set_team_service_enabled(team_id, service_name, enabled):
    with _session() as conn:
        conn.execute(
            """INSERT INTO team_service_check (team_id, service_name, enabled)
               VALUES (?, ?, ?)
               ON CONFLICT (team_id, service_name) DO UPDATE SET enabled = excluded.enabled""",
            (team_id, service_name, 1 if enabled else 0),
        )


def get_all_team_service_checks():
    with _session() as conn:
        rows = conn.execute("SELECT * FROM team_service_check ORDER BY team_id, service_name").fetchall()
        return [{**dict(r), "enabled": bool(r["enabled"])} for r in rows]


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def refresh_scores():
    """Rebuild cumulative_scores in one transaction; WAL readers keep the old rows until commit."""
    with _session(immediate=True) as conn:
        conn.execute("DELETE FROM cumulative_scores")
        conn.execute("""
            INSERT INTO cumulative_scores (round_id, team_id, cumulative_points)
            SELECT r.id, t.team_id,
                   SUM(COALESCE(p.points, 0) - COALESCE(s.penalty, 0))
                       OVER (PARTITION BY t.team_id ORDER BY r.id)
            FROM round r
            CROSS JOIN (SELECT DISTINCT team_id FROM service_check) t
            LEFT JOIN (
                SELECT round_id, team_id, SUM(points) AS points
                FROM service_check WHERE result = 1
                GROUP BY round_id, team_id
            ) p ON p.round_id = r.id AND p.team_id = t.team_id
            LEFT JOIN (
                SELECT round_id, team_id, SUM(penalty) AS penalty
                FROM sla GROUP BY round_id, team_id
            ) s ON s.round_id = r.id AND s.team_id = t.team_id
        """)


def reset_scores():
    """Drop every round-scoped row and empty the score table."""
    with _session(immediate=True) as conn:
        conn.execute("DELETE FROM service_check")
        conn.execute("DELETE FROM sla")
        conn.execute("DELETE FROM round")
        conn.execute("DELETE FROM cumulative_scores")
    log.info("Round data truncated")


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def seed_original_credentials(credlist_name, rows):
    """rows: iterable of (username, password). Existing users are left alone."""
    with _session() as conn:
        conn.executemany(
            """INSERT OR IGNORE INTO original_credential (credlist_name, username, password)
               VALUES (?, ?, ?)""",
            [(credlist_name, u, p) for u, p in rows],
        )


def seed_team_credentials(team_id):
    """Copy every original credential the team doesn't have yet."""
    with _session() as conn:
        conn.execute(
            """INSERT OR IGNORE INTO credential (team_id, credlist_name, username, password, updated_at)
               SELECT ?, credlist_name, username, password, ? FROM original_credential""",
            (team_id, _now()),
        )


def get_team_credentials(team_id, credlist_name):
    """[(username, password)] for one team's credlist."""
    with _session() as conn:
        rows = conn.execute(
            """SELECT username, password FROM credential
               WHERE team_id = ? AND credlist_name = ? ORDER BY id""",
            (team_id, credlist_name),
        ).fetchall()
        return [(r["username"], r["password"]) for r in rows]


def get_credlist_usernames(credlist_name):
    with _session() as conn:
        rows = conn.execute(
            "SELECT username FROM original_credential WHERE credlist_name = ? ORDER BY id",
            (credlist_name,),
        ).fetchall()
        return [r["username"] for r in rows]


def update_credential(team_id, credlist_name, username, new_password, changed_by):
    """Change one password and record it in pcr_history. False if the user is unknown."""
    with _session() as conn:
        row = conn.execute(
            """SELECT id, password FROM credential
               WHERE team_id = ? AND credlist_name = ? AND username = ?""",
            (team_id, credlist_name, username),
        ).fetchone()
        if row is None:
            return False
        now = _now()
        conn.execute(
            "UPDATE credential SET password = ?, updated_at = ? WHERE id = ?",
            (new_password, now, row["id"]),
        )
        conn.execute(
            """INSERT INTO pcr_history
               (team_id, credlist_name, username, old_password, new_password, changed_by, changed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (team_id, credlist_name, username, row["password"], new_password, changed_by, now),
        )
        return True


def reset_team_credlist(team_id, credlist_name, changed_by):
    """Restore a team's credlist to the seeded passwords. Returns how many changed."""
    with _session() as conn:
        rows = conn.execute(
            """SELECT c.id, c.username, c.password AS current, o.password AS original
               FROM credential c
               JOIN original_credential o
                 ON o.credlist_name = c.credlist_name AND o.username = c.username
               WHERE c.team_id = ? AND c.credlist_name = ?""",
            (team_id, credlist_name),
        ).fetchall()
        now = _now()
        changed = 0
        for r in rows:
            if r["current"] == r["original"]:
                continue
            conn.execute(
                "UPDATE credential SET password = ?, updated_at = ? WHERE id = ?",
                (r["original"], now, r["id"]),
            )
            conn.execute(
                """INSERT INTO pcr_history
                   (team_id, credlist_name, username, old_password, new_password, changed_by, changed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (team_id, credlist_name, r["username"], r["current"], r["original"], changed_by, now),
            )
            changed += 1
        return changed


def get_pcr_history(team_id):
    with _session() as conn:
        rows = conn.execute(
            "SELECT * FROM pcr_history WHERE team_id = ? ORDER BY id", (team_id,)
        ).fetchall()
        return [dict(r) for r in rows]
