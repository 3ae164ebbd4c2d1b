"""
Team credentials (credlists) and password change requests.

Credlist CSV files (username,password per line) are seeded once into the
originals table and copied into every team's own set. PCR edits and the
scheduler's per-round snapshot take the same per-team lock, so a round
never sees half of a PCR.
"""

import csv
import logging
import os
import threading

from ccdc_scoring import database
from ccdc_scoring.tasks import Credential

log = logging.getLogger("scoring.credentials")


def read_credlist(path):
    """[(username, password)] from a credlist CSV file."""
    rows = []
    with open(path, newline="", encoding="utf-8") as f:
        for lineno, record in enumerate(csv.reader(f), start=1):
            if not record:
                continue
            if len(record) != 2:
                raise ValueError(f"invalid credlist format in {path} line {lineno}")
            rows.append((record[0], record[1]))
    return rows


class CredentialStore:
    def __init__(self, config):
        self.config = config
        self._locks = {}
        self._locks_guard = threading.Lock()

    def lock(self, team_id):
        with self._locks_guard:
            return self._locks.setdefault(team_id, threading.Lock())

    def _declared(self, credlist):
        return any(c.credlist_path == credlist for c in self.config.credlists)

    def load(self):
        """Seed originals from the credlist files, then every team that lacks a copy."""
        for credlist in self.config.credlists:
            path = os.path.join(self.config.credlist_dir, credlist.credlist_path)
            rows = read_credlist(path)
            database.seed_original_credentials(credlist.credlist_path, rows)
            log.info("Loaded credlist %s (%d users)", credlist.credlist_path, len(rows))
        for team in database.get_teams():
            with self.lock(team["id"]):
                database.seed_team_credentials(team["id"])

    def snapshot(self, team_id, credlists):
        """Copy of the team's credentials for the given credlists."""
        creds = []
        with self.lock(team_id):
            for credlist in credlists:
                creds.extend(
                    Credential(username, password)
                    for username, password in database.get_team_credentials(team_id, credlist)
                )
        return creds

    def update_credentials(self, team_id, credlist, usernames, passwords, changed_by):
        """Apply a PCR. Unknown usernames are skipped. Returns how many were updated."""
        if not self._declared(credlist):
            raise ValueError(f"invalid credlist name {credlist!r}")
        if len(usernames) != len(passwords):
            raise ValueError("mismatched usernames and passwords")

        updated = 0
        with self.lock(team_id):
            for username, password in zip(usernames, passwords):
                if database.update_credential(team_id, credlist, username, password, changed_by):
                    updated += 1
                else:
                    log.debug("username %s not in credlist %s, skipping", username, credlist)
        log.info("PCR for team %d on %s: %d updated by %s", team_id, credlist, updated, changed_by)
        return updated

    def reset_team_credlist(self, team_id, credlist, changed_by):
        if not self._declared(credlist):
            raise ValueError(f"invalid credlist name {credlist!r}")
        with self.lock(team_id):
            return database.reset_team_credlist(team_id, credlist, changed_by)

    def get_credlists(self):
        return [
            {
                "name": c.credlist_name,
                "path": c.credlist_path,
                "usernames": database.get_credlist_usernames(c.credlist_path),
                "example": c.credlist_explain_text,
            }
            for c in self.config.credlists
        ]
