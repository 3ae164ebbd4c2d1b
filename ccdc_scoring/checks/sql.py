"""SQL probe: log in to the team's MySQL/MariaDB server and optionally run a query."""

import random
import re
from dataclasses import dataclass, field

import pymysql

from ccdc_scoring.checks.base import Service

SUPPORTED_KINDS = ("mysql",)


@dataclass
class QueryData:
    command: str = ""
    database: str = ""
    output: str = ""
    use_regex: bool = False


@dataclass
class Sql(Service):
    kind: str = "mysql"
    query: list = field(default_factory=list)

    service_type = "Sql"
    default_port = 3306
    nested = {"query": QueryData}

    def validate(self):
        self.kind = (self.kind or "mysql").lower()
        if self.kind not in SUPPORTED_KINDS:
            raise ValueError(f"sql kind {self.kind!r} is not one of {SUPPORTED_KINDS}")
        for q in self.query:
            if q.use_regex:
                re.compile(q.output)

    def check(self, target, team_identifier, round_id):
        username, password = self.pick_credentials()
        creds = f"{username}:{password}"
        q = random.choice(self.query) if self.query else QueryData()

        try:
            conn = pymysql.connect(
                host=target,
                port=self.port,
                user=username,
                password=password,
                database=q.database or None,
                connect_timeout=self.timeout,
                read_timeout=self.timeout,
                write_timeout=self.timeout,
            )
        except pymysql.MySQLError as e:
            return self.fail("db connection or login failed", f"{e}, creds {creds}")

        try:
            if not q.command:
                return self.ok(f"no query command specified, only checking connection. creds used were {creds}")

            try:
                with conn.cursor() as cursor:
                    cursor.execute(q.command)
                    rows = cursor.fetchall()
            except pymysql.MySQLError as e:
                return self.fail(f"could not query db with command {q.command}", str(e))

            if not q.output:
                return self.ok(f"ran query successfully and no output to check against. creds used were {creds}")

            for row in rows:
                if not row:
                    continue
                value = row[0]
                if isinstance(value, (bytes, bytearray)):
                    value = value.decode("utf-8", errors="replace")
                value = "" if value is None else str(value)
                if q.use_regex:
                    if re.search(q.output, value):
                        return self.ok(f"found regex match: {value}. creds used were {creds}")
                elif value.strip() == q.output:
                    return self.ok(f"found exact string match: {value}. creds used were {creds}")

            return self.fail("no matching output found for query", f"creds used were {creds}")
        finally:
            conn.close()
