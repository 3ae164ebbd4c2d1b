"""LDAP probe: simple bind as user@domain against the team's directory."""

import ssl
from dataclasses import dataclass

import ldap3
from ldap3.core.exceptions import LDAPException

from ccdc_scoring.checks.base import Service


@dataclass
class Ldap(Service):
    domain: str = ""
    encrypted: bool = False

    service_type = "Ldap"
    default_port = 636

    def validate(self):
        if len(self.domain.split(".")) != 2:
            raise ValueError("configured domain is not valid (needs to be domain and tld)")

    def check(self, target, team_identifier, round_id):
        username, password = self.pick_credentials()
        auth_string = f"{username}@{self.domain}"

        tls = ldap3.Tls(validate=ssl.CERT_NONE) if self.encrypted else None
        server = ldap3.Server(
            target,
            port=self.port,
            use_ssl=self.encrypted,
            tls=tls,
            connect_timeout=self.timeout,
            get_info=ldap3.NONE,
        )
        conn = ldap3.Connection(
            server,
            user=auth_string,
            password=password,
            receive_timeout=self.timeout,
            raise_exceptions=False,
        )
        try:
            try:
                conn.open()
            except LDAPException as e:
                return self.fail(
                    "failed to connect",
                    f"login {username} password {password} failed with error: {e}",
                )
            try:
                bound = conn.bind()
            except LDAPException as e:
                bound = False
                conn.last_error = str(e)
            if not bound:
                return self.fail(
                    f"login failed for {username}",
                    f"auth string {auth_string}, login {username} password {password} "
                    f"failed with error: {conn.last_error or conn.result}",
                )
            return self.ok(f"login successful for username {username} password {password}")
        finally:
            conn.unbind()
