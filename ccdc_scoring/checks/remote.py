"""
Remote execution probes: SSH (paramiko), WinRM (pywinrm) and Custom,
which runs an operator-supplied shell command on the worker host.
"""

import logging
import random
import re
import shlex
import socket
import subprocess
import uuid
from dataclasses import dataclass, field

import paramiko
import requests
import winrm
import winrm.exceptions

from ccdc_scoring.checks.base import Service

log = logging.getLogger("scoring.checks")


@dataclass
class CommandData:
    command: str = ""
    output: str = ""
    use_regex: bool = False
    contains: bool = False


def _validate_commands(service):
    for c in service.command:
        if not c.command:
            raise ValueError(f"{service.name} has a command entry without a command")
        if c.use_regex:
            re.compile(c.output)


# ---------------------------------------------------------------------------
# SSH
# ---------------------------------------------------------------------------

@dataclass
class Ssh(Service):
    priv_key: str = ""
    bad_attempts: int = 0
    command: list = field(default_factory=list)

    service_type = "Ssh"
    default_port = 22
    nested = {"command": CommandData}

    def validate(self):
        if self.priv_key and self.bad_attempts:
            raise ValueError("cannot use both private key and bad attempts")
        if self.bad_attempts < 0:
            raise ValueError("bad attempts must not be negative")
        _validate_commands(self)

    def _connect(self, target, username, password=None, pkey=None):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                target,
                port=self.port,
                username=username,
                password=password,
                pkey=pkey,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except BaseException:
            # a failed auth leaves the transport thread and socket running
            client.close()
            raise
        return client

    def check(self, target, team_identifier, round_id):
        username, password = self.pick_credentials()

        pkey = None
        if self.priv_key:
            try:
                pkey = paramiko.PKey.from_path(self.priv_key)
            except OSError as e:
                return self.fail("error opening private key", str(e))
            except paramiko.SSHException as e:
                return self.fail("error parsing private key", str(e))

        for _ in range(self.bad_attempts):
            try:
                self._connect(target, username, password=str(uuid.uuid4())).close()
            except (paramiko.SSHException, OSError) as e:
                log.debug("bad ssh attempt against %s: %s", target, e)

        try:
            client = self._connect(target, username, password=None if pkey else password, pkey=pkey)
        except (paramiko.SSHException, OSError) as e:
            if self.priv_key:
                return self.fail(f"error logging in to ssh server with private key {self.priv_key}", f"error: {e}")
            return self.fail(f"error logging in to ssh server for creds {username}:{password}", f"error: {e}")

        try:
            if not self.command:
                return self.ok(f"creds used were {username}:{password}")

            c = random.choice(self.command)
            try:
                _, stdout, stderr = client.exec_command(c.command, timeout=self.timeout)
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
            except socket.timeout:
                return self.fail("command timed out", f"'{c.command}' produced no output within {self.timeout}s")
            except paramiko.SSHException as e:
                return self.fail("unable to create ssh session", str(e))

            if c.contains:
                if c.output not in out:
                    return self.fail(
                        "command output didn't contain string",
                        f"command output of '{c.command}' didn't contain string '{c.output}': {out}, {err}",
                    )
            elif c.use_regex:
                if not re.search(c.output, out):
                    return self.fail(
                        "command output didn't match regex",
                        f"command output '{c.command}' didn't match regex '{c.output}'",
                    )
            elif err:
                return self.fail("command returned an error", f"command stderr was not empty: {err}")
            return self.ok(f"creds used were {username}:{password}")
        finally:
            client.close()


# ---------------------------------------------------------------------------
# WinRM
# ---------------------------------------------------------------------------

@dataclass
class WinRM(Service):
    encrypted: bool = False
    bad_attempts: int = 0
    command: list = field(default_factory=list)

    service_type = "WinRM"
    nested = {"command": CommandData}

    def validate(self):
        if not self.port:
            self.port = 443 if self.encrypted else 80
        if self.bad_attempts < 0:
            raise ValueError("bad attempts must not be negative")
        _validate_commands(self)

    def _session(self, target, username, password):
        scheme = "https" if self.encrypted else "http"
        return winrm.Session(
            f"{scheme}://{target}:{self.port}/wsman",
            auth=(username, password),
            transport="ntlm",
            server_cert_validation="ignore",
            operation_timeout_sec=self.timeout,
            read_timeout_sec=self.timeout + 1,
        )

    def check(self, target, team_identifier, round_id):
        username, password = self.pick_credentials()

        for _ in range(self.bad_attempts):
            try:
                self._session(target, username, str(uuid.uuid4())).run_cmd("hostname")
            except (winrm.exceptions.WinRMError, requests.RequestException) as e:
                log.debug("bad winrm attempt against %s: %s", target, e)

        session = self._session(target, username, password)
        c = random.choice(self.command) if self.command else CommandData(command="hostname")
        try:
            response = session.run_ps(c.command)
        except (winrm.exceptions.WinRMError, requests.RequestException) as e:
            return self.fail(f"failed with creds {username}:{password}", str(e))

        output = response.std_out.decode("utf-8", errors="replace")
        errors = response.std_err.decode("utf-8", errors="replace")
        if errors.strip():
            return self.fail("command produced an error message", f"error: {errors}")

        if c.output:
            if c.use_regex:
                if not re.search(c.output, output):
                    return self.fail(
                        "command output didn't match regex",
                        f"command output '{c.command}' didn't match regex '{c.output}'",
                    )
            elif output.strip() != c.output:
                return self.fail(
                    "command output didn't match string",
                    f"command output of '{c.command}' didn't match string '{c.output}'",
                )
        return self.ok(f"creds used were {username}:{password}")


# ---------------------------------------------------------------------------
# Custom
# ---------------------------------------------------------------------------

@dataclass
class Custom(Service):
    command: str = ""
    regex: str = ""

    service_type = "Custom"

    def validate(self):
        if not self.command:
            raise ValueError(f"no command found for custom check {self.name}")
        if self.regex:
            re.compile(self.regex)

    def build_command(self, target, team_identifier, round_id, username="", password=""):
        formed = self.command.replace("ROUND", str(round_id))
        formed = formed.replace("TARGET", target)
        formed = formed.replace("TEAMIDENTIFIER", team_identifier)
        formed = formed.replace("USERNAME", shlex.quote(username))
        return formed.replace("PASSWORD", shlex.quote(password))

    def check(self, target, team_identifier, round_id):
        username = password = ""
        if self.credlists:
            username, password = self.pick_credentials()

        formed = self.build_command(target, team_identifier, round_id, username, password)
        log.debug("custom check command: %s", formed)

        try:
            completed = subprocess.run(
                ["/bin/sh", "-c", formed],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return self.fail("command timed out", f"{formed}\nno exit within {self.timeout}s")
        except OSError as e:
            return self.fail("command could not be started", f"{formed}\n{e}")

        out = completed.stdout.decode("utf-8", errors="replace")
        if completed.returncode != 0:
            return self.fail(
                f"command returned error:\nexit status {completed.returncode}",
                f"{formed}\noutput:\n{out}",
            )
        if self.regex:
            if not re.search(self.regex, out):
                return self.fail("output incorrect", f'{formed} couldn\'t find regex "{self.regex}" in {out}')
            return self.ok(f'{formed} found regex "{self.regex}" in {out}')
        return self.ok(f"{formed} {out}")
