"""
File service probes: FTP and SMB.

Both log in (anonymously / as guest when the check has no credlists),
optionally fetch one of the configured files and compare its content
against a regex or a sha256 hash.
"""

import ftplib
import io
import random
import re
import socket
from dataclasses import dataclass, field

from smb.base import NotConnectedError, NotReadyError, SMBTimeout
from smb.smb_structs import OperationFailure
from smb.SMBConnection import SMBConnection

from ccdc_scoring.checks.base import Service, string_hash

SMB_ERRORS = (NotConnectedError, NotReadyError, SMBTimeout, OperationFailure, OSError)


@dataclass
class RemoteFile:
    name: str = ""
    hash: str = ""
    regex: str = ""


def _validate_files(service):
    for f in service.file:
        if not f.name:
            raise ValueError(f"{service.service_type.lower()} file entry without a name")
        if f.regex and f.hash:
            raise ValueError(f"can't have both regex and hash for {service.service_type.lower()} file check")
        if f.regex:
            re.compile(f.regex)


def match_content(service, remote, content, creds):
    """Compare fetched content against the file's regex or hash."""
    if remote.regex:
        text = content.decode("utf-8", errors="replace")
        if not re.search(remote.regex, text):
            return service.fail("couldn't find regex in file", f'couldn\'t find regex "{remote.regex}" for {remote.name}')
        return service.ok(f"file {remote.name} matched regex, creds {creds}")
    if remote.hash:
        digest = string_hash(content)
        if digest.lower() != remote.hash.lower():
            return service.fail(
                "file hash did not match",
                f"file {remote.name} hash {digest} did not match specified hash {remote.hash}",
            )
        return service.ok(f"file {remote.name} matched hash, creds {creds}")
    return service.ok(f"file {remote.name} retrieval successful, creds {creds}")


# ---------------------------------------------------------------------------
# FTP
# ---------------------------------------------------------------------------

@dataclass
class Ftp(Service):
    file: list = field(default_factory=list)

    service_type = "Ftp"
    default_port = 21
    nested = {"file": RemoteFile}

    def validate(self):
        _validate_files(self)

    def check(self, target, team_identifier, round_id):
        if self.credlists:
            username, password = self.pick_credentials()
        else:
            username, password = "anonymous", "anonymous"
        creds = f"{username}:{password}"

        ftp = ftplib.FTP(timeout=self.timeout)
        try:
            ftp.connect(target, self.port, timeout=self.timeout)
        except (ftplib.Error, OSError) as e:
            return self.fail("ftp connection failed", str(e))

        try:
            try:
                ftp.login(username, password)
            except ftplib.error_perm as e:
                return self.fail("ftp login failed", f"creds used were {creds} with error {e}")

            if not self.file:
                return self.ok(f"creds used were {creds}")

            remote = random.choice(self.file)
            buf = io.BytesIO()
            try:
                ftp.retrbinary(f"RETR {remote.name}", buf.write)
            except ftplib.error_perm as e:
                return self.fail(f"failed to retrieve file {remote.name}", f"creds used were {creds} ({e})")
            return match_content(self, remote, buf.getvalue(), creds)
        except socket.timeout:
            return self.fail("ftp connection failed", "ftp session timed out")
        except (ftplib.Error, OSError) as e:
            return self.fail("ftp session failed", str(e))
        finally:
            try:
                ftp.quit()
            except (ftplib.Error, OSError):
                ftp.close()


# ---------------------------------------------------------------------------
# SMB
# ---------------------------------------------------------------------------

@dataclass
class Smb(Service):
    domain: str = ""
    share: str = ""
    file: list = field(default_factory=list)

    service_type = "Smb"
    default_port = 445
    nested = {"file": RemoteFile}

    def validate(self):
        _validate_files(self)
        if self.file and not self.share:
            raise ValueError("smb file checks need a share")

    def check(self, target, team_identifier, round_id):
        if self.credlists:
            username, password = self.pick_credentials()
        else:
            username, password = "guest", ""
        creds = f"{username}:{password}"

        conn = SMBConnection(
            username,
            password,
            "scoring",
            target,
            domain=self.domain,
            use_ntlm_v2=True,
            is_direct_tcp=True,
        )
        try:
            try:
                connected = conn.connect(target, self.port, timeout=self.timeout)
            except (socket.timeout, SMBTimeout):
                return self.fail("smb connection failed", f"no answer within {self.timeout}s")
            except SMB_ERRORS as e:
                return self.fail("smb connection failed", str(e))
            if not connected:
                debug = "authentication rejected" if not self.credlists else f"authentication rejected, creds {creds}"
                return self.fail("smb login failed", debug)

            if not self.file:
                return self.ok(f"smb login succeeded, creds {creds}")

            remote = random.choice(self.file)
            buf = io.BytesIO()
            try:
                conn.retrieveFile(self.share, remote.name, buf, timeout=self.timeout)
            except OperationFailure as e:
                return self.fail("failed to open file", f"creds {creds}, share {self.share}, file was {remote.name} ({e})")
            except SMB_ERRORS as e:
                return self.fail("failed to read file", f"creds {creds}, file was {remote.name} ({e})")
            return match_content(self, remote, buf.getvalue(), creds)
        finally:
            conn.close()
