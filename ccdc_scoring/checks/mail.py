"""
Mail probes: SMTP delivery, IMAP mailbox listing and POP3 mailbox stat.
IMAP and POP3 only prove the greeting when no credlists are configured.
"""

import imaplib
import poplib
import secrets
import smtplib
import socket
import ssl
from dataclasses import dataclass

from ccdc_scoring.checks.base import Service

_INSECURE_TLS = ssl.create_default_context()
_INSECURE_TLS.check_hostname = False
_INSECURE_TLS.verify_mode = ssl.CERT_NONE


def random_message():
    """Unpredictable subject/body so a server can't accept one canned message."""
    return secrets.token_hex(8), secrets.token_hex(32)


@dataclass
class Smtp(Service):
    encrypted: bool = False
    domain: str = ""
    require_auth: bool = False

    service_type = "Smtp"
    default_port = 25

    def check(self, target, team_identifier, round_id):
        username, password = self.pick_credentials()
        to_user, _ = self.pick_credentials()
        sender = username + self.domain
        recipient = to_user + self.domain
        subject, body = random_message()
        message = f"Subject: {subject}\n\n{body}\n\n"

        try:
            if self.encrypted:
                client = smtplib.SMTP_SSL(target, self.port, timeout=self.timeout, context=_INSECURE_TLS)
            else:
                client = smtplib.SMTP(target, self.port, timeout=self.timeout)
        except (smtplib.SMTPException, OSError) as e:
            return self.fail("connection to server failed", str(e))

        try:
            client.ehlo_or_helo_if_needed()
            if self.credlists and (self.require_auth or client.has_extn("auth")):
                try:
                    client.login(sender, password)
                except smtplib.SMTPException as e:
                    return self.fail(f"login failed for {sender}:{password}", str(e))
            try:
                client.mail(sender)
            except smtplib.SMTPException as e:
                return self.fail("setting sender failed", str(e))
            code, reply = client.rcpt(recipient)
            if code not in (250, 251):
                return self.fail("setting receiver failed", f"{code} {reply.decode(errors='replace')}")
            code, reply = client.data(message)
            if code != 250:
                return self.fail("writing message failed", f"{code} {reply.decode(errors='replace')}")
        except socket.timeout:
            return self.fail("connection to server failed", "smtp session timed out")
        except (smtplib.SMTPException, OSError) as e:
            return self.fail("smtp session failed", str(e))
        finally:
            try:
                client.quit()
            except (smtplib.SMTPException, OSError):
                client.close()

        return self.ok(f"successfully wrote '{message}' to {recipient} from {sender}")


@dataclass
class Imap(Service):
    domain: str = ""
    encrypted: bool = False

    service_type = "Imap"
    default_port = 143

    def check(self, target, team_identifier, round_id):
        try:
            if self.encrypted:
                client = imaplib.IMAP4_SSL(target, self.port, ssl_context=_INSECURE_TLS, timeout=self.timeout)
            else:
                client = imaplib.IMAP4(target, self.port, timeout=self.timeout)
        except (imaplib.IMAP4.error, OSError) as e:
            return self.fail("connection to server failed", str(e))

        try:
            if not self.credlists:
                return self.ok("imap server responded to request (anonymous)")

            username, password = self.pick_credentials()
            username += self.domain
            try:
                client.login(username, password)
            except imaplib.IMAP4.error as e:
                return self.fail("login failed", f"creds {username}:{password}, error: {e}")

            typ, data = client.list()
            if typ != "OK":
                return self.fail("listing mailboxes failed", repr(data))
            return self.ok(f"mailbox listed successfully with creds {username}:{password}")
        except (imaplib.IMAP4.error, OSError) as e:
            return self.fail("listing mailboxes failed", str(e))
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError):
                client.shutdown()


@dataclass
class Pop3(Service):
    domain: str = ""
    encrypted: bool = False

    service_type = "Pop3"
    default_port = 110

    def check(self, target, team_identifier, round_id):
        try:
            if self.encrypted:
                client = poplib.POP3_SSL(target, self.port, timeout=self.timeout, context=_INSECURE_TLS)
            else:
                client = poplib.POP3(target, self.port, timeout=self.timeout)
        except (poplib.error_proto, OSError) as e:
            return self.fail("connection to server failed", str(e))

        try:
            if not self.credlists:
                return self.ok("pop3 server responded to request (anonymous)")

            username, password = self.pick_credentials()
            username += self.domain
            try:
                client.user(username)
                client.pass_(password)
            except poplib.error_proto as e:
                return self.fail("login failed", f"creds {username}:{password}, error: {e}")

            count, size = client.stat()
            return self.ok(
                f"mailbox listed successfully with creds {username}:{password} ({count} messages, {size} bytes)"
            )
        except (poplib.error_proto, OSError) as e:
            return self.fail("listing mailboxes failed", str(e))
        finally:
            try:
                client.quit()
            except (poplib.error_proto, OSError):
                client.close()
