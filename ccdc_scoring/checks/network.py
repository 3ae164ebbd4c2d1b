"""
Connection-level probes: TCP, ICMP ping, RDP and VNC handshakes.
These do not authenticate; they verify the service answers with the
protocol it claims to speak.
"""

import re
import socket
import struct
import subprocess
from dataclasses import dataclass

from ccdc_scoring.checks.base import Service


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError(f"connection closed after {len(data)} of {size} bytes")
        data += chunk
    return data


@dataclass
class Tcp(Service):
    service_type = "Tcp"
    requires_port = True

    def check(self, target, team_identifier, round_id):
        try:
            with socket.create_connection((target, self.port), timeout=self.timeout):
                return self.ok("responded to request")
        except socket.timeout:
            return self.fail("connection error", "connection timed out")
        except OSError as e:
            return self.fail("connection error", str(e))


@dataclass
class Ping(Service):
    count: int = 0
    allow_packet_loss: bool = False
    percent: int = 0

    service_type = "Ping"

    def validate(self):
        if not self.count:
            self.count = 1
        if not 0 <= self.percent <= 100:
            raise ValueError("ping percent must be between 0 and 100")

    def check(self, target, team_identifier, round_id):
        command = ["ping", "-c", str(self.count), "-W", str(self.timeout), target]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout * self.count + 1,
                check=False,
            )
        except FileNotFoundError:
            return self.fail("ping creation failed", "ping command not available")
        except subprocess.TimeoutExpired:
            return self.fail("ping failed", f"no answer within {self.timeout}s")

        output = "\n".join([completed.stdout, completed.stderr]).strip()
        summary = re.search(r"(\d+) packets transmitted, (\d+) (?:packets )?received", output)
        loss_match = re.search(r"([\d.]+)% packet loss", output)
        if not summary or not loss_match:
            return self.fail("ping failed", output[:200] or f"ping exited with {completed.returncode}")

        sent, received = int(summary.group(1)), int(summary.group(2))
        loss = float(loss_match.group(1))
        if self.allow_packet_loss:
            if loss >= self.percent:
                return self.fail(
                    "not enough pings succeeded",
                    f"packet loss of {loss:.0f}% higher than limit of {self.percent}%",
                )
        elif received != self.count:
            return self.fail("not all pings succeeded", f"packet loss of {loss:.0f}%")
        return self.ok(f"{received}/{sent} echo replies")


# TPKT + X.224 Connection Request + RDP_NEG_REQ asking for TLS or CredSSP
_RDP_CONNECTION_REQUEST = bytes.fromhex("03000013 0ee00000000000 0100080003000000")


@dataclass
class Rdp(Service):
    service_type = "Rdp"
    default_port = 3389

    def check(self, target, team_identifier, round_id):
        try:
            with socket.create_connection((target, self.port), timeout=self.timeout) as s:
                s.settimeout(self.timeout)
                s.sendall(_RDP_CONNECTION_REQUEST)
                header = _recv_exact(s, 4)
                if header[0] != 0x03:
                    return self.fail("rdp connection failed", f"not a TPKT header: {header.hex()}")
                length = struct.unpack(">H", header[2:4])[0]
                body = _recv_exact(s, max(length - 4, 0))
        except socket.timeout:
            return self.fail("rdp connection timeout", f"connection timed out after {self.timeout} seconds")
        except OSError as e:
            return self.fail("connection error", str(e))

        # body[1] is the X.224 TPDU code, 0xd0 = Connection Confirm
        if len(body) < 2 or body[1] & 0xF0 != 0xD0:
            return self.fail("rdp connection failed", f"unexpected X.224 reply: {body.hex()}")
        if len(body) >= 15 and body[7] == 0x03:
            code = struct.unpack("<I", body[11:15])[0]
            return self.fail("rdp negotiation failed", f"server returned failure code {code}")
        return self.ok("X.224 connection confirmed")


@dataclass
class Vnc(Service):
    service_type = "Vnc"
    default_port = 5900

    def check(self, target, team_identifier, round_id):
        try:
            with socket.create_connection((target, self.port), timeout=self.timeout) as s:
                s.settimeout(self.timeout)
                banner = _recv_exact(s, 12)
                match = re.match(rb"RFB (\d{3})\.(\d{3})\n", banner)
                if not match:
                    return self.fail("connection to vnc server failed", f"bad protocol banner {banner!r}")
                version = (int(match.group(1)), int(match.group(2)))
                reply = min(version, (3, 8))
                s.sendall(b"RFB %03d.%03d\n" % reply)

                if reply >= (3, 7):
                    count = _recv_exact(s, 1)[0]
                    if count == 0:
                        reason_len = struct.unpack(">I", _recv_exact(s, 4))[0]
                        reason = _recv_exact(s, reason_len).decode("utf-8", errors="replace")
                        return self.fail("vnc server refused connection", reason)
                    types = list(_recv_exact(s, count))
                else:
                    types = [struct.unpack(">I", _recv_exact(s, 4))[0]]
        except socket.timeout:
            return self.fail("connection to vnc server failed", "connection timed out")
        except OSError as e:
            return self.fail("connection to vnc server failed", str(e))

        return self.ok(f"RFB {version[0]}.{version[1]} offered security types {types}")
