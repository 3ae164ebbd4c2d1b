"""
Web probe: fetch one of the configured paths and compare the status code
and (optionally) a regex against the body.
"""

import random
import re
import socket
import ssl
import urllib.error
import urllib.request
from dataclasses import dataclass, field

from ccdc_scoring.checks.base import Service

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0 Safari/537.36",
]

# Competition boxes serve self-signed certificates
_INSECURE_TLS = ssl.create_default_context()
_INSECURE_TLS.check_hostname = False
_INSECURE_TLS.verify_mode = ssl.CERT_NONE


@dataclass
class UrlData:
    path: str = "/"
    status: int = 0
    regex: str = ""


@dataclass
class Web(Service):
    scheme: str = "http"
    url: list = field(default_factory=list)

    service_type = "Web"
    nested = {"url": UrlData}

    def validate(self):
        self.scheme = (self.scheme or "http").lower()
        if self.scheme not in ("http", "https"):
            raise ValueError(f"unsupported web scheme {self.scheme!r}")
        if not self.port:
            self.port = 443 if self.scheme == "https" else 80
        if not self.url:
            raise ValueError("no urls defined")
        for u in self.url:
            if not u.path:
                u.path = "/"
            if u.regex:
                re.compile(u.regex)

    def check(self, target, team_identifier, round_id):
        u = random.choice(self.url)
        request_url = f"{self.scheme}://{target}:{self.port}{u.path}"
        req = urllib.request.Request(request_url, headers={"User-Agent": random.choice(USER_AGENTS)})

        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=_INSECURE_TLS) as resp:
                status = resp.status
                body = resp.read()
        except urllib.error.HTTPError as e:
            # 4xx/5xx still carry a status the config may expect
            status = e.code
            body = e.read() or b""
        except urllib.error.URLError as e:
            if isinstance(e.reason, socket.timeout):
                return self.fail(
                    "web request errored out",
                    f"HTTP request to {request_url} timed out after {self.timeout}s",
                )
            return self.fail("web request errored out", f"{e.reason} for url {u.path}")
        except (socket.timeout, TimeoutError):
            return self.fail(
                "web request errored out",
                f"HTTP request to {request_url} timed out after {self.timeout}s",
            )
        except OSError as e:
            return self.fail("error reading page content", f"error was '{e}' for url {u.path}")

        if u.status and status != u.status:
            return self.fail(
                "status returned by webserver was incorrect",
                f"status was {status} wanted {u.status} for url {u.path}",
            )

        if u.regex:
            text = body.decode("utf-8", errors="replace")
            if not re.search(u.regex, text):
                return self.fail("didn't find regex on page", f'couldn\'t find regex "{u.regex}" for {u.path}')
            return self.ok(f'matched regex "{u.regex}" for {u.path}')

        return self.ok(f"HTTP {status} for {u.path} ({len(body)} bytes)")
