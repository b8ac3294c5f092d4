# localman/forwarder.py
import ipaddress
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import requests

from .errors import ForwardError
from .utils.broker import CapturedCall

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# never copied from the inbound call; requests sets its own
_DROPPED_HEADERS = {
    "host", "content-length", "connection", "keep-alive", "transfer-encoding",
    "te", "trailer", "upgrade", "proxy-connection", "accept-encoding",
}

@dataclass
class ForwardResult:
    success: bool
    status_code: Optional[int]
    response_body: str
    duration_ms: float
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True

def resolve_target(target_url: str, loopback: bool = True) -> Tuple[str, str]:
    """Return (connect_url, host_header) for a relay target.

    With ``loopback`` on, plain-http targets on a named host are dialled on
    127.0.0.1 while the Host header keeps the original name, so local
    virtual hosts (``myapp.test``) route without any DNS entry.
    """
    parts = urlsplit(target_url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ForwardError(f"Invalid relay target URL: {target_url!r}")

    host_header = parts.netloc.rsplit("@", 1)[-1]
    hostname = parts.hostname
    if not loopback or parts.scheme != "http" or hostname == "localhost" or _is_ip(hostname):
        return target_url, host_header

    netloc = "127.0.0.1" if parts.port is None else f"127.0.0.1:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment)), host_header

def build_body(call: CapturedCall):
    method = call.method.upper()
    if method not in BODY_METHODS:
        return None
    body = call.body
    if body is None or body == "" or body == b"":
        return None
    if isinstance(body, str):
        return body.encode("utf-8")
    if isinstance(body, bytes):
        return body
    # structured or scalar JSON (objects, arrays, numbers, booleans)
    return json.dumps(body).encode("utf-8")

def build_headers(call: CapturedCall, host_header: str) -> dict:
    headers = {k: v for k, v in call.headers.items() if k.lower() not in _DROPPED_HEADERS}
    headers["Host"] = host_header
    headers["Accept-Encoding"] = "gzip, deflate"
    return headers

class Forwarder:
    def __init__(self, timeout: float = 30, resolve_loopback: bool = True, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.resolve_loopback = resolve_loopback
        self.session = session or requests.Session()

    def forward(self, call: CapturedCall, target_url: str) -> ForwardResult:
        start = time.perf_counter()
        try:
            url, host_header = resolve_target(target_url, self.resolve_loopback)
            resp = self.session.request(
                call.method.upper(),
                url,
                headers=build_headers(call, host_header),
                data=build_body(call),
                timeout=self.timeout,
                allow_redirects=True,
            )
        except (ForwardError, requests.RequestException, TypeError, ValueError, UnicodeError) as e:
            # bad target, transport failure, or a call that cannot go on the wire
            duration = _elapsed_ms(start)
            logger.warning("Forward of %s to %s failed: %s", call.webhook_call_uuid, target_url, e)
            return ForwardResult(False, None, "", duration, str(e))

        duration = _elapsed_ms(start)
        if 200 <= resp.status_code < 300:
            logger.info("Relayed %s to %s (%s, %sms)", call.webhook_call_uuid, target_url, resp.status_code, duration)
            return ForwardResult(True, resp.status_code, resp.text, duration)

        logger.warning("Target %s answered %s for %s", target_url, resp.status_code, call.webhook_call_uuid)
        return ForwardResult(False, resp.status_code, resp.text, duration, f"HTTP {resp.status_code}")

def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
