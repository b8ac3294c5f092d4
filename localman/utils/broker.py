# localman/utils/broker.py
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from ..errors import RemoteError

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RELAYED = "relayed"

# envelope keys seen on list responses, checked in order
_LIST_ENVELOPE_KEYS = ("data", "calls", "items", "results")

@dataclass
class CapturedCall:
    webhook_call_uuid: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = ""
    ip: str = ""
    user_agent: str = ""
    status: str = STATUS_PENDING
    created_at: Optional[str] = None

    @property
    def is_relayed(self) -> bool:
        return self.status == STATUS_RELAYED

    def request_dict(self) -> dict:
        return {
            "method": self.method,
            "headers": dict(self.headers),
            "body": self.body,
            "ip": self.ip,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_payload(cls, item: dict) -> "CapturedCall":
        call_uuid = item.get("webhook_call_uuid") or item.get("uuid") or item.get("id")
        if not call_uuid:
            raise ValueError("call without uuid")
        headers = _normalize_headers(item.get("headers"))
        user_agent = item.get("user_agent")
        if user_agent is None:
            user_agent = next((v for k, v in headers.items() if k.lower() == "user-agent"), "")
        body = item.get("body")
        if body is None:
            body = item.get("content", "")
        return cls(
            webhook_call_uuid=str(call_uuid),
            method=str(item.get("method") or "GET").upper(),
            headers=headers,
            body=body if body is not None else "",
            ip=item.get("ip") or "",
            user_agent=user_agent or "",
            status=str(item.get("status") or STATUS_PENDING).lower(),
            created_at=item.get("created_at"),
        )

    @classmethod
    def from_history(cls, entry: dict) -> "CapturedCall":
        """Rebuild the call recorded in a relay history entry."""
        request = entry.get("request") or {}
        return cls(
            webhook_call_uuid=entry["webhook_call_uuid"],
            method=request.get("method") or "GET",
            headers=dict(request.get("headers") or {}),
            body=request.get("body", ""),
            ip=request.get("ip") or "",
            user_agent=request.get("user_agent") or "",
        )

def _normalize_headers(raw) -> Dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, list):
        # [["Name", "value"], ...] or [{"name": .., "value": ..}, ...]
        pairs = []
        for item in raw:
            if isinstance(item, dict):
                pairs.append((item.get("name"), item.get("value")))
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                pairs.append((item[0], item[1]))
        raw = {k: v for k, v in pairs if k}
    headers = {}
    for name, value in raw.items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        headers[str(name)] = "" if value is None else str(value)
    return headers

def normalize_call_list(payload) -> List[dict]:
    """Accept a bare array or an enveloped list and return the raw items."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in _LIST_ENVELOPE_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict):
                # {"data": {"calls": [...]}}
                return normalize_call_list(value)
    raise RemoteError(None, "Unexpected call list response from broker")

def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason or "unknown error"
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                value = body[key]
                if isinstance(value, dict):
                    value = value.get("message") or str(value)
                return str(value)
    return resp.text

class BrokerClient:
    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, path: str, ok=(200,), **kwargs):
        if not self.base_url:
            raise RemoteError(None, "Broker URL is not configured")
        url = f"{self.base_url}{path}"
        logger.debug("%s %s params=%s", method, url, kwargs.get("params"))
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.Timeout:
            raise RemoteError(None, f"Broker timed out after {self.timeout}s")
        except requests.RequestException as e:
            raise RemoteError(None, str(e))

        if resp.status_code not in ok:
            message = _error_message(resp)
            logger.error("Broker %s %s failed: %s %s", method, path, resp.status_code, message)
            raise RemoteError(resp.status_code, message)
        return resp

    def _json(self, resp):
        try:
            return resp.json()
        except ValueError:
            raise RemoteError(resp.status_code, "Broker returned invalid JSON")

    def create_relay_endpoint(self) -> dict:
        resp = self._request("POST", "/api/webhooks", ok=(200, 201), json={})
        body = self._json(resp)
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if not isinstance(body, dict):
            raise RemoteError(resp.status_code, "Unexpected response from broker")
        webhook_uuid = body.get("webhook_uuid") or body.get("uuid")
        webhook_url = body.get("webhook_url") or body.get("url")
        if not webhook_uuid or not webhook_url:
            raise RemoteError(resp.status_code, "Broker response is missing the webhook uuid or url")
        logger.info("Created broker endpoint %s", webhook_uuid)
        return {"webhook_uuid": webhook_uuid, "webhook_url": webhook_url}

    def list_pending_calls(self, webhook_uuid: str, since: Optional[str] = None, limit: int = 50) -> List[CapturedCall]:
        params = {"limit": limit}
        if since:
            params["since"] = since
        resp = self._request("GET", f"/api/webhooks/{webhook_uuid}/calls", params=params)
        calls = []
        for item in normalize_call_list(self._json(resp))[:limit]:
            if not isinstance(item, dict):
                continue
            try:
                calls.append(CapturedCall.from_payload(item))
            except ValueError:
                logger.warning("Skipping malformed call from broker for %s: %r", webhook_uuid, item)
        return calls

    def mark_consumed(self, webhook_uuid: str, call_uuid: str) -> None:
        self._request("POST", f"/api/webhooks/{webhook_uuid}/calls/{call_uuid}/consume", ok=(200, 201, 204))
        logger.debug("Marked call %s consumed on %s", call_uuid, webhook_uuid)
