# localman/relays.py
import logging
from urllib.parse import urlsplit

from .errors import ConfigError
from .event_store import EventStore, Scope
from .models import Relay
from .settings_store import EDITABLE_FIELDS, SettingsStore
from .utils.broker import BrokerClient

logger = logging.getLogger(__name__)

_BOOL_FIELDS = ("capture_only", "enabled", "polling_enabled")

def _validate_target(url: str) -> str:
    url = (url or "").strip()
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigError(f"relay_to_url must be an http(s) URL, got {url!r}")
    return url

def _clean_fields(data: dict) -> dict:
    fields = {}
    for name in EDITABLE_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if name in _BOOL_FIELDS:
            if not isinstance(value, bool):
                raise ConfigError(f"{name} must be true or false")
        elif value is None:
            value = ""
        elif not isinstance(value, str):
            raise ConfigError(f"{name} must be a string")
        fields[name] = value
    return fields

def create_relay(settings: SettingsStore, broker: BrokerClient, project_id: str, data: dict) -> Relay:
    """Register a broker endpoint and store a relay pointing at a local target."""
    settings.get_project(project_id)
    fields = _clean_fields(data or {})
    if fields.get("capture_only"):
        if fields.get("relay_to_url"):
            fields["relay_to_url"] = _validate_target(fields["relay_to_url"])
    else:
        if not fields.get("relay_to_url"):
            raise ConfigError("relay_to_url is required unless the relay is capture-only")
        fields["relay_to_url"] = _validate_target(fields["relay_to_url"])

    # RemoteError propagates with the broker's own message
    endpoint = broker.create_relay_endpoint()
    return settings.add_relay(project_id, endpoint["webhook_uuid"], endpoint["webhook_url"], **fields)

def update_relay(settings: SettingsStore, relay_id: str, data: dict) -> Relay:
    relay = settings.get_relay(relay_id)
    fields = _clean_fields(data or {})
    if not fields:
        raise ConfigError("Nothing to update")
    if fields.get("relay_to_url"):
        fields["relay_to_url"] = _validate_target(fields["relay_to_url"])
    capture_only = fields.get("capture_only", relay.capture_only)
    target = fields.get("relay_to_url", relay.relay_to_url)
    if not capture_only and not target:
        raise ConfigError("relay_to_url is required unless the relay is capture-only")
    return settings.update_relay(relay_id, **fields)

def delete_relay(settings: SettingsStore, events: EventStore, relay_id: str) -> int:
    """Delete a relay together with its history. Returns the number of entries removed."""
    settings.delete_relay(relay_id)
    removed = events.clear(Scope.relay(relay_id))
    logger.info("Relay %s deleted with %d history entries", relay_id, removed)
    return removed
