# localman/settings_store.py
"""Relay and project metadata.

Each relay is its own row, so concurrent cycles for different relays never
touch the same record, and counter updates are single ``UPDATE`` statements
(``relay_count = relay_count + n``) so overlapping cycles on the same relay
cannot lose an increment either.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update

from .db import utcnow
from .errors import ConfigError
from .models import Project, Relay

logger = logging.getLogger(__name__)

# Fields a user may change; everything else is owned by the poller
EDITABLE_FIELDS = ("description", "relay_to_url", "capture_only", "enabled", "polling_enabled")

_UNSET = object()

@dataclass
class RelayCounters:
    """Changes produced by one poll cycle, written in one statement at the end."""

    relayed: int = 0
    errors: int = 0
    last_relayed: Optional[datetime] = None
    last_error: object = _UNSET
    last_checked: Optional[datetime] = None
    poll_cursor: object = _UNSET
    messages: list = field(default_factory=list)

    def record_success(self, when: datetime) -> None:
        self.relayed += 1
        self.last_relayed = when
        self.last_error = None

    def record_error(self, message: str, count: bool = True) -> None:
        if count:
            self.errors += 1
        self.last_error = message
        self.messages.append(message)

class SettingsStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    # projects

    def ensure_project(self, project_id: str, name: Optional[str] = None) -> Project:
        with self._session_factory() as session, session.begin():
            project = session.get(Project, project_id)
            if project is None:
                project = Project(id=project_id, name=name or project_id.title())
                session.add(project)
                logger.info("Created project %s", project_id)
            return project

    def get_project(self, project_id: Optional[str]) -> Project:
        if not project_id:
            raise ConfigError("Project is required", 404)
        with self._session_factory() as session:
            project = session.get(Project, project_id)
        if project is None:
            raise ConfigError(f"Project {project_id} not found", 404)
        return project

    # relays

    def get_relay(self, relay_id: str) -> Relay:
        with self._session_factory() as session:
            relay = session.get(Relay, relay_id)
        if relay is None:
            raise ConfigError(f"Relay {relay_id} not found", 404)
        return relay

    def list_relays(self, project_id: Optional[str] = None, pollable_only: bool = False) -> list[Relay]:
        stmt = select(Relay).order_by(Relay.created_at, Relay.id)
        if project_id is not None:
            stmt = stmt.where(Relay.project_id == project_id)
        if pollable_only:
            stmt = stmt.where(Relay.enabled.is_(True), Relay.polling_enabled.is_(True))
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def add_relay(self, project_id: str, webhook_uuid: str, webhook_url: str, **fields) -> Relay:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown relay fields: {', '.join(sorted(unknown))}")
        relay = Relay(
            id=uuid.uuid4().hex,
            project_id=project_id,
            webhook_uuid=webhook_uuid,
            webhook_url=webhook_url,
            created_at=utcnow(),
            description=fields.get("description") or "",
            relay_to_url=fields.get("relay_to_url") or "",
            capture_only=bool(fields.get("capture_only", False)),
            enabled=bool(fields.get("enabled", True)),
            polling_enabled=bool(fields.get("polling_enabled", True)),
            relay_count=0,
            error_count=0,
        )
        with self._session_factory() as session, session.begin():
            session.add(relay)
        logger.info("Added relay %s for webhook %s", relay.id, webhook_uuid)
        return relay

    def update_relay(self, relay_id: str, **fields) -> Relay:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ConfigError(f"Unknown relay fields: {', '.join(sorted(unknown))}")
        with self._session_factory() as session, session.begin():
            relay = session.get(Relay, relay_id)
            if relay is None:
                raise ConfigError(f"Relay {relay_id} not found", 404)
            for name, value in fields.items():
                setattr(relay, name, value)
        return relay

    def apply_counters(self, relay_id: str, counters: RelayCounters) -> None:
        """Persist one cycle's outcome as a partial, atomic update."""
        values = {
            "relay_count": Relay.relay_count + counters.relayed,
            "error_count": Relay.error_count + counters.errors,
        }
        if counters.last_relayed is not None:
            values["last_relayed"] = counters.last_relayed
        if counters.last_error is not _UNSET:
            values["last_error"] = counters.last_error
        if counters.last_checked is not None:
            values["last_checked"] = counters.last_checked
        if counters.poll_cursor is not _UNSET:
            values["poll_cursor"] = counters.poll_cursor
        with self._session_factory() as session, session.begin():
            result = session.execute(update(Relay).where(Relay.id == relay_id).values(**values))
        if not result.rowcount:
            # relay deleted while its cycle was running
            logger.warning("Relay %s vanished before its counters were saved", relay_id)

    def delete_relay(self, relay_id: str) -> Relay:
        with self._session_factory() as session, session.begin():
            relay = session.get(Relay, relay_id)
            if relay is None:
                raise ConfigError(f"Relay {relay_id} not found", 404)
            session.delete(relay)
        logger.info("Deleted relay %s", relay_id)
        return relay
