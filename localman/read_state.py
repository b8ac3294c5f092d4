# localman/read_state.py
import logging

from .errors import NotFound
from .event_store import EventStore, Scope

logger = logging.getLogger(__name__)

def _set_read(record: dict) -> None:
    record["read"] = True

class ReadStateTracker:
    """Unread badges for history and captured webhooks. Never affects relaying."""

    def __init__(self, events: EventStore):
        self.events = events

    def mark_read(self, scope: Scope, record_id: str) -> dict:
        return self.events.update_field(scope, record_id, _set_read)

    def mark_all_read(self, scope: Scope) -> int:
        unread = [r["id"] for r in self.events.list(scope) if not r.get("read")]
        marked = 0
        for record_id in unread:
            try:
                self.events.update_field(scope, record_id, _set_read)
            except NotFound:
                # evicted since it was listed
                continue
            marked += 1
        if marked:
            logger.debug("Marked %d records read in %s", marked, scope)
        return marked

    def count_unread(self, scope: Scope) -> int:
        return sum(1 for r in self.events.list(scope) if not r.get("read"))
