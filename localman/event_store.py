# localman/event_store.py
"""
Bounded, concurrency-safe record log.

Records are JSON documents grouped by scope (one relay's history, or one
project's directly captured webhooks). Keys sort in creation order, so
"newest first" is a plain descending key scan.

Writes for a scope hold that scope's lock for the whole transaction, which
serializes append/update/evict against each other. Readers never take the
lock: they see a committed snapshot and at worst miss or include a record
that is being appended or evicted at the same moment.
"""
from __future__ import annotations
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from .db import utcnow
from .errors import NotFound, StorageError
from .models import HistoryRecord

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 50

@dataclass(frozen=True)
class Scope:
    kind: str
    id: str

    @classmethod
    def relay(cls, relay_id: str) -> "Scope":
        return cls("relay", relay_id)

    @classmethod
    def project(cls, project_id: str) -> "Scope":
        return cls("project", project_id)

    def __str__(self):
        return f"{self.kind}:{self.id}"

class _KeyGenerator:
    """Creation-ordered keys: zero-padded ns timestamp + random suffix."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next(self) -> str:
        with self._lock:
            now = time.time_ns()
            # strictly increasing even if the wall clock steps back
            self._last = now if now > self._last else self._last + 1
            stamp = self._last
        return f"{stamp:020d}_{secrets.token_hex(4)}"

class _ScopeLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Scope, threading.RLock] = {}

    def get(self, scope: Scope) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(scope)
            if lock is None:
                lock = self._locks[scope] = threading.RLock()
            return lock

class RecordList:
    """Lazy, restartable view over the newest records of a scope.

    Every iteration runs a fresh query, so iterating twice reflects writes
    made in between.
    """

    def __init__(self, store: "EventStore", scope: Scope, limit: Optional[int]):
        self._store = store
        self.scope = scope
        self.limit = limit

    def __iter__(self) -> Iterator[dict]:
        return self._store._iter_records(self.scope, self.limit)

    def __repr__(self):
        return f"<RecordList scope={self.scope} limit={self.limit}>"

class EventStore:
    def __init__(self, session_factory, retention: int = DEFAULT_RETENTION):
        self._session_factory = session_factory
        self.retention = retention
        self._keys = _KeyGenerator()
        self._locks = _ScopeLocks()

    def lock(self, scope: Scope) -> threading.RLock:
        return self._locks.get(scope)

    def append(self, scope: Scope, entry: dict) -> str:
        """Store ``entry`` as a new record and evict beyond the retention window."""
        try:
            payload = json.dumps(entry)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot serialize record for {scope}: {e}") from e

        record_id = self._keys.next()
        with self.lock(scope):
            try:
                with self._session_factory() as session, session.begin():
                    session.add(HistoryRecord(
                        id=record_id,
                        scope_kind=scope.kind,
                        scope_id=scope.id,
                        created_at=utcnow(),
                        payload=payload,
                    ))
            except SQLAlchemyError as e:
                logger.exception("Append failed for %s", scope)
                raise StorageError(f"Cannot store record for {scope}: {e}") from e
            self.evict(scope, keep=self.retention)
        logger.debug("Appended %s to %s", record_id, scope)
        return record_id

    def list(self, scope: Scope, limit: Optional[int] = None) -> RecordList:
        return RecordList(self, scope, limit)

    def _iter_records(self, scope: Scope, limit: Optional[int]) -> Iterator[dict]:
        if limit is not None and limit <= 0:
            return
        stmt = (
            select(HistoryRecord)
            .where(HistoryRecord.scope_kind == scope.kind, HistoryRecord.scope_id == scope.id)
            .order_by(HistoryRecord.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            for record in session.scalars(stmt.execution_options(yield_per=100)):
                yield _decode(record)

    def get(self, scope: Scope, record_id: str) -> dict:
        with self._session_factory() as session:
            record = session.get(HistoryRecord, record_id)
            if record is None or (record.scope_kind, record.scope_id) != (scope.kind, scope.id):
                raise NotFound(f"Record {record_id} not found in {scope}")
            return _decode(record)

    def update_field(self, scope: Scope, record_id: str, mutator: Callable[[dict], Optional[dict]]) -> dict:
        """Read-modify-write one record.

        ``mutator`` receives the decoded record (without its ``id``) and may
        change it in place or return a replacement. Nothing is written if the
        result cannot be serialized.
        """
        with self.lock(scope):
            try:
                with self._session_factory() as session, session.begin():
                    stmt = (
                        select(HistoryRecord)
                        .where(
                            HistoryRecord.id == record_id,
                            HistoryRecord.scope_kind == scope.kind,
                            HistoryRecord.scope_id == scope.id,
                        )
                        .with_for_update()
                    )
                    record = session.scalars(stmt).first()
                    if record is None:
                        raise NotFound(f"Record {record_id} not found in {scope}")
                    data = json.loads(record.payload)
                    result = mutator(data)
                    if result is not None:
                        data = result
                    try:
                        payload = json.dumps(data)
                    except (TypeError, ValueError) as e:
                        raise StorageError(f"Cannot serialize record {record_id}: {e}") from e
                    if payload != record.payload:
                        record.payload = payload
            except SQLAlchemyError as e:
                logger.exception("Update failed for %s in %s", record_id, scope)
                raise StorageError(f"Cannot update record {record_id}: {e}") from e
        return dict(data, id=record_id)

    def evict(self, scope: Scope, keep: int = DEFAULT_RETENTION) -> int:
        """Delete every record of ``scope`` except the ``keep`` newest."""
        with self.lock(scope):
            try:
                with self._session_factory() as session, session.begin():
                    boundary = session.scalars(
                        select(HistoryRecord.id)
                        .where(HistoryRecord.scope_kind == scope.kind, HistoryRecord.scope_id == scope.id)
                        .order_by(HistoryRecord.id.desc())
                        .offset(keep)
                        .limit(1)
                    ).first()
                    if boundary is None:
                        return 0
                    result = session.execute(
                        delete(HistoryRecord).where(
                            HistoryRecord.scope_kind == scope.kind,
                            HistoryRecord.scope_id == scope.id,
                            HistoryRecord.id <= boundary,
                        )
                    )
            except SQLAlchemyError as e:
                logger.exception("Evict failed for %s", scope)
                raise StorageError(f"Cannot evict records for {scope}: {e}") from e
        if result.rowcount:
            logger.debug("Evicted %d records from %s", result.rowcount, scope)
        return result.rowcount

    def clear(self, scope: Scope) -> int:
        with self.lock(scope):
            try:
                with self._session_factory() as session, session.begin():
                    result = session.execute(
                        delete(HistoryRecord).where(
                            HistoryRecord.scope_kind == scope.kind,
                            HistoryRecord.scope_id == scope.id,
                        )
                    )
            except SQLAlchemyError as e:
                logger.exception("Clear failed for %s", scope)
                raise StorageError(f"Cannot clear records for {scope}: {e}") from e
        logger.info("Cleared %d records from %s", result.rowcount, scope)
        return result.rowcount

def _decode(record: HistoryRecord) -> dict:
    data = json.loads(record.payload)
    data["id"] = record.id
    return data
