# localman/orchestrator.py
"""
Relay poll cycles.

A cycle for one relay lists the broker's pending calls, forwards (or just
captures) each one that is not already relayed, records a history entry per
call, evicts old history and finally writes the relay's counters. Failures
are isolated per call: one bad forward or storage hiccup never stops the
rest of the batch, and whatever the cycle produced is persisted even if it
dies halfway.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from datetime import timedelta
from typing import Callable, List, Optional

from .db import isoformat, utcnow
from .errors import ConfigError, RemoteError, StorageError
from .event_store import EventStore, Scope
from .forwarder import Forwarder, ForwardResult
from .models import Relay
from .settings_store import RelayCounters, SettingsStore
from .utils.broker import BrokerClient, CapturedCall

logger = logging.getLogger(__name__)

ENTRY_CAPTURED = "captured"
ENTRY_SUCCESS = "success"
ENTRY_FAILED = "failed"

IN_PROGRESS = "Poll already in progress"

@dataclass
class PollResult:
    relay_id: str
    relayed_count: int = 0
    total_count: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

class RelayPoller:
    def __init__(
        self,
        settings: SettingsStore,
        events: EventStore,
        broker: BrokerClient,
        forwarder: Forwarder,
        batch_limit: int = 50,
        stagger_seconds: float = 1.0,
        min_interval_seconds: float = 0,
        workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.events = events
        self.broker = broker
        self.forwarder = forwarder
        self.batch_limit = batch_limit
        self.stagger_seconds = stagger_seconds
        self.min_interval_seconds = min_interval_seconds
        self.workers = workers
        self._sleep = sleep
        self._clock = clock
        self._guard = threading.Lock()
        self._running: set = set()

    # entry points

    def trigger_poll(self, relay_id: str) -> PollResult:
        """Run one synchronous cycle for a relay, ignoring the poll throttle."""
        relay = self.settings.get_relay(relay_id)
        if not relay.enabled:
            raise ConfigError(f"Relay {relay_id} is disabled")
        return self._run_exclusive(relay.id)

    def poll_all(self, project_id: Optional[str] = None) -> List[PollResult]:
        """One cycle per enabled, polling-enabled relay, staggered, one task each."""
        relays = self.settings.list_relays(project_id, pollable_only=True)
        due = [r for r in relays if self._is_due(r)]
        results = [PollResult(r.id, skipped=True) for r in relays if r not in due]
        if not due:
            return results

        # start times are fixed at submission, so waiting for a free worker is not added on top
        submitted = self._clock()
        with ThreadPoolExecutor(max_workers=max(1, self.workers), thread_name_prefix="relay-poll") as pool:
            futures = [
                pool.submit(self._staggered, relay, submitted + index * self.stagger_seconds)
                for index, relay in enumerate(due)
            ]
            for relay, future in zip(due, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception("Poll cycle for relay %s crashed", relay.id)
                    results.append(PollResult(relay.id, errors=[str(e)]))
        return results

    def relay_again(self, relay_id: str, call: CapturedCall) -> dict:
        """Forward one previously seen call again; always produces a new entry."""
        relay = self.settings.get_relay(relay_id)
        if relay.capture_only:
            raise ConfigError("Capture-only relays have nothing to relay")
        if not relay.relay_to_url:
            raise ConfigError(f"Relay {relay_id} has no target URL")

        counters = RelayCounters()
        try:
            entry, _, _ = self._forward_call(relay, call, counters)
        finally:
            self._save_counters(relay.id, counters)
        return entry

    # cycle

    def _is_due(self, relay: Relay) -> bool:
        if not self.min_interval_seconds or relay.last_checked is None:
            return True
        return utcnow() - relay.last_checked >= timedelta(seconds=self.min_interval_seconds)

    def _staggered(self, relay: Relay, start_at: float) -> PollResult:
        delay = start_at - self._clock()
        if delay > 0:
            self._sleep(delay)
        return self._run_exclusive(relay.id)

    def _run_exclusive(self, relay_id: str) -> PollResult:
        with self._guard:
            if relay_id in self._running:
                logger.info("Relay %s is already being polled", relay_id)
                return PollResult(relay_id, errors=[IN_PROGRESS])
            self._running.add(relay_id)
        try:
            # reload so the cycle starts from the cursor the previous one saved
            return self.poll_relay(self.settings.get_relay(relay_id))
        finally:
            with self._guard:
                self._running.discard(relay_id)

    def poll_relay(self, relay: Relay) -> PollResult:
        result = PollResult(relay.id)
        counters = RelayCounters()
        started = utcnow()
        since = relay.poll_cursor if relay.last_checked is not None else None
        try:
            try:
                calls = self.broker.list_pending_calls(relay.webhook_uuid, since=since, limit=self.batch_limit)
            except RemoteError as e:
                logger.warning("Polling relay %s failed: %s", relay.id, e)
                counters.record_error(str(e), count=False)
                result.errors.append(str(e))
                return result

            pending: List[CapturedCall] = []
            seen = set()
            for call in calls:
                if call.is_relayed or call.webhook_call_uuid in seen:
                    continue
                seen.add(call.webhook_call_uuid)
                result.total_count += 1
                try:
                    if relay.capture_only:
                        ok = consumed = self._capture_call(relay, call, counters)
                    else:
                        _, ok, consumed = self._forward_call(relay, call, counters)
                except Exception as e:
                    logger.exception("Processing call %s for relay %s failed", call.webhook_call_uuid, relay.id)
                    counters.record_error(str(e))
                    ok = consumed = False
                if ok:
                    result.relayed_count += 1
                if not consumed:
                    pending.append(call)

            full_batch = len(calls) >= self.batch_limit
            counters.poll_cursor = _next_cursor(since, started, pending, calls if full_batch else None)
            try:
                self.events.evict(Scope.relay(relay.id), keep=self.events.retention)
            except StorageError as e:
                logger.warning("Evicting history for relay %s failed: %s", relay.id, e)
                counters.messages.append(str(e))
        finally:
            counters.last_checked = utcnow()
            self._save_counters(relay.id, counters)
            for message in counters.messages:
                if message not in result.errors:
                    result.errors.append(message)

        logger.info(
            "Polled relay %s: %d/%d relayed, %d errors",
            relay.id, result.relayed_count, result.total_count, len(result.errors),
        )
        return result

    def _capture_call(self, relay: Relay, call: CapturedCall, counters: RelayCounters) -> bool:
        try:
            self.broker.mark_consumed(relay.webhook_uuid, call.webhook_call_uuid)
        except RemoteError as e:
            # stays pending at the broker, picked up next cycle
            logger.warning("Could not consume call %s for relay %s: %s", call.webhook_call_uuid, relay.id, e)
            counters.record_error(str(e), count=False)
            return False

        counters.record_success(utcnow())
        self._append_entry(relay, counters, _history_entry(relay, call, ENTRY_CAPTURED))
        return True

    def _forward_call(self, relay: Relay, call: CapturedCall, counters: RelayCounters):
        outcome = self.forwarder.forward(call, relay.relay_to_url)
        status = ENTRY_SUCCESS if outcome.success else ENTRY_FAILED
        entry = _history_entry(relay, call, status, outcome)

        consumed = False
        if outcome.success:
            counters.record_success(utcnow())
            try:
                self.broker.mark_consumed(relay.webhook_uuid, call.webhook_call_uuid)
                consumed = True
            except RemoteError as e:
                # still pending at the broker, so it is listed and forwarded again
                logger.warning("Relayed call %s but could not consume it: %s", call.webhook_call_uuid, e)
                counters.messages.append(str(e))
        else:
            counters.record_error(f"{call.webhook_call_uuid}: {outcome.error}")

        record_id = self._append_entry(relay, counters, entry)
        if record_id:
            entry = dict(entry, id=record_id)
        return entry, outcome.success, consumed

    def _append_entry(self, relay: Relay, counters: RelayCounters, entry: dict) -> Optional[str]:
        try:
            return self.events.append(Scope.relay(relay.id), entry)
        except StorageError as e:
            logger.warning("History entry for call %s lost: %s", entry.get("webhook_call_uuid"), e)
            counters.messages.append(str(e))
            return None

    def _save_counters(self, relay_id: str, counters: RelayCounters) -> None:
        try:
            self.settings.apply_counters(relay_id, counters)
        except Exception as e:
            logger.exception("Saving counters for relay %s failed", relay_id)
            counters.messages.append(str(e))

def _history_entry(relay: Relay, call: CapturedCall, status: str, outcome: Optional[ForwardResult] = None) -> dict:
    entry = {
        "timestamp": isoformat(utcnow()),
        "webhook_call_uuid": call.webhook_call_uuid,
        "relay_to_url": relay.relay_to_url,
        "capture_only": relay.capture_only,
        "status": status,
        "read": False,
        "relay_id": relay.id,
        "request": call.request_dict(),
    }
    if outcome is not None:
        entry["duration_ms"] = outcome.duration_ms
        if outcome.status_code is not None:
            entry["response"] = {"status_code": outcome.status_code, "body": outcome.response_body}
        if outcome.error:
            entry["error"] = outcome.error
    return entry

def _next_cursor(since: Optional[str], started, pending: List[CapturedCall], full_batch: Optional[List[CapturedCall]] = None) -> Optional[str]:
    """Where the next cycle should start listing from.

    Calls left pending must be listed again, so the cursor may not move past
    the oldest of them. After a full batch the broker may hold more calls
    than it returned, so the cursor stops at the newest call it did return.
    """
    bounds = []
    if full_batch:
        stamps = [c.created_at for c in full_batch]
        if not all(stamps):
            return since
        bounds.append(max(stamps))
    if pending:
        stamps = [c.created_at for c in pending]
        if not all(stamps):
            return since
        bounds.append(min(stamps))
    if not bounds:
        return isoformat(started)
    return min(bounds)
