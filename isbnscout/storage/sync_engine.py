"""Sync engine for isbnscout storage.

SyncEngine drains the sync ledger against the cloud store: it dispatches each
pending entry to its mutation handler, classifies failures, reconciles
duplicate creates, and prunes terminal entries.

Scheduling is an explicit worker loop reading drain requests from a queue.
A request carries the monotonic time at which it becomes due; the loop
sleeps until the earlier of that time and the next periodic tick.

At most one drain cycle runs at a time per engine. The guard is an
in-process lock, which is enough because each local database has a single
engine.
"""

import json
import logging
import queue
import threading
import time
from typing import Callable, Optional, Set, Tuple

from isbnscout.errors import (
    FailureKind,
    UnknownMutationError,
    classify_failure,
)
from isbnscout.types import (
    DEFAULT_BATCH_SIZE,
    DrainResult,
    LedgerEntry,
    Operation,
    ResolutionState,
    SyncHealth,
)

from .base import RecordStore
from .connectivity import ConnectivityGate
from .handlers import HandlerRegistry, MutationHandler, default_registry
from .ledger import SyncLedger

logger = logging.getLogger(__name__)

_STOP = object()

Barrier = Tuple[str, str]


class SyncEngine:
    """Drives ledger entries from pending to a terminal state.

    Args:
        ledger: The SyncLedger to drain.
        remote: Cloud record store, or None when running local-only.
        gate: Connectivity gate; drains are skipped while it is closed.
        registry: Mutation handlers; defaults to the built-in registry.
        batch_size: Entries fetched per drain cycle.
        sync_interval: Seconds between periodic drains.
        reconnect_delay: Delay before the drain scheduled by a gate opening.
        identity_conflict_retries: Extra attempts for a create whose duplicate
            could not be reconciled; 0 fails it on the first occurrence.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        ledger: SyncLedger,
        remote: Optional[RecordStore],
        gate: ConnectivityGate,
        registry: Optional[HandlerRegistry] = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        sync_interval: float = 30.0,
        reconnect_delay: float = 1.0,
        identity_conflict_retries: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ledger = ledger
        self._remote = remote
        self._gate = gate
        self._registry = registry or default_registry()
        self.batch_size = batch_size
        self.sync_interval = sync_interval
        self.reconnect_delay = reconnect_delay
        self.identity_conflict_retries = identity_conflict_retries
        self._clock = clock

        self._drain_lock = threading.Lock()
        self._signals: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

        gate.add_listener(self._on_connectivity_change)

    @property
    def ledger(self) -> SyncLedger:
        return self._ledger

    @property
    def remote(self) -> Optional[RecordStore]:
        return self._remote

    # === Lifecycle ===

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def drain_in_progress(self) -> bool:
        return self._drain_lock.locked()

    def start(self) -> None:
        """Start the background worker. Idempotent."""
        if self.is_running:
            return
        self._signals = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="isbnscout-sync", daemon=True)
        self._thread.start()
        logger.debug(f"Sync worker started (interval={self.sync_interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker. A drain already running finishes its batch first."""
        thread = self._thread
        if thread is None:
            return
        self._signals.put(_STOP)
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Sync worker did not stop within %ss", timeout)
        self._thread = None

    # === Scheduling ===

    def request_drain(self, delay: float = 0.0) -> bool:
        """Ask the worker for a drain ``delay`` seconds from now.

        Returns False when the worker is not running (the request is dropped;
        the next periodic tick after start() picks the work up).
        """
        if not self.is_running:
            logger.debug("Drain request ignored: sync worker not running")
            return False
        self._signals.put(self._clock() + max(0.0, delay))
        return True

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.request_drain(self.reconnect_delay)

    def _run(self) -> None:
        next_tick = self._clock() + self.sync_interval
        due: Optional[float] = None

        while True:
            deadline = next_tick if due is None else min(next_tick, due)
            try:
                signal = self._signals.get(timeout=max(0.0, deadline - self._clock()))
            except queue.Empty:
                signal = None

            if signal is _STOP:
                break
            if signal is not None:
                due = signal if due is None else min(due, signal)
                continue

            now = self._clock()
            if due is not None and now >= due:
                reason = "requested"
            elif now >= next_tick:
                reason = "periodic"
            else:
                continue

            due = None
            next_tick = now + self.sync_interval
            try:
                self.drain_once()
            except Exception as e:
                logger.error(f"Drain cycle ({reason}) crashed: {e}", exc_info=True)

        logger.debug("Sync worker stopped")

    # === Drain ===

    def drain_once(self) -> DrainResult:
        """Run one drain cycle unless one is already in progress."""
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain skipped: another cycle is in progress")
            return DrainResult(skipped=True, skip_reason="drain already in progress")
        try:
            return self._drain()
        finally:
            self._drain_lock.release()

    def force_sync_now(self) -> DrainResult:
        """Run one drain cycle now, waiting for an in-flight cycle to finish first."""
        with self._drain_lock:
            return self._drain()

    def _drain(self) -> DrainResult:
        result = DrainResult()

        if self._remote is None:
            logger.debug("No cloud store configured, skipping sync")
            result.skipped, result.skip_reason = True, "no remote store configured"
            return result
        if not self._gate.is_open:
            logger.info("Offline - sync skipped, changes stay queued")
            result.skipped, result.skip_reason = True, "offline"
            return result

        batch = self._ledger.fetch_pending_batch(self.batch_size)
        if batch:
            logger.info(f"Syncing {len(batch)} ledger entries to cloud")

        blocked: Set[Barrier] = set()
        for entry in batch:
            self._process_entry(entry, result, blocked)

        try:
            result.cleaned = self._ledger.cleanup()
        except Exception as e:
            logger.error(f"Ledger cleanup failed: {e}", exc_info=True)
            result.errors.append(f"Cleanup failed: {e}")

        if result.success or result.resolved > 0:
            self._ledger.set_last_sync_time()

        if batch:
            logger.info(
                f"Sync complete: resolved={result.resolved} (reconciled={result.reconciled}), "
                f"retried={result.retried}, failed={result.failed}, deferred={result.deferred}"
            )
        return result

    def _process_entry(self, entry: LedgerEntry, result: DrainResult, blocked: Set[Barrier]):
        label = f"{entry.entity_name}/{entry.operation_name} {entry.id}"
        try:
            handler = self._registry.resolve(entry.entity_type, entry.operation)
            payload = entry.decoded_payload()
        except (UnknownMutationError, json.JSONDecodeError) as e:
            self._fail(entry, label, f"Undeliverable entry: {e}", result)
            return
        if not isinstance(payload, dict):
            self._fail(
                entry,
                label,
                f"Undeliverable entry: payload is {type(payload).__name__}, not an object",
                result,
            )
            return

        key = handler.record_key(payload)
        barrier = (entry.entity_name, str(key)) if key else None
        if barrier is not None and barrier in blocked:
            # An earlier entry for this record failed; keep their order
            result.deferred += 1
            return

        try:
            handler.apply(self._remote, payload)
        except Exception as e:
            self._handle_failure(entry, handler, payload, e, label, result, barrier, blocked)
            return

        self._ledger.mark_resolved(entry.id)
        result.resolved += 1

    def _handle_failure(
        self,
        entry: LedgerEntry,
        handler: MutationHandler,
        payload: dict,
        exc: Exception,
        label: str,
        result: DrainResult,
        barrier: Optional[Barrier],
        blocked: Set[Barrier],
    ):
        kind = classify_failure(exc)

        if kind == FailureKind.IDENTITY_CONFLICT:
            if entry.operation == Operation.CREATE and handler.find_existing is not None:
                try:
                    existing = handler.find_existing(self._remote, payload)
                except Exception as lookup_error:
                    self._retry(
                        entry,
                        label,
                        f"Reconciliation lookup failed: {lookup_error}",
                        result,
                        barrier,
                        blocked,
                    )
                    return
                if existing is not None:
                    self._ledger.mark_resolved(entry.id)
                    result.resolved += 1
                    result.reconciled += 1
                    logger.info(f"Reconciled {label}: record already exists remotely")
                    return
            if entry.retry_count < self.identity_conflict_retries:
                self._retry(entry, label, str(exc), result, barrier, blocked)
                return
            self._fail(entry, label, f"Unreconciled identity conflict: {exc}", result)
            return

        if kind == FailureKind.PERMANENT:
            self._fail(entry, label, str(exc), result)
            return

        self._retry(entry, label, f"{type(exc).__name__}: {exc}", result, barrier, blocked)

    def _fail(self, entry: LedgerEntry, label: str, error: str, result: DrainResult):
        self._ledger.mark_failed(entry.id, error)
        result.failed += 1
        result.errors.append(f"{label}: {error}")
        logger.error(f"Permanent sync failure for {label}: {error}")

    def _retry(
        self,
        entry: LedgerEntry,
        label: str,
        error: str,
        result: DrainResult,
        barrier: Optional[Barrier],
        blocked: Set[Barrier],
    ):
        updated = self._ledger.increment_retry(entry.id, error)
        if barrier is not None:
            blocked.add(barrier)
        result.errors.append(f"{label}: {error}")

        if updated is not None and updated.resolution_state == ResolutionState.FAILED:
            result.failed += 1
            logger.warning(
                f"{label} exceeded max retries ({updated.retry_count}), "
                f"moved to permanently failed: {error}"
            )
        else:
            result.retried += 1
            retry_count = updated.retry_count if updated else entry.retry_count + 1
            logger.warning(
                f"Transient sync failure for {label} "
                f"(retry {retry_count}/{self._ledger.max_retries}): {error}"
            )

    # === Status ===

    def get_status(self) -> SyncHealth:
        counts = self._ledger.counts()
        return SyncHealth(
            pending_count=counts["pending"],
            last_successful_sync=self._ledger.get_last_sync_time(),
            failed_count=counts["failed"],
            resolved_count=counts["resolved"],
            pending_by_entity=counts["pending_by_entity"],
            online=self._gate.is_open,
            drain_in_progress=self.drain_in_progress,
        )


__all__ = ["SyncEngine"]
