from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any

from tenant_sync.errors import SyncError
from tenant_sync.vault import CLIENT

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    tenants: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: int = 0
    events_processed: int = 0
    checks_processed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "tenants": self.tenants,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "events_processed": self.events_processed,
            "checks_processed": self.checks_processed,
        }


class PollScheduler:
    """Periodic driver for provisioning events and compliance reconciliation.

    A tick never overlaps another tick or a manual trigger: the running guard is
    taken without blocking and a busy scheduler simply skips. Tenants run on a
    worker pool and are awaited for at most ``tenant_timeout_s``; a tenant still
    running from an earlier tick is skipped until it finishes.
    """

    def __init__(
        self,
        *,
        vault: Any,
        event_processor: Any,
        reconciler: Any,
        interval_s: float = 30.0,
        initial_delay_s: float = 5.0,
        tenant_concurrency: int = 1,
        tenant_timeout_s: float = 120.0,
        include_global_pass: bool = True,
    ) -> None:
        self.vault = vault
        self.event_processor = event_processor
        self.reconciler = reconciler
        self.interval_s = max(0.01, float(interval_s))
        self.initial_delay_s = max(0.0, float(initial_delay_s))
        self.tenant_concurrency = max(1, int(tenant_concurrency))
        self.tenant_timeout_s = max(0.01, float(tenant_timeout_s))
        self.include_global_pass = include_global_pass
        self._guard = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lifecycle_lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        # Headroom so abandoned (timed-out) tenants do not starve the others.
        self._executor = ThreadPoolExecutor(
            max_workers=self.tenant_concurrency * 4,
            thread_name_prefix="tenant-sync",
        )
        self.last_tick: dict[str, int] | None = None

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    @property
    def is_busy(self) -> bool:
        return self._guard.locked()

    def start(self) -> bool:
        with self._lifecycle_lock:
            if self.is_running:
                return False
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="poll-scheduler",
                daemon=True,
            )
            self._thread.start()
            logger.info(
                "scheduler_started interval_s=%s initial_delay_s=%s tenant_concurrency=%s",
                self.interval_s,
                self.initial_delay_s,
                self.tenant_concurrency,
            )
            return True

    def stop(self, *, wait: bool = False, timeout: float | None = None) -> None:
        with self._lifecycle_lock:
            self._stop_event.set()
            thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("scheduler_stopped")

    def _loop(self, stop_event: threading.Event) -> None:
        if stop_event.wait(self.initial_delay_s):
            return
        while not stop_event.is_set():
            try:
                self.run_tick()
            except Exception:
                # Keep the timer alive; the next tick starts clean.
                logger.exception("scheduler_tick_crashed")
            if stop_event.wait(self.interval_s):
                return

    def _sync_tenant(self, tenant_id: str) -> dict[str, Any]:
        outcome: dict[str, Any] = {"tenant_id": tenant_id, "events_processed": 0, "reconcile": None, "error": None}
        record = self.vault.resolve_strict(tenant_id, CLIENT)
        if record is not None:
            try:
                outcome["events_processed"] = self.event_processor.process(tenant_id, self.vault.handle_for(record))
            except SyncError as exc:
                logger.warning("tenant_events_failed tenant=%s code=%s", tenant_id, exc.code)
                outcome["error"] = f"{exc.code}: {exc.message}"
        result = self.reconciler.reconcile(tenant_id)
        outcome["reconcile"] = result.as_dict()
        if result.error and not outcome["error"]:
            outcome["error"] = result.error
        return outcome

    def _submit(self, tenant_id: str) -> Future | None:
        with self._in_flight_lock:
            if tenant_id in self._in_flight:
                return None
            self._in_flight.add(tenant_id)
        future = self._executor.submit(self._sync_tenant, tenant_id)

        def _release(_: Future) -> None:
            with self._in_flight_lock:
                self._in_flight.discard(tenant_id)

        future.add_done_callback(_release)
        return future

    def _collect(self, tenant_id: str, future: Future, *, deadline: float, stats: TickStats) -> dict[str, Any] | None:
        try:
            outcome = future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            stats.timed_out += 1
            logger.warning("tenant_sync_timeout tenant=%s timeout_s=%s", tenant_id, self.tenant_timeout_s)
            return None
        except Exception:
            stats.failed += 1
            logger.exception("tenant_sync_crashed tenant=%s", tenant_id)
            return None
        stats.events_processed += int(outcome["events_processed"])
        stats.checks_processed += int((outcome["reconcile"] or {}).get("processed_count", 0))
        if outcome["error"]:
            stats.failed += 1
        else:
            stats.succeeded += 1
        return outcome

    def run_tick(self) -> dict[str, int] | None:
        """Run one pass over every tenant; ``None`` when a run is already active."""
        if not self._guard.acquire(blocking=False):
            logger.info("scheduler_tick_skipped reason=busy")
            return None
        try:
            stats = TickStats()
            tenants = self.vault.list_tenants(CLIENT)
            stats.tenants = len(tenants)
            for start in range(0, len(tenants), self.tenant_concurrency):
                batch: list[tuple[str, Future]] = []
                for tenant_id in tenants[start : start + self.tenant_concurrency]:
                    future = self._submit(tenant_id)
                    if future is None:
                        stats.skipped += 1
                        logger.info("tenant_skipped tenant=%s reason=previous_run_outstanding", tenant_id)
                        continue
                    batch.append((tenant_id, future))
                deadline = time.monotonic() + self.tenant_timeout_s
                for tenant_id, future in batch:
                    self._collect(tenant_id, future, deadline=deadline, stats=stats)

            if self.include_global_pass:
                try:
                    result = self.reconciler.reconcile(None)
                    stats.checks_processed += result.processed_count
                except Exception:
                    logger.exception("global_reconcile_crashed")

            self.last_tick = stats.as_dict()
            logger.info("scheduler_tick_done stats=%s", self.last_tick)
            return self.last_tick
        finally:
            self._guard.release()

    def manual_trigger(self, tenant_id: str) -> dict[str, Any] | None:
        """Run the per-tenant logic now; ``None`` when a tick holds the guard."""
        if not self._guard.acquire(blocking=False):
            logger.info("manual_trigger_skipped tenant=%s reason=busy", tenant_id)
            return None
        try:
            future = self._submit(tenant_id)
            if future is None:
                return None
            stats = TickStats(tenants=1)
            outcome = self._collect(
                tenant_id,
                future,
                deadline=time.monotonic() + self.tenant_timeout_s,
                stats=stats,
            )
            return outcome if outcome is not None else {"tenant_id": tenant_id, "error": "timeout_or_crash"}
        finally:
            self._guard.release()

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)
