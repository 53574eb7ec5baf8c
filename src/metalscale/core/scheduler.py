#!/usr/bin/env python3
"""Reconcile Scheduler - Drives the reconciler from store changes and timers.

Keeps a de-duplicated queue of machine names served by a pool of worker
threads. A name is never handed to two workers at once; a name queued while
it is being processed runs again once the current call finishes.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from metalscale.config.config import DEFAULT_RESYNC_INTERVAL, DEFAULT_WORKERS
from metalscale.core.reconciler import Reconciler
from metalscale.persistence.store import ChangeType, ConflictError, RecordStore


logger = logging.getLogger(__name__)

# Constants
ERROR_BACKOFF_BASE = 5.0
ERROR_BACKOFF_MAX = 300.0
STOP_TIMEOUT = 10.0


class ReconcileScheduler:
    """Work queue feeding machine names to the reconciler.

    Names arrive from store change notifications (spec writes, creations),
    from periodic resyncs of every record, and from requeue delays returned
    by the reconciler. Status-only writes are ignored so the reconciler does
    not retrigger itself.

    Attributes:
        reconciler: Reconciler invoked per machine
        store: Record store watched for changes and listed on resync
        workers: Number of worker threads
        resync_interval: Seconds between full resyncs
    """

    def __init__(
        self,
        reconciler: Reconciler,
        store: RecordStore,
        workers: int = DEFAULT_WORKERS,
        resync_interval: float = DEFAULT_RESYNC_INTERVAL,
    ) -> None:
        self.reconciler = reconciler
        self.store = store
        self.workers = workers
        self.resync_interval = resync_interval

        self._cond = threading.Condition()
        self._ready: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: List[Tuple[float, int, str]] = []
        self._scheduled: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._seq = itertools.count()
        self._stopping = threading.Event()
        self._threads: List[threading.Thread] = []

        store.add_listener(self._on_change)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, name: str) -> None:
        """Queue a machine for immediate reconciliation."""
        with self._cond:
            if name in self._processing:
                self._dirty.add(name)
                return
            if name in self._queued:
                return
            self._queued.add(name)
            self._ready.append(name)
            self._cond.notify_all()

    def enqueue_after(self, name: str, delay: float) -> None:
        """Queue a machine for reconciliation after a delay.

        An earlier pending deadline for the same machine wins.
        """
        due = time.monotonic() + delay
        with self._cond:
            current = self._scheduled.get(name)
            if current is not None and current <= due:
                return
            self._scheduled[name] = due
            heapq.heappush(self._timers, (due, next(self._seq), name))
            self._cond.notify_all()

    def pending(self) -> int:
        """Number of machines waiting in the ready queue."""
        with self._cond:
            return len(self._ready)

    def _on_change(self, name: str, change: ChangeType) -> None:
        if change is ChangeType.STATUS:
            return
        if change is ChangeType.DELETED:
            with self._cond:
                self._failures.pop(name, None)
            return
        logger.debug(f"Machine {name} changed ({change.value}), queueing")
        self.enqueue(name)

    def resync(self) -> None:
        """Queue every machine that has no requeue deadline pending."""
        names = [record.name for record in self.store.list()]
        with self._cond:
            scheduled = set(self._scheduled)
        for name in names:
            if name not in scheduled:
                self.enqueue(name)
        logger.debug(f"Resync queued {len(names) - len(scheduled & set(names))} machines")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile the next ready machine.

        Args:
            timeout: Seconds to wait for work (None waits until stopped)

        Returns:
            True if a machine was processed, False on timeout or stop
        """
        name = self._take(timeout)
        if name is None:
            return False

        try:
            requeue_after = self.reconciler.reconcile(name)
        except ConflictError as exc:
            logger.info(f"Machine {name} changed during reconcile, retrying: {exc}")
            self._done(name)
            self.enqueue(name)
            return True
        except Exception as exc:
            logger.error(f"Reconcile of {name} failed: {exc}")
            self._done(name)
            self._backoff(name)
            return True

        with self._cond:
            self._failures.pop(name, None)
        self._done(name)
        if requeue_after is not None:
            self.enqueue_after(name, requeue_after)
        return True

    def _take(self, timeout: Optional[float]) -> Optional[str]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._ready:
                if self._stopping.is_set():
                    return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining if remaining is not None else 1.0)
            name = self._ready.popleft()
            self._queued.discard(name)
            self._processing.add(name)
            return name

    def _done(self, name: str) -> None:
        with self._cond:
            self._processing.discard(name)
            rerun = name in self._dirty
            self._dirty.discard(name)
        if rerun:
            self.enqueue(name)

    def _backoff(self, name: str) -> None:
        with self._cond:
            failures = self._failures.get(name, 0) + 1
            self._failures[name] = failures
        delay = min(ERROR_BACKOFF_BASE * (2 ** (failures - 1)), ERROR_BACKOFF_MAX)
        logger.debug(f"Retrying {name} in {delay:.0f}s")
        self.enqueue_after(name, delay)

    def fire_due_timers(self) -> None:
        """Move every machine whose requeue deadline has passed to the ready queue."""
        now = time.monotonic()
        due: List[str] = []
        with self._cond:
            while self._timers and self._timers[0][0] <= now:
                when, _, name = heapq.heappop(self._timers)
                if self._scheduled.get(name) == when:
                    del self._scheduled[name]
                    due.append(name)
        for name in due:
            self.enqueue(name)

    # ------------------------------------------------------------------
    # Thread loops
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stopping.is_set():
            self.process_next(timeout=1.0)

    def _timer_loop(self) -> None:
        while not self._stopping.is_set():
            self.fire_due_timers()
            with self._cond:
                wait = 1.0
                if self._timers:
                    wait = max(0.0, min(wait, self._timers[0][0] - time.monotonic()))
                self._cond.wait(wait)

    def _resync_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.resync()
            except Exception as exc:
                logger.error(f"Resync failed: {exc}")
            self._stopping.wait(self.resync_interval)

    def start(self) -> None:
        """Start worker, timer and resync threads."""
        if self._threads:
            return
        self._stopping.clear()
        targets = [("timer", self._timer_loop), ("resync", self._resync_loop)]
        targets += [(f"worker-{i}", self._worker_loop) for i in range(self.workers)]
        for label, target in targets:
            thread = threading.Thread(target=target, name=f"reconcile-{label}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Reconcile scheduler started with {self.workers} workers")

    def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Stop all threads, letting in-flight reconciles finish."""
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        self._threads = []
        logger.info("Reconcile scheduler stopped")
