"""Thread-safe progress tracking for running pipelines."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from .models import MigrationProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[MigrationProgress], None]


class ProgressTracker:
    """Counters for one pipeline, safe to read while batches commit.

    Counters only grow; ``reset`` is the one explicit way to zero them (used
    by rollback). Subscribers are called outside the lock with an immutable
    copy of the progress.
    """

    def __init__(
        self,
        pipeline_id: str,
        state: str = "preparing",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._started: float | None = None
        self._progress = MigrationProgress(pipeline_id=pipeline_id, state=state)
        self._subscribers: list[ProgressCallback] = []

    def snapshot(self) -> MigrationProgress:
        with self._lock:
            return replace(self._progress)

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def set_state(self, state: str) -> None:
        with self._lock:
            self._progress.state = state
            self._touch()
            current = replace(self._progress)
        self._notify(current)

    def set_total(self, total: int | None) -> None:
        with self._lock:
            self._progress.total_estimate = total
            self._update_eta()

    def restore(self, succeeded: int, warned: int, failed: int, batches: int) -> None:
        """Resume counters from a checkpoint; never moves them backwards."""
        with self._lock:
            p = self._progress
            p.succeeded = max(p.succeeded, succeeded)
            p.warned = max(p.warned, warned)
            p.failed = max(p.failed, failed)
            p.processed = p.succeeded + p.warned + p.failed
            p.batches_committed = max(p.batches_committed, batches)

    def record_batch(self, succeeded: int, warned: int, failed: int) -> MigrationProgress:
        """Add a committed batch's outcome."""
        if min(succeeded, warned, failed) < 0:
            raise ValueError("Batch counts cannot be negative")
        with self._lock:
            now = self._clock()
            if self._started is None:
                self._started = now
            p = self._progress
            p.succeeded += succeeded
            p.warned += warned
            p.failed += failed
            p.processed = p.succeeded + p.warned + p.failed
            p.batches_committed += 1
            elapsed = now - self._started
            if elapsed > 0:
                p.rate_per_second = p.processed / elapsed
            self._update_eta()
            self._touch()
            current = replace(p)
        self._notify(current)
        return current

    def reset(self) -> None:
        with self._lock:
            p = self._progress
            self._progress = MigrationProgress(
                pipeline_id=p.pipeline_id, state=p.state, total_estimate=p.total_estimate
            )
            self._started = None
            current = replace(self._progress)
        self._notify(current)

    def _update_eta(self) -> None:
        p = self._progress
        if p.total_estimate and p.rate_per_second > 0:
            p.eta_seconds = max(p.total_estimate - p.processed, 0) / p.rate_per_second
        else:
            p.eta_seconds = None

    def _touch(self) -> None:
        self._progress.updated_at = datetime.now(timezone.utc).isoformat()

    def _notify(self, progress: MigrationProgress) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(progress)
            except Exception:
                logger.exception(
                    f"Progress subscriber failed for pipeline {progress.pipeline_id}"
                )
