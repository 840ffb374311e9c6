# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry scheduling: per-submission timers and per-category batch queues.

The scheduler owns two pieces of shared state:

- a map of submission id to the asyncio task acting as its one-shot timer
- per-category sets of submission ids waiting for the periodic batch drain

Every mutation of that state happens in synchronous code with no ``await``
in between, so each operation is atomic with respect to the event loop.
Scheduling a retry for an id always cancels the previous timer for that id
first; execution of retries for one id is additionally serialized by a
per-id lock so a timer and a batch drain can never run the same submission
concurrently.

Example:
    Driving the scheduler from an orchestrator::

        scheduler = RetryScheduler(orchestrator.execute_retry, batch_interval=60)
        await scheduler.start()
        scheduler.schedule_retry("sub-1", 2_000)
        scheduler.enqueue(ErrorCategory.RATE_LIMIT, "sub-2")
        ...
        await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import math
import random
import weakref
from collections.abc import Awaitable, Callable
from typing import Any

from .logger import get_logger
from .models import ErrorCategory, RetryConfig
from .prometheus import SyncMetrics

DEFAULT_BATCH_INTERVAL = 60.0
JITTER_RATIO = 0.1


def calculate_retry_delay(
    retry_count: int,
    config: RetryConfig,
    *,
    rng: random.Random | None = None,
) -> int:
    """Compute the delay in milliseconds before the next retry attempt.

    The exponential delay is capped at ``max_delay_ms`` before jitter is
    applied, so a jittered delay may exceed the cap by up to 10%.

    Args:
        retry_count: The submission's current retry count. Attempt ``n + 1``
            uses ``n`` as the exponent, so the first retry is unscaled.
        config: Backoff parameters of the error category.
        rng: Random source for jitter; defaults to the ``random`` module.

    Returns:
        Delay in whole milliseconds, never negative.
    """
    delay = float(config.base_delay_ms)
    for _ in range(max(0, retry_count)):
        if delay >= config.max_delay_ms:
            break
        delay *= config.backoff_multiplier
    delay = min(delay, float(config.max_delay_ms))
    if config.jitter_enabled and delay > 0:
        uniform = (rng or random).uniform
        delay += delay * uniform(-JITTER_RATIO, JITTER_RATIO)
    return max(0, math.floor(delay))


class RetryScheduler:
    """Owns retry timers and batch queues for submissions.

    Attributes:
        logger: Logger instance for diagnostic output.
        metrics: Optional Prometheus collector updated with timer/queue sizes.
    """

    def __init__(
        self,
        execute_retry: Callable[[str], Awaitable[Any]],
        *,
        batch_interval: float = DEFAULT_BATCH_INTERVAL,
        logger=None,
        metrics: SyncMetrics | None = None,
    ):
        """Initialize the scheduler.

        Args:
            execute_retry: Coroutine function run when a retry fires. It is
                the orchestrator's ``execute_retry`` in production.
            batch_interval: Seconds between batch queue drains.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Optional metrics collector.
        """
        self._execute_retry = execute_retry
        self._batch_interval = max(0.05, float(batch_interval))
        self.logger = logger or get_logger()
        self.metrics = metrics

        self._timers: dict[str, asyncio.Task] = {}
        self._queues: dict[ErrorCategory, set[str]] = {}
        self._inflight: set[asyncio.Task] = set()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_batch: asyncio.Task | None = None
        self._closed = False

    # ----------------------------------------------------------------- timers
    def schedule_retry(self, submission_id: str, delay_ms: int) -> bool:
        """Arm a one-shot timer that runs the retry after ``delay_ms``.

        Any timer already pending for ``submission_id`` is cancelled first.

        Returns:
            False when the scheduler has been shut down, True otherwise.
        """
        if self._closed:
            self.logger.warning("Scheduler is shut down; retry for %s not scheduled", submission_id)
            return False
        self.cancel(submission_id)
        task = asyncio.create_task(
            self._fire_after(submission_id, max(0, int(delay_ms)) / 1000.0),
            name=f"crm-retry-{submission_id}",
        )
        self._timers[submission_id] = task
        self.logger.info("Retry for %s scheduled in %dms", submission_id, delay_ms)
        self._refresh_gauges()
        return True

    def cancel(self, submission_id: str) -> bool:
        """Cancel the pending timer of ``submission_id``, if any."""
        task = self._timers.pop(submission_id, None)
        if task is None:
            return False
        task.cancel()
        self._refresh_gauges()
        return True

    def has_timer(self, submission_id: str) -> bool:
        return submission_id in self._timers

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    async def _fire_after(self, submission_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        current = asyncio.current_task()
        # A replacement timer may have been armed while this one was waking up.
        if self._timers.get(submission_id) is not current:
            return
        del self._timers[submission_id]
        self._refresh_gauges()
        # Detach from the timer map so a retry that reschedules itself does
        # not cancel the task it is running in.
        self._inflight.add(current)
        try:
            await self._run(submission_id)
        finally:
            self._inflight.discard(current)

    async def _run(self, submission_id: str) -> None:
        lock = self._locks.get(submission_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[submission_id] = lock
        async with lock:
            try:
                await self._execute_retry(submission_id)
            except Exception:
                self.logger.exception("Retry execution failed for %s", submission_id)

    # ----------------------------------------------------------------- queues
    def enqueue(self, category: ErrorCategory, submission_id: str) -> None:
        """Add ``submission_id`` to the batch queue of ``category``."""
        self._queues.setdefault(ErrorCategory(category), set()).add(submission_id)
        self._refresh_gauges()

    def queued(self, category: ErrorCategory) -> frozenset[str]:
        return frozenset(self._queues.get(ErrorCategory(category), ()))

    @property
    def queued_count(self) -> int:
        return sum(len(ids) for ids in self._queues.values())

    async def process_queues(self) -> int:
        """Drain every category queue and run the retries it held.

        Each queue is swapped for an empty one before any retry runs, so ids
        enqueued during the drain wait for the next cycle. A pending timer for
        a drained id is cancelled since the batch is now running it.

        Returns:
            Number of retries executed.
        """
        snapshot: list[tuple[ErrorCategory, set[str]]] = []
        for category in list(self._queues):
            ids = self._queues[category]
            if ids:
                self._queues[category] = set()
                snapshot.append((category, ids))
        if not snapshot:
            return 0
        processed = 0
        for category, ids in snapshot:
            self.logger.info("Processing %d queued retries for category %s", len(ids), category.value)
            for submission_id in sorted(ids):
                if self._closed:
                    self._refresh_gauges()
                    return processed
                self.cancel(submission_id)
                await self._run(submission_id)
                processed += 1
        self._refresh_gauges()
        return processed

    # -------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the periodic batch processor."""
        if self._task_batch is not None and not self._task_batch.done():
            return
        self._closed = False
        self._stop.clear()
        self._task_batch = asyncio.create_task(self._batch_loop(), name="crm-retry-batch-loop")

    async def shutdown(self) -> None:
        """Cancel all pending timers and clear all queues without running them.

        Retries already executing are left to finish. A batch drain in
        progress stops before its next submission.
        """
        self._closed = True
        self._stop.set()
        self._wake_event.set()
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        self._queues.clear()
        self._refresh_gauges()
        if self._task_batch is not None:
            await asyncio.gather(self._task_batch, return_exceptions=True)
            self._task_batch = None
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    def wake(self) -> None:
        """Run the batch processor now instead of waiting for the interval."""
        self._wake_event.set()

    async def _batch_loop(self) -> None:
        while not self._stop.is_set():
            await self._wait_for_wakeup(self._batch_interval)
            if self._stop.is_set():
                break
            try:
                await self.process_queues()
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in retry batch loop: %s", exc)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    def _refresh_gauges(self) -> None:
        if self.metrics is None:
            return
        self.metrics.set_pending_timers(self.pending_timers)
        self.metrics.set_queued(self.queued_count)
