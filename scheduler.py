#!/usr/bin/env python3
"""
Refresh Scheduler

Runs refresh batches on a fixed interval inside a single asyncio task:

- IDLE between batches, RUNNING while a batch is in progress
- STOPPED once the stop signal is set or the task is cancelled; it never restarts
- A batch can also be triggered by hand with tick()
- A failing batch is logged and the loop waits for the next interval
"""

import asyncio
from enum import Enum
from typing import Optional

from config import get_logger
from telemetry import trace_span
from updater import BatchReport, FeedUpdater

# Module-specific logger
logger = get_logger("scheduler")


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class RefreshScheduler:
    """Periodically runs FeedUpdater.update_feeds()."""

    def __init__(self, updater: FeedUpdater, interval_seconds: float):
        """Initialize the scheduler.

        Args:
            updater: Runs the actual batches
            interval_seconds: Pause between the end of one batch and the next

        Raises:
            ValueError: If interval_seconds is not positive
        """
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got: {interval_seconds}")
        self.updater = updater
        self.interval_seconds = interval_seconds
        self.last_report: Optional[BatchReport] = None
        self._state = SchedulerState.IDLE
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    def _should_continue(self) -> bool:
        if self._state is SchedulerState.STOPPED:
            return False
        return self._stop_event is None or not self._stop_event.is_set()

    @trace_span("scheduler.tick", tracer_name="scheduler")
    async def tick(self) -> BatchReport:
        """Run one refresh batch now.

        Errors loading the feed list propagate to the caller.
        """
        if self._state is SchedulerState.STOPPED:
            raise RuntimeError("Scheduler is stopped")
        if self._state is SchedulerState.RUNNING:
            raise RuntimeError("A refresh batch is already running")

        self._state = SchedulerState.RUNNING
        try:
            report = await self.updater.update_feeds(should_continue=self._should_continue)
        finally:
            if self._state is SchedulerState.RUNNING:
                self._state = SchedulerState.IDLE

        self.last_report = report
        return report

    def start(self, stop_event: Optional[asyncio.Event] = None,
              run_immediately: bool = False) -> asyncio.Task:
        """Launch the recurring loop as a task.

        Args:
            stop_event: Setting it stops the loop; one is created when omitted
            run_immediately: Run a batch right away instead of after one interval
        """
        if self._state is SchedulerState.STOPPED:
            raise RuntimeError("Scheduler is stopped")
        if self._task is not None and not self._task.done():
            raise RuntimeError("Scheduler is already running")

        self._stop_event = stop_event if stop_event is not None else asyncio.Event()
        self._task = asyncio.create_task(self._run(run_immediately))
        return self._task

    def stop(self) -> None:
        """Signal the loop to stop. In-flight fetches finish; no new feeds start."""
        if self._state is not SchedulerState.STOPPED:
            logger.info("Scheduler stop requested")
        self._state = SchedulerState.STOPPED
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait(self) -> None:
        """Wait until the loop task has finished, however it ended."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _run(self, run_immediately: bool) -> None:
        logger.info(f"Scheduler started, refreshing every {self.interval_seconds:.0f}s")
        try:
            if run_immediately:
                await self._tick_logged()

            while not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
                if self._stop_event.is_set() or self._state is SchedulerState.STOPPED:
                    break
                await self._tick_logged()
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled - shutting down")
            raise
        finally:
            self._state = SchedulerState.STOPPED
            logger.info("Scheduler stopped")

    async def _tick_logged(self) -> None:
        """Run a batch from the loop; failures are logged, never fatal."""
        try:
            await self.tick()
        except Exception as e:
            logger.exception(f"Refresh batch failed: {e}")
