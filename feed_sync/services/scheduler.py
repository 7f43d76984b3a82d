"""Task scheduler for periodic operations.

A single tick loop (minute granularity by default) runs every enabled task
whose next_run has passed. Due tasks run one after another, never
concurrently, in registration order. A task is rescheduled from the time its
callback finished, whether it succeeded or not.
"""

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from feed_sync.logging_config import get_logger
from feed_sync.models.schemas import ScheduledTask, TaskCallback

DEFAULT_TICK_SECONDS = 60.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskScheduler:
    """Registry of named periodic tasks driven by a tick loop."""

    def __init__(
        self,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._tasks: Dict[str, ScheduledTask] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self.logger = get_logger(__name__)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the tick loop on the running event loop.

        The first tick happens immediately.
        """
        if self.is_running:
            self.logger.warning("Scheduler already running")
            return

        self.logger.info("Starting task scheduler...")
        self._loop_task = asyncio.get_running_loop().create_task(self._run_loop())

    async def stop(self) -> None:
        """Stop the tick loop.

        A task that is already executing runs to completion first; only the
        idle wait between ticks is cancelled.
        """
        if not self.is_running:
            self.logger.warning("Scheduler not running")
            return

        self.logger.info("Stopping task scheduler...")
        loop_task = self._loop_task
        self._loop_task = None

        async with self._tick_lock:
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        self.logger.info("Task scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _run_loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.tick_seconds)

    # -- registry ----------------------------------------------------------

    def register(self, task_id: str, callback: TaskCallback, interval_minutes: int) -> ScheduledTask:
        """Register a task, replacing any task with the same id.

        The first run is due one interval after registration.
        """
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be greater than zero")
        if task_id in self._tasks:
            self.logger.warning(f"Task {task_id} already registered, updating...")

        next_run = self._clock() + timedelta(minutes=interval_minutes)
        task = ScheduledTask(
            id=task_id,
            callback=callback,
            interval_minutes=interval_minutes,
            next_run=next_run,
        )
        self._tasks[task_id] = task
        self.logger.info(
            f"Registered task: {task_id} (interval: {interval_minutes}m, next run: {next_run.isoformat()})"
        )
        return task

    def unregister(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is not None:
            self.logger.info(f"Unregistered task: {task_id}")
        return task is not None

    def enable(self, task_id: str) -> bool:
        return self._set_enabled(task_id, True)

    def disable(self, task_id: str) -> bool:
        return self._set_enabled(task_id, False)

    def _set_enabled(self, task_id: str, enabled: bool) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            self.logger.warning(f"Task not found: {task_id}")
            return False

        task.enabled = enabled
        self.logger.info(f"{'Enabled' if enabled else 'Disabled'} task: {task_id}")
        return True

    def update_interval(self, task_id: str, interval_minutes: int) -> bool:
        """Change a task's interval and recompute its next run.

        next_run is measured from the last run, or from now if the task has
        never run.
        """
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be greater than zero")

        task = self._tasks.get(task_id)
        if task is None:
            self.logger.warning(f"Task not found: {task_id}")
            return False

        task.interval_minutes = interval_minutes
        base = task.last_run or self._clock()
        task.next_run = base + timedelta(minutes=interval_minutes)

        self.logger.info(
            f"Updated task interval: {task_id} (new interval: {interval_minutes}m, "
            f"next run: {task.next_run.isoformat()})"
        )
        return True

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def list_tasks(self) -> List[ScheduledTask]:
        return list(self._tasks.values())

    def clear(self) -> None:
        count = len(self._tasks)
        self._tasks.clear()
        self.logger.info(f"Cleared {count} tasks")

    # -- execution ---------------------------------------------------------

    async def run_now(self, task_id: str) -> None:
        """Run a task immediately, outside its schedule.

        Waits for any tick in progress, so registered tasks never overlap.

        Raises:
            KeyError: If no task with this id is registered
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Task not found: {task_id}")

        self.logger.info(f"Running task immediately: {task_id}")
        async with self._tick_lock:
            await self._execute(task)

    async def tick(self) -> int:
        """Run every enabled task that is due.

        Returns:
            Number of tasks executed
        """
        async with self._tick_lock:
            now = self._clock()
            due = [t for t in self._tasks.values() if t.enabled and t.next_run <= now]
            if not due:
                return 0

            self.logger.debug(f"Found {len(due)} due tasks")
            for task in due:
                await self._execute(task)
            return len(due)

    async def _execute(self, task: ScheduledTask) -> None:
        started = self._clock()
        try:
            self.logger.info(f"Executing task: {task.id}")
            result = task.callback()
            if inspect.isawaitable(result):
                await result
            elapsed = (self._clock() - started).total_seconds()
            self.logger.info(f"Task {task.id} completed in {elapsed:.1f}s")
        except Exception as e:
            self.logger.error(f"Task {task.id} failed: {e}", exc_info=True)
        finally:
            completed = self._clock()
            task.last_run = completed
            task.next_run = completed + timedelta(minutes=task.interval_minutes)
            self.logger.debug(f"Task {task.id} next run: {task.next_run.isoformat()}")
