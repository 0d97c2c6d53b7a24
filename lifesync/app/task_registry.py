"""
Centralized TaskRegistry for LifeSync task and timer lifecycle management.

Every background task and timer (heartbeat, reconnect, subscription retry,
presence tick, per-connection sender) is a named asyncio.Task owned by one
registry, so a single close() or shutdown_all() tears all of them down.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Any | Awaitable[Any]]


class TaskMetadata:
    """Metadata for tracked asyncio.Tasks."""

    def __init__(self, task: asyncio.Task[Any], task_name: str, task_type: str = "unknown"):
        """
        Initialize task metadata.

        Args:
            task: The asyncio.Task instance to track
            task_name: Human-readable name for this task
            task_type: Categorization of task (e.g., 'timer', 'interval', 'sender', 'lifecycle')
        """
        self.task = task
        self.task_name = task_name
        self.task_type = task_type
        self.created_at = time.monotonic()
        self.is_lifecycle = task_type in ("lifecycle", "system", "background")

    def __repr__(self):
        """String representation of task metadata for logging."""
        status = "done" if self.task.done() else "pending"
        return f"TaskMetadata({self.task_name}, {self.task_type}, {status})"


async def _invoke(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class TaskRegistry:
    """
    Asyncio task registry with named, cancellable timers.

    Task names are unique: registering a name that is already live replaces
    (cancels) the previous task, so a re-armed timer never fires twice.
    """

    def __init__(self, owner: str = "lifesync"):
        """Initialize TaskRegistry with empty task collections."""
        self._owner = owner
        self._active_tasks: dict[asyncio.Task[Any], TaskMetadata] = {}
        self._task_names: dict[str, asyncio.Task[Any]] = {}
        self._lifecycle_tasks: set[asyncio.Task[Any]] = set()
        self._shutdown_in_progress = False
        self._closed = False

        logger.debug("TaskRegistry initialized", owner=owner)

    @property
    def closed(self) -> bool:
        return self._closed

    def register_task(
        self, coro: Coroutine[Any, Any, Any], task_name: str, task_type: str = "unknown"
    ) -> asyncio.Task[Any]:
        """
        Register and create a tracked asyncio.Task.

        Args:
            coro: The coroutine to wrap as a task
            task_name: Unique identifier for this task
            task_type: Category for task management (timer, interval, sender, lifecycle)

        Returns:
            The created asyncio.Task that is now tracked

        Raises:
            RuntimeError: If the registry is shutting down or closed
        """
        if self._shutdown_in_progress or self._closed:
            coro.close()
            logger.warning("Attempting to register task after shutdown - denied", task_name=task_name)
            raise RuntimeError("Task registration denied during shutdown")

        self.cancel(task_name)

        task: asyncio.Task[Any] = asyncio.create_task(coro, name=task_name)
        metadata = TaskMetadata(task, task_name, task_type)

        self._active_tasks[task] = metadata
        self._task_names[task_name] = task
        if metadata.is_lifecycle:
            self._lifecycle_tasks.add(task)

        def task_completion_callback(completed_task: asyncio.Task[Any]) -> None:
            """Automatic cleanup when task completes."""
            self._forget(completed_task, task_name)
            if completed_task.cancelled():
                return
            error = completed_task.exception()
            if error is not None:
                logger.error(
                    "Tracked task failed",
                    task_name=task_name,
                    error=str(error),
                    error_type=type(error).__name__,
                )

        task.add_done_callback(task_completion_callback)
        logger.debug("Registered task", task_name=task_name, task_type=task_type)
        return task

    def schedule_later(self, task_name: str, delay: float, callback: TimerCallback) -> asyncio.Task[Any]:
        """
        Run callback once after delay seconds.

        Args:
            task_name: Timer name; re-scheduling the same name replaces the pending timer
            delay: Seconds to wait before firing
            callback: Sync or async callable with no arguments

        Returns:
            The timer task
        """

        async def _timer() -> None:
            await asyncio.sleep(max(0.0, delay))
            await _invoke(callback)

        return self.register_task(_timer(), task_name, "timer")

    def schedule_interval(
        self, task_name: str, interval: float, callback: TimerCallback, *, immediate: bool = False
    ) -> asyncio.Task[Any]:
        """
        Run callback every interval seconds until cancelled.

        A failing callback is logged and the interval keeps running.

        Args:
            task_name: Timer name
            interval: Seconds between invocations
            callback: Sync or async callable with no arguments
            immediate: Fire once before the first sleep

        Returns:
            The interval task
        """

        async def _interval() -> None:
            if immediate:
                await self._guarded(task_name, callback)
            while True:
                await asyncio.sleep(interval)
                await self._guarded(task_name, callback)

        return self.register_task(_interval(), task_name, "interval")

    async def _guarded(self, task_name: str, callback: TimerCallback) -> None:
        try:
            await _invoke(callback)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            # Interval callbacks must not kill the interval
            logger.error(
                "Interval callback failed",
                task_name=task_name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def is_scheduled(self, task_name: str) -> bool:
        task = self._task_names.get(task_name)
        return task is not None and not task.done()

    def cancel(self, task_name: str) -> bool:
        """
        Cancel a named task synchronously without waiting for it to unwind.

        Returns:
            True if a live task was cancelled
        """
        task = self._task_names.get(task_name)
        if task is None:
            return False
        self._forget(task, task_name)
        if task.done():
            return False
        # Cancelling from inside the task itself would abort the caller
        if task is asyncio.current_task():
            return False
        task.cancel()
        logger.debug("Cancelled task", task_name=task_name)
        return True

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every task whose name starts with prefix."""
        names = [name for name in self._task_names if name.startswith(prefix)]
        return sum(1 for name in names if self.cancel(name))

    async def cancel_task(self, task: str | asyncio.Task[Any], wait_timeout: float = 2.0) -> bool:
        """
        Cancel specific task and wait for it to finish unwinding.

        Args:
            task: Task reference or name
            wait_timeout: Maximum time to wait for cancellation completion

        Returns:
            True if cancelled successfully, False if not found or not completed in time
        """
        if isinstance(task, str):
            target_task = self._task_names.get(task)
            if target_task is None:
                logger.debug("Cancellation target not found", task=task)
                return False
        else:
            target_task = task
            if target_task not in self._active_tasks:
                logger.debug("Cancellation task not found in active tasks")
                return False

        if target_task.done():
            return True

        target_task.cancel()
        try:
            await asyncio.wait_for(target_task, timeout=wait_timeout)
        except asyncio.CancelledError:
            return True
        except TimeoutError:
            logger.warning("Cancellation timeout reached", task_name=target_task.get_name())
            return False
        except Exception as e:  # pylint: disable=broad-exception-caught
            # The task raised while unwinding; it is finished either way
            logger.error("Unexpected task completion error", error=str(e), error_type=type(e).__name__)
        return True

    def cancel_all(self) -> int:
        """
        Cancel every tracked task synchronously.

        Returns:
            Number of tasks that were cancelled
        """
        cancelled = 0
        current = asyncio.current_task() if self._has_running_loop() else None
        for task, metadata in list(self._active_tasks.items()):
            self._forget(task, metadata.task_name)
            if not task.done() and task is not current:
                task.cancel()
                cancelled += 1
        self._lifecycle_tasks.clear()
        if cancelled:
            logger.debug("Cancelled all tasks", owner=self._owner, cancelled_count=cancelled)
        return cancelled

    def close(self) -> None:
        """Cancel everything and refuse further registrations."""
        self.cancel_all()
        self._closed = True

    async def shutdown_all(self, timeout: float = 5.0) -> bool:
        """
        Gracefully shutdown all tracked tasks with timeout coordination.

        Lifecycle tasks are cancelled first, then the remaining tasks.

        Args:
            timeout: Global timeout for task completion after cancellation

        Returns:
            True if all tasks terminated within the timeout
        """
        if self._shutdown_in_progress:
            logger.warning("Shutdown already in progress")
            return False

        self._shutdown_in_progress = True
        logger.info("TaskRegistry shutting down", owner=self._owner, active_tasks=len(self._active_tasks))

        tasks = list(self._active_tasks)
        ordered = [t for t in tasks if t in self._lifecycle_tasks] + [
            t for t in tasks if t not in self._lifecycle_tasks
        ]
        for task in ordered:
            if not task.done():
                task.cancel()

        success = True
        if ordered:
            _done, pending = await asyncio.wait(ordered, timeout=timeout)
            success = not pending
            if pending:
                logger.error("Shutdown timeout - tasks still active", remaining=len(pending))

        for task, metadata in list(self._active_tasks.items()):
            self._forget(task, metadata.task_name)
        self._lifecycle_tasks.clear()
        self._shutdown_in_progress = False
        self._closed = True

        logger.info("TaskRegistry shutdown complete", owner=self._owner, success=success)
        return success

    def list_active_tasks(self) -> list[TaskMetadata]:
        """Return list of currently registered TaskMetadata."""
        return [m for m in self._active_tasks.values() if not m.task.done()]

    def get_registry_info(self) -> dict[str, Any]:
        """Return registry state information."""
        active = self.list_active_tasks()
        by_type: dict[str, int] = {}
        for metadata in active:
            by_type[metadata.task_type] = by_type.get(metadata.task_type, 0) + 1
        return {
            "owner": self._owner,
            "active_tasks": len(active),
            "tasks_by_type": by_type,
            "lifecycle_tasks": len(self._lifecycle_tasks),
            "registry_shutdown_in_progress": self._shutdown_in_progress,
            "closed": self._closed,
        }

    def _forget(self, task: asyncio.Task[Any], task_name: str) -> None:
        self._active_tasks.pop(task, None)
        self._lifecycle_tasks.discard(task)
        if self._task_names.get(task_name) is task:
            del self._task_names[task_name]

    @staticmethod
    def _has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True
