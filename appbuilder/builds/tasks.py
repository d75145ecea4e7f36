"""Small, bounded groups of background tasks.

Phases overlap a handful of slow external calls (cache transfer, image
pushes, log streaming) with their own work. A TaskGroup runs those calls on
a fixed-size thread pool and guarantees every one of them has finished
before the group is left, whether or not its result matters:

- required tasks: the first failure (in spawn order) is raised by join();
- best-effort tasks: failures are logged as warnings and discarded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)

MAX_TASKS = 3


@dataclass
class _Task:
    name: str
    future: Future[Any]
    required: bool


class TaskGroup:
    """Run a statically bounded number of named tasks and join them all.

    Use as a context manager; leaving the block always joins. If the block
    itself raised, required task failures are logged instead of raised so
    the original error is not masked.

    Args:
        name: Group name for log messages.
        max_tasks: Upper bound on tasks spawned into the group.
    """

    def __init__(self, name: str, max_tasks: int = MAX_TASKS) -> None:
        self.name = name
        self.max_tasks = max_tasks
        self._tasks: list[_Task] = []
        self._executor = ThreadPoolExecutor(
            max_workers=max_tasks,
            thread_name_prefix=f"appbuilder-{name}",
        )
        self._joined = False

    def spawn(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        required: bool = True,
        **kwargs: Any,
    ) -> Future[Any]:
        """Start a task.

        Args:
            name: Task name for log messages.
            fn: Callable to run.
            args: Positional arguments for fn.
            required: Whether a failure should be raised by join().
            kwargs: Keyword arguments for fn.

        Returns:
            The task's future.

        Raises:
            RuntimeError: If the group is full or already joined.
        """
        if self._joined:
            raise RuntimeError(f"Task group {self.name} already joined")
        if len(self._tasks) >= self.max_tasks:
            raise RuntimeError(f"Task group {self.name} is limited to {self.max_tasks} tasks")
        logger.debug("Starting task %s/%s", self.name, name)
        future = self._executor.submit(fn, *args, **kwargs)
        self._tasks.append(_Task(name=name, future=future, required=required))
        return future

    def _wait_all(self) -> list[tuple[_Task, BaseException]]:
        wait([task.future for task in self._tasks])
        self._executor.shutdown(wait=True)
        self._joined = True
        failures = []
        for task in self._tasks:
            error = task.future.exception()
            if error is not None:
                failures.append((task, error))
        return failures

    def join(self) -> None:
        """Wait for every task; raise the first required failure.

        Raises:
            Exception: The first failing required task's exception.
        """
        if self._joined:
            return
        first_required: BaseException | None = None
        for task, error in self._wait_all():
            if task.required:
                logger.error("Task %s/%s failed: %s", self.name, task.name, error)
                if first_required is None:
                    first_required = error
            else:
                logger.warning("Task %s/%s failed: %s", self.name, task.name, error)
        if first_required is not None:
            raise first_required

    def __enter__(self) -> TaskGroup:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self.join()
            return
        if self._joined:
            return
        for task, error in self._wait_all():
            logger.warning("Task %s/%s failed: %s", self.name, task.name, error)


__all__ = ["MAX_TASKS", "TaskGroup"]
