"""Tests for builds/tasks.py module."""

import logging
import threading

import pytest

from appbuilder.builds.tasks import MAX_TASKS, TaskGroup


def fail(message: str) -> None:
    raise RuntimeError(message)


class TestTaskGroup:
    """Tests for TaskGroup."""

    def test_results_available_after_join(self):
        """Futures should hold task results once joined."""
        with TaskGroup("t") as tasks:
            future = tasks.spawn("add", lambda a, b: a + b, 1, 2)
        assert future.result() == 3

    def test_block_waits_for_every_task(self):
        """Leaving the block should wait for outstanding tasks."""
        release = threading.Event()
        done = []

        def slow():
            release.wait(timeout=5)
            done.append(True)

        with TaskGroup("t") as tasks:
            tasks.spawn("slow", slow)
            release.set()
        assert done == [True]

    def test_required_failure_raised(self):
        """A required failure should be raised when joining."""
        with pytest.raises(RuntimeError, match="boom"):
            with TaskGroup("t") as tasks:
                tasks.spawn("fails", fail, "boom")

    def test_first_required_failure_wins(self):
        """The first failing required task in spawn order is raised."""
        with pytest.raises(RuntimeError, match="first"):
            with TaskGroup("t") as tasks:
                tasks.spawn("a", fail, "first")
                tasks.spawn("b", fail, "second")

    def test_best_effort_failure_logged(self, caplog):
        """A best-effort failure should only log a warning."""
        with caplog.at_level(logging.WARNING, logger="appbuilder.builds.tasks"):
            with TaskGroup("t") as tasks:
                tasks.spawn("download", fail, "offline", required=False)
        assert "offline" in caplog.text

    def test_body_error_not_masked(self):
        """An error in the block should win over task failures."""
        with pytest.raises(ValueError, match="body"):
            with TaskGroup("t") as tasks:
                tasks.spawn("fails", fail, "task")
                raise ValueError("body")

    def test_task_limit(self):
        """Spawning beyond the limit should be refused."""
        with TaskGroup("t") as tasks:
            for i in range(MAX_TASKS):
                tasks.spawn(f"t{i}", lambda: None)
            with pytest.raises(RuntimeError, match="limited"):
                tasks.spawn("extra", lambda: None)

    def test_spawn_after_join_refused(self):
        """A joined group should not accept new tasks."""
        tasks = TaskGroup("t")
        tasks.join()
        with pytest.raises(RuntimeError, match="already joined"):
            tasks.spawn("late", lambda: None)
