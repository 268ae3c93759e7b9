"""Bounded in-process runner for ingestion pipelines.

Pipelines run as asyncio tasks started at submission time. The runner keeps
a registry of the tasks still in flight so they can be observed and awaited
on shutdown, and caps how many of them execute at once with a semaphore.
Submission itself never waits: a task that cannot acquire a slot is
created immediately and simply queues on the semaphore.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine


class PipelineTaskRunner:
    """Registry of in-flight pipeline tasks with bounded concurrency.

    Args:
        max_concurrency: Number of pipelines allowed to execute at the same
            time. Further submissions wait for a free slot.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self._slots = asyncio.Semaphore(max_concurrency)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running: set[str] = set()

    def submit(
        self,
        key: str,
        job: Callable[[], Coroutine[Any, Any, None]],
    ) -> asyncio.Task[None]:
        """Schedule ``job`` as a background task registered under ``key``.

        Must be called from inside a running event loop.

        Args:
            key: Identifier of the work, usually the upload id.
            job: Zero-argument coroutine factory; it is only invoked once a
                concurrency slot is free.

        Returns:
            The created task.

        Raises:
            ValueError: If a task with the same key is still in flight.
        """
        if key in self._tasks:
            raise ValueError(f"Task {key} is already in flight")

        async def _run() -> None:
            async with self._slots:
                self._running.add(key)
                try:
                    await job()
                finally:
                    self._running.discard(key)

        task = asyncio.create_task(_run(), name=f"pipeline-{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return task

    def _forget(self, key: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(key, None)
        if task.cancelled():
            logger.warning(f"Pipeline task {key} was cancelled")
        elif task.exception() is not None:
            logger.opt(exception=task.exception()).error(
                f"Pipeline task {key} crashed"
            )

    def in_flight(self) -> list[str]:
        """Return the keys of all submitted tasks that have not finished."""
        return list(self._tasks)

    def is_running(self, key: str) -> bool:
        """Return True while ``key`` holds a concurrency slot."""
        return key in self._running

    async def drain(self) -> None:
        """Wait until every task submitted so far has finished."""
        while self._tasks:
            await asyncio.gather(
                *list(self._tasks.values()),
                return_exceptions=True,
            )
