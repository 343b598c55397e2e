"""
Task fan-out and result correlation.

Producers publish to ``tasks.<type>``; every subscribed agent receives the
task and decides for itself whether to run it, so one task may yield
several results. Results from every agent share ``task.result`` and are
matched back to their task by ``taskId`` alone.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from .bus.base import MessageBus, Subscription
from .exceptions import MessageValidationError
from .metrics import metrics_manager
from .models import Task, TaskPriority, TaskResult, new_task_id

RESULT_TOPIC = "task.result"

logger = logging.getLogger("flock.task_fanout")


class TaskProducer:
    """Publishes tasks to their type-scoped topic."""

    def __init__(self, bus: MessageBus):
        self.bus = bus

    async def submit(
        self,
        task_type: str,
        data: Any,
        priority: TaskPriority = TaskPriority.NORMAL,
        timeout_ms: Optional[int] = None,
        task_id: Optional[str] = None,
    ) -> Task:
        """Build, validate and publish a task. Returns the published task.

        Raises:
            TaskValidationError: ``task_type`` or ``data`` is empty.
        """
        draft = Task(
            task_id=task_id or new_task_id(),
            task_type=task_type,
            data=data,
            priority=priority,
            timeout_ms=timeout_ms,
        )
        # Same checks an agent applies on receipt
        task = Task.from_dict(draft.to_dict())
        await self.bus.publish(task.topic, task.to_dict())
        metrics_manager.record_task_published(task.task_type)
        logger.info(f"Published task {task.task_id} to {task.topic}")
        return task


class ResultCollector:
    """Subscribes to ``task.result`` and groups results by task id.

    Only the most recent ``max_tracked`` task ids are kept.
    """

    def __init__(self, bus: MessageBus, max_tracked: int = 1000):
        self.bus = bus
        self.max_tracked = max_tracked
        self._results: "OrderedDict[str, List[TaskResult]]" = OrderedDict()
        self._changed = asyncio.Condition()
        self._sub: Optional[Subscription] = None
        self._pump: Optional[asyncio.Task] = None

    async def start(self):
        if self._sub is not None:
            return
        self._sub = await self.bus.subscribe(RESULT_TOPIC)
        self._pump = asyncio.create_task(self._run(), name="result-collector")

    async def stop(self):
        if self._sub is None:
            return
        await self._sub.unsubscribe()
        await self._pump
        self._sub = None
        self._pump = None

    async def __aenter__(self) -> "ResultCollector":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    async def _run(self):
        async for message in self._sub:
            try:
                result = TaskResult.from_dict(message.data)
            except MessageValidationError as e:
                logger.warning(f"Dropping malformed task result: {e}")
                metrics_manager.record_dropped_message("task_result")
                continue
            async with self._changed:
                self._results.setdefault(result.task_id, []).append(result)
                self._results.move_to_end(result.task_id)
                while len(self._results) > self.max_tracked:
                    self._results.popitem(last=False)
                self._changed.notify_all()

    def results_for(self, task_id: str) -> List[TaskResult]:
        return list(self._results.get(task_id, []))

    async def collect(self, task_id: str, expected: int = 1, timeout: float = 5.0) -> List[TaskResult]:
        """Wait until ``expected`` results for ``task_id`` arrived or ``timeout`` passes.

        Returns whatever arrived; fewer than ``expected`` means the deadline hit.
        """
        def enough() -> bool:
            return len(self._results.get(task_id, [])) >= expected

        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait_for(enough), timeout=timeout)
            except asyncio.TimeoutError:
                logger.info(
                    f"Collected {len(self._results.get(task_id, []))}/{expected} results for {task_id} "
                    f"before timeout"
                )
        return self.results_for(task_id)

    def summary(self) -> Dict[str, Any]:
        return {
            "tracked_tasks": len(self._results),
            "results": sum(len(r) for r in self._results.values()),
        }
