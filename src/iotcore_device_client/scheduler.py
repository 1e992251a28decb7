"""
Recurring timed tasks for the single-threaded event loop.

Tasks are kept in a heap keyed by due time and fired from the loop via
run_due(). Cancelling drops the task from the live table; stale heap entries
are skipped lazily.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TaskHandle:
    task_id: int


TaskAction = Callable[[TaskHandle], None]


@dataclass(slots=True)
class _Task:
    handle: TaskHandle
    interval_s: float
    action: TaskAction
    remaining: Optional[int]  # None repeats forever


class TimedTaskScheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._seq = itertools.count()
        self._tasks: dict[int, _Task] = {}
        self._heap: list[tuple[float, int, int]] = []

    def schedule_recurring(
        self,
        interval_s: float,
        action: TaskAction,
        *,
        repetitions: Optional[int] = None,
    ) -> TaskHandle:
        """Run action every interval_s seconds, first after one interval."""
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if repetitions is not None and repetitions <= 0:
            raise ValueError("repetitions must be positive or None")

        handle = TaskHandle(next(self._ids))
        self._tasks[handle.task_id] = _Task(handle, interval_s, action, repetitions)
        self._push(self._clock() + interval_s, handle.task_id)
        logger.debug("Scheduled task %d every %.3fs", handle.task_id, interval_s)
        return handle

    def cancel(self, handle: Optional[TaskHandle]) -> bool:
        """Cancel a task. Unknown, finished or already cancelled handles are ignored."""
        if handle is None:
            return False
        task = self._tasks.pop(handle.task_id, None)
        if task is None:
            return False
        logger.debug("Cancelled task %d", handle.task_id)
        return True

    def is_live(self, handle: Optional[TaskHandle]) -> bool:
        return handle is not None and handle.task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def seconds_until_next(self) -> Optional[float]:
        while self._heap and self._heap[0][2] not in self._tasks:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(0.0, self._heap[0][0] - self._clock())

    def run_due(self) -> int:
        """Fire every task due at the current time. Returns the number fired."""
        now = self._clock()
        fired = 0
        while self._heap and self._heap[0][0] <= now:
            _, _, task_id = heapq.heappop(self._heap)
            task = self._tasks.get(task_id)
            if task is None:
                continue

            if task.remaining is not None:
                task.remaining -= 1
            if task.remaining == 0:
                del self._tasks[task_id]
            else:
                self._push(now + task.interval_s, task_id)

            fired += 1
            try:
                task.action(task.handle)
            except Exception:
                logger.exception("Timed task %d failed", task_id)
        return fired

    def clear(self) -> None:
        self._tasks.clear()
        self._heap.clear()

    def _push(self, due: float, task_id: int) -> None:
        heapq.heappush(self._heap, (due, next(self._seq), task_id))
