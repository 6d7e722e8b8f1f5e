"""搜索进度广播。

编排器每处理完一个候选调用一次 publish，订阅方通过 stream() 异步迭代快照，
也可以用 latest() 轮询最近一次快照。

使用示例：
    reporter = ProgressReporter()
    stream = reporter.stream(task.id)
    async for snapshot in stream:
        print(snapshot.current_iteration, snapshot.total_iterations)
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from optimizer.search.models import EvaluationResult, TaskStatus
from optimizer.search.task import SearchTask

logger = logging.getLogger(__name__)

# 每条结果的内存占用估算（MB）
MEMORY_PER_RESULT_MB = 0.05


@dataclass(frozen=True)
class ProgressSnapshot:
    task_id: str
    status: TaskStatus
    current_iteration: int
    total_iterations: int
    current_best: EvaluationResult | None = None
    recent_results: tuple[EvaluationResult, ...] = ()
    estimated_time_remaining_seconds: float = 0.0
    resource_usage: dict[str, float] = field(default_factory=dict)

    @property
    def percentage(self) -> float:
        if self.total_iterations <= 0:
            return 0.0
        return min(100.0, self.current_iteration / self.total_iterations * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "status": self.status.value,
            "currentIteration": self.current_iteration,
            "totalIterations": self.total_iterations,
            "percentage": self.percentage,
            "currentBest": self.current_best.to_dict() if self.current_best else None,
            "recentResults": [r.to_dict() for r in self.recent_results],
            "estimatedTimeRemaining": self.estimated_time_remaining_seconds,
            "resourceUsage": dict(self.resource_usage),
        }


def estimate_remaining(elapsed: float, current: int, total: int) -> float:
    """按已用时间线性外推剩余时间（秒），尚无进度时返回 0。"""
    if current <= 0:
        return 0.0
    return elapsed / current * max(0, total - current)


class ProgressReporter:
    """进度快照的发布者，每个订阅方一个 asyncio.Queue。"""

    def __init__(self) -> None:
        self._latest: dict[str, ProgressSnapshot] = {}
        self._subscribers: list[tuple[str | None, asyncio.Queue]] = []
        self._cpu_marks: dict[str, float] = {}

    def publish(self, task: SearchTask) -> ProgressSnapshot:
        snapshot = self._snapshot(task)
        self._latest[task.id] = snapshot
        for task_id, queue in list(self._subscribers):
            if task_id is None or task_id == task.id:
                queue.put_nowait(snapshot)
        if task.status.is_terminal:
            self._cpu_marks.pop(task.id, None)
        return snapshot

    def latest(self, task_id: str) -> ProgressSnapshot | None:
        return self._latest.get(task_id)

    def forget(self, task_id: str) -> None:
        self._latest.pop(task_id, None)
        self._cpu_marks.pop(task_id, None)

    def stream(self, task_id: str | None = None) -> AsyncIterator[ProgressSnapshot]:
        """订阅进度快照。

        指定 task_id 时收到该任务的终态快照后结束迭代；task_id 为 None 时
        跟随所有任务，不会自行结束，由调用方 break 或 aclose()。
        订阅在调用时即登记，调用之后发布的快照都不会丢失。
        """
        queue: asyncio.Queue = asyncio.Queue()
        entry = (task_id, queue)
        self._subscribers.append(entry)
        return self._drain(entry)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def _drain(self, entry: tuple[str | None, asyncio.Queue]) -> AsyncIterator[ProgressSnapshot]:
        task_id, queue = entry
        try:
            while True:
                snapshot = await queue.get()
                yield snapshot
                if task_id is not None and snapshot.status.is_terminal:
                    return
        finally:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

    def _snapshot(self, task: SearchTask) -> ProgressSnapshot:
        elapsed = task.elapsed_seconds
        results = task.results.top_k()
        return ProgressSnapshot(
            task_id=task.id,
            status=task.status,
            current_iteration=task.progress.current,
            total_iterations=task.progress.total,
            current_best=task.results.best,
            recent_results=tuple(results),
            estimated_time_remaining_seconds=estimate_remaining(
                elapsed, task.progress.current, task.progress.total,
            ),
            resource_usage=self._resource_usage(task, elapsed, len(results)),
        )

    def _resource_usage(self, task: SearchTask, elapsed: float, result_count: int) -> dict[str, float]:
        # CPU 为任务开始以来本进程 CPU 时间占墙钟时间的百分比
        mark = self._cpu_marks.setdefault(task.id, time.process_time())
        cpu = 0.0
        if elapsed > 0:
            cpu = min(100.0, (time.process_time() - mark) / elapsed * 100)
        return {
            "cpuUsage": round(cpu, 2),
            "memoryUsage": round(result_count * MEMORY_PER_RESULT_MB, 2),
        }
