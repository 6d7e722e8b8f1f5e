"""搜索任务上下文。"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from optimizer.search.cancellation import CancellationToken
from optimizer.search.models import SearchConfig, TaskStatus
from optimizer.search.param_space import ParameterSpace
from optimizer.search.result_store import ResultStore


@dataclass
class Progress:
    current: int = 0
    total: int = 0
    percentage: float = 0.0

    def advance(self, step: int = 1) -> None:
        self.current = min(self.total, self.current + step)
        self.percentage = self.current / self.total * 100 if self.total else 0.0

    def complete(self) -> None:
        self.current = self.total
        self.percentage = 100.0

    def to_dict(self) -> dict:
        return {"current": self.current, "total": self.total, "percentage": self.percentage}


def _new_task_id() -> str:
    return f"opt_{uuid.uuid4().hex[:12]}"


@dataclass
class SearchTask:
    """一次参数搜索的可变上下文。

    状态只在编排器的协程中修改；排行榜在任务结束后仍可读取，直到 dispose。
    """

    config: SearchConfig
    parameter_space: ParameterSpace
    id: str = field(default_factory=_new_task_id)
    status: TaskStatus = TaskStatus.PENDING
    progress: Progress = field(default_factory=Progress)
    results: ResultStore = field(default_factory=ResultStore)
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time or datetime.now()
        return max(0.0, (end - self.start_time).total_seconds())
