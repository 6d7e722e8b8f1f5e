"""Top-K 结果排行榜。"""

from collections.abc import Iterator

from optimizer.config import settings
from optimizer.search.models import EvaluationResult


class ResultStore:
    """按目标值降序保存最优的 K 个评估结果。

    每次插入后稳定排序并截断，目标值相同时先插入的排在前面。
    评估完成顺序与提交顺序无关，排名只取决于目标值。
    """

    def __init__(self, limit: int | None = None) -> None:
        self._limit = limit or settings.result_limit
        self._results: list[EvaluationResult] = []

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def best(self) -> EvaluationResult | None:
        return self._results[0] if self._results else None

    def insert(self, result: EvaluationResult) -> None:
        self._results.append(result)
        # list.sort 是稳定排序，新插入的结果在同分时排在已有结果之后
        self._results.sort(key=lambda r: r.sort_key, reverse=True)
        del self._results[self._limit:]

    def top_k(self) -> list[EvaluationResult]:
        return list(self._results)

    def elites(self, n: int = 3) -> list[EvaluationResult]:
        return self._results[:n]

    def clear(self) -> None:
        self._results.clear()

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[EvaluationResult]:
        return iter(list(self._results))
