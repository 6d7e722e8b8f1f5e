"""带重试和并发控制的远程评估器。

单个组合的评估流程：
参数校验 → 取消检查 → 获取并发槽位 → 调用回测接口（最多 M 次，间隔 delay × 次数）
→ 释放槽位 → 性能指标映射为目标值。

失败语义：
- 校验不通过、重试耗尽、响应缺少 performance：返回 None（跳过）
- 取消：抛出 SearchCancelledError
- 其他异常：原样抛出，由编排器把任务标记为失败
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from optimizer.client import ScoringClient
from optimizer.config import settings
from optimizer.exceptions import FatalConfigurationError, TransientEvaluationError
from optimizer.search.cancellation import CancellationToken
from optimizer.search.gate import ConcurrencyGate
from optimizer.search.models import (
    EvaluationResult,
    Objective,
    ParameterCombination,
    PerformanceMetrics,
    SearchConfig,
    TimePeriod,
)
from optimizer.search.param_space import ParameterSpace

logger = logging.getLogger(__name__)

# 回测接口未提供时的默认 K 线粒度（小时）
DEFAULT_GRANULARITY_HOURS = 8

# 目标值计算，回撤取负值以统一为"越大越好"
OBJECTIVE_FUNCTIONS: dict[Objective, Callable[[PerformanceMetrics], float]] = {
    Objective.TOTAL_RETURN: lambda m: m.total_return,
    Objective.SHARPE: lambda m: m.sharpe_ratio,
    Objective.CALMAR: lambda m: m.calmar_ratio,
    Objective.MAX_DRAWDOWN: lambda m: -m.max_drawdown,
    Objective.COMPOSITE: lambda m: (
        m.sharpe_ratio * 0.4 + m.total_return * 0.3 - m.max_drawdown * 0.3
    ),
}


def compute_objective(objective: Objective, metrics: PerformanceMetrics) -> float:
    """按优化目标把绩效指标映射为目标值。"""
    try:
        func = OBJECTIVE_FUNCTIONS[objective]
    except KeyError:
        raise FatalConfigurationError(f"不支持的优化目标: {objective!r}") from None
    return func(metrics)


def build_strategy_params(
    config: SearchConfig,
    candidate: ParameterCombination,
    period: TimePeriod | None = None,
) -> dict[str, Any]:
    """合并固定参数和候选参数，得到提交给回测接口的完整参数。"""
    params = {**config.base_params, **candidate.to_strategy_params()}
    params["granularityHours"] = config.base_params.get("granularityHours") or DEFAULT_GRANULARITY_HOURS
    if period is not None:
        params["startDate"] = period.start_date.isoformat()
        params["endDate"] = period.end_date.isoformat()
    return params


class RetryingEvaluator:
    """远程评估器。

    Args:
        client: 评分服务客户端
        space: 参数空间（用于评估前校验）
        gate: 并发闸门
        max_attempts: 单次评估最多尝试次数
        retry_delay: 重试基础延迟（秒），第 n 次失败后等待 n × retry_delay
    """

    def __init__(
        self,
        client: ScoringClient,
        space: ParameterSpace,
        gate: ConcurrencyGate,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._client = client
        self._space = space
        self._gate = gate
        self._max_attempts = max_attempts or settings.evaluation_max_attempts
        self._retry_delay = (
            settings.evaluation_retry_delay if retry_delay is None else retry_delay
        )

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    async def evaluate(
        self,
        candidate: ParameterCombination,
        config: SearchConfig,
        token: CancellationToken,
        period: TimePeriod | None = None,
    ) -> EvaluationResult | None:
        """评估一个参数组合，period 为空时使用 base_params 中的回测区间。"""
        validation = self._space.validate(candidate)
        if not validation.valid:
            logger.info("跳过无效参数组合 %s: %s", candidate.id, "；".join(validation.errors))
            return None
        if validation.warnings:
            logger.debug("参数组合 %s 警告: %s", candidate.id, "；".join(validation.warnings))

        token.raise_if_cancelled()

        started = time.monotonic()
        params = build_strategy_params(config, candidate, period)
        label = candidate.id if period is None else f"{candidate.id}-{period.label}"

        async with self._gate.slot():
            performance = await self._score_with_retry(params, label, token)

        if performance is None:
            return None

        metrics = PerformanceMetrics.from_performance(performance)
        execution_time_ms = int((time.monotonic() - started) * 1000)
        logger.debug("组合 %s 评估完成，耗时 %dms", label, execution_time_ms)
        return EvaluationResult(
            combination=candidate,
            objective_value=compute_objective(config.objective, metrics),
            metrics=metrics,
            execution_time_ms=execution_time_ms,
        )

    async def _score_with_retry(
        self,
        params: dict[str, Any],
        label: str,
        token: CancellationToken,
    ) -> dict[str, Any] | None:
        """调用回测接口，返回 performance 字段；失败返回 None。"""
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            token.raise_if_cancelled()
            try:
                body = await self._client.score(params)
                if not body.get("success"):
                    raise TransientEvaluationError(body.get("error") or "回测接口返回失败")
            except TransientEvaluationError as exc:
                last_error = exc
                if attempt < self._max_attempts:
                    wait = self._retry_delay * attempt
                    logger.warning(
                        "评估失败（组合 %s，第 %d/%d 次），%.1fs 后重试：%s",
                        label, attempt, self._max_attempts, wait, exc,
                    )
                    await token.sleep(wait)
                continue

            performance = (body.get("data") or {}).get("performance")
            if not performance:
                # 响应结构缺失不是瞬态错误，重试无意义
                logger.warning("回测结果缺少性能指标，跳过组合 %s", label)
                return None
            return performance

        logger.error(
            "评估最终失败（组合 %s，已尝试 %d 次）：%s",
            label, self._max_attempts, last_error,
        )
        return None
