"""随机时间窗口交叉验证。

同一组参数在训练期（base_params 的回测区间）和若干随机抽取的验证期上分别回测，
综合评分 = 训练权重 × 训练期目标值 + 验证权重 × 验证期目标值均值，
并计算各期目标值的一致性（标准差、极差、稳定性评分）。
"""

import logging
import random
import time
from collections.abc import Sequence
from datetime import timedelta

import numpy as np

from optimizer.search.cancellation import CancellationToken
from optimizer.search.evaluator import RetryingEvaluator
from optimizer.search.models import (
    ConsistencyMetrics,
    CrossValidationConfig,
    CrossValidationResult,
    EvaluationResult,
    ParameterCombination,
    PeriodLengthType,
    PeriodResult,
    SearchConfig,
    TimePeriod,
)

logger = logging.getLogger(__name__)

# 每个验证期的最大放置尝试次数
MAX_PLACEMENT_ATTEMPTS = 100

# 没有任何验证期结果时的一致性指标
UNVERIFIED_CONSISTENCY = ConsistencyMetrics(standard_deviation=0.0, value_range=0.0, stability_score=0.0)


def calculate_composite_score(
    training: PeriodResult,
    validations: Sequence[PeriodResult],
    config: CrossValidationConfig,
) -> float:
    """综合评分，没有验证期结果时等于训练期目标值。"""
    if not validations:
        return training.objective_value
    validation_mean = float(np.mean([r.objective_value for r in validations]))
    return (
        config.training_weight * training.objective_value
        + config.validation_weight * validation_mean
    )


def calculate_consistency(results: Sequence[PeriodResult]) -> ConsistencyMetrics:
    """各期目标值的一致性指标。

    标准差为总体标准差；变异系数 cv = std / |mean|，均值为 0 时取 1；
    稳定性评分 = 1 / (1 + cv)，限制在 [0, 1]。
    """
    values = np.array([r.objective_value for r in results], dtype=float)
    mean = float(values.mean())
    std = float(values.std())
    value_range = float(values.max() - values.min())
    cv = std / abs(mean) if mean != 0 else 1.0
    stability = min(1.0, max(0.0, 1 / (1 + cv)))
    return ConsistencyMetrics(
        standard_deviation=std,
        value_range=value_range,
        stability_score=stability,
    )


class CrossValidationScorer:
    """交叉验证评分器。

    Args:
        evaluator: 单时间段评估器（共享同一个并发闸门）
        rng: 随机数源，用于抽取验证期
    """

    def __init__(self, evaluator: RetryingEvaluator, rng: random.Random | None = None) -> None:
        self._evaluator = evaluator
        self._rng = rng or random.Random()

    def generate_periods(
        self,
        cv_config: CrossValidationConfig,
        training: TimePeriod,
    ) -> list[TimePeriod]:
        """在选取范围内随机放置验证期，互不重叠（闭区间判断）。

        不允许与训练期重叠时，与训练期相交的窗口也会被拒绝。
        某个验证期尝试 100 次仍放不下时放弃该期。
        """
        periods: list[TimePeriod] = []
        span_start = cv_config.selection_start
        span_end = cv_config.selection_end

        for index in range(1, cv_config.validation_periods + 1):
            label = f"验证期{index}"
            placed = None
            for _ in range(MAX_PLACEMENT_ATTEMPTS):
                if cv_config.period_length_type is PeriodLengthType.FIXED:
                    days = cv_config.fixed_days or 30
                else:
                    days = self._rng.randint(cv_config.min_days, cv_config.max_days)

                latest_offset = (span_end - span_start).days - days
                if latest_offset < 0:
                    continue
                start = span_start + timedelta(days=self._rng.randint(0, latest_offset))
                candidate = TimePeriod(start, start + timedelta(days=days), label)

                if not cv_config.allow_overlap and candidate.overlaps(training):
                    continue
                if any(candidate.overlaps(p) for p in periods):
                    continue
                placed = candidate
                break

            if placed is None:
                logger.warning("无法为%s找到合适的时间段，跳过", label)
                continue
            periods.append(placed)

        return periods

    async def score(
        self,
        candidate: ParameterCombination,
        config: SearchConfig,
        training: TimePeriod,
        token: CancellationToken,
    ) -> CrossValidationResult | None:
        """训练期失败返回 None；验证期全部失败时退化为只含训练期的结果。"""
        cv_config = config.cross_validation or CrossValidationConfig.default()

        logger.debug(
            "评估组合 %s 在训练期 %s - %s",
            candidate.id, training.start_date, training.end_date,
        )
        training_eval = await self._evaluator.evaluate(candidate, config, token, training)
        if training_eval is None:
            logger.warning("训练期评估失败，跳过组合 %s", candidate.id)
            return None
        training_result = PeriodResult(training, training_eval.metrics, training_eval.objective_value)

        periods = self.generate_periods(cv_config, training)
        if not periods:
            logger.warning("无法生成验证时间段，组合 %s 仅使用训练期结果", candidate.id)

        validations: list[PeriodResult] = []
        for period in periods:
            logger.debug(
                "评估组合 %s 在%s %s - %s",
                candidate.id, period.label, period.start_date, period.end_date,
            )
            result = await self._evaluator.evaluate(candidate, config, token, period)
            if result is None:
                logger.warning("%s 评估失败，组合 %s", period.label, candidate.id)
                continue
            validations.append(PeriodResult(period, result.metrics, result.objective_value))

        if validations:
            consistency = calculate_consistency([training_result, *validations])
        else:
            if periods:
                logger.warning("所有验证时间段评估失败，组合 %s 使用训练结果", candidate.id)
            # 没有样本外结果，稳定性按最不稳定处理
            consistency = UNVERIFIED_CONSISTENCY

        return CrossValidationResult(
            training_result=training_result,
            validation_results=tuple(validations),
            composite_score=calculate_composite_score(training_result, validations, cv_config),
            consistency=consistency,
        )

    async def evaluate(
        self,
        candidate: ParameterCombination,
        config: SearchConfig,
        token: CancellationToken,
    ) -> EvaluationResult | None:
        """以综合评分作为目标值，绩效指标取训练期。"""
        started = time.monotonic()
        cv_result = await self.score(candidate, config, config.training_period, token)
        if cv_result is None:
            return None
        return EvaluationResult(
            combination=candidate,
            objective_value=cv_result.composite_score,
            metrics=cv_result.training_result.metrics,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            cross_validation=cv_result,
        )
