"""搜索引擎数据模型：参数组合、绩效指标、评估结果、交叉验证结果和搜索配置。

序列化字段名与远程回测接口和导出 JSON 保持一致（camelCase），
Python 侧属性使用 snake_case。
"""

import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from optimizer.config import settings
from optimizer.exceptions import FatalConfigurationError

# 四个权重字段：(属性名, 接口字段名)
WEIGHT_FIELDS: tuple[tuple[str, str], ...] = (
    ("price_change_weight", "priceChangeWeight"),
    ("volume_weight", "volumeWeight"),
    ("volatility_weight", "volatilityWeight"),
    ("funding_rate_weight", "fundingRateWeight"),
)

# 权重总和允许误差
WEIGHT_SUM_TOLERANCE = 0.001


class AllocationStrategy(str, Enum):
    """做空仓位分配策略。"""

    BY_VOLUME = "BY_VOLUME"
    BY_COMPOSITE_SCORE = "BY_COMPOSITE_SCORE"
    EQUAL_ALLOCATION = "EQUAL_ALLOCATION"


class Objective(str, Enum):
    """优化目标。方向已体现在目标值计算中，统一按"越大越好"排序。"""

    TOTAL_RETURN = "totalReturn"
    SHARPE = "sharpe"
    CALMAR = "calmar"
    MAX_DRAWDOWN = "maxDrawdown"
    COMPOSITE = "composite"


class SearchMethod(str, Enum):
    """搜索方法。

    RANDOMIZED 为"随机探索 + 精英扰动"，没有代理模型。
    """

    GRID = "grid"
    RANDOMIZED = "randomized"
    HYBRID = "hybrid"

    @classmethod
    def _missing_(cls, value: object) -> "SearchMethod | None":
        # 旧版配置和导出文件中该方法名为 bayesian
        if value == "bayesian":
            return cls.RANDOMIZED
        return None


class TaskStatus(str, Enum):
    """搜索任务状态。

    状态流转：
    pending → running → completed
                     ↘ failed / cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class PeriodLengthType(str, Enum):
    FIXED = "fixed"
    RANDOM = "random"


def parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    """解析枚举值，未知取值视为致命配置错误。"""
    try:
        return enum_cls(value)
    except ValueError:
        raise FatalConfigurationError(f"不支持的 {field_name}: {value!r}") from None


def _as_float(value: Any, default: float = 0.0) -> float:
    """把接口返回的可空数值转为 float，None 取默认值。"""
    if value is None:
        return default
    return float(value)


def _parse_date(value: Any, field_name: str) -> date:
    if isinstance(value, date):
        return value
    if not value:
        raise FatalConfigurationError(f"缺少日期字段: {field_name}")
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise FatalConfigurationError(f"日期格式无效 {field_name}={value!r}") from None


# ---------------------------------------------------------------------------
# 参数组合与评估结果
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParameterCombination:
    """一个待评估的参数组合（不可变）。

    id 仅用于日志关联，不参与相等比较。
    """

    price_change_weight: float
    volume_weight: float
    volatility_weight: float
    funding_rate_weight: float
    max_short_positions: int
    allocation_strategy: AllocationStrategy = AllocationStrategy.BY_VOLUME
    max_single_position_ratio: float | None = None
    id: str = field(default="", compare=False)

    @property
    def weights(self) -> tuple[float, float, float, float]:
        return (
            self.price_change_weight,
            self.volume_weight,
            self.volatility_weight,
            self.funding_rate_weight,
        )

    @property
    def weight_sum(self) -> float:
        return sum(self.weights)

    def to_strategy_params(self) -> dict[str, Any]:
        """转为回测接口的策略参数字段。"""
        params: dict[str, Any] = {
            wire: getattr(self, attr) for attr, wire in WEIGHT_FIELDS
        }
        params["maxShortPositions"] = self.max_short_positions
        params["allocationStrategy"] = self.allocation_strategy.value
        if self.max_single_position_ratio is not None:
            params["maxSinglePositionPercent"] = self.max_single_position_ratio
        return params

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id}
        data.update({wire: getattr(self, attr) for attr, wire in WEIGHT_FIELDS})
        data["maxShortPositions"] = self.max_short_positions
        data["maxSinglePositionRatio"] = self.max_single_position_ratio
        data["allocationStrategy"] = self.allocation_strategy.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParameterCombination":
        ratio = data.get("maxSinglePositionRatio")
        return cls(
            **{attr: float(data[wire]) for attr, wire in WEIGHT_FIELDS},
            max_short_positions=int(data["maxShortPositions"]),
            allocation_strategy=parse_enum(
                AllocationStrategy,
                data.get("allocationStrategy", AllocationStrategy.BY_VOLUME.value),
                "allocationStrategy",
            ),
            max_single_position_ratio=float(ratio) if ratio is not None else None,
            id=str(data.get("id", "")),
        )


@dataclass(frozen=True)
class PerformanceMetrics:
    """回测绩效指标（只保留排序和展示需要的字段）。"""

    total_return: float = 0.0
    sharpe_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    volatility: float | None = None
    win_rate: float = 0.0

    @classmethod
    def from_performance(cls, performance: dict[str, Any]) -> "PerformanceMetrics":
        """从回测接口的 performance 字段提取指标，缺失值按 0 处理。"""
        volatility = performance.get("volatility")
        return cls(
            total_return=_as_float(performance.get("totalReturn")),
            sharpe_ratio=_as_float(performance.get("sharpeRatio")),
            calmar_ratio=_as_float(performance.get("calmarRatio")),
            max_drawdown=_as_float(performance.get("maxDrawdown")),
            volatility=float(volatility) if volatility is not None else None,
            win_rate=_as_float(performance.get("winRate")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalReturn": self.total_return,
            "sharpeRatio": self.sharpe_ratio,
            "calmarRatio": self.calmar_ratio,
            "maxDrawdown": self.max_drawdown,
            "volatility": self.volatility,
            "winRate": self.win_rate,
        }


@dataclass(frozen=True)
class TimePeriod:
    """回测时间段，起止日期均包含在内。"""

    start_date: date
    end_date: date
    label: str = ""

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days

    def overlaps(self, other: "TimePeriod") -> bool:
        return self.start_date <= other.end_date and self.end_date >= other.start_date

    def to_dict(self) -> dict[str, Any]:
        return {
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimePeriod":
        return cls(
            start_date=_parse_date(data.get("startDate"), "startDate"),
            end_date=_parse_date(data.get("endDate"), "endDate"),
            label=data.get("label", ""),
        )


@dataclass(frozen=True)
class PeriodResult:
    """单个时间段上的评估结果。"""

    period: TimePeriod
    metrics: PerformanceMetrics
    objective_value: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "metrics": self.metrics.to_dict(),
            "objectiveValue": self.objective_value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeriodResult":
        return cls(
            period=TimePeriod.from_dict(data["period"]),
            metrics=PerformanceMetrics.from_performance(data.get("metrics") or {}),
            objective_value=float(data["objectiveValue"]),
        )


@dataclass(frozen=True)
class ConsistencyMetrics:
    """跨时间段目标值的一致性指标。"""

    standard_deviation: float
    value_range: float
    stability_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "standardDeviation": self.standard_deviation,
            "range": self.value_range,
            "stabilityScore": self.stability_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsistencyMetrics":
        return cls(
            standard_deviation=float(data["standardDeviation"]),
            value_range=float(data["range"]),
            stability_score=float(data["stabilityScore"]),
        )


@dataclass(frozen=True)
class CrossValidationResult:
    """交叉验证结果：训练期 + 若干验证期。"""

    training_result: PeriodResult
    validation_results: tuple[PeriodResult, ...]
    composite_score: float
    consistency: ConsistencyMetrics

    @property
    def degraded(self) -> bool:
        """没有任何验证期结果，综合评分退化为训练期目标值。"""
        return not self.validation_results

    def to_dict(self) -> dict[str, Any]:
        return {
            "trainingResult": self.training_result.to_dict(),
            "validationResults": [r.to_dict() for r in self.validation_results],
            "compositeScore": self.composite_score,
            "consistency": self.consistency.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrossValidationResult":
        return cls(
            training_result=PeriodResult.from_dict(data["trainingResult"]),
            validation_results=tuple(
                PeriodResult.from_dict(r) for r in data.get("validationResults", [])
            ),
            composite_score=float(data["compositeScore"]),
            consistency=ConsistencyMetrics.from_dict(data["consistency"]),
        )


@dataclass(frozen=True)
class EvaluationResult:
    """一次成功评估的结果，创建后不可变。"""

    combination: ParameterCombination
    objective_value: float
    metrics: PerformanceMetrics
    execution_time_ms: int = 0
    cross_validation: CrossValidationResult | None = None

    @property
    def sort_key(self) -> float:
        # NaN 目标值排在最后
        return float("-inf") if math.isnan(self.objective_value) else self.objective_value

    def to_dict(self) -> dict[str, Any]:
        data = {
            "combination": self.combination.to_dict(),
            "objectiveValue": self.objective_value,
            "metrics": self.metrics.to_dict(),
            "executionTime": self.execution_time_ms,
        }
        if self.cross_validation is not None:
            data["crossValidation"] = self.cross_validation.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluationResult":
        cv = data.get("crossValidation")
        return cls(
            combination=ParameterCombination.from_dict(data["combination"]),
            objective_value=float(data["objectiveValue"]),
            metrics=PerformanceMetrics.from_performance(data.get("metrics") or {}),
            execution_time_ms=int(data.get("executionTime", 0)),
            cross_validation=CrossValidationResult.from_dict(cv) if cv else None,
        )


# ---------------------------------------------------------------------------
# 搜索配置
# ---------------------------------------------------------------------------


@dataclass
class CrossValidationConfig:
    """随机时间窗口交叉验证配置。

    评分权重由调用方给定，不要求和为 1。
    """

    enabled: bool = True
    validation_periods: int = 2
    period_length_type: PeriodLengthType = PeriodLengthType.RANDOM
    fixed_days: int = 30
    min_days: int = 60
    max_days: int = 180
    selection_start: date = date(2022, 1, 1)
    selection_end: date = date(2024, 12, 31)
    allow_overlap: bool = True
    training_weight: float = 0.6
    validation_weight: float = 0.4

    @classmethod
    def default(
        cls,
        selection_start: date | None = None,
        selection_end: date | None = None,
    ) -> "CrossValidationConfig":
        """默认交叉验证配置：2 个 60-180 天的随机验证期。"""
        config = cls()
        if selection_start is not None:
            config.selection_start = selection_start
        if selection_end is not None:
            config.selection_end = selection_end
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "validationPeriods": self.validation_periods,
            "periodLength": {
                "type": self.period_length_type.value,
                "fixedDays": self.fixed_days,
                "randomRange": {"minDays": self.min_days, "maxDays": self.max_days},
            },
            "selectionRange": {
                "startDate": self.selection_start.isoformat(),
                "endDate": self.selection_end.isoformat(),
                "allowOverlap": self.allow_overlap,
            },
            "scoreWeights": {
                "training": self.training_weight,
                "validation": self.validation_weight,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrossValidationConfig":
        defaults = cls()
        length = data.get("periodLength") or {}
        random_range = length.get("randomRange") or {}
        selection = data.get("selectionRange") or {}
        weights = data.get("scoreWeights") or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            validation_periods=int(data.get("validationPeriods", defaults.validation_periods)),
            period_length_type=parse_enum(
                PeriodLengthType, length.get("type", defaults.period_length_type.value),
                "periodLength.type",
            ),
            fixed_days=int(length.get("fixedDays") or defaults.fixed_days),
            min_days=int(random_range.get("minDays", defaults.min_days)),
            max_days=int(random_range.get("maxDays", defaults.max_days)),
            selection_start=_parse_date(
                selection.get("startDate", defaults.selection_start), "selectionRange.startDate",
            ),
            selection_end=_parse_date(
                selection.get("endDate", defaults.selection_end), "selectionRange.endDate",
            ),
            allow_overlap=bool(selection.get("allowOverlap", defaults.allow_overlap)),
            training_weight=float(weights.get("training", defaults.training_weight)),
            validation_weight=float(weights.get("validation", defaults.validation_weight)),
        )


@dataclass
class SearchConfig:
    """一次参数搜索的配置。

    base_params 为不参与搜索的固定回测参数（startDate、endDate、initialCapital 等），
    原样透传给回测接口。
    """

    objective: Objective = Objective.SHARPE
    method: SearchMethod = SearchMethod.HYBRID
    base_params: dict[str, Any] = field(default_factory=dict)
    max_iterations: int = field(default_factory=lambda: settings.default_max_iterations)
    time_limit: int = field(default_factory=lambda: settings.default_time_limit)
    cross_validation: CrossValidationConfig | None = None
    allocation_strategy_mode: str = "random"
    fixed_allocation_strategy: AllocationStrategy | None = None

    @property
    def cross_validation_enabled(self) -> bool:
        return self.cross_validation is not None and self.cross_validation.enabled

    @property
    def training_period(self) -> TimePeriod:
        """base_params 中的回测区间即训练期。"""
        return TimePeriod(
            start_date=_parse_date(self.base_params.get("startDate"), "startDate"),
            end_date=_parse_date(self.base_params.get("endDate"), "endDate"),
            label="训练期",
        )

    @classmethod
    def recommended(cls) -> "SearchConfig":
        """推荐配置：混合搜索、夏普目标、固定按综合评分分配。"""
        return cls(
            objective=Objective.SHARPE,
            method=SearchMethod.HYBRID,
            max_iterations=200,
            time_limit=3600,
            allocation_strategy_mode="fixed",
            fixed_allocation_strategy=AllocationStrategy.BY_COMPOSITE_SCORE,
            base_params={
                "startDate": "2025-01-01",
                "endDate": "2025-06-20",
                "initialCapital": 10000,
                "btcRatio": 0.5,
                "spotTradingFeeRate": 0.0008,
                "futuresTradingFeeRate": 0.0002,
                "longBtc": True,
                "shortAlt": True,
                "granularityHours": 8,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "objective": self.objective.value,
            "method": self.method.value,
            "baseParams": dict(self.base_params),
            "maxIterations": self.max_iterations,
            "timeLimit": self.time_limit,
            "allocationStrategyMode": self.allocation_strategy_mode,
        }
        if self.fixed_allocation_strategy is not None:
            data["fixedAllocationStrategy"] = self.fixed_allocation_strategy.value
        if self.cross_validation is not None:
            data["crossValidation"] = self.cross_validation.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchConfig":
        if not isinstance(data, dict):
            raise FatalConfigurationError("搜索配置必须是 JSON 对象")
        cv = data.get("crossValidation")
        fixed = data.get("fixedAllocationStrategy")
        mode = data.get("allocationStrategyMode", "random")
        if mode not in ("random", "fixed"):
            raise FatalConfigurationError(f"不支持的 allocationStrategyMode: {mode!r}")
        return cls(
            objective=parse_enum(Objective, data.get("objective", "sharpe"), "objective"),
            method=parse_enum(SearchMethod, data.get("method", "hybrid"), "method"),
            base_params=dict(data.get("baseParams") or {}),
            max_iterations=int(data.get("maxIterations") or settings.default_max_iterations),
            time_limit=int(data.get("timeLimit") or settings.default_time_limit),
            cross_validation=CrossValidationConfig.from_dict(cv) if cv else None,
            allocation_strategy_mode=mode,
            fixed_allocation_strategy=(
                parse_enum(AllocationStrategy, fixed, "fixedAllocationStrategy") if fixed else None
            ),
        )
