"""参数空间：各维度取值范围、约束校验和离散取值枚举。"""

import itertools
import math
from dataclasses import dataclass, field, replace
from typing import Any

from optimizer.exceptions import FatalConfigurationError, ParameterValidationError
from optimizer.search.models import (
    WEIGHT_FIELDS,
    WEIGHT_SUM_TOLERANCE,
    AllocationStrategy,
    ParameterCombination,
    parse_enum,
)

# 最多做空标的数量的硬性上下限
MAX_SHORT_POSITIONS_BOUNDS = (1, 50)

# 低于该值时给出警告的权重下限
_LOW_WEIGHT_WARNING = 0.1

_WEIGHT_LABELS = {
    "price_change_weight": "跌幅权重",
    "volume_weight": "成交量权重",
    "volatility_weight": "波动率权重",
    "funding_rate_weight": "资金费率权重",
}


@dataclass(frozen=True)
class RangeSpec:
    """单个数值维度的范围定义 {type, min, max, step}。"""

    minimum: float
    maximum: float
    step: float
    kind: str = "float"

    def __post_init__(self) -> None:
        if self.step <= 0:
            raise FatalConfigurationError(f"step 必须大于 0，当前值: {self.step}")
        if self.minimum > self.maximum:
            raise FatalConfigurationError(
                f"min 不能大于 max：{self.minimum} > {self.maximum}"
            )

    def _cast(self, value: float) -> float | int:
        if self.kind == "int":
            return int(round(value))
        return round(value, 6)

    def count(self) -> int:
        # 加 1e-9 避免 (0.3 - 0.1) / 0.1 之类的浮点误差少算一个点
        return math.floor((self.maximum - self.minimum) / self.step + 1e-9) + 1

    def values(self, step: float | None = None) -> list:
        """按步长生成取值列表（使用下标计算，避免累加误差）。"""
        step = step or self.step
        n = math.floor((self.maximum - self.minimum) / step + 1e-9)
        return [self._cast(self.minimum + i * step) for i in range(n + 1)]

    @property
    def mid(self) -> float | int:
        if self.kind == "int":
            return int(math.floor((self.minimum + self.maximum) / 2))
        return round((self.minimum + self.maximum) / 2, 6)

    def coarse_values(self) -> list:
        """粗粒度取值：{min, mid, max}，去重保序。"""
        return list(dict.fromkeys(
            [self._cast(self.minimum), self.mid, self._cast(self.maximum)]
        ))

    def clamp(self, value: float) -> float | int:
        return self._cast(min(self.maximum, max(self.minimum, value)))

    def contains(self, value: float) -> bool:
        return self.minimum - 1e-9 <= value <= self.maximum + 1e-9

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "min": self.minimum, "max": self.maximum, "step": self.step}


def _normalize_spec(spec: Any, default_kind: str | None = None) -> RangeSpec:
    """把 tuple 格式 (min, max, step) 或 dict 格式转换为 RangeSpec。"""
    if isinstance(spec, RangeSpec):
        return spec
    if isinstance(spec, (tuple, list)):
        min_val, max_val, step = spec[0], spec[1], spec[2]
        kind = default_kind or (
            "int" if all(isinstance(v, int) for v in (min_val, max_val, step)) else "float"
        )
        return RangeSpec(min_val, max_val, step, kind)
    if isinstance(spec, dict):
        try:
            return RangeSpec(
                spec["min"],
                spec["max"],
                spec.get("step") or 1,
                spec.get("type") or default_kind or "float",
            )
        except KeyError as exc:
            raise FatalConfigurationError(f"参数范围缺少字段: {exc.args[0]}") from None
    raise FatalConfigurationError(f"无法识别的参数范围定义: {spec!r}")


def generate_combinations(param_space: dict) -> list[dict]:
    """生成标量参数空间的所有组合（笛卡尔积）。

    Args:
        param_space: {"param_name": RangeSpec | {"min", "max", "step"} | (min, max, step)}

    Returns:
        每个元素为 {param_name: value} 的组合列表，空空间返回 [{}]
    """
    if not param_space:
        return [{}]

    names = list(param_space.keys())
    ranges = [_normalize_spec(param_space[name]).values() for name in names]
    return [dict(zip(names, values)) for values in itertools.product(*ranges)]


def count_combinations(param_space: dict) -> int:
    """计算标量参数空间的总组合数（不实际生成）。"""
    total = 1
    for spec in param_space.values():
        total *= max(_normalize_spec(spec).count(), 1)
    return total


@dataclass
class ValidationResult:
    """参数组合校验结果。errors 阻止评估，warnings 仅提示。"""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParameterSpace:
    """可搜索的参数空间。

    四个权重各自给出枚举范围（网格搜索使用），第四个权重由 1 减去前三个得出；
    min_weight / max_weight 为随机采样和扰动时的单个权重裁剪区间。
    """

    price_change_weight: RangeSpec = RangeSpec(0.1, 0.7, 0.1)
    volume_weight: RangeSpec = RangeSpec(0.1, 0.5, 0.1)
    volatility_weight: RangeSpec = RangeSpec(0.1, 0.4, 0.1)
    funding_rate_weight: RangeSpec = RangeSpec(0.1, 0.6, 0.1)
    max_short_positions: RangeSpec = RangeSpec(5, 15, 5, "int")
    max_single_position_ratio: RangeSpec | None = None
    allocation_strategies: tuple[AllocationStrategy, ...] = (AllocationStrategy.EQUAL_ALLOCATION,)
    min_weight: float = 0.05
    max_weight: float = 0.7

    def __post_init__(self) -> None:
        if not self.allocation_strategies:
            raise FatalConfigurationError("至少需要一种仓位分配策略")
        if not 0 <= self.min_weight <= self.max_weight <= 1:
            raise FatalConfigurationError(
                f"权重约束无效：minWeight={self.min_weight}, maxWeight={self.max_weight}"
            )

    @property
    def weight_ranges(self) -> tuple[RangeSpec, RangeSpec, RangeSpec, RangeSpec]:
        return tuple(getattr(self, attr) for attr, _ in WEIGHT_FIELDS)

    @property
    def scalar_ranges(self) -> dict[str, RangeSpec]:
        """除权重外参与网格枚举的标量维度。"""
        ranges = {"max_short_positions": self.max_short_positions}
        if self.max_single_position_ratio is not None:
            ranges["max_single_position_ratio"] = self.max_single_position_ratio
        return ranges

    def with_allocation_strategies(
        self, strategies: tuple[AllocationStrategy, ...],
    ) -> "ParameterSpace":
        return replace(self, allocation_strategies=tuple(strategies))

    def validate(self, candidate: ParameterCombination) -> ValidationResult:
        """校验参数组合。

        硬性错误：权重总和偏离 1 超过 0.001、单个权重不在 [0, 1]、
        最多做空数量不在 [1, 50]、单币种仓位上限超出声明范围。
        """
        errors: list[str] = []
        warnings: list[str] = []

        weight_sum = candidate.weight_sum
        if abs(weight_sum - 1) > WEIGHT_SUM_TOLERANCE:
            errors.append(f"权重总和必须为1，当前为 {weight_sum:.3f}")

        for attr, _ in WEIGHT_FIELDS:
            value = getattr(candidate, attr)
            if value < 0 or value > 1:
                errors.append(f"{_WEIGHT_LABELS[attr]}必须在0-1之间，当前为 {value}")

        low, high = MAX_SHORT_POSITIONS_BOUNDS
        if not low <= candidate.max_short_positions <= high:
            errors.append(
                f"最多做空标的数量必须在{low}-{high}之间，当前为 {candidate.max_short_positions}"
            )

        ratio = candidate.max_single_position_ratio
        if ratio is not None:
            bounds = self.max_single_position_ratio or RangeSpec(0.0, 1.0, 0.01)
            if not bounds.contains(ratio):
                errors.append(
                    f"单币种仓位上限必须在{bounds.minimum}-{bounds.maximum}之间，当前为 {ratio}"
                )

        if candidate.price_change_weight < _LOW_WEIGHT_WARNING:
            warnings.append("跌幅权重过低可能影响做空策略效果")
        if candidate.funding_rate_weight < _LOW_WEIGHT_WARNING:
            warnings.append("资金费率权重过低可能影响做空成本控制")

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def ensure_valid(self, candidate: ParameterCombination) -> ValidationResult:
        """校验失败时抛出 ParameterValidationError，用于拒绝显式提交的组合。"""
        result = self.validate(candidate)
        if not result.valid:
            raise ParameterValidationError(result.errors)
        return result

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "weights": {wire: getattr(self, attr).to_dict() for attr, wire in WEIGHT_FIELDS},
            "maxShortPositions": self.max_short_positions.to_dict(),
            "allocationStrategy": [s.value for s in self.allocation_strategies],
            "weightConstraints": {"minWeight": self.min_weight, "maxWeight": self.max_weight},
        }
        if self.max_single_position_ratio is not None:
            data["maxSinglePositionRatio"] = self.max_single_position_ratio.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ParameterSpace":
        """从 JSON 结构构建参数空间，缺省维度使用默认范围。"""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise FatalConfigurationError("参数空间必须是 JSON 对象")

        defaults = cls()
        kwargs: dict[str, Any] = {}
        weights = data.get("weights") or {}
        for attr, wire in WEIGHT_FIELDS:
            if wire in weights:
                kwargs[attr] = _normalize_spec(weights[wire], "float")

        if "maxShortPositions" in data:
            kwargs["max_short_positions"] = _normalize_spec(data["maxShortPositions"], "int")
        if data.get("maxSinglePositionRatio"):
            kwargs["max_single_position_ratio"] = _normalize_spec(
                data["maxSinglePositionRatio"], "float",
            )
        if data.get("allocationStrategy"):
            kwargs["allocation_strategies"] = tuple(
                parse_enum(AllocationStrategy, s, "allocationStrategy")
                for s in data["allocationStrategy"]
            )

        constraints = data.get("weightConstraints") or {}
        kwargs["min_weight"] = float(constraints.get("minWeight", defaults.min_weight))
        kwargs["max_weight"] = float(constraints.get("maxWeight", defaults.max_weight))
        return cls(**kwargs)
