"""参数空间测试：范围枚举、组合生成和参数校验。"""

import pytest

from optimizer.exceptions import FatalConfigurationError, ParameterValidationError
from optimizer.search.models import AllocationStrategy, ParameterCombination
from optimizer.search.param_space import (
    ParameterSpace,
    RangeSpec,
    count_combinations,
    generate_combinations,
)


def _combo(pc: float, vol: float, vlt: float, fr: float, **kwargs) -> ParameterCombination:
    kwargs.setdefault("max_short_positions", 10)
    return ParameterCombination(pc, vol, vlt, fr, **kwargs)


class TestGenerateCombinations:
    """generate_combinations 测试。"""

    def test_single_int_param(self) -> None:
        """单个 int 参数生成正确组合。"""
        space = {"period": {"type": "int", "min": 5, "max": 15, "step": 5}}
        result = generate_combinations(space)
        assert result == [{"period": 5}, {"period": 10}, {"period": 15}]

    def test_tuple_spec(self) -> None:
        """(min, max, step) 元组格式与字典格式等价。"""
        assert generate_combinations({"n": (1, 3, 1)}) == [{"n": 1}, {"n": 2}, {"n": 3}]

    def test_two_params_cartesian(self) -> None:
        """两个参数生成笛卡尔积。"""
        space = {
            "fast": {"type": "int", "min": 3, "max": 5, "step": 1},
            "slow": {"type": "int", "min": 10, "max": 20, "step": 5},
        }
        result = generate_combinations(space)
        assert len(result) == 3 * 3
        assert result[0] == {"fast": 3, "slow": 10}
        assert result[-1] == {"fast": 5, "slow": 20}

    def test_empty_space(self) -> None:
        """空参数空间返回单个空字典。"""
        assert generate_combinations({}) == [{}]

    def test_float_precision(self) -> None:
        """float 步长不产生精度问题，也不少算端点。"""
        space = {"r": {"type": "float", "min": 0.1, "max": 0.3, "step": 0.1}}
        values = [c["r"] for c in generate_combinations(space)]
        assert values == [0.1, 0.2, 0.3]

    def test_count_matches_generate(self) -> None:
        """count_combinations 与实际生成数量一致。"""
        space = {
            "a": {"type": "float", "min": 0.1, "max": 0.7, "step": 0.1},
            "b": (5, 15, 5),
        }
        assert count_combinations(space) == len(generate_combinations(space)) == 21

    def test_invalid_spec_raises(self) -> None:
        """缺少 min / max 或 step 非正视为配置错误。"""
        with pytest.raises(FatalConfigurationError):
            generate_combinations({"x": {"max": 3}})
        with pytest.raises(FatalConfigurationError):
            generate_combinations({"x": (1, 3, 0)})


class TestRangeSpec:
    """RangeSpec 测试。"""

    def test_coarse_values_int(self) -> None:
        """int 维度粗取值为 {min, floor(mid), max}。"""
        assert RangeSpec(5, 15, 5, "int").coarse_values() == [5, 10, 15]
        assert RangeSpec(1, 4, 1, "int").coarse_values() == [1, 2, 4]

    def test_coarse_values_dedup(self) -> None:
        """min == max 时只保留一个值。"""
        assert RangeSpec(3, 3, 1, "int").coarse_values() == [3]

    def test_clamp(self) -> None:
        spec = RangeSpec(5, 15, 5, "int")
        assert spec.clamp(20) == 15
        assert spec.clamp(-1) == 5
        assert spec.clamp(7.6) == 8

    def test_min_greater_than_max_raises(self) -> None:
        with pytest.raises(FatalConfigurationError):
            RangeSpec(0.5, 0.1, 0.1)


class TestValidate:
    """ParameterSpace.validate 测试。"""

    def test_valid_combination(self) -> None:
        """{0.4, 0.3, 0.2, 0.1} 合法且没有错误。"""
        result = ParameterSpace().validate(_combo(0.4, 0.3, 0.2, 0.1))
        assert result.valid
        assert result.errors == []

    def test_weight_sum_error(self) -> None:
        """{0.4, 0.3, 0.2, 0.05} 权重和为 0.95，恰好一条权重和错误。"""
        result = ParameterSpace().validate(_combo(0.4, 0.3, 0.2, 0.05))
        assert not result.valid
        assert len(result.errors) == 1
        assert "权重总和" in result.errors[0]
        assert "0.950" in result.errors[0]

    def test_weight_sum_within_tolerance(self) -> None:
        """权重和偏差在 0.001 以内视为合法。"""
        result = ParameterSpace().validate(_combo(0.4005, 0.3, 0.2, 0.1))
        assert result.valid

    def test_weight_out_of_range(self) -> None:
        """单个权重为负时报错。"""
        result = ParameterSpace().validate(_combo(1.2, -0.1, -0.05, -0.05))
        assert not result.valid
        assert any("跌幅权重必须在0-1之间" in e for e in result.errors)
        assert any("成交量权重必须在0-1之间" in e for e in result.errors)

    def test_max_short_positions_bounds(self) -> None:
        """最多做空数量必须在 1-50 之间。"""
        space = ParameterSpace()
        assert not space.validate(_combo(0.4, 0.3, 0.2, 0.1, max_short_positions=0)).valid
        assert not space.validate(_combo(0.4, 0.3, 0.2, 0.1, max_short_positions=51)).valid
        assert space.validate(_combo(0.4, 0.3, 0.2, 0.1, max_short_positions=50)).valid

    def test_ratio_outside_declared_bounds(self) -> None:
        """单币种仓位上限超出声明范围时报错。"""
        space = ParameterSpace(max_single_position_ratio=RangeSpec(0.1, 0.3, 0.05))
        result = space.validate(_combo(0.4, 0.3, 0.2, 0.1, max_single_position_ratio=0.5))
        assert not result.valid
        assert "单币种仓位上限" in result.errors[0]

    def test_ratio_defaults_to_unit_interval(self) -> None:
        """未声明范围时单币种仓位上限限制在 [0, 1]。"""
        space = ParameterSpace()
        assert space.validate(_combo(0.4, 0.3, 0.2, 0.1, max_single_position_ratio=0.9)).valid
        assert not space.validate(_combo(0.4, 0.3, 0.2, 0.1, max_single_position_ratio=1.5)).valid

    def test_low_weight_warnings(self) -> None:
        """跌幅权重和资金费率权重低于 0.1 时给出警告但不阻止评估。"""
        result = ParameterSpace().validate(_combo(0.05, 0.45, 0.45, 0.05))
        assert result.valid
        assert len(result.warnings) == 2

    def test_ensure_valid_raises(self) -> None:
        """ensure_valid 对非法组合抛出 ParameterValidationError。"""
        with pytest.raises(ParameterValidationError) as exc_info:
            ParameterSpace().ensure_valid(_combo(0.4, 0.3, 0.2, 0.05))
        assert len(exc_info.value.errors) == 1


class TestFromDict:
    """ParameterSpace.from_dict 测试。"""

    def test_empty_uses_defaults(self) -> None:
        assert ParameterSpace.from_dict(None) == ParameterSpace()

    def test_mixed_formats(self) -> None:
        """权重使用字典格式，做空数量使用元组格式。"""
        space = ParameterSpace.from_dict({
            "weights": {"priceChangeWeight": {"min": 0.2, "max": 0.6, "step": 0.2}},
            "maxShortPositions": [5, 20, 5],
            "maxSinglePositionRatio": {"min": 0.1, "max": 0.3, "step": 0.1},
            "allocationStrategy": ["BY_VOLUME", "EQUAL_ALLOCATION"],
            "weightConstraints": {"minWeight": 0.02, "maxWeight": 0.8},
        })
        assert space.price_change_weight.values() == [0.2, 0.4, 0.6]
        assert space.max_short_positions.kind == "int"
        assert space.max_short_positions.values() == [5, 10, 15, 20]
        assert space.max_single_position_ratio is not None
        assert space.allocation_strategies == (
            AllocationStrategy.BY_VOLUME,
            AllocationStrategy.EQUAL_ALLOCATION,
        )
        assert space.min_weight == 0.02
        assert space.max_weight == 0.8

    def test_round_trip(self) -> None:
        space = ParameterSpace(max_single_position_ratio=RangeSpec(0.1, 0.3, 0.1))
        assert ParameterSpace.from_dict(space.to_dict()) == space

    def test_unknown_strategy_raises(self) -> None:
        with pytest.raises(FatalConfigurationError):
            ParameterSpace.from_dict({"allocationStrategy": ["BY_MAGIC"]})
