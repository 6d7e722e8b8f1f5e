"""候选参数组合生成器：网格、粗粒度网格、随机采样和精英扰动。

所有随机性来自注入的 random.Random，相同种子产生相同的候选序列。
"""

import itertools
import math
import random
from collections.abc import Sequence

from optimizer.search.models import AllocationStrategy, EvaluationResult, ParameterCombination
from optimizer.search.param_space import ParameterSpace, generate_combinations

# 狄利克雷分布的偏好参数，依次对应跌幅、成交量、波动率、资金费率
DIRICHLET_ALPHA = (2.0, 1.5, 1.0, 2.5)

# 粗粒度网格的权重步长
COARSE_WEIGHT_STEP = 0.2

# 扰动区间总宽度，实际偏移为 (r - 0.5) × 宽度：权重 ±0.1，做空数量 ±2，单币种上限 ±0.05
WEIGHT_JITTER_WIDTH = 0.2
POSITIONS_JITTER_WIDTH = 4
RATIO_JITTER_WIDTH = 0.1

# 扰动基准从前 N 个精英中选取
ELITE_POOL_SIZE = 3

# 扰动时沿用基准分配策略的概率
KEEP_STRATEGY_PROBABILITY = 0.9


def normalize_weights(raw: Sequence[float]) -> tuple[float, float, float, float]:
    """归一化四个权重使其和为 1。

    后三个权重保留 3 位小数，舍入残差全部并入第一个权重，保证总和严格为 1。
    """
    total = sum(raw)
    if total <= 0:
        raw = [1.0] * len(raw)
        total = float(len(raw))
    scaled = [w / total for w in raw]
    rest = [round(w, 3) for w in scaled[1:]]
    first = round(1 - sum(rest), 3)
    return (first, *rest)


class CandidateGenerator:
    """候选参数组合生成器。

    Args:
        space: 参数空间
        rng: 随机数源（测试中传入固定种子）
    """

    def __init__(self, space: ParameterSpace, rng: random.Random | None = None) -> None:
        self._space = space
        self._rng = rng or random.Random()
        self._ids = itertools.count(1)

    @property
    def space(self) -> ParameterSpace:
        return self._space

    # --- 网格 ---

    def grid(self) -> list[ParameterCombination]:
        """完整网格：权重按各自步长枚举，标量维度全量枚举。"""
        weights = self._weight_grid()
        scalars = generate_combinations(self._space.scalar_ranges)
        return self._cross_join(weights, scalars, "grid")

    def coarse_grid(self, limit: int | None = None) -> list[ParameterCombination]:
        """粗粒度网格：权重步长 0.2，标量维度只取 {min, mid, max}，最多 limit 个。"""
        weights = self._weight_grid(COARSE_WEIGHT_STEP)
        ranges = self._space.scalar_ranges
        names = list(ranges)
        scalars = [
            dict(zip(names, values))
            for values in itertools.product(*(ranges[n].coarse_values() for n in names))
        ]
        return self._cross_join(weights, scalars, "coarse", limit)

    def _weight_grid(self, step: float | None = None) -> list[tuple[float, ...]]:
        pc_range, vol_range, vlt_range, funding_range = self._space.weight_ranges
        tuples = []
        for pc in pc_range.values(step):
            for vol in vol_range.values(step):
                for vlt in vlt_range.values(step):
                    funding = round(1 - pc - vol - vlt, 6)
                    if funding >= 0 and funding_range.contains(funding):
                        tuples.append((pc, vol, vlt, funding))
        return tuples

    def _cross_join(
        self,
        weight_tuples: list[tuple[float, ...]],
        scalar_combos: list[dict],
        prefix: str,
        limit: int | None = None,
    ) -> list[ParameterCombination]:
        combinations: list[ParameterCombination] = []
        for weights, scalars, strategy in itertools.product(
            weight_tuples, scalar_combos, self._space.allocation_strategies,
        ):
            if limit is not None and len(combinations) >= limit:
                break
            combinations.append(ParameterCombination(
                *weights,
                max_short_positions=scalars["max_short_positions"],
                allocation_strategy=strategy,
                max_single_position_ratio=scalars.get("max_single_position_ratio"),
                id=f"{prefix}_{next(self._ids)}",
            ))
        return combinations

    # --- 随机采样 ---

    def random(self) -> ParameterCombination:
        """随机组合：权重服从狄利克雷分布（伽马采样归一化），其余维度均匀分布。"""
        samples = [self._gamma(alpha) for alpha in DIRICHLET_ALPHA]
        total = sum(samples)
        clipped = [
            min(self._space.max_weight, max(self._space.min_weight, s / total))
            for s in samples
        ]
        weights = normalize_weights(clipped)

        positions_range = self._space.max_short_positions
        positions = self._rng.randint(int(positions_range.minimum), int(positions_range.maximum))

        ratio = None
        ratio_range = self._space.max_single_position_ratio
        if ratio_range is not None:
            ratio = round(self._rng.uniform(ratio_range.minimum, ratio_range.maximum), 3)

        return ParameterCombination(
            *weights,
            max_short_positions=positions,
            allocation_strategy=self._random_strategy(),
            max_single_position_ratio=ratio,
            id=f"random_{next(self._ids)}",
        )

    def _random_strategy(self) -> AllocationStrategy:
        return self._rng.choice(self._space.allocation_strategies)

    def _gamma(self, alpha: float, beta: float = 1.0) -> float:
        """Marsaglia-Tsang 伽马分布采样。"""
        if alpha < 1:
            return self._gamma(alpha + 1, beta) * self._rng.random() ** (1 / alpha)

        d = alpha - 1 / 3
        c = 1 / math.sqrt(9 * d)
        while True:
            x = self._normal()
            v = 1 + c * x
            if v <= 0:
                continue
            v = v * v * v
            u = self._rng.random()
            if u < 1 - 0.0331 * x ** 4:
                return d * v / beta
            if u > 0 and math.log(u) < 0.5 * x * x + d * (1 - v + math.log(v)):
                return d * v / beta

    def _normal(self) -> float:
        """Box-Muller 标准正态采样。"""
        u1 = 1.0 - self._rng.random()  # (0, 1]，避免 log(0)
        u2 = self._rng.random()
        return math.sqrt(-2 * math.log(u1)) * math.cos(2 * math.pi * u2)

    # --- 精英扰动 ---

    def perturb(self, elites: Sequence[EvaluationResult]) -> ParameterCombination:
        """在前 3 个精英之一附近扰动生成新组合，没有精英时退化为随机采样。"""
        if not elites:
            return self.random()

        base = self._rng.choice(list(elites[:ELITE_POOL_SIZE])).combination
        space = self._space

        jittered = [
            max(space.min_weight, w + (self._rng.random() - 0.5) * WEIGHT_JITTER_WIDTH)
            for w in base.weights
        ]
        total = sum(jittered)
        capped = [min(space.max_weight, w / total) for w in jittered]
        weights = normalize_weights(capped)

        positions = space.max_short_positions.clamp(
            round(base.max_short_positions + (self._rng.random() - 0.5) * POSITIONS_JITTER_WIDTH)
        )

        ratio = None
        if space.max_single_position_ratio is not None:
            ratio_range = space.max_single_position_ratio
            start = base.max_single_position_ratio
            if start is None:
                start = ratio_range.mid
            ratio = round(
                ratio_range.clamp(start + (self._rng.random() - 0.5) * RATIO_JITTER_WIDTH), 3,
            )

        strategy = base.allocation_strategy
        if (
            strategy not in space.allocation_strategies
            or self._rng.random() >= KEEP_STRATEGY_PROBABILITY
        ):
            strategy = self._random_strategy()

        return ParameterCombination(
            *weights,
            max_short_positions=positions,
            allocation_strategy=strategy,
            max_single_position_ratio=ratio,
            id=f"perturbed_{next(self._ids)}",
        )
