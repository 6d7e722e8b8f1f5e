"""搜索编排器测试：三种搜索方法、预算、并发、取消和失败处理。"""

import asyncio
import random

import pytest

from optimizer.exceptions import FatalConfigurationError
from optimizer.search.generator import CandidateGenerator
from optimizer.search.models import (
    AllocationStrategy,
    CrossValidationConfig,
    EvaluationResult,
    ParameterCombination,
    PerformanceMetrics,
    SearchConfig,
    SearchMethod,
    TaskStatus,
)
from optimizer.search.orchestrator import SearchOrchestrator
from optimizer.search.param_space import ParameterSpace, RangeSpec

BASE_PARAMS = {"startDate": "2025-01-01", "endDate": "2025-06-20", "initialCapital": 10000}


class FakeScoringClient:
    """假评分服务：夏普 = 跌幅权重 × 10，记录调用次数和并发峰值。"""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls = 0
        self.current = 0
        self.peak = 0

    async def score(self, params: dict) -> dict:
        self.calls += 1
        self.current += 1
        self.peak = max(self.peak, self.current)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.current -= 1
        return {
            "success": True,
            "data": {"performance": {
                "sharpeRatio": params["priceChangeWeight"] * 10,
                "totalReturn": params["volumeWeight"],
                "maxDrawdown": 0.1,
            }},
        }


def _config(method: SearchMethod, max_iterations: int = 20, **kwargs) -> SearchConfig:
    return SearchConfig(method=method, max_iterations=max_iterations, base_params=dict(BASE_PARAMS), **kwargs)


def _orchestrator(client, capacity: int = 3, seed: int = 42) -> SearchOrchestrator:
    return SearchOrchestrator(
        client, capacity=capacity, retry_delay=0, result_limit=10, rng=random.Random(seed),
    )


class TestSearchMethods:
    """三种搜索方法测试。"""

    @pytest.mark.asyncio
    async def test_grid_evaluates_whole_grid(self) -> None:
        client = FakeScoringClient()
        space = ParameterSpace()
        grid_size = len(CandidateGenerator(space).grid())

        task = await _orchestrator(client).optimize(_config(SearchMethod.GRID, max_iterations=5), space)

        assert task.status is TaskStatus.COMPLETED
        assert task.progress.total == grid_size
        assert task.progress.current == grid_size
        assert task.progress.percentage == 100.0
        assert client.calls == grid_size
        assert len(task.results) == 10
        values = [r.objective_value for r in task.results]
        assert values == sorted(values, reverse=True)
        # 网格中跌幅权重最大为 0.7
        assert task.results.best.objective_value == pytest.approx(7.0)

    @pytest.mark.asyncio
    async def test_randomized_uses_budget(self) -> None:
        client = FakeScoringClient()
        task = await _orchestrator(client).optimize(_config(SearchMethod.RANDOMIZED, max_iterations=25))
        assert task.status is TaskStatus.COMPLETED
        assert task.progress.total == 25
        assert task.progress.current == 25
        assert client.calls == 25

    @pytest.mark.asyncio
    async def test_bayesian_alias(self) -> None:
        config = SearchConfig.from_dict({"method": "bayesian", "maxIterations": 5, "baseParams": BASE_PARAMS})
        assert config.method is SearchMethod.RANDOMIZED
        task = await _orchestrator(FakeScoringClient()).optimize(config)
        assert task.status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_hybrid_uses_budget(self) -> None:
        client = FakeScoringClient()
        task = await _orchestrator(client).optimize(_config(SearchMethod.HYBRID, max_iterations=30))
        assert task.status is TaskStatus.COMPLETED
        assert task.progress.current == task.progress.total == 30
        assert client.calls == 30

    def test_hybrid_plan_order(self) -> None:
        """粗网格不足配额时用随机样本补齐，之后为扰动候选。"""
        space = ParameterSpace(
            price_change_weight=RangeSpec(0.4, 0.4, 0.1),
            volume_weight=RangeSpec(0.3, 0.3, 0.1),
            volatility_weight=RangeSpec(0.2, 0.2, 0.1),
            funding_rate_weight=RangeSpec(0.1, 0.1, 0.1),
            max_short_positions=RangeSpec(10, 10, 1, "int"),
        )
        orchestrator = _orchestrator(FakeScoringClient())
        task = orchestrator.start(_config(SearchMethod.HYBRID, max_iterations=10), space)
        task.results.insert(EvaluationResult(
            combination=ParameterCombination(0.4, 0.3, 0.2, 0.1, max_short_positions=10,
                                             allocation_strategy=AllocationStrategy.EQUAL_ALLOCATION),
            objective_value=1.0,
            metrics=PerformanceMetrics(),
        ))

        total, candidates = orchestrator._plan(task, CandidateGenerator(space, random.Random(0)))
        prefixes = [c.id.split("_")[0] for c in candidates]

        assert total == 10
        assert prefixes == ["coarse", "random", "random"] + ["perturbed"] * 7

    @pytest.mark.asyncio
    async def test_invalid_budget_fails_task(self) -> None:
        orchestrator = _orchestrator(FakeScoringClient())
        task = orchestrator.start(_config(SearchMethod.RANDOMIZED, max_iterations=0))
        with pytest.raises(FatalConfigurationError):
            await orchestrator.run(task)
        assert task.status is TaskStatus.FAILED
        assert "max_iterations" in task.error

    @pytest.mark.asyncio
    async def test_cross_validation_results_attached(self) -> None:
        config = _config(
            SearchMethod.RANDOMIZED, max_iterations=4,
            cross_validation=CrossValidationConfig.default(),
        )
        task = await _orchestrator(FakeScoringClient()).optimize(config)
        assert task.status is TaskStatus.COMPLETED
        assert all(r.cross_validation is not None for r in task.results)


class TestConcurrencyAndBudget:
    """并发上限与预算计数测试。"""

    @pytest.mark.asyncio
    async def test_in_flight_bounded_by_capacity(self) -> None:
        client = FakeScoringClient(delay=0.01)
        task = await _orchestrator(client, capacity=2).optimize(_config(SearchMethod.RANDOMIZED, max_iterations=12))
        assert task.status is TaskStatus.COMPLETED
        assert client.peak <= 2
        assert client.calls == 12

    @pytest.mark.asyncio
    async def test_zero_results_is_completed(self) -> None:
        """所有评估都缺少性能指标时任务仍为 completed，排行榜为空。"""

        class EmptyClient:
            async def score(self, params: dict) -> dict:
                return {"success": True, "data": {}}

        task = await _orchestrator(EmptyClient()).optimize(_config(SearchMethod.RANDOMIZED, max_iterations=6))
        assert task.status is TaskStatus.COMPLETED
        assert len(task.results) == 0
        assert task.progress.current == 6

    @pytest.mark.asyncio
    async def test_fixed_allocation_mode(self) -> None:
        """固定分配策略模式下所有候选使用同一策略。"""
        space = ParameterSpace(allocation_strategies=tuple(AllocationStrategy))
        config = _config(
            SearchMethod.RANDOMIZED, max_iterations=10,
            allocation_strategy_mode="fixed",
            fixed_allocation_strategy=AllocationStrategy.BY_COMPOSITE_SCORE,
        )
        task = await _orchestrator(FakeScoringClient()).optimize(config, space)
        assert task.parameter_space.allocation_strategies == (AllocationStrategy.BY_COMPOSITE_SCORE,)
        assert all(
            r.combination.allocation_strategy is AllocationStrategy.BY_COMPOSITE_SCORE
            for r in task.results
        )


class TestTerminalStates:
    """取消与失败测试。"""

    @pytest.mark.asyncio
    async def test_cancel_stops_remote_calls(self) -> None:
        """取消后不再发起远程调用，任务状态为 cancelled 且不抛出异常。"""
        orchestrator = _orchestrator(None, capacity=2)
        calls_after_cancel = 0
        calls = 0

        class CancellingClient:
            async def score(self, params: dict) -> dict:
                nonlocal calls, calls_after_cancel
                if task.token.cancelled:
                    calls_after_cancel += 1
                calls += 1
                if calls == 5:
                    orchestrator.cancel(task)
                await asyncio.sleep(0)
                return {"success": True, "data": {"performance": {"sharpeRatio": 1.0}}}

        orchestrator._client = CancellingClient()
        task = orchestrator.start(_config(SearchMethod.RANDOMIZED, max_iterations=50))
        await orchestrator.run(task)

        assert task.status is TaskStatus.CANCELLED
        assert calls_after_cancel == 0
        assert calls < 50
        assert task.end_time is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_task(self) -> None:
        class BrokenClient:
            async def score(self, params: dict) -> dict:
                raise RuntimeError("scorer exploded")

        orchestrator = _orchestrator(BrokenClient())
        task = orchestrator.start(_config(SearchMethod.RANDOMIZED, max_iterations=5))
        with pytest.raises(RuntimeError):
            await orchestrator.run(task)
        assert task.status is TaskStatus.FAILED
        assert task.error == "scorer exploded"
        assert orchestrator.gate.in_flight == 0

    def test_start_cancels_previous_task(self) -> None:
        orchestrator = _orchestrator(FakeScoringClient())
        first = orchestrator.start(_config(SearchMethod.RANDOMIZED))
        second = orchestrator.start(_config(SearchMethod.RANDOMIZED))
        assert first.token.cancelled
        assert not second.token.cancelled
        assert orchestrator.active_task is second

    @pytest.mark.asyncio
    async def test_run_twice_rejected(self) -> None:
        orchestrator = _orchestrator(FakeScoringClient())
        task = await orchestrator.optimize(_config(SearchMethod.RANDOMIZED, max_iterations=2))
        with pytest.raises(RuntimeError):
            await orchestrator.run(task)

    @pytest.mark.asyncio
    async def test_dispose_clears_results(self) -> None:
        orchestrator = _orchestrator(FakeScoringClient())
        task = await orchestrator.optimize(_config(SearchMethod.RANDOMIZED, max_iterations=3))
        assert len(task.results) > 0
        orchestrator.dispose(task)
        assert len(task.results) == 0
        assert orchestrator.active_task is None
        assert orchestrator.cancel(task) is False

    @pytest.mark.asyncio
    async def test_progress_stream_ends_on_terminal(self) -> None:
        orchestrator = _orchestrator(FakeScoringClient())
        task = orchestrator.start(_config(SearchMethod.RANDOMIZED, max_iterations=5))
        stream = orchestrator.reporter.stream(task.id)
        await orchestrator.run(task)

        snapshots = [s async for s in stream]
        assert snapshots[0].current_iteration == 0
        assert snapshots[-1].status is TaskStatus.COMPLETED
        assert snapshots[-1].current_iteration == 5
        assert orchestrator.reporter.latest(task.id) is snapshots[-1]
