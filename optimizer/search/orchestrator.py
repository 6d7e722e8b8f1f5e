"""搜索编排器：按搜索方法生成候选、并发评估、维护排行榜和任务状态。

三种搜索方法：
- grid：完整网格一次性生成，总数为网格大小
- randomized（兼容旧名 bayesian）：min(10, 预算) 个随机样本探索，之后围绕精英扰动
- hybrid：粗网格（最多 30% 预算，不足部分用随机样本补齐），之后围绕精英扰动

预算按"尝试过的候选数"计算，跳过、失败和成功都计入，进度一定能走到 100%。
同时在途的评估协程不超过闸门容量，扰动生成时读取的是最新的排行榜。
"""

import asyncio
import logging
import random
from collections.abc import Callable, Iterator
from datetime import datetime

from optimizer.client import ScoringClient
from optimizer.config import settings
from optimizer.exceptions import FatalConfigurationError, SearchCancelledError
from optimizer.search.cross_validation import CrossValidationScorer
from optimizer.search.evaluator import RetryingEvaluator
from optimizer.search.gate import ConcurrencyGate
from optimizer.search.generator import ELITE_POOL_SIZE, CandidateGenerator
from optimizer.search.models import (
    ParameterCombination,
    SearchConfig,
    SearchMethod,
    TaskStatus,
)
from optimizer.search.param_space import ParameterSpace
from optimizer.search.progress import ProgressReporter
from optimizer.search.result_store import ResultStore
from optimizer.search.task import SearchTask

logger = logging.getLogger(__name__)

# (总候选数, 惰性候选序列)
CandidatePlan = tuple[int, Iterator[ParameterCombination]]


class SearchOrchestrator:
    """参数搜索编排器，同一时间只有一个活动任务。

    Args:
        client: 评分服务客户端
        capacity: 并发闸门容量
        max_attempts: 单次评估最多尝试次数
        retry_delay: 重试基础延迟（秒）
        result_limit: 排行榜容量
        rng: 随机数源，候选生成和验证期抽取共用
        reporter: 进度广播器
    """

    def __init__(
        self,
        client: ScoringClient,
        *,
        capacity: int | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        result_limit: int | None = None,
        rng: random.Random | None = None,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self._client = client
        self._gate = ConcurrencyGate(capacity or settings.max_concurrent_evaluations)
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._result_limit = result_limit or settings.result_limit
        self._rng = rng or random.Random()
        self._reporter = reporter or ProgressReporter()
        self._active: SearchTask | None = None
        self._planners: dict[SearchMethod, Callable[[SearchTask, CandidateGenerator], CandidatePlan]] = {
            SearchMethod.GRID: self._plan_grid,
            SearchMethod.RANDOMIZED: self._plan_randomized,
            SearchMethod.HYBRID: self._plan_hybrid,
        }

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def reporter(self) -> ProgressReporter:
        return self._reporter

    @property
    def active_task(self) -> SearchTask | None:
        return self._active

    # --- 任务生命周期 ---

    def start(self, config: SearchConfig, space: ParameterSpace | None = None) -> SearchTask:
        """创建新任务并设为活动任务，上一个未结束的任务会被取消。"""
        previous = self._active
        if previous is not None and not previous.status.is_terminal:
            logger.info("启动新任务，取消上一个任务 %s", previous.id)
            previous.token.cancel("被新的优化任务取代")

        space = space or ParameterSpace()
        if config.allocation_strategy_mode == "fixed" and config.fixed_allocation_strategy is not None:
            space = space.with_allocation_strategies((config.fixed_allocation_strategy,))

        task = SearchTask(
            config=config,
            parameter_space=space,
            results=ResultStore(self._result_limit),
        )
        self._active = task
        return task

    async def optimize(self, config: SearchConfig, space: ParameterSpace | None = None) -> SearchTask:
        task = self.start(config, space)
        await self.run(task)
        return task

    def cancel(self, task: SearchTask | None = None) -> bool:
        """取消指定任务（默认活动任务），任务已结束时返回 False。"""
        target = task or self._active
        if target is None or target.status.is_terminal:
            return False
        target.token.cancel()
        logger.info("优化任务 %s 已请求取消", target.id)
        return True

    def dispose(self, task: SearchTask) -> None:
        """释放任务持有的结果，释放后排行榜为空。"""
        task.token.cancel("任务已释放")
        task.results.clear()
        self._reporter.forget(task.id)
        if self._active is task:
            self._active = None

    async def run(self, task: SearchTask) -> SearchTask:
        """执行任务直到预算用尽、被取消或失败。

        取消时任务状态为 cancelled，不向上抛出；其他异常把任务标记为 failed 后原样抛出。
        """
        if task.status is not TaskStatus.PENDING:
            raise RuntimeError(f"任务 {task.id} 当前状态为 {task.status.value}，不能重复运行")

        task.status = TaskStatus.RUNNING
        task.start_time = datetime.now()
        pending: set[asyncio.Task] = set()

        try:
            generator = CandidateGenerator(task.parameter_space, self._rng)
            evaluate = self._build_evaluate(task)
            total, candidates = self._plan(task, generator)
            task.progress.total = total
            logger.info(
                "优化任务开始：id=%s，方法=%s，目标=%s，候选数=%d",
                task.id, task.config.method.value, task.config.objective.value, total,
            )
            self._reporter.publish(task)

            while True:
                if len(pending) >= self._gate.capacity:
                    await self._collect(task, pending)
                task.token.raise_if_cancelled()
                candidate = next(candidates, None)
                if candidate is None:
                    break
                pending.add(asyncio.create_task(evaluate(candidate, task.config, task.token)))

            while pending:
                await self._collect(task, pending)

            task.progress.complete()
            task.status = TaskStatus.COMPLETED
            best = task.results.best
            logger.info(
                "优化任务完成：id=%s，有效结果 %d，最优目标值 %s",
                task.id, len(task.results), f"{best.objective_value:.4f}" if best else "-",
            )
        except SearchCancelledError:
            await self._abandon(pending)
            task.status = TaskStatus.CANCELLED
            task.error = task.token.reason or None
            logger.info("优化任务 %s 已取消：%s", task.id, task.token.reason)
        except asyncio.CancelledError:
            # 外部取消（如服务关闭），清理后继续向上传播
            task.token.cancel("服务关闭")
            await self._abandon(pending)
            task.status = TaskStatus.CANCELLED
            task.error = task.token.reason
            raise
        except Exception as exc:
            task.token.cancel("任务失败")
            await self._abandon(pending)
            task.status = TaskStatus.FAILED
            task.error = str(exc)
            logger.exception("优化任务 %s 失败", task.id)
            raise
        finally:
            task.end_time = datetime.now()
            self._reporter.publish(task)

        return task

    # --- 评估调度 ---

    def _build_evaluate(self, task: SearchTask):
        evaluator = RetryingEvaluator(
            self._client,
            task.parameter_space,
            self._gate,
            max_attempts=self._max_attempts,
            retry_delay=self._retry_delay,
        )
        if task.config.cross_validation_enabled:
            return CrossValidationScorer(evaluator, self._rng).evaluate
        return evaluator.evaluate

    async def _collect(self, task: SearchTask, pending: set[asyncio.Task]) -> None:
        """等待至少一个评估完成（或任务被取消），记录结果并推进进度。"""
        cancel_waiter = asyncio.ensure_future(task.token.wait())
        try:
            done, _ = await asyncio.wait(
                {*pending, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()

        # 取消之后完成的评估结果一律丢弃
        task.token.raise_if_cancelled()

        for finished in done:
            pending.discard(finished)
            result = finished.result()
            task.progress.advance()
            if result is not None:
                task.results.insert(result)
        self._reporter.publish(task)

    @staticmethod
    async def _abandon(pending: set[asyncio.Task]) -> None:
        for running in pending:
            running.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        pending.clear()

    # --- 候选计划 ---

    def _plan(self, task: SearchTask, generator: CandidateGenerator) -> CandidatePlan:
        try:
            planner = self._planners[task.config.method]
        except KeyError:
            raise FatalConfigurationError(f"不支持的搜索方法: {task.config.method!r}") from None
        return planner(task, generator)

    def _plan_grid(self, task: SearchTask, generator: CandidateGenerator) -> CandidatePlan:
        candidates = generator.grid()
        return len(candidates), iter(candidates)

    def _plan_randomized(self, task: SearchTask, generator: CandidateGenerator) -> CandidatePlan:
        budget = _budget(task.config)
        exploration = min(settings.exploration_samples, budget)

        def candidates() -> Iterator[ParameterCombination]:
            for _ in range(exploration):
                yield generator.random()
            for _ in range(budget - exploration):
                yield generator.perturb(task.results.elites(ELITE_POOL_SIZE))

        return budget, candidates()

    def _plan_hybrid(self, task: SearchTask, generator: CandidateGenerator) -> CandidatePlan:
        budget = _budget(task.config)
        quota = int(budget * settings.hybrid_coarse_ratio)
        coarse = generator.coarse_grid(limit=quota)
        logger.info("混合搜索：粗网格 %d 个，随机补齐 %d 个", len(coarse), quota - len(coarse))

        def candidates() -> Iterator[ParameterCombination]:
            yield from coarse
            for _ in range(quota - len(coarse)):
                yield generator.random()
            for _ in range(budget - quota):
                yield generator.perturb(task.results.elites(ELITE_POOL_SIZE))

        return budget, candidates()


def _budget(config: SearchConfig) -> int:
    if config.max_iterations < 1:
        raise FatalConfigurationError(f"max_iterations 必须大于 0，当前值: {config.max_iterations}")
    return config.max_iterations
