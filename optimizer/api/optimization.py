"""参数优化 HTTP API。

提供优化任务提交、进度查询、取消、导出导入、报告和参数校验端点。
任务保存在进程内注册表中，服务重启后丢失（可通过导出 / 导入保留结果）。
"""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from optimizer.client import HttpScoringClient, ScoringClient
from optimizer.config import settings
from optimizer.exceptions import FatalConfigurationError, ParameterValidationError
from optimizer.search.analysis import export_csv, generate_report
from optimizer.search.export import export_payload, import_payload
from optimizer.search.models import ParameterCombination, SearchConfig
from optimizer.search.orchestrator import SearchOrchestrator
from optimizer.search.param_space import ParameterSpace
from optimizer.search.progress import estimate_remaining
from optimizer.search.task import SearchTask

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{settings.api_prefix}/optimization", tags=["optimization"])


# ---------------------------------------------------------------------------
# 服务对象：编排器 + 任务注册表
# ---------------------------------------------------------------------------


class OptimizationService:
    """持有编排器和所有已提交 / 导入任务的注册表。"""

    def __init__(
        self,
        client: ScoringClient | None = None,
        orchestrator: SearchOrchestrator | None = None,
    ) -> None:
        self._client = client or HttpScoringClient()
        self.orchestrator = orchestrator or SearchOrchestrator(self._client)
        self.tasks: dict[str, SearchTask] = {}
        self._runners: dict[str, asyncio.Task] = {}

    def submit(self, config: SearchConfig, space: ParameterSpace | None) -> SearchTask:
        """启动任务并在后台运行。"""
        task = self.orchestrator.start(config, space)
        self.tasks[task.id] = task
        self._runners[task.id] = asyncio.create_task(self._run(task))
        return task

    async def wait(self, task_id: str) -> None:
        runner = self._runners.get(task_id)
        if runner is not None:
            await runner

    async def _run(self, task: SearchTask) -> SearchTask:
        try:
            await self.orchestrator.run(task)
        except Exception:
            # 失败原因已记录在 task.error 中，编排器已输出堆栈
            logger.warning("后台优化任务 %s 以失败状态结束：%s", task.id, task.error)
        finally:
            self._runners.pop(task.id, None)
        return task

    def register(self, task: SearchTask) -> None:
        self.tasks[task.id] = task

    def get(self, task_id: str) -> SearchTask | None:
        return self.tasks.get(task_id)

    def remove(self, task_id: str) -> SearchTask | None:
        task = self.tasks.pop(task_id, None)
        if task is not None:
            self.orchestrator.dispose(task)
        return task

    @property
    def running(self) -> list[asyncio.Task]:
        return list(self._runners.values())

    async def shutdown(self, timeout: float) -> None:
        """取消所有运行中的搜索，等待其结束后关闭 HTTP 客户端。"""
        runners = self.running
        for task in self.tasks.values():
            self.orchestrator.cancel(task)
        if runners:
            logger.info("[关闭] 等待 %d 个优化任务结束...", len(runners))
            _, still_running = await asyncio.wait(runners, timeout=timeout)
            for runner in still_running:
                runner.cancel()
            if still_running:
                logger.warning("[关闭] %d 个优化任务超时，已强制取消", len(still_running))
                await asyncio.gather(*still_running, return_exceptions=True)
        if isinstance(self._client, HttpScoringClient):
            await self._client.aclose()


_service: OptimizationService | None = None


def get_service() -> OptimizationService:
    global _service
    if _service is None:
        _service = OptimizationService()
    return _service


async def close_service(timeout: float = 30) -> None:
    global _service
    if _service is not None:
        await _service.shutdown(timeout)
        _service = None


# ---------------------------------------------------------------------------
# Pydantic 请求/响应模型
# ---------------------------------------------------------------------------


class OptimizationRunRequest(BaseModel):
    """优化任务提交请求，字段结构与导出 JSON 中的 config / parameterSpace 一致。"""
    config: dict = Field(default_factory=dict, description="搜索配置")
    parameter_space: dict | None = Field(None, description="参数空间（为空使用默认范围）")
    wait: bool = Field(False, description="是否等待任务结束再返回")


class OptimizationRunResponse(BaseModel):
    """优化任务提交响应。"""
    task_id: str
    status: str
    error_message: str | None = None


class ProgressInfo(BaseModel):
    current: int
    total: int
    percentage: float


class OptimizationTaskResponse(BaseModel):
    """优化任务详情响应。"""
    task_id: str
    status: str
    method: str
    objective: str
    progress: ProgressInfo
    estimated_time_remaining: float = 0.0
    start_time: str | None = None
    end_time: str | None = None
    results: list[dict] = []
    error_message: str | None = None


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool
    status: str


class ValidateRequest(BaseModel):
    """参数组合校验请求。"""
    combination: dict = Field(..., description="参数组合（camelCase 字段）")
    parameter_space: dict | None = Field(None, description="参数空间（为空使用默认范围）")


class ValidateResponse(BaseModel):
    valid: bool
    errors: list[str] = []
    warnings: list[str] = []


def _task_response(task: SearchTask) -> OptimizationTaskResponse:
    return OptimizationTaskResponse(
        task_id=task.id,
        status=task.status.value,
        method=task.config.method.value,
        objective=task.config.objective.value,
        progress=ProgressInfo(**task.progress.to_dict()),
        estimated_time_remaining=estimate_remaining(
            task.elapsed_seconds, task.progress.current, task.progress.total,
        ),
        start_time=task.start_time.isoformat() if task.start_time else None,
        end_time=task.end_time.isoformat() if task.end_time else None,
        results=[r.to_dict() for r in task.results.top_k()],
        error_message=task.error,
    )


def _require_task(service: OptimizationService, task_id: str) -> SearchTask:
    task = service.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"优化任务 {task_id} 不存在")
    return task


# ---------------------------------------------------------------------------
# 端点
# ---------------------------------------------------------------------------


@router.post("/run", response_model=OptimizationRunResponse)
async def run_optimization(
    req: OptimizationRunRequest,
    service: OptimizationService = Depends(get_service),
) -> OptimizationRunResponse:
    """提交参数优化任务。"""
    try:
        config = SearchConfig.from_dict(req.config)
        space = ParameterSpace.from_dict(req.parameter_space)
    except FatalConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if not config.base_params.get("startDate") or not config.base_params.get("endDate"):
        raise HTTPException(status_code=400, detail="baseParams 必须包含 startDate 和 endDate")

    task = service.submit(config, space)
    if req.wait:
        await service.wait(task.id)

    return OptimizationRunResponse(
        task_id=task.id,
        status=task.status.value,
        error_message=task.error,
    )


@router.get("/recommended-config")
async def get_recommended_config() -> dict:
    """推荐的搜索配置和默认参数空间。"""
    return {
        "config": SearchConfig.recommended().to_dict(),
        "parameterSpace": ParameterSpace().to_dict(),
    }


@router.post("/validate", response_model=ValidateResponse)
async def validate_combination(req: ValidateRequest) -> ValidateResponse:
    """校验单个参数组合。"""
    try:
        space = ParameterSpace.from_dict(req.parameter_space)
        combination = ParameterCombination.from_dict(req.combination)
    except (FatalConfigurationError, KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"参数格式错误: {e}") from e

    try:
        result = space.ensure_valid(combination)
    except ParameterValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors) from e
    return ValidateResponse(valid=True, warnings=result.warnings)


@router.post("/import", response_model=OptimizationTaskResponse)
async def import_optimization(
    payload: dict[str, Any],
    service: OptimizationService = Depends(get_service),
) -> OptimizationTaskResponse:
    """导入之前导出的优化结果。"""
    try:
        task = import_payload(payload)
    except FatalConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    service.register(task)
    return _task_response(task)


@router.get("/{task_id}", response_model=OptimizationTaskResponse)
async def get_optimization_task(
    task_id: str,
    service: OptimizationService = Depends(get_service),
) -> OptimizationTaskResponse:
    """查询任务进度和当前排行榜。"""
    return _task_response(_require_task(service, task_id))


@router.post("/{task_id}/cancel", response_model=CancelResponse)
async def cancel_optimization(
    task_id: str,
    service: OptimizationService = Depends(get_service),
) -> CancelResponse:
    """取消运行中的任务，已结束的任务返回 cancelled=false。"""
    task = _require_task(service, task_id)
    cancelled = service.orchestrator.cancel(task)
    return CancelResponse(task_id=task.id, cancelled=cancelled, status=task.status.value)


@router.delete("/{task_id}")
async def delete_optimization(
    task_id: str,
    service: OptimizationService = Depends(get_service),
) -> dict:
    """删除任务并释放其结果。"""
    task = service.remove(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"优化任务 {task_id} 不存在")
    return {"task_id": task_id, "deleted": True}


@router.get("/{task_id}/export")
async def export_optimization(
    task_id: str,
    service: OptimizationService = Depends(get_service),
) -> dict:
    """导出任务（前 10 条结果）。"""
    return export_payload(_require_task(service, task_id))


@router.get("/{task_id}/export.csv", response_class=PlainTextResponse)
async def export_optimization_csv(
    task_id: str,
    service: OptimizationService = Depends(get_service),
) -> str:
    task = _require_task(service, task_id)
    return export_csv(task.results.top_k())


@router.get("/{task_id}/report")
async def get_optimization_report(
    task_id: str,
    service: OptimizationService = Depends(get_service),
) -> dict:
    """优化报告：最优结果、参数重要性和绩效分布。"""
    task = _require_task(service, task_id)
    try:
        return generate_report(task)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
