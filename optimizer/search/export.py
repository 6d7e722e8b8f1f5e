"""优化结果的 JSON 导出与导入。

导出结构：
    {
      "taskInfo": {id, status, startTime, endTime, config, parameterSpace},
      "results": [...],          # 最多 10 条
      "summary": {totalCombinations, bestObjectiveValue, bestParameters}
    }

导入得到一个已完成的任务（进度 100%），结构错误时抛出 FatalConfigurationError。
"""

import json
import logging
from datetime import datetime
from typing import Any

from optimizer.exceptions import FatalConfigurationError
from optimizer.search.models import EvaluationResult, SearchConfig, TaskStatus
from optimizer.search.param_space import ParameterSpace
from optimizer.search.result_store import ResultStore
from optimizer.search.task import Progress, SearchTask

logger = logging.getLogger(__name__)

EXPORT_RESULT_LIMIT = 10


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, (int, float)):
        # 毫秒时间戳
        return datetime.fromtimestamp(value / 1000)
    return datetime.fromisoformat(str(value))


def export_payload(task: SearchTask) -> dict[str, Any]:
    results = task.results.top_k()[:EXPORT_RESULT_LIMIT]
    best = results[0] if results else None
    return {
        "taskInfo": {
            "id": task.id,
            "status": task.status.value,
            "startTime": _format_time(task.start_time),
            "endTime": _format_time(task.end_time),
            "config": task.config.to_dict(),
            "parameterSpace": task.parameter_space.to_dict(),
        },
        "results": [r.to_dict() for r in results],
        "summary": {
            "totalCombinations": len(task.results),
            "bestObjectiveValue": best.objective_value if best else 0,
            "bestParameters": best.combination.to_dict() if best else None,
        },
    }


def export_task(task: SearchTask) -> str:
    """导出任务为 JSON 字符串（只含前 10 条结果）。"""
    return json.dumps(export_payload(task), ensure_ascii=False, indent=2)


def import_task(text: str) -> SearchTask:
    """从导出的 JSON 重建一个已完成的任务。"""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise FatalConfigurationError(f"导入失败: JSON 解析错误 {exc}") from exc
    if not isinstance(data, dict):
        raise FatalConfigurationError("导入失败: 顶层结构必须是 JSON 对象")
    return import_payload(data)


def import_payload(data: dict[str, Any]) -> SearchTask:
    info = data.get("taskInfo")
    raw_results = data.get("results") or []
    if not isinstance(info, dict) or not isinstance(raw_results, list):
        raise FatalConfigurationError("导入失败: 缺少 taskInfo 或 results")

    try:
        config = SearchConfig.from_dict(info.get("config") or {})
        # 旧版导出文件使用 parameterRange 字段
        space = ParameterSpace.from_dict(info.get("parameterSpace") or info.get("parameterRange"))
        results = [EvaluationResult.from_dict(r) for r in raw_results]
        start_time = _parse_time(info.get("startTime"))
        end_time = _parse_time(info.get("endTime"))
    except FatalConfigurationError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise FatalConfigurationError(f"导入失败: {exc}") from exc

    store = ResultStore(max(len(results), EXPORT_RESULT_LIMIT))
    for result in results:
        store.insert(result)

    now = datetime.now()
    task_kwargs: dict[str, Any] = {}
    if info.get("id"):
        task_kwargs["id"] = str(info["id"])
    task = SearchTask(
        config=config,
        parameter_space=space,
        status=TaskStatus.COMPLETED,
        progress=Progress(current=len(results), total=len(results), percentage=100.0),
        results=store,
        start_time=start_time or now,
        end_time=end_time or now,
        **task_kwargs,
    )
    logger.info("导入优化任务 %s，结果 %d 条", task.id, len(results))
    return task
