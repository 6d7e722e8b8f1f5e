"""参数搜索模块。

提供网格、随机扰动和混合三种搜索方法，限流重试评估、Top-K 排行榜、
随机时间窗口交叉验证以及结果导出导入。
"""

from optimizer.search.cross_validation import CrossValidationScorer
from optimizer.search.evaluator import RetryingEvaluator, compute_objective
from optimizer.search.export import export_task, import_task
from optimizer.search.gate import ConcurrencyGate
from optimizer.search.generator import CandidateGenerator
from optimizer.search.models import (
    AllocationStrategy,
    CrossValidationConfig,
    EvaluationResult,
    Objective,
    ParameterCombination,
    SearchConfig,
    SearchMethod,
    TaskStatus,
)
from optimizer.search.orchestrator import SearchOrchestrator
from optimizer.search.param_space import ParameterSpace, count_combinations, generate_combinations
from optimizer.search.progress import ProgressReporter, ProgressSnapshot
from optimizer.search.result_store import ResultStore
from optimizer.search.task import SearchTask

__all__ = [
    "AllocationStrategy",
    "CandidateGenerator",
    "ConcurrencyGate",
    "CrossValidationConfig",
    "CrossValidationScorer",
    "EvaluationResult",
    "Objective",
    "ParameterCombination",
    "ParameterSpace",
    "ProgressReporter",
    "ProgressSnapshot",
    "ResultStore",
    "RetryingEvaluator",
    "SearchConfig",
    "SearchMethod",
    "SearchOrchestrator",
    "SearchTask",
    "TaskStatus",
    "compute_objective",
    "count_combinations",
    "export_task",
    "generate_combinations",
    "import_task",
]
