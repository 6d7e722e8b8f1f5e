"""优化结果分析：参数重要性、绩效分布、稳定性与风险、结果分组、优化建议、优化报告和 CSV 导出。

基于 pandas 把排行榜展开为 DataFrame 后做统计。
"""

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd

from optimizer.search.models import WEIGHT_FIELDS, EvaluationResult
from optimizer.search.task import SearchTask

logger = logging.getLogger(__name__)

# 参与重要性分析的数值参数列
PARAMETER_COLUMNS = [attr for attr, _ in WEIGHT_FIELDS] + [
    "max_short_positions",
    "max_single_position_ratio",
]

# 绩效分布统计的指标列
DISTRIBUTION_COLUMNS = {
    "totalReturn": "total_return",
    "sharpeRatio": "sharpe_ratio",
    "maxDrawdown": "max_drawdown",
}

# 稳定性分析取前 N 个结果
STABILITY_TOP_N = 20

# 聚类分析取前 N 个结果
CLUSTER_TOP_N = 10

# 权重列的中文名称
WEIGHT_LABELS = {
    "price_change_weight": "跌幅",
    "volume_weight": "成交量",
    "volatility_weight": "波动率",
    "funding_rate_weight": "资金费率",
}

# 权重小于下限或大于上限视为极端值
EXTREME_WEIGHT_LOW = 0.05
EXTREME_WEIGHT_HIGH = 0.8


def results_frame(results: Sequence[EvaluationResult]) -> pd.DataFrame:
    """把评估结果展开为一行一个组合的 DataFrame，rank 从 1 开始。"""
    rows = []
    for rank, result in enumerate(results, start=1):
        combo = result.combination
        metrics = result.metrics
        row: dict[str, Any] = {
            "rank": rank,
            "id": combo.id,
            **{attr: getattr(combo, attr) for attr, _ in WEIGHT_FIELDS},
            "max_short_positions": combo.max_short_positions,
            "max_single_position_ratio": combo.max_single_position_ratio,
            "allocation_strategy": combo.allocation_strategy.value,
            "objective_value": result.objective_value,
            "total_return": metrics.total_return,
            "sharpe_ratio": metrics.sharpe_ratio,
            "calmar_ratio": metrics.calmar_ratio,
            "max_drawdown": metrics.max_drawdown,
            "win_rate": metrics.win_rate,
            "execution_time_ms": result.execution_time_ms,
        }
        if result.cross_validation is not None:
            row["stability_score"] = result.cross_validation.consistency.stability_score
        rows.append(row)
    return pd.DataFrame(rows)


def analyze_parameter_importance(results: Sequence[EvaluationResult]) -> list[dict[str, Any]]:
    """各参数与目标值的 Pearson 相关系数绝对值，按重要性降序。

    参数无变化或样本不足时重要性记为 0。
    """
    df = results_frame(results)
    importance = []
    for column in PARAMETER_COLUMNS:
        correlation = 0.0
        if len(df) >= 2 and column in df:
            series = df[column].astype(float)
            if series.notna().sum() >= 2 and series.std(ddof=0) > 0 and df["objective_value"].std(ddof=0) > 0:
                value = series.corr(df["objective_value"].astype(float))
                correlation = 0.0 if np.isnan(value) else float(value)
        importance.append({
            "parameter": column,
            "correlation": correlation,
            "importance": abs(correlation),
        })
    importance.sort(key=lambda item: item["importance"], reverse=True)
    return importance


def performance_distribution(results: Sequence[EvaluationResult]) -> dict[str, dict[str, float]]:
    """收益、夏普和回撤的 min / max / mean / std（总体标准差）。"""
    df = results_frame(results)
    distribution = {}
    for key, column in DISTRIBUTION_COLUMNS.items():
        if df.empty:
            distribution[key] = {"min": 0.0, "max": 0.0, "mean": 0.0, "std": 0.0}
            continue
        series = df[column].astype(float)
        distribution[key] = {
            "min": float(series.min()),
            "max": float(series.max()),
            "mean": float(series.mean()),
            "std": float(series.std(ddof=0)),
        }
    return distribution


def _stability_score(series: pd.Series) -> float:
    """稳定性分数 = max(0, 1 - cv)，样本不足 2 个时为 0。"""
    if len(series) < 2:
        return 0.0
    mean = float(series.mean())
    cv = float(series.std(ddof=0)) / abs(mean) if mean != 0 else 1.0
    return max(0.0, 1 - cv)


def assess_strategy_risk(results: Sequence[EvaluationResult]) -> dict[str, Any]:
    """按最大回撤和负收益占比划分风险等级。

    最大回撤 > 0.3 或负收益占比 > 50% 为 high，
    最大回撤 > 0.15 或负收益占比 > 20% 为 medium，其余为 low。
    """
    df = results_frame(results)
    if df.empty:
        return {"level": "low", "maxDrawdown": 0.0, "averageDrawdown": 0.0,
                "negativeReturnRate": 0.0, "recommendations": []}

    max_drawdown = float(df["max_drawdown"].max())
    negative_rate = float((df["total_return"] < 0).mean())
    if max_drawdown > 0.3 or negative_rate > 0.5:
        level = "high"
    elif max_drawdown > 0.15 or negative_rate > 0.2:
        level = "medium"
    else:
        level = "low"

    recommendations = []
    if level == "high":
        recommendations.append("考虑增加风险控制措施")
        recommendations.append("适当降低仓位或增加止损机制")
    if max_drawdown > 0.2:
        recommendations.append("最大回撤较大，建议优化仓位管理")

    return {
        "level": level,
        "maxDrawdown": max_drawdown,
        "averageDrawdown": float(df["max_drawdown"].mean()),
        "negativeReturnRate": negative_rate,
        "recommendations": recommendations,
    }


def analyze_strategy_stability(results: Sequence[EvaluationResult]) -> dict[str, Any]:
    """前 20 个结果的绩效稳定性、权重稳定性和风险评估。

    overallScore 为收益、夏普、回撤三项稳定性分数的平均值。
    """
    top = list(results[:STABILITY_TOP_N])
    df = results_frame(top)

    performance = {
        key: _stability_score(df[column]) if not df.empty else 0.0
        for key, column in DISTRIBUTION_COLUMNS.items()
    }
    parameters = {
        wire: _stability_score(df[attr]) if not df.empty else 0.0
        for attr, wire in WEIGHT_FIELDS
    }

    recommendations = []
    if performance["totalReturn"] < 0.7:
        recommendations.append("考虑增加样本外测试验证策略稳定性")
        recommendations.append("适当增加正则化约束防止过拟合")
    unstable = [name for name, score in parameters.items() if score < 0.6]
    if unstable:
        recommendations.append(f"关注参数稳定性较低的权重: {', '.join(unstable)}")

    return {
        "overallScore": float(np.mean(list(performance.values()))),
        "performanceStability": performance,
        "parameterStability": parameters,
        "riskAssessment": assess_strategy_risk(top),
        "recommendations": recommendations,
    }


def analyze_parameter_clusters(
    results: Sequence[EvaluationResult],
    top_n: int = CLUSTER_TOP_N,
) -> list[dict[str, Any]]:
    """把前 N 个结果按总收益分为三组（> 10%、> 0、其余），给出权重重心和平均绩效。

    空组不输出，按平均总收益降序。
    """
    df = results_frame(list(results[:top_n]))
    if df.empty:
        return []

    groups = np.select(
        [df["total_return"] > 0.1, df["total_return"] > 0],
        [0, 1],
        default=2,
    )
    weight_columns = [attr for attr, _ in WEIGHT_FIELDS]
    metric_columns = {
        "totalReturn": "total_return",
        "sharpeRatio": "sharpe_ratio",
        "maxDrawdown": "max_drawdown",
        "calmarRatio": "calmar_ratio",
    }

    clusters = []
    for index, (_, group) in enumerate(df.groupby(groups, sort=True)):
        centroid = group[weight_columns].astype(float).mean()
        dominant = centroid.idxmax()
        clusters.append({
            "id": f"cluster_{index}",
            "resultIds": list(group["id"]),
            "size": len(group),
            "centroid": {wire: float(centroid[attr]) for attr, wire in WEIGHT_FIELDS},
            "averageMetrics": {
                key: float(group[column].astype(float).mean()) for key, column in metric_columns.items()
            },
            "description": f"以{WEIGHT_LABELS[dominant]}为主导的权重配置 ({centroid[dominant] * 100:.0f}%)",
        })

    clusters.sort(key=lambda c: c["averageMetrics"]["totalReturn"], reverse=True)
    return clusters


def _has_extreme_weights(df: pd.DataFrame) -> bool:
    """任一权重有超过 30% 的结果落在极端区间。"""
    for attr, _ in WEIGHT_FIELDS:
        values = df[attr].astype(float)
        extreme = ((values < EXTREME_WEIGHT_LOW) | (values > EXTREME_WEIGHT_HIGH)).sum()
        if extreme > len(df) * 0.3:
            return True
    return False


def generate_recommendations(results: Sequence[EvaluationResult]) -> list[dict[str, Any]]:
    """根据最优收益、参数重要性、稳定性和权重分布给出优化建议。"""
    if not results:
        return [{
            "type": "warning",
            "title": "无有效结果",
            "description": "优化过程未产生有效结果，建议检查参数范围设置",
            "priority": "high",
            "actionItems": ["检查参数约束", "扩大搜索范围", "增加迭代次数"],
        }]

    recommendations = []
    if results[0].metrics.total_return < 0:
        recommendations.append({
            "type": "warning",
            "title": "策略收益为负",
            "description": "当前最优策略仍为负收益，建议调整策略逻辑或参数范围",
            "priority": "high",
            "actionItems": ["重新评估市场环境", "调整权重范围", "考虑其他优化目标"],
        })

    top_param = analyze_parameter_importance(results)[0]
    if top_param["importance"] > 0.5:
        name = top_param["parameter"]
        recommendations.append({
            "type": "insight",
            "title": f"{name}影响显著",
            "description": f"{name}对策略表现影响最大，建议重点关注此参数的调优",
            "priority": "medium",
            "actionItems": [f"细化{name}的搜索范围", "考虑动态调整该参数", "分析该参数在不同市场条件下的表现"],
        })

    if analyze_strategy_stability(results)["overallScore"] < 0.7:
        recommendations.append({
            "type": "caution",
            "title": "策略稳定性较低",
            "description": "优化结果显示策略稳定性不足，可能存在过拟合风险",
            "priority": "high",
            "actionItems": ["增加样本外验证", "简化参数设置", "考虑正则化约束"],
        })

    if _has_extreme_weights(results_frame(results)):
        recommendations.append({
            "type": "optimization",
            "title": "权重分布过于极端",
            "description": "发现某些权重经常达到极值，建议适当约束权重范围",
            "priority": "medium",
            "actionItems": ["设置权重上下限", "使用权重正则化", "分析极端权重的合理性"],
        })

    return recommendations


def generate_report(task: SearchTask) -> dict[str, Any]:
    """生成优化报告。

    Raises:
        ValueError: 任务没有任何结果
    """
    results = task.results.top_k()
    if not results:
        raise ValueError("没有可用的优化结果")

    execution_times = [r.execution_time_ms for r in results]
    return {
        "taskId": task.id,
        "status": task.status.value,
        "summary": {
            "bestResult": results[0].to_dict(),
            "totalCombinations": task.progress.total,
            "successfulCombinations": len(results),
            "averageExecutionTime": float(np.mean(execution_times)),
            "totalOptimizationTime": task.elapsed_seconds,
        },
        "sensitivityAnalysis": analyze_parameter_importance(results),
        "performanceDistribution": performance_distribution(results),
        "stabilityAnalysis": analyze_strategy_stability(results),
        "parameterClusters": analyze_parameter_clusters(results),
        "recommendations": generate_recommendations(results),
    }


def export_csv(results: Sequence[EvaluationResult]) -> str:
    """排行榜导出为 CSV 文本。"""
    df = results_frame(results)
    logger.debug("导出 CSV，共 %d 行", len(df))
    return df.to_csv(index=False)
