"""参数搜索 CLI：运行搜索、查看报告、输出推荐配置。

用法：
    python -m optimizer.cli run config.json [--space space.json] [--output result.json] [--seed 42]
    python -m optimizer.cli report result.json [--csv ranking.csv]
    python -m optimizer.cli recommended
"""

import asyncio
import json
import logging
import random
from collections.abc import AsyncIterator
from pathlib import Path

import click

from optimizer.client import HttpScoringClient
from optimizer.config import settings
from optimizer.exceptions import FatalConfigurationError
from optimizer.logger import setup_logging
from optimizer.search.analysis import export_csv, generate_report
from optimizer.search.export import export_task, import_task
from optimizer.search.models import SearchConfig
from optimizer.search.orchestrator import SearchOrchestrator
from optimizer.search.param_space import ParameterSpace
from optimizer.search.progress import ProgressSnapshot
from optimizer.search.task import SearchTask

logger = logging.getLogger(__name__)


def _load_json(path: str) -> dict:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as e:
        raise click.ClickException(f"{path} 不是合法的 JSON：{e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{path} 顶层必须是 JSON 对象")
    return data


async def _print_progress(stream: AsyncIterator[ProgressSnapshot]) -> None:
    async for snapshot in stream:
        line = (
            f"[{snapshot.status.value}] {snapshot.current_iteration}/{snapshot.total_iterations} "
            f"({snapshot.percentage:.1f}%)"
        )
        if snapshot.current_best is not None:
            line += f" 最优={snapshot.current_best.objective_value:.4f}"
        click.echo(line, err=True)


async def _run_search(
    config: SearchConfig,
    space: ParameterSpace,
    seed: int | None,
) -> SearchTask:
    async with HttpScoringClient() as client:
        orchestrator = SearchOrchestrator(
            client,
            rng=random.Random(seed) if seed is not None else None,
        )
        task = orchestrator.start(config, space)
        printer = asyncio.create_task(_print_progress(orchestrator.reporter.stream(task.id)))
        try:
            await orchestrator.run(task)
        finally:
            await printer
        return task


@click.group()
def cli() -> None:
    """策略参数搜索引擎 CLI"""
    setup_logging(settings.log_level, log_to_file=False)


@cli.command("run")
@click.argument("config_file", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--space", "space_file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="参数空间 JSON 文件，默认使用内置范围")
@click.option("--output", "-o", "output_file", default=None, type=click.Path(dir_okay=False),
              help="导出结果的 JSON 文件，默认输出到标准输出")
@click.option("--seed", default=None, type=int, help="随机种子")
@click.option("--method", default=None, help="覆盖配置中的搜索方法：grid / randomized / hybrid")
@click.option("--max-iterations", default=None, type=int, help="覆盖配置中的迭代预算")
def run(
    config_file: str | None,
    space_file: str | None,
    output_file: str | None,
    seed: int | None,
    method: str | None,
    max_iterations: int | None,
) -> None:
    """运行一次参数搜索，未指定配置文件时使用推荐配置。"""
    try:
        if config_file:
            raw = _load_json(config_file)
            if method:
                raw["method"] = method
            if max_iterations:
                raw["maxIterations"] = max_iterations
            config = SearchConfig.from_dict(raw)
        else:
            config = SearchConfig.recommended()
            if method:
                config = SearchConfig.from_dict({**config.to_dict(), "method": method})
            if max_iterations:
                config.max_iterations = max_iterations
        space = ParameterSpace.from_dict(_load_json(space_file) if space_file else None)
    except FatalConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(
        f"开始搜索：方法={config.method.value}，目标={config.objective.value}，预算={config.max_iterations}",
        err=True,
    )
    try:
        task = asyncio.run(_run_search(config, space, seed))
    except FatalConfigurationError as e:
        raise click.ClickException(str(e)) from e

    payload = export_task(task)
    if output_file:
        Path(output_file).write_text(payload, encoding="utf-8")
        click.echo(f"结果已导出到 {output_file}", err=True)
    else:
        click.echo(payload)

    if task.error:
        click.echo(f"任务结束（{task.status.value}）：{task.error}", err=True)


@cli.command("report")
@click.argument("export_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--csv", "csv_file", default=None, type=click.Path(dir_okay=False),
              help="同时把排行榜导出为 CSV")
def report(export_file: str, csv_file: str | None) -> None:
    """读取导出的结果文件，输出优化报告。"""
    try:
        task = import_task(Path(export_file).read_text(encoding="utf-8"))
    except FatalConfigurationError as e:
        raise click.ClickException(str(e)) from e

    try:
        data = generate_report(task)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    summary = data["summary"]
    best = summary["bestResult"]
    click.echo(f"任务：{data['taskId']}（{data['status']}）")
    click.echo(f"有效结果：{summary['successfulCombinations']}")
    click.echo(f"最优目标值：{best['objectiveValue']:.4f}")
    click.echo(f"最优参数：{json.dumps(best['combination'], ensure_ascii=False)}")
    click.echo("参数重要性：")
    for item in data["sensitivityAnalysis"]:
        click.echo(f"  {item['parameter']}: {item['importance']:.3f}")
    stability = data["stabilityAnalysis"]
    click.echo(f"稳定性评分：{stability['overallScore']:.3f}")
    click.echo(f"风险等级：{stability['riskAssessment']['level']}")
    for item in data["recommendations"]:
        click.echo(f"  [{item['priority']}] {item['title']}")

    if csv_file:
        Path(csv_file).write_text(export_csv(task.results.top_k()), encoding="utf-8")
        click.echo(f"排行榜已导出到 {csv_file}")


@cli.command("recommended")
def recommended() -> None:
    """输出推荐的搜索配置。"""
    click.echo(json.dumps(SearchConfig.recommended().to_dict(), ensure_ascii=False, indent=2))


# 支持 python -m optimizer.cli
if __name__ == "__main__":
    cli()
