"""参数搜索 CLI 单元测试。"""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from optimizer.cli import cli


class FakeScoringClient:
    """替代 HttpScoringClient 的假评分服务。"""

    def __init__(self, *args, **kwargs) -> None:
        self.calls = 0

    async def score(self, params: dict) -> dict:
        self.calls += 1
        return {"success": True, "data": {"performance": {
            "sharpeRatio": params["priceChangeWeight"],
            "totalReturn": params["volumeWeight"],
            "maxDrawdown": 0.1,
        }}}

    async def __aenter__(self) -> "FakeScoringClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("optimizer.cli.setup_logging"):
        yield


class TestRunCommand:
    """run 命令测试。"""

    def test_help_text(self) -> None:
        result = CliRunner().invoke(cli, ["run", "--help"])
        assert result.exit_code == 0
        assert "推荐配置" in result.output

    @patch("optimizer.cli.HttpScoringClient", FakeScoringClient)
    def test_run_exports_json(self, tmp_path) -> None:
        config = {
            "method": "randomized",
            "maxIterations": 8,
            "baseParams": {"startDate": "2025-01-01", "endDate": "2025-06-20"},
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config), encoding="utf-8")
        output = tmp_path / "result.json"

        result = CliRunner().invoke(
            cli, ["run", str(config_file), "--output", str(output), "--seed", "42"],
        )

        assert result.exit_code == 0, result.output
        exported = json.loads(output.read_text(encoding="utf-8"))
        assert exported["taskInfo"]["status"] == "completed"
        assert exported["taskInfo"]["config"]["method"] == "randomized"
        assert 0 < len(exported["results"]) <= 10

    @patch("optimizer.cli.HttpScoringClient", FakeScoringClient)
    def test_run_recommended_with_overrides(self, tmp_path) -> None:
        """不指定配置文件时使用推荐配置，并可覆盖方法和预算。"""
        output = tmp_path / "result.json"
        result = CliRunner().invoke(
            cli, ["run", "--method", "grid", "--max-iterations", "5", "-o", str(output)],
        )
        assert result.exit_code == 0, result.output
        exported = json.loads(output.read_text(encoding="utf-8"))
        assert exported["taskInfo"]["config"]["method"] == "grid"
        # 推荐配置固定使用综合评分分配
        assert all(
            r["combination"]["allocationStrategy"] == "BY_COMPOSITE_SCORE" for r in exported["results"]
        )

    def test_unknown_method_fails(self, tmp_path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"method": "annealing"}), encoding="utf-8")
        result = CliRunner().invoke(cli, ["run", str(config_file)])
        assert result.exit_code != 0
        assert "annealing" in result.output

    def test_invalid_json_fails(self, tmp_path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json", encoding="utf-8")
        result = CliRunner().invoke(cli, ["run", str(config_file)])
        assert result.exit_code != 0


class TestReportCommand:
    """report 命令测试。"""

    @patch("optimizer.cli.HttpScoringClient", FakeScoringClient)
    def test_report_from_export(self, tmp_path) -> None:
        output = tmp_path / "result.json"
        runner = CliRunner()
        runner.invoke(cli, ["run", "--method", "randomized", "--max-iterations", "6", "-o", str(output)])

        csv_file = tmp_path / "ranking.csv"
        result = runner.invoke(cli, ["report", str(output), "--csv", str(csv_file)])

        assert result.exit_code == 0, result.output
        assert "最优目标值" in result.output
        assert "参数重要性" in result.output
        assert "风险等级" in result.output
        assert csv_file.read_text(encoding="utf-8").startswith("rank,id,")

    def test_report_rejects_malformed_file(self, tmp_path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"results": []}), encoding="utf-8")
        result = CliRunner().invoke(cli, ["report", str(bad)])
        assert result.exit_code != 0
        assert "导入失败" in result.output


class TestRecommendedCommand:

    def test_prints_config(self) -> None:
        result = CliRunner().invoke(cli, ["recommended"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["method"] == "hybrid"
        assert data["baseParams"]["startDate"] == "2025-01-01"
