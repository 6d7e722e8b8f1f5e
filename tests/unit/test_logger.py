"""logger 模块单元测试。

测试 JSONFormatter 和 setup_logging 的核心逻辑。
"""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from optimizer.logger import CSTFormatter, JSONFormatter, build_formatter, setup_logging


def _record(msg: str = "ok", args: tuple = (), exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="optimizer.search.orchestrator",
        level=logging.INFO if exc_info is None else logging.ERROR,
        pathname="orchestrator.py",
        lineno=42,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """JSONFormatter 测试。"""

    def test_basic_format(self):
        """基本 JSON 格式输出。"""
        data = json.loads(JSONFormatter().format(_record("候选数=%d", (12,))))

        assert data["level"] == "INFO"
        assert data["logger"] == "optimizer.search.orchestrator"
        assert data["message"] == "候选数=12"
        assert data["lineno"] == 42
        assert data["timestamp"].endswith("+08:00")

    def test_exception_included(self):
        """异常信息包含在 traceback 字段中。"""
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(_record("error occurred", exc_info=exc_info)))
        assert "ValueError: test error" in data["traceback"]

    def test_no_exception_no_traceback(self):
        data = json.loads(JSONFormatter().format(_record()))
        assert "traceback" not in data
        assert "extra" not in data

    def test_extra_fields(self):
        """extra 传入的任务 ID 输出到 extra 字段。"""
        data = json.loads(JSONFormatter().format(_record(task_id="opt_abc")))
        assert data["extra"] == {"task_id": "opt_abc"}

    def test_output_is_single_line(self):
        output = JSONFormatter().format(_record("multi\nline\nmessage"))
        assert "\n" not in output


class TestBuildFormatter:

    def test_json(self):
        assert isinstance(build_formatter("json"), JSONFormatter)

    def test_text(self):
        formatter = build_formatter("text")
        assert isinstance(formatter, CSTFormatter)
        assert "[INFO]" in formatter.format(_record())


class TestSetupLogging:
    """setup_logging 测试。"""

    @pytest.fixture(autouse=True)
    def mock_settings(self, tmp_path):
        with patch("optimizer.config.settings") as settings:
            settings.app_env = "development"
            settings.log_format = ""
            settings.log_dir = str(tmp_path)
            settings.log_file_max_bytes = 1024
            settings.log_file_backup_count = 1
            yield settings
        logging.getLogger().handlers.clear()

    def test_development_uses_text_format(self, mock_settings):
        """开发环境使用文本格式，共 3 个 handler：console + main file + error file。"""
        setup_logging("INFO")

        root = logging.getLogger()
        assert len(root.handlers) == 3
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_production_uses_json_format(self, mock_settings):
        mock_settings.app_env = "production"
        setup_logging("INFO")
        assert isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_explicit_json_format(self, mock_settings):
        mock_settings.log_format = "json"
        setup_logging("INFO")
        assert isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_error_handler_level(self, mock_settings, tmp_path):
        """错误日志 handler 级别为 WARNING。"""
        setup_logging("DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert root.handlers[2].level == logging.WARNING
        assert (tmp_path / "optimizer.log").exists()

    def test_console_only(self, mock_settings):
        """CLI 模式只输出到控制台。"""
        setup_logging("INFO", log_to_file=False)
        assert len(logging.getLogger().handlers) == 1

    def test_third_party_suppressed(self, mock_settings):
        """第三方库日志被抑制到 WARNING。"""
        setup_logging("DEBUG")

        assert logging.getLogger("httpcore").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("asyncio").level == logging.WARNING
