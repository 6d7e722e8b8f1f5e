"""应用日志配置模块。

支持环境感知格式切换：
- development: 可读文本格式
- production: JSON 结构化格式

搜索任务相关日志可通过 extra={"task_id": ...} 附带任务 ID，JSON 格式下会输出到 extra 字段。
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path

# 东八区时区
_TZ_CST = timezone(timedelta(hours=8))

# 标准 LogRecord 属性，不计入 extra
_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "filename", "module", "pathname", "thread", "threadName",
    "process", "processName", "levelname", "levelno", "message",
    "msecs", "taskName",
})

# 需要压低日志级别的第三方库
_NOISY_LOGGERS = ("httpcore", "httpx", "asyncio", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """JSON 结构化日志格式化器。

    每条日志输出为单行 JSON 对象，便于日志分析工具解析。
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=_TZ_CST).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["traceback"] = "".join(
                traceback.format_exception(*record.exc_info)
            )

        extra = {
            k: v for k, v in record.__dict__.items()
            if k not in _STANDARD_ATTRS and not k.startswith("_")
        }
        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CSTFormatter(logging.Formatter):
    """文本格式化器，时间统一显示为东八区。"""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.fromtimestamp(record.created, tz=_TZ_CST)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="seconds")


def build_formatter(log_format: str) -> logging.Formatter:
    """按格式名创建格式化器（json / text）。"""
    if log_format == "json":
        return JSONFormatter()
    return CSTFormatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(level: str = "INFO", log_to_file: bool = True) -> None:
    """配置应用日志。

    - development 环境：可读文本格式；production 环境：JSON 格式
    - 主日志文件：logs/optimizer.log（轮转）
    - 错误日志文件：logs/optimizer-error.log（仅 WARNING+，轮转）

    Args:
        level: 根日志级别
        log_to_file: 是否写入日志文件（CLI 单次运行时可关闭）
    """
    from optimizer.config import settings

    log_format = settings.log_format
    if not log_format:
        log_format = "json" if settings.app_env == "production" else "text"
    formatter = build_formatter(log_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # 清除已有 handlers（避免重复添加）
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        log_dir = (
            Path(settings.log_dir) if settings.log_dir
            else Path(__file__).resolve().parent.parent / "logs"
        )
        log_dir.mkdir(parents=True, exist_ok=True)

        main_handler = RotatingFileHandler(
            log_dir / "optimizer.log",
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
        main_handler.setFormatter(formatter)
        root_logger.addHandler(main_handler)

        error_handler = RotatingFileHandler(
            log_dir / "optimizer-error.log",
            maxBytes=20 * 1024 * 1024,  # 20MB
            backupCount=10,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.WARNING)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

    for lib in _NOISY_LOGGERS:
        logging.getLogger(lib).setLevel(logging.WARNING)
