"""日志配置模块。

控制台与文件日志共用一套 dictConfig：每条记录都会附带当前请求的 request_id，
以及正在操作的存储策略 ID（由 ``bind_policy`` 在服务层注入）。
各云厂商 SDK 的日志级别单独控制，避免 DEBUG 模式下被 botocore/oss2 的请求细节淹没。
"""

import json
import logging
import logging.config
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Iterator, Optional

from .config import get_settings

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_policy_id_ctx: ContextVar[Optional[int]] = ContextVar("policy_id", default=None)

# 云存储 SDK 与 HTTP 客户端使用的日志命名空间
SDK_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3", "oss2", "qcloud_cos", "httpx", "httpcore")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [req=%(request_id)s policy=%(policy_id)s] %(message)s"


class _TZFormatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: D401
        dt = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(_TZFormatter):
    """终端输出按级别着色；重定向到文件或管道时自动关闭颜色。"""

    RESET = "\033[0m"
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: Optional[bool] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(_TZFormatter):
    """一行一个 JSON 对象，字段名与采集端约定保持一致。"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "policy_id": getattr(record, "policy_id", None),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class RequestIdFilter(logging.Filter):
    """把上下文中的 request_id 与 policy_id 写入日志记录。"""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.request_id = _request_id_ctx.get()
        record.policy_id = _policy_id_ctx.get()
        return True


_MODULE = __name__


def build_logging_config() -> dict:
    settings = get_settings()
    level = settings.log_level
    formatter = "json" if settings.log_json else "console"
    handlers = ["console", "file"]

    config: dict = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"()": f"{_MODULE}.ColorFormatter", "fmt": LOG_FORMAT},
            "file": {"()": f"{_MODULE}._TZFormatter", "fmt": LOG_FORMAT},
            "json": {"()": f"{_MODULE}.JsonFormatter"},
        },
        "filters": {"context": {"()": f"{_MODULE}.RequestIdFilter"}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "filters": ["context"],
            },
            "file": {
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "json" if settings.log_json else "file",
                "filename": str(settings.log_file_path),
                "when": "midnight",
                "backupCount": settings.log_backup_count,
                "encoding": "utf-8",
                "delay": True,
                "filters": ["context"],
            },
        },
        "loggers": {
            "storage_vfs": {"handlers": handlers, "level": level, "propagate": False},
            "storage_vfs.providers": {"level": settings.provider_log_level},
            "uvicorn": {"handlers": handlers, "level": level, "propagate": False},
            "uvicorn.access": {"handlers": handlers, "level": level, "propagate": False},
        },
        "root": {"handlers": handlers, "level": level},
    }
    for name in SDK_LOGGERS:
        config["loggers"][name] = {"level": settings.sdk_log_level}
    return config


def setup_logging() -> None:
    """初始化日志系统，日志目录不存在时自动创建。"""
    get_settings().log_directory.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config())


logger = logging.getLogger("storage_vfs")
provider_logger = logging.getLogger("storage_vfs.providers")


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


@contextmanager
def bind_policy(policy_id: Optional[int]) -> Iterator[None]:
    """在上下文范围内为日志记录标注存储策略 ID。"""
    token = _policy_id_ctx.set(policy_id)
    try:
        yield
    finally:
        _policy_id_ctx.reset(token)
