"""
日志工具模块

基于 Python 标准 logging 模块，提供：
- 彩色控制台输出（无第三方依赖）
- 文件日志 + 自动轮转，错误日志分离（error.log 仅记录 ERROR+）
- 临时模式（Bootstrap 阶段使用）与按配置重配置
- 按子 Logger 单独设置级别（logging.levels）
- 上下文字段：task_id / host_id / session_id 自动注入每条日志
"""

import contextvars
import logging
import os
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional


# ──────────────────────────────────────────────
# 彩色输出 Formatter
# ──────────────────────────────────────────────

_RESET = "\033[0m"

# 级别 → 颜色映射
_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG:    "\033[96m",
    logging.INFO:     "\033[92m",
    logging.WARNING:  "\033[93m",
    logging.ERROR:    "\033[91m",
    logging.CRITICAL: "\033[41m\033[97m\033[1m",
}


class ColoredFormatter(logging.Formatter):
    """
    为控制台输出添加 ANSI 颜色的 Formatter。
    仅着色级别名称和消息文本，时间戳与位置信息保持原色。
    """

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None,
                 colorize: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._colorize = colorize

    def format(self, record: logging.LogRecord) -> str:
        if not self._colorize:
            return super().format(record)

        orig_levelname, orig_msg = record.levelname, record.msg
        color = _LEVEL_COLORS.get(record.levelno, "\033[37m")
        record.levelname = f"{color}{record.levelname:<8}{_RESET}"
        record.msg = f"{color}{record.msg}{_RESET}"
        try:
            return super().format(record)
        finally:
            # 恢复原始值（避免影响文件 Handler）
            record.levelname, record.msg = orig_levelname, orig_msg


# ──────────────────────────────────────────────
# 上下文字段
# ──────────────────────────────────────────────

_CONTEXT_FIELDS = ("task_id", "host_id", "session_id")
_log_context: contextvars.ContextVar[dict] = contextvars.ContextVar("ops_log_context", default={})


class TaskContextFilter(logging.Filter):
    """
    把当前协程上下文中的 task_id / host_id / session_id 写入 LogRecord。
    格式串中可直接使用 %(ctx)s。
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _log_context.get()
        for field in _CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, ctx.get(field, ""))
        parts = [f"{k}={ctx[k]}" for k in _CONTEXT_FIELDS if ctx.get(k)]
        record.ctx = f"[{' '.join(parts)}] " if parts else ""
        return True


@contextmanager
def bind_context(**fields):
    """
    在 with 块内为日志绑定上下文字段。

    asyncio.create_task 会复制当前上下文，所以在任务内部绑定即可只影响该任务。
    """
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v}}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


# ──────────────────────────────────────────────
# 日志管理器
# ──────────────────────────────────────────────

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(ctx)s%(message)s"
_DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 模块级别的根 Logger 名称
_ROOT_LOGGER_NAME = "opspanel"

_manager: Optional["LogManager"] = None


class LogManager:
    """
    日志管理器：管理所有 Handler 的生命周期。

    支持两个阶段：
    1. 临时阶段（setup_temporary）：仅 stderr 输出，用于 Bootstrap
    2. 正式阶段（reconfigure）：根据 Config 设置完整的 Handler
    """

    def __init__(self):
        self._root_logger = logging.getLogger(_ROOT_LOGGER_NAME)
        self._handlers: list[logging.Handler] = []
        self._level_overrides: list[str] = []
        self._context_filter = TaskContextFilter()
        self._configured = False

    @property
    def logger(self) -> logging.Logger:
        return self._root_logger

    def _clear_handlers(self):
        for handler in self._handlers:
            self._root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()
        for name in self._level_overrides:
            logging.getLogger(name).setLevel(logging.NOTSET)
        self._level_overrides.clear()

    def _add_handler(self, handler: logging.Handler, level: int, formatter: logging.Formatter):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(self._context_filter)
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def setup_temporary(self) -> logging.Logger:
        """设置临时 Logger：仅输出到 stderr，DEBUG 级别，带 [BOOT] 前缀"""
        self._clear_handlers()
        self._root_logger.setLevel(logging.DEBUG)
        self._add_handler(
            logging.StreamHandler(sys.stderr),
            logging.DEBUG,
            ColoredFormatter(
                fmt="%(asctime)s | %(levelname)-8s | [BOOT] %(message)s",
                datefmt=_DEFAULT_DATE_FORMAT,
            ),
        )
        return self._root_logger

    def reconfigure(self, config: dict, base_dir: Optional[str] = None) -> logging.Logger:
        """
        使用配置字典重新配置 Logger。

        Args:
            config: logging 配置段
            base_dir: 相对日志目录的基准目录，默认项目根目录
        """
        self._clear_handlers()

        level = getattr(logging, str(config.get("level", "DEBUG")).upper(), logging.DEBUG)
        self._root_logger.setLevel(level)
        log_format = config.get("format", _DEFAULT_FORMAT)

        console_cfg = config.get("console", {})
        if console_cfg.get("enabled", True):
            self._add_handler(
                logging.StreamHandler(sys.stdout),
                level,
                ColoredFormatter(fmt=log_format, datefmt=_DEFAULT_DATE_FORMAT,
                                 colorize=console_cfg.get("colorize", True)),
            )

        file_cfg = config.get("file", {})
        if file_cfg.get("enabled", True):
            log_dir = file_cfg.get("directory", "logs")
            if not os.path.isabs(log_dir):
                root = base_dir or os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
                log_dir = os.path.join(root, log_dir)
            os.makedirs(log_dir, exist_ok=True)

            max_bytes = file_cfg.get("max_size_mb", 10) * 1024 * 1024
            backup_count = file_cfg.get("backup_count", 5)
            file_formatter = logging.Formatter(fmt=log_format, datefmt=_DEFAULT_DATE_FORMAT)

            for filename, file_level in (
                (file_cfg.get("app_log", "app.log"), level),
                (file_cfg.get("error_log", "error.log"), logging.ERROR),
            ):
                self._add_handler(
                    RotatingFileHandler(os.path.join(log_dir, filename), maxBytes=max_bytes,
                                        backupCount=backup_count, encoding="utf-8"),
                    file_level,
                    file_formatter,
                )

        # 子 Logger 级别覆盖，如 {"services.pool": "INFO"}
        for name, name_level in (config.get("levels") or {}).items():
            full_name = f"{_ROOT_LOGGER_NAME}.{name}"
            logging.getLogger(full_name).setLevel(str(name_level).upper())
            self._level_overrides.append(full_name)

        self._configured = True
        return self._root_logger

    @property
    def is_configured(self) -> bool:
        return self._configured


def _get_manager() -> "LogManager":
    global _manager
    if _manager is None:
        _manager = LogManager()
    return _manager


# ──────────────────────────────────────────────
# 公共 API
# ──────────────────────────────────────────────

def create_temporary_logger() -> logging.Logger:
    """创建临时 Logger（Bootstrap 阶段使用）"""
    return _get_manager().setup_temporary()


def reconfigure_logger(config: dict, base_dir: Optional[str] = None) -> logging.Logger:
    """使用配置字典重新配置 Logger，清除临时 Handler"""
    return _get_manager().reconfigure(config, base_dir=base_dir)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取一个子 Logger。

    Args:
        name: 子 Logger 名称，会自动挂载到 opspanel 根 Logger 下（如 opspanel.services.pool）。
    """
    if name is None:
        return logging.getLogger(_ROOT_LOGGER_NAME)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")
