"""
配置管理器模块

提供：
- YAML 文件加载（默认 + 自定义路径）
- 环境变量覆盖（OPS_ 前缀，双下划线表示层级）
- 命令行参数支持（--config 指定配置文件）
- 深度合并（默认 < YAML < 环境变量 < CLI）
- 点号路径访问（config.get("pool.max_per_host")）
- 冻结锁定（防止意外修改）
- 配置验证（连接池 / 编排器 / 调度器的数值约束）
"""

import argparse
import copy
import logging
import os
from typing import Any, Optional

import yaml


# 环境变量前缀
_ENV_PREFIX = "OPS_"
# 环境变量中表示嵌套层级的分隔符
_ENV_SEPARATOR = "__"


# ──────────────────────────────────────────────
# 内置默认配置（当 YAML 文件缺失时作为回退）
# ──────────────────────────────────────────────

_BUILTIN_DEFAULTS: dict[str, Any] = {
    "app": {
        "name": "OpsPanel",
        "version": "0.1.0",
        "env": "development",
        "debug": True,
        "data_dir": "data",
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8300,
    },
    "pool": {
        "max_per_host": 4,
        "connect_timeout": 10,
        "connect_attempts": 3,
        "backoff_base": 0.5,
        "backoff_max": 8.0,
        "idle_ttl": 300,
        "keepalive_interval": 30,
    },
    "runner": {
        "default_timeout": 300,
        "read_size": 4096,
        "kill_grace": 2.0,
    },
    "orchestrator": {
        "default_concurrency": 5,
        "max_concurrency": 50,
        "output_tail_chars": 4000,
    },
    "streams": {
        "subscriber_queue": 256,
        "buffer_limit": 1_000_000,
    },
    "terminal": {
        "term": "xterm-256color",
        "default_cols": 80,
        "default_rows": 24,
        "idle_timeout": 1800,
        "sweep_interval": 60,
    },
    "alerts": {
        "gap_after": 180,
        "gap_check_interval": 60,
    },
    "scheduler": {
        "enabled": True,
        "tick_interval": 30,
        "timezone": "UTC",
    },
    "collector": {
        "enabled": False,
        "interval": 60,
        "timeout": 30,
    },
    "notifications": {
        "webhooks": {},
        "timeout": 10,
    },
    "security": {
        "command_blacklist": [
            "rm -rf /",
            "mkfs",
            "dd if=/dev/zero",
        ],
    },
    "logging": {
        "level": "DEBUG",
        "levels": {},
        "console": {
            "enabled": True,
            "colorize": True,
        },
        "file": {
            "enabled": True,
            "directory": "logs",
            "max_size_mb": 10,
            "backup_count": 5,
            "app_log": "app.log",
            "error_log": "error.log",
        },
        "format": "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(ctx)s%(message)s",
    },
}

# 必须为正数的配置项
_POSITIVE_KEYS = (
    "pool.max_per_host",
    "pool.connect_attempts",
    "runner.default_timeout",
    "runner.read_size",
    "orchestrator.default_concurrency",
    "orchestrator.max_concurrency",
    "streams.subscriber_queue",
    "streams.buffer_limit",
    "terminal.idle_timeout",
    "scheduler.tick_interval",
    "collector.interval",
)

# save_to_yaml 时写回的配置段
_SECTIONS = (
    "app", "server", "pool", "runner", "orchestrator", "streams", "terminal",
    "alerts", "scheduler", "collector", "notifications", "security", "logging",
)


# ──────────────────────────────────────────────
# 工具函数
# ──────────────────────────────────────────────

def _deep_merge(base: dict, override: dict) -> dict:
    """
    深度合并两个字典。override 中的值会覆盖 base 中的值。
    对于嵌套字典会递归合并，而非直接替换。
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_env_value(value: str) -> Any:
    """
    尝试将环境变量的字符串值解析为合适的 Python 类型。
    支持 bool、int、float、None。
    """
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none", ""):
        return None
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def _set_nested(data: dict, keys: list[str], value: Any):
    """在嵌套字典中按键路径设置值"""
    for key in keys[:-1]:
        if key not in data or not isinstance(data[key], dict):
            data[key] = {}
        data = data[key]
    data[keys[-1]] = value


def _get_nested(data: dict, keys: list[str], default: Any = None) -> Any:
    """在嵌套字典中按键路径获取值"""
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


class ConfigError(ValueError):
    """配置校验失败"""


# ──────────────────────────────────────────────
# 配置管理器
# ──────────────────────────────────────────────

class ConfigManager:
    """
    配置管理器。

    加载优先级（从低到高）：
    1. 内置默认值
    2. YAML 配置文件
    3. 环境变量（OPS_ 前缀）
    4. 命令行参数

    使用方式：
        config = ConfigManager(logger=temp_logger)
        config.load()
        cap = config.get("pool.max_per_host")
        config.freeze()
    """

    def __init__(self, logger: Optional[logging.Logger] = None,
                 overrides: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(_BUILTIN_DEFAULTS)
        if overrides:
            self._data = _deep_merge(self._data, overrides)
        self._frozen = False
        self._logger = logger or logging.getLogger(__name__)
        self._config_file_path: Optional[str] = None
        self._project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    @classmethod
    def from_dict(cls, overrides: Optional[dict[str, Any]] = None) -> "ConfigManager":
        """不读文件和环境变量，直接由内置默认值 + overrides 构造（测试和嵌入使用）"""
        config = cls(overrides=overrides)
        config.validate()
        return config

    def load(self, config_path: Optional[str] = None) -> "ConfigManager":
        """
        按优先级加载配置。

        Args:
            config_path: 可选的配置文件路径。如果不传，
                         会从命令行参数 --config 中读取，
                         或使用默认路径 config.yaml。

        Returns:
            self（支持链式调用）
        """
        self._logger.info("=" * 60)
        self._logger.info("开始加载配置系统")
        self._logger.info("=" * 60)

        self._data = copy.deepcopy(_BUILTIN_DEFAULTS)
        self._logger.debug("已加载内置默认配置")

        final_path = config_path or self._parse_cli_args()
        if final_path is None:
            final_path = os.path.join(self._project_root, "config.yaml")
        self._config_file_path = os.path.abspath(final_path)

        self._load_yaml(self._config_file_path)
        self._load_env_overrides()
        self.validate()
        self._log_effective_config()

        self._logger.info("配置系统加载完成")
        return self

    def _parse_cli_args(self) -> Optional[str]:
        """解析命令行参数，返回 --config 路径（如果有）"""
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("--config", "-c", type=str, default=None,
                            help="自定义配置文件路径")
        args, _ = parser.parse_known_args()

        if args.config:
            self._logger.info(f"命令行指定配置文件: {args.config}")
            return args.config
        return None

    def _load_yaml(self, path: str):
        """从 YAML 文件加载配置，文件不存在时仅使用默认值"""
        if not os.path.isfile(path):
            self._logger.info(f"配置文件不存在，使用内置默认配置: {path}")
            return

        self._logger.info(f"正在加载配置文件: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self._logger.error(f"YAML 解析失败: {e}")
            self._logger.warning("将使用内置默认配置继续运行")
            return
        except OSError as e:
            self._logger.error(f"读取配置文件失败: {e}")
            return

        if yaml_data is None:
            self._logger.warning("配置文件为空，使用内置默认配置")
            return
        if not isinstance(yaml_data, dict):
            self._logger.error(f"配置文件格式错误（期望字典，得到 {type(yaml_data).__name__}）")
            return

        self._data = _deep_merge(self._data, yaml_data)
        self._logger.info(f"已合并 YAML 配置（{len(yaml_data)} 个顶级键）")

    def _load_env_overrides(self):
        """从环境变量加载覆盖配置"""
        overrides_count = 0

        for key, value in sorted(os.environ.items()):
            if not key.startswith(_ENV_PREFIX):
                continue

            parts = key[len(_ENV_PREFIX):].lower().split(_ENV_SEPARATOR.lower())
            parsed_value = _parse_env_value(value)
            _set_nested(self._data, parts, parsed_value)
            self._logger.debug(f"环境变量覆盖: {'.'.join(parts)} = {parsed_value!r}")
            overrides_count += 1

        if overrides_count > 0:
            self._logger.info(f"已应用 {overrides_count} 个环境变量覆盖")

    def validate(self):
        """
        校验关键数值配置。

        Raises:
            ConfigError: 任何必须为正数的配置项不合法时
        """
        problems = []
        for key in _POSITIVE_KEYS:
            value = self.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                problems.append(f"{key}={value!r}")

        default_cc = self.get("orchestrator.default_concurrency")
        max_cc = self.get("orchestrator.max_concurrency")
        if not problems and default_cc > max_cc:
            problems.append(
                f"orchestrator.default_concurrency({default_cc}) > max_concurrency({max_cc})"
            )

        if problems:
            raise ConfigError("配置校验失败: " + ", ".join(problems))

    def _log_effective_config(self):
        """打印最终生效的关键配置"""
        self._logger.info("-" * 40)
        self._logger.info("当前生效配置:")
        self._logger.info(f"  应用名称:   {self.get('app.name')} v{self.get('app.version')}")
        self._logger.info(f"  服务地址:   {self.get('server.host')}:{self.get('server.port')}")
        self._logger.info(f"  单机连接上限: {self.get('pool.max_per_host')}")
        self._logger.info(f"  默认并发:   {self.get('orchestrator.default_concurrency')}")
        self._logger.info(f"  调度时区:   {self.get('scheduler.timezone')}")
        self._logger.info(f"  日志级别:   {self.get('logging.level')}")
        self._logger.info(f"  配置文件:   {self._config_file_path}")
        self._logger.info("-" * 40)

    # ──────────────────────────────────────────
    # 公共 API
    # ──────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """
        按点号路径获取配置值。

        Examples:
            config.get("pool.max_per_host")     # -> 4
            config.get("db.host", "localhost")  # -> "localhost" (不存在时)
        """
        return _get_nested(self._data, key.split("."), default)

    def set(self, key: str, value: Any):
        """
        按点号路径设置配置值。

        Raises:
            RuntimeError: 配置已冻结时
        """
        if self._frozen:
            raise RuntimeError(f"配置已冻结，无法修改: {key}")
        _set_nested(self._data, key.split("."), value)

    def freeze(self):
        """冻结配置，之后的 set() 调用将抛出 RuntimeError"""
        self._frozen = True
        self._logger.debug("配置已冻结，不再允许修改")

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def to_dict(self) -> dict[str, Any]:
        """返回配置的深拷贝字典"""
        return copy.deepcopy(self._data)

    def save_to_yaml(self, path: Optional[str] = None):
        """
        将当前配置保存到 YAML 文件。

        Raises:
            RuntimeError: 保存失败
        """
        save_path = path or self._config_file_path or os.path.join(self._project_root, "config.yaml")

        current = {section: copy.deepcopy(self.get(section)) for section in _SECTIONS
                   if isinstance(self.get(section), dict)}
        header = (
            "# ============================================================\n"
            "# OpsPanel 配置文件\n"
            "# 加载优先级（从低到高）：内置默认值 < 本文件 < OPS_ 环境变量 < --config\n"
            "# ============================================================\n\n"
        )

        try:
            os.makedirs(os.path.dirname(os.path.abspath(save_path)), exist_ok=True)
            with open(save_path, "w", encoding="utf-8") as f:
                f.write(header)
                yaml.dump(current, f, default_flow_style=False,
                          allow_unicode=True, sort_keys=False)
            self._logger.debug(f"配置已保存到 {save_path}")
        except OSError as e:
            self._logger.error(f"配置保存失败: {e}")
            raise RuntimeError(f"配置保存失败: {e}") from e

    @property
    def config_file_path(self) -> Optional[str]:
        """返回实际使用的配置文件路径"""
        return self._config_file_path

    @property
    def project_root(self) -> str:
        """返回项目根目录路径"""
        return self._project_root

    def resolve_path(self, path: str) -> str:
        """相对路径按项目根目录解析"""
        return path if os.path.isabs(path) else os.path.join(self._project_root, path)

    def __repr__(self) -> str:
        status = "frozen" if self._frozen else "mutable"
        return f"<ConfigManager({status}, keys={list(self._data.keys())})>"
