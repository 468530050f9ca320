"""
文件存储引擎

提供原子性的 JSON 文件读写，支持文件锁防止并发冲突。
任务 / HostRun / 告警的元数据都通过它落盘（不保存实时字节流）。

布局：
    data/
      hosts.json            凭据库
      alert_rules.json      告警规则
      schedules.json        定时任务
      tasks/<task_id>.json  任务 + HostRun 元数据
      alerts/<alert_id>.json
"""

import json
import os
import tempfile
import threading
from typing import Any, Callable, Optional

from core.logger import get_logger

_logger = get_logger("services.storage")


class FileStore:
    """
    线程安全的 JSON 文件存储。

    特性：
    - 原子写入：先写临时文件，再重命名（防止写入中断导致数据损坏）
    - 按文件名加锁：防止多线程并发写入冲突
    - 自动创建目录
    """

    def __init__(self, data_dir: str):
        self._data_dir = os.path.abspath(data_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

        os.makedirs(self._data_dir, exist_ok=True)
        _logger.info(f"文件存储引擎初始化: {self._data_dir}")

    @property
    def data_dir(self) -> str:
        return self._data_dir

    def _get_lock(self, filename: str) -> threading.Lock:
        with self._global_lock:
            if filename not in self._locks:
                self._locks[filename] = threading.Lock()
            return self._locks[filename]

    def _filepath(self, filename: str) -> str:
        return os.path.join(self._data_dir, filename)

    def _read_unlocked(self, filename: str, default: Any) -> Any:
        filepath = self._filepath(filename)
        if not os.path.isfile(filepath):
            return default
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            _logger.error(f"读取文件失败 [{filename}]: {e}")
            return default

    def _write_unlocked(self, filename: str, data: Any):
        """写临时文件后 os.replace，同一文件系统上是原子的"""
        filepath = self._filepath(filename)
        dir_path = os.path.dirname(filepath)
        os.makedirs(dir_path, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=dir_path, suffix=".tmp", prefix=f".{os.path.basename(filename)}_"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, filepath)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def read(self, filename: str, default: Any = None) -> Any:
        """
        读取 JSON 文件内容。

        Args:
            filename: 相对 data 目录的文件名（如 'hosts.json'）
            default: 文件不存在或损坏时的默认值（None 时为 {}）
        """
        if default is None:
            default = {}
        with self._get_lock(filename):
            return self._read_unlocked(filename, default)

    def write(self, filename: str, data: Any) -> bool:
        """原子性写入 JSON 文件，返回是否成功"""
        with self._get_lock(filename):
            try:
                self._write_unlocked(filename, data)
                return True
            except (OSError, TypeError, ValueError) as e:
                _logger.error(f"写入文件失败 [{filename}]: {e}")
                return False

    def update(self, filename: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        """
        读取-修改-写回 的原子操作。

        Args:
            filename: 文件名
            updater: 回调函数 (data) -> modified_data
            default: 文件不存在时的默认值

        Returns:
            修改后的数据
        """
        if default is None:
            default = {}
        with self._get_lock(filename):
            data = updater(self._read_unlocked(filename, default))
            try:
                self._write_unlocked(filename, data)
            except (OSError, TypeError, ValueError) as e:
                _logger.error(f"更新文件失败 [{filename}]: {e}")
            return data

    def delete(self, filename: str) -> bool:
        with self._get_lock(filename):
            try:
                os.unlink(self._filepath(filename))
                return True
            except FileNotFoundError:
                return False

    def exists(self, filename: str) -> bool:
        return os.path.isfile(self._filepath(filename))

    def ensure_subdir(self, subdir: str) -> str:
        path = os.path.join(self._data_dir, subdir)
        os.makedirs(path, exist_ok=True)
        return path

    # ──────────────────────────────────────────
    # 记录型数据：<kind>/<record_id>.json
    # ──────────────────────────────────────────

    def save_record(self, kind: str, record_id: str, data: dict) -> bool:
        return self.write(os.path.join(kind, f"{record_id}.json"), data)

    def load_record(self, kind: str, record_id: str) -> Optional[dict]:
        filename = os.path.join(kind, f"{record_id}.json")
        if not self.exists(filename):
            return None
        data = self.read(filename, {})
        return data or None

    def list_records(self, kind: str, limit: Optional[int] = None,
                     sort_key: str = "created_at") -> list[dict]:
        """列出某类记录，按 sort_key 倒序"""
        directory = self.ensure_subdir(kind)
        result = []
        for name in os.listdir(directory):
            if not name.endswith(".json"):
                continue
            data = self.read(os.path.join(kind, name), {})
            if data:
                result.append(data)
        result.sort(key=lambda r: r.get(sort_key) or 0, reverse=True)
        return result[:limit] if limit else result
