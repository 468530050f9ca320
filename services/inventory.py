"""
主机清单 / 凭据库

编排核心只依赖 resolve(host_id) 和在线状态查询；主机的增删改由外部系统负责，
这里从 hosts.json 读取（凭据加密方式不在本模块范围内，读到的即为明文）。
"""

import time
from typing import Optional

from core.errors import CredentialNotFound
from core.logger import get_logger
from models.host import HostCredential, HostRecord, HostStatus

_logger = get_logger("services.inventory")

HOSTS_FILE = "hosts.json"


class HostInventory:
    """基于 FileStore 的凭据库"""

    def __init__(self, storage):
        self._storage = storage

    def _records(self) -> dict[str, dict]:
        data = self._storage.read(HOSTS_FILE, {})
        return data if isinstance(data, dict) else {}

    def get(self, host_id: str) -> Optional[HostRecord]:
        raw = self._records().get(host_id)
        if not raw:
            return None
        try:
            return HostRecord.model_validate({"host_id": host_id, **raw})
        except ValueError as e:
            _logger.error(f"主机记录格式错误 [{host_id}]: {e}")
            return None

    async def resolve(self, host_id: str) -> HostCredential:
        """
        解析主机凭据。

        Raises:
            CredentialNotFound: 主机不存在或记录无效
        """
        record = self.get(host_id)
        if record is None:
            raise CredentialNotFound(f"主机不存在或凭据无效: {host_id}")
        return record.credential

    def register(self, record: HostRecord):
        """写入/覆盖一条主机记录（供导入脚本和测试使用）"""
        def updater(hosts):
            hosts[record.host_id] = record.model_dump(mode="json", exclude={"host_id"})
            return hosts
        self._storage.update(HOSTS_FILE, updater, default={})

    def set_status(self, host_id: str, status: HostStatus):
        def updater(hosts):
            if host_id in hosts:
                hosts[host_id]["status"] = status.value
                hosts[host_id]["status_changed_at"] = time.time()
            return hosts
        self._storage.update(HOSTS_FILE, updater, default={})

    def is_online(self, host_id: str) -> bool:
        raw = self._records().get(host_id) or {}
        return raw.get("status") == HostStatus.ONLINE.value

    def online_hosts(self) -> list[str]:
        return [host_id for host_id, raw in self._records().items()
                if raw.get("status") == HostStatus.ONLINE.value]

    def list_hosts(self) -> list[HostRecord]:
        return [r for r in (self.get(h) for h in self._records()) if r is not None]
