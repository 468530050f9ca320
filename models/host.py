"""
主机与连接数据模型

定义凭据库解析结果和 PTY 请求的 Pydantic 模型。
"""

import hashlib
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Protocol(str, Enum):
    """主机接入协议"""
    SSH = "ssh"
    LOCAL = "local"  # 控制节点本机，直接 subprocess 执行


class HostStatus(str, Enum):
    """主机在线状态"""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class HostCredential(BaseModel):
    """
    凭据库 resolve(host_id) 的结果（已解密，仅在内存中使用）
    """
    host_id: str
    protocol: Protocol = Protocol.SSH
    address: str = Field("127.0.0.1", description="主机地址（IP 或域名）")
    port: int = 22
    username: str = "root"
    password: Optional[str] = Field(None, repr=False)
    private_key: Optional[str] = Field(None, repr=False, description="PEM 格式私钥文本")
    passphrase: Optional[str] = Field(None, repr=False)

    def fingerprint(self) -> str:
        """
        连接池键的一部分：同一主机换了凭据就不会复用旧连接。
        """
        material = "\x00".join([
            self.protocol.value,
            self.address,
            str(self.port),
            self.username,
            self.password or "",
            self.private_key or "",
            self.passphrase or "",
        ])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


class HostRecord(BaseModel):
    """
    hosts.json 中的主机条目（凭据库的持久化形态）
    """
    host_id: str
    name: str = ""
    credential: HostCredential
    status: HostStatus = HostStatus.UNKNOWN


class PTYRequest(BaseModel):
    """打开交互式终端的请求"""
    host_id: str
    cols: int = Field(80, ge=1, le=1000)
    rows: int = Field(24, ge=1, le=1000)
    term: str = "xterm-256color"
