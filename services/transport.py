"""
传输能力接口

连接池、执行器、终端复用器只依赖这里的抽象；SSH（paramiko）与本机
subprocess 是两个可替换的实现。所有方法都是阻塞的，由调用方通过
asyncio.to_thread 放到线程池执行。
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Optional

from core.errors import UnsupportedProtocol
from models.host import HostCredential, Protocol

STDOUT = "stdout"
STDERR = "stderr"


class RemoteProcess(ABC):
    """一次非交互式远程命令执行"""

    @abstractmethod
    def read(self, max_bytes: int) -> Optional[tuple[str, bytes]]:
        """
        阻塞直到有输出可读。

        Returns:
            (stream, data)；stdout 和 stderr 都到达 EOF 后返回 None
        """

    @abstractmethod
    def wait(self) -> int:
        """等待进程结束并返回退出码（在 read 返回 None 之后调用）"""

    @abstractmethod
    def terminate(self, grace: float = 2.0):
        """强制结束远程进程（先 TERM，grace 秒后 KILL），可重复调用"""


class PtyChannel(ABC):
    """交互式 PTY 通道，独占一个连接"""

    @abstractmethod
    def read(self, max_bytes: int) -> bytes:
        """阻塞读取；返回 b"" 表示远端已关闭（EOF）"""

    @abstractmethod
    def write(self, data: bytes):
        """写入键盘输入；通道已断开时抛出 OSError / EOFError"""

    @abstractmethod
    def resize(self, cols: int, rows: int):
        """调整 PTY 窗口大小"""

    @abstractmethod
    def close(self):
        """关闭通道，可重复调用；会让阻塞中的 read 返回"""


class Connection(ABC):
    """到某台主机的一条传输连接"""

    def __init__(self, credential: HostCredential):
        self.credential = credential

    @property
    def host_id(self) -> str:
        return self.credential.host_id

    @abstractmethod
    def exec(self, command: str) -> RemoteProcess:
        """启动命令，返回可流式读取的进程句柄"""

    @abstractmethod
    def open_pty(self, cols: int, rows: int, term: str) -> PtyChannel:
        """申请 PTY 并启动交互式 shell"""

    @abstractmethod
    def is_active(self) -> bool:
        """底层连接是否仍可用"""

    @abstractmethod
    def close(self):
        """关闭连接，可重复调用"""


class Transport(ABC):
    """连接工厂"""

    protocol: Protocol

    @abstractmethod
    def connect(self, credential: HostCredential, timeout: float) -> Connection:
        """
        建立连接。

        Raises:
            AuthenticationFailure: 认证失败（不重试）
            TransientNetworkFailure: 网络瞬时故障（可重试）
        """


class TransportRegistry:
    """协议 → 传输实现"""

    def __init__(self, transports: Optional[list[Transport]] = None):
        self._transports: dict[Protocol, Transport] = {}
        for transport in transports or []:
            self.register(transport)

    def register(self, transport: Transport):
        self._transports[transport.protocol] = transport

    def for_credential(self, credential: HostCredential) -> Transport:
        transport = self._transports.get(credential.protocol)
        if transport is None:
            raise UnsupportedProtocol(f"不支持的接入协议: {credential.protocol.value}")
        return transport


async def run_blocking(func: Callable, *args, on_abandon: Optional[Callable] = None):
    """
    在工作线程中执行阻塞调用。

    调用方被取消时线程照常跑完；若它最终成功返回（连接已建立、进程已启动），
    结果交给 on_abandon 在线程池中收尾，不会成为无人持有的资源。
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        if on_abandon is not None:
            future.add_done_callback(lambda f: _abandon(f, on_abandon))
        raise


def _abandon(future: asyncio.Future, on_abandon: Callable):
    if future.cancelled() or future.exception() is not None:
        return
    asyncio.get_running_loop().run_in_executor(None, on_abandon, future.result())
