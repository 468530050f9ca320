"""
测试替身：内存凭据库、可编排行为的传输层、PTY、终端客户端和通知器。

阻塞调用都会在 terminate / close 后尽快返回，避免 asyncio.to_thread 的工作线程挂住。
"""

import asyncio
import queue
import threading
import time
from collections import deque
from typing import Optional

from core.errors import CredentialNotFound
from models.host import HostCredential, Protocol
from services.pool import SessionPool
from services.terminal import TerminalClient
from services.transport import (
    STDERR, STDOUT, Connection, PtyChannel, RemoteProcess, Transport, TransportRegistry,
)


class MemoryInventory:
    """只在内存中的凭据库"""

    def __init__(self, *host_ids: str, protocol: Protocol = Protocol.SSH):
        self.credentials = {
            h: HostCredential(host_id=h, protocol=protocol, address=f"10.0.0.{i + 1}", password="pw")
            for i, h in enumerate(host_ids)
        }
        self.online = set(host_ids)

    async def resolve(self, host_id: str) -> HostCredential:
        credential = self.credentials.get(host_id)
        if credential is None:
            raise CredentialNotFound(f"主机不存在: {host_id}")
        return credential

    def is_online(self, host_id: str) -> bool:
        return host_id in self.online

    def online_hosts(self) -> list[str]:
        return sorted(self.online)


class FakeProcess(RemoteProcess):
    def __init__(self, transport: "FakeTransport", chunks=(), exit_code: int = 0,
                 hang: bool = False, delay: float = 0.0):
        self._transport = transport
        self._chunks = deque(chunks)
        self._exit_code = exit_code
        self._hang = hang
        self._delay = delay
        self._stop = threading.Event()
        self._finished = False
        self.terminated = False
        transport._process_started()

    def _finish(self):
        if not self._finished:
            self._finished = True
            self._transport._process_finished()

    def read(self, max_bytes: int):
        if self._delay:
            self._stop.wait(self._delay)
        if self._chunks and not self.terminated:
            return self._chunks.popleft()
        if self._hang:
            # 最多挂 5 秒，防止泄漏的线程拖住解释器退出
            self._stop.wait(5)
        self._finish()
        return None

    def wait(self) -> int:
        return -1 if self.terminated else self._exit_code

    def terminate(self, grace: float = 2.0):
        self.terminated = True
        self._stop.set()
        self._finish()


class FakePty(PtyChannel):
    def __init__(self, cols: int, rows: int):
        self.cols = cols
        self.rows = rows
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.closed = False
        self._out: "queue.Queue[bytes]" = queue.Queue()

    def feed(self, data: bytes):
        """模拟远端输出；b"" 表示远端关闭"""
        self._out.put(data)

    def read(self, max_bytes: int) -> bytes:
        while not self.closed:
            try:
                return self._out.get(timeout=0.02)
            except queue.Empty:
                continue
        return b""

    def write(self, data: bytes):
        if self.closed:
            raise OSError("pty closed")
        self.written.append(data)

    def resize(self, cols: int, rows: int):
        self.resizes.append((cols, rows))
        self.cols, self.rows = cols, rows

    def close(self):
        self.closed = True


class FakeConnection(Connection):
    def __init__(self, transport: "FakeTransport", credential: HostCredential):
        super().__init__(credential)
        self._transport = transport
        self.commands: list[str] = []
        self.processes: list[FakeProcess] = []
        self.ptys: list[FakePty] = []
        self.closed = False
        self.broken = False

    def exec(self, command: str) -> FakeProcess:
        self.commands.append(command)
        if self._transport.exec_delay:
            time.sleep(self._transport.exec_delay)
        process = self._transport.make_process(self.host_id, command)
        self.processes.append(process)
        return process

    def open_pty(self, cols: int, rows: int, term: str) -> FakePty:
        if self._transport.pty_error is not None:
            raise self._transport.pty_error
        pty = FakePty(cols, rows)
        self.ptys.append(pty)
        self._transport.ptys.append(pty)
        return pty

    def is_active(self) -> bool:
        return not self.closed and not self.broken

    def close(self):
        if self._transport.close_delay:
            time.sleep(self._transport.close_delay)
        self.closed = True


class FakeTransport(Transport):
    """
    可编排的传输层。

    script(host_id, ...) 设置该主机上命令的输出、退出码和是否挂起；
    failures[host_id] 中的异常在 connect 时依次抛出。
    connect_delay / exec_delay / close_delay 让对应的阻塞调用变慢；pty_error 在 open_pty 时抛出。
    """

    protocol = Protocol.SSH

    def __init__(self):
        self.connections: list[FakeConnection] = []
        self.connect_calls: dict[str, int] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.behaviors: dict[str, dict] = {}
        self.ptys: list[FakePty] = []
        self.running = 0
        self.max_running = 0
        self.connect_delay = 0.0
        self.exec_delay = 0.0
        self.close_delay = 0.0
        self.pty_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def script(self, host_id: str, stdout: bytes = b"", stderr: bytes = b"", exit_code: int = 0,
               hang: bool = False, delay: float = 0.0, chunks: Optional[list] = None):
        if chunks is None:
            chunks = []
            if stdout:
                chunks.append((STDOUT, stdout))
            if stderr:
                chunks.append((STDERR, stderr))
        self.behaviors[host_id] = {"chunks": chunks, "exit_code": exit_code, "hang": hang, "delay": delay}

    def make_process(self, host_id: str, command: str) -> FakeProcess:
        behavior = self.behaviors.get(host_id, {"chunks": [(STDOUT, f"{host_id} ok\n".encode())]})
        return FakeProcess(self, **behavior)

    def connect(self, credential: HostCredential, timeout: float) -> FakeConnection:
        with self._lock:
            self.connect_calls[credential.host_id] = self.connect_calls.get(credential.host_id, 0) + 1
            pending = self.failures.get(credential.host_id)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        if self.connect_delay:
            time.sleep(self.connect_delay)
        connection = FakeConnection(self, credential)
        self.connections.append(connection)
        return connection

    def total_connects(self) -> int:
        return sum(self.connect_calls.values())

    def _process_started(self):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)

    def _process_finished(self):
        with self._lock:
            self.running -= 1


class FakeTerminalClient(TerminalClient):
    """在协程内创建（内部用 asyncio.Queue）"""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.received: list[bytes] = []
        self.fail_send = False

    def type(self, item):
        self.inbox.put_nowait(item)

    def disconnect(self):
        self.inbox.put_nowait(None)

    async def receive(self):
        return await self.inbox.get()

    async def send(self, data: bytes):
        if self.fail_send:
            raise ConnectionError("client gone")
        self.received.append(data)


class RecordingNotifier:
    """记录所有通知事件"""

    def __init__(self):
        self.events = []

    def notify(self, channel_ids, event):
        self.events.append((list(channel_ids), event))

    @property
    def kinds(self) -> list[str]:
        return [event.kind.value for _, event in self.events]


class FakeOrchestrator:
    """只记录提交的编排器"""

    def __init__(self, fail: bool = False):
        self.submitted = []
        self.fail = fail

    async def submit(self, spec, **extra) -> str:
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("orchestrator down")
        self.submitted.append((spec, extra))
        return f"task-{len(self.submitted)}"


def make_pool(transport: FakeTransport, inventory: MemoryInventory, **kwargs) -> SessionPool:
    kwargs.setdefault("backoff_base", 0.0)
    kwargs.setdefault("connect_timeout", 1)
    return SessionPool(inventory, TransportRegistry([transport]), **kwargs)


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """轮询直到 predicate() 为真，超时则断言失败"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    assert predicate(), "condition not met in time"
