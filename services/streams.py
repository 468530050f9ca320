"""
HostRun 输出流

每个 (task_id, host_id) 一个追加式 OutputBuffer（单写多读），订阅者通过
OutputHub.subscribe 拿到异步迭代器：先回放缓冲区，再实时接收新片段。

订阅队列有上限；消费过慢导致队列写满时，该订阅被断开并标记 overflowed，
调用方可以带 after_seq 重新订阅，从缓冲区补齐。
"""

import asyncio
from collections import deque
from typing import Optional

from core.logger import get_logger
from models.task import OutputChunk

_logger = get_logger("services.streams")


class OutputBuffer:
    """单个 HostRun 的输出缓冲，超过 limit 字符时丢弃最早的片段"""

    def __init__(self, task_id: str, host_id: str, limit: int = 1_000_000):
        self.task_id = task_id
        self.host_id = host_id
        self.limit = limit
        self.closed = False
        self.dropped = 0
        self._chunks: deque[OutputChunk] = deque()
        self._size = 0
        self._seq = 0

    @property
    def last_seq(self) -> int:
        return self._seq

    def append(self, stream: str, data: str) -> OutputChunk:
        self._seq += 1
        chunk = OutputChunk(task_id=self.task_id, host_id=self.host_id,
                            seq=self._seq, stream=stream, data=data)
        self._chunks.append(chunk)
        self._size += len(data)
        while self._size > self.limit and len(self._chunks) > 1:
            old = self._chunks.popleft()
            self._size -= len(old.data)
            self.dropped += 1
        return chunk

    def snapshot(self, after_seq: int = 0) -> list[OutputChunk]:
        return [c for c in self._chunks if c.seq > after_seq]

    def text(self, stream: Optional[str] = None) -> str:
        return "".join(c.data for c in self._chunks if stream is None or c.stream == stream)

    def tail(self, chars: int) -> str:
        if chars <= 0:
            return ""
        parts = []
        total = 0
        for chunk in reversed(self._chunks):
            parts.append(chunk.data)
            total += len(chunk.data)
            if total >= chars:
                break
        return "".join(reversed(parts))[-chars:]


class Subscription:
    """
    一个实时输出订阅。

    用法:
        async for chunk in hub.subscribe(task_id):
            ...
        if sub.overflowed: 重新订阅
    """

    def __init__(self, hub: "OutputHub", task_id: str, host_id: Optional[str], maxsize: int):
        self._hub = hub
        self.task_id = task_id
        self.host_id = host_id
        self.maxsize = maxsize
        self.overflowed = False
        self.closed = False
        self.last_seq: dict[str, int] = {}
        self._items: deque[OutputChunk] = deque()
        self._wake = asyncio.Event()

    def wants(self, chunk: OutputChunk) -> bool:
        return self.host_id is None or chunk.host_id == self.host_id

    def offer(self, chunk: OutputChunk):
        if self.closed:
            return
        if len(self._items) >= self.maxsize:
            self.overflowed = True
            self.closed = True
            _logger.warning(f"输出订阅队列已满，断开慢消费者 [{self.task_id}/{self.host_id or '*'}]")
            self._hub.unsubscribe(self)
        else:
            self._items.append(chunk)
        self._wake.set()

    def finish(self):
        self.closed = True
        self._wake.set()

    def close(self):
        self.finish()
        self._hub.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> OutputChunk:
        while True:
            if self._items:
                chunk = self._items.popleft()
                self.last_seq[chunk.host_id] = chunk.seq
                return chunk
            if self.closed:
                raise StopAsyncIteration
            self._wake.clear()
            await self._wake.wait()


class OutputHub:
    """所有 HostRun 输出缓冲与订阅的登记处；只在事件循环线程中调用"""

    def __init__(self, subscriber_queue: int = 256, buffer_limit: int = 1_000_000):
        self._subscriber_queue = subscriber_queue
        self._buffer_limit = buffer_limit
        self._buffers: dict[tuple[str, str], OutputBuffer] = {}
        self._task_hosts: dict[str, list[str]] = {}
        self._finished: set[str] = set()
        self._subs: dict[str, set[Subscription]] = {}

    @classmethod
    def from_config(cls, config) -> "OutputHub":
        return cls(
            subscriber_queue=config.get("streams.subscriber_queue", 256),
            buffer_limit=config.get("streams.buffer_limit", 1_000_000),
        )

    def open_stream(self, task_id: str, host_id: str) -> OutputBuffer:
        key = (task_id, host_id)
        buf = self._buffers.get(key)
        if buf is None:
            buf = OutputBuffer(task_id, host_id, limit=self._buffer_limit)
            self._buffers[key] = buf
            self._task_hosts.setdefault(task_id, []).append(host_id)
        return buf

    def buffer(self, task_id: str, host_id: str) -> Optional[OutputBuffer]:
        return self._buffers.get((task_id, host_id))

    def publish(self, task_id: str, host_id: str, stream: str, data: str) -> Optional[OutputChunk]:
        if not data:
            return None
        buf = self.open_stream(task_id, host_id)
        if buf.closed:
            _logger.debug(f"输出流已关闭，丢弃片段 [{task_id}/{host_id}]")
            return None
        chunk = buf.append(stream, data)
        for sub in list(self._subs.get(task_id, ())):
            if sub.wants(chunk):
                sub.offer(chunk)
        return chunk

    def close_stream(self, task_id: str, host_id: str):
        """HostRun 结束：关闭缓冲，结束只订阅该主机的订阅者"""
        buf = self._buffers.get((task_id, host_id))
        if buf is not None:
            buf.closed = True
        for sub in list(self._subs.get(task_id, ())):
            if sub.host_id == host_id:
                sub.finish()
                self.unsubscribe(sub)

    def finish_task(self, task_id: str):
        """任务结束：结束该任务的全部订阅"""
        self._finished.add(task_id)
        for host_id in self._task_hosts.get(task_id, []):
            buf = self._buffers.get((task_id, host_id))
            if buf is not None:
                buf.closed = True
        for sub in list(self._subs.pop(task_id, ())):
            sub.finish()

    def subscribe(self, task_id: str, host_id: Optional[str] = None,
                  replay: bool = True, after_seq: int = 0) -> Subscription:
        """
        订阅任务输出。

        Args:
            host_id: 只订阅某台主机；None 表示全部主机
            replay: 是否先回放缓冲区中已有的输出
            after_seq: 回放时跳过 seq <= after_seq 的片段（仅在指定 host_id 时有意义）
        """
        sub = Subscription(self, task_id, host_id, self._subscriber_queue)
        if replay:
            hosts = [host_id] if host_id else list(self._task_hosts.get(task_id, []))
            backlog = []
            for h in hosts:
                buf = self._buffers.get((task_id, h))
                if buf is not None:
                    backlog.extend(buf.snapshot(after_seq if host_id else 0))
            # 回放不受队列上限约束
            sub._items.extend(backlog)

        host_buf = self._buffers.get((task_id, host_id)) if host_id else None
        if task_id in self._finished or (host_buf is not None and host_buf.closed):
            sub.finish()
        else:
            self._subs.setdefault(task_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        subs = self._subs.get(sub.task_id)
        if subs is not None:
            subs.discard(sub)

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subs.get(task_id, ()))

    def discard(self, task_id: str):
        """释放任务的全部缓冲"""
        for host_id in self._task_hosts.pop(task_id, []):
            self._buffers.pop((task_id, host_id), None)
        for sub in self._subs.pop(task_id, set()):
            sub.finish()
        self._finished.discard(task_id)
