"""
远程会话连接池

按 (host_id, 凭据指纹) 复用连接，按主机限制同时打开的连接数：
- 超过上限的 acquire 排队等待，而不是无限制地新建 socket
- 认证失败立即抛出，不重试
- 网络瞬时故障按指数退避重试 connect_attempts 次
- 使用中断开的连接（release(discard=True)）直接关闭，绝不放回池中
- PTY 连接独占：既不从空闲集合中取，也不放回空闲集合

计数只在事件循环线程中修改；排队与唤醒都走同一个 asyncio.Condition。
"""

import asyncio
import time
from collections import defaultdict
from typing import Optional

from core.errors import AuthenticationFailure, PoolClosed, TransientNetworkFailure
from core.logger import get_logger
from models.host import HostCredential, PTYRequest
from services.transport import Connection, PtyChannel, TransportRegistry, run_blocking

_logger = get_logger("services.pool")


class PooledConnection:
    """从池中借出的连接；release 只生效一次"""

    def __init__(self, pool: "SessionPool", key: tuple[str, str], connection: Connection,
                 exclusive: bool = False):
        self._pool = pool
        self.key = key
        self.connection = connection
        self.exclusive = exclusive
        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.released = False

    @property
    def host_id(self) -> str:
        return self.key[0]

    async def release(self, discard: bool = False) -> bool:
        return await self._pool.release(self, discard=discard)

    def __repr__(self) -> str:
        state = "released" if self.released else "in-use"
        return f"<PooledConnection {self.host_id} {state}{' exclusive' if self.exclusive else ''}>"


class PTYHandle:
    """
    独占连接上的 PTY 通道。close() 关闭通道并把连接交还连接池（丢弃），只执行一次。
    """

    def __init__(self, pool: "SessionPool", pooled: PooledConnection, channel: PtyChannel,
                 request: PTYRequest):
        self._pool = pool
        self._pooled = pooled
        self.channel = channel
        self.request = request
        self._closed = False

    @property
    def host_id(self) -> str:
        return self._pooled.host_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, max_bytes: int = 4096) -> bytes:
        return await asyncio.to_thread(self.channel.read, max_bytes)

    async def write(self, data: bytes):
        await asyncio.to_thread(self.channel.write, data)

    async def resize(self, cols: int, rows: int):
        await asyncio.to_thread(self.channel.resize, cols, rows)

    async def close(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        try:
            await asyncio.to_thread(self.channel.close)
        except OSError as e:
            _logger.warning(f"关闭 PTY 通道异常 [{self.host_id}]: {e}")
        finally:
            await self._pool.release(self._pooled, discard=True)
        return True


class SessionPool:
    """
    连接池。

    Args:
        credentials: 凭据库，提供 async resolve(host_id) -> HostCredential
        transports: 协议 → 传输实现
        max_per_host: 每台主机同时打开的连接上限（借出 + 空闲）
    """

    def __init__(
        self,
        credentials,
        transports: TransportRegistry,
        max_per_host: int = 4,
        connect_timeout: float = 10,
        connect_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        idle_ttl: float = 300,
    ):
        self._credentials = credentials
        self._transports = transports
        self._max_per_host = max_per_host
        self._connect_timeout = connect_timeout
        self._connect_attempts = max(1, connect_attempts)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._idle_ttl = idle_ttl

        self._cond = asyncio.Condition()
        self._in_use: dict[str, int] = defaultdict(int)
        self._idle: dict[str, list[PooledConnection]] = defaultdict(list)
        self._waiting: dict[str, int] = defaultdict(int)
        self._closed = False

    @classmethod
    def from_config(cls, config, credentials, transports: TransportRegistry) -> "SessionPool":
        return cls(
            credentials,
            transports,
            max_per_host=config.get("pool.max_per_host", 4),
            connect_timeout=config.get("pool.connect_timeout", 10),
            connect_attempts=config.get("pool.connect_attempts", 3),
            backoff_base=config.get("pool.backoff_base", 0.5),
            backoff_max=config.get("pool.backoff_max", 8.0),
            idle_ttl=config.get("pool.idle_ttl", 300),
        )

    # ──────────────────────────────────────────
    # 计数
    # ──────────────────────────────────────────

    def in_use(self, host_id: str) -> int:
        """当前借出的连接数"""
        return self._in_use.get(host_id, 0)

    def idle_count(self, host_id: str) -> int:
        return len(self._idle.get(host_id, []))

    def open_count(self, host_id: str) -> int:
        """当前打开的连接数（借出 + 空闲）"""
        return self.in_use(host_id) + self.idle_count(host_id)

    def stats(self) -> dict[str, dict[str, int]]:
        hosts = set(self._in_use) | set(self._idle) | set(self._waiting)
        return {
            host_id: {
                "in_use": self.in_use(host_id),
                "idle": self.idle_count(host_id),
                "waiting": self._waiting.get(host_id, 0),
                "cap": self._max_per_host,
            }
            for host_id in sorted(hosts)
        }

    def _take_idle(self, key: tuple[str, str], stale: list[PooledConnection]) -> Optional[PooledConnection]:
        """取一个同键的可用空闲连接；过期或失效的放进 stale 待关闭"""
        now = time.monotonic()
        idle = self._idle[key[0]]
        found = None
        for pooled in list(idle):
            expired = now - pooled.last_used > self._idle_ttl
            if expired or not pooled.connection.is_active():
                idle.remove(pooled)
                stale.append(pooled)
                continue
            if found is None and pooled.key == key:
                idle.remove(pooled)
                found = pooled
        return found

    # ──────────────────────────────────────────
    # 借出 / 归还
    # ──────────────────────────────────────────

    async def acquire(self, host_id: str, credential: Optional[HostCredential] = None,
                      exclusive: bool = False) -> PooledConnection:
        """
        借出一条到 host_id 的连接；达到上限时排队等待。

        Raises:
            CredentialNotFound: 凭据库中没有该主机
            AuthenticationFailure: 认证失败
            TransientNetworkFailure: 重试耗尽
            PoolClosed: 连接池已关闭
        """
        if credential is None:
            credential = await self._credentials.resolve(host_id)
        key = (host_id, credential.fingerprint())
        stale: list[PooledConnection] = []
        reused: Optional[PooledConnection] = None

        async with self._cond:
            self._waiting[host_id] += 1
            try:
                while True:
                    if self._closed:
                        raise PoolClosed("连接池已关闭")
                    if not exclusive:
                        reused = self._take_idle(key, stale)
                        if reused is not None:
                            break
                    if self.open_count(host_id) >= self._max_per_host and self._idle[host_id]:
                        # 腾出一个其它凭据的空闲连接
                        stale.append(self._idle[host_id].pop(0))
                    if self.open_count(host_id) < self._max_per_host:
                        break
                    _logger.debug(f"主机 {host_id} 连接数已达上限 {self._max_per_host}，排队等待")
                    await self._cond.wait()
                self._in_use[host_id] += 1
            finally:
                self._waiting[host_id] -= 1

        # 计数已经占上，之后任何失败或取消都要退还
        try:
            while stale:
                await self._close_quietly(stale.pop())
            if reused is not None:
                # 新包装对象，旧持有者的重复 release 不会影响新借出的计数
                return PooledConnection(self, key, reused.connection)
            connection = await self._connect_with_retry(credential)
        except BaseException:
            loop = asyncio.get_running_loop()
            for pooled in stale:
                loop.run_in_executor(None, self._close_connection, pooled.connection)
            if reused is not None:
                if self._closed:
                    loop.run_in_executor(None, self._close_connection, reused.connection)
                else:
                    reused.last_used = time.monotonic()
                    self._idle[host_id].append(reused)
            self._in_use[host_id] -= 1
            await self._wake_waiters()
            raise
        return PooledConnection(self, key, connection, exclusive=exclusive)

    async def _wake_waiters(self):
        async with self._cond:
            self._cond.notify_all()

    async def _connect_with_retry(self, credential: HostCredential) -> Connection:
        transport = self._transports.for_credential(credential)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await run_blocking(
                    transport.connect, credential, self._connect_timeout, on_abandon=self._close_connection,
                )
            except AuthenticationFailure:
                _logger.error(f"主机 {credential.host_id} 认证失败，不重试")
                raise
            except TransientNetworkFailure as e:
                if attempt >= self._connect_attempts:
                    _logger.error(f"主机 {credential.host_id} 连接失败，已重试 {attempt} 次: {e}")
                    raise TransientNetworkFailure(
                        f"连接 {credential.host_id} 失败（{attempt} 次尝试）: {e.message}"
                    ) from e
                delay = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
                _logger.warning(
                    f"主机 {credential.host_id} 连接失败 ({attempt}/{self._connect_attempts})，"
                    f"{delay:.1f}s 后重试: {e}"
                )
                await asyncio.sleep(delay)

    async def release(self, pooled: PooledConnection, discard: bool = False) -> bool:
        """
        归还连接。discard=True、独占连接、连接已失效或池已关闭时直接关闭。
        同一个 PooledConnection 重复归还不会重复计数，返回 False。
        """
        if pooled.released:
            return False
        pooled.released = True

        keep = not discard and not pooled.exclusive and not self._closed and pooled.connection.is_active()
        async with self._cond:
            self._in_use[pooled.host_id] -= 1
            if keep:
                pooled.last_used = time.monotonic()
                self._idle[pooled.host_id].append(pooled)
            self._cond.notify_all()

        if not keep:
            await self._close_quietly(pooled)
        return True

    async def open(self, request: PTYRequest) -> PTYHandle:
        """为交互终端打开独占连接上的 PTY"""
        pooled = await self.acquire(request.host_id, exclusive=True)
        try:
            channel = await asyncio.to_thread(
                pooled.connection.open_pty, request.cols, request.rows, request.term
            )
        except BaseException:
            await self.release(pooled, discard=True)
            raise
        return PTYHandle(self, pooled, channel, request)

    async def close_all(self):
        """关闭所有空闲连接；借出中的连接在归还时关闭"""
        async with self._cond:
            self._closed = True
            idle = [p for conns in self._idle.values() for p in conns]
            self._idle.clear()
            self._cond.notify_all()
        for pooled in idle:
            await self._close_quietly(pooled)
        _logger.info(f"连接池已关闭，释放 {len(idle)} 个空闲连接")

    async def _close_quietly(self, pooled: PooledConnection):
        try:
            await asyncio.to_thread(pooled.connection.close)
        except OSError as e:
            _logger.warning(f"关闭连接异常 [{pooled.host_id}]: {e}")

    @staticmethod
    def _close_connection(connection: Connection):
        """关闭调用方已放弃等待的新连接"""
        try:
            connection.close()
        except OSError as e:
            _logger.warning(f"关闭连接异常 [{connection.host_id}]: {e}")
