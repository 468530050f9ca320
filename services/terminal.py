"""
终端会话复用器

每个 (host, client) 一个交互式 PTY 会话，独占一条连接：
- 生命周期 CONNECTING → OPEN → CLOSED；连接或认证失败时 CONNECTING → CLOSED
- OPEN 期间两条并发数据流：客户端输入 → PTY，PTY 输出 → 客户端
- 任意一侧关闭、读到 EOF 或发送失败，整个会话立即关闭并归还连接（只归还一次）
- 调整窗口大小不会重启数据流
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from typing import Optional, Union

from core.errors import InvalidTransition, OpsError, SessionClosed, SessionNotFound
from core.logger import bind_context, get_logger
from models.host import PTYRequest
from models.terminal import ResizeRequest, SessionState, TerminalSessionInfo
from services.pool import PTYHandle, SessionPool

_logger = get_logger("services.terminal")


class TerminalClient(ABC):
    """终端会话的客户端一侧（WebSocket 适配器、测试替身）"""

    @abstractmethod
    async def receive(self) -> Union[bytes, ResizeRequest, None]:
        """下一条输入：键盘字节、窗口调整请求，或 None 表示客户端已断开"""

    @abstractmethod
    async def send(self, data: bytes):
        """把 PTY 输出发给客户端；失败时抛出异常"""


class TerminalSession:
    """运行时会话：对外信息 + 独占的 PTY 句柄 + 两条数据流"""

    def __init__(self, info: TerminalSessionInfo):
        self.info = info
        self.handle: Optional[PTYHandle] = None
        self.flows: list[asyncio.Task] = []
        self.attached = False

    @property
    def session_id(self) -> str:
        return self.info.session_id

    @property
    def state(self) -> SessionState:
        return self.info.state

    def touch(self):
        self.info.last_activity = time.time()


class TerminalMultiplexer:
    """终端会话管理"""

    def __init__(
        self,
        pool: SessionPool,
        term: str = "xterm-256color",
        default_cols: int = 80,
        default_rows: int = 24,
        idle_timeout: float = 1800,
        sweep_interval: float = 60,
        read_size: int = 4096,
    ):
        self._pool = pool
        self._term = term
        self._default_cols = default_cols
        self._default_rows = default_rows
        self._idle_timeout = idle_timeout
        self._sweep_interval = sweep_interval
        self._read_size = read_size
        self._sessions: dict[str, TerminalSession] = {}
        self._running = False
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, pool: SessionPool) -> "TerminalMultiplexer":
        return cls(
            pool,
            term=config.get("terminal.term", "xterm-256color"),
            default_cols=config.get("terminal.default_cols", 80),
            default_rows=config.get("terminal.default_rows", 24),
            idle_timeout=config.get("terminal.idle_timeout", 1800),
            sweep_interval=config.get("terminal.sweep_interval", 60),
            read_size=config.get("runner.read_size", 4096),
        )

    # ──────────────────────────────────────────
    # 会话生命周期
    # ──────────────────────────────────────────

    async def open(self, host_id: str, client_id: str = "web",
                   cols: Optional[int] = None, rows: Optional[int] = None) -> TerminalSessionInfo:
        """
        打开会话：申请独占连接上的 PTY。

        Raises:
            CredentialNotFound / AuthenticationFailure / TransientNetworkFailure: 连接失败，会话已关闭
        """
        info = TerminalSessionInfo(
            session_id=f"term-{uuid.uuid4().hex[:12]}",
            host_id=host_id,
            client_id=client_id,
            cols=cols or self._default_cols,
            rows=rows or self._default_rows,
            term=self._term,
        )
        session = TerminalSession(info)
        self._sessions[info.session_id] = session

        with bind_context(session_id=info.session_id, host_id=host_id):
            _logger.info(f"打开终端会话: client={client_id} {info.cols}x{info.rows}")
            try:
                handle = await self._pool.open(
                    PTYRequest(host_id=host_id, cols=info.cols, rows=info.rows, term=info.term)
                )
            except BaseException as e:
                self._mark_closed(session, f"连接失败: {e}")
                _logger.error(f"终端会话建立失败: {e}")
                raise

            if session.state == SessionState.CLOSED:
                # 建立连接期间会话已被关闭
                await handle.close()
                raise SessionClosed(f"终端会话已关闭: {info.session_id}")

            session.handle = handle
            info.state = SessionState.OPEN
            session.touch()
        return info

    async def attach(self, session_id: str, client: TerminalClient) -> str:
        """
        把客户端接到会话上并运行双向转发，直到任意一侧结束。

        Returns:
            会话关闭原因
        """
        session = self._get(session_id)
        if session.state != SessionState.OPEN:
            raise SessionClosed(f"终端会话未就绪: {session_id} ({session.state.value})")
        if session.attached:
            raise InvalidTransition(f"终端会话已有客户端连接: {session_id}")
        session.attached = True

        with bind_context(session_id=session_id, host_id=session.info.host_id):
            inbound = asyncio.create_task(self._client_to_pty(session, client))
            outbound = asyncio.create_task(self._pty_to_client(session, client))
            session.flows = [inbound, outbound]
            reason = "会话已关闭"
            try:
                done, _ = await asyncio.wait(session.flows, return_when=asyncio.FIRST_COMPLETED)
                for flow in done:
                    if flow.cancelled():
                        continue
                    if flow.exception() is not None:
                        reason = f"数据流异常: {flow.exception()}"
                    else:
                        reason = flow.result()
                    break
            finally:
                await self._close_session(session, reason)
                await asyncio.gather(*session.flows, return_exceptions=True)
        return reason

    async def _client_to_pty(self, session: TerminalSession, client: TerminalClient) -> str:
        while True:
            message = await client.receive()
            if message is None:
                return "客户端断开"
            if isinstance(message, ResizeRequest):
                await self._apply_resize(session, message.cols, message.rows)
                continue
            try:
                await session.handle.write(message)
            except (OSError, EOFError, OpsError) as e:
                return f"写入 PTY 失败: {e}"
            session.touch()

    async def _pty_to_client(self, session: TerminalSession, client: TerminalClient) -> str:
        while True:
            data = await session.handle.read(self._read_size)
            if not data:
                return "远端已关闭"
            session.touch()
            try:
                await client.send(data)
            except Exception as e:
                return f"发送到客户端失败: {e}"

    async def resize(self, session_id: str, cols: int, rows: int) -> TerminalSessionInfo:
        session = self._get(session_id)
        if session.state != SessionState.OPEN:
            raise SessionClosed(f"终端会话未就绪: {session_id}")
        await self._apply_resize(session, cols, rows)
        return session.info

    async def _apply_resize(self, session: TerminalSession, cols: int, rows: int):
        await session.handle.resize(cols, rows)
        session.info.cols = cols
        session.info.rows = rows
        session.touch()
        _logger.debug(f"终端窗口调整为 {cols}x{rows}")

    async def close(self, session_id: str, reason: str = "用户关闭") -> bool:
        """
        关闭会话并归还连接。关闭后的会话不再登记。

        Raises:
            SessionNotFound: 会话不存在或已关闭
        """
        return await self._close_session(self._get(session_id), reason)

    async def _close_session(self, session: TerminalSession, reason: str) -> bool:
        if session.state == SessionState.CLOSED:
            return False

        self._mark_closed(session, reason)
        if session.handle is not None:
            await session.handle.close()
        current = asyncio.current_task()
        for flow in session.flows:
            if flow is not current and not flow.done():
                flow.cancel()
        _logger.info(f"终端会话已关闭: {session.session_id} ({reason})")
        return True

    def _mark_closed(self, session: TerminalSession, reason: str):
        session.info.state = SessionState.CLOSED
        session.info.closed_at = time.time()
        session.info.close_reason = reason
        self._sessions.pop(session.session_id, None)

    def _get(self, session_id: str) -> TerminalSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"终端会话不存在: {session_id}")
        return session

    # ──────────────────────────────────────────
    # 查询
    # ──────────────────────────────────────────

    def get_session(self, session_id: str) -> TerminalSessionInfo:
        return self._get(session_id).info

    def list_sessions(self, client_id: Optional[str] = None) -> list[TerminalSessionInfo]:
        return [s.info for s in self._sessions.values()
                if client_id is None or s.info.client_id == client_id]

    def stats(self) -> dict[str, int]:
        states = [s.state for s in self._sessions.values()]
        return {
            "total": len(states),
            "connecting": states.count(SessionState.CONNECTING),
            "open": states.count(SessionState.OPEN),
            "attached": sum(1 for s in self._sessions.values() if s.attached),
        }

    # ──────────────────────────────────────────
    # 空闲清理
    # ──────────────────────────────────────────

    async def sweep_idle(self, now: Optional[float] = None) -> list[str]:
        """关闭超过 idle_timeout 没有活动的会话"""
        now = now or time.time()
        expired = [
            s for s in list(self._sessions.values())
            if s.state == SessionState.OPEN and now - s.info.last_activity > self._idle_timeout
        ]
        for session in expired:
            await self._close_session(session, f"空闲超过 {self._idle_timeout} 秒")
        return [s.session_id for s in expired]

    async def start(self):
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        _logger.info("终端空闲清理循环已启动")

    async def stop(self):
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
        for session in list(self._sessions.values()):
            await self._close_session(session, "服务停止")
        _logger.info("终端服务已停止")

    async def _sweep_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self._sweep_interval)
                closed = await self.sweep_idle()
                if closed:
                    _logger.info(f"清理空闲终端会话 {len(closed)} 个")
            except asyncio.CancelledError:
                break
            except Exception as e:
                _logger.error(f"终端空闲清理异常: {e}")
                await asyncio.sleep(self._sweep_interval)
