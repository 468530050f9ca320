"""
WebSocket 终端 API

会话先通过 POST /terminal/sessions 建立（申请 PTY），再由 WebSocket 接入：
- 前端发送的文本 / 二进制帧直接写入 PTY
- {"type": "resize", "cols": N, "rows": M} 文本帧调整窗口大小
- PTY 输出实时推送到前端
任意一侧断开，会话立即关闭并归还连接。
"""

import codecs
import json
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.deps import get_terminal
from core.errors import OpsError
from core.logger import get_logger
from models.terminal import OpenTerminalRequest, ResizeRequest
from services.terminal import TerminalClient

router = APIRouter(prefix="/terminal", tags=["terminal"])
_logger = get_logger("api.terminal")


class WebSocketTerminalClient(TerminalClient):
    """把 FastAPI WebSocket 适配为终端客户端"""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def receive(self) -> Union[bytes, ResizeRequest, None]:
        while True:
            try:
                message = await self._ws.receive()
            except WebSocketDisconnect:
                return None
            if message["type"] == "websocket.disconnect":
                return None
            if message.get("bytes") is not None:
                return message["bytes"]

            text = message.get("text") or ""
            control = self._parse_control(text)
            if control is None:
                return text.encode("utf-8")
            if isinstance(control, ResizeRequest):
                return control
            # 无法识别的控制帧直接丢弃

    @staticmethod
    def _parse_control(text: str) -> Union[ResizeRequest, bool, None]:
        """None: 普通输入；ResizeRequest: 窗口调整；False: 丢弃"""
        if not text.startswith("{"):
            return None
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict) or data.get("type") != "resize":
            return None
        try:
            return ResizeRequest(cols=data.get("cols"), rows=data.get("rows"))
        except ValidationError as e:
            _logger.warning(f"无效的窗口调整消息: {e.errors()}")
            return False

    async def send(self, data: bytes):
        text = self._decoder.decode(data)
        if text:
            await self._ws.send_text(text)


@router.post("/sessions")
async def open_session(req: OpenTerminalRequest, terminal=Depends(get_terminal)):
    """建立终端会话（申请 PTY）"""
    info = await terminal.open(req.host_id, client_id=req.client_id, cols=req.cols, rows=req.rows)
    return {"session_id": info.session_id, "session": info.model_dump(mode="json")}


@router.get("/sessions")
async def list_sessions(client_id: Optional[str] = Query(default=None), terminal=Depends(get_terminal)):
    sessions = terminal.list_sessions(client_id=client_id)
    return {"sessions": [s.model_dump(mode="json") for s in sessions], "stats": terminal.stats()}


@router.post("/sessions/{session_id}/resize")
async def resize_session(session_id: str, req: ResizeRequest, terminal=Depends(get_terminal)):
    info = await terminal.resize(session_id, req.cols, req.rows)
    return info.model_dump(mode="json")


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, terminal=Depends(get_terminal)):
    await terminal.close(session_id, "用户关闭")
    return {"session_id": session_id, "closed": True}


@router.websocket("/sessions/{session_id}/ws")
async def terminal_ws(websocket: WebSocket, session_id: str):
    """终端数据通道"""
    await websocket.accept()
    terminal = websocket.app.state.terminal
    _logger.info(f"终端 WebSocket 已连接: {session_id}")

    try:
        reason = await terminal.attach(session_id, WebSocketTerminalClient(websocket))
    except OpsError as e:
        await websocket.send_text(f"\r\n\x1b[31m{e.message}\x1b[0m\r\n")
        await websocket.close(code=4004, reason=type(e).__name__)
        return

    _logger.info(f"终端会话结束: {session_id} ({reason})")
    try:
        await websocket.close()
    except (RuntimeError, WebSocketDisconnect):
        # 客户端已断开
        pass
