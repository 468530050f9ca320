"""
终端会话数据模型
"""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """终端会话生命周期：CONNECTING → OPEN → CLOSED，或 CONNECTING → CLOSED"""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TerminalSessionInfo(BaseModel):
    """终端会话的对外快照（不含传输句柄）"""
    session_id: str
    host_id: str
    client_id: str
    cols: int
    rows: int
    term: str = "xterm-256color"
    state: SessionState = SessionState.CONNECTING
    created_at: float = Field(default_factory=time.time)
    last_activity: float = Field(default_factory=time.time)
    closed_at: Optional[float] = None
    close_reason: Optional[str] = None


class ResizeRequest(BaseModel):
    cols: int = Field(..., ge=1, le=1000)
    rows: int = Field(..., ge=1, le=1000)


class OpenTerminalRequest(BaseModel):
    host_id: str
    cols: int = Field(80, ge=1, le=1000)
    rows: int = Field(24, ge=1, le=1000)
    client_id: str = "web"
