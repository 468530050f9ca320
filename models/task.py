"""
任务数据模型

Task 由调用方提交、仅由编排器修改；HostRun 是任务在单台主机上的执行记录。
"""

import time
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from core.errors import InvalidTransition


class TaskKind(str, Enum):
    """任务类型"""
    COMMAND = "command"
    PLAYBOOK = "playbook"


class TaskStatus(str, Enum):
    """任务状态"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class HostRunStatus(str, Enum):
    """单主机执行状态"""
    PENDING = "pending"      # 已排队，尚未连接
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (HostRunStatus.PENDING, HostRunStatus.RUNNING)

    @property
    def is_failure(self) -> bool:
        return self in (HostRunStatus.FAILED, HostRunStatus.TIMEOUT)


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


class TaskSpec(BaseModel):
    """
    任务提交参数（submit-task 的请求体，也是定时任务的模板）
    """
    kind: TaskKind = TaskKind.COMMAND
    payload: dict[str, Any] = Field(default_factory=dict,
                                    description="command: {command}; playbook: {playbook, variables}")
    host_ids: list[str] = Field(default_factory=list)
    concurrency: Optional[int] = Field(None, ge=1)
    timeout: Optional[float] = Field(None, gt=0, description="单主机超时秒数")
    continue_on_error: bool = False
    created_by: str = "system"

    @field_validator("host_ids")
    @classmethod
    def _dedupe_hosts(cls, value: list[str]) -> list[str]:
        # 同一任务同一主机只允许一个 HostRun，保持提交顺序去重
        return list(dict.fromkeys(h for h in value if h))

    @model_validator(mode="after")
    def _check_payload(self) -> "TaskSpec":
        if not self.host_ids:
            raise ValueError("host_ids 不能为空")
        if self.kind == TaskKind.COMMAND:
            command = str(self.payload.get("command", "")).strip()
            if not command:
                raise ValueError("command 任务缺少 payload.command")
        else:
            if not str(self.payload.get("playbook", "")).strip():
                raise ValueError("playbook 任务缺少 payload.playbook")
            variables = self.payload.get("variables", {})
            if not isinstance(variables, dict):
                raise ValueError("payload.variables 必须是字典")
        return self


class Task(BaseModel):
    """
    任务定义与聚合状态
    """
    task_id: str = Field(default_factory=new_task_id)
    kind: TaskKind
    payload: dict[str, Any]
    host_ids: list[str]
    concurrency: int = Field(..., ge=1)
    timeout: float = Field(..., gt=0)
    continue_on_error: bool = False
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    created_by: str = "system"
    retry_of: Optional[str] = None
    scheduled_task_id: Optional[str] = None
    cancel_requested: bool = False

    def describe(self) -> str:
        if self.kind == TaskKind.COMMAND:
            return str(self.payload.get("command", ""))[:60]
        return f"playbook({len(str(self.payload.get('playbook', '')))} chars)"


class HostRun(BaseModel):
    """
    任务在单台主机上的执行记录，(task_id, host_id) 唯一。

    进入终态后状态不可再变；输出由 OutputBuffer 追加，这里只保存尾部快照。
    """
    task_id: str
    host_id: str
    status: HostRunStatus = HostRunStatus.PENDING
    exit_code: Optional[int] = None
    created_at: float = Field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    output_tail: str = ""

    def mark_running(self):
        if self.status != HostRunStatus.PENDING:
            raise InvalidTransition(f"HostRun {self.task_id}/{self.host_id} 状态为 {self.status.value}，无法开始")
        self.status = HostRunStatus.RUNNING
        self.started_at = time.time()

    def finish(
        self,
        status: HostRunStatus,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> bool:
        """
        进入终态。已是终态时不做任何修改并返回 False。
        """
        if not status.is_terminal:
            raise InvalidTransition(f"{status.value} 不是终态")
        if self.status.is_terminal:
            return False
        self.status = status
        self.exit_code = exit_code
        self.error = error
        self.error_kind = error_kind
        self.completed_at = time.time()
        return True

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


class TaskView(BaseModel):
    """status(task_id) 的返回值"""
    task: Task
    host_runs: list[HostRun]
    stats: dict[str, int]


class OutputChunk(BaseModel):
    """HostRun 输出流中的一个片段"""
    task_id: str
    host_id: str
    seq: int
    stream: str = "stdout"  # stdout / stderr / system
    data: str
    ts: float = Field(default_factory=time.time)
