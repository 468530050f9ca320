"""
定时任务数据模型
"""

import time
import uuid
from typing import Optional

from pydantic import BaseModel, Field

from models.task import TaskSpec


class ScheduledTaskDef(BaseModel):
    """
    定时任务定义：cron 表达式 + 任务模板
    """
    schedule_id: str = Field(default_factory=lambda: f"sched-{uuid.uuid4().hex[:8]}")
    name: str = ""
    cron: str = Field(..., description="5 段 cron 表达式，按 scheduler.timezone 解释")
    template: TaskSpec
    enabled: bool = True
    last_fired_at: Optional[float] = None
    next_fire_at: Optional[float] = None
    last_task_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
