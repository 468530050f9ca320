"""
告警数据模型

AlertRule 描述阈值条件；Alert 是某条规则在某台主机上的一次告警实例。
"""

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Operator(str, Enum):
    """比较运算符"""
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"

    def compare(self, value: float, threshold: float) -> bool:
        if self is Operator.GT:
            return value > threshold
        if self is Operator.GTE:
            return value >= threshold
        if self is Operator.LT:
            return value < threshold
        if self is Operator.LTE:
            return value <= threshold
        if self is Operator.EQ:
            return value == threshold
        raise ValueError(f"未知运算符: {self}")

    @property
    def symbol(self) -> str:
        return {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "eq": "=="}[self.value]


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertState(str, Enum):
    """告警状态：PENDING → FIRING → (ACKNOWLEDGED) → RESOLVED"""
    PENDING = "pending"
    FIRING = "firing"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"

    @property
    def is_active(self) -> bool:
        return self is not AlertState.RESOLVED


class AlertRule(BaseModel):
    """告警规则"""
    rule_id: str = Field(default_factory=lambda: f"rule-{uuid.uuid4().hex[:8]}")
    name: str = ""
    metric: str = Field(..., description="指标名，如 cpu / memory / disk / load")
    operator: Operator = Operator.GT
    threshold: float
    sustained_duration: float = Field(0, ge=0, description="持续多少秒才触发")
    level: AlertLevel = AlertLevel.WARNING
    enabled: bool = True
    host_ids: list[str] = Field(default_factory=list, description="为空表示所有在线主机")
    channel_ids: list[str] = Field(default_factory=list, description="通知渠道")

    def matches(self, value: float) -> bool:
        return self.operator.compare(value, self.threshold)


class Alert(BaseModel):
    """告警实例；每个 (rule, host) 同时最多一个非 RESOLVED 实例"""
    alert_id: str = Field(default_factory=lambda: f"alert-{uuid.uuid4().hex[:12]}")
    rule_id: str
    host_id: str
    level: AlertLevel
    current_value: float
    state: AlertState = AlertState.PENDING
    first_breach_at: float
    fired_at: Optional[float] = None
    acknowledged_at: Optional[float] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[float] = None
    message: str = ""


class MetricSample(BaseModel):
    """指标样本；rule_id 为空时匹配该指标上的所有启用规则"""
    host_id: str
    metric: str
    value: float
    timestamp: float = Field(default_factory=time.time)
    rule_id: Optional[str] = None


class AlertEventKind(str, Enum):
    FIRING = "firing"
    RESOLVED = "resolved"


class AlertEvent(BaseModel):
    """交给通知分发器的事件"""
    kind: AlertEventKind
    alert: Alert
    rule_name: str
    metric: str
    operator: Operator
    threshold: float
    ts: float = Field(default_factory=time.time)

    def summary(self) -> str:
        verb = "触发告警" if self.kind == AlertEventKind.FIRING else "告警恢复"
        return (
            f"[{self.alert.level.value.upper()}] {verb}: {self.rule_name or self.alert.rule_id} "
            f"主机 {self.alert.host_id} {self.metric}={self.alert.current_value:.2f} "
            f"(阈值 {self.operator.symbol} {self.threshold})"
        )
