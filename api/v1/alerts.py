"""
告警 API

- 告警列表、详情、确认
- 告警规则增删改、启停
- 指标样本写入（外部采集器推送）
"""

from typing import Optional, Union

from fastapi import APIRouter, Body, Depends, Query

from api.deps import get_evaluator
from core.logger import get_logger
from models.alert import AlertRule, AlertState, MetricSample

router = APIRouter(prefix="/alerts", tags=["alerts"])
_logger = get_logger("api.alerts")


@router.get("")
async def list_alerts(
    state: Optional[AlertState] = Query(default=None),
    active: bool = Query(default=False, description="只看未恢复的告警"),
    host_id: Optional[str] = Query(default=None),
    limit: int = Query(100, ge=1, le=1000),
    evaluator=Depends(get_evaluator),
):
    alerts = evaluator.list_alerts(state=state, active_only=active, host_id=host_id, limit=limit)
    return {"alerts": [a.model_dump(mode="json") for a in alerts], "total": len(alerts)}


# ── 规则 ──

@router.get("/rules")
async def list_rules(evaluator=Depends(get_evaluator)):
    rules = evaluator.rules.all()
    return {"rules": [r.model_dump(mode="json") for r in rules], "total": len(rules)}


@router.post("/rules")
async def create_rule(rule: AlertRule, evaluator=Depends(get_evaluator)):
    return evaluator.upsert_rule(rule).model_dump(mode="json")


@router.put("/rules/{rule_id}")
async def update_rule(rule_id: str, rule: AlertRule, evaluator=Depends(get_evaluator)):
    evaluator.rules.get(rule_id)
    rule = rule.model_copy(update={"rule_id": rule_id})
    return evaluator.upsert_rule(rule).model_dump(mode="json")


@router.post("/rules/{rule_id}/enable")
async def enable_rule(rule_id: str, evaluator=Depends(get_evaluator)):
    return evaluator.set_rule_enabled(rule_id, True).model_dump(mode="json")


@router.post("/rules/{rule_id}/disable")
async def disable_rule(rule_id: str, evaluator=Depends(get_evaluator)):
    return evaluator.set_rule_enabled(rule_id, False).model_dump(mode="json")


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, evaluator=Depends(get_evaluator)):
    evaluator.remove_rule(rule_id)
    return {"rule_id": rule_id, "deleted": True}


# ── 样本 ──

@router.post("/samples")
async def ingest_samples(
    samples: Union[MetricSample, list[MetricSample]],
    evaluator=Depends(get_evaluator),
):
    """写入一个或一批指标样本，返回本次产生的告警事件"""
    if isinstance(samples, MetricSample):
        samples = [samples]
    events = []
    for sample in samples:
        events.extend(evaluator.ingest(sample))
    return {
        "accepted": len(samples),
        "events": [e.model_dump(mode="json") for e in events],
    }


# ── 告警实例 ──

@router.get("/{alert_id}")
async def get_alert(alert_id: str, evaluator=Depends(get_evaluator)):
    return evaluator.get_alert(alert_id).model_dump(mode="json")


@router.post("/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    user: str = Body("admin", embed=True),
    evaluator=Depends(get_evaluator),
):
    alert = evaluator.acknowledge(alert_id, user=user)
    return alert.model_dump(mode="json")
