"""
定时任务 API
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import get_scheduler
from models.schedule import ScheduledTaskDef
from models.task import TaskSpec

router = APIRouter(prefix="/schedules", tags=["schedules"])


class ScheduleRequest(BaseModel):
    name: str = ""
    cron: str
    template: TaskSpec
    enabled: bool = True


@router.get("")
async def list_schedules(scheduler=Depends(get_scheduler)):
    schedules = scheduler.list_schedules()
    return {"schedules": [s.model_dump(mode="json") for s in schedules], "total": len(schedules)}


@router.post("")
async def create_schedule(req: ScheduleRequest, scheduler=Depends(get_scheduler)):
    definition = scheduler.upsert(ScheduledTaskDef(**req.model_dump()))
    return definition.model_dump(mode="json")


@router.put("/{schedule_id}")
async def update_schedule(schedule_id: str, req: ScheduleRequest, scheduler=Depends(get_scheduler)):
    scheduler.get(schedule_id)
    definition = scheduler.upsert(ScheduledTaskDef(schedule_id=schedule_id, **req.model_dump()))
    return definition.model_dump(mode="json")


@router.delete("/{schedule_id}")
async def delete_schedule(schedule_id: str, scheduler=Depends(get_scheduler)):
    scheduler.remove(schedule_id)
    return {"schedule_id": schedule_id, "deleted": True}


@router.post("/{schedule_id}/enable")
async def enable_schedule(schedule_id: str, scheduler=Depends(get_scheduler)):
    return scheduler.set_enabled(schedule_id, True).model_dump(mode="json")


@router.post("/{schedule_id}/disable")
async def disable_schedule(schedule_id: str, scheduler=Depends(get_scheduler)):
    return scheduler.set_enabled(schedule_id, False).model_dump(mode="json")


@router.post("/{schedule_id}/run")
async def run_schedule_now(schedule_id: str, scheduler=Depends(get_scheduler)):
    """立即执行一次"""
    task_id = await scheduler.run_now(schedule_id)
    return {"schedule_id": schedule_id, "task_id": task_id}
