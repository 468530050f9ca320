"""
任务 API

提供：
- 任务提交、取消、重试
- 任务状态与列表查询
- WebSocket 实时输出（可按主机过滤，支持断点续传）
"""

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from api.deps import get_orchestrator
from core.errors import OpsError
from core.logger import get_logger
from models.task import TaskSpec

router = APIRouter(prefix="/tasks", tags=["tasks"])
_logger = get_logger("api.tasks")


@router.post("")
async def submit_task(spec: TaskSpec, orchestrator=Depends(get_orchestrator)):
    """提交任务，立即返回 task_id"""
    task_id = await orchestrator.submit(spec)
    return {"task_id": task_id}


@router.get("")
async def list_tasks(limit: int = Query(50, ge=1, le=500), orchestrator=Depends(get_orchestrator)):
    """列出最近的任务"""
    tasks = orchestrator.list_tasks(limit=limit)
    return {"tasks": [t.model_dump(mode="json") for t in tasks], "total": len(tasks)}


@router.get("/{task_id}")
async def get_task(task_id: str, orchestrator=Depends(get_orchestrator)):
    """任务详情：任务本身 + 每台主机的执行记录 + 统计"""
    return orchestrator.status(task_id).model_dump(mode="json")


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str, orchestrator=Depends(get_orchestrator)):
    view = orchestrator.cancel(task_id)
    return {"task_id": task_id, "cancel_requested": True, "stats": view.stats}


@router.post("/{task_id}/retry")
async def retry_task(task_id: str, orchestrator=Depends(get_orchestrator)):
    """对未成功的主机重新执行，返回新任务 ID"""
    new_task_id = await orchestrator.retry(task_id)
    return {"task_id": new_task_id, "retry_of": task_id}


@router.websocket("/{task_id}/stream")
async def stream_task_output(
    websocket: WebSocket,
    task_id: str,
    host_id: str | None = Query(default=None),
    after_seq: int = Query(default=0, ge=0),
):
    """
    实时输出。

    每条消息为 {"type": "output", host_id, seq, stream, data, ts}；
    结束时发送 {"type": "end"}，慢消费者被断开时发送 {"type": "overflow"}，
    客户端可以带上 last_seq 中对应主机的 seq 作为 after_seq 重新订阅。
    """
    await websocket.accept()
    orchestrator = websocket.app.state.orchestrator

    try:
        subscription = orchestrator.subscribe(task_id, host_id=host_id, after_seq=after_seq)
    except OpsError as e:
        await websocket.send_json({"type": "error", "error": e.message})
        await websocket.close(code=4004, reason="Task not found")
        return

    try:
        async for chunk in subscription:
            await websocket.send_json({"type": "output", **chunk.model_dump(mode="json")})
        view = orchestrator.status(task_id)
        await websocket.send_json({
            "type": "overflow" if subscription.overflowed else "end",
            "status": view.task.status.value,
            "last_seq": subscription.last_seq,
        })
        await websocket.close()
    except WebSocketDisconnect:
        _logger.info(f"输出订阅断开: {task_id}")
    finally:
        subscription.close()
