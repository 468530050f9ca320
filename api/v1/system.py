"""
系统信息 API

提供控制节点系统信息、连接池与各服务运行状态查询接口。
"""

import asyncio

from fastapi import APIRouter, Depends, Request

from api.deps import get_pool
from services.collector import collect_system_info

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/status")
async def get_status(request: Request):
    """面板名称、版本与各服务运行概况"""
    state = request.app.state
    config = state.config
    return {
        "name": config.get("app.name", "OpsPanel"),
        "version": config.get("app.version", "0.1.0"),
        "active_tasks": state.orchestrator.active_count(),
        "terminal": state.terminal.stats(),
    }


@router.get("/info")
async def get_system_info():
    """获取控制节点系统信息（CPU/内存/磁盘）"""
    return await asyncio.to_thread(collect_system_info)


@router.get("/pool")
async def get_pool_stats(pool=Depends(get_pool)):
    """每台主机的连接数：借出、空闲、排队、上限"""
    return {"hosts": pool.stats()}
