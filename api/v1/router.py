"""
API v1 路由汇总
"""

from fastapi import APIRouter

from api.v1.system import router as system_router
from api.v1.tasks import router as tasks_router
from api.v1.terminal import router as terminal_router
from api.v1.alerts import router as alerts_router
from api.v1.schedules import router as schedules_router

router = APIRouter(prefix="/api/v1")

# 注册子路由
router.include_router(system_router)
router.include_router(tasks_router)
router.include_router(terminal_router)
router.include_router(alerts_router)
router.include_router(schedules_router)
