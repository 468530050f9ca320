"""
定时任务调度

每个 tick 找出所有到期的启用定义，按模板向编排器提交任务：
- next_fire_at 先推进并落盘，再提交任务，重启后不会对同一触发时刻重复执行
- 错过的触发不补发，直接跳到当前时间之后的下一个触发时刻
- 并发 tick 由同一把锁串行化
"""

import asyncio
import time
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from core.errors import InvalidCronExpression, ScheduleNotFound, SchedulerMisfire
from core.logger import get_logger
from models.schedule import ScheduledTaskDef

_logger = get_logger("services.scheduler")

SCHEDULES_FILE = "schedules.json"


def validate_cron(expression: str):
    if not expression or not croniter.is_valid(expression):
        raise InvalidCronExpression(f"无效的 cron 表达式: {expression!r}")


def next_fire_time(expression: str, after: float, tz: ZoneInfo) -> float:
    """after 之后的下一个触发时刻（时间戳）"""
    base = datetime.fromtimestamp(after, tz=tz)
    return croniter(expression, base).get_next(datetime).timestamp()


class Scheduler:
    """cron 调度器"""

    def __init__(self, orchestrator, storage, timezone: str = "UTC", tick_interval: float = 30):
        self._orchestrator = orchestrator
        self._storage = storage
        self._tz = ZoneInfo(timezone)
        self._tick_interval = tick_interval
        self._tick_lock = asyncio.Lock()
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, orchestrator, storage) -> "Scheduler":
        return cls(
            orchestrator,
            storage,
            timezone=config.get("scheduler.timezone", "UTC"),
            tick_interval=config.get("scheduler.tick_interval", 30),
        )

    # ──────────────────────────────────────────
    # 定义管理
    # ──────────────────────────────────────────

    def _load(self) -> dict[str, ScheduledTaskDef]:
        raw = self._storage.read(SCHEDULES_FILE, {}) or {}
        defs = {}
        for schedule_id, data in raw.items():
            try:
                defs[schedule_id] = ScheduledTaskDef.model_validate({**data, "schedule_id": schedule_id})
            except ValueError as e:
                _logger.error(f"定时任务定义格式错误 [{schedule_id}]: {e}")
        return defs

    def _save(self, defs: dict[str, ScheduledTaskDef]):
        self._storage.write(
            SCHEDULES_FILE,
            {sid: d.model_dump(mode="json", exclude={"schedule_id"}) for sid, d in defs.items()},
        )

    def list_schedules(self) -> list[ScheduledTaskDef]:
        return sorted(self._load().values(), key=lambda d: d.created_at)

    def get(self, schedule_id: str) -> ScheduledTaskDef:
        definition = self._load().get(schedule_id)
        if definition is None:
            raise ScheduleNotFound(f"定时任务不存在: {schedule_id}")
        return definition

    def upsert(self, definition: ScheduledTaskDef, now: Optional[float] = None) -> ScheduledTaskDef:
        """
        新增或更新定义；cron 变化或首次启用时重新计算 next_fire_at。

        Raises:
            InvalidCronExpression
        """
        validate_cron(definition.cron)
        now = now or time.time()
        defs = self._load()
        previous = defs.get(definition.schedule_id)
        if previous is not None:
            definition.created_at = previous.created_at
            definition.last_fired_at = definition.last_fired_at or previous.last_fired_at
            definition.last_task_id = definition.last_task_id or previous.last_task_id
        if definition.enabled and (
            previous is None or previous.cron != definition.cron
            or not previous.enabled or definition.next_fire_at is None
        ):
            definition.next_fire_at = next_fire_time(definition.cron, now, self._tz)
        if not definition.enabled:
            definition.next_fire_at = None
        defs[definition.schedule_id] = definition
        self._save(defs)
        _logger.info(f"定时任务已保存: {definition.schedule_id} [{definition.cron}] 下次 {self._fmt(definition.next_fire_at)}")
        return definition

    def remove(self, schedule_id: str) -> ScheduledTaskDef:
        defs = self._load()
        definition = defs.pop(schedule_id, None)
        if definition is None:
            raise ScheduleNotFound(f"定时任务不存在: {schedule_id}")
        self._save(defs)
        _logger.info(f"定时任务已删除: {schedule_id}")
        return definition

    def set_enabled(self, schedule_id: str, enabled: bool, now: Optional[float] = None) -> ScheduledTaskDef:
        definition = self.get(schedule_id)
        definition.enabled = enabled
        return self.upsert(definition, now=now)

    def _fmt(self, ts: Optional[float]) -> str:
        if ts is None:
            return "-"
        return datetime.fromtimestamp(ts, tz=self._tz).strftime("%Y-%m-%d %H:%M:%S %Z")

    # ──────────────────────────────────────────
    # 触发
    # ──────────────────────────────────────────

    async def tick(self, now: Optional[float] = None) -> list[str]:
        """触发所有到期的定义，返回提交的任务 ID"""
        async with self._tick_lock:
            now = now or time.time()
            defs = self._load()
            due: list[ScheduledTaskDef] = []
            changed = False
            for definition in defs.values():
                if not definition.enabled:
                    continue
                if definition.next_fire_at is None:
                    definition.next_fire_at = next_fire_time(definition.cron, now, self._tz)
                    changed = True
                    continue
                if definition.next_fire_at > now:
                    continue
                if now - definition.next_fire_at > self._tick_interval * 2:
                    _logger.warning(
                        f"定时任务 {definition.schedule_id} 错过触发时刻 {self._fmt(definition.next_fire_at)}，不补发"
                    )
                definition.last_fired_at = now
                definition.next_fire_at = next_fire_time(definition.cron, now, self._tz)
                due.append(definition)
                changed = True
            if changed:
                # 先落盘再提交
                self._save(defs)

            fired = {}
            for definition in due:
                try:
                    task_id = await self._orchestrator.submit(
                        definition.template, scheduled_task_id=definition.schedule_id
                    )
                except Exception as e:
                    misfire = SchedulerMisfire(f"定时任务 {definition.schedule_id} 提交失败: {e}")
                    _logger.error(misfire.message)
                    continue
                fired[definition.schedule_id] = task_id
                _logger.info(
                    f"定时任务触发: {definition.schedule_id} ({definition.name}) → {task_id}，"
                    f"下次 {self._fmt(definition.next_fire_at)}"
                )
            if fired:
                self._record_tasks(fired)
            return list(fired.values())

    async def run_now(self, schedule_id: str) -> str:
        """立即执行一次，不影响 next_fire_at"""
        definition = self.get(schedule_id)
        task_id = await self._orchestrator.submit(definition.template, scheduled_task_id=schedule_id)
        self._record_tasks({schedule_id: task_id}, fired_at=time.time())
        _logger.info(f"定时任务手动执行: {schedule_id} → {task_id}")
        return task_id

    def _record_tasks(self, fired: dict[str, str], fired_at: Optional[float] = None):
        def updater(raw):
            for schedule_id, task_id in fired.items():
                if schedule_id in raw:
                    raw[schedule_id]["last_task_id"] = task_id
                    if fired_at is not None:
                        raw[schedule_id]["last_fired_at"] = fired_at
            return raw
        self._storage.update(SCHEDULES_FILE, updater, default={})

    # ──────────────────────────────────────────
    # 生命周期
    # ──────────────────────────────────────────

    async def start(self):
        self._running = True
        self._loop_task = asyncio.create_task(self._tick_loop())
        _logger.info(f"定时任务调度已启动，间隔 {self._tick_interval}s，时区 {self._tz.key}")

    async def stop(self):
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        _logger.info("定时任务调度已停止")

    async def _tick_loop(self):
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self._tick_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                _logger.error(f"定时任务调度异常: {e}")
                await asyncio.sleep(self._tick_interval)
