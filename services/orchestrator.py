"""
任务编排器

把一个 Task 扇出到多台主机：
- 同时最多 concurrency 台主机在执行，按提交顺序依次派发
- 取消：执行中的主机强制终止并标记 CANCELLED，尚未派发的主机直接标记 CANCELLED（不建立连接）
- 任务终态：显式取消 → CANCELLED；有主机失败且未设置 continue_on_error → FAILED；否则 COMPLETED
- 重试：对上一次未成功的主机创建新任务，负载不变

任务与 HostRun 的元数据在每次状态变化时写入 FileStore（tasks/<task_id>.json）。
"""

import asyncio
import time
from typing import Optional, Union

from core.errors import InvalidTransition, TaskNotFound
from core.logger import bind_context, get_logger
from models.task import HostRun, HostRunStatus, Task, TaskSpec, TaskStatus, TaskView
from services.runner import ExecutionRunner, command_for
from services.streams import Subscription

_logger = get_logger("services.orchestrator")

TASKS_KIND = "tasks"


class _TaskState:
    """内存中的运行时状态"""

    def __init__(self, task: Task):
        self.task = task
        self.runs: dict[str, HostRun] = {
            host_id: HostRun(task_id=task.task_id, host_id=host_id) for host_id in task.host_ids
        }
        self.inflight: dict[str, asyncio.Task] = {}
        self.driver: Optional[asyncio.Task] = None
        self.done = asyncio.Event()


def summarize(runs: list[HostRun]) -> dict[str, int]:
    """按状态统计主机执行结果"""
    stats = {"total": len(runs)}
    for status in HostRunStatus:
        stats[status.value] = 0
    for run in runs:
        stats[run.status.value] += 1
    return stats


class TaskOrchestrator:
    """任务编排服务"""

    def __init__(
        self,
        runner: ExecutionRunner,
        storage,
        default_concurrency: int = 5,
        max_concurrency: int = 50,
        default_timeout: float = 300,
        history_limit: int = 200,
    ):
        self._runner = runner
        self._storage = storage
        self._default_concurrency = default_concurrency
        self._max_concurrency = max_concurrency
        self._default_timeout = default_timeout
        self._history_limit = history_limit
        self._tasks: dict[str, _TaskState] = {}

    @classmethod
    def from_config(cls, config, runner: ExecutionRunner, storage) -> "TaskOrchestrator":
        return cls(
            runner,
            storage,
            default_concurrency=config.get("orchestrator.default_concurrency", 5),
            max_concurrency=config.get("orchestrator.max_concurrency", 50),
            default_timeout=config.get("runner.default_timeout", 300),
            history_limit=config.get("orchestrator.history_limit", 200),
        )

    # ──────────────────────────────────────────
    # 提交
    # ──────────────────────────────────────────

    def build_task(self, spec: TaskSpec, **extra) -> Task:
        concurrency = min(spec.concurrency or self._default_concurrency, self._max_concurrency)
        return Task(
            kind=spec.kind,
            payload=spec.payload,
            host_ids=spec.host_ids,
            concurrency=concurrency,
            timeout=spec.timeout or self._default_timeout,
            continue_on_error=spec.continue_on_error,
            created_by=spec.created_by,
            **extra,
        )

    async def submit(self, spec: Union[TaskSpec, Task], **extra) -> str:
        """
        接受任务并立即返回 task_id，执行在后台进行。

        Args:
            spec: TaskSpec（按默认值补全）或已构造好的 Task
            extra: retry_of / scheduled_task_id 等附加字段
        """
        task = spec if isinstance(spec, Task) else self.build_task(spec, **extra)
        if task.task_id in self._tasks:
            raise InvalidTransition(f"任务已存在: {task.task_id}")

        state = _TaskState(task)
        self._tasks[task.task_id] = state
        for host_id in task.host_ids:
            self._runner.hub.open_stream(task.task_id, host_id)
        self._persist(state)

        _logger.info(
            f"任务已提交: {task.task_id} [{task.kind.value}] {task.describe()} → "
            f"{len(task.host_ids)} 台主机, 并发 {task.concurrency}"
        )
        state.driver = asyncio.create_task(self._drive(state), name=f"task-{task.task_id}")
        self._evict_history()
        return task.task_id

    # ──────────────────────────────────────────
    # 执行
    # ──────────────────────────────────────────

    async def _drive(self, state: _TaskState):
        task = state.task
        with bind_context(task_id=task.task_id):
            task.status = TaskStatus.RUNNING
            task.started_at = time.time()
            self._persist(state)

            command = command_for(task)
            slots = asyncio.Semaphore(task.concurrency)
            try:
                for host_id in task.host_ids:
                    await slots.acquire()
                    if task.cancel_requested:
                        slots.release()
                        break
                    run = state.runs[host_id]
                    job = asyncio.create_task(
                        self._run_host(state, run, command),
                        name=f"run-{task.task_id}-{host_id}",
                    )
                    # 在启动前就被取消的任务不会执行 finally，名额用完成回调归还
                    job.add_done_callback(lambda _t: slots.release())
                    state.inflight[host_id] = job
                if state.inflight:
                    await asyncio.gather(*state.inflight.values(), return_exceptions=True)
            except asyncio.CancelledError:
                for t in state.inflight.values():
                    t.cancel()
                await asyncio.gather(*state.inflight.values(), return_exceptions=True)
                task.cancel_requested = True
                raise
            finally:
                self._finalize(state)

    async def _run_host(self, state: _TaskState, run: HostRun, command: str):
        try:
            await self._runner.run(run.host_id, command, state.task.timeout, host_run=run)
        except asyncio.CancelledError:
            run.finish(HostRunStatus.CANCELLED, error="任务已取消", error_kind="Cancelled")
            raise
        except Exception as e:
            # 单主机失败不能影响其它主机
            _logger.exception(f"主机 {run.host_id} 执行异常: {e}")
            run.finish(HostRunStatus.FAILED, error=str(e), error_kind=type(e).__name__)
        finally:
            self._persist(state)

    def _finalize(self, state: _TaskState):
        task = state.task
        for run in state.runs.values():
            if run.finish(HostRunStatus.CANCELLED, error="任务已取消，主机未执行", error_kind="Cancelled"):
                self._runner.hub.close_stream(task.task_id, run.host_id)

        runs = list(state.runs.values())
        if task.cancel_requested:
            task.status = TaskStatus.CANCELLED
        elif any(r.status.is_failure for r in runs) and not task.continue_on_error:
            task.status = TaskStatus.FAILED
        else:
            task.status = TaskStatus.COMPLETED
        task.completed_at = time.time()

        self._persist(state)
        self._runner.hub.finish_task(task.task_id)
        state.done.set()

        stats = summarize(runs)
        _logger.info(
            f"任务结束: {task.task_id} 状态={task.status.value}, "
            f"成功 {stats['success']}/{stats['total']}, 失败 {stats['failed']}, "
            f"超时 {stats['timeout']}, 取消 {stats['cancelled']}"
        )

    # ──────────────────────────────────────────
    # 控制
    # ──────────────────────────────────────────

    def cancel(self, task_id: str) -> TaskView:
        """
        取消任务。执行中的主机被强制终止，未派发的主机不会再建立连接。

        Raises:
            TaskNotFound: 任务不存在
            InvalidTransition: 任务已结束
        """
        state = self._tasks.get(task_id)
        if state is None:
            if self._load(task_id) is not None:
                raise InvalidTransition(f"任务已结束: {task_id}")
            raise TaskNotFound(f"任务不存在: {task_id}")
        if state.task.status.is_terminal:
            raise InvalidTransition(f"任务已结束: {task_id} ({state.task.status.value})")

        state.task.cancel_requested = True
        for t in state.inflight.values():
            if not t.done():
                t.cancel()
        _logger.info(f"任务取消: {task_id}, 执行中主机 {sum(not t.done() for t in state.inflight.values())} 台")
        self._persist(state)
        return self._view(state.task, list(state.runs.values()))

    async def retry(self, task_id: str, created_by: Optional[str] = None) -> str:
        """
        对未成功的主机重新执行。

        Raises:
            InvalidTransition: 任务仍在执行或没有需要重试的主机
        """
        view = self.status(task_id)
        if not view.task.status.is_terminal:
            raise InvalidTransition(f"任务仍在执行: {task_id}")
        hosts = [r.host_id for r in view.host_runs if r.status != HostRunStatus.SUCCESS]
        if not hosts:
            raise InvalidTransition(f"任务 {task_id} 所有主机均已成功，无需重试")

        old = view.task
        task = Task(
            kind=old.kind,
            payload=old.payload,
            host_ids=hosts,
            concurrency=old.concurrency,
            timeout=old.timeout,
            continue_on_error=old.continue_on_error,
            created_by=created_by or old.created_by,
            retry_of=old.task_id,
            scheduled_task_id=old.scheduled_task_id,
        )
        _logger.info(f"任务重试: {task_id} → {task.task_id}, {len(hosts)} 台主机")
        return await self.submit(task)

    async def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskView:
        """等待任务结束"""
        state = self._tasks.get(task_id)
        if state is not None:
            await asyncio.wait_for(state.done.wait(), timeout)
        return self.status(task_id)

    async def shutdown(self):
        """取消所有未结束的任务并等待其收尾"""
        drivers = []
        for state in list(self._tasks.values()):
            if not state.task.status.is_terminal:
                self.cancel(state.task.task_id)
            if state.driver is not None and not state.driver.done():
                drivers.append(state.driver)
        if drivers:
            _logger.info(f"等待 {len(drivers)} 个任务收尾")
            await asyncio.gather(*drivers, return_exceptions=True)

    # ──────────────────────────────────────────
    # 查询
    # ──────────────────────────────────────────

    def status(self, task_id: str) -> TaskView:
        state = self._tasks.get(task_id)
        if state is not None:
            return self._view(state.task, list(state.runs.values()))
        data = self._load(task_id)
        if data is None:
            raise TaskNotFound(f"任务不存在: {task_id}")
        task = Task.model_validate({k: v for k, v in data.items() if k != "host_runs"})
        runs = [HostRun.model_validate(r) for r in data.get("host_runs", [])]
        return self._view(task, runs)

    def list_tasks(self, limit: int = 50) -> list[Task]:
        """最近的任务（内存中的优先，其余从存储读取）"""
        tasks = {s.task.task_id: s.task for s in self._tasks.values()}
        for data in self._storage.list_records(TASKS_KIND, limit=limit):
            task_id = data.get("task_id")
            if task_id and task_id not in tasks:
                try:
                    tasks[task_id] = Task.model_validate({k: v for k, v in data.items() if k != "host_runs"})
                except ValueError as e:
                    _logger.warning(f"任务记录格式错误 [{task_id}]: {e}")
        result = sorted(tasks.values(), key=lambda t: t.created_at, reverse=True)
        return result[:limit]

    def subscribe(self, task_id: str, host_id: Optional[str] = None, after_seq: int = 0) -> Subscription:
        """订阅任务的实时输出；任务已不在内存中时返回空的已结束订阅"""
        view = self.status(task_id)
        if host_id is not None and host_id not in view.task.host_ids:
            raise TaskNotFound(f"主机 {host_id} 不属于任务 {task_id}")
        sub = self._runner.hub.subscribe(task_id, host_id=host_id, after_seq=after_seq)
        if task_id not in self._tasks:
            sub.finish()
        return sub

    def active_count(self) -> int:
        return sum(1 for s in self._tasks.values() if not s.task.status.is_terminal)

    def running_hosts(self, task_id: str) -> list[str]:
        state = self._tasks.get(task_id)
        if state is None:
            return []
        return [h for h, r in state.runs.items() if r.status == HostRunStatus.RUNNING]

    @staticmethod
    def _view(task: Task, runs: list[HostRun]) -> TaskView:
        return TaskView(task=task, host_runs=runs, stats=summarize(runs))

    # ──────────────────────────────────────────
    # 持久化
    # ──────────────────────────────────────────

    def _persist(self, state: _TaskState):
        data = state.task.model_dump(mode="json")
        data["host_runs"] = [r.model_dump(mode="json") for r in state.runs.values()]
        if not self._storage.save_record(TASKS_KIND, state.task.task_id, data):
            _logger.error(f"任务状态写入失败: {state.task.task_id}")

    def _load(self, task_id: str) -> Optional[dict]:
        return self._storage.load_record(TASKS_KIND, task_id)

    def _evict_history(self):
        """内存中只保留最近 history_limit 个已结束的任务"""
        finished = [s for s in self._tasks.values() if s.task.status.is_terminal]
        overflow = len(finished) - self._history_limit
        if overflow <= 0:
            return
        finished.sort(key=lambda s: s.task.completed_at or 0)
        for state in finished[:overflow]:
            self._tasks.pop(state.task.task_id, None)
            self._runner.hub.discard(state.task.task_id)
