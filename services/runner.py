"""
单主机执行器

在一台主机上执行一条命令并产出 HostRun：
- 命令黑名单检查（命中则不建立连接，直接失败）
- 通过连接池借用连接，stdout/stderr 增量写入输出流，执行中即可实时查看
- 超时：强制终止远程进程并丢弃连接，HostRun → TIMEOUT
- 取消：同样强制终止并丢弃连接，HostRun → CANCELLED，CancelledError 继续向上抛出
"""

import asyncio
import codecs
import json
import shlex
import uuid
from typing import Optional

from core.errors import OpsError, TransientNetworkFailure
from core.logger import bind_context, get_logger
from models.task import HostRun, HostRunStatus, Task, TaskKind
from services.pool import SessionPool
from services.streams import OutputHub
from services.transport import STDERR, STDOUT, RemoteProcess, run_blocking

_logger = get_logger("services.runner")

SYSTEM_STREAM = "system"


def build_playbook_command(playbook: str, variables: Optional[dict] = None) -> str:
    """
    把 playbook 文本转换成可在目标主机上执行的 shell 命令：
    写入临时文件后以本机连接方式运行 ansible-playbook，结束后删除。
    """
    token = uuid.uuid4().hex[:12]
    path = f"/tmp/ops-playbook-{token}.yml"
    delimiter = f"OPS_PLAYBOOK_{token}"
    extra = ""
    if variables:
        extra = f" --extra-vars {shlex.quote(json.dumps(variables, ensure_ascii=False))}"
    return (
        f"cat > {path} <<'{delimiter}'\n{playbook.rstrip()}\n{delimiter}\n"
        f"ansible-playbook -c local -i localhost, {path}{extra}; "
        f"rc=$?; rm -f {path}; exit $rc"
    )


def command_for(task: Task) -> str:
    """任务负载 → 远程命令"""
    if task.kind == TaskKind.PLAYBOOK:
        return build_playbook_command(task.payload["playbook"], task.payload.get("variables") or {})
    return str(task.payload["command"])


class ExecutionRunner:
    """通过连接池在单台主机上执行命令"""

    def __init__(
        self,
        pool: SessionPool,
        hub: OutputHub,
        blacklist: Optional[list[str]] = None,
        default_timeout: float = 300,
        read_size: int = 4096,
        kill_grace: float = 2.0,
        tail_chars: int = 4000,
    ):
        self._pool = pool
        self._hub = hub
        self._blacklist = blacklist or []
        self._default_timeout = default_timeout
        self._read_size = read_size
        self._kill_grace = kill_grace
        self._tail_chars = tail_chars

    @classmethod
    def from_config(cls, config, pool: SessionPool, hub: OutputHub) -> "ExecutionRunner":
        return cls(
            pool,
            hub,
            blacklist=config.get("security.command_blacklist", []),
            default_timeout=config.get("runner.default_timeout", 300),
            read_size=config.get("runner.read_size", 4096),
            kill_grace=config.get("runner.kill_grace", 2.0),
            tail_chars=config.get("orchestrator.output_tail_chars", 4000),
        )

    @property
    def hub(self) -> OutputHub:
        return self._hub

    def is_blocked(self, command: str) -> Optional[str]:
        """检查命令是否命中黑名单，返回匹配到的规则"""
        cmd_lower = command.lower().strip()
        for pattern in self._blacklist:
            if pattern.lower() in cmd_lower:
                _logger.warning(f"命令被黑名单拦截: {command} (匹配: {pattern})")
                return pattern
        return None

    async def run(
        self,
        host_id: str,
        command: str,
        timeout: Optional[float] = None,
        *,
        task_id: Optional[str] = None,
        host_run: Optional[HostRun] = None,
    ) -> HostRun:
        """
        执行命令，返回进入终态的 HostRun。

        失败（认证、网络、非零退出码、超时）都记录在 HostRun 上，不会抛出；
        只有取消会以 CancelledError 的形式继续向上传播。
        """
        if host_run is None:
            host_run = HostRun(task_id=task_id or f"adhoc-{uuid.uuid4().hex[:8]}", host_id=host_id)
        timeout = timeout or self._default_timeout
        self._hub.open_stream(host_run.task_id, host_id)

        with bind_context(task_id=host_run.task_id, host_id=host_id):
            try:
                await self._run(host_run, command, timeout)
            finally:
                buf = self._hub.buffer(host_run.task_id, host_id)
                if buf is not None:
                    host_run.output_tail = buf.tail(self._tail_chars)
                self._hub.close_stream(host_run.task_id, host_id)
        return host_run

    def _system(self, host_run: HostRun, message: str):
        self._hub.publish(host_run.task_id, host_run.host_id, SYSTEM_STREAM, message + "\n")

    async def _run(self, host_run: HostRun, command: str, timeout: float):
        pattern = self.is_blocked(command)
        if pattern is not None:
            message = f"命令被安全策略拦截 (匹配: {pattern})"
            self._system(host_run, message)
            host_run.finish(HostRunStatus.FAILED, error=message, error_kind="CommandBlocked")
            return

        host_run.mark_running()
        _logger.info(f"开始执行: {command[:80]}")

        try:
            pooled = await self._pool.acquire(host_run.host_id)
        except asyncio.CancelledError:
            host_run.finish(HostRunStatus.CANCELLED, error="任务已取消", error_kind="Cancelled")
            raise
        except OpsError as e:
            _logger.error(f"获取连接失败: {e}")
            self._system(host_run, f"连接失败: {e.message}")
            host_run.finish(HostRunStatus.FAILED, error=e.message, error_kind=type(e).__name__)
            return

        process: Optional[RemoteProcess] = None
        discard = False
        try:
            process = await run_blocking(pooled.connection.exec, command, on_abandon=self._terminate_quietly)
            exit_code = await asyncio.wait_for(self._pump(host_run, process), timeout)
        except asyncio.TimeoutError:
            discard = True
            message = f"命令执行超时 ({timeout}秒)"
            _logger.warning(message)
            self._system(host_run, message)
            host_run.finish(HostRunStatus.TIMEOUT, error=message, error_kind="RemoteProcessTimeout")
            await self._terminate(process)
        except asyncio.CancelledError:
            discard = True
            _logger.info("执行被取消，终止远程进程")
            host_run.finish(HostRunStatus.CANCELLED, error="任务已取消", error_kind="Cancelled")
            await self._terminate(process)
            raise
        except TransientNetworkFailure as e:
            discard = True
            _logger.error(f"执行中连接断开: {e}")
            self._system(host_run, f"连接断开: {e.message}")
            host_run.finish(HostRunStatus.FAILED, error=e.message, error_kind=type(e).__name__)
        except (OpsError, OSError) as e:
            discard = True
            _logger.error(f"执行异常: {e}")
            host_run.finish(HostRunStatus.FAILED, error=str(e), error_kind=type(e).__name__)
        else:
            if exit_code == 0:
                host_run.finish(HostRunStatus.SUCCESS, exit_code=0)
            else:
                host_run.finish(HostRunStatus.FAILED, exit_code=exit_code, error=f"退出码 {exit_code}",
                                error_kind="NonZeroExit")
            _logger.info(f"执行完成: exit_code={exit_code}")
        finally:
            await self._pool.release(pooled, discard=discard)

    async def _pump(self, host_run: HostRun, process: RemoteProcess) -> int:
        """读取输出直到 EOF，返回退出码"""
        decoders = {
            STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        while True:
            item = await asyncio.to_thread(process.read, self._read_size)
            if item is None:
                break
            stream, data = item
            text = decoders[stream].decode(data)
            if text:
                self._hub.publish(host_run.task_id, host_run.host_id, stream, text)
        for stream, decoder in decoders.items():
            rest = decoder.decode(b"", final=True)
            if rest:
                self._hub.publish(host_run.task_id, host_run.host_id, stream, rest)
        return await asyncio.to_thread(process.wait)

    async def _terminate(self, process: Optional[RemoteProcess]):
        if process is None:
            # 进程还在启动中，由 run_blocking 在启动完成后终止
            return
        await asyncio.shield(asyncio.to_thread(self._terminate_quietly, process))

    def _terminate_quietly(self, process: RemoteProcess):
        try:
            process.terminate(self._kill_grace)
        except (OpsError, OSError) as e:
            _logger.warning(f"终止远程进程失败: {e}")
