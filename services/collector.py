"""
指标采集服务

- 控制节点自身：psutil 采集 CPU、内存、磁盘、负载，供 /system/info 使用
- 受管主机：每隔 collector.interval 秒通过连接池执行探测命令，按分段标记解析出
  cpu / memory / disk / load 四个指标，交给告警评估器
- protocol=local 的主机直接用 psutil 采集，不走 shell

单台主机采集失败只记录日志，不影响其它主机。
"""

import asyncio
import os
import platform
import time
from typing import Any, Optional

import psutil

from core.errors import OpsError
from core.logger import get_logger
from models.alert import MetricSample
from models.host import Protocol

_logger = get_logger("services.collector")

PROBE_COMMAND = (
    "echo '===CPU==='; top -bn1 | grep 'Cpu(s)' | awk '{print $2}'; "
    "echo '===MEMORY==='; free | grep Mem | awk '{print $3/$2 * 100}'; "
    "echo '===DISK==='; df / | tail -1 | awk '{print $5}' | tr -d '%'; "
    "echo '===LOAD==='; cat /proc/loadavg | awk '{print $1}'"
)

_SECTIONS = {
    "===CPU===": "cpu",
    "===MEMORY===": "memory",
    "===DISK===": "disk",
    "===LOAD===": "load",
}
_PERCENT_METRICS = ("cpu", "memory", "disk")


def parse_probe_output(text: str) -> dict[str, float]:
    """解析探测命令输出；百分比指标截断到 0~100，无法解析的行忽略"""
    metrics: dict[str, float] = {}
    section: Optional[str] = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line in _SECTIONS:
            section = _SECTIONS[line]
            continue
        if section is None or section in metrics:
            continue
        try:
            value = float(line.replace(",", ".").rstrip("%"))
        except ValueError:
            continue
        if section in _PERCENT_METRICS:
            value = min(100.0, max(0.0, value))
        metrics[section] = value
    return metrics


# ──────────────────────────────────────────────
# 控制节点本机（psutil）
# ──────────────────────────────────────────────

def local_metrics() -> dict[str, float]:
    """本机的四个告警指标"""
    try:
        load = os.getloadavg()[0]
    except (AttributeError, OSError):
        load = 0.0
    return {
        "cpu": psutil.cpu_percent(interval=0.5),
        "memory": psutil.virtual_memory().percent,
        "disk": psutil.disk_usage(os.path.abspath(os.sep)).percent,
        "load": load,
    }


def collect_system_info() -> dict[str, Any]:
    """
    采集控制节点的系统信息。

    Returns:
        包含 system、cpu、memory、disk、uptime 的字典
    """
    try:
        uname = platform.uname()
        cpu_freq = psutil.cpu_freq()
        mem = psutil.virtual_memory()
        partitions = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError):
                continue
            partitions.append({
                "mountpoint": part.mountpoint,
                "total_gb": round(usage.total / 1024 ** 3, 2),
                "percent": usage.percent,
            })
        return {
            "timestamp": time.time(),
            "system": {
                "hostname": uname.node,
                "os": uname.system,
                "architecture": uname.machine,
                "python_version": platform.python_version(),
            },
            "cpu": {
                "count_logical": psutil.cpu_count(logical=True) or 0,
                "percent": psutil.cpu_percent(interval=0.5),
                "frequency_mhz": round(cpu_freq.current, 1) if cpu_freq else 0,
            },
            "memory": {
                "total_mb": round(mem.total / 1024 / 1024, 1),
                "used_mb": round(mem.used / 1024 / 1024, 1),
                "percent": mem.percent,
            },
            "disk": {"partitions": partitions},
            "uptime": time.time() - psutil.boot_time(),
        }
    except Exception as e:
        _logger.error(f"系统信息采集失败: {e}")
        return {"timestamp": time.time(), "error": str(e)}


# ──────────────────────────────────────────────
# 受管主机
# ──────────────────────────────────────────────

class MetricCollector:
    """周期性采集在线主机的指标并送入告警评估器"""

    def __init__(self, pool, inventory, evaluator, interval: float = 60, timeout: float = 30,
                 read_size: int = 4096):
        self._pool = pool
        self._inventory = inventory
        self._evaluator = evaluator
        self._interval = interval
        self._timeout = timeout
        self._read_size = read_size
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, pool, inventory, evaluator) -> "MetricCollector":
        return cls(
            pool,
            inventory,
            evaluator,
            interval=config.get("collector.interval", 60),
            timeout=config.get("collector.timeout", 30),
            read_size=config.get("runner.read_size", 4096),
        )

    async def probe_host(self, host_id: str) -> dict[str, float]:
        """采集一台主机的指标"""
        credential = await self._inventory.resolve(host_id)
        if credential.protocol == Protocol.LOCAL:
            return await asyncio.to_thread(local_metrics)

        pooled = await self._pool.acquire(host_id, credential)
        discard = False
        process = None
        try:
            process = await asyncio.to_thread(pooled.connection.exec, PROBE_COMMAND)
            text = await asyncio.wait_for(self._drain(process), self._timeout)
        except BaseException:
            discard = True
            if process is not None:
                await asyncio.to_thread(process.terminate, 1.0)
            raise
        finally:
            await self._pool.release(pooled, discard=discard)
        return parse_probe_output(text)

    async def _drain(self, process) -> str:
        chunks = []
        while True:
            item = await asyncio.to_thread(process.read, self._read_size)
            if item is None:
                break
            stream, data = item
            if stream == "stdout":
                chunks.append(data)
        await asyncio.to_thread(process.wait)
        return b"".join(chunks).decode("utf-8", errors="replace")

    async def collect_once(self, host_ids: Optional[list[str]] = None) -> list[MetricSample]:
        """采集一轮，返回送入评估器的样本"""
        host_ids = host_ids if host_ids is not None else self._inventory.online_hosts()
        results = await asyncio.gather(*(self.probe_host(h) for h in host_ids), return_exceptions=True)

        samples = []
        now = time.time()
        for host_id, result in zip(host_ids, results):
            if isinstance(result, BaseException):
                if isinstance(result, OpsError):
                    _logger.warning(f"主机 {host_id} 指标采集失败: {result.message}")
                else:
                    _logger.error(f"主机 {host_id} 指标采集异常: {result!r}")
                continue
            for metric, value in result.items():
                samples.append(MetricSample(host_id=host_id, metric=metric, value=value, timestamp=now))

        for sample in samples:
            self._evaluator.ingest(sample)
        _logger.debug(f"指标采集完成: {len(host_ids)} 台主机, {len(samples)} 个样本")
        return samples

    async def start(self):
        self._running = True
        self._loop_task = asyncio.create_task(self._collect_loop())
        _logger.info(f"指标采集已启动，间隔 {self._interval}s")

    async def stop(self):
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None

    async def _collect_loop(self):
        while self._running:
            try:
                await self.collect_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                _logger.error(f"指标采集循环异常: {e}")
                await asyncio.sleep(self._interval)
