"""
OpsPanel 远程运维控制台入口

使用 bootstrap 初始化 Config + Logger，组装连接池、编排器、终端、告警、
调度等服务，然后启动 FastAPI 服务。
"""

import socket
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core import bootstrap
from core.config import ConfigManager
from core.errors import OpsError
from core.logger import get_logger
from api.v1.router import router as v1_router
from services.alerts import AlertEvaluator, AlertRuleStore
from services.collector import MetricCollector
from services.inventory import HostInventory
from services.local_transport import LocalTransport
from services.notifier import NotificationDispatcher
from services.orchestrator import TaskOrchestrator
from services.pool import SessionPool
from services.runner import ExecutionRunner
from services.scheduler import Scheduler
from services.ssh_transport import SSHTransport
from services.storage import FileStore
from services.streams import OutputHub
from services.terminal import TerminalMultiplexer
from services.transport import TransportRegistry


def create_app(config: Optional[ConfigManager] = None,
               transports: Optional[TransportRegistry] = None) -> FastAPI:
    """
    创建并配置 FastAPI 应用。

    Args:
        config: 已加载的配置；为空时走 bootstrap 完整加载
        transports: 传输实现；为空时使用 SSH + 本机
    """

    # ── Phase 1: 引导加载 ──
    if config is None:
        config, _ = bootstrap.init()
    app_logger = get_logger("main")

    # ── Phase 2: 存储 + 凭据库 ──
    data_dir = config.resolve_path(config.get("app.data_dir", "data"))
    storage = FileStore(data_dir)
    storage.ensure_subdir("tasks")
    storage.ensure_subdir("alerts")
    inventory = HostInventory(storage)

    # ── Phase 3: 连接池 + 执行 ──
    if transports is None:
        transports = TransportRegistry([
            SSHTransport(keepalive_interval=config.get("pool.keepalive_interval", 30)),
            LocalTransport(read_size=config.get("runner.read_size", 4096)),
        ])
    pool = SessionPool.from_config(config, inventory, transports)
    hub = OutputHub.from_config(config)
    runner = ExecutionRunner.from_config(config, pool, hub)
    orchestrator = TaskOrchestrator.from_config(config, runner, storage)
    terminal = TerminalMultiplexer.from_config(config, pool)

    # ── Phase 4: 告警 + 调度 + 采集 ──
    notifier = NotificationDispatcher.from_config(config)
    evaluator = AlertEvaluator.from_config(config, AlertRuleStore(storage), notifier,
                                           storage=storage, inventory=inventory)
    evaluator.load()
    scheduler = Scheduler.from_config(config, orchestrator, storage)
    collector = MetricCollector.from_config(config, pool, inventory, evaluator)

    # ── 生命周期管理 ──
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用启动/关闭生命周期"""
        app_logger.info("正在启动后台服务...")

        await terminal.start()
        await evaluator.start()
        if config.get("scheduler.enabled", True):
            await scheduler.start()
        if config.get("collector.enabled", False):
            await collector.start()

        app_logger.info("OpsPanel 就绪")
        _print_ready_banner(config)

        yield

        # 关闭
        app_logger.info("正在停止后台服务...")
        await collector.stop()
        await scheduler.stop()
        await evaluator.stop()
        await terminal.stop()
        await orchestrator.shutdown()
        await notifier.close()
        await pool.close_all()

    # ── 创建 FastAPI 实例 ──
    app = FastAPI(
        title=config.get("app.name"),
        version=config.get("app.version"),
        docs_url="/api/docs" if config.get("app.debug") else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # 全局状态挂载
    app.state.config = config
    app.state.storage = storage
    app.state.inventory = inventory
    app.state.pool = pool
    app.state.hub = hub
    app.state.orchestrator = orchestrator
    app.state.terminal = terminal
    app.state.notifier = notifier
    app.state.evaluator = evaluator
    app.state.scheduler = scheduler
    app.state.collector = collector

    # ── 业务异常 → JSON ──
    @app.exception_handler(OpsError)
    async def handle_ops_error(request: Request, exc: OpsError):
        if exc.status_code >= 500:
            app_logger.error(f"{request.method} {request.url.path} 失败: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "kind": type(exc).__name__},
        )

    # ── 注册 API 路由 ──
    app.include_router(v1_router)

    app_logger.info(
        f"FastAPI 应用创建完成: {config.get('app.name')} v{config.get('app.version')} "
        f"[数据目录 {data_dir}]"
    )

    return app


def _print_ready_banner(config):
    """在所有启动日志之后打印醒目的就绪信息"""
    host = config.get("server.host", "0.0.0.0")
    port = config.get("server.port", 8300)

    # 获取实际可访问的 IP
    if host in ("0.0.0.0", ""):
        try:
            local_ip = socket.gethostbyname(socket.gethostname())
        except OSError:
            local_ip = "127.0.0.1"
    else:
        local_ip = host

    CYAN = "\033[96m"
    GREEN = "\033[92m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

    name = config.get("app.name", "OpsPanel")
    version = config.get("app.version", "")

    lines = [
        f"{CYAN}{'═' * 52}{RESET}",
        f"{CYAN}  {BOLD}{name} v{version}{RESET}{CYAN}  已就绪{RESET}",
        f"{CYAN}{'─' * 52}{RESET}",
        f"  {GREEN}访问地址{RESET}  http://{local_ip}:{port}",
        f"  {GREEN}接口文档{RESET}  http://127.0.0.1:{port}/api/docs",
        f"  {GREEN}定时调度{RESET}  {'开启' if config.get('scheduler.enabled', True) else '关闭'}",
        f"  {GREEN}指标采集{RESET}  {'开启' if config.get('collector.enabled', False) else '关闭'}",
        f"{CYAN}{'═' * 52}{RESET}",
    ]

    print("\n" + "\n".join(lines) + "\n", flush=True)


if __name__ == "__main__":
    config, _ = bootstrap.init()
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=config.get("server.host"),
        port=config.get("server.port"),
        reload=config.get("app.debug", False),
        log_level="info",
    )
