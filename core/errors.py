"""
错误分类

所有业务异常都继承 OpsError，API 层按 status_code 统一转换为 JSON 响应。
"""


class OpsError(Exception):
    """业务异常基类"""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ── 连接 / 传输 ──

class AuthenticationFailure(OpsError):
    """认证失败：致命错误，不重试"""
    status_code = 401


class TransientNetworkFailure(OpsError):
    """网络瞬时故障：有限次数指数退避重试，耗尽后作为 HostRun 失败"""
    status_code = 503


class ConnectionReset(TransientNetworkFailure):
    """连接在使用中断开，该连接必须丢弃"""


class PoolClosed(OpsError):
    """连接池已关闭"""
    status_code = 503


class CredentialNotFound(OpsError):
    """凭据库中找不到主机"""
    status_code = 404


class UnsupportedProtocol(OpsError):
    """没有可用于该协议的传输实现"""


class PtyUnavailable(OpsError):
    """无法在目标上分配 PTY 或启动 shell"""
    status_code = 503


# ── 执行 ──

class RemoteProcessTimeout(OpsError):
    """远程进程超时，已强制终止"""
    status_code = 504


class CommandBlocked(OpsError):
    """命令被安全策略拦截"""
    status_code = 403


# ── 查询 / 状态 ──

class TaskNotFound(OpsError):
    status_code = 404


class SessionNotFound(OpsError):
    status_code = 404


class SessionClosed(OpsError):
    """终端会话已关闭"""
    status_code = 409


class AlertNotFound(OpsError):
    status_code = 404


class RuleNotFound(OpsError):
    status_code = 404


class ScheduleNotFound(OpsError):
    status_code = 404


class InvalidTransition(OpsError):
    """非法状态迁移（如对已结束任务执行取消、确认非 FIRING 告警）"""
    status_code = 409


class InvalidCronExpression(OpsError):
    status_code = 422


# ── 仅用于日志的事件 ──

class AlertEvaluationGap(OpsError):
    """某个 (规则, 主机) 长时间没有样本；只记录日志，不会抛出评估器"""


class SchedulerMisfire(OpsError):
    """定时任务触发失败；记录日志后跳过，不影响调度循环"""
