"""
SSH 传输实现（paramiko）

- 非交互命令：exec 前先输出远程 shell 的 PID，终止时按进程组发送 TERM/KILL
- 交互终端：invoke_shell 申请 PTY，每个终端独占一条 SSH 连接
"""

import io
import shlex
import socket
import time
from typing import Optional

import paramiko

from core.errors import AuthenticationFailure, ConnectionReset, TransientNetworkFailure
from core.logger import get_logger
from models.host import HostCredential, Protocol
from services.transport import STDERR, STDOUT, Connection, PtyChannel, RemoteProcess, Transport

_logger = get_logger("services.ssh")

# 远程 shell 在执行命令前打印的 PID 标记行
PID_MARKER = "__OPS_PID__"
_POLL_INTERVAL = 0.05
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def wrap_command(command: str) -> str:
    """
    包装命令：先打印 $$，再 exec 到 sh -c，保证 PID 不变，便于 kill 进程组。
    """
    return f"echo {PID_MARKER}$$; exec sh -c {shlex.quote(command)}"


def _load_private_key(text: str, passphrase: Optional[str]) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_cls in _KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.SSHException as e:
            last_error = e
    raise AuthenticationFailure(f"无法解析私钥: {last_error}")


class SSHProcess(RemoteProcess):
    """paramiko Channel 上的一次 exec"""

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel):
        self._client = client
        self._channel = channel
        self._pid: Optional[int] = None
        self._prefix = b""
        self._prefix_done = False
        self._terminated = False

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    def _strip_pid_line(self, data: bytes) -> bytes:
        """第一行是 PID 标记，解析后从 stdout 中去掉"""
        if self._prefix_done:
            return data
        self._prefix += data
        if b"\n" not in self._prefix:
            return b""
        line, rest = self._prefix.split(b"\n", 1)
        text = line.decode("utf-8", errors="replace").strip()
        if text.startswith(PID_MARKER):
            try:
                self._pid = int(text[len(PID_MARKER):])
            except ValueError:
                _logger.warning(f"无法解析远程 PID: {text!r}")
        else:
            rest = self._prefix
        self._prefix_done = True
        self._prefix = b""
        return rest

    def read(self, max_bytes: int) -> Optional[tuple[str, bytes]]:
        chan = self._channel
        try:
            while True:
                if chan.recv_ready():
                    data = chan.recv(max_bytes)
                    if data:
                        data = self._strip_pid_line(data)
                        if data:
                            return STDOUT, data
                        continue
                if chan.recv_stderr_ready():
                    data = chan.recv_stderr(max_bytes)
                    if data:
                        return STDERR, data
                if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                    if not self._prefix_done and self._prefix:
                        # 命令在输出换行前就结束了
                        self._prefix_done = True
                        rest, self._prefix = self._prefix, b""
                        return STDOUT, rest
                    return None
                if chan.closed:
                    if self._terminated:
                        return None
                    raise ConnectionReset("SSH 通道在命令执行中关闭")
                time.sleep(_POLL_INTERVAL)
        except (socket.error, EOFError, paramiko.SSHException) as e:
            raise ConnectionReset(f"读取远程输出失败: {e}") from e

    def wait(self) -> int:
        return self._channel.recv_exit_status()

    def terminate(self, grace: float = 2.0):
        if self._terminated:
            return
        self._terminated = True
        if self._pid:
            pid = self._pid
            script = (
                f"kill -TERM -- -{pid} 2>/dev/null || kill -TERM {pid} 2>/dev/null; "
                f"sleep {grace}; "
                f"kill -KILL -- -{pid} 2>/dev/null || kill -KILL {pid} 2>/dev/null; true"
            )
            try:
                transport = self._client.get_transport()
                if transport is not None and transport.is_active():
                    killer = transport.open_session(timeout=5)
                    killer.exec_command(script)
                    deadline = time.monotonic() + grace + 5
                    while not killer.exit_status_ready() and time.monotonic() < deadline:
                        time.sleep(_POLL_INTERVAL)
                    killer.close()
            except (socket.error, EOFError, paramiko.SSHException) as e:
                _logger.warning(f"发送终止信号失败 pid={pid}: {e}")
        else:
            _logger.warning("未获取到远程 PID，仅关闭通道")
        self._channel.close()


class SSHPty(PtyChannel):
    def __init__(self, channel: paramiko.Channel):
        self._channel = channel

    def read(self, max_bytes: int) -> bytes:
        try:
            return self._channel.recv(max_bytes)
        except (socket.error, EOFError, paramiko.SSHException):
            return b""

    def write(self, data: bytes):
        if self._channel.closed:
            raise EOFError("PTY 通道已关闭")
        self._channel.sendall(data)

    def resize(self, cols: int, rows: int):
        self._channel.resize_pty(width=cols, height=rows)

    def close(self):
        self._channel.close()


class SSHConnection(Connection):
    def __init__(self, credential: HostCredential, client: paramiko.SSHClient):
        super().__init__(credential)
        self._client = client

    def _transport(self) -> paramiko.Transport:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise ConnectionReset(f"SSH 连接已断开: {self.host_id}")
        return transport

    def exec(self, command: str) -> SSHProcess:
        try:
            channel = self._transport().open_session(timeout=10)
            channel.exec_command(wrap_command(command))
        except (socket.error, EOFError, paramiko.SSHException) as e:
            raise ConnectionReset(f"打开 SSH 会话失败: {e}") from e
        return SSHProcess(self._client, channel)

    def open_pty(self, cols: int, rows: int, term: str) -> SSHPty:
        try:
            channel = self._client.invoke_shell(term=term, width=cols, height=rows)
        except (socket.error, EOFError, paramiko.SSHException) as e:
            raise ConnectionReset(f"申请 PTY 失败: {e}") from e
        return SSHPty(channel)

    def is_active(self) -> bool:
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    def close(self):
        self._client.close()


class SSHTransport(Transport):
    protocol = Protocol.SSH

    def __init__(self, keepalive_interval: int = 30):
        self._keepalive = keepalive_interval

    def connect(self, credential: HostCredential, timeout: float) -> SSHConnection:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs = {
            "hostname": credential.address,
            "port": credential.port,
            "username": credential.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if credential.private_key:
            kwargs["pkey"] = _load_private_key(credential.private_key, credential.passphrase)
        if credential.password:
            kwargs["password"] = credential.password

        try:
            client.connect(**kwargs)
        except (paramiko.AuthenticationException, paramiko.BadHostKeyException) as e:
            client.close()
            raise AuthenticationFailure(f"SSH 认证失败 {credential.host_id}: {e}") from e
        except (socket.error, EOFError, paramiko.SSHException) as e:
            client.close()
            raise TransientNetworkFailure(f"SSH 连接失败 {credential.host_id}: {e}") from e

        transport = client.get_transport()
        if transport is not None and self._keepalive:
            transport.set_keepalive(self._keepalive)
        _logger.debug(f"SSH 已连接: {credential.username}@{credential.address}:{credential.port}")
        return SSHConnection(credential, client)
