"""
本机传输实现

protocol=local 的主机直接在控制节点上用 subprocess 执行：
- 非交互命令：独立进程组，stdout/stderr 由两个读线程汇入队列
- 交互终端：pty.openpty + bash -i（仅 POSIX）
"""

import os
import platform
import queue
import signal
import subprocess
import threading
from typing import Optional

from core.errors import PtyUnavailable, UnsupportedProtocol
from core.logger import get_logger
from models.host import HostCredential, Protocol
from services.transport import STDERR, STDOUT, Connection, PtyChannel, RemoteProcess, Transport

_logger = get_logger("services.local")

IS_WINDOWS = platform.system() == "Windows"


class LocalProcess(RemoteProcess):
    """本机子进程，读线程把输出按到达顺序放入队列"""

    def __init__(self, command: str, read_size: int = 4096):
        popen_kwargs = {}
        if IS_WINDOWS:
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs["start_new_session"] = True

        self.process = subprocess.Popen(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **popen_kwargs,
        )
        self._queue: "queue.Queue[tuple[str, Optional[bytes]]]" = queue.Queue()
        self._open_streams = 2
        self._terminated = False
        for name, pipe in ((STDOUT, self.process.stdout), (STDERR, self.process.stderr)):
            threading.Thread(target=self._pump, args=(name, pipe, read_size), daemon=True).start()

    def _pump(self, name: str, pipe, read_size: int):
        try:
            while True:
                data = pipe.read1(read_size) if hasattr(pipe, "read1") else pipe.read(read_size)
                if not data:
                    break
                self._queue.put((name, data))
        except (OSError, ValueError):
            pass
        finally:
            self._queue.put((name, None))

    def read(self, max_bytes: int) -> Optional[tuple[str, bytes]]:
        while self._open_streams > 0:
            name, data = self._queue.get()
            if data is None:
                self._open_streams -= 1
                continue
            return name, data
        return None

    def wait(self) -> int:
        return self.process.wait()

    def terminate(self, grace: float = 2.0):
        if self._terminated or self.process.poll() is not None:
            self._terminated = True
            return
        self._terminated = True
        _logger.info(f"终止本机进程组 PID={self.process.pid}")
        try:
            if IS_WINDOWS:
                self.process.terminate()
            else:
                os.killpg(self.process.pid, signal.SIGTERM)
            self.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            if IS_WINDOWS:
                self.process.kill()
            else:
                os.killpg(self.process.pid, signal.SIGKILL)
            self.process.wait(timeout=grace)
        except ProcessLookupError:
            pass


class LocalPty(PtyChannel):
    """POSIX 伪终端上的交互式 shell"""

    def __init__(self, cols: int, rows: int, term: str):
        if IS_WINDOWS:
            raise UnsupportedProtocol("本机 PTY 仅支持 POSIX 系统")
        import pty

        env = os.environ.copy()
        env["TERM"] = term
        shell = env.get("SHELL") or "/bin/bash"
        try:
            master, slave = pty.openpty()
        except OSError as e:
            raise PtyUnavailable(f"无法分配 PTY: {e}") from e
        self._master = master
        self._closed = False
        self._lock = threading.Lock()
        try:
            self.resize_fd(master, cols, rows)
            self.process = subprocess.Popen(
                [shell, "-i"],
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            os.close(master)
            raise PtyUnavailable(f"无法启动 shell {shell}: {e}") from e
        finally:
            os.close(slave)
        _logger.info(f"本机 PTY shell 已启动, PID={self.process.pid}")

    @staticmethod
    def resize_fd(fd: int, cols: int, rows: int):
        import fcntl
        import struct
        import termios

        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

    def read(self, max_bytes: int) -> bytes:
        try:
            return os.read(self._master, max_bytes)
        except OSError:
            # 子进程退出后 master 端读到 EIO
            return b""

    def write(self, data: bytes):
        if self._closed:
            raise EOFError("PTY 已关闭")
        os.write(self._master, data)

    def resize(self, cols: int, rows: int):
        self.resize_fd(self._master, cols, rows)

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            os.killpg(self.process.pid, signal.SIGHUP)
            self.process.wait(timeout=3)
        except (ProcessLookupError, subprocess.TimeoutExpired):
            try:
                os.killpg(self.process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        finally:
            try:
                os.close(self._master)
            except OSError:
                pass
        _logger.info(f"本机 PTY shell 已关闭, PID={self.process.pid}")


class LocalConnection(Connection):
    def __init__(self, credential: HostCredential, read_size: int = 4096):
        super().__init__(credential)
        self._read_size = read_size
        self._closed = False

    def exec(self, command: str) -> LocalProcess:
        return LocalProcess(command, read_size=self._read_size)

    def open_pty(self, cols: int, rows: int, term: str) -> LocalPty:
        return LocalPty(cols, rows, term)

    def is_active(self) -> bool:
        return not self._closed

    def close(self):
        self._closed = True


class LocalTransport(Transport):
    protocol = Protocol.LOCAL

    def __init__(self, read_size: int = 4096):
        self._read_size = read_size

    def connect(self, credential: HostCredential, timeout: float) -> LocalConnection:
        return LocalConnection(credential, read_size=self._read_size)
