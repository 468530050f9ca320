import asyncio

import pytest

from models.task import HostRun, HostRunStatus, Task, TaskKind
from services.runner import ExecutionRunner, build_playbook_command, command_for
from services.streams import OutputHub
from services.transport import STDERR, STDOUT

from fakes import FakeTransport, MemoryInventory, eventually, make_pool


def _runner(transport, *hosts, **kwargs):
    pool = make_pool(transport, MemoryInventory(*hosts))
    hub = OutputHub()
    kwargs.setdefault("blacklist", ["rm -rf /"])
    return ExecutionRunner(pool, hub, **kwargs), pool, hub


def test_successful_run_streams_output():
    async def scenario():
        transport = FakeTransport()
        transport.script("web-1", stdout=b"hello\n", stderr=b"warn\n")
        runner, pool, hub = _runner(transport, "web-1")

        run = await runner.run("web-1", "echo hello", task_id="t1")
        assert run.status == HostRunStatus.SUCCESS
        assert run.exit_code == 0
        assert run.started_at is not None and run.completed_at is not None

        buf = hub.buffer("t1", "web-1")
        assert buf.text(STDOUT) == "hello\n"
        assert buf.text(STDERR) == "warn\n"
        assert buf.closed
        assert "hello" in run.output_tail
        assert transport.connections[0].commands == ["echo hello"]
        assert pool.in_use("web-1") == 0
        assert pool.idle_count("web-1") == 1

    asyncio.run(scenario())


def test_nonzero_exit_fails():
    async def scenario():
        transport = FakeTransport()
        transport.script("web-1", stderr=b"boom\n", exit_code=3)
        runner, _, _ = _runner(transport, "web-1")

        run = await runner.run("web-1", "false", task_id="t1")
        assert run.status == HostRunStatus.FAILED
        assert run.exit_code == 3
        assert run.error_kind == "NonZeroExit"

    asyncio.run(scenario())


def test_multibyte_output_split_across_reads():
    async def scenario():
        transport = FakeTransport()
        data = "你好\n".encode("utf-8")
        transport.script("web-1", chunks=[(STDOUT, data[:2]), (STDOUT, data[2:])])
        runner, _, hub = _runner(transport, "web-1")

        await runner.run("web-1", "echo 你好", task_id="t1")
        assert hub.buffer("t1", "web-1").text(STDOUT) == "你好\n"

    asyncio.run(scenario())


def test_blocked_command_never_connects():
    async def scenario():
        transport = FakeTransport()
        runner, _, hub = _runner(transport, "web-1")

        run = await runner.run("web-1", "sudo RM -RF / --no-preserve-root", task_id="t1")
        assert run.status == HostRunStatus.FAILED
        assert run.error_kind == "CommandBlocked"
        assert transport.total_connects() == 0
        assert "拦截" in hub.buffer("t1", "web-1").text("system")

    asyncio.run(scenario())


def test_unknown_host_fails_with_credential_error():
    async def scenario():
        runner, _, _ = _runner(FakeTransport(), "web-1")
        run = await runner.run("ghost", "uptime", task_id="t1")
        assert run.status == HostRunStatus.FAILED
        assert run.error_kind == "CredentialNotFound"

    asyncio.run(scenario())


def test_timeout_terminates_and_discards_connection():
    async def scenario():
        transport = FakeTransport()
        transport.script("web-1", stdout=b"partial\n", hang=True)
        runner, pool, hub = _runner(transport, "web-1")

        run = await runner.run("web-1", "sleep 100", timeout=0.2, task_id="t1")
        assert run.status == HostRunStatus.TIMEOUT
        assert run.error_kind == "RemoteProcessTimeout"

        conn = transport.connections[0]
        assert conn.processes[0].terminated
        assert conn.closed
        assert pool.in_use("web-1") == 0
        assert pool.idle_count("web-1") == 0
        assert hub.buffer("t1", "web-1").text(STDOUT) == "partial\n"

    asyncio.run(scenario())


def test_cancel_terminates_remote_process():
    async def scenario():
        transport = FakeTransport()
        transport.script("web-1", hang=True)
        runner, pool, _ = _runner(transport, "web-1")
        host_run = HostRun(task_id="t1", host_id="web-1")

        job = asyncio.create_task(runner.run("web-1", "sleep 100", timeout=30, host_run=host_run))
        await asyncio.sleep(0.1)
        assert host_run.status == HostRunStatus.RUNNING
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

        assert host_run.status == HostRunStatus.CANCELLED
        assert transport.connections[0].processes[0].terminated
        assert pool.in_use("web-1") == 0

    asyncio.run(scenario())


def test_playbook_command_wraps_ansible():
    command = build_playbook_command("- hosts: all\n  tasks: []\n", {"env": "prod"})
    assert "ansible-playbook -c local -i localhost," in command
    assert "--extra-vars" in command and '"env": "prod"' in command
    assert command.rstrip().endswith("exit $rc")

    task = Task(kind=TaskKind.PLAYBOOK, payload={"playbook": "- hosts: all"}, host_ids=["h"],
                concurrency=1, timeout=10)
    assert "ansible-playbook" in command_for(task)

    task = Task(kind=TaskKind.COMMAND, payload={"command": "uptime"}, host_ids=["h"],
                concurrency=1, timeout=10)
    assert command_for(task) == "uptime"


def test_cancel_during_slow_start_still_terminates_process():
    async def scenario():
        transport = FakeTransport()
        transport.script("web-1", hang=True)
        transport.exec_delay = 0.3
        runner, pool, _ = _runner(transport, "web-1")
        host_run = HostRun(task_id="t1", host_id="web-1")

        job = asyncio.create_task(runner.run("web-1", "sleep 100", timeout=30, host_run=host_run))
        await eventually(lambda: transport.connections and transport.connections[0].commands)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job
        assert host_run.status == HostRunStatus.CANCELLED
        assert pool.in_use("web-1") == 0

        # 进程在取消之后才启动完成，随后立即被终止
        conn = transport.connections[0]
        await eventually(lambda: conn.processes and conn.processes[0].terminated)
        assert transport.running == 0

    asyncio.run(scenario())
