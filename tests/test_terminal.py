import asyncio

import pytest

from core.errors import CredentialNotFound, InvalidTransition, SessionNotFound
from models.terminal import ResizeRequest, SessionState
from services.terminal import TerminalMultiplexer

from fakes import FakeTerminalClient, FakeTransport, MemoryInventory, eventually, make_pool


def _terminal(*hosts, **kwargs):
    transport = FakeTransport()
    pool = make_pool(transport, MemoryInventory(*hosts))
    return TerminalMultiplexer(pool, **kwargs), pool, transport


def test_open_attach_and_client_disconnect():
    async def scenario():
        terminal, pool, transport = _terminal("web-1")
        info = await terminal.open("web-1", client_id="alice", cols=120, rows=40)
        assert info.state == SessionState.OPEN
        assert pool.in_use("web-1") == 1
        pty = transport.ptys[0]
        assert (pty.cols, pty.rows) == (120, 40)

        client = FakeTerminalClient()
        attach = asyncio.create_task(terminal.attach(info.session_id, client))

        client.type(b"ls\n")
        await eventually(lambda: pty.written == [b"ls\n"])
        pty.feed(b"file.txt\n")
        await eventually(lambda: client.received == [b"file.txt\n"])

        client.disconnect()
        reason = await asyncio.wait_for(attach, 2)

        assert reason == "客户端断开"
        assert info.state == SessionState.CLOSED
        assert pty.closed
        assert pool.in_use("web-1") == 0
        with pytest.raises(SessionNotFound):
            terminal.get_session(info.session_id)

    asyncio.run(scenario())


def test_remote_eof_closes_session_once():
    async def scenario():
        terminal, pool, transport = _terminal("web-1")
        info = await terminal.open("web-1")
        client = FakeTerminalClient()
        attach = asyncio.create_task(terminal.attach(info.session_id, client))
        await asyncio.sleep(0.05)

        transport.ptys[0].feed(b"")
        reason = await asyncio.wait_for(attach, 2)

        assert reason == "远端已关闭"
        assert pool.in_use("web-1") == 0
        assert transport.connections[0].closed
        with pytest.raises(SessionNotFound):
            await terminal.close(info.session_id)
        assert pool.in_use("web-1") == 0

    asyncio.run(scenario())


def test_close_from_server_side_while_attached():
    async def scenario():
        terminal, pool, _ = _terminal("web-1")
        info = await terminal.open("web-1")
        client = FakeTerminalClient()
        attach = asyncio.create_task(terminal.attach(info.session_id, client))
        await asyncio.sleep(0.05)

        assert await terminal.close(info.session_id, "管理员关闭") is True
        await asyncio.wait_for(attach, 2)

        assert info.close_reason == "管理员关闭"
        assert pool.in_use("web-1") == 0
        assert terminal.list_sessions() == []

    asyncio.run(scenario())


def test_resize_does_not_restart_flows():
    async def scenario():
        terminal, _, transport = _terminal("web-1")
        info = await terminal.open("web-1")
        pty = transport.ptys[0]
        client = FakeTerminalClient()
        attach = asyncio.create_task(terminal.attach(info.session_id, client))

        client.type(ResizeRequest(cols=132, rows=50))
        client.type(b"top\n")
        await eventually(lambda: pty.written == [b"top\n"])
        assert pty.resizes == [(132, 50)]
        assert (info.cols, info.rows) == (132, 50)

        await terminal.resize(info.session_id, 90, 30)
        assert pty.resizes[-1] == (90, 30)
        pty.feed(b"still here")
        await eventually(lambda: client.received == [b"still here"])

        client.disconnect()
        await asyncio.wait_for(attach, 2)

    asyncio.run(scenario())


def test_send_failure_closes_session():
    async def scenario():
        terminal, pool, transport = _terminal("web-1")
        info = await terminal.open("web-1")
        client = FakeTerminalClient()
        client.fail_send = True
        attach = asyncio.create_task(terminal.attach(info.session_id, client))

        transport.ptys[0].feed(b"output")
        reason = await asyncio.wait_for(attach, 2)

        assert reason.startswith("发送到客户端失败")
        assert pool.in_use("web-1") == 0

    asyncio.run(scenario())


def test_second_attach_is_rejected():
    async def scenario():
        terminal, _, _ = _terminal("web-1")
        info = await terminal.open("web-1")
        first = FakeTerminalClient()
        attach = asyncio.create_task(terminal.attach(info.session_id, first))
        await asyncio.sleep(0.02)

        with pytest.raises(InvalidTransition):
            await terminal.attach(info.session_id, FakeTerminalClient())

        first.disconnect()
        await asyncio.wait_for(attach, 2)

    asyncio.run(scenario())


def test_open_failure_leaves_no_session():
    async def scenario():
        terminal, pool, _ = _terminal("web-1")
        with pytest.raises(CredentialNotFound):
            await terminal.open("ghost")
        assert terminal.list_sessions() == []
        assert pool.in_use("ghost") == 0

    asyncio.run(scenario())


def test_idle_sessions_are_swept():
    async def scenario():
        terminal, pool, _ = _terminal("web-1", "web-2", idle_timeout=60)
        stale = await terminal.open("web-1", client_id="alice")
        fresh = await terminal.open("web-2", client_id="bob")
        stale.last_activity -= 120

        closed = await terminal.sweep_idle()
        assert closed == [stale.session_id]
        assert [s.session_id for s in terminal.list_sessions()] == [fresh.session_id]
        assert terminal.list_sessions(client_id="alice") == []
        assert pool.in_use("web-1") == 0

        await terminal.stop()
        assert terminal.stats()["total"] == 0
        assert pool.in_use("web-2") == 0

    asyncio.run(scenario())


def test_unexpected_open_error_closes_session():
    async def scenario():
        terminal, pool, transport = _terminal("web-1")
        transport.pty_error = FileNotFoundError("/bin/missing-shell")
        with pytest.raises(FileNotFoundError):
            await terminal.open("web-1")
        assert terminal.list_sessions() == []
        assert terminal.stats()["connecting"] == 0
        assert pool.in_use("web-1") == 0

    asyncio.run(scenario())
