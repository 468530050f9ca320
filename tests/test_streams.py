import asyncio

from services.streams import OutputBuffer, OutputHub


def test_buffer_drops_oldest_beyond_limit():
    buf = OutputBuffer("t1", "h1", limit=10)
    for part in ("aaaa", "bbbb", "cccc"):
        buf.append("stdout", part)

    assert buf.text() == "bbbbcccc"
    assert buf.dropped == 1
    assert buf.last_seq == 3
    assert [c.seq for c in buf.snapshot(after_seq=2)] == [3]
    assert buf.tail(6) == "bbcccc"
    assert buf.tail(0) == ""


def test_replay_then_live_then_end():
    async def scenario():
        hub = OutputHub()
        hub.open_stream("t1", "h1")
        hub.publish("t1", "h1", "stdout", "before\n")

        sub = hub.subscribe("t1")
        hub.publish("t1", "h1", "stderr", "after\n")
        hub.publish("t1", "h1", "stdout", "")
        hub.close_stream("t1", "h1")
        hub.finish_task("t1")

        chunks = [c async for c in sub]
        assert [(c.seq, c.stream, c.data) for c in chunks] == [
            (1, "stdout", "before\n"),
            (2, "stderr", "after\n"),
        ]
        assert hub.subscriber_count("t1") == 0
        # 已关闭的流不再接受输出
        assert hub.publish("t1", "h1", "stdout", "late") is None

    asyncio.run(scenario())


def test_host_filter_and_resume_after_seq():
    async def scenario():
        hub = OutputHub()
        for i in range(3):
            hub.publish("t1", "h1", "stdout", f"h1-{i}\n")
            hub.publish("t1", "h2", "stdout", f"h2-{i}\n")
        hub.finish_task("t1")

        sub = hub.subscribe("t1", host_id="h1", after_seq=1)
        assert [c.data async for c in sub] == ["h1-1\n", "h1-2\n"]
        assert sub.last_seq == {"h1": 3}

    asyncio.run(scenario())


def test_slow_consumer_is_disconnected():
    async def scenario():
        hub = OutputHub(subscriber_queue=2)
        hub.open_stream("t1", "h1")
        sub = hub.subscribe("t1", host_id="h1")
        for i in range(5):
            hub.publish("t1", "h1", "stdout", f"line-{i}\n")

        assert sub.overflowed
        assert hub.subscriber_count("t1") == 0
        received = [c async for c in sub]
        assert [c.seq for c in received] == [1, 2]

        # 带 last_seq 重新订阅，从缓冲区补齐
        again = hub.subscribe("t1", host_id="h1", after_seq=sub.last_seq["h1"])
        hub.close_stream("t1", "h1")
        assert [c.seq async for c in again] == [3, 4, 5]
        assert not again.overflowed

    asyncio.run(scenario())


def test_discard_releases_buffers():
    hub = OutputHub()
    hub.publish("t1", "h1", "stdout", "x")
    hub.discard("t1")
    assert hub.buffer("t1", "h1") is None
