"""Broadcast hub tests - channel fan-out, delta output protocol, liveness."""

from __future__ import annotations

import pytest

from swarmsync.adapters.events import Channel
from swarmsync.adapters.hub import BroadcastHub, build_output_message
from swarmsync.engine.capture import CapturedOutput, fingerprint


def _captured(name: str, lines: list[str]) -> CapturedOutput:
    return CapturedOutput(name, list(lines), fingerprint("\n".join(lines)))


def _lines(n: int, prefix: str = "line") -> list[str]:
    return [f"{prefix} {i}" for i in range(n)]


def _drain(client) -> list[dict]:
    out = []
    while not client.queue.empty():
        out.append(client.queue.get_nowait())
    return out


# ── Delta protocol ──


@pytest.mark.asyncio
async def test_append_sends_only_new_lines():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(10)))
    _drain(client)

    hub.publish_output(_captured("agent-1", _lines(25)))
    [msg] = _drain(client)

    assert msg["type"] == "session-output"
    assert msg["isDelta"] is True
    assert msg["deltaLineCount"] == 15
    assert msg["output"] == "\n".join(_lines(25)[10:25])
    assert msg["output"].splitlines()[0] == "line 10"
    assert msg["output"].splitlines()[-1] == "line 24"
    assert msg["lineCount"] == 25
    assert msg["cursorPosition"] == 25


@pytest.mark.asyncio
async def test_shrink_sends_full_buffer():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(10)))
    _drain(client)

    hub.publish_output(_captured("agent-1", _lines(5, "fresh")))
    [msg] = _drain(client)

    assert msg["isDelta"] is False
    assert "deltaLineCount" not in msg
    assert msg["output"] == "\n".join(_lines(5, "fresh"))
    assert msg["cursorPosition"] == 5
    assert client.cursors["agent-1"].lines_sent == 5


@pytest.mark.asyncio
async def test_in_place_edit_with_same_count_sends_full_buffer():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(10)))
    _drain(client)

    edited = _lines(10)
    edited[3] = "rewritten"
    hub.publish_output(_captured("agent-1", edited))
    [msg] = _drain(client)
    assert msg["isDelta"] is False
    assert msg["lineCount"] == 10


@pytest.mark.asyncio
async def test_growth_after_scroll_is_not_a_delta():
    """More lines, but the old prefix changed: not a strict extension."""
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(10)))
    _drain(client)

    scrolled = _lines(20)[5:] + ["tail a", "tail b"]
    hub.publish_output(_captured("agent-1", scrolled))
    [msg] = _drain(client)
    assert msg["isDelta"] is False
    assert msg["cursorPosition"] == len(scrolled)


@pytest.mark.asyncio
async def test_first_sync_of_existing_session_is_full_buffer():
    hub = BroadcastHub()
    hub.publish_output(_captured("agent-1", _lines(40)))

    client = hub.connect([Channel.OUTPUT])
    assert hub.sync_client(client) == 1
    [msg] = _drain(client)
    assert msg["isDelta"] is False
    assert msg["cursorPosition"] == 40
    assert msg["lineCount"] == 40
    assert client.initialized("agent-1")


@pytest.mark.asyncio
async def test_clients_track_cursors_independently():
    hub = BroadcastHub()
    early = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(10)))

    late = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(12)))

    early_msgs = _drain(early)
    late_msgs = _drain(late)
    assert [m["isDelta"] for m in early_msgs] == [False, True]
    assert early_msgs[1]["deltaLineCount"] == 2
    assert [m["isDelta"] for m in late_msgs] == [False]
    assert late_msgs[0]["cursorPosition"] == 12


@pytest.mark.asyncio
async def test_unchanged_buffer_sends_nothing():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(3)))
    _drain(client)
    assert hub.publish_output(_captured("agent-1", _lines(3))) == 0
    assert _drain(client) == []


@pytest.mark.asyncio
async def test_build_output_message_without_cursor():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    msg = build_output_message(client, _captured("agent-2", []))
    assert msg["isDelta"] is False
    assert msg["output"] == ""
    assert msg["cursorPosition"] == 0


# ── Channels ──


@pytest.mark.asyncio
async def test_publish_with_no_subscribers_returns_zero():
    hub = BroadcastHub()
    other = hub.connect([Channel.OUTPUT])
    assert hub.publish(Channel.QUESTIONS, {"type": "session-question"}) == 0
    assert other.queue.empty()


@pytest.mark.asyncio
async def test_publish_reaches_only_channel_subscribers():
    hub = BroadcastHub()
    state = hub.connect([Channel.AGENT_STATE])
    output = hub.connect([Channel.OUTPUT])
    assert hub.publish(Channel.AGENT_STATE, {"type": "session-state"}) == 1
    assert len(_drain(state)) == 1
    assert _drain(output) == []


@pytest.mark.asyncio
async def test_failed_send_is_isolated_to_one_client():
    hub = BroadcastHub(queue_size=1)
    slow = hub.connect([Channel.AGENT_STATE])
    fast = hub.connect([Channel.AGENT_STATE])
    slow.queue.put_nowait({"type": "backlog"})

    delivered = hub.publish(Channel.AGENT_STATE, {"type": "session-state"})

    assert delivered == 1
    assert fast.queue.get_nowait()["type"] == "session-state"
    # The overflowing client is dropped.
    assert slow.closed.is_set()
    assert hub.client_count == 1


@pytest.mark.asyncio
async def test_unsubscribe_output_resets_cursors():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT, Channel.SYSTEM])
    hub.publish_output(_captured("agent-1", _lines(4)))
    assert client.initialized("agent-1")

    hub.unsubscribe(client, [Channel.OUTPUT])
    assert client.cursors == {}
    assert hub.subscriber_count(Channel.OUTPUT) == 0


@pytest.mark.asyncio
async def test_disconnect_releases_subscriptions():
    hub = BroadcastHub()
    client = hub.connect()
    assert hub.subscriber_count(Channel.OUTPUT) == 1
    assert hub.disconnect(client) is True
    assert hub.disconnect(client) is False
    for channel in Channel:
        assert hub.subscriber_count(channel) == 0
    assert client.closed.is_set()


@pytest.mark.asyncio
async def test_forget_session_drops_server_side_cursors():
    hub = BroadcastHub()
    client = hub.connect([Channel.OUTPUT])
    hub.publish_output(_captured("agent-1", _lines(4)))
    hub.forget_session("agent-1")
    assert not client.initialized("agent-1")

    late = hub.connect([Channel.OUTPUT])
    assert hub.sync_client(late) == 0


# ── Liveness ──


@pytest.mark.asyncio
async def test_sweep_drops_stale_and_heartbeats_system_subscribers():
    hub = BroadcastHub(stale_after=60.0)
    stale = hub.connect([Channel.SYSTEM])
    live = hub.connect([Channel.SYSTEM])
    quiet = hub.connect([Channel.OUTPUT])
    stale.last_seen = 0.0
    live.last_seen = 1000.0
    quiet.last_seen = 1000.0

    dropped = hub.sweep(now=1030.0)

    assert dropped == [stale.client_id]
    assert [m["type"] for m in _drain(live)] == ["heartbeat"]
    assert _drain(quiet) == []
    assert hub.client_count == 2


@pytest.mark.asyncio
async def test_stats_shape():
    hub = BroadcastHub()
    hub.connect([Channel.OUTPUT], transport="ws")
    stats = hub.stats()
    assert stats["totalClients"] == 1
    assert stats["channelStats"]["output"] == 1
    assert stats["channelStats"]["questions"] == 0
    assert stats["clientDetails"][0]["transport"] == "ws"
