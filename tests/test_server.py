"""HTTP handler tests for the sync server."""

from __future__ import annotations

import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from aiohttp import web

from swarmsync.adapters.events import Channel
from swarmsync.adapters.tmux import ProcessHost
from swarmsync.engine.config import SyncConfig
from swarmsync.engine.errors import ProcessHostError
from swarmsync.engine.models import SessionInfo
from swarmsync.engine.sync import build_engine
from swarmsync.server.server import SyncServer, parse_channels


class _Host(ProcessHost):
    def __init__(self) -> None:
        self.sessions = ["agent-1", "other"]
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def list_sessions(self):
        if self.fail:
            raise ProcessHostError("list-sessions", "boom")
        return [SessionInfo(name=n) for n in self.sessions]

    async def capture_pane(self, name, lines):
        return ""

    async def send_keys(self, name, text):
        if self.fail:
            raise ProcessHostError("send-keys", "boom")
        self.sent.append((name, text))

    async def send_key(self, name, key):
        self.sent.append((name, f"<{key}>"))

    async def kill_session(self, name):
        self.sent.append((name, "<kill>"))


@dataclass
class _Request:
    match_info: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: object = None

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self):
        return self.body


class _FakeWS:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send_json(self, data) -> None:
        self.sent.append(data)


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _build_server(tmpdir: str) -> tuple[SyncServer, _Host]:
    config = SyncConfig(
        signal_dir=tmpdir,
        tasks_path=str(Path(tmpdir) / "issues.jsonl"),
        completions_path=str(Path(tmpdir) / "completions.json"),
    )
    host = _Host()
    return SyncServer(build_engine(config, host, watch=False)), host


# ── Channels ──


def test_parse_channels():
    assert parse_channels(None) == list(Channel)
    assert parse_channels("output, questions") == [Channel.OUTPUT, Channel.QUESTIONS]
    with pytest.raises(web.HTTPBadRequest):
        parse_channels("output,bogus")


# ── Handlers ──


@pytest.mark.asyncio
async def test_health_and_stats():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, _ = _build_server(tmpdir)
        health = _json_payload(await server._handle_health(_Request()))
        assert health["status"] == "ok"
        assert health["clients"] == 0
        assert health["engine_running"] is False

        stats = _json_payload(await server._handle_stats(_Request()))
        assert stats["totalClients"] == 0
        assert stats["engine"]["sessions"] == 0


@pytest.mark.asyncio
async def test_list_sessions_filters_unmanaged():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, host = _build_server(tmpdir)
        payload = _json_payload(await server._handle_list_sessions(_Request()))
        assert [s["sessionName"] for s in payload["sessions"]] == ["agent-1"]
        assert payload["sessions"][0]["agentName"] == "1"

        host.fail = True
        resp = await server._handle_list_sessions(_Request())
        assert resp.status == 502


@pytest.mark.asyncio
async def test_input_text_and_key():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, host = _build_server(tmpdir)
        resp = await server._handle_input(_Request(
            match_info={"name": "agent-1"}, body={"text": "continue", "enter": True},
        ))
        assert resp.status == 200
        resp = await server._handle_input(_Request(
            match_info={"name": "agent-1"}, body={"key": "C-c"},
        ))
        assert resp.status == 200
        assert host.sent == [("agent-1", "continue"), ("agent-1", "<Enter>"), ("agent-1", "<C-c>")]


@pytest.mark.asyncio
async def test_input_validation():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, host = _build_server(tmpdir)
        resp = await server._handle_input(_Request(match_info={"name": "other"}, body={"text": "x"}))
        assert resp.status == 404
        resp = await server._handle_input(_Request(match_info={"name": "agent-1"}, body={}))
        assert resp.status == 400
        resp = await server._handle_input(_Request(match_info={"name": "agent-1"}, body=["x"]))
        assert resp.status == 400

        host.fail = True
        resp = await server._handle_input(_Request(match_info={"name": "agent-1"}, body={"text": "x"}))
        assert resp.status == 502


@pytest.mark.asyncio
async def test_kill_session():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, host = _build_server(tmpdir)
        resp = await server._handle_kill_session(_Request(match_info={"name": "agent-1"}))
        assert _json_payload(resp)["status"] == "killed"
        assert host.sent == [("agent-1", "<kill>")]
        resp = await server._handle_kill_session(_Request(match_info={"name": "other"}))
        assert resp.status == 404


@pytest.mark.asyncio
async def test_completion_lookup():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, _ = _build_server(tmpdir)
        store = server.engine.persister._store
        store.persist("bd-5", {"taskId": "bd-5", "contentHash": "abc", "persistedAt": "2026-01-01T00:00:00"})

        listing = _json_payload(await server._handle_list_completions(_Request()))
        assert [c["taskId"] for c in listing["completions"]] == ["bd-5"]

        found = await server._handle_get_completion(_Request(match_info={"task_id": "bd-5"}))
        assert _json_payload(found)["contentHash"] == "abc"
        missing = await server._handle_get_completion(_Request(match_info={"task_id": "bd-6"}))
        assert missing.status == 404


# ── WebSocket control messages ──


@pytest.mark.asyncio
async def test_ws_subscribe_and_unsubscribe():
    with tempfile.TemporaryDirectory() as tmpdir:
        server, _ = _build_server(tmpdir)
        hub = server.engine.hub
        client = hub.connect([Channel.SYSTEM], transport="ws")
        ws = _FakeWS()

        await server._handle_ws_message(client, ws, json.dumps({"type": "subscribe", "channels": ["output"]}))
        assert ws.sent[-1] == {"type": "subscribed", "channels": ["output"]}
        assert hub.subscriber_count(Channel.OUTPUT) == 1

        await server._handle_ws_message(client, ws, json.dumps({"type": "unsubscribe", "channels": ["output"]}))
        assert ws.sent[-1] == {"type": "unsubscribed", "channels": ["output"]}
        assert hub.subscriber_count(Channel.OUTPUT) == 0

        await server._handle_ws_message(client, ws, json.dumps({"type": "ping"}))
        assert ws.sent[-1]["type"] == "pong"

        sent_before = len(ws.sent)
        await server._handle_ws_message(client, ws, json.dumps({"type": "pong"}))
        assert len(ws.sent) == sent_before

        await server._handle_ws_message(client, ws, "{nope")
        assert ws.sent[-1]["type"] == "error"
        await server._handle_ws_message(client, ws, json.dumps({"type": "subscribe", "channels": ["bogus"]}))
        assert ws.sent[-1]["type"] == "error"
