"""HTTP + SSE + WebSocket transport for the session sync engine.

Thin adapter: all session state lives in SyncEngine and BroadcastHub.
This module only handles HTTP routing and per-connection pumping of a
client's outbox onto its stream.

Routes:
    GET    /health
    GET    /events                      SSE stream (?channels=a,b)
    GET    /ws                          WebSocket stream with subscribe/unsubscribe
    GET    /sessions
    POST   /sessions/{name}/input       {"text": ..., "enter": true} or {"key": ...}
    DELETE /sessions/{name}
    GET    /completions
    GET    /completions/{task_id}
    GET    /stats
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import WSMsgType, web

from swarmsync.adapters.events import ALL_CHANNELS, Channel
from swarmsync.adapters.hub import ClientSubscription, encode_sse
from swarmsync.engine.errors import PersistenceError, ProcessHostError
from swarmsync.engine.sync import SyncEngine

logger = logging.getLogger(__name__)

_KEEPALIVE_SECONDS = 15.0


def parse_channels(raw: str | None) -> list[Channel]:
    """``"output,questions"`` -> channels. Empty or missing means all."""
    if not raw:
        return list(ALL_CHANNELS)
    channels: list[Channel] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            channels.append(Channel(part))
        except ValueError:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Unknown channel: {part}"}),
                content_type="application/json",
            ) from None
    return channels or list(ALL_CHANNELS)


_CLOSED: Any = object()


async def _next_message(client: ClientSubscription, timeout: float) -> Any:
    """Next outbox message, None on timeout, or _CLOSED once the hub drops the client."""
    if client.closed.is_set():
        return _CLOSED
    getter = asyncio.ensure_future(client.queue.get())
    closed = asyncio.ensure_future(client.closed.wait())
    try:
        await asyncio.wait(
            {getter, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
        is_closed = closed.done()
    except asyncio.CancelledError:
        getter.cancel()
        raise
    finally:
        closed.cancel()
    if getter.done():
        return getter.result()
    getter.cancel()
    return _CLOSED if is_closed else None


class SyncServer:
    """aiohttp application exposing a SyncEngine to remote viewers."""

    def __init__(self, engine: SyncEngine, host: str = "127.0.0.1", port: int = 0) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        logger.info("SyncServer init host=%s port=%s pid=%s", host, port, os.getpid())

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-swarmsync-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/ws", self._handle_ws)
        r.add_get("/sessions", self._handle_list_sessions)
        r.add_post("/sessions/{name}/input", self._handle_input)
        r.add_delete("/sessions/{name}", self._handle_kill_session)
        r.add_get("/completions", self._handle_list_completions)
        r.add_get("/completions/{task_id}", self._handle_get_completion)
        r.add_get("/stats", self._handle_stats)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start listening and serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("swarmsync server started but no listening socket was reported.")
        self._port = actual_port
        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("swarmsync server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        finally:
            await self._engine.stop()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "clients": self._engine.hub.client_count,
            "engine_running": self._engine.running,
        })

    async def _handle_stats(self, request: web.Request) -> web.Response:
        stats = self._engine.hub.stats()
        stats["engine"] = self._engine.stats()
        return web.json_response(stats)

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        channels = parse_channels(request.query.get("channels"))
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        client = await self._engine.attach_client(channels, transport="sse")
        logger.info("SSE client attached req=%s client=%s", request.get("req_id", "unknown"), client.client_id)
        try:
            await self._pump_sse(client, response)
        except asyncio.CancelledError:
            pass
        finally:
            await self._engine.detach_client(client)
        return response

    async def _pump_sse(self, client: ClientSubscription, response: web.StreamResponse) -> None:
        hub = self._engine.hub
        while True:
            message = await _next_message(client, _KEEPALIVE_SECONDS)
            if message is _CLOSED:
                break
            try:
                if message is None:
                    await response.write(b": keepalive\n\n")
                else:
                    await response.write(encode_sse(message))
            except (ConnectionResetError, RuntimeError):
                break
            hub.touch(client)

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        channels = parse_channels(request.query.get("channels"))
        client = await self._engine.attach_client(channels, transport="ws")
        sender = asyncio.create_task(self._pump_ws(client, ws))
        try:
            async for msg in ws:
                self._engine.hub.touch(client)
                if msg.type == WSMsgType.TEXT:
                    await self._handle_ws_message(client, ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error client=%s: %s", client.client_id, ws.exception())
                    break
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            await self._engine.detach_client(client)
        return ws

    async def _pump_ws(self, client: ClientSubscription, ws: web.WebSocketResponse) -> None:
        while True:
            message = await _next_message(client, _KEEPALIVE_SECONDS)
            if message is _CLOSED:
                break
            if message is None:
                # Idle: the viewer acknowledges with any frame, usually "pong".
                message = {"type": "ping", "timestamp": int(time.time() * 1000)}
            try:
                await ws.send_json(message)
            except (ConnectionResetError, RuntimeError):
                break
        await ws.close()

    async def _handle_ws_message(self, client: ClientSubscription, ws: web.WebSocketResponse, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await ws.send_json({"type": "error", "error": "invalid JSON"})
            return
        if not isinstance(data, dict):
            await ws.send_json({"type": "error", "error": "expected an object"})
            return
        action = data.get("type")
        hub = self._engine.hub
        if action == "pong":
            return
        if action == "ping":
            await ws.send_json({"type": "pong", "timestamp": int(time.time() * 1000)})
            return
        if action not in ("subscribe", "unsubscribe"):
            await ws.send_json({"type": "error", "error": f"unknown message type: {action}"})
            return
        try:
            channels = [Channel(c) for c in data.get("channels") or []]
        except ValueError as exc:
            await ws.send_json({"type": "error", "error": str(exc)})
            return
        if action == "subscribe":
            changed = hub.subscribe(client, channels)
            if Channel.OUTPUT in changed:
                hub.sync_client(client)
            await ws.send_json({"type": "subscribed", "channels": [c.value for c in changed]})
        else:
            changed = hub.unsubscribe(client, channels)
            await ws.send_json({"type": "unsubscribed", "channels": [c.value for c in changed]})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        try:
            sessions = await self._engine.list_sessions()
        except ProcessHostError as exc:
            return web.json_response({"error": str(exc)}, status=502)
        return web.json_response({"sessions": sessions})

    async def _handle_input(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        try:
            body: Any = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "expected an object"}, status=400)
        if not self._engine.registry.is_managed(name):
            return web.json_response({"error": f"Unknown session: {name}"}, status=404)

        key = body.get("key")
        text = body.get("text")
        try:
            if isinstance(key, str) and key:
                await self._engine.send_key(name, key)
            elif isinstance(text, str):
                await self._engine.send_input(name, text, enter=bool(body.get("enter", True)))
            else:
                return web.json_response({"error": "text or key is required"}, status=400)
        except ProcessHostError as exc:
            return web.json_response({"error": str(exc)}, status=502)
        return web.json_response({"status": "sent", "sessionName": name})

    async def _handle_kill_session(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        if not self._engine.registry.is_managed(name):
            return web.json_response({"error": f"Unknown session: {name}"}, status=404)
        try:
            await self._engine.kill_session(name)
        except ProcessHostError as exc:
            return web.json_response({"error": str(exc)}, status=502)
        return web.json_response({"status": "killed", "sessionName": name})

    async def _handle_list_completions(self, request: web.Request) -> web.Response:
        try:
            records = await asyncio.to_thread(self._engine.persister.list)
        except PersistenceError as exc:
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response({"completions": records})

    async def _handle_get_completion(self, request: web.Request) -> web.Response:
        task_id = request.match_info["task_id"]
        try:
            record = await asyncio.to_thread(self._engine.persister.get, task_id)
        except PersistenceError as exc:
            return web.json_response({"error": str(exc)}, status=500)
        if record is None:
            return web.json_response({"error": f"No completion for {task_id}"}, status=404)
        return web.json_response(record)
