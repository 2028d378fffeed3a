"""Broadcast hub: channel fan-out with per-client output cursors.

Every connected viewer is a ClientSubscription holding an outbox queue
that its transport (SSE or WebSocket) drains. The hub owns all
per-client state: channel subscriptions, delta cursors, liveness
timestamps. Nothing here is module-global, so several hubs can coexist
in one process.

Delta protocol for ``session-output``, per client and session:
- no cursor yet: full buffer, ``isDelta=false``
- buffer grew and the first ``linesSent`` lines are unchanged: only
  the new lines, ``isDelta=true`` with ``deltaLineCount``
- anything else (shrink, in-place edit, scroll): full buffer again
Every output message carries ``cursorPosition``, the resulting line count.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from swarmsync.adapters.events import (
    ALL_CHANNELS,
    Channel,
    Heartbeat,
    SessionOutput,
    SyncEvent,
    channel_for,
    event_to_dict,
)
from swarmsync.engine.capture import CapturedOutput, fingerprint
from swarmsync.engine.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class OutputCursor:
    """How much of one session's buffer a client already holds."""
    lines_sent: int
    output_hash: str


@dataclass
class ClientSubscription:
    """One connected viewer."""
    client_id: str
    transport: str
    queue: asyncio.Queue[dict[str, Any]]
    channels: set[Channel] = field(default_factory=set)
    cursors: dict[str, OutputCursor] = field(default_factory=dict)
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.monotonic)
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    def send(self, message: dict[str, Any]) -> None:
        """Enqueue one message. Raises TransportError."""
        if self.closed.is_set():
            raise TransportError(self.client_id, "client closed")
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            raise TransportError(self.client_id, "outbox full") from None

    def initialized(self, session_name: str) -> bool:
        return session_name in self.cursors


def build_output_message(
    client: ClientSubscription,
    captured: CapturedOutput,
) -> dict[str, Any] | None:
    """Next output message for *client*, advancing its cursor.

    Returns None when the client already holds this exact buffer.
    """
    name = captured.session_name
    count = captured.line_count
    cursor = client.cursors.get(name)

    if cursor is not None and cursor.output_hash == captured.output_hash:
        return None

    is_delta = (
        cursor is not None
        and count > cursor.lines_sent
        and fingerprint("\n".join(captured.lines[:cursor.lines_sent])) == cursor.output_hash
    )
    if is_delta:
        new_lines = captured.lines[cursor.lines_sent:]
        event = SessionOutput(
            session_name=name,
            output="\n".join(new_lines),
            line_count=count,
            is_delta=True,
            delta_line_count=len(new_lines),
            cursor_position=count,
        )
    else:
        event = SessionOutput(
            session_name=name,
            output=captured.text,
            line_count=count,
            is_delta=False,
            cursor_position=count,
        )
    client.cursors[name] = OutputCursor(lines_sent=count, output_hash=captured.output_hash)
    return event_to_dict(event)


class BroadcastHub:
    """Fan-out of events to subscribed clients."""

    def __init__(self, queue_size: int = 5000, stale_after: float = 60.0) -> None:
        self._queue_size = queue_size
        self._stale_after = stale_after
        self._clients: dict[str, ClientSubscription] = {}
        self._subscribers: dict[Channel, set[str]] = {c: set() for c in ALL_CHANNELS}
        self._latest_output: dict[str, CapturedOutput] = {}
        self._ids = itertools.count(1)
        self._started_at = time.time()

    # ── Clients ──

    def connect(
        self,
        channels: list[Channel] | tuple[Channel, ...] = ALL_CHANNELS,
        transport: str = "sse",
    ) -> ClientSubscription:
        client = ClientSubscription(
            client_id=f"client-{next(self._ids)}",
            transport=transport,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        self._clients[client.client_id] = client
        self.subscribe(client, channels)
        logger.info(
            "Client connected id=%s transport=%s active_clients=%d",
            client.client_id, transport, len(self._clients),
        )
        return client

    def disconnect(self, client: ClientSubscription) -> bool:
        """Release a client's subscriptions and cursors. Idempotent."""
        if self._clients.pop(client.client_id, None) is None:
            return False
        for channel in client.channels:
            self._subscribers[channel].discard(client.client_id)
        client.channels.clear()
        client.cursors.clear()
        client.closed.set()
        logger.info(
            "Client disconnected id=%s active_clients=%d",
            client.client_id, len(self._clients),
        )
        return True

    def subscribe(self, client: ClientSubscription, channels) -> list[Channel]:
        added = []
        for channel in channels:
            channel = Channel(channel)
            client.channels.add(channel)
            self._subscribers[channel].add(client.client_id)
            added.append(channel)
        return added

    def unsubscribe(self, client: ClientSubscription, channels) -> list[Channel]:
        removed = []
        for channel in channels:
            channel = Channel(channel)
            if channel in client.channels:
                client.channels.discard(channel)
                self._subscribers[channel].discard(client.client_id)
                removed.append(channel)
        if Channel.OUTPUT in removed:
            client.cursors.clear()
        return removed

    def touch(self, client: ClientSubscription) -> None:
        client.last_seen = time.monotonic()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def clients(self) -> list[ClientSubscription]:
        return list(self._clients.values())

    def subscriber_count(self, channel: Channel) -> int:
        return len(self._subscribers[channel])

    # ── Publishing ──

    def _deliver(self, client: ClientSubscription, message: dict[str, Any]) -> bool:
        try:
            client.send(message)
            return True
        except TransportError as exc:
            logger.warning("Dropping message: %s", exc)
            if client.queue.full():
                # A viewer this far behind needs a fresh start anyway.
                self.disconnect(client)
            return False

    def publish(self, channel: Channel, message: dict[str, Any]) -> int:
        """Deliver *message* to subscribers of *channel*; returns recipients."""
        subscriber_ids = self._subscribers[channel]
        if not subscriber_ids:
            return 0
        delivered = 0
        for client_id in list(subscriber_ids):
            client = self._clients.get(client_id)
            if client is not None and self._deliver(client, message):
                delivered += 1
        return delivered

    def publish_event(self, event: SyncEvent) -> int:
        return self.publish(channel_for(event), event_to_dict(event))

    def publish_output(self, captured: CapturedOutput) -> int:
        """Send a session buffer through each client's delta cursor."""
        self._latest_output[captured.session_name] = captured
        subscriber_ids = self._subscribers[Channel.OUTPUT]
        if not subscriber_ids:
            return 0
        delivered = 0
        for client_id in list(subscriber_ids):
            client = self._clients.get(client_id)
            if client is None:
                continue
            message = build_output_message(client, captured)
            if message is not None and self._deliver(client, message):
                delivered += 1
        return delivered

    def sync_client(self, client: ClientSubscription) -> int:
        """Bring a newly joined client up to date with every known buffer."""
        if Channel.OUTPUT not in client.channels:
            return 0
        sent = 0
        for captured in list(self._latest_output.values()):
            message = build_output_message(client, captured)
            if message is not None and self._deliver(client, message):
                sent += 1
        return sent

    def forget_session(self, session_name: str) -> None:
        """Drop server-side output tracking for a destroyed session."""
        self._latest_output.pop(session_name, None)
        for client in self._clients.values():
            client.cursors.pop(session_name, None)

    def reset_sessions(self) -> None:
        self._latest_output.clear()
        for client in self._clients.values():
            client.cursors.clear()

    # ── Liveness ──

    def sweep(self, now: float | None = None) -> list[str]:
        """Disconnect stale clients, then heartbeat the system channel.

        Returns the ids of dropped clients.
        """
        now = time.monotonic() if now is None else now
        dropped: list[str] = []
        for client in list(self._clients.values()):
            if now - client.last_seen > self._stale_after:
                logger.info("Terminating stale client: %s", client.client_id)
                self.disconnect(client)
                dropped.append(client.client_id)
        self.publish(Channel.SYSTEM, event_to_dict(Heartbeat()))
        return dropped

    def stats(self) -> dict[str, Any]:
        return {
            "totalClients": len(self._clients),
            "channelStats": {c.value: len(ids) for c, ids in self._subscribers.items()},
            "uptimeSeconds": int(time.time() - self._started_at),
            "clientDetails": [
                {
                    "id": c.client_id,
                    "transport": c.transport,
                    "channels": sorted(ch.value for ch in c.channels),
                    "connectedAt": c.connected_at,
                    "queued": c.queue.qsize(),
                }
                for c in self._clients.values()
            ],
        }


def encode_sse(message: dict[str, Any]) -> bytes:
    """Render one message as an SSE frame."""
    return f"event: {message.get('type', 'message')}\ndata: {json.dumps(message)}\n\n".encode()
