"""Session sync engine: poll loop, watch path, and state broadcast.

Two triggers feed the same per-session tracking state:

- the poll tick (slow path) lists sessions, reads signals and captures
  output, then applies every change in one synchronous pass
- the file watcher (fast path) re-reads a single session's signal or
  question document after a short debounce

Both paths run on the event loop, so neither ever observes the other
half-applied. The poll loop and the watcher exist only while at least
one client is connected; the last disconnect tears everything down.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from pathlib import Path
from typing import Any

from swarmsync.adapters.events import (
    Channel,
    Connected,
    SessionComplete,
    SessionCreated,
    SessionDestroyed,
    SessionQuestion,
    SessionSignal,
    SessionStateChanged,
    TaskChange,
    event_to_dict,
)
from swarmsync.adapters.hub import BroadcastHub, ClientSubscription
from swarmsync.adapters.task_store import TaskStore
from swarmsync.adapters.tmux import ProcessHost

from .capture import CapturedOutput, OutputCapturer
from .completion import CompletionPersister
from .config import SyncConfig
from .debounce import DebouncedActions
from .errors import ProcessHostError
from .models import (
    Question,
    Session,
    SessionInfo,
    Signal,
    SignalKind,
    TaskRef,
)
from .registry import SessionRegistry
from .resolver import MarkerTable, resolve_from_signal, resolve_state
from .signal_store import DOC_QUESTION, DOC_SIGNAL, SignalStore
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)

OUTPUT = "output"
SIGNAL = "signal"
QUESTION = "question"
TASKS = "tasks"
_TASKS_KEY = "*"


class SyncEngine:
    """Keeps connected viewers in step with every managed session."""

    def __init__(
        self,
        config: SyncConfig,
        host: ProcessHost,
        hub: BroadcastHub,
        signals: SignalStore,
        tasks: TaskStore,
        persister: CompletionPersister,
        *,
        watch: bool = True,
    ) -> None:
        self.config = config
        self.host = host
        self.hub = hub
        self.signals = signals
        self.tasks = tasks
        self.persister = persister
        self.registry = SessionRegistry(config)
        self.capturer = OutputCapturer(host, config.output_lines)
        self.markers = MarkerTable(config.markers)
        self.debounce = DebouncedActions()
        self._watch = watch
        self._watcher: ChangeWatcher | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._liveness_task: asyncio.Task[None] | None = None
        self._captured: dict[str, CapturedOutput] = {}
        self._task_ids: set[str] | None = None
        self._tasks_path = Path(config.tasks_path).expanduser().absolute()

    # ── Lifecycle ──

    @property
    def running(self) -> bool:
        return self._poll_task is not None

    def start(self) -> None:
        """Start the poll loop, watcher and liveness sweep."""
        if self._poll_task is not None:
            return
        logger.info(
            "Sync engine starting poll=%.2fs signal_dir=%s",
            self.config.poll_interval_seconds, self.config.signal_dir,
        )
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        if self._watch:
            self._watcher = ChangeWatcher(
                [self.signals.directory, self._tasks_path.parent],
                self._on_path_changed,
            )
            try:
                self._watcher.start()
            except OSError as exc:
                logger.warning("File watcher unavailable, polling only: %s", exc)
                self._watcher = None

    async def stop(self) -> None:
        """Tear down background work and forget all tracking state."""
        current = asyncio.current_task()
        tasks = [t for t in (self._poll_task, self._liveness_task) if t is not None]
        self._poll_task = None
        self._liveness_task = None
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.debounce.cancel_all()
        self.registry.clear()
        self._captured.clear()
        self._task_ids = None
        self.tasks.invalidate()
        self.hub.reset_sessions()
        self.persister.reset()
        if tasks:
            logger.info("Sync engine stopped")

    async def attach_client(
        self,
        channels=None,
        transport: str = "sse",
    ) -> ClientSubscription:
        """Register a viewer; the first one starts the engine."""
        first = self.hub.client_count == 0
        client = self.hub.connect(channels if channels is not None else tuple(Channel), transport)
        client.send(event_to_dict(Connected(
            client_id=client.client_id,
            channels=sorted(c.value for c in client.channels),
            delta_updates_enabled=True,
        )))
        if first:
            self.start()
        self.hub.sync_client(client)
        return client

    async def detach_client(self, client: ClientSubscription) -> None:
        """Release a viewer; the last one stops the engine."""
        self.hub.disconnect(client)
        if self.hub.client_count == 0 and self.running:
            await self.stop()

    async def _poll_loop(self) -> None:
        # Baseline for the task-change diff; the first file event is then a real change.
        try:
            await self.refresh_tasks()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Task baseline read failed")
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll tick failed")
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _liveness_loop(self) -> None:
        interval = self.config.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.hub.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")
            if self.hub.client_count == 0:
                await self.stop()
                return

    # ── Poll path ──

    def _wants_capture(self, signal: Signal | None) -> bool:
        if self.hub.subscriber_count(Channel.OUTPUT) > 0:
            return True
        return (
            self.hub.subscriber_count(Channel.AGENT_STATE) > 0
            and resolve_from_signal(signal) is None
        )

    async def _read_session(
        self, name: str,
    ) -> tuple[Signal | None, CapturedOutput | None, Question | None]:
        signal = await self.signals.read(name)
        captured = None
        if self._wants_capture(signal):
            captured = await self.capturer.capture(name)
        question = None
        if self.hub.subscriber_count(Channel.QUESTIONS) > 0:
            question = await self.signals.read_question(name)
        return signal, captured, question

    async def tick(self) -> None:
        """One poll cycle."""
        try:
            listing = await self.host.list_sessions()
        except ProcessHostError as exc:
            logger.warning("Session listing failed, keeping previous set: %s", exc)
            return
        managed = self.registry.filter(listing)
        assignees = await self.tasks.assignee_map()
        reads = await asyncio.gather(*(self._read_session(info.name) for info in managed))
        observed = dict(zip((info.name for info in managed), reads))

        self._apply_listing(listing, assignees)

        completions: list[tuple[Session, Signal]] = []
        for session in self.registry.sessions():
            signal, captured, question = observed.get(session.name, (None, None, None))
            session.task = assignees.get(session.agent_name)
            if captured is not None:
                self._apply_output(session, captured)
            if self.hub.subscriber_count(Channel.QUESTIONS) > 0:
                self._apply_question(session, question)
            if signal is not None and signal.kind is SignalKind.COMPLETE:
                completions.append((session, signal))
            else:
                self._apply_signal(session, signal)

        for session, signal in completions:
            try:
                await self._apply_completion(session, signal)
            except Exception:
                logger.exception("Completion handling failed session=%s", session.name)

    def _apply_listing(self, listing: list[SessionInfo], assignees: dict[str, TaskRef]) -> None:
        diff = self.registry.reconcile(listing)
        for session in diff.created:
            session.task = assignees.get(session.agent_name)
            self.hub.publish_event(SessionCreated(
                session_name=session.name,
                agent_name=session.agent_name,
                task=session.task.to_dict() if session.task else None,
                created_at=session.created_at.isoformat() if session.created_at else None,
                attached=session.attached,
            ))
        for session in diff.destroyed:
            self.hub.publish_event(SessionDestroyed(session_name=session.name))
            self._purge(session.name)

    def _purge(self, name: str) -> None:
        self.debounce.cancel_resource(name)
        self._captured.pop(name, None)
        self.hub.forget_session(name)

    def _apply_output(self, session: Session, captured: CapturedOutput) -> None:
        if captured.output_hash == session.output_hash:
            return
        session.output_hash = captured.output_hash
        session.line_count = captured.line_count
        session.output = captured.text
        self._captured[session.name] = captured
        self.debounce.schedule(
            OUTPUT, session.name, self.config.output_debounce_seconds,
            functools.partial(self._flush_output, session.name),
        )

    async def _flush_output(self, name: str) -> None:
        captured = self._captured.get(name)
        if captured is None or name not in self.registry:
            return
        self.hub.publish_output(captured)

    # ── Signal, question and state ──

    def _evaluate(self, session: Session, signal: Signal | None) -> None:
        state = resolve_state(
            signal, session.output, session.task, self.markers,
            window_chars=self.config.scan_window_chars,
            short_output_chars=self.config.short_output_chars,
        )
        previous = session.canonical_state
        if state == previous:
            return
        session.canonical_state = state
        logger.debug(
            "State change session=%s %s -> %s",
            session.name, previous.value if previous else None, state.value,
        )
        self.hub.publish_event(SessionStateChanged(
            session_name=session.name,
            state=state.value,
            previous_state=previous.value if previous else None,
        ))

    def _apply_signal(self, session: Session, signal: Signal | None) -> None:
        """Relay changed data-kind payloads, then re-resolve state."""
        new_hash = signal.content_hash if signal is not None else None
        if (
            signal is not None
            and signal.kind in (SignalKind.TASKS, SignalKind.ACTION)
            and new_hash != session.signal_hash
        ):
            self.hub.publish_event(SessionSignal(
                session_name=session.name,
                signal_type=signal.kind.value,
                payload=signal.payload,
            ))
        session.signal_hash = new_hash
        self._evaluate(session, signal)

    async def _apply_completion(self, session: Session, signal: Signal) -> None:
        outcome = await self.persister.observe(signal, session.agent_name)
        if session.name not in self.registry:
            return
        if outcome is not None and outcome.first_seen:
            self.hub.publish_event(SessionComplete(
                session_name=session.name,
                completion_bundle=outcome.bundle.to_dict(),
            ))
        session.signal_hash = signal.content_hash
        self._evaluate(session, signal)

    def _apply_question(self, session: Session, question: Question | None) -> None:
        new_hash = question.content_hash if question is not None else None
        if new_hash == session.question_hash:
            return
        session.question_hash = new_hash
        self.hub.publish_event(SessionQuestion(
            session_name=session.name,
            question=question.payload if question is not None else None,
        ))

    async def refresh_signal(self, name: str) -> None:
        """Fast path: re-read one session's signal document."""
        signal = await self.signals.read(name)
        session = self.registry.get(name)
        if session is None:
            return
        if signal is not None and signal.kind is SignalKind.COMPLETE:
            await self._apply_completion(session, signal)
        else:
            self._apply_signal(session, signal)

    async def refresh_question(self, name: str) -> None:
        """Fast path: re-read one session's question document."""
        question = await self.signals.read_question(name)
        session = self.registry.get(name)
        if session is None:
            return
        self._apply_question(session, question)

    # ── Task-change channel ──

    async def refresh_tasks(self) -> None:
        self.tasks.invalidate()
        ids = await self.tasks.task_ids()
        previous, self._task_ids = self._task_ids, ids
        if previous is None:
            return
        new_ids = sorted(ids - previous)
        removed_ids = sorted(previous - ids)
        if new_ids or removed_ids:
            logger.info("Task set changed +%d -%d", len(new_ids), len(removed_ids))
            self.hub.publish_event(TaskChange(new_tasks=new_ids, removed_tasks=removed_ids))

    # ── Watch path ──

    def _on_path_changed(self, path: Path) -> None:
        if path.absolute() == self._tasks_path:
            self.debounce.schedule(
                TASKS, _TASKS_KEY, self.config.task_debounce_seconds, self.refresh_tasks,
            )
            return
        match = self.signals.classify(path)
        if match is None:
            return
        doc_kind, name = match
        if name not in self.registry:
            return
        if doc_kind == DOC_SIGNAL:
            self.debounce.schedule(
                SIGNAL, name, self.config.signal_debounce_seconds,
                functools.partial(self.refresh_signal, name),
            )
        elif doc_kind == DOC_QUESTION:
            self.debounce.schedule(
                QUESTION, name, self.config.signal_debounce_seconds,
                functools.partial(self.refresh_question, name),
            )

    # ── Queries and commands ──

    def snapshot(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.registry.sessions()]

    async def list_sessions(self) -> list[dict[str, Any]]:
        """Managed sessions straight from the host, merged with tracked state."""
        listing = self.registry.filter(await self.host.list_sessions())
        result = []
        for info in listing:
            tracked = self.registry.get(info.name)
            if tracked is not None:
                result.append(tracked.to_dict())
                continue
            result.append(Session(
                name=info.name,
                agent_name=self.registry.agent_name(info.name),
                created_at=info.created_at,
                attached=info.attached,
            ).to_dict())
        return result

    async def inspect(self) -> list[dict[str, Any]]:
        """One-shot resolution of every managed session, without clients."""
        listing = self.registry.filter(await self.host.list_sessions())
        assignees = await self.tasks.assignee_map()
        result = []
        for info in listing:
            agent_name = self.registry.agent_name(info.name)
            task = assignees.get(agent_name)
            signal = await self.signals.read(info.name)
            output = ""
            if resolve_from_signal(signal) is None:
                captured = await self.capturer.capture(info.name)
                output = captured.text if captured is not None else ""
            session = Session(
                name=info.name,
                agent_name=agent_name,
                created_at=info.created_at,
                attached=info.attached,
                task=task,
                output=output,
                canonical_state=resolve_state(
                    signal, output, task, self.markers,
                    window_chars=self.config.scan_window_chars,
                    short_output_chars=self.config.short_output_chars,
                ),
            )
            result.append(session.to_dict())
        return result

    def _require_managed(self, name: str, command: str) -> None:
        if not self.registry.is_managed(name):
            raise ProcessHostError(command, f"'{name}' is not a managed session")

    async def send_input(self, name: str, text: str, enter: bool = True) -> None:
        self._require_managed(name, "send-keys")
        if text:
            await self.host.send_keys(name, text)
        if enter:
            await self.host.send_key(name, "Enter")

    async def send_key(self, name: str, key: str) -> None:
        self._require_managed(name, "send-keys")
        await self.host.send_key(name, key)

    async def kill_session(self, name: str) -> None:
        self._require_managed(name, "kill-session")
        await self.host.kill_session(name)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "watching": self._watcher is not None and self._watcher.running,
            "sessions": len(self.registry),
            "pendingDebounces": self.debounce.pending_count,
            "states": {
                s.name: s.canonical_state.value
                for s in self.registry.sessions()
                if s.canonical_state is not None
            },
        }


def build_engine(config: SyncConfig, host: ProcessHost | None = None, *, watch: bool = True) -> SyncEngine:
    """Wire an engine from configuration with the default adapters."""
    from swarmsync.adapters.tmux import TmuxHost
    from swarmsync.shared.services.completion_store import CompletionStore

    return SyncEngine(
        config,
        host or TmuxHost(config.tmux_command, config.subprocess_timeout_seconds),
        BroadcastHub(config.client_queue_size, config.stale_client_seconds),
        SignalStore(config),
        TaskStore(config.tasks_path, config.task_cache_seconds),
        CompletionPersister(CompletionStore(config.completions_path)),
        watch=watch,
    )
