"""Adapters package - boundaries between the sync engine and the outside.

The process host (tmux), the task store, event types and the broadcast
hub that fans events out to connected viewers.
"""
from __future__ import annotations

__all__ = [
    "BroadcastHub",
    "ClientSubscription",
    "ProcessHost",
    "TaskStore",
    "TmuxHost",
]

from swarmsync.adapters.hub import BroadcastHub, ClientSubscription
from swarmsync.adapters.task_store import TaskStore
from swarmsync.adapters.tmux import ProcessHost, TmuxHost
