"""Session sync engine: signal/heuristic state resolution and change fan-out."""
from .models import (
    CanonicalState,
    CompletionBundle,
    PersistResult,
    Question,
    Session,
    SessionInfo,
    Signal,
    SignalKind,
    TaskRef,
)
from .config import SyncConfig
from .errors import (
    PersistenceError,
    ProcessHostError,
    SignalParseError,
    SyncError,
    TransportError,
)

__all__ = [
    # Engine (lazy import to avoid circular deps)
    "SyncEngine",
    "build_engine",
    # Models
    "CanonicalState",
    "CompletionBundle",
    "PersistResult",
    "Question",
    "Session",
    "SessionInfo",
    "Signal",
    "SignalKind",
    "TaskRef",
    # Config
    "SyncConfig",
    "load_yaml_config",
    # Errors
    "PersistenceError",
    "ProcessHostError",
    "SignalParseError",
    "SyncError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "SyncEngine":
        from .sync import SyncEngine
        return SyncEngine
    if name == "build_engine":
        from .sync import build_engine
        return build_engine
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
