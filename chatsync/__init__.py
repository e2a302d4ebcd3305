"""chatsync: client-side synchronization engine for a real-time chat service.

Keeps a local, consistent view of the signed-in user's chats, per-chat
message history and read state, reconciling paginated REST fetches,
optimistic local writes and live-channel pushes.

Typical use::

    engine = SyncEngine()
    await engine.boot()
    await engine.select_chat(engine.registry.chats[0])
"""
from .config import ClientSettings, get_config, load_settings
from .engine import SyncEngine
from .errors import FailureKind, OperationResult, SyncError
from .logging_setup import configure_logging

__all__ = [
    "ClientSettings",
    "FailureKind",
    "OperationResult",
    "SyncEngine",
    "SyncError",
    "configure_logging",
    "get_config",
    "load_settings",
]
