"""Chat models and the chat registry."""
from .models import Chat, DirectChat, GroupChat, normalize_chat
from .registry import ChatRegistry

__all__ = ["Chat", "ChatRegistry", "DirectChat", "GroupChat", "normalize_chat"]
