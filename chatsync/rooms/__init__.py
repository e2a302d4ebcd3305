"""Live-channel room membership."""
from .channel import RoomChannel, RoomTransition

__all__ = ["RoomChannel", "RoomTransition"]
