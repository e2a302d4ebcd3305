"""Session gate (authentication state + guard)."""
from .gate import Session, SessionGate, SessionReader, guard

__all__ = ["Session", "SessionGate", "SessionReader", "guard"]
