"""User lookup and account self-service."""
from .directory import UserDirectory

__all__ = ["UserDirectory"]
