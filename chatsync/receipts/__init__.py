"""Read receipt tracking."""
from .tracker import ReadReceiptTracker

__all__ = ["ReadReceiptTracker"]
