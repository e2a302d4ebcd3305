"""Per-chat message ledgers and the merge rules behind them."""
from .ledger import MessageLedger
from .models import Ledger, Message, SendPayload, merge_page, merge_records, same_message, upsert

__all__ = [
    "Ledger",
    "Message",
    "MessageLedger",
    "SendPayload",
    "merge_page",
    "merge_records",
    "same_message",
    "upsert",
]
