"""Persistence module - durable transaction journal."""

from concord.persistence.database import Database
from concord.persistence.journal import (
    ChangeSet,
    ElementWrite,
    JournalSnapshot,
    MemoryJournal,
    SqlJournal,
    TransactionJournal,
)

__all__ = [
    "ChangeSet",
    "Database",
    "ElementWrite",
    "JournalSnapshot",
    "MemoryJournal",
    "SqlJournal",
    "TransactionJournal",
]
