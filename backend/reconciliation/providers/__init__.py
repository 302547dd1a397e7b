"""
Ledger Snapshot Providers
"""

from .base import LedgerProvider, ChangeSet
from .memory import InMemoryLedgerProvider

__all__ = ["LedgerProvider", "ChangeSet", "InMemoryLedgerProvider"]
