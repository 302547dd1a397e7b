"""
Ledger Snapshot Provider Interface

The provider is the single source of truth for items, documents and
allocations. The engine reads fresh state from it on every operation and
writes through one atomic ``commit``:

- every item/document in the change set carries the version that was
  read; if any stored version differs, nothing is written and Conflict
  is raised
- allocation inserts and deletes are applied in the same transaction as
  the parent totals, so allocations are never orphaned
- infrastructure failures surface as ProviderUnavailable
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from reconciliation.models import (
    ReconcilableItem,
    OpenDocument,
    Allocation,
    ItemKind,
    ItemState,
    DocumentType,
)


@dataclass
class ChangeSet:
    """
    A batch of writes committed atomically.

    ``items`` and ``documents`` hold (new value, version it was derived
    from) pairs.
    """
    items: List[Tuple[ReconcilableItem, int]] = field(default_factory=list)
    documents: List[Tuple[OpenDocument, int]] = field(default_factory=list)
    new_allocations: List[Allocation] = field(default_factory=list)
    changed_allocations: List[Allocation] = field(default_factory=list)
    removed_allocation_ids: List[str] = field(default_factory=list)

    def update_item(self, item: ReconcilableItem, expected_version: int) -> "ChangeSet":
        self.items.append((item, expected_version))
        return self

    def update_document(self, document: OpenDocument, expected_version: int) -> "ChangeSet":
        self.documents.append((document, expected_version))
        return self

    def add_allocation(self, allocation: Allocation) -> "ChangeSet":
        self.new_allocations.append(allocation)
        return self

    def change_allocation(self, allocation: Allocation) -> "ChangeSet":
        """Overwrite the amount of an existing allocation, keeping its id."""
        self.changed_allocations.append(allocation)
        return self

    def remove_allocation(self, allocation_id: str) -> "ChangeSet":
        self.removed_allocation_ids.append(allocation_id)
        return self

    @property
    def is_empty(self) -> bool:
        return not (
            self.items or self.documents or self.new_allocations
            or self.changed_allocations or self.removed_allocation_ids
        )


class LedgerProvider(ABC):
    """
    Read/write access to the ledger for the reconciliation engine.
    """

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[ReconcilableItem]:
        """Get a single item by ID."""

    @abstractmethod
    async def list_items(
        self,
        account_id: Optional[str] = None,
        states: Optional[Sequence[ItemState]] = None,
        kinds: Optional[Sequence[ItemKind]] = None
    ) -> List[ReconcilableItem]:
        """List items ordered by date, then id."""

    @abstractmethod
    async def add_item(self, item: ReconcilableItem) -> ReconcilableItem:
        """Store a new item."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[OpenDocument]:
        """Get a single document by ID, open or not."""

    @abstractmethod
    async def get_documents(self, document_ids: Sequence[str]) -> Dict[str, OpenDocument]:
        """Get documents by ID; missing IDs are absent from the result."""

    @abstractmethod
    async def list_open_documents(
        self,
        currency: str,
        counterparty_id: Optional[str] = None,
        document_type: Optional[DocumentType] = None
    ) -> List[OpenDocument]:
        """List documents with an amount still due."""

    @abstractmethod
    async def get_allocation(self, allocation_id: str) -> Optional[Allocation]:
        """Get a single allocation by ID."""

    @abstractmethod
    async def list_allocations(
        self,
        item_id: Optional[str] = None,
        document_id: Optional[str] = None
    ) -> List[Allocation]:
        """List allocations, optionally filtered by item or document."""

    @abstractmethod
    async def commit(self, changes: ChangeSet) -> None:
        """
        Apply a change set atomically.

        Raises Conflict if any version no longer matches or an allocation
        to remove is gone, ProviderUnavailable on infrastructure failure.
        """

    async def ping(self) -> bool:
        """Health probe; providers backed by a remote store override this."""
        return True
