"""
In-Memory Ledger Provider

Dict-backed provider used for embedding the engine without a database
and for tests. Entities are copied on the way in and out so callers never
share mutable state with the store; commits run under an asyncio lock.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Iterable

from reconciliation.errors import Conflict, NotFound, ProviderUnavailable
from reconciliation.models import (
    ReconcilableItem,
    OpenDocument,
    Allocation,
    ItemKind,
    ItemState,
    DocumentType,
)
from reconciliation.providers.base import LedgerProvider, ChangeSet

logger = logging.getLogger(__name__)


class InMemoryLedgerProvider(LedgerProvider):

    def __init__(self):
        self._items: Dict[str, ReconcilableItem] = {}
        self._documents: Dict[str, OpenDocument] = {}
        self._allocations: Dict[str, Allocation] = {}
        self._lock = asyncio.Lock()
        self.available = True

    # ==================== Seeding ====================

    def seed(
        self,
        items: Iterable[ReconcilableItem] = (),
        documents: Iterable[OpenDocument] = ()
    ) -> None:
        """Load items and documents as-is, bypassing version checks."""
        for item in items:
            self._items[item.id] = item.copy()
        for document in documents:
            self._documents[document.id] = document.copy()

    def put_document(self, document: OpenDocument) -> OpenDocument:
        """Overwrite a document as an outside writer would, bumping its version."""
        current = self._documents.get(document.id)
        stored = document.copy(version=(current.version + 1) if current else document.version)
        self._documents[document.id] = stored
        return stored.copy()

    # ==================== Reads ====================

    def _ensure_available(self) -> None:
        if not self.available:
            raise ProviderUnavailable("In-memory ledger is marked unavailable")

    async def get_item(self, item_id: str) -> Optional[ReconcilableItem]:
        self._ensure_available()
        item = self._items.get(item_id)
        return item.copy() if item else None

    async def list_items(
        self,
        account_id: Optional[str] = None,
        states: Optional[Sequence[ItemState]] = None,
        kinds: Optional[Sequence[ItemKind]] = None
    ) -> List[ReconcilableItem]:
        self._ensure_available()
        items = [
            item for item in self._items.values()
            if (account_id is None or item.account_id == account_id)
            and (states is None or item.state in states)
            and (kinds is None or item.kind in kinds)
        ]
        items.sort(key=lambda i: (i.date, i.id))
        return [item.copy() for item in items]

    async def add_item(self, item: ReconcilableItem) -> ReconcilableItem:
        self._ensure_available()
        async with self._lock:
            if item.id in self._items:
                raise Conflict(f"Item {item.id} already exists", {"item_id": item.id})
            self._items[item.id] = item.copy()
        return item.copy()

    async def get_document(self, document_id: str) -> Optional[OpenDocument]:
        self._ensure_available()
        document = self._documents.get(document_id)
        return document.copy() if document else None

    async def get_documents(self, document_ids: Sequence[str]) -> Dict[str, OpenDocument]:
        self._ensure_available()
        return {
            doc_id: self._documents[doc_id].copy()
            for doc_id in document_ids
            if doc_id in self._documents
        }

    async def list_open_documents(
        self,
        currency: str,
        counterparty_id: Optional[str] = None,
        document_type: Optional[DocumentType] = None
    ) -> List[OpenDocument]:
        self._ensure_available()
        documents = [
            doc for doc in self._documents.values()
            if doc.is_open
            and doc.currency == currency
            and (counterparty_id is None or doc.counterparty_id == counterparty_id)
            and (document_type is None or doc.document_type == document_type)
        ]
        documents.sort(key=lambda d: (d.due_date, d.id))
        return [doc.copy() for doc in documents]

    async def get_allocation(self, allocation_id: str) -> Optional[Allocation]:
        self._ensure_available()
        allocation = self._allocations.get(allocation_id)
        return replace(allocation) if allocation else None

    async def list_allocations(
        self,
        item_id: Optional[str] = None,
        document_id: Optional[str] = None
    ) -> List[Allocation]:
        self._ensure_available()
        allocations = [
            a for a in self._allocations.values()
            if (item_id is None or a.item_id == item_id)
            and (document_id is None or a.document_id == document_id)
        ]
        allocations.sort(key=lambda a: (a.created_at, a.id))
        return [replace(a) for a in allocations]

    # ==================== Writes ====================

    async def commit(self, changes: ChangeSet) -> None:
        self._ensure_available()
        if changes.is_empty:
            return
        async with self._lock:
            self._check_versions(changes)

            for item, _ in changes.items:
                self._items[item.id] = item.copy(version=self._items[item.id].version + 1)
            for document, _ in changes.documents:
                self._documents[document.id] = document.copy(
                    version=self._documents[document.id].version + 1
                )
            for allocation in changes.changed_allocations:
                self._allocations[allocation.id] = allocation
            for allocation_id in changes.removed_allocation_ids:
                del self._allocations[allocation_id]
            for allocation in changes.new_allocations:
                self._allocations[allocation.id] = allocation

        logger.debug(
            "Committed change set",
            extra={
                "items": [i.id for i, _ in changes.items],
                "documents": [d.id for d, _ in changes.documents],
                "allocations_added": len(changes.new_allocations),
                "allocations_changed": len(changes.changed_allocations),
                "allocations_removed": len(changes.removed_allocation_ids)
            }
        )

    def _check_versions(self, changes: ChangeSet) -> None:
        for item, expected in changes.items:
            current = self._items.get(item.id)
            if current is None:
                raise NotFound(f"Item {item.id} not found", {"item_id": item.id})
            if current.version != expected:
                raise Conflict(
                    f"Item {item.id} was modified concurrently",
                    {"item_id": item.id, "expected_version": expected, "current_version": current.version}
                )
        for document, expected in changes.documents:
            current = self._documents.get(document.id)
            if current is None:
                raise NotFound(f"Document {document.id} not found", {"document_id": document.id})
            if current.version != expected:
                raise Conflict(
                    f"Document {document.id} was modified concurrently",
                    {"document_id": document.id, "expected_version": expected, "current_version": current.version}
                )
        for allocation in changes.changed_allocations:
            if allocation.id not in self._allocations:
                raise Conflict(
                    f"Allocation {allocation.id} was removed concurrently",
                    {"allocation_id": allocation.id}
                )
        for allocation_id in changes.removed_allocation_ids:
            if allocation_id not in self._allocations:
                raise Conflict(
                    f"Allocation {allocation_id} was removed concurrently",
                    {"allocation_id": allocation_id}
                )
        for allocation in changes.new_allocations:
            if allocation.id in self._allocations:
                raise Conflict(
                    f"Allocation {allocation.id} already exists",
                    {"allocation_id": allocation.id}
                )

    async def ping(self) -> bool:
        return self.available
