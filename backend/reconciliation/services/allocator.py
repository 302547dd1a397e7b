"""
Allocator

Validates and commits allocations of an item's amount against open
documents.

apply(item_id, requests):
- item must be confirmed
- every amount must be positive and in the item's currency
- documents must exist, share the item's currency and be settled by the
  item's direction
- lines for the same document are summed and checked against its amount due
- the total must not exceed the item's unallocated amount
- all checks run before the single atomic commit; a bank transaction
  that ends up fully allocated moves to reconciled in the same commit

remove(item_id, allocation_id):
- item must be confirmed and own the allocation
- restores the amount on both the item and the document

update(item_id, allocation_id, amount):
- item must be confirmed and own the allocation
- the new amount is checked as if the allocation were released first;
  item, document and allocation change in one commit
"""

import logging
from collections import OrderedDict
from dataclasses import replace
from typing import Dict, List, Sequence

from reconciliation.errors import (
    InvalidAmount,
    OverAllocation,
    CurrencyMismatch,
    DirectionMismatch,
    NotFound,
    Conflict,
)
from reconciliation.models import (
    ReconcilableItem,
    OpenDocument,
    Allocation,
    AllocationRequest,
    ItemKind,
    generate_id,
)
from reconciliation.money import MonetaryAmount, sum_amounts
from reconciliation.providers.base import LedgerProvider, ChangeSet
from reconciliation.state_machine import ItemAction, ensure_allowed, transition
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event

logger = logging.getLogger(__name__)


class Allocator:
    """
    Applies and removes allocations against the ledger.

    Holds no state between calls: every operation re-reads the item and
    documents it touches.
    """

    def __init__(self, provider: LedgerProvider):
        self.provider = provider

    async def _load_item(self, item_id: str) -> ReconcilableItem:
        item = await self.provider.get_item(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found", {"item_id": item_id})
        return item

    # ==================== Apply ====================

    async def apply(
        self,
        item_id: str,
        requests: Sequence[AllocationRequest],
        actor: str = "system"
    ) -> ReconcilableItem:
        """
        Allocate the requested amounts. All-or-nothing.

        Returns the item as stored after the commit.
        """
        item = await self._load_item(item_id)
        ensure_allowed(item, ItemAction.ALLOCATE)

        if not requests:
            raise InvalidAmount("At least one allocation is required", {"item_id": item.id})

        self._validate_amounts(item, requests)

        per_document: Dict[str, MonetaryAmount] = OrderedDict()
        for request in requests:
            per_document[request.document_id] = (
                per_document.get(request.document_id, MonetaryAmount.zero(item.currency))
                + request.amount
            )

        documents = await self.provider.get_documents(list(per_document))
        self._validate_documents(item, requests, per_document, documents)

        total = sum_amounts(per_document.values(), item.currency)
        if total > item.amount_unallocated:
            raise OverAllocation(
                f"Requested {total} exceeds unallocated {item.amount_unallocated}",
                {
                    "item_id": item.id,
                    "requested": total.to_string(),
                    "amount_unallocated": item.amount_unallocated.to_string(),
                    "currency": item.currency
                }
            )

        changes = self._build_apply_changes(item, requests, per_document, documents)
        await self.provider.commit(changes)

        for allocation in changes.new_allocations:
            log_reconciliation_event(
                ReconciliationAuditEvent.ALLOCATION_CREATED,
                item.id,
                {
                    "allocation_id": allocation.id,
                    "document_id": allocation.document_id,
                    "amount_applied": allocation.amount_applied.to_string(),
                    "currency": allocation.currency
                },
                account_id=item.account_id,
                actor=actor
            )

        updated = await self._load_item(item.id)
        if updated.state != item.state:
            log_reconciliation_event(
                ReconciliationAuditEvent.ITEM_RECONCILED,
                item.id,
                {"from_state": item.state.value, "to_state": updated.state.value},
                account_id=item.account_id,
                actor=actor
            )
        return updated

    def _validate_amounts(self, item: ReconcilableItem, requests: Sequence[AllocationRequest]) -> None:
        for request in requests:
            if request.amount.currency != item.currency:
                raise CurrencyMismatch(
                    f"Allocation amount in {request.amount.currency} for item in {item.currency}",
                    {"document_id": request.document_id, "item_currency": item.currency,
                     "amount_currency": request.amount.currency}
                )
            if not request.amount.is_positive:
                raise InvalidAmount(
                    f"Allocation amount must be positive, got {request.amount}",
                    {"document_id": request.document_id, "amount": request.amount.to_string()}
                )

    def _validate_documents(
        self,
        item: ReconcilableItem,
        requests: Sequence[AllocationRequest],
        per_document: Dict[str, MonetaryAmount],
        documents: Dict[str, OpenDocument]
    ) -> None:
        for document_id in per_document:
            document = documents.get(document_id)
            if document is None:
                raise NotFound(f"Document {document_id} not found", {"document_id": document_id})
            if document.currency != item.currency:
                raise CurrencyMismatch(
                    f"Document {document_id} is in {document.currency}, item is in {item.currency}",
                    {"document_id": document_id, "document_currency": document.currency,
                     "item_currency": item.currency}
                )
            if document.document_type.settled_by != item.direction:
                raise DirectionMismatch(
                    f"A {item.direction.value} cannot settle a {document.document_type.value}",
                    {"document_id": document_id, "direction": item.direction.value,
                     "document_type": document.document_type.value}
                )

        for request in requests:
            expected = request.expected_amount_due
            if expected is None:
                continue
            current = documents[request.document_id].amount_due
            if expected.currency != current.currency or expected.minor_units != current.minor_units:
                raise Conflict(
                    f"Amount due on document {request.document_id} changed since it was read",
                    {"document_id": request.document_id, "expected_amount_due": expected.to_string(),
                     "current_amount_due": current.to_string()}
                )

        for document_id, amount in per_document.items():
            amount_due = documents[document_id].amount_due
            if amount > amount_due:
                raise OverAllocation(
                    f"Requested {amount} exceeds amount due {amount_due} on document {document_id}",
                    {"document_id": document_id, "requested": amount.to_string(),
                     "amount_due": amount_due.to_string(), "currency": item.currency}
                )

    def _build_apply_changes(
        self,
        item: ReconcilableItem,
        requests: Sequence[AllocationRequest],
        per_document: Dict[str, MonetaryAmount],
        documents: Dict[str, OpenDocument]
    ) -> ChangeSet:
        changes = ChangeSet()

        total = sum_amounts(per_document.values(), item.currency)
        updated_item = item.copy(amount_allocated=item.amount_allocated + total)
        if updated_item.kind == ItemKind.BANK_TRANSACTION and updated_item.is_fully_allocated:
            updated_item = transition(updated_item, ItemAction.RECONCILE)
        changes.update_item(updated_item, item.version)

        for document_id, amount in per_document.items():
            document = documents[document_id]
            changes.update_document(
                document.copy(amount_paid=document.amount_paid + amount),
                document.version
            )

        for request in requests:
            changes.add_allocation(Allocation(
                id=generate_id(),
                item_id=item.id,
                document_id=request.document_id,
                amount_applied=request.amount
            ))
        return changes

    # ==================== Remove ====================

    async def remove(self, item_id: str, allocation_id: str, actor: str = "system") -> ReconcilableItem:
        """Delete one allocation, restoring item and document totals."""
        item = await self._load_item(item_id)
        ensure_allowed(item, ItemAction.REMOVE_ALLOCATION)

        allocation = await self.provider.get_allocation(allocation_id)
        if allocation is None or allocation.item_id != item.id:
            raise NotFound(
                f"Allocation {allocation_id} not found on item {item.id}",
                {"item_id": item.id, "allocation_id": allocation_id}
            )

        document = await self.provider.get_document(allocation.document_id)
        if document is None:
            raise NotFound(
                f"Document {allocation.document_id} not found",
                {"document_id": allocation.document_id}
            )

        changes = ChangeSet()
        changes.update_item(
            item.copy(amount_allocated=item.amount_allocated - allocation.amount_applied),
            item.version
        )
        changes.update_document(
            document.copy(amount_paid=document.amount_paid - allocation.amount_applied),
            document.version
        )
        changes.remove_allocation(allocation.id)
        await self.provider.commit(changes)

        log_reconciliation_event(
            ReconciliationAuditEvent.ALLOCATION_REMOVED,
            item.id,
            {
                "allocation_id": allocation.id,
                "document_id": allocation.document_id,
                "amount_applied": allocation.amount_applied.to_string(),
                "currency": allocation.currency
            },
            account_id=item.account_id,
            actor=actor
        )
        return await self._load_item(item.id)

    # ==================== Update ====================

    async def update(
        self,
        item_id: str,
        allocation_id: str,
        amount: MonetaryAmount,
        actor: str = "system"
    ) -> ReconcilableItem:
        """
        Change the amount of one allocation in a single commit.

        The new amount is checked against what the item and the document
        would have available with this allocation released.
        """
        item = await self._load_item(item_id)
        ensure_allowed(item, ItemAction.REMOVE_ALLOCATION)
        ensure_allowed(item, ItemAction.ALLOCATE)

        allocation = await self.provider.get_allocation(allocation_id)
        if allocation is None or allocation.item_id != item.id:
            raise NotFound(
                f"Allocation {allocation_id} not found on item {item.id}",
                {"item_id": item.id, "allocation_id": allocation_id}
            )
        self._validate_amounts(item, [AllocationRequest(allocation.document_id, amount)])

        document = await self.provider.get_document(allocation.document_id)
        if document is None:
            raise NotFound(
                f"Document {allocation.document_id} not found",
                {"document_id": allocation.document_id}
            )

        previous = allocation.amount_applied
        document_available = document.amount_due + previous
        if amount > document_available:
            raise OverAllocation(
                f"Requested {amount} exceeds available {document_available} on document {document.id}",
                {"document_id": document.id, "allocation_id": allocation.id, "requested": amount.to_string(),
                 "amount_available": document_available.to_string(), "currency": item.currency}
            )
        item_available = item.amount_unallocated + previous
        if amount > item_available:
            raise OverAllocation(
                f"Requested {amount} exceeds available {item_available} on item {item.id}",
                {"item_id": item.id, "allocation_id": allocation.id, "requested": amount.to_string(),
                 "amount_available": item_available.to_string(), "currency": item.currency}
            )

        if amount == previous:
            return item

        delta = amount - previous
        updated_item = item.copy(amount_allocated=item.amount_allocated + delta)
        if updated_item.kind == ItemKind.BANK_TRANSACTION and updated_item.is_fully_allocated:
            updated_item = transition(updated_item, ItemAction.RECONCILE)

        changes = ChangeSet()
        changes.update_item(updated_item, item.version)
        changes.update_document(document.copy(amount_paid=document.amount_paid + delta), document.version)
        changes.change_allocation(replace(allocation, amount_applied=amount))
        await self.provider.commit(changes)

        log_reconciliation_event(
            ReconciliationAuditEvent.ALLOCATION_UPDATED,
            item.id,
            {
                "allocation_id": allocation.id,
                "document_id": allocation.document_id,
                "previous_amount": previous.to_string(),
                "amount_applied": amount.to_string(),
                "currency": allocation.currency
            },
            account_id=item.account_id,
            actor=actor
        )
        if updated_item.state != item.state:
            log_reconciliation_event(
                ReconciliationAuditEvent.ITEM_RECONCILED,
                item.id,
                {"from_state": item.state.value, "to_state": updated_item.state.value},
                account_id=item.account_id,
                actor=actor
            )
        return await self._load_item(item.id)

    # ==================== Release ====================

    async def release_all(self, item: ReconcilableItem) -> ChangeSet:
        """
        Change set deleting every allocation of ``item`` and restoring the
        affected documents. The item itself is not included.
        """
        allocations: List[Allocation] = await self.provider.list_allocations(item_id=item.id)
        changes = ChangeSet()
        if not allocations:
            return changes

        released: Dict[str, MonetaryAmount] = OrderedDict()
        for allocation in allocations:
            released[allocation.document_id] = (
                released.get(allocation.document_id, MonetaryAmount.zero(item.currency))
                + allocation.amount_applied
            )
            changes.remove_allocation(allocation.id)

        documents = await self.provider.get_documents(list(released))
        for document_id, amount in released.items():
            document = documents.get(document_id)
            if document is None:
                raise NotFound(f"Document {document_id} not found", {"document_id": document_id})
            changes.update_document(
                document.copy(amount_paid=document.amount_paid - amount),
                document.version
            )
        return changes
