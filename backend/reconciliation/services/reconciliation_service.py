"""
Reconciliation Service

Entry point used by the API layer and by embedding applications:
- Listing unreconciled items
- Suggesting matches for one item
- Allocating / removing allocations
- Auto-reconciling an account
- Item lifecycle (create, update, confirm, cancel)
- Cash-book auto allocation (best match, then FIFO)
- Statistics

The service is stateless between calls: every operation takes explicit
identifiers and re-reads the ledger through its provider.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Any, List, Optional, Sequence

from reconciliation.errors import NotFound, InvalidAmount
from reconciliation.matching_config import MatchingConfigRegistry
from reconciliation.matching_rules.matcher import Matcher, RankedCandidate, RankedCandidates
from reconciliation.matching_rules.scorers import TextSimilarity, sequence_similarity
from reconciliation.models import (
    ReconcilableItem,
    Allocation,
    AllocationRequest,
    ItemKind,
    ItemState,
    generate_id,
    utc_now,
)
from reconciliation.money import MonetaryAmount
from reconciliation.providers.base import LedgerProvider, ChangeSet
from reconciliation.services.allocator import Allocator
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.services.auto_reconciler import AutoReconciler, AutoReconcileResult
from reconciliation.services.candidates import load_candidates, document_type_for
from reconciliation.state_machine import ItemAction, OPEN_STATES, ensure_allowed, transition

logger = logging.getLogger(__name__)


# Fields that may be edited while an item is still a draft
EDITABLE_FIELDS = frozenset({
    "date",
    "amount",
    "account_id",
    "counterparty_id",
    "counterparty_name",
    "description",
    "reference",
})

# Editable fields that cannot be cleared
REQUIRED_FIELDS = frozenset({"date", "amount", "description"})


@dataclass
class AutoAllocateResult:
    """Result of a cash-book auto allocation."""
    item: ReconcilableItem
    mode: str  # "best_match", "fifo" or "none"
    allocations: List[AllocationRequest] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item": self.item.to_dict(),
            "mode": self.mode,
            "allocations": [
                {
                    "document_id": a.document_id,
                    "amount": a.amount.to_string(),
                    "currency": a.amount.currency
                }
                for a in self.allocations
            ]
        }


class ReconciliationService:
    """
    Facade over the Matcher, Allocator and Auto-Reconciler.
    """

    def __init__(
        self,
        provider: LedgerProvider,
        config_registry: Optional[MatchingConfigRegistry] = None,
        similarity: TextSimilarity = sequence_similarity
    ):
        self.provider = provider
        self.config_registry = config_registry or MatchingConfigRegistry()
        self.similarity = similarity
        self.allocator = Allocator(provider)
        self.auto_reconciler = AutoReconciler(
            provider,
            config_registry=self.config_registry,
            allocator=self.allocator,
            similarity=similarity
        )

    def matcher_for(self, kind: ItemKind) -> Matcher:
        return Matcher(self.config_registry.get_config(kind), self.similarity)

    # ==================== Queries ====================

    async def get_item(self, item_id: str) -> ReconcilableItem:
        item = await self.provider.get_item(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found", {"item_id": item_id})
        return item

    async def list_unreconciled(self, account_id: Optional[str] = None) -> List[ReconcilableItem]:
        """
        Items that still need work: drafts awaiting confirmation and
        confirmed items with an unallocated amount. Ordered by date, id.
        """
        items = await self.provider.list_items(
            account_id=account_id,
            states=list(OPEN_STATES)
        )
        return [item for item in items if not item.is_fully_allocated]

    async def list_allocations(self, item_id: str) -> List[Allocation]:
        item = await self.get_item(item_id)
        return await self.provider.list_allocations(item_id=item.id)

    async def rank_candidates(self, item_id: str) -> RankedCandidates:
        """
        Ranked candidate documents for an item.

        Args:
            item_id: Item to find candidates for

        Returns:
            RankedCandidates over a fresh read of the open document pool
        """
        item = await self.get_item(item_id)
        matcher = self.matcher_for(item.kind)
        if item.state not in OPEN_STATES or item.is_fully_allocated:
            return matcher.suggest(item, [])

        candidates = await load_candidates(self.provider, matcher, item)

        log_reconciliation_event(
            ReconciliationAuditEvent.CANDIDATES_FOUND,
            item.id,
            {
                "candidates_count": len(candidates),
                "best_score": candidates.best.score if candidates.best else None,
                "ambiguous": candidates.is_ambiguous()
            },
            account_id=item.account_id
        )
        return candidates

    async def suggest_matches(self, item_id: str, limit: Optional[int] = None) -> List[RankedCandidate]:
        candidates = await self.rank_candidates(item_id)
        return candidates.top(limit)

    async def get_stats(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Item counts by state and allocation totals per currency.

        Cancelled items are counted but left out of the totals and of the
        reconciliation rate.
        """
        items = await self.provider.list_items(account_id=account_id)

        by_state = {state.value: 0 for state in ItemState}
        by_kind = {kind.value: 0 for kind in ItemKind}
        totals: Dict[str, Dict[str, MonetaryAmount]] = OrderedDict()
        active = 0
        settled = 0

        for item in items:
            by_state[item.state.value] += 1
            by_kind[item.kind.value] += 1
            if item.state == ItemState.CANCELLED:
                continue

            active += 1
            if item.state == ItemState.RECONCILED or (
                item.state == ItemState.CONFIRMED and item.is_fully_allocated
            ):
                settled += 1

            zero = MonetaryAmount.zero(item.currency)
            bucket = totals.setdefault(item.currency, {
                "amount": zero, "allocated": zero, "unallocated": zero
            })
            bucket["amount"] = bucket["amount"] + item.absolute_amount
            bucket["allocated"] = bucket["allocated"] + item.amount_allocated
            bucket["unallocated"] = bucket["unallocated"] + item.amount_unallocated

        return {
            "account_id": account_id,
            "total_items": len(items),
            "by_state": by_state,
            "by_kind": by_kind,
            "totals": {
                currency: {name: amount.to_string() for name, amount in bucket.items()}
                for currency, bucket in sorted(totals.items())
            },
            "reconciliation_rate": round(settled / active, 4) if active else 0.0
        }

    # ==================== Lifecycle ====================

    async def create_item(
        self,
        kind: ItemKind,
        date: date,
        amount: MonetaryAmount,
        description: str = "",
        account_id: Optional[str] = None,
        counterparty_id: Optional[str] = None,
        counterparty_name: Optional[str] = None,
        reference: Optional[str] = None,
        item_id: Optional[str] = None,
        actor: str = "system"
    ) -> ReconcilableItem:
        """Register a new item in draft."""
        if amount.is_zero:
            raise InvalidAmount("Item amount must not be zero", {"amount": amount.to_string()})

        item = ReconcilableItem(
            id=item_id or generate_id(),
            kind=ItemKind(kind),
            date=date,
            amount=amount,
            description=description or "",
            account_id=account_id,
            counterparty_id=counterparty_id,
            counterparty_name=counterparty_name,
            reference=reference
        )
        created = await self.provider.add_item(item)

        log_reconciliation_event(
            ReconciliationAuditEvent.ITEM_CREATED,
            created.id,
            {
                "kind": created.kind.value,
                "amount": created.amount.to_string(),
                "currency": created.currency
            },
            account_id=created.account_id,
            actor=actor
        )
        return created

    async def update_item(self, item_id: str, actor: str = "system", **changes) -> ReconcilableItem:
        """
        Edit a draft item.

        Args:
            item_id: Item to edit
            **changes: Any of EDITABLE_FIELDS

        Returns:
            Updated item
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise TypeError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        cleared = sorted(name for name in REQUIRED_FIELDS if name in changes and changes[name] is None)
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {', '.join(cleared)}")

        item = await self.get_item(item_id)
        ensure_allowed(item, ItemAction.UPDATE)

        amount = changes.get("amount")
        if amount is not None:
            if amount.is_zero:
                raise InvalidAmount("Item amount must not be zero", {"amount": amount.to_string()})
            # Drafts carry no allocations, so the allocated total simply follows the currency
            changes["amount_allocated"] = MonetaryAmount.zero(amount.currency)

        updated = item.copy(**changes)
        await self._commit_item(item, updated)

        log_reconciliation_event(
            ReconciliationAuditEvent.ITEM_UPDATED,
            item.id,
            {"fields": sorted(k for k in changes if k != "amount_allocated")},
            account_id=updated.account_id,
            actor=actor
        )
        return await self.get_item(item.id)

    async def confirm(self, item_id: str, user_id: Optional[str] = None) -> ReconcilableItem:
        """
        Confirm a draft item, freezing everything but its allocations.

        Args:
            item_id: Item to confirm
            user_id: ID of the user confirming

        Returns:
            Confirmed item
        """
        item = await self.get_item(item_id)
        confirmed = transition(item, ItemAction.CONFIRM).copy(
            confirmed_at=utc_now(),
            confirmed_by=user_id
        )
        await self._commit_item(item, confirmed)

        log_reconciliation_event(
            ReconciliationAuditEvent.ITEM_CONFIRMED,
            item.id,
            {"amount": item.amount.to_string(), "currency": item.currency},
            account_id=item.account_id,
            actor=user_id or "system"
        )
        return await self.get_item(item.id)

    async def cancel(self, item_id: str, actor: str = "system") -> ReconcilableItem:
        """
        Cancel a draft or confirmed item.

        Every allocation of the item is deleted and the amounts are
        restored on the affected documents, in the same commit as the
        state change.
        """
        item = await self.get_item(item_id)
        cancelled = transition(item, ItemAction.CANCEL).copy(
            amount_allocated=MonetaryAmount.zero(item.currency)
        )

        changes = await self.allocator.release_all(item)
        released = len(changes.removed_allocation_ids)
        changes.update_item(cancelled, item.version)
        await self.provider.commit(changes)

        log_reconciliation_event(
            ReconciliationAuditEvent.ITEM_CANCELLED,
            item.id,
            {
                "from_state": item.state.value,
                "allocations_released": released,
                "amount_released": item.amount_allocated.to_string()
            },
            account_id=item.account_id,
            actor=actor
        )
        return await self.get_item(item.id)

    async def _commit_item(self, before: ReconcilableItem, after: ReconcilableItem) -> None:
        await self.provider.commit(ChangeSet().update_item(after, before.version))

    # ==================== Allocation ====================

    async def allocate(
        self,
        item_id: str,
        allocations: Sequence[AllocationRequest],
        actor: str = "system"
    ) -> ReconcilableItem:
        return await self.allocator.apply(item_id, allocations, actor=actor)

    async def remove_allocation(self, item_id: str, allocation_id: str, actor: str = "system") -> ReconcilableItem:
        return await self.allocator.remove(item_id, allocation_id, actor=actor)

    async def update_allocation(
        self,
        item_id: str,
        allocation_id: str,
        amount: MonetaryAmount,
        actor: str = "system"
    ) -> ReconcilableItem:
        return await self.allocator.update(item_id, allocation_id, amount, actor=actor)

    async def auto_reconcile(
        self,
        account_id: Optional[str] = None,
        item_ids: Optional[Sequence[str]] = None,
        actor: str = "system"
    ) -> AutoReconcileResult:
        return await self.auto_reconciler.run(account_id=account_id, item_ids=item_ids, actor=actor)

    async def auto_allocate(self, item_id: str, actor: str = "system") -> AutoAllocateResult:
        """
        Allocate a confirmed item automatically.

        Uses the Matcher's best candidate when it is an unambiguous exact
        match above the auto-accept threshold. Otherwise spreads the
        unallocated amount over the counterparty's open documents, oldest
        due date first. Either way the allocation is one atomic apply.

        Args:
            item_id: Item to allocate

        Returns:
            AutoAllocateResult; mode is "none" when nothing could be allocated
        """
        item = await self.get_item(item_id)
        ensure_allowed(item, ItemAction.ALLOCATE)

        if item.is_fully_allocated:
            return AutoAllocateResult(item=item, mode="none")

        matcher = self.matcher_for(item.kind)
        config = matcher.config
        candidates = await load_candidates(self.provider, matcher, item)
        best = candidates.best

        if (
            best is not None
            and best.amount_exact
            and best.score >= config.auto_accept_threshold
            and not candidates.is_ambiguous(config.ambiguity_epsilon)
        ):
            requests = [AllocationRequest(
                document_id=best.document_id,
                amount=item.amount_unallocated,
                expected_amount_due=best.document.amount_due
            )]
            updated = await self.allocator.apply(item.id, requests, actor=actor)
            return AutoAllocateResult(item=updated, mode="best_match", allocations=requests)

        if not item.counterparty_id:
            return AutoAllocateResult(item=item, mode="none")

        documents = await self.provider.list_open_documents(
            currency=item.currency,
            counterparty_id=item.counterparty_id,
            document_type=document_type_for(item)
        )

        requests = []
        remaining = item.amount_unallocated
        for document in documents:
            if remaining.is_zero:
                break
            amount = min(remaining, document.amount_due)
            if amount.is_positive:
                requests.append(AllocationRequest(
                    document_id=document.id,
                    amount=amount,
                    expected_amount_due=document.amount_due
                ))
                remaining = remaining - amount

        if not requests:
            return AutoAllocateResult(item=item, mode="none")

        updated = await self.allocator.apply(item.id, requests, actor=actor)
        return AutoAllocateResult(item=updated, mode="fifo", allocations=requests)
