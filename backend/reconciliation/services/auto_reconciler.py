"""
Auto-Reconciler

Batch pass over an account's confirmed, not yet fully allocated items.
An item is allocated only when the Matcher's best candidate:
- scores at or above the auto-accept threshold
- matches the unallocated amount exactly
- is not within the ambiguity epsilon of the runner-up

Anything else is left for manual allocation. Items are handled one at a
time in date order; a domain error on one item is recorded and the batch
moves on. ProviderUnavailable stops the batch.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Sequence

from reconciliation.errors import ReconciliationError, ProviderUnavailable, NotFound
from reconciliation.matching_config import MatchingConfigRegistry
from reconciliation.matching_rules.matcher import Matcher
from reconciliation.matching_rules.scorers import TextSimilarity, sequence_similarity
from reconciliation.models import ReconcilableItem, ItemState, AllocationRequest
from reconciliation.providers.base import LedgerProvider
from reconciliation.services.allocator import Allocator
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.services.candidates import load_candidates

logger = logging.getLogger(__name__)


class ItemOutcome(str, Enum):
    AUTO_MATCHED = "auto_matched"
    SKIPPED_AMBIGUOUS = "skipped_ambiguous"
    SKIPPED_NO_CANDIDATE = "skipped_no_candidate"
    SKIPPED_BELOW_THRESHOLD = "skipped_below_threshold"
    FAILED = "failed"


@dataclass
class AutoReconcileResult:
    """Result of an auto-reconcile run."""
    run_id: str
    account_id: Optional[str]
    processed: int = 0
    auto_matched: int = 0
    skipped_ambiguous: int = 0
    skipped_no_candidate: int = 0
    skipped_below_threshold: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_ambiguous + self.skipped_no_candidate + self.skipped_below_threshold

    def record(self, item: ReconcilableItem, outcome: ItemOutcome, **details) -> None:
        self.processed += 1
        if outcome == ItemOutcome.AUTO_MATCHED:
            self.auto_matched += 1
        elif outcome == ItemOutcome.SKIPPED_AMBIGUOUS:
            self.skipped_ambiguous += 1
        elif outcome == ItemOutcome.SKIPPED_NO_CANDIDATE:
            self.skipped_no_candidate += 1
        elif outcome == ItemOutcome.SKIPPED_BELOW_THRESHOLD:
            self.skipped_below_threshold += 1
        self.outcomes.append({"item_id": item.id, "outcome": outcome.value, **details})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "account_id": self.account_id,
            "processed": self.processed,
            "matched": self.auto_matched,
            "skipped": self.skipped,
            "skipped_ambiguous": self.skipped_ambiguous,
            "skipped_no_candidate": self.skipped_no_candidate,
            "skipped_below_threshold": self.skipped_below_threshold,
            "failed": list(self.failed),
            "outcomes": list(self.outcomes)
        }


class AutoReconciler:
    """
    Runs Matcher + Allocator over a batch of items.
    """

    def __init__(
        self,
        provider: LedgerProvider,
        config_registry: Optional[MatchingConfigRegistry] = None,
        allocator: Optional[Allocator] = None,
        similarity: TextSimilarity = sequence_similarity
    ):
        self.provider = provider
        self.config_registry = config_registry or MatchingConfigRegistry()
        self.allocator = allocator or Allocator(provider)
        self.similarity = similarity

    async def run(
        self,
        account_id: Optional[str] = None,
        item_ids: Optional[Sequence[str]] = None,
        actor: str = "system"
    ) -> AutoReconcileResult:
        """
        Auto-reconcile an account or an explicit list of items.

        Args:
            account_id: Restrict the batch to one account
            item_ids: Explicit items to process instead of every open item

        Returns:
            AutoReconcileResult with per-item outcomes

        Raises:
            ProviderUnavailable: the ledger could not be reached; items
                processed before the failure keep their allocations
        """
        result = AutoReconcileResult(run_id=str(uuid.uuid4()), account_id=account_id)

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            None,
            {"run_id": result.run_id, "item_ids": list(item_ids) if item_ids else None},
            account_id=account_id,
            actor=actor
        )

        try:
            items = await self._load_batch(account_id, item_ids, result)
            for item in items:
                await self._process(item, result, actor)
        except ProviderUnavailable as e:
            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_ABORTED,
                None,
                {"run_id": result.run_id, "processed": result.processed, "reason": e.message},
                account_id=account_id,
                actor=actor
            )
            raise

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            None,
            {
                "run_id": result.run_id,
                "processed": result.processed,
                "auto_matched": result.auto_matched,
                "skipped_ambiguous": result.skipped_ambiguous,
                "skipped_no_candidate": result.skipped_no_candidate,
                "skipped_below_threshold": result.skipped_below_threshold,
                "failed": len(result.failed)
            },
            account_id=account_id,
            actor=actor
        )
        return result

    async def _load_batch(
        self,
        account_id: Optional[str],
        item_ids: Optional[Sequence[str]],
        result: AutoReconcileResult
    ) -> List[ReconcilableItem]:
        if item_ids is None:
            items = await self.provider.list_items(account_id=account_id, states=[ItemState.CONFIRMED])
        else:
            items = []
            for item_id in item_ids:
                item = await self.provider.get_item(item_id)
                if item is None:
                    error = NotFound(f"Item {item_id} not found", {"item_id": item_id})
                    result.failed.append({"item_id": item_id, **error.to_dict()})
                    continue
                if account_id is not None and item.account_id != account_id:
                    continue
                if item.state == ItemState.CONFIRMED:
                    items.append(item)

        items = [item for item in items if not item.is_fully_allocated]
        items.sort(key=lambda i: (i.date, i.id))
        return items

    async def _process(self, item: ReconcilableItem, result: AutoReconcileResult, actor: str) -> None:
        matcher = Matcher(self.config_registry.get_config(item.kind), self.similarity)
        config = matcher.config

        try:
            candidates = await load_candidates(self.provider, matcher, item)
            best = candidates.best

            if best is None:
                result.record(item, ItemOutcome.SKIPPED_NO_CANDIDATE)
                return

            if best.score < config.auto_accept_threshold or not best.amount_exact:
                result.record(
                    item, ItemOutcome.SKIPPED_BELOW_THRESHOLD,
                    document_id=best.document_id, score=best.score
                )
                return

            if candidates.is_ambiguous(config.ambiguity_epsilon):
                result.record(
                    item, ItemOutcome.SKIPPED_AMBIGUOUS,
                    document_id=best.document_id, score=best.score,
                    runner_up_score=candidates[1].score
                )
                return

            await self.allocator.apply(
                item.id,
                [AllocationRequest(
                    document_id=best.document_id,
                    amount=item.amount_unallocated,
                    expected_amount_due=best.document.amount_due
                )],
                actor=actor
            )
            result.record(
                item, ItemOutcome.AUTO_MATCHED,
                document_id=best.document_id, score=best.score,
                amount=item.amount_unallocated.to_string(), currency=item.currency
            )

        except ProviderUnavailable:
            raise
        except ReconciliationError as e:
            logger.warning(f"Auto-reconcile failed for item {item.id}: {e.kind}: {e.message}")
            result.processed += 1
            result.failed.append({"item_id": item.id, **e.to_dict()})
            result.outcomes.append({"item_id": item.id, "outcome": ItemOutcome.FAILED.value, "kind": e.kind})
