"""
Payment Matcher

Ranks open documents as allocation candidates for one item.

Pool filtering:
- same currency as the item
- still open (amount due > 0)
- document type settled by the item's direction
  (inflow -> customer invoice, outflow -> vendor bill)
- same counterparty, when the item is linked to one and the
  configuration restricts to it

Scoring:
- weighted sum of the amount, counterparty and date signals
- sorted by score descending, then soonest due date, then lowest id

Match Types:
- EXACT: exact amount and linked/strong counterparty
- AMOUNT_ONLY: exact amount only
- COUNTERPARTY: counterparty match with a different amount
- FUZZY: anything else above the suggestion threshold
"""

from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import Dict, Any, List, Optional, Sequence, Tuple, Iterator

from reconciliation.matching_config import MatchingConfig
from reconciliation.models import ReconcilableItem, OpenDocument
from reconciliation.money import MonetaryAmount
from reconciliation.matching_rules.scorers import (
    TextSimilarity,
    ReferenceMatch,
    sequence_similarity,
    quotes_document_number,
    score_amount,
    score_counterparty,
    score_date,
)


# Scores are rounded so that float noise cannot break ties
SCORE_PRECISION = 6


class MatchType(str, Enum):
    EXACT = "EXACT"
    AMOUNT_ONLY = "AMOUNT_ONLY"
    COUNTERPARTY = "COUNTERPARTY"
    FUZZY = "FUZZY"


@dataclass(frozen=True)
class RankedCandidate:
    """
    A scored allocation candidate.
    """
    document: OpenDocument
    score: float
    breakdown: Dict[str, float]
    match_type: MatchType
    suggested_amount: MonetaryAmount

    @property
    def document_id(self) -> str:
        return self.document.id

    @property
    def amount_exact(self) -> bool:
        return self.breakdown["amount"] == 1.0

    def sort_key(self) -> Tuple[float, Any, str]:
        return (-self.score, self.document.due_date, self.document.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document.id,
            "document_number": self.document.number,
            "document_type": self.document.document_type.value,
            "counterparty_id": self.document.counterparty_id,
            "counterparty_name": self.document.counterparty_name,
            "due_date": self.document.due_date.isoformat(),
            "amount_due": self.document.amount_due.to_string(),
            "currency": self.document.currency,
            "score": self.score,
            "breakdown": dict(self.breakdown),
            "amount_exact": self.amount_exact,
            "match_type": self.match_type.value,
            "suggested_amount": self.suggested_amount.to_string()
        }


def eligible_documents(
    item: ReconcilableItem,
    documents: Sequence[OpenDocument],
    config: MatchingConfig
) -> List[OpenDocument]:
    """Filter a document pool down to those the item may be allocated to."""
    pool = []
    for document in documents:
        if document.currency != item.currency:
            continue
        if not document.is_open:
            continue
        if document.document_type.settled_by != item.direction:
            continue
        if (
            config.restrict_to_counterparty
            and item.counterparty_id
            and document.counterparty_id != item.counterparty_id
        ):
            continue
        pool.append(document)
    return pool


class RankedCandidates:
    """
    Lazy, finite, restartable ranking.

    Nothing is scored until the ranking is first consumed. Iterating
    again replays the same ranking; the item and documents are never
    mutated.
    """

    def __init__(
        self,
        matcher: "Matcher",
        item: ReconcilableItem,
        documents: Sequence[OpenDocument]
    ):
        self._matcher = matcher
        self._item = item
        self._documents = tuple(documents)

    @property
    def item(self) -> ReconcilableItem:
        return self._item

    @cached_property
    def _ranked(self) -> Tuple[RankedCandidate, ...]:
        config = self._matcher.config
        scored = (
            self._matcher.score(self._item, document)
            for document in eligible_documents(self._item, self._documents, config)
        )
        ranked = sorted(
            (c for c in scored if c.score > config.suggest_threshold),
            key=RankedCandidate.sort_key
        )
        if config.max_candidates is not None:
            ranked = ranked[:config.max_candidates]
        return tuple(ranked)

    def __iter__(self) -> Iterator[RankedCandidate]:
        return iter(self._ranked)

    def __len__(self) -> int:
        return len(self._ranked)

    def __getitem__(self, index):
        return self._ranked[index]

    def __bool__(self) -> bool:
        return bool(self._ranked)

    def top(self, n: Optional[int] = None) -> List[RankedCandidate]:
        if n is None:
            return list(self._ranked)
        return list(self._ranked[:n])

    @property
    def best(self) -> Optional[RankedCandidate]:
        return self._ranked[0] if self._ranked else None

    def is_ambiguous(self, epsilon: Optional[float] = None) -> bool:
        """True when the runner-up is within ``epsilon`` of the best score."""
        if len(self._ranked) < 2:
            return False
        if epsilon is None:
            epsilon = self._matcher.config.ambiguity_epsilon
        return (self._ranked[0].score - self._ranked[1].score) < epsilon

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self._item.id,
            "amount_unallocated": self._item.amount_unallocated.to_string(),
            "currency": self._item.currency,
            "candidates_count": len(self._ranked),
            "candidates": [c.to_dict() for c in self._ranked],
            "ambiguous": self.is_ambiguous()
        }


class Matcher:
    """
    Scores open documents against an item.

    Stateless apart from its configuration and text comparison functions,
    so one instance may serve any number of calls.
    """

    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        similarity: TextSimilarity = sequence_similarity,
        reference_match: ReferenceMatch = quotes_document_number
    ):
        self.config = config or MatchingConfig()
        self.similarity = similarity
        self.reference_match = reference_match

    def suggest(self, item: ReconcilableItem, documents: Sequence[OpenDocument]) -> RankedCandidates:
        return RankedCandidates(self, item, documents)

    def score(self, item: ReconcilableItem, document: OpenDocument) -> RankedCandidate:
        config = self.config
        breakdown = {
            "amount": score_amount(item, document, config),
            "counterparty": score_counterparty(item, document, config, self.similarity, self.reference_match),
            "date": score_date(item, document, config),
        }
        total = (
            breakdown["amount"] * config.weight_amount +
            breakdown["counterparty"] * config.weight_counterparty +
            breakdown["date"] * config.weight_date
        )
        breakdown = {k: round(v, SCORE_PRECISION) for k, v in breakdown.items()}
        suggested = min(document.amount_due, item.amount_unallocated)

        return RankedCandidate(
            document=document,
            score=round(total, SCORE_PRECISION),
            breakdown=breakdown,
            match_type=self._determine_match_type(breakdown),
            suggested_amount=suggested
        )

    def _determine_match_type(self, breakdown: Dict[str, float]) -> MatchType:
        amount_exact = breakdown["amount"] == 1.0
        counterparty = breakdown["counterparty"]

        if amount_exact and counterparty >= self.config.fuzzy_max_credit:
            return MatchType.EXACT
        if amount_exact:
            return MatchType.AMOUNT_ONLY
        if counterparty >= self.config.fuzzy_max_credit:
            return MatchType.COUNTERPARTY
        return MatchType.FUZZY
