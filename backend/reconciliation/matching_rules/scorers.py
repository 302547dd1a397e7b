"""
Match Scoring Signals

Each signal scores one (item, document) pair in [0, 1]:
- amount: exact match of amount due vs unallocated amount, decaying
  linearly to 0 at the configured relative tolerance
- counterparty: linked counterparty identity, else the document number
  quoted in the item's reference or description, else fuzzy text
  similarity between the item's free text and the document's
  counterparty name
- date: proximity of the item date to the document due date, decaying
  linearly to 0 at the configured window

Both text comparisons are pluggable: any ``(str, str) -> float`` callable
returning a similarity ratio in [0, 1] can replace the default similarity,
and any ``(text, number) -> bool`` callable the default number lookup.
"""

import re
from difflib import SequenceMatcher
from typing import Callable, Iterable, Optional

from reconciliation.matching_config import MatchingConfig
from reconciliation.models import ReconcilableItem, OpenDocument


TextSimilarity = Callable[[str, str], float]
ReferenceMatch = Callable[[str, str], bool]

_NON_WORD = re.compile(r"[^\w]+", re.UNICODE)

# Shortest name that may match by containment alone
MIN_CONTAINED_LENGTH = 4


def normalise_text(value: Optional[str]) -> str:
    """Lower-case, strip punctuation and collapse whitespace."""
    if not value:
        return ""
    return " ".join(_NON_WORD.sub(" ", value.lower()).split())


def sequence_similarity(left: str, right: str) -> float:
    """
    Default text similarity.

    A counterparty name contained in the text (e.g. a bank description
    "SEPA CT ACME GMBH INV 1042") counts as a full match; otherwise the
    difflib ratio is used.
    """
    left = normalise_text(left)
    right = normalise_text(right)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    shorter, longer = sorted((left, right), key=len)
    if len(shorter) >= MIN_CONTAINED_LENGTH and re.search(rf"\b{re.escape(shorter)}\b", longer):
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def quotes_document_number(text: str, number: str) -> bool:
    """True when ``number`` appears as whole words in ``text`` ("INV-1042" in "Payment inv 1042")."""
    text = normalise_text(text)
    number = normalise_text(number)
    if not text or not number:
        return False
    return re.search(rf"\b{re.escape(number)}\b", text) is not None


def score_amount(item: ReconcilableItem, document: OpenDocument, config: MatchingConfig) -> float:
    """1.0 on exact match, linear decay to 0 at ``amount_tolerance``."""
    wanted = item.amount_unallocated.minor_units
    due = document.amount_due.minor_units

    if wanted == due:
        return 1.0
    if wanted <= 0 or due <= 0:
        return 0.0

    relative_diff = abs(due - wanted) / wanted
    if relative_diff >= config.amount_tolerance:
        return 0.0
    return 1.0 - relative_diff / config.amount_tolerance


def _item_texts(item: ReconcilableItem) -> Iterable[str]:
    for text in (item.counterparty_name, item.description):
        if text:
            yield text


def score_counterparty(
    item: ReconcilableItem,
    document: OpenDocument,
    config: MatchingConfig,
    similarity: TextSimilarity = sequence_similarity,
    reference_match: ReferenceMatch = quotes_document_number
) -> float:
    """
    1.0 when the item is linked to the document's counterparty.

    Items linked to another counterparty score 0. An unlinked item that
    quotes the document number in its reference or description also
    scores 1.0; otherwise it earns partial credit (at most
    ``fuzzy_max_credit``) for free-text similarity with the document's
    counterparty name.
    """
    if item.counterparty_id:
        return 1.0 if item.counterparty_id == document.counterparty_id else 0.0

    if document.number and any(
        reference_match(text, document.number)
        for text in (item.reference, item.description) if text
    ):
        return 1.0

    if not document.counterparty_name:
        return 0.0

    best = max(
        (similarity(text, document.counterparty_name) for text in _item_texts(item)),
        default=0.0
    )
    if best < config.fuzzy_min_ratio:
        return 0.0
    return config.fuzzy_max_credit * min(best, 1.0)


def score_date(item: ReconcilableItem, document: OpenDocument, config: MatchingConfig) -> float:
    """1.0 on the due date, linear decay to 0 at ``date_window_days``."""
    gap = abs((item.date - document.due_date).days)
    if gap >= config.date_window_days:
        return 0.0
    return 1.0 - gap / config.date_window_days
