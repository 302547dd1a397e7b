"""
Candidate pool loading.

Reads the current open documents an item could be allocated to and
hands them to the Matcher. Called afresh for every suggestion so that
rankings always reflect the ledger as it is now.
"""

from reconciliation.matching_rules.matcher import Matcher, RankedCandidates
from reconciliation.models import ReconcilableItem, DocumentType, Direction
from reconciliation.providers.base import LedgerProvider


def document_type_for(item: ReconcilableItem) -> DocumentType:
    if item.direction == Direction.INFLOW:
        return DocumentType.CUSTOMER_INVOICE
    return DocumentType.VENDOR_BILL


async def load_candidates(
    provider: LedgerProvider,
    matcher: Matcher,
    item: ReconcilableItem
) -> RankedCandidates:
    counterparty_id = None
    if matcher.config.restrict_to_counterparty and item.counterparty_id:
        counterparty_id = item.counterparty_id

    documents = await provider.list_open_documents(
        currency=item.currency,
        counterparty_id=counterparty_id,
        document_type=document_type_for(item)
    )
    return matcher.suggest(item, documents)
