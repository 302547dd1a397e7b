"""
Payment Allocation & Reconciliation Engine

Provides payment matching and allocation capabilities:
- Ranked match suggestions for bank transactions and cash-book entries
- All-or-nothing allocation against open invoices and bills
- Auto-reconciliation of unambiguous exact matches
- Closed item lifecycle (draft, confirmed, reconciled, cancelled)
- Audit trail for all operations
"""

from reconciliation.errors import (
    ReconciliationError,
    InvalidStateTransition,
    InvalidAmount,
    OverAllocation,
    CurrencyMismatch,
    DirectionMismatch,
    NotFound,
    Conflict,
    ProviderUnavailable,
)
from reconciliation.money import MonetaryAmount
from reconciliation.models import (
    ItemKind,
    ItemState,
    DocumentType,
    ReconcilableItem,
    OpenDocument,
    Allocation,
    AllocationRequest,
)
from reconciliation.matching_config import MatchingConfig, MatchingConfigRegistry
from reconciliation.matching_rules import Matcher, MatchType, RankedCandidate, RankedCandidates
from reconciliation.providers import LedgerProvider, ChangeSet, InMemoryLedgerProvider
from reconciliation.services.reconciliation_service import ReconciliationService

__all__ = [
    # Errors
    'ReconciliationError',
    'InvalidStateTransition',
    'InvalidAmount',
    'OverAllocation',
    'CurrencyMismatch',
    'DirectionMismatch',
    'NotFound',
    'Conflict',
    'ProviderUnavailable',
    # Domain
    'MonetaryAmount',
    'ItemKind',
    'ItemState',
    'DocumentType',
    'ReconcilableItem',
    'OpenDocument',
    'Allocation',
    'AllocationRequest',
    # Matching
    'MatchingConfig',
    'MatchingConfigRegistry',
    'Matcher',
    'MatchType',
    'RankedCandidate',
    'RankedCandidates',
    # Ledger
    'LedgerProvider',
    'ChangeSet',
    'InMemoryLedgerProvider',
    # Service
    'ReconciliationService',
]
