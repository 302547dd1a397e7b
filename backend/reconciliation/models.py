"""
Reconciliation Domain Models

Entities the engine reads from and writes to the ledger:
- ReconcilableItem: a bank transaction or cash-book entry
- OpenDocument: a customer invoice or vendor bill with money still due
- Allocation: part of an item's amount applied against one document

Amounts are MonetaryAmount values; signs follow the bank statement
(positive = inflow, negative = outflow).
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional

from reconciliation.money import MonetaryAmount


def generate_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ItemKind(str, Enum):
    """Kinds of items that can be allocated against documents."""
    BANK_TRANSACTION = "bank_transaction"
    CASH_ENTRY = "cash_entry"


class ItemState(str, Enum):
    """Lifecycle states of a reconcilable item."""
    DRAFT = "draft"             # Editable, not yet booked
    CONFIRMED = "confirmed"     # Booked; only allocations may change
    RECONCILED = "reconciled"   # Bank transaction fully allocated
    CANCELLED = "cancelled"     # Terminal; allocations released


class Direction(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class DocumentType(str, Enum):
    """
    Accounting documents that payments settle.

    Customer invoices are paid by inflows, vendor bills by outflows.
    """
    CUSTOMER_INVOICE = "customer_invoice"
    VENDOR_BILL = "vendor_bill"

    @property
    def settled_by(self) -> Direction:
        if self is DocumentType.CUSTOMER_INVOICE:
            return Direction.INFLOW
        return Direction.OUTFLOW


class PaymentState(str, Enum):
    NOT_PAID = "not_paid"
    PARTIAL = "partial"
    PAID = "paid"


@dataclass
class ReconcilableItem:
    """
    A bank transaction or cash-book entry.

    ``amount_allocated`` is always non-negative and never exceeds
    ``|amount|``. ``version`` is bumped by the ledger on every write.
    """
    id: str
    kind: ItemKind
    date: date
    amount: MonetaryAmount
    description: str = ""
    account_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    counterparty_name: Optional[str] = None
    reference: Optional[str] = None
    state: ItemState = ItemState.DRAFT
    amount_allocated: Optional[MonetaryAmount] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    version: int = 1

    def __post_init__(self):
        if self.amount_allocated is None:
            self.amount_allocated = MonetaryAmount.zero(self.amount.currency)

    @property
    def currency(self) -> str:
        return self.amount.currency

    @property
    def absolute_amount(self) -> MonetaryAmount:
        return abs(self.amount)

    @property
    def amount_unallocated(self) -> MonetaryAmount:
        return self.absolute_amount - self.amount_allocated

    @property
    def is_fully_allocated(self) -> bool:
        return self.amount_unallocated.is_zero

    @property
    def direction(self) -> Direction:
        return Direction.OUTFLOW if self.amount.is_negative else Direction.INFLOW

    def copy(self, **changes) -> "ReconcilableItem":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "account_id": self.account_id,
            "date": self.date.isoformat(),
            "amount": self.amount.to_string(),
            "currency": self.currency,
            "direction": self.direction.value,
            "counterparty_id": self.counterparty_id,
            "counterparty_name": self.counterparty_name,
            "description": self.description,
            "reference": self.reference,
            "state": self.state.value,
            "amount_allocated": self.amount_allocated.to_string(),
            "amount_unallocated": self.amount_unallocated.to_string(),
            "is_fully_allocated": self.is_fully_allocated,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "confirmed_by": self.confirmed_by,
            "version": self.version
        }


@dataclass
class OpenDocument:
    """
    An invoice or bill. ``amount_due`` never goes below zero; a document
    with nothing due drops out of the open pool.
    """
    id: str
    document_type: DocumentType
    counterparty_id: str
    amount_total: MonetaryAmount
    due_date: date
    amount_paid: Optional[MonetaryAmount] = None
    number: Optional[str] = None
    counterparty_name: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        if self.amount_paid is None:
            self.amount_paid = MonetaryAmount.zero(self.amount_total.currency)

    @property
    def currency(self) -> str:
        return self.amount_total.currency

    @property
    def amount_due(self) -> MonetaryAmount:
        return self.amount_total - self.amount_paid

    @property
    def is_open(self) -> bool:
        return self.amount_due.is_positive

    @property
    def payment_state(self) -> PaymentState:
        if self.amount_due.is_zero:
            return PaymentState.PAID
        if self.amount_paid.is_zero:
            return PaymentState.NOT_PAID
        return PaymentState.PARTIAL

    def copy(self, **changes) -> "OpenDocument":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_type": self.document_type.value,
            "number": self.number,
            "counterparty_id": self.counterparty_id,
            "counterparty_name": self.counterparty_name,
            "currency": self.currency,
            "amount_total": self.amount_total.to_string(),
            "amount_paid": self.amount_paid.to_string(),
            "amount_due": self.amount_due.to_string(),
            "payment_state": self.payment_state.value,
            "due_date": self.due_date.isoformat(),
            "version": self.version
        }


@dataclass
class Allocation:
    """Part of an item's amount applied against one document."""
    id: str
    item_id: str
    document_id: str
    amount_applied: MonetaryAmount
    created_at: datetime = field(default_factory=utc_now)

    @property
    def currency(self) -> str:
        return self.amount_applied.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "document_id": self.document_id,
            "amount_applied": self.amount_applied.to_string(),
            "currency": self.currency,
            "created_at": self.created_at.isoformat()
        }


@dataclass
class AllocationRequest:
    """
    One requested (document, amount) line.

    ``expected_amount_due`` is the document's amount due as last seen by
    the caller; if set and the ledger now disagrees, the request is
    rejected with Conflict.
    """
    document_id: str
    amount: MonetaryAmount
    expected_amount_due: Optional[MonetaryAmount] = None
