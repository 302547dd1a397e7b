"""
Reconciliation Ledger Database Models

Tables:
- reconcilable_items: bank transactions and cash-book entries
- open_documents: customer invoices and vendor bills
- allocations: item amounts applied against documents

Money columns hold integer minor units next to a 3-letter currency code.
Every mutable row carries a ``version`` used for optimistic concurrency.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, BigInteger, Integer, Date, DateTime,
    ForeignKey, Index, CheckConstraint
)

from database.connection import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReconcilableItemDB(Base):
    """
    Bank transaction or cash-book entry awaiting allocation.
    """
    __tablename__ = "reconcilable_items"

    id = Column(String(36), primary_key=True)
    kind = Column(String(20), nullable=False)
    account_id = Column(String(36), nullable=True, index=True)

    date = Column(Date, nullable=False, index=True)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)

    counterparty_id = Column(String(36), nullable=True, index=True)
    counterparty_name = Column(Text, nullable=True)
    description = Column(Text, nullable=False, default="")
    reference = Column(String(255), nullable=True)

    state = Column(String(20), nullable=False, default="draft", index=True)
    amount_allocated_minor = Column(BigInteger, nullable=False, default=0)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("kind IN ('bank_transaction', 'cash_entry')", name="reconcilable_items_kind_check"),
        CheckConstraint(
            "state IN ('draft', 'confirmed', 'reconciled', 'cancelled')",
            name="reconcilable_items_state_check"
        ),
        CheckConstraint(
            "amount_allocated_minor >= 0 AND amount_allocated_minor <= ABS(amount_minor)",
            name="reconcilable_items_allocated_check"
        ),
        Index("idx_reconcilable_items_account_state", "account_id", "state"),
    )


class OpenDocumentDB(Base):
    """
    Customer invoice or vendor bill.
    """
    __tablename__ = "open_documents"

    id = Column(String(36), primary_key=True)
    document_type = Column(String(20), nullable=False)
    number = Column(String(64), nullable=True)

    counterparty_id = Column(String(36), nullable=False, index=True)
    counterparty_name = Column(Text, nullable=True)

    currency = Column(String(3), nullable=False)
    amount_total_minor = Column(BigInteger, nullable=False)
    amount_paid_minor = Column(BigInteger, nullable=False, default=0)
    due_date = Column(Date, nullable=False, index=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "document_type IN ('customer_invoice', 'vendor_bill')",
            name="open_documents_type_check"
        ),
        CheckConstraint(
            "amount_paid_minor >= 0 AND amount_paid_minor <= amount_total_minor",
            name="open_documents_paid_check"
        ),
        Index("idx_open_documents_currency_counterparty", "currency", "counterparty_id"),
    )


class AllocationDB(Base):
    """
    Amount of an item applied to one document.
    """
    __tablename__ = "allocations"

    id = Column(String(36), primary_key=True)
    item_id = Column(String(36), ForeignKey("reconcilable_items.id"), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("open_documents.id"), nullable=False, index=True)
    amount_applied_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("amount_applied_minor > 0", name="allocations_positive_check"),
    )
