"""
Shared fixtures for the reconciliation engine tests.

Factories build entities with sensible defaults so each test only spells
out what it is about.
"""

import pytest
from datetime import date

from reconciliation.models import (
    ReconcilableItem,
    OpenDocument,
    ItemKind,
    ItemState,
    DocumentType,
)
from reconciliation.money import MonetaryAmount
from reconciliation.providers.memory import InMemoryLedgerProvider


TODAY = date(2024, 3, 1)


@pytest.fixture(autouse=True)
def _test_environment(monkeypatch):
    """Settings are cached; keep each test on a known environment."""
    from config import get_settings

    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("INTERNAL_API_KEY", "test-internal-key-0123456789abcdef0123")
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def ledger():
    return InMemoryLedgerProvider()


@pytest.fixture
def make_item():
    def _make(
        item_id="item-1",
        amount="500.00",
        currency="EUR",
        state=ItemState.CONFIRMED,
        kind=ItemKind.BANK_TRANSACTION,
        item_date=TODAY,
        allocated=None,
        **kwargs
    ):
        money = MonetaryAmount.from_decimal(amount, currency)
        return ReconcilableItem(
            id=item_id,
            kind=kind,
            date=item_date,
            amount=money,
            state=state,
            amount_allocated=MonetaryAmount.from_decimal(allocated, currency) if allocated else None,
            **kwargs
        )
    return _make


@pytest.fixture
def make_document():
    def _make(
        document_id="doc-1",
        total="500.00",
        currency="EUR",
        counterparty_id="cp-1",
        due_date=TODAY,
        paid=None,
        document_type=DocumentType.CUSTOMER_INVOICE,
        **kwargs
    ):
        return OpenDocument(
            id=document_id,
            document_type=document_type,
            counterparty_id=counterparty_id,
            amount_total=MonetaryAmount.from_decimal(total, currency),
            amount_paid=MonetaryAmount.from_decimal(paid, currency) if paid else None,
            due_date=due_date,
            **kwargs
        )
    return _make
