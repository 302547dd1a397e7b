"""
Unit Tests for the SQL Ledger Provider

Sessions are mocked; these tests cover row mapping, the versioned
commit and the translation of connectivity failures.

Run with: pytest tests/test_sql_provider.py -v
"""

import pytest
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.exc import OperationalError

from reconciliation.errors import Conflict, NotFound, ProviderUnavailable
from reconciliation.models import Allocation, DocumentType, ItemKind, ItemState
from reconciliation.money import MonetaryAmount
from reconciliation.providers.base import ChangeSet
from reconciliation.providers.sql import (
    SqlLedgerProvider,
    item_from_row,
    item_values,
    document_from_row,
    allocation_from_row,
)


def make_session():
    session = MagicMock()
    session.execute = AsyncMock()
    session.get = AsyncMock(return_value=None)
    session.flush = AsyncMock()
    session.begin.return_value.__aexit__.return_value = False
    return session


def make_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def item_row(**overrides):
    values = dict(
        id="item-1",
        kind="bank_transaction",
        account_id="acc-1",
        date=date(2024, 3, 1),
        amount_minor=-12050,
        currency="EUR",
        counterparty_id="cp-1",
        counterparty_name="ACME",
        description=None,
        reference="INV-1",
        state="confirmed",
        amount_allocated_minor=5000,
        confirmed_at=None,
        confirmed_by=None,
        created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        version=4,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def document_row(**overrides):
    values = dict(
        id="doc-1",
        document_type="vendor_bill",
        number="B-7",
        counterparty_id="cp-1",
        counterparty_name="ACME",
        currency="EUR",
        amount_total_minor=20000,
        amount_paid_minor=5000,
        due_date=date(2024, 3, 15),
        version=2,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestRowMapping:

    def test_item_from_row(self):
        item = item_from_row(item_row())
        assert item.kind == ItemKind.BANK_TRANSACTION
        assert item.state == ItemState.CONFIRMED
        assert item.amount.to_string() == "-120.50"
        assert item.amount_unallocated.to_string() == "70.50"
        assert item.description == ""
        assert item.version == 4

    def test_item_values_round_trip(self):
        item = item_from_row(item_row())
        values = item_values(item)
        assert values["amount_minor"] == -12050
        assert values["amount_allocated_minor"] == 5000
        assert values["state"] == "confirmed"
        assert "version" not in values

    def test_document_from_row(self):
        document = document_from_row(document_row())
        assert document.document_type == DocumentType.VENDOR_BILL
        assert document.amount_due.to_string() == "150.00"
        assert document.version == 2

    def test_allocation_from_row(self):
        row = SimpleNamespace(
            id="alloc-1", item_id="item-1", document_id="doc-1",
            amount_applied_minor=5000, currency="EUR",
            created_at=datetime(2024, 3, 2, tzinfo=timezone.utc)
        )
        allocation = allocation_from_row(row)
        assert allocation.amount_applied.to_string() == "50.00"


class TestReads:

    @pytest.mark.asyncio
    async def test_get_item(self):
        session = make_session()
        session.get.return_value = item_row()
        provider = SqlLedgerProvider(make_factory(session))

        item = await provider.get_item("item-1")

        assert item.id == "item-1"

    @pytest.mark.asyncio
    async def test_get_missing_item(self):
        provider = SqlLedgerProvider(make_factory(make_session()))
        assert await provider.get_item("nope") is None

    @pytest.mark.asyncio
    async def test_list_open_documents(self):
        session = make_session()
        result = MagicMock()
        result.scalars.return_value.all.return_value = [document_row(), document_row(id="doc-2")]
        session.execute.return_value = result
        provider = SqlLedgerProvider(make_factory(session))

        documents = await provider.list_open_documents("EUR", document_type=DocumentType.VENDOR_BILL)

        assert [d.id for d in documents] == ["doc-1", "doc-2"]
        session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_documents_with_no_ids_skips_query(self):
        factory = make_factory(make_session())
        provider = SqlLedgerProvider(factory)
        assert await provider.get_documents([]) == {}
        factory.assert_not_called()


class TestCommit:

    @pytest.fixture
    def item(self):
        return item_from_row(item_row())

    @pytest.mark.asyncio
    async def test_commit_applies_versioned_updates(self, item):
        session = make_session()
        session.execute.return_value = SimpleNamespace(rowcount=1)
        provider = SqlLedgerProvider(make_factory(session))

        await provider.commit(ChangeSet().update_item(item, item.version))

        session.execute.assert_awaited_once()
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_version_is_conflict(self, item):
        session = make_session()
        session.execute.return_value = SimpleNamespace(rowcount=0)
        session.get.return_value = item_row(version=5)
        provider = SqlLedgerProvider(make_factory(session))

        with pytest.raises(Conflict) as exc_info:
            await provider.commit(ChangeSet().update_item(item, item.version))

        assert exc_info.value.details["current_version"] == 5
        session.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_row_is_not_found(self, item):
        session = make_session()
        session.execute.return_value = SimpleNamespace(rowcount=0)
        provider = SqlLedgerProvider(make_factory(session))

        with pytest.raises(NotFound):
            await provider.commit(ChangeSet().update_item(item, item.version))

    @pytest.mark.asyncio
    async def test_concurrently_removed_allocation_is_conflict(self):
        session = make_session()
        session.execute.return_value = SimpleNamespace(rowcount=0)
        provider = SqlLedgerProvider(make_factory(session))

        with pytest.raises(Conflict):
            await provider.commit(ChangeSet().remove_allocation("alloc-1"))

    @pytest.mark.asyncio
    async def test_changed_allocation_amount_is_written(self):
        session = make_session()
        session.execute.return_value = SimpleNamespace(rowcount=1)
        provider = SqlLedgerProvider(make_factory(session))
        allocation = Allocation("alloc-1", "item-1", "doc-1", MonetaryAmount(7500, "EUR"))

        await provider.commit(ChangeSet().change_allocation(allocation))

        session.execute.assert_awaited_once()
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_changing_a_missing_allocation_is_conflict(self):
        session = make_session()
        session.execute.return_value = SimpleNamespace(rowcount=0)
        provider = SqlLedgerProvider(make_factory(session))
        allocation = Allocation("alloc-1", "item-1", "doc-1", MonetaryAmount(7500, "EUR"))

        with pytest.raises(Conflict):
            await provider.commit(ChangeSet().change_allocation(allocation))
        session.flush.assert_not_awaited()


class TestAvailability:

    @pytest.mark.asyncio
    async def test_connection_failure_is_provider_unavailable(self):
        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
        )
        factory.return_value.__aexit__ = AsyncMock(return_value=False)
        provider = SqlLedgerProvider(factory)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await provider.get_item("item-1")

        assert exc_info.value.details["reason"] == "OperationalError"
        assert await provider.ping() is False

    @pytest.mark.asyncio
    async def test_ping(self):
        provider = SqlLedgerProvider(make_factory(make_session()))
        assert await provider.ping() is True
