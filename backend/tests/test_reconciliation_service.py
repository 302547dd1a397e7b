"""
Unit Tests for ReconciliationService

Tests:
- Item lifecycle (create, update, confirm, cancel)
- Suggestions and unreconciled listing
- Cash-book auto allocation (best match, FIFO)
- Statistics

Run with: pytest tests/test_reconciliation_service.py -v
"""

import pytest
from datetime import timedelta

from reconciliation.errors import InvalidAmount, InvalidStateTransition, NotFound
from reconciliation.models import AllocationRequest, ItemKind, ItemState
from reconciliation.money import MonetaryAmount
from reconciliation.services.reconciliation_service import ReconciliationService

from conftest import TODAY


def eur(value):
    return MonetaryAmount.from_decimal(value, "EUR")


@pytest.fixture
def service(ledger):
    return ReconciliationService(ledger)


class TestLifecycle:
    """Test item lifecycle operations."""

    @pytest.mark.asyncio
    async def test_create_item_starts_as_draft(self, service):
        item = await service.create_item(
            kind=ItemKind.BANK_TRANSACTION,
            date=TODAY,
            amount=eur("120.00"),
            description="Incoming transfer",
            account_id="acc-1"
        )
        assert item.state == ItemState.DRAFT
        assert item.amount_allocated.is_zero
        assert (await service.get_item(item.id)).description == "Incoming transfer"

    @pytest.mark.asyncio
    async def test_create_rejects_zero_amount(self, service):
        with pytest.raises(InvalidAmount):
            await service.create_item(kind=ItemKind.CASH_ENTRY, date=TODAY, amount=eur("0"))

    @pytest.mark.asyncio
    async def test_update_draft(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT)])

        item = await service.update_item("item-1", amount=MonetaryAmount.from_decimal("99.00", "USD"), reference="R-1")

        assert item.amount.to_string() == "99.00"
        assert item.currency == "USD"
        assert item.amount_allocated.currency == "USD"
        assert item.reference == "R-1"
        assert item.version == 2

    @pytest.mark.asyncio
    async def test_update_confirmed_is_rejected(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.CONFIRMED)])
        with pytest.raises(InvalidStateTransition):
            await service.update_item("item-1", description="changed")

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT)])
        with pytest.raises(TypeError):
            await service.update_item("item-1", state=ItemState.RECONCILED)

    @pytest.mark.asyncio
    async def test_update_cannot_clear_required_fields(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT)])
        for field in ("date", "amount", "description"):
            with pytest.raises(ValueError):
                await service.update_item("item-1", **{field: None})

        item = await service.get_item("item-1")
        assert item.date == TODAY
        assert item.version == 1

    @pytest.mark.asyncio
    async def test_update_can_clear_optional_fields(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT, reference="R-1")])
        item = await service.update_item("item-1", reference=None)
        assert item.reference is None

    @pytest.mark.asyncio
    async def test_confirm(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT)])

        item = await service.confirm("item-1", user_id="user-7")

        assert item.state == ItemState.CONFIRMED
        assert item.confirmed_by == "user-7"
        assert item.confirmed_at is not None

    @pytest.mark.asyncio
    async def test_confirm_twice_is_rejected(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT)])
        await service.confirm("item-1")
        with pytest.raises(InvalidStateTransition):
            await service.confirm("item-1")

    @pytest.mark.asyncio
    async def test_cancel_releases_allocations(self, service, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item(amount="500.00")],
            documents=[make_document("doc-1", total="200.00"), make_document("doc-2", total="400.00")]
        )
        await service.allocate("item-1", [
            AllocationRequest(document_id="doc-1", amount=eur("200.00")),
            AllocationRequest(document_id="doc-2", amount=eur("100.00")),
        ])

        item = await service.cancel("item-1")

        assert item.state == ItemState.CANCELLED
        assert item.amount_allocated.is_zero
        assert await ledger.list_allocations(item_id="item-1") == []
        documents = await ledger.get_documents(["doc-1", "doc-2"])
        assert documents["doc-1"].amount_due == eur("200.00")
        assert documents["doc-2"].amount_due == eur("400.00")

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.CANCELLED)])
        with pytest.raises(InvalidStateTransition):
            await service.cancel("item-1")

    @pytest.mark.asyncio
    async def test_unknown_item(self, service):
        with pytest.raises(NotFound):
            await service.get_item("nope")


class TestQueries:
    """Test listing and suggestions."""

    @pytest.mark.asyncio
    async def test_list_unreconciled(self, service, ledger, make_item):
        ledger.seed(items=[
            make_item("draft", state=ItemState.DRAFT),
            make_item("open"),
            make_item("done", state=ItemState.RECONCILED, allocated="500.00"),
            make_item("gone", state=ItemState.CANCELLED),
        ])

        items = await service.list_unreconciled()

        assert sorted(item.id for item in items) == ["draft", "open"]

    @pytest.mark.asyncio
    async def test_suggest_matches(self, service, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item(counterparty_id="cp-1")],
            documents=[
                make_document("A", counterparty_id="cp-1"),
                make_document("B", total="480.00", counterparty_id="cp-1"),
            ]
        )

        suggestions = await service.suggest_matches("item-1", limit=1)

        assert [s.document_id for s in suggestions] == ["A"]

    @pytest.mark.asyncio
    async def test_no_suggestions_for_reconciled_item(self, service, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item(state=ItemState.RECONCILED, allocated="500.00")],
            documents=[make_document()]
        )
        assert await service.suggest_matches("item-1") == []

    @pytest.mark.asyncio
    async def test_suggestions_reflect_current_ledger(self, service, ledger, make_item, make_document):
        ledger.seed(items=[make_item("item-1"), make_item("item-2")], documents=[make_document("A")])

        await service.allocate("item-2", [AllocationRequest(document_id="A", amount=eur("500.00"))])

        assert await service.suggest_matches("item-1") == []


class TestAutoAllocate:
    """Test cash-book auto allocation."""

    @pytest.mark.asyncio
    async def test_best_match(self, service, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item(kind=ItemKind.CASH_ENTRY, counterparty_id="cp-1")],
            documents=[make_document("A")]
        )

        result = await service.auto_allocate("item-1")

        assert result.mode == "best_match"
        assert result.item.is_fully_allocated
        assert result.item.state == ItemState.CONFIRMED

    @pytest.mark.asyncio
    async def test_fifo_by_due_date(self, service, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item(amount="250.00", kind=ItemKind.CASH_ENTRY, counterparty_id="cp-1")],
            documents=[
                make_document("late", total="200.00", due_date=TODAY + timedelta(days=30)),
                make_document("early", total="100.00", due_date=TODAY - timedelta(days=30)),
                make_document("other", total="250.00", counterparty_id="cp-2"),
            ]
        )

        result = await service.auto_allocate("item-1")

        assert result.mode == "fifo"
        assert [(a.document_id, a.amount.to_string()) for a in result.allocations] == [
            ("early", "100.00"),
            ("late", "150.00"),
        ]
        assert result.item.is_fully_allocated
        assert (await ledger.get_document("late")).amount_due == eur("50.00")

    @pytest.mark.asyncio
    async def test_nothing_to_allocate(self, service, ledger, make_item):
        ledger.seed(items=[make_item(kind=ItemKind.CASH_ENTRY)])

        result = await service.auto_allocate("item-1")

        assert result.mode == "none"
        assert result.allocations == []

    @pytest.mark.asyncio
    async def test_draft_cannot_be_auto_allocated(self, service, ledger, make_item):
        ledger.seed(items=[make_item(state=ItemState.DRAFT)])
        with pytest.raises(InvalidStateTransition):
            await service.auto_allocate("item-1")


class TestStats:

    @pytest.mark.asyncio
    async def test_stats(self, service, ledger, make_item):
        ledger.seed(items=[
            make_item("a", state=ItemState.RECONCILED, allocated="500.00"),
            make_item("b", amount="-200.00", allocated="50.00"),
            make_item("c", state=ItemState.DRAFT, kind=ItemKind.CASH_ENTRY),
            make_item("d", state=ItemState.CANCELLED),
            make_item("e", amount="10.00", currency="USD"),
        ])

        stats = await service.get_stats()

        assert stats["total_items"] == 5
        assert stats["by_state"] == {"draft": 1, "confirmed": 2, "reconciled": 1, "cancelled": 1}
        assert stats["by_kind"] == {"bank_transaction": 4, "cash_entry": 1}
        assert stats["totals"]["EUR"] == {"amount": "1200.00", "allocated": "550.00", "unallocated": "650.00"}
        assert stats["totals"]["USD"]["unallocated"] == "10.00"
        assert stats["reconciliation_rate"] == 0.25

    @pytest.mark.asyncio
    async def test_empty_stats(self, service):
        stats = await service.get_stats(account_id="acc-1")
        assert stats["total_items"] == 0
        assert stats["reconciliation_rate"] == 0.0
