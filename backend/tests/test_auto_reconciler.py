"""
Unit Tests for the Auto-Reconciler

Tests:
- Unambiguous exact matches are allocated
- Ambiguous, inexact and candidate-less items are skipped
- Per-item failures do not stop the batch
- ProviderUnavailable aborts the run

Run with: pytest tests/test_auto_reconciler.py -v
"""

import pytest
from datetime import timedelta

from reconciliation.errors import ProviderUnavailable
from reconciliation.matching_config import MatchingConfig, MatchingConfigRegistry
from reconciliation.models import ItemState
from reconciliation.providers.memory import InMemoryLedgerProvider
from reconciliation.services.auto_reconciler import AutoReconciler, ItemOutcome

from conftest import TODAY


def outcome_of(result, item_id):
    return next(o["outcome"] for o in result.outcomes if o["item_id"] == item_id)


class TestAutoReconcile:
    """Test the batch decision rules."""

    @pytest.mark.asyncio
    async def test_exact_counterparty_match_is_allocated(self, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item("item-1", amount="500.00", counterparty_id="cp-1")],
            documents=[
                make_document("A", total="500.00", counterparty_id="cp-1", due_date=TODAY),
                make_document("B", total="500.00", counterparty_id="cp-2", due_date=TODAY + timedelta(days=60)),
            ]
        )

        result = await AutoReconciler(ledger).run()

        assert result.auto_matched == 1
        assert result.outcomes[0]["document_id"] == "A"
        assert result.outcomes[0]["score"] == 1.0
        item = await ledger.get_item("item-1")
        assert item.state == ItemState.RECONCILED
        assert (await ledger.get_document("A")).amount_due.is_zero
        assert (await ledger.get_document("B")).amount_due.to_string() == "500.00"

    @pytest.mark.asyncio
    async def test_runner_up_from_other_counterparty_is_not_ambiguous(self, ledger, make_item, make_document):
        registry = MatchingConfigRegistry(MatchingConfig(restrict_to_counterparty=False))
        ledger.seed(
            items=[make_item("item-1", amount="500.00", counterparty_id="cp-1")],
            documents=[
                make_document("A", total="500.00", counterparty_id="cp-1", due_date=TODAY),
                make_document("B", total="500.00", counterparty_id="cp-2", due_date=TODAY + timedelta(days=60)),
            ]
        )

        result = await AutoReconciler(ledger, config_registry=registry).run()

        assert result.auto_matched == 1
        assert result.outcomes[0]["document_id"] == "A"

    @pytest.mark.asyncio
    async def test_tied_candidates_are_ambiguous(self, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item("item-1", counterparty_id="cp-1")],
            documents=[make_document("A"), make_document("B")]
        )

        result = await AutoReconciler(ledger).run()

        assert result.skipped_ambiguous == 1
        assert result.auto_matched == 0
        assert await ledger.list_allocations(item_id="item-1") == []

    @pytest.mark.asyncio
    async def test_near_tie_within_epsilon_is_ambiguous(self, ledger, make_item, make_document):
        # Same amount and counterparty, due dates one day apart: scores 1.0 vs ~0.9978
        ledger.seed(
            items=[make_item("item-1", counterparty_id="cp-1")],
            documents=[
                make_document("A", due_date=TODAY),
                make_document("B", due_date=TODAY + timedelta(days=1)),
            ]
        )

        result = await AutoReconciler(ledger).run()

        assert result.skipped_ambiguous == 1
        assert result.auto_matched == 0
        assert await ledger.list_allocations(item_id="item-1") == []
        assert (await ledger.get_item("item-1")).state == ItemState.CONFIRMED

    @pytest.mark.asyncio
    async def test_runner_up_just_outside_epsilon_is_allocated(self, ledger, make_item, make_document):
        # Ten days apart: scores 1.0 vs ~0.9778, a gap just over 0.02
        ledger.seed(
            items=[make_item("item-1", counterparty_id="cp-1")],
            documents=[
                make_document("A", due_date=TODAY),
                make_document("B", due_date=TODAY + timedelta(days=10)),
            ]
        )

        result = await AutoReconciler(ledger).run()

        assert result.auto_matched == 1
        assert result.outcomes[0]["document_id"] == "A"
        assert (await ledger.get_item("item-1")).state == ItemState.RECONCILED

    @pytest.mark.asyncio
    async def test_inexact_amount_is_below_threshold(self, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item("item-1", amount="500.00", counterparty_id="cp-1")],
            documents=[make_document("A", total="490.00")]
        )

        result = await AutoReconciler(ledger).run()

        assert result.skipped_below_threshold == 1
        assert outcome_of(result, "item-1") == ItemOutcome.SKIPPED_BELOW_THRESHOLD.value

    @pytest.mark.asyncio
    async def test_weak_score_is_below_threshold(self, ledger, make_item, make_document):
        ledger.seed(items=[make_item("item-1")], documents=[make_document("A")])

        result = await AutoReconciler(ledger).run()

        # exact amount and date, no counterparty evidence -> 0.7
        assert result.skipped_below_threshold == 1
        assert result.outcomes[0]["score"] == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_no_candidate(self, ledger, make_item):
        ledger.seed(items=[make_item("item-1")])

        result = await AutoReconciler(ledger).run()

        assert result.skipped_no_candidate == 1
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_only_open_confirmed_items_are_processed(self, ledger, make_item, make_document):
        ledger.seed(
            items=[
                make_item("draft", state=ItemState.DRAFT, counterparty_id="cp-1"),
                make_item("done", allocated="500.00", counterparty_id="cp-1"),
                make_item("open", counterparty_id="cp-1"),
            ],
            documents=[make_document("A")]
        )

        result = await AutoReconciler(ledger).run()

        assert result.processed == 1
        assert result.outcomes[0]["item_id"] == "open"

    @pytest.mark.asyncio
    async def test_account_filter(self, ledger, make_item, make_document):
        ledger.seed(
            items=[
                make_item("mine", account_id="acc-1", counterparty_id="cp-1"),
                make_item("theirs", account_id="acc-2", counterparty_id="cp-1"),
            ],
            documents=[make_document("A")]
        )

        result = await AutoReconciler(ledger).run(account_id="acc-1")

        assert [o["item_id"] for o in result.outcomes] == ["mine"]

    @pytest.mark.asyncio
    async def test_earlier_item_takes_the_document(self, ledger, make_item, make_document):
        ledger.seed(
            items=[
                make_item("late", counterparty_id="cp-1", item_date=TODAY + timedelta(days=1)),
                make_item("early", counterparty_id="cp-1"),
            ],
            documents=[make_document("A")]
        )

        result = await AutoReconciler(ledger).run()

        assert outcome_of(result, "early") == ItemOutcome.AUTO_MATCHED.value
        assert outcome_of(result, "late") == ItemOutcome.SKIPPED_NO_CANDIDATE.value

    @pytest.mark.asyncio
    async def test_explicit_item_ids(self, ledger, make_item, make_document):
        ledger.seed(
            items=[make_item("item-1", counterparty_id="cp-1"), make_item("item-2", counterparty_id="cp-1")],
            documents=[make_document("A")]
        )

        result = await AutoReconciler(ledger).run(item_ids=["item-2", "missing"])

        assert outcome_of(result, "item-2") == ItemOutcome.AUTO_MATCHED.value
        assert result.failed[0]["item_id"] == "missing"
        assert result.failed[0]["kind"] == "NotFound"
        assert (await ledger.get_item("item-1")).amount_allocated.is_zero


class TestFailures:
    """Test failure handling during a run."""

    @pytest.mark.asyncio
    async def test_item_failure_is_recorded_and_batch_continues(self, make_item, make_document):

        class RacingLedger(InMemoryLedgerProvider):
            """Another writer touches document A before the first commit."""
            raced = False

            async def commit(self, changes):
                if not self.raced:
                    self.raced = True
                    self.put_document(await self.get_document("A"))
                await super().commit(changes)

        ledger = RacingLedger()
        ledger.seed(
            items=[
                make_item("item-1", counterparty_id="cp-1"),
                make_item("item-2", counterparty_id="cp-2", item_date=TODAY + timedelta(days=1)),
            ],
            documents=[make_document("A", counterparty_id="cp-1"), make_document("B", counterparty_id="cp-2")]
        )

        result = await AutoReconciler(ledger).run()

        assert result.processed == 2
        assert result.failed[0]["item_id"] == "item-1"
        assert result.failed[0]["kind"] == "Conflict"
        assert outcome_of(result, "item-2") == ItemOutcome.AUTO_MATCHED.value

    @pytest.mark.asyncio
    async def test_provider_unavailable_aborts_run(self, ledger, make_item):
        ledger.seed(items=[make_item("item-1")])
        ledger.available = False

        with pytest.raises(ProviderUnavailable):
            await AutoReconciler(ledger).run()

    @pytest.mark.asyncio
    async def test_provider_lost_mid_run_keeps_earlier_allocations(self, make_item, make_document):

        class FlakyLedger(InMemoryLedgerProvider):
            """Goes away after the first successful commit."""

            async def commit(self, changes):
                await super().commit(changes)
                self.available = False

        ledger = FlakyLedger()
        ledger.seed(
            items=[
                make_item("item-1", counterparty_id="cp-1"),
                make_item("item-2", counterparty_id="cp-2", item_date=TODAY + timedelta(days=1)),
            ],
            documents=[make_document("A", counterparty_id="cp-1"), make_document("B", counterparty_id="cp-2")]
        )

        with pytest.raises(ProviderUnavailable):
            await AutoReconciler(ledger).run()

        ledger.available = True
        assert (await ledger.get_item("item-1")).state == ItemState.RECONCILED
        assert (await ledger.get_item("item-2")).amount_allocated.is_zero


class TestResult:

    def test_to_dict(self, make_item):
        from reconciliation.services.auto_reconciler import AutoReconcileResult

        result = AutoReconcileResult(run_id="run-1", account_id="acc-1")
        result.record(make_item("a"), ItemOutcome.AUTO_MATCHED, document_id="A")
        result.record(make_item("b"), ItemOutcome.SKIPPED_AMBIGUOUS)

        data = result.to_dict()

        assert data["processed"] == 2
        assert data["matched"] == 1
        assert data["skipped"] == 1
        assert data["outcomes"][0] == {"item_id": "a", "outcome": "auto_matched", "document_id": "A"}
