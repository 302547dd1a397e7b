"""
SQL Ledger Provider

Reads and writes the ledger tables through SQLAlchemy's async ORM.
Each call uses its own session; ``commit`` runs in one transaction and
guards every row with ``UPDATE ... WHERE version = :expected``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete
from sqlalchemy.exc import OperationalError, InterfaceError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.ledger_models import ReconcilableItemDB, OpenDocumentDB, AllocationDB
from reconciliation.errors import Conflict, NotFound, ProviderUnavailable
from reconciliation.models import (
    ReconcilableItem,
    OpenDocument,
    Allocation,
    ItemKind,
    ItemState,
    DocumentType,
)
from reconciliation.money import MonetaryAmount
from reconciliation.providers.base import LedgerProvider, ChangeSet

logger = logging.getLogger(__name__)

INFRASTRUCTURE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, ConnectionError, OSError)


# ==================== Row Mapping ====================

def item_from_row(row: ReconcilableItemDB) -> ReconcilableItem:
    return ReconcilableItem(
        id=row.id,
        kind=ItemKind(row.kind),
        account_id=row.account_id,
        date=row.date,
        amount=MonetaryAmount(row.amount_minor, row.currency),
        counterparty_id=row.counterparty_id,
        counterparty_name=row.counterparty_name,
        description=row.description or "",
        reference=row.reference,
        state=ItemState(row.state),
        amount_allocated=MonetaryAmount(row.amount_allocated_minor, row.currency),
        confirmed_at=row.confirmed_at,
        confirmed_by=row.confirmed_by,
        created_at=row.created_at,
        version=row.version
    )


def item_values(item: ReconcilableItem) -> Dict:
    return {
        "kind": item.kind.value,
        "account_id": item.account_id,
        "date": item.date,
        "amount_minor": item.amount.minor_units,
        "currency": item.currency,
        "counterparty_id": item.counterparty_id,
        "counterparty_name": item.counterparty_name,
        "description": item.description,
        "reference": item.reference,
        "state": item.state.value,
        "amount_allocated_minor": item.amount_allocated.minor_units,
        "confirmed_at": item.confirmed_at,
        "confirmed_by": item.confirmed_by,
    }


def document_from_row(row: OpenDocumentDB) -> OpenDocument:
    return OpenDocument(
        id=row.id,
        document_type=DocumentType(row.document_type),
        number=row.number,
        counterparty_id=row.counterparty_id,
        counterparty_name=row.counterparty_name,
        amount_total=MonetaryAmount(row.amount_total_minor, row.currency),
        amount_paid=MonetaryAmount(row.amount_paid_minor, row.currency),
        due_date=row.due_date,
        version=row.version
    )


def allocation_from_row(row: AllocationDB) -> Allocation:
    return Allocation(
        id=row.id,
        item_id=row.item_id,
        document_id=row.document_id,
        amount_applied=MonetaryAmount(row.amount_applied_minor, row.currency),
        created_at=row.created_at
    )


class SqlLedgerProvider(LedgerProvider):
    """
    Ledger provider backed by PostgreSQL.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        """Open a session, translating connectivity failures."""
        try:
            async with self._session_factory() as session:
                yield session
        except INFRASTRUCTURE_ERRORS as e:
            logger.error(f"Ledger store unavailable: {e}")
            raise ProviderUnavailable("Ledger store unavailable", {"reason": type(e).__name__}) from e

    # ==================== Reads ====================

    async def get_item(self, item_id: str) -> Optional[ReconcilableItem]:
        async with self._session() as session:
            row = await session.get(ReconcilableItemDB, item_id)
            return item_from_row(row) if row else None

    async def list_items(
        self,
        account_id: Optional[str] = None,
        states: Optional[Sequence[ItemState]] = None,
        kinds: Optional[Sequence[ItemKind]] = None
    ) -> List[ReconcilableItem]:
        query = select(ReconcilableItemDB)
        if account_id is not None:
            query = query.where(ReconcilableItemDB.account_id == account_id)
        if states is not None:
            query = query.where(ReconcilableItemDB.state.in_([s.value for s in states]))
        if kinds is not None:
            query = query.where(ReconcilableItemDB.kind.in_([k.value for k in kinds]))
        query = query.order_by(ReconcilableItemDB.date, ReconcilableItemDB.id)

        async with self._session() as session:
            result = await session.execute(query)
            return [item_from_row(row) for row in result.scalars().all()]

    async def add_item(self, item: ReconcilableItem) -> ReconcilableItem:
        async with self._session() as session:
            async with session.begin():
                if await session.get(ReconcilableItemDB, item.id) is not None:
                    raise Conflict(f"Item {item.id} already exists", {"item_id": item.id})
                session.add(ReconcilableItemDB(
                    id=item.id,
                    created_at=item.created_at,
                    version=item.version,
                    **item_values(item)
                ))
        return item.copy()

    async def get_document(self, document_id: str) -> Optional[OpenDocument]:
        async with self._session() as session:
            row = await session.get(OpenDocumentDB, document_id)
            return document_from_row(row) if row else None

    async def get_documents(self, document_ids: Sequence[str]) -> Dict[str, OpenDocument]:
        if not document_ids:
            return {}
        query = select(OpenDocumentDB).where(OpenDocumentDB.id.in_(list(document_ids)))
        async with self._session() as session:
            result = await session.execute(query)
            return {row.id: document_from_row(row) for row in result.scalars().all()}

    async def list_open_documents(
        self,
        currency: str,
        counterparty_id: Optional[str] = None,
        document_type: Optional[DocumentType] = None
    ) -> List[OpenDocument]:
        query = select(OpenDocumentDB).where(
            OpenDocumentDB.currency == currency,
            OpenDocumentDB.amount_paid_minor < OpenDocumentDB.amount_total_minor
        )
        if counterparty_id is not None:
            query = query.where(OpenDocumentDB.counterparty_id == counterparty_id)
        if document_type is not None:
            query = query.where(OpenDocumentDB.document_type == document_type.value)
        query = query.order_by(OpenDocumentDB.due_date, OpenDocumentDB.id)

        async with self._session() as session:
            result = await session.execute(query)
            return [document_from_row(row) for row in result.scalars().all()]

    async def get_allocation(self, allocation_id: str) -> Optional[Allocation]:
        async with self._session() as session:
            row = await session.get(AllocationDB, allocation_id)
            return allocation_from_row(row) if row else None

    async def list_allocations(
        self,
        item_id: Optional[str] = None,
        document_id: Optional[str] = None
    ) -> List[Allocation]:
        query = select(AllocationDB)
        if item_id is not None:
            query = query.where(AllocationDB.item_id == item_id)
        if document_id is not None:
            query = query.where(AllocationDB.document_id == document_id)
        query = query.order_by(AllocationDB.created_at, AllocationDB.id)

        async with self._session() as session:
            result = await session.execute(query)
            return [allocation_from_row(row) for row in result.scalars().all()]

    # ==================== Writes ====================

    async def commit(self, changes: ChangeSet) -> None:
        if changes.is_empty:
            return
        async with self._session() as session:
            async with session.begin():
                await self._apply(session, changes)

    async def _apply(self, session: AsyncSession, changes: ChangeSet) -> None:
        for item, expected in changes.items:
            result = await session.execute(
                update(ReconcilableItemDB)
                .where(ReconcilableItemDB.id == item.id, ReconcilableItemDB.version == expected)
                .values(version=expected + 1, **item_values(item))
            )
            if result.rowcount != 1:
                raise await self._version_error(session, ReconcilableItemDB, item.id, expected)

        for document, expected in changes.documents:
            result = await session.execute(
                update(OpenDocumentDB)
                .where(OpenDocumentDB.id == document.id, OpenDocumentDB.version == expected)
                .values(
                    version=expected + 1,
                    amount_paid_minor=document.amount_paid.minor_units
                )
            )
            if result.rowcount != 1:
                raise await self._version_error(session, OpenDocumentDB, document.id, expected)

        for allocation in changes.changed_allocations:
            result = await session.execute(
                update(AllocationDB)
                .where(AllocationDB.id == allocation.id)
                .values(amount_applied_minor=allocation.amount_applied.minor_units)
            )
            if result.rowcount != 1:
                raise Conflict(
                    f"Allocation {allocation.id} was removed concurrently",
                    {"allocation_id": allocation.id}
                )

        if changes.removed_allocation_ids:
            result = await session.execute(
                delete(AllocationDB).where(AllocationDB.id.in_(changes.removed_allocation_ids))
            )
            if result.rowcount != len(changes.removed_allocation_ids):
                raise Conflict(
                    "Allocation was removed concurrently",
                    {"allocation_ids": list(changes.removed_allocation_ids)}
                )

        for allocation in changes.new_allocations:
            session.add(AllocationDB(
                id=allocation.id,
                item_id=allocation.item_id,
                document_id=allocation.document_id,
                amount_applied_minor=allocation.amount_applied.minor_units,
                currency=allocation.currency,
                created_at=allocation.created_at
            ))
        await session.flush()

    async def _version_error(self, session: AsyncSession, model, entity_id: str, expected: int):
        current = await session.get(model, entity_id)
        label = "Item" if model is ReconcilableItemDB else "Document"
        if current is None:
            return NotFound(f"{label} {entity_id} not found", {"id": entity_id})
        return Conflict(
            f"{label} {entity_id} was modified concurrently",
            {"id": entity_id, "expected_version": expected, "current_version": current.version}
        )

    async def ping(self) -> bool:
        try:
            async with self._session() as session:
                await session.execute(select(1))
            return True
        except ProviderUnavailable:
            return False
