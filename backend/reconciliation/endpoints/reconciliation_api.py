"""
Reconciliation API Endpoints

REST API for the payment allocation & reconciliation engine:
- GET /api/reconciliation/status - Module status
- GET /api/reconciliation/config - Matching configuration per item kind
- GET /api/reconciliation/items - Unreconciled items
- POST /api/reconciliation/items - Create a draft item
- GET /api/reconciliation/items/{item_id} - Get one item
- PATCH /api/reconciliation/items/{item_id} - Edit a draft item
- POST /api/reconciliation/items/{item_id}/confirm - Confirm a draft
- POST /api/reconciliation/items/{item_id}/cancel - Cancel and release allocations
- GET /api/reconciliation/items/{item_id}/suggestions - Ranked candidates
- GET /api/reconciliation/items/{item_id}/allocations - Allocations of an item
- POST /api/reconciliation/items/{item_id}/allocations - Allocate
- PATCH /api/reconciliation/items/{item_id}/allocations/{allocation_id} - Change allocation amount
- DELETE /api/reconciliation/items/{item_id}/allocations/{allocation_id} - Remove allocation
- POST /api/reconciliation/items/{item_id}/auto-allocate - Best match / FIFO allocation
- POST /api/reconciliation/accounts/{account_id}/auto-reconcile - Batch auto-reconcile
- GET /api/reconciliation/stats - Counts and totals

Amounts travel as decimal strings next to an explicit currency code.
Engine errors propagate to the application's exception handler, which
renders them as {"error": {"kind", "message", "details"}}.
"""

import datetime
import logging
from functools import lru_cache
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from config import get_settings
from database.connection import get_session_factory
from logging_config import set_request_context
from middleware.internal_auth import InternalService, require_internal_service
from reconciliation.errors import ReconciliationError
from reconciliation.matching_config import MatchingConfigRegistry
from reconciliation.models import ItemKind, AllocationRequest
from reconciliation.money import MonetaryAmount
from reconciliation.providers import LedgerProvider, InMemoryLedgerProvider
from reconciliation.providers.sql import SqlLedgerProvider
from reconciliation.services.reconciliation_service import ReconciliationService
from utils.validation_errors import raise_invalid_parameter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])

# Decimal string, optionally signed; JSON numbers are rejected by the str type
AMOUNT_PATTERN = r"^-?\d+(\.\d+)?$"


# ==================== Request Models ====================

class CreateItemRequest(BaseModel):
    """Request to register a bank transaction or cash-book entry."""
    id: Optional[str] = Field(default=None, description="Client-supplied item ID")
    kind: ItemKind = Field(..., description="bank_transaction or cash_entry")
    date: datetime.date = Field(..., description="Booking date")
    amount: str = Field(..., pattern=AMOUNT_PATTERN, description="Signed amount, e.g. '-120.50'")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 code")
    description: str = Field(default="", description="Free-text description")
    account_id: Optional[str] = Field(default=None, description="Bank/cash account ID")
    counterparty_id: Optional[str] = Field(default=None, description="Linked counterparty ID")
    counterparty_name: Optional[str] = Field(default=None, description="Counterparty text from the statement")
    reference: Optional[str] = Field(default=None, description="Payment reference")


class UpdateItemRequest(BaseModel):
    """Edit a draft item. Only the fields sent are changed."""
    date: Optional[datetime.date] = None
    amount: Optional[str] = Field(default=None, pattern=AMOUNT_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    description: Optional[str] = None
    account_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    counterparty_name: Optional[str] = None
    reference: Optional[str] = None

    @field_validator("date", "amount", "currency", "description")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("May be omitted but not set to null")
        return v


class ConfirmItemRequest(BaseModel):
    """Request to confirm a draft item."""
    user_id: Optional[str] = Field(default=None, description="User confirming the item")


class AllocationLine(BaseModel):
    document_id: str = Field(..., description="Open document to allocate against")
    amount: str = Field(..., pattern=AMOUNT_PATTERN, description="Amount to apply, e.g. '150.00'")
    expected_amount_due: Optional[str] = Field(
        default=None,
        pattern=AMOUNT_PATTERN,
        description="Amount due as last seen; a different current value is a Conflict"
    )


class AllocateRequest(BaseModel):
    """Request to allocate an item against documents."""
    currency: str = Field(..., min_length=3, max_length=3, description="Currency of every amount")
    allocations: List[AllocationLine] = Field(..., min_length=1)


class UpdateAllocationRequest(BaseModel):
    """New amount for an existing allocation."""
    amount: str = Field(..., pattern=AMOUNT_PATTERN, description="Amount to apply, e.g. '120.00'")
    currency: str = Field(..., min_length=3, max_length=3)


class AutoReconcileRequest(BaseModel):
    """Request to auto-reconcile an account."""
    item_ids: Optional[List[str]] = Field(default=None, description="Restrict the run to these items")


# ==================== Dependencies ====================

_memory_provider: Optional[InMemoryLedgerProvider] = None


def get_ledger_provider() -> LedgerProvider:
    """Ledger provider selected by LEDGER_BACKEND."""
    global _memory_provider
    if get_settings().uses_memory_ledger:
        if _memory_provider is None:
            _memory_provider = InMemoryLedgerProvider()
        return _memory_provider
    return SqlLedgerProvider(get_session_factory())


@lru_cache()
def get_config_registry() -> MatchingConfigRegistry:
    return MatchingConfigRegistry.from_settings(get_settings())


def get_reconciliation_service(
    provider: LedgerProvider = Depends(get_ledger_provider),
    registry: MatchingConfigRegistry = Depends(get_config_registry)
) -> ReconciliationService:
    return ReconciliationService(provider, config_registry=registry)


async def bind_item_context(item_id: str):
    set_request_context(item_id=item_id)


def parse_amount(value: str, currency: str) -> MonetaryAmount:
    """Raises InvalidAmount for excess precision or a bad currency."""
    return MonetaryAmount.from_decimal(value, currency)


# ==================== Error Handling ====================

async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    """Render an engine error as the discriminated error body."""
    if exc.http_status >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status(provider: LedgerProvider = Depends(get_ledger_provider)):
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    ledger_available = await provider.ping()
    return {
        "module": "reconciliation",
        "status": "operational" if ledger_available else "degraded",
        "version": get_settings().API_VERSION,
        "ledger_backend": get_settings().LEDGER_BACKEND,
        "ledger_available": ledger_available,
        "features": {
            "suggestions": True,
            "allocation": True,
            "auto_reconcile": True,
            "auto_allocate": True
        },
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat()
    }


@router.get("/config", summary="Matching configuration")
async def get_matching_config(registry: MatchingConfigRegistry = Depends(get_config_registry)):
    """Weights and thresholds in effect for each item kind."""
    return {"configs": registry.to_dict()}


@router.get("/items", summary="List unreconciled items")
async def list_unreconciled_items(
    account_id: Optional[str] = Query(default=None, description="Filter by account"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    if account_id:
        set_request_context(account_id=account_id)
    items = await service.list_unreconciled(account_id=account_id)
    return {
        "account_id": account_id,
        "count": len(items),
        "items": [item.to_dict() for item in items]
    }


@router.post("/items", status_code=201, summary="Create item")
async def create_item(
    request: CreateItemRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Register a bank transaction or cash-book entry in draft.

    Requires internal API key authentication.
    """
    item = await service.create_item(
        kind=request.kind,
        date=request.date,
        amount=parse_amount(request.amount, request.currency),
        description=request.description,
        account_id=request.account_id,
        counterparty_id=request.counterparty_id,
        counterparty_name=request.counterparty_name,
        reference=request.reference,
        item_id=request.id,
        actor=caller.name
    )
    return item.to_dict()


@router.get("/items/{item_id}", summary="Get item", dependencies=[Depends(bind_item_context)])
async def get_item(item_id: str, service: ReconciliationService = Depends(get_reconciliation_service)):
    item = await service.get_item(item_id)
    return item.to_dict()


@router.patch("/items/{item_id}", summary="Update draft item", dependencies=[Depends(bind_item_context)])
async def update_item(
    item_id: str,
    request: UpdateItemRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Edit a draft item. amount and currency must be sent together.

    Requires internal API key authentication.
    """
    changes = request.model_dump(exclude_unset=True)
    amount = changes.pop("amount", None)
    currency = changes.pop("currency", None)

    if (amount is None) != (currency is None):
        raise_invalid_parameter(
            "amount" if amount is None else "currency",
            "amount and currency must be updated together"
        )
    if amount is not None:
        changes["amount"] = parse_amount(amount, currency)

    if not changes:
        raise_invalid_parameter("body", "No fields to update")

    item = await service.update_item(item_id, actor=caller.name, **changes)
    return item.to_dict()


@router.post("/items/{item_id}/confirm", summary="Confirm item", dependencies=[Depends(bind_item_context)])
async def confirm_item(
    item_id: str,
    request: Optional[ConfirmItemRequest] = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Confirm a draft item; afterwards only its allocations can change.

    Requires internal API key authentication.
    """
    user_id = request.user_id if request and request.user_id else caller.name
    item = await service.confirm(item_id, user_id=user_id)
    return item.to_dict()


@router.post("/items/{item_id}/cancel", summary="Cancel item", dependencies=[Depends(bind_item_context)])
async def cancel_item(
    item_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Cancel a draft or confirmed item, releasing all its allocations.

    Requires internal API key authentication.
    """
    item = await service.cancel(item_id, actor=caller.name)
    return item.to_dict()


@router.get(
    "/items/{item_id}/suggestions",
    summary="Suggest matches",
    dependencies=[Depends(bind_item_context)]
)
async def suggest_matches(
    item_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100, description="Maximum candidates returned"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Ranked allocation candidates for an item.

    Candidates are sorted by score, then soonest due date, then document
    ID. Nothing is written.
    """
    candidates = await service.rank_candidates(item_id)
    result = candidates.to_dict()
    if limit is not None:
        result["candidates"] = result["candidates"][:limit]
    return result


@router.get(
    "/items/{item_id}/allocations",
    summary="List allocations",
    dependencies=[Depends(bind_item_context)]
)
async def list_allocations(item_id: str, service: ReconciliationService = Depends(get_reconciliation_service)):
    allocations = await service.list_allocations(item_id)
    return {
        "item_id": item_id,
        "count": len(allocations),
        "allocations": [a.to_dict() for a in allocations]
    }


@router.post(
    "/items/{item_id}/allocations",
    summary="Allocate",
    dependencies=[Depends(bind_item_context)]
)
async def allocate(
    item_id: str,
    request: AllocateRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Apply the item's amount against one or more documents.

    All lines are validated before anything is written; any failure
    leaves the item and every document unchanged.

    Requires internal API key authentication.
    """
    lines = [
        AllocationRequest(
            document_id=line.document_id,
            amount=parse_amount(line.amount, request.currency),
            expected_amount_due=(
                parse_amount(line.expected_amount_due, request.currency)
                if line.expected_amount_due is not None else None
            )
        )
        for line in request.allocations
    ]
    item = await service.allocate(item_id, lines, actor=caller.name)
    return item.to_dict()


@router.delete(
    "/items/{item_id}/allocations/{allocation_id}",
    summary="Remove allocation",
    dependencies=[Depends(bind_item_context)]
)
async def remove_allocation(
    item_id: str,
    allocation_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Delete one allocation, restoring the amount on the item and document.

    Requires internal API key authentication.
    """
    item = await service.remove_allocation(item_id, allocation_id, actor=caller.name)
    return item.to_dict()


@router.patch(
    "/items/{item_id}/allocations/{allocation_id}",
    summary="Change allocation amount",
    dependencies=[Depends(bind_item_context)]
)
async def update_allocation(
    item_id: str,
    allocation_id: str,
    request: UpdateAllocationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Change the amount applied by one allocation.

    Requires internal API key authentication.
    """
    amount = parse_amount(request.amount, request.currency)
    item = await service.update_allocation(item_id, allocation_id, amount, actor=caller.name)
    return item.to_dict()


@router.post(
    "/items/{item_id}/auto-allocate",
    summary="Auto-allocate item",
    dependencies=[Depends(bind_item_context)]
)
async def auto_allocate(
    item_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Allocate an item automatically: an unambiguous exact match if there
    is one, otherwise oldest-due-first over the counterparty's documents.

    Requires internal API key authentication.
    """
    result = await service.auto_allocate(item_id, actor=caller.name)
    return result.to_dict()


@router.post("/accounts/{account_id}/auto-reconcile", summary="Auto-reconcile account")
async def auto_reconcile(
    account_id: str,
    request: Optional[AutoReconcileRequest] = None,
    service: ReconciliationService = Depends(get_reconciliation_service),
    caller: InternalService = Depends(require_internal_service)
):
    """
    Run auto-reconciliation for an account.

    This will:
    1. Take every confirmed item with an unallocated amount, oldest first
    2. Rank candidate documents for each
    3. Allocate only unambiguous exact matches above the auto-accept threshold
    4. Record everything else as skipped or failed

    Requires internal API key authentication.
    """
    set_request_context(account_id=account_id)
    result = await service.auto_reconcile(
        account_id=account_id,
        item_ids=request.item_ids if request else None,
        actor=caller.name
    )
    return result.to_dict()


@router.get("/stats", summary="Reconciliation statistics")
async def get_stats(
    account_id: Optional[str] = Query(default=None, description="Filter by account"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    return await service.get_stats(account_id=account_id)
