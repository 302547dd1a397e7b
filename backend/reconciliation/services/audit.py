"""
Reconciliation audit events.

Every state change made by the engine is written to the application log
as a structured event; the JSON formatter ships the ``extra`` payload to
log aggregation.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

logger = logging.getLogger("reconciliation.audit")


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    ITEM_CREATED = "reconciliation.item_created"
    ITEM_UPDATED = "reconciliation.item_updated"
    ITEM_CONFIRMED = "reconciliation.item_confirmed"
    ITEM_CANCELLED = "reconciliation.item_cancelled"
    ITEM_RECONCILED = "reconciliation.item_reconciled"
    ALLOCATION_CREATED = "reconciliation.allocation_created"
    ALLOCATION_UPDATED = "reconciliation.allocation_updated"
    ALLOCATION_REMOVED = "reconciliation.allocation_removed"
    CANDIDATES_FOUND = "reconciliation.candidates_found"
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    RUN_ABORTED = "reconciliation.run_aborted"


def log_reconciliation_event(
    event_type: str,
    item_id: Optional[str],
    details: Dict[str, Any],
    account_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "item_id": item_id,
        "account_id": account_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)
