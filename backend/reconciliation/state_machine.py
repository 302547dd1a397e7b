"""
Item Lifecycle State Machine

    draft ──confirm──> confirmed ──(fully allocated bank txn)──> reconciled
      │                    │
      └──────cancel────────┴──> cancelled

The table below is closed: any (state, action) pair not listed is an
InvalidStateTransition. ``reconcile`` is only ever driven by the
Allocator once a bank transaction is fully allocated.
"""

from enum import Enum
from typing import Dict, Tuple, FrozenSet

from reconciliation.errors import InvalidStateTransition
from reconciliation.models import ItemState, ReconcilableItem


class ItemAction(str, Enum):
    CONFIRM = "confirm"
    UPDATE = "update"
    ALLOCATE = "allocate"
    REMOVE_ALLOCATION = "remove_allocation"
    RECONCILE = "reconcile"
    CANCEL = "cancel"


# (state, action) -> resulting state
TRANSITIONS: Dict[Tuple[ItemState, ItemAction], ItemState] = {
    (ItemState.DRAFT, ItemAction.UPDATE): ItemState.DRAFT,
    (ItemState.DRAFT, ItemAction.CONFIRM): ItemState.CONFIRMED,
    (ItemState.DRAFT, ItemAction.CANCEL): ItemState.CANCELLED,
    (ItemState.CONFIRMED, ItemAction.ALLOCATE): ItemState.CONFIRMED,
    (ItemState.CONFIRMED, ItemAction.REMOVE_ALLOCATION): ItemState.CONFIRMED,
    (ItemState.CONFIRMED, ItemAction.RECONCILE): ItemState.RECONCILED,
    (ItemState.CONFIRMED, ItemAction.CANCEL): ItemState.CANCELLED,
}

TERMINAL_STATES: FrozenSet[ItemState] = frozenset({ItemState.CANCELLED})

# States from which an item can still receive allocations later on
OPEN_STATES: FrozenSet[ItemState] = frozenset({ItemState.DRAFT, ItemState.CONFIRMED})


def allowed_actions(state: ItemState) -> FrozenSet[ItemAction]:
    return frozenset(action for (s, action) in TRANSITIONS if s == state)


def can(item: ReconcilableItem, action: ItemAction) -> bool:
    return (item.state, action) in TRANSITIONS


def ensure_allowed(item: ReconcilableItem, action: ItemAction) -> ItemState:
    """
    Check that ``action`` is legal for the item's current state.

    Returns the state the item would move to. Raises
    InvalidStateTransition otherwise; callers run this before touching
    any entity.
    """
    target = TRANSITIONS.get((item.state, action))
    if target is None:
        raise InvalidStateTransition(
            f"Cannot {action.value} item {item.id} in state '{item.state.value}'",
            {
                "item_id": item.id,
                "state": item.state.value,
                "action": action.value,
                "allowed_actions": sorted(a.value for a in allowed_actions(item.state))
            }
        )
    return target


def transition(item: ReconcilableItem, action: ItemAction) -> ReconcilableItem:
    """Return a copy of the item moved to the successor state."""
    target = ensure_allowed(item, action)
    return item.copy(state=target)
