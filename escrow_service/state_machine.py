"""
Trade finite state machine.

    PENDING --submit_proof--> PAID --release--> COMPLETED
    PENDING --dispute------> DISPUTED
    PAID    --dispute------> DISPUTED
    PENDING --cancel-------> CANCELLED

COMPLETED, DISPUTED and CANCELLED are terminal.
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from common.error_handling import AuthorizationError, StateConflictError
from escrow_service.domain import TradeStatus

class TradeAction(str, Enum):
    SUBMIT_PROOF = "submit_proof"
    RELEASE = "release"
    DISPUTE = "dispute"
    CANCEL = "cancel"

class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"

TRANSITIONS: Dict[Tuple[TradeStatus, TradeAction], TradeStatus] = {
    (TradeStatus.PENDING, TradeAction.SUBMIT_PROOF): TradeStatus.PAID,
    (TradeStatus.PAID, TradeAction.RELEASE): TradeStatus.COMPLETED,
    (TradeStatus.PENDING, TradeAction.DISPUTE): TradeStatus.DISPUTED,
    (TradeStatus.PAID, TradeAction.DISPUTE): TradeStatus.DISPUTED,
    (TradeStatus.PENDING, TradeAction.CANCEL): TradeStatus.CANCELLED,
}

ALLOWED_ROLES: Dict[TradeAction, FrozenSet[Role]] = {
    TradeAction.SUBMIT_PROOF: frozenset({Role.BUYER}),
    TradeAction.RELEASE: frozenset({Role.SELLER}),
    TradeAction.DISPUTE: frozenset({Role.BUYER, Role.SELLER}),
    TradeAction.CANCEL: frozenset({Role.BUYER, Role.SELLER}),
}

TERMINAL_STATES = frozenset({TradeStatus.COMPLETED, TradeStatus.DISPUTED, TradeStatus.CANCELLED})

def role_of(actor_id: str, buyer_id: str, seller_id: str) -> Role:
    if actor_id == buyer_id:
        return Role.BUYER
    if actor_id == seller_id:
        return Role.SELLER
    raise AuthorizationError("Not a participant in this trade", context={"actor_id": actor_id})

def authorize(action: TradeAction, actor_id: str, buyer_id: str, seller_id: str) -> Role:
    role = role_of(actor_id, buyer_id, seller_id)
    allowed = ALLOWED_ROLES[action]
    if role not in allowed:
        who = " or ".join(sorted(r.value for r in allowed))
        raise AuthorizationError(f"Only the {who} can {action.value.replace('_', ' ')}",
                                 context={"action": action.value, "role": role.value})
    return role

def next_status(current: TradeStatus, action: TradeAction) -> TradeStatus:
    """The single transition function; rejects every move not in the table."""
    target = TRANSITIONS.get((current, action))
    if target is None:
        raise StateConflictError(
            f"Cannot {action.value.replace('_', ' ')} a trade in status {current.value}",
            context={"status": current.value, "action": action.value},
        )
    return target

def can_transition(current: TradeStatus, action: TradeAction) -> bool:
    return (current, action) in TRANSITIONS

def apply(action: TradeAction, current: TradeStatus, actor_id: str, buyer_id: str, seller_id: str) -> TradeStatus:
    """Authorize the actor, then compute the target status."""
    authorize(action, actor_id, buyer_id, seller_id)
    return next_status(current, action)
