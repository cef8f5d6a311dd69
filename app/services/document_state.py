"""
Document lifecycle rules.

The transition table is pure; persisting a transition is always a
compare-and-swap on the current status (see SupabaseStore.transition_document_status).
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from app.exceptions import InvalidTransitionError
from app.models import DocumentStatus


class LifecycleEvent(str, Enum):
    PREPARE = "prepare"
    INVITATION_SIGNED = "invitation_signed"
    CANCEL = "cancel"
    ALL_EXPIRED = "all_expired"


TERMINAL_STATUSES: FrozenSet[DocumentStatus] = frozenset({
    DocumentStatus.COMPLETED,
    DocumentStatus.CANCELLED,
    DocumentStatus.EXPIRED,
})

SIGNABLE_STATUSES: Tuple[DocumentStatus, ...] = (
    DocumentStatus.SENT,
    DocumentStatus.PARTIALLY_SIGNED,
)

# Statuses from which each event may be applied
_ALLOWED_FROM: Dict[LifecycleEvent, Tuple[DocumentStatus, ...]] = {
    LifecycleEvent.PREPARE: (DocumentStatus.DRAFT,),
    LifecycleEvent.INVITATION_SIGNED: SIGNABLE_STATUSES,
    LifecycleEvent.CANCEL: (
        DocumentStatus.DRAFT,
        DocumentStatus.SENT,
        DocumentStatus.PARTIALLY_SIGNED,
    ),
    LifecycleEvent.ALL_EXPIRED: SIGNABLE_STATUSES,
}


def allowed_from(event: LifecycleEvent) -> Tuple[DocumentStatus, ...]:
    """Statuses a CAS for this event should expect."""
    return _ALLOWED_FROM[event]


def is_terminal(status: DocumentStatus) -> bool:
    return status in TERMINAL_STATUSES


def next_status(
    current: DocumentStatus,
    event: LifecycleEvent,
    *,
    field_count: int = 0,
    completed_count: int = 0,
    total_invitations: int = 0,
    all_expired: bool = False,
) -> DocumentStatus:
    """
    Compute the status a document moves to when `event` happens.

    Args:
        current: Current document status
        event: What happened
        field_count: Number of signature fields (guards PREPARE)
        completed_count: Completed invitations after the event
        total_invitations: All invitations of the document
        all_expired: Whether every open invitation is individually expired

    Raises:
        InvalidTransitionError: If the event is not legal from `current`
            or its guard does not hold
    """
    # Reaching COMPLETED again is a no-op, not an error
    if current == DocumentStatus.COMPLETED and event == LifecycleEvent.INVITATION_SIGNED:
        return DocumentStatus.COMPLETED

    if current not in _ALLOWED_FROM[event]:
        raise InvalidTransitionError(current.value, event.value)

    if event == LifecycleEvent.PREPARE:
        if field_count < 1:
            raise InvalidTransitionError(current.value, event.value)
        return DocumentStatus.SENT

    if event == LifecycleEvent.INVITATION_SIGNED:
        if total_invitations > 0 and completed_count == total_invitations:
            return DocumentStatus.COMPLETED
        return DocumentStatus.PARTIALLY_SIGNED

    if event == LifecycleEvent.CANCEL:
        return DocumentStatus.CANCELLED

    if event == LifecycleEvent.ALL_EXPIRED:
        if not all_expired:
            raise InvalidTransitionError(current.value, event.value)
        return DocumentStatus.EXPIRED

    raise InvalidTransitionError(current.value, event.value)
