"""
Annotation workflow transitions.

    pending  -> approved | rejected
    approved -> published
    published -> approved   (only when unpublishing is enabled)
"""

from __future__ import annotations

from aves.core.errors import ConflictError

from .models import AnnotationStatus

TRANSITIONS: dict[AnnotationStatus, frozenset[AnnotationStatus]] = {
    AnnotationStatus.PENDING: frozenset({AnnotationStatus.APPROVED, AnnotationStatus.REJECTED}),
    AnnotationStatus.APPROVED: frozenset({AnnotationStatus.PUBLISHED}),
    AnnotationStatus.REJECTED: frozenset(),
    AnnotationStatus.PUBLISHED: frozenset(),
}


def allowed_transitions(status: AnnotationStatus, allow_unpublish: bool = False) -> frozenset[AnnotationStatus]:
    allowed = TRANSITIONS[status]
    if allow_unpublish and status == AnnotationStatus.PUBLISHED:
        allowed = allowed | {AnnotationStatus.APPROVED}
    return allowed


def can_transition(
    current: AnnotationStatus,
    target: AnnotationStatus,
    allow_unpublish: bool = False,
) -> bool:
    return target in allowed_transitions(current, allow_unpublish)


def ensure_transition(
    annotation_id: str,
    current: AnnotationStatus,
    target: AnnotationStatus,
    allow_unpublish: bool = False,
) -> None:
    """
    Raise unless `current -> target` is a legal move.

    Raises:
        ConflictError: The transition is not allowed
    """
    if not can_transition(current, target, allow_unpublish):
        raise ConflictError(
            f"Cannot move annotation {annotation_id} from {current.value} to {target.value}",
            {
                "annotation_id": annotation_id,
                "current": current.value,
                "target": target.value,
            },
        )
