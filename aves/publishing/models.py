"""
Publishing Domain Models.

Annotations move through a review workflow before they become terms a
learner can study:

    pending -> approved -> published
            -> rejected

A published annotation *is* a term: its Spanish/English label pair is what
the scheduler reviews and what exercises are generated from.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from aves.core.clock import utcnow
from aves.core.errors import ValidationError


class AnnotationStatus(str, Enum):
    """Workflow states of an annotation."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"


@dataclass(frozen=True)
class BoundingBox:
    """Normalized (0-1) region of an image."""

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"bounding box {name} must be a number", {name: value})
            if not 0.0 <= value <= 1.0:
                raise ValidationError(
                    f"bounding box {name} must be within [0, 1]", {name: value}
                )
        if self.width <= 0 or self.height <= 0:
            raise ValidationError(
                "bounding box must have a positive area",
                {"width": self.width, "height": self.height},
            )

    def delta(self, corrected: BoundingBox) -> tuple[float, float, float, float]:
        """Correction vector (dx, dy, dwidth, dheight) from this box to `corrected`."""
        return (
            corrected.x - self.x,
            corrected.y - self.y,
            corrected.width - self.width,
            corrected.height - self.height,
        )

    def placement(self) -> tuple[float, float, float, float]:
        """(center_x, center_y, width, height) of the box."""
        return (self.x + self.width / 2, self.y + self.height / 2, self.width, self.height)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BoundingBox:
        try:
            return cls(
                x=data["x"],
                y=data["y"],
                width=data["width"],
                height=data["height"],
            )
        except KeyError as e:
            raise ValidationError(f"bounding box is missing {e.args[0]}", {"box": data}) from e


@dataclass
class Annotation:
    """A labelled image region awaiting (or past) review."""

    id: str
    spanish_term: str
    english_term: str
    feature_type: str
    bounding_box: BoundingBox
    species_id: str | None = None
    image_id: str | None = None
    status: AnnotationStatus = AnnotationStatus.PENDING
    difficulty_level: int = 1
    module_id: str | None = None
    rejection_reason: str | None = None
    term_seq: int = 0  # Assigned by the store on first save
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    published_at: datetime | None = None

    @property
    def is_published(self) -> bool:
        return self.status == AnnotationStatus.PUBLISHED

    def to_term(self) -> Term:
        return Term(
            id=self.id,
            spanish_term=self.spanish_term,
            english_term=self.english_term,
            annotation_id=self.id,
            created_seq=self.term_seq,
            feature_type=self.feature_type,
            species_id=self.species_id,
            module_id=self.module_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "spanish_term": self.spanish_term,
            "english_term": self.english_term,
            "feature_type": self.feature_type,
            "species_id": self.species_id,
            "image_id": self.image_id,
            "bounding_box": self.bounding_box.to_dict(),
            "difficulty_level": self.difficulty_level,
            "module_id": self.module_id,
            "rejection_reason": self.rejection_reason,
            "published_at": self.published_at.isoformat() if self.published_at else None,
        }


@dataclass(frozen=True)
class Term:
    """A reviewable vocabulary item backed by a published annotation."""

    id: str
    spanish_term: str
    english_term: str
    annotation_id: str
    created_seq: int
    feature_type: str | None = None
    species_id: str | None = None
    module_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LearningModule:
    """A themed group of published terms learners progress through in order."""

    id: str
    title: str
    title_spanish: str
    description: str | None = None
    difficulty_level: int = 1
    species_ids: list[str] = field(default_factory=list)
    order_index: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "title_spanish": self.title_spanish,
            "description": self.description,
            "difficulty_level": self.difficulty_level,
            "species_ids": list(self.species_ids),
            "order_index": self.order_index,
            "is_active": self.is_active,
        }
