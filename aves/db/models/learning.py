"""
Learning Engine Models.

SQLAlchemy models for the three keyed stores plus the publishing tables:
- Per learner x term SM-2 progress
- Generated exercise cache entries with explicit TTL
- Running feature statistics per (feature type, species)
- Annotations gated by the publishing state machine
- Learning modules grouping published terms

Column types stay dialect-neutral so the same schema runs on PostgreSQL
and SQLite.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AnnotationRow(Base):
    """
    Annotation record: spatial region plus canonical Spanish/English label pair.

    Once published an annotation is a reviewable term; `term_seq` preserves
    creation order for deterministic due-list ordering.
    """

    __tablename__ = "annotations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    term_seq: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)

    spanish_term: Mapped[str] = mapped_column(Text, nullable=False)
    english_term: Mapped[str] = mapped_column(Text, nullable=False)
    feature_type: Mapped[str] = mapped_column(String(64), nullable=False)
    species_id: Mapped[str | None] = mapped_column(String(64))
    image_id: Mapped[str | None] = mapped_column(String(64))

    # Bounding box in normalized image coordinates (0-1)
    box_x: Mapped[float] = mapped_column(Float, nullable=False)
    box_y: Mapped[float] = mapped_column(Float, nullable=False)
    box_width: Mapped[float] = mapped_column(Float, nullable=False)
    box_height: Mapped[float] = mapped_column(Float, nullable=False)

    difficulty_level: Mapped[int] = mapped_column(Integer, default=1)
    module_id: Mapped[str | None] = mapped_column(String(64), index=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<AnnotationRow id={self.id} term={self.spanish_term} status={self.status}>"


class UserTermProgressRow(Base):
    """
    SM-2 state and mastery per learner per term.

    Rows are created lazily on first discovery and never deleted.
    `version` backs optimistic concurrency for review writes.
    """

    __tablename__ = "user_term_progress"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    term_id: Mapped[str] = mapped_column(String(64), nullable=False)

    repetitions: Mapped[int] = mapped_column(Integer, default=0)
    ease_factor: Mapped[float] = mapped_column(Float, default=2.5)
    interval_days: Mapped[int] = mapped_column(Integer, default=1)
    next_review_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    mastery_level: Mapped[int] = mapped_column(Integer, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    times_correct: Mapped[int] = mapped_column(Integer, default=0)
    times_incorrect: Mapped[int] = mapped_column(Integer, default=0)

    first_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("user_id", "term_id", name="pk_user_term_progress"),
        Index("idx_user_term_progress_due", "user_id", "next_review_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserTermProgressRow user={self.user_id} term={self.term_id} "
            f"interval={self.interval_days}d mastery={self.mastery_level}>"
        )


class ExerciseCacheRow(Base):
    """Generated exercise payload keyed by a content hash."""

    __tablename__ = "exercise_cache"

    cache_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime)
    access_count: Mapped[int] = mapped_column(Integer, default=0)
    generation_time_ms: Mapped[int | None] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<ExerciseCacheRow key={self.cache_key[:16]} expires={self.expires_at}>"


class FeatureStatisticRow(Base):
    """
    Running correction statistics per (feature type, species).

    Mean and M2 are stored as JSON arrays so vector samples
    (dx, dy, dwidth, dheight) fit in one row.
    """

    __tablename__ = "feature_statistics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feature_type: Mapped[str] = mapped_column(String(64), nullable=False)
    species_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    count: Mapped[int] = mapped_column(Integer, default=0)
    mean: Mapped[list] = mapped_column(JSON, default=list)
    m2: Mapped[list] = mapped_column(JSON, default=list)

    # Approved box placements (center_x, center_y, width, height)
    placement_count: Mapped[int] = mapped_column(Integer, default=0)
    placement_mean: Mapped[list] = mapped_column(JSON, default=list)
    placement_m2: Mapped[list] = mapped_column(JSON, default=list)

    approvals: Mapped[int] = mapped_column(Integer, default=0)
    rejections: Mapped[int] = mapped_column(Integer, default=0)
    occurrences: Mapped[int] = mapped_column(Integer, default=0)
    confidence_bias: Mapped[float] = mapped_column(Float, default=0.0)
    rejection_reasons: Mapped[dict] = mapped_column(JSON, default=dict)

    updated_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("feature_type", "species_id", name="uq_feature_species"),
    )

    def __repr__(self) -> str:
        return f"<FeatureStatisticRow {self.species_id}:{self.feature_type} n={self.count}>"


class LearningModuleRow(Base):
    """Learning module grouping published annotations; listed by `order_index`."""

    __tablename__ = "learning_modules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    title_spanish: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    difficulty_level: Mapped[int] = mapped_column(Integer, default=1)
    species_ids: Mapped[list] = mapped_column(JSON, default=list)
    order_index: Mapped[int] = mapped_column(Integer, default=0, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<LearningModuleRow id={self.id} title={self.title} order={self.order_index}>"
