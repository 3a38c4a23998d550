"""
Progress stores for spaced repetition state.

One `UserTermProgress` row per (user, term):
- In-memory store for tests and single-process use
- SQLAlchemy store for PostgreSQL/SQLite persistence

Both implement optimistic versioning: `save` only succeeds when the caller's
`version` matches the stored one, so concurrent writers cannot lose updates.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from aves.core.clock import utcnow
from aves.core.errors import ConflictError
from aves.db.database import session_scope
from aves.db.models import UserTermProgressRow

from .sm2 import SM2State

# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class UserTermProgress:
    """Review state and mastery for a single learner x term."""

    user_id: str
    term_id: str
    repetitions: int = 0  # Consecutive correct answers
    ease_factor: float = 2.5  # EF starts at 2.5
    interval_days: int = 1  # Days until next review
    next_review_at: datetime = field(default_factory=utcnow)
    mastery_level: int = 0  # 0-100
    current_streak: int = 0
    longest_streak: int = 0
    times_correct: int = 0
    times_incorrect: int = 0
    first_seen_at: datetime = field(default_factory=utcnow)
    last_reviewed_at: datetime | None = None
    version: int = 0

    @property
    def sm2_state(self) -> SM2State:
        return SM2State(
            repetitions=self.repetitions,
            ease_factor=self.ease_factor,
            interval_days=self.interval_days,
            next_review_at=self.next_review_at,
        )

    def is_due(self, now: datetime) -> bool:
        """Check if this term is due for review."""
        return self.next_review_at <= now

    def days_overdue(self, now: datetime) -> int:
        """Whole days past the scheduled review date."""
        return max(0, (now - self.next_review_at).days)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("next_review_at", "first_seen_at", "last_reviewed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


# =============================================================================
# Store Interface
# =============================================================================


class ProgressStore(ABC):
    """Keyed store of `UserTermProgress` rows."""

    @abstractmethod
    def get(self, user_id: str, term_id: str) -> UserTermProgress | None:
        """Get progress for one learner x term, or None."""

    @abstractmethod
    def create(self, progress: UserTermProgress) -> UserTermProgress:
        """Insert if absent; returns whichever row is stored afterwards."""

    @abstractmethod
    def save(self, progress: UserTermProgress) -> UserTermProgress:
        """
        Compare-and-swap write.

        Raises:
            ConflictError: The stored version no longer matches `progress.version`
        """

    @abstractmethod
    def list_due(self, user_id: str, now: datetime) -> list[UserTermProgress]:
        """Rows with `next_review_at <= now` for one learner (unordered)."""

    @abstractmethod
    def list_for_user(self, user_id: str) -> list[UserTermProgress]:
        """All rows for one learner."""


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryProgressStore(ProgressStore):
    """Dictionary-backed store; rows are copied in and out."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], UserTermProgress] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, term_id: str) -> UserTermProgress | None:
        with self._lock:
            row = self._rows.get((user_id, term_id))
            return replace(row) if row else None

    def create(self, progress: UserTermProgress) -> UserTermProgress:
        key = (progress.user_id, progress.term_id)
        with self._lock:
            if key not in self._rows:
                self._rows[key] = replace(progress, version=0)
            return replace(self._rows[key])

    def save(self, progress: UserTermProgress) -> UserTermProgress:
        key = (progress.user_id, progress.term_id)
        with self._lock:
            stored = self._rows.get(key)
            if stored is None or stored.version != progress.version:
                raise ConflictError(
                    "Progress row was modified concurrently",
                    {
                        "user_id": progress.user_id,
                        "term_id": progress.term_id,
                        "expected_version": progress.version,
                        "stored_version": stored.version if stored else None,
                    },
                )
            saved = replace(progress, version=progress.version + 1)
            self._rows[key] = saved
            return replace(saved)

    def list_due(self, user_id: str, now: datetime) -> list[UserTermProgress]:
        with self._lock:
            return [
                replace(row)
                for (uid, _), row in self._rows.items()
                if uid == user_id and row.next_review_at <= now
            ]

    def list_for_user(self, user_id: str) -> list[UserTermProgress]:
        with self._lock:
            return [replace(row) for (uid, _), row in self._rows.items() if uid == user_id]


# =============================================================================
# SQLAlchemy Store
# =============================================================================


def _from_row(row: UserTermProgressRow) -> UserTermProgress:
    return UserTermProgress(
        user_id=row.user_id,
        term_id=row.term_id,
        repetitions=row.repetitions,
        ease_factor=row.ease_factor,
        interval_days=row.interval_days,
        next_review_at=row.next_review_at,
        mastery_level=row.mastery_level,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        times_correct=row.times_correct,
        times_incorrect=row.times_incorrect,
        first_seen_at=row.first_seen_at,
        last_reviewed_at=row.last_reviewed_at,
        version=row.version,
    )


class SqlProgressStore(ProgressStore):
    """`user_term_progress` table with version-guarded updates."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._session_factory = session_factory

    def get(self, user_id: str, term_id: str) -> UserTermProgress | None:
        with session_scope(self._session_factory) as session:
            row = session.get(UserTermProgressRow, (user_id, term_id))
            return _from_row(row) if row else None

    def create(self, progress: UserTermProgress) -> UserTermProgress:
        try:
            with session_scope(self._session_factory) as session:
                row = session.get(UserTermProgressRow, (progress.user_id, progress.term_id))
                if row is None:
                    row = UserTermProgressRow(
                        user_id=progress.user_id,
                        term_id=progress.term_id,
                        repetitions=progress.repetitions,
                        ease_factor=progress.ease_factor,
                        interval_days=progress.interval_days,
                        next_review_at=progress.next_review_at,
                        mastery_level=progress.mastery_level,
                        current_streak=progress.current_streak,
                        longest_streak=progress.longest_streak,
                        times_correct=progress.times_correct,
                        times_incorrect=progress.times_incorrect,
                        first_seen_at=progress.first_seen_at,
                        last_reviewed_at=progress.last_reviewed_at,
                        version=0,
                    )
                    session.add(row)
                    session.flush()
                return _from_row(row)
        except IntegrityError:
            # Another writer inserted the same (user, term) first
            logger.debug(f"Progress row {progress.user_id}/{progress.term_id} created concurrently")
            existing = self.get(progress.user_id, progress.term_id)
            if existing is None:
                raise
            return existing

    def save(self, progress: UserTermProgress) -> UserTermProgress:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(UserTermProgressRow)
                .where(
                    UserTermProgressRow.user_id == progress.user_id,
                    UserTermProgressRow.term_id == progress.term_id,
                    UserTermProgressRow.version == progress.version,
                )
                .values(
                    repetitions=progress.repetitions,
                    ease_factor=progress.ease_factor,
                    interval_days=progress.interval_days,
                    next_review_at=progress.next_review_at,
                    mastery_level=progress.mastery_level,
                    current_streak=progress.current_streak,
                    longest_streak=progress.longest_streak,
                    times_correct=progress.times_correct,
                    times_incorrect=progress.times_incorrect,
                    last_reviewed_at=progress.last_reviewed_at,
                    version=progress.version + 1,
                )
            )
            if result.rowcount != 1:
                raise ConflictError(
                    "Progress row was modified concurrently",
                    {
                        "user_id": progress.user_id,
                        "term_id": progress.term_id,
                        "expected_version": progress.version,
                    },
                )
        return replace(progress, version=progress.version + 1)

    def list_due(self, user_id: str, now: datetime) -> list[UserTermProgress]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(UserTermProgressRow).where(
                    UserTermProgressRow.user_id == user_id,
                    UserTermProgressRow.next_review_at <= now,
                )
            ).all()
            return [_from_row(row) for row in rows]

    def list_for_user(self, user_id: str) -> list[UserTermProgress]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(UserTermProgressRow).where(UserTermProgressRow.user_id == user_id)
            ).all()
            return [_from_row(row) for row in rows]
