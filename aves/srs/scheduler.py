"""
Spaced Repetition Scheduler.

Applies SM-2 to per-learner progress rows:
- Due list ordered by urgency, then weakness, then term age
- Review recording with streak, mastery and counter updates
- Lazy row creation on first discovery of a term

Writes for one (user, term) pair are serialized by a per-key lock in this
process and by the store's optimistic `version` check across processes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger

from aves.core.clock import utcnow
from aves.core.errors import ConflictError, NotFoundError, ValidationError
from aves.core.locks import KeyedLocks

from .progress_store import ProgressStore, UserTermProgress
from .sm2 import PASSING_QUALITY, SM2Scheduler, validate_quality

if TYPE_CHECKING:
    from aves.publishing.models import Term


class TermCatalog(Protocol):
    """Lookup of reviewable (published) terms."""

    def get_term(self, term_id: str) -> Term | None: ...

    def get_terms(self, term_ids: Iterable[str]) -> dict[str, Term]: ...


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True)
class DueTerm:
    """A term that is due, with the progress row that made it due."""

    term: Term
    progress: UserTermProgress
    days_overdue: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "term": self.term.to_dict(),
            "progress": self.progress.to_dict(),
            "days_overdue": self.days_overdue,
        }


@dataclass
class UserStats:
    """Aggregate learning statistics for one learner."""

    user_id: str
    total_terms: int = 0
    mastered: int = 0
    learning: int = 0
    new: int = 0
    due_now: int = 0
    average_mastery: float = 0.0
    best_streak: int = 0
    streak: int = 0  # consecutive review days ending at the latest one
    total_reviews: int = 0
    accuracy: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_terms": self.total_terms,
            "mastered": self.mastered,
            "learning": self.learning,
            "new": self.new,
            "due_now": self.due_now,
            "average_mastery": round(self.average_mastery, 1),
            "best_streak": self.best_streak,
            "streak": self.streak,
            "total_reviews": self.total_reviews,
            "accuracy": round(self.accuracy, 3),
        }


def consecutive_days(days: Iterable[date]) -> int:
    """Length of the run of consecutive dates that ends at the newest one."""
    streak = 0
    expected: date | None = None
    for day in sorted(set(days), reverse=True):
        if expected is not None and day != expected:
            break
        streak += 1
        expected = day - timedelta(days=1)
    return streak


# =============================================================================
# Scheduler
# =============================================================================


class SpacedRepetitionScheduler:
    """
    Schedules reviews for learners.

    Example:
        scheduler = SpacedRepetitionScheduler(InMemoryProgressStore(), annotations)
        scheduler.record_review("user-1", "term-9", correct=True, quality=4)
        due = scheduler.get_due_terms("user-1", limit=20)
    """

    def __init__(
        self,
        progress_store: ProgressStore,
        terms: TermCatalog,
        sm2: SM2Scheduler | None = None,
        mastered_threshold: int = 80,
        write_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the scheduler.

        Args:
            progress_store: Store holding one progress row per (user, term)
            terms: Catalog of published terms
            sm2: SM-2 calculator (defaults to standard parameters)
            mastered_threshold: Mastery level counted as mastered in stats
            write_retries: Optimistic write attempts before a conflict surfaces
            clock: Source of the current time
        """
        self.store = progress_store
        self.terms = terms
        self.sm2 = sm2 or SM2Scheduler()
        self.mastered_threshold = mastered_threshold
        self.write_retries = max(1, write_retries)
        self._clock = clock
        self._locks = KeyedLocks()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_due_terms(
        self,
        user_id: str,
        limit: int = 20,
        now: datetime | None = None,
    ) -> list[DueTerm]:
        """
        Get terms due for review.

        Order: most days overdue first, then lowest mastery, then oldest term.

        Args:
            user_id: Learner identifier
            limit: Maximum number of terms to return
            now: Reference time (defaults to current UTC time)

        Returns:
            Due terms, never including one scheduled in the future
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValidationError("limit must be a non-negative integer", {"limit": limit})

        now = now or self._clock()
        rows = [row for row in self.store.list_due(user_id, now) if row.next_review_at <= now]
        if not rows or limit == 0:
            return []

        terms = self.terms.get_terms(row.term_id for row in rows)
        due = [
            DueTerm(term=terms[row.term_id], progress=row, days_overdue=row.days_overdue(now))
            for row in rows
            if row.term_id in terms  # Unpublished terms drop out of rotation
        ]
        due.sort(key=lambda d: (-d.days_overdue, d.progress.mastery_level, d.term.created_seq))

        logger.debug(f"{len(due)} terms due for {user_id}, returning {min(limit, len(due))}")
        return due[:limit]

    def get_term_progress(self, user_id: str, term_id: str) -> UserTermProgress | None:
        """Get the progress row for a term, or None if never discovered."""
        return self.store.get(user_id, term_id)

    def get_user_stats(self, user_id: str, now: datetime | None = None) -> UserStats:
        """Summarize a learner's progress across all discovered terms."""
        now = now or self._clock()
        rows = self.store.list_for_user(user_id)
        stats = UserStats(user_id=user_id, total_terms=len(rows))
        if not rows:
            return stats

        correct = 0
        for row in rows:
            if row.mastery_level >= self.mastered_threshold:
                stats.mastered += 1
            elif row.mastery_level > 0:
                stats.learning += 1
            else:
                stats.new += 1
            if row.is_due(now):
                stats.due_now += 1
            stats.best_streak = max(stats.best_streak, row.longest_streak)
            stats.total_reviews += row.times_correct + row.times_incorrect
            correct += row.times_correct

        stats.streak = consecutive_days(r.last_reviewed_at.date() for r in rows if r.last_reviewed_at)
        stats.average_mastery = sum(r.mastery_level for r in rows) / len(rows)
        if stats.total_reviews:
            stats.accuracy = correct / stats.total_reviews
        return stats

    # =========================================================================
    # Writes
    # =========================================================================

    def mark_term_discovered(
        self,
        user_id: str,
        term_id: str,
        now: datetime | None = None,
    ) -> UserTermProgress:
        """
        Create the progress row on first exposure to a term.

        Idempotent: an existing row is returned unchanged.
        """
        self._require_term(term_id)
        now = now or self._clock()
        with self._locks.hold((user_id, term_id)):
            existing = self.store.get(user_id, term_id)
            if existing is not None:
                return existing
            progress = self.store.create(self._new_progress(user_id, term_id, now))
        logger.info(f"Term {term_id} discovered by {user_id}")
        return progress

    def record_review(
        self,
        user_id: str,
        term_id: str,
        correct: bool,
        quality: int,
        now: datetime | None = None,
    ) -> UserTermProgress:
        """
        Apply one review to a learner's progress on a term.

        Args:
            user_id: Learner identifier
            term_id: Reviewed term
            correct: Whether the answer was correct
            quality: SM-2 grade 0-5
            now: Review time (defaults to current UTC time)

        Returns:
            The stored progress after the review

        Raises:
            ValidationError: quality is not an integer in 0..5
            NotFoundError: term is unknown or not published
            ConflictError: concurrent writers kept winning for every retry
        """
        quality = validate_quality(quality)
        self._require_term(term_id)
        now = now or self._clock()

        with self._locks.hold((user_id, term_id)):
            for attempt in range(1, self.write_retries + 1):
                current = self.store.get(user_id, term_id)
                if current is None:
                    current = self.store.create(self._new_progress(user_id, term_id, now))

                updated = self._apply_review(current, bool(correct), quality, now)
                try:
                    saved = self.store.save(updated)
                except ConflictError:
                    if attempt == self.write_retries:
                        logger.error(
                            f"Review for {user_id}/{term_id} lost {attempt} write races, giving up"
                        )
                        raise
                    logger.warning(
                        f"Progress {user_id}/{term_id} changed underneath review, "
                        f"retrying ({attempt}/{self.write_retries})"
                    )
                    continue

                logger.debug(
                    f"Review {user_id}/{term_id}: q={quality} -> "
                    f"interval={saved.interval_days}d ef={saved.ease_factor:.2f} "
                    f"mastery={saved.mastery_level}"
                )
                return saved

        raise AssertionError("unreachable")  # pragma: no cover

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_term(self, term_id: str) -> Term:
        term = self.terms.get_term(term_id)
        if term is None:
            raise NotFoundError(f"Term not found: {term_id}", {"term_id": term_id})
        return term

    def _new_progress(self, user_id: str, term_id: str, now: datetime) -> UserTermProgress:
        initial = self.sm2.initial_state()
        return UserTermProgress(
            user_id=user_id,
            term_id=term_id,
            repetitions=initial.repetitions,
            ease_factor=initial.ease_factor,
            interval_days=initial.interval_days,
            next_review_at=now + timedelta(days=initial.interval_days),
            first_seen_at=now,
        )

    def _apply_review(
        self,
        progress: UserTermProgress,
        correct: bool,
        quality: int,
        now: datetime,
    ) -> UserTermProgress:
        schedule = self.sm2.calculate_next_review(quality, progress.sm2_state, now=now)

        if quality >= PASSING_QUALITY:
            current_streak = progress.current_streak + 1
        else:
            current_streak = 0

        return replace(
            progress,
            repetitions=schedule.repetitions,
            ease_factor=schedule.ease_factor,
            interval_days=schedule.interval_days,
            next_review_at=schedule.next_review_at,
            mastery_level=self.sm2.mastery_after(progress.mastery_level, quality),
            current_streak=current_streak,
            longest_streak=max(progress.longest_streak, current_streak),
            times_correct=progress.times_correct + (1 if correct else 0),
            times_incorrect=progress.times_incorrect + (0 if correct else 1),
            last_reviewed_at=now,
        )
