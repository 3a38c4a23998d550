"""
SM-2 Spaced Repetition Algorithm.

Pure scheduling math, no storage:
- SM-2 interval and ease factor updates
- Mastery level change for a review outcome
- Grade derivation from correctness and response time

SM-2 Grade Scale:
0 - Complete blackout, wrong response
1 - Incorrect, but upon seeing answer remembered
2 - Incorrect, but answer seemed easy to recall
3 - Correct, but with significant difficulty
4 - Correct, with some hesitation
5 - Correct, with perfect recall
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from aves.core.clock import utcnow
from aves.core.errors import ValidationError

MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3


@dataclass
class SM2Config:
    """Configuration for SM-2 algorithm."""

    initial_easiness: float = 2.5
    minimum_easiness: float = 1.3
    first_interval: int = 1  # Days for first review
    second_interval: int = 6  # Days for second review
    failure_penalty: float = 0.2  # EF drop on a failed review
    mastery_gain_per_quality: int = 5
    mastery_failure_penalty: int = 10

    @classmethod
    def from_settings(cls, srs_config: dict) -> SM2Config:
        return cls(
            initial_easiness=srs_config["initial_ease_factor"],
            minimum_easiness=srs_config["minimum_ease_factor"],
            first_interval=srs_config["first_interval"],
            second_interval=srs_config["second_interval"],
            failure_penalty=srs_config["failure_ease_penalty"],
            mastery_gain_per_quality=srs_config["mastery_gain_per_quality"],
            mastery_failure_penalty=srs_config["mastery_failure_penalty"],
        )


@dataclass(frozen=True)
class SM2State:
    """Scheduling state for one learner x term."""

    repetitions: int = 0
    ease_factor: float = 2.5
    interval_days: int = 1
    next_review_at: datetime | None = None


def validate_quality(quality: object) -> int:
    """Reject anything that is not an integer grade in 0..5."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ValidationError(
            "quality must be an integer between 0 and 5",
            {"quality": quality},
        )
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ValidationError(
            f"quality must be between {MIN_QUALITY} and {MAX_QUALITY}",
            {"quality": quality},
        )
    return quality


class SM2Scheduler:
    """
    Implements the SM-2 spaced repetition algorithm.

    The SuperMemo 2 algorithm calculates optimal review intervals
    based on performance history. Each term has:
    - Easiness Factor (EF): How easy the item is (2.5 default, min 1.3)
    - Interval: Days until next review
    - Repetitions: Consecutive correct recalls
    """

    def __init__(self, config: SM2Config | None = None):
        """
        Initialize SM-2 scheduler.

        Args:
            config: Custom configuration (uses defaults if None)
        """
        self.config = config or SM2Config()

    def initial_state(self) -> SM2State:
        return SM2State(
            repetitions=0,
            ease_factor=self.config.initial_easiness,
            interval_days=self.config.first_interval,
        )

    def calculate_next_review(
        self,
        quality: int,
        state: SM2State,
        now: datetime | None = None,
    ) -> SM2State:
        """
        Calculate next review date based on quality.

        Args:
            quality: User grade (0-5)
            state: Current SM2 state for the term
            now: Review time (defaults to current UTC time)

        Returns:
            New SM2State with interval, ease factor and next_review_at
        """
        q = validate_quality(quality)
        now = now or utcnow()
        floor = self.config.minimum_easiness

        if q < PASSING_QUALITY:
            # Failed - reset to beginning
            new_repetitions = 0
            new_interval = self.config.first_interval
            new_ef = max(floor, state.ease_factor - self.config.failure_penalty)
        else:
            # Passed - advance
            new_repetitions = state.repetitions + 1

            if new_repetitions == 1:
                new_interval = self.config.first_interval
            elif new_repetitions == 2:
                new_interval = self.config.second_interval
            else:
                # Interval grows with the ease factor in effect before this review
                new_interval = round(state.interval_days * state.ease_factor)

            # EF' = EF + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02))
            ef_delta = 0.1 - (5 - q) * (0.08 + (5 - q) * 0.02)
            new_ef = max(floor, state.ease_factor + ef_delta)

        new_interval = max(1, new_interval)

        return SM2State(
            repetitions=new_repetitions,
            ease_factor=new_ef,
            interval_days=new_interval,
            next_review_at=now + timedelta(days=new_interval),
        )

    def mastery_after(self, mastery: int, quality: int) -> int:
        """Mastery level (0-100) after a review of the given quality."""
        q = validate_quality(quality)
        if q >= PASSING_QUALITY:
            return min(100, mastery + q * self.config.mastery_gain_per_quality)
        return max(0, mastery - self.config.mastery_failure_penalty)

    def grade_from_response(
        self,
        is_correct: bool,
        response_ms: int,
        expected_ms: int = 10000,
    ) -> int:
        """
        Convert a response to an SM-2 grade.

        Args:
            is_correct: Whether the answer was correct
            response_ms: Time taken to respond
            expected_ms: Expected response time

        Returns:
            Grade 0-5
        """
        if not is_correct:
            # Incorrect responses: 0-2
            if response_ms < expected_ms * 0.5:
                return 2  # Quick wrong = almost knew it
            elif response_ms < expected_ms:
                return 1  # Wrong but remembered when shown
            else:
                return 0  # Complete blackout

        # Correct responses: 3-5
        if response_ms < expected_ms * 0.5:
            return 5  # Quick and correct = perfect recall
        elif response_ms < expected_ms:
            return 4  # Correct with some hesitation
        else:
            return 3  # Correct but struggled
