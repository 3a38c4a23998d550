"""
Spaced repetition: SM-2 scheduling over per-learner progress rows.
"""

from .progress_store import (
    InMemoryProgressStore,
    ProgressStore,
    SqlProgressStore,
    UserTermProgress,
)
from .scheduler import DueTerm, SpacedRepetitionScheduler, TermCatalog, UserStats
from .sm2 import SM2Config, SM2Scheduler, SM2State, validate_quality

__all__ = [
    "DueTerm",
    "InMemoryProgressStore",
    "ProgressStore",
    "SM2Config",
    "SM2Scheduler",
    "SM2State",
    "SpacedRepetitionScheduler",
    "SqlProgressStore",
    "TermCatalog",
    "UserStats",
    "UserTermProgress",
    "validate_quality",
]
