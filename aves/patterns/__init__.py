"""
Pattern learning: online feature statistics fed by reviewer feedback.
"""

from .engine import (
    AnnotationQuality,
    Estimate,
    FeatureStatisticsEngine,
    FeedbackEvent,
    FeedbackType,
    PositionAdjustment,
)
from .store import (
    FeatureStatistic,
    InMemoryStatisticsStore,
    SqlStatisticsStore,
    StatisticsStore,
)
from .welford import RunningStats, update

__all__ = [
    "AnnotationQuality",
    "Estimate",
    "FeatureStatistic",
    "FeatureStatisticsEngine",
    "FeedbackEvent",
    "FeedbackType",
    "InMemoryStatisticsStore",
    "PositionAdjustment",
    "RunningStats",
    "SqlStatisticsStore",
    "StatisticsStore",
    "update",
]
