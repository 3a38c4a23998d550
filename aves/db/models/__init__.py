# SQLAlchemy models
from .base import Base
from .learning import (
    AnnotationRow,
    ExerciseCacheRow,
    FeatureStatisticRow,
    LearningModuleRow,
    UserTermProgressRow,
)

__all__ = [
    # Base
    "Base",
    # Learning engine
    "AnnotationRow",
    "ExerciseCacheRow",
    "FeatureStatisticRow",
    "LearningModuleRow",
    "UserTermProgressRow",
]
