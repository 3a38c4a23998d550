"""
Content publishing: annotation workflow gating what becomes reviewable.
"""

from .annotation_store import AnnotationStore, InMemoryAnnotationStore, SqlAnnotationStore
from .models import Annotation, AnnotationStatus, BoundingBox, LearningModule, Term
from .module_store import InMemoryModuleStore, ModuleStore, SqlModuleStore
from .service import UNASSIGNED_MODULE, BatchItemResult, BatchResult, ContentPublishingService
from .state_machine import allowed_transitions, can_transition, ensure_transition
from .warmup import ExerciseWarmer, WarmupReport

__all__ = [
    "UNASSIGNED_MODULE",
    "Annotation",
    "AnnotationStatus",
    "AnnotationStore",
    "BatchItemResult",
    "BatchResult",
    "BoundingBox",
    "ContentPublishingService",
    "ExerciseWarmer",
    "InMemoryAnnotationStore",
    "InMemoryModuleStore",
    "LearningModule",
    "ModuleStore",
    "SqlAnnotationStore",
    "SqlModuleStore",
    "Term",
    "WarmupReport",
    "allowed_transitions",
    "can_transition",
    "ensure_transition",
]
