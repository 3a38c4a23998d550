"""
Content Publishing Service.

Owns the annotation workflow:
- Submission of new annotations
- Reviewer decisions (approve, reject, position fix) fed to the statistics engine
- Learning modules that published terms are assigned to
- Atomic batch publishing with optional background cache warm-up
- Queries over published content

Publishing never creates learner progress; rows appear when a learner first
discovers a term.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from aves.core.clock import utcnow
from aves.core.errors import ConflictError, NotFoundError, ValidationError
from aves.core.locks import KeyedLocks
from aves.patterns.engine import (
    UNKNOWN_SPECIES,
    AnnotationQuality,
    FeatureStatisticsEngine,
    FeedbackEvent,
    FeedbackType,
)

from .annotation_store import AnnotationStore
from .models import Annotation, AnnotationStatus, BoundingBox, LearningModule, Term
from .module_store import InMemoryModuleStore, ModuleStore
from .state_machine import can_transition, ensure_transition
from .warmup import ExerciseWarmer

UNASSIGNED_MODULE = "unassigned"

# =============================================================================
# Batch Results
# =============================================================================


@dataclass
class BatchItemResult:
    """Outcome for one id in a publish batch."""

    annotation_id: str
    status: str  # "published", "ready", "not_found", "invalid_state"
    reason: str | None = None

    @property
    def failed(self) -> bool:
        return self.status in ("not_found", "invalid_state")

    def to_dict(self) -> dict[str, Any]:
        return {"annotation_id": self.annotation_id, "status": self.status, "reason": self.reason}


@dataclass
class BatchResult:
    """
    Outcome of a publish batch.

    When any item failed, nothing was committed and the remaining items are
    reported as "ready".
    """

    success: bool
    items: list[BatchItemResult] = field(default_factory=list)
    module_id: str | None = None
    warmup_scheduled: bool = False

    @property
    def published(self) -> list[str]:
        return [i.annotation_id for i in self.items if i.status == "published"]

    @property
    def failed(self) -> list[BatchItemResult]:
        return [i for i in self.items if i.failed]

    @property
    def published_count(self) -> int:
        return len(self.published)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "published_count": self.published_count,
            "failed_count": self.failed_count,
            "module_id": self.module_id,
            "warmup_scheduled": self.warmup_scheduled,
            "items": [i.to_dict() for i in self.items],
        }


# =============================================================================
# Service
# =============================================================================


class ContentPublishingService:
    """
    Annotation workflow and publishing.

    Example:
        service = ContentPublishingService(InMemoryAnnotationStore(), statistics)
        ann = service.submit("el pico", "the beak", "pico", BoundingBox(0.4, 0.2, 0.1, 0.1))
        service.approve(ann.id)
        service.create_module("Anatomy", "Anatomía", module_id="anatomy-1")
        result = service.publish([ann.id], module_id="anatomy-1")
    """

    def __init__(
        self,
        store: AnnotationStore,
        statistics: FeatureStatisticsEngine | None = None,
        warmer: ExerciseWarmer | None = None,
        allow_unpublish: bool = False,
        modules: ModuleStore | None = None,
    ):
        self.store = store
        self.statistics = statistics
        self.modules = modules or InMemoryModuleStore()
        self.warmer = warmer
        self.allow_unpublish = allow_unpublish
        self._batch_lock = threading.Lock()
        self._locks = KeyedLocks()

    # =========================================================================
    # Submission & Review
    # =========================================================================

    def submit(
        self,
        spanish_term: str,
        english_term: str,
        feature_type: str,
        bounding_box: BoundingBox,
        species_id: str | None = None,
        image_id: str | None = None,
        difficulty_level: int = 1,
        annotation_id: str | None = None,
    ) -> Annotation:
        """Create a pending annotation."""
        if not spanish_term.strip() or not english_term.strip():
            raise ValidationError(
                "Both Spanish and English terms are required",
                {"spanish_term": spanish_term, "english_term": english_term},
            )
        if not feature_type.strip():
            raise ValidationError("feature_type is required")

        annotation = self.store.add(
            Annotation(
                id=annotation_id or uuid.uuid4().hex,
                spanish_term=spanish_term.strip(),
                english_term=english_term.strip(),
                feature_type=feature_type.strip(),
                bounding_box=bounding_box,
                species_id=species_id,
                image_id=image_id,
                difficulty_level=difficulty_level,
            )
        )
        if self.statistics is not None:
            self.statistics.record_occurrence(annotation.feature_type, annotation.species_id or UNKNOWN_SPECIES)
        logger.info(f"Submitted annotation {annotation.id} ({annotation.spanish_term})")
        return annotation

    def approve(self, annotation_id: str) -> Annotation:
        """pending -> approved; counts as positive feedback."""
        annotation = self._transition(annotation_id, AnnotationStatus.APPROVED)
        self._feedback(annotation, FeedbackType.APPROVE)
        return annotation

    def reject(self, annotation_id: str, reason: str | None = None) -> Annotation:
        """pending -> rejected; the reason is tallied by the statistics engine."""
        annotation = self._transition(annotation_id, AnnotationStatus.REJECTED, rejection_reason=reason)
        self._feedback(annotation, FeedbackType.REJECT, reason=reason)
        return annotation

    def fix_position(self, annotation_id: str, new_box: BoundingBox) -> Annotation:
        """
        Replace the bounding box of an unpublished annotation.

        The correction vector (new - old) is observed by the statistics engine.
        """
        with self._locks.hold(annotation_id):
            annotation = self._require(annotation_id)
            if annotation.status not in (AnnotationStatus.PENDING, AnnotationStatus.APPROVED):
                raise ConflictError(
                    f"Cannot move the box of a {annotation.status.value} annotation",
                    {"annotation_id": annotation_id, "current": annotation.status.value},
                )
            correction = annotation.bounding_box.delta(new_box)
            updated = replace(annotation, bounding_box=new_box, updated_at=utcnow())
            self.store.save(updated)

        self._feedback(updated, FeedbackType.POSITION_FIX, correction=correction)
        logger.info(f"Position of {annotation_id} corrected by {tuple(round(c, 3) for c in correction)}")
        return updated

    def handle_feedback(
        self,
        annotation_id: str,
        feedback_type: FeedbackType | str,
        metadata: dict[str, Any] | None = None,
    ) -> Annotation:
        """
        Apply a feedback event from the review collaborator.

        Args:
            annotation_id: Target annotation
            feedback_type: approve, reject or position_fix
            metadata: {"reason": str} for rejections,
                {"bounding_box": {x, y, width, height}} for position fixes
        """
        metadata = metadata or {}
        try:
            kind = FeedbackType(feedback_type)
        except ValueError as e:
            raise ValidationError(
                f"Unknown feedback type: {feedback_type}", {"type": feedback_type}
            ) from e

        if kind == FeedbackType.APPROVE:
            return self.approve(annotation_id)
        if kind == FeedbackType.REJECT:
            return self.reject(annotation_id, metadata.get("reason"))

        box = metadata.get("bounding_box")
        if not isinstance(box, dict):
            raise ValidationError("position_fix feedback requires a bounding_box", {"metadata": metadata})
        return self.fix_position(annotation_id, BoundingBox.from_dict(box))

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(
        self,
        annotation_ids: list[str],
        module_id: str | None = None,
        generate_exercises: bool = False,
    ) -> BatchResult:
        """
        Publish approved annotations all-or-nothing.

        Args:
            annotation_ids: Annotations to publish
            module_id: Learning module to assign
            generate_exercises: Warm the exercise cache in the background

        Returns:
            BatchResult listing every item; `success` is False and nothing is
            committed when any id is unknown or not approved
        """
        ids = list(dict.fromkeys(annotation_ids))
        if not ids:
            raise ValidationError("publish needs at least one annotation id")
        if module_id is not None:
            self._require_module(module_id)

        # Per-annotation locks keep reviewer edits out between read and write
        with self._batch_lock, self._locks.hold_many(ids):
            found = self.store.get_many(ids)
            items: list[BatchItemResult] = []
            for annotation_id in ids:
                annotation = found.get(annotation_id)
                if annotation is None:
                    items.append(BatchItemResult(annotation_id, "not_found", "annotation does not exist"))
                elif not can_transition(annotation.status, AnnotationStatus.PUBLISHED):
                    items.append(
                        BatchItemResult(
                            annotation_id,
                            "invalid_state",
                            f"status is {annotation.status.value}, expected approved",
                        )
                    )
                else:
                    items.append(BatchItemResult(annotation_id, "ready"))

            if any(item.failed for item in items):
                failed = [i.annotation_id for i in items if i.failed]
                logger.warning(f"Publish batch of {len(ids)} rejected; failing ids: {failed}")
                return BatchResult(success=False, items=items, module_id=module_id)

            now = utcnow()
            published = [
                replace(
                    found[annotation_id],
                    status=AnnotationStatus.PUBLISHED,
                    module_id=module_id if module_id is not None else found[annotation_id].module_id,
                    published_at=now,
                    updated_at=now,
                )
                for annotation_id in ids
            ]
            self.store.save_many(published)

        for item in items:
            item.status = "published"
        result = BatchResult(success=True, items=items, module_id=module_id)
        logger.info(f"Published {len(published)} annotations" + (f" to module {module_id}" if module_id else ""))

        if generate_exercises:
            if self.warmer is None:
                logger.warning("Exercise generation requested but no cache warmer is configured")
            else:
                self.warmer.schedule([a.to_term() for a in published])
                result.warmup_scheduled = True
        return result

    def unpublish(self, annotation_id: str) -> Annotation:
        """
        published -> approved, when enabled.

        Raises:
            ConflictError: Unpublishing is disabled or the annotation is not published
        """
        annotation = self._transition(annotation_id, AnnotationStatus.APPROVED, unpublish=True)
        logger.info(f"Unpublished annotation {annotation_id}")
        return annotation

    # =========================================================================
    # Learning Modules
    # =========================================================================

    def create_module(
        self,
        title: str,
        title_spanish: str,
        description: str | None = None,
        difficulty_level: int = 1,
        species_ids: list[str] | None = None,
        module_id: str | None = None,
        order_index: int | None = None,
    ) -> LearningModule:
        """
        Create an active learning module.

        Args:
            title: English title
            title_spanish: Spanish title
            description: Free text shown to learners
            difficulty_level: 1 (easiest) and up
            species_ids: Species the module covers
            module_id: Explicit id (random when omitted)
            order_index: Position in the module list (appended when omitted)

        Raises:
            ValidationError: A title is blank or the difficulty is below 1
            ConflictError: `module_id` is already taken
        """
        if not title.strip() or not title_spanish.strip():
            raise ValidationError(
                "Both English and Spanish titles are required",
                {"title": title, "title_spanish": title_spanish},
            )
        if difficulty_level < 1:
            raise ValidationError("difficulty_level must be at least 1", {"difficulty_level": difficulty_level})

        module = self.modules.add(
            LearningModule(
                id=module_id or uuid.uuid4().hex,
                title=title.strip(),
                title_spanish=title_spanish.strip(),
                description=description,
                difficulty_level=difficulty_level,
                species_ids=list(species_ids or []),
                order_index=order_index if order_index is not None else self.modules.next_order_index(),
            )
        )
        logger.info(f"Created learning module {module.id} ({module.title})")
        return module

    def get_learning_modules(self) -> list[LearningModule]:
        """Active modules in display order."""
        return self.modules.list(active_only=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_annotation(self, annotation_id: str) -> Annotation:
        return self._require(annotation_id)

    def evaluate_annotation_quality(self, annotation_id: str, confidence: float | None = None) -> AnnotationQuality:
        """
        Score an annotation's box against approved placements for its feature.

        Raises:
            NotFoundError: Unknown annotation
            ValidationError: No statistics engine is configured
        """
        annotation = self._require(annotation_id)
        if self.statistics is None:
            raise ValidationError("Annotation quality needs a statistics engine")
        return self.statistics.evaluate_annotation_quality(
            annotation.feature_type,
            annotation.species_id,
            annotation.bounding_box,
            confidence=confidence,
        )

    def get_published_content(
        self,
        module_id: str | None = None,
        species_id: str | None = None,
        feature_type: str | None = None,
    ) -> list[Term]:
        """Published terms matching the filters, oldest first."""
        annotations = self.store.list(
            status=AnnotationStatus.PUBLISHED, module_id=module_id, species_id=species_id
        )
        return [
            a.to_term() for a in annotations if feature_type is None or a.feature_type == feature_type
        ]

    def get_content_by_module(self) -> dict[str, list[Term]]:
        """Published terms grouped by module id; terms without one under "unassigned"."""
        grouped: dict[str, list[Term]] = {}
        for annotation in self.store.list(status=AnnotationStatus.PUBLISHED):
            grouped.setdefault(annotation.module_id or UNASSIGNED_MODULE, []).append(annotation.to_term())
        return grouped

    def get_content_stats(self) -> dict[str, Any]:
        """Counts per status plus published terms per module."""
        by_status = self.store.count_by_status()
        modules: dict[str, int] = {}
        for annotation in self.store.list(status=AnnotationStatus.PUBLISHED):
            key = annotation.module_id or UNASSIGNED_MODULE
            modules[key] = modules.get(key, 0) + 1
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "published_by_module": modules,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require(self, annotation_id: str) -> Annotation:
        annotation = self.store.get(annotation_id)
        if annotation is None:
            raise NotFoundError(f"Annotation not found: {annotation_id}", {"annotation_id": annotation_id})
        return annotation

    def _require_module(self, module_id: str) -> LearningModule:
        module = self.modules.get(module_id)
        if module is None:
            raise NotFoundError(f"Learning module not found: {module_id}", {"module_id": module_id})
        return module

    def _transition(
        self,
        annotation_id: str,
        target: AnnotationStatus,
        rejection_reason: str | None = None,
        unpublish: bool = False,
    ) -> Annotation:
        with self._locks.hold(annotation_id):
            annotation = self._require(annotation_id)
            ensure_transition(
                annotation_id,
                annotation.status,
                target,
                allow_unpublish=unpublish and self.allow_unpublish,
            )
            updated = replace(
                annotation,
                status=target,
                rejection_reason=rejection_reason if target == AnnotationStatus.REJECTED else None,
                published_at=None if unpublish else annotation.published_at,
                updated_at=utcnow(),
            )
            self.store.save(updated)
        logger.debug(f"Annotation {annotation_id}: {annotation.status.value} -> {target.value}")
        return updated

    def _feedback(
        self,
        annotation: Annotation,
        kind: FeedbackType,
        reason: str | None = None,
        correction: tuple[float, ...] | None = None,
    ) -> None:
        if self.statistics is None:
            return
        self.statistics.apply_feedback(
            FeedbackEvent(
                type=kind,
                feature_type=annotation.feature_type,
                species_id=annotation.species_id or UNKNOWN_SPECIES,
                reason=reason,
                correction=correction,
                placement=annotation.bounding_box.placement() if kind == FeedbackType.APPROVE else None,
            )
        )
