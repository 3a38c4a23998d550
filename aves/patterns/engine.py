"""
Feature Statistics Engine.

Learns from reviewer feedback which bounding-box corrections each
(feature type, species) pair tends to need:
- Welford running mean/variance of correction vectors
- Approval/rejection counters nudging confidence
- Occurrence rates per species for feature recommendations
- Approved box placements for annotation quality scoring

Estimates are bias hints for prompt construction and validation tolerances,
never ground truth.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger

from aves.core.clock import utcnow
from aves.core.errors import ValidationError
from aves.core.locks import KeyedLocks

from .store import FeatureStatistic, InMemoryStatisticsStore, StatisticsStore
from .welford import Sample, update

if TYPE_CHECKING:
    from aves.publishing.models import BoundingBox

UNKNOWN_SPECIES = "_unknown"
CORRECTION_DIMENSIONS = ("dx", "dy", "dwidth", "dheight")

# Annotation scoring before a key has enough approved placements
DEFAULT_ANNOTATION_CONFIDENCE = 0.8
DEFAULT_QUALITY = 0.7


class FeedbackType(str, Enum):
    """Reviewer feedback on an annotation."""

    APPROVE = "approve"
    REJECT = "reject"
    POSITION_FIX = "position_fix"


@dataclass(frozen=True)
class FeedbackEvent:
    """
    One piece of reviewer feedback for a (feature type, species) key.

    `correction` is the (dx, dy, dwidth, dheight) vector from the original
    box to the corrected one and is required for position fixes.
    `placement` is the approved box as (center_x, center_y, width, height);
    approvals carrying it teach where the feature usually sits.
    """

    type: FeedbackType
    feature_type: str
    species_id: str
    reason: str | None = None
    correction: Sequence[float] | None = None
    placement: Sequence[float] | None = None


@dataclass(frozen=True)
class Estimate:
    """Read-only view of what has been learned for one key."""

    mean: tuple[float, ...]
    variance: tuple[float, ...]
    confidence: float
    count: int = 0
    occurrence_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean": list(self.mean),
            "variance": list(self.variance),
            "confidence": round(self.confidence, 4),
            "count": self.count,
            "occurrence_rate": round(self.occurrence_rate, 4),
        }


@dataclass(frozen=True)
class AnnotationQuality:
    """Quality score of one annotation against the learned placement."""

    confidence: float
    box_quality: float
    prompt_effectiveness: float
    overall: float

    def to_dict(self) -> dict[str, float]:
        return {
            "confidence": round(self.confidence, 4),
            "box_quality": round(self.box_quality, 4),
            "prompt_effectiveness": round(self.prompt_effectiveness, 4),
            "overall": round(self.overall, 4),
        }


@dataclass(frozen=True)
class PositionAdjustment:
    """Mean correction to apply to a feature's box, when enough corrections exist."""

    feature_type: str
    adjustment: dict[str, float] | None = None
    based_on_corrections: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_type": self.feature_type,
            "adjustment": dict(self.adjustment) if self.adjustment else None,
            "based_on_corrections": self.based_on_corrections,
        }


class FeatureStatisticsEngine:
    """
    Online statistics over reviewer feedback.

    Example:
        engine = FeatureStatisticsEngine()
        engine.observe("pico", "flamenco", (0.01, -0.02, 0.0, 0.03))
        estimate = engine.get_estimate("pico", "flamenco")
    """

    def __init__(
        self,
        store: StatisticsStore | None = None,
        confidence_samples: int = 10,
        approval_boost: float = 0.05,
        rejection_penalty: float = 0.1,
        bias_floor: float = -0.5,
        bias_ceiling: float = 0.25,
        min_samples_for_hint: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            store: Running-statistics map (in-memory by default)
            confidence_samples: Observations needed for full confidence
            approval_boost: Confidence nudge per approval
            rejection_penalty: Confidence nudge per rejection
            bias_floor: Lowest accumulated nudge
            bias_ceiling: Highest accumulated nudge
            min_samples_for_hint: Corrections needed before prompt hints use a key
            clock: Source of the current time
        """
        self.store = store or InMemoryStatisticsStore()
        self.confidence_samples = confidence_samples
        self.approval_boost = approval_boost
        self.rejection_penalty = rejection_penalty
        self.bias_floor = bias_floor
        self.bias_ceiling = bias_ceiling
        self.min_samples_for_hint = min_samples_for_hint
        self._clock = clock
        self._locks = KeyedLocks()

    @classmethod
    def from_config(
        cls,
        statistics_config: dict[str, Any],
        store: StatisticsStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> FeatureStatisticsEngine:
        """Build from `Settings.get_statistics_config()`."""
        return cls(store=store, clock=clock, **statistics_config)

    # =========================================================================
    # Writes
    # =========================================================================

    def observe(self, feature_type: str, species_id: str, sample: Sample) -> FeatureStatistic:
        """Fold one correction sample into the statistics for a key."""
        return self._mutate(feature_type, species_id, lambda stat: self._observe(stat, sample))

    def record_occurrence(self, feature_type: str, species_id: str) -> FeatureStatistic:
        """Count one annotation of `feature_type` on `species_id`."""

        def bump(stat: FeatureStatistic) -> None:
            stat.occurrences += 1

        return self._mutate(feature_type, species_id, bump)

    def apply_feedback(self, event: FeedbackEvent) -> FeatureStatistic:
        """
        Route reviewer feedback into the statistics.

        - approve: approvals += 1, confidence nudged up, placement observed
        - reject: rejections += 1, confidence nudged down, reason counted
        - position_fix: correction vector observed
        """
        try:
            feedback_type = FeedbackType(event.type)
        except ValueError as e:
            raise ValidationError(f"Unknown feedback type: {event.type}", {"type": str(event.type)}) from e

        if feedback_type == FeedbackType.POSITION_FIX:
            if event.correction is None:
                raise ValidationError(
                    "position_fix feedback requires a correction vector",
                    {"feature_type": event.feature_type, "species_id": event.species_id},
                )
            correction = event.correction
            return self._mutate(
                event.feature_type, event.species_id, lambda stat: self._observe(stat, correction)
            )

        def apply(stat: FeatureStatistic) -> None:
            if feedback_type == FeedbackType.APPROVE:
                stat.approvals += 1
                stat.confidence_bias = self._clamp_bias(stat.confidence_bias + self.approval_boost)
                if event.placement is not None:
                    stat.placement = update(stat.placement, event.placement)
            else:
                stat.rejections += 1
                stat.confidence_bias = self._clamp_bias(stat.confidence_bias - self.rejection_penalty)
                reason = (event.reason or "unspecified").strip() or "unspecified"
                stat.rejection_reasons[reason] = stat.rejection_reasons.get(reason, 0) + 1

        stat = self._mutate(event.feature_type, event.species_id, apply)
        logger.debug(
            f"Feedback {feedback_type.value} on {event.species_id}:{event.feature_type} "
            f"(bias={stat.confidence_bias:+.2f})"
        )
        return stat

    def _mutate(
        self,
        feature_type: str,
        species_id: str,
        change: Callable[[FeatureStatistic], None],
    ) -> FeatureStatistic:
        key = (feature_type, species_id or UNKNOWN_SPECIES)
        with self._locks.hold(key):
            stat = self.store.get(*key) or FeatureStatistic(feature_type=key[0], species_id=key[1])
            change(stat)
            stat.updated_at = self._clock()
            self.store.save(stat)
            return stat

    @staticmethod
    def _observe(stat: FeatureStatistic, sample: Sample) -> None:
        stat.stats = update(stat.stats, sample)

    def _clamp_bias(self, bias: float) -> float:
        return max(self.bias_floor, min(self.bias_ceiling, bias))

    # =========================================================================
    # Reads
    # =========================================================================

    def confidence(self, stat: FeatureStatistic | None) -> float:
        """
        min(1, count/N) plus the feedback nudge, clamped to [0, 1].

        Full confidence requires N observations regardless of approvals.
        """
        if stat is None:
            return 0.0
        base = min(1.0, stat.count / self.confidence_samples)
        value = max(0.0, min(1.0, base + stat.confidence_bias))
        if stat.count < self.confidence_samples:
            value = min(value, 0.99)
        return value

    def get_estimate(self, feature_type: str, species_id: str) -> Estimate:
        """
        Current estimate for a key.

        Unseen keys yield a zero-confidence default.
        """
        stat = self.store.get(feature_type, species_id or UNKNOWN_SPECIES)
        if stat is None:
            return Estimate(mean=(), variance=(), confidence=0.0)
        return Estimate(
            mean=stat.stats.mean,
            variance=stat.stats.variance,
            confidence=self.confidence(stat),
            count=stat.count,
            occurrence_rate=self._occurrence_rate(stat),
        )

    def _occurrence_rate(self, stat: FeatureStatistic) -> float:
        if not stat.occurrences:
            return 0.0
        total = sum(s.occurrences for s in self.store.list_for_species(stat.species_id))
        return stat.occurrences / total if total else 0.0

    def position_tolerance(
        self,
        feature_type: str,
        species_id: str,
        default: float = 0.1,
        floor: float = 0.02,
        ceiling: float = 0.2,
    ) -> float:
        """
        Tolerance (normalized units) for checking a label position.

        Two standard deviations of the positional corrections, widened while
        confidence is low; `default` until enough corrections exist.
        """
        estimate = self.get_estimate(feature_type, species_id)
        if estimate.count < self.min_samples_for_hint:
            return default
        spread = 2 * math.sqrt(max(estimate.variance[:2], default=0.0))
        tolerance = spread + (1 - estimate.confidence) * default
        return min(ceiling, max(floor, tolerance))

    def evaluate_annotation_quality(
        self,
        feature_type: str,
        species_id: str | None,
        box: BoundingBox,
        confidence: float | None = None,
    ) -> AnnotationQuality:
        """
        Score an annotation against where approved boxes for the key sit.

        The box center is compared with the mean approved center; each axis
        distance is scaled by sqrt(variance + 0.01) and the combined distance
        d maps to exp(-d/2). Until `min_samples_for_hint` approved placements
        exist, box quality and prompt effectiveness use a neutral default.

        Args:
            feature_type: Feature the box labels
            species_id: Species in the image
            box: Candidate bounding box
            confidence: Annotator confidence (DEFAULT_ANNOTATION_CONFIDENCE when absent)

        Returns:
            AnnotationQuality with overall = 0.4 confidence + 0.3 box + 0.3 prompt
        """
        confidence = DEFAULT_ANNOTATION_CONFIDENCE if confidence is None else confidence
        box_quality = DEFAULT_QUALITY
        prompt_effectiveness = DEFAULT_QUALITY

        stat = self.store.get(feature_type, species_id or UNKNOWN_SPECIES)
        if stat is not None and stat.placement.count >= self.min_samples_for_hint:
            center_x = box.x + box.width / 2
            center_y = box.y + box.height / 2
            mean_x, mean_y = stat.placement.mean[:2]
            var_x, var_y = stat.placement.variance[:2]
            distance = math.hypot(
                abs(center_x - mean_x) / math.sqrt(var_x + 0.01),
                abs(center_y - mean_y) / math.sqrt(var_y + 0.01),
            )
            box_quality = math.exp(-distance / 2)
            prompt_effectiveness = self.confidence(stat)

        return AnnotationQuality(
            confidence=confidence,
            box_quality=box_quality,
            prompt_effectiveness=prompt_effectiveness,
            overall=confidence * 0.4 + box_quality * 0.3 + prompt_effectiveness * 0.3,
        )

    def get_position_adjusted_features(
        self, species_id: str, features: Iterable[str]
    ) -> list[PositionAdjustment]:
        """Mean correction per feature; keys under `min_samples_for_hint` get none."""
        adjusted = []
        for feature in features:
            stat = self.store.get(feature, species_id or UNKNOWN_SPECIES)
            if stat is None or stat.count < self.min_samples_for_hint or len(stat.stats.mean) != 4:
                adjusted.append(PositionAdjustment(feature_type=feature))
                continue
            adjusted.append(
                PositionAdjustment(
                    feature_type=feature,
                    adjustment=dict(zip(CORRECTION_DIMENSIONS, stat.stats.mean)),
                    based_on_corrections=stat.count,
                )
            )

        logger.debug(
            f"Position adjustments for {species_id}: "
            f"{sum(1 for a in adjusted if a.adjustment)}/{len(adjusted)} features"
        )
        return adjusted

    def recommended_features(self, species_id: str, limit: int = 8) -> list[str]:
        """Feature types ranked by occurrence rate x confidence."""
        stats = self.store.list_for_species(species_id)
        total = sum(s.occurrences for s in stats)
        if not total:
            return []
        ranked = sorted(
            stats,
            key=lambda s: (s.occurrences / total) * self.confidence(s),
            reverse=True,
        )
        return [s.feature_type for s in ranked[:limit] if s.occurrences]

    def enhance_prompt(self, base_prompt: str, species_id: str | None, features: Iterable[str]) -> str:
        """
        Append learned guidance to a generation prompt.

        Adds correction-based adjustments (keys with enough corrections) and
        rejection reasons seen at least twice.
        """
        features = list(features)
        if not species_id or not features:
            return base_prompt

        prompt = base_prompt
        adjustments = []
        warnings = []

        for position in self.get_position_adjusted_features(species_id, features):
            if position.adjustment:
                a = position.adjustment
                adjustments.append(
                    f"- {position.feature_type}: Adjust position by ({a['dx']:+.3f}, {a['dy']:+.3f}) "
                    f"and size by ({a['dwidth']:+.3f}, {a['dheight']:+.3f}) "
                    f"[Based on {position.based_on_corrections} user corrections]"
                )

        for feature in features:
            stat = self.store.get(feature, species_id)
            if stat is None:
                continue

            common = sorted(
                ((reason, n) for reason, n in stat.rejection_reasons.items() if n >= 2),
                key=lambda item: item[1],
                reverse=True,
            )[:3]
            if common:
                reasons = ", ".join(f'"{reason}" ({n}x)' for reason, n in common)
                warnings.append(f"- {feature}: Avoid patterns that caused: {reasons}")

        if adjustments:
            prompt += "\n\nCORRECTION-BASED ADJUSTMENTS:\n" + "\n".join(adjustments)
            prompt += "\nNote: These adjustments are learned from expert corrections"
        if warnings:
            prompt += "\n\nCOMMON REJECTION PATTERNS TO AVOID:\n" + "\n".join(warnings)

        if prompt != base_prompt:
            logger.info(
                f"Enhanced prompt for {species_id} with {len(adjustments)} adjustments "
                f"and {len(warnings)} rejection warnings"
            )
        return prompt

    def export(self) -> dict[str, Any]:
        """Snapshot of every key with its derived confidence."""
        features = []
        for stat in sorted(self.store.list_all(), key=lambda s: (s.species_id, s.feature_type)):
            entry = stat.to_dict()
            entry["confidence"] = round(self.confidence(stat), 4)
            features.append(entry)
        species = {s["species_id"] for s in features}
        return {
            "exported_at": self._clock().isoformat(),
            "total_keys": len(features),
            "species_tracked": len(species),
            "features": features,
        }
