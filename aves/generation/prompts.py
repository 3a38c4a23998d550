"""
Exercise prompt construction.

Each exercise type has a short instruction plus the JSON shape the reply
must follow; the shapes mirror the models in `aves.cache.schemas`.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from aves.core.errors import ValidationError

if TYPE_CHECKING:
    from aves.patterns.engine import FeatureStatisticsEngine
    from aves.publishing.models import Term

EXERCISE_FORMATS: dict[str, tuple[str, str]] = {
    "contextual_fill": (
        "Write one Spanish sentence about a bird with a ___ blank where one of the terms belongs. "
        "Give 4 options including the correct term.",
        '{"type": "contextual_fill", "instructions": str, "sentence": str, '
        '"correct_answer": str, "options": [str], "translation": str}',
    ),
    "term_matching": (
        "Pair every Spanish term with its English translation.",
        '{"type": "term_matching", "instructions": str, '
        '"pairs": [{"spanish": str, "english": str}]}',
    ),
    "image_labeling": (
        "Place each term on the image as a point in normalized (0-1) coordinates.",
        '{"type": "image_labeling", "instructions": str, "image_id": str, "species_id": str, '
        '"labels": [{"term": str, "x": float, "y": float, "feature_type": str}]}',
    ),
    "visual_identification": (
        "Ask which term names the highlighted region. Give 4 options including the target.",
        '{"type": "visual_identification", "instructions": str, "target_term": str, '
        '"options": [str], "image_id": str, '
        '"bounding_box": {"x": float, "y": float, "width": float, "height": float}}',
    ),
}

DIFFICULTY_LABELS = {1: "beginner", 2: "elementary", 3: "intermediate", 4: "advanced", 5: "expert"}


def build_exercise_prompt(
    exercise_type: str,
    terms: Sequence[Term],
    difficulty: int = 1,
    image_id: str | None = None,
) -> str:
    """
    Build the base prompt for one exercise.

    Args:
        exercise_type: One of EXERCISE_FORMATS
        terms: Terms the exercise practises
        difficulty: 1-5
        image_id: Image the exercise refers to, for visual types

    Returns:
        Prompt text
    """
    if exercise_type not in EXERCISE_FORMATS:
        raise ValidationError(
            f"Unknown exercise type: {exercise_type}",
            {"exercise_type": exercise_type, "known": sorted(EXERCISE_FORMATS)},
        )
    if not terms:
        raise ValidationError("An exercise needs at least one term", {"exercise_type": exercise_type})

    instruction, shape = EXERCISE_FORMATS[exercise_type]
    level = DIFFICULTY_LABELS.get(difficulty, "beginner")
    vocabulary = "\n".join(
        f"- {t.spanish_term} = {t.english_term}"
        + (f" ({t.feature_type})" if t.feature_type else "")
        for t in terms
    )

    lines = [
        f"Create a {exercise_type.replace('_', ' ')} exercise for a {level} learner.",
        instruction,
        "",
        "Terms:",
        vocabulary,
        "",
        f'Term ids to echo back in "term_ids": {[t.id for t in terms]}',
    ]
    if image_id:
        lines.append(f"Image id: {image_id}")
    lines += ["", "Reply with JSON shaped like:", shape]
    return "\n".join(lines)


class ExercisePromptBuilder:
    """Base prompts enriched with learned feature statistics."""

    def __init__(self, statistics: FeatureStatisticsEngine | None = None):
        self.statistics = statistics

    def build(
        self,
        exercise_type: str,
        terms: Sequence[Term],
        difficulty: int = 1,
        image_id: str | None = None,
    ) -> str:
        prompt = build_exercise_prompt(exercise_type, terms, difficulty, image_id)
        if self.statistics is None:
            return prompt

        species_id = next((t.species_id for t in terms if t.species_id), None)
        features = sorted({t.feature_type for t in terms if t.feature_type})
        return self.statistics.enhance_prompt(prompt, species_id, features)
