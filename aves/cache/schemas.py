"""
Structural schemas for generated exercises.

Generated payloads are untrusted until they validate against one of these
models. The `type` field selects the model.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from aves.core.errors import ValidationError

if TYPE_CHECKING:
    from aves.patterns.engine import FeatureStatisticsEngine


class ExerciseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    instructions: str = Field(min_length=1)
    term_ids: list[str] = Field(default_factory=list)
    difficulty: int = Field(default=1, ge=1, le=5)


class ContextualFillExercise(ExerciseModel):
    """Sentence with a blank to fill with the right Spanish term."""

    type: Literal["contextual_fill"]
    sentence: str = Field(min_length=1)
    correct_answer: str = Field(min_length=1)
    options: list[str] = Field(min_length=2)
    translation: str | None = None

    @model_validator(mode="after")
    def check_blank_and_answer(self) -> ContextualFillExercise:
        if "___" not in self.sentence:
            raise ValueError("sentence must contain a ___ blank")
        if self.correct_answer not in self.options:
            raise ValueError("correct_answer must be one of the options")
        return self


class MatchPair(BaseModel):
    spanish: str = Field(min_length=1)
    english: str = Field(min_length=1)


class TermMatchingExercise(ExerciseModel):
    """Match Spanish terms to their English translations."""

    type: Literal["term_matching"]
    pairs: list[MatchPair] = Field(min_length=2)

    @model_validator(mode="after")
    def check_unique_terms(self) -> TermMatchingExercise:
        spanish = [p.spanish.lower() for p in self.pairs]
        if len(set(spanish)) != len(spanish):
            raise ValueError("pairs must not repeat a Spanish term")
        return self


class LabelTarget(BaseModel):
    term: str = Field(min_length=1)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    feature_type: str | None = None
    tolerance: float | None = Field(default=None, gt=0.0)


class ImageLabelingExercise(ExerciseModel):
    """Place term labels on points of a bird image."""

    type: Literal["image_labeling"]
    image_id: str = Field(min_length=1)
    species_id: str | None = None
    labels: list[LabelTarget] = Field(min_length=1)


class BoxModel(BaseModel):
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(gt=0.0, le=1.0)
    height: float = Field(gt=0.0, le=1.0)


class VisualIdentificationExercise(ExerciseModel):
    """Pick the term that names the highlighted region."""

    type: Literal["visual_identification"]
    target_term: str = Field(min_length=1)
    options: list[str] = Field(min_length=2)
    image_id: str | None = None
    bounding_box: BoxModel | None = None

    @model_validator(mode="after")
    def check_target_in_options(self) -> VisualIdentificationExercise:
        if self.target_term not in self.options:
            raise ValueError("target_term must be one of the options")
        return self


ExercisePayload = Annotated[
    Union[
        ContextualFillExercise,
        TermMatchingExercise,
        ImageLabelingExercise,
        VisualIdentificationExercise,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(ExercisePayload)

EXERCISE_TYPES = (
    "contextual_fill",
    "term_matching",
    "image_labeling",
    "visual_identification",
)


def parse_exercise(payload: Any) -> ExerciseModel:
    """
    Validate a generated payload into its exercise model.

    Raises:
        ValidationError: The payload does not match any exercise schema
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            "Generated payload must be a JSON object",
            {"received": type(payload).__name__},
        )
    try:
        return _adapter.validate_python(payload)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError(
            "Generated payload failed schema validation",
            {"type": payload.get("type"), "errors": errors},
        ) from e


def validate_exercise_payload(payload: Any) -> dict[str, Any]:
    """Validate and normalize a generated payload to a plain dict."""
    return parse_exercise(payload).model_dump(mode="json")


class ExerciseValidator:
    """
    Schema check with statistics-derived position tolerances.

    Image labeling targets without an explicit tolerance get one from the
    feature statistics; tolerances wider than `max_tolerance` are rejected.
    """

    def __init__(
        self,
        statistics: FeatureStatisticsEngine | None = None,
        max_tolerance: float = 0.25,
    ):
        self.statistics = statistics
        self.max_tolerance = max_tolerance

    def __call__(self, payload: Any) -> dict[str, Any]:
        exercise = parse_exercise(payload)
        if isinstance(exercise, ImageLabelingExercise):
            self._check_labels(exercise)
        return exercise.model_dump(mode="json")

    def _check_labels(self, exercise: ImageLabelingExercise) -> None:
        for label in exercise.labels:
            if (
                label.tolerance is None
                and self.statistics is not None
                and label.feature_type
                and exercise.species_id
            ):
                label.tolerance = self.statistics.position_tolerance(
                    label.feature_type, exercise.species_id
                )
                logger.debug(
                    f"Tolerance for {label.term} ({exercise.species_id}:{label.feature_type}) "
                    f"set to {label.tolerance:.3f}"
                )
            if label.tolerance is not None and label.tolerance > self.max_tolerance:
                raise ValidationError(
                    "Label tolerance is wider than allowed",
                    {
                        "term": label.term,
                        "tolerance": label.tolerance,
                        "max_tolerance": self.max_tolerance,
                    },
                )
