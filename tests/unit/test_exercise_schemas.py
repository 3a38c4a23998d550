"""
Unit tests for generated exercise schemas.
"""

import pytest

from aves.cache import ExerciseValidator, parse_exercise, validate_exercise_payload
from aves.cache.schemas import ContextualFillExercise, ImageLabelingExercise
from aves.core.errors import ValidationError
from aves.patterns import FeatureStatisticsEngine


def labeling_payload(**label):
    return {
        "type": "image_labeling",
        "instructions": "Etiqueta las partes",
        "image_id": "img-1",
        "species_id": "flamenco",
        "labels": [{"term": "el pico", "x": 0.45, "y": 0.24, "feature_type": "pico", **label}],
    }


class TestParseExercise:
    def test_contextual_fill(self, contextual_fill_payload):
        exercise = parse_exercise(contextual_fill_payload)

        assert isinstance(exercise, ContextualFillExercise)
        assert exercise.correct_answer == "el pico"
        assert exercise.difficulty == 1

    def test_term_matching(self):
        exercise = parse_exercise(
            {
                "type": "term_matching",
                "instructions": "Une las parejas",
                "pairs": [
                    {"spanish": "el pico", "english": "the beak"},
                    {"spanish": "el ala", "english": "the wing"},
                ],
            }
        )
        assert len(exercise.pairs) == 2

    def test_visual_identification(self):
        exercise = parse_exercise(
            {
                "type": "visual_identification",
                "instructions": "¿Qué parte está marcada?",
                "target_term": "la cola",
                "options": ["la cola", "el ala"],
                "bounding_box": {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.2},
            }
        )
        assert exercise.bounding_box.width == pytest.approx(0.3)

    def test_unknown_fields_are_dropped(self, contextual_fill_payload):
        data = validate_exercise_payload({**contextual_fill_payload, "commentary": "here you go"})
        assert "commentary" not in data

    @pytest.mark.parametrize(
        "change",
        [
            {"sentence": "El flamenco usa el pico."},  # no blank
            {"correct_answer": "la pata"},  # not among options
            {"options": ["el pico"]},  # too few options
            {"type": "crossword"},
            {"instructions": ""},
            {"difficulty": 9},
        ],
    )
    def test_invalid_contextual_fill(self, contextual_fill_payload, change):
        with pytest.raises(ValidationError) as exc_info:
            parse_exercise({**contextual_fill_payload, **change})
        assert exc_info.value.details["errors"]

    def test_duplicate_matching_terms(self):
        with pytest.raises(ValidationError):
            parse_exercise(
                {
                    "type": "term_matching",
                    "instructions": "Une",
                    "pairs": [
                        {"spanish": "el pico", "english": "the beak"},
                        {"spanish": "El Pico", "english": "the bill"},
                    ],
                }
            )

    def test_label_outside_image(self):
        with pytest.raises(ValidationError):
            parse_exercise(labeling_payload(x=1.4))

    @pytest.mark.parametrize("payload", [None, "text", ["list"], 42])
    def test_non_object_payload(self, payload):
        with pytest.raises(ValidationError):
            parse_exercise(payload)


class TestExerciseValidator:
    def test_fills_missing_tolerance_from_statistics(self):
        statistics = FeatureStatisticsEngine()
        for dx in (0.01, 0.02, 0.03, 0.02):
            statistics.observe("pico", "flamenco", (dx, 0.0, 0.0, 0.0))
        validator = ExerciseValidator(statistics)

        data = validator(labeling_payload())

        expected = statistics.position_tolerance("pico", "flamenco")
        assert data["labels"][0]["tolerance"] == pytest.approx(expected)

    def test_default_tolerance_without_history(self):
        validator = ExerciseValidator(FeatureStatisticsEngine())

        data = validator(labeling_payload())

        assert data["labels"][0]["tolerance"] == pytest.approx(0.1)

    def test_explicit_tolerance_is_kept(self):
        data = ExerciseValidator(FeatureStatisticsEngine())(labeling_payload(tolerance=0.05))
        assert data["labels"][0]["tolerance"] == pytest.approx(0.05)

    def test_rejects_wide_tolerance(self):
        with pytest.raises(ValidationError):
            ExerciseValidator(max_tolerance=0.2)(labeling_payload(tolerance=0.3))

    def test_without_statistics_behaves_like_schema_check(self, contextual_fill_payload):
        assert ExerciseValidator()(contextual_fill_payload) == validate_exercise_payload(contextual_fill_payload)

    def test_returns_plain_dict(self):
        data = ExerciseValidator()(labeling_payload())
        assert isinstance(data, dict)
        assert not isinstance(data["labels"][0], ImageLabelingExercise)
