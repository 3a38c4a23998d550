"""
Unit tests for exercise prompt construction.
"""

import pytest

from aves.core.errors import ValidationError
from aves.generation import EXERCISE_FORMATS, ExercisePromptBuilder, build_exercise_prompt
from aves.patterns import FeatureStatisticsEngine
from aves.publishing.models import Term


def term(feature, spanish, english, seq=1, species="flamenco"):
    return Term(
        id=f"term-{feature}",
        spanish_term=spanish,
        english_term=english,
        annotation_id=f"term-{feature}",
        created_seq=seq,
        feature_type=feature,
        species_id=species,
    )


PICO = term("pico", "el pico", "the beak", 1)
ALA = term("ala", "el ala", "the wing", 2)


class TestBuildExercisePrompt:
    @pytest.mark.parametrize("exercise_type", sorted(EXERCISE_FORMATS))
    def test_every_type_has_a_reply_shape(self, exercise_type):
        prompt = build_exercise_prompt(exercise_type, [PICO])

        assert f'"type": "{exercise_type}"' in prompt
        assert prompt.startswith(f"Create a {exercise_type.replace('_', ' ')} exercise")

    def test_lists_terms_and_ids(self):
        prompt = build_exercise_prompt("term_matching", [PICO, ALA], difficulty=3)

        assert "- el pico = the beak (pico)" in prompt
        assert "- el ala = the wing (ala)" in prompt
        assert "['term-pico', 'term-ala']" in prompt
        assert "intermediate learner" in prompt

    def test_image_id_only_when_given(self):
        assert "Image id: img-7" in build_exercise_prompt("visual_identification", [PICO], image_id="img-7")
        assert "Image id" not in build_exercise_prompt("visual_identification", [PICO])

    def test_out_of_range_difficulty_falls_back(self):
        assert "beginner learner" in build_exercise_prompt("contextual_fill", [PICO], difficulty=9)

    def test_unknown_type(self):
        with pytest.raises(ValidationError) as exc_info:
            build_exercise_prompt("crossword", [PICO])

        assert "contextual_fill" in exc_info.value.details["known"]

    def test_needs_terms(self):
        with pytest.raises(ValidationError):
            build_exercise_prompt("contextual_fill", [])


class TestExercisePromptBuilder:
    def test_without_statistics_returns_base_prompt(self):
        builder = ExercisePromptBuilder()

        assert builder.build("contextual_fill", [PICO]) == build_exercise_prompt("contextual_fill", [PICO])

    def test_appends_learned_adjustments(self, clock):
        statistics = FeatureStatisticsEngine(clock=clock)
        for _ in range(3):
            statistics.observe("pico", "flamenco", (0.02, -0.01, 0.0, 0.0))

        prompt = ExercisePromptBuilder(statistics).build("contextual_fill", [PICO, ALA])

        assert "CORRECTION-BASED ADJUSTMENTS:" in prompt
        assert "- pico: Adjust position by (+0.020, -0.010)" in prompt
        assert "[Based on 3 user corrections]" in prompt
        assert "- ala:" not in prompt

    def test_too_few_corrections_add_nothing(self, clock):
        statistics = FeatureStatisticsEngine(clock=clock)
        statistics.observe("pico", "flamenco", (0.02, 0.0, 0.0, 0.0))

        prompt = ExercisePromptBuilder(statistics).build("contextual_fill", [PICO])

        assert prompt == build_exercise_prompt("contextual_fill", [PICO])

    def test_terms_without_species(self, clock):
        statistics = FeatureStatisticsEngine(clock=clock)
        for _ in range(3):
            statistics.observe("pico", "flamenco", (0.02, 0.0, 0.0, 0.0))
        loose = term("pico", "el pico", "the beak", species=None)

        assert ExercisePromptBuilder(statistics).build("contextual_fill", [loose]) == build_exercise_prompt(
            "contextual_fill", [loose]
        )
