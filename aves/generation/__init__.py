"""
External exercise generation: HTTP client and prompt construction.
"""

from .client import GenerationClient, parse_json_payload
from .prompts import EXERCISE_FORMATS, ExercisePromptBuilder, build_exercise_prompt

__all__ = [
    "EXERCISE_FORMATS",
    "ExercisePromptBuilder",
    "GenerationClient",
    "build_exercise_prompt",
    "parse_json_payload",
]
