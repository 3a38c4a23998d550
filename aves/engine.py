"""
Learning Engine facade.

Wires stores and components together and exposes the engine's operations:

    get_due_terms      - terms a learner should review now
    record_review      - apply one review result
    get_or_generate    - single-flight cached generation
    invalidate         - drop a cached payload
    publish            - atomic batch publishing
    get_estimate       - learned feature statistics

plus handlers for the review and feedback events sent by collaborators.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from aves.cache import (
    CacheResult,
    CacheStore,
    ExerciseValidator,
    GenerationCache,
    InMemoryCacheStore,
    SqlCacheStore,
    exercise_cache_key,
)
from aves.cache.generation_cache import GeneratorFn
from aves.core.clock import utcnow
from aves.core.errors import ExternalServiceError, NotFoundError, ValidationError
from aves.db.database import get_session_factory
from aves.generation import ExercisePromptBuilder, GenerationClient
from aves.patterns import (
    Estimate,
    FeatureStatisticsEngine,
    InMemoryStatisticsStore,
    SqlStatisticsStore,
    StatisticsStore,
)
from aves.publishing import (
    Annotation,
    AnnotationStore,
    BatchResult,
    ContentPublishingService,
    ExerciseWarmer,
    InMemoryAnnotationStore,
    InMemoryModuleStore,
    ModuleStore,
    SqlAnnotationStore,
    SqlModuleStore,
)
from aves.srs import (
    DueTerm,
    InMemoryProgressStore,
    ProgressStore,
    SM2Config,
    SM2Scheduler,
    SpacedRepetitionScheduler,
    SqlProgressStore,
    UserTermProgress,
)

GenerateFn = Callable[[str], Awaitable[Any]]


class LearningEngine:
    """
    Adaptive learning engine.

    Example:
        engine = LearningEngine.from_settings()
        engine.publishing.create_module("Anatomy", "Anatomía", module_id="anatomy-1")
        result = engine.publish(["ann-1", "ann-2"], module_id="anatomy-1")
        due = engine.get_due_terms("user-1", limit=10)
    """

    def __init__(
        self,
        scheduler: SpacedRepetitionScheduler,
        cache: GenerationCache,
        statistics: FeatureStatisticsEngine,
        publishing: ContentPublishingService,
        generate: GenerateFn | None = None,
        prompts: ExercisePromptBuilder | None = None,
        model_version: str = "",
        client: GenerationClient | None = None,
    ):
        self.scheduler = scheduler
        self.cache = cache
        self.statistics = statistics
        self.publishing = publishing
        self.prompts = prompts or ExercisePromptBuilder(statistics)
        self.model_version = model_version
        self.client = client
        self._generate = generate

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    def build(
        cls,
        settings: Settings,
        progress_store: ProgressStore,
        cache_store: CacheStore,
        statistics_store: StatisticsStore,
        annotation_store: AnnotationStore,
        generate: GenerateFn | None = None,
        client: GenerationClient | None = None,
        clock: Callable[[], datetime] = utcnow,
        module_store: ModuleStore | None = None,
    ) -> LearningEngine:
        """Wire components over the given stores using `settings`."""
        statistics = FeatureStatisticsEngine.from_config(
            settings.get_statistics_config(), store=statistics_store, clock=clock
        )

        cache = GenerationCache.from_config(
            settings.get_cache_config(),
            store=cache_store,
            validator=ExerciseValidator(statistics),
            clock=clock,
        )

        scheduler = SpacedRepetitionScheduler(
            progress_store,
            annotation_store,
            sm2=SM2Scheduler(SM2Config.from_settings(settings.get_srs_config())),
            mastered_threshold=settings.srs_mastered_threshold,
            write_retries=settings.srs_write_retries,
            clock=clock,
        )

        if generate is None and client is not None:
            generate = client.generate

        prompts = ExercisePromptBuilder(statistics)
        warmer = None
        if generate is not None:
            warmer = ExerciseWarmer(
                cache,
                generate,
                prompts=prompts,
                model_version=settings.generation_model_version,
            )

        publishing = ContentPublishingService(
            annotation_store,
            statistics=statistics,
            warmer=warmer,
            allow_unpublish=settings.allow_unpublish,
            modules=module_store,
        )

        return cls(
            scheduler=scheduler,
            cache=cache,
            statistics=statistics,
            publishing=publishing,
            generate=generate,
            prompts=prompts,
            model_version=settings.generation_model_version,
            client=client,
        )

    @classmethod
    def in_memory(
        cls,
        settings: Settings | None = None,
        generate: GenerateFn | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> LearningEngine:
        """Engine over in-memory stores (tests, local experiments)."""
        settings = settings or Settings()
        return cls.build(
            settings,
            progress_store=InMemoryProgressStore(),
            cache_store=InMemoryCacheStore(max_entries=settings.cache_max_entries),
            statistics_store=InMemoryStatisticsStore(),
            annotation_store=InMemoryAnnotationStore(),
            module_store=InMemoryModuleStore(),
            generate=generate,
            clock=clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        session_factory: sessionmaker[Session] | None = None,
        generate: GenerateFn | None = None,
    ) -> LearningEngine:
        """Engine over the configured database and generation service."""
        settings = settings or get_settings()
        factory = session_factory or get_session_factory()

        client = None
        if generate is None and settings.has_generation_configured():
            client = GenerationClient.from_settings(settings)
        elif generate is None:
            logger.warning("Generation service not configured; cache misses will fail")

        return cls.build(
            settings,
            progress_store=SqlProgressStore(factory),
            cache_store=SqlCacheStore(factory),
            statistics_store=SqlStatisticsStore(factory),
            annotation_store=SqlAnnotationStore(factory),
            module_store=SqlModuleStore(factory),
            generate=generate,
            client=client,
        )

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()

    # =========================================================================
    # Operations
    # =========================================================================

    def get_due_terms(self, user_id: str, limit: int = 20) -> list[DueTerm]:
        return self.scheduler.get_due_terms(user_id, limit)

    def record_review(self, user_id: str, term_id: str, correct: bool, quality: int) -> UserTermProgress:
        return self.scheduler.record_review(user_id, term_id, correct, quality)

    async def get_or_generate(self, key: str, generator_fn: GeneratorFn) -> CacheResult:
        return await self.cache.get_or_generate(key, generator_fn)

    def invalidate(self, key: str) -> bool:
        return self.cache.invalidate(key)

    def publish(
        self,
        annotation_ids: list[str],
        module_id: str | None = None,
        generate_exercises: bool = False,
    ) -> BatchResult:
        return self.publishing.publish(annotation_ids, module_id, generate_exercises)

    def get_estimate(self, feature_type: str, species_id: str) -> Estimate:
        return self.statistics.get_estimate(feature_type, species_id)

    # =========================================================================
    # Exercises
    # =========================================================================

    async def get_exercise(
        self,
        exercise_type: str,
        term_ids: Sequence[str],
        difficulty: int = 1,
    ) -> CacheResult:
        """
        Cached exercise over published terms, generated on a miss.

        Raises:
            NotFoundError: A term is unknown or unpublished
            ExternalServiceError: Generation failed or is not configured
        """
        terms = self.scheduler.terms.get_terms(term_ids)
        missing = [tid for tid in term_ids if tid not in terms]
        if missing:
            raise NotFoundError("Terms not found", {"term_ids": missing})

        ordered = [terms[tid] for tid in term_ids]
        key = exercise_cache_key(exercise_type, term_ids, difficulty, model_version=self.model_version)
        prompt = self.prompts.build(exercise_type, ordered, difficulty)
        return await self.cache.get_or_generate(key, lambda: self._call_generator(prompt))

    async def _call_generator(self, prompt: str) -> Any:
        if self._generate is None:
            raise ExternalServiceError("No generation service configured")
        return await self._generate(prompt)

    # =========================================================================
    # Collaborator Events
    # =========================================================================

    def handle_review_event(self, event: dict[str, Any]) -> UserTermProgress:
        """
        Apply a review event from the exercise-delivery side.

        Expected keys: user_id, term_id, correct, and either quality or
        response_time_ms (quality is then derived from correctness and speed).
        """
        try:
            user_id = event["user_id"]
            term_id = event["term_id"]
            correct = event["correct"]
        except KeyError as e:
            raise ValidationError(f"Review event is missing {e.args[0]}", {"event": event}) from e

        quality = event.get("quality")
        if quality is None:
            response_ms = event.get("response_time_ms")
            if response_ms is None:
                raise ValidationError("Review event needs quality or response_time_ms", {"event": event})
            quality = self.scheduler.sm2.grade_from_response(bool(correct), int(response_ms))

        return self.scheduler.record_review(user_id, term_id, bool(correct), quality)

    def handle_feedback(self, event: dict[str, Any]) -> Annotation:
        """
        Apply a feedback event from the review/admin side.

        Expected keys: annotation_id, type (approve|reject|position_fix),
        optional metadata.
        """
        try:
            annotation_id = event["annotation_id"]
            feedback_type = event["type"]
        except KeyError as e:
            raise ValidationError(f"Feedback event is missing {e.args[0]}", {"event": event}) from e
        return self.publishing.handle_feedback(annotation_id, feedback_type, event.get("metadata"))
