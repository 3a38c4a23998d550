"""
Background cache warm-up for newly published terms.

Publishing returns immediately; exercises for the published terms are
generated afterwards through the generation cache, so later learners hit
warm entries.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from aves.cache.generation_cache import GenerationCache
from aves.cache.keys import exercise_cache_key
from aves.core.errors import AvesError
from aves.generation.prompts import ExercisePromptBuilder

from .models import Term

GenerateFn = Callable[[str], Awaitable[Any]]

DEFAULT_WARM_TYPES = ("contextual_fill", "visual_identification")


@dataclass
class WarmupReport:
    generated: int = 0
    already_cached: int = 0
    failed: list[str] = field(default_factory=list)


class ExerciseWarmer:
    """Generates exercises for terms without blocking the caller."""

    def __init__(
        self,
        cache: GenerationCache,
        generate: GenerateFn,
        prompts: ExercisePromptBuilder | None = None,
        exercise_types: Sequence[str] = DEFAULT_WARM_TYPES,
        model_version: str = "",
    ):
        """
        Args:
            cache: Cache to fill
            generate: Coroutine function turning a prompt into a raw payload
            prompts: Prompt builder (statistics-aware when wired that way)
            exercise_types: Exercise types generated per term
            model_version: Version tag mixed into cache keys
        """
        self.cache = cache
        self.generate = generate
        self.prompts = prompts or ExercisePromptBuilder()
        self.exercise_types = tuple(exercise_types)
        self.model_version = model_version
        self._tasks: set[asyncio.Task[WarmupReport]] = set()
        self._threads: list[threading.Thread] = []

    async def warm(self, terms: Sequence[Term]) -> WarmupReport:
        """Generate every configured exercise type for each term."""
        report = WarmupReport()
        for term in terms:
            for exercise_type in self.exercise_types:
                key = exercise_cache_key(exercise_type, [term.id], model_version=self.model_version)
                prompt = self.prompts.build(exercise_type, [term])
                try:
                    result = await self.cache.get_or_generate(key, lambda p=prompt: self.generate(p))
                except AvesError as e:
                    logger.warning(f"Warm-up of {exercise_type} for {term.id} failed: {e.message}")
                    report.failed.append(f"{term.id}:{exercise_type}")
                    continue
                if result.hit:
                    report.already_cached += 1
                else:
                    report.generated += 1

        logger.info(
            f"Cache warm-up done: {report.generated} generated, "
            f"{report.already_cached} already cached, {len(report.failed)} failed"
        )
        return report

    def schedule(self, terms: Sequence[Term]) -> asyncio.Task[WarmupReport] | threading.Thread:
        """
        Start `warm(terms)` in the background and return its handle.

        Runs as a task on the current event loop, or in a daemon thread with
        its own loop when called from synchronous code.
        """
        terms = list(terms)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(
                target=self._run_in_thread, args=(terms,), name="aves-cache-warmup", daemon=True
            )
            thread.start()
            self._threads.append(thread)
            return thread

        task = loop.create_task(self.warm(terms))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _run_in_thread(self, terms: list[Term]) -> None:
        try:
            asyncio.run(self.warm(terms))
        except Exception:
            logger.exception("Cache warm-up thread crashed")
            raise

    def _task_done(self, task: asyncio.Task[WarmupReport]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Cache warm-up task crashed")

    def join(self, timeout: float | None = None) -> None:
        """Wait for warm-up threads started from synchronous code."""
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    @property
    def pending(self) -> int:
        return len(self._tasks) + sum(1 for t in self._threads if t.is_alive())
