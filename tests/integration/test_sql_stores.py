"""
Integration tests for the SQLAlchemy-backed stores.

Each test runs against a fresh in-memory SQLite database.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from aves.cache import GenerationCache, SqlCacheStore
from aves.cache.store import CacheEntry
from aves.core.errors import ConflictError, NotFoundError
from aves.db.database import build_engine, build_session_factory
from aves.db.models import Base
from aves.patterns import FeatureStatisticsEngine, FeedbackEvent, FeedbackType, SqlStatisticsStore
from aves.publishing import (
    Annotation,
    AnnotationStatus,
    BoundingBox,
    ContentPublishingService,
    LearningModule,
    SqlAnnotationStore,
    SqlModuleStore,
)
from aves.srs import SpacedRepetitionScheduler, SqlProgressStore, UserTermProgress

NOW = datetime(2025, 3, 1, 9, 0, 0)
BOX = BoundingBox(x=0.40, y=0.20, width=0.10, height=0.08)


def new_annotation(annotation_id, spanish, english, feature):
    return Annotation(
        id=annotation_id,
        spanish_term=spanish,
        english_term=english,
        feature_type=feature,
        bounding_box=BOX,
    )


class StaleSequenceStore(SqlAnnotationStore):
    """Hands out an already used sequence number, as a concurrent writer would."""

    stale = False

    def _next_seq(self, session):
        if self.stale:
            if self.stale != "always":
                self.stale = False
            return 1
        return super()._next_seq(session)


@pytest.fixture
def annotations(session_factory):
    return SqlAnnotationStore(session_factory)


@pytest.fixture
def service(annotations, session_factory, clock):
    statistics = FeatureStatisticsEngine(SqlStatisticsStore(session_factory), clock=clock)
    return ContentPublishingService(annotations, statistics=statistics, modules=SqlModuleStore(session_factory))


@pytest.fixture
def published(service):
    ids = []
    for feature in ("pico", "ala", "cola"):
        annotation = service.submit(
            f"el {feature}", f"the {feature}", feature, BOX, species_id="flamenco", annotation_id=f"term-{feature}"
        )
        service.approve(annotation.id)
        ids.append(annotation.id)
    service.create_module("Anatomy", "Anatomía", module_id="anatomy-1")
    assert service.publish(ids, module_id="anatomy-1").success
    return ids


class TestSqlAnnotationStore:
    def test_add_assigns_sequence(self, annotations):
        first = annotations.add(new_annotation("a", "el pico", "the beak", "pico"))
        second = annotations.add(new_annotation("b", "el ala", "the wing", "ala"))

        assert (first.term_seq, second.term_seq) == (1, 2)
        assert annotations.get("a").bounding_box == BOX

    def test_duplicate_id(self, annotations):
        annotation = new_annotation("a", "el pico", "the beak", "pico")
        annotations.add(annotation)

        with pytest.raises(ConflictError):
            annotations.add(annotation)

    def test_save_many_is_all_or_nothing(self, annotations):
        annotation = annotations.add(new_annotation("a", "el pico", "the beak", "pico"))
        ghost = replace(annotation, id="ghost")

        with pytest.raises(NotFoundError):
            annotations.save_many([replace(annotation, status=AnnotationStatus.APPROVED), ghost])

        assert annotations.get("a").status == AnnotationStatus.PENDING

    def test_colliding_sequence_is_retried(self, session_factory):
        store = StaleSequenceStore(session_factory)
        store.add(new_annotation("a", "el pico", "the beak", "pico"))

        store.stale = True
        added = store.add(new_annotation("b", "el ala", "the wing", "ala"))

        assert added.term_seq == 2
        assert store.get("b").term_seq == 2

    def test_sequence_collisions_surface_after_retries(self, session_factory):
        store = StaleSequenceStore(session_factory, seq_retries=2)
        store.add(new_annotation("a", "el pico", "the beak", "pico"))

        store.stale = "always"
        with pytest.raises(ConflictError):
            store.add(new_annotation("b", "el ala", "the wing", "ala"))

        assert store.get("b") is None

    def test_parallel_writers_get_unique_sequences(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'aves.db'}")
        Base.metadata.create_all(engine)
        factory = build_session_factory(engine)
        barrier = threading.Barrier(4)
        errors = []

        def writer(n):
            store = SqlAnnotationStore(factory, seq_retries=50)
            barrier.wait()
            try:
                for i in range(5):
                    store.add(new_annotation(f"w{n}-{i}", "el pico", "the beak", "pico"))
            except Exception as e:  # surfaced via the errors list
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        rows = SqlAnnotationStore(factory).list()
        engine.dispose()

        assert errors == []
        assert sorted(a.term_seq for a in rows) == list(range(1, 21))

    def test_publish_batch_with_pending_item(self, service, annotations):
        ids = []
        for feature in ("pico", "ala"):
            annotation = service.submit(f"el {feature}", f"the {feature}", feature, BOX, species_id="flamenco")
            service.approve(annotation.id)
            ids.append(annotation.id)
        pending = service.submit("la cola", "the tail", "cola", BOX, species_id="flamenco")

        result = service.publish(ids + [pending.id])

        assert not result.success
        assert result.failed[0].annotation_id == pending.id
        assert annotations.count_by_status() == {"pending": 1, "approved": 2, "rejected": 0, "published": 0}

    def test_terms_and_listing(self, annotations, published):
        assert set(annotations.get_terms(published + ["missing"])) == set(published)
        assert [a.id for a in annotations.list(status=AnnotationStatus.PUBLISHED, module_id="anatomy-1")] == published
        assert annotations.get_term("term-ala").english_term == "the ala"


class TestSqlProgressStore:
    def test_review_round_trip(self, session_factory, annotations, published, clock):
        scheduler = SpacedRepetitionScheduler(SqlProgressStore(session_factory), annotations, clock=clock)

        scheduler.record_review("learner-1", "term-pico", correct=True, quality=5)
        scheduler.record_review("learner-1", "term-pico", correct=True, quality=5)
        clock.advance(days=6)

        due = scheduler.get_due_terms("learner-1")
        assert [d.term.id for d in due] == ["term-pico"]
        assert due[0].progress.interval_days == 6
        assert due[0].progress.version == 2
        assert scheduler.get_user_stats("learner-1").total_reviews == 2

    def test_stale_version_is_rejected(self, session_factory):
        store = SqlProgressStore(session_factory)
        store.create(UserTermProgress(user_id="u", term_id="t", next_review_at=NOW, first_seen_at=NOW))

        first = store.get("u", "t")
        second = store.get("u", "t")
        saved = store.save(replace(first, times_correct=1))

        assert saved.version == 1
        with pytest.raises(ConflictError):
            store.save(replace(second, times_incorrect=1))
        assert store.get("u", "t").times_correct == 1

    def test_create_is_idempotent(self, session_factory):
        store = SqlProgressStore(session_factory)
        original = store.create(UserTermProgress(user_id="u", term_id="t", next_review_at=NOW, first_seen_at=NOW))

        again = store.create(
            UserTermProgress(user_id="u", term_id="t", next_review_at=NOW + timedelta(days=9), first_seen_at=NOW)
        )

        assert again.next_review_at == original.next_review_at

    def test_list_due(self, session_factory):
        store = SqlProgressStore(session_factory)
        store.create(UserTermProgress(user_id="u", term_id="past", next_review_at=NOW - timedelta(hours=1), first_seen_at=NOW))
        store.create(UserTermProgress(user_id="u", term_id="future", next_review_at=NOW + timedelta(hours=1), first_seen_at=NOW))

        assert [p.term_id for p in store.list_due("u", NOW)] == ["past"]
        assert len(store.list_for_user("u")) == 2


class TestSqlCacheStore:
    def entry(self, key, expires_at=NOW + timedelta(days=7)):
        return CacheEntry(key=key, payload={"type": "contextual_fill", "n": 1}, expires_at=expires_at, created_at=NOW)

    def test_get_bumps_access(self, session_factory):
        store = SqlCacheStore(session_factory)
        store.put(self.entry("contextual_fill:abc"))

        store.get("contextual_fill:abc", NOW)
        entry = store.get("contextual_fill:abc", NOW)

        assert entry.payload == {"type": "contextual_fill", "n": 1}
        assert entry.access_count == 2
        assert entry.last_accessed_at == NOW

    def test_expired_entries_are_invisible(self, session_factory):
        store = SqlCacheStore(session_factory)
        store.put(self.entry("a:1", expires_at=NOW))

        assert store.get("a:1", NOW) is None
        assert store.clean_expired(NOW) == 1
        assert len(store) == 0

    def test_delete_prefix_is_literal(self, session_factory):
        store = SqlCacheStore(session_factory)
        for key in ("contextual_fill:1", "contextual_fill:2", "contextual%fill:3", "term_matching:1"):
            store.put(self.entry(key))

        assert store.delete_prefix("contextual_fill:") == 2
        assert store.delete("term_matching:1") is True
        assert store.delete("term_matching:1") is False
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_generation_cache_over_sql(self, session_factory, clock, contextual_fill_payload):
        cache = GenerationCache(SqlCacheStore(session_factory), clock=clock)
        calls = 0

        async def generate():
            nonlocal calls
            calls += 1
            return contextual_fill_payload

        first = await cache.get_or_generate("contextual_fill:xyz", generate)
        second = await cache.get_or_generate("contextual_fill:xyz", generate)

        assert (first.hit, second.hit) == (False, True)
        assert second.payload == first.payload
        assert calls == 1


class TestSqlStatisticsStore:
    def test_statistics_persist(self, session_factory, clock):
        engine = FeatureStatisticsEngine(SqlStatisticsStore(session_factory), clock=clock)
        for dx in (0.01, 0.03):
            engine.observe("pico", "flamenco", (dx, 0.0, 0.0, 0.0))
        engine.apply_feedback(FeedbackEvent(FeedbackType.REJECT, "pico", "flamenco", reason="blurry"))

        reloaded = FeatureStatisticsEngine(SqlStatisticsStore(session_factory), clock=clock)
        estimate = reloaded.get_estimate("pico", "flamenco")
        stat = reloaded.store.get("pico", "flamenco")

        assert estimate.count == 2
        assert estimate.mean[0] == pytest.approx(0.02)
        assert estimate.variance[0] == pytest.approx(0.0001)
        assert stat.rejection_reasons == {"blurry": 1}
        assert stat.confidence_bias == pytest.approx(-0.1)
        assert stat.updated_at == clock.now

    def test_list_for_species(self, session_factory):
        engine = FeatureStatisticsEngine(SqlStatisticsStore(session_factory))
        engine.record_occurrence("pico", "flamenco")
        engine.record_occurrence("ala", "flamenco")
        engine.record_occurrence("pico", "garza")

        assert {s.feature_type for s in engine.store.list_for_species("flamenco")} == {"pico", "ala"}
        assert engine.recommended_features("garza") == ["pico"]

    def test_placement_persists(self, session_factory, clock):
        engine = FeatureStatisticsEngine(SqlStatisticsStore(session_factory), clock=clock)
        for _ in range(3):
            engine.apply_feedback(
                FeedbackEvent(FeedbackType.APPROVE, "pico", "flamenco", placement=BOX.placement())
            )

        reloaded = FeatureStatisticsEngine(SqlStatisticsStore(session_factory), clock=clock)
        stat = reloaded.store.get("pico", "flamenco")

        assert stat.placement.count == 3
        assert stat.placement.mean == pytest.approx(BOX.placement())
        assert reloaded.evaluate_annotation_quality("pico", "flamenco", BOX).box_quality == pytest.approx(1.0)


class TestSqlModuleStore:
    def test_module_round_trip(self, session_factory):
        store = SqlModuleStore(session_factory)
        service = ContentPublishingService(SqlAnnotationStore(session_factory), modules=store)

        service.create_module("Wings", "Alas", description="Flight", difficulty_level=2, species_ids=["garza"])
        service.create_module("Head", "Cabeza", module_id="head", order_index=0)
        store.add(LearningModule(id="old", title="Old", title_spanish="Viejo", order_index=9, is_active=False))

        modules = SqlModuleStore(session_factory).list()

        assert [m.title for m in modules] == ["Head", "Wings"]
        assert modules[1].species_ids == ["garza"]
        assert modules[1].description == "Flight"
        assert store.next_order_index() == 10
        assert len(store.list(active_only=False)) == 3

    def test_duplicate_module(self, session_factory):
        store = SqlModuleStore(session_factory)
        store.add(LearningModule(id="head", title="Head", title_spanish="Cabeza"))

        with pytest.raises(ConflictError):
            store.add(LearningModule(id="head", title="Head", title_spanish="Cabeza"))

    def test_publish_to_unknown_module(self, service, annotations):
        annotation = service.submit("el pico", "the beak", "pico", BOX, species_id="flamenco")
        service.approve(annotation.id)

        with pytest.raises(NotFoundError):
            service.publish([annotation.id], module_id="missing")

        assert annotations.get(annotation.id).status == AnnotationStatus.APPROVED
