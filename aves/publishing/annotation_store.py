"""
Annotation stores.

Also serve as the term catalog: a published annotation is a reviewable term.
`save_many` writes a batch in one transaction so a publish commits all or
nothing.
"""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import replace

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from aves.core.errors import ConflictError, NotFoundError
from aves.db.database import session_scope
from aves.db.models import AnnotationRow

from .models import Annotation, AnnotationStatus, BoundingBox, Term


class AnnotationStore(ABC):
    """Annotations keyed by id, in creation order."""

    @abstractmethod
    def add(self, annotation: Annotation) -> Annotation:
        """
        Insert a new annotation and assign its `term_seq`.

        Raises:
            ConflictError: An annotation with this id already exists
        """

    @abstractmethod
    def get(self, annotation_id: str) -> Annotation | None: ...

    @abstractmethod
    def get_many(self, annotation_ids: Iterable[str]) -> dict[str, Annotation]: ...

    @abstractmethod
    def save_many(self, annotations: Iterable[Annotation]) -> None:
        """
        Update existing annotations atomically.

        Raises:
            NotFoundError: Any annotation does not exist (nothing is written)
        """

    @abstractmethod
    def list(
        self,
        status: AnnotationStatus | None = None,
        module_id: str | None = None,
        species_id: str | None = None,
    ) -> list[Annotation]:
        """Annotations matching all given filters, in creation order."""

    @abstractmethod
    def count_by_status(self) -> dict[str, int]: ...

    def save(self, annotation: Annotation) -> None:
        self.save_many([annotation])

    # Term catalog

    def get_term(self, term_id: str) -> Term | None:
        annotation = self.get(term_id)
        if annotation is None or not annotation.is_published:
            return None
        return annotation.to_term()

    def get_terms(self, term_ids: Iterable[str]) -> dict[str, Term]:
        return {
            annotation_id: annotation.to_term()
            for annotation_id, annotation in self.get_many(term_ids).items()
            if annotation.is_published
        }


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryAnnotationStore(AnnotationStore):
    def __init__(self) -> None:
        self._rows: dict[str, Annotation] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, annotation: Annotation) -> Annotation:
        with self._lock:
            if annotation.id in self._rows:
                raise ConflictError(
                    f"Annotation already exists: {annotation.id}", {"annotation_id": annotation.id}
                )
            stored = replace(annotation, term_seq=next(self._seq))
            self._rows[stored.id] = stored
            return replace(stored)

    def get(self, annotation_id: str) -> Annotation | None:
        with self._lock:
            row = self._rows.get(annotation_id)
            return replace(row) if row else None

    def get_many(self, annotation_ids: Iterable[str]) -> dict[str, Annotation]:
        with self._lock:
            return {aid: replace(self._rows[aid]) for aid in annotation_ids if aid in self._rows}

    def save_many(self, annotations: Iterable[Annotation]) -> None:
        batch = list(annotations)
        with self._lock:
            missing = [a.id for a in batch if a.id not in self._rows]
            if missing:
                raise NotFoundError("Annotations not found", {"annotation_ids": missing})
            for annotation in batch:
                self._rows[annotation.id] = replace(annotation)

    def list(
        self,
        status: AnnotationStatus | None = None,
        module_id: str | None = None,
        species_id: str | None = None,
    ) -> list[Annotation]:
        with self._lock:
            rows = [
                replace(a)
                for a in self._rows.values()
                if (status is None or a.status == status)
                and (module_id is None or a.module_id == module_id)
                and (species_id is None or a.species_id == species_id)
            ]
        return sorted(rows, key=lambda a: a.term_seq)

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in AnnotationStatus}
        with self._lock:
            for annotation in self._rows.values():
                counts[annotation.status.value] += 1
        return counts


# =============================================================================
# SQLAlchemy Store
# =============================================================================


def _from_row(row: AnnotationRow) -> Annotation:
    return Annotation(
        id=row.id,
        spanish_term=row.spanish_term,
        english_term=row.english_term,
        feature_type=row.feature_type,
        bounding_box=BoundingBox(x=row.box_x, y=row.box_y, width=row.box_width, height=row.box_height),
        species_id=row.species_id,
        image_id=row.image_id,
        status=AnnotationStatus(row.status),
        difficulty_level=row.difficulty_level or 1,
        module_id=row.module_id,
        rejection_reason=row.rejection_reason,
        term_seq=row.term_seq,
        created_at=row.created_at,
        updated_at=row.updated_at,
        published_at=row.published_at,
    )


def _copy_to_row(annotation: Annotation, row: AnnotationRow) -> None:
    row.status = annotation.status.value
    row.spanish_term = annotation.spanish_term
    row.english_term = annotation.english_term
    row.feature_type = annotation.feature_type
    row.species_id = annotation.species_id
    row.image_id = annotation.image_id
    row.box_x = annotation.bounding_box.x
    row.box_y = annotation.bounding_box.y
    row.box_width = annotation.bounding_box.width
    row.box_height = annotation.bounding_box.height
    row.difficulty_level = annotation.difficulty_level
    row.module_id = annotation.module_id
    row.rejection_reason = annotation.rejection_reason
    row.updated_at = annotation.updated_at
    row.published_at = annotation.published_at


class SqlAnnotationStore(AnnotationStore):
    """
    `annotations` table.

    `term_seq` is unique. Adds from this process are serialized; an insert
    that still collides with another writer is retried with a fresh number.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None, seq_retries: int = 5):
        self._session_factory = session_factory
        self.seq_retries = max(1, seq_retries)
        self._add_lock = threading.Lock()

    def _next_seq(self, session: Session) -> int:
        return (session.scalar(select(func.max(AnnotationRow.term_seq))) or 0) + 1

    def add(self, annotation: Annotation) -> Annotation:
        attempt = 0
        with self._add_lock:
            while True:
                attempt += 1
                try:
                    with session_scope(self._session_factory) as session:
                        if session.get(AnnotationRow, annotation.id) is not None:
                            raise ConflictError(
                                f"Annotation already exists: {annotation.id}", {"annotation_id": annotation.id}
                            )
                        seq = self._next_seq(session)
                        row = AnnotationRow(id=annotation.id, term_seq=seq, created_at=annotation.created_at)
                        _copy_to_row(annotation, row)
                        session.add(row)
                except IntegrityError as e:
                    if attempt >= self.seq_retries:
                        raise ConflictError(
                            f"Could not assign a sequence number to {annotation.id}",
                            {"annotation_id": annotation.id, "attempts": attempt},
                        ) from e
                    logger.debug(f"term_seq {seq} taken while adding {annotation.id}, retrying")
                else:
                    return replace(annotation, term_seq=seq)

    def get(self, annotation_id: str) -> Annotation | None:
        with session_scope(self._session_factory) as session:
            row = session.get(AnnotationRow, annotation_id)
            return _from_row(row) if row else None

    def get_many(self, annotation_ids: Iterable[str]) -> dict[str, Annotation]:
        ids = list(set(annotation_ids))
        if not ids:
            return {}
        with session_scope(self._session_factory) as session:
            rows = session.scalars(select(AnnotationRow).where(AnnotationRow.id.in_(ids))).all()
            return {row.id: _from_row(row) for row in rows}

    def save_many(self, annotations: Iterable[Annotation]) -> None:
        batch = list(annotations)
        with session_scope(self._session_factory) as session:
            rows = {
                row.id: row
                for row in session.scalars(
                    select(AnnotationRow).where(AnnotationRow.id.in_([a.id for a in batch]))
                ).all()
            }
            missing = [a.id for a in batch if a.id not in rows]
            if missing:
                raise NotFoundError("Annotations not found", {"annotation_ids": missing})
            for annotation in batch:
                _copy_to_row(annotation, rows[annotation.id])

    def list(
        self,
        status: AnnotationStatus | None = None,
        module_id: str | None = None,
        species_id: str | None = None,
    ) -> list[Annotation]:
        query = select(AnnotationRow).order_by(AnnotationRow.term_seq)
        if status is not None:
            query = query.where(AnnotationRow.status == status.value)
        if module_id is not None:
            query = query.where(AnnotationRow.module_id == module_id)
        if species_id is not None:
            query = query.where(AnnotationRow.species_id == species_id)
        with session_scope(self._session_factory) as session:
            return [_from_row(row) for row in session.scalars(query).all()]

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in AnnotationStatus}
        with session_scope(self._session_factory) as session:
            for status, count in session.execute(
                select(AnnotationRow.status, func.count()).group_by(AnnotationRow.status)
            ).all():
                counts[status] = count
        return counts
