"""
Learning module stores.

Modules are created by content admins and referenced by published
annotations through `module_id`.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from aves.core.errors import ConflictError
from aves.db.database import session_scope
from aves.db.models import LearningModuleRow

from .models import LearningModule


class ModuleStore(ABC):
    """Learning modules keyed by id."""

    @abstractmethod
    def add(self, module: LearningModule) -> LearningModule:
        """
        Insert a new module.

        Raises:
            ConflictError: A module with this id already exists
        """

    @abstractmethod
    def get(self, module_id: str) -> LearningModule | None: ...

    @abstractmethod
    def list(self, active_only: bool = True) -> list[LearningModule]:
        """Modules ordered by `order_index`, then creation time."""

    @abstractmethod
    def next_order_index(self) -> int:
        """Position just after the last module."""


class InMemoryModuleStore(ModuleStore):
    def __init__(self) -> None:
        self._rows: dict[str, LearningModule] = {}
        self._lock = threading.Lock()

    def add(self, module: LearningModule) -> LearningModule:
        with self._lock:
            if module.id in self._rows:
                raise ConflictError(f"Module already exists: {module.id}", {"module_id": module.id})
            self._rows[module.id] = replace(module, species_ids=list(module.species_ids))
        return module

    def get(self, module_id: str) -> LearningModule | None:
        with self._lock:
            row = self._rows.get(module_id)
            return replace(row, species_ids=list(row.species_ids)) if row else None

    def list(self, active_only: bool = True) -> list[LearningModule]:
        with self._lock:
            rows = [
                replace(m, species_ids=list(m.species_ids))
                for m in self._rows.values()
                if m.is_active or not active_only
            ]
        return sorted(rows, key=lambda m: (m.order_index, m.created_at))

    def next_order_index(self) -> int:
        with self._lock:
            return max((m.order_index for m in self._rows.values()), default=0) + 1


def _from_row(row: LearningModuleRow) -> LearningModule:
    return LearningModule(
        id=row.id,
        title=row.title,
        title_spanish=row.title_spanish,
        description=row.description,
        difficulty_level=row.difficulty_level or 1,
        species_ids=list(row.species_ids or []),
        order_index=row.order_index or 0,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


class SqlModuleStore(ModuleStore):
    """`learning_modules` table."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._session_factory = session_factory

    def add(self, module: LearningModule) -> LearningModule:
        with session_scope(self._session_factory) as session:
            if session.get(LearningModuleRow, module.id) is not None:
                raise ConflictError(f"Module already exists: {module.id}", {"module_id": module.id})
            session.add(
                LearningModuleRow(
                    id=module.id,
                    title=module.title,
                    title_spanish=module.title_spanish,
                    description=module.description,
                    difficulty_level=module.difficulty_level,
                    species_ids=list(module.species_ids),
                    order_index=module.order_index,
                    is_active=module.is_active,
                    created_at=module.created_at,
                )
            )
        return module

    def get(self, module_id: str) -> LearningModule | None:
        with session_scope(self._session_factory) as session:
            row = session.get(LearningModuleRow, module_id)
            return _from_row(row) if row else None

    def list(self, active_only: bool = True) -> list[LearningModule]:
        query = select(LearningModuleRow).order_by(LearningModuleRow.order_index, LearningModuleRow.created_at)
        if active_only:
            query = query.where(LearningModuleRow.is_active.is_(True))
        with session_scope(self._session_factory) as session:
            return [_from_row(row) for row in session.scalars(query).all()]

    def next_order_index(self) -> int:
        with session_scope(self._session_factory) as session:
            return (session.scalar(select(func.max(LearningModuleRow.order_index))) or 0) + 1
