"""
Statistics stores: one `FeatureStatistic` per (feature type, species).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from aves.db.database import session_scope
from aves.db.models import FeatureStatisticRow

from .welford import RunningStats


@dataclass
class FeatureStatistic:
    """Running correction statistics and feedback counters for one key."""

    feature_type: str
    species_id: str
    stats: RunningStats = field(default_factory=RunningStats)
    placement: RunningStats = field(default_factory=RunningStats)  # approved (cx, cy, w, h)
    approvals: int = 0
    rejections: int = 0
    occurrences: int = 0
    confidence_bias: float = 0.0
    rejection_reasons: dict[str, int] = field(default_factory=dict)
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.feature_type, self.species_id)

    @property
    def count(self) -> int:
        return self.stats.count

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_type": self.feature_type,
            "species_id": self.species_id,
            "count": self.stats.count,
            "mean": list(self.stats.mean),
            "variance": list(self.stats.variance),
            "placement": {
                "count": self.placement.count,
                "mean": list(self.placement.mean),
                "variance": list(self.placement.variance),
            },
            "approvals": self.approvals,
            "rejections": self.rejections,
            "occurrences": self.occurrences,
            "confidence_bias": round(self.confidence_bias, 4),
            "rejection_reasons": dict(self.rejection_reasons),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def _copy(stat: FeatureStatistic) -> FeatureStatistic:
    return replace(stat, rejection_reasons=dict(stat.rejection_reasons))


class StatisticsStore(ABC):
    """Keyed running-statistics map."""

    @abstractmethod
    def get(self, feature_type: str, species_id: str) -> FeatureStatistic | None: ...

    @abstractmethod
    def save(self, stat: FeatureStatistic) -> None:
        """Insert or replace the row for `stat.key`."""

    @abstractmethod
    def list_for_species(self, species_id: str) -> list[FeatureStatistic]: ...

    @abstractmethod
    def list_all(self) -> list[FeatureStatistic]: ...


class InMemoryStatisticsStore(StatisticsStore):
    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], FeatureStatistic] = {}
        self._lock = threading.Lock()

    def get(self, feature_type: str, species_id: str) -> FeatureStatistic | None:
        with self._lock:
            row = self._rows.get((feature_type, species_id))
            return _copy(row) if row else None

    def save(self, stat: FeatureStatistic) -> None:
        with self._lock:
            self._rows[stat.key] = _copy(stat)

    def list_for_species(self, species_id: str) -> list[FeatureStatistic]:
        with self._lock:
            return [_copy(r) for (_, sid), r in self._rows.items() if sid == species_id]

    def list_all(self) -> list[FeatureStatistic]:
        with self._lock:
            return [_copy(r) for r in self._rows.values()]


def _from_row(row: FeatureStatisticRow) -> FeatureStatistic:
    return FeatureStatistic(
        feature_type=row.feature_type,
        species_id=row.species_id,
        stats=RunningStats(
            count=row.count or 0,
            mean=tuple(row.mean or ()),
            m2=tuple(row.m2 or ()),
        ),
        placement=RunningStats(
            count=row.placement_count or 0,
            mean=tuple(row.placement_mean or ()),
            m2=tuple(row.placement_m2 or ()),
        ),
        approvals=row.approvals or 0,
        rejections=row.rejections or 0,
        occurrences=row.occurrences or 0,
        confidence_bias=row.confidence_bias or 0.0,
        rejection_reasons=dict(row.rejection_reasons or {}),
        updated_at=row.updated_at,
    )


class SqlStatisticsStore(StatisticsStore):
    """`feature_statistics` table, unique on (feature_type, species_id)."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._session_factory = session_factory

    def _select(self, session: Session, feature_type: str, species_id: str) -> FeatureStatisticRow | None:
        return session.scalars(
            select(FeatureStatisticRow).where(
                FeatureStatisticRow.feature_type == feature_type,
                FeatureStatisticRow.species_id == species_id,
            )
        ).first()

    def get(self, feature_type: str, species_id: str) -> FeatureStatistic | None:
        with session_scope(self._session_factory) as session:
            row = self._select(session, feature_type, species_id)
            return _from_row(row) if row else None

    def save(self, stat: FeatureStatistic) -> None:
        with session_scope(self._session_factory) as session:
            row = self._select(session, stat.feature_type, stat.species_id)
            if row is None:
                row = FeatureStatisticRow(feature_type=stat.feature_type, species_id=stat.species_id)
                session.add(row)
            row.count = stat.stats.count
            row.mean = list(stat.stats.mean)
            row.m2 = list(stat.stats.m2)
            row.placement_count = stat.placement.count
            row.placement_mean = list(stat.placement.mean)
            row.placement_m2 = list(stat.placement.m2)
            row.approvals = stat.approvals
            row.rejections = stat.rejections
            row.occurrences = stat.occurrences
            row.confidence_bias = stat.confidence_bias
            row.rejection_reasons = dict(stat.rejection_reasons)
            row.updated_at = stat.updated_at

    def list_for_species(self, species_id: str) -> list[FeatureStatistic]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(FeatureStatisticRow).where(FeatureStatisticRow.species_id == species_id)
            ).all()
            return [_from_row(r) for r in rows]

    def list_all(self) -> list[FeatureStatistic]:
        with session_scope(self._session_factory) as session:
            return [_from_row(r) for r in session.scalars(select(FeatureStatisticRow)).all()]
