"""
Welford's online mean/variance.

Pure update functions: no sample history is kept, only (count, mean, M2).
Samples may be scalars or fixed-length vectors such as a bounding box
correction (dx, dy, dwidth, dheight).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from aves.core.errors import ValidationError

Sample = float | Sequence[float]


@dataclass(frozen=True)
class RunningStats:
    """Accumulated state; `mean` and `m2` have one slot per sample dimension."""

    count: int = 0
    mean: tuple[float, ...] = ()
    m2: tuple[float, ...] = ()

    @property
    def dimensions(self) -> int:
        return len(self.mean)

    @property
    def variance(self) -> tuple[float, ...]:
        """Population variance per dimension; zero until two samples exist."""
        if self.count < 2:
            return tuple(0.0 for _ in self.mean)
        return tuple(m / self.count for m in self.m2)


def as_vector(sample: Sample) -> tuple[float, ...]:
    """Normalize a scalar or sequence sample to a tuple of floats."""
    if isinstance(sample, bool):
        raise ValidationError("sample must be numeric", {"sample": sample})
    if isinstance(sample, (int, float)):
        return (float(sample),)
    try:
        vector = tuple(float(v) for v in sample)
    except (TypeError, ValueError) as e:
        raise ValidationError("sample must be a number or a sequence of numbers", {"sample": repr(sample)}) from e
    if not vector:
        raise ValidationError("sample must not be empty", {"sample": repr(sample)})
    return vector


def update(stats: RunningStats, sample: Sample) -> RunningStats:
    """
    Fold one sample into the running statistics.

    count += 1; delta = x - mean; mean += delta / count;
    delta2 = x - mean; M2 += delta * delta2

    Args:
        stats: Current state (not modified)
        sample: New observation

    Returns:
        New RunningStats including the sample
    """
    x = as_vector(sample)
    if stats.count == 0:
        mean = tuple(0.0 for _ in x)
        m2 = tuple(0.0 for _ in x)
    else:
        if len(x) != stats.dimensions:
            raise ValidationError(
                "sample dimensions do not match previous observations",
                {"expected": stats.dimensions, "received": len(x)},
            )
        mean, m2 = stats.mean, stats.m2

    count = stats.count + 1
    new_mean = []
    new_m2 = []
    for xi, mi, si in zip(x, mean, m2):
        delta = xi - mi
        mi = mi + delta / count
        delta2 = xi - mi
        new_mean.append(mi)
        new_m2.append(si + delta * delta2)

    return RunningStats(count=count, mean=tuple(new_mean), m2=tuple(new_m2))


def update_many(stats: RunningStats, samples: Sequence[Sample]) -> RunningStats:
    for sample in samples:
        stats = update(stats, sample)
    return stats
