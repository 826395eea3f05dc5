# binning.py
"""
One-dimensional binning schemes for the axes of a binned dataset.

A binning maps a coordinate value to a bin index and exposes the center,
width and low edge of each bin. `BinnedData` combines one binning per axis
into a flat global index (row-major over the axes).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np

from .custom_types import Array, ArrayLike
from .array_backend.utils import _ensure_real_scalar, _ensure_vector
from .exceptions import BinningError

__all__ = [
    "AbsBinning",
    "UniformBinning",
    "UniformSampling",
    "NonUniformSampling",
    "two_step_sampling",
]


class AbsBinning(ABC):
    """Abstract base class for a one-dimensional binning."""

    @property
    @abstractmethod
    def n_bins(self) -> int:
        ...

    @abstractmethod
    def index_of(self, value: float) -> int:
        """Return the bin index containing `value`; raises BinningError if none does."""
        ...

    @abstractmethod
    def center(self, index: int) -> float:
        ...

    @abstractmethod
    def width(self, index: int) -> float:
        ...

    def low_edge(self, index: int) -> float:
        return self.center(index) - 0.5 * self.width(index)

    def centers(self) -> Array:
        """All bin centers, shape (n_bins,)."""
        return np.array([self.center(i) for i in range(self.n_bins)], dtype=float)

    def _check_index(self, index: int) -> int:
        index = int(index)
        if not 0 <= index < self.n_bins:
            raise BinningError(
                f"{self.__class__.__name__}: bin index out of range.",
                details={"index": index, "n_bins": self.n_bins},
            )
        return index

    def __len__(self) -> int:
        return self.n_bins


class UniformBinning(AbsBinning):
    """`n` equal-width bins covering [low, high)."""

    def __init__(self, low: float, high: float, n: int) -> None:
        low, high = _ensure_real_scalar(low), _ensure_real_scalar(high)
        n = int(n)
        if n <= 0 or not high > low:
            raise BinningError(
                "UniformBinning: need n > 0 and high > low.",
                details={"low": low, "high": high, "n": n},
            )
        self.low = low
        self.high = high
        self._n = n
        self.bin_width = (high - low) / n

    @property
    def n_bins(self) -> int:
        return self._n

    def index_of(self, value: float) -> int:
        value = _ensure_real_scalar(value)
        if not self.low <= value < self.high:
            raise BinningError(
                "UniformBinning: value outside binning range.",
                details={"value": value, "low": self.low, "high": self.high},
            )
        # Round-off near the upper edge can land on n.
        return min(int(np.floor((value - self.low) / self.bin_width)), self._n - 1)

    def center(self, index: int) -> float:
        return self.low + (self._check_index(index) + 0.5) * self.bin_width

    def width(self, index: int) -> float:
        self._check_index(index)
        return self.bin_width

    def low_edge(self, index: int) -> float:
        return self.low + self._check_index(index) * self.bin_width

    def __repr__(self) -> str:
        return f"UniformBinning(low={self.low}, high={self.high}, n={self._n})"


class _AbsSampling(AbsBinning):
    """Binning defined by a sorted set of sample points (the bin centers)."""

    # Accepted distance from a sample point, relative to the local spacing.
    tolerance = 1e-6

    def __init__(self, points: Array) -> None:
        self.points = points

    @property
    def n_bins(self) -> int:
        return int(self.points.size)

    def _spacing(self, index: int) -> float:
        return self.width(index)

    def index_of(self, value: float) -> int:
        value = _ensure_real_scalar(value)
        index = int(np.argmin(np.abs(self.points - value)))
        scale = self._spacing(index)
        allowed = self.tolerance * scale if scale > 0 else self.tolerance
        if abs(self.points[index] - value) > allowed:
            raise BinningError(
                f"{self.__class__.__name__}: value does not match any sample point.",
                details={"value": value, "nearest": float(self.points[index])},
            )
        return index

    def center(self, index: int) -> float:
        return float(self.points[self._check_index(index)])


class UniformSampling(_AbsSampling):
    """`n` equally spaced sample points from `low` to `high` inclusive."""

    def __init__(self, low: float, high: float, n: int) -> None:
        low, high = _ensure_real_scalar(low), _ensure_real_scalar(high)
        n = int(n)
        if n <= 0 or high < low or (n == 1 and high != low) or (n > 1 and high == low):
            raise BinningError(
                "UniformSampling: invalid parameters.",
                details={"low": low, "high": high, "n": n},
            )
        self.low = low
        self.high = high
        self.spacing = (high - low) / (n - 1) if n > 1 else 0.0
        super().__init__(np.linspace(low, high, n))

    def width(self, index: int) -> float:
        self._check_index(index)
        return self.spacing

    def __repr__(self) -> str:
        return f"UniformSampling(low={self.low}, high={self.high}, n={self.n_bins})"


class NonUniformSampling(_AbsSampling):
    """Strictly increasing sample points with arbitrary spacing.

    The width of each bin is the distance between the midpoints to its
    neighbours; the outermost bins are taken to be symmetric about their
    sample point.
    """

    def __init__(self, points: ArrayLike) -> None:
        p = _ensure_vector(points)
        if p.size == 0 or np.any(np.diff(p) <= 0):
            raise BinningError("NonUniformSampling: sample points must be non-empty and strictly increasing.")
        super().__init__(p)
        if p.size > 1:
            mid = 0.5 * (p[1:] + p[:-1])
            edges = np.concatenate(([2 * p[0] - mid[0]], mid, [2 * p[-1] - mid[-1]]))
            self._widths = np.diff(edges)
        else:
            self._widths = np.zeros(1)

    def width(self, index: int) -> float:
        return float(self._widths[self._check_index(index)])

    def __repr__(self) -> str:
        return f"NonUniformSampling(n={self.n_bins})"


def two_step_sampling(n_bins: int, breakpoint: float, dlog: float, dlin: float) -> Array:
    """Hybrid linear/logarithmic sample points in log-lambda ratio.

    The first sample is at zero, followed by samples uniformly spaced by
    `dlin` up to `breakpoint` (at bin centers), then logarithmically spaced
    samples with log-weighted centers, for `n_bins` samples in total.

    Raises:
        BinningError: if `breakpoint`, `dlog` or `dlin` is not positive.
    """
    if not (breakpoint > 0 and dlog > 0 and dlin > 0):
        raise BinningError(
            "two_step_sampling: invalid parameters.",
            details={"breakpoint": breakpoint, "dlog": dlog, "dlin": dlin},
        )
    n_uniform = int(np.floor(breakpoint / dlin))
    uniform = (np.arange(1, n_uniform + 1) - 0.5) * dlin
    ratio = np.log((breakpoint + dlog) / breakpoint)
    logarithmic = breakpoint * np.exp(ratio * (np.arange(1, max(n_bins - n_uniform, 1)) - 0.5))
    return np.concatenate(([0.0], uniform, logarithmic))


def combined_shape(axes: Sequence[AbsBinning]) -> tuple[int, ...]:
    """Number of bins along each axis."""
    return tuple(axis.n_bins for axis in axes)
