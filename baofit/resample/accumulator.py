# resample/accumulator.py
"""
Combination of finalized samples with integer repeat counts.

For samples k with data d_k, covariance C_k and repeat count n_k the
accumulator forms

    C~^-1 = sum_k n_k C_k^-1        (linear weights)
    C^^-1 = sum_k n_k^2 C_k^-1      (squared weights)
    data  = C~ . sum_k n_k C_k^-1 d_k

The naive covariance of the combination is C~. When a sample is drawn more
than once its copies are perfectly correlated, and the covariance of the
combined data is instead C~ . C^^-1 . C~, which reduces to C~ when every
n_k is 0 or 1.
"""

from __future__ import annotations

import logging
from enum import Enum
from numbers import Integral

import numpy as np

from ..custom_types import Array
from ..data.binned_data import BinnedData
from ..exceptions import InvalidStateError, ShapeMismatchError
from ..linalg.covariance import CovarianceMatrix

logger = logging.getLogger(__name__)

__all__ = [
    "AccumulatorState",
    "ResampledAccumulator",
]


class AccumulatorState(Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    FINALIZED = "finalized"


class ResampledAccumulator:
    """Accumulates finalized datasets with repeat counts into a new dataset.

    Samples passed to `add` are only read, so the same samples can be used
    by any number of accumulators at once.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Discard accumulated sums and return to the EMPTY state."""
        self._state = AccumulatorState.EMPTY
        self._prototype: BinnedData | None = None
        self._index: list[int] | None = None
        self._weighted_data: Array | None = None
        self._icov_linear: CovarianceMatrix | None = None
        self._icov_squared: CovarianceMatrix | None = None
        self._total_weight = 0

    @property
    def state(self) -> AccumulatorState:
        return self._state

    @property
    def total_weight(self) -> int:
        """Sum of the repeat counts added so far."""
        return self._total_weight

    def add(self, sample: BinnedData, repeat: int = 1) -> None:
        """Add `sample` with integer repeat count `repeat`.

        The first call fixes the active bins; later samples must have the
        same active bins. A repeat of zero only checks the shape.
        """
        if self._state is AccumulatorState.FINALIZED:
            raise InvalidStateError("ResampledAccumulator.add: accumulator is finalized; call reset() first.")
        if not isinstance(repeat, Integral):
            raise TypeError(f"ResampledAccumulator.add: repeat must be an integer; got {type(repeat).__name__}.")
        repeat = int(repeat)
        if repeat < 0:
            raise ValueError(f"ResampledAccumulator.add: repeat must be non-negative; got {repeat}.")
        if not sample.is_finalized():
            raise InvalidStateError("ResampledAccumulator.add: sample is not finalized.")

        index = list(sample.indices)
        if self._state is AccumulatorState.EMPTY:
            n = len(index)
            self._prototype = sample
            self._index = index
            self._weighted_data = np.zeros(n, dtype=float)
            self._icov_linear = CovarianceMatrix(n)
            self._icov_squared = CovarianceMatrix(n)
            self._state = AccumulatorState.ACCUMULATING
        elif (index != self._index
              or tuple(a.n_bins for a in sample.axes) != tuple(a.n_bins for a in self._prototype.axes)):
            raise ShapeMismatchError(
                "ResampledAccumulator.add: sample has different active bins.",
                details={"n_bins": len(self._index), "sample_n_bins": len(index)},
            )
        else:
            self._prototype.check_combinable(sample)
        if repeat == 0:
            return

        # one inversion at most, never cached on the shared sample
        icov = sample.covariance.packed_inverse()
        self._weighted_data += repeat * sample.weighted_data_vector(inverse=icov)
        self._icov_linear.add_packed_inverse(icov, repeat)
        self._icov_squared.add_packed_inverse(icov, repeat * repeat)
        self._total_weight += repeat

    def finalize(self, fix_covariance: bool = True) -> BinnedData:
        """Return the combined dataset.

        Args:
            fix_covariance: apply the correction for repeated samples. With
                False the naive covariance C~ is used, which is exact only if
                no sample was added with a repeat count above one.

        Returns:
            A new finalized, owned dataset of the same class as the first
            sample added.

        Raises:
            InvalidStateError: if nothing was accumulated, the total repeat
                count is zero, or the accumulator is already finalized.
            NonPositiveDefiniteError: if an accumulated matrix cannot be inverted.
        """
        if self._state is AccumulatorState.EMPTY:
            raise InvalidStateError("ResampledAccumulator.finalize: nothing has been added.")
        if self._state is AccumulatorState.FINALIZED:
            raise InvalidStateError("ResampledAccumulator.finalize: already finalized; call reset() first.")
        if self._total_weight == 0:
            raise InvalidStateError("ResampledAccumulator.finalize: total repeat count is zero.")

        data = self._icov_linear.multiply_by_covariance(self._weighted_data.copy())
        if fix_covariance:
            self._icov_squared.replace_with_triple_product(self._icov_linear)
            covariance = self._icov_squared
        else:
            covariance = self._icov_linear

        result = self._prototype.clone(binning_only=True)
        result._install(self._index, data, covariance, source=self._prototype)
        logger.debug("Combined %d repeats over %d bins", self._total_weight, len(self._index))

        self._weighted_data = None
        self._icov_linear = None
        self._icov_squared = None
        self._state = AccumulatorState.FINALIZED
        return result
