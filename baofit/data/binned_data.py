# data/binned_data.py
"""
Sparse multi-dimensional binned data with a covariance matrix.

A `BinnedData` is defined over a fixed tuple of axes (one `AbsBinning` per
dimension). Each multi-axis bin has a *global index* obtained by combining
the per-axis indices row-major. Only bins that have been assigned a value
are *active*; the *offset* of an active bin is its rank among the active
bins in ascending global index, and rows/columns of the covariance matrix
are indexed by offset.

Lifecycle:

* populate with `set_data` (each bin at most once), then covariance
  elements with `set_covariance` / `set_inverse_covariance`. The first
  covariance write freezes the active-bin set.
* `finalize()` fixes the shape. Afterwards bins can only be removed with
  `prune`.
* `compress()` is a terminal memory-saving step for samples that are only
  read from then on.

Ownership: `copy()` returns a `SharedBinnedData` that shares the covariance
matrix with its source and refuses to modify it; `detach()` turns it into
an owned `BinnedData` with its own copy of the matrix.
"""

from __future__ import annotations

import bisect
import functools
import logging
from typing import Sequence

import numpy as np

from ..custom_types import Array, ArrayLike
from ..array_backend.utils import _ensure_real_scalar, _ensure_vector
from ..binning import AbsBinning, combined_shape
from ..exceptions import (
    BinningError,
    InactiveBinError,
    InvalidStateError,
    ShapeMismatchError,
)
from ..linalg.covariance import CovarianceMatrix, INVERSE, ZERO_PRECISION, ZERO_VARIANCE
from ..linalg.utils import packed_matvec

logger = logging.getLogger(__name__)

__all__ = [
    "BinnedData",
    "SharedBinnedData",
]


class BinnedData:
    """Data values and covariance over the active bins of a set of axes.

    Args:
        axes: one binning per dimension; immutable after construction.
    """

    def __init__(self, axes: Sequence[AbsBinning]) -> None:
        axes = tuple(axes)
        if not axes:
            raise ValueError("BinnedData requires at least one axis.")
        for axis in axes:
            if not isinstance(axis, AbsBinning):
                raise TypeError(f"BinnedData: axes must be AbsBinning instances; got {type(axis).__name__}.")
        self._axes = axes
        self._shape = combined_shape(axes)
        self._n_bins_total = int(np.prod(self._shape))
        self.zero_variance = ZERO_VARIANCE
        self.zero_precision = ZERO_PRECISION
        self._reset_contents()

    def _reset_contents(self) -> None:
        self._index: list[int] = []
        self._values: dict[int, float] | None = {}
        self._offsets: dict[int, int] | None = None
        self._data: Array | None = None
        self._weighted: bool | None = None
        self._cov: CovarianceMatrix | None = None
        self._finalized = False

    # ---- Shape and indexing ----

    @property
    def axes(self) -> tuple[AbsBinning, ...]:
        return self._axes

    @property
    def n_bins_total(self) -> int:
        return self._n_bins_total

    @property
    def n_bins_with_data(self) -> int:
        return len(self._index)

    @property
    def indices(self) -> Array:
        """Global indices of the active bins, in offset order."""
        return np.array(self._index, dtype=np.intp)

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self):
        return iter(list(self._index))

    def __contains__(self, index: int) -> bool:
        return index in self._offset_table()

    def get_index(self, values: Sequence[float]) -> int:
        """Global index of the bin containing the coordinates `values` (one per axis)."""
        if len(values) != len(self._axes):
            raise ValueError(f"get_index: expected {len(self._axes)} coordinates, got {len(values)}.")
        bins = tuple(axis.index_of(v) for axis, v in zip(self._axes, values))
        return int(np.ravel_multi_index(bins, self._shape))

    def get_bin_indices(self, index: int) -> tuple[int, ...]:
        """Per-axis bin indices of a global index."""
        return tuple(int(i) for i in np.unravel_index(self._check_global(index), self._shape))

    def get_bin_centers(self, index: int) -> Array:
        bins = self.get_bin_indices(index)
        return np.array([axis.center(i) for axis, i in zip(self._axes, bins)], dtype=float)

    def get_bin_widths(self, index: int) -> Array:
        bins = self.get_bin_indices(index)
        return np.array([axis.width(i) for axis, i in zip(self._axes, bins)], dtype=float)

    def _check_global(self, index: int) -> int:
        index = int(index)
        if not 0 <= index < self._n_bins_total:
            raise BinningError(
                "Global index out of range.",
                details={"index": index, "n_bins_total": self._n_bins_total},
            )
        return index

    def _offset_table(self) -> dict[int, int]:
        if self._offsets is None:
            self._offsets = {index: k for k, index in enumerate(self._index)}
        return self._offsets

    def offset_of(self, index: int) -> int:
        """Offset of an active bin; raises InactiveBinError for inactive bins."""
        try:
            return self._offset_table()[int(index)]
        except KeyError:
            raise InactiveBinError("Bin has no data.", details={"index": int(index)}) from None

    def index_at_offset(self, offset: int) -> int:
        offset = int(offset)
        if not 0 <= offset < len(self._index):
            raise IndexError(f"index_at_offset: offset {offset} out of range [0, {len(self._index)}).")
        return self._index[offset]

    # ---- State ----

    def is_finalized(self) -> bool:
        return self._finalized

    def is_compressed(self) -> bool:
        return self._cov is not None and self._cov.is_compressed()

    def has_covariance(self) -> bool:
        return self._cov is not None and self._cov.representation is not None

    def is_covariance_modifiable(self) -> bool:
        return True

    @property
    def covariance(self) -> CovarianceMatrix:
        """The covariance matrix over active bins (read-only use)."""
        if self._cov is None:
            raise InvalidStateError("BinnedData has no covariance matrix.")
        return self._cov

    def _covariance_for_write(self) -> CovarianceMatrix:
        self._freeze()
        if self._cov is None:
            self._cov = CovarianceMatrix(len(self._index))
        return self._cov

    def _freeze(self) -> None:
        """Fix the active-bin set and move pending values into the data vector."""
        if self._values is None:
            return
        self._data = np.array([self._values[i] for i in self._index], dtype=float)
        self._values = None

    def _is_frozen(self) -> bool:
        return self._values is None

    # ---- Data ----

    def set_data(self, index: int, value: float, weighted: bool = False) -> None:
        """Activate bin `index` with `value`.

        If `weighted` is True, `value` is a component of C^-1 d rather than of
        d itself. Weighted values are converted back to raw data, once, the
        first time raw data is needed, using the covariance at that time.
        """
        index = self._check_global(index)
        value = _ensure_real_scalar(value)
        if self._finalized:
            raise InvalidStateError("set_data: dataset is finalized.", details={"index": index})
        if index in self._offset_table():
            raise InvalidStateError("set_data: bin already has data.", details={"index": index})
        if self._is_frozen():
            raise InvalidStateError(
                "set_data: cannot add bins after the covariance has been created.",
                details={"index": index},
            )
        weighted = bool(weighted)
        if self._weighted is not None and self._weighted != weighted:
            raise InvalidStateError("set_data: cannot mix weighted and unweighted values.", details={"index": index})
        self._weighted = weighted
        bisect.insort(self._index, index)
        self._values[index] = value
        self._offsets = None

    def _unweight(self) -> None:
        """Convert stored C^-1 d into d using the current covariance."""
        self._freeze()
        if not self._weighted:
            return
        if not self.has_covariance():
            raise InvalidStateError("Weighted data cannot be un-weighted without a covariance.")
        self._cov.multiply_by_covariance(self._data)
        self._weighted = False

    def _weight(self) -> None:
        """Convert stored d into C^-1 d."""
        self._freeze()
        if self._weighted or self._data is None or self._data.size == 0:
            self._weighted = True
            return
        self._cov.multiply_by_inverse_covariance(self._data)
        self._weighted = True

    def get_data(self, index: int) -> float:
        offset = self.offset_of(index)
        if not self._is_frozen() and not self._weighted:
            return self._values[int(index)]
        self._unweight()
        return float(self._data[offset])

    def data_vector(self) -> Array:
        """Raw data values in offset order (copy)."""
        if not self._is_frozen() and not self._weighted:
            return np.array([self._values[i] for i in self._index], dtype=float)
        self._unweight()
        return self._data.copy()

    def weighted_data_vector(self, inverse: Array | None = None) -> Array:
        """C^-1 d in offset order.

        Neither the data nor the covariance of this dataset is modified, so
        this can be called on samples shared between concurrent readers.

        Args:
            inverse: packed C^-1 already read from this dataset's covariance
                (`covariance.packed_inverse()`), used instead of deriving it.
        """
        if not self.has_covariance():
            raise InvalidStateError("weighted_data_vector requires a covariance.")
        if self._weighted:
            return self._data.copy()
        vec = self.data_vector()
        if inverse is not None:
            return packed_matvec(inverse, vec)
        return self._cov.multiply_by_inverse_covariance(vec, cache=False)

    # ---- Covariance access by global index ----

    def _check_open(self, operation: str) -> None:
        if self._finalized:
            raise InvalidStateError(f"{operation}: dataset is finalized.")

    def set_covariance(self, index1: int, index2: int, value: float) -> None:
        self._check_open("set_covariance")
        o1, o2 = self.offset_of(index1), self.offset_of(index2)
        self._covariance_for_write().set_covariance(o1, o2, value)

    def set_inverse_covariance(self, index1: int, index2: int, value: float) -> None:
        self._check_open("set_inverse_covariance")
        o1, o2 = self.offset_of(index1), self.offset_of(index2)
        self._covariance_for_write().set_inverse_covariance(o1, o2, value)

    def get_covariance(self, index1: int, index2: int) -> float:
        o1, o2 = self.offset_of(index1), self.offset_of(index2)
        return self.covariance.get_covariance(o1, o2)

    def get_inverse_covariance(self, index1: int, index2: int) -> float:
        o1, o2 = self.offset_of(index1), self.offset_of(index2)
        return self.covariance.get_inverse_covariance(o1, o2)

    def chi_square(self, prediction: ArrayLike) -> float:
        """Chi-square of `prediction` (in offset order) against the data."""
        pred = _ensure_vector(prediction, length=len(self._index))
        return self.covariance.chi_square(self.data_vector() - pred)

    # ---- Lifecycle ----

    def finalize(self) -> None:
        """Fix the shape of this dataset.

        Exactly-zero diagonal entries of the stored representation are
        replaced by `zero_variance` (covariance) or `zero_precision` (inverse)
        so the matrix stays invertible.
        """
        if self._finalized:
            raise InvalidStateError("finalize: dataset is already finalized.")
        if not self._index:
            raise InvalidStateError("finalize: dataset has no data.")
        if not self.has_covariance():
            raise InvalidStateError("finalize: dataset has no covariance.")
        self._freeze()
        n_clamped = self._covariance_for_write().clamp_zero_diagonal(self.zero_variance, self.zero_precision)
        if n_clamped:
            logger.debug("Clamped %d zero diagonal covariance entries", n_clamped)
        self._finalized = True

    def compress(self, store_inverse: bool = False) -> None:
        """Compress the covariance matrix; the dataset becomes read-only.

        With `store_inverse` the inverse covariance is made the stored
        representation first, so combining this sample into others later
        needs no inversion.
        """
        cov = self._covariance_for_write()
        if store_inverse and not cov.is_compressed():
            cov.set_primary(INVERSE)
        cov.compress()

    def prune(self, keep: ArrayLike) -> None:
        """Keep only the active bins whose global indices are in `keep`.

        Offsets are re-derived in the original order and the covariance keeps
        the corresponding rows and columns of the covariance (not of its
        inverse). Pruning to the current active set is a no-op.
        """
        if self.is_compressed():
            raise InvalidStateError("prune: cannot prune a compressed dataset.")
        keep = sorted({int(i) for i in np.atleast_1d(np.asarray(keep, dtype=np.intp))})
        table = self._offset_table()
        inactive = [i for i in keep if i not in table]
        if inactive:
            raise InactiveBinError("prune: keep set contains inactive bins.", details={"indices": inactive[:10]})
        if keep == self._index:
            return
        offsets = np.array([table[i] for i in keep], dtype=np.intp)
        logger.debug("Pruning %d of %d bins", len(self._index) - len(keep), len(self._index))
        if self._cov is not None and self._cov.representation is not None:
            self._unweight()
            self._cov = self._cov.select(offsets)
            self._data = self._data[offsets]
        elif self._is_frozen():
            self._data = self._data[offsets]
            self._cov = None
        else:
            self._values = {i: self._values[i] for i in keep}
        self._index = keep
        self._offsets = None
        self._on_prune(offsets)

    def _on_prune(self, offsets: Array) -> None:
        """Hook for subclasses holding per-bin caches in offset order."""

    def __iadd__(self, other: BinnedData) -> BinnedData:
        """Information-weighted combination with another finalized dataset.

        The combined inverse covariance is the sum of the two, and the combined
        weighted data vector C^-1 d is the sum of the two weighted vectors. An
        empty left side adopts the shape of `other`.
        """
        if not isinstance(other, BinnedData):
            return NotImplemented
        if not self.is_covariance_modifiable():
            raise InvalidStateError("+=: covariance is shared; call detach() first.")
        if not other.is_finalized():
            raise InvalidStateError("+=: right-hand side is not finalized.")
        if self._shape != other._shape:
            raise ShapeMismatchError(
                "+=: datasets have different axes.",
                details={"shape": self._shape, "other_shape": other._shape},
            )
        if not self._index and self._cov is None:
            other_icov = other.covariance.packed_inverse()
            self._index = list(other._index)
            self._values = None
            self._offsets = None
            self._data = other.weighted_data_vector(inverse=other_icov)
            self._weighted = True
            self._covariance_for_write().add_packed_inverse(other_icov, 1.0)
            self._finalized = True
            self._copy_derived_state(other)
            return self
        if not self._finalized:
            raise InvalidStateError("+=: left-hand side is not finalized.")
        if self._index != other._index:
            raise ShapeMismatchError(
                "+=: datasets have different active bins.",
                details={"n_bins": len(self._index), "other_n_bins": len(other._index)},
            )
        self.check_combinable(other)
        cov = self._covariance_for_write()
        other_icov = other.covariance.packed_inverse()
        other_wdata = other.weighted_data_vector(inverse=other_icov)
        self._weight()
        self._data += other_wdata
        cov.add_packed_inverse(other_icov, 1.0)
        return self

    def check_combinable(self, other: BinnedData) -> None:
        """Raise if `other` cannot be combined with this dataset beyond having the same bins."""

    def _install(self, index: Sequence[int], data: Array, covariance: CovarianceMatrix,
                 source: BinnedData | None = None) -> None:
        """Replace the contents by finalized raw data and a covariance over `index`."""
        self._reset_contents()
        self._index = list(index)
        self._values = None
        self._data = np.asarray(data, dtype=float)
        self._weighted = False
        self._cov = covariance
        self._finalized = True
        if source is not None:
            self._copy_derived_state(source)

    def _copy_derived_state(self, source: BinnedData) -> None:
        """Hook for subclasses to take over per-bin caches and flags of a dataset with the same bins."""

    # ---- Copies ----

    def _new_empty(self) -> BinnedData:
        """Fresh owned instance over the same axes, carrying construction options."""
        out = self.owned_type()(self._axes, **self._options())
        out.zero_variance = self.zero_variance
        out.zero_precision = self.zero_precision
        return out

    def _options(self) -> dict:
        """Constructor keyword arguments beyond the axes."""
        return {}

    @classmethod
    def owned_type(cls) -> type:
        return cls

    def _replicate(self, cls: type, *, share_covariance: bool) -> BinnedData:
        out = cls.__new__(cls)
        for name, value in vars(self).items():
            if isinstance(value, np.ndarray):
                value = value.copy()
            elif isinstance(value, (list, dict)):
                value = type(value)(value)
            setattr(out, name, value)
        if not share_covariance and self._cov is not None:
            out._cov = self._cov.copy()
        return out

    def clone(self, binning_only: bool = False) -> BinnedData:
        """Owned copy; with `binning_only`, an empty dataset over the same axes."""
        if binning_only:
            return self._new_empty()
        return self._replicate(self.owned_type(), share_covariance=False)

    def copy(self) -> SharedBinnedData:
        """Copy sharing the covariance matrix with this dataset."""
        return self._replicate(_shared_type(self.owned_type()), share_covariance=True)

    def __repr__(self) -> str:
        state = "finalized" if self._finalized else "open"
        return (f"{self.__class__.__name__}(shape={self._shape}, "
                f"n_bins_with_data={len(self._index)}, {state})")


class SharedBinnedData(BinnedData):
    """A dataset whose covariance matrix is shared with another dataset.

    Data can be read and modified, but every operation that would modify the
    covariance raises `InvalidStateError`. Call `detach()` to obtain an owned
    dataset with its own copy of the matrix.
    """

    def is_covariance_modifiable(self) -> bool:
        return False

    def _covariance_for_write(self) -> CovarianceMatrix:
        raise InvalidStateError("Covariance is shared; call detach() before modifying it.")

    def detach(self) -> BinnedData:
        return self._replicate(self.owned_type(), share_covariance=False)

    @classmethod
    def owned_type(cls) -> type:
        for base in cls.__mro__[1:]:
            if issubclass(base, BinnedData) and not issubclass(base, SharedBinnedData):
                return base
        return BinnedData


@functools.lru_cache(maxsize=None)
def _shared_type(owned: type) -> type:
    """Shared variant of an owned dataset class."""
    if owned is BinnedData:
        return SharedBinnedData
    return type(f"Shared{owned.__name__}", (SharedBinnedData, owned), {"__module__": owned.__module__})
