# linalg/covariance.py
"""
Symmetric covariance matrices over the active bins of a dataset.

A `CovarianceMatrix` stores exactly one *primary* representation, either the
covariance C or its inverse C^-1 (the precision), in packed upper-triangular
form (see `linalg.utils`). The other representation is derived on demand by
a Cholesky factorization followed by a triangular inversion, and cached
until the next write. Writing to the representation that is not primary
first materializes it, then drops the old primary, so the two can never be
out of sync.

Compression replaces the packed primary storage by a sparse list of its
non-zero entries. It is intended as a memory-saving terminal step for the
many per-sample matrices retained during resampling: element writes are
forbidden while compressed, reads see missing entries as zero, and derived
representations of a compressed matrix are computed without being cached.
"""

from __future__ import annotations

import numpy as np

from ..custom_types import Array, ArrayLike
from ..array_backend.utils import (
    _ensure_real_scalar,
    _ensure_square_matrix,
    _ensure_vector,
    _ensure_offsets,
)
from ..exceptions import InvalidStateError, ShapeMismatchError
from .linop import LinOp, DenseLinOp, TriangularLinOp
from .utils import (
    packed_size,
    packed_index,
    pack_symmetric,
    unpack_symmetric,
    packed_matvec,
    select_packed,
    clamp_zero_diagonal,
)

__all__ = [
    "CovarianceMatrix",
    "COVARIANCE",
    "INVERSE",
    "ZERO_VARIANCE",
    "ZERO_PRECISION",
]

COVARIANCE = "covariance"
INVERSE = "inverse"

# Nominal values substituted for exactly-zero diagonal entries.
ZERO_VARIANCE = 1e40
ZERO_PRECISION = 1e-30


def _other(role: str) -> str:
    return INVERSE if role == COVARIANCE else COVARIANCE


def _invert_packed(packed: Array) -> Array:
    """Invert a packed symmetric positive-definite matrix.

    Computes L with A = L @ L.T, then A^-1 = L^-T @ L^-1.

    Raises:
        NonPositiveDefiniteError: if the factorization hits a non-positive pivot.
    """
    L = DenseLinOp(unpack_symmetric(packed), copy=False).cholesky(lower=True)
    L_inv = L.inverse().to_dense()
    return pack_symmetric(L_inv.T @ L_inv)


class CovarianceMatrix(LinOp):
    """Covariance matrix of fixed dimension `size` with a single stored representation.

    As a `LinOp`, the operator is the covariance C: `matvec` multiplies by C,
    `solve` multiplies by C^-1 and `to_dense` returns C.

    Args:
        size: number of rows (and columns), i.e. the number of active bins.
    """

    def __init__(self, size: int) -> None:
        super().__init__()
        size = int(size)
        if size < 0:
            raise ValueError(f"CovarianceMatrix: negative size {size}.")
        self._size = size
        self._role: str | None = None
        self._packed: Array | None = None
        self._sparse: tuple[Array, Array] | None = None
        self._derived: Array | None = None
        self.add_flag("symmetric")
        self.add_flag("positive_definite")
        self.add_flag("packed")

    # ---- Construction helpers ----

    @classmethod
    def from_covariance(cls, matrix: ArrayLike) -> CovarianceMatrix:
        """Build from a dense symmetric covariance matrix."""
        return cls._from_dense(matrix, COVARIANCE)

    @classmethod
    def from_inverse(cls, matrix: ArrayLike) -> CovarianceMatrix:
        """Build from a dense symmetric inverse-covariance matrix."""
        return cls._from_dense(matrix, INVERSE)

    @classmethod
    def _from_dense(cls, matrix: ArrayLike, role: str) -> CovarianceMatrix:
        A = _ensure_square_matrix(matrix, copy=False)
        scale = float(np.max(np.abs(A))) if A.size else 0.0
        if not np.allclose(A, A.T, rtol=1e-10, atol=1e-12 * scale):
            raise ValueError("CovarianceMatrix: input matrix is not symmetric.")
        out = cls(A.shape[0])
        out._role = role
        out._packed = pack_symmetric(A)
        return out

    def copy(self) -> CovarianceMatrix:
        """Deep copy; the clone shares no storage with this matrix."""
        out = CovarianceMatrix(self._size)
        out._role = self._role
        if self._packed is not None:
            out._packed = self._packed.copy()
        if self._sparse is not None:
            out._sparse = (self._sparse[0].copy(), self._sparse[1].copy())
        if self._derived is not None:
            out._derived = self._derived.copy()
        return out

    # ---- Properties ----

    @property
    def size(self) -> int:
        return self._size

    @property
    def shape(self) -> tuple[int, int]:
        return (self._size, self._size)

    @property
    def representation(self) -> str | None:
        """The stored representation: "covariance", "inverse", or None if empty."""
        return self._role

    def has_covariance(self) -> bool:
        """True if the covariance is available without an inversion."""
        return self._role == COVARIANCE or (self._role == INVERSE and self._derived is not None)

    def has_inverse_covariance(self) -> bool:
        """True if the inverse covariance is available without an inversion."""
        return self._role == INVERSE or (self._role == COVARIANCE and self._derived is not None)

    def is_compressed(self) -> bool:
        return self._sparse is not None

    # ---- Internal storage access ----

    def _check_offset(self, i: int) -> int:
        i = int(i)
        if not 0 <= i < self._size:
            raise IndexError(f"CovarianceMatrix: offset {i} out of range [0, {self._size}).")
        return i

    def _require_primary(self) -> str:
        if self._role is None:
            raise InvalidStateError("CovarianceMatrix has no elements set.", details={"size": self._size})
        return self._role

    def _primary_packed(self) -> Array:
        """Packed primary values; expands the sparse list without changing state."""
        if self._sparse is not None:
            idx, values = self._sparse
            p = np.zeros(packed_size(self._size), dtype=float)
            p[idx] = values
            return p
        return self._packed

    def _packed_for(self, role: str, *, cache: bool = True) -> Array:
        """Packed values of `role`, inverting the primary representation if needed.

        With cache=False (or while compressed) a derived representation is
        returned but not stored, so shared read-only matrices are never
        modified by readers.
        """
        primary = self._require_primary()
        if role == primary:
            return self._primary_packed()
        if self._derived is not None:
            return self._derived
        derived = _invert_packed(self._primary_packed())
        if cache and self._sparse is None:
            self._derived = derived
        return derived

    def _prepare_write(self, role: str) -> None:
        """Make `role` the primary representation and invalidate derived values."""
        if self._sparse is not None:
            raise InvalidStateError("CovarianceMatrix: cannot write to a compressed matrix.")
        if self._role is None:
            self._packed = np.zeros(packed_size(self._size), dtype=float)
            self._role = role
        elif self._role != role:
            self._packed = self._packed_for(role).copy()
            self._role = role
        self._derived = None

    def set_primary(self, role: str) -> None:
        """Store `role` as the primary representation, deriving it now if needed.

        The previous primary is kept as the cached derived representation.
        """
        if role not in (COVARIANCE, INVERSE):
            raise ValueError(f"set_primary: unknown representation {role!r}.")
        if self._require_primary() == role:
            return
        previous = self._primary_packed()
        self._prepare_write(role)
        self._derived = previous

    # ---- Element access ----

    def set_covariance(self, i: int, j: int, value: float) -> None:
        """Set element (i, j) (and (j, i)) of the covariance."""
        self._set(COVARIANCE, i, j, value)

    def set_inverse_covariance(self, i: int, j: int, value: float) -> None:
        """Set element (i, j) (and (j, i)) of the inverse covariance."""
        self._set(INVERSE, i, j, value)

    def _set(self, role: str, i: int, j: int, value: float) -> None:
        k = packed_index(self._check_offset(i), self._check_offset(j))
        value = _ensure_real_scalar(value)
        self._prepare_write(role)
        self._packed[k] = value

    def get_covariance(self, i: int, j: int) -> float:
        return self._get(COVARIANCE, i, j)

    def get_inverse_covariance(self, i: int, j: int) -> float:
        return self._get(INVERSE, i, j)

    def _get(self, role: str, i: int, j: int) -> float:
        k = packed_index(self._check_offset(i), self._check_offset(j))
        if self._sparse is not None and role == self._require_primary():
            idx, values = self._sparse
            pos = np.searchsorted(idx, k)
            if pos < idx.size and idx[pos] == k:
                return float(values[pos])
            return 0.0
        return float(self._packed_for(role)[k])

    # ---- Dense views ----

    def packed_inverse(self) -> Array:
        """Packed inverse covariance for read-only use; an inversion is never cached."""
        return self._packed_for(INVERSE, cache=False)

    def covariance(self) -> Array:
        """Dense (size, size) covariance."""
        return unpack_symmetric(self._packed_for(COVARIANCE))

    def inverse(self) -> Array:
        """Dense (size, size) inverse covariance."""
        return unpack_symmetric(self._packed_for(INVERSE))

    def to_dense(self) -> Array:
        return self.covariance()

    def diag(self) -> Array:
        """Variances, shape (size,)."""
        return np.diag(self.covariance()).copy()

    # ---- Products ----

    def multiply_by_covariance(self, vec: Array, *, cache: bool = True) -> Array:
        """Replace `vec` by C @ vec in place and return it."""
        return self._multiply(COVARIANCE, vec, cache)

    def multiply_by_inverse_covariance(self, vec: Array, *, cache: bool = True) -> Array:
        """Replace `vec` by C^-1 @ vec in place and return it."""
        return self._multiply(INVERSE, vec, cache)

    def _multiply(self, role: str, vec: Array, cache: bool) -> Array:
        if not isinstance(vec, np.ndarray) or vec.ndim != 1:
            raise TypeError("CovarianceMatrix: in-place products require a 1D numpy array.")
        if vec.size != self._size:
            raise ValueError(f"CovarianceMatrix: vector length {vec.size} does not match size {self._size}.")
        vec[:] = packed_matvec(self._packed_for(role, cache=cache), vec)
        return vec

    def matvec(self, x: ArrayLike) -> Array:
        x = _ensure_vector(x, length=self._size)
        return packed_matvec(self._packed_for(COVARIANCE), x)

    def solve(self, b: ArrayLike) -> Array:
        """Return C^-1 @ b for b of shape (size,) or (size, k)."""
        b = np.asarray(b, dtype=float)
        if b.ndim == 1:
            return packed_matvec(self._packed_for(INVERSE), _ensure_vector(b, length=self._size))
        if b.ndim != 2 or b.shape[0] != self._size:
            raise ValueError(f"CovarianceMatrix.solve: right-hand side of shape {b.shape} does not match size {self._size}.")
        return self.inverse() @ b

    def chi_square(self, delta: ArrayLike) -> float:
        """Return delta.T @ C^-1 @ delta, inverting (and caching) first if needed."""
        d = _ensure_vector(delta, length=self._size, copy=False)
        return float(d @ packed_matvec(self._packed_for(INVERSE), d))

    def cholesky(self, lower: bool = True) -> TriangularLinOp:
        """Cholesky factor of the covariance."""
        return DenseLinOp(self.covariance(), copy=False).cholesky(lower=lower)

    def logdet(self) -> float:
        """log det C, computed from the Cholesky factor."""
        return 2.0 * self.cholesky(lower=True).logdet()

    # ---- Algebra ----

    def add_inverse(self, other: CovarianceMatrix, weight: float = 1.0) -> None:
        """Accumulate this.inverse += weight * other.inverse.

        `other` is only read: no derived representation is cached on it, so
        the same matrix can be added concurrently into several accumulators.
        A compressed receiver is decompressed first.
        """
        if not isinstance(other, CovarianceMatrix):
            raise TypeError(f"add_inverse requires a CovarianceMatrix; got {type(other).__name__}.")
        if other.size != self._size:
            raise ShapeMismatchError(
                "add_inverse: matrix sizes differ.",
                details={"size": self._size, "other_size": other.size},
            )
        weight = _ensure_real_scalar(weight)
        other._require_primary()
        if other._sparse is not None and other._role == INVERSE:
            idx, values = other._sparse
            self.decompress()
            self._prepare_write(INVERSE)
            self._packed[idx] += weight * values
        else:
            self.add_packed_inverse(other.packed_inverse(), weight)

    def add_packed_inverse(self, packed: ArrayLike, weight: float = 1.0) -> None:
        """Accumulate this.inverse += weight * A^-1 for a packed inverse A^-1.

        Lets a caller that already holds an inverse (see `packed_inverse`)
        add it several times without inverting again.
        """
        packed = np.asarray(packed, dtype=float)
        if packed.shape != (packed_size(self._size),):
            raise ShapeMismatchError(
                "add_packed_inverse: packed length does not match size.",
                details={"size": self._size, "packed_length": packed.shape},
            )
        weight = _ensure_real_scalar(weight)
        self.decompress()
        self._prepare_write(INVERSE)
        self._packed += weight * packed

    def replace_with_triple_product(self, tilde: CovarianceMatrix) -> None:
        """Set this covariance to tilde.C @ this.C^-1 @ tilde.C.

        With this holding sum_k n_k^2 C_k^-1 and tilde holding
        sum_k n_k C_k^-1, the result is the covariance of the
        information-weighted combination when sample k is repeated n_k times.
        """
        if not isinstance(tilde, CovarianceMatrix):
            raise TypeError(f"replace_with_triple_product requires a CovarianceMatrix; got {type(tilde).__name__}.")
        if tilde.size != self._size:
            raise ShapeMismatchError(
                "replace_with_triple_product: matrix sizes differ.",
                details={"size": self._size, "tilde_size": tilde.size},
            )
        if self._sparse is not None:
            raise InvalidStateError("CovarianceMatrix: cannot write to a compressed matrix.")
        icov_hat = unpack_symmetric(self._packed_for(INVERSE, cache=False))
        cov_tilde = unpack_symmetric(tilde._packed_for(COVARIANCE))
        product = cov_tilde @ icov_hat @ cov_tilde
        self._role = COVARIANCE
        self._packed = pack_symmetric(product)
        self._derived = None

    def select(self, offsets: ArrayLike) -> CovarianceMatrix:
        """Return a new matrix keeping only the rows/columns at `offsets`.

        The selection is taken from the covariance, so the result is the
        covariance of the retained bins (the marginal), not a renormalized
        inverse.
        """
        idx = _ensure_offsets(offsets, self._size)
        out = CovarianceMatrix(idx.size)
        out._role = COVARIANCE
        out._packed = select_packed(self._packed_for(COVARIANCE, cache=False), idx)
        return out

    def clamp_zero_diagonal(self, zero_variance: float = ZERO_VARIANCE,
                            zero_precision: float = ZERO_PRECISION) -> int:
        """Replace exactly-zero diagonal entries of the primary representation.

        Zero variances become `zero_variance`; zero precisions become
        `zero_precision`. Returns the number of entries replaced.
        """
        role = self._require_primary()
        value = zero_variance if role == COVARIANCE else zero_precision
        before = self._primary_packed()
        after = clamp_zero_diagonal(before, value)
        n_clamped = int(np.count_nonzero(before != after))
        if n_clamped:
            self._prepare_write(role)
            self._packed = after
        return n_clamped

    # ---- Compression ----

    def compress(self) -> None:
        """Replace packed primary storage by its non-zero (index, value) list."""
        self._require_primary()
        if self._sparse is not None:
            return
        nz = np.flatnonzero(self._packed)
        self._sparse = (nz, self._packed[nz].copy())
        self._packed = None
        self._derived = None

    def decompress(self) -> None:
        """Restore packed storage; a no-op if not compressed."""
        if self._sparse is None:
            return
        self._packed = self._primary_packed()
        self._sparse = None

    def __repr__(self) -> str:
        state = "compressed" if self.is_compressed() else "packed"
        return f"CovarianceMatrix(size={self._size}, representation={self._role}, {state})"
