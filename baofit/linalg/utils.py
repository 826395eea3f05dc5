# linalg/utils.py
"""
Helpers for symmetric matrices in packed upper-triangular storage.

Only the N(N+1)/2 independent entries of an N x N symmetric matrix are
stored, column by column, with element (row, col), row <= col, at

    row + col * (col + 1) / 2

which is the element order of the LAPACK "U" packed format.
"""

from __future__ import annotations

import math
import numpy as np

from ..custom_types import Array, ArrayLike
from ..array_backend.utils import _ensure_square_matrix, _ensure_vector


def packed_size(n: int) -> int:
    """Number of independent entries of an n x n symmetric matrix."""
    if n < 0:
        raise ValueError(f"packed_size: negative dimension {n}.")
    return (n * (n + 1)) // 2


def packed_dimension(size: int) -> int:
    """Inverse of `packed_size`; raises if `size` is not triangular."""
    n = (math.isqrt(8 * size + 1) - 1) // 2
    if packed_size(n) != size:
        raise ValueError(f"packed_dimension: {size} is not a valid packed length.")
    return n


def packed_index(i: int, j: int, n: int | None = None) -> int:
    """Return the packed offset of element (i, j) of a symmetric matrix."""
    row, col = (i, j) if i <= j else (j, i)
    if row < 0 or (n is not None and col >= n):
        raise IndexError(f"packed_index: element ({i}, {j}) out of range for dimension {n}.")
    return row + (col * (col + 1)) // 2


def _triu_indices(n: int) -> tuple[Array, Array]:
    """Row and column indices of the upper triangle, in packed order."""
    cols, rows = np.tril_indices(n)
    # np.tril_indices enumerates the lower triangle row-major; transposing
    # gives the upper triangle column-major, i.e. packed "U" order.
    return rows, cols


def pack_symmetric(matrix: ArrayLike, *, symmetrize: bool = True) -> Array:
    """Pack a dense symmetric matrix into its upper-triangular packed form.

    Args:
        matrix: square (n, n) array.
        symmetrize: if True (default), pack 0.5 * (A + A.T) so round-off
            asymmetry from dense products does not leak into the result.
            If False, the upper triangle is packed as is.

    Returns:
        Array of shape (n(n+1)/2,).
    """
    A = _ensure_square_matrix(matrix, copy=False)
    if symmetrize:
        A = 0.5 * (A + A.T)
    rows, cols = _triu_indices(A.shape[0])
    return A[rows, cols].astype(float, copy=True)


def unpack_symmetric(packed: ArrayLike) -> Array:
    """Expand a packed symmetric matrix into a dense (n, n) array."""
    p = _ensure_vector(packed, copy=False)
    n = packed_dimension(p.size)
    out = np.zeros((n, n), dtype=float)
    rows, cols = _triu_indices(n)
    out[rows, cols] = p
    out[cols, rows] = p
    return out


def packed_diagonal_offsets(n: int) -> Array:
    """Packed offsets of the diagonal entries (k, k), k = 0..n-1."""
    k = np.arange(n, dtype=np.intp)
    return k + (k * (k + 1)) // 2


def packed_matvec(packed: ArrayLike, x: ArrayLike) -> Array:
    """Return A @ x for a packed symmetric A (the BLAS `dspmv` product)."""
    p = _ensure_vector(packed, copy=False)
    n = packed_dimension(p.size)
    v = _ensure_vector(x, length=n, copy=False)
    rows, cols = _triu_indices(n)
    out = np.zeros(n, dtype=float)
    np.add.at(out, rows, p * v[cols])
    off_diag = rows != cols
    np.add.at(out, cols[off_diag], p[off_diag] * v[rows[off_diag]])
    return out


def select_packed(packed: ArrayLike, offsets: ArrayLike) -> Array:
    """Return the packed sub-matrix made of the rows/columns in `offsets`.

    `offsets` must be increasing so the selected matrix keeps the original
    ordering of rows and columns.
    """
    p = _ensure_vector(packed, copy=False)
    idx = np.asarray(offsets, dtype=np.intp)
    m = idx.size
    rows, cols = _triu_indices(m)
    src_rows, src_cols = idx[rows], idx[cols]
    return p[src_rows + (src_cols * (src_cols + 1)) // 2].copy()


def clamp_zero_diagonal(packed: ArrayLike, value: float, *, copy: bool = True) -> Array:
    """Replace exactly-zero diagonal entries of a packed matrix with `value`.

    Degenerate zero-variance bins would otherwise make the matrix singular.
    """
    p = _ensure_vector(packed, copy=copy)
    diag = packed_diagonal_offsets(packed_dimension(p.size))
    zero = p[diag] == 0
    p[diag[zero]] = value
    return p
