# array_backend/utils.py
"""
Utility functions for array canonicalization used by baofit.

All functions that return arrays accept `copy: bool = True`. When `copy=True`
the returned array is guaranteed to be a different object from the input.
Callers that hand arrays to shared, read-only objects (samples reused across
bootstrap trials) rely on this.
"""

from __future__ import annotations

import numpy as np
from typing import Any

from ..custom_types import Array, ArrayLike


def _as_array(x: Any, dtype: Any = None) -> Array:
    try:
        return np.asarray(x, dtype=dtype)
    except Exception as e:
        raise TypeError(
            f"Could not convert input to array.\n"
            f"Input type: {type(x).__name__}\n"
            f"Input value: {repr(x)}\n"
            f"Original error: {e}"
        ) from e


def _is_numpy_scalar(x: Any) -> bool:
    """Return true if object is a numpy generic or Python scalar"""
    return np.isscalar(x) or isinstance(x, np.generic)


def _ensure_real_scalar(x: Any) -> float:
    """
    Return a Python float for inputs that contain a single real value.

    Accepts Python scalars, numpy scalar types and 0-D or single-element
    arrays.

    Raises:
      ValueError if input contains more than one element, is complex or is
      not finite.
    """
    if _is_numpy_scalar(x):
        if np.iscomplexobj(x):
            raise ValueError(f"_ensure_real_scalar: input is complex-valued: {x!r}")
        value = float(x)
    else:
        arr = _as_array(x)
        if arr.size != 1:
            raise ValueError(f"_ensure_real_scalar: input must contain exactly one element; got size={arr.size}, shape={arr.shape}")
        if np.iscomplexobj(arr):
            raise ValueError(f"_ensure_real_scalar: input is complex-valued (shape={arr.shape}).")
        value = float(arr.item())

    if not np.isfinite(value):
        raise ValueError(f"_ensure_real_scalar: input is not finite: {value!r}")
    return value


def _ensure_vector(x: ArrayLike, *, length: int | None = None, copy: bool = True) -> Array:
    """
    Ensure input is returned as a 1-D float vector of shape (n,).

    Accepts:
      - 1D arrays -> (n,)
      - 2D arrays shaped (n,1) or (1,n) -> flattened
      - 0D scalar -> treated as length-1 vector (1,)

    Raises:
      ValueError for incompatible shapes (ndim > 2 or 2D with both dims >1)
      or a length different from `length`.
    """
    arr = _as_array(x, dtype=float)

    if arr.ndim == 0:
        out = arr.reshape((1,))
    elif arr.ndim == 1:
        out = arr
    elif arr.ndim == 2:
        num_rows, num_cols = arr.shape
        if num_rows == 1 or num_cols == 1:
            out = np.ravel(arr)
        else:
            raise ValueError(f"_ensure_vector: 2D input has shape {arr.shape}, which is not a vector (expected (n,1) or (1,n)).")
    else:
        raise ValueError(f"_ensure_vector: input has too many dimensions (ndim={arr.ndim}).")

    if length is not None and out.size != length:
        raise ValueError(f"_ensure_vector: required length {length}. Got {out.size}.")

    return out.copy() if copy else out


def _ensure_square_matrix(x: ArrayLike, n: int | None = None, *, copy: bool = True) -> Array:
    """Ensure input is a 2d square float matrix, optionally of dimension `n`"""
    arr = _as_array(x, dtype=float)
    if arr.ndim == 0:
        arr = arr.reshape(1, 1)
    if arr.ndim != 2:
        raise ValueError(f"_ensure_square_matrix: Input cannot be converted to a 2D matrix. Shape {arr.shape}")

    num_rows, num_cols = arr.shape
    if num_rows != num_cols:
        raise ValueError(f"Array is not square. Shape {arr.shape}")

    if n is not None and num_rows != n:
        raise ValueError(f"Required matrix dimension {n}. Got {num_rows}.")

    return arr.copy() if copy else arr


def _ensure_offsets(offsets: ArrayLike, size: int) -> Array:
    """Return a strictly increasing integer array of offsets in [0, size)."""
    arr = _as_array(offsets)
    if arr.ndim != 1:
        raise ValueError(f"_ensure_offsets: expected 1D offsets. Got shape {arr.shape}.")
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        raise ValueError(f"_ensure_offsets: offsets must be integers. Got dtype {arr.dtype}.")
    arr = arr.astype(np.intp)
    if arr.size and (arr[0] < 0 or arr[-1] >= size):
        raise ValueError(f"_ensure_offsets: offsets out of range [0, {size}).")
    if np.any(np.diff(arr) <= 0):
        raise ValueError("_ensure_offsets: offsets must be strictly increasing.")
    return arr
