# linalg/operations.py
"""
Functions that accept linear operator inputs. This includes the core basic
operations like `solve()` that are also implemented as `LinOp` methods, so
users can call `solve(cov, ...)` rather than `cov.solve(...)`, and the
chi-square quadratic form used to compare binned data with a model.
"""

import numpy as np
from typing import Any

from ..custom_types import Array, ArrayLike
from ..array_backend.utils import _ensure_vector
from .linop import _as_linear_operator, LinOpLike, TriangularLinOp
from .covariance import CovarianceMatrix


# -----------------------------------------------------------------------------
# Expose LinOp methods as functions
# -----------------------------------------------------------------------------

def shape(A: LinOpLike) -> tuple[int, int]:
    return _as_linear_operator(A).shape

def dtype(A: LinOpLike) -> Any:
    return _as_linear_operator(A).dtype

def diag(A: LinOpLike) -> Array:
    return _as_linear_operator(A).diag()

def to_dense(A: LinOpLike) -> Array:
    return _as_linear_operator(A).to_dense()

def solve(A: LinOpLike, b: ArrayLike, **kwargs) -> Array:
    return _as_linear_operator(A).solve(b, **kwargs)

def cholesky(A: LinOpLike, lower: bool = True) -> TriangularLinOp:
    return _as_linear_operator(A).cholesky(lower=lower)

def logdet(A: LinOpLike) -> float:
    return _as_linear_operator(A).logdet()

def trace(A: LinOpLike) -> float:
    return _as_linear_operator(A).trace()

# -----------------------------------------------------------------------------
# Other specialized operations, not core LinOp methods
# -----------------------------------------------------------------------------

def chi_square(delta: ArrayLike, A: LinOpLike) -> float:
    """ Compute the chi-square :math:`\\delta^\\top A^{-1} \\delta`

    For a `CovarianceMatrix` the inverse is taken from (and cached on) the
    matrix itself; any other operator is handled with a linear solve.

    Args:
        delta: ArrayLike, residual vector of shape (d,).
        A: LinOpLike, invertible covariance of shape (d, d).

    Returns:
        float, the chi-square.
    """
    if isinstance(A, CovarianceMatrix):
        return A.chi_square(delta)
    A = _as_linear_operator(A)
    A._check_square()
    d = _ensure_vector(delta, length=A.shape[0])
    return float(d @ A.solve(d))
