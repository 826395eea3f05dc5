# linop.py
from __future__ import annotations

from typing import Any, FrozenSet, TypeAlias
import numpy as np
from abc import ABC, abstractmethod
from scipy.linalg import cholesky, solve_triangular

from ..custom_types import Array, ArrayLike
from ..array_backend.utils import _ensure_vector, _ensure_square_matrix
from ..exceptions import NonPositiveDefiniteError

__all__ = [
    "LinOp",
    "DenseLinOp",
    "TriangularLinOp",
    "LinOpLike",
]


# --- Flags: canonical set ----------------------------------------------------
ALLOWED_FLAGS = frozenset({
    "symmetric",
    "positive_definite",
    "triangular_lower",
    "triangular_upper",
    "dense",
    "packed",
})


# ---- Core abstract class ----

class LinOp(ABC):
    """Abstract base class for a square linear operator.

    Concrete subclasses must provide `shape`, `dtype` and `to_dense`. The
    numeric defaults below densify; subclasses with structured storage
    (triangular factors, packed symmetric matrices) override them.

    Attributes:
        _flags: a set of semantic flags (e.g., "symmetric", "positive_definite").
                See `add_flag`, `has_flag`.
    """

    def __init__(self) -> None:
        self._flags: set[str] = set()

    @property
    @abstractmethod
    def shape(self) -> tuple[int, int]:
        """Return (n_out, n_in)."""
        ...

    @property
    def dtype(self) -> Any:
        return np.float64

    @abstractmethod
    def to_dense(self) -> Array:
        """Return dense array representation of the operator."""
        ...

    def _check_square(self) -> None:
        """ Throw error if operator is not square """
        n_out, n_in = self.shape
        if n_out != n_in:
            raise np.linalg.LinAlgError(f"Linear operator is not square. Has shape ({n_out}, {n_in})")

    # ---- Numeric defaults; subclasses may override for speed ----
    def matvec(self, x: ArrayLike) -> Array:
        """Return A @ x for x shape (n_in,) -> (n_out,)."""
        x = _ensure_vector(x, length=self.shape[1])
        return self.to_dense() @ x

    def solve(self, b: ArrayLike) -> Array:
        """Solve A x = b for b of shape (n,) or (n, k); default uses dense fallback."""
        self._check_square()
        return np.linalg.solve(self.to_dense(), np.asarray(b, dtype=float))

    def cholesky(self, lower: bool = True) -> TriangularLinOp:
        """Return triangular factor L (lower) or L.T (upper) with A = L @ L.T."""
        self._check_square()
        try:
            L = cholesky(self.to_dense(), lower=lower)
        except np.linalg.LinAlgError as e:
            raise NonPositiveDefiniteError(
                "Cholesky factorization failed: matrix is not positive definite.",
                details={"shape": self.shape},
            ) from e
        return TriangularLinOp(L, lower=lower, copy=False)

    def diag(self) -> Array:
        """Return diagonal of operator; default uses dense fallback."""
        return np.diag(self.to_dense()).copy()

    def logdet(self) -> float:
        """Return log determinant; raises if the determinant is not positive."""
        self._check_square()
        sign, log_det = np.linalg.slogdet(self.to_dense())
        if sign <= 0:
            raise np.linalg.LinAlgError("Log-determinant undefined: matrix has non-positive determinant.")
        return float(log_det)

    def trace(self) -> float:
        self._check_square()
        return float(np.sum(self.diag()))

    # ---- Flags API ----
    def add_flag(self, flag: str) -> None:
        """Attach a semantic flag (must be one of ALLOWED_FLAGS)."""
        if flag not in ALLOWED_FLAGS:
            raise ValueError(f"Unknown flag {flag!r}. Allowed: {sorted(ALLOWED_FLAGS)}")
        self._flags.add(flag)

    def remove_flag(self, flag: str) -> None:
        """Remove an attached flag (no-op if missing)."""
        self._flags.discard(flag)

    def has_flag(self, flag: str) -> bool:
        return flag in self._flags

    @property
    def flags(self) -> FrozenSet[str]:
        """Return frozenset of current flags (read-only view)."""
        return frozenset(self._flags)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(shape={self.shape})"


# ---- Concrete linear operator subclasses ----

class DenseLinOp(LinOp):
    """Dense square operator backed by a numpy array."""

    def __init__(self, arr: ArrayLike, copy: bool = True) -> None:
        super().__init__()
        self.array = _ensure_square_matrix(arr, copy=copy)
        self.add_flag("dense")
        if np.array_equal(self.array, self.array.T):
            self.add_flag("symmetric")

    @property
    def shape(self) -> tuple[int, int]:
        return self.array.shape

    def to_dense(self) -> Array:
        return self.array


class TriangularLinOp(LinOp):
    """Triangular operator, typically a Cholesky factor.

    The stored matrix `tri` is lower triangular if `lower` is True and upper
    triangular otherwise.
    """

    def __init__(self, tri: ArrayLike, *, lower: bool = True, copy: bool = True) -> None:
        super().__init__()
        self.tri = _ensure_square_matrix(tri, copy=copy)
        self.lower = bool(lower)
        self.add_flag("triangular_lower" if self.lower else "triangular_upper")

    @property
    def shape(self) -> tuple[int, int]:
        return self.tri.shape

    @property
    def T(self) -> TriangularLinOp:
        return TriangularLinOp(self.tri.T, lower=not self.lower)

    def matvec(self, x: ArrayLike) -> Array:
        x = _ensure_vector(x, length=self.shape[1])
        return self.tri @ x

    def to_dense(self) -> Array:
        return np.array(self.tri)

    def solve(self, b: ArrayLike, *, trans: int = 0) -> Array:
        """Solve L x = b (or L.T x = b with trans=1) by substitution."""
        return solve_triangular(self.tri, np.asarray(b, dtype=float),
                                lower=self.lower, trans=trans)

    def inverse(self) -> TriangularLinOp:
        """Return the inverse factor, itself triangular of the same kind."""
        n = self.shape[0]
        inv = solve_triangular(self.tri, np.eye(n), lower=self.lower)
        return TriangularLinOp(inv, lower=self.lower, copy=False)

    def logdet(self) -> float:
        d = np.diag(self.tri)
        if np.any(d <= 0):
            raise np.linalg.LinAlgError("Non-positive diagonal entries; logdet undefined.")
        return float(np.sum(np.log(d)))


LinOpLike: TypeAlias = LinOp | ArrayLike


def _as_linear_operator(A: LinOpLike) -> LinOp:
    """Return `A` if it is a LinOp, otherwise wrap it as a DenseLinOp."""
    if isinstance(A, LinOp):
        return A
    return DenseLinOp(A, copy=False)
