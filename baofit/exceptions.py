"""
Exception hierarchy for baofit.

Every error raised by the package derives from `BaofitError`, so a
resampling driver can skip a single bad trial with one `except` clause
while letting programming errors (plain `TypeError`, `ValueError` from
argument checks) propagate.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import numpy as np


class BaofitError(Exception):
    """Base exception for all baofit errors.

    Args:
        message: primary error message.
        details: optional context (indices, shapes, ...) appended to the
            string representation.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} (Details: {details_str})"


class ShapeMismatchError(BaofitError, ValueError):
    """Datasets or matrices with incompatible active-bin sets were combined."""


class InactiveBinError(BaofitError, LookupError):
    """A bin that has not been assigned a data value was read or written."""


class NonPositiveDefiniteError(BaofitError, np.linalg.LinAlgError):
    """Cholesky factorization failed during an on-demand inversion.

    Callers performing data-quality checks should catch this and report the
    offending dataset rather than abort the whole run.
    """


class InvalidStateError(BaofitError, RuntimeError):
    """An object was used in a way its current lifecycle state forbids."""


class BinningError(BaofitError, ValueError):
    """A coordinate value does not map onto any bin of an axis."""


class ConfigurationError(BaofitError, ValueError):
    """Invalid configuration value."""


class DataFormatError(BaofitError, ValueError):
    """Badly formatted input file."""


class FitError(BaofitError):
    """A fit of one (resampled) dataset did not produce a valid minimum."""
