# likelihood.py
"""
Objective functions comparing a correlation model with binned data.

A correlation model is any callable ``model(r, mu, z, params)`` returning the
predicted correlation at arrays of separations r, cosines mu and redshifts
z. Minimizers are external: they only see `CorrelationLikelihood` as a
function of the parameter vector.
"""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np

from .custom_types import Array, ArrayLike
from .array_backend.utils import _ensure_real_scalar, _ensure_vector
from .data.binned_data import SharedBinnedData
from .data.correlation import AbsCorrelationData
from .exceptions import InvalidStateError

logger = logging.getLogger(__name__)

__all__ = [
    "CorrelationModel",
    "CorrelationLikelihood",
    "predict",
    "apply_theory_offsets",
]

CorrelationModel = Callable[[Array, Array, Array, Array], ArrayLike]


def predict(data: AbsCorrelationData, model: CorrelationModel, params: ArrayLike) -> Array:
    """Model prediction at every active bin of `data`, in offset order."""
    r, mu, z = data.observables()
    pred = np.asarray(model(r, mu, z, np.asarray(params, dtype=float)), dtype=float)
    return _ensure_vector(pred, length=data.n_bins_with_data, copy=False)


class CorrelationLikelihood:
    """Negative log-likelihood 0.5 * chi^2 / error_scale of a model given `data`.

    Args:
        data: finalized correlation data.
        model: callable ``model(r, mu, z, params)``.
        error_scale: scale factor for the errors; values above one inflate
            the errors, as used to trace contours at a given confidence level.
    """

    def __init__(self, data: AbsCorrelationData, model: CorrelationModel, error_scale: float = 1.0):
        if not isinstance(data, AbsCorrelationData):
            raise TypeError(f"CorrelationLikelihood requires correlation data; got {type(data).__name__}.")
        self.data = data
        self.model = model
        self.n_calls = 0
        self.set_error_scale(error_scale)

    def set_error_scale(self, scale: float) -> None:
        scale = _ensure_real_scalar(scale)
        if scale <= 0:
            raise ValueError(f"error_scale must be positive; got {scale}.")
        self.error_scale = scale

    def chi_square(self, params: ArrayLike) -> float:
        return self.data.chi_square(predict(self.data, self.model, params))

    def __call__(self, params: ArrayLike) -> float:
        chi2 = self.chi_square(params)
        if self.n_calls == 0:
            logger.debug("Initial chi-square %.6g over %d bins", chi2, self.data.n_bins_with_data)
        self.n_calls += 1
        return 0.5 * chi2 / self.error_scale


def apply_theory_offsets(data: AbsCorrelationData, model: CorrelationModel,
                         fit_params: ArrayLike, new_params: ArrayLike) -> SharedBinnedData:
    """Shift the data by model(new_params) - model(fit_params).

    Used to simulate a different hypothesis (for example no BAO peak) with
    the fluctuations of the observed data. Returns a copy sharing the
    covariance of `data`; `data` itself is unchanged.
    """
    if not data.is_finalized():
        raise InvalidStateError("apply_theory_offsets: dataset is not finalized.")
    offset = predict(data, model, new_params) - predict(data, model, fit_params)
    shifted = data.copy()
    shifted._unweight()
    shifted._data += offset
    return shifted
