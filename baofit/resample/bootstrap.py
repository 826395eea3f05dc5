# resample/bootstrap.py
"""
Bootstrap resampling over independent sub-measurements (plates).

Each trial draws `size` samples with replacement, combines them with
`ResampledAccumulator` using the number of times each was drawn as its
repeat count, and fits the combined dataset. The spread of the fitted
parameters over trials estimates their uncertainties.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np

from ..custom_types import Array, ArrayLike, PRNG
from ..data.binned_data import BinnedData
from ..data.correlation import AbsCorrelationData
from ..exceptions import BaofitError
from .accumulator import ResampledAccumulator

logger = logging.getLogger(__name__)

__all__ = [
    "draw_repeat_counts",
    "BootstrapDistribution",
    "BootstrapTrial",
    "BootstrapResult",
    "run_bootstrap",
]


def draw_repeat_counts(n_samples: int, size: int, rng: PRNG) -> Array:
    """Number of times each of `n_samples` is picked in `size` uniform draws with replacement."""
    n_samples, size = int(n_samples), int(size)
    if n_samples <= 0 or size < 0:
        raise ValueError(f"draw_repeat_counts: invalid n_samples={n_samples} or size={size}.")
    picks = rng.integers(0, n_samples, size=size)
    return np.bincount(picks, minlength=n_samples)


class BootstrapDistribution:
    """Spread of fitted parameters over the valid trials of a bootstrap.

    Args:
        replicates: parameters of shape (n, d), or (n,) for a single parameter.
    """

    def __init__(self, replicates: ArrayLike):
        X = np.asarray(replicates, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2 or X.shape[0] < 1:
            raise ValueError(f"BootstrapDistribution needs replicates of shape (n, d) with n >= 1; got {X.shape}.")
        self.replicates = X
        self._mean = X.mean(axis=0)
        diff = X - self._mean
        # population covariance, no ddof correction
        self._cov = diff.T @ diff / X.shape[0]

    @property
    def n(self) -> int:
        return self.replicates.shape[0]

    @property
    def d(self) -> int:
        return self.replicates.shape[1]

    def mean(self) -> Array:
        return self._mean

    def cov(self) -> Array:
        return self._cov

    def std(self) -> Array:
        return np.sqrt(np.maximum(np.diag(self._cov), 0.0))

    def __repr__(self) -> str:
        return f"BootstrapDistribution(n={self.n}, d={self.d})"


@dataclass
class BootstrapTrial:
    """Outcome of one valid trial."""
    trial: int
    n_unique: int
    params: Array
    fval: float | None = None


@dataclass
class BootstrapResult:
    trials: list[BootstrapTrial] = field(default_factory=list)
    n_invalid: int = 0

    @property
    def n_valid(self) -> int:
        return len(self.trials)

    @property
    def distribution(self) -> BootstrapDistribution | None:
        """Distribution of the fitted parameters over valid trials, or None if there are none."""
        if not self.trials:
            return None
        return BootstrapDistribution(np.vstack([t.params for t in self.trials]))

    @property
    def fvals(self) -> Array:
        """Objective values at the minimum of the valid trials; NaN where the fit did not report one."""
        return np.array([np.nan if t.fval is None else t.fval for t in self.trials], dtype=float)


def _unpack_fit(outcome) -> tuple[Array, float | None]:
    """Split a fit outcome into parameters and the objective value, if reported."""
    if hasattr(outcome, "x") and hasattr(outcome, "fun"):
        return np.atleast_1d(np.asarray(outcome.x, dtype=float)), float(outcome.fun)
    return np.atleast_1d(np.asarray(outcome, dtype=float)), None


def run_bootstrap(samples: Sequence[BinnedData], fit: Callable[[BinnedData], ArrayLike],
                  n_trials: int, rng: PRNG, *, size: int = 0, fix_covariance: bool = True,
                  apply_cuts: bool = True) -> BootstrapResult:
    """Run `n_trials` bootstrap trials over finalized `samples`.

    Args:
        samples: finalized datasets with identical active bins. They are not
            modified.
        fit: maps a combined dataset to a vector of fitted parameters, or to
            a result with `x` and `fun` attributes (such as scipy's
            `OptimizeResult`), in which case `fun` is kept as the trial's
            objective value. It signals a failed fit by raising a
            `BaofitError` (e.g. `FitError`).
        n_trials: number of trials.
        rng: generator used to draw the samples of every trial.
        size: number of draws per trial; 0 means len(samples).
        fix_covariance: apply the covariance correction for repeated samples.
        apply_cuts: apply the final cuts of correlation datasets to each
            combined dataset before fitting.

    Returns:
        BootstrapResult. A trial that raises a `BaofitError` is counted as
        invalid and does not stop the remaining trials.
    """
    n_samples = len(samples)
    if n_samples == 0:
        raise ValueError("run_bootstrap: no samples.")
    n_trials = int(n_trials)
    if n_trials < 0:
        raise ValueError(f"run_bootstrap: n_trials must be non-negative; got {n_trials}.")
    size = int(size) or n_samples

    result = BootstrapResult()
    accumulator = ResampledAccumulator()
    for k in range(n_trials):
        counts = draw_repeat_counts(n_samples, size, rng)
        try:
            accumulator.reset()
            for sample, repeat in zip(samples, counts):
                if repeat > 0:
                    accumulator.add(sample, int(repeat))
            data = accumulator.finalize(fix_covariance)
            if apply_cuts and isinstance(data, AbsCorrelationData):
                data.apply_final_cuts()
            params, fval = _unpack_fit(fit(data))
        except BaofitError as e:
            result.n_invalid += 1
            logger.warning("Bootstrap trial %d is invalid: %s", k, e)
        else:
            n_unique = int(np.count_nonzero(counts))
            result.trials.append(BootstrapTrial(trial=k, n_unique=n_unique, params=params, fval=fval))
        if (k + 1) % 10 == 0:
            logger.info("Completed %d bootstrap trials (%d invalid)", k + 1, result.n_invalid)
    return result
