# data/correlation.py
"""
Binned correlation-function measurements.

Each active bin carries three observables used to select bins and to
evaluate models: the comoving separation r (Mpc/h), the cosine mu of the
angle between the separation and the line of sight, and the redshift z.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections import defaultdict
from typing import Any, Protocol, Sequence

import numpy as np

from ..custom_types import Array
from ..array_backend.utils import _ensure_real_scalar
from ..binning import AbsBinning
from ..exceptions import InvalidStateError
from .binned_data import BinnedData

logger = logging.getLogger(__name__)

__all__ = [
    "Cosmology",
    "AbsCorrelationData",
    "ComovingCorrelationData",
    "QuasarCorrelationData",
    "ARCMIN_TO_RAD",
]

ARCMIN_TO_RAD = np.pi / (60.0 * 180.0)


class Cosmology(Protocol):
    """Distance functions required to map observed coordinates to (r, mu)."""

    def line_of_sight_comoving_distance(self, z: float) -> float:
        ...

    def transverse_comoving_scale(self, z: float) -> float:
        ...


class AbsCorrelationData(BinnedData):
    """Correlation-function data over three axes with final cuts on r.

    Args:
        axes: three binnings.
        r_min, r_max: bins are kept by `apply_final_cuts` if r_min <= r < r_max.
    """

    def __init__(self, axes: Sequence[AbsBinning], *, r_min: float = 0.0, r_max: float = np.inf) -> None:
        if len(axes) != 3:
            raise ValueError(f"{self.__class__.__name__}: expected 3 axes, got {len(axes)}.")
        super().__init__(axes)
        self.set_final_cuts(r_min, r_max)

    def _reset_contents(self) -> None:
        super()._reset_contents()
        self._lookup: tuple[Array, Array, Array] | None = None

    def _options(self) -> dict:
        return {"r_min": self.r_min, "r_max": self.r_max}

    def set_final_cuts(self, r_min: float, r_max: float) -> None:
        r_min = float(r_min)
        r_max = float(r_max)
        if not r_min < r_max:
            raise ValueError(f"Invalid final cuts: r_min={r_min} must be less than r_max={r_max}.")
        self.r_min = r_min
        self.r_max = r_max

    # ---- Observables ----

    @abstractmethod
    def _observables(self, index: int) -> tuple[float, float, float]:
        """(r, mu, z) at the center of global bin `index`."""
        ...

    def _lookup_or_compute(self, index: int, which: int) -> float:
        if self._lookup is not None:
            return float(self._lookup[which][self.offset_of(index)])
        return self._observables(index)[which]

    def get_radius(self, index: int) -> float:
        return self._lookup_or_compute(index, 0)

    def get_cos_angle(self, index: int) -> float:
        return self._lookup_or_compute(index, 1)

    def get_redshift(self, index: int) -> float:
        return self._lookup_or_compute(index, 2)

    def observables(self) -> tuple[Array, Array, Array]:
        """Arrays (r, mu, z) over the active bins, in offset order."""
        if self._lookup is not None:
            return tuple(a.copy() for a in self._lookup)
        values = np.array([self._observables(i) for i in self._index], dtype=float).reshape(-1, 3)
        return values[:, 0], values[:, 1], values[:, 2]

    def _cache_observables(self) -> None:
        self._lookup = None
        self._lookup = self.observables()

    def _on_prune(self, offsets: Array) -> None:
        if self._lookup is not None:
            self._lookup = tuple(a[offsets] for a in self._lookup)

    def _copy_derived_state(self, source: BinnedData) -> None:
        if isinstance(source, AbsCorrelationData) and source._lookup is not None and source._index == self._index:
            self._lookup = tuple(a.copy() for a in source._lookup)
        else:
            self._cache_observables()

    # ---- Lifecycle ----

    def finalize(self, apply_cuts: bool = True) -> None:
        """Fix the shape and cache the observables, then optionally apply the final cuts.

        Samples that will be combined later should be finalized with
        apply_cuts=False and the cuts applied to the combination.
        """
        super().finalize()
        self._cache_observables()
        if apply_cuts:
            self.apply_final_cuts()

    def _final_keep(self) -> list[int]:
        r, _, _ = self.observables()
        mask = (r >= self.r_min) & (r < self.r_max)
        return [index for index, ok in zip(self._index, mask) if ok]

    def _before_final_cuts(self) -> None:
        """Hook run by `apply_final_cuts` before bins are removed."""

    def apply_final_cuts(self) -> None:
        if not self._finalized:
            raise InvalidStateError("apply_final_cuts: dataset is not finalized.")
        self._before_final_cuts()
        keep = self._final_keep()
        n_before = len(self._index)
        self.prune(keep)
        logger.info("Final cuts keep %d of %d bins", len(keep), n_before)


class ComovingCorrelationData(AbsCorrelationData):
    """Correlation data binned directly in (r, mu, z)."""

    def _observables(self, index: int) -> tuple[float, float, float]:
        r, mu, z = self.get_bin_centers(index)
        return float(r), float(mu), float(z)


class QuasarCorrelationData(AbsCorrelationData):
    """Lyman-alpha forest correlations binned in observed coordinates.

    The axes are the log-wavelength ratio ll = log(lambda2/lambda1) of a
    pixel pair, their angular separation in arcminutes, and redshift.

    Args:
        axes: (ll, separation, z) binnings.
        cosmology: object providing `line_of_sight_comoving_distance(z)` and
            `transverse_comoving_scale(z)`, both in Mpc/h.
        r_min, r_max: final cuts on r.
        ll_min: final cut ll >= ll_min on the bin center.
        fix_cov: if True, `apply_final_cuts` first adds the continuum-fitting
            term of `fix_covariance` to the covariance, unless it is already
            included. Combinations of corrected samples count as corrected.
        fix_cov_params: keyword arguments (k1, k2, c) for `fix_covariance`.
    """

    def __init__(self, axes: Sequence[AbsBinning], cosmology: Cosmology, *,
                 r_min: float = 0.0, r_max: float = np.inf, ll_min: float = 0.0,
                 fix_cov: bool = False, fix_cov_params: dict[str, float] | None = None) -> None:
        super().__init__(axes, r_min=r_min, r_max=r_max)
        for method in ("line_of_sight_comoving_distance", "transverse_comoving_scale"):
            if not callable(getattr(cosmology, method, None)):
                raise TypeError(f"QuasarCorrelationData: cosmology must provide {method}(z).")
        self.cosmology = cosmology
        self.ll_min = float(ll_min)
        self.fix_cov = bool(fix_cov)
        self.fix_cov_params = dict(fix_cov_params or {})

    def _reset_contents(self) -> None:
        super()._reset_contents()
        self._covariance_fixed = False

    def is_covariance_fixed(self) -> bool:
        """True once the continuum-fitting term is part of the covariance."""
        return self._covariance_fixed

    def _copy_derived_state(self, source: BinnedData) -> None:
        super()._copy_derived_state(source)
        if isinstance(source, QuasarCorrelationData):
            self._covariance_fixed = source._covariance_fixed

    def check_combinable(self, other: BinnedData) -> None:
        super().check_combinable(other)
        if isinstance(other, QuasarCorrelationData) and other._covariance_fixed != self._covariance_fixed:
            raise InvalidStateError(
                "Cannot combine datasets with and without the continuum-fitting covariance term.",
                details={"fixed": self._covariance_fixed, "other_fixed": other._covariance_fixed},
            )

    def _options(self) -> dict:
        return {
            **super()._options(),
            "cosmology": self.cosmology,
            "ll_min": self.ll_min,
            "fix_cov": self.fix_cov,
            "fix_cov_params": dict(self.fix_cov_params),
        }

    def transform(self, ll: float, sep: float, dsep: float, z: float) -> tuple[float, float]:
        """Map (ll, separation in arcmin, separation bin width, z) to (r, mu).

        The separation is replaced by its area-weighted mean over the bin,
        sep + dsep^2 / (12 sep).
        """
        ratio = np.exp(0.5 * ll)
        zp1 = z + 1.0
        z1 = zp1 / ratio - 1.0
        z2 = zp1 * ratio - 1.0
        dr_los = (self.cosmology.line_of_sight_comoving_distance(z2)
                  - self.cosmology.line_of_sight_comoving_distance(z1))
        swgt = sep + (dsep * dsep / 12.0) / sep
        dr_perp = self.cosmology.transverse_comoving_scale(z) * (swgt * ARCMIN_TO_RAD)
        r = float(np.hypot(dr_los, dr_perp))
        mu = abs(dr_los) / r
        return r, float(mu)

    def _observables(self, index: int) -> tuple[float, float, float]:
        centers = self.get_bin_centers(index)
        widths = self.get_bin_widths(index)
        z = float(centers[2])
        r, mu = self.transform(centers[0], centers[1], widths[1], z)
        return r, mu, z

    @staticmethod
    def _pkmarg(kmin: float, kmax: float, l1: float, l2: float) -> float:
        f1 = 1.0 if l1 == 0 else (np.sin(kmax * l1) - np.sin(kmin * l1)) / l1
        f2 = 1.0 if l2 == 0 else (np.sin(kmax * l2) - np.sin(kmin * l2)) / l2
        return float(f1 * f2)

    def fix_covariance(self, k1: float = 150.0, k2: float = 300.0, c: float = 1e-3) -> None:
        """Add the covariance induced by per-forest continuum fitting.

        For every pair of bins at the same (separation, z), adds
        c * (1 + pkmarg(0, k1) + pkmarg(k1, k2)) evaluated at the two ll values.
        Data stored as C^-1 d are converted to raw data first, using the
        covariance before the change. Each call adds the term again.
        """
        if not self.is_covariance_modifiable():
            raise InvalidStateError("fix_covariance: covariance is not modifiable.")
        k1, k2, c = _ensure_real_scalar(k1), _ensure_real_scalar(k2), _ensure_real_scalar(c)
        self._unweight()
        ll_axis = self._axes[0]
        groups: dict[tuple[int, int], list[tuple[int, float]]] = defaultdict(list)
        for offset, index in enumerate(self._index):
            ll_bin, sep_bin, z_bin = self.get_bin_indices(index)
            groups[(sep_bin, z_bin)].append((offset, ll_axis.center(ll_bin)))

        cov = self._covariance_for_write()
        n_updated = 0
        for members in groups.values():
            for a, (o1, ll1) in enumerate(members):
                for o2, ll2 in members[: a + 1]:
                    delta = c * (1.0 + self._pkmarg(0.0, k1, ll1, ll2) + self._pkmarg(k1, k2, ll1, ll2))
                    cov.set_covariance(o1, o2, cov.get_covariance(o1, o2) + delta)
                    n_updated += 1
        self._covariance_fixed = True
        logger.debug("fix_covariance updated %d covariance elements", n_updated)

    def _before_final_cuts(self) -> None:
        if not self.fix_cov or self._covariance_fixed:
            return
        if not self.is_covariance_modifiable():
            raise InvalidStateError(
                "apply_final_cuts: the continuum-fitting term needs a modifiable covariance; call detach() first."
            )
        self.fix_covariance(**self.fix_cov_params)

    def _final_keep(self) -> list[int]:
        keep = super()._final_keep()
        ll_axis = self._axes[0]
        return [index for index in keep if ll_axis.center(self.get_bin_indices(index)[0]) >= self.ll_min]
