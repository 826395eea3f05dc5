import pytest
import numpy as np

from baofit.binning import UniformBinning, UniformSampling
from baofit.data.binned_data import BinnedData
from baofit.data.correlation import ComovingCorrelationData


def random_spd(rng, n, jitter=0.5):
    A = rng.normal(size=(n, n))
    return A @ A.T + jitter * n * np.eye(n)


class LinearCosmology:
    """Distances proportional to redshift, enough to exercise coordinate transforms."""

    def __init__(self, scale=3000.0):
        self.scale = scale

    def line_of_sight_comoving_distance(self, z):
        return self.scale * z

    def transverse_comoving_scale(self, z):
        return self.scale * z


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def spd(rng):
    return random_spd(rng, 4)


@pytest.fixture
def make_spd(rng):
    def _make(n, jitter=0.5):
        return random_spd(rng, n, jitter)
    return _make


@pytest.fixture
def cosmology():
    return LinearCosmology()


@pytest.fixture
def line_axes():
    """A single axis of 6 bins of width 1 on [0, 6)."""
    return (UniformBinning(0.0, 6.0, 6),)


@pytest.fixture
def comoving_axes():
    return (
        UniformBinning(0.0, 200.0, 4),
        UniformBinning(0.0, 1.0, 2),
        UniformSampling(2.25, 2.25, 1),
    )


def fill(data, values, cov, *, indices=None, inverse=False, weighted=False, finalize=True, **finalize_kwargs):
    """Populate `data` with `values` at `indices` and a dense (inverse) covariance."""
    indices = list(range(len(values))) if indices is None else list(indices)
    for index, value in zip(indices, values):
        data.set_data(index, value, weighted)
    setter = data.set_inverse_covariance if inverse else data.set_covariance
    for a, i in enumerate(indices):
        for b, j in enumerate(indices[: a + 1]):
            setter(i, j, cov[a, b])
    if finalize:
        data.finalize(**finalize_kwargs)
    return data


@pytest.fixture
def make_line_data(line_axes):
    def _make(values, cov, **kwargs):
        return fill(BinnedData(line_axes), values, np.asarray(cov, dtype=float), **kwargs)
    return _make


@pytest.fixture
def make_comoving_data(comoving_axes):
    def _make(values, cov, *, r_min=0.0, r_max=np.inf, **kwargs):
        data = ComovingCorrelationData(comoving_axes, r_min=r_min, r_max=r_max)
        return fill(data, values, np.asarray(cov, dtype=float), **kwargs)
    return _make


@pytest.fixture
def filler():
    return fill
