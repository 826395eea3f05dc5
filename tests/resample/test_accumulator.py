# tests/resample/test_accumulator.py
import numpy as np
import pytest
from numpy.testing import assert_allclose

from baofit.data.correlation import ComovingCorrelationData
from baofit.exceptions import InvalidStateError, ShapeMismatchError
from baofit.linalg import covariance as covariance_module
from baofit.resample.accumulator import AccumulatorState, ResampledAccumulator

SIGMA2 = 2.5


@pytest.fixture
def iid_samples(make_line_data):
    """Two samples with covariance sigma^2 * I."""
    cov = SIGMA2 * np.eye(3)
    return make_line_data([1.0, 2.0, 3.0], cov), make_line_data([3.0, 2.0, 1.0], cov)


def test_single_sample_is_reproduced(make_line_data, spd):
    sample = make_line_data([1.0, -1.0, 0.5, 2.0], spd)
    acc = ResampledAccumulator()
    acc.add(sample)
    result = acc.finalize()
    assert_allclose(result.data_vector(), sample.data_vector(), rtol=1e-9)
    assert_allclose(result.covariance.covariance(), spd, rtol=1e-9)
    assert acc.state is AccumulatorState.FINALIZED


def test_two_independent_samples(iid_samples):
    for fix in (True, False):
        acc = ResampledAccumulator()
        for s in iid_samples:
            acc.add(s)
        result = acc.finalize(fix_covariance=fix)
        assert_allclose(result.data_vector(), [2.0, 2.0, 2.0])
        assert_allclose(result.covariance.covariance(), SIGMA2 / 2 * np.eye(3), rtol=1e-12)


def test_repeated_sample(iid_samples):
    sample = iid_samples[0]
    acc = ResampledAccumulator()
    acc.add(sample, repeat=2)
    result = acc.finalize()
    # a sample added twice carries no more information than once
    assert_allclose(result.data_vector(), sample.data_vector())
    assert_allclose(result.covariance.covariance(), SIGMA2 * np.eye(3), rtol=1e-12)

    acc.reset()
    acc.add(sample, repeat=2)
    naive = acc.finalize(fix_covariance=False)
    assert_allclose(naive.covariance.covariance(), SIGMA2 / 2 * np.eye(3), rtol=1e-12)


def test_general_weights(make_line_data, make_spd, rng):
    covs = [make_spd(3) for _ in range(3)]
    values = [rng.normal(size=3) for _ in range(3)]
    repeats = [2, 0, 1]
    acc = ResampledAccumulator()
    for v, c, n in zip(values, covs, repeats):
        acc.add(make_line_data(v, c), repeat=n)
    assert acc.total_weight == 3
    result = acc.finalize()

    icovs = [np.linalg.inv(c) for c in covs]
    lin = sum(n * ic for n, ic in zip(repeats, icovs))
    sq = sum(n * n * ic for n, ic in zip(repeats, icovs))
    tilde = np.linalg.inv(lin)
    expected_data = tilde @ sum(n * ic @ v for n, ic, v in zip(repeats, icovs, values))
    assert_allclose(result.data_vector(), expected_data, rtol=1e-8)
    assert_allclose(result.covariance.covariance(), tilde @ sq @ tilde, rtol=1e-8)


def test_weighted_sample(make_line_data, spd, rng):
    d = rng.normal(size=4)
    sample = make_line_data(np.linalg.solve(spd, d), spd, weighted=True)
    other = make_line_data(d, spd)
    acc = ResampledAccumulator()
    acc.add(sample, repeat=2)
    acc.add(other)
    result = acc.finalize()
    # both samples carry the same data, so the combination reproduces it
    assert_allclose(result.data_vector(), d, rtol=1e-8, atol=1e-10)
    # repeats (2, 1) give C~ = C/3 and C^^-1 = 5 C^-1
    assert_allclose(result.covariance.covariance(), 5.0 / 9.0 * spd, rtol=1e-8)
    # the weighted sample keeps its stored C^-1 d
    assert_allclose(sample.weighted_data_vector(), np.linalg.solve(spd, d))


def test_one_inversion_per_added_sample(make_line_data, make_spd, rng, monkeypatch):
    covs = [make_spd(3) for _ in range(3)]
    values = [rng.normal(size=3) for _ in range(3)]
    repeats = (3, 1, 2)
    stored_cov = [make_line_data(v, c) for v, c in zip(values, covs)]
    stored_icov = [make_line_data(v, c) for v, c in zip(values, covs)]
    for s in stored_cov:
        s.compress()
    for s in stored_icov:
        s.compress(store_inverse=True)

    calls = []
    invert = covariance_module._invert_packed

    def counting_invert(packed):
        calls.append(1)
        return invert(packed)

    monkeypatch.setattr(covariance_module, "_invert_packed", counting_invert)
    acc = ResampledAccumulator()
    for s, n in zip(stored_cov, repeats):
        acc.add(s, repeat=n)
    assert len(calls) == 3
    expected = acc.finalize()

    calls.clear()
    acc.reset()
    for s, n in zip(stored_icov, repeats):
        acc.add(s, repeat=n)
    assert calls == []
    result = acc.finalize()
    assert_allclose(result.data_vector(), expected.data_vector(), rtol=1e-8)


def test_samples_are_not_modified(make_line_data, spd):
    sample = make_line_data([1.0, 2.0, 3.0, 4.0], spd)
    sample.compress()
    acc = ResampledAccumulator()
    acc.add(sample, repeat=3)
    acc.finalize()
    assert sample.is_compressed()
    assert not sample.covariance.has_inverse_covariance()
    assert_allclose(sample.data_vector(), [1.0, 2.0, 3.0, 4.0])


def test_result_keeps_class_and_observables(make_comoving_data):
    sample = make_comoving_data(np.arange(8.0), np.eye(8), r_min=50.0, r_max=150.0)
    acc = ResampledAccumulator()
    acc.add(sample.copy(), repeat=2)
    result = acc.finalize()
    assert type(result) is ComovingCorrelationData
    assert result.is_finalized()
    assert result.is_covariance_modifiable()
    assert list(result.indices) == list(sample.indices)
    assert_allclose(result.observables()[0], sample.observables()[0])
    assert (result.r_min, result.r_max) == (50.0, 150.0)


def test_reset_allows_reuse(iid_samples):
    acc = ResampledAccumulator()
    acc.add(iid_samples[0])
    acc.finalize()
    acc.reset()
    assert acc.state is AccumulatorState.EMPTY
    assert acc.total_weight == 0
    acc.add(iid_samples[1])
    assert_allclose(acc.finalize().data_vector(), iid_samples[1].data_vector())


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

def test_finalize_errors(iid_samples):
    acc = ResampledAccumulator()
    with pytest.raises(InvalidStateError):
        acc.finalize()
    acc.add(iid_samples[0], repeat=0)
    assert acc.state is AccumulatorState.ACCUMULATING
    with pytest.raises(InvalidStateError):
        acc.finalize()
    acc.add(iid_samples[1])
    acc.finalize()
    with pytest.raises(InvalidStateError):
        acc.finalize()
    with pytest.raises(InvalidStateError):
        acc.add(iid_samples[0])


@pytest.mark.parametrize("repeat, error", [(-1, ValueError), (1.5, TypeError), ("2", TypeError)])
def test_bad_repeat(iid_samples, repeat, error):
    acc = ResampledAccumulator()
    with pytest.raises(error):
        acc.add(iid_samples[0], repeat=repeat)
    assert acc.state is AccumulatorState.EMPTY


def test_numpy_integer_repeat(iid_samples):
    acc = ResampledAccumulator()
    acc.add(iid_samples[0], repeat=np.int64(2))
    assert acc.total_weight == 2


def test_unfinalized_sample(make_line_data):
    acc = ResampledAccumulator()
    with pytest.raises(InvalidStateError):
        acc.add(make_line_data([1.0], np.eye(1), finalize=False))


def test_shape_mismatch(make_line_data):
    acc = ResampledAccumulator()
    acc.add(make_line_data([1.0, 2.0], np.eye(2)))
    with pytest.raises(ShapeMismatchError):
        acc.add(make_line_data([1.0, 2.0], np.eye(2), indices=[0, 2]))
    with pytest.raises(ShapeMismatchError):
        acc.add(make_line_data([1.0, 2.0, 3.0], np.eye(3)), repeat=0)
