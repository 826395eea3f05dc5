# tests/data/test_binned_data.py
import numpy as np
import pytest
from numpy.testing import assert_allclose

from baofit.binning import UniformBinning, UniformSampling
from baofit.data.binned_data import BinnedData, SharedBinnedData
from baofit.exceptions import (
    BinningError,
    InactiveBinError,
    InvalidStateError,
    ShapeMismatchError,
)


# -----------------------------------------------------------------------------
# Indexing
# -----------------------------------------------------------------------------

def test_global_index_is_row_major():
    axes = (UniformBinning(0.0, 4.0, 4), UniformBinning(0.0, 1.0, 2), UniformSampling(2.0, 3.0, 3))
    data = BinnedData(axes)
    assert data.n_bins_total == 24
    index = data.get_index((2.5, 0.7, 3.0))
    assert index == np.ravel_multi_index((2, 1, 2), (4, 2, 3))
    assert data.get_bin_indices(index) == (2, 1, 2)
    assert_allclose(data.get_bin_centers(index), [2.5, 0.75, 3.0])
    assert_allclose(data.get_bin_widths(index), [1.0, 0.5, 0.5])
    with pytest.raises(ValueError):
        data.get_index((2.5, 0.7))
    with pytest.raises(BinningError):
        data.get_index((9.0, 0.7, 3.0))


def test_offsets_are_ranks_in_global_index(line_axes):
    data = BinnedData(line_axes)
    for index, value in [(4, 40.0), (1, 10.0), (3, 30.0)]:
        data.set_data(index, value)
    assert data.n_bins_with_data == 3
    assert list(data.indices) == [1, 3, 4]
    assert [data.offset_of(i) for i in (1, 3, 4)] == [0, 1, 2]
    assert data.index_at_offset(2) == 4
    assert_allclose(data.data_vector(), [10.0, 30.0, 40.0])
    assert data.get_data(3) == 30.0
    assert 3 in data and 2 not in data
    with pytest.raises(InactiveBinError):
        data.offset_of(2)
    with pytest.raises(InactiveBinError):
        data.get_data(0)
    with pytest.raises(BinningError):
        data.set_data(6, 1.0)


def test_set_data_twice_fails(line_axes):
    data = BinnedData(line_axes)
    data.set_data(1, 1.0)
    with pytest.raises(InvalidStateError):
        data.set_data(1, 2.0)
    assert data.get_data(1) == 1.0


def test_cannot_mix_weighted_and_unweighted(line_axes):
    data = BinnedData(line_axes)
    data.set_data(0, 1.0, weighted=True)
    with pytest.raises(InvalidStateError):
        data.set_data(1, 1.0)


def test_covariance_freezes_active_bins(line_axes):
    data = BinnedData(line_axes)
    data.set_data(0, 1.0)
    data.set_data(2, 1.0)
    data.set_covariance(0, 0, 1.0)
    with pytest.raises(InvalidStateError):
        data.set_data(1, 1.0)
    with pytest.raises(InactiveBinError):
        data.set_covariance(0, 1, 0.1)
    with pytest.raises(InactiveBinError):
        data.get_covariance(1, 1)


# -----------------------------------------------------------------------------
# Finalize
# -----------------------------------------------------------------------------

def test_finalize_requires_data_and_covariance(line_axes):
    data = BinnedData(line_axes)
    with pytest.raises(InvalidStateError):
        data.finalize()
    data.set_data(0, 1.0)
    with pytest.raises(InvalidStateError):
        data.finalize()
    data.set_covariance(0, 0, 2.0)
    data.finalize()
    assert data.is_finalized()
    with pytest.raises(InvalidStateError):
        data.finalize()


def test_mutation_after_finalize_fails(make_line_data):
    data = make_line_data([1.0, 2.0], np.eye(2))
    with pytest.raises(InvalidStateError):
        data.set_data(0, 5.0)
    with pytest.raises(InvalidStateError):
        data.set_data(4, 5.0)
    with pytest.raises(InvalidStateError):
        data.set_covariance(0, 0, 5.0)
    with pytest.raises(InvalidStateError):
        data.set_inverse_covariance(0, 0, 5.0)
    assert data.get_data(0) == 1.0
    assert data.get_covariance(0, 0) == 1.0


def test_finalize_clamps_zero_diagonal(make_line_data):
    data = make_line_data([1.0, 2.0], np.diag([1.0, 0.0]))
    assert data.get_covariance(1, 1) == 1e40
    idata = make_line_data([1.0, 2.0], np.diag([0.0, 1.0]), inverse=True)
    assert idata.get_inverse_covariance(0, 0) == 1e-30


def test_weighted_data_is_unweighted_with_final_covariance(make_line_data, spd, rng):
    d = rng.normal(size=4)
    wdata = np.linalg.solve(spd, d)
    data = make_line_data(wdata, spd, weighted=True)
    assert_allclose(data.weighted_data_vector(), wdata)
    assert_allclose(data.data_vector(), d, rtol=1e-9, atol=1e-12)
    # un-weighting happens once
    assert_allclose(data.data_vector(), d, rtol=1e-9, atol=1e-12)
    assert_allclose(data.weighted_data_vector(), wdata, rtol=1e-9, atol=1e-12)


def test_chi_square(make_line_data, spd, rng):
    d = rng.normal(size=4)
    pred = rng.normal(size=4)
    data = make_line_data(d, spd)
    delta = d - pred
    assert data.chi_square(pred) == pytest.approx(delta @ np.linalg.solve(spd, delta))
    with pytest.raises(ValueError):
        data.chi_square(np.zeros(3))


# -----------------------------------------------------------------------------
# Prune and compress
# -----------------------------------------------------------------------------

def test_prune_preserves_retained_entries(make_line_data, make_spd):
    M = make_spd(5)
    data = make_line_data(np.arange(5.0), M)
    keep = [1, 3, 4]
    data.prune(keep)
    assert list(data.indices) == keep
    assert [data.offset_of(i) for i in keep] == [0, 1, 2]
    assert_allclose(data.data_vector(), [1.0, 3.0, 4.0])
    for i in keep:
        for j in keep:
            assert data.get_covariance(i, j) == pytest.approx(M[i, j])
    with pytest.raises(InactiveBinError):
        data.get_covariance(0, 0)

    # pruning to the same set again changes nothing
    cov_before = data.covariance
    data.prune(keep)
    assert data.covariance is cov_before
    assert_allclose(data.data_vector(), [1.0, 3.0, 4.0])


def test_prune_selects_from_covariance_of_inverse_input(make_line_data, spd):
    data = make_line_data(np.zeros(4), np.linalg.inv(spd), inverse=True)
    data.prune([0, 2])
    assert_allclose(data.covariance.covariance(), spd[np.ix_([0, 2], [0, 2])], rtol=1e-9, atol=1e-12)


def test_prune_unweights_data_first(make_line_data, spd, rng):
    d = rng.normal(size=4)
    data = make_line_data(np.linalg.solve(spd, d), spd, weighted=True)
    data.prune([1, 2])
    assert_allclose(data.data_vector(), d[[1, 2]], rtol=1e-9, atol=1e-12)


def test_prune_errors(make_line_data):
    data = make_line_data([1.0, 2.0, 3.0], np.eye(3))
    with pytest.raises(InactiveBinError):
        data.prune([0, 5])
    data.compress()
    assert data.is_compressed()
    with pytest.raises(InvalidStateError):
        data.prune([0, 1])


def test_compressed_dataset_is_readable(make_line_data, spd):
    data = make_line_data(np.ones(4), spd)
    data.compress()
    assert data.get_covariance(0, 1) == pytest.approx(spd[0, 1])
    assert data.get_inverse_covariance(0, 1) == pytest.approx(np.linalg.inv(spd)[0, 1])
    assert data.chi_square(np.zeros(4)) == pytest.approx(np.ones(4) @ np.linalg.solve(spd, np.ones(4)))


def test_compress_storing_inverse(make_line_data, spd):
    data = make_line_data(np.arange(4.0), spd)
    data.compress(store_inverse=True)
    assert data.is_compressed()
    assert data.covariance.representation == "inverse"
    assert_allclose(data.covariance.inverse(), np.linalg.inv(spd), rtol=1e-9)
    assert_allclose(data.covariance.covariance(), spd, rtol=1e-9)
    assert_allclose(data.data_vector(), np.arange(4.0))
    assert_allclose(data.weighted_data_vector(), np.linalg.solve(spd, np.arange(4.0)), rtol=1e-9)


# -----------------------------------------------------------------------------
# Combination
# -----------------------------------------------------------------------------

def test_iadd_combines_information(make_line_data):
    a = make_line_data([1.0, 2.0], np.diag([1.0, 4.0]))
    b = make_line_data([3.0, 4.0], np.diag([1.0, 4.0]))
    a += b
    assert_allclose(a.data_vector(), [2.0, 3.0])
    assert_allclose(a.covariance.covariance(), np.diag([0.5, 2.0]))


def test_iadd_weights_by_precision(make_line_data):
    a = make_line_data([0.0], [[1.0]])
    b = make_line_data([3.0], [[2.0]])
    a += b
    # (0/1 + 3/2) / (1 + 1/2)
    assert a.get_data(0) == pytest.approx(1.0)
    assert a.get_covariance(0, 0) == pytest.approx(2.0 / 3.0)


def test_iadd_empty_left_adopts_shape(make_line_data, line_axes, spd):
    b = make_line_data([1.0, 2.0, 3.0, 4.0], spd)
    b.compress()
    a = BinnedData(line_axes)
    a += b
    assert a.is_finalized()
    assert list(a.indices) == list(b.indices)
    assert_allclose(a.data_vector(), [1.0, 2.0, 3.0, 4.0], rtol=1e-9)
    assert_allclose(a.covariance.covariance(), spd, rtol=1e-9)
    # b is untouched
    assert b.is_compressed()


def test_iadd_shape_mismatch(make_line_data):
    a = make_line_data([1.0, 2.0], np.eye(2))
    b = make_line_data([1.0, 2.0], np.eye(2), indices=[0, 3])
    with pytest.raises(ShapeMismatchError):
        a += b
    other_axes = BinnedData((UniformBinning(0.0, 1.0, 2),))
    c = make_line_data([1.0], np.eye(1))
    with pytest.raises(ShapeMismatchError):
        other_axes += c


def test_iadd_requires_finalized(make_line_data):
    a = make_line_data([1.0], np.eye(1))
    b = make_line_data([1.0], np.eye(1), finalize=False)
    with pytest.raises(InvalidStateError):
        a += b


# -----------------------------------------------------------------------------
# Ownership
# -----------------------------------------------------------------------------

def test_copy_shares_covariance_until_detached(make_line_data, spd):
    data = make_line_data(np.arange(4.0), spd)
    shared = data.copy()
    assert isinstance(shared, SharedBinnedData)
    assert shared.covariance is data.covariance
    assert not shared.is_covariance_modifiable()
    assert_allclose(shared.data_vector(), data.data_vector())
    with pytest.raises(InvalidStateError):
        shared.compress()
    with pytest.raises(InvalidStateError):
        shared += data

    owned = shared.detach()
    assert not isinstance(owned, SharedBinnedData)
    assert type(owned) is BinnedData
    assert owned.covariance is not data.covariance
    assert_allclose(owned.covariance.covariance(), spd)
    owned += data
    assert_allclose(data.covariance.covariance(), spd)


def test_copy_has_independent_data(make_line_data):
    data = make_line_data([1.0, 2.0], np.eye(2))
    shared = data.copy()
    shared._data[0] = 100.0
    assert data.get_data(0) == 1.0


def test_clone(make_line_data, spd):
    data = make_line_data(np.arange(4.0), spd)
    empty = data.clone(binning_only=True)
    assert type(empty) is BinnedData
    assert empty.n_bins_with_data == 0
    assert empty.axes == data.axes
    assert not empty.is_finalized()

    full = data.clone()
    assert full.is_finalized()
    assert full.covariance is not data.covariance
    assert_allclose(full.data_vector(), data.data_vector())
