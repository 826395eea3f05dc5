# tests/linalg/test_utils.py
import numpy as np
import pytest
from numpy.testing import assert_allclose

from baofit.linalg import utils as U


def test_packed_size_and_dimension():
    for n in range(6):
        assert U.packed_dimension(U.packed_size(n)) == n
    assert U.packed_size(3) == 6
    with pytest.raises(ValueError):
        U.packed_dimension(4)
    with pytest.raises(ValueError):
        U.packed_size(-1)


def test_packed_index_order_is_column_major_upper():
    # (row, col) with row <= col, column by column
    expected = [(0, 0), (0, 1), (1, 1), (0, 2), (1, 2), (2, 2)]
    for k, (i, j) in enumerate(expected):
        assert U.packed_index(i, j) == k
        assert U.packed_index(j, i) == k
    with pytest.raises(IndexError):
        U.packed_index(0, 3, n=3)


def test_pack_unpack(spd):
    p = U.pack_symmetric(spd)
    assert p.shape == (U.packed_size(spd.shape[0]),)
    assert_allclose(U.unpack_symmetric(p), spd, rtol=0, atol=1e-12)
    n = spd.shape[0]
    for i in range(n):
        for j in range(n):
            assert p[U.packed_index(i, j)] == pytest.approx(spd[i, j])


def test_pack_symmetrizes_by_default():
    A = np.array([[1.0, 2.0], [4.0, 3.0]])
    assert_allclose(U.pack_symmetric(A), [1.0, 3.0, 3.0])
    assert_allclose(U.pack_symmetric(A, symmetrize=False), [1.0, 2.0, 3.0])


def test_packed_diagonal_offsets():
    assert list(U.packed_diagonal_offsets(4)) == [0, 2, 5, 9]


def test_packed_matvec(spd, rng):
    x = rng.normal(size=spd.shape[0])
    assert_allclose(U.packed_matvec(U.pack_symmetric(spd), x), spd @ x, rtol=1e-12, atol=1e-12)
    with pytest.raises(ValueError):
        U.packed_matvec(U.pack_symmetric(spd), np.ones(spd.shape[0] + 1))


def test_select_packed(spd):
    offsets = np.array([0, 2, 3])
    sub = U.unpack_symmetric(U.select_packed(U.pack_symmetric(spd), offsets))
    assert_allclose(sub, spd[np.ix_(offsets, offsets)], rtol=0, atol=1e-12)


def test_clamp_zero_diagonal():
    p = U.pack_symmetric(np.diag([1.0, 0.0, 2.0]))
    out = U.clamp_zero_diagonal(p, 1e40)
    assert out is not p
    assert_allclose(np.diag(U.unpack_symmetric(out)), [1.0, 1e40, 2.0])
    # off-diagonal zeros are left alone
    assert U.unpack_symmetric(out)[0, 1] == 0.0
    assert p[U.packed_index(1, 1)] == 0.0
