from __future__ import annotations

import pytest
import torch

from meegbem.maths.block import Range, SymmetricBlockMatrix
from meegbem.maths.dense import BlockView, Matrix, MatrixSink
from meegbem.maths.symmatrix import SymMatrix


def test_range_basics():
    r = Range(2, 5)
    assert len(r) == 3
    assert 2 in r and 4 in r and 5 not in r
    assert r.intersects(Range(4, 8))
    assert not r.intersects(Range(5, 8))
    assert repr(r) == "[2,5)"
    with pytest.raises(ValueError):
        Range(3, 1)


def test_sinks_satisfy_protocol():
    assert isinstance(Matrix(2, 3), MatrixSink)
    assert isinstance(SymMatrix(2), MatrixSink)
    assert isinstance(SymmetricBlockMatrix(2), MatrixSink)
    assert isinstance(BlockView(Matrix(2), 1, 1), MatrixSink)


def test_matrix_get_set_add():
    M = Matrix(3, 4)
    M.set([0, 1], [1, 3], [1.0, 2.0])
    M.add([0, 0], [1, 1], 0.5)
    assert M[0, 1] == pytest.approx(2.0)
    assert M[1, 3] == pytest.approx(2.0)
    assert not M.symmetric
    with pytest.raises(IndexError):
        M.set([3], [0], [1.0])
    with pytest.raises(ValueError):
        M.add([0, 1], [0], [1.0])


def test_matrix_products():
    A = Matrix(data=torch.arange(6, dtype=torch.float64).reshape(2, 3))
    B = Matrix(data=torch.ones(3, 2, dtype=torch.float64))
    C = A * B
    assert isinstance(C, Matrix)
    assert torch.allclose(C.to_dense(), A.to_dense() @ B.to_dense())
    v = torch.ones(3, dtype=torch.float64)
    assert torch.allclose(A * v, A.to_dense().sum(dim=1))
    assert torch.allclose((2.0 * A).to_dense(), 2.0 * A.to_dense())
    assert A.transpose().shape == (3, 2)
    with pytest.raises(ValueError):
        A * A


def test_block_view_offsets_into_local_store():
    local = Matrix(2, 3)
    view = BlockView(local, 10, 20)
    view.set([10, 11], [20, 22], [1.0, 2.0])
    view.add([11], [22], [0.5])
    assert local[0, 0] == 1.0
    assert local[1, 2] == pytest.approx(2.5)
    assert float(view.get([11], [22])[0]) == pytest.approx(2.5)
    assert view[10, 20] == 1.0
    assert not view.symmetric

    sym_view = BlockView(SymMatrix(3), 5, 5)
    assert sym_view.symmetric
    sym_view[7, 5] = 3.0
    assert sym_view[5, 7] == 3.0


def test_block_matrix_routes_writes_to_blocks():
    M = SymmetricBlockMatrix(6)
    a, b = Range(0, 2), Range(2, 6)
    M.add_block(a, a)
    M.add_block(b, a)  # normalized to (a, b)
    assert M.has_block(a, b)
    assert isinstance(M.block(a, a), SymMatrix)
    assert isinstance(M.block(a, b), Matrix)

    M.add([3, 0], [1, 4], [2.0, 5.0])
    M.add([1], [3], [1.0])
    assert M[1, 3] == pytest.approx(3.0)
    assert M[3, 1] == pytest.approx(3.0)
    assert M[0, 4] == pytest.approx(5.0)
    # unallocated entries read as zero
    assert M[4, 4] == 0.0
    with pytest.raises(IndexError):
        M.set([4], [5], [1.0])


def test_block_matrix_rejects_overlapping_blocks():
    M = SymmetricBlockMatrix(6)
    M.add_block(Range(0, 3), Range(3, 6))
    with pytest.raises(ValueError):
        M.add_block(Range(1, 2), Range(4, 5))
    with pytest.raises(ValueError):
        M.add_block(Range(0, 4), Range(2, 6))
    # allocation is idempotent
    assert M.add_block(Range(3, 6), Range(0, 3)) is M.block(Range(0, 3), Range(3, 6))


def test_block_matrix_to_dense_matches_symmatrix():
    torch.manual_seed(0)
    A = torch.randn(5, 5, dtype=torch.float64)
    A = A + A.T
    M = SymmetricBlockMatrix(5)
    M.set_blocks([Range(0, 2), Range(2, 5)])
    r, c = torch.tril_indices(5, 5)
    M.set(r, c, A[r, c])
    assert torch.allclose(M.to_dense(), A)
    assert torch.allclose(M.to_symmatrix().to_dense(), A)
    assert torch.allclose(M.get([4, 0], [0, 4]), torch.stack([A[4, 0], A[0, 4]]))
