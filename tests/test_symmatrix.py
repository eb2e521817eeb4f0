from __future__ import annotations

import math
from typing import Tuple

import numpy as np
import pytest
import torch

from meegbem.errors import FactorizationFailed
from meegbem.maths.dense import Matrix
from meegbem.maths.symmatrix import SymMatrix, packed_index


def _build_indefinite(n: int = 7, seed: int = 0) -> Tuple[SymMatrix, torch.Tensor]:
    """
    Random well-conditioned symmetric indefinite matrix.

    Returns
    -------
    S : SymMatrix
    A : (n, n) tensor
        Dense copy of S.
    """
    torch.manual_seed(seed)
    Q, _ = torch.linalg.qr(torch.randn(n, n, dtype=torch.float64))
    eig = torch.linspace(1.0, 3.0, n, dtype=torch.float64)
    eig[::2] *= -1.0
    A = Q @ torch.diag(eig) @ Q.T
    A = 0.5 * (A + A.T)
    return SymMatrix.from_dense(A), A


def _build_spd(n: int = 6, seed: int = 1) -> Tuple[SymMatrix, torch.Tensor]:
    torch.manual_seed(seed)
    B = torch.randn(n, n, dtype=torch.float64)
    A = B.T @ B + 0.5 * torch.eye(n, dtype=torch.float64)
    return SymMatrix.from_dense(A), A


def test_packed_index_matches_tril_order():
    n = 5
    r, c = torch.tril_indices(n, n)
    k = packed_index(r, c)
    assert torch.equal(k, torch.arange(n * (n + 1) // 2))
    # both halves resolve to the same cell
    assert torch.equal(packed_index(c, r), k)


def test_scalar_access_is_symmetric():
    S = SymMatrix(4)
    S[1, 3] = 2.5
    assert S[3, 1] == 2.5
    S[3, 1] = -1.0
    assert S[1, 3] == -1.0
    assert S.to_dense()[1, 3] == S.to_dense()[3, 1]


def test_vectorized_add_accumulates_duplicates():
    S = SymMatrix(3)
    S.add([0, 0, 2], [1, 1, 0], [1.0, 2.0, 4.0])
    assert S[1, 0] == pytest.approx(3.0)
    assert S[0, 2] == pytest.approx(4.0)
    S.set([1], [0], [7.0])
    assert S[0, 1] == pytest.approx(7.0)


def test_from_dense_rejects_asymmetric_input():
    A = torch.tensor([[1.0, 2.0], [0.0, 1.0]], dtype=torch.float64)
    with pytest.raises(ValueError):
        SymMatrix.from_dense(A, atol=1e-12)
    with pytest.raises(ValueError):
        SymMatrix.from_dense(torch.zeros(2, 3))


def test_inverse_times_matrix_is_identity():
    S, _ = _build_indefinite()
    prod = S * S.inverse()
    assert isinstance(prod, Matrix)
    assert torch.allclose(prod.to_dense(), torch.eye(S.nlin(), dtype=torch.float64), atol=1e-10)


def test_invert_in_place():
    S, A = _build_indefinite(5, seed=3)
    S.invert()
    assert torch.allclose(S.to_dense() @ A, torch.eye(5, dtype=torch.float64), atol=1e-10)


def test_solve_lin_vector_and_matrix():
    S, A = _build_indefinite(6, seed=2)
    x_true = torch.randn(6, dtype=torch.float64)
    x = S.solve_lin(A @ x_true)
    assert x.shape == (6,)
    assert torch.allclose(x, x_true, atol=1e-10)

    X_true = torch.randn(6, 3, dtype=torch.float64)
    X = S.solve_lin(Matrix(data=A @ X_true))
    assert isinstance(X, Matrix)
    assert torch.allclose(X.to_dense(), X_true, atol=1e-10)


def test_solve_lin_dimension_mismatch():
    S, _ = _build_indefinite(4)
    with pytest.raises(ValueError):
        S.solve_lin(torch.ones(5, dtype=torch.float64))


def test_det_matches_dense_determinant():
    S, A = _build_indefinite(7, seed=4)
    assert S.det() == pytest.approx(float(torch.linalg.det(A)), rel=1e-9)

    # a matrix forcing 2x2 pivots: zero diagonal
    B = torch.tensor([[0.0, 2.0, 1.0], [2.0, 0.0, 3.0], [1.0, 3.0, 0.0]], dtype=torch.float64)
    assert SymMatrix.from_dense(B).det() == pytest.approx(float(torch.linalg.det(B)), rel=1e-12)


def test_det_of_singular_matrix_is_zero():
    S = SymMatrix.from_dense(torch.ones(2, 2, dtype=torch.float64))
    assert S.det() == 0.0


def test_posdef_inverse():
    S, A = _build_spd()
    inv = S.posdef_inverse()
    assert torch.allclose(inv.to_dense() @ A, torch.eye(A.shape[0], dtype=torch.float64), atol=1e-10)


def test_posdef_inverse_rejects_indefinite():
    S, _ = _build_indefinite(4)
    with pytest.raises(FactorizationFailed):
        S.posdef_inverse()


def test_singular_matrix_raises_factorization_failed():
    S = SymMatrix.from_dense(torch.tensor([[1.0, 1.0], [1.0, 1.0]], dtype=torch.float64))
    with pytest.raises(FactorizationFailed) as excinfo:
        S.inverse()
    assert excinfo.value.pivot is not None


def test_near_singular_matrix_fails_pivot_threshold():
    A = torch.diag(torch.tensor([1.0, 1e-20, 2.0], dtype=torch.float64))
    with pytest.raises(FactorizationFailed):
        SymMatrix.from_dense(A).solve_lin(torch.ones(3, dtype=torch.float64))
    # a looser threshold is a caller decision
    x = SymMatrix.from_dense(A).solve_lin(torch.ones(3, dtype=torch.float64), rtol=1e-30)
    assert math.isfinite(float(x.sum()))


def test_arithmetic_operators():
    S, A = _build_indefinite(4, seed=5)
    T = S.copy()
    assert torch.allclose((S + T).to_dense(), 2.0 * A)
    assert torch.allclose((S - T).to_dense(), torch.zeros_like(A))
    assert torch.allclose((3.0 * S).to_dense(), 3.0 * A)
    assert torch.allclose((S / 2.0).to_dense(), A / 2.0)
    T += S
    T -= S
    T *= 2.0
    T /= 4.0
    assert torch.allclose(T.to_dense(), 0.5 * A)
    v = torch.arange(4, dtype=torch.float64)
    assert torch.allclose(S * v, A @ v)
    assert torch.allclose((-S).to_dense(), -A)


def test_submatrices_and_rows():
    _, A = _build_indefinite(6, seed=6)
    S = SymMatrix.from_dense(A)
    sub = S.submat(1, 2, 3, 3)
    assert sub.shape == (2, 3)
    assert torch.allclose(sub.to_dense(), A[1:3, 3:6])

    p = S.principal_submat(2, 4)
    assert isinstance(p, SymMatrix)
    assert torch.allclose(p.to_dense(), A[2:5, 2:5])

    assert torch.allclose(S.row(2), A[2])
    S.set_row(2, torch.zeros(6, dtype=torch.float64))
    assert float(S.to_dense()[:, 2].abs().sum()) == 0.0


def test_info_reports_extremes(caplog):
    S = SymMatrix.from_dense(np.array([[1.0, -4.0], [-4.0, 9.0]]))
    with caplog.at_level("INFO"):
        summary = S.info()
    assert summary["min"] == -4.0
    assert summary["max"] == 9.0
    assert summary["argmax"] == (1, 1)
    assert "SymMatrix" in caplog.text
