"""
Packed symmetric matrix with LDLᵀ-based linear algebra.

Storage
-------
An N×N symmetric matrix keeps N(N+1)/2 float64 values in a flat torch
tensor. Entry (i, j) and (j, i) resolve to the same cell

    lo + hi * (hi + 1) / 2,    lo = min(i, j), hi = max(i, j)

which is also the row-major order of ``torch.tril_indices``, so conversion
to and from a dense tensor is a single gather / scatter.

Factorization
-------------
``solve_lin``, ``inverse`` and ``det`` share one symmetric-indefinite
(Bunch–Kaufman) factorization obtained from ``torch.linalg.ldl_factor_ex``.
The block-diagonal factor D is scanned after every factorization: an exact
zero pivot, a non-finite factor or a pivot block whose smallest eigenvalue
magnitude falls below ``rtol * max|pivot|`` raises
:class:`~meegbem.errors.FactorizationFailed`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import torch
from torch import Tensor

from meegbem.errors import FactorizationFailed, Unsupported
from meegbem.maths.dense import DTYPE, ArrayLike, Matrix, as_index_tensor, as_value_tensor

__all__ = ["SymMatrix", "packed_index"]

logger = logging.getLogger(__name__)


def packed_index(i: Tensor, j: Tensor) -> Tensor:
    """Vectorized packed-storage offset of (i, j)."""
    lo = torch.minimum(i, j)
    hi = torch.maximum(i, j)
    return lo + hi * (hi + 1) // 2


def _require_ldl() -> None:
    if not hasattr(torch.linalg, "ldl_factor_ex") or not hasattr(torch.linalg, "ldl_solve"):
        raise Unsupported(
            "torch.linalg.ldl_factor_ex is not available in this torch build; "
            "symmetric-indefinite solves require torch >= 2.0."
        )


class _LDLFactor:
    """Result of a checked Bunch–Kaufman factorization."""

    def __init__(self, LD: Tensor, pivots: Tensor, blocks: List[Tuple[int, int, float]]):
        self.LD = LD
        self.pivots = pivots
        # (start, size, determinant of the pivot block)
        self.blocks = blocks

    def solve(self, B: Tensor) -> Tensor:
        return torch.linalg.ldl_solve(self.LD, self.pivots, B)

    def slogdet(self) -> Tuple[float, float]:
        sign = 1.0
        logabs = 0.0
        for _, _, d in self.blocks:
            if d == 0.0:
                return 0.0, -math.inf
            sign *= 1.0 if d > 0.0 else -1.0
            logabs += math.log(abs(d))
        return sign, logabs


def _pivot_blocks(LD: Tensor, pivots: Tensor) -> Tuple[List[Tuple[int, int, float]], List[Tuple[int, float]]]:
    """
    Walk the D factor returned by LAPACK ``sytrf`` (lower storage).

    A negative ``pivots[k] == pivots[k+1]`` marks a 2×2 block occupying rows
    k and k+1, with its off-diagonal element stored in ``LD[k+1, k]``.
    Returns the blocks and, per block, the smallest eigenvalue magnitude.
    """
    n = LD.shape[0]
    diag = LD.diagonal().tolist()
    piv = pivots.tolist()
    blocks: List[Tuple[int, int, float]] = []
    mags: List[Tuple[int, float]] = []
    k = 0
    while k < n:
        if piv[k] < 0 and k + 1 < n and piv[k + 1] == piv[k]:
            a, c = diag[k], diag[k + 1]
            b = float(LD[k + 1, k])
            blocks.append((k, 2, a * c - b * b))
            half_tr = 0.5 * (a + c)
            rad = math.hypot(0.5 * (a - c), b)
            mags.append((k, min(abs(half_tr - rad), abs(half_tr + rad))))
            k += 2
        else:
            blocks.append((k, 1, diag[k]))
            mags.append((k, abs(diag[k])))
            k += 1
    return blocks, mags


class SymMatrix:
    """
    Square symmetric float64 matrix in packed storage.

    Parameters
    ----------
    n : int
        Dimension. The matrix starts filled with zeros.
    data : Tensor, optional
        Packed values of length n(n+1)/2; used as-is (not copied).
    """

    symmetric = True

    def __init__(self, n: int = 0, *, data: Optional[Tensor] = None):
        if n < 0:
            raise ValueError("matrix dimension must be non-negative")
        self._n = int(n)
        size = self._n * (self._n + 1) // 2
        if data is None:
            self.data = torch.zeros(size, dtype=DTYPE)
        else:
            if data.ndim != 1 or data.numel() != size:
                raise ValueError(f"packed data for n={n} must have {size} values, got {tuple(data.shape)}")
            self.data = data.to(DTYPE)

    # ----- construction -----
    @classmethod
    def from_dense(cls, A: Union[Tensor, np.ndarray, Matrix], *, atol: Optional[float] = None) -> "SymMatrix":
        """
        Pack the lower triangle of a square matrix.

        If ``atol`` is given, raise ``ValueError`` when ``A`` deviates from its
        transpose by more than ``atol``.
        """
        if isinstance(A, Matrix):
            t = A.to_dense()
        else:
            t = torch.as_tensor(A).to(DTYPE)
        if t.ndim != 2 or t.shape[0] != t.shape[1]:
            raise ValueError(f"from_dense expects a square matrix, got shape {tuple(t.shape)}")
        if atol is not None and t.numel() and float((t - t.T).abs().max()) > atol:
            raise ValueError("matrix is not symmetric within the requested tolerance")
        n = int(t.shape[0])
        r, c = torch.tril_indices(n, n)
        return cls(n, data=t[r, c].clone())

    @classmethod
    def identity(cls, n: int) -> "SymMatrix":
        m = cls(n)
        idx = torch.arange(n)
        m.data[packed_index(idx, idx)] = 1.0
        return m

    def copy(self) -> "SymMatrix":
        return SymMatrix(self._n, data=self.data.clone())

    # ----- shape -----
    @property
    def shape(self) -> Tuple[int, int]:
        return self._n, self._n

    def nlin(self) -> int:
        return self._n

    def ncol(self) -> int:
        return self._n

    def __len__(self) -> int:
        return self._n

    # ----- element access -----
    def _offset(self, i: int, j: int) -> int:
        n = self._n
        if not (0 <= i < n and 0 <= j < n):
            raise IndexError(f"index ({i}, {j}) out of range for {n}x{n} symmetric matrix")
        lo, hi = (i, j) if i <= j else (j, i)
        return lo + hi * (hi + 1) // 2

    def __getitem__(self, ij: Tuple[int, int]) -> float:
        return float(self.data[self._offset(*ij)])

    def __setitem__(self, ij: Tuple[int, int], value: float) -> None:
        self.data[self._offset(*ij)] = float(value)

    def _offsets(self, rows: ArrayLike, cols: ArrayLike) -> Tensor:
        r, c = as_index_tensor(rows), as_index_tensor(cols)
        if r.numel() != c.numel():
            raise ValueError(f"rows and cols differ in length: {r.numel()} != {c.numel()}")
        if r.numel():
            lo = int(torch.minimum(r.min(), c.min()))
            hi = int(torch.maximum(r.max(), c.max()))
            if lo < 0 or hi >= self._n:
                raise IndexError(f"index out of range for {self._n}x{self._n} symmetric matrix")
        return packed_index(r, c)

    def get(self, rows: ArrayLike, cols: ArrayLike) -> Tensor:
        return self.data[self._offsets(rows, cols)]

    def set(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        off = self._offsets(rows, cols)
        self.data.index_put_((off,), as_value_tensor(values, off.numel()))

    def add(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        off = self._offsets(rows, cols)
        self.data.index_put_((off,), as_value_tensor(values, off.numel()), accumulate=True)

    def fill(self, x: float) -> None:
        self.data.fill_(float(x))

    # ----- rows / blocks -----
    def row(self, i: int) -> Tensor:
        if not 0 <= i < self._n:
            raise IndexError(f"row {i} out of range")
        j = torch.arange(self._n)
        return self.data[packed_index(torch.full_like(j, i), j)].clone()

    def set_row(self, i: int, v: ArrayLike) -> None:
        """Set row ``i`` (and, by symmetry, column ``i``)."""
        if not 0 <= i < self._n:
            raise IndexError(f"row {i} out of range")
        j = torch.arange(self._n)
        self.data[packed_index(torch.full_like(j, i), j)] = as_value_tensor(v, self._n)

    def submat(self, istart: int, isize: int, jstart: int, jsize: int) -> Matrix:
        """Dense copy of rows ``[istart, istart+isize)`` × cols ``[jstart, jstart+jsize)``."""
        if istart < 0 or jstart < 0 or istart + isize > self._n or jstart + jsize > self._n:
            raise IndexError("submatrix exceeds matrix bounds")
        r = torch.arange(istart, istart + isize).unsqueeze(1).expand(isize, jsize)
        c = torch.arange(jstart, jstart + jsize).unsqueeze(0).expand(isize, jsize)
        return Matrix(data=self.data[packed_index(r, c)])

    def principal_submat(self, istart: int, iend: int) -> "SymMatrix":
        """Symmetric copy of the principal block ``[istart, iend]`` (inclusive)."""
        if not (0 <= istart <= iend < self._n):
            raise IndexError(f"invalid principal range [{istart}, {iend}] for dimension {self._n}")
        size = iend - istart + 1
        r, c = torch.tril_indices(size, size)
        return SymMatrix(size, data=self.data[packed_index(r + istart, c + istart)].clone())

    def to_dense(self) -> Tensor:
        n = self._n
        out = torch.zeros((n, n), dtype=DTYPE)
        r, c = torch.tril_indices(n, n)
        out[r, c] = self.data
        out[c, r] = self.data
        return out

    # ----- algebra -----
    def _check_same(self, other: "SymMatrix") -> None:
        if not isinstance(other, SymMatrix):
            raise TypeError(f"expected SymMatrix, got {type(other).__name__}")
        if other._n != self._n:
            raise ValueError(f"dimension mismatch: {self._n} vs {other._n}")

    def __add__(self, other: "SymMatrix") -> "SymMatrix":
        self._check_same(other)
        return SymMatrix(self._n, data=self.data + other.data)

    def __sub__(self, other: "SymMatrix") -> "SymMatrix":
        self._check_same(other)
        return SymMatrix(self._n, data=self.data - other.data)

    def __iadd__(self, other: "SymMatrix") -> "SymMatrix":
        self._check_same(other)
        self.data += other.data
        return self

    def __isub__(self, other: "SymMatrix") -> "SymMatrix":
        self._check_same(other)
        self.data -= other.data
        return self

    def __neg__(self) -> "SymMatrix":
        return SymMatrix(self._n, data=-self.data)

    def __mul__(self, other: Any) -> Any:
        if isinstance(other, (int, float)):
            return SymMatrix(self._n, data=self.data * float(other))
        if isinstance(other, np.ndarray):
            other = torch.as_tensor(other)
        if isinstance(other, Tensor):
            if other.ndim == 1:
                if other.numel() != self._n:
                    raise ValueError(f"vector of size {other.numel()} does not match dimension {self._n}")
                return self.to_dense() @ other.to(DTYPE)
            if other.ndim == 2:
                if other.shape[0] != self._n:
                    raise ValueError(f"inner dimensions differ: {self._n} vs {other.shape[0]}")
                return Matrix(data=self.to_dense() @ other.to(DTYPE))
        if isinstance(other, (SymMatrix, Matrix)):
            if other.shape[0] != self._n:
                raise ValueError(f"inner dimensions differ: {self._n} vs {other.shape[0]}")
            return Matrix(data=self.to_dense() @ other.to_dense())
        return NotImplemented

    __matmul__ = __mul__

    def __rmul__(self, other: Any) -> Any:
        if isinstance(other, (int, float)):
            return SymMatrix(self._n, data=self.data * float(other))
        return NotImplemented

    def __imul__(self, x: float) -> "SymMatrix":
        self.data *= float(x)
        return self

    def __truediv__(self, x: float) -> "SymMatrix":
        return SymMatrix(self._n, data=self.data / float(x))

    def __itruediv__(self, x: float) -> "SymMatrix":
        self.data /= float(x)
        return self

    # ----- factorization -----
    def factorize(self, rtol: Optional[float] = None) -> _LDLFactor:
        """
        Checked Bunch–Kaufman LDLᵀ factorization.

        Parameters
        ----------
        rtol : float, optional
            Relative pivot threshold. Defaults to ``eps * n``.

        Raises
        ------
        Unsupported
            If the torch build lacks ``torch.linalg.ldl_factor_ex``.
        FactorizationFailed
            On an exact zero pivot, a non-finite factor or a pivot block
            below ``rtol * max|pivot|``.
        """
        _require_ldl()
        n = self._n
        if n == 0:
            raise ValueError("cannot factorize an empty matrix")
        LD, pivots, info = torch.linalg.ldl_factor_ex(self.to_dense())
        code = int(info)
        if code > 0:
            raise FactorizationFailed("Singular matrix: exact zero pivot", pivot=code - 1, value=0.0)
        if code < 0:
            raise FactorizationFailed(f"LAPACK sytrf rejected argument {-code}")
        if not bool(torch.isfinite(LD).all()):
            raise FactorizationFailed("Non-finite value in the LDL factor")

        blocks, mags = _pivot_blocks(LD, pivots)
        scale = max(m for _, m in mags)
        tol = (torch.finfo(DTYPE).eps * n if rtol is None else float(rtol)) * scale
        for k, m in mags:
            if m <= tol:
                raise FactorizationFailed("Ill-conditioned matrix: pivot below relative threshold", pivot=k, value=float(LD[k, k]))
        return _LDLFactor(LD, pivots, blocks)

    def solve_lin(self, B: Union[Tensor, np.ndarray, Matrix], rtol: Optional[float] = None) -> Any:
        """
        Solve ``A x = B`` for a vector (returns a 1-D tensor) or a matrix
        right-hand side (returns a :class:`Matrix`).
        """
        as_matrix = isinstance(B, Matrix)
        rhs = B.to_dense() if as_matrix else torch.as_tensor(B).to(DTYPE)
        if rhs.shape[0] != self._n:
            raise ValueError(f"right-hand side has {rhs.shape[0]} rows, expected {self._n}")
        vector = rhs.ndim == 1
        fac = self.factorize(rtol)
        x = fac.solve(rhs.unsqueeze(1) if vector else rhs)
        if not bool(torch.isfinite(x).all()):
            raise FactorizationFailed("Non-finite solution")
        if vector:
            return x.squeeze(1)
        return Matrix(data=x) if as_matrix else x

    def inverse(self, rtol: Optional[float] = None) -> "SymMatrix":
        fac = self.factorize(rtol)
        X = fac.solve(torch.eye(self._n, dtype=DTYPE))
        return SymMatrix.from_dense(0.5 * (X + X.T))

    def invert(self, rtol: Optional[float] = None) -> None:
        """In-place inverse."""
        self.data = self.inverse(rtol).data

    def posdef_inverse(self) -> "SymMatrix":
        """Inverse through a Cholesky factorization; the matrix must be positive definite."""
        A = self.to_dense()
        L, info = torch.linalg.cholesky_ex(A)
        code = int(info)
        if code > 0:
            raise FactorizationFailed("Matrix is not positive definite", pivot=code - 1, value=float(A[code - 1, code - 1]))
        return SymMatrix.from_dense(torch.cholesky_inverse(L))

    def slogdet(self) -> Tuple[float, float]:
        """Sign and log-magnitude of the determinant, from the LDLᵀ pivots."""
        _require_ldl()
        if self._n == 0:
            return 1.0, 0.0
        LD, pivots, info = torch.linalg.ldl_factor_ex(self.to_dense())
        if int(info) > 0:
            return 0.0, -math.inf
        blocks, _ = _pivot_blocks(LD, pivots)
        return _LDLFactor(LD, pivots, blocks).slogdet()

    def det(self) -> float:
        sign, logabs = self.slogdet()
        if sign == 0.0:
            return 0.0
        return sign * math.exp(logabs)

    # ----- diagnostics -----
    def info(self) -> Dict[str, Any]:
        """Log and return dimensions and the extreme values with their positions."""
        if self._n == 0:
            logger.info("SymMatrix: empty")
            return {"n": 0}
        r, c = torch.tril_indices(self._n, self._n)
        kmin = int(torch.argmin(self.data))
        kmax = int(torch.argmax(self.data))
        summary = {
            "n": self._n,
            "min": float(self.data[kmin]),
            "argmin": (int(c[kmin]), int(r[kmin])),
            "max": float(self.data[kmax]),
            "argmax": (int(c[kmax]), int(r[kmax])),
        }
        logger.info(
            "SymMatrix %dx%d min %.6g at %s max %.6g at %s",
            self._n, self._n, summary["min"], summary["argmin"], summary["max"], summary["argmax"],
        )
        return summary

    def __repr__(self) -> str:
        return f"SymMatrix({self._n}x{self._n})"
