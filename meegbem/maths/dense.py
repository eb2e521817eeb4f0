"""
Dense rectangular storage and the matrix-sink protocol.

Operator code never talks to a concrete storage class. It writes through the
small :class:`MatrixSink` capability:

  - ``shape``                         -> (nlin, ncol)
  - ``symmetric``                     -> True if (i, j) and (j, i) share a cell
  - ``get(rows, cols)``               -> values at element-wise index pairs
  - ``set(rows, cols, values)``       -> assignment
  - ``add(rows, cols, values)``       -> accumulation (duplicates accumulate)
  - ``m[i, j]`` / ``m[i, j] = x``     -> scalar access

:class:`Matrix` is the general rectangular implementation and
:class:`BlockView` translates global indices into a smaller local store by a
constant (row0, col0) offset, without copying.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np
import torch
from torch import Tensor

__all__ = [
    "MatrixSink",
    "Matrix",
    "BlockView",
    "as_index_tensor",
    "as_value_tensor",
]

DTYPE = torch.float64

ArrayLike = Union[Tensor, np.ndarray, list, tuple, int, float]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def as_index_tensor(idx: ArrayLike) -> Tensor:
    """Convert an index array (or scalar) to a flat int64 tensor."""
    if isinstance(idx, Tensor):
        return idx.reshape(-1).to(torch.int64)
    return torch.as_tensor(np.asarray(idx, dtype=np.int64).reshape(-1))


def as_value_tensor(values: ArrayLike, n: int) -> Tensor:
    """Convert values to a flat float64 tensor of length ``n`` (scalars broadcast)."""
    if isinstance(values, Tensor):
        v = values.to(DTYPE).reshape(-1)
    else:
        v = torch.as_tensor(np.asarray(values, dtype=np.float64).reshape(-1))
    if v.numel() == 1 and n != 1:
        v = v.expand(n)
    if v.numel() != n:
        raise ValueError(f"expected {n} values, got {v.numel()}")
    return v


def _check_bounds(rows: Tensor, cols: Tensor, nlin: int, ncol: int) -> None:
    if rows.numel() != cols.numel():
        raise ValueError(f"rows and cols differ in length: {rows.numel()} != {cols.numel()}")
    if rows.numel() == 0:
        return
    if int(rows.min()) < 0 or int(rows.max()) >= nlin:
        raise IndexError(f"row index out of range for {nlin} rows")
    if int(cols.min()) < 0 or int(cols.max()) >= ncol:
        raise IndexError(f"column index out of range for {ncol} columns")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class MatrixSink(Protocol):
    """Read/write capability shared by every matrix layout."""

    symmetric: bool

    @property
    def shape(self) -> Tuple[int, int]: ...

    def get(self, rows: ArrayLike, cols: ArrayLike) -> Tensor: ...

    def set(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None: ...

    def add(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None: ...

    def __getitem__(self, ij: Tuple[int, int]) -> float: ...

    def __setitem__(self, ij: Tuple[int, int], value: float) -> None: ...


# ---------------------------------------------------------------------------
# Dense matrix
# ---------------------------------------------------------------------------


class Matrix:
    """
    General rectangular float64 matrix backed by a 2-D torch tensor.

    Parameters
    ----------
    nlin, ncol : int
        Dimensions. The matrix starts filled with zeros.
    data : Tensor or array_like, optional
        Initial content; copied and converted to float64.
    """

    symmetric = False

    def __init__(self, nlin: int = 0, ncol: Optional[int] = None, *, data: Optional[ArrayLike] = None):
        if data is not None:
            t = torch.as_tensor(np.asarray(data) if not isinstance(data, Tensor) else data)
            t = t.to(DTYPE).clone()
            if t.ndim != 2:
                raise ValueError(f"Matrix data must be 2-D, got shape {tuple(t.shape)}")
            self.data = t
        else:
            ncol = nlin if ncol is None else ncol
            if nlin < 0 or ncol < 0:
                raise ValueError("matrix dimensions must be non-negative")
            self.data = torch.zeros((int(nlin), int(ncol)), dtype=DTYPE)

    # ----- shape -----
    @property
    def shape(self) -> Tuple[int, int]:
        return int(self.data.shape[0]), int(self.data.shape[1])

    def nlin(self) -> int:
        return int(self.data.shape[0])

    def ncol(self) -> int:
        return int(self.data.shape[1])

    # ----- element access -----
    def __getitem__(self, ij: Tuple[int, int]) -> float:
        i, j = ij
        return float(self.data[i, j])

    def __setitem__(self, ij: Tuple[int, int], value: float) -> None:
        i, j = ij
        self.data[i, j] = float(value)

    def get(self, rows: ArrayLike, cols: ArrayLike) -> Tensor:
        r, c = as_index_tensor(rows), as_index_tensor(cols)
        _check_bounds(r, c, *self.shape)
        return self.data[r, c]

    def set(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        r, c = as_index_tensor(rows), as_index_tensor(cols)
        _check_bounds(r, c, *self.shape)
        self.data.index_put_((r, c), as_value_tensor(values, r.numel()))

    def add(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        r, c = as_index_tensor(rows), as_index_tensor(cols)
        _check_bounds(r, c, *self.shape)
        self.data.index_put_((r, c), as_value_tensor(values, r.numel()), accumulate=True)

    def fill(self, x: float) -> None:
        self.data.fill_(float(x))

    # ----- rows / columns -----
    def row(self, i: int) -> Tensor:
        return self.data[i].clone()

    def set_row(self, i: int, v: ArrayLike) -> None:
        self.data[i] = as_value_tensor(v, self.ncol())

    def col(self, j: int) -> Tensor:
        return self.data[:, j].clone()

    def set_col(self, j: int, v: ArrayLike) -> None:
        self.data[:, j] = as_value_tensor(v, self.nlin())

    def submat(self, istart: int, isize: int, jstart: int, jsize: int) -> "Matrix":
        if istart + isize > self.nlin() or jstart + jsize > self.ncol():
            raise IndexError("submatrix exceeds matrix bounds")
        return Matrix(data=self.data[istart:istart + isize, jstart:jstart + jsize])

    def transpose(self) -> "Matrix":
        return Matrix(data=self.data.T)

    def to_dense(self) -> Tensor:
        return self.data.clone()

    # ----- algebra -----
    def __add__(self, other: "Matrix") -> "Matrix":
        if self.shape != other.shape:
            raise ValueError(f"shape mismatch: {self.shape} vs {other.shape}")
        return Matrix(data=self.data + other.to_dense())

    def __sub__(self, other: "Matrix") -> "Matrix":
        if self.shape != other.shape:
            raise ValueError(f"shape mismatch: {self.shape} vs {other.shape}")
        return Matrix(data=self.data - other.to_dense())

    def __mul__(self, other: Any) -> Any:
        if isinstance(other, (int, float)):
            return Matrix(data=self.data * float(other))
        if isinstance(other, Tensor) and other.ndim == 1:
            if other.numel() != self.ncol():
                raise ValueError(f"vector of size {other.numel()} does not match {self.ncol()} columns")
            return self.data @ other.to(DTYPE)
        if hasattr(other, "to_dense"):
            dense = other.to_dense()
            if dense.shape[0] != self.ncol():
                raise ValueError(f"inner dimensions differ: {self.ncol()} vs {dense.shape[0]}")
            return Matrix(data=self.data @ dense)
        return NotImplemented

    __matmul__ = __mul__

    def __rmul__(self, other: Any) -> "Matrix":
        if isinstance(other, (int, float)):
            return Matrix(data=self.data * float(other))
        return NotImplemented

    def __truediv__(self, x: float) -> "Matrix":
        return Matrix(data=self.data / float(x))

    def __repr__(self) -> str:
        return f"Matrix({self.nlin()}x{self.ncol()})"


# ---------------------------------------------------------------------------
# Offset-mapped block view
# ---------------------------------------------------------------------------


class BlockView:
    """
    Index-translating view over a local store.

    Global index (i, j) is forwarded to ``store`` as (i - row0, j - col0).
    Operator code computing a sub-block (e.g. the S block of one mesh pair)
    keeps addressing entries by global triangle/vertex indices while the
    values land in a store sized to the block. No data is copied.
    """

    def __init__(self, store: MatrixSink, row0: int, col0: int):
        self.store = store
        self.row0 = int(row0)
        self.col0 = int(col0)
        self.symmetric = bool(getattr(store, "symmetric", False)) and self.row0 == self.col0

    @property
    def shape(self) -> Tuple[int, int]:
        return self.store.shape

    def _local(self, rows: ArrayLike, cols: ArrayLike) -> Tuple[Tensor, Tensor]:
        return as_index_tensor(rows) - self.row0, as_index_tensor(cols) - self.col0

    def __getitem__(self, ij: Tuple[int, int]) -> float:
        i, j = ij
        return self.store[i - self.row0, j - self.col0]

    def __setitem__(self, ij: Tuple[int, int], value: float) -> None:
        i, j = ij
        self.store[i - self.row0, j - self.col0] = value

    def get(self, rows: ArrayLike, cols: ArrayLike) -> Tensor:
        return self.store.get(*self._local(rows, cols))

    def set(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        self.store.set(*self._local(rows, cols), values)

    def add(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        self.store.add(*self._local(rows, cols), values)

    def __repr__(self) -> str:
        return f"BlockView({self.store!r}, row0={self.row0}, col0={self.col0})"
