"""
Coordinate-format sparse matrices and their on-disk formats.

Binary layout (little-endian)::

    uint32 nlin, uint32 ncol
    repeated until end of stream: uint32 row, uint32 col, float64 value

ASCII layout::

    nlin ncol
    row col value        (one triple per line, 0-based indices)

Duplicate (row, col) triples accumulate when converted to dense.
"""

from __future__ import annotations

from pathlib import Path
from typing import Tuple, Union

import numpy as np
import torch
from torch import Tensor

from meegbem.maths.dense import DTYPE, Matrix

__all__ = ["SparseMatrix", "TRIPLET_DTYPE"]

TRIPLET_DTYPE = np.dtype([("i", "<u4"), ("j", "<u4"), ("v", "<f8")])
_HEADER_DTYPE = np.dtype("<u4")

PathLike = Union[str, Path]


class SparseMatrix:
    """
    Sparse matrix as (row, col, value) triples.

    Parameters
    ----------
    nlin, ncol : int
        Dimensions.
    rows, cols, values : array_like
        Triples; indices must lie within the dimensions.
    """

    def __init__(self, nlin: int, ncol: int, rows=(), cols=(), values=()):
        self.nlin = int(nlin)
        self.ncol = int(ncol)
        self.rows = np.asarray(rows, dtype=np.int64).reshape(-1)
        self.cols = np.asarray(cols, dtype=np.int64).reshape(-1)
        self.values = np.asarray(values, dtype=np.float64).reshape(-1)
        if not (self.rows.size == self.cols.size == self.values.size):
            raise ValueError("rows, cols and values must have the same length")
        if self.rows.size:
            if self.rows.min() < 0 or self.rows.max() >= self.nlin:
                raise IndexError(f"row index out of range for {self.nlin} rows")
            if self.cols.min() < 0 or self.cols.max() >= self.ncol:
                raise IndexError(f"column index out of range for {self.ncol} columns")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.nlin, self.ncol

    @property
    def nnz(self) -> int:
        return int(self.values.size)

    # ----- conversion -----
    @classmethod
    def from_dense(cls, A: Union[Tensor, np.ndarray, Matrix], threshold: float = 0.0) -> "SparseMatrix":
        """Keep entries with ``|a_ij| > threshold``, in row-major order."""
        if isinstance(A, Matrix):
            A = A.to_dense()
        arr = A.detach().cpu().numpy() if isinstance(A, Tensor) else np.asarray(A, dtype=np.float64)
        if arr.ndim != 2:
            raise ValueError(f"expected a 2-D matrix, got shape {arr.shape}")
        i, j = np.nonzero(np.abs(arr) > threshold)
        return cls(arr.shape[0], arr.shape[1], i, j, arr[i, j])

    def to_dense(self) -> Tensor:
        out = np.zeros((self.nlin, self.ncol), dtype=np.float64)
        np.add.at(out, (self.rows, self.cols), self.values)
        return torch.from_numpy(out).to(DTYPE)

    def to_torch(self) -> Tensor:
        idx = torch.from_numpy(np.stack([self.rows, self.cols]))
        return torch.sparse_coo_tensor(idx, torch.from_numpy(self.values.copy()), (self.nlin, self.ncol)).coalesce()

    # ----- persistence -----
    def save(self, path: PathLike, fmt: str = "binary") -> None:
        path = Path(path)
        if fmt == "binary":
            rec = np.empty(self.nnz, dtype=TRIPLET_DTYPE)
            rec["i"] = self.rows
            rec["j"] = self.cols
            rec["v"] = self.values
            with path.open("wb") as fh:
                fh.write(np.array([self.nlin, self.ncol], dtype=_HEADER_DTYPE).tobytes())
                fh.write(rec.tobytes())
        elif fmt == "ascii":
            with path.open("w", encoding="ascii") as fh:
                fh.write(f"{self.nlin} {self.ncol}\n")
                for i, j, v in zip(self.rows.tolist(), self.cols.tolist(), self.values.tolist()):
                    fh.write(f"{i} {j} {v:.17g}\n")
        else:
            raise ValueError(f"unknown sparse format {fmt!r}; expected 'binary' or 'ascii'")

    @classmethod
    def load(cls, path: PathLike, fmt: str = "binary") -> "SparseMatrix":
        path = Path(path)
        if fmt == "binary":
            raw = path.read_bytes()
            if len(raw) < 2 * _HEADER_DTYPE.itemsize:
                raise ValueError(f"{path}: truncated header")
            nlin, ncol = np.frombuffer(raw, dtype=_HEADER_DTYPE, count=2)
            body = raw[2 * _HEADER_DTYPE.itemsize:]
            if len(body) % TRIPLET_DTYPE.itemsize:
                raise ValueError(f"{path}: trailing bytes do not form a whole (row, col, value) triple")
            rec = np.frombuffer(body, dtype=TRIPLET_DTYPE)
            return cls(int(nlin), int(ncol), rec["i"], rec["j"], rec["v"])
        if fmt == "ascii":
            with path.open("r", encoding="ascii") as fh:
                header = fh.readline().split()
                if len(header) != 2:
                    raise ValueError(f"{path}: expected 'nlin ncol' header")
                lines = [line for line in fh if line.strip()]
            if not lines:
                return cls(int(header[0]), int(header[1]))
            body = np.loadtxt(lines, dtype=np.float64, ndmin=2)
            if body.shape[1] != 3:
                raise ValueError(f"{path}: expected 'row col value' triples")
            return cls(int(header[0]), int(header[1]), body[:, 0].astype(np.int64), body[:, 1].astype(np.int64), body[:, 2])
        raise ValueError(f"unknown sparse format {fmt!r}; expected 'binary' or 'ascii'")

    def __repr__(self) -> str:
        return f"SparseMatrix({self.nlin}x{self.ncol}, nnz={self.nnz})"
