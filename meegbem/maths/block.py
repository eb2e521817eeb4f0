"""
Block-structured symmetric storage.

A :class:`SymmetricBlockMatrix` only allocates the blocks that are declared
for it, which for a head matrix means the S / N / D / D* blocks of the
communicating mesh pairs. Everything else reads as zero. Blocks are keyed
by pairs of half-open :class:`Range` objects normalized so that the row
range starts before the column range; diagonal blocks are stored as
:class:`~meegbem.maths.symmatrix.SymMatrix`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Tuple, Union

import torch
from torch import Tensor

from meegbem.maths.dense import DTYPE, ArrayLike, Matrix, as_index_tensor, as_value_tensor
from meegbem.maths.symmatrix import SymMatrix

__all__ = ["Range", "SymmetricBlockMatrix"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Range:
    """Half-open index range ``[start, stop)``."""

    start: int
    stop: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.stop < self.start:
            raise ValueError(f"invalid range [{self.start}, {self.stop})")

    def __len__(self) -> int:
        return self.stop - self.start

    def __contains__(self, i: int) -> bool:
        return self.start <= i < self.stop

    def mask(self, idx: Tensor) -> Tensor:
        return (idx >= self.start) & (idx < self.stop)

    def intersects(self, other: "Range") -> bool:
        return self.start < other.stop and other.start < self.stop

    def __repr__(self) -> str:
        return f"[{self.start},{self.stop})"


Block = Union[SymMatrix, Matrix]


class SymmetricBlockMatrix:
    """
    Symmetric N×N matrix made of explicitly allocated blocks.

    Reading an entry outside every block returns 0; writing there raises
    ``IndexError``.
    """

    symmetric = True

    def __init__(self, n: int):
        if n < 0:
            raise ValueError("matrix dimension must be non-negative")
        self._n = int(n)
        self._blocks: Dict[Tuple[Range, Range], Block] = {}

    # ----- block management -----
    @staticmethod
    def _normalize(rows: Range, cols: Range) -> Tuple[Range, Range]:
        if rows.start > cols.start:
            rows, cols = cols, rows
        return rows, cols

    def add_block(self, rows: Range, cols: Range) -> Block:
        """Allocate (or return the existing) block for ``rows × cols``."""
        rows, cols = self._normalize(rows, cols)
        if rows.stop > self._n or cols.stop > self._n:
            raise IndexError(f"block {rows}x{cols} exceeds dimension {self._n}")
        key = (rows, cols)
        if key in self._blocks:
            return self._blocks[key]
        if rows != cols and rows.intersects(cols):
            raise ValueError(f"off-diagonal block {rows}x{cols} overlaps the diagonal")
        for (r, c) in self._blocks:
            if rows.intersects(r) and cols.intersects(c):
                raise ValueError(f"block {rows}x{cols} overlaps existing block {r}x{c}")
        block: Block = SymMatrix(len(rows)) if rows == cols else Matrix(len(rows), len(cols))
        self._blocks[key] = block
        return block

    def set_blocks(self, ranges: Iterable[Range]) -> None:
        """Allocate every block of a partition given by ``ranges``."""
        rs = sorted(ranges)
        for a in range(len(rs)):
            for b in range(a, len(rs)):
                self.add_block(rs[a], rs[b])

    def block(self, rows: Range, cols: Range) -> Block:
        return self._blocks[self._normalize(rows, cols)]

    def has_block(self, rows: Range, cols: Range) -> bool:
        return self._normalize(rows, cols) in self._blocks

    def blocks(self) -> Iterator[Tuple[Tuple[Range, Range], Block]]:
        return iter(sorted(self._blocks.items(), key=lambda kv: kv[0]))

    # ----- shape -----
    @property
    def shape(self) -> Tuple[int, int]:
        return self._n, self._n

    def nlin(self) -> int:
        return self._n

    def ncol(self) -> int:
        return self._n

    # ----- element access -----
    def _route(self, r: Tensor, c: Tensor) -> List[Tuple[Block, Tensor, Tensor, Tensor]]:
        """Split index pairs by owning block: (block, positions, local rows, local cols)."""
        if r.numel() != c.numel():
            raise ValueError(f"rows and cols differ in length: {r.numel()} != {c.numel()}")
        if r.numel() and (int(torch.minimum(r.min(), c.min())) < 0 or int(torch.maximum(r.max(), c.max())) >= self._n):
            raise IndexError(f"index out of range for {self._n}x{self._n} matrix")
        pending = torch.ones(r.numel(), dtype=torch.bool)
        routes = []
        for (rows, cols), blk in self._blocks.items():
            direct = pending & rows.mask(r) & cols.mask(c)
            swapped = pending & ~direct & rows.mask(c) & cols.mask(r)
            hit = direct | swapped
            if not bool(hit.any()):
                continue
            pos = torch.nonzero(hit).squeeze(1)
            lr = torch.where(direct[pos], r[pos], c[pos]) - rows.start
            lc = torch.where(direct[pos], c[pos], r[pos]) - cols.start
            routes.append((blk, pos, lr, lc))
            pending &= ~hit
        routes.append((None, torch.nonzero(pending).squeeze(1), None, None))
        return routes

    def get(self, rows: ArrayLike, cols: ArrayLike) -> Tensor:
        r, c = as_index_tensor(rows), as_index_tensor(cols)
        out = torch.zeros(r.numel(), dtype=DTYPE)
        for blk, pos, lr, lc in self._route(r, c):
            if blk is not None:
                out[pos] = blk.get(lr, lc)
        return out

    def _write(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike, accumulate: bool) -> None:
        r, c = as_index_tensor(rows), as_index_tensor(cols)
        v = as_value_tensor(values, r.numel())
        routes = self._route(r, c)
        _, missing, _, _ = routes[-1]
        if missing.numel():
            k = int(missing[0])
            raise IndexError(f"no block allocated for entry ({int(r[k])}, {int(c[k])})")
        for blk, pos, lr, lc in routes[:-1]:
            if accumulate:
                blk.add(lr, lc, v[pos])
            else:
                blk.set(lr, lc, v[pos])

    def set(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        self._write(rows, cols, values, accumulate=False)

    def add(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        self._write(rows, cols, values, accumulate=True)

    def __getitem__(self, ij: Tuple[int, int]) -> float:
        i, j = ij
        return float(self.get([i], [j])[0])

    def __setitem__(self, ij: Tuple[int, int], value: float) -> None:
        i, j = ij
        self.set([i], [j], [value])

    # ----- conversion -----
    def to_dense(self) -> Tensor:
        out = torch.zeros((self._n, self._n), dtype=DTYPE)
        for (rows, cols), blk in self._blocks.items():
            dense = blk.to_dense()
            out[rows.start:rows.stop, cols.start:cols.stop] = dense
            if rows != cols:
                out[cols.start:cols.stop, rows.start:rows.stop] = dense.T
        return out

    def to_symmatrix(self) -> SymMatrix:
        return SymMatrix.from_dense(self.to_dense())

    def info(self) -> None:
        logger.info("SymmetricBlockMatrix %dx%d with %d blocks", self._n, self._n, len(self._blocks))
        for (rows, cols), blk in self.blocks():
            logger.info("  block %s x %s: %s", rows, cols, blk)

    def __repr__(self) -> str:
        return f"SymmetricBlockMatrix({self._n}x{self._n}, blocks={len(self._blocks)})"
