"""Matrix storage: packed symmetric, dense, block-structured and sparse."""

from .block import Range, SymmetricBlockMatrix
from .dense import BlockView, Matrix, MatrixSink
from .sparse import SparseMatrix
from .symmatrix import SymMatrix

__all__ = [
    "BlockView",
    "Matrix",
    "MatrixSink",
    "Range",
    "SparseMatrix",
    "SymMatrix",
    "SymmetricBlockMatrix",
]
