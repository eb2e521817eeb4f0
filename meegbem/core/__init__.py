"""BEM operators, quadrature and matrix assembly.

Public boundaries:

- :mod:`meegbem.core.quadrature`: triangle rules and the adaptive integrator.
- :mod:`meegbem.core.analytics`: closed-form S, D and dipole kernels.
- :mod:`meegbem.core.operators`: S / N / D / D* block engine.
- :mod:`meegbem.core.assemble`: head matrix, cortical variant and deflation.
- :mod:`meegbem.core.sources`: source and point-evaluation matrices.
"""

from meegbem.core.analytics import AnalyticD3, AnalyticDipPot, AnalyticDipPotDer, AnalyticS, Dipole
from meegbem.core.assemble import (
    SymmetricBlockLayout,
    SymMatrixLayout,
    all_blocks,
    all_but_block,
    cortical_head_matrix,
    deflate,
    head_matrix,
)
from meegbem.core.operators import DiagonalBlock, NonDiagonalBlock, PartialBlock, add_identity
from meegbem.core.parallel import run_rows, strided_partition
from meegbem.core.quadrature import Integrator, standard_triangle_quadrature, triangle_rule
from meegbem.core.sources import (
    dipole_source_matrix,
    dipole_to_internal_potential_matrix,
    surf_source_matrix,
    surf_to_vol_matrix,
)

__all__ = [
    "AnalyticD3",
    "AnalyticDipPot",
    "AnalyticDipPotDer",
    "AnalyticS",
    "Dipole",
    "DiagonalBlock",
    "NonDiagonalBlock",
    "PartialBlock",
    "add_identity",
    "Integrator",
    "standard_triangle_quadrature",
    "triangle_rule",
    "run_rows",
    "strided_partition",
    "SymMatrixLayout",
    "SymmetricBlockLayout",
    "all_blocks",
    "all_but_block",
    "cortical_head_matrix",
    "deflate",
    "head_matrix",
    "dipole_source_matrix",
    "dipole_to_internal_potential_matrix",
    "surf_source_matrix",
    "surf_to_vol_matrix",
]
