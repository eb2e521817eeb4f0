"""Symmetric BEM assembly for MEG/EEG forward modelling.

The head is a nested set of closed triangulated surfaces separating
domains of constant conductivity. :func:`head_matrix` assembles the
symmetric system on P1 potentials (vertices) and P0 normal currents
(triangles); the source and point-evaluation matrices in
:mod:`meegbem.core.sources` complete the forward problem.
"""

from meegbem.core import (
    Dipole,
    Integrator,
    cortical_head_matrix,
    deflate,
    dipole_source_matrix,
    dipole_to_internal_potential_matrix,
    head_matrix,
    surf_source_matrix,
    surf_to_vol_matrix,
)
from meegbem.errors import (
    FactorizationFailed,
    GeometryError,
    MeegBemError,
    OverlappingSourceMesh,
    Unsupported,
)
from meegbem.geometry import Domain, Geometry, Interface, Mesh, icosphere, nested_spheres
from meegbem.maths import Matrix, SparseMatrix, SymMatrix, SymmetricBlockMatrix
from meegbem.utils.config import K, AssemblyConfig, IntegratorConfig

__version__ = "0.1.0"

__all__ = [
    "Dipole",
    "Integrator",
    "cortical_head_matrix",
    "deflate",
    "dipole_source_matrix",
    "dipole_to_internal_potential_matrix",
    "head_matrix",
    "surf_source_matrix",
    "surf_to_vol_matrix",
    "FactorizationFailed",
    "GeometryError",
    "MeegBemError",
    "OverlappingSourceMesh",
    "Unsupported",
    "Domain",
    "Geometry",
    "Interface",
    "Mesh",
    "icosphere",
    "nested_spheres",
    "Matrix",
    "SparseMatrix",
    "SymMatrix",
    "SymmetricBlockMatrix",
    "K",
    "AssemblyConfig",
    "IntegratorConfig",
]
