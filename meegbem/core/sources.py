"""
Source-coupling and point-evaluation matrices.

  - `surf_source_matrix`        head unknowns × source-mesh vertices
  - `dipole_source_matrix`      head unknowns × dipoles
  - `surf_to_vol_matrix`        interior points × head unknowns
  - `dipole_to_internal_potential_matrix`
                                interior points × dipoles

Dipoles are given as an ``(M, 6)`` array of rows ``x y z qx qy qz``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from meegbem.core.analytics import AnalyticDipPot, AnalyticDipPotDer, Dipole
from meegbem.core.operators import NonDiagonalBlock, PartialBlock
from meegbem.core.quadrature import Integrator
from meegbem.errors import GeometryError, OverlappingSourceMesh
from meegbem.geometry.geometry import Domain, Geometry
from meegbem.geometry.mesh import Mesh
from meegbem.maths.dense import Matrix
from meegbem.utils.config import K, AssemblyConfig
from meegbem.utils.logging import JsonlLogger

__all__ = [
    "surf_source_matrix",
    "dipole_source_matrix",
    "surf_to_vol_matrix",
    "dipole_to_internal_potential_matrix",
]

log = logging.getLogger(__name__)


def _as_dipoles(dipoles) -> List[Dipole]:
    arr = np.asarray(dipoles, dtype=float)
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2 or arr.shape[1] != 6:
        raise ValueError(f"dipoles must have shape (M, 6), got {arr.shape}")
    return [Dipole.from_row(row) for row in arr]


def _dipole_domain(geometry: Geometry, dipole: Dipole, domain_name: str) -> Optional[Domain]:
    if domain_name:
        return geometry.domain_by_name(domain_name)
    return geometry.domain(dipole.position)


def _split_points(geometry: Geometry, points, caller: str) -> Tuple[np.ndarray, List[Domain]]:
    """Keep the points lying in a conductive domain, in input order."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    kept, domains = [], []
    for p in pts:
        d = geometry.domain(p)
        if d is None or not d.conductive:
            log.warning("%s: point %s is not inside a conductive domain; point is dropped.", caller, p.tolist())
            continue
        kept.append(p)
        domains.append(d)
    return np.array(kept, dtype=float).reshape(-1, 3), domains


# ---------------------------------------------------------------------------
# Source matrices
# ---------------------------------------------------------------------------


def surf_source_matrix(
    geometry: Geometry,
    source_mesh: Mesh,
    integrator: Integrator,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> Matrix:
    """
    Coupling between a distributed source mesh and the head unknowns.

    The source mesh must lie inside a single domain of the geometry. It is
    indexed locally (columns are its vertices) and flagged as an outermost
    current barrier, so that only its vertices take part.

    Raises
    ------
    OverlappingSourceMesh
        If the source mesh vertices span several domains.
    """
    if not geometry.check(source_mesh):
        raise OverlappingSourceMesh(source_mesh.name)
    domain = geometry.domain(source_mesh.vertices[0].position)
    if not domain.conductive:
        raise GeometryError(f"source mesh {source_mesh.name!r} lies in non-conductive domain {domain.name!r}")

    for k, v in enumerate(source_mesh.vertices):
        v.index = k
    for k, t in enumerate(source_mesh.triangles):
        t.index = k
    source_mesh.outermost = True
    source_mesh.current_barrier = True

    log.info("Surface source matrix with %d source vertices in domain %r", source_mesh.nb_vertices(), domain.name)
    if logger is not None:
        logger.info("Surface source matrix.", mesh=source_mesh.name, domain=domain.name, nb_vertices=source_mesh.nb_vertices())

    mat = Matrix(geometry.dimension(), source_mesh.nb_vertices())
    L = -1.0 / domain.conductivity
    for boundary in domain.boundaries:
        factor_n = K if boundary.inside else -K
        for om in boundary.interface.oriented_meshes:
            block = NonDiagonalBlock(om.mesh, source_mesh, integrator, config, logger)
            coeff_n = factor_n * om.orientation
            block.set_N_block(coeff_n, mat)
            if not om.mesh.current_barrier:
                block.D(coeff_n * L, mat)
    return mat


def dipole_source_matrix(
    geometry: Geometry,
    dipoles,
    integrator: Integrator,
    domain_name: str = "",
    logger: Optional[JsonlLogger] = None,
) -> Matrix:
    """
    Right-hand side of the head system for current dipoles, one column per dipole.

    Dipoles in a zero-conductivity (or no) domain give a zero column.
    """
    dips = _as_dipoles(dipoles)
    mat = Matrix(geometry.dimension(), len(dips))
    for s, dipole in enumerate(dips):
        domain = _dipole_domain(geometry, dipole, domain_name)
        if domain is None or not domain.conductive:
            log.warning("Dipole %d is not inside a conductive domain; its column is left at zero.", s)
            continue
        if logger is not None:
            logger.debug("Dipole source.", dipole=s, domain=domain.name)
        for boundary in domain.boundaries:
            factor_d = K if boundary.inside else -K
            for om in boundary.interface.oriented_meshes:
                mesh = om.mesh
                coeff_d = factor_d * om.orientation
                vtx = mesh.tri_vertex_indices
                der = np.stack([integrator.integrate(AnalyticDipPotDer(dipole, t), t) for t in mesh.triangles])
                mat.add(vtx.reshape(-1), np.full(vtx.size, s), der.reshape(-1) * coeff_d)
                if not mesh.current_barrier:
                    pot_kernel = AnalyticDipPot(dipole)
                    pot = np.array([integrator.integrate(pot_kernel, t) for t in mesh.triangles])
                    mat.add(mesh.triangle_indices, np.full(pot.size, s), pot * (-coeff_d / domain.conductivity))
    return mat


# ---------------------------------------------------------------------------
# Point evaluation
# ---------------------------------------------------------------------------


def surf_to_vol_matrix(geometry: Geometry, points, logger: Optional[JsonlLogger] = None) -> Matrix:
    """
    Potential at interior points from the head unknowns.

    Points outside every conductive domain are dropped with a warning; the
    rows follow the order of the kept points.
    """
    pts, domains = _split_points(geometry, points, "surf_to_vol_matrix")
    mat = Matrix(pts.shape[0], geometry.dimension())

    groups: Dict[int, List[int]] = {}
    for k, d in enumerate(domains):
        groups.setdefault(id(d), []).append(k)
    for rows in groups.values():
        domain = domains[rows[0]]
        sub = pts[rows]
        for boundary in domain.boundaries:
            for om in boundary.interface.oriented_meshes:
                block = PartialBlock(om.mesh, logger)
                coeff = boundary.mesh_orientation(om) * K
                block.add_D(-coeff, sub, mat, rows=rows)
                if not om.mesh.current_barrier:
                    block.S(coeff / domain.conductivity, sub, mat, rows=rows)
    return mat


def dipole_to_internal_potential_matrix(
    geometry: Geometry,
    dipoles,
    points,
    domain_name: str = "",
) -> Matrix:
    """
    Infinite-medium dipole potential ``K/σ · dipole.potential(p)`` at interior
    points sharing the dipole's domain.
    """
    pts, domains = _split_points(geometry, points, "dipole_to_internal_potential_matrix")
    dips = _as_dipoles(dipoles)
    mat = Matrix(pts.shape[0], len(dips))
    for s, dipole in enumerate(dips):
        domain = _dipole_domain(geometry, dipole, domain_name)
        if domain is None or not domain.conductive:
            continue
        rows = [k for k, d in enumerate(domains) if d is domain]
        if not rows:
            continue
        vals = dipole.potential(pts[rows]) * (K / domain.conductivity)
        mat.add(rows, np.full(len(rows), s), vals)
    return mat
