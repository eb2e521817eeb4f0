"""
Head-matrix orchestration and deflation.

For every pair of meshes communicating through a conductive domain the
orchestrator computes

    factor = relative_orientation · K,          K = 1 / (4π)
    S coeff =  factor · Σ 1/σ
    N coeff =  factor · Σ σ
    D coeff = -factor · Σ 1

(sums over the conductive domains bounded by both meshes) and lets the
operator block engine write S, N, D and D* in that order into the chosen
matrix layout. The result is deflated once so that floating conductors
no longer make it singular.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Union

import torch

from meegbem.core.operators import DiagonalBlock, NonDiagonalBlock
from meegbem.core.quadrature import Integrator
from meegbem.geometry.geometry import Geometry, Interface, MeshPair
from meegbem.geometry.mesh import Mesh
from meegbem.maths.block import SymmetricBlockMatrix
from meegbem.maths.dense import Matrix, MatrixSink
from meegbem.maths.symmatrix import SymMatrix
from meegbem.utils.config import K, AssemblyConfig
from meegbem.utils.logging import JsonlLogger

__all__ = [
    "all_blocks",
    "all_but_block",
    "head_matrix",
    "cortical_head_matrix",
    "deflate",
    "SymMatrixLayout",
    "SymmetricBlockLayout",
]

log = logging.getLogger(__name__)

Selector = Callable[[Mesh, Mesh], bool]


# ---------------------------------------------------------------------------
# Selectors: return True to *disable* the block of a mesh pair
# ---------------------------------------------------------------------------


def all_blocks(mesh1: Mesh, mesh2: Mesh) -> bool:
    return False


def all_but_block(mesh: Mesh) -> Selector:
    """Disable only the self block of ``mesh``."""

    def selector(mesh1: Mesh, mesh2: Mesh) -> bool:
        return mesh1 is mesh and mesh2 is mesh

    return selector


# ---------------------------------------------------------------------------
# Layouts
# ---------------------------------------------------------------------------


class SymMatrixLayout:
    """Packed symmetric storage, allocated at once and zero-filled."""

    name = "symmetric"

    @staticmethod
    def allocate(n: int) -> SymMatrix:
        return SymMatrix(n)

    @staticmethod
    def declare(matrix: SymMatrix, pair: MeshPair) -> None:
        pass


class SymmetricBlockLayout:
    """Block storage: only the S / N / D / D* blocks of each pair are allocated."""

    name = "block"

    @staticmethod
    def allocate(n: int) -> SymmetricBlockMatrix:
        return SymmetricBlockMatrix(n)

    @staticmethod
    def declare(matrix: SymmetricBlockMatrix, pair: MeshPair) -> None:
        m1, m2 = pair.mesh1, pair.mesh2
        v1, v2 = m1.vertices_range(), m2.vertices_range()
        if not m1.current_barrier and not m2.current_barrier:
            matrix.add_block(m1.triangles_range(), m2.triangles_range())
        matrix.add_block(v1, v2)
        if not m1.current_barrier:
            matrix.add_block(m1.triangles_range(), v2)
        if m1 is not m2 and not m2.current_barrier:
            matrix.add_block(m2.triangles_range(), v1)


_LAYOUTS = {
    SymMatrixLayout.name: SymMatrixLayout,
    SymmetricBlockLayout.name: SymmetricBlockLayout,
}


# ---------------------------------------------------------------------------
# Deflation
# ---------------------------------------------------------------------------


def deflate(matrix: MatrixSink, geometry: Geometry, jsonl: Optional[JsonlLogger] = None) -> None:
    """
    Remove the constant-potential null space of every isolated part.

    For each part having outermost meshes, ``coef = M(i0, i0) / nv`` (i0 the
    first vertex of the first outermost mesh, nv the number of vertices of
    all outermost meshes of the part) is added to every vertex pair of each
    outermost mesh. Symmetric sinks receive each unordered pair once.
    """
    _deflate_isolated_parts(matrix, geometry, jsonl)


def _deflate_isolated_parts(matrix: MatrixSink, geometry: Geometry, jsonl: Optional[JsonlLogger]) -> None:
    for part in geometry.isolated_parts():
        outer = [m for m in part if m.outermost]
        if not outer:
            log.debug("Part %s has no outermost mesh; not deflated.", [m.name for m in part])
            continue
        nb_vertices = sum(m.nb_vertices() for m in outer)
        i0 = int(outer[0].vertex_indices[0])
        coef = matrix[i0, i0] / nb_vertices
        for m in outer:
            idx = torch.as_tensor(m.vertex_indices)
            n = idx.numel()
            if getattr(matrix, "symmetric", False):
                r, c = torch.triu_indices(n, n)
            else:
                r = torch.arange(n).repeat_interleave(n)
                c = torch.arange(n).repeat(n)
            matrix.add(idx[r], idx[c], coef)
        if jsonl is not None:
            jsonl.info("Deflation.", meshes=[m.name for m in outer], coef=coef, nb_vertices=nb_vertices)


# ---------------------------------------------------------------------------
# Head matrix
# ---------------------------------------------------------------------------


def head_matrix(
    geometry: Geometry,
    integrator: Integrator,
    layout: str = "symmetric",
    selector: Selector = all_blocks,
    deflate: bool = True,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> Union[SymMatrix, SymmetricBlockMatrix]:
    """
    Assemble the symmetric BEM head matrix.

    Parameters
    ----------
    geometry : Geometry
        Read-only during assembly.
    integrator : Integrator
        Quadrature used for S and D.
    layout : {"symmetric", "block"}
        Packed :class:`SymMatrix` or :class:`SymmetricBlockMatrix`.
    selector : callable
        ``selector(mesh1, mesh2) -> True`` skips the pair.
    deflate : bool
        Apply :func:`deflate` after all pairs.
    config : AssemblyConfig, optional
        Worker count and progress display; defaults to the environment.
    logger : JsonlLogger, optional
        Structured event sink.

    Returns
    -------
    SymMatrix or SymmetricBlockMatrix
        Of dimension ``nb_parameters - nb_current_barrier_triangles``.
    """
    try:
        lay = _LAYOUTS[layout]
    except KeyError:
        raise ValueError(f"unknown layout {layout!r}; expected one of {sorted(_LAYOUTS)}") from None
    config = config if config is not None else AssemblyConfig.from_env()
    jsonl = logger

    n = geometry.dimension()
    matrix = lay.allocate(n)
    if jsonl is not None:
        jsonl.phase_start("head_matrix", dimension=n, layout=lay.name, integrator=repr(integrator), workers=config.resolved_workers())
    t0 = time.perf_counter()

    for pair in geometry.communicating_mesh_pairs():
        mesh1, mesh2 = pair.mesh1, pair.mesh2
        if selector(mesh1, mesh2):
            continue
        lay.declare(matrix, pair)

        factor = pair.orientation * K
        s_coeff = factor * geometry.sigma_inv(mesh1, mesh2)
        n_coeff = factor * geometry.sigma(mesh1, mesh2)
        d_coeff = -factor * geometry.indicator(mesh1, mesh2)
        if jsonl is not None:
            jsonl.info("Mesh pair.", meshes=[mesh1.name, mesh2.name], orientation=pair.orientation, S=s_coeff, N=n_coeff, D=d_coeff)

        if mesh1 is mesh2:
            block = DiagonalBlock(mesh1, integrator, config, jsonl)
        else:
            block = NonDiagonalBlock(mesh1, mesh2, integrator, config, jsonl)
        block.set_S_block(s_coeff, matrix)
        block.set_N_block(n_coeff, matrix)
        block.set_D_block(d_coeff, matrix)
        block.set_Dstar_block(d_coeff, matrix)

    if deflate:
        _deflate_isolated_parts(matrix, geometry, jsonl)

    elapsed = time.perf_counter() - t0
    log.info("Head matrix %dx%d assembled in %.2fs", n, n, elapsed)
    if jsonl is not None:
        jsonl.phase_end("head_matrix", seconds=elapsed)
    return matrix


def cortical_head_matrix(
    geometry: Geometry,
    cortex_interface: Interface,
    integrator: Integrator,
    extension: int = 0,
    config: Optional[AssemblyConfig] = None,
    logger: Optional[JsonlLogger] = None,
) -> Matrix:
    """
    Head matrix without the cortex rows, for cortical mapping.

    The cortex self block is left out of the assembly; every row belonging
    to another mesh (its vertices, then its triangles if it is not a current
    barrier) is copied, in mesh order, into a dense matrix followed by
    ``extension`` zero rows.
    """
    if not cortex_interface.oriented_meshes:
        raise ValueError(f"interface {cortex_interface.name!r} has no mesh")
    cortex = cortex_interface.oriented_meshes[0].mesh
    sym = head_matrix(geometry, integrator, selector=all_but_block(cortex), config=config, logger=logger)
    dense = sym.to_dense()

    rows = []
    for mesh in geometry.meshes:
        if mesh is cortex:
            continue
        rows.extend(mesh.vertex_indices.tolist())
        if not mesh.current_barrier:
            rows.extend(mesh.triangle_indices.tolist())

    out = Matrix(len(rows) + int(extension), dense.shape[1])
    if rows:
        out.data[: len(rows)] = dense[torch.as_tensor(rows)]
    return out

