"""
Operator block engine.

Fills the S, N, D and D* blocks of one mesh (:class:`DiagonalBlock`) or of
a pair of meshes (:class:`NonDiagonalBlock`) into any matrix sink, plus the
point-set operators of :class:`PartialBlock`.

  - S(T1, T2)  = coeff · ∫_T2 AnalyticS(T1)
  - D(T1, v)  += coeff · ∫_T1 AnalyticD3(T2)_i,  v = T2.vertex(i)
  - N(V1, V2) += coeff · -factor · Σ_{T1∋V1, T2∋V2} (CB1·CB2) S(T1, T2) / (A1 A2)

where CB is the edge of the triangle opposite to the vertex, taken in
cyclic order. Same-mesh S only computes T2 ≥ T1 and same-mesh N only
V2 ≤ V1 (symmetric storage). The outer loop of every operator is run
through :func:`~meegbem.core.parallel.run_rows`.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from meegbem.core.analytics import AnalyticD3, AnalyticS
from meegbem.core.parallel import run_rows
from meegbem.core.quadrature import Integrator
from meegbem.geometry.mesh import Mesh, Triangle
from meegbem.maths.dense import BlockView, Matrix, MatrixSink
from meegbem.maths.symmatrix import SymMatrix
from meegbem.utils.config import AssemblyConfig
from meegbem.utils.logging import JsonlLogger

__all__ = [
    "DiagonalBlock",
    "NonDiagonalBlock",
    "PartialBlock",
    "add_identity",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Incidence tables
# ---------------------------------------------------------------------------


class _Incidence:
    """
    Flattened (vertex, triangle) incidences of a mesh.

    Entry k relates local vertex ``vertex[k]`` to one of its incident
    triangles and to the opposite edge vector ``cb[k] = next - next_next``.
    Entries are grouped by local vertex index.
    """

    def __init__(self, mesh: Mesh):
        vert, tri_global, cb, area = [], [], [], []
        for k, v in enumerate(mesh.vertices):
            for t in mesh.incident_triangles(v):
                b, c = t.edge(v)
                vert.append(k)
                tri_global.append(t.index)
                cb.append(b.position - c.position)
                area.append(t.area)

        self.vertex = np.asarray(vert, dtype=np.int64)
        self.tri_global = np.asarray(tri_global, dtype=np.int64)
        self.cb = np.asarray(cb, dtype=float).reshape(-1, 3)
        self.area = np.asarray(area, dtype=float)
        self.vertex_global = mesh.vertex_indices
        self.vertex_objects = mesh.vertices
        bounds = np.searchsorted(self.vertex, np.arange(mesh.nb_vertices() + 1))
        self.start = bounds[:-1]
        self.stop = bounds[1:]

    def of(self, v: int) -> slice:
        return slice(int(self.start[v]), int(self.stop[v]))


# ---------------------------------------------------------------------------
# Shared machinery
# ---------------------------------------------------------------------------


class BlocksBase:
    """Integrator, execution policy and logging shared by operator blocks."""

    def __init__(
        self,
        integrator: Integrator,
        config: Optional[AssemblyConfig] = None,
        jsonl: Optional[JsonlLogger] = None,
    ):
        self.integrator = integrator
        self.config = config if config is not None else AssemblyConfig()
        self.jsonl = jsonl

    def _message(self, op: str, mesh1: Mesh, mesh2: Optional[Mesh] = None) -> None:
        names = [mesh1.name] if mesh2 is None else [mesh1.name, mesh2.name]
        logger.debug("Operator %s on %s", op, ", ".join(names))
        if self.jsonl is not None:
            self.jsonl.info("Operator block.", op=op, meshes=names)

    def _run(self, n: int, compute, write, desc: str) -> None:
        run_rows(
            n,
            compute,
            write,
            self.config.resolved_workers(),
            progress=self.config.progress,
            desc=desc,
        )

    # ----- S -----
    def _S(self, tris1: Sequence[Triangle], tris2: Sequence[Triangle], coeff: float, matrix: MatrixSink, same: bool) -> None:
        integrate = self.integrator.integrate
        cols_all = np.array([t.index for t in tris2], dtype=np.int64)

        def compute(i: int) -> np.ndarray:
            kernel = AnalyticS(tris1[i])
            start = i if same else 0
            return np.array([integrate(kernel, t2) for t2 in tris2[start:]]) * coeff

        def write(i: int, vals: np.ndarray) -> None:
            cols = cols_all[i:] if same else cols_all
            matrix.set(np.full(cols.size, tris1[i].index), cols, vals)

        self._run(len(tris1), compute, write, "S")

    # ----- D -----
    def _D(self, tris1: Sequence[Triangle], tris2: Sequence[Triangle], coeff: float, matrix: MatrixSink) -> None:
        integrate = self.integrator.integrate
        kernels = [AnalyticD3(t2) for t2 in tris2]
        cols = np.array([[v.index for v in t2.vertices] for t2 in tris2], dtype=np.int64).reshape(-1)
        ucols, inverse = np.unique(cols, return_inverse=True)

        def compute(i: int) -> np.ndarray:
            t1 = tris1[i]
            # principal value of a triangle on itself is zero
            totals = np.concatenate([np.zeros(3) if t2 is t1 else integrate(k, t1) for k, t2 in zip(kernels, tris2)])
            return np.bincount(inverse, weights=totals, minlength=ucols.size) * coeff

        def write(i: int, vals: np.ndarray) -> None:
            matrix.add(np.full(ucols.size, tris1[i].index), ucols, vals)

        self._run(len(tris1), compute, write, "D")

    # ----- N -----
    def _N(
        self,
        mesh1: Mesh,
        mesh2: Mesh,
        coeff: float,
        S: MatrixSink,
        matrix: MatrixSink,
        same: bool,
    ) -> None:
        inc1 = _Incidence(mesh1)
        inc2 = inc1 if same else _Incidence(mesh2)
        n2 = mesh2.nb_vertices()
        shared = {} if same else {id(v): k for k, v in enumerate(mesh2.vertices)}

        def compute(i: int) -> np.ndarray:
            s1 = inc1.of(i)
            t1 = inc1.tri_global[s1]
            stop2 = int(inc2.stop[i]) if same else inc2.vertex.size
            t2 = inc2.tri_global[:stop2]
            vals = S.get(np.repeat(t1, t2.size), np.tile(t2, t1.size)).numpy().reshape(t1.size, t2.size)
            dots = inc1.cb[s1] @ inc2.cb[:stop2].T
            w = (dots * vals / (inc1.area[s1][:, None] * inc2.area[None, :stop2])).sum(axis=0)
            ncols = i + 1 if same else n2
            out = np.bincount(inc2.vertex[:stop2], weights=w, minlength=ncols)[:ncols]
            factor = np.full(ncols, 0.25)
            k = shared.get(id(inc1.vertex_objects[i]))
            if k is not None:
                factor[k] = 0.5
            return -factor * out * coeff

        def write(i: int, vals: np.ndarray) -> None:
            cols = inc2.vertex_global[: vals.size]
            matrix.add(np.full(vals.size, inc1.vertex_global[i]), cols, vals)

        self._run(mesh1.nb_vertices(), compute, write, "N")


def add_identity(mesh: Mesh, coeff: float, matrix: MatrixSink) -> None:
    """``matrix(T, V) += coeff · area(T) / 3`` for every vertex V of every triangle T."""
    rows = np.repeat(mesh.triangle_indices, 3)
    cols = mesh.tri_vertex_indices.reshape(-1)
    matrix.add(rows, cols, np.repeat(mesh.areas / 3.0, 3) * coeff)


# ---------------------------------------------------------------------------
# Same-mesh block
# ---------------------------------------------------------------------------


class DiagonalBlock(BlocksBase):
    """
    Operators of one mesh against itself.

    On a current-barrier mesh S and D are skipped (its triangles are not
    unknowns); D* is always the transpose of D and never written.
    """

    def __init__(self, mesh: Mesh, integrator: Integrator, config: Optional[AssemblyConfig] = None, jsonl: Optional[JsonlLogger] = None):
        super().__init__(integrator, config, jsonl)
        self.mesh = mesh
        self.scoeff: Optional[float] = None

    def set_S_block(self, coeff: float, matrix: MatrixSink) -> None:
        if not self.mesh.current_barrier:
            self.S(coeff, matrix)
            self.scoeff = coeff

    def set_N_block(self, coeff: float, matrix: MatrixSink) -> None:
        self.N(coeff, matrix)

    def set_D_block(self, coeff: float, matrix: MatrixSink) -> None:
        if not self.mesh.current_barrier:
            self.D(coeff, matrix)

    def set_Dstar_block(self, coeff: float, matrix: MatrixSink) -> None:
        pass

    def add_identity(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("Id", self.mesh)
        add_identity(self.mesh, coeff, matrix)

    def S(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("S", self.mesh, self.mesh)
        self._S(self.mesh.triangles, self.mesh.triangles, coeff, matrix, same=True)

    def N(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("N", self.mesh, self.mesh)
        if self.scoeff:
            self._N(self.mesh, self.mesh, coeff / self.scoeff, matrix, matrix, same=True)
            return
        t0 = int(self.mesh.triangle_indices[0])
        local = BlockView(SymMatrix(self.mesh.nb_triangles()), t0, t0)
        self._S(self.mesh.triangles, self.mesh.triangles, 1.0, local, same=True)
        self._N(self.mesh, self.mesh, coeff, local, matrix, same=True)

    def D(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("D", self.mesh, self.mesh)
        self._D(self.mesh.triangles, self.mesh.triangles, coeff, matrix)

    def Dstar(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("D*", self.mesh, self.mesh)
        self._D(self.mesh.triangles, self.mesh.triangles, coeff, matrix)


# ---------------------------------------------------------------------------
# Two-mesh block
# ---------------------------------------------------------------------------


class NonDiagonalBlock(BlocksBase):
    """
    Operators between two meshes.

    S is skipped if either mesh is a current barrier, D if ``mesh1`` is,
    D* if ``mesh2`` is or if both meshes are the same.
    """

    def __init__(
        self,
        mesh1: Mesh,
        mesh2: Mesh,
        integrator: Integrator,
        config: Optional[AssemblyConfig] = None,
        jsonl: Optional[JsonlLogger] = None,
    ):
        super().__init__(integrator, config, jsonl)
        self.mesh1 = mesh1
        self.mesh2 = mesh2
        self.scoeff: Optional[float] = None

    def set_S_block(self, coeff: float, matrix: MatrixSink) -> None:
        if not self.mesh1.current_barrier and not self.mesh2.current_barrier:
            self.S(coeff, matrix)
            self.scoeff = coeff

    def set_N_block(self, coeff: float, matrix: MatrixSink) -> None:
        self.N(coeff, matrix)

    def set_D_block(self, coeff: float, matrix: MatrixSink) -> None:
        if not self.mesh1.current_barrier:
            self.D(coeff, matrix)

    def set_Dstar_block(self, coeff: float, matrix: MatrixSink) -> None:
        if self.mesh1 is not self.mesh2 and not self.mesh2.current_barrier:
            self.Dstar(coeff, matrix)

    def S(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("S", self.mesh1, self.mesh2)
        self._S(self.mesh1.triangles, self.mesh2.triangles, coeff, matrix, same=False)

    def N(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("N", self.mesh1, self.mesh2)
        if self.scoeff:
            self._N(self.mesh1, self.mesh2, coeff / self.scoeff, matrix, matrix, same=False)
            return
        local = BlockView(
            Matrix(self.mesh1.nb_triangles(), self.mesh2.nb_triangles()),
            int(self.mesh1.triangle_indices[0]),
            int(self.mesh2.triangle_indices[0]),
        )
        self._S(self.mesh1.triangles, self.mesh2.triangles, 1.0, local, same=False)
        self._N(self.mesh1, self.mesh2, coeff, local, matrix, same=False)

    def D(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("D", self.mesh1, self.mesh2)
        self._D(self.mesh1.triangles, self.mesh2.triangles, coeff, matrix)

    def Dstar(self, coeff: float, matrix: MatrixSink) -> None:
        self._message("D*", self.mesh1, self.mesh2)
        self._D(self.mesh2.triangles, self.mesh1.triangles, coeff, matrix)


# ---------------------------------------------------------------------------
# Point-set operators
# ---------------------------------------------------------------------------


class PartialBlock:
    """
    Operators of a mesh evaluated at arbitrary points, without quadrature.

    Row ``rows[p]`` of the target matrix receives the contribution at
    ``points[p]``; ``rows`` defaults to ``0..P-1``.
    """

    def __init__(self, mesh: Mesh, jsonl: Optional[JsonlLogger] = None):
        self.mesh = mesh
        self.jsonl = jsonl

    @staticmethod
    def _rows(points: np.ndarray, rows: Optional[Sequence[int]]) -> np.ndarray:
        if rows is None:
            return np.arange(points.shape[0], dtype=np.int64)
        r = np.asarray(rows, dtype=np.int64)
        if r.shape != (points.shape[0],):
            raise ValueError("one row index per point is required")
        return r

    def _message(self, op: str, npoints: int) -> None:
        logger.debug("Partial operator %s on %s (%d points)", op, self.mesh.name, npoints)
        if self.jsonl is not None:
            self.jsonl.info("Partial operator block.", op=op, mesh=self.mesh.name, points=npoints)

    def add_D(self, coeff: float, points, matrix: MatrixSink, rows: Optional[Sequence[int]] = None) -> None:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        r = self._rows(pts, rows)
        self._message("D", pts.shape[0])
        rr = np.repeat(r, 3)
        for t in self.mesh.triangles:
            vals = AnalyticD3(t)(pts) * coeff
            cols = np.tile([v.index for v in t.vertices], pts.shape[0])
            matrix.add(rr, cols, vals.reshape(-1))

    def S(self, coeff: float, points, matrix: MatrixSink, rows: Optional[Sequence[int]] = None) -> None:
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        r = self._rows(pts, rows)
        self._message("S", pts.shape[0])
        for t in self.mesh.triangles:
            matrix.add(r, np.full(r.size, t.index), AnalyticS(t)(pts) * coeff)
