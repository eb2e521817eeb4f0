from __future__ import annotations

import numpy as np
import pytest
import torch

from meegbem.core.operators import DiagonalBlock, NonDiagonalBlock, PartialBlock, add_identity
from meegbem.core.quadrature import Integrator
from meegbem.geometry import nested_spheres
from meegbem.maths.dense import Matrix
from meegbem.maths.symmatrix import SymMatrix
from meegbem.utils.config import K, AssemblyConfig

SERIAL = AssemblyConfig(num_workers=1)


def _build_single_shell(outer_sigma: float = 1.0):
    g = nested_spheres([1.0], [1.0, outer_sigma])
    return g, g.mesh("shell0")


def _triangle_row_sums(M: Matrix, tris, cols) -> np.ndarray:
    dense = M.to_dense().numpy()
    return dense[np.ix_(tris, cols)].sum(axis=1)


def test_double_layer_closure_on_two_shells():
    g = nested_spheres([0.5, 1.0], [1.0, 1.0, 1.0])
    assert g.dimension() == g.nb_vertices() + g.nb_triangles() == 64
    inner, outer = g.mesh("shell0"), g.mesh("shell1")
    integ = Integrator()

    M = Matrix(g.dimension(), g.dimension())
    DiagonalBlock(inner, integ, SERIAL).D(1.0, M)
    sums = _triangle_row_sums(M, inner.triangle_indices, inner.vertex_indices)
    assert np.allclose(K * sums / inner.areas, -0.5, atol=1e-4)

    # inner triangles see the whole outer shell, outer triangles see none of the inner one
    C = Matrix(g.dimension(), g.dimension())
    NonDiagonalBlock(inner, outer, integ, SERIAL).D(1.0, C)
    sums = _triangle_row_sums(C, inner.triangle_indices, outer.vertex_indices)
    assert np.allclose(K * sums / inner.areas, -1.0, atol=1e-4)

    C = Matrix(g.dimension(), g.dimension())
    NonDiagonalBlock(inner, outer, integ, SERIAL).Dstar(1.0, C)
    sums = _triangle_row_sums(C, outer.triangle_indices, inner.vertex_indices)
    assert np.allclose(K * sums / outer.areas, 0.0, atol=1e-4)


def test_hypersingular_reuses_cached_single_layer():
    g, mesh = _build_single_shell()
    n = g.dimension()
    integ = Integrator()

    cached = SymMatrix(n)
    block = DiagonalBlock(mesh, integ, SERIAL)
    block.set_S_block(0.7, cached)
    assert block.scoeff == 0.7
    block.set_N_block(1.3, cached)

    fresh = SymMatrix(n)
    other = DiagonalBlock(mesh, integ, SERIAL)
    other.set_N_block(1.3, fresh)
    assert other.scoeff is None

    nv = mesh.nb_vertices()
    a = cached.submat(0, nv, 0, nv).to_dense()
    b = fresh.submat(0, nv, 0, nv).to_dense()
    assert torch.allclose(a, b, rtol=1e-12, atol=1e-12 * float(b.abs().max()))
    # the temporary single layer never reaches the target
    assert float(fresh.to_dense()[nv:, nv:].abs().max()) == 0.0
    assert float(b.abs().max()) > 0.0


def test_hypersingular_annihilates_constants():
    g, mesh = _build_single_shell()
    M = SymMatrix(g.dimension())
    DiagonalBlock(mesh, Integrator(), SERIAL).N(1.0, M)
    nv = mesh.nb_vertices()
    block = M.submat(0, nv, 0, nv).to_dense()
    residual = block @ torch.ones(nv, dtype=torch.float64)
    assert float(residual.abs().max()) <= 1e-10 * float(block.abs().max())


def test_cross_mesh_hypersingular_doubles_shared_vertices():
    g, mesh = _build_single_shell()
    integ = Integrator()
    nv = mesh.nb_vertices()

    same = Matrix(g.dimension(), g.dimension())
    DiagonalBlock(mesh, integ, SERIAL).N(1.0, same)
    cross = Matrix(g.dimension(), g.dimension())
    NonDiagonalBlock(mesh, mesh, integ, SERIAL).N(1.0, cross)

    s = same.to_dense()[:nv, :nv]
    c = cross.to_dense()[:nv, :nv]
    scale = float(c.abs().max())
    assert torch.allclose(torch.diagonal(c), 2.0 * torch.diagonal(s), atol=1e-3 * scale)
    r, col = torch.tril_indices(nv, nv, offset=-1)
    assert torch.allclose(c[r, col], s[r, col], atol=1e-3 * scale)
    # the same-mesh block only fills V2 <= V1
    assert float(s[col, r].abs().max()) == 0.0


def test_barrier_mesh_skips_single_and_double_layer():
    g, mesh = _build_single_shell(outer_sigma=0.0)
    assert mesh.current_barrier
    assert g.dimension() == mesh.nb_vertices()

    M = SymMatrix(g.dimension())
    block = DiagonalBlock(mesh, Integrator(), SERIAL)
    block.set_S_block(1.0, M)
    block.set_D_block(1.0, M)
    block.set_Dstar_block(1.0, M)
    assert block.scoeff is None
    assert float(M.to_dense().abs().max()) == 0.0
    block.set_N_block(1.0, M)
    assert float(M.to_dense().abs().max()) > 0.0


def test_add_identity():
    g, mesh = _build_single_shell()
    M = Matrix(g.dimension(), g.dimension())
    add_identity(mesh, 2.0, M)
    DiagonalBlock(mesh, Integrator(), SERIAL).add_identity(1.0, M)
    sums = _triangle_row_sums(M, mesh.triangle_indices, mesh.vertex_indices)
    assert np.allclose(sums, 3.0 * mesh.areas)
    t = mesh.triangles[0]
    assert M[t.index, t.vertices[0].index] == pytest.approx(t.area)


def test_partial_block_rows():
    g, mesh = _build_single_shell()
    pts = np.array([[0.0, 0.0, 0.0], [0.1, 0.2, -0.1]])
    M = Matrix(4, g.dimension())
    block = PartialBlock(mesh)
    block.add_D(1.0, pts, M, rows=[3, 1])
    block.S(1.0, pts, M, rows=[3, 1])
    nv = mesh.nb_vertices()
    dense = M.to_dense()
    assert float(dense[[0, 2]].abs().max()) == 0.0
    # Σ D3 over a closed outward surface seen from inside is -4π
    assert float(dense[3, :nv].sum()) == pytest.approx(-4.0 * np.pi, rel=1e-10)
    assert float(dense[1, nv:].min()) > 0.0
    with pytest.raises(ValueError):
        block.add_D(1.0, pts, M, rows=[0])
