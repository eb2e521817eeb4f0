from __future__ import annotations

import logging

import numpy as np
import pytest
import torch

from meegbem.core.analytics import AnalyticDipPot, Dipole
from meegbem.core.quadrature import Integrator
from meegbem.core.sources import (
    dipole_source_matrix,
    dipole_to_internal_potential_matrix,
    surf_source_matrix,
    surf_to_vol_matrix,
)
from meegbem.errors import OverlappingSourceMesh
from meegbem.geometry import icosphere, nested_spheres
from meegbem.utils.config import K, AssemblyConfig

SERIAL = AssemblyConfig(num_workers=1)


def _build_head():
    return nested_spheres([0.8, 0.9, 1.0], [1.0, 0.0125, 1.0, 0.0])


def _mesh_rows(g, name):
    m = g.mesh(name)
    rows = list(m.vertex_indices)
    if not m.current_barrier:
        rows += list(m.triangle_indices)
    return torch.as_tensor(rows)


def _vertex_ray(g):
    """Unit vector along a vertex of the shells; each shell is crossed at its radius."""
    return g.mesh("shell0").points[0] / 0.8


def test_surf_source_matrix_couples_only_the_enclosing_domain():
    g = _build_head()
    source = icosphere(0.3, name="source")
    M = surf_source_matrix(g, source, Integrator(), config=SERIAL)
    assert M.shape == (g.dimension(), source.nb_vertices())
    assert source.outermost and source.current_barrier
    assert list(source.vertex_indices) == list(range(12))

    dense = M.to_dense()
    assert float(dense[_mesh_rows(g, "shell0")].abs().max()) > 0.0
    assert float(dense[_mesh_rows(g, "shell1")].abs().max()) == 0.0
    assert float(dense[_mesh_rows(g, "shell2")].abs().max()) == 0.0


def test_surf_source_matrix_rejects_crossing_mesh():
    g = _build_head()
    crossing = icosphere(0.3, center=(0.7, 0.0, 0.0), name="crossing")
    with pytest.raises(OverlappingSourceMesh) as excinfo:
        surf_source_matrix(g, crossing, Integrator())
    assert excinfo.value.mesh_name == "crossing"


def test_dipole_source_matrix_columns():
    g = _build_head()
    integ = Integrator()
    u = _vertex_ray(g)
    dipoles = np.array(
        [
            [0.0, 0.0, 0.1, 0.0, 0.0, 1.0],
            [*(0.95 * u), 1.0, 0.0, 0.0],
            [*(3.0 * u), 0.0, 1.0, 0.0],
        ]
    )
    M = dipole_source_matrix(g, dipoles, integ)
    assert M.shape == (g.dimension(), 3)
    dense = M.to_dense()

    # dipole in the brain only sees the brain surface
    assert float(dense[_mesh_rows(g, "shell0"), 0].abs().max()) > 0.0
    assert float(dense[_mesh_rows(g, "shell1"), 0].abs().max()) == 0.0
    # dipole between skull and scalp sees both
    assert float(dense[_mesh_rows(g, "shell1"), 1].abs().max()) > 0.0
    assert float(dense[torch.as_tensor(g.mesh("shell2").vertex_indices), 1].abs().max()) > 0.0
    # dipole in the air gives a zero column
    assert float(dense[:, 2].abs().max()) == 0.0

    brain = g.mesh("shell0")
    t = brain.triangles[5]
    dip = Dipole.from_row(dipoles[0])
    expected = -K / 1.0 * integ.integrate(AnalyticDipPot(dip), t)
    assert M[t.index, 0] == pytest.approx(expected, rel=1e-12)


def test_dipole_source_matrix_with_forced_domain():
    g = _build_head()
    dipoles = [[0.0, 0.0, 0.1, 0.0, 0.0, 1.0]]
    a = dipole_source_matrix(g, dipoles, Integrator(), domain_name="domain0")
    b = dipole_source_matrix(g, dipoles, Integrator())
    assert torch.equal(a.to_dense(), b.to_dense())
    with pytest.raises(ValueError):
        dipole_source_matrix(g, [[0.0, 0.0, 0.0]], Integrator())


def test_surf_to_vol_matrix_reproduces_constant_potential(caplog):
    g = _build_head()
    u = _vertex_ray(g)
    points = np.array([[0.0, 0.0, 0.1], 0.85 * u, 3.0 * u])
    with caplog.at_level(logging.WARNING, logger="meegbem.core.sources"):
        M = surf_to_vol_matrix(g, points)
    assert "dropped" in caplog.text
    assert M.shape == (2, g.dimension())

    dense = M.to_dense()
    v0 = torch.as_tensor(g.mesh("shell0").vertex_indices)
    v1 = torch.as_tensor(g.mesh("shell1").vertex_indices)
    # a unit potential on the enclosing surface, no current: the point sees 1
    assert float(dense[0, v0].sum()) == pytest.approx(1.0, rel=1e-10)
    assert float(dense[0, v1].abs().max()) == 0.0
    assert float(dense[1, v1].sum()) == pytest.approx(1.0, rel=1e-10)
    assert float(dense[1, v0].sum()) == pytest.approx(0.0, abs=1e-10)
    # single layer of the skull domain carries 1/σ
    t1 = torch.as_tensor(g.mesh("shell1").triangle_indices)
    assert float(dense[1, t1].min()) > 0.0


def test_dipole_to_internal_potential_matrix():
    g = _build_head()
    u = _vertex_ray(g)
    points = np.array([[0.0, 0.0, 0.4], 0.85 * u, [0.1, 0.0, 0.0]])
    dipoles = np.array([[0.0, 0.0, 0.0, 0.0, 0.0, 2.0], [*(0.86 * u), 1.0, 0.0, 0.0]])
    M = dipole_to_internal_potential_matrix(g, dipoles, points)
    assert M.shape == (3, 2)
    assert M[0, 0] == pytest.approx(K * 2.0 / 0.4 ** 2)
    assert M[1, 0] == 0.0
    assert M[2, 0] == pytest.approx(0.0, abs=1e-12)

    d = 0.85 * u - 0.86 * u
    expected = K / 0.0125 * float(np.dot(d, [1.0, 0.0, 0.0])) / np.linalg.norm(d) ** 3
    assert M[1, 1] == pytest.approx(expected)
    assert M[0, 1] == 0.0
