from __future__ import annotations

import logging

import numpy as np
import pytest

from meegbem.errors import GeometryError
from meegbem.geometry import Geometry, Interface, OrientedMesh, icosphere, nested_spheres
from meegbem.geometry.mesh import Mesh

# Classic three-layer head: brain, skull, scalp, air outside.
HEAD_RADII = [0.8, 0.9, 1.0]
HEAD_SIGMAS = [1.0, 0.0125, 1.0, 0.0]


def _build_head() -> Geometry:
    return nested_spheres(HEAD_RADII, HEAD_SIGMAS)


def test_icosphere_is_closed_and_outward():
    m = icosphere(2.0, subdivisions=1)
    assert m.nb_vertices() == 42
    assert m.nb_triangles() == 80
    assert np.allclose(np.linalg.norm(m.points, axis=1), 2.0)
    # the whole surface subtends 4π from inside, nothing from outside
    assert m.solid_angle_sum([0.1, 0.0, 0.2]) == pytest.approx(4.0 * np.pi)
    assert m.solid_angle_sum([5.0, 0.0, 0.0]) == pytest.approx(0.0, abs=1e-10)
    assert m.total_area() < 4.0 * np.pi * 4.0


def test_mesh_rejects_degenerate_triangles():
    pts = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
    with pytest.raises(ValueError):
        Mesh.from_arrays("flat", pts, [[0, 1, 2]])


def test_index_assignment_vertices_then_triangles():
    g = _build_head()
    assert g.nb_vertices() == 36
    assert g.nb_triangles() == 60
    assert g.nb_parameters() == 96
    assert g.nb_current_barrier_triangles() == 20
    assert g.dimension() == 76

    scalp = g.mesh("shell2")
    assert scalp.current_barrier and scalp.outermost
    assert list(g.mesh("shell0").vertex_indices) == list(range(12))
    assert list(g.mesh("shell2").vertex_indices) == list(range(24, 36))
    # non-barrier triangles come first, barrier triangles land past the dimension
    assert g.mesh("shell0").triangle_indices[0] == 36
    assert g.mesh("shell1").triangle_indices[-1] == 75
    assert scalp.triangle_indices.min() == 76
    assert g.mesh("shell1").vertices_range().start == 12
    assert len(g.mesh("shell1").triangles_range()) == 20


def test_conductivity_weights_and_orientation():
    g = _build_head()
    brain, skull, scalp = (g.mesh(n) for n in ("shell0", "shell1", "shell2"))
    assert g.sigma(brain, brain) == pytest.approx(1.0 + 0.0125)
    assert g.sigma_inv(brain, skull) == pytest.approx(1.0 / 0.0125)
    assert g.indicator(brain, brain) == 2.0
    assert g.indicator(scalp, scalp) == 1.0
    assert g.relative_orientation(brain, skull) == -1
    assert g.relative_orientation(skull, skull) == 1
    with pytest.raises(GeometryError):
        g.relative_orientation(brain, scalp)

    pairs = [(p.mesh1.name, p.mesh2.name) for p in g.communicating_mesh_pairs()]
    assert pairs == [
        ("shell0", "shell0"),
        ("shell0", "shell1"),
        ("shell1", "shell1"),
        ("shell1", "shell2"),
        ("shell2", "shell2"),
    ]
    assert ("shell0", "shell1") in g.conductivity_table()


def test_domain_lookup():
    g = _build_head()
    # along a vertex ray each shell is crossed exactly at its radius
    u = g.mesh("shell0").points[0] / 0.8
    assert g.domain([0.0, 0.0, 0.0]).name == "domain0"
    assert g.domain(0.85 * u).name == "domain1"
    assert g.domain(0.95 * u).name == "domain2"
    assert g.domain(3.0 * u).name == "outside"
    assert g.domain_by_name("domain1").conductivity == 0.0125
    with pytest.raises(KeyError):
        g.mesh("cortex")


def test_check_detects_meshes_crossing_interfaces():
    g = _build_head()
    assert g.check(icosphere(0.3, name="inner"))
    assert not g.check(icosphere(0.3, center=(0.7, 0.0, 0.0), name="crossing"))


def test_floating_conductor_parts():
    # sphere A and shell B-C separated by a non-conductive gap
    g = nested_spheres([0.5, 0.8, 1.0], [1.0, 0.0, 1.0, 0.0])
    assert all(m.current_barrier for m in g.meshes)
    assert [m.outermost for m in g.meshes] == [True, False, True]
    assert g.dimension() == 36
    parts = sorted(sorted(m.name for m in part) for part in g.isolated_parts())
    assert parts == [["shell0"], ["shell1", "shell2"]]


def test_isolated_mesh_is_flagged(caplog):
    with caplog.at_level(logging.WARNING, logger="meegbem.geometry.geometry"):
        g = nested_spheres([0.5, 1.0], [1.0, 0.0, 0.0])
    assert g.mesh("shell1").isolated
    assert not g.mesh("shell0").isolated
    assert "isolated" in caplog.text
    assert all(g.mesh("shell1") not in part for part in g.isolated_parts())


def test_invalid_geometries():
    m = icosphere(1.0, name="a")
    iface = Interface("a", [OrientedMesh(m, 1)])
    with pytest.raises(GeometryError):
        OrientedMesh(m, 2)
    with pytest.raises(GeometryError):
        Geometry.from_interfaces([m], [("in", [(iface, True)], -1.0), ("out", [(iface, False)], 1.0)])
    other = icosphere(2.0, name="b")
    with pytest.raises(GeometryError):
        Geometry.from_interfaces([other], [("in", [(iface, True)], 1.0)])
    with pytest.raises(ValueError):
        nested_spheres([1.0, 0.5], [1.0, 1.0, 1.0])
    with pytest.raises(ValueError):
        nested_spheres([1.0], [1.0])


def test_triangle_edges_and_vertex_incidence():
    m = icosphere(1.0)
    v = m.vertices[0]
    around = m.incident_triangles(v)
    # every icosahedron vertex has five triangles
    assert len(around) == 5
    assert all(t.contains(v) for t in around)
    assert not any(t.contains(v) for t in m.triangles if t not in around)

    t = around[0]
    k = next(i for i in range(3) if t.vertex(i) is v)
    assert t.edge(v) == (t.vertex((k + 1) % 3), t.vertex((k + 2) % 3))
    outsider = next(w for w in m.vertices if not t.contains(w))
    with pytest.raises(ValueError):
        t.edge(outsider)
    assert m.incident_triangles(Mesh.from_arrays("x", np.eye(3), [[0, 1, 2]]).vertices[0]) == []
