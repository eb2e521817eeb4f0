"""
Domain / interface model of a piecewise-homogeneous conductor.

A :class:`Geometry` is a list of meshes plus a list of domains. Each domain
is delimited by boundaries, a boundary being an interface (a closed surface
made of oriented meshes) together with the side of it the domain lies on.
From this the geometry derives everything the assembly needs: the global
index space, current-barrier / outermost / isolated flags, the mesh pairs
that interact through a shared conductive domain and the conductivity
weights of each pair.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from meegbem.errors import GeometryError
from meegbem.geometry.mesh import Mesh

__all__ = [
    "OrientedMesh",
    "Interface",
    "Boundary",
    "Domain",
    "MeshPair",
    "Geometry",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Interfaces, boundaries, domains
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrientedMesh:
    mesh: Mesh
    orientation: int = 1

    def __post_init__(self) -> None:
        if self.orientation not in (1, -1):
            raise GeometryError(f"orientation must be +1 or -1, got {self.orientation!r}")


@dataclass
class Interface:
    """Closed surface made of one or more oriented meshes."""

    name: str
    oriented_meshes: List[OrientedMesh]

    def contains_mesh(self, mesh: Mesh) -> bool:
        return any(om.mesh is mesh for om in self.oriented_meshes)

    def winding_number(self, point) -> float:
        x = np.asarray(point, dtype=float).reshape(3)
        total = sum(om.orientation * om.mesh.solid_angle_sum(x) for om in self.oriented_meshes)
        return total / (4.0 * math.pi)

    def contains(self, point) -> bool:
        """True if ``point`` is enclosed by the interface."""
        return abs(self.winding_number(point)) > 0.5


@dataclass
class Boundary:
    """An interface and whether the owning domain lies inside it."""

    interface: Interface
    inside: bool

    def mesh_orientation(self, om: OrientedMesh) -> int:
        return om.orientation if self.inside else -om.orientation


@dataclass
class Domain:
    name: str
    boundaries: List[Boundary]
    conductivity: float = 1.0

    @property
    def conductive(self) -> bool:
        return self.conductivity != 0.0

    def contains_mesh(self, mesh: Mesh) -> bool:
        return any(b.interface.contains_mesh(mesh) for b in self.boundaries)

    def mesh_orientation(self, mesh: Mesh) -> int:
        """Orientation of ``mesh`` seen from this domain, 0 if it does not bound it."""
        for b in self.boundaries:
            for om in b.interface.oriented_meshes:
                if om.mesh is mesh:
                    return b.mesh_orientation(om)
        return 0

    def contains(self, point) -> bool:
        return all(b.interface.contains(point) == b.inside for b in self.boundaries)


@dataclass(frozen=True)
class MeshPair:
    """Unordered pair of communicating meshes, ``mesh1`` first in mesh order."""

    mesh1: Mesh
    mesh2: Mesh
    orientation: int

    def __iter__(self) -> Iterator[Mesh]:
        return iter((self.mesh1, self.mesh2))


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


@dataclass
class Geometry:
    """
    Meshes and domains with a frozen global index space.

    Indices are assigned at construction: all vertices first (mesh order,
    shared vertices once), then the triangles of non-barrier meshes, then
    the triangles of current-barrier meshes. The head-matrix dimension is
    therefore ``nb_parameters() - nb_current_barrier_triangles()`` and
    barrier triangles fall outside it.
    """

    meshes: List[Mesh]
    domains: List[Domain]
    _pairs: List[MeshPair] = field(default_factory=list, init=False, repr=False)
    _parts: List[List[Mesh]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.validate()
        self._mark_current_barriers()
        self._assign_indices()
        self._build_pairs()
        self._build_parts()

    # ----- construction -----
    def validate(self) -> None:
        names = [m.name for m in self.meshes]
        if len(set(names)) != len(names):
            raise GeometryError(f"duplicate mesh names: {names}")
        dnames = [d.name for d in self.domains]
        if len(set(dnames)) != len(dnames):
            raise GeometryError(f"duplicate domain names: {dnames}")
        for d in self.domains:
            if d.conductivity < 0.0 or not math.isfinite(d.conductivity):
                raise GeometryError(f"domain {d.name!r} has invalid conductivity {d.conductivity!r}")
            for b in d.boundaries:
                for om in b.interface.oriented_meshes:
                    if not any(om.mesh is m for m in self.meshes):
                        raise GeometryError(f"domain {d.name!r} references unknown mesh {om.mesh.name!r}")

    def _mark_current_barriers(self) -> None:
        for m in self.meshes:
            m.outermost = m.current_barrier = m.isolated = False
        for d in self.domains:
            if d.conductive:
                continue
            for b in d.boundaries:
                for om in b.interface.oriented_meshes:
                    om.mesh.current_barrier = True
                    if not b.inside:
                        om.mesh.outermost = True
        for m in self.meshes:
            if not any(d.conductive and d.contains_mesh(m) for d in self.domains):
                m.isolated = True
                logger.warning("Mesh %r has no conductive domain on either side; it is isolated.", m.name)

    def _assign_indices(self) -> None:
        for m in self.meshes:
            for v in m.vertices:
                v.index = -1
        k = 0
        for m in self.meshes:
            for v in m.vertices:
                if v.index < 0:
                    v.index = k
                    k += 1
        self._nb_vertices = k
        for barrier in (False, True):
            for m in self.meshes:
                if m.current_barrier != barrier:
                    continue
                for t in m.triangles:
                    t.index = k
                    k += 1
        self._nb_parameters = k

    def _build_pairs(self) -> None:
        self._pairs = []
        for i, m1 in enumerate(self.meshes):
            for m2 in self.meshes[i:]:
                shared = self._conductive_domains(m1, m2)
                if not shared:
                    continue
                self._pairs.append(MeshPair(m1, m2, self._relative_orientation(shared[0], m1, m2)))

    def _build_parts(self) -> None:
        parent = {id(m): m for m in self.meshes}

        def find(m: Mesh) -> Mesh:
            while parent[id(m)] is not m:
                m = parent[id(m)]
            return m

        for p in self._pairs:
            r1, r2 = find(p.mesh1), find(p.mesh2)
            if r1 is not r2:
                parent[id(r2)] = r1

        groups: Dict[int, List[Mesh]] = {}
        for m in self.meshes:
            if not m.isolated:
                groups.setdefault(id(find(m)), []).append(m)
        self._parts = list(groups.values())

    # ----- weights -----
    def _conductive_domains(self, m1: Mesh, m2: Mesh) -> List[Domain]:
        return [d for d in self.domains if d.conductive and d.contains_mesh(m1) and d.contains_mesh(m2)]

    @staticmethod
    def _relative_orientation(d: Domain, m1: Mesh, m2: Mesh) -> int:
        return 1 if d.mesh_orientation(m1) == d.mesh_orientation(m2) else -1

    def relative_orientation(self, m1: Mesh, m2: Mesh) -> int:
        shared = self._conductive_domains(m1, m2)
        if not shared:
            raise GeometryError(f"meshes {m1.name!r} and {m2.name!r} share no conductive domain")
        return self._relative_orientation(shared[0], m1, m2)

    def sigma(self, m1: Mesh, m2: Mesh) -> float:
        return float(sum(d.conductivity for d in self._conductive_domains(m1, m2)))

    def sigma_inv(self, m1: Mesh, m2: Mesh) -> float:
        return float(sum(1.0 / d.conductivity for d in self._conductive_domains(m1, m2)))

    def indicator(self, m1: Mesh, m2: Mesh) -> float:
        return float(len(self._conductive_domains(m1, m2)))

    # ----- queries -----
    def communicating_mesh_pairs(self) -> List[MeshPair]:
        return list(self._pairs)

    def isolated_parts(self) -> List[List[Mesh]]:
        return [list(p) for p in self._parts]

    def nb_vertices(self) -> int:
        return self._nb_vertices

    def nb_triangles(self) -> int:
        return sum(m.nb_triangles() for m in self.meshes)

    def nb_parameters(self) -> int:
        return self._nb_parameters

    def nb_current_barrier_triangles(self) -> int:
        return sum(m.nb_triangles() for m in self.meshes if m.current_barrier)

    def dimension(self) -> int:
        """Size of the head matrix."""
        return self.nb_parameters() - self.nb_current_barrier_triangles()

    def mesh(self, name: str) -> Mesh:
        for m in self.meshes:
            if m.name == name:
                return m
        raise KeyError(f"no mesh named {name!r}")

    def domain_by_name(self, name: str) -> Domain:
        for d in self.domains:
            if d.name == name:
                return d
        raise KeyError(f"no domain named {name!r}")

    def domain(self, point) -> Optional[Domain]:
        """Domain containing ``point``, or None."""
        for d in self.domains:
            if d.contains(point):
                return d
        return None

    def check(self, mesh: Mesh) -> bool:
        """True if every vertex of ``mesh`` lies in one and the same domain."""
        first = None
        for v in mesh.vertices:
            d = self.domain(v.position)
            if d is None:
                return False
            if first is None:
                first = d
            elif d is not first:
                return False
        return True

    def conductivity_table(self) -> Dict[Tuple[str, str], Tuple[float, float, float]]:
        """(sigma, sigma_inv, indicator) for every communicating pair, keyed by mesh names."""
        return {
            (p.mesh1.name, p.mesh2.name): (
                self.sigma(p.mesh1, p.mesh2),
                self.sigma_inv(p.mesh1, p.mesh2),
                self.indicator(p.mesh1, p.mesh2),
            )
            for p in self._pairs
        }

    @classmethod
    def from_interfaces(
        cls,
        meshes: Sequence[Mesh],
        domains: Sequence[Tuple[str, Sequence[Tuple[Interface, bool]], float]],
    ) -> "Geometry":
        """Build from ``(name, [(interface, inside), ...], conductivity)`` domain tuples."""
        doms = [Domain(name, [Boundary(i, inside) for i, inside in bounds], float(cond)) for name, bounds, cond in domains]
        return cls(list(meshes), doms)
