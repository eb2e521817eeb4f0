"""
Triangulated surface meshes.

Vertices and triangles are small objects carrying a global index assigned
once by :class:`~meegbem.geometry.geometry.Geometry`. Alongside the object
view every mesh exposes flat numpy arrays (positions, connectivity, areas,
normals) used by the vectorized operator code.
"""

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

import numpy as np

from meegbem.maths.block import Range

__all__ = ["Vertex", "Triangle", "Mesh", "solid_angle"]


# ---------------------------------------------------------------------------
# Solid angle
# ---------------------------------------------------------------------------


def solid_angle(x: np.ndarray, y1: np.ndarray, y2: np.ndarray, y3: np.ndarray) -> np.ndarray:
    """
    Signed solid angle subtended at ``x`` by triangle(s) ``(y1, y2, y3)``.

    Van Oosterom & Strackee formula. Positive when ``x`` lies on the side
    opposite to the normal ``(y2-y1)×(y3-y1)``. All arguments broadcast
    over leading dimensions; the last dimension is 3.
    """
    Y1 = np.asarray(y1, dtype=float) - x
    Y2 = np.asarray(y2, dtype=float) - x
    Y3 = np.asarray(y3, dtype=float) - x
    n1 = np.linalg.norm(Y1, axis=-1)
    n2 = np.linalg.norm(Y2, axis=-1)
    n3 = np.linalg.norm(Y3, axis=-1)
    num = np.einsum("...i,...i->...", Y1, np.cross(Y2, Y3))
    den = (
        n1 * n2 * n3
        + np.einsum("...i,...i->...", Y1, Y2) * n3
        + np.einsum("...i,...i->...", Y1, Y3) * n2
        + np.einsum("...i,...i->...", Y2, Y3) * n1
    )
    return 2.0 * np.arctan2(num, den)


# ---------------------------------------------------------------------------
# Elements
# ---------------------------------------------------------------------------


class Vertex:
    """A point of R^3 carrying a global (P1) index."""

    __slots__ = ("position", "index")

    def __init__(self, position, index: int = -1):
        self.position = np.asarray(position, dtype=float).reshape(3)
        self.index = int(index)

    def __repr__(self) -> str:
        x, y, z = self.position
        return f"Vertex({x:.6g}, {y:.6g}, {z:.6g}, index={self.index})"


class Triangle:
    """
    Three ordered vertices and a global (P0) index.

    Area and unit normal ``(v1-v0)×(v2-v0)/|…|`` are computed at construction.
    """

    __slots__ = ("vertices", "index", "area", "normal")

    def __init__(self, v0: Vertex, v1: Vertex, v2: Vertex, index: int = -1):
        self.vertices: Tuple[Vertex, Vertex, Vertex] = (v0, v1, v2)
        self.index = int(index)
        cr = np.cross(v1.position - v0.position, v2.position - v0.position)
        norm = float(np.linalg.norm(cr))
        self.area = 0.5 * norm
        self.normal = cr / norm if norm > 0.0 else np.zeros(3)

    def vertex(self, i: int) -> Vertex:
        return self.vertices[i]

    def contains(self, v: Vertex) -> bool:
        return any(w is v for w in self.vertices)

    def edge(self, v: Vertex) -> Tuple[Vertex, Vertex]:
        """The two other vertices, in cyclic order (next, next-next)."""
        for k, w in enumerate(self.vertices):
            if w is v:
                return self.vertices[(k + 1) % 3], self.vertices[(k + 2) % 3]
        raise ValueError(f"{v!r} is not a vertex of triangle {self.index}")

    def points(self) -> np.ndarray:
        return np.stack([v.position for v in self.vertices])

    def center(self) -> np.ndarray:
        return self.points().mean(axis=0)

    def __repr__(self) -> str:
        return f"Triangle(index={self.index}, vertices={[v.index for v in self.vertices]})"


# ---------------------------------------------------------------------------
# Mesh
# ---------------------------------------------------------------------------


class Mesh:
    """
    Named triangulated surface.

    Parameters
    ----------
    name : str
        Mesh name, used in logs and lookups.
    vertices : sequence of Vertex
        Ordered vertices. A vertex object may be shared with another mesh.
    triangles : sequence of Triangle
        Triangles built on ``vertices``.
    """

    def __init__(self, name: str, vertices: Sequence[Vertex], triangles: Sequence[Triangle]):
        self.name = str(name)
        self.vertices: List[Vertex] = list(vertices)
        self.triangles: List[Triangle] = list(triangles)
        if not self.triangles:
            raise ValueError(f"mesh {self.name!r} has no triangles")

        self.outermost = False
        self.current_barrier = False
        self.isolated = False

        local = {id(v): k for k, v in enumerate(self.vertices)}
        try:
            self.tri_local = np.array([[local[id(v)] for v in t.vertices] for t in self.triangles], dtype=np.int64)
        except KeyError:
            raise ValueError(f"mesh {self.name!r} has a triangle vertex outside its vertex list") from None

        self._incident: Dict[int, List[Triangle]] = {}
        for t in self.triangles:
            for v in t.vertices:
                self._incident.setdefault(id(v), []).append(t)

        self.areas = np.array([t.area for t in self.triangles], dtype=float)
        self.normals = np.stack([t.normal for t in self.triangles])
        if np.any(self.areas <= 0.0):
            raise ValueError(f"mesh {self.name!r} has degenerate (zero-area) triangles")

    @classmethod
    def from_arrays(cls, name: str, points, triangles) -> "Mesh":
        """Build a mesh from ``(V, 3)`` positions and ``(T, 3)`` local connectivity."""
        pts = np.asarray(points, dtype=float)
        tris = np.asarray(triangles, dtype=np.int64)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError(f"points must have shape (V, 3), got {pts.shape}")
        if tris.ndim != 2 or tris.shape[1] != 3:
            raise ValueError(f"triangles must have shape (T, 3), got {tris.shape}")
        if tris.size and (tris.min() < 0 or tris.max() >= len(pts)):
            raise ValueError("triangle connectivity references a missing vertex")
        verts = [Vertex(p) for p in pts]
        return cls(name, verts, [Triangle(verts[a], verts[b], verts[c]) for a, b, c in tris])

    # ----- sizes -----
    def nb_vertices(self) -> int:
        return len(self.vertices)

    def nb_triangles(self) -> int:
        return len(self.triangles)

    # ----- arrays -----
    @property
    def points(self) -> np.ndarray:
        return np.stack([v.position for v in self.vertices])

    @property
    def vertex_indices(self) -> np.ndarray:
        return np.array([v.index for v in self.vertices], dtype=np.int64)

    @property
    def triangle_indices(self) -> np.ndarray:
        return np.array([t.index for t in self.triangles], dtype=np.int64)

    @property
    def tri_vertex_indices(self) -> np.ndarray:
        """Global vertex indices of every triangle, shape ``(T, 3)``."""
        return self.vertex_indices[self.tri_local]

    @property
    def tri_points(self) -> np.ndarray:
        """Triangle corner positions, shape ``(T, 3, 3)``."""
        return self.points[self.tri_local]

    # ----- topology -----
    def incident_triangles(self, v: Vertex) -> List[Triangle]:
        """Triangles having ``v`` as a corner, in mesh order."""
        return list(self._incident.get(id(v), ()))

    def vertices_range(self) -> Range:
        idx = self.vertex_indices
        return Range(int(idx.min()), int(idx.max()) + 1)

    def triangles_range(self) -> Range:
        idx = self.triangle_indices
        return Range(int(idx.min()), int(idx.max()) + 1)

    def total_area(self) -> float:
        return float(self.areas.sum())

    def solid_angle_sum(self, x) -> float:
        """Sum of the signed solid angles of all triangles seen from ``x``."""
        tp = self.tri_points
        return float(solid_angle(np.asarray(x, dtype=float), tp[:, 0], tp[:, 1], tp[:, 2]).sum())

    def __iter__(self):
        return iter(self.triangles)

    def __repr__(self) -> str:
        flags = [f for f in ("outermost", "current_barrier", "isolated") if getattr(self, f)]
        extra = f", {'/'.join(flags)}" if flags else ""
        return f"Mesh({self.name!r}, V={self.nb_vertices()}, T={self.nb_triangles()}{extra})"
