"""
Synthetic test geometries: icospheres and nested spherical shells.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from meegbem.geometry.geometry import Geometry, Interface, OrientedMesh
from meegbem.geometry.mesh import Mesh

__all__ = ["icosphere", "nested_spheres"]

_PHI = (1.0 + 5.0 ** 0.5) / 2.0

_ICO_VERTS = np.array(
    [
        [-1, _PHI, 0], [1, _PHI, 0], [-1, -_PHI, 0], [1, -_PHI, 0],
        [0, -1, _PHI], [0, 1, _PHI], [0, -1, -_PHI], [0, 1, -_PHI],
        [_PHI, 0, -1], [_PHI, 0, 1], [-_PHI, 0, -1], [-_PHI, 0, 1],
    ],
    dtype=float,
)

_ICO_FACES = np.array(
    [
        [0, 11, 5], [0, 5, 1], [0, 1, 7], [0, 7, 10], [0, 10, 11],
        [1, 5, 9], [5, 11, 4], [11, 10, 2], [10, 7, 6], [7, 1, 8],
        [3, 9, 4], [3, 4, 2], [3, 2, 6], [3, 6, 8], [3, 8, 9],
        [4, 9, 5], [2, 4, 11], [6, 2, 10], [8, 6, 7], [9, 8, 1],
    ],
    dtype=np.int64,
)


def _subdivide(verts: np.ndarray, faces: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    pts = list(verts)
    cache: Dict[Tuple[int, int], int] = {}

    def midpoint(a: int, b: int) -> int:
        key = (a, b) if a < b else (b, a)
        if key not in cache:
            m = 0.5 * (pts[a] + pts[b])
            pts.append(m / np.linalg.norm(m))
            cache[key] = len(pts) - 1
        return cache[key]

    out = []
    for a, b, c in faces:
        ab, bc, ca = midpoint(a, b), midpoint(b, c), midpoint(c, a)
        out.extend([[a, ab, ca], [b, bc, ab], [c, ca, bc], [ab, bc, ca]])
    return np.array(pts), np.array(out, dtype=np.int64)


def icosphere(
    radius: float = 1.0,
    subdivisions: int = 0,
    center: Sequence[float] = (0.0, 0.0, 0.0),
    name: str = "sphere",
) -> Mesh:
    """
    Closed triangulated sphere with outward normals.

    ``subdivisions=0`` gives the icosahedron (12 vertices, 20 triangles);
    every level splits each triangle in four.
    """
    if radius <= 0.0:
        raise ValueError("radius must be positive")
    if subdivisions < 0:
        raise ValueError("subdivisions must be non-negative")
    verts = _ICO_VERTS / np.linalg.norm(_ICO_VERTS, axis=1, keepdims=True)
    faces = _ICO_FACES.copy()
    for _ in range(subdivisions):
        verts, faces = _subdivide(verts, faces)

    # enforce outward orientation
    tp = verts[faces]
    nrm = np.cross(tp[:, 1] - tp[:, 0], tp[:, 2] - tp[:, 0])
    inward = np.einsum("ij,ij->i", nrm, tp.mean(axis=1)) < 0.0
    faces[inward] = faces[inward][:, [0, 2, 1]]

    c = np.asarray(center, dtype=float).reshape(3)
    return Mesh.from_arrays(name, radius * verts + c, faces)


def nested_spheres(
    radii: Sequence[float],
    conductivities: Sequence[float],
    subdivisions: int = 0,
    names: Optional[Sequence[str]] = None,
    center: Sequence[float] = (0.0, 0.0, 0.0),
) -> Geometry:
    """
    Concentric spherical shells.

    ``conductivities`` has one entry per domain, innermost first; the last
    one is the unbounded domain outside the largest sphere (use 0 for air).
    """
    radii = [float(r) for r in radii]
    if not radii:
        raise ValueError("at least one radius is required")
    if any(b <= a for a, b in zip(radii, radii[1:])):
        raise ValueError("radii must be strictly increasing")
    if len(conductivities) != len(radii) + 1:
        raise ValueError(f"expected {len(radii) + 1} conductivities, got {len(conductivities)}")
    if names is None:
        names = [f"shell{k}" for k in range(len(radii))]
    if len(names) != len(radii):
        raise ValueError("one mesh name per radius is required")

    meshes = [icosphere(r, subdivisions, center, name=n) for r, n in zip(radii, names)]
    interfaces = [Interface(m.name, [OrientedMesh(m, 1)]) for m in meshes]

    domains = []
    for k, sigma in enumerate(conductivities):
        bounds = []
        if k > 0:
            bounds.append((interfaces[k - 1], False))
        if k < len(interfaces):
            bounds.append((interfaces[k], True))
        label = "outside" if k == len(interfaces) else f"domain{k}"
        domains.append((label, bounds, sigma))
    return Geometry.from_interfaces(meshes, domains)
