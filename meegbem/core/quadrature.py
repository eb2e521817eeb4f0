"""
Quadrature on triangular panels.

This module provides:

  - `triangle_rule(order)`:
      Symmetric Gauss rules on the reference triangle, as barycentric
      coordinates and weights normalized to sum to 1. Order index
      0 -> 3 points, 1 -> 6 points, 2 -> 7 points, 3 -> 13 points.

  - `standard_triangle_quadrature(vertices, order)`:
      The same rules mapped to a physical triangle; Σ weights = area.

  - `Integrator`:
      Adaptive integration of vectorized kernels. A triangle is split into
      four (edge midpoints) and each child integrated recursively while the
      children disagree with their parent by more than the relative
      tolerance (with an absolute floor near rounding level) and the
      maximum depth has not been reached.

Kernels take an ``(Q, 3)`` array of points and return ``(Q,)`` (scalar
kernel) or ``(Q, k)`` (vector kernel) values.
"""

from __future__ import annotations

from typing import Callable, Dict, Tuple, Union

import numpy as np

from meegbem.utils.config import IntegratorConfig

__all__ = [
    "triangle_rule",
    "standard_triangle_quadrature",
    "Integrator",
]

Kernel = Callable[[np.ndarray], np.ndarray]

# Relative size of the absolute stopping floor, in units of area · max|kernel|.
_FLOOR_EPS = 64.0 * np.finfo(float).eps


# ---------------------------------------------------------------------------
# Reference rules
# ---------------------------------------------------------------------------


def _orbit3(a: float, w: float):
    """Three points at the permutations of (b, a, a), b = 1 - 2a."""
    b = 1.0 - 2.0 * a
    return [[b, a, a], [a, b, a], [a, a, b]], [w] * 3


def _orbit6(a: float, b: float, c: float, w: float):
    pts = [[a, b, c], [a, c, b], [b, a, c], [b, c, a], [c, a, b], [c, b, a]]
    return pts, [w] * 6


def _build_rules() -> Dict[int, Tuple[np.ndarray, np.ndarray]]:
    rules: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}

    # 3 points, degree 2
    p, w = _orbit3(1.0 / 6.0, 1.0 / 3.0)
    rules[0] = (p, w)

    # 6 points, degree 4
    p1, w1 = _orbit3(0.445948490915965, 0.223381589678011)
    p2, w2 = _orbit3(0.091576213509771, 0.109951743655322)
    rules[1] = (p1 + p2, w1 + w2)

    # 7 points, degree 5
    p1, w1 = _orbit3(0.470142064105115, 0.132394152788506)
    p2, w2 = _orbit3(0.101286507323456, 0.125939180544827)
    rules[2] = ([[1.0 / 3.0] * 3] + p1 + p2, [0.225] + w1 + w2)

    # 13 points, degree 7
    p1, w1 = _orbit3(0.260345966079040, 0.175615257433208)
    p2, w2 = _orbit3(0.065130102902216, 0.053347235608838)
    p3, w3 = _orbit6(0.048690315425316, 0.312865496004874, 0.638444188569810, 0.077113760890257)
    rules[3] = ([[1.0 / 3.0] * 3] + p1 + p2 + p3, [-0.149570044467682] + w1 + w2 + w3)

    out = {}
    for order, (pts, wts) in rules.items():
        bary = np.asarray(pts, dtype=float)
        bary /= bary.sum(axis=1, keepdims=True)
        wts = np.asarray(wts, dtype=float)
        out[order] = (bary, wts / wts.sum())
    return out


_RULES = _build_rules()


def triangle_rule(order: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Barycentric nodes ``(Q, 3)`` and weights ``(Q,)`` with Σ weights = 1.
    """
    try:
        bary, w = _RULES[order]
    except KeyError:
        raise ValueError(f"triangle rule order must be one of {sorted(_RULES)}, got {order!r}") from None
    return bary.copy(), w.copy()


def _as_triangle_vertices(vertices) -> np.ndarray:
    """
    Convert input (array or Triangle) to a (3, 3) float64 array of triangle vertices.
    """
    if hasattr(vertices, "points") and callable(vertices.points):
        vertices = vertices.points()
    v = np.asarray(vertices, dtype=float)
    if v.shape != (3, 3):
        raise ValueError(f"vertices must have shape (3, 3), got {v.shape!r}")
    return v


def _area(v: np.ndarray) -> np.ndarray:
    """Area of triangles ``(..., 3, 3)``."""
    return 0.5 * np.linalg.norm(np.cross(v[..., 1, :] - v[..., 0, :], v[..., 2, :] - v[..., 0, :]), axis=-1)


def standard_triangle_quadrature(vertices, order: int = 3) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gauss rule on a physical triangle.

    Returns
    -------
    points : ndarray, shape (Q, 3)
    weights : ndarray, shape (Q,)
        Physical weights; Σ weights = area(vertices).
    """
    verts = _as_triangle_vertices(vertices)
    bary, w = triangle_rule(order)
    return bary @ verts, w * float(_area(verts))


# ---------------------------------------------------------------------------
# Adaptive integrator
# ---------------------------------------------------------------------------


def _split(v: np.ndarray) -> np.ndarray:
    """4-way midpoint subdivision of a (3, 3) triangle, returns (4, 3, 3)."""
    v0, v1, v2 = v
    m01 = 0.5 * (v0 + v1)
    m12 = 0.5 * (v1 + v2)
    m20 = 0.5 * (v2 + v0)
    return np.stack(
        [
            np.stack([v0, m01, m20]),
            np.stack([m01, v1, m12]),
            np.stack([m20, m12, v2]),
            np.stack([m01, m12, m20]),
        ]
    )


class Integrator:
    """
    Adaptive Gauss integrator on triangles.

    Parameters
    ----------
    order : int
        Base rule index (0..3).
    levels : int
        Maximum subdivision depth; 0 applies the base rule once.
    tolerance : float
        Relative tolerance ``|I0 - ΣIi| <= max(tolerance * |I0|, floor)``, the floor
        sitting at rounding level for the kernel magnitude.
    """

    def __init__(self, order: int = 3, levels: int = 10, tolerance: float = 1e-3):
        self.config = IntegratorConfig(order=order, levels=levels, tolerance=tolerance)
        self._bary, self._w = _RULES[self.config.order]

    @property
    def order(self) -> int:
        return self.config.order

    @property
    def levels(self) -> int:
        return self.config.levels

    @property
    def tolerance(self) -> float:
        return self.config.tolerance

    def _rule(self, kernel: Kernel, tris: np.ndarray) -> Tuple[np.ndarray, float]:
        """
        Base rule on a stack of triangles ``(C, 3, 3)``.

        Returns the integrals, ``(C,)`` or ``(C, k)``, and the largest
        absolute kernel value met at the nodes.
        """
        C = tris.shape[0]
        Q = self._bary.shape[0]
        pts = np.einsum("qk,ckd->cqd", self._bary, tris).reshape(C * Q, 3)
        vals = np.asarray(kernel(pts), dtype=float)
        vals = vals.reshape((C, Q) + vals.shape[1:])
        wa = self._w[None, :] * _area(tris)[:, None]
        scale = float(np.abs(vals).max()) if vals.size else 0.0
        return np.einsum("cq,cq...->c...", wa, vals), scale

    def _adapt(self, kernel: Kernel, tri: np.ndarray, coarse: np.ndarray, level: int, floor: float) -> np.ndarray:
        children = _split(tri)
        fine, _ = self._rule(kernel, children)
        total = fine.sum(axis=0)
        bound = max(self.tolerance * float(np.linalg.norm(np.atleast_1d(coarse))), floor)
        if np.linalg.norm(np.atleast_1d(coarse - total)) <= bound:
            return coarse
        if level + 1 >= self.levels:
            return total
        return sum(self._adapt(kernel, children[c], fine[c], level + 1, floor) for c in range(4))

    def integrate(self, kernel: Kernel, triangle) -> Union[float, np.ndarray]:
        """
        ∫_triangle kernel(r) dA.

        ``triangle`` is a :class:`~meegbem.geometry.mesh.Triangle` or a
        ``(3, 3)`` array of vertices. Refinement also stops once the change
        falls below ``64 ε · area · max|kernel|`` (kernel sampled on
        the whole triangle), so integrals that vanish up to rounding do not
        subdivide to the maximum depth.
        """
        tri = _as_triangle_vertices(triangle)
        coarse, scale = self._rule(kernel, tri[None])
        coarse = coarse[0]
        if self.levels > 0:
            floor = _FLOOR_EPS * float(_area(tri)) * scale
            coarse = self._adapt(kernel, tri, coarse, 0, floor)
        if np.ndim(coarse) == 0:
            return float(coarse)
        return coarse

    def __repr__(self) -> str:
        return f"Integrator(order={self.order}, levels={self.levels}, tolerance={self.tolerance})"
