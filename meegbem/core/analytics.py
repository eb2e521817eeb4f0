"""
Closed-form kernels of the boundary integral operators.

Every kernel is a small object built once from a triangle (or a dipole)
and then evaluated on an ``(Q, 3)`` array of observation points, which is
what :class:`~meegbem.core.quadrature.Integrator` feeds it.

  - `AnalyticS(T)(x)`      ∫_T 1/|x-y| dy                        -> (Q,)
  - `AnalyticD3(T)(x)`     ∫_T φ_i(y) ∂n_y (1/|x-y|) dy, i=0..2   -> (Q, 3)
  - `AnalyticDipPot(d)(x)` q·(x-r0)/|x-r0|^3                      -> (Q,)
  - `AnalyticDipPotDer(d, T)(x)`
                           φ_i(x) ∂n_x [q·(x-r0)/|x-r0|^3]        -> (Q, 3)

φ_i are the P1 hat functions of the triangle's vertices. The 1/(4π)
factor is applied by the caller.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from meegbem.geometry.mesh import solid_angle

__all__ = [
    "AnalyticS",
    "AnalyticD3",
    "AnalyticDipPot",
    "AnalyticDipPotDer",
    "Dipole",
    "solid_angle",
]


def _dot(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.einsum("...i,...i->...", a, b)


def _points(x) -> np.ndarray:
    p = np.asarray(x, dtype=float)
    return p.reshape(-1, 3)


class _TriangleKernel:
    """Geometry shared by the triangle-based kernels."""

    def __init__(self, triangle):
        if hasattr(triangle, "points") and callable(triangle.points):
            triangle = triangle.points()
        y = np.asarray(triangle, dtype=float)
        if y.shape != (3, 3):
            raise ValueError(f"triangle must have shape (3, 3), got {y.shape!r}")
        self.y = y
        cr = np.cross(y[1] - y[0], y[2] - y[0])
        norm = float(np.linalg.norm(cr))
        if norm == 0.0:
            raise ValueError("degenerate triangle")
        self.area = 0.5 * norm
        self.n = cr / norm
        # edge e joins y[e] -> y[e+1]
        self.a = y
        self.b = np.roll(y, -1, axis=0)
        d = self.b - self.a
        self.length = np.linalg.norm(d, axis=1)
        self.tangent = d / self.length[:, None]
        self.nu = np.cross(self.tangent, self.n)  # outward in-plane edge normals

    def _edges(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Per point and edge: the line integral L_e = ∫_e 1/|x-y| dl, the
        signed in-plane distance t_e to the edge line and the edge
        coordinates / distances needed by the single layer.
        """
        xa = self.a[None, :, :] - x[:, None, :]  # (Q, 3, 3)
        xb = self.b[None, :, :] - x[:, None, :]
        s_minus = _dot(xa, self.tangent[None])
        s_plus = _dot(xb, self.tangent[None])
        r_minus = np.linalg.norm(xa, axis=-1)
        r_plus = np.linalg.norm(xb, axis=-1)
        t = _dot(xa, self.nu[None])

        behind = (s_minus + s_plus) < 0.0
        with np.errstate(divide="ignore", invalid="ignore"):
            fwd = np.log((r_plus + s_plus) / (r_minus + s_minus))
            bwd = np.log((r_minus - s_minus) / (r_plus - s_plus))
        L = np.where(behind, bwd, fwd)
        L = np.where(np.isfinite(L), L, 0.0)
        return L, t, np.stack([s_minus, s_plus, r_minus, r_plus])

    def _height(self, x: np.ndarray) -> np.ndarray:
        """Signed distance n·(x - y0)."""
        return _dot(x - self.y[0], self.n[None])


class AnalyticS(_TriangleKernel):
    """
    Potential of a uniform unit density on a triangle,
    ``∫_T 1/|x-y| dy`` (Wilton et al. / Graglia closed form).
    """

    def __call__(self, x) -> np.ndarray:
        x = _points(x)
        L, t, (s_minus, s_plus, r_minus, r_plus) = self._edges(x)
        h = np.abs(self._height(x))[:, None]
        r0sq = t * t + h * h
        with np.errstate(divide="ignore", invalid="ignore"):
            ang = np.arctan(t * s_plus / (r0sq + h * r_plus)) - np.arctan(t * s_minus / (r0sq + h * r_minus))
        ang = np.where(np.isfinite(ang), ang, 0.0)
        tl = np.where(t == 0.0, 0.0, t * L)
        return (tl - h * ang).sum(axis=1)

    f = __call__


class AnalyticD3(_TriangleKernel):
    """
    Double-layer potential of the three P1 hat functions of a triangle,
    ``∫_T φ_i(y) n·(x-y)/|x-y|^3 dy``.

    The three values sum to minus the solid angle of the triangle seen
    from ``x``. Points in the triangle plane get the principal value
    (zero solid angle).
    """

    def __init__(self, triangle):
        super().__init__(triangle)
        # gradients of the barycentric coordinates
        y = self.y
        self.grad = np.stack([np.cross(self.n, y[(i + 2) % 3] - y[(i + 1) % 3]) / (2.0 * self.area) for i in range(3)])
        self._gnu = self.grad @ self.nu.T  # (i, e)
        self._in_plane_tol = 1e-10 * np.sqrt(self.area)

    def __call__(self, x) -> np.ndarray:
        x = _points(x)
        L, _, _ = self._edges(x)
        c = -self._height(x)  # n·(y0 - x)
        in_plane = np.abs(c) <= self._in_plane_tol
        # exact zero in the plane, rounding noise would defeat adaptive refinement
        c = np.where(in_plane, 0.0, c)
        omega = solid_angle(x, self.y[0], self.y[1], self.y[2])
        omega = np.where(in_plane, 0.0, omega)
        p = x + c[:, None] * self.n[None]  # projection on the plane
        phi = 1.0 + _dot(p[:, None, :] - self.y[None], self.grad[None])  # (Q, 3)
        edge_sum = L @ self._gnu.T  # (Q, i)
        return -(phi * omega[:, None] - c[:, None] * edge_sum)

    f = __call__


# ---------------------------------------------------------------------------
# Dipoles
# ---------------------------------------------------------------------------


class Dipole:
    """Current dipole at ``position`` with moment ``moment``."""

    __slots__ = ("position", "moment")

    def __init__(self, position, moment):
        self.position = np.asarray(position, dtype=float).reshape(3)
        self.moment = np.asarray(moment, dtype=float).reshape(3)

    @classmethod
    def from_row(cls, row) -> "Dipole":
        """Build from a ``[x, y, z, qx, qy, qz]`` row."""
        r = np.asarray(row, dtype=float).reshape(-1)
        if r.size != 6:
            raise ValueError(f"dipole rows have 6 values (x y z qx qy qz), got {r.size}")
        return cls(r[:3], r[3:])

    def potential(self, x) -> np.ndarray:
        """Unscaled infinite-medium potential ``q·(x-r0)/|x-r0|^3``."""
        d = _points(x) - self.position
        r = np.linalg.norm(d, axis=1)
        return _dot(d, self.moment[None]) / r ** 3

    def __repr__(self) -> str:
        return f"Dipole(position={self.position.tolist()}, moment={self.moment.tolist()})"


class AnalyticDipPot:
    """Dipole potential as a scalar kernel."""

    def __init__(self, dipole: Dipole):
        self.dipole = dipole

    def __call__(self, x) -> np.ndarray:
        return self.dipole.potential(x)

    f = __call__


class AnalyticDipPotDer(_TriangleKernel):
    """
    Normal derivative of the dipole potential on a triangle, times the three
    P1 hat functions of that triangle.
    """

    def __init__(self, dipole: Dipole, triangle):
        super().__init__(triangle)
        self.dipole = dipole
        y = self.y
        self.grad = np.stack([np.cross(self.n, y[(i + 2) % 3] - y[(i + 1) % 3]) / (2.0 * self.area) for i in range(3)])

    def __call__(self, x) -> np.ndarray:
        x = _points(x)
        q = self.dipole.moment
        d = x - self.dipole.position
        r2 = _dot(d, d)
        r3 = r2 * np.sqrt(r2)
        dn = (_dot(self.n[None], q[None]) - 3.0 * _dot(d, q[None]) * _dot(d, self.n[None]) / r2) / r3
        phi = 1.0 + _dot(x[:, None, :] - self.y[None], self.grad[None])
        return phi * dn[:, None]

    f = __call__
