"""Exception taxonomy for head-matrix assembly and symmetric algebra."""

from __future__ import annotations

from typing import Optional

__all__ = [
    "MeegBemError",
    "GeometryError",
    "OverlappingSourceMesh",
    "FactorizationFailed",
    "Unsupported",
]


class MeegBemError(Exception):
    """Base class for all errors raised by meegbem."""


class GeometryError(MeegBemError, ValueError):
    """Inconsistent geometry definition (meshes, interfaces, domains)."""


class OverlappingSourceMesh(GeometryError):
    """A source mesh is not contained in a single domain of the geometry."""

    def __init__(self, mesh_name: str = "") -> None:
        msg = "Source mesh overlaps the geometry"
        if mesh_name:
            msg += f" ({mesh_name!r})"
        super().__init__(msg + ": its vertices span more than one domain.")
        self.mesh_name = mesh_name


class FactorizationFailed(MeegBemError, ArithmeticError):
    """
    Symmetric factorization reported a singular or ill-conditioned system.

    Attributes
    ----------
    pivot : int or None
        0-based index of the offending pivot, if known.
    value : float or None
        Diagonal (pivot) value that triggered the failure.
    """

    def __init__(self, message: str, pivot: Optional[int] = None, value: Optional[float] = None) -> None:
        details = []
        if pivot is not None:
            details.append(f"pivot={pivot}")
        if value is not None:
            details.append(f"value={value!r}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)
        self.pivot = pivot
        self.value = value


class Unsupported(MeegBemError, RuntimeError):
    """A required numerical backend is not available in this environment."""
