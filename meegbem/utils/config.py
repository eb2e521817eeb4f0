from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Optional

# -------------------------
# Physical / numerical constants
# -------------------------

# Fundamental solution constant of the Laplace equation, G(r) = K / |r|.
K: float = 1.0 / (4.0 * math.pi)

# Known quadrature-order dependent discrepancy between S(T1,T2) and S(T2,T1),
# absolute and in head-matrix units, i.e. after scaling by K · Σ 1/σ. The head
# matrix always anchors the analytic kernel on the first-iterated mesh's
# triangle; tests compare both orders against this bound.
S_SYMMETRY_TOLERANCE: float = float(os.environ.get("MEEGBEM_S_SYMMETRY_TOL", "1e-5"))

_TRUE_VALUES = {"1", "true", "yes", "on", "y"}


def _env_var_true(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in _TRUE_VALUES


def _env_var_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


# -------------------------
# Quadrature configuration
# -------------------------


@dataclass(frozen=True)
class IntegratorConfig:
    """Configuration for the adaptive triangle integrator.

    Parameters
    ----------
    order:
        Index of the base Gauss rule on a triangle: 0 -> 3 points,
        1 -> 6 points, 2 -> 7 points, 3 -> 13 points.
    levels:
        Maximum number of 4-way subdivision levels. ``0`` disables the
        adaptive refinement and applies the base rule once.
    tolerance:
        Relative tolerance on the difference between a triangle's
        estimate and the sum of its four children.
    """

    order: int = 3
    levels: int = 10
    tolerance: float = 1e-3

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.order not in (0, 1, 2, 3):
            raise ValueError(f"order must be one of 0, 1, 2, 3; got {self.order!r}")
        if self.levels < 0:
            raise ValueError("levels must be non-negative")
        if not (self.tolerance > 0.0 and math.isfinite(self.tolerance)):
            raise ValueError("tolerance must be a positive finite float")


# -------------------------
# Assembly configuration
# -------------------------


@dataclass
class AssemblyConfig:
    """Execution policy for operator assembly.

    Parameters
    ----------
    num_workers:
        Number of worker threads used for the outer loop of each operator
        block. ``None`` means ``os.cpu_count()``; ``1`` runs inline.
    progress:
        Show a tqdm progress bar per operator block.
    """

    num_workers: Optional[int] = None
    progress: bool = False

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.num_workers is not None and self.num_workers <= 0:
            raise ValueError("num_workers must be positive if specified")

    def resolved_workers(self) -> int:
        if self.num_workers is not None:
            return int(self.num_workers)
        return max(1, os.cpu_count() or 1)

    @classmethod
    def from_env(cls) -> "AssemblyConfig":
        """Build a config from MEEGBEM_NUM_WORKERS / MEEGBEM_PROGRESS."""
        return cls(
            num_workers=_env_var_int("MEEGBEM_NUM_WORKERS"),
            progress=_env_var_true("MEEGBEM_PROGRESS"),
        )


__all__ = [
    "K",
    "S_SYMMETRY_TOLERANCE",
    "IntegratorConfig",
    "AssemblyConfig",
]
