"""
Exceptions
==========
Error classes raised by the thermal core.

Invariant violations (negative mass, phase ratios out of range, unknown
material ids) are programmer errors and are checked with ``assert`` instead.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from additivethermal.fea.solvers.implicit_operator import SolveStatus


class ConfigurationError(ValueError):
    """Invalid or unknown entry in the simulation database."""


class ImplicitSolveError(RuntimeError):
    """The Krylov solve of (I - tau J) x = y did not converge."""

    def __init__(self, message: str, status: SolveStatus | None = None) -> None:
        super().__init__(message)
        self.status = status
