"""Time integration, implicit solves and domain activation."""
from additivethermal.fea.solvers.solver import Solver

__all__ = ["Solver"]
