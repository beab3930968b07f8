"""Operators turning a temperature field into its time derivative."""
from additivethermal.fea.analysis.model import Model

__all__ = ["Model"]
