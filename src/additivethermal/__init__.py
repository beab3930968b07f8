"""
additivethermal
===============
Transient heat conduction with phase change on a growing, additively
manufactured domain.
"""
__version__ = "0.1.0"
