"""
FEM Solver Engine
=================
The core implementation for the thermal analysis.

Why is this file needed?
------------------------
1. Physics: It implements the nonlinear heat equation with phase change.
2. Time-Stepping: It manages the temporal loop with explicit, embedded and
   implicit Runge-Kutta schemes.
3. Growth: It activates deposited material and carries the state across.

Note: This module should be pure Python/NumPy.
"""
