"""
Time Stepping
=============
Runge-Kutta integrators for y' = f(t, y).

Why is this file needed?
------------------------
1. Tableaux: the Butcher coefficients of every supported scheme.
2. Step control: embedded pairs estimate the local error and accept, reject
   or enlarge the step against a refine/coarsen tolerance window.
3. Implicit stages: diagonally implicit schemes solve each stage with a
   Newton iteration whose linear solve is supplied by the caller.

The integrators only see callbacks; they know nothing about meshes.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import TYPE_CHECKING, Callable, Dict, Optional

import numpy as np

from additivethermal.config import TimeSteppingMethod

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.config import TimeSteppingConfig

logger = logging.getLogger(__name__)

RhsFunction = Callable[[float, "npt.NDArray[np.float64]"], "npt.NDArray[np.float64]"]
# (t, tau, rhs, state) -> (I - tau J(state))^-1 rhs
JacobianInverseFunction = Callable[
    [float, float, "npt.NDArray[np.float64]", "npt.NDArray[np.float64]"], "npt.NDArray[np.float64]"
]


@dataclass(frozen=True)
class ButcherTableau:
    """
    Coefficients of a Runge-Kutta scheme.

    Attributes:
        a: (s, s) stage coupling matrix.
        b: (s,) weights of the propagated solution.
        c: (s,) stage times.
        b_low: (s,) weights of the embedded lower order solution, if any.
    """
    a: npt.NDArray[np.float64]
    b: npt.NDArray[np.float64]
    c: npt.NDArray[np.float64]
    b_low: Optional[npt.NDArray[np.float64]] = None

    @property
    def n_stages(self) -> int:
        return self.b.size


def _tableau(a, b, c, b_low=None) -> ButcherTableau:
    return ButcherTableau(
        a=np.array(a, dtype=np.float64),
        b=np.array(b, dtype=np.float64),
        c=np.array(c, dtype=np.float64),
        b_low=None if b_low is None else np.array(b_low, dtype=np.float64),
    )


_SDIRK2_GAMMA = 1.0 - 1.0 / np.sqrt(2.0)

TABLEAUX: Dict[TimeSteppingMethod, ButcherTableau] = {
    # Explicit
    TimeSteppingMethod.FORWARD_EULER: _tableau([[0.0]], [1.0], [0.0]),
    TimeSteppingMethod.RK_THIRD_ORDER: _tableau(
        [[0.0, 0.0, 0.0],
         [0.5, 0.0, 0.0],
         [-1.0, 2.0, 0.0]],
        [1/6, 2/3, 1/6],
        [0.0, 0.5, 1.0],
    ),
    TimeSteppingMethod.RK_FOURTH_ORDER: _tableau(
        [[0.0, 0.0, 0.0, 0.0],
         [0.5, 0.0, 0.0, 0.0],
         [0.0, 0.5, 0.0, 0.0],
         [0.0, 0.0, 1.0, 0.0]],
        [1/6, 1/3, 1/3, 1/6],
        [0.0, 0.5, 0.5, 1.0],
    ),
    # Embedded: b is the higher order solution, b_low the error estimator
    TimeSteppingMethod.HEUN_EULER: _tableau(
        [[0.0, 0.0],
         [1.0, 0.0]],
        [0.5, 0.5],
        [0.0, 1.0],
        [1.0, 0.0],
    ),
    TimeSteppingMethod.BOGACKI_SHAMPINE: _tableau(
        [[0.0, 0.0, 0.0, 0.0],
         [0.5, 0.0, 0.0, 0.0],
         [0.0, 0.75, 0.0, 0.0],
         [2/9, 1/3, 4/9, 0.0]],
        [2/9, 1/3, 4/9, 0.0],
        [0.0, 0.5, 0.75, 1.0],
        [7/24, 1/4, 1/3, 1/8],
    ),
    TimeSteppingMethod.DOPRI: _tableau(
        [[0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
         [1/5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
         [3/40, 9/40, 0.0, 0.0, 0.0, 0.0, 0.0],
         [44/45, -56/15, 32/9, 0.0, 0.0, 0.0, 0.0],
         [19372/6561, -25360/2187, 64448/6561, -212/729, 0.0, 0.0, 0.0],
         [9017/3168, -355/33, 46732/5247, 49/176, -5103/18656, 0.0, 0.0],
         [35/384, 0.0, 500/1113, 125/192, -2187/6784, 11/84, 0.0]],
        [35/384, 0.0, 500/1113, 125/192, -2187/6784, 11/84, 0.0],
        [0.0, 1/5, 3/10, 4/5, 8/9, 1.0, 1.0],
        [5179/57600, 0.0, 7571/16695, 393/640, -92097/339200, 187/2100, 1/40],
    ),
    TimeSteppingMethod.FEHLBERG: _tableau(
        [[0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
         [1/4, 0.0, 0.0, 0.0, 0.0, 0.0],
         [3/32, 9/32, 0.0, 0.0, 0.0, 0.0],
         [1932/2197, -7200/2197, 7296/2197, 0.0, 0.0, 0.0],
         [439/216, -8.0, 3680/513, -845/4104, 0.0, 0.0],
         [-8/27, 2.0, -3544/2565, 1859/4104, -11/40, 0.0]],
        [16/135, 0.0, 6656/12825, 28561/56430, -9/50, 2/55],
        [0.0, 1/4, 3/8, 12/13, 1.0, 1/2],
        [25/216, 0.0, 1408/2565, 2197/4104, -1/5, 0.0],
    ),
    TimeSteppingMethod.CASH_KARP: _tableau(
        [[0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
         [1/5, 0.0, 0.0, 0.0, 0.0, 0.0],
         [3/40, 9/40, 0.0, 0.0, 0.0, 0.0],
         [3/10, -9/10, 6/5, 0.0, 0.0, 0.0],
         [-11/54, 5/2, -70/27, 35/27, 0.0, 0.0],
         [1631/55296, 175/512, 575/13824, 44275/110592, 253/4096, 0.0]],
        [37/378, 0.0, 250/621, 125/594, 0.0, 512/1771],
        [0.0, 1/5, 3/10, 3/5, 1.0, 7/8],
        [2825/27648, 0.0, 18575/48384, 13525/55296, 277/14336, 1/4],
    ),
    # Diagonally implicit
    TimeSteppingMethod.BACKWARD_EULER: _tableau([[1.0]], [1.0], [1.0]),
    TimeSteppingMethod.IMPLICIT_MIDPOINT: _tableau([[0.5]], [1.0], [0.5]),
    TimeSteppingMethod.CRANK_NICOLSON: _tableau(
        [[0.0, 0.0],
         [0.5, 0.5]],
        [0.5, 0.5],
        [0.0, 1.0],
    ),
    TimeSteppingMethod.SDIRK2: _tableau(
        [[_SDIRK2_GAMMA, 0.0],
         [1.0 - _SDIRK2_GAMMA, _SDIRK2_GAMMA]],
        [1.0 - _SDIRK2_GAMMA, _SDIRK2_GAMMA],
        [_SDIRK2_GAMMA, 1.0],
    ),
}


class ExitReason(StrEnum):
    FIXED_STEP = "fixed_step"
    TOLERANCE = "tolerance"
    MAX_DELTA_T = "max_delta_t"
    MIN_DELTA_T = "min_delta_t"


@dataclass
class TimeSteppingStatus:
    """
    Outcome of the last step.

    Attributes:
        n_iterations: Attempts (embedded) or Newton iterations of the last stage (implicit).
        error_norm: Estimated local error (embedded) or final Newton residual (implicit).
        delta_t_guess: Suggested size of the next step.
        exit_reason: Why the step was accepted.
        n_rejected: Rejected attempts before acceptance.
    """
    n_iterations: int = 0
    error_norm: float = 0.0
    delta_t_guess: float = 0.0
    exit_reason: ExitReason = ExitReason.FIXED_STEP
    n_rejected: int = 0


class RungeKutta:
    """Base class holding the tableau and the status of the last step."""

    def __init__(self, method: TimeSteppingMethod) -> None:
        self.method = TimeSteppingMethod(method)
        self.tableau = TABLEAUX[self.method]
        self.status = TimeSteppingStatus()

    def _explicit_stages(
        self,
        f: RhsFunction,
        t: float,
        delta_t: float,
        y: npt.NDArray[np.float64],
    ) -> list[npt.NDArray[np.float64]]:
        tab = self.tableau
        k: list[npt.NDArray[np.float64]] = []
        for i in range(tab.n_stages):
            y_stage = y.copy()
            for j in range(i):
                if tab.a[i, j] != 0.0:
                    y_stage += delta_t * tab.a[i, j] * k[j]
            k.append(f(t + tab.c[i] * delta_t, y_stage))
        return k

    def _combine(self, weights, k, delta_t) -> npt.NDArray[np.float64]:
        increment = np.zeros_like(k[0])
        for w, k_i in zip(weights, k):
            if w != 0.0:
                increment += w * k_i
        return delta_t * increment


class ExplicitRungeKutta(RungeKutta):
    """Fixed step explicit Runge-Kutta (forward Euler, RK3, RK4)."""

    def evolve_one_time_step(
        self,
        f: RhsFunction,
        t: float,
        delta_t: float,
        y: npt.NDArray[np.float64],
    ) -> float:
        """
        Advance ``y`` in place by ``delta_t``.

        Returns:
            The new time ``t + delta_t``.
        """
        k = self._explicit_stages(f, t, delta_t, y)
        y += self._combine(self.tableau.b, k, delta_t)
        self.status = TimeSteppingStatus(n_iterations=1, delta_t_guess=delta_t)
        return t + delta_t


class EmbeddedExplicitRungeKutta(RungeKutta):
    """Adaptive explicit Runge-Kutta with an embedded error estimate."""

    def __init__(
        self,
        method: TimeSteppingMethod,
        coarsen_param: float = 1.2,
        refine_param: float = 0.8,
        min_delta: float = 1e-14,
        max_delta: float = 1e100,
        refine_tol: float = 1e-8,
        coarsen_tol: float = 1e-12,
    ) -> None:
        """
        Initialize the embedded scheme.

        Args:
            method: An embedded method.
            coarsen_param: Growth factor of the step after a very accurate step.
            refine_param: Shrink factor of the step after a rejected step.
            min_delta: Smallest allowed step.
            max_delta: Largest allowed step.
            refine_tol: Steps with a larger error are rejected.
            coarsen_tol: Steps with a smaller error enlarge the next step.
        """
        super().__init__(method)
        assert self.tableau.b_low is not None, f"'{method}' is not an embedded method."
        self.coarsen_param = coarsen_param
        self.refine_param = refine_param
        self.min_delta = min_delta
        self.max_delta = max_delta
        self.refine_tol = refine_tol
        self.coarsen_tol = coarsen_tol

    def evolve_one_time_step(
        self,
        f: RhsFunction,
        t: float,
        delta_t: float,
        y: npt.NDArray[np.float64],
    ) -> float:
        """
        Advance ``y`` in place, shrinking the step until the error is acceptable.

        Returns:
            ``t`` plus the accepted step, which may be smaller than ``delta_t``.
        """
        tab = self.tableau
        error_weights = tab.b - tab.b_low
        n_iterations = 0
        while True:
            n_iterations += 1
            k = self._explicit_stages(f, t, delta_t, y)
            error_norm = float(np.linalg.norm(self._combine(error_weights, k, delta_t)))

            if error_norm < self.coarsen_tol:
                guess = delta_t * self.coarsen_param
                exit_reason = ExitReason.TOLERANCE
                if guess > self.max_delta:
                    guess = self.max_delta
                    exit_reason = ExitReason.MAX_DELTA_T
                break
            if error_norm < self.refine_tol:
                guess = delta_t
                exit_reason = ExitReason.TOLERANCE
                break
            if delta_t < self.min_delta:
                logger.warning(f"Time step {delta_t:.3e} below the minimum {self.min_delta:.3e}; "
                               f"accepting step with error {error_norm:.3e}")
                guess = delta_t
                exit_reason = ExitReason.MIN_DELTA_T
                break

            logger.debug(f"Rejected step dt={delta_t:.6e}, error={error_norm:.3e}")
            delta_t *= self.refine_param

        y += self._combine(tab.b, k, delta_t)
        self.status = TimeSteppingStatus(
            n_iterations=n_iterations,
            error_norm=error_norm,
            delta_t_guess=guess,
            exit_reason=exit_reason,
            n_rejected=n_iterations - 1,
        )
        logger.debug(f"Accepted step dt={delta_t:.6e} after {n_iterations} attempt(s), "
                     f"error={error_norm:.3e}, next dt={guess:.6e}")
        return t + delta_t


class ImplicitRungeKutta(RungeKutta):
    """Diagonally implicit Runge-Kutta with a Newton solve per stage."""

    def __init__(
        self,
        method: TimeSteppingMethod,
        max_it: int = 100,
        tolerance: float = 1e-6,
    ) -> None:
        super().__init__(method)
        a = self.tableau.a
        assert np.allclose(a, np.tril(a)), f"'{method}' is not diagonally implicit."
        self.max_it = max_it
        self.tolerance = tolerance

    def _newton_solve(
        self,
        f: RhsFunction,
        id_minus_tau_J_inverse: JacobianInverseFunction,
        t: float,
        tau: float,
        old_y: npt.NDArray[np.float64],
        y: npt.NDArray[np.float64],
    ) -> tuple[int, float]:
        """Solve y = old_y + tau f(t, y) in place; returns iterations and residual norm."""
        residual = old_y + tau * f(t, y) - y
        residual_norm = float(np.linalg.norm(residual))
        n_iterations = 0
        while residual_norm > self.tolerance and n_iterations < self.max_it:
            y += id_minus_tau_J_inverse(t, tau, residual, y)
            residual = old_y + tau * f(t, y) - y
            residual_norm = float(np.linalg.norm(residual))
            n_iterations += 1

        if residual_norm > self.tolerance:
            logger.warning(f"Newton did not converge in {self.max_it} iterations "
                           f"(residual {residual_norm:.3e}, tolerance {self.tolerance:.3e})")
        else:
            logger.debug(f"Newton converged in {n_iterations} iteration(s), residual {residual_norm:.3e}")
        return n_iterations, residual_norm

    def evolve_one_time_step(
        self,
        f: RhsFunction,
        id_minus_tau_J_inverse: JacobianInverseFunction,
        t: float,
        delta_t: float,
        y: npt.NDArray[np.float64],
    ) -> float:
        """
        Advance ``y`` in place by ``delta_t``.

        Args:
            f: Right-hand side.
            id_minus_tau_J_inverse: Applies (I - tau J)^-1 with J taken at the given state.
            t: Current time.
            delta_t: Step size.
            y: Solution, overwritten with the new solution.

        Returns:
            The new time ``t + delta_t``.
        """
        tab = self.tableau
        k: list[npt.NDArray[np.float64]] = []
        n_iterations = 0
        residual_norm = 0.0
        for i in range(tab.n_stages):
            t_stage = t + tab.c[i] * delta_t
            old_y = y.copy()
            for j in range(i):
                if tab.a[i, j] != 0.0:
                    old_y += delta_t * tab.a[i, j] * k[j]

            tau = tab.a[i, i] * delta_t
            y_stage = old_y.copy()
            if tau != 0.0:
                n_iterations, residual_norm = self._newton_solve(
                    f, id_minus_tau_J_inverse, t_stage, tau, old_y, y_stage
                )
            k.append(f(t_stage, y_stage))

        y += self._combine(tab.b, k, delta_t)
        self.status = TimeSteppingStatus(
            n_iterations=n_iterations,
            error_norm=residual_norm,
            delta_t_guess=delta_t,
        )
        return t + delta_t


def make_time_stepper(config: TimeSteppingConfig) -> RungeKutta:
    """Build the integrator selected by a ``TimeSteppingConfig``."""
    method = config.method
    if method.is_embedded:
        return EmbeddedExplicitRungeKutta(
            method,
            coarsen_param=config.coarsening_parameter,
            refine_param=config.refining_parameter,
            min_delta=config.min_time_step,
            max_delta=config.max_time_step,
            refine_tol=config.refining_tolerance,
            coarsen_tol=config.coarsening_tolerance,
        )
    if method.is_implicit:
        return ImplicitRungeKutta(
            method,
            max_it=config.newton_max_iteration,
            tolerance=config.newton_tolerance,
        )
    return ExplicitRungeKutta(method)
