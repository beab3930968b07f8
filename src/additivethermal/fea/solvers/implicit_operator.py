from __future__ import annotations

from dataclasses import dataclass
import logging
from math import ceil
from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np
from scipy.sparse.linalg import LinearOperator, gmres

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.fea.analysis.mass_operator import MassOperator
    from additivethermal.fea.analysis.thermal_operator import ThermalOperator

logger = logging.getLogger(__name__)

SQRT_EPS = float(np.sqrt(np.finfo(np.float64).eps))


@dataclass
class SolveStatus:
    """
    Outcome of a Krylov solve.

    Attributes:
        converged: The residual reached the tolerance.
        n_iterations: Inner GMRES iterations performed.
        residual_norm: ||y - A x||_2 of the returned solution.
    """
    converged: bool
    n_iterations: int
    residual_norm: float


class ImplicitOperator:
    """
    The operator ``I - tau M^-1 J`` of an implicit stage.

    ``J`` is the Jacobian of the thermal residual around the current Newton
    state, applied either by finite differences of the residual (JFNK) or by
    the residual's linear part with coefficients frozen at the state.
    """

    def __init__(
        self,
        thermal_operator: ThermalOperator,
        mass_operator: MassOperator,
        jfnk: bool = False,
    ) -> None:
        """
        Initialize the ImplicitOperator.

        Args:
            thermal_operator: Residual operator.
            mass_operator: Lumped mass with its inverse.
            jfnk: Use a directional derivative of the residual instead of frozen coefficients.
        """
        self.thermal_operator = thermal_operator
        self.mass_operator = mass_operator
        self.jfnk = jfnk

        self.tau = 0.0
        self.current_source_height = 0.0
        self.state: Optional[npt.NDArray[np.float64]] = None
        self._residual_at_state: Optional[npt.NDArray[np.float64]] = None

    @property
    def m(self) -> int:
        return self.mass_operator.m

    def set_tau(self, tau: float) -> None:
        self.tau = tau

    def set_state(self, state: npt.NDArray[np.float64], current_source_height: float) -> None:
        """Linearization point of the Jacobian."""
        self.state = state.copy()
        self.current_source_height = current_source_height
        self._residual_at_state = None
        if self.jfnk:
            self._residual_at_state = self.thermal_operator.apply(
                self.state, current_source_height, update_state=False
            )

    def jacobian_vmult(self, x: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """M^-1 J x."""
        assert self.state is not None, "set_state() must be called first."
        if self.jfnk:
            x_norm = float(np.linalg.norm(x))
            if x_norm == 0.0:
                return np.zeros_like(x)
            epsilon = SQRT_EPS * (1.0 + float(np.linalg.norm(self.state))) / x_norm
            perturbed = self.thermal_operator.apply(
                self.state + epsilon * x, self.current_source_height, update_state=False
            )
            jx = (perturbed - self._residual_at_state) / epsilon
        else:
            jx = self.thermal_operator.apply_frozen(x, self.state, self.current_source_height)
        return self.mass_operator.vmult(jx)

    def vmult(self, x: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """(I - tau M^-1 J) x."""
        return x - self.tau * self.jacobian_vmult(x)

    def solve(
        self,
        tau: float,
        y: npt.NDArray[np.float64],
        state: npt.NDArray[np.float64],
        current_source_height: float,
        max_iterations: int = 1000,
        tolerance: float = 1e-12,
        restart: int = 30,
    ) -> Tuple[npt.NDArray[np.float64], SolveStatus]:
        """
        Solve (I - tau M^-1 J) x = y with restarted GMRES.

        The preconditioner is the identity.

        Args:
            tau: Implicit stage coefficient times the step.
            y: Right-hand side.
            state: Linearization point.
            current_source_height: Height passed to the residual.
            max_iterations: Cap on the total number of inner iterations.
            tolerance: Relative tolerance, scaled by ||y||_2.
            restart: Krylov subspace size before a restart.

        Returns:
            The solution and the solve status. Non-convergence is reported,
            not raised.
        """
        y_norm = float(np.linalg.norm(y))
        if y_norm == 0.0:
            return np.zeros_like(y), SolveStatus(converged=True, n_iterations=0, residual_norm=0.0)

        self.set_tau(tau)
        self.set_state(state, current_source_height)
        operator = LinearOperator((y.size, y.size), matvec=self.vmult, dtype=np.float64)

        restart = max(1, min(restart, max_iterations))
        n_iterations = 0

        def count(_):
            nonlocal n_iterations
            n_iterations += 1

        x, info = gmres(
            operator,
            y,
            rtol=0.0,
            atol=tolerance * y_norm,
            restart=restart,
            maxiter=ceil(max_iterations / restart),
            callback=count,
            callback_type='pr_norm',
        )
        residual_norm = float(np.linalg.norm(y - self.vmult(x)))
        status = SolveStatus(converged=info == 0, n_iterations=n_iterations, residual_norm=residual_norm)

        if info < 0:
            raise ValueError(f"GMRES received illegal input (info={info}).")
        if status.converged:
            logger.debug(f"GMRES converged in {n_iterations} iteration(s), residual {residual_norm:.3e}")
        else:
            logger.debug(f"GMRES stopped after {n_iterations} iteration(s), residual {residual_norm:.3e}")
        return x, status
