from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

from additivethermal.exceptions import ImplicitSolveError
from additivethermal.fea.pre.deposition import activation_index, get_elements_to_activate
from additivethermal.fea.solvers.activation import add_material
from additivethermal.fea.solvers.implicit_operator import ImplicitOperator
from additivethermal.fea.solvers.time_stepping import (
    EmbeddedExplicitRungeKutta, ImplicitRungeKutta, TimeSteppingStatus, make_time_stepper
)

if TYPE_CHECKING:
    import numpy.typing as npt

    from additivethermal.config import TimeSteppingConfig
    from additivethermal.fea.analysis.model import Model
    from additivethermal.fea.pre.deposition import DepositionBox

logger = logging.getLogger(__name__)


class Solver:
    """
    Time integration controller for the thermal model.
    """

    def __init__(
        self,
        model: Model,
        time_stepping: Optional[TimeSteppingConfig] = None,
    ) -> None:
        """
        Initialize the solver with a model.

        Args:
            model: The model to be solved.
            time_stepping: Scheme and tolerances; defaults to the model's configuration.
        """
        self.model = model
        self.time_stepping = time_stepping or model.config.time_stepping
        self.time_stepper = make_time_stepper(self.time_stepping)

        self.implicit_operator: Optional[ImplicitOperator] = None
        if self.is_implicit:
            self.implicit_operator = ImplicitOperator(
                thermal_operator=model.thermal_operator,
                mass_operator=model.mass_operator,
                jfnk=self.time_stepping.jfnk,
            )

        self.current_source_height = 0.0
        self.n_accepted_steps = 0
        self.n_rejected_steps = 0

        if self.is_implicit:
            jacobian = "JFNK" if self.time_stepping.jfnk else "frozen"
            logger.info(f"Solver: method={self.time_stepping.method}, {jacobian} Jacobian")
        else:
            logger.info(f"Solver: method={self.time_stepping.method}")

    @property
    def is_embedded(self) -> bool:
        return isinstance(self.time_stepper, EmbeddedExplicitRungeKutta)

    @property
    def is_implicit(self) -> bool:
        return isinstance(self.time_stepper, ImplicitRungeKutta)

    @property
    def status(self) -> TimeSteppingStatus:
        return self.time_stepper.status

    @property
    def delta_t_guess(self) -> float:
        return self.time_stepper.status.delta_t_guess

    def update_current_source_height(self, time: float) -> float:
        """
        Set the height every source is measured from.

        All sources share a single height: the highest one at ``time``.
        Sources depositing at different heights are therefore not handled
        independently.
        """
        heights = [source.get_current_height(time) for source in self.model.heat_sources]
        self.current_source_height = max(heights) if heights else 0.0
        return self.current_source_height

    def evaluate_thermal_physics(self, time: float, y: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        dT/dt = M^-1 residual(t, T).

        Args:
            time: Time of the evaluation.
            y: Temperature dof vector.

        Returns:
            Time derivative of the temperature.
        """
        for source in self.model.heat_sources:
            source.update_time(time)
        self.update_current_source_height(time)
        residual = self.model.thermal_operator.apply(y, self.current_source_height)
        return self.model.mass_operator.vmult(residual)

    def id_minus_tau_J_inverse(
        self,
        time: float,
        tau: float,
        y: npt.NDArray[np.float64],
        state: npt.NDArray[np.float64],
    ) -> npt.NDArray[np.float64]:
        """
        Apply (I - tau M^-1 J)^-1 to ``y`` with J linearized at ``state``.

        Raises:
            ImplicitSolveError: If GMRES does not converge. Implicit schemes
                run with a fixed step, so there is no smaller step to retry.
        """
        for source in self.model.heat_sources:
            source.update_time(time)
        self.update_current_source_height(time)

        ts = self.time_stepping
        x, status = self.implicit_operator.solve(
            tau=tau,
            y=y,
            state=state,
            current_source_height=self.current_source_height,
            max_iterations=ts.max_iteration,
            tolerance=ts.tolerance,
            restart=ts.n_tmp_vectors,
        )
        if not status.converged:
            raise ImplicitSolveError(
                f"GMRES did not converge at t={time:.6e}: {status.n_iterations} iteration(s), "
                f"residual {status.residual_norm:.3e}",
                status=status,
            )
        return x

    def evolve_one_time_step(
        self,
        time: float,
        delta_t: float,
        solution: npt.NDArray[np.float64],
    ) -> float:
        """
        Advance ``solution`` in place.

        Constrained entries are distributed from their masters after the step.

        Args:
            time: Current time.
            delta_t: Requested step.
            solution: Temperature dof vector, overwritten.

        Returns:
            The new time. Embedded schemes may have taken a smaller step than
            ``delta_t``; see ``delta_t_guess`` for the next one.
        """
        if self.is_implicit:
            new_time = self.time_stepper.evolve_one_time_step(
                self.evaluate_thermal_physics, self.id_minus_tau_J_inverse, time, delta_t, solution
            )
        else:
            new_time = self.time_stepper.evolve_one_time_step(
                self.evaluate_thermal_physics, time, delta_t, solution
            )
        solution[:] = self.model.mesh.constraints.distribute(solution)
        self.n_accepted_steps += 1
        self.n_rejected_steps += self.status.n_rejected
        return new_time

    def solve(
        self,
        end_time: float,
        delta_t: float,
        solution: Optional[npt.NDArray[np.float64]] = None,
        deposition_boxes: Optional[List[DepositionBox]] = None,
    ) -> Tuple[float, npt.NDArray[np.float64]]:
        """
        Integrate from t = 0 to ``end_time``, activating material on the way.

        Args:
            end_time: Final time.
            delta_t: Initial (fixed schemes: constant) step.
            solution: Initial temperature; defaults to the configured initial temperature.
            deposition_boxes: Material added during the run, sorted by time.

        Returns:
            The final time and temperature.
        """
        config = self.model.config
        if solution is None:
            solution = self.model.initialize_dof_vector(config.initial_temperature)

        boxes = deposition_boxes or []
        groups = get_elements_to_activate(self.model.mesh, boxes)
        new_has_melted: List[bool] = [False] * len(boxes)
        activation_start = 0

        time = 0.0
        step = 0
        while time < end_time:
            activation_end = activation_index(boxes, time)
            if activation_end > activation_start:
                solution = add_material(
                    model=self.model,
                    elements_to_activate=groups,
                    new_deposition_cos=[box.cos for box in boxes],
                    new_deposition_sin=[box.sin for box in boxes],
                    new_has_melted=new_has_melted,
                    activation_start=activation_start,
                    activation_end=activation_end,
                    new_material_temperature=config.new_material_temperature,
                    solution=solution,
                )
                activation_start = activation_end

            time = self.evolve_one_time_step(time, min(delta_t, end_time - time), solution)
            if self.is_embedded:
                delta_t = self.delta_t_guess
            if config.melt_threshold is not None:
                self.model.thermal_operator.mark_has_melted(config.melt_threshold, solution)

            step += 1
            logger.info(f"Step {step} - Time: {time:.6e} s - T max: {np.max(solution):.2f} K - "
                        f"dofs: {solution.size}")

        logger.info(f"Finished: {self.n_accepted_steps} accepted step(s), "
                    f"{self.n_rejected_steps} rejected attempt(s)")
        return time, solution
