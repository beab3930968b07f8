"""
Tests for the time integration controller and the implicit stage solve.
"""
import numpy as np
import pytest

from additivethermal.exceptions import ImplicitSolveError
from additivethermal.fea.pre.deposition import DepositionBox
from additivethermal.fea.solvers import Solver
from additivethermal.fea.solvers.implicit_operator import ImplicitOperator, SolveStatus

from conftest import make_model


# --- Fixtures ---

class MatrixThermalOperator:
    """Stand-in thermal operator whose frozen Jacobian is a dense matrix."""

    def __init__(self, matrix):
        self.matrix = matrix

    def apply_frozen(self, direction, state, current_source_height):
        return self.matrix @ direction


class IdentityMass:

    def __init__(self, m):
        self.m = m

    def vmult(self, src):
        return src


def sloped_temperature(model, slope=100.0):
    """300 K plus a linear profile along x."""
    return 300.0 + slope * model.mesh.dof_coordinates()[:, 0]


def lumped_energy(model, solution):
    return float(np.sum(model.mass_operator.diagonal * solution))


def cube_beam(value, end_time=10.0):
    return {"type": "cube", "min_point": [0.0, 0.0], "max_point": [1.0, 1.0],
            "start_time": 0.0, "end_time": end_time, "value": value}


# =============================================================================
# Implicit operator
# =============================================================================

class TestImplicitOperator:

    def test_solves_linear_system(self, rng):
        A = 0.1 * rng.standard_normal((10, 10))
        operator = ImplicitOperator(MatrixThermalOperator(A), IdentityMass(10))
        y = rng.standard_normal(10)
        x, status = operator.solve(tau=0.5, y=y, state=np.zeros(10), current_source_height=0.0)
        assert status.converged
        np.testing.assert_allclose((np.eye(10) - 0.5 * A) @ x, y, atol=1e-10)

    def test_zero_right_hand_side(self, rng):
        operator = ImplicitOperator(MatrixThermalOperator(np.eye(4)), IdentityMass(4))
        x, status = operator.solve(tau=1.0, y=np.zeros(4), state=np.zeros(4), current_source_height=0.0)
        np.testing.assert_array_equal(x, 0.0)
        assert status.converged
        assert status.n_iterations == 0

    def test_non_convergence_is_reported(self, rng):
        A = rng.standard_normal((20, 20))
        operator = ImplicitOperator(MatrixThermalOperator(A), IdentityMass(20))
        y = rng.standard_normal(20)
        x, status = operator.solve(tau=1.0, y=y, state=np.zeros(20), current_source_height=0.0,
                                   max_iterations=1, tolerance=1e-12)
        assert not status.converged
        assert status.n_iterations == 1
        assert status.residual_norm > 1e-12 * np.linalg.norm(y)

    def test_jfnk_matches_frozen_for_linear_problem(self, model_factory, rng):
        model = model_factory(length=2.0, length_divisions=2)
        state = sloped_temperature(model)
        x = rng.standard_normal(model.n_dofs)

        frozen = ImplicitOperator(model.thermal_operator, model.mass_operator, jfnk=False)
        frozen.set_state(state, 0.0)
        jfnk = ImplicitOperator(model.thermal_operator, model.mass_operator, jfnk=True)
        jfnk.set_state(state, 0.0)

        expected = frozen.jacobian_vmult(x)
        np.testing.assert_allclose(jfnk.jacobian_vmult(x), expected, rtol=1e-5, atol=1e-5 * np.abs(expected).max())


# =============================================================================
# Solver
# =============================================================================

class TestExplicitSolver:

    def test_uniform_source_heats_uniformly(self, model_factory):
        model = model_factory(beams=[cube_beam(10.0)])
        solver = Solver(model)
        time, solution = solver.solve(end_time=0.3, delta_t=0.1)
        assert time == pytest.approx(0.3)
        assert solver.n_accepted_steps == 3
        np.testing.assert_allclose(solution, 303.0)

    def test_source_height(self, model_factory):
        goldak = {
            "type": "goldak", "depth": 0.1, "diameter": 0.1, "max_power": 1.0,
            "scan_path": [{"mode": "point", "point": [0.0, 0.0, 2.0], "value": 1.0}],
        }
        model = model_factory(beams=[cube_beam(1.0), goldak])
        solver = Solver(model)
        assert solver.update_current_source_height(0.0) == 2.0

    def test_no_sources_height(self, single_cell_model):
        assert Solver(single_cell_model).update_current_source_height(0.0) == 0.0

    def test_conduction_conserves_energy(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2, method="rk_fourth_order")
        solution = sloped_temperature(model)
        energy = lumped_energy(model, solution)
        solver = Solver(model)
        for i in range(5):
            solver.evolve_one_time_step(0.01 * i, 0.01, solution)
        assert lumped_energy(model, solution) == pytest.approx(energy)
        assert np.ptp(solution) < 200.0

    def test_constrained_dofs_follow_masters(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2)
        model.mesh.constraints.add_line(1, [(0, 0.5), (2, 0.5)])
        model.compute_inverse_mass_matrix()
        time, solution = Solver(model).solve(end_time=0.3, delta_t=0.1,
                                             solution=model.initialize_dof_vector(300.0))
        np.testing.assert_allclose(solution, 300.0)

    def test_constrained_entry_is_distributed_after_a_step(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2)
        model.mesh.constraints.add_line(1, [(0, 0.5), (2, 0.5)])
        model.compute_inverse_mass_matrix()
        solution = sloped_temperature(model)
        solution[1] = 0.0
        Solver(model).evolve_one_time_step(0.0, 0.01, solution)
        assert solution[1] == pytest.approx(0.5 * (solution[0] + solution[2]))


class TestEmbeddedSolver:

    def test_rejected_steps_shrink_the_step(self):
        dt = 0.01
        reference = Solver(make_model(length=2.0, length_divisions=2, method="heun_euler",
                                      time_stepping={"refining_tolerance": 1e10}))
        solution = sloped_temperature(reference.model)
        reference.evolve_one_time_step(0.0, dt, solution)
        first_error = reference.status.error_norm
        assert reference.status.n_rejected == 0
        assert first_error > 0.0

        model = make_model(length=2.0, length_divisions=2, method="heun_euler",
                           time_stepping={"refining_tolerance": 0.5 * first_error})
        solver = Solver(model)
        solution = sloped_temperature(model)
        time = solver.evolve_one_time_step(0.0, dt, solution)

        n_rejected = solver.status.n_rejected
        assert n_rejected >= 1
        assert solver.n_rejected_steps == n_rejected
        assert time == pytest.approx(dt * 0.8 ** n_rejected)
        assert solver.delta_t_guess == pytest.approx(time)
        assert solver.status.error_norm < 0.5 * first_error

    def test_solve_reaches_end_time(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2, method="bogacki_shampine",
                              time_stepping={"refining_tolerance": 1e-3})
        solver = Solver(model)
        time, solution = solver.solve(end_time=0.05, delta_t=0.01, solution=sloped_temperature(model))
        assert time == pytest.approx(0.05)
        assert np.all(np.isfinite(solution))


class TestImplicitSolver:

    @pytest.mark.parametrize("jfnk, tolerance", [(False, 1e-12), (True, 1e-6)])
    def test_backward_euler_conserves_energy(self, model_factory, jfnk, tolerance):
        model = model_factory(length=2.0, length_divisions=2, method="backward_euler",
                              time_stepping={"jfnk": jfnk, "tolerance": tolerance})
        solution = sloped_temperature(model)
        energy = lumped_energy(model, solution)
        solver = Solver(model)
        time = solver.evolve_one_time_step(0.0, 0.1, solution)
        assert time == pytest.approx(0.1)
        assert lumped_energy(model, solution) == pytest.approx(energy, rel=1e-8)
        assert solution.max() < 500.0
        assert solution.min() > 300.0

    def test_steady_state_is_kept(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2, method="sdirk2")
        solution = model.initialize_dof_vector(300.0)
        Solver(model).evolve_one_time_step(0.0, 1.0, solution)
        np.testing.assert_allclose(solution, 300.0)

    def test_large_step_is_stable(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2, method="backward_euler",
                              time_stepping={"tolerance": 1e-10})
        solution = sloped_temperature(model)
        solver = Solver(model)
        for i in range(3):
            solver.evolve_one_time_step(100.0 * i, 100.0, solution)
        np.testing.assert_allclose(solution, 400.0, rtol=1e-6)

    def test_gmres_failure_raises(self, single_cell_model, monkeypatch):
        solver = Solver(single_cell_model)
        assert solver.implicit_operator is None

        model = make_model(method="backward_euler")
        solver = Solver(model)
        failed = SolveStatus(converged=False, n_iterations=7, residual_norm=1.0)
        monkeypatch.setattr(solver.implicit_operator, "solve",
                            lambda **kwargs: (np.zeros(model.n_dofs), failed))
        with pytest.raises(ImplicitSolveError) as excinfo:
            solver.evolve_one_time_step(0.0, 0.1, sloped_temperature(model))
        assert excinfo.value.status is failed


class TestDepositionDuringSolve:

    def test_material_is_added(self, model_factory):
        model = model_factory(height=2.0, height_divisions=2, material_height=1.0,
                              initial_temperature=500.0, new_material_temperature=300.0)
        box = DepositionBox(center=np.array([0.5, 1.5]), size=np.array([1.0, 1.0]), time=0.05, cos=1.0, sin=0.0)
        solver = Solver(model)
        time, solution = solver.solve(end_time=0.2, delta_t=0.1, deposition_boxes=[box])

        assert model.mesh.active.all()
        assert solution.size == model.n_dofs == 6
        top = model.mesh.dof_coordinates()[:, 1] == 2.0
        assert solution[top].max() < solution[~top].min()
