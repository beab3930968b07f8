"""
Tests for the thermal residual and the lumped mass operator.
"""
import numpy as np
import pytest
from scipy.constants import Stefan_Boltzmann

from additivethermal.fea.pre.material import MaterialState

from conftest import make_model, material_block


def goldak_beam(point, depth=1.0, diameter=1.0, max_power=100.0):
    return {
        "type": "goldak",
        "depth": depth,
        "diameter": diameter,
        "max_power": max_power,
        "absorption_efficiency": 1.0,
        "scan_path": [{"mode": "point", "point": list(point), "power_modifier": 1.0, "value": 10.0}],
    }


# =============================================================================
# Mass operator
# =============================================================================

class TestMassOperator:

    def test_total_mass_is_volume(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2)
        assert model.mass_operator.diagonal.sum() == pytest.approx(2.0)

    def test_lumped_entries(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2)
        x = model.mesh.dof_coordinates()[:, 0]
        expected = np.where(x == 1.0, 0.5, 0.25)
        np.testing.assert_allclose(model.mass_operator.diagonal, expected)

    def test_inverse(self, model_factory):
        model = model_factory(dim=3, length_divisions=2, height_divisions=2)
        mass = model.mass_operator
        assert np.all(mass.diagonal > 0.0)
        np.testing.assert_allclose(mass.diagonal * mass.inverse_diagonal, 1.0)
        np.testing.assert_allclose(mass.vmult(mass.diagonal), 1.0)

    def test_only_active_cells(self, model_factory):
        model = model_factory(height=2.0, height_divisions=2, material_height=1.0)
        assert model.n_dofs == 4
        assert model.mass_operator.diagonal.sum() == pytest.approx(1.0)


# =============================================================================
# Thermal operator: conduction
# =============================================================================

class TestConduction:

    def test_uniform_temperature_is_steady(self, single_cell_model):
        model = single_cell_model
        residual = model.thermal_operator.apply(model.initialize_dof_vector(300.0), 0.0)
        np.testing.assert_allclose(residual, 0.0, atol=1e-10)

    def test_linear_profile(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2)
        x = model.mesh.dof_coordinates()[:, 0]
        residual = model.thermal_operator.apply(x.copy(), 0.0)
        assert residual.sum() == pytest.approx(0.0, abs=1e-12)
        np.testing.assert_allclose(residual, np.select([x == 0.0, x == 2.0], [0.5, -0.5], 0.0), atol=1e-12)

    def test_conductivity_scales_residual(self, model_factory):
        slow = model_factory(length=2.0, length_divisions=2)
        fast = model_factory(length=2.0, length_divisions=2, material=material_block(kx=4.0, kz=4.0))
        x = slow.mesh.dof_coordinates()[:, 0]
        np.testing.assert_allclose(fast.thermal_operator.apply(x.copy(), 0.0),
                                   4.0 * slow.thermal_operator.apply(x.copy(), 0.0), atol=1e-12)

    def test_heat_capacity_scales_residual(self, model_factory):
        light = model_factory(length=2.0, length_divisions=2)
        heavy = model_factory(length=2.0, length_divisions=2, material=material_block(density=2.0))
        x = light.mesh.dof_coordinates()[:, 0]
        np.testing.assert_allclose(heavy.thermal_operator.apply(x.copy(), 0.0),
                                   0.5 * light.thermal_operator.apply(x.copy(), 0.0), atol=1e-12)

    def test_deposition_orientation_rotates_conductivity(self, model_factory):
        model = model_factory(dim=3, width_divisions=2, material=material_block(kx=2.0, ky=1.0))
        operator = model.thermal_operator
        y = model.mesh.dof_coordinates()[:, 1]
        along_x = operator.apply(y.copy(), 0.0)
        assert np.abs(along_x).max() > 0.0

        operator.set_material_deposition_orientation(np.zeros(operator.n_cells), np.ones(operator.n_cells))
        along_y = operator.apply(y.copy(), 0.0)
        np.testing.assert_allclose(along_y, 2.0 * along_x, atol=1e-12)


# =============================================================================
# Thermal operator: boundary and sources
# =============================================================================

class TestBoundary:

    def test_convective_loss(self, model_factory):
        model = model_factory(boundary="convective", material=material_block(h_conv=10.0))
        residual = model.thermal_operator.apply(model.initialize_dof_vector(400.0), 0.0)
        assert residual.sum() == pytest.approx(-10.0 * 100.0 * 4.0)
        np.testing.assert_allclose(residual, -1000.0)

    def test_radiative_loss(self, model_factory):
        model = model_factory(boundary="radiative", material=material_block(emissivity=1.0))
        residual = model.thermal_operator.apply(model.initialize_dof_vector(400.0), 0.0)
        assert residual.sum() == pytest.approx(-Stefan_Boltzmann * (400.0 ** 4 - 300.0 ** 4) * 4.0)

    def test_adiabatic_ignores_coefficients(self, model_factory):
        model = model_factory(boundary="adiabatic", material=material_block(h_conv=10.0, emissivity=1.0))
        residual = model.thermal_operator.apply(model.initialize_dof_vector(400.0), 0.0)
        np.testing.assert_allclose(residual, 0.0, atol=1e-10)

    def test_inactive_neighbour_is_boundary(self, model_factory):
        model = model_factory(height=2.0, height_divisions=2, material_height=1.0,
                              boundary="convective", material=material_block(h_conv=10.0))
        residual = model.thermal_operator.apply(model.initialize_dof_vector(400.0), 0.0)
        assert residual.sum() == pytest.approx(-4000.0)

    def test_frozen_operator_is_linear_part(self, model_factory, rng):
        model = model_factory(length=2.0, length_divisions=2, boundary="convective",
                              material=material_block(h_conv=10.0))
        operator = model.thermal_operator
        x = rng.uniform(-1.0, 1.0, model.n_dofs)
        state = model.initialize_dof_vector(500.0)
        zero = np.zeros(model.n_dofs)
        expected = operator.apply(x, 0.0, update_state=False) - operator.apply(zero, 0.0, update_state=False)
        np.testing.assert_allclose(operator.apply_frozen(x, state, 0.0), expected, atol=1e-10)


class TestConstraints:
    """A constraint x_1 = (x_0 + x_2) / 2 on the bottom middle node of two cells."""

    @pytest.fixture
    def model(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2)
        model.mesh.constraints.add_line(1, [(0, 0.5), (2, 0.5)])
        model.compute_inverse_mass_matrix()
        return model

    def test_mass_moves_onto_masters(self, model):
        diagonal = model.mass_operator.diagonal
        np.testing.assert_allclose(diagonal, [0.5, 1.0, 0.5, 0.25, 0.5, 0.25])
        assert np.all(diagonal > 0.0)
        unconstrained = np.delete(diagonal, 1)
        assert unconstrained.sum() == pytest.approx(2.0)

    def test_constrained_entry_carries_temperature(self, model):
        residual = model.thermal_operator.apply(model.initialize_dof_vector(300.0), 0.0)
        np.testing.assert_allclose(residual, [0.0, 300.0, 0.0, 0.0, 0.0, 0.0], atol=1e-10)

    def test_linear_profile(self, model):
        x = model.mesh.dof_coordinates()[:, 0]
        residual = model.thermal_operator.apply(x.copy(), 0.0)
        np.testing.assert_allclose(residual, [0.5, 1.0, -0.5, 0.5, 0.0, -0.5], atol=1e-12)

    def test_constrained_entry_is_ignored(self, model):
        x = model.mesh.dof_coordinates()[:, 0]
        perturbed = x.copy()
        perturbed[1] = 50.0
        residual = model.thermal_operator.apply(perturbed, 0.0)
        np.testing.assert_allclose(np.delete(residual, 1), [0.5, -0.5, 0.5, 0.0, -0.5], atol=1e-12)
        assert residual[1] == 50.0


class TestHeatSource:

    def test_goldak_energy(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2, beams=[goldak_beam((1.5, 0.0, 1.0))])
        source = model.heat_sources[0]
        source.update_time(0.0)
        operator = model.thermal_operator

        # 2 eta P / (r^2 d (pi/3)^1.5) exp(-3 z^2 / d^2) at the centroid of the second cell
        assert source.value(np.array([[1.5, 0.5]]), 1.0)[0] == pytest.approx(352.6356362380)

        residual = operator.apply(model.initialize_dof_vector(300.0), 1.0)
        cv = operator.cell_values
        x, z = cv.quadrature_points[..., 0], cv.quadrature_points[..., 1] - 1.0
        q = 800.0 / (np.pi / 3.0) ** 1.5 * np.exp(-12.0 * (x - 1.5) ** 2 - 3.0 * z ** 2)
        assert residual.sum() == pytest.approx(np.sum(q * cv.JxW))
        assert residual.sum() > 0.0

    def test_source_heats_nearest_nodes(self, model_factory):
        model = model_factory(length=2.0, length_divisions=2, beams=[goldak_beam((1.5, 0.0, 1.0))])
        model.heat_sources[0].update_time(0.0)
        residual = model.thermal_operator.apply(model.initialize_dof_vector(300.0), 1.0)
        coordinates = model.mesh.dof_coordinates()
        hottest = coordinates[np.argmax(residual)]
        assert hottest[0] >= 1.0
        assert hottest[1] == 1.0


# =============================================================================
# Phase state
# =============================================================================

class TestPhaseState:

    @pytest.fixture
    def model(self, model_factory):
        return model_factory(material=material_block(initial_state="powder"))

    def test_initial_state(self, model):
        np.testing.assert_allclose(model.thermal_operator.powder, 1.0)
        np.testing.assert_allclose(model.thermal_operator.liquid, 0.0)

    def test_melting_consumes_powder(self, model):
        operator = model.thermal_operator
        operator.apply(model.initialize_dof_vector(1200.0), 0.0)
        np.testing.assert_allclose(operator.liquid, 1.0)
        np.testing.assert_allclose(operator.powder, 0.0)

        operator.apply(model.initialize_dof_vector(300.0), 0.0)
        operator.set_state_to_material_properties()
        cells = operator.cell_ids
        mp = model.material_properties
        np.testing.assert_allclose(mp.get_state_ratio(cells, MaterialState.SOLID), 1.0)
        np.testing.assert_allclose(mp.get_state_ratio(cells, MaterialState.POWDER), 0.0)

    def test_evaluation_without_update_keeps_state(self, model):
        operator = model.thermal_operator
        operator.apply(model.initialize_dof_vector(1200.0), 0.0, update_state=False)
        np.testing.assert_allclose(operator.powder, 1.0)
        np.testing.assert_allclose(operator.liquid, 0.0)

    def test_mark_has_melted(self, model):
        operator = model.thermal_operator
        operator.mark_has_melted(1708.0, model.initialize_dof_vector(2000.0))
        assert operator.has_melted.all()
        operator.mark_has_melted(1708.0, model.initialize_dof_vector(300.0))
        assert operator.has_melted.all()
