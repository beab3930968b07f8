"""
Tests for parsing the simulation database and setting up logging.
"""
import logging

import pytest

from additivethermal.config import (
    BeamConfig,
    BeamType,
    BoundaryType,
    SimulationConfig,
    TimeSteppingConfig,
    TimeSteppingMethod,
    parse_boundary_type,
    parse_coefficients,
)
from additivethermal.exceptions import ConfigurationError
from additivethermal.fea.pre.material import MaterialState, StateProperty
from additivethermal.logging_config import setup_logging

from conftest import make_database, material_block


# =============================================================================
# Boundary types
# =============================================================================

class TestBoundaryType:

    def test_single_token(self):
        assert parse_boundary_type("adiabatic") == BoundaryType.ADIABATIC
        assert parse_boundary_type("radiative") == BoundaryType.RADIATIVE

    def test_combination(self):
        boundary = parse_boundary_type("convective, radiative")
        assert BoundaryType.CONVECTIVE in boundary
        assert BoundaryType.RADIATIVE in boundary
        assert BoundaryType.ADIABATIC not in boundary

    def test_unknown_token(self):
        with pytest.raises(ConfigurationError, match="Unknown boundary type"):
            parse_boundary_type("convective,dirichlet")

    def test_adiabatic_cannot_be_combined(self):
        with pytest.raises(ConfigurationError):
            parse_boundary_type("adiabatic,radiative")


# =============================================================================
# Scalars and polynomials
# =============================================================================

class TestCoefficients:

    def test_number(self):
        assert parse_coefficients(3) == (3.0,)

    def test_list(self):
        assert parse_coefficients([1, 2.5]) == (1.0, 2.5)

    def test_comma_separated_string(self):
        assert parse_coefficients("1.0, 2e-3,") == (1.0, 2e-3)


# =============================================================================
# Sections
# =============================================================================

class TestTimeStepping:

    def test_defaults(self):
        config = TimeSteppingConfig.from_dict({"method": "heun_euler"})
        assert config.method == TimeSteppingMethod.HEUN_EULER
        assert config.coarsening_parameter == 1.2
        assert config.refining_parameter == 0.8
        assert config.max_iteration == 1000
        assert config.n_tmp_vectors == 30
        assert config.newton_tolerance == 1e-6
        assert config.jfnk is False

    def test_method_case_insensitive(self):
        assert TimeSteppingConfig.from_dict({"method": "SDIRK2"}).method == TimeSteppingMethod.SDIRK2

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError, match="Unknown time stepping method"):
            TimeSteppingConfig.from_dict({"method": "leapfrog"})

    def test_missing_method(self):
        with pytest.raises(ConfigurationError, match="time_stepping.method"):
            TimeSteppingConfig.from_dict({})

    @pytest.mark.parametrize("method, embedded, implicit", [
        ("forward_euler", False, False),
        ("rk_fourth_order", False, False),
        ("dopri", True, False),
        ("cash_karp", True, False),
        ("backward_euler", False, True),
        ("crank_nicolson", False, True),
    ])
    def test_method_families(self, method, embedded, implicit):
        method = TimeSteppingMethod(method)
        assert method.is_embedded is embedded
        assert method.is_implicit is implicit

    @pytest.mark.parametrize("value, expected", [
        ("false", False),
        ("False", False),
        ("0", False),
        ("true", True),
        (" On ", True),
        (True, True),
        (0, False),
    ])
    def test_flags_from_strings(self, value, expected):
        config = TimeSteppingConfig.from_dict({"method": "sdirk2", "jfnk": value, "right_preconditioning": value})
        assert config.jfnk is expected
        assert config.right_preconditioning is expected

    def test_unreadable_flag(self):
        with pytest.raises(ConfigurationError, match="boolean"):
            TimeSteppingConfig.from_dict({"method": "sdirk2", "jfnk": "maybe"})


class TestBeams:

    def test_unknown_beam_type(self):
        with pytest.raises(ConfigurationError, match="not recognized"):
            BeamConfig.from_dict({"type": "laser"}, "sources.beam_0")

    def test_goldak_requires_depth(self):
        with pytest.raises(ConfigurationError, match="depth"):
            BeamConfig.from_dict({"type": "goldak", "diameter": 1.0, "max_power": 1.0}, "sources.beam_0")

    def test_cube(self):
        beam = BeamConfig.from_dict(
            {"type": "cube", "min_point": [0, 0], "max_point": [1, 1], "end_time": 2.0, "value": 5.0},
            "sources.beam_0",
        )
        assert beam.type == BeamType.CUBE
        assert beam.max_point == (1.0, 1.0)
        assert beam.value == 5.0


class TestMaterials:

    def test_liquidus_above_solidus(self):
        with pytest.raises(ConfigurationError, match="liquidus"):
            SimulationConfig.from_dict(make_database(material=material_block(solidus=1100.0, liquidus=1000.0)))

    def test_unknown_state_property(self):
        material = material_block()
        material["solid"]["viscosity"] = 1.0
        with pytest.raises(ConfigurationError, match="viscosity"):
            SimulationConfig.from_dict(make_database(material=material))

    def test_state_properties_are_polynomials(self):
        material = material_block()
        material["solid"]["density"] = "7000, -0.5"
        config = SimulationConfig.from_dict(make_database(material=material))
        states = config.materials.materials[0].states
        assert states[MaterialState.SOLID][StateProperty.DENSITY] == (7000.0, -0.5)


class TestSimulationConfig:

    def test_defaults(self):
        config = SimulationConfig.from_dict(make_database())
        assert config.boundary_type == BoundaryType.ADIABATIC
        assert config.initial_temperature == 300.0
        assert config.melt_threshold is None
        assert config.sources.beams == []

    def test_geometry(self):
        config = SimulationConfig.from_dict(make_database(dim=3, length=2.0, width=3.0, height=4.0,
                                                          length_divisions=2, height_divisions=5))
        assert config.geometry.upper == (2.0, 3.0, 4.0)
        assert config.geometry.n_cells == (2, 1, 5)

    def test_invalid_dimension(self):
        with pytest.raises(ConfigurationError, match="dim"):
            SimulationConfig.from_dict(make_database(dim=1))

    def test_materials_required(self):
        database = make_database()
        del database["materials"]
        with pytest.raises(ConfigurationError):
            SimulationConfig.from_dict(database)


# =============================================================================
# Logging
# =============================================================================

class TestLogging:

    @pytest.fixture(autouse=True)
    def restore_loggers(self):
        yield
        setup_logging(level=logging.WARNING)

    def test_level_by_name(self):
        logger = setup_logging(level="debug")
        assert logger.name == "additivethermal"
        assert logger.level == logging.DEBUG
        assert logging.getLogger("numba").level == logging.WARNING

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        setup_logging()
        logger = setup_logging(log_file=str(tmp_path / "run.log"))
        assert len(logger.handlers) == 2
        logger.info("step accepted")
        for handler in logger.handlers:
            handler.flush()
        assert "step accepted" in (tmp_path / "run.log").read_text(encoding="utf-8")

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="verbose"):
            setup_logging(level="verbose")
