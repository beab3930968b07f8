"""
Simulation Configuration
========================
Typed records built from the hierarchical simulation database.

Why is this file needed?
------------------------
1. Validation: unknown boundary tokens, time stepping methods and beam types
   are rejected here, at construction, before any evaluation happens.
2. Defaults: tolerances and step-size bounds live in one place.
3. Decoupling: the numerical core receives dataclasses, never raw dicts.

The database is a nested ``dict`` (what a JSON/YAML/INFO reader produces);
reading it from disk is left to the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Flag, StrEnum, auto
import logging
from typing import Any, Dict, List, Optional, Tuple

from additivethermal.exceptions import ConfigurationError
from additivethermal.fea.pre.material import MaterialState, StateProperty

logger = logging.getLogger(__name__)


class BoundaryType(Flag):
    INVALID = 0
    ADIABATIC = auto()
    RADIATIVE = auto()
    CONVECTIVE = auto()


class TimeSteppingMethod(StrEnum):
    FORWARD_EULER = "forward_euler"
    RK_THIRD_ORDER = "rk_third_order"
    RK_FOURTH_ORDER = "rk_fourth_order"
    HEUN_EULER = "heun_euler"
    BOGACKI_SHAMPINE = "bogacki_shampine"
    DOPRI = "dopri"
    FEHLBERG = "fehlberg"
    CASH_KARP = "cash_karp"
    BACKWARD_EULER = "backward_euler"
    IMPLICIT_MIDPOINT = "implicit_midpoint"
    CRANK_NICOLSON = "crank_nicolson"
    SDIRK2 = "sdirk2"

    @property
    def is_embedded(self) -> bool:
        return self in _EMBEDDED_METHODS

    @property
    def is_implicit(self) -> bool:
        return self in _IMPLICIT_METHODS


_EMBEDDED_METHODS = frozenset({
    TimeSteppingMethod.HEUN_EULER,
    TimeSteppingMethod.BOGACKI_SHAMPINE,
    TimeSteppingMethod.DOPRI,
    TimeSteppingMethod.FEHLBERG,
    TimeSteppingMethod.CASH_KARP,
})
_IMPLICIT_METHODS = frozenset({
    TimeSteppingMethod.BACKWARD_EULER,
    TimeSteppingMethod.IMPLICIT_MIDPOINT,
    TimeSteppingMethod.CRANK_NICOLSON,
    TimeSteppingMethod.SDIRK2,
})


class BeamType(StrEnum):
    GOLDAK = "goldak"
    ELECTRON_BEAM = "electron_beam"
    CUBE = "cube"


def parse_boundary_type(boundary: str) -> BoundaryType:
    """
    Parse a comma separated list of boundary condition tokens.

    Args:
        boundary: e.g. ``"adiabatic"`` or ``"convective,radiative"``.

    Raises:
        ConfigurationError: If a token is unknown or if ``adiabatic`` is
            combined with another token.

    Returns:
        The combined boundary flag.
    """
    boundary_type = BoundaryType.INVALID
    for token in boundary.split(","):
        token = token.strip().lower()
        if token == "adiabatic":
            boundary_type |= BoundaryType.ADIABATIC
        elif token == "radiative":
            boundary_type |= BoundaryType.RADIATIVE
        elif token == "convective":
            boundary_type |= BoundaryType.CONVECTIVE
        else:
            raise ConfigurationError(f"Unknown boundary type '{token}'.")

    if BoundaryType.ADIABATIC in boundary_type and boundary_type != BoundaryType.ADIABATIC:
        raise ConfigurationError("Boundary type 'adiabatic' cannot be combined with other boundary types.")

    return boundary_type


def _require(data: Dict[str, Any], key: str, section: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ConfigurationError(f"Missing required entry '{section}.{key}'.") from None


def parse_coefficients(value: Any) -> Tuple[float, ...]:
    """
    Read a polynomial in T given as a number, a list, or a comma separated string.

    Coefficients are in ascending powers of the temperature.
    """
    if isinstance(value, str):
        parts = [p for p in value.replace(" ", "").split(",") if p]
        return tuple(float(p) for p in parts)
    if isinstance(value, (list, tuple)):
        return tuple(float(v) for v in value)
    return (float(value),)


def parse_bool(value: Any) -> bool:
    """Read a flag given as a bool, a number, or a string such as "true" or "off"."""
    if isinstance(value, str):
        token = value.strip().lower()
        if token in ("true", "yes", "on", "1"):
            return True
        if token in ("false", "no", "off", "0"):
            return False
        raise ConfigurationError(f"Cannot read '{value}' as a boolean.")
    return bool(value)


@dataclass
class GeometryConfig:
    dim: int = 3
    length: float = 1.0
    length_divisions: int = 1
    height: float = 1.0
    height_divisions: int = 1
    width: float = 1.0
    width_divisions: int = 1
    material_height: float = 1e9

    @property
    def upper(self) -> Tuple[float, ...]:
        if self.dim == 2:
            return self.length, self.height
        return self.length, self.width, self.height

    @property
    def n_cells(self) -> Tuple[int, ...]:
        if self.dim == 2:
            return self.length_divisions, self.height_divisions
        return self.length_divisions, self.width_divisions, self.height_divisions

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> GeometryConfig:
        dim = int(data.get("dim", 3))
        if dim not in (2, 3):
            raise ConfigurationError(f"'geometry.dim' must be 2 or 3, got {dim}.")
        return GeometryConfig(
            dim=dim,
            length=float(data.get("length", 1.0)),
            length_divisions=int(data.get("length_divisions", 1)),
            height=float(data.get("height", 1.0)),
            height_divisions=int(data.get("height_divisions", 1)),
            width=float(data.get("width", 1.0)),
            width_divisions=int(data.get("width_divisions", 1)),
            material_height=float(data.get("material_height", 1e9)),
        )


@dataclass
class MaterialConfig:
    """
    Thermal description of one material id.

    Attributes:
        states: Per-state polynomial coefficients of every state property.
        solidus: Solidus temperature (K).
        liquidus: Liquidus temperature (K).
        latent_heat: Latent heat of fusion (J/kg).
        radiation_temperature_infty: Ambient temperature for radiation (K).
        convection_temperature_infty: Ambient temperature for convection (K).
        initial_state: Phase the material is in before the first evaluation.
    """
    states: Dict[MaterialState, Dict[StateProperty, Tuple[float, ...]]] = field(default_factory=dict)
    solidus: float = 0.0
    liquidus: float = 1.0
    latent_heat: float = 0.0
    radiation_temperature_infty: float = 0.0
    convection_temperature_infty: float = 0.0
    initial_state: MaterialState = MaterialState.SOLID

    @staticmethod
    def from_dict(data: Dict[str, Any], section: str) -> MaterialConfig:
        states: Dict[MaterialState, Dict[StateProperty, Tuple[float, ...]]] = {}
        for state in MaterialState:
            state_data = data.get(state.value, {})
            properties: Dict[StateProperty, Tuple[float, ...]] = {}
            for key, value in state_data.items():
                try:
                    state_property = StateProperty(key)
                except ValueError:
                    raise ConfigurationError(f"Unknown state property '{section}.{state.value}.{key}'.") from None
                properties[state_property] = parse_coefficients(value)
            states[state] = properties

        try:
            initial_state = MaterialState(data.get("initial_state", MaterialState.SOLID.value))
        except ValueError:
            raise ConfigurationError(f"Unknown initial state '{data['initial_state']}' in '{section}'.") from None

        config = MaterialConfig(
            states=states,
            solidus=float(_require(data, "solidus", section)),
            liquidus=float(_require(data, "liquidus", section)),
            latent_heat=float(data.get("latent_heat", 0.0)),
            radiation_temperature_infty=float(data.get("radiation_temperature_infty", 0.0)),
            convection_temperature_infty=float(data.get("convection_temperature_infty", 0.0)),
            initial_state=initial_state,
        )
        if not config.liquidus > config.solidus:
            raise ConfigurationError(f"'{section}.liquidus' must be larger than '{section}.solidus'.")
        return config


@dataclass
class MaterialsConfig:
    materials: List[MaterialConfig] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MaterialsConfig:
        n_materials = int(_require(data, "n_materials", "materials"))
        materials = [
            MaterialConfig.from_dict(_require(data, f"material_{i}", "materials"), f"materials.material_{i}")
            for i in range(n_materials)
        ]
        return MaterialsConfig(materials=materials)


@dataclass
class BeamConfig:
    """
    Parameters of one heat source.

    Goldak and electron-beam sources follow a scan path; the cube source is a
    fixed box switched on between ``start_time`` and ``end_time``.
    """
    type: BeamType = BeamType.GOLDAK
    depth: float = 0.0
    diameter: float = 0.0
    max_power: float = 0.0
    absorption_efficiency: float = 1.0
    scan_path: List[Dict[str, Any]] = field(default_factory=list)
    min_point: Tuple[float, ...] = ()
    max_point: Tuple[float, ...] = ()
    start_time: float = 0.0
    end_time: float = 0.0
    value: float = 0.0

    @staticmethod
    def from_dict(data: Dict[str, Any], section: str) -> BeamConfig:
        raw_type = str(_require(data, "type", section)).lower()
        try:
            beam_type = BeamType(raw_type)
        except ValueError:
            raise ConfigurationError(f"Beam type '{raw_type}' not recognized.") from None

        if beam_type == BeamType.CUBE:
            return BeamConfig(
                type=beam_type,
                min_point=tuple(float(v) for v in _require(data, "min_point", section)),
                max_point=tuple(float(v) for v in _require(data, "max_point", section)),
                start_time=float(data.get("start_time", 0.0)),
                end_time=float(data.get("end_time", 0.0)),
                value=float(data.get("value", 0.0)),
            )

        return BeamConfig(
            type=beam_type,
            depth=float(_require(data, "depth", section)),
            diameter=float(_require(data, "diameter", section)),
            max_power=float(_require(data, "max_power", section)),
            absorption_efficiency=float(data.get("absorption_efficiency", 1.0)),
            scan_path=list(data.get("scan_path", [])),
        )


@dataclass
class SourcesConfig:
    beams: List[BeamConfig] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> SourcesConfig:
        n_beams = int(data.get("n_beams", 0))
        beams = [
            BeamConfig.from_dict(_require(data, f"beam_{i}", "sources"), f"sources.beam_{i}")
            for i in range(n_beams)
        ]
        return SourcesConfig(beams=beams)


@dataclass
class TimeSteppingConfig:
    method: TimeSteppingMethod = TimeSteppingMethod.FORWARD_EULER
    # Embedded methods
    coarsening_parameter: float = 1.2
    refining_parameter: float = 0.8
    min_time_step: float = 1e-14
    max_time_step: float = 1e100
    refining_tolerance: float = 1e-8
    coarsening_tolerance: float = 1e-12
    # Implicit methods
    max_iteration: int = 1000
    tolerance: float = 1e-12
    n_tmp_vectors: int = 30
    right_preconditioning: bool = False
    newton_max_iteration: int = 100
    newton_tolerance: float = 1e-6
    jfnk: bool = False

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> TimeSteppingConfig:
        raw_method = str(_require(data, "method", "time_stepping")).lower()
        try:
            method = TimeSteppingMethod(raw_method)
        except ValueError:
            raise ConfigurationError(f"Unknown time stepping method '{raw_method}'.") from None

        defaults = TimeSteppingConfig()
        return TimeSteppingConfig(
            method=method,
            coarsening_parameter=float(data.get("coarsening_parameter", defaults.coarsening_parameter)),
            refining_parameter=float(data.get("refining_parameter", defaults.refining_parameter)),
            min_time_step=float(data.get("min_time_step", defaults.min_time_step)),
            max_time_step=float(data.get("max_time_step", defaults.max_time_step)),
            refining_tolerance=float(data.get("refining_tolerance", defaults.refining_tolerance)),
            coarsening_tolerance=float(data.get("coarsening_tolerance", defaults.coarsening_tolerance)),
            max_iteration=int(data.get("max_iteration", defaults.max_iteration)),
            tolerance=float(data.get("tolerance", defaults.tolerance)),
            n_tmp_vectors=int(data.get("n_tmp_vectors", defaults.n_tmp_vectors)),
            right_preconditioning=parse_bool(data.get("right_preconditioning", defaults.right_preconditioning)),
            newton_max_iteration=int(data.get("newton_max_iteration", defaults.newton_max_iteration)),
            newton_tolerance=float(data.get("newton_tolerance", defaults.newton_tolerance)),
            jfnk=parse_bool(data.get("jfnk", defaults.jfnk)),
        )


@dataclass
class SimulationConfig:
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    boundary_type: BoundaryType = BoundaryType.ADIABATIC
    materials: MaterialsConfig = field(default_factory=MaterialsConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    time_stepping: TimeSteppingConfig = field(default_factory=TimeSteppingConfig)
    initial_temperature: float = 300.0
    new_material_temperature: float = 300.0
    melt_threshold: Optional[float] = None
    batch_size: int = 256

    @staticmethod
    def from_dict(database: Dict[str, Any]) -> SimulationConfig:
        boundary = database.get("boundary", {})
        config = SimulationConfig(
            geometry=GeometryConfig.from_dict(database.get("geometry", {})),
            boundary_type=parse_boundary_type(str(boundary.get("type", "adiabatic"))),
            materials=MaterialsConfig.from_dict(_require(database, "materials", "")),
            sources=SourcesConfig.from_dict(database.get("sources", {})),
            time_stepping=TimeSteppingConfig.from_dict(_require(database, "time_stepping", "")),
            initial_temperature=float(database.get("initial_temperature", 300.0)),
            new_material_temperature=float(database.get("new_material_temperature", 300.0)),
            melt_threshold=(
                float(database["melt_threshold"]) if "melt_threshold" in database else None
            ),
            batch_size=int(database.get("batch_size", 256)),
        )
        logger.debug(f"Parsed simulation database: method={config.time_stepping.method}, "
                     f"boundary={config.boundary_type}, beams={len(config.sources.beams)}")
        return config
