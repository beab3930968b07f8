"""
Heat Sources
============
Volumetric beam models evaluated at quadrature points.

Why is this file needed?
------------------------
1. Evaluation contract: every source exposes ``update_time``, a vectorized
   ``value(points, current_height)`` and ``get_current_height``.
2. Beam models: Goldak double ellipsoid, electron beam and a uniform cube.
3. Factory: ``make_heat_sources`` turns the ``sources`` block into objects.

Points are arrays of shape (..., dim). The last coordinate is the build
direction; the scan path always gives (x, y, z) positions.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import TYPE_CHECKING, List

import numpy as np

from additivethermal.config import BeamType
from additivethermal.exceptions import ConfigurationError
from additivethermal.fea.pre.scan_path import ScanPath

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.config import BeamConfig, SourcesConfig

logger = logging.getLogger(__name__)

PI_OVER_3_TO_1P5 = (np.pi / 3.0) ** 1.5
LOG_01 = np.log(0.1)


class HeatSource(ABC):
    """Abstract base class for moving heat sources."""

    def __init__(self, beam: BeamConfig, dim: int) -> None:
        """
        Initialize the heat source.

        Args:
            beam: Beam parameters and scan path.
            dim: Spatial dimension of the points the source is evaluated at.
        """
        self.dim = dim
        self.time = 0.0
        self.set_beam_properties(beam)

    def set_beam_properties(self, beam: BeamConfig) -> None:
        """Re-read the beam parameters (used when they are updated between steps)."""
        self.beam = beam

    @abstractmethod
    def update_time(self, time: float) -> None:
        """Move the source to ``time``."""
        pass

    @abstractmethod
    def value(self, points: npt.NDArray[np.float64], current_height: float) -> npt.NDArray[np.float64]:
        """Volumetric power density (W/m^3) at ``points``."""
        pass

    @abstractmethod
    def get_current_height(self, time: float) -> float:
        """Height of the deposited material the source acts on at ``time``."""
        pass


class ScanningHeatSource(HeatSource):
    """Heat source whose centre follows a scan path."""

    def __init__(self, beam: BeamConfig, dim: int) -> None:
        if not beam.scan_path:
            raise ConfigurationError(f"Beam of type '{beam.type}' requires a scan path.")
        self.scan_path = ScanPath.from_dicts(beam.scan_path)
        self.center = self.scan_path.value(0.0)
        self.power_modifier = self.scan_path.get_power_modifier(0.0)
        super().__init__(beam, dim)

    def set_beam_properties(self, beam: BeamConfig) -> None:
        super().set_beam_properties(beam)
        self.depth = beam.depth
        self.radius_squared = (0.5 * beam.diameter) ** 2
        self.max_power = beam.max_power
        self.absorption_efficiency = beam.absorption_efficiency

    def update_time(self, time: float) -> None:
        self.time = time
        self.center = self.scan_path.value(time)
        self.power_modifier = self.scan_path.get_power_modifier(time)

    def get_current_height(self, time: float) -> float:
        return float(self.scan_path.value(time)[2])

    def _radial_distance_squared(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        # 2D: (x, z). 3D: (x, y, z)
        rho_squared = (points[..., 0] - self.center[0]) ** 2
        if self.dim == 3:
            rho_squared = rho_squared + (points[..., 1] - self.center[1]) ** 2
        return rho_squared


class GoldakHeatSource(ScanningHeatSource):
    """
    Goldak double-ellipsoid source.

    q = 2 eta P m / (r^2 d (pi/3)^1.5) exp(-3 rho^2 / r^2 - 3 (z/d)^2)
    with z measured from the current height, and q = 0 deeper than ``d``.
    """

    def value(self, points: npt.NDArray[np.float64], current_height: float) -> npt.NDArray[np.float64]:
        z = points[..., -1] - current_height
        rho_squared = self._radial_distance_squared(points)
        prefactor = (2.0 * self.absorption_efficiency * self.max_power * self.power_modifier
                     / (self.radius_squared * self.depth * PI_OVER_3_TO_1P5))
        q = prefactor * np.exp(-3.0 * rho_squared / self.radius_squared - 3.0 * (z / self.depth) ** 2)
        return np.where(z + self.depth < 0.0, 0.0, q)


class ElectronBeamHeatSource(ScanningHeatSource):
    """
    Electron beam source with a quadratic depth profile.

    q = -eta P m ln(0.1) / (pi r^2 d) exp(ln(0.1) rho^2 / r^2) (-3 (z/d)^2 - 2 (z/d) + 1)
    """

    def value(self, points: npt.NDArray[np.float64], current_height: float) -> npt.NDArray[np.float64]:
        z = points[..., -1] - current_height
        rho_squared = self._radial_distance_squared(points)
        zd = z / self.depth
        prefactor = (-self.absorption_efficiency * self.max_power * self.power_modifier * LOG_01
                     / (np.pi * self.radius_squared * self.depth))
        q = prefactor * np.exp(LOG_01 * rho_squared / self.radius_squared) * (-3.0 * zd ** 2 - 2.0 * zd + 1.0)
        return np.where(z + self.depth < 0.0, 0.0, q)


class CubeHeatSource(HeatSource):
    """Uniform source inside an axis-aligned box during [start_time, end_time]."""

    def set_beam_properties(self, beam: BeamConfig) -> None:
        super().set_beam_properties(beam)
        if len(beam.min_point) != self.dim or len(beam.max_point) != self.dim:
            raise ConfigurationError(f"Cube source corners must have {self.dim} coordinates.")
        self.min_point = np.asarray(beam.min_point, dtype=np.float64)
        self.max_point = np.asarray(beam.max_point, dtype=np.float64)
        self.start_time = beam.start_time
        self.end_time = beam.end_time
        self.source_value = beam.value

    def update_time(self, time: float) -> None:
        self.time = time

    def value(self, points: npt.NDArray[np.float64], current_height: float) -> npt.NDArray[np.float64]:
        if not self.start_time <= self.time <= self.end_time:
            return np.zeros(points.shape[:-1], dtype=np.float64)
        inside = np.all((points >= self.min_point) & (points <= self.max_point), axis=-1)
        return np.where(inside, self.source_value, 0.0)

    def get_current_height(self, time: float) -> float:
        return float(self.max_point[-1])


HEAT_SOURCE_TYPE_MAP = {
    BeamType.GOLDAK: GoldakHeatSource,
    BeamType.ELECTRON_BEAM: ElectronBeamHeatSource,
    BeamType.CUBE: CubeHeatSource,
}


def make_heat_sources(sources_config: SourcesConfig, dim: int) -> List[HeatSource]:
    """
    Instantiate the heat sources of the ``sources`` block.

    Raises:
        ConfigurationError: If a beam type is unknown.
    """
    heat_sources: List[HeatSource] = []
    for beam in sources_config.beams:
        try:
            cls = HEAT_SOURCE_TYPE_MAP[BeamType(beam.type)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Beam type '{beam.type}' not recognized.") from None
        heat_sources.append(cls(beam, dim))
    logger.info(f"Created {len(heat_sources)} heat source(s): {[type(s).__name__ for s in heat_sources]}")
    return heat_sources
