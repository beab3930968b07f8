from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

import numpy as np

from additivethermal.config import BeamType, SimulationConfig
from additivethermal.fea.analysis.mass_operator import MassOperator
from additivethermal.fea.analysis.thermal_operator import ThermalOperator
from additivethermal.fea.pre.heat_sources import make_heat_sources
from additivethermal.fea.pre.material import MaterialProperty
from additivethermal.fea.pre.mesh import StructuredMesh

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.config import SourcesConfig


class Model:
    """
    Class represent the entire thermal model.

    This class encapsulates the mesh, the material properties, the heat
    sources and the two operators that turn a temperature field into dT/dt.
    """
    def __init__(
        self,
        config: SimulationConfig,
    ) -> None:
        """Initialize the Model object."""
        self.config = config
        geometry = config.geometry
        self.dim = geometry.dim

        self.mesh = StructuredMesh(
            dim=geometry.dim,
            lower=(0.0,) * geometry.dim,
            upper=geometry.upper,
            n_cells=geometry.n_cells,
        )
        self.mesh.set_active(self.mesh.cells_below(geometry.material_height))

        self.material_properties = MaterialProperty(config.materials)
        self.material_properties.reinit(self.mesh.material_id)

        self.heat_sources = make_heat_sources(config.sources, geometry.dim)
        self.boundary_type = config.boundary_type

        self.thermal_operator = ThermalOperator(
            boundary_type=self.boundary_type,
            material_properties=self.material_properties,
            heat_sources=self.heat_sources,
            batch_size=config.batch_size,
        )
        self.mass_operator = MassOperator(batch_size=config.batch_size)

        self.setup_dofs()
        self.compute_inverse_mass_matrix()
        logging.getLogger(__name__).info(
            f"Model ready: {self.n_dofs} dofs, {self.thermal_operator.n_cells} active cells"
        )

    @classmethod
    def from_config(cls, config: SimulationConfig) -> Model:
        return cls(config)

    @classmethod
    def from_dict(cls, database: Dict[str, Any]) -> Model:
        return cls(SimulationConfig.from_dict(database))

    @property
    def n_dofs(self) -> int:
        """Return the number of degrees of freedom of the active domain."""
        return self.mesh.n_dofs

    def setup_dofs(self) -> None:
        """Number the dofs of the active domain and rebuild the thermal operator."""
        self.mesh.distribute_dofs()
        self.thermal_operator.reinit(self.mesh)

    def compute_inverse_mass_matrix(self) -> None:
        self.mass_operator.compute_inverse_mass_matrix(self.mesh)

    def initialize_dof_vector(self, value: float = 0.0) -> npt.NDArray[np.float64]:
        return np.full(self.n_dofs, value, dtype=np.float64)

    def update_physics_parameters(self, sources_config: SourcesConfig) -> None:
        """Re-read the beam parameters of the scanning sources."""
        for source, beam in zip(self.heat_sources, sources_config.beams):
            if beam.type in (BeamType.GOLDAK, BeamType.ELECTRON_BEAM):
                source.set_beam_properties(beam)
