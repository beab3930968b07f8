"""
Material Properties
===================
Phase-dependent thermal properties of the printed materials.

Why is this file needed?
------------------------
1. Tabulation: every state property is a polynomial in temperature, stored per
   material and per phase in one dense table so kernels can index it.
2. Phase bookkeeping: the powder/solid/liquid ratios of *every* cell of the
   mesh (active or not) live here, keyed by the stable cell id, so they survive
   activation and re-numbering.
3. Mixture rule: a property at a point is the ratio-weighted sum of the
   per-phase values.
"""
from __future__ import annotations

from enum import StrEnum
import logging
from typing import TYPE_CHECKING, Optional

import numpy as np

from additivethermal.fea.pre.material_helpers import state_property_batch

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.config import MaterialsConfig

logger = logging.getLogger(__name__)


class MaterialState(StrEnum):
    POWDER = "powder"
    SOLID = "solid"
    LIQUID = "liquid"

    @property
    def index(self) -> int:
        """Row of this state in the phase ratio arrays."""
        return _STATE_INDEX[self]


_STATE_INDEX = {state: i for i, state in enumerate(MaterialState)}


class StateProperty(StrEnum):
    DENSITY = "density"
    SPECIFIC_HEAT = "specific_heat"
    THERMAL_CONDUCTIVITY_X = "thermal_conductivity_x"
    THERMAL_CONDUCTIVITY_Y = "thermal_conductivity_y"
    THERMAL_CONDUCTIVITY_Z = "thermal_conductivity_z"
    EMISSIVITY = "emissivity"
    CONVECTION_HEAT_TRANSFER_COEF = "convection_heat_transfer_coef"


class Property(StrEnum):
    SOLIDUS = "solidus"
    LIQUIDUS = "liquidus"
    LATENT_HEAT = "latent_heat"
    RADIATION_TEMPERATURE_INFTY = "radiation_temperature_infty"
    CONVECTION_TEMPERATURE_INFTY = "convection_temperature_infty"


N_STATES = len(MaterialState)


class MaterialProperty:
    """
    Coefficient tables and per-cell phase state.

    Attributes:
        state_property_polynomials: shape (n_materials, n_states, n_state_properties, order + 1).
        properties: State independent values, shape (n_materials, n_properties).
        state: Phase ratios per cell id, shape (n_states, n_cells).
        material_ids: Material id per cell id.
    """

    def __init__(self, materials_config: MaterialsConfig) -> None:
        """
        Build the coefficient tables.

        Args:
            materials_config: Parsed ``materials`` block.
        """
        materials = materials_config.materials
        self.n_materials = len(materials)
        assert self.n_materials > 0, "At least one material is required."

        n_coefficients = max(
            (len(c) for m in materials for props in m.states.values() for c in props.values()),
            default=1,
        )
        self.polynomial_order = n_coefficients - 1

        self.state_property_polynomials = np.zeros(
            (self.n_materials, N_STATES, len(StateProperty), n_coefficients), dtype=np.float64
        )
        self.properties = np.zeros((self.n_materials, len(Property)), dtype=np.float64)
        self.initial_state = np.zeros(self.n_materials, dtype=np.int64)

        state_properties = list(StateProperty)
        properties = list(Property)
        for m, material in enumerate(materials):
            for state, values in material.states.items():
                for state_property, coefficients in values.items():
                    p = state_properties.index(state_property)
                    self.state_property_polynomials[m, state.index, p, :len(coefficients)] = coefficients
            for prop in properties:
                self.properties[m, properties.index(prop)] = getattr(material, prop.value)
            self.initial_state[m] = material.initial_state.index

        self.state = np.zeros((N_STATES, 0), dtype=np.float64)
        self.material_ids = np.zeros(0, dtype=np.int64)

        logger.info(f"Material properties: {self.n_materials} material(s), "
                    f"polynomial order {self.polynomial_order}")

    @property
    def n_cells(self) -> int:
        return self.material_ids.size

    def reinit(self, material_ids: npt.NDArray[np.int64]) -> None:
        """
        Resize the per-cell store to the mesh arena.

        Existing cells keep their phase state. New cells start in the initial
        state of their material.

        Args:
            material_ids: Material id of every cell of the mesh, indexed by cell id.
        """
        material_ids = np.asarray(material_ids, dtype=np.int64)
        assert np.all((material_ids >= 0) & (material_ids < self.n_materials)), "Unknown material id."

        n_old = self.n_cells
        n_new = material_ids.size
        state = np.zeros((N_STATES, n_new), dtype=np.float64)
        n_kept = min(n_old, n_new)
        state[:, :n_kept] = self.state[:, :n_kept]
        if n_new > n_old:
            new_cells = np.arange(n_old, n_new)
            state[self.initial_state[material_ids[new_cells]], new_cells] = 1.0

        self.state = state
        self.material_ids = material_ids.copy()

    def get(self, material_ids: npt.NDArray[np.int64], prop: Property) -> npt.NDArray[np.float64]:
        """State independent property per material id."""
        return self.properties[material_ids, list(Property).index(prop)]

    def compute_material_property(
        self,
        state_property: StateProperty,
        material_ids: npt.NDArray[np.int64],
        liquid: npt.NDArray[np.float64],
        powder: npt.NDArray[np.float64],
        solid: npt.NDArray[np.float64],
        temperature: npt.NDArray[np.float64],
    ) -> npt.NDArray[np.float64]:
        """
        Phase weighted value of a state property.

        All arrays share one shape; they are raveled for the batch kernel.

        Args:
            state_property: Property to evaluate.
            material_ids: Material id per point.
            liquid: Liquid ratio per point.
            powder: Powder ratio per point.
            solid: Solid ratio per point.
            temperature: Temperature per point (K).

        Returns:
            Property values with the shape of ``temperature``.
        """
        shape = np.shape(temperature)
        ratios = np.empty((N_STATES, int(np.prod(shape))), dtype=np.float64)
        ratios[MaterialState.LIQUID.index] = np.ravel(liquid)
        ratios[MaterialState.POWDER.index] = np.ravel(powder)
        ratios[MaterialState.SOLID.index] = np.ravel(solid)

        p = list(StateProperty).index(state_property)
        coefficients = np.ascontiguousarray(self.state_property_polynomials[:, :, p, :])
        values = state_property_batch(
            np.ascontiguousarray(np.ravel(temperature), dtype=np.float64),
            np.ascontiguousarray(np.ravel(np.broadcast_to(material_ids, shape)), dtype=np.int64),
            ratios,
            coefficients,
        )
        return values.reshape(shape)

    def get_state_ratio(self, cell_ids: npt.NDArray[np.int64], state: MaterialState) -> npt.NDArray[np.float64]:
        return self.state[state.index, cell_ids]

    def set_state(
        self,
        cell_ids: npt.NDArray[np.int64],
        liquid: npt.NDArray[np.float64],
        powder: npt.NDArray[np.float64],
        solid: Optional[npt.NDArray[np.float64]] = None,
    ) -> None:
        """
        Store the phase ratios of the given cells.

        When ``solid`` is omitted it is the remainder ``max(1 - liquid - powder, 0)``.
        """
        liquid = np.asarray(liquid, dtype=np.float64)
        powder = np.asarray(powder, dtype=np.float64)
        if solid is None:
            solid = np.maximum(1.0 - liquid - powder, 0.0)
        self.state[MaterialState.LIQUID.index, cell_ids] = liquid
        self.state[MaterialState.POWDER.index, cell_ids] = powder
        self.state[MaterialState.SOLID.index, cell_ids] = solid
