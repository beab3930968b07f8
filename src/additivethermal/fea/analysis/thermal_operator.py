"""
Thermal Operator
================
Matrix-free residual of the nonlinear heat equation on the active domain.

Why is this file needed?
------------------------
1. Residual: ``apply`` returns M dT/dt for a temperature field, i.e. the
   weak form of div(k grad T) + Q divided by rho*cp, plus convective and
   radiative losses on the boundary of the active domain.
2. Phase state: the liquid and powder ratios at every quadrature point are
   owned here and updated from the temperature on each evaluation.
3. Anisotropy: the in-plane conductivity of every cell is rotated by the
   direction the material was deposited in.

Cells are processed in batches with vectorized numpy kernels. Contributions
are summed into a raw vector, and the constraints are resolved only after
every batch has been accumulated.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, List, Optional

import numpy as np
from scipy.constants import Stefan_Boltzmann

from additivethermal.config import BoundaryType
from additivethermal.fea.analysis.finite_elements.hex8 import Hex8
from additivethermal.fea.analysis.finite_elements.quad4 import Quad4
from additivethermal.fea.pre.material import MaterialState, Property, StateProperty
from additivethermal.fea.pre.material_helpers import inv_rho_cp, update_state_ratios
from additivethermal.utils import batches

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.fea.analysis.finite_elements.finite_element import (
        CellValues, FaceValues, FiniteElement
    )
    from additivethermal.fea.pre.heat_sources import HeatSource
    from additivethermal.fea.pre.material import MaterialProperty
    from additivethermal.fea.pre.mesh import MeshCollaborator

logger = logging.getLogger(__name__)


def make_finite_element(dim: int) -> FiniteElement:
    if dim == 2:
        return Quad4()
    if dim == 3:
        return Hex8()
    raise ValueError(f"Unsupported dimension: {dim}.")


@dataclass
class FaceBatch:
    """
    Boundary faces sharing the same local face number.

    Attributes:
        face: Local face number ``2 * axis + side``.
        cell_positions: Position of the owning cell among the active cells.
        dofs: (n_faces, n_nodes) dofs of the owning cells.
        values: Face shape data.
        powder: (n_faces, n_q) powder ratio at the face quadrature points.
    """
    face: int
    cell_positions: npt.NDArray[np.int64]
    dofs: npt.NDArray[np.int64]
    values: FaceValues
    powder: npt.NDArray[np.float64]


class ThermalOperator:
    """
    Nonlinear thermal residual on the active cells of a mesh.
    """

    def __init__(
        self,
        boundary_type: BoundaryType,
        material_properties: MaterialProperty,
        heat_sources: List[HeatSource],
        batch_size: int = 256,
    ) -> None:
        """
        Initialize the ThermalOperator.

        Args:
            boundary_type: Boundary condition on the active domain boundary.
            material_properties: Material tables and per-cell phase store.
            heat_sources: Sources evaluated at every quadrature point.
            batch_size: Number of cells per vectorized kernel call.
        """
        self.boundary_type = boundary_type
        self.material_properties = material_properties
        self.heat_sources = heat_sources
        self.batch_size = batch_size

        self.mesh: Optional[MeshCollaborator] = None
        self.element: Optional[FiniteElement] = None
        self.cell_ids = np.zeros(0, dtype=np.int64)
        self.cell_position = np.zeros(0, dtype=np.int64)
        self.cell_dofs = np.zeros((0, 0), dtype=np.int64)
        self.material_ids = np.zeros(0, dtype=np.int64)
        self.face_batches: List[FaceBatch] = []

        self.liquid = np.zeros((0, 0), dtype=np.float64)
        self.powder = np.zeros((0, 0), dtype=np.float64)
        self.deposition_cos = np.zeros(0, dtype=np.float64)
        self.deposition_sin = np.zeros(0, dtype=np.float64)
        self.has_melted = np.zeros(0, dtype=bool)

    @property
    def n_cells(self) -> int:
        return self.cell_ids.size

    @property
    def m(self) -> int:
        return 0 if self.mesh is None else self.mesh.n_dofs

    def reinit(self, mesh: MeshCollaborator) -> None:
        """
        Rebuild every mesh dependent array.

        Deposition orientation and melt flags are reset; callers restore them
        after a topology change.

        Args:
            mesh: Mesh with distributed dofs.
        """
        self.mesh = mesh
        self.element = make_finite_element(mesh.dim)

        self.cell_ids = mesh.active_cell_ids()
        self.cell_position = np.full(mesh.n_cells, -1, dtype=np.int64)
        self.cell_position[self.cell_ids] = np.arange(self.cell_ids.size)
        self.cell_dofs = mesh.cell_dofs(self.cell_ids)
        assert np.all(self.cell_dofs >= 0), "Active cell without dofs."
        self.material_ids = mesh.material_id[self.cell_ids]

        q_points, weights = self.element.get_integration_scheme()
        vertices = mesh.node_coordinates[mesh.cell_nodes[self.cell_ids]]
        self.cell_values: CellValues = self.element.reinit(vertices, q_points, weights)
        n_q = weights.size

        self.face_batches = []
        face_cells, faces = mesh.boundary_faces()
        for face in range(self.element.n_faces):
            owners = face_cells[faces == face]
            if owners.size == 0:
                continue
            face_vertices = mesh.node_coordinates[mesh.cell_nodes[owners]]
            values = self.element.reinit_face(face_vertices, face)
            self.face_batches.append(FaceBatch(
                face=face,
                cell_positions=self.cell_position[owners],
                dofs=mesh.cell_dofs(owners),
                values=values,
                powder=np.zeros(values.JxW.shape, dtype=np.float64),
            ))

        self.liquid = np.zeros((self.n_cells, n_q), dtype=np.float64)
        self.powder = np.zeros((self.n_cells, n_q), dtype=np.float64)
        self.deposition_cos = np.ones(self.n_cells, dtype=np.float64)
        self.deposition_sin = np.zeros(self.n_cells, dtype=np.float64)
        self.has_melted = np.zeros(self.n_cells, dtype=bool)
        self.get_state_from_material_properties()

        logger.debug(f"Thermal operator: {self.n_cells} cells, {len(face_cells)} boundary faces, "
                     f"{self.m} dofs")

    # ---- Phase state ----

    def get_state_from_material_properties(self) -> None:
        """Load the phase ratios of every quadrature point from the per-cell store."""
        mp = self.material_properties
        self.liquid[:] = mp.get_state_ratio(self.cell_ids, MaterialState.LIQUID)[:, np.newaxis]
        self.powder[:] = mp.get_state_ratio(self.cell_ids, MaterialState.POWDER)[:, np.newaxis]
        for fb in self.face_batches:
            owners = self.cell_ids[fb.cell_positions]
            fb.powder[:] = mp.get_state_ratio(owners, MaterialState.POWDER)[:, np.newaxis]

    def set_state_to_material_properties(self) -> None:
        """Store the cell average of the quadrature point ratios in the per-cell store."""
        self.material_properties.set_state(self.cell_ids, self.liquid.mean(axis=1), self.powder.mean(axis=1))

    def set_material_deposition_orientation(
        self,
        deposition_cos: npt.NDArray[np.float64],
        deposition_sin: npt.NDArray[np.float64],
    ) -> None:
        """Orientation per active cell, in active cell order."""
        assert len(deposition_cos) == len(deposition_sin) == self.n_cells
        self.deposition_cos = np.asarray(deposition_cos, dtype=np.float64).copy()
        self.deposition_sin = np.asarray(deposition_sin, dtype=np.float64).copy()

    def mark_has_melted(self, threshold: float, temperature: npt.NDArray[np.float64]) -> None:
        """Set the melt flag of the cells whose volume averaged temperature exceeds ``threshold``."""
        u = self.mesh.constraints.distribute(temperature)
        cv = self.cell_values
        T = u[self.cell_dofs] @ cv.shape_values.T
        average = np.sum(T * cv.JxW, axis=1) / np.sum(cv.JxW, axis=1)
        self.has_melted |= average > threshold

    # ---- Kernels ----

    def _properties(self, material_ids, liquid, powder, solid, temperature, state_property):
        return self.material_properties.compute_material_property(
            state_property, material_ids, liquid, powder, solid, temperature
        )

    def _phase_and_inv_rho_cp(self, material_ids, temperature, powder_previous):
        mp = self.material_properties
        solidus = mp.get(material_ids, Property.SOLIDUS)
        liquidus = mp.get(material_ids, Property.LIQUIDUS)
        liquid, powder, solid = update_state_ratios(temperature, solidus, liquidus, powder_previous)
        density = self._properties(material_ids, liquid, powder, solid, temperature, StateProperty.DENSITY)
        specific_heat = self._properties(material_ids, liquid, powder, solid, temperature, StateProperty.SPECIFIC_HEAT)
        latent_heat = mp.get(material_ids, Property.LATENT_HEAT)
        return liquid, powder, solid, inv_rho_cp(density, specific_heat, liquid, solidus, liquidus, latent_heat)

    def _conductive_flux(self, sl, material_ids, liquid, powder, solid, temperature, gradient):
        """k grad(x) with the conductivity rotated by the deposition angle in 3D."""
        kx = self._properties(material_ids, liquid, powder, solid, temperature, StateProperty.THERMAL_CONDUCTIVITY_X)
        kz = self._properties(material_ids, liquid, powder, solid, temperature, StateProperty.THERMAL_CONDUCTIVITY_Z)
        if self.mesh.dim == 2:
            return np.stack([kx * gradient[..., 0], kz * gradient[..., 1]], axis=-1)

        ky = self._properties(material_ids, liquid, powder, solid, temperature, StateProperty.THERMAL_CONDUCTIVITY_Y)
        c = self.deposition_cos[sl][:, np.newaxis]
        s = self.deposition_sin[sl][:, np.newaxis]
        # R diag(kx, ky) R^T
        k_xx = kx * c * c + ky * s * s
        k_xy = (kx - ky) * s * c
        k_yy = kx * s * s + ky * c * c
        return np.stack([
            k_xx * gradient[..., 0] + k_xy * gradient[..., 1],
            k_xy * gradient[..., 0] + k_yy * gradient[..., 1],
            kz * gradient[..., 2],
        ], axis=-1)

    def _boundary_coefficients(self, material_ids, liquid, powder, solid, temperature):
        """
        Heat transfer coefficients and ambient temperatures of the active boundary.

        Returns:
            h_conv, T_conv, h_rad, T_rad; zero where the condition is not set.
        """
        mp = self.material_properties
        zeros = np.zeros_like(temperature)
        h_conv, t_conv, h_rad, t_rad = zeros, zeros, zeros, zeros
        if BoundaryType.CONVECTIVE in self.boundary_type:
            h_conv = self._properties(material_ids, liquid, powder, solid, temperature,
                                      StateProperty.CONVECTION_HEAT_TRANSFER_COEF)
            t_conv = mp.get(material_ids, Property.CONVECTION_TEMPERATURE_INFTY)
        if BoundaryType.RADIATIVE in self.boundary_type:
            t_rad = mp.get(material_ids, Property.RADIATION_TEMPERATURE_INFTY)
            emissivity = self._properties(material_ids, liquid, powder, solid, temperature, StateProperty.EMISSIVITY)
            # h_rad = eps sigma (T + T_inf)(T^2 + T_inf^2)
            h_rad = emissivity * Stefan_Boltzmann * (temperature + t_rad) * (temperature ** 2 + t_rad ** 2)
        return h_conv, t_conv, h_rad, t_rad

    def _cell_batch(self, sl, u, raw, current_source_height, update_state, direction=None):
        cv = self.cell_values
        dofs = self.cell_dofs[sl]
        N = cv.shape_values
        gradients = cv.gradients[sl]
        JxW = cv.JxW[sl]

        T_loc = u[dofs]
        T = T_loc @ N.T
        material_ids = np.broadcast_to(self.material_ids[sl][:, np.newaxis], T.shape)

        liquid, powder, solid, irc = self._phase_and_inv_rho_cp(material_ids, T, self.powder[sl])
        if update_state:
            self.liquid[sl] = liquid
            self.powder[sl] = powder

        # Frozen coefficients act on the direction, without the source
        x_loc = T_loc if direction is None else direction[dofs]
        gradient = np.einsum('cl,cqld->cqd', x_loc, gradients)
        flux = -irc[..., np.newaxis] * self._conductive_flux(sl, material_ids, liquid, powder, solid, T, gradient)
        contribution = np.einsum('cqd,cqld,cq->cl', flux, gradients, JxW)

        if direction is None and self.heat_sources:
            points = cv.quadrature_points[sl]
            source = np.zeros_like(T)
            for beam in self.heat_sources:
                source += beam.value(points, current_source_height)
            contribution += np.einsum('cq,ql,cq->cl', source * irc, N, JxW)

        np.add.at(raw, dofs, contribution)

    def _face_batch(self, fb, sl, u, raw, update_state, direction=None):
        N = fb.values.shape_values
        dofs = fb.dofs[sl]
        JxW = fb.values.JxW[sl]

        T = u[dofs] @ N.T
        material_ids = np.broadcast_to(self.material_ids[fb.cell_positions[sl]][:, np.newaxis], T.shape)
        liquid, powder, solid, irc = self._phase_and_inv_rho_cp(material_ids, T, fb.powder[sl])
        if update_state:
            fb.powder[sl] = powder

        h_conv, t_conv, h_rad, t_rad = self._boundary_coefficients(material_ids, liquid, powder, solid, T)
        if direction is None:
            value = -irc * (h_conv * (T - t_conv) + h_rad * (T - t_rad))
        else:
            value = -irc * (h_conv + h_rad) * (direction[dofs] @ N.T)

        np.add.at(raw, dofs, np.einsum('fq,ql,fq->fl', value, N, JxW))

    def _apply(self, u, src, current_source_height, update_state, direction=None):
        raw = np.zeros(self.m, dtype=np.float64)
        for sl in batches(self.n_cells, self.batch_size):
            self._cell_batch(sl, u, raw, current_source_height, update_state, direction)

        if self.boundary_type != BoundaryType.ADIABATIC:
            for fb in self.face_batches:
                for sl in batches(fb.cell_positions.size, self.batch_size):
                    self._face_batch(fb, sl, u, raw, update_state, direction)

        constraints = self.mesh.constraints
        dst = constraints.condense(raw)
        constrained = constraints.constrained_dofs
        dst[constrained] += src[constrained]
        return dst

    # ---- Public operator actions ----

    def apply(
        self,
        temperature: npt.NDArray[np.float64],
        current_source_height: float,
        update_state: bool = True,
    ) -> npt.NDArray[np.float64]:
        """
        Evaluate the thermal residual.

        Args:
            temperature: Dof vector of the temperature.
            current_source_height: Height the heat sources are measured from.
            update_state: Store the new phase ratios (``False`` for probing
                evaluations such as finite differences).

        Returns:
            Residual dof vector; constrained entries carry ``temperature``.
        """
        u = self.mesh.constraints.distribute(temperature)
        return self._apply(u, temperature, current_source_height, update_state)

    def apply_frozen(
        self,
        direction: npt.NDArray[np.float64],
        state: npt.NDArray[np.float64],
        current_source_height: float,
    ) -> npt.NDArray[np.float64]:
        """
        Linear part of the residual with the coefficients frozen at ``state``.

        No source and no ambient temperatures; the phase state is not updated.

        Args:
            direction: Dof vector the operator acts on.
            state: Temperature the coefficients are evaluated at.
            current_source_height: Unused by the linear part, kept for symmetry with ``apply``.

        Returns:
            The action on ``direction``.
        """
        constraints = self.mesh.constraints
        u = constraints.distribute(state)
        x = constraints.distribute(direction)
        return self._apply(u, direction, current_source_height, update_state=False, direction=x)
