from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from additivethermal.fea.analysis.thermal_operator import make_finite_element
from additivethermal.utils import batches

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.fea.pre.mesh import MeshCollaborator

logger = logging.getLogger(__name__)


class MassOperator:
    """
    Lumped (diagonal) mass matrix of the active domain.

    The mass is integrated with a Gauss-Lobatto rule whose points are the
    element nodes, which makes the element mass matrix diagonal.
    """

    def __init__(self, batch_size: int = 256) -> None:
        self.batch_size = batch_size
        self.diagonal = np.zeros(0, dtype=np.float64)
        self.inverse_diagonal = np.zeros(0, dtype=np.float64)

    @property
    def m(self) -> int:
        return self.diagonal.size

    def compute_inverse_mass_matrix(self, mesh: MeshCollaborator) -> None:
        """
        Assemble and invert the lumped mass of the active cells.

        Must be called again after every change of the dof numbering.

        Args:
            mesh: Mesh with distributed dofs.
        """
        element = make_finite_element(mesh.dim)
        q_points, weights = element.get_nodal_integration_scheme()

        cell_ids = mesh.active_cell_ids()
        cell_dofs = mesh.cell_dofs(cell_ids)
        raw = np.zeros(mesh.n_dofs, dtype=np.float64)
        for sl in batches(cell_ids.size, self.batch_size):
            vertices = mesh.node_coordinates[mesh.cell_nodes[cell_ids[sl]]]
            values = element.reinit(vertices, q_points, weights)
            # integral of phi_i times the unit field
            np.add.at(raw, cell_dofs[sl], values.JxW @ values.shape_values)

        constraints = mesh.constraints
        diagonal = constraints.condense(raw)
        diagonal[constraints.constrained_dofs] = 1.0
        assert np.all(diagonal > 0.0), "Non-positive entry in the lumped mass matrix."

        self.diagonal = diagonal
        self.inverse_diagonal = 1.0 / diagonal
        logger.debug(f"Lumped mass: {self.m} entries, total {raw.sum():.6e}")

    def vmult(self, src: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Apply the inverse mass matrix."""
        return self.inverse_diagonal * src
