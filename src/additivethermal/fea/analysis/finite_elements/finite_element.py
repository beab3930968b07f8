from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from typing import TYPE_CHECKING

import numpy as np

import additivethermal.fea.analysis.gauss as gauss

if TYPE_CHECKING:
    import numpy.typing as npt


@dataclass
class CellValues:
    """
    Shape data of a batch of cells at their quadrature points.

    Attributes:
        shape_values: (n_q, n_nodes) reference shape functions, same for every cell.
        gradients: (n_cells, n_q, n_nodes, dim) physical shape function gradients.
        JxW: (n_cells, n_q) Jacobian determinant times quadrature weight.
        quadrature_points: (n_cells, n_q, dim) physical quadrature points.
    """
    shape_values: npt.NDArray[np.float64]
    gradients: npt.NDArray[np.float64]
    JxW: npt.NDArray[np.float64]
    quadrature_points: npt.NDArray[np.float64]


@dataclass
class FaceValues:
    """
    Shape data of a batch of cell faces at their quadrature points.

    Attributes:
        shape_values: (n_q, n_nodes) cell shape functions evaluated on the face.
        JxW: (n_faces, n_q) surface measure times quadrature weight.
        quadrature_points: (n_faces, n_q, dim) physical quadrature points.
    """
    shape_values: npt.NDArray[np.float64]
    JxW: npt.NDArray[np.float64]
    quadrature_points: npt.NDArray[np.float64]


class FiniteElement(ABC):
    """
    Abstract base class for tensor-product Lagrange elements.

    The reference cell is [0, 1]^dim. Local nodes are numbered
    lexicographically with the first coordinate running fastest.
    """

    dim: int
    fe_degree: int = 1

    def __repr__(self) -> str:
        """String representation of the finite element."""
        return f"{self.__class__.__name__}(dim={self.dim}, fe_degree={self.fe_degree})"

    @property
    def number_of_nodes(self) -> int:
        """Number of nodes in the finite element."""
        return (self.fe_degree + 1) ** self.dim

    @property
    def n_faces(self) -> int:
        return 2 * self.dim

    @staticmethod
    @abstractmethod
    def shape_functions(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Shape functions at points of shape (n_q, dim), returned as (n_q, n_nodes)."""
        pass

    @staticmethod
    @abstractmethod
    def shape_function_gradients(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Reference gradients at points of shape (n_q, dim), returned as (n_q, n_nodes, dim)."""
        pass

    def get_integration_scheme(self) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """
        Gauss rule with ``fe_degree + 1`` points per direction.

        Returns:
            Tuple of quadrature points and weights on the unit cell.
        """
        return gauss.gauss_points_weights_hypercube(self.fe_degree + 1, self.dim)

    def get_nodal_integration_scheme(self) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """
        Gauss-Lobatto rule whose points coincide with the element nodes.

        Returns:
            Tuple of quadrature points and weights on the unit cell.
        """
        return gauss.gauss_lobatto_points_weights_hypercube(self.fe_degree + 1, self.dim)

    def get_face_integration_scheme(self, face: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """
        Gauss rule on one face of the unit cell.

        Args:
            face: Face number ``2 * axis + side``.

        Returns:
            Tuple of points (in cell coordinates) and face weights.
        """
        points, weights = gauss.gauss_points_weights_hypercube(self.fe_degree + 1, self.dim - 1)
        return gauss.face_points_weights(points, weights, self.dim, face)

    def jacobian_matrix(
        self,
        vertices: npt.NDArray[np.float64],
        iso_coords: npt.NDArray[np.float64],
    ) -> npt.NDArray[np.float64]:
        """
        Jacobian of the reference-to-physical map.

        Args:
            vertices: (n_cells, n_nodes, dim) node coordinates.
            iso_coords: (n_q, dim) reference points.

        Returns:
            (n_cells, n_q, dim, dim) with J[..., i, j] = d x_i / d xi_j.
        """
        dN = self.shape_function_gradients(iso_coords)
        return np.einsum('cli,qlj->cqij', vertices, dN)

    def reinit(
        self,
        vertices: npt.NDArray[np.float64],
        iso_coords: npt.NDArray[np.float64],
        weights: npt.NDArray[np.float64],
    ) -> CellValues:
        """
        Evaluate shape data on a batch of cells.

        Args:
            vertices: (n_cells, n_nodes, dim) node coordinates.
            iso_coords: (n_q, dim) reference quadrature points.
            weights: (n_q,) reference quadrature weights.

        Returns:
            The cell values of the batch.
        """
        N = self.shape_functions(iso_coords)
        dN = self.shape_function_gradients(iso_coords)
        J = self.jacobian_matrix(vertices, iso_coords)
        det_j = np.linalg.det(J)
        assert np.all(det_j > 0.0), "Inverted or degenerate cell."
        inv_j = np.linalg.inv(J)

        # [B] = [B_N] [J]^-1
        gradients = np.einsum('qlj,cqjd->cqld', dN, inv_j)
        quadrature_points = np.einsum('ql,cld->cqd', N, vertices)
        return CellValues(
            shape_values=N,
            gradients=gradients,
            JxW=det_j * weights[np.newaxis, :],
            quadrature_points=quadrature_points,
        )

    def reinit_face(
        self,
        vertices: npt.NDArray[np.float64],
        face: int,
    ) -> FaceValues:
        """
        Evaluate shape data on the same face of a batch of cells.

        Args:
            vertices: (n_faces, n_nodes, dim) node coordinates of the owning cells.
            face: Face number ``2 * axis + side``.

        Returns:
            The face values of the batch.
        """
        iso_coords, weights = self.get_face_integration_scheme(face)
        N = self.shape_functions(iso_coords)
        J = self.jacobian_matrix(vertices, iso_coords)

        # Surface measure from the tangent columns of J
        axis = face // 2
        tangents = [J[..., :, j] for j in range(self.dim) if j != axis]
        if self.dim == 2:
            measure = np.linalg.norm(tangents[0], axis=-1)
        else:
            measure = np.linalg.norm(np.cross(tangents[0], tangents[1]), axis=-1)

        quadrature_points = np.einsum('ql,cld->cqd', N, vertices)
        return FaceValues(
            shape_values=N,
            JxW=measure * weights[np.newaxis, :],
            quadrature_points=quadrature_points,
        )
