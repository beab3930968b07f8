from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from additivethermal.fea.analysis.finite_elements.finite_element import FiniteElement

if TYPE_CHECKING:
    import numpy.typing as npt


# Local node l sits at corner (l & 1, (l >> 1) & 1, (l >> 2) & 1)
CORNERS = np.array([[(l >> d) & 1 for d in range(3)] for l in range(8)], dtype=np.float64)


class Hex8(FiniteElement):
    """
    Represents an eight-node trilinear hexahedral finite element (Hex8).
    """
    dim = 3

    @staticmethod
    def shape_functions(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Calculate the shape functions for the Hex8 element.

        N_l = prod_d (xi_d if corner_ld == 1 else 1 - xi_d)

        Args:
            iso_coords: (n_q, 3) coordinates in the range [0, 1].

        Returns:
            (n_q, 8) shape function values.
        """
        xi = iso_coords[:, np.newaxis, :]
        factors = np.where(CORNERS == 1.0, xi, 1.0 - xi)
        return np.prod(factors, axis=-1)

    @staticmethod
    def shape_function_gradients(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Derivatives of the shape functions with respect to the reference coordinates.

        Args:
            iso_coords: (n_q, 3) coordinates in the range [0, 1].

        Returns:
            (n_q, 8, 3) array, ``[q, l, j] = dN_l / d xi_j``.
        """
        xi = iso_coords[:, np.newaxis, :]
        factors = np.where(CORNERS == 1.0, xi, 1.0 - xi)
        signs = np.where(CORNERS == 1.0, 1.0, -1.0)
        gradients = np.empty(factors.shape, dtype=np.float64)
        for j in range(3):
            others = [d for d in range(3) if d != j]
            gradients[..., j] = signs[:, j] * factors[..., others[0]] * factors[..., others[1]]
        return gradients
