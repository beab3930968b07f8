from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from additivethermal.fea.analysis.finite_elements.finite_element import FiniteElement

if TYPE_CHECKING:
    import numpy.typing as npt


class Quad4(FiniteElement):
    """
    Represents a four-node bilinear quadrilateral finite element (Quad4).

    Local node order on the unit square: (0,0), (1,0), (0,1), (1,1).
    """
    dim = 2

    @staticmethod
    def shape_functions(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Calculate the shape functions for the Quad4 element.

        Args:
            iso_coords: (n_q, 2) coordinates (r, s) in the range [0, 1].

        Returns:
            (n_q, 4) shape function values ``[N1, N2, N3, N4]``.
        """
        r = iso_coords[:, 0]
        s = iso_coords[:, 1]
        return np.stack([
            (1.0 - r) * (1.0 - s),
            r * (1.0 - s),
            (1.0 - r) * s,
            r * s,
        ], axis=-1)

    @staticmethod
    def shape_function_gradients(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Derivatives of the shape functions with respect to (r, s).

        Args:
            iso_coords: (n_q, 2) coordinates in the range [0, 1].

        Returns:
            (n_q, 4, 2) array, ``[q, l, j] = dN_l / d xi_j``.
        """
        r = iso_coords[:, 0]
        s = iso_coords[:, 1]
        dr = np.stack([-(1.0 - s), 1.0 - s, -s, s], axis=-1)
        ds = np.stack([-(1.0 - r), -r, 1.0 - r, r], axis=-1)
        return np.stack([dr, ds], axis=-1)
