from __future__ import annotations

from itertools import product
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt


def gauss_points_weights_edge(n_points: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Generate Gauss points and weights for a 1D Gaussian integration on the interval [-1, +1].

    Args:
        n_points: Number of integration points.

    Raises:
        ValueError: If `n_points` is not 1, 2, or 3.

    Returns:
        A tuple containing the Gauss points and weights.
    """
    if n_points == 1:
        return np.array([0.0]), np.array([2.0])
    elif n_points == 2:
        return np.array([-1/np.sqrt(3), 1/np.sqrt(3)]), np.array([1.0, 1.0])
    elif n_points == 3:
        return np.array([-np.sqrt(3/5), 0.0, np.sqrt(3/5)]), np.array([5/9, 8/9, 5/9])
    else:
        raise ValueError(f"Unsupported number of Gauss points: {n_points}. "
                         f"'n_points' must be 1, 2, or 3.")


def gauss_lobatto_points_weights_edge(n_points: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Generate Gauss-Lobatto points and weights on the interval [-1, +1].

    The end points are always included, so with ``fe_degree + 1`` points the
    quadrature points coincide with the nodes of a Lagrange element.

    Args:
        n_points: Number of integration points.

    Raises:
        ValueError: If `n_points` is not 2 or 3.

    Returns:
        A tuple containing the Gauss-Lobatto points and weights.
    """
    if n_points == 2:
        return np.array([-1.0, 1.0]), np.array([1.0, 1.0])
    elif n_points == 3:
        return np.array([-1.0, 0.0, 1.0]), np.array([1/3, 4/3, 1/3])
    else:
        raise ValueError(f"Unsupported number of Gauss-Lobatto points: {n_points}. "
                         f"'n_points' must be 2 or 3.")


def tensor_product_unit_cell(
    points_1d: npt.NDArray[np.float64],
    weights_1d: npt.NDArray[np.float64],
    dim: int,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Tensor a 1D rule on [-1, +1] onto the unit cell [0, 1]^dim.

    Points are ordered lexicographically with the first coordinate running
    fastest, the same order as the element's local nodes.

    Args:
        points_1d: 1D points on [-1, +1].
        weights_1d: 1D weights summing to 2.
        dim: Spatial dimension.

    Returns:
        Points of shape (n_points_1d**dim, dim) and weights summing to 1.
    """
    x = 0.5 * (points_1d + 1.0)
    w = 0.5 * weights_1d
    points = []
    weights = []
    # itertools.product runs the last index fastest, so reverse each tuple
    for idx in product(range(x.size), repeat=dim):
        idx = idx[::-1]
        points.append([x[i] for i in idx])
        weights.append(np.prod([w[i] for i in idx]))
    return np.array(points, dtype=np.float64), np.array(weights, dtype=np.float64)


def gauss_points_weights_hypercube(n_points: int, dim: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Tensor-product Gauss rule with `n_points` per direction on [0, 1]^dim."""
    return tensor_product_unit_cell(*gauss_points_weights_edge(n_points), dim)


def gauss_lobatto_points_weights_hypercube(n_points: int, dim: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Tensor-product Gauss-Lobatto rule with `n_points` per direction on [0, 1]^dim."""
    return tensor_product_unit_cell(*gauss_lobatto_points_weights_edge(n_points), dim)


def face_points_weights(
    points: npt.NDArray[np.float64],
    weights: npt.NDArray[np.float64],
    dim: int,
    face: int,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Lift a (dim - 1)-dimensional rule on [0, 1]^(dim-1) onto a face of the unit cell.

    Faces are numbered ``2 * axis + side``: face 0 is x = 0, face 1 is x = 1,
    face 2 is the next axis at 0, and so on.

    Args:
        points: Points of the face rule, shape (n, dim - 1).
        weights: Weights of the face rule.
        dim: Spatial dimension of the cell.
        face: Face number.

    Returns:
        Points of shape (n, dim) on the face and the unchanged weights.
    """
    axis, side = divmod(face, 2)
    lifted = np.insert(points, axis, float(side), axis=1)
    return lifted, weights
