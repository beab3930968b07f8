"""
Mesh Collaborator
=================
Cells, nodes, degrees of freedom and hanging-node style constraints.

Why is this file needed?
------------------------
1. Contract: the thermal core only talks to the mesh through
   ``MeshCollaborator``; any mesh honouring it can be plugged in.
2. Element arena: cells keep a stable integer id for their whole life, so
   per-cell data (phase state, records) can be keyed by id while the set of
   active cells and the dof numbering change.
3. Activation: cells are switched on (never off) through the
   future-active flag and ``execute_coarsening_and_refinement``.
"""
from __future__ import annotations

from itertools import product
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)


class AffineConstraints:
    """
    Linear constraints ``x_i = sum_j w_ij x_j`` on a dof vector.

    The constraints are applied through the distribution matrix ``P``, which
    has an identity row for each unconstrained dof and the weights of the
    masters for each constrained dof.
    """

    def __init__(self, n_dofs: int) -> None:
        self.n_dofs = n_dofs
        self.lines: Dict[int, List[Tuple[int, float]]] = {}
        self._matrix: Optional[sp.csr_matrix] = None

    def add_line(self, dof: int, entries: Sequence[Tuple[int, float]]) -> None:
        """
        Constrain ``dof`` to a weighted sum of master dofs.

        Args:
            dof: The constrained (slave) dof.
            entries: ``(master, weight)`` pairs.
        """
        self.lines[int(dof)] = [(int(m), float(w)) for m, w in entries]
        self._matrix = None

    def is_constrained(self, dof: int) -> bool:
        return dof in self.lines

    @property
    def constrained_dofs(self) -> npt.NDArray[np.int64]:
        return np.array(sorted(self.lines), dtype=np.int64)

    def close(self) -> None:
        """Build the distribution matrix. Masters must not be constrained themselves."""
        rows: List[int] = []
        cols: List[int] = []
        vals: List[float] = []
        for i in range(self.n_dofs):
            line = self.lines.get(i)
            if line is None:
                rows.append(i)
                cols.append(i)
                vals.append(1.0)
                continue
            for master, weight in line:
                assert master not in self.lines, f"Master dof {master} is itself constrained."
                rows.append(i)
                cols.append(master)
                vals.append(weight)
        self._matrix = sp.csr_matrix(
            (np.array(vals, dtype=np.float64), (np.array(rows, dtype=np.int64), np.array(cols, dtype=np.int64))),
            shape=(self.n_dofs, self.n_dofs),
        )

    @property
    def matrix(self) -> sp.csr_matrix:
        if self._matrix is None:
            self.close()
        return self._matrix

    def distribute(self, x: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Return a copy of ``x`` whose constrained entries satisfy the constraints."""
        return self.matrix @ x

    def condense(self, r: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Move the contributions of constrained entries onto their masters; constrained entries become 0."""
        return self.matrix.T @ r


class MeshCollaborator(Protocol):
    """Mesh services needed by the thermal core."""

    dim: int
    n_cells: int
    cell_nodes: npt.NDArray[np.int64]
    node_coordinates: npt.NDArray[np.float64]
    material_id: npt.NDArray[np.int64]
    active: npt.NDArray[np.bool_]
    future_active: npt.NDArray[np.bool_]
    neighbors: npt.NDArray[np.int64]
    n_dofs: int
    constraints: AffineConstraints

    def distribute_dofs(self) -> None: ...

    def cell_dofs(self, cell_ids: npt.NDArray[np.int64]) -> npt.NDArray[np.int64]: ...

    def active_cell_ids(self) -> npt.NDArray[np.int64]: ...

    def boundary_faces(self) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]: ...

    def execute_coarsening_and_refinement(
        self, cell_data: Dict[int, npt.NDArray[np.float64]]
    ) -> Dict[int, npt.NDArray[np.float64]]: ...


class StructuredMesh:
    """
    Box of Q1 quadrilaterals (2D) or hexahedra (3D).

    Cell ids and node ids run lexicographically with x fastest; the last axis
    is the build direction.
    """

    def __init__(
        self,
        dim: int,
        lower: Sequence[float],
        upper: Sequence[float],
        n_cells: Sequence[int],
    ) -> None:
        """
        Initialize the StructuredMesh.

        Args:
            dim: Spatial dimension, 2 or 3.
            lower: Lower corner of the box.
            upper: Upper corner of the box.
            n_cells: Number of cells along every axis.
        """
        assert dim in (2, 3), "Only 2D and 3D meshes are supported."
        assert len(lower) == len(upper) == len(n_cells) == dim
        self.dim = dim
        self.lower = np.asarray(lower, dtype=np.float64)
        self.upper = np.asarray(upper, dtype=np.float64)
        self.shape = tuple(int(n) for n in n_cells)
        self.cell_size = (self.upper - self.lower) / np.asarray(self.shape, dtype=np.float64)

        # Nodes
        node_shape = tuple(n + 1 for n in self.shape)
        axes = [np.linspace(self.lower[d], self.upper[d], node_shape[d]) for d in range(dim)]
        grid = np.meshgrid(*axes, indexing='ij')
        self.node_coordinates = np.stack([g.ravel(order='F') for g in grid], axis=-1)

        # Cells
        self.n_cells = int(np.prod(self.shape))
        cell_index = np.array(list(product(*[range(n) for n in reversed(self.shape)])), dtype=np.int64)[:, ::-1]
        self.cell_index = cell_index  # (n_cells, dim) integer position, x fastest
        strides = np.cumprod((1,) + node_shape[:-1])
        corners = np.array([[(l >> d) & 1 for d in range(dim)] for l in range(2 ** dim)], dtype=np.int64)
        self.cell_nodes = (cell_index[:, np.newaxis, :] + corners[np.newaxis, :, :]) @ strides

        # Face neighbors, face = 2 * axis + side
        cell_strides = np.cumprod((1,) + self.shape[:-1])
        self.neighbors = np.full((self.n_cells, 2 * dim), -1, dtype=np.int64)
        ids = np.arange(self.n_cells)
        for axis in range(dim):
            has_low = cell_index[:, axis] > 0
            has_high = cell_index[:, axis] < self.shape[axis] - 1
            self.neighbors[has_low, 2 * axis] = ids[has_low] - cell_strides[axis]
            self.neighbors[has_high, 2 * axis + 1] = ids[has_high] + cell_strides[axis]

        self.material_id = np.zeros(self.n_cells, dtype=np.int64)
        self.active = np.ones(self.n_cells, dtype=bool)
        self.future_active = self.active.copy()

        self.node_to_dof = np.full(self.node_coordinates.shape[0], -1, dtype=np.int64)
        self.n_dofs = 0
        self.constraints = AffineConstraints(0)

        logger.info(f"Structured mesh: dim={dim}, cells={self.shape}, box={self.lower}..{self.upper}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(dim={self.dim}, shape={self.shape}, active={int(self.active.sum())})"

    @property
    def cell_centers(self) -> npt.NDArray[np.float64]:
        return self.lower + (self.cell_index + 0.5) * self.cell_size

    @property
    def vertices(self) -> npt.NDArray[np.float64]:
        """(n_cells, n_nodes, dim) node coordinates of every cell."""
        return self.node_coordinates[self.cell_nodes]

    def active_cell_ids(self) -> npt.NDArray[np.int64]:
        return np.flatnonzero(self.active)

    def cells_in_box(self, lower: Sequence[float], upper: Sequence[float]) -> npt.NDArray[np.int64]:
        """Ids of the cells whose centre lies in the closed box [lower, upper]."""
        centers = self.cell_centers
        inside = np.all((centers >= np.asarray(lower)) & (centers <= np.asarray(upper)), axis=1)
        return np.flatnonzero(inside)

    def cells_below(self, height: float) -> npt.NDArray[np.int64]:
        """Ids of the cells whose centre lies below ``height`` along the build direction."""
        return np.flatnonzero(self.cell_centers[:, -1] < height)

    def set_active(self, cell_ids: npt.NDArray[np.int64]) -> None:
        """Initial activation: only ``cell_ids`` are active. Used before the first dof distribution."""
        self.active[:] = False
        self.active[cell_ids] = True
        self.future_active = self.active.copy()

    def set_future_active(self, cell_ids: npt.NDArray[np.int64]) -> None:
        self.future_active[cell_ids] = True

    def distribute_dofs(self) -> None:
        """
        Number the nodes touching at least one active cell.

        Dofs follow node order. The constraints are rebuilt for the new numbering.
        """
        used = np.unique(self.cell_nodes[self.active])
        self.node_to_dof = np.full(self.node_coordinates.shape[0], -1, dtype=np.int64)
        self.node_to_dof[used] = np.arange(used.size, dtype=np.int64)
        self.n_dofs = int(used.size)
        self.constraints = AffineConstraints(self.n_dofs)
        self.constraints.close()
        logger.debug(f"Distributed {self.n_dofs} dofs on {int(self.active.sum())} active cells")

    def cell_dofs(self, cell_ids: npt.NDArray[np.int64]) -> npt.NDArray[np.int64]:
        """(n, n_nodes) dof indices of the given cells, -1 where a node has no dof."""
        return self.node_to_dof[self.cell_nodes[cell_ids]]

    def dof_coordinates(self) -> npt.NDArray[np.float64]:
        coordinates = np.empty((self.n_dofs, self.dim), dtype=np.float64)
        used = self.node_to_dof >= 0
        coordinates[self.node_to_dof[used]] = self.node_coordinates[used]
        return coordinates

    def boundary_faces(self) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]:
        """
        Faces on the boundary of the active domain.

        A face of an active cell is a boundary face when there is no neighbour
        or the neighbour is inactive.

        Returns:
            Cell ids and face numbers, both of shape (n_faces,).
        """
        active_ids = self.active_cell_ids()
        nbrs = self.neighbors[active_ids]
        is_boundary = (nbrs < 0) | ~self.active[np.where(nbrs < 0, 0, nbrs)]
        cell_pos, faces = np.nonzero(is_boundary)
        return active_ids[cell_pos], faces.astype(np.int64)

    def execute_coarsening_and_refinement(
        self, cell_data: Dict[int, npt.NDArray[np.float64]]
    ) -> Dict[int, npt.NDArray[np.float64]]:
        """
        Apply the pending activations.

        The box mesh is never subdivided, so every record transfers to the
        cell with the same id.

        Args:
            cell_data: Per-cell records keyed by cell id.

        Returns:
            The records of every cell after the change, keyed by cell id.
        """
        assert not np.any(self.active & ~self.future_active), "Cells cannot be deactivated."
        n_new = int(np.count_nonzero(self.future_active & ~self.active))
        self.active = self.future_active.copy()
        logger.debug(f"Activated {n_new} cell(s)")
        return {cell_id: record for cell_id, record in cell_data.items() if 0 <= cell_id < self.n_cells}
