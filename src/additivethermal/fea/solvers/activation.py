"""
Domain Activation
=================
Switching on inactive cells and carrying the per-cell state across.

Why is this file needed?
------------------------
1. Growth: deposited material turns inactive (void) cells into active ones.
2. State transfer: the temperature, deposition orientation, melt flag and
   phase ratios of every cell survive the change of the dof numbering.
3. Initialization: cells without prior temperature data start at the
   temperature of the new material.

Per-cell records are laid out as
``[dof values..., cos, sin, melted, powder, solid, liquid]``. Inactive cells
carry ``inf`` in the dof, orientation and melt slots, so a cell switched on
without prior data unpacks as melted.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Sequence

import numpy as np

from additivethermal.fea.pre.material import MaterialState

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.fea.analysis.model import Model

logger = logging.getLogger(__name__)

SENTINEL = np.inf


def pack_cell_records(model: Model, solution: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Snapshot the state of every cell.

    Args:
        model: The thermal model.
        solution: Temperature dof vector.

    Returns:
        (n_cells, n_nodes + 6) records indexed by cell id.
    """
    mesh = model.mesh
    operator = model.thermal_operator
    mp = model.material_properties
    n = mesh.cell_nodes.shape[1]

    operator.set_state_to_material_properties()
    u = mesh.constraints.distribute(solution)

    records = np.full((mesh.n_cells, n + 6), SENTINEL, dtype=np.float64)
    cells = np.arange(mesh.n_cells)
    records[:, n + 3] = mp.get_state_ratio(cells, MaterialState.POWDER)
    records[:, n + 4] = mp.get_state_ratio(cells, MaterialState.SOLID)
    records[:, n + 5] = mp.get_state_ratio(cells, MaterialState.LIQUID)

    active = operator.cell_ids
    records[active, :n] = u[operator.cell_dofs]
    records[active, n] = operator.deposition_cos
    records[active, n + 1] = operator.deposition_sin
    records[active, n + 2] = operator.has_melted.astype(np.float64)
    return records


def add_material(
    model: Model,
    elements_to_activate: Sequence[npt.NDArray[np.int64]],
    new_deposition_cos: Sequence[float],
    new_deposition_sin: Sequence[float],
    new_has_melted: List[bool],
    activation_start: int,
    activation_end: int,
    new_material_temperature: float,
    solution: npt.NDArray[np.float64],
) -> npt.NDArray[np.float64]:
    """
    Activate groups of cells and transfer the state to the new dof numbering.

    Args:
        model: The thermal model; its mesh, material store and operators are updated.
        elements_to_activate: One array of cell ids per group.
        new_deposition_cos: Orientation cosine per group.
        new_deposition_sin: Orientation sine per group.
        new_has_melted: Filled with the melt flag carried by each activated group.
        activation_start: First group to activate.
        activation_end: One past the last group to activate.
        new_material_temperature: Temperature of dofs without prior data.
        solution: Temperature on the current dof numbering.

    Returns:
        The temperature on the new dof numbering.
    """
    mesh = model.mesh
    operator = model.thermal_operator
    mp = model.material_properties
    n = mesh.cell_nodes.shape[1]

    records = pack_cell_records(model, solution)

    n_requested = 0
    for i in range(activation_start, activation_end):
        group = np.asarray(elements_to_activate[i], dtype=np.int64)
        if group.size == 0:
            new_has_melted[i] = False
            continue
        newly = group[~mesh.active[group]]
        mesh.set_future_active(group)
        records[newly, n] = new_deposition_cos[i]
        records[newly, n + 1] = new_deposition_sin[i]
        # The last newly activated cell decides; a sentinel flag reads as melted
        new_has_melted[i] = bool(newly.size) and bool(records[newly[-1], n + 2] > 0.5)
        n_requested += newly.size

    if n_requested == 0:
        return solution.copy()

    transferred = mesh.execute_coarsening_and_refinement(
        {cell_id: records[cell_id] for cell_id in range(mesh.n_cells)}
    )
    records = np.stack([transferred[cell_id] for cell_id in range(mesh.n_cells)])

    # Re-derive the material state, the dofs and the mass
    mp.reinit(mesh.material_id)
    cells = np.arange(mesh.n_cells)
    mp.set_state(cells, liquid=records[:, n + 5], powder=records[:, n + 3], solid=records[:, n + 4])
    model.setup_dofs()
    model.compute_inverse_mass_matrix()

    # Unpack the temperature
    active = operator.cell_ids
    active_records = records[active]
    dofs = operator.cell_dofs
    new_solution = np.full(mesh.n_dofs, SENTINEL, dtype=np.float64)

    has_data = np.all(np.isfinite(active_records[:, :n]), axis=1)
    new_solution[dofs[has_data]] = active_records[has_data, :n]

    sentinel_dofs = dofs[~has_data].ravel()
    unset = sentinel_dofs[np.isinf(new_solution[sentinel_dofs])]
    new_solution[unset] = new_material_temperature

    remaining = np.isinf(new_solution)
    if np.any(remaining):
        logger.debug(f"{int(remaining.sum())} dof(s) without transferred data set to {new_material_temperature}")
        new_solution[remaining] = new_material_temperature
    new_solution = mesh.constraints.distribute(new_solution)

    # Orientation and melt history
    cos = active_records[:, n]
    sin = active_records[:, n + 1]
    cos = np.where(np.isfinite(cos), cos, 1.0)
    sin = np.where(np.isfinite(sin), sin, 0.0)
    operator.set_material_deposition_orientation(cos, sin)
    melted = active_records[:, n + 2]
    operator.has_melted = melted > 0.5

    logger.info(f"Activated {n_requested} cell(s) from group(s) {activation_start}..{activation_end - 1}: "
                f"{operator.n_cells} active cells, {mesh.n_dofs} dofs")
    return new_solution
