# material_helpers.py
from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import numba as nb

if TYPE_CHECKING:
    import numpy.typing as npt


# ---- JIT'd polynomial property kernels (scalar + batched) ----

@nb.njit(cache=True, fastmath=True)
def polynomial_scalar(T: float, coefficients: npt.NDArray[np.float64]) -> float:
    """Horner evaluation of sum_k c_k T^k (ascending coefficients)."""
    value = 0.0
    for k in range(coefficients.size - 1, -1, -1):
        value = value * T + coefficients[k]
    return value


@nb.njit(cache=True, fastmath=True)
def state_property_batch(
    temperature: npt.NDArray[np.float64],
    material_ids: npt.NDArray[np.int64],
    ratios: npt.NDArray[np.float64],
    coefficients: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    """
    Batched phase-weighted state property.

    Args:
        temperature:  Temperatures in Kelvin, shape (n,).
        material_ids: Material id per point, shape (n,).
        ratios:       Phase ratios per point, shape (n_states, n).
        coefficients: Polynomial table, shape (n_materials, n_states, order + 1).

    Returns:
        Property value per point, sum_s ratio_s * p_s(T), shape (n,).
    """
    n = temperature.size
    n_states = coefficients.shape[1]
    out = np.empty(n, np.float64)
    for i in range(n):
        m = material_ids[i]
        T = temperature[i]
        value = 0.0
        for s in range(n_states):
            value += ratios[s, i] * polynomial_scalar(T, coefficients[m, s])
        out[i] = value
    return out


# ---- Phase change kernels (vectorized numpy, branch free) ----

def update_state_ratios(
    temperature: npt.NDArray[np.float64],
    solidus: npt.NDArray[np.float64],
    liquidus: npt.NDArray[np.float64],
    powder_previous: npt.NDArray[np.float64],
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Phase ratios at the given temperatures.

    Powder can only be consumed: once material melts it resolidifies as solid.

    Args:
        temperature:     Temperatures in Kelvin.
        solidus:         Solidus temperature per point.
        liquidus:        Liquidus temperature per point.
        powder_previous: Powder ratio before this evaluation.

    Returns:
        liquid, powder, solid ratios with the same shape as ``temperature``.
    """
    liquid = np.clip((temperature - solidus) / (liquidus - solidus), 0.0, 1.0)
    powder = np.minimum(1.0 - liquid, powder_previous)
    solid = np.maximum(1.0 - liquid - powder, 0.0)
    return liquid, powder, solid


def inv_rho_cp(
    density: npt.NDArray[np.float64],
    specific_heat: npt.NDArray[np.float64],
    liquid: npt.NDArray[np.float64],
    solidus: npt.NDArray[np.float64],
    liquidus: npt.NDArray[np.float64],
    latent_heat: npt.NDArray[np.float64],
) -> npt.NDArray[np.float64]:
    """
    Inverse volumetric heat capacity 1/(rho*cp).

    Inside the mushy zone (0 < liquid < 1) the latent heat is spread over the
    melting interval and added to the specific heat.
    """
    mushy = (liquid > 0.0) & (liquid < 1.0)
    cp_eff = specific_heat + np.where(mushy, latent_heat / (liquidus - solidus), 0.0)
    return 1.0 / (density * cp_eff)
