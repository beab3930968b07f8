"""
Command-line demo.

Deposits two layers of a thin wall with a Goldak beam and logs the progress.
"""
import logging

from additivethermal.config import SimulationConfig
from additivethermal.fea.analysis import Model
from additivethermal.fea.pre.deposition import deposition_boxes_along_scan_path
from additivethermal.fea.solvers import Solver
from additivethermal.logging_config import setup_logging

LAYER_HEIGHT = 2.5e-4
SPEED = 0.1

DEMO_DATABASE = {
    "geometry": {
        "dim": 2,
        "length": 4e-3,
        "length_divisions": 16,
        "height": 1.5e-3,
        "height_divisions": 6,
        "material_height": 1e-3,
    },
    "boundary": {"type": "convective,radiative"},
    "materials": {
        "n_materials": 1,
        "material_0": {
            "solid": {
                "density": 7904.0,
                "specific_heat": 714.0,
                "thermal_conductivity_x": [10.0, 0.0136],
                "thermal_conductivity_z": [10.0, 0.0136],
                "emissivity": 0.3,
                "convection_heat_transfer_coef": 10.0,
            },
            "powder": {
                "density": 7904.0,
                "specific_heat": 714.0,
                "thermal_conductivity_x": 0.5,
                "thermal_conductivity_z": 0.5,
                "emissivity": 0.7,
                "convection_heat_transfer_coef": 10.0,
            },
            "liquid": {
                "density": 7904.0,
                "specific_heat": 847.0,
                "thermal_conductivity_x": 30.0,
                "thermal_conductivity_z": 30.0,
                "emissivity": 0.3,
                "convection_heat_transfer_coef": 10.0,
            },
            "solidus": 1675.0,
            "liquidus": 1708.0,
            "latent_heat": 290000.0,
            "radiation_temperature_infty": 300.0,
            "convection_temperature_infty": 300.0,
        },
    },
    "sources": {
        "n_beams": 1,
        "beam_0": {
            "type": "goldak",
            "depth": 2e-4,
            "diameter": 5e-4,
            "max_power": 150.0,
            "absorption_efficiency": 0.35,
            "scan_path": [
                {"mode": "point", "point": [0.0, 0.0, 1e-3 + LAYER_HEIGHT], "power_modifier": 0.0, "value": 0.0},
                {"mode": "line", "point": [4e-3, 0.0, 1e-3 + LAYER_HEIGHT], "power_modifier": 1.0, "value": SPEED},
                {"mode": "point", "point": [4e-3, 0.0, 1e-3 + 2 * LAYER_HEIGHT], "power_modifier": 0.0, "value": 1e-3},
                {"mode": "line", "point": [0.0, 0.0, 1e-3 + 2 * LAYER_HEIGHT], "power_modifier": 1.0, "value": SPEED},
            ],
        },
    },
    "time_stepping": {"method": "rk_fourth_order"},
    "initial_temperature": 300.0,
    "new_material_temperature": 300.0,
    "melt_threshold": 1708.0,
}


def main() -> None:
    logger = setup_logging(level=logging.INFO)

    config = SimulationConfig.from_dict(DEMO_DATABASE)
    model = Model.from_config(config)
    solver = Solver(model)

    scan_path = model.heat_sources[0].scan_path
    boxes = deposition_boxes_along_scan_path(
        scan_path,
        dim=config.geometry.dim,
        deposition_length=5e-4,
        width=5e-4,
        height=LAYER_HEIGHT,
        lead_time=1e-4,
    )

    time, solution = solver.solve(
        end_time=scan_path.end_time,
        delta_t=1e-4,
        deposition_boxes=boxes,
    )
    logger.info(f"Demo finished at t={time:.4e} s with {int(model.thermal_operator.has_melted.sum())} "
                f"melted cell(s) and T max {solution.max():.1f} K")


if __name__ == "__main__":
    main()
