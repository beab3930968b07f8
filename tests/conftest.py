"""Shared fixtures: simulation databases and models."""
import numpy as np
import pytest

from additivethermal.config import SimulationConfig
from additivethermal.fea.analysis import Model


def state_block(density=1.0, specific_heat=1.0, kx=1.0, ky=1.0, kz=1.0, emissivity=0.0, h_conv=0.0):
    return {
        "density": density,
        "specific_heat": specific_heat,
        "thermal_conductivity_x": kx,
        "thermal_conductivity_y": ky,
        "thermal_conductivity_z": kz,
        "emissivity": emissivity,
        "convection_heat_transfer_coef": h_conv,
    }


def material_block(solidus=1000.0, liquidus=1100.0, latent_heat=0.0, t_infty=300.0,
                   initial_state="solid", **state_kwargs):
    block = state_block(**state_kwargs)
    return {
        "solid": dict(block),
        "liquid": dict(block),
        "powder": dict(block),
        "solidus": solidus,
        "liquidus": liquidus,
        "latent_heat": latent_heat,
        "radiation_temperature_infty": t_infty,
        "convection_temperature_infty": t_infty,
        "initial_state": initial_state,
    }


def make_database(
    dim=2,
    length=1.0,
    length_divisions=1,
    height=1.0,
    height_divisions=1,
    width=1.0,
    width_divisions=1,
    material_height=1e9,
    boundary="adiabatic",
    method="forward_euler",
    beams=None,
    material=None,
    time_stepping=None,
    **extra,
):
    beams = beams or []
    database = {
        "geometry": {
            "dim": dim,
            "length": length,
            "length_divisions": length_divisions,
            "height": height,
            "height_divisions": height_divisions,
            "width": width,
            "width_divisions": width_divisions,
            "material_height": material_height,
        },
        "boundary": {"type": boundary},
        "materials": {"n_materials": 1, "material_0": material or material_block()},
        "sources": {"n_beams": len(beams), **{f"beam_{i}": b for i, b in enumerate(beams)}},
        "time_stepping": {"method": method, **(time_stepping or {})},
    }
    database.update(extra)
    return database


def make_model(**kwargs) -> Model:
    return Model.from_config(SimulationConfig.from_dict(make_database(**kwargs)))


@pytest.fixture
def model_factory():
    """Build independent models from database keyword arguments."""
    return make_model


@pytest.fixture
def single_cell_model():
    return make_model()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
