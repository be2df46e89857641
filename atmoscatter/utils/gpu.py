"""
Atmoscatter GPU Utilities - Binding the precomputed tables to a shading program.
"""

from typing import Optional

import numpy as np

from ..core.textures import PrecomputedTextures

# Sampler uniform names expected by the shading layer
TRANSMITTANCE_SAMPLER = "transmittance_texture"
SCATTERING_SAMPLER = "scattering_texture"
IRRADIANCE_SAMPLER = "irradiance_texture"
SINGLE_MIE_SCATTERING_SAMPLER = "single_mie_scattering_texture"


def bind_textures(
    textures: PrecomputedTextures,
    program,
    transmittance_unit: int,
    scattering_unit: int,
    irradiance_unit: int,
    single_mie_scattering_unit: Optional[int] = None,
) -> None:
    """
    Bind each table read-only to ``program`` on the given texture units.

    The caller owns texture unit allocation. ``program`` must provide
    ``uniform_sampler(name, unit, data)``; data is passed as a contiguous
    float32 array.

    Args:
        textures: Precomputed tables
        program: Target shading program
        transmittance_unit: Texture unit for the transmittance table
        scattering_unit: Texture unit for the scattering table
        irradiance_unit: Texture unit for the irradiance table
        single_mie_scattering_unit: Texture unit for the separate single Mie
            table; required when the tables are not combined

    Raises:
        ValueError: On negative or duplicate units, or a missing single Mie unit
    """
    bindings = [
        (TRANSMITTANCE_SAMPLER, transmittance_unit, textures.transmittance),
        (SCATTERING_SAMPLER, scattering_unit, textures.scattering),
        (IRRADIANCE_SAMPLER, irradiance_unit, textures.irradiance),
    ]
    if textures.single_mie_scattering is not None:
        if single_mie_scattering_unit is None:
            raise ValueError("single_mie_scattering_unit is required for separate Mie tables")
        bindings.append((
            SINGLE_MIE_SCATTERING_SAMPLER, single_mie_scattering_unit,
            textures.single_mie_scattering,
        ))

    units = [unit for _, unit, _ in bindings]
    for name, unit, _ in bindings:
        if int(unit) != unit or unit < 0:
            raise ValueError(f"Invalid texture unit for {name}: {unit}")
    if len(set(units)) != len(units):
        raise ValueError(f"Texture units must be distinct, got {units}")

    for name, unit, data in bindings:
        array = np.ascontiguousarray(data, dtype=np.float32)
        array.setflags(write=False)
        program.uniform_sampler(name, int(unit), array)
