"""
Atmoscatter EXR Utilities - OpenEXR export of the precomputed tables.

2D tables are written directly. 3D tables are stored as 2D images with the
depth slices tiled horizontally, so a (D, H, W, C) table becomes a
(H, D * W, C) image.
"""

import logging
import os
from typing import Optional

import numpy as np

from ..core.textures import PrecomputedTextures

# OpenEXR is an optional dependency
try:
    import OpenEXR
    import Imath
    HAS_OPENEXR = True
except ImportError:
    HAS_OPENEXR = False

logger = logging.getLogger(__name__)

CHANNEL_NAMES = ('R', 'G', 'B', 'A')


def _require_openexr():
    if not HAS_OPENEXR:
        raise RuntimeError("OpenEXR module not available. "
                           "Install with: pip install OpenEXR")


def write_texture_exr(filepath: str, data: np.ndarray, half_precision: Optional[bool] = None) -> None:
    """
    Write a (H, W, C) table as an EXR image with R, G, B[, A] channels.

    Args:
        filepath: Output file path
        data: Table with 3 or 4 channels
        half_precision: Write HALF channels; defaults to data.dtype == float16
    """
    _require_openexr()

    if data.ndim != 3 or data.shape[2] not in (3, 4):
        raise ValueError(f"Expected a (H, W, 3|4) table, got {data.shape}")
    if half_precision is None:
        half_precision = data.dtype == np.float16

    if half_precision:
        pixel_type = Imath.PixelType(Imath.PixelType.HALF)
        dtype = np.float16
    else:
        pixel_type = Imath.PixelType(Imath.PixelType.FLOAT)
        dtype = np.float32

    height, width, num_channels = data.shape
    header = OpenEXR.Header(width, height)
    channels = {}
    channel_data = {}
    for i, channel in enumerate(CHANNEL_NAMES[:num_channels]):
        channels[channel] = Imath.Channel(pixel_type)
        channel_data[channel] = np.ascontiguousarray(data[:, :, i], dtype=dtype).tobytes()
    header['channels'] = channels

    exr_file = OpenEXR.OutputFile(filepath, header)
    exr_file.writePixels(channel_data)
    exr_file.close()
    logger.debug("Saved EXR: %s", filepath)


def read_texture_exr(filepath: str) -> np.ndarray:
    """
    Read an EXR image written by write_texture_exr.

    Returns:
        (H, W, C) float32 array with the R, G, B[, A] channels present
    """
    _require_openexr()

    if not os.path.exists(filepath):
        raise FileNotFoundError(f"EXR file not found: {filepath}")

    exr_file = OpenEXR.InputFile(filepath)
    header = exr_file.header()

    dw = header['dataWindow']
    width = dw.max.x - dw.min.x + 1
    height = dw.max.y - dw.min.y + 1

    pt = Imath.PixelType(Imath.PixelType.FLOAT)
    names = [name for name in CHANNEL_NAMES if name in header['channels']]
    planes = [
        np.frombuffer(exr_file.channel(name, pt), dtype=np.float32).reshape(height, width)
        for name in names
    ]
    exr_file.close()
    return np.stack(planes, axis=2)


def tile_3d_texture(data: np.ndarray) -> np.ndarray:
    """(D, H, W, C) -> (H, D * W, C), slice k occupying columns [k * W, (k + 1) * W)."""
    depth, height, width, channels = data.shape
    return data.transpose(1, 0, 2, 3).reshape(height, depth * width, channels)


def untile_3d_texture(tiled: np.ndarray, depth: int) -> np.ndarray:
    """Inverse of tile_3d_texture."""
    height, tiled_width, channels = tiled.shape
    if tiled_width % depth:
        raise ValueError(f"Width {tiled_width} is not a multiple of depth {depth}")
    width = tiled_width // depth
    return tiled.reshape(height, depth, width, channels).transpose(1, 0, 2, 3)


def write_tiled_3d_exr(filepath: str, data: np.ndarray) -> None:
    """Save a 3D table as a horizontally tiled 2D EXR image."""
    if data.ndim != 4:
        raise ValueError(f"Expected a (D, H, W, C) table, got {data.shape}")
    write_texture_exr(filepath, tile_3d_texture(data))


def export_textures(textures: PrecomputedTextures, output_dir: str) -> None:
    """
    Save every precomputed table as an EXR file in ``output_dir``.

    Creates:
    - transmittance.exr
    - irradiance.exr
    - scattering.exr (3D stored as tiled 2D)
    - single_mie_scattering.exr (only when not combined)
    """
    _require_openexr()

    write_texture_exr(os.path.join(output_dir, "transmittance.exr"), textures.transmittance)
    write_texture_exr(os.path.join(output_dir, "irradiance.exr"), textures.irradiance)
    write_tiled_3d_exr(os.path.join(output_dir, "scattering.exr"), textures.scattering)
    if textures.single_mie_scattering is not None:
        write_tiled_3d_exr(
            os.path.join(output_dir, "single_mie_scattering.exr"),
            textures.single_mie_scattering,
        )
    logger.info("Saved EXR textures to %s", output_dir)
