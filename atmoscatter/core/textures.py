"""
Atmoscatter Textures - Table sizes, storage formats and N-dimensional buffers.

Every precomputation pass renders into a TextureBuffer while reading other
buffers. Buffers accumulate in float32 and are converted to their storage
format when frozen at the end of the precomputation.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple, Union

import numpy as np

from .backend import ALLOCATION_ERRORS, ComputeBackend, get_backend
from .constants import (
    TRANSMITTANCE_TEXTURE_WIDTH,
    TRANSMITTANCE_TEXTURE_HEIGHT,
    SCATTERING_TEXTURE_R_SIZE,
    SCATTERING_TEXTURE_MU_SIZE,
    SCATTERING_TEXTURE_MU_S_SIZE,
    SCATTERING_TEXTURE_NU_SIZE,
    IRRADIANCE_TEXTURE_WIDTH,
    IRRADIANCE_TEXTURE_HEIGHT,
)
from .errors import ConfigurationError, PrecomputationError


@dataclass(frozen=True)
class TextureSizes:
    """Resolution of the precomputed tables."""
    transmittance_width: int = TRANSMITTANCE_TEXTURE_WIDTH
    transmittance_height: int = TRANSMITTANCE_TEXTURE_HEIGHT
    scattering_r_size: int = SCATTERING_TEXTURE_R_SIZE
    scattering_mu_size: int = SCATTERING_TEXTURE_MU_SIZE
    scattering_mu_s_size: int = SCATTERING_TEXTURE_MU_S_SIZE
    scattering_nu_size: int = SCATTERING_TEXTURE_NU_SIZE
    irradiance_width: int = IRRADIANCE_TEXTURE_WIDTH
    irradiance_height: int = IRRADIANCE_TEXTURE_HEIGHT

    def __post_init__(self):
        for name, value in self.__dict__.items():
            if int(value) != value or value < 2:
                raise ConfigurationError(f"{name} must be an integer >= 2, got {value}")
        # Half of the mu axis is used for rays hitting the ground
        if self.scattering_mu_size % 2:
            raise ConfigurationError(
                f"scattering_mu_size must be even, got {self.scattering_mu_size}"
            )

    @property
    def scattering_width(self) -> int:
        return self.scattering_nu_size * self.scattering_mu_s_size

    @property
    def scattering_height(self) -> int:
        return self.scattering_mu_size

    @property
    def scattering_depth(self) -> int:
        return self.scattering_r_size

    @property
    def transmittance_shape(self) -> Tuple[int, int]:
        return (self.transmittance_height, self.transmittance_width)

    @property
    def scattering_shape(self) -> Tuple[int, int, int]:
        return (self.scattering_depth, self.scattering_height, self.scattering_width)

    @property
    def irradiance_shape(self) -> Tuple[int, int]:
        return (self.irradiance_height, self.irradiance_width)


@dataclass(frozen=True)
class TextureFormat:
    """Element format of a buffer: 3 or 4 float channels, half or full precision."""
    channels: int = 3
    half_precision: bool = False

    def __post_init__(self):
        if self.channels not in (3, 4):
            raise ConfigurationError(f"Textures have 3 or 4 channels, got {self.channels}")

    @property
    def dtype(self):
        return np.float16 if self.half_precision else np.float32


@dataclass(frozen=True)
class TexturePacking:
    """
    Storage layout policy, fixed at construction.

    combine_scattering_textures stores the red channel of single Mie
    scattering in the alpha channel of the scattering table instead of a
    separate 3-channel table. half_precision only applies to the scattering
    tables; transmittance and irradiance are always stored in float32.
    """
    combine_scattering_textures: bool = True
    half_precision: bool = False

    @property
    def transmittance_format(self) -> TextureFormat:
        return TextureFormat(3, False)

    @property
    def irradiance_format(self) -> TextureFormat:
        return TextureFormat(3, False)

    @property
    def scattering_format(self) -> TextureFormat:
        return TextureFormat(4 if self.combine_scattering_textures else 3, self.half_precision)

    @property
    def single_mie_scattering_format(self) -> Optional[TextureFormat]:
        if self.combine_scattering_textures:
            return None
        return TextureFormat(3, self.half_precision)


class TextureBuffer:
    """
    2D or 3D table of float channels living on the compute backend.

    Shape is (height, width, channels) or (depth, height, width, channels).
    """

    def __init__(self, name: str, shape: Sequence[int], texture_format: TextureFormat,
                 backend: Optional[ComputeBackend] = None):
        self.name = name
        self.format = texture_format
        self.backend = backend or get_backend()
        self.shape = tuple(shape) + (texture_format.channels,)
        try:
            self._data = self.backend.zeros(self.shape, dtype=np.float32)
        except ALLOCATION_ERRORS as e:
            raise PrecomputationError(
                f"Failed to allocate {name} table {self.shape}: {e}"
            ) from e

    @property
    def data(self):
        """Working float32 array on the backend."""
        return self._data

    @property
    def is_3d(self) -> bool:
        return len(self.shape) == 4

    @property
    def depth(self) -> int:
        return self.shape[0] if self.is_3d else 1

    def write(self, values, blend: bool = False, index: Optional[int] = None) -> None:
        """
        Store values into the buffer, or into depth slice ``index``.

        With blend=True values are added to the current contents.
        """
        target = self._data if index is None else self._data[index]
        values = self.backend.xp.asarray(values, dtype=np.float32)
        if blend:
            target += values
        else:
            target[...] = values

    def clear(self) -> None:
        self._data[...] = 0.0

    def freeze(self) -> np.ndarray:
        """Return a read-only NumPy copy in the storage format."""
        array = self.backend.to_numpy(self._data).astype(self.format.dtype)
        array.setflags(write=False)
        return array

    def __repr__(self):
        return f"TextureBuffer({self.name!r}, shape={self.shape}, format={self.format})"


Targets = Union[TextureBuffer, Sequence[TextureBuffer]]


def render(targets: Targets, kernel: Callable, *inputs: TextureBuffer,
           blend: Union[bool, Sequence[bool]] = False) -> None:
    """
    Evaluate ``kernel`` over every cell of ``targets`` reading ``inputs``.

    For 2D targets the kernel is called once as ``kernel(*input_arrays)``;
    for 3D targets it is called per depth slice as ``kernel(k, *input_arrays)``.
    The kernel returns one array per target. All targets of a call share
    their shape apart from the channel count.
    """
    single = isinstance(targets, TextureBuffer)
    targets = (targets,) if single else tuple(targets)
    blends = (blend,) * len(targets) if isinstance(blend, bool) else tuple(blend)
    if len(blends) != len(targets):
        raise ValueError(f"Got {len(blends)} blend flags for {len(targets)} targets")

    arrays = [buffer.data for buffer in inputs]
    slices = range(targets[0].depth) if targets[0].is_3d else [None]
    for k in slices:
        outputs = kernel(*arrays) if k is None else kernel(k, *arrays)
        if single:
            outputs = (outputs,)
        for target, output, target_blend in zip(targets, outputs, blends):
            target.write(output, blend=target_blend, index=k)


@dataclass
class PrecomputedTextures:
    """Container for the precomputed tables (read-only after precomputation)."""
    transmittance: np.ndarray  # Shape: (H, W, 3)
    scattering: np.ndarray     # Shape: (D, H, W, 4) combined, or (D, H, W, 3)
    irradiance: np.ndarray     # Shape: (H, W, 3)
    single_mie_scattering: Optional[np.ndarray] = None  # Shape: (D, H, W, 3) if separate
