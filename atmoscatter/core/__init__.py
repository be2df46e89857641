"""
Atmoscatter Core - Atmospheric scattering model implementation.
"""

from .backend import ComputeBackend, get_backend, set_backend, is_gpu_available, CUPY_AVAILABLE
from .errors import ConfigurationError, ApiUnavailableError, PrecomputationError
from .parameters import AtmosphereParameters, DensityProfile, DensityProfileLayer, KernelAtmosphere
from .textures import PrecomputedTextures, TextureBuffer, TextureFormat, TexturePacking, TextureSizes
from .kernels import IntegrationSettings, KernelConfig, PrecomputeKernels, iterate_scattering_orders
from .model import AtmosphereModel, ModelState
from .rendering import AtmosphereRenderer

__all__ = [
    'ComputeBackend', 'get_backend', 'set_backend', 'is_gpu_available', 'CUPY_AVAILABLE',
    'ConfigurationError', 'ApiUnavailableError', 'PrecomputationError',
    'AtmosphereParameters', 'DensityProfile', 'DensityProfileLayer', 'KernelAtmosphere',
    'PrecomputedTextures', 'TextureBuffer', 'TextureFormat', 'TexturePacking', 'TextureSizes',
    'IntegrationSettings', 'KernelConfig', 'PrecomputeKernels', 'iterate_scattering_orders',
    'AtmosphereModel', 'ModelState',
    'AtmosphereRenderer',
]
