"""
Atmoscatter Kernels - The precomputation passes for one wavelength triple.

A KernelConfig selects which effects a pass evaluates; PrecomputeKernels
evaluates each pass on whole tables (2D) or one depth slice at a time (3D),
and iterate_scattering_orders drives the multiple scattering state machine.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import numpy as np

from .backend import ComputeBackend, get_backend
from .constants import (
    TRANSMITTANCE_SAMPLE_COUNT,
    SINGLE_SCATTERING_SAMPLE_COUNT,
    SCATTERING_DENSITY_SAMPLE_COUNT,
    INDIRECT_IRRADIANCE_SAMPLE_COUNT,
    MULTIPLE_SCATTERING_SAMPLE_COUNT,
)
from .errors import ConfigurationError, PrecomputationError
from .functions import AtmosphereFunctions, rayleigh_phase_function, scattering_source
from .textures import TextureBuffer, TextureFormat, TextureSizes, render

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KernelConfig:
    """Flags specializing the passes for one wavelength triple."""
    lambdas: Tuple[float, float, float]
    use_absorption: bool = True
    combine_scattering_textures: bool = True
    half_precision: bool = False
    precompute_illuminance: bool = False

    @classmethod
    def for_batch(cls, params, lambdas) -> 'KernelConfig':
        """Configuration of ``params`` at the wavelength triple ``lambdas``."""
        return cls(
            lambdas=tuple(float(l) for l in lambdas),
            use_absorption=bool(
                not params.absorption_density.is_empty and
                np.any(params.absorption_extinction != 0.0)
            ),
            combine_scattering_textures=params.combine_scattering_textures,
            half_precision=params.half_precision,
            precompute_illuminance=params.precompute_illuminance,
        )


@dataclass(frozen=True)
class IntegrationSettings:
    """
    Quadrature sample counts.

    Ray integrals use the trapezoidal rule over the given number of
    intervals. Sphere integrals use a midpoint rule: the scattering density
    uses N x 2N directions and indirect irradiance N/2 x 2N directions.
    """
    transmittance_samples: int = TRANSMITTANCE_SAMPLE_COUNT
    single_scattering_samples: int = SINGLE_SCATTERING_SAMPLE_COUNT
    scattering_density_samples: int = SCATTERING_DENSITY_SAMPLE_COUNT
    indirect_irradiance_samples: int = INDIRECT_IRRADIANCE_SAMPLE_COUNT
    multiple_scattering_samples: int = MULTIPLE_SCATTERING_SAMPLE_COUNT

    def __post_init__(self):
        for name, value in self.__dict__.items():
            if int(value) != value or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value}")
        if self.indirect_irradiance_samples < 2:
            raise ConfigurationError("indirect_irradiance_samples must be at least 2")


class PrecomputeKernels:
    """
    Precomputation passes for one KernelAtmosphere.

    Args:
        config: Effects evaluated by the passes
        atmosphere: KernelAtmosphere sampled at config.lambdas
        sizes: Table resolutions
        samples: Quadrature sample counts
        backend: Compute backend (NumPy or CuPy)
    """

    def __init__(self, config: KernelConfig, atmosphere, sizes: TextureSizes,
                 samples: Optional[IntegrationSettings] = None,
                 backend: Optional[ComputeBackend] = None):
        self.config = config
        self.atmosphere = atmosphere
        self.sizes = sizes
        self.samples = samples or IntegrationSettings()
        self.backend = backend or get_backend()
        self.xp = self.backend.xp

        self._check_atmosphere()
        try:
            self.functions = AtmosphereFunctions(
                atmosphere, sizes, use_absorption=config.use_absorption, xp=self.xp)
        except ValueError as e:
            raise PrecomputationError(f"Failed to prepare kernels for {config.lambdas}: {e}") from e
        self.parameterization = self.functions.parameterization

    def _check_atmosphere(self) -> None:
        atm = self.atmosphere
        values = [atm.bottom_radius, atm.top_radius, atm.sun_angular_radius, atm.mu_s_min]
        for name in ('solar_irradiance', 'rayleigh_scattering', 'mie_scattering',
                     'mie_extinction', 'absorption_extinction', 'ground_albedo'):
            values.extend(np.asarray(getattr(atm, name)).ravel())
        if not np.all(np.isfinite(values)):
            raise PrecomputationError(
                f"Failed to prepare kernels for {self.config.lambdas}: "
                f"non-finite atmosphere coefficients"
            )

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    def compute_transmittance(self):
        """Transmittance to the top boundary at every texel, shape (H, W, 3)."""
        r, mu = self.parameterization.transmittance_grid()
        return self.functions.compute_transmittance_to_top_atmosphere_boundary(
            r, mu, self.samples.transmittance_samples)

    def compute_direct_irradiance(self, transmittance):
        """Direct sun irradiance at every texel of the irradiance table."""
        r, mu_s = self.parameterization.irradiance_grid()
        return self.functions.compute_direct_irradiance(transmittance, r, mu_s)

    def compute_single_scattering(self, k: int, transmittance):
        """Single Rayleigh and Mie scattering for depth slice k."""
        r, mu, mu_s, nu, ground = self.parameterization.scattering_slice(k)
        return self.functions.compute_single_scattering(
            transmittance, r, mu, mu_s, nu, ground, self.samples.single_scattering_samples)

    def compute_scattering_density(self, k: int, transmittance, single_rayleigh, single_mie,
                                   multiple_scattering, irradiance, scattering_order: int):
        """Order ``scattering_order`` source term for depth slice k, from order - 1 radiance."""
        r, mu, mu_s, nu, _ = self.parameterization.scattering_slice(k)
        return self.functions.compute_scattering_density(
            transmittance, single_rayleigh, single_mie, multiple_scattering, irradiance,
            r, mu, mu_s, nu, scattering_source(scattering_order - 1),
            self.samples.scattering_density_samples)

    def compute_indirect_irradiance(self, single_rayleigh, single_mie, multiple_scattering,
                                    scattering_order: int):
        """Ground irradiance from the sky radiance of ``scattering_order``."""
        r, mu_s = self.parameterization.irradiance_grid()
        return self.functions.compute_indirect_irradiance(
            single_rayleigh, single_mie, multiple_scattering, r, mu_s,
            scattering_source(scattering_order), self.samples.indirect_irradiance_samples)

    def compute_multiple_scattering(self, k: int, transmittance, scattering_density):
        """Scattered radiance of one order for depth slice k."""
        r, mu, mu_s, nu, ground = self.parameterization.scattering_slice(k)
        return self.functions.compute_multiple_scattering(
            transmittance, scattering_density, r, mu, mu_s, nu, ground,
            self.samples.multiple_scattering_samples)

    # -------------------------------------------------------------------------
    # Packing into the stored tables
    # -------------------------------------------------------------------------

    def to_luminance(self, radiance, luminance_from_radiance):
        """Apply the 3x3 luminance-from-radiance matrix to (..., 3) values."""
        matrix = self.xp.asarray(luminance_from_radiance)
        return radiance @ matrix.T

    def pack_single_scattering(self, rayleigh, mie, luminance_from_radiance):
        """
        Stored single scattering: (scattering, single_mie_scattering).

        Combined tables keep the red channel of Mie in alpha and no separate
        Mie table (None).
        """
        rayleigh = self.to_luminance(rayleigh, luminance_from_radiance)
        mie = self.to_luminance(mie, luminance_from_radiance)
        if self.config.combine_scattering_textures:
            return self.xp.concatenate([rayleigh, mie[..., :1]], axis=-1), None
        return rayleigh, mie

    def pack_multiple_scattering(self, k: int, delta_multiple_scattering,
                                 luminance_from_radiance):
        """
        Contribution of one order to the stored scattering table for depth
        slice k. It is divided by the Rayleigh phase function, which is
        applied again at sampling time.
        """
        nu = self.parameterization.scattering_slice(k)[3]
        contribution = self.to_luminance(delta_multiple_scattering, luminance_from_radiance)
        contribution = contribution / rayleigh_phase_function(nu)[..., None]
        if self.config.combine_scattering_textures:
            alpha = self.xp.zeros(contribution.shape[:-1] + (1,))
            contribution = self.xp.concatenate([contribution, alpha], axis=-1)
        return contribution


@dataclass
class ScatteringOrder:
    """
    Transient results of one multiple scattering order.

    The buffers are reused by the next order: read them before advancing
    the iteration.
    """
    order: int
    delta_scattering_density: TextureBuffer
    delta_irradiance: TextureBuffer
    delta_multiple_scattering: TextureBuffer


def iterate_scattering_orders(kernels: PrecomputeKernels, transmittance: TextureBuffer,
                              delta_irradiance: TextureBuffer, delta_rayleigh: TextureBuffer,
                              delta_mie: TextureBuffer,
                              num_scattering_orders: int) -> Iterator[ScatteringOrder]:
    """
    Compute scattering orders 2..num_scattering_orders, one at a time.

    On entry delta_irradiance holds the direct irradiance and delta_rayleigh,
    delta_mie the single scattering. For each order k the scattering density
    is computed from the order k - 1 radiance and the ground irradiance it
    produced, then the order k - 1 sky irradiance replaces delta_irradiance,
    then the order k radiance replaces the delta multiple scattering table.
    Order k is yielded once all three steps completed.
    """
    fmt = TextureFormat(3)
    shape = kernels.sizes.scattering_shape
    delta_scattering_density = TextureBuffer(
        "delta_scattering_density", shape, fmt, kernels.backend)
    delta_multiple_scattering = TextureBuffer(
        "delta_multiple_scattering", shape, fmt, kernels.backend)

    for order in range(2, num_scattering_orders + 1):
        logger.debug("Scattering order %d: density", order)
        render(
            delta_scattering_density,
            lambda k, T, rayleigh, mie, multiple, irradiance:
                kernels.compute_scattering_density(
                    k, T, rayleigh, mie, multiple, irradiance, order),
            transmittance, delta_rayleigh, delta_mie, delta_multiple_scattering,
            delta_irradiance,
        )

        logger.debug("Scattering order %d: indirect irradiance", order)
        render(
            delta_irradiance,
            lambda rayleigh, mie, multiple:
                kernels.compute_indirect_irradiance(rayleigh, mie, multiple, order - 1),
            delta_rayleigh, delta_mie, delta_multiple_scattering,
        )

        logger.debug("Scattering order %d: multiple scattering", order)
        render(
            delta_multiple_scattering,
            kernels.compute_multiple_scattering,
            transmittance, delta_scattering_density,
        )
        kernels.backend.synchronize()

        yield ScatteringOrder(
            order=order,
            delta_scattering_density=delta_scattering_density,
            delta_irradiance=delta_irradiance,
            delta_multiple_scattering=delta_multiple_scattering,
        )
