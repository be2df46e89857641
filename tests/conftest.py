"""
Shared fixtures: small tables and sample counts so that a full
precomputation runs in seconds.
"""

import pytest

from atmoscatter.core.backend import ComputeBackend
from atmoscatter.core.constants import RGB_LAMBDAS
from atmoscatter.core.kernels import IntegrationSettings, KernelConfig, PrecomputeKernels
from atmoscatter.core.model import AtmosphereModel
from atmoscatter.core.parameters import AtmosphereParameters
from atmoscatter.core.textures import TextureSizes


@pytest.fixture(scope="session")
def cpu_backend():
    return ComputeBackend(use_gpu=False)


@pytest.fixture(scope="session")
def small_sizes():
    return TextureSizes(
        transmittance_width=32,
        transmittance_height=8,
        scattering_r_size=4,
        scattering_mu_size=16,
        scattering_mu_s_size=8,
        scattering_nu_size=4,
        irradiance_width=16,
        irradiance_height=4,
    )


@pytest.fixture(scope="session")
def fast_samples():
    return IntegrationSettings(
        transmittance_samples=100,
        single_scattering_samples=20,
        scattering_density_samples=6,
        indirect_irradiance_samples=8,
        multiple_scattering_samples=20,
    )


@pytest.fixture(scope="session")
def earth_params():
    return AtmosphereParameters.earth_default()


@pytest.fixture(scope="session")
def earth_atmosphere(earth_params):
    return earth_params.for_wavelengths(RGB_LAMBDAS)


@pytest.fixture(scope="session")
def make_kernels(small_sizes, fast_samples, cpu_backend):
    """Factory for kernels of a parameter set at the RGB wavelengths."""
    def make(params, samples=None, sizes=None):
        return PrecomputeKernels(
            KernelConfig.for_batch(params, RGB_LAMBDAS),
            params.for_wavelengths(RGB_LAMBDAS),
            sizes or small_sizes,
            samples or fast_samples,
            cpu_backend,
        )
    return make


@pytest.fixture(scope="session")
def make_model(small_sizes, fast_samples, cpu_backend):
    """Factory for small, not yet initialized models."""
    def make(params=None, sizes=None, samples=None):
        return AtmosphereModel(
            params or AtmosphereParameters.earth_default(),
            sizes or small_sizes,
            samples or fast_samples,
            cpu_backend,
        )
    return make


@pytest.fixture(scope="session")
def radiance_model(make_model):
    """Initialized Earth model with radiance tables (3 wavelengths)."""
    model = make_model()
    model.init(num_scattering_orders=4)
    return model
