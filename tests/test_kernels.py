"""
Atmoscatter Kernel Tests - Physical properties of the precomputation passes.

Run with: python -m pytest tests/test_kernels.py
"""

import dataclasses

import numpy as np
import pytest


def _buffer(name, shape, array, backend):
    from atmoscatter.core.textures import TextureBuffer, TextureFormat

    buffer = TextureBuffer(name, shape, TextureFormat(array.shape[-1]), backend)
    buffer.write(array)
    return buffer


def _single_scattering(kernels, transmittance):
    depth = kernels.sizes.scattering_depth
    slices = [kernels.compute_single_scattering(k, transmittance) for k in range(depth)]
    return (
        np.stack([rayleigh for rayleigh, _ in slices]),
        np.stack([mie for _, mie in slices]),
    )


def _vacuum(params):
    zeros = np.zeros(len(params.wavelengths))
    return params.replace(
        rayleigh_scattering=zeros,
        mie_scattering=zeros,
        mie_extinction=zeros,
        absorption_extinction=zeros,
    )


def test_transmittance_bounds(make_kernels, earth_params, small_sizes):
    """Test that transmittance is finite and in [0, 1]."""
    transmittance = make_kernels(earth_params).compute_transmittance()

    assert transmittance.shape == small_sizes.transmittance_shape + (3,)
    assert np.all(np.isfinite(transmittance))
    assert np.all((transmittance >= 0.0) & (transmittance <= 1.0))

    print("✓ Transmittance bounds test passed")


def test_transmittance_monotonic_without_ozone(make_kernels):
    """Test that transmittance decreases towards the horizon at every altitude."""
    from atmoscatter.core.parameters import AtmosphereParameters

    params = AtmosphereParameters.earth_default(use_ozone=False)
    transmittance = make_kernels(params).compute_transmittance()

    # Texels along the width have increasing path lengths
    assert np.all(np.diff(transmittance, axis=1) <= 1e-7)
    # Vertical transmittance increases with altitude
    assert np.all(np.diff(transmittance[:, 0], axis=0) >= -1e-7)


def test_transmittance_deterministic(make_kernels, earth_params):
    """Test that recomputation gives identical results."""
    first = make_kernels(earth_params).compute_transmittance()
    second = make_kernels(earth_params).compute_transmittance()

    np.testing.assert_array_equal(first, second)


def test_transmittance_convergence(make_kernels, earth_params):
    """Test that doubling the transmittance samples barely changes the result."""
    from atmoscatter.core.kernels import IntegrationSettings

    coarse = make_kernels(earth_params, IntegrationSettings(transmittance_samples=250))
    fine = make_kernels(earth_params, IntegrationSettings(transmittance_samples=500))

    difference = np.abs(coarse.compute_transmittance() - fine.compute_transmittance())
    assert difference.max() < 2e-3


def test_single_scattering_convergence(make_kernels, earth_params):
    """Test Rayleigh single scattering with 25 and 50 samples agree within 5%."""
    from atmoscatter.core.kernels import IntegrationSettings

    params = earth_params.replace(
        mie_scattering=np.zeros(len(earth_params.wavelengths)),
        mie_extinction=np.zeros(len(earth_params.wavelengths)),
    )
    coarse = make_kernels(params, IntegrationSettings(single_scattering_samples=25))
    fine = make_kernels(params, IntegrationSettings(single_scattering_samples=50))
    transmittance = fine.compute_transmittance()

    rayleigh_coarse, _ = _single_scattering(coarse, transmittance)
    rayleigh_fine, mie_fine = _single_scattering(fine, transmittance)

    assert np.all(mie_fine == 0.0)
    assert np.abs(rayleigh_coarse - rayleigh_fine).max() <= 0.05 * rayleigh_fine.max()


def test_direct_irradiance(make_kernels, earth_params, earth_atmosphere):
    """Test direct irradiance bounds and the cutoff below the minimum sun angle."""
    kernels = make_kernels(earth_params)
    transmittance = kernels.compute_transmittance()

    irradiance = kernels.compute_direct_irradiance(transmittance)
    _, mu_s = kernels.parameterization.irradiance_grid()

    assert np.all(irradiance >= 0.0)
    assert np.all(irradiance <= earth_atmosphere.solar_irradiance)
    assert np.all(irradiance[mu_s < earth_atmosphere.mu_s_min] == 0.0)
    assert np.all(irradiance[mu_s > 0.1] > 0.0)


def test_vacuum(make_kernels, earth_params, small_sizes, cpu_backend):
    """Test that an empty atmosphere transmits everything and scatters nothing."""
    kernels = make_kernels(_vacuum(earth_params))

    transmittance = kernels.compute_transmittance()
    np.testing.assert_array_equal(transmittance, 1.0)

    rayleigh, mie = _single_scattering(kernels, transmittance)
    assert np.all(rayleigh == 0.0) and np.all(mie == 0.0)

    shape = small_sizes.scattering_shape
    density = kernels.compute_scattering_density(
        0, transmittance, rayleigh, mie, np.zeros(shape + (3,)),
        kernels.compute_direct_irradiance(transmittance), 2)
    assert np.all(density == 0.0)

    print("✓ Vacuum test passed")


def test_scattering_orders_lose_energy(make_kernels, earth_params, small_sizes, cpu_backend):
    """Test that each scattering order carries less energy than the previous one."""
    from atmoscatter.core.kernels import iterate_scattering_orders

    kernels = make_kernels(earth_params)
    T = kernels.compute_transmittance()
    rayleigh, mie = _single_scattering(kernels, T)

    transmittance = _buffer("transmittance", small_sizes.transmittance_shape, T, cpu_backend)
    delta_irradiance = _buffer(
        "delta_irradiance", small_sizes.irradiance_shape,
        kernels.compute_direct_irradiance(T), cpu_backend)
    delta_rayleigh = _buffer("delta_rayleigh", small_sizes.scattering_shape, rayleigh, cpu_backend)
    delta_mie = _buffer("delta_mie", small_sizes.scattering_shape, mie, cpu_backend)

    energies = {}
    irradiance_energies = {}
    for result in iterate_scattering_orders(
            kernels, transmittance, delta_irradiance, delta_rayleigh, delta_mie, 4):
        multiple = np.asarray(result.delta_multiple_scattering.data)
        assert np.all(np.isfinite(multiple))
        assert np.all(multiple >= 0.0)
        energies[result.order] = multiple.sum()
        irradiance_energies[result.order - 1] = np.asarray(result.delta_irradiance.data).sum()

    assert sorted(energies) == [2, 3, 4]
    assert energies[2] > energies[3] > energies[4] > 0.0
    assert irradiance_energies[1] > irradiance_energies[2] > irradiance_energies[3] > 0.0

    print("✓ Energy ordering test passed")


def test_packing_single_scattering(make_kernels, earth_params):
    """Test that combined tables keep the red channel of Mie in alpha."""
    kernels = make_kernels(earth_params)
    rayleigh = np.random.default_rng(0).uniform(size=(4, 5, 3))
    mie = np.random.default_rng(1).uniform(size=(4, 5, 3))

    scattering, single_mie = kernels.pack_single_scattering(rayleigh, mie, np.eye(3))

    assert single_mie is None
    np.testing.assert_allclose(scattering[..., :3], rayleigh)
    np.testing.assert_allclose(scattering[..., 3], mie[..., 0])

    separate = make_kernels(earth_params.replace(combine_scattering_textures=False))
    scattering, single_mie = separate.pack_single_scattering(rayleigh, mie, np.eye(3))
    assert scattering.shape == (4, 5, 3)
    np.testing.assert_allclose(single_mie, mie)


def test_packing_multiple_scattering(make_kernels, earth_params, small_sizes):
    """Test that multiple scattering is divided by the Rayleigh phase function."""
    from atmoscatter.core.functions import rayleigh_phase_function

    kernels = make_kernels(earth_params)
    shape = (small_sizes.scattering_height, small_sizes.scattering_width)
    delta = np.ones(shape + (3,))

    packed = kernels.pack_multiple_scattering(1, delta, np.eye(3))
    nu = kernels.parameterization.scattering_slice(1)[3]

    assert packed.shape == shape + (4,)
    np.testing.assert_array_equal(packed[..., 3], 0.0)
    np.testing.assert_allclose(packed[..., 0], 1.0 / rayleigh_phase_function(nu))


def test_integration_settings_validation():
    """Test that sample counts must be positive integers."""
    from atmoscatter.core.errors import ConfigurationError
    from atmoscatter.core.kernels import IntegrationSettings

    with pytest.raises(ConfigurationError):
        IntegrationSettings(transmittance_samples=0)
    with pytest.raises(ConfigurationError):
        IntegrationSettings(single_scattering_samples=2.5)


def test_non_finite_atmosphere(earth_atmosphere, small_sizes, cpu_backend):
    """Test that kernels refuse non-finite coefficients."""
    from atmoscatter.core.constants import RGB_LAMBDAS
    from atmoscatter.core.errors import PrecomputationError
    from atmoscatter.core.kernels import KernelConfig, PrecomputeKernels

    atmosphere = dataclasses.replace(
        earth_atmosphere, rayleigh_scattering=np.array([np.nan, 1e-2, 1e-2]))

    with pytest.raises(PrecomputationError):
        PrecomputeKernels(KernelConfig(tuple(RGB_LAMBDAS)), atmosphere, small_sizes,
                          backend=cpu_backend)
