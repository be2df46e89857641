"""
Atmoscatter Parameter Tests - Atmosphere description, density profiles
and validation.

Run with: python -m pytest tests/test_parameters.py
"""

import dataclasses

import numpy as np
import pytest


def test_constants():
    """Test that constants are properly defined."""
    from atmoscatter.core.constants import (
        TRANSMITTANCE_TEXTURE_WIDTH,
        TRANSMITTANCE_TEXTURE_HEIGHT,
        SCATTERING_TEXTURE_R_SIZE,
        SCATTERING_TEXTURE_WIDTH,
        EARTH_RADIUS,
        LAMBDA_R, LAMBDA_G, LAMBDA_B,
        SPECTRAL_WAVELENGTHS,
        SOLAR_IRRADIANCE,
    )

    assert TRANSMITTANCE_TEXTURE_WIDTH == 256
    assert TRANSMITTANCE_TEXTURE_HEIGHT == 64
    assert SCATTERING_TEXTURE_R_SIZE == 32
    assert SCATTERING_TEXTURE_WIDTH == 256
    assert EARTH_RADIUS == 6360000.0
    assert LAMBDA_R == 680.0
    assert LAMBDA_G == 550.0
    assert LAMBDA_B == 440.0
    assert len(SPECTRAL_WAVELENGTHS) == len(SOLAR_IRRADIANCE) == 48

    print("✓ Constants test passed")


def test_density_profile_layer():
    """Test DensityProfileLayer density computation."""
    from atmoscatter.core.parameters import DensityProfileLayer

    # Exponential layer (Rayleigh-like)
    layer = DensityProfileLayer(
        width=0.0,
        exp_term=1.0,
        exp_scale=-1.0 / 8000.0,  # 8km scale height
        linear_term=0.0,
        constant_term=0.0
    )

    # Density at sea level should be 1.0
    assert abs(layer.get_density(0.0) - 1.0) < 1e-6

    # Density at scale height should be ~0.368 (1/e)
    assert abs(layer.get_density(8000.0) - np.exp(-1)) < 1e-6

    # Density at high altitude should approach 0
    assert layer.get_density(100000.0) < 0.001

    # Densities are clamped to [0, 1]
    assert DensityProfileLayer(constant_term=3.0).get_density(0.0) == 1.0
    assert DensityProfileLayer(constant_term=-1.0).get_density(0.0) == 0.0

    print("✓ DensityProfileLayer test passed")


def test_ozone_profile():
    """Test the two-layer tent profile, evaluated at absolute altitude."""
    from atmoscatter.core.parameters import ozone_density_profile

    profile = ozone_density_profile()
    altitudes = np.array([0.0, 10000.0, 25000.0, 32500.0, 40000.0, 60000.0])
    density = profile.get_density(altitudes)

    np.testing.assert_allclose(density, [0.0, 0.0, 1.0, 0.5, 0.0, 0.0], atol=1e-12)

    print("✓ Ozone profile test passed")


def test_density_profile_limits():
    """Test that profiles hold at most two layers and may be empty."""
    from atmoscatter.core.errors import ConfigurationError
    from atmoscatter.core.parameters import DensityProfile, DensityProfileLayer

    with pytest.raises(ConfigurationError):
        DensityProfile((DensityProfileLayer(),) * 3)

    empty = DensityProfile()
    assert empty.is_empty
    np.testing.assert_array_equal(empty.get_density(np.array([0.0, 1000.0])), [0.0, 0.0])

    # A single layer covers every altitude
    constant = DensityProfile.constant(0.5)
    np.testing.assert_allclose(constant.get_density(np.array([0.0, 50000.0])), [0.5, 0.5])

    print("✓ DensityProfile limits test passed")


def test_atmosphere_parameters():
    """Test AtmosphereParameters creation."""
    from atmoscatter.core.constants import RAYLEIGH_SCATTERING_COEFFICIENTS
    from atmoscatter.core.parameters import AtmosphereParameters

    # Default Earth parameters
    params = AtmosphereParameters.earth_default()

    assert params.bottom_radius == 6360000.0
    assert params.top_radius == 6360000.0 + 60000.0
    assert params.get_atmosphere_height() == 60000.0
    assert params.mie_phase_function_g == 0.8
    assert len(params.rayleigh_scattering) == len(params.wavelengths)
    assert params.num_precomputed_wavelengths == 3
    assert not params.precompute_illuminance
    assert len(params.absorption_density) == 2

    # Artistic controls
    params2 = AtmosphereParameters.from_artistic_controls(
        rayleigh_density_scale=2.0,
        mie_density_scale=0.5,
        mie_phase_g=0.9,
        use_ozone=False,
    )
    np.testing.assert_allclose(params2.rayleigh_scattering, 2.0 * RAYLEIGH_SCATTERING_COEFFICIENTS)
    assert params2.mie_phase_function_g == 0.9
    assert np.all(params2.absorption_extinction == 0.0)
    np.testing.assert_allclose(params2.mie_scattering, 0.9 * params2.mie_extinction)

    print("✓ AtmosphereParameters test passed")


def test_from_settings():
    """Test creation from any object exposing artistic controls."""
    from types import SimpleNamespace
    from atmoscatter.core.parameters import AtmosphereParameters

    settings = SimpleNamespace(mie_phase_g=0.7, ground_albedo=0.3, num_precomputed_wavelengths=15)
    params = AtmosphereParameters.from_settings(settings)

    assert params.mie_phase_function_g == 0.7
    assert np.all(params.ground_albedo == 0.3)
    assert params.precompute_illuminance

    print("✓ from_settings test passed")


@pytest.mark.parametrize("changes", [
    {'sun_angular_radius': 0.2},
    {'sun_angular_radius': 0.0},
    {'bottom_radius': 6420000.0},
    {'mie_phase_function_g': 1.0},
    {'max_sun_zenith_angle': 4.0},
    {'length_unit_in_meters': 0.0},
    {'num_precomputed_wavelengths': 0},
    {'ground_albedo': np.full(10, 0.1)},
])
def test_parameter_validation(changes):
    """Test that invalid configurations are rejected on construction."""
    from atmoscatter.core.errors import ConfigurationError
    from atmoscatter.core.parameters import AtmosphereParameters

    with pytest.raises(ConfigurationError):
        AtmosphereParameters.earth_default().replace(**changes)


def test_wavelength_validation():
    """Test that wavelengths must be strictly increasing and finite."""
    from atmoscatter.core.errors import ConfigurationError
    from atmoscatter.core.parameters import AtmosphereParameters

    params = AtmosphereParameters.earth_default()
    wavelengths = params.wavelengths.copy()
    wavelengths[[3, 4]] = wavelengths[[4, 3]]
    with pytest.raises(ConfigurationError):
        params.replace(wavelengths=wavelengths)

    solar = params.solar_irradiance.copy()
    solar[0] = np.nan
    with pytest.raises(ConfigurationError):
        params.replace(solar_irradiance=solar)


def test_parameters_are_immutable():
    """Test that parameters cannot change after construction."""
    from atmoscatter.core.parameters import AtmosphereParameters

    params = AtmosphereParameters.earth_default()
    with pytest.raises(dataclasses.FrozenInstanceError):
        params.top_radius = 1.0
    with pytest.raises(ValueError):
        params.rayleigh_scattering[0] = 1.0

    print("✓ Immutability test passed")


def test_for_wavelengths():
    """Test sampling at three wavelengths in the model length unit."""
    from atmoscatter.core.constants import RGB_LAMBDAS
    from atmoscatter.core.parameters import AtmosphereParameters
    from atmoscatter.core.spectrum import sample_spectrum

    params = AtmosphereParameters.earth_default()
    atmosphere = params.for_wavelengths(RGB_LAMBDAS)

    assert atmosphere.bottom_radius == 6360.0
    assert atmosphere.top_radius == 6420.0
    expected = sample_spectrum(params.wavelengths, params.rayleigh_scattering, RGB_LAMBDAS) * 1000.0
    np.testing.assert_allclose(atmosphere.rayleigh_scattering, expected)
    np.testing.assert_allclose(atmosphere.mu_s_min, np.cos(120.0 / 180.0 * np.pi))

    # Density profiles are expressed per kilometer
    layer = atmosphere.rayleigh_density.layers[0]
    assert abs(layer.exp_scale - (-1.0 / 8.0)) < 1e-12
    ozone = atmosphere.absorption_density.layers[0]
    assert abs(ozone.width - 25.0) < 1e-12

    print("✓ for_wavelengths test passed")


def test_half_precision_preset():
    """Test that half precision limits the sun zenith angle."""
    from atmoscatter.core.parameters import AtmosphereParameters

    params = AtmosphereParameters.earth_default(half_precision=True)

    assert params.packing.scattering_format.dtype == np.float16
    assert abs(params.max_sun_zenith_angle - 102.0 / 180.0 * np.pi) < 1e-12
