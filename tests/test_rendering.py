"""
Atmoscatter Rendering Tests - Reference sampling of the precomputed tables.
"""

import numpy as np
import pytest


GROUND = 6360.0
TOP = 6420.0


def _unit(v):
    v = np.asarray(v, dtype=np.float64)
    return v / np.linalg.norm(v, axis=-1, keepdims=True)


@pytest.fixture(scope="module")
def renderer(radiance_model):
    from atmoscatter.core.rendering import AtmosphereRenderer
    return AtmosphereRenderer(radiance_model)


def test_renderer_requires_initialized_model(make_model):
    """Test that sampling needs precomputed tables."""
    from atmoscatter.core.rendering import AtmosphereRenderer

    with pytest.raises(RuntimeError):
        AtmosphereRenderer(make_model())


def test_solar_radiance(renderer, radiance_model):
    """Test the radiance of the sun disc."""
    alpha = radiance_model.params.sun_angular_radius
    expected = radiance_model.solar_irradiance / (np.pi * alpha * alpha)

    np.testing.assert_allclose(renderer.get_solar_radiance(), expected)
    np.testing.assert_allclose(
        renderer.get_solar_luminance(), expected * radiance_model.sun_spectral_radiance_to_luminance)


def test_sky_radiance_from_ground(renderer):
    """Test the daytime sky seen from the ground."""
    camera = np.array([0.0, 0.0, GROUND + 0.5])
    sun = _unit([0.0, 0.5, 1.0])

    radiance, transmittance = renderer.get_sky_radiance(camera, _unit([0.0, 0.3, 1.0]), 0.0, sun)

    assert radiance.shape == (3,)
    assert np.all(radiance > 0.0)
    assert np.all((transmittance > 0.0) & (transmittance < 1.0))

    # Rays towards the ground are opaque
    _, transmittance = renderer.get_sky_radiance(camera, _unit([0.0, 1.0, -0.5]), 0.0, sun)
    np.testing.assert_array_equal(transmittance, 0.0)

    print("✓ Sky radiance from ground test passed")


def test_camera_outside_atmosphere(renderer):
    """Test cameras in space: moved to the top boundary or missing the atmosphere."""
    camera = np.array([0.0, 0.0, TOP + 100.0])
    sun = _unit([0.0, 1.0, 1.0])

    # Looking away from the planet
    radiance, transmittance = renderer.get_sky_radiance(camera, _unit([0.0, 0.0, 1.0]), 0.0, sun)
    np.testing.assert_array_equal(radiance, 0.0)
    np.testing.assert_array_equal(transmittance, 1.0)

    # Looking at the planet
    radiance, transmittance = renderer.get_sky_radiance(camera, _unit([0.0, 0.0, -1.0]), 0.0, sun)
    assert np.all(np.isfinite(radiance)) and np.all(radiance > 0.0)
    np.testing.assert_array_equal(transmittance, 0.0)


def test_vectorized_inputs(renderer):
    """Test that leading axes are preserved and match per-ray results."""
    cameras = np.array([[0.0, 0.0, GROUND + 1.0], [0.0, 0.0, GROUND + 10.0]])
    views = _unit([[0.0, 0.2, 1.0], [0.0, 1.0, 0.1]])
    cameras = np.broadcast_to(cameras[:, None], (2, 3, 3))
    views = np.broadcast_to(views[None], (3, 2, 3)).transpose(1, 0, 2)
    sun = _unit([0.3, 0.2, 1.0])

    radiance, transmittance = renderer.get_sky_radiance(cameras, views, 0.0, sun)

    assert radiance.shape == (2, 3, 3)
    assert transmittance.shape == (2, 3, 3)
    single, _ = renderer.get_sky_radiance(cameras[1, 2], views[1, 2], 0.0, sun)
    np.testing.assert_allclose(radiance[1, 2], single)


def test_shadow_length_reduces_radiance(renderer):
    """Test that light shafts remove in-scattered light."""
    camera = np.array([0.0, 0.0, GROUND + 0.5])
    view = _unit([0.0, 1.0, 0.2])
    sun = _unit([0.0, 1.0, 1.0])

    lit, _ = renderer.get_sky_radiance(camera, view, 0.0, sun)
    shadowed, _ = renderer.get_sky_radiance(camera, view, 60.0, sun)

    assert np.all(shadowed < lit)


def test_sky_radiance_to_point(renderer):
    """Test aerial perspective towards a point in the atmosphere."""
    camera = np.array([0.0, 0.0, GROUND + 0.5])
    view = _unit([0.0, 1.0, 1.0])
    point = camera + 2.0 * view
    sun = _unit([0.0, 1.0, 1.0])

    radiance, transmittance = renderer.get_sky_radiance_to_point(camera, point, 0.0, sun)
    sky, sky_transmittance = renderer.get_sky_radiance(camera, view, 0.0, sun)

    assert np.all(np.isfinite(radiance))
    assert np.all(radiance < sky)
    assert np.all((transmittance > sky_transmittance) & (transmittance <= 1.0))


def test_sun_and_sky_irradiance(renderer):
    """Test irradiance on surfaces facing towards and away from the sun."""
    point = np.array([0.0, 0.0, GROUND])
    sun = _unit([0.0, 0.5, 1.0])

    sun_irradiance, sky_irradiance = renderer.get_sun_and_sky_irradiance(point, [0.0, 0.0, 1.0], sun)
    assert np.all(sun_irradiance > 0.0)
    assert np.all(sky_irradiance > 0.0)

    sun_irradiance, down_sky = renderer.get_sun_and_sky_irradiance(point, [0.0, 0.0, -1.0], sun)
    np.testing.assert_array_equal(sun_irradiance, 0.0)
    np.testing.assert_allclose(down_sky, 0.0, atol=1e-12)


def test_luminance_variants(renderer, radiance_model):
    """Test that luminance is radiance times the conversion factors."""
    camera = np.array([0.0, 0.0, GROUND + 1.0])
    view = _unit([0.0, 0.4, 1.0])
    sun = _unit([0.0, 0.3, 1.0])
    sky_k = radiance_model.sky_spectral_radiance_to_luminance
    sun_k = radiance_model.sun_spectral_radiance_to_luminance

    radiance, transmittance = renderer.get_sky_radiance(camera, view, 0.0, sun)
    luminance, luminance_transmittance = renderer.get_sky_luminance(camera, view, 0.0, sun)
    np.testing.assert_allclose(luminance, radiance * sky_k)
    np.testing.assert_array_equal(luminance_transmittance, transmittance)

    point = camera + 3.0 * view
    radiance, _ = renderer.get_sky_radiance_to_point(camera, point, 0.0, sun)
    luminance, _ = renderer.get_sky_luminance_to_point(camera, point, 0.0, sun)
    np.testing.assert_allclose(luminance, radiance * sky_k)

    up = np.array([0.0, 0.0, 1.0])
    sun_irradiance, sky_irradiance = renderer.get_sun_and_sky_irradiance(camera, up, sun)
    sun_illuminance, sky_illuminance = renderer.get_sun_and_sky_illuminance(camera, up, sun)
    np.testing.assert_allclose(sun_illuminance, sun_irradiance * sun_k)
    np.testing.assert_allclose(sky_illuminance, sky_irradiance * sky_k)
