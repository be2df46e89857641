"""
Atmoscatter Rendering - Reference implementation of the sampling functions.

Samples the precomputed tables the way a shading layer does: sky radiance
along view rays (optionally up to a point, with light shafts), sun and sky
irradiance at a point, and the radiance of the sun disc. Positions are
planet-centered and in the model's length unit.
"""

from typing import Tuple

import numpy as np

from .constants import RGB_LAMBDAS
from .errors import ApiUnavailableError
from .functions import (
    AtmosphereFunctions,
    mie_phase_function,
    rayleigh_phase_function,
    sample_texture_3d,
)
from .geometry import clamp_radius, ray_intersects_ground, smoothstep


def _dot(a, b):
    return np.sum(a * b, axis=-1)


def _vectors(*vectors):
    """Broadcast (..., 3) inputs and flatten them to (N, 3)."""
    arrays = np.broadcast_arrays(*[np.asarray(v, dtype=np.float64) for v in vectors])
    shape = arrays[0].shape[:-1]
    return shape, [a.reshape(-1, 3) for a in arrays]


def _lengths(value, shape):
    return np.broadcast_to(np.asarray(value, dtype=np.float64), shape).reshape(-1)


class AtmosphereRenderer:
    """
    Samples the tables of an initialized AtmosphereModel.

    Every method is vectorized over the leading axes of its (..., 3) inputs
    and returns arrays of shape (..., 3).
    """

    def __init__(self, model):
        model._require_ready()
        self.model = model
        self.atmosphere = model.params.for_wavelengths(RGB_LAMBDAS)
        self.functions = AtmosphereFunctions(self.atmosphere, model.sizes, xp=np)

        textures = model.textures
        self.transmittance = np.asarray(textures.transmittance, dtype=np.float64)
        self.scattering = np.asarray(textures.scattering, dtype=np.float64)
        self.irradiance = np.asarray(textures.irradiance, dtype=np.float64)
        self.single_mie_scattering = None
        if textures.single_mie_scattering is not None:
            self.single_mie_scattering = np.asarray(
                textures.single_mie_scattering, dtype=np.float64)

        # Ratio of Mie to Rayleigh coefficients, relative to the red channel
        rayleigh = self.atmosphere.rayleigh_scattering
        mie = self.atmosphere.mie_scattering
        if np.all(rayleigh > 0.0) and mie[0] > 0.0:
            self._mie_extrapolation = (rayleigh[0] / mie[0]) * (mie / rayleigh)
        else:
            self._mie_extrapolation = np.zeros(3)

        self.sky_k = model.sky_spectral_radiance_to_luminance
        self.sun_k = model.sun_spectral_radiance_to_luminance

    def _require_radiance_api(self) -> None:
        if not self.model.radiance_api_enabled:
            raise ApiUnavailableError(
                "Radiance functions are unavailable when more than 3 wavelengths "
                "are precomputed; use the luminance functions instead."
            )

    # -------------------------------------------------------------------------
    # Table lookups
    # -------------------------------------------------------------------------

    def _extrapolated_single_mie_scattering(self, scattering):
        """Single Mie scattering from the red channel stored in alpha."""
        red = scattering[..., 0:1]
        ratio = np.where(red > 0.0, scattering[..., 3:4] / np.where(red > 0.0, red, 1.0), 0.0)
        return scattering[..., :3] * ratio * self._mie_extrapolation

    def _combined_scattering(self, r, mu, mu_s, nu, ray_r_mu_intersects_ground):
        """Rayleigh plus multiple scattering, and single Mie scattering."""
        nu_size = self.model.sizes.scattering_nu_size
        u_nu, u_mu_s, u_mu, u_r = self.functions.parameterization.scattering_uvwz_from_r_mu_mu_s_nu(
            r, mu, mu_s, nu, ray_r_mu_intersects_ground)
        tex_coord_x = u_nu * (nu_size - 1)
        tex_x = np.floor(tex_coord_x)
        lerp = (tex_coord_x - tex_x)[..., None]
        uvw0 = ((tex_x + u_mu_s) / nu_size, u_mu, u_r)
        uvw1 = ((tex_x + 1.0 + u_mu_s) / nu_size, u_mu, u_r)

        def lookup(table):
            return (
                sample_texture_3d(table, *uvw0) * (1.0 - lerp) +
                sample_texture_3d(table, *uvw1) * lerp
            )

        scattering = lookup(self.scattering)
        if self.single_mie_scattering is None:
            return scattering[..., :3], self._extrapolated_single_mie_scattering(scattering)
        return scattering, lookup(self.single_mie_scattering)

    def _move_camera_to_atmosphere(self, camera, view_ray):
        """
        Move cameras outside the atmosphere to the top boundary along the view
        ray. Returns (camera, r, rmu, missed), where ``missed`` flags rays that
        never enter the atmosphere.
        """
        top = self.atmosphere.top_radius
        r = np.linalg.norm(camera, axis=-1)
        rmu = _dot(camera, view_ray)
        discriminant = rmu * rmu - r * r + top * top
        distance_to_top = -rmu - np.sqrt(np.maximum(discriminant, 0.0))
        move = (discriminant >= 0.0) & (distance_to_top > 0.0)
        shift = np.where(move, distance_to_top, 0.0)
        camera = camera + view_ray * shift[:, None]
        r = np.where(move, top, r)
        rmu = rmu + shift
        missed = ~move & (r > top)
        return camera, r, rmu, missed

    # -------------------------------------------------------------------------
    # Radiance
    # -------------------------------------------------------------------------

    def get_solar_radiance(self) -> np.ndarray:
        """Radiance of the sun disc at the top of the atmosphere."""
        self._require_radiance_api()
        return self._solar_radiance()

    def _solar_radiance(self):
        atm = self.atmosphere
        return atm.solar_irradiance / (np.pi * atm.sun_angular_radius * atm.sun_angular_radius)

    def get_sky_radiance(self, camera, view_ray, shadow_length,
                         sun_direction) -> Tuple[np.ndarray, np.ndarray]:
        """
        Sky radiance seen from ``camera`` along ``view_ray``.

        Args:
            camera: Camera position, may be outside the atmosphere
            view_ray: Unit view direction
            shadow_length: Length of the ray segment in shadow (light shafts)
            sun_direction: Unit direction towards the sun

        Returns:
            (radiance, transmittance) where transmittance is zero for rays
            hitting the ground
        """
        self._require_radiance_api()
        return self._sky_radiance(camera, view_ray, shadow_length, sun_direction)

    def _sky_radiance(self, camera, view_ray, shadow_length, sun_direction):
        shape, (camera, view_ray, sun_direction) = _vectors(camera, view_ray, sun_direction)
        shadow_length = _lengths(shadow_length, shape)
        atm = self.atmosphere
        functions = self.functions

        camera, r, rmu, missed = self._move_camera_to_atmosphere(camera, view_ray)
        mu = np.clip(rmu / r, -1.0, 1.0)
        mu_s = np.clip(_dot(camera, sun_direction) / r, -1.0, 1.0)
        nu = np.clip(_dot(view_ray, sun_direction), -1.0, 1.0)
        r = clamp_radius(atm, r)
        ground = ray_intersects_ground(atm, r, mu)

        transmittance = np.where(
            ground[:, None], 0.0,
            functions.get_transmittance_to_top_atmosphere_boundary(self.transmittance, r, mu))

        # Scattering beyond the shadowed segment, attenuated along it
        d = shadow_length
        r_p = clamp_radius(atm, np.sqrt(np.maximum(d * d + 2.0 * r * mu * d + r * r, 0.0)))
        mu_p = np.clip((r * mu + d) / r_p, -1.0, 1.0)
        mu_s_p = np.clip((r * mu_s + d * nu) / r_p, -1.0, 1.0)
        scattering, single_mie = self._combined_scattering(r_p, mu_p, mu_s_p, nu, ground)
        shadow_transmittance = np.where(
            (shadow_length > 0.0)[:, None],
            functions.get_transmittance(self.transmittance, r, mu, d, ground),
            1.0,
        )
        scattering = scattering * shadow_transmittance
        single_mie = single_mie * shadow_transmittance

        radiance = (
            scattering * rayleigh_phase_function(nu)[:, None] +
            single_mie * mie_phase_function(atm.mie_phase_function_g, nu)[:, None]
        )
        radiance = np.where(missed[:, None], 0.0, radiance)
        transmittance = np.where(missed[:, None], 1.0, transmittance)
        return radiance.reshape(shape + (3,)), transmittance.reshape(shape + (3,))

    def get_sky_radiance_to_point(self, camera, point, shadow_length,
                                  sun_direction) -> Tuple[np.ndarray, np.ndarray]:
        """
        Sky radiance between ``camera`` and ``point`` (aerial perspective).

        Args:
            camera: Camera position, may be outside the atmosphere
            point: Point inside the atmosphere
            shadow_length: Length of the segment in shadow, measured from ``point``
            sun_direction: Unit direction towards the sun

        Returns:
            (radiance, transmittance) between the camera and the point
        """
        self._require_radiance_api()
        return self._sky_radiance_to_point(camera, point, shadow_length, sun_direction)

    def _sky_radiance_to_point(self, camera, point, shadow_length, sun_direction):
        shape, (camera, point, sun_direction) = _vectors(camera, point, sun_direction)
        shadow_length = _lengths(shadow_length, shape)
        atm = self.atmosphere
        functions = self.functions

        offset = point - camera
        distance = np.linalg.norm(offset, axis=-1)
        view_ray = offset / np.where(distance > 0.0, distance, 1.0)[:, None]

        camera, r, rmu, _ = self._move_camera_to_atmosphere(camera, view_ray)
        mu = np.clip(rmu / r, -1.0, 1.0)
        mu_s = np.clip(_dot(camera, sun_direction) / r, -1.0, 1.0)
        nu = np.clip(_dot(view_ray, sun_direction), -1.0, 1.0)
        r = clamp_radius(atm, r)
        d = np.linalg.norm(point - camera, axis=-1)
        ground = ray_intersects_ground(atm, r, mu)

        transmittance = functions.get_transmittance(self.transmittance, r, mu, d, ground)
        scattering, single_mie = self._combined_scattering(r, mu, mu_s, nu, ground)

        # Scattering beyond the lit part of the segment, seen through it
        d = np.maximum(d - shadow_length, 0.0)
        r_p = clamp_radius(atm, np.sqrt(np.maximum(d * d + 2.0 * r * mu * d + r * r, 0.0)))
        mu_p = np.clip((r * mu + d) / r_p, -1.0, 1.0)
        mu_s_p = np.clip((r * mu_s + d * nu) / r_p, -1.0, 1.0)
        scattering_p, single_mie_p = self._combined_scattering(r_p, mu_p, mu_s_p, nu, ground)
        shadow_transmittance = np.where(
            (shadow_length > 0.0)[:, None],
            functions.get_transmittance(self.transmittance, r, mu, d, ground),
            transmittance,
        )
        scattering = scattering - shadow_transmittance * scattering_p
        single_mie = single_mie - shadow_transmittance * single_mie_p
        if self.single_mie_scattering is None:
            single_mie = self._extrapolated_single_mie_scattering(
                np.concatenate([scattering, single_mie[:, :1]], axis=-1))

        # Avoid artifacts when the sun is below the horizon
        single_mie = single_mie * smoothstep(0.0, 0.01, mu_s)[:, None]

        radiance = (
            scattering * rayleigh_phase_function(nu)[:, None] +
            single_mie * mie_phase_function(atm.mie_phase_function_g, nu)[:, None]
        )
        return radiance.reshape(shape + (3,)), transmittance.reshape(shape + (3,))

    def get_sun_and_sky_irradiance(self, point, normal,
                                   sun_direction) -> Tuple[np.ndarray, np.ndarray]:
        """
        Sun and sky irradiance on a surface element at ``point``.

        Returns:
            (sun_irradiance, sky_irradiance)
        """
        self._require_radiance_api()
        return self._sun_and_sky_irradiance(point, normal, sun_direction)

    def _sun_and_sky_irradiance(self, point, normal, sun_direction):
        shape, (point, normal, sun_direction) = _vectors(point, normal, sun_direction)
        atm = self.atmosphere
        functions = self.functions

        r = np.linalg.norm(point, axis=-1)
        mu_s = np.clip(_dot(point, sun_direction) / r, -1.0, 1.0)
        r = clamp_radius(atm, r)

        # Approximate the sky visibility with the tilt of the normal
        sky_irradiance = (
            functions.get_irradiance(self.irradiance, r, mu_s) *
            ((1.0 + _dot(normal, point) / np.linalg.norm(point, axis=-1)) * 0.5)[:, None]
        )
        sun_irradiance = (
            atm.solar_irradiance *
            functions.get_transmittance_to_sun(self.transmittance, r, mu_s) *
            np.maximum(_dot(normal, sun_direction), 0.0)[:, None]
        )
        return sun_irradiance.reshape(shape + (3,)), sky_irradiance.reshape(shape + (3,))

    # -------------------------------------------------------------------------
    # Luminance
    # -------------------------------------------------------------------------

    def get_solar_luminance(self) -> np.ndarray:
        return self._solar_radiance() * self.sun_k

    def get_sky_luminance(self, camera, view_ray, shadow_length, sun_direction):
        """Linear sRGB luminance variant of get_sky_radiance."""
        radiance, transmittance = self._sky_radiance(camera, view_ray, shadow_length,
                                                     sun_direction)
        return radiance * self.sky_k, transmittance

    def get_sky_luminance_to_point(self, camera, point, shadow_length, sun_direction):
        """Linear sRGB luminance variant of get_sky_radiance_to_point."""
        radiance, transmittance = self._sky_radiance_to_point(camera, point, shadow_length,
                                                              sun_direction)
        return radiance * self.sky_k, transmittance

    def get_sun_and_sky_illuminance(self, point, normal, sun_direction):
        """Linear sRGB illuminance variant of get_sun_and_sky_irradiance."""
        sun_irradiance, sky_irradiance = self._sun_and_sky_irradiance(point, normal,
                                                                      sun_direction)
        return sun_irradiance * self.sun_k, sky_irradiance * self.sky_k
