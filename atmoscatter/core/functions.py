"""
Atmoscatter Functions - Per-cell physics of the precomputation passes.

Table lookups reproduce hardware texture filtering (bilinear / trilinear,
clamp to edge) so that values read here match what a renderer sampling the
same tables would get. Everything is vectorized over the leading axes of
its arguments; spectral results carry a trailing axis of size 3.
"""

from dataclasses import dataclass
from typing import Union

import numpy as np

from .geometry import (
    clamp_cosine,
    distance_to_bottom_atmosphere_boundary,
    distance_to_nearest_atmosphere_boundary,
    distance_to_top_atmosphere_boundary,
    point_along_ray,
    ray_intersects_ground,
    smoothstep,
)
from .parameterization import TextureParameterization
from .textures import TextureSizes


# =============================================================================
# Previous-order radiance source
# =============================================================================

@dataclass(frozen=True)
class SingleScattering:
    """Order 1 radiance: single Rayleigh and Mie tables with their phase functions."""
    order: int = 1


@dataclass(frozen=True)
class AccumulatedScattering:
    """Radiance of a multiple scattering order, read from the delta table."""
    order: int


ScatteringSource = Union[SingleScattering, AccumulatedScattering]


def scattering_source(order: int) -> ScatteringSource:
    """Source reading radiance of the given scattering order."""
    if order < 1:
        raise ValueError(f"Scattering orders start at 1, got {order}")
    if order == 1:
        return SingleScattering()
    return AccumulatedScattering(order)


# =============================================================================
# Phase functions
# =============================================================================

def rayleigh_phase_function(nu):
    k = 3.0 / (16.0 * np.pi)
    return k * (1.0 + nu * nu)


def mie_phase_function(g, nu):
    """Cornette-Shanks phase function."""
    k = 3.0 / (8.0 * np.pi) * (1.0 - g * g) / (2.0 + g * g)
    return k * (1.0 + nu * nu) / (1.0 + g * g - 2.0 * g * nu) ** 1.5


# =============================================================================
# Texture filtering
# =============================================================================

def _linear_taps(coord, size, xp):
    p = xp.asarray(coord) * size - 0.5
    i0 = xp.floor(p)
    f = p - i0
    i0 = i0.astype(np.int64)
    return xp.clip(i0, 0, size - 1), xp.clip(i0 + 1, 0, size - 1), f[..., None]


def sample_texture_2d(texture, u, v, xp=np):
    """Bilinear lookup of a (H, W, C) table at texture coordinates (u, v)."""
    height, width = texture.shape[:2]
    x0, x1, fx = _linear_taps(u, width, xp)
    y0, y1, fy = _linear_taps(v, height, xp)
    return (
        (texture[y0, x0] * (1.0 - fx) + texture[y0, x1] * fx) * (1.0 - fy) +
        (texture[y1, x0] * (1.0 - fx) + texture[y1, x1] * fx) * fy
    )


def sample_texture_3d(texture, u, v, w, xp=np):
    """Trilinear lookup of a (D, H, W, C) table at texture coordinates (u, v, w)."""
    depth, height, width = texture.shape[:3]
    x0, x1, fx = _linear_taps(u, width, xp)
    y0, y1, fy = _linear_taps(v, height, xp)
    z0, z1, fz = _linear_taps(w, depth, xp)

    def plane(z):
        return (
            (texture[z, y0, x0] * (1.0 - fx) + texture[z, y0, x1] * fx) * (1.0 - fy) +
            (texture[z, y1, x0] * (1.0 - fx) + texture[z, y1, x1] * fx) * fy
        )

    return plane(z0) * (1.0 - fz) + plane(z1) * fz


def _safe_ratio(numerator, denominator, xp):
    return xp.where(denominator > 0.0, numerator / xp.where(denominator > 0.0, denominator, 1.0),
                    0.0)


class AtmosphereFunctions:
    """
    Physics of one KernelAtmosphere on tables of the given sizes.

    Args:
        atmosphere: KernelAtmosphere (three wavelengths, model length unit)
        sizes: Table resolutions
        use_absorption: Include the absorbing layer in optical depths
        xp: Array module (numpy or cupy)
    """

    def __init__(self, atmosphere, sizes: TextureSizes, use_absorption: bool = True, xp=np):
        self.atmosphere = atmosphere
        self.sizes = sizes
        self.use_absorption = use_absorption
        self.xp = xp
        self.parameterization = TextureParameterization(atmosphere, sizes, xp)

        # Spectral constants on the compute device
        self.solar_irradiance = xp.asarray(atmosphere.solar_irradiance)
        self.rayleigh_scattering = xp.asarray(atmosphere.rayleigh_scattering)
        self.mie_scattering = xp.asarray(atmosphere.mie_scattering)
        self.mie_extinction = xp.asarray(atmosphere.mie_extinction)
        self.absorption_extinction = xp.asarray(atmosphere.absorption_extinction)
        self.ground_albedo = xp.asarray(atmosphere.ground_albedo)

    # -------------------------------------------------------------------------
    # Densities and optical depth
    # -------------------------------------------------------------------------

    def _densities(self, r):
        atm = self.atmosphere
        altitude = r - atm.bottom_radius
        return (
            atm.rayleigh_density.get_density(altitude, self.xp),
            atm.mie_density.get_density(altitude, self.xp),
        )

    def compute_optical_lengths_to_top_atmosphere_boundary(self, r, mu, sample_count):
        """
        Integrated Rayleigh, Mie and absorption densities from (r, mu) to the
        top boundary, with the trapezoidal rule over ``sample_count`` intervals.
        """
        xp = self.xp
        atm = self.atmosphere
        dx = distance_to_top_atmosphere_boundary(atm, r, mu, xp) / sample_count
        rayleigh = xp.zeros_like(dx)
        mie = xp.zeros_like(dx)
        absorption = xp.zeros_like(dx)
        for i in range(sample_count + 1):
            d_i = i * dx
            # Distance between the current sample point and the planet center
            r_i = xp.sqrt(d_i * d_i + 2.0 * r * mu * d_i + r * r)
            altitude = r_i - atm.bottom_radius
            weight_i = dx * (0.5 if i == 0 or i == sample_count else 1.0)
            rayleigh += atm.rayleigh_density.get_density(altitude, xp) * weight_i
            mie += atm.mie_density.get_density(altitude, xp) * weight_i
            if self.use_absorption:
                absorption += atm.absorption_density.get_density(altitude, xp) * weight_i
        return rayleigh, mie, absorption

    def compute_transmittance_to_top_atmosphere_boundary(self, r, mu, sample_count):
        xp = self.xp
        rayleigh, mie, absorption = self.compute_optical_lengths_to_top_atmosphere_boundary(
            r, mu, sample_count)
        optical_depth = (
            self.rayleigh_scattering * rayleigh[..., None] +
            self.mie_extinction * mie[..., None]
        )
        if self.use_absorption:
            optical_depth = optical_depth + self.absorption_extinction * absorption[..., None]
        return xp.clip(xp.exp(-optical_depth), 0.0, 1.0)

    # -------------------------------------------------------------------------
    # Transmittance lookups
    # -------------------------------------------------------------------------

    def get_transmittance_to_top_atmosphere_boundary(self, transmittance, r, mu):
        u, v = self.parameterization.transmittance_uv_from_r_mu(r, mu)
        return sample_texture_2d(transmittance, u, v, self.xp)

    def get_transmittance(self, transmittance, r, mu, d, ray_r_mu_intersects_ground):
        """Transmittance between (r, mu) and the point at distance d along the ray."""
        xp = self.xp
        r_d, mu_d = point_along_ray(self.atmosphere, r, mu, d, xp)
        lookup = self.get_transmittance_to_top_atmosphere_boundary
        # Ground rays never reach the top boundary, use the reversed ray instead
        towards_ground = _safe_ratio(
            lookup(transmittance, r_d, -mu_d), lookup(transmittance, r, -mu), xp)
        towards_sky = _safe_ratio(
            lookup(transmittance, r, mu), lookup(transmittance, r_d, mu_d), xp)
        result = xp.where(xp.asarray(ray_r_mu_intersects_ground)[..., None],
                          towards_ground, towards_sky)
        return xp.minimum(result, 1.0)

    def get_transmittance_to_sun(self, transmittance, r, mu_s):
        """Sun transmittance including the fraction of the sun disc above the horizon."""
        xp = self.xp
        atm = self.atmosphere
        sin_theta_h = atm.bottom_radius / r
        cos_theta_h = -xp.sqrt(xp.maximum(1.0 - sin_theta_h * sin_theta_h, 0.0))
        visible = smoothstep(
            -sin_theta_h * atm.sun_angular_radius,
            sin_theta_h * atm.sun_angular_radius,
            mu_s - cos_theta_h,
            xp,
        )
        return self.get_transmittance_to_top_atmosphere_boundary(transmittance, r, mu_s) * \
            visible[..., None]

    # -------------------------------------------------------------------------
    # Direct irradiance
    # -------------------------------------------------------------------------

    def compute_direct_irradiance(self, transmittance, r, mu_s):
        """
        Irradiance of the sun on a horizontal surface, with the cosine factor
        averaged over the sun disc. Zero beyond the maximum sun zenith angle.
        """
        xp = self.xp
        alpha_s = self.atmosphere.sun_angular_radius
        average_cosine_factor = xp.where(
            mu_s < -alpha_s,
            0.0,
            xp.where(mu_s > alpha_s, mu_s, (mu_s + alpha_s) ** 2 / (4.0 * alpha_s)),
        )
        irradiance = (
            self.solar_irradiance *
            self.get_transmittance_to_top_atmosphere_boundary(transmittance, r, mu_s) *
            average_cosine_factor[..., None]
        )
        return xp.where((mu_s < self.atmosphere.mu_s_min)[..., None], 0.0, irradiance)

    # -------------------------------------------------------------------------
    # Single scattering
    # -------------------------------------------------------------------------

    def compute_single_scattering(self, transmittance, r, mu, mu_s, nu,
                                  ray_r_mu_intersects_ground, sample_count):
        """
        Single scattered radiance towards (r, mu) for the sun at (mu_s, nu),
        without phase functions.

        Returns:
            (rayleigh, mie) each of shape (..., 3)
        """
        xp = self.xp
        atm = self.atmosphere
        dx = distance_to_nearest_atmosphere_boundary(
            atm, r, mu, ray_r_mu_intersects_ground, xp) / sample_count
        rayleigh_sum = xp.zeros(dx.shape + (3,))
        mie_sum = xp.zeros(dx.shape + (3,))
        for i in range(sample_count + 1):
            d_i = i * dx
            r_d, _ = point_along_ray(atm, r, mu, d_i, xp)
            mu_s_d = clamp_cosine((r * mu_s + d_i * nu) / r_d, xp)
            transmittance_i = (
                self.get_transmittance(transmittance, r, mu, d_i, ray_r_mu_intersects_ground) *
                self.get_transmittance_to_sun(transmittance, r_d, mu_s_d)
            )
            rayleigh_density, mie_density = self._densities(r_d)
            weight_i = 0.5 if i == 0 or i == sample_count else 1.0
            rayleigh_sum += transmittance_i * (rayleigh_density * weight_i)[..., None]
            mie_sum += transmittance_i * (mie_density * weight_i)[..., None]
        scale = dx[..., None] * self.solar_irradiance
        return (
            rayleigh_sum * scale * self.rayleigh_scattering,
            mie_sum * scale * self.mie_scattering,
        )

    # -------------------------------------------------------------------------
    # Scattering and irradiance lookups
    # -------------------------------------------------------------------------

    def get_scattering(self, scattering, r, mu, mu_s, nu, ray_r_mu_intersects_ground):
        """Look up a 4D scattering table stored with nu folded into the width."""
        xp = self.xp
        nu_size = self.sizes.scattering_nu_size
        u_nu, u_mu_s, u_mu, u_r = self.parameterization.scattering_uvwz_from_r_mu_mu_s_nu(
            r, mu, mu_s, nu, ray_r_mu_intersects_ground)
        tex_coord_x = u_nu * (nu_size - 1)
        tex_x = xp.floor(tex_coord_x)
        lerp = (tex_coord_x - tex_x)[..., None]
        uvw0 = ((tex_x + u_mu_s) / nu_size, u_mu, u_r)
        uvw1 = ((tex_x + 1.0 + u_mu_s) / nu_size, u_mu, u_r)
        return (
            sample_texture_3d(scattering, *uvw0, xp=xp) * (1.0 - lerp) +
            sample_texture_3d(scattering, *uvw1, xp=xp) * lerp
        )

    def get_scattering_from_source(self, source: ScatteringSource, single_rayleigh, single_mie,
                                   multiple_scattering, r, mu, mu_s, nu,
                                   ray_r_mu_intersects_ground):
        """Radiance of the order designated by ``source``, phase functions applied."""
        if isinstance(source, SingleScattering):
            rayleigh = self.get_scattering(
                single_rayleigh, r, mu, mu_s, nu, ray_r_mu_intersects_ground)
            mie = self.get_scattering(
                single_mie, r, mu, mu_s, nu, ray_r_mu_intersects_ground)
            return (
                rayleigh * rayleigh_phase_function(nu)[..., None] +
                mie * mie_phase_function(self.atmosphere.mie_phase_function_g, nu)[..., None]
            )
        # Multiple scattering tables already include the phase functions
        return self.get_scattering(
            multiple_scattering, r, mu, mu_s, nu, ray_r_mu_intersects_ground)

    def get_irradiance(self, irradiance, r, mu_s):
        u, v = self.parameterization.irradiance_uv_from_r_mu_s(r, mu_s)
        return sample_texture_2d(irradiance, u, v, self.xp)

    # -------------------------------------------------------------------------
    # Multiple scattering
    # -------------------------------------------------------------------------

    def compute_scattering_density(self, transmittance, single_rayleigh, single_mie,
                                   multiple_scattering, irradiance, r, mu, mu_s, nu,
                                   source: ScatteringSource, sample_count):
        """
        Radiance scattered at (r) towards -omega, integrating the radiance of
        ``source`` (plus light reflected by the ground) over the sphere of
        incident directions with a midpoint rule of sample_count x
        2 * sample_count directions.
        """
        xp = self.xp
        atm = self.atmosphere
        g = atm.mie_phase_function_g

        # View direction omega in the (x, z) plane, sun direction omega_s
        omega_x = xp.sqrt(xp.maximum(1.0 - mu * mu, 0.0))
        sun_dir_x = xp.where(omega_x == 0.0, 0.0,
                             (nu - mu * mu_s) / xp.where(omega_x == 0.0, 1.0, omega_x))
        sun_dir_y = xp.sqrt(xp.maximum(1.0 - sun_dir_x * sun_dir_x - mu_s * mu_s, 0.0))

        rayleigh_density, mie_density = self._densities(r)
        ground_radius = xp.full_like(r, atm.bottom_radius)

        dphi = np.pi / sample_count
        dtheta = np.pi / sample_count
        rayleigh_mie = xp.zeros(r.shape + (3,))

        for l in range(sample_count):
            theta = (l + 0.5) * dtheta
            cos_theta = np.cos(theta)
            sin_theta = np.sin(theta)
            cos_theta_array = xp.full_like(r, cos_theta)

            # Distance and transmittance to the ground along incident directions
            # at this zenith angle; zero where they do not hit the ground
            hits_ground = ray_intersects_ground(atm, r, cos_theta_array)
            distance_to_ground = xp.where(
                hits_ground,
                distance_to_bottom_atmosphere_boundary(atm, r, cos_theta_array, xp),
                0.0,
            )
            transmittance_to_ground = xp.where(
                hits_ground[..., None],
                self.get_transmittance(
                    transmittance, r, cos_theta_array, distance_to_ground, hits_ground),
                0.0,
            )
            ground_reflectance = transmittance_to_ground * self.ground_albedo / np.pi

            for m in range(2 * sample_count):
                phi = (m + 0.5) * dphi
                omega_i_x = np.cos(phi) * sin_theta
                omega_i_y = np.sin(phi) * sin_theta
                domega_i = dtheta * dphi * sin_theta

                # Radiance L arriving from direction omega_i
                nu1 = sun_dir_x * omega_i_x + sun_dir_y * omega_i_y + mu_s * cos_theta
                incident_radiance = self.get_scattering_from_source(
                    source, single_rayleigh, single_mie, multiple_scattering,
                    r, cos_theta_array, mu_s, nu1, hits_ground)

                # Light reflected by the ground towards -omega_i
                normal_x = omega_i_x * distance_to_ground
                normal_y = omega_i_y * distance_to_ground
                normal_z = r + cos_theta * distance_to_ground
                normal_length = xp.sqrt(normal_x ** 2 + normal_y ** 2 + normal_z ** 2)
                ground_mu_s = (
                    normal_x * sun_dir_x + normal_y * sun_dir_y + normal_z * mu_s
                ) / normal_length
                ground_irradiance = self.get_irradiance(irradiance, ground_radius, ground_mu_s)
                incident_radiance = incident_radiance + ground_reflectance * ground_irradiance

                # Fraction scattered towards -omega
                nu2 = omega_x * omega_i_x + mu * cos_theta
                phase = (
                    self.rayleigh_scattering *
                    (rayleigh_density * rayleigh_phase_function(nu2))[..., None] +
                    self.mie_scattering *
                    (mie_density * mie_phase_function(g, nu2))[..., None]
                )
                rayleigh_mie += incident_radiance * phase * domega_i
        return rayleigh_mie

    def compute_indirect_irradiance(self, single_rayleigh, single_mie, multiple_scattering,
                                    r, mu_s, source: ScatteringSource, sample_count):
        """
        Irradiance on a horizontal surface from the sky radiance of ``source``,
        integrated over the upper hemisphere (sample_count / 2 zenith x
        2 * sample_count azimuth directions).
        """
        xp = self.xp
        dphi = np.pi / sample_count
        dtheta = np.pi / sample_count

        omega_s_x = xp.sqrt(xp.maximum(1.0 - mu_s * mu_s, 0.0))
        never_ground = xp.zeros(r.shape, dtype=bool)
        result = xp.zeros(r.shape + (3,))

        for j in range(sample_count // 2):
            theta = (j + 0.5) * dtheta
            cos_theta = np.cos(theta)
            sin_theta = np.sin(theta)
            cos_theta_array = xp.full_like(r, cos_theta)
            for i in range(2 * sample_count):
                phi = (i + 0.5) * dphi
                domega = dtheta * dphi * sin_theta
                nu = np.cos(phi) * sin_theta * omega_s_x + cos_theta * mu_s
                radiance = self.get_scattering_from_source(
                    source, single_rayleigh, single_mie, multiple_scattering,
                    r, cos_theta_array, mu_s, nu, never_ground)
                result += radiance * (cos_theta * domega)
        return result

    def compute_multiple_scattering(self, transmittance, scattering_density, r, mu, mu_s, nu,
                                    ray_r_mu_intersects_ground, sample_count):
        """Integrate the scattering density along the view ray (trapezoidal rule)."""
        xp = self.xp
        atm = self.atmosphere
        dx = distance_to_nearest_atmosphere_boundary(
            atm, r, mu, ray_r_mu_intersects_ground, xp) / sample_count
        rayleigh_mie_sum = xp.zeros(dx.shape + (3,))
        for i in range(sample_count + 1):
            d_i = i * dx
            r_i, mu_i = point_along_ray(atm, r, mu, d_i, xp)
            mu_s_i = clamp_cosine((r * mu_s + d_i * nu) / r_i, xp)
            rayleigh_mie_i = (
                self.get_scattering(
                    scattering_density, r_i, mu_i, mu_s_i, nu, ray_r_mu_intersects_ground) *
                self.get_transmittance(transmittance, r, mu, d_i, ray_r_mu_intersects_ground)
            )
            weight_i = 0.5 if i == 0 or i == sample_count else 1.0
            rayleigh_mie_sum += rayleigh_mie_i * weight_i
        return rayleigh_mie_sum * dx[..., None]
