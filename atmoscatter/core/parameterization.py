"""
Atmoscatter Parameterization - Mappings between physical quantities and
table coordinates.

Texture coordinates address texel centers: a unit-range value x in [0, 1]
maps to 0.5 / size + x * (1 - 1 / size). The view zenith axes are warped by
the distance to the atmosphere boundary so that resolution concentrates
near the horizon, and the scattering mu axis is split in two halves for
rays that hit the ground and rays that do not.
"""

import numpy as np

from .geometry import (
    clamp_cosine,
    distance_to_top_atmosphere_boundary,
    safe_sqrt,
)
from .textures import TextureSizes


def get_texture_coord_from_unit_range(x, texture_size):
    """Convert unit range [0,1] to texture coordinate."""
    return 0.5 / texture_size + x * (1.0 - 1.0 / texture_size)


def get_unit_range_from_texture_coord(u, texture_size):
    """Convert texture coordinate to unit range [0,1]."""
    return (u - 0.5 / texture_size) / (1.0 - 1.0 / texture_size)


def _nonzero(x, xp):
    """Replace zeros by ones so that guarded divisions stay finite."""
    return xp.where(x == 0.0, 1.0, x)


class TextureParameterization:
    """
    Coordinate mappings for one atmosphere and one set of table sizes.

    All methods are vectorized over array arguments.
    """

    def __init__(self, atmosphere, sizes: TextureSizes, xp=np):
        self.atmosphere = atmosphere
        self.sizes = sizes
        self.xp = xp
        bottom = atmosphere.bottom_radius
        top = atmosphere.top_radius
        # Distance to the top boundary for a horizontal ray at ground level
        self.H = float(np.sqrt(top * top - bottom * bottom))

    # -------------------------------------------------------------------------
    # Transmittance: (r, mu) <-> (u, v)
    # -------------------------------------------------------------------------

    def transmittance_uv_from_r_mu(self, r, mu):
        xp = self.xp
        atm = self.atmosphere
        H = self.H
        rho = safe_sqrt(r * r - atm.bottom_radius ** 2, xp)
        d = distance_to_top_atmosphere_boundary(atm, r, mu, xp)
        d_min = atm.top_radius - r
        d_max = rho + H
        x_mu = (d - d_min) / (d_max - d_min)
        x_r = rho / H
        return (
            get_texture_coord_from_unit_range(x_mu, self.sizes.transmittance_width),
            get_texture_coord_from_unit_range(x_r, self.sizes.transmittance_height),
        )

    def r_mu_from_transmittance_uv(self, u, v):
        xp = self.xp
        atm = self.atmosphere
        H = self.H
        x_mu = get_unit_range_from_texture_coord(u, self.sizes.transmittance_width)
        x_r = get_unit_range_from_texture_coord(v, self.sizes.transmittance_height)
        rho = H * x_r
        r = xp.sqrt(rho * rho + atm.bottom_radius ** 2)
        d_min = atm.top_radius - r
        d_max = rho + H
        d = d_min + x_mu * (d_max - d_min)
        mu = xp.where(
            d == 0.0,
            1.0,
            (H * H - rho * rho - d * d) / (2.0 * r * _nonzero(d, xp)),
        )
        return r, clamp_cosine(mu, xp)

    # -------------------------------------------------------------------------
    # Scattering: (r, mu, mu_s, nu) <-> (u_nu, u_mu_s, u_mu, u_r)
    # -------------------------------------------------------------------------

    def scattering_uvwz_from_r_mu_mu_s_nu(self, r, mu, mu_s, nu, ray_r_mu_intersects_ground):
        xp = self.xp
        atm = self.atmosphere
        sizes = self.sizes
        H = self.H
        bottom = atm.bottom_radius
        top = atm.top_radius

        rho = safe_sqrt(r * r - bottom * bottom, xp)
        u_r = get_texture_coord_from_unit_range(rho / H, sizes.scattering_r_size)

        # Discriminant of the quadratic equation for the ray-ground intersection
        r_mu = r * mu
        discriminant = r_mu * r_mu - r * r + bottom * bottom
        half_mu_size = sizes.scattering_mu_size // 2

        # Rays hitting the ground: distance to the ground, lower half of the axis
        d = -r_mu - safe_sqrt(discriminant, xp)
        d_min = r - bottom
        d_max = rho
        span = d_max - d_min
        x_ground = xp.where(span == 0.0, 0.0, (d - d_min) / _nonzero(span, xp))
        u_mu_ground = 0.5 - 0.5 * get_texture_coord_from_unit_range(x_ground, half_mu_size)

        # Other rays: distance to the top boundary, upper half of the axis
        d = -r_mu + safe_sqrt(discriminant + H * H, xp)
        d_min = top - r
        d_max = rho + H
        x_sky = (d - d_min) / (d_max - d_min)
        u_mu_sky = 0.5 + 0.5 * get_texture_coord_from_unit_range(x_sky, half_mu_size)

        u_mu = xp.where(ray_r_mu_intersects_ground, u_mu_ground, u_mu_sky)

        d = distance_to_top_atmosphere_boundary(atm, bottom, mu_s, xp)
        d_min = top - bottom
        d_max = H
        a = (d - d_min) / (d_max - d_min)
        A = self._mu_s_min_parameter()
        u_mu_s = get_texture_coord_from_unit_range(
            xp.maximum(1.0 - a / A, 0.0) / (1.0 + a), sizes.scattering_mu_s_size
        )

        u_nu = (nu + 1.0) / 2.0
        return u_nu, u_mu_s, u_mu, u_r

    def r_mu_mu_s_nu_from_scattering_uvwz(self, u_nu, u_mu_s, u_mu, u_r):
        """
        Inverse of scattering_uvwz_from_r_mu_mu_s_nu.

        Returns:
            (r, mu, mu_s, nu, ray_r_mu_intersects_ground)
        """
        xp = self.xp
        atm = self.atmosphere
        sizes = self.sizes
        H = self.H
        bottom = atm.bottom_radius
        top = atm.top_radius
        half_mu_size = sizes.scattering_mu_size // 2

        rho = H * get_unit_range_from_texture_coord(u_r, sizes.scattering_r_size)
        r = xp.sqrt(rho * rho + bottom * bottom)

        ray_r_mu_intersects_ground = u_mu < 0.5

        d_min = r - bottom
        d_max = rho
        d = d_min + (d_max - d_min) * get_unit_range_from_texture_coord(
            1.0 - 2.0 * u_mu, half_mu_size)
        mu_ground = xp.where(
            d == 0.0, -1.0, -(rho * rho + d * d) / (2.0 * r * _nonzero(d, xp)))

        d_min = top - r
        d_max = rho + H
        d = d_min + (d_max - d_min) * get_unit_range_from_texture_coord(
            2.0 * u_mu - 1.0, half_mu_size)
        mu_sky = xp.where(
            d == 0.0, 1.0, (H * H - rho * rho - d * d) / (2.0 * r * _nonzero(d, xp)))

        mu = clamp_cosine(xp.where(ray_r_mu_intersects_ground, mu_ground, mu_sky), xp)

        x_mu_s = get_unit_range_from_texture_coord(u_mu_s, sizes.scattering_mu_s_size)
        d_min = top - bottom
        d_max = H
        A = self._mu_s_min_parameter()
        a = (A - x_mu_s * A) / (1.0 + x_mu_s * A)
        d = d_min + xp.minimum(a, A) * (d_max - d_min)
        mu_s = xp.where(
            d == 0.0, 1.0, (H * H - d * d) / (2.0 * bottom * _nonzero(d, xp)))
        mu_s = clamp_cosine(mu_s, xp)

        nu = clamp_cosine(u_nu * 2.0 - 1.0, xp)
        return r, mu, mu_s, nu, ray_r_mu_intersects_ground

    def r_mu_mu_s_nu_from_scattering_frag_coord(self, x, y, z):
        """
        Physical parameters at fragment coordinates (texel index + 0.5) of the
        3D scattering table, with nu clamped to the range possible for (mu, mu_s).
        """
        xp = self.xp
        sizes = self.sizes
        frag_coord_nu = xp.floor(x / sizes.scattering_mu_s_size)
        frag_coord_mu_s = xp.mod(x, sizes.scattering_mu_s_size)
        r, mu, mu_s, nu, ray_r_mu_intersects_ground = self.r_mu_mu_s_nu_from_scattering_uvwz(
            frag_coord_nu / (sizes.scattering_nu_size - 1),
            frag_coord_mu_s / sizes.scattering_mu_s_size,
            y / sizes.scattering_mu_size,
            z / sizes.scattering_r_size,
        )
        bound = xp.sqrt((1.0 - mu * mu) * (1.0 - mu_s * mu_s))
        nu = xp.clip(nu, mu * mu_s - bound, mu * mu_s + bound)
        return r, mu, mu_s, nu, ray_r_mu_intersects_ground

    def _mu_s_min_parameter(self):
        atm = self.atmosphere
        d_min = atm.top_radius - atm.bottom_radius
        D = distance_to_top_atmosphere_boundary(atm, atm.bottom_radius, atm.mu_s_min, np)
        return float((D - d_min) / (self.H - d_min))

    # -------------------------------------------------------------------------
    # Irradiance: (r, mu_s) <-> (u, v)
    # -------------------------------------------------------------------------

    def irradiance_uv_from_r_mu_s(self, r, mu_s):
        atm = self.atmosphere
        x_r = (r - atm.bottom_radius) / (atm.top_radius - atm.bottom_radius)
        x_mu_s = mu_s * 0.5 + 0.5
        return (
            get_texture_coord_from_unit_range(x_mu_s, self.sizes.irradiance_width),
            get_texture_coord_from_unit_range(x_r, self.sizes.irradiance_height),
        )

    def r_mu_s_from_irradiance_uv(self, u, v):
        atm = self.atmosphere
        x_mu_s = get_unit_range_from_texture_coord(u, self.sizes.irradiance_width)
        x_r = get_unit_range_from_texture_coord(v, self.sizes.irradiance_height)
        r = atm.bottom_radius + x_r * (atm.top_radius - atm.bottom_radius)
        return r, clamp_cosine(2.0 * x_mu_s - 1.0, self.xp)

    # -------------------------------------------------------------------------
    # Texel grids
    # -------------------------------------------------------------------------

    def _texel_centers(self, height, width):
        xp = self.xp
        j, i = xp.meshgrid(xp.arange(height), xp.arange(width), indexing='ij')
        return (i + 0.5) / width, (j + 0.5) / height

    def transmittance_grid(self):
        """(r, mu) at every texel of the transmittance table, shape (H, W)."""
        u, v = self._texel_centers(self.sizes.transmittance_height, self.sizes.transmittance_width)
        return self.r_mu_from_transmittance_uv(u, v)

    def irradiance_grid(self):
        """(r, mu_s) at every texel of the irradiance table, shape (H, W)."""
        u, v = self._texel_centers(self.sizes.irradiance_height, self.sizes.irradiance_width)
        return self.r_mu_s_from_irradiance_uv(u, v)

    def scattering_slice(self, k: int):
        """
        (r, mu, mu_s, nu, ray_r_mu_intersects_ground) at every texel of depth
        slice k of the scattering table, each of shape (height, width).
        """
        xp = self.xp
        sizes = self.sizes
        j, i = xp.meshgrid(
            xp.arange(sizes.scattering_height), xp.arange(sizes.scattering_width), indexing='ij'
        )
        z = xp.full(j.shape, k + 0.5)
        values = self.r_mu_mu_s_nu_from_scattering_frag_coord(i + 0.5, j + 0.5, z)
        return tuple(xp.broadcast_to(value, j.shape) for value in values)
