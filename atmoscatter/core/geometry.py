"""
Ray geometry inside the spherical atmosphere shell.

A point is described by its distance r to the planet center and a ray by the
cosine mu of its zenith angle. ``atmosphere`` is any object exposing
bottom_radius and top_radius in consistent length units.
"""

import numpy as np


def clamp_cosine(mu, xp=np):
    return xp.clip(mu, -1.0, 1.0)


def clamp_distance(d, xp=np):
    return xp.maximum(d, 0.0)


def clamp_radius(atmosphere, r, xp=np):
    return xp.clip(r, atmosphere.bottom_radius, atmosphere.top_radius)


def safe_sqrt(a, xp=np):
    return xp.sqrt(xp.maximum(a, 0.0))


def distance_to_top_atmosphere_boundary(atmosphere, r, mu, xp=np):
    """Distance along (r, mu) to the top of the atmosphere."""
    discriminant = r * r * (mu * mu - 1.0) + atmosphere.top_radius ** 2
    return clamp_distance(-r * mu + safe_sqrt(discriminant, xp), xp)


def distance_to_bottom_atmosphere_boundary(atmosphere, r, mu, xp=np):
    """Distance along (r, mu) to the ground, assuming the ray hits it."""
    discriminant = r * r * (mu * mu - 1.0) + atmosphere.bottom_radius ** 2
    return clamp_distance(-r * mu - safe_sqrt(discriminant, xp), xp)


def ray_intersects_ground(atmosphere, r, mu):
    """True where the ray (r, mu) hits the ground before leaving the atmosphere."""
    return (mu < 0.0) & (r * r * (mu * mu - 1.0) + atmosphere.bottom_radius ** 2 >= 0.0)


def distance_to_nearest_atmosphere_boundary(atmosphere, r, mu, intersects_ground, xp=np):
    return xp.where(
        intersects_ground,
        distance_to_bottom_atmosphere_boundary(atmosphere, r, mu, xp),
        distance_to_top_atmosphere_boundary(atmosphere, r, mu, xp),
    )


def point_along_ray(atmosphere, r, mu, d, xp=np):
    """Radius and view cosine at distance d along the ray (r, mu)."""
    r_d = clamp_radius(atmosphere, safe_sqrt(d * d + 2.0 * r * mu * d + r * r, xp), xp)
    mu_d = clamp_cosine((r * mu + d) / r_d, xp)
    return r_d, mu_d


def smoothstep(edge0, edge1, x, xp=np):
    t = xp.clip((x - edge0) / (edge1 - edge0), 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)
