"""
Atmoscatter - Precomputed atmospheric scattering tables.

An implementation of Eric Bruneton's Precomputed Atmospheric Scattering:
precomputes transmittance, scattering and irradiance tables for a
planetary atmosphere, converts them to luminance, and samples them the way
a shading layer does.

Based on work by Eric Bruneton (BSD License)
"""

__version__ = "1.0.0"

from .core import *
