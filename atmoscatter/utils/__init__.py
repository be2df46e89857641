"""
Atmoscatter Utilities
"""

from .gpu import bind_textures
from .exr import HAS_OPENEXR, export_textures, read_texture_exr, write_texture_exr
