"""
Atmoscatter Texture Tests - Table sizes, packing and buffers.
"""

import numpy as np
import pytest


def test_default_sizes():
    """Test the standard table resolutions."""
    from atmoscatter.core.textures import TextureSizes

    sizes = TextureSizes()

    assert sizes.transmittance_shape == (64, 256)
    assert sizes.scattering_shape == (32, 128, 256)
    assert sizes.irradiance_shape == (16, 64)


@pytest.mark.parametrize("changes", [
    {'scattering_mu_size': 15},
    {'transmittance_width': 1},
    {'irradiance_height': 2.5},
])
def test_size_validation(changes):
    """Test that sizes must be integers >= 2 and the mu size even."""
    from atmoscatter.core.errors import ConfigurationError
    from atmoscatter.core.textures import TextureSizes

    with pytest.raises(ConfigurationError):
        TextureSizes(**changes)


def test_packing():
    """Test channel counts and precision of the stored tables."""
    from atmoscatter.core.textures import TexturePacking

    combined = TexturePacking(combine_scattering_textures=True)
    assert combined.scattering_format.channels == 4
    assert combined.single_mie_scattering_format is None

    separate = TexturePacking(combine_scattering_textures=False, half_precision=True)
    assert separate.scattering_format.channels == 3
    assert separate.single_mie_scattering_format.channels == 3
    assert separate.scattering_format.dtype == np.float16
    assert separate.single_mie_scattering_format.dtype == np.float16
    # Only scattering tables use half precision
    assert separate.transmittance_format.dtype == np.float32
    assert separate.irradiance_format.dtype == np.float32

    print("✓ Packing test passed")


def test_texture_buffer(cpu_backend):
    """Test writing, blending and freezing a buffer."""
    from atmoscatter.core.textures import TextureBuffer, TextureFormat

    buffer = TextureBuffer("test", (2, 3), TextureFormat(3, half_precision=True), cpu_backend)
    assert buffer.shape == (2, 3, 3)
    assert not buffer.is_3d

    buffer.write(np.ones((2, 3, 3)))
    buffer.write(np.full((2, 3, 3), 0.5), blend=True)
    np.testing.assert_allclose(buffer.data, 1.5)

    frozen = buffer.freeze()
    assert frozen.dtype == np.float16
    assert not frozen.flags.writeable
    with pytest.raises(ValueError):
        frozen[0, 0, 0] = 0.0

    buffer.clear()
    assert np.all(buffer.data == 0.0)


def test_render_3d(cpu_backend):
    """Test that 3D targets are rendered one depth slice at a time."""
    from atmoscatter.core.textures import TextureBuffer, TextureFormat, render

    source = TextureBuffer("source", (3, 2, 2), TextureFormat(3), cpu_backend)
    source.write(np.arange(3, dtype=np.float32)[:, None, None, None] * np.ones((3, 2, 2, 3)))
    first = TextureBuffer("first", (3, 2, 2), TextureFormat(3), cpu_backend)
    second = TextureBuffer("second", (3, 2, 2), TextureFormat(4), cpu_backend)
    calls = []

    def kernel(k, data):
        calls.append(k)
        return data[k] * 2.0, np.full((2, 2, 4), float(k))

    render((first, second), kernel, source)
    render((first, second), kernel, source, blend=(True, False))

    assert calls == [0, 1, 2, 0, 1, 2]
    np.testing.assert_allclose(first.data[2], 8.0)
    np.testing.assert_allclose(second.data[1], 1.0)

    with pytest.raises(ValueError):
        render((first, second), kernel, source, blend=(True,))
