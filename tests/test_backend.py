"""
Atmoscatter Backend Tests - NumPy/CuPy selection.
"""

import numpy as np


def test_cpu_backend():
    """Test the NumPy backend."""
    from atmoscatter.core.backend import ComputeBackend

    backend = ComputeBackend(use_gpu=False)

    assert backend.xp is np
    assert backend.name == "NumPy (CPU)"
    zeros = backend.zeros((2, 3))
    assert zeros.dtype == np.float32
    assert isinstance(backend.to_numpy(zeros), np.ndarray)
    backend.synchronize()


def test_gpu_request_without_cupy(monkeypatch):
    """Test that requesting the GPU falls back to NumPy when CuPy is missing."""
    from atmoscatter.core import backend as backend_module

    monkeypatch.setattr(backend_module, "CUPY_AVAILABLE", False)
    backend = backend_module.ComputeBackend(use_gpu=True)

    assert not backend.use_gpu
    assert backend.xp is np
    assert not backend_module.is_gpu_available()


def test_shared_backend(monkeypatch):
    """Test get_backend/set_backend."""
    from atmoscatter.core import backend as backend_module

    monkeypatch.setattr(backend_module, "_backend", None)

    first = backend_module.get_backend()
    assert backend_module.get_backend() is first

    replaced = backend_module.set_backend(use_gpu=False)
    assert replaced is not first
    assert backend_module.get_backend() is replaced
