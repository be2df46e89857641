"""
Compute backend for the precomputation kernels.

Tables are allocated and integrated with CuPy on the GPU when it is
installed and requested, with NumPy otherwise. Kernels only see
``backend.xp``.
"""

import logging

import numpy as np

try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    cp = None
    CUPY_AVAILABLE = False

logger = logging.getLogger(__name__)

# Errors that mean a table could not be allocated on the active device
if CUPY_AVAILABLE:
    ALLOCATION_ERRORS = (MemoryError, cp.cuda.memory.OutOfMemoryError)
else:
    ALLOCATION_ERRORS = (MemoryError,)


class ComputeBackend:
    """
    Array module used to allocate and fill the tables.

    Args:
        use_gpu: Use CuPy when it is installed
    """

    def __init__(self, use_gpu: bool = False):
        self.use_gpu = use_gpu and CUPY_AVAILABLE
        self.xp = cp if self.use_gpu else np

        if self.use_gpu:
            device = cp.cuda.Device()
            properties = cp.cuda.runtime.getDeviceProperties(device.id)
            logger.info("Precomputing on GPU (CuPy) - Device: %s", properties["name"].decode())
        elif use_gpu:
            logger.warning("CuPy not available, precomputing on CPU (NumPy)")
        else:
            logger.debug("Precomputing on CPU (NumPy)")

    @property
    def name(self) -> str:
        return "CuPy (GPU)" if self.use_gpu else "NumPy (CPU)"

    def zeros(self, shape, dtype=np.float32):
        return self.xp.zeros(shape, dtype=dtype)

    def to_numpy(self, x) -> np.ndarray:
        """Copy a table back to host memory."""
        if self.use_gpu:
            return cp.asnumpy(x)
        return np.asarray(x)

    def synchronize(self) -> None:
        """Wait for queued GPU work (no-op on CPU)."""
        if self.use_gpu:
            cp.cuda.Stream.null.synchronize()

    def __repr__(self):
        return f"ComputeBackend({self.name})"


# Shared default backend
_backend = None


def get_backend(use_gpu: bool = False) -> ComputeBackend:
    """Return the shared backend, creating it on first use."""
    global _backend
    if _backend is None:
        _backend = ComputeBackend(use_gpu=use_gpu)
    return _backend


def set_backend(use_gpu: bool = True) -> ComputeBackend:
    """Replace the shared backend used by models created without one."""
    global _backend
    _backend = ComputeBackend(use_gpu=use_gpu)
    return _backend


def is_gpu_available() -> bool:
    return CUPY_AVAILABLE
