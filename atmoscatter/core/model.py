"""
Atmoscatter Atmosphere Model - Precomputation of the atmosphere tables.

Based on the precomputed atmospheric scattering model by Eric Bruneton.

This module handles:
- Table precomputation (transmittance, scattering, irradiance)
- Wavelength batching and conversion to luminance
- Model state, shader uniforms and table persistence
"""

import logging
import os
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from itertools import islice
from typing import Callable, Optional

import numpy as np

from .backend import ComputeBackend, get_backend
from .constants import DEFAULT_NUM_SCATTERING_ORDERS, MAX_LUMINOUS_EFFICACY, RGB_LAMBDAS
from .errors import ConfigurationError, PrecomputationError
from .kernels import IntegrationSettings, KernelConfig, PrecomputeKernels, iterate_scattering_orders
from .parameters import AtmosphereParameters
from .spectrum import (
    WavelengthBatch,
    precomputed_wavelength_batches,
    sample_spectrum,
    spectral_radiance_to_luminance_factors,
)
from .textures import PrecomputedTextures, TextureBuffer, TextureFormat, TextureSizes, render

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


class ModelState(Enum):
    """Lifecycle of an AtmosphereModel."""
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"
    RELEASED = "released"


@dataclass
class BatchResult:
    """Tables computed for one wavelength triple, already converted with its matrix."""
    batch: WavelengthBatch
    transmittance: TextureBuffer
    scattering: TextureBuffer
    irradiance: TextureBuffer
    single_mie_scattering: Optional[TextureBuffer] = None


class _Progress:
    """Thread-safe step counter forwarding to a progress callback."""

    def __init__(self, callback: Optional[ProgressCallback], total_steps: int):
        self.callback = callback
        self.total_steps = max(total_steps, 1)
        self.steps = 0
        self._lock = threading.Lock()

    def report(self, progress: float, message: str) -> None:
        if self.callback:
            self.callback(progress, message)

    def step(self, message: str) -> None:
        with self._lock:
            self.steps += 1
            progress = min(self.steps / self.total_steps, 1.0)
            # Keep 1.0 for the final "complete" message
            self.report(0.99 * progress, message)


class AtmosphereModel:
    """
    Main atmosphere model class.

    Precomputes the transmittance, scattering and irradiance tables of an
    atmosphere and provides what a shading layer needs to sample them.

    Args:
        params: Atmosphere parameters. Uses Earth defaults if None.
        sizes: Table resolutions. Uses the standard sizes if None.
        samples: Quadrature sample counts. Uses the standard counts if None.
        backend: Compute backend. Uses the global (NumPy) backend if None.
    """

    def __init__(self, params: Optional[AtmosphereParameters] = None,
                 sizes: Optional[TextureSizes] = None,
                 samples: Optional[IntegrationSettings] = None,
                 backend: Optional[ComputeBackend] = None):
        self.params = params or AtmosphereParameters.earth_default()
        self.sizes = sizes or TextureSizes()
        self.samples = samples or IntegrationSettings()
        self.backend = backend or get_backend()
        self.textures: Optional[PrecomputedTextures] = None
        self.state = ModelState.PENDING

        p = self.params
        if p.precompute_illuminance:
            # Luminance tables are missing the maximum luminous efficacy only
            self._sky_k = np.full(3, MAX_LUMINOUS_EFFICACY)
        else:
            self._sky_k = spectral_radiance_to_luminance_factors(
                p.wavelengths, p.solar_irradiance, -3)
        self._sun_k = spectral_radiance_to_luminance_factors(
            p.wavelengths, p.solar_irradiance, 0)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        """Check if the tables have been precomputed."""
        return self.state is ModelState.READY

    @property
    def packing(self):
        return self.params.packing

    @property
    def radiance_api_enabled(self) -> bool:
        """False when the tables hold luminance (more than 3 wavelengths)."""
        return not self.params.precompute_illuminance

    @property
    def sky_spectral_radiance_to_luminance(self) -> np.ndarray:
        return self._sky_k.copy()

    @property
    def sun_spectral_radiance_to_luminance(self) -> np.ndarray:
        return self._sun_k.copy()

    @property
    def solar_irradiance(self) -> np.ndarray:
        """Solar irradiance at the red, green and blue wavelengths."""
        return sample_spectrum(self.params.wavelengths, self.params.solar_irradiance, RGB_LAMBDAS)

    def _require_ready(self) -> None:
        if self.state is ModelState.RELEASED:
            raise RuntimeError("Model released.")
        if self.state is not ModelState.READY:
            raise RuntimeError("Model not initialized. Call init() first.")

    # -------------------------------------------------------------------------
    # Precomputation
    # -------------------------------------------------------------------------

    def init(self, num_scattering_orders: int = DEFAULT_NUM_SCATTERING_ORDERS,
             progress_callback: Optional[ProgressCallback] = None,
             max_workers: int = 1) -> None:
        """
        Precompute the atmosphere tables.

        Args:
            num_scattering_orders: Number of scattering orders to compute (default 4)
            progress_callback: Optional callback(progress, message) for progress updates
            max_workers: Wavelength batches computed concurrently (luminance mode only)
        """
        if self.state is ModelState.READY:
            raise RuntimeError("Model already initialized.")
        if self.state is ModelState.RELEASED:
            raise RuntimeError("Model released.")
        if self.state is ModelState.FAILED:
            raise PrecomputationError("A previous precomputation failed; create a new model.")
        if int(num_scattering_orders) != num_scattering_orders or num_scattering_orders < 1:
            raise ConfigurationError(
                f"num_scattering_orders must be >= 1, got {num_scattering_orders}"
            )
        if max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {max_workers}")

        batches = precomputed_wavelength_batches(self.params.num_precomputed_wavelengths)
        steps_per_batch = 2 + num_scattering_orders
        total_steps = len(batches) * steps_per_batch + (1 if len(batches) > 1 else 0)
        progress = _Progress(progress_callback, total_steps)
        progress.report(0.0, "Initializing atmosphere model...")
        logger.info(
            "Precomputing atmosphere tables on %s: %d wavelength batch(es), %d scattering orders",
            self.backend.name, len(batches), num_scattering_orders,
        )

        try:
            self.textures = self._precompute(batches, num_scattering_orders, progress, max_workers)
        except PrecomputationError:
            self.state = ModelState.FAILED
            raise
        except Exception as e:
            self.state = ModelState.FAILED
            raise PrecomputationError(f"Precomputation failed: {e}") from e

        self.state = ModelState.READY
        progress.report(1.0, "Precomputation complete.")
        logger.info("Precomputation complete.")

    def _precompute(self, batches, num_scattering_orders: int, progress: _Progress,
                    max_workers: int) -> PrecomputedTextures:
        sizes = self.sizes
        packing = self.packing
        backend = self.backend

        scattering = TextureBuffer(
            "scattering", sizes.scattering_shape, packing.scattering_format, backend)
        irradiance = TextureBuffer(
            "irradiance", sizes.irradiance_shape, packing.irradiance_format, backend)
        single_mie = None
        if packing.single_mie_scattering_format is not None:
            single_mie = TextureBuffer("single_mie_scattering", sizes.scattering_shape,
                                       packing.single_mie_scattering_format, backend)

        def run(batch):
            return self._precompute_batch(batch, num_scattering_orders, progress)

        # Batches are independent; their contributions are summed in batch order.
        # At most `workers` batches are pending or waiting to be merged.
        transmittance = None
        workers = min(max_workers, len(batches))
        remaining = iter(batches)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            pending = deque(executor.submit(run, batch) for batch in islice(remaining, workers))
            while pending:
                result = pending.popleft().result()
                for batch in islice(remaining, 1):
                    pending.append(executor.submit(run, batch))
                logger.debug("Merging wavelength batch %d", result.batch.index)
                scattering.write(result.scattering.data, blend=True)
                irradiance.write(result.irradiance.data, blend=True)
                if single_mie is not None:
                    single_mie.write(result.single_mie_scattering.data, blend=True)
                transmittance = result.transmittance

        if len(batches) > 1:
            # The stored transmittance is always at the red, green and blue wavelengths
            logger.info("Computing transmittance at %s nm", RGB_LAMBDAS.tolist())
            kernels = self._kernels(RGB_LAMBDAS)
            transmittance = TextureBuffer(
                "transmittance", sizes.transmittance_shape, packing.transmittance_format, backend)
            render(transmittance, kernels.compute_transmittance)
            progress.step("Computing transmittance...")

        backend.synchronize()
        textures = PrecomputedTextures(
            transmittance=transmittance.freeze(),
            scattering=scattering.freeze(),
            irradiance=irradiance.freeze(),
            single_mie_scattering=single_mie.freeze() if single_mie is not None else None,
        )
        for name, table in vars(textures).items():
            if table is not None and not np.all(np.isfinite(table)):
                raise PrecomputationError(f"Non-finite values in the {name} table")
        return textures

    def _kernels(self, lambdas) -> PrecomputeKernels:
        config = KernelConfig.for_batch(self.params, lambdas)
        return PrecomputeKernels(
            config, self.params.for_wavelengths(lambdas), self.sizes, self.samples, self.backend)

    def _precompute_batch(self, batch: WavelengthBatch, num_scattering_orders: int,
                          progress: _Progress) -> BatchResult:
        """Compute the contribution of one wavelength triple to every table."""
        sizes = self.sizes
        packing = self.packing
        backend = self.backend
        matrix = batch.luminance_from_radiance
        label = f"[{', '.join(f'{l:.1f}' for l in batch.lambdas)}] nm"
        kernels = self._kernels(batch.lambdas)

        fmt = TextureFormat(3)
        transmittance = TextureBuffer(
            "transmittance", sizes.transmittance_shape, packing.transmittance_format, backend)
        delta_irradiance = TextureBuffer("delta_irradiance", sizes.irradiance_shape, fmt, backend)
        delta_rayleigh = TextureBuffer("delta_rayleigh", sizes.scattering_shape, fmt, backend)
        delta_mie = TextureBuffer("delta_mie", sizes.scattering_shape, fmt, backend)
        scattering = TextureBuffer(
            "scattering", sizes.scattering_shape, packing.scattering_format, backend)
        irradiance = TextureBuffer(
            "irradiance", sizes.irradiance_shape, packing.irradiance_format, backend)
        single_mie = None
        if packing.single_mie_scattering_format is not None:
            single_mie = TextureBuffer("single_mie_scattering", sizes.scattering_shape,
                                       packing.single_mie_scattering_format, backend)

        logger.info("Computing transmittance %s", label)
        render(transmittance, kernels.compute_transmittance)
        progress.step(f"Computing transmittance {label}...")

        # The irradiance table only receives sky irradiance
        logger.info("Computing direct irradiance %s", label)
        render(delta_irradiance, kernels.compute_direct_irradiance, transmittance)
        progress.step(f"Computing direct irradiance {label}...")

        logger.info("Computing single scattering %s", label)
        render((delta_rayleigh, delta_mie), kernels.compute_single_scattering, transmittance)
        targets = (scattering,) if single_mie is None else (scattering, single_mie)
        render(
            targets,
            lambda k, rayleigh, mie: kernels.pack_single_scattering(rayleigh[k], mie[k], matrix),
            delta_rayleigh, delta_mie,
        )
        progress.step(f"Computing single scattering {label}...")

        orders = iterate_scattering_orders(
            kernels, transmittance, delta_irradiance, delta_rayleigh, delta_mie,
            num_scattering_orders)
        for result in orders:
            logger.info("Computed scattering order %d %s", result.order, label)
            render(irradiance, lambda delta: kernels.to_luminance(delta, matrix),
                   result.delta_irradiance, blend=True)
            render(
                scattering,
                lambda k, delta: kernels.pack_multiple_scattering(k, delta[k], matrix),
                result.delta_multiple_scattering, blend=True,
            )
            progress.step(f"Computing scattering order {result.order} {label}...")

        backend.synchronize()
        return BatchResult(batch, transmittance, scattering, irradiance, single_mie)

    # -------------------------------------------------------------------------
    # Shading layer interface
    # -------------------------------------------------------------------------

    def get_shader_uniforms(self) -> dict:
        """
        Get dictionary of uniform values for shaders.

        Lengths are in the model's length unit and spectral values are at the
        red, green and blue wavelengths.

        Returns:
            Dictionary with uniform names and values
        """
        self._require_ready()

        rgb = self.params.for_wavelengths(RGB_LAMBDAS)
        sizes = self.sizes
        return {
            'bottom_radius': rgb.bottom_radius,
            'top_radius': rgb.top_radius,
            'rayleigh_density': rgb.rayleigh_density,
            'rayleigh_scattering': rgb.rayleigh_scattering,
            'mie_density': rgb.mie_density,
            'mie_scattering': rgb.mie_scattering,
            'mie_extinction': rgb.mie_extinction,
            'mie_phase_function_g': rgb.mie_phase_function_g,
            'absorption_density': rgb.absorption_density,
            'absorption_extinction': rgb.absorption_extinction,
            'ground_albedo': rgb.ground_albedo,
            'sun_angular_radius': rgb.sun_angular_radius,
            'solar_irradiance': rgb.solar_irradiance,
            'mu_s_min': rgb.mu_s_min,
            'sky_spectral_radiance_to_luminance': self.sky_spectral_radiance_to_luminance,
            'sun_spectral_radiance_to_luminance': self.sun_spectral_radiance_to_luminance,
            'transmittance_texture_width': sizes.transmittance_width,
            'transmittance_texture_height': sizes.transmittance_height,
            'scattering_texture_r_size': sizes.scattering_r_size,
            'scattering_texture_mu_size': sizes.scattering_mu_size,
            'scattering_texture_mu_s_size': sizes.scattering_mu_s_size,
            'scattering_texture_nu_size': sizes.scattering_nu_size,
            'irradiance_texture_width': sizes.irradiance_width,
            'irradiance_texture_height': sizes.irradiance_height,
            'combine_scattering_textures': self.params.combine_scattering_textures,
            'half_precision': self.params.half_precision,
            'radiance_api_enabled': self.radiance_api_enabled,
        }

    def set_program_uniforms(self, program, transmittance_unit: int, scattering_unit: int,
                             irradiance_unit: int,
                             single_mie_scattering_unit: Optional[int] = None) -> None:
        """
        Bind the tables to a shading program on caller-chosen texture units.

        ``program`` must provide ``uniform_sampler(name, unit, data)``.
        """
        from ..utils.gpu import bind_textures

        self._require_ready()
        bind_textures(
            self.textures, program,
            transmittance_unit=transmittance_unit,
            scattering_unit=scattering_unit,
            irradiance_unit=irradiance_unit,
            single_mie_scattering_unit=single_mie_scattering_unit,
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save_textures(self, filepath: str) -> None:
        """Save precomputed textures to a file (NumPy format)."""
        self._require_ready()

        tables = {
            'transmittance': self.textures.transmittance,
            'scattering': self.textures.scattering,
            'irradiance': self.textures.irradiance,
        }
        if self.textures.single_mie_scattering is not None:
            tables['single_mie'] = self.textures.single_mie_scattering
        np.savez_compressed(filepath, **tables)
        logger.info("Saved textures to %s", filepath)

    def load_textures(self, filepath: str) -> None:
        """
        Load textures saved by save_textures for the same sizes and packing.

        Raises:
            ConfigurationError: If the stored tables do not match this model
            RuntimeError: If the model is not PENDING
        """
        if self.state is not ModelState.PENDING:
            raise RuntimeError(
                f"Tables can only be loaded into a new model (state: {self.state.value})."
            )

        packing = self.packing
        sizes = self.sizes
        expected = {
            'transmittance': (sizes.transmittance_shape, packing.transmittance_format),
            'scattering': (sizes.scattering_shape, packing.scattering_format),
            'irradiance': (sizes.irradiance_shape, packing.irradiance_format),
        }
        if packing.single_mie_scattering_format is not None:
            expected['single_mie'] = (sizes.scattering_shape, packing.single_mie_scattering_format)

        tables = {}
        with np.load(filepath) as data:
            for name, (shape, fmt) in expected.items():
                if name not in data:
                    raise ConfigurationError(f"{filepath} has no {name} table")
                table = data[name]
                if table.shape != tuple(shape) + (fmt.channels,):
                    raise ConfigurationError(
                        f"{name} table in {filepath} has shape {table.shape}, "
                        f"expected {tuple(shape) + (fmt.channels,)}"
                    )
                table = table.astype(fmt.dtype)
                table.setflags(write=False)
                tables[name] = table

        self.textures = PrecomputedTextures(
            transmittance=tables['transmittance'],
            scattering=tables['scattering'],
            irradiance=tables['irradiance'],
            single_mie_scattering=tables.get('single_mie'),
        )
        self.state = ModelState.READY
        logger.info("Loaded textures from %s", filepath)

    def save_textures_exr(self, output_dir: str) -> None:
        """
        Save precomputed textures as EXR files.

        Creates transmittance.exr, irradiance.exr, scattering.exr (3D stored
        as tiled 2D) and single_mie_scattering.exr when it is separate.

        Args:
            output_dir: Directory to save EXR files
        """
        from ..utils.exr import export_textures

        self._require_ready()
        os.makedirs(output_dir, exist_ok=True)
        export_textures(self.textures, output_dir)

    def release(self) -> None:
        """Drop the tables. The model cannot be used afterwards."""
        self.textures = None
        self.state = ModelState.RELEASED
