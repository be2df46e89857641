"""
Atmoscatter Spectrum - Spectral sampling and luminance conversion.

Converts spectral quantities to linear sRGB with the CIE 1931 2-degree color
matching functions, and splits the visible range into wavelength triples
when more than three wavelengths are precomputed.
"""

from dataclasses import dataclass
from typing import List

import numpy as np

from .constants import (
    CIE_2_DEG_COLOR_MATCHING_FUNCTIONS,
    LAMBDA_MIN,
    LAMBDA_MAX,
    MAX_LUMINOUS_EFFICACY,
    RGB_LAMBDAS,
    XYZ_TO_SRGB,
)

# Integration step (nm) for spectrum to color conversions
_DLAMBDA = 1.0


def sample_spectrum(wavelengths, values, wavelength):
    """
    Linearly interpolate ``values`` at ``wavelength``.

    Outside the sampled range the nearest end value is returned.
    """
    return np.interp(wavelength, wavelengths, values)


def cie_color_matching_function(wavelength, column: int):
    """
    Value of a CIE color matching function at ``wavelength`` (nm).

    Args:
        wavelength: Scalar or array of wavelengths
        column: 1 for x_bar, 2 for y_bar, 3 for z_bar

    Returns:
        Linear interpolation of the 5nm table, 0 outside (360, 830)
    """
    table = CIE_2_DEG_COLOR_MATCHING_FUNCTIONS
    wavelength = np.asarray(wavelength, dtype=np.float64)
    u = (wavelength - LAMBDA_MIN) / 5.0
    row = np.clip(np.floor(u).astype(int), 0, len(table) - 2)
    u = u - row
    value = table[row, column] * (1.0 - u) + table[row + 1, column] * u
    inside = (wavelength > LAMBDA_MIN) & (wavelength < LAMBDA_MAX)
    return np.where(inside, value, 0.0)


def xyz_color_matching(wavelength) -> np.ndarray:
    """(x_bar, y_bar, z_bar) stacked on the last axis."""
    return np.stack([cie_color_matching_function(wavelength, column) for column in (1, 2, 3)],
                    axis=-1)


def _integration_wavelengths() -> np.ndarray:
    return np.arange(LAMBDA_MIN, LAMBDA_MAX, _DLAMBDA)


def convert_spectrum_to_linear_srgb(wavelengths, spectrum) -> np.ndarray:
    """
    Convert a spectral radiance (or irradiance) to linear sRGB luminance.

    Integrates the spectrum against the CIE color matching functions and
    applies the XYZ to sRGB matrix and the maximum luminous efficacy.
    """
    lambdas = _integration_wavelengths()
    values = sample_spectrum(wavelengths, spectrum, lambdas)
    xyz = (xyz_color_matching(lambdas) * values[:, None]).sum(axis=0)
    return MAX_LUMINOUS_EFFICACY * XYZ_TO_SRGB.dot(xyz) * _DLAMBDA


def spectral_radiance_to_luminance_factors(wavelengths, solar_irradiance,
                                           lambda_power: float) -> np.ndarray:
    """
    Factors converting radiance at the RGB wavelengths to sRGB luminance.

    The radiance spectrum is approximated by the solar spectrum times
    (lambda / lambda_rgb)^lambda_power, which is exact for the sun
    (power 0) and a good fit for the sky (power -3).
    """
    solar_rgb = sample_spectrum(wavelengths, solar_irradiance, RGB_LAMBDAS)
    lambdas = _integration_wavelengths()
    rgb_bar = xyz_color_matching(lambdas).dot(XYZ_TO_SRGB.T)
    irradiance = sample_spectrum(wavelengths, solar_irradiance, lambdas)
    weights = (irradiance[:, None] / solar_rgb *
               (lambdas[:, None] / RGB_LAMBDAS) ** lambda_power)
    return (rgb_bar * weights).sum(axis=0) * MAX_LUMINOUS_EFFICACY * _DLAMBDA


def luminance_from_radiance(lambdas, dlambda: float) -> np.ndarray:
    """
    3x3 matrix mapping radiance at ``lambdas`` to its share of sRGB luminance.

    Entry [c][j] is XYZ_TO_SRGB[c] . cmf(lambdas[j]) * dlambda. The maximum
    luminous efficacy is left out and applied at sampling time.
    """
    cmf = xyz_color_matching(np.asarray(lambdas, dtype=np.float64))
    return XYZ_TO_SRGB.dot(cmf.T) * dlambda


@dataclass(frozen=True)
class WavelengthBatch:
    """One wavelength triple and the matrix weighting its contribution."""
    index: int
    lambdas: np.ndarray
    luminance_from_radiance: np.ndarray


def precomputed_wavelength_batches(num_precomputed_wavelengths: int) -> List[WavelengthBatch]:
    """
    Split the precomputation into wavelength triples.

    Up to three wavelengths use the RGB wavelengths and the identity matrix.
    Otherwise the count is rounded up to a multiple of 3 and wavelengths are
    spread evenly over [360, 830] nm, each triple weighted by its
    luminance-from-radiance matrix.
    """
    if num_precomputed_wavelengths <= 3:
        return [WavelengthBatch(0, RGB_LAMBDAS.copy(), np.eye(3))]

    num_iterations = (num_precomputed_wavelengths + 2) // 3
    dlambda = (LAMBDA_MAX - LAMBDA_MIN) / (3.0 * num_iterations)
    batches = []
    for i in range(num_iterations):
        lambdas = LAMBDA_MIN + (3 * i + np.array([0.5, 1.5, 2.5])) * dlambda
        batches.append(WavelengthBatch(i, lambdas, luminance_from_radiance(lambdas, dlambda)))
    return batches


def white_point(wavelengths, solar_irradiance) -> np.ndarray:
    """sRGB color of the sun normalized to unit mean, for white balancing."""
    rgb = convert_spectrum_to_linear_srgb(wavelengths, solar_irradiance)
    return rgb / rgb.mean()
