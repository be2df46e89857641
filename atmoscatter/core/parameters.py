"""
Atmoscatter Parameters - Atmosphere parameter structures.

AtmosphereParameters describes the planet and its atmosphere in SI units
with spectral quantities sampled at arbitrary wavelengths. The precomputation
kernels work on a KernelAtmosphere: the same description sampled at three
wavelengths and expressed in the model's length unit.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Sequence, Tuple

import numpy as np

from .constants import (
    EARTH_RADIUS,
    EARTH_TOP_RADIUS,
    SUN_ANGULAR_RADIUS,
    RAYLEIGH_SCALE_HEIGHT,
    RAYLEIGH_SCATTERING_COEFFICIENTS,
    MIE_SCALE_HEIGHT,
    MIE_ANGSTROM_ALPHA,
    MIE_ANGSTROM_BETA,
    MIE_SINGLE_SCATTERING_ALBEDO,
    MIE_SCATTERING_COEFFICIENTS,
    MIE_EXTINCTION_COEFFICIENTS,
    MIE_PHASE_FUNCTION_G,
    OZONE_CENTER_ALTITUDE,
    OZONE_WIDTH,
    OZONE_ABSORPTION_COEFFICIENTS,
    DEFAULT_GROUND_ALBEDO,
    CONSTANT_SOLAR_IRRADIANCE,
    MAX_SUN_ZENITH_ANGLE,
    HALF_PRECISION_MAX_SUN_ZENITH_ANGLE,
    DEFAULT_LENGTH_UNIT_IN_METERS,
    SPECTRAL_WAVELENGTHS,
    SOLAR_IRRADIANCE,
)
from .errors import ConfigurationError
from .spectrum import sample_spectrum
from .textures import TexturePacking


@dataclass(frozen=True)
class DensityProfileLayer:
    """
    An atmosphere layer whose density is defined as:
        exp_term * exp(exp_scale * h) + linear_term * h + constant_term
    clamped to [0, 1], where h is the altitude.

    Attributes:
        width: Layer width in meters (ignored for top layer)
        exp_term: Exponential term coefficient (unitless)
        exp_scale: Exponential scale in m^-1
        linear_term: Linear term coefficient in m^-1
        constant_term: Constant term (unitless)
    """
    width: float = 0.0
    exp_term: float = 0.0
    exp_scale: float = 0.0
    linear_term: float = 0.0
    constant_term: float = 0.0

    def get_density(self, altitude, xp=np):
        """Compute density at given altitude within this layer."""
        density = (
            self.exp_term * xp.exp(self.exp_scale * altitude) +
            self.linear_term * altitude +
            self.constant_term
        )
        return xp.clip(density, 0.0, 1.0)

    def scaled(self, length_unit: float) -> 'DensityProfileLayer':
        """Express the layer with lengths measured in ``length_unit`` meters."""
        return DensityProfileLayer(
            width=self.width / length_unit,
            exp_term=self.exp_term,
            exp_scale=self.exp_scale * length_unit,
            linear_term=self.linear_term * length_unit,
            constant_term=self.constant_term,
        )


_EMPTY_LAYER = DensityProfileLayer()


@dataclass(frozen=True)
class DensityProfile:
    """
    Up to two layers, bottom to top. The top layer extends to the top of the
    atmosphere; a single layer sits above an empty zero-width bottom layer.
    Both layers are evaluated at the altitude above the ground, not relative
    to their own base.
    """
    layers: Tuple[DensityProfileLayer, ...] = ()

    def __post_init__(self):
        layers = tuple(self.layers)
        if len(layers) > 2:
            raise ConfigurationError(
                f"A density profile has at most 2 layers, got {len(layers)}"
            )
        for layer in layers:
            if not isinstance(layer, DensityProfileLayer):
                raise ConfigurationError(f"Expected DensityProfileLayer, got {layer!r}")
        object.__setattr__(self, 'layers', layers)

    @classmethod
    def exponential(cls, scale_height: float) -> 'DensityProfile':
        """Density exp(-h / scale_height)."""
        return cls((DensityProfileLayer(exp_term=1.0, exp_scale=-1.0 / scale_height),))

    @classmethod
    def constant(cls, density: float = 1.0) -> 'DensityProfile':
        return cls((DensityProfileLayer(constant_term=density),))

    @property
    def is_empty(self) -> bool:
        return not self.layers

    def get_density(self, altitude, xp=np):
        """Density of the profile at the given altitude(s)."""
        altitude = xp.asarray(altitude, dtype=xp.float64)
        if not self.layers:
            return xp.zeros_like(altitude)
        if len(self.layers) == 1:
            bottom, top = _EMPTY_LAYER, self.layers[0]
        else:
            bottom, top = self.layers
        return xp.where(
            altitude < bottom.width,
            bottom.get_density(altitude, xp),
            top.get_density(altitude, xp),
        )

    def scaled(self, length_unit: float) -> 'DensityProfile':
        return DensityProfile(tuple(layer.scaled(length_unit) for layer in self.layers))

    def __len__(self):
        return len(self.layers)


def _as_profile(value) -> DensityProfile:
    if isinstance(value, DensityProfile):
        return value
    if isinstance(value, DensityProfileLayer):
        return DensityProfile((value,))
    return DensityProfile(tuple(value))


def _read_only_vector(value, name: str) -> np.ndarray:
    array = np.array(value, dtype=np.float64).reshape(-1)
    if not np.all(np.isfinite(array)):
        raise ConfigurationError(f"{name} contains non-finite values")
    array.setflags(write=False)
    return array


_SPECTRAL_FIELDS = (
    'solar_irradiance',
    'rayleigh_scattering',
    'mie_scattering',
    'mie_extinction',
    'absorption_extinction',
    'ground_albedo',
)


@dataclass(frozen=True, eq=False)
class KernelAtmosphere:
    """
    Atmosphere sampled at one wavelength triple, lengths in the model's unit.

    This is what every precomputation kernel and the reference renderer read.
    """
    lambdas: np.ndarray
    solar_irradiance: np.ndarray
    sun_angular_radius: float
    bottom_radius: float
    top_radius: float
    rayleigh_density: DensityProfile
    rayleigh_scattering: np.ndarray
    mie_density: DensityProfile
    mie_scattering: np.ndarray
    mie_extinction: np.ndarray
    mie_phase_function_g: float
    absorption_density: DensityProfile
    absorption_extinction: np.ndarray
    ground_albedo: np.ndarray
    mu_s_min: float


@dataclass(frozen=True, eq=False)
class AtmosphereParameters:
    """
    Complete atmosphere parameters for the Bruneton model.

    All spatial values are in meters unless otherwise noted.
    Scattering/extinction coefficients are in m^-1.
    Wavelengths are in nanometers.

    Instances are immutable and validated on construction; use ``replace``
    to derive a modified copy.
    """

    # Wavelengths for spectral data (nm), strictly increasing
    wavelengths: np.ndarray = field(default_factory=lambda: SPECTRAL_WAVELENGTHS.copy())

    # Solar irradiance at top of atmosphere (W/m^2/nm) at each wavelength
    solar_irradiance: np.ndarray = field(default_factory=lambda: SOLAR_IRRADIANCE.copy())

    # Sun angular radius (radians)
    sun_angular_radius: float = SUN_ANGULAR_RADIUS

    # Planet geometry
    bottom_radius: float = EARTH_RADIUS  # Planet surface radius (m)
    top_radius: float = EARTH_TOP_RADIUS  # Top of atmosphere radius (m)

    # Rayleigh scattering (air molecules)
    rayleigh_density: DensityProfile = field(
        default_factory=lambda: DensityProfile.exponential(RAYLEIGH_SCALE_HEIGHT)
    )
    rayleigh_scattering: np.ndarray = field(
        default_factory=lambda: RAYLEIGH_SCATTERING_COEFFICIENTS.copy()
    )

    # Mie scattering (aerosols)
    mie_density: DensityProfile = field(
        default_factory=lambda: DensityProfile.exponential(MIE_SCALE_HEIGHT)
    )
    mie_scattering: np.ndarray = field(
        default_factory=lambda: MIE_SCATTERING_COEFFICIENTS.copy()
    )
    mie_extinction: np.ndarray = field(
        default_factory=lambda: MIE_EXTINCTION_COEFFICIENTS.copy()
    )
    mie_phase_function_g: float = MIE_PHASE_FUNCTION_G

    # Absorption (ozone layer)
    absorption_density: DensityProfile = field(default_factory=lambda: ozone_density_profile())
    absorption_extinction: np.ndarray = field(
        default_factory=lambda: OZONE_ABSORPTION_COEFFICIENTS.copy()
    )

    # Ground albedo at each wavelength
    ground_albedo: np.ndarray = field(
        default_factory=lambda: np.full(len(SPECTRAL_WAVELENGTHS), DEFAULT_GROUND_ALBEDO)
    )

    # Maximum sun zenith angle for precomputation (radians)
    max_sun_zenith_angle: float = MAX_SUN_ZENITH_ANGLE

    # Length unit of positions given to the renderer (1.0 = meters, 1000.0 = kilometers)
    length_unit_in_meters: float = DEFAULT_LENGTH_UNIT_IN_METERS

    # Precomputation options
    num_precomputed_wavelengths: int = 3  # > 3 precomputes luminance tables
    combine_scattering_textures: bool = True
    half_precision: bool = False

    def __post_init__(self):
        """Convert arrays and profiles, then validate eagerly."""
        wavelengths = _read_only_vector(self.wavelengths, 'wavelengths')
        object.__setattr__(self, 'wavelengths', wavelengths)
        for name in _SPECTRAL_FIELDS:
            object.__setattr__(self, name, _read_only_vector(getattr(self, name), name))
        for name in ('rayleigh_density', 'mie_density', 'absorption_density'):
            object.__setattr__(self, name, _as_profile(getattr(self, name)))
        self._validate()

    def _validate(self) -> None:
        if len(self.wavelengths) == 0:
            raise ConfigurationError("At least one wavelength is required")
        if np.any(np.diff(self.wavelengths) <= 0):
            raise ConfigurationError("wavelengths must be strictly increasing")
        for name in _SPECTRAL_FIELDS:
            size = len(getattr(self, name))
            if size != len(self.wavelengths):
                raise ConfigurationError(
                    f"{name} has {size} values but there are "
                    f"{len(self.wavelengths)} wavelengths"
                )
        if not 0.0 < self.sun_angular_radius < 0.1:
            raise ConfigurationError(
                f"sun_angular_radius must be in (0, 0.1) rad, got {self.sun_angular_radius}"
            )
        if not 0.0 < self.bottom_radius < self.top_radius:
            raise ConfigurationError(
                f"Expected 0 < bottom_radius < top_radius, got "
                f"{self.bottom_radius} and {self.top_radius}"
            )
        if not -1.0 < self.mie_phase_function_g < 1.0:
            raise ConfigurationError(
                f"mie_phase_function_g must be in (-1, 1), got {self.mie_phase_function_g}"
            )
        if not 0.0 < self.max_sun_zenith_angle <= np.pi:
            raise ConfigurationError(
                f"max_sun_zenith_angle must be in (0, pi], got {self.max_sun_zenith_angle}"
            )
        if not self.length_unit_in_meters > 0.0:
            raise ConfigurationError(
                f"length_unit_in_meters must be positive, got {self.length_unit_in_meters}"
            )
        if self.num_precomputed_wavelengths < 1:
            raise ConfigurationError(
                f"num_precomputed_wavelengths must be >= 1, "
                f"got {self.num_precomputed_wavelengths}"
            )

    @classmethod
    def earth_default(
        cls,
        use_ozone: bool = True,
        use_constant_solar_spectrum: bool = False,
        num_precomputed_wavelengths: int = 3,
        combine_scattering_textures: bool = True,
        half_precision: bool = False,
    ) -> 'AtmosphereParameters':
        """Create default Earth atmosphere parameters."""
        wavelengths = SPECTRAL_WAVELENGTHS
        if use_constant_solar_spectrum:
            solar_irradiance = np.full(len(wavelengths), CONSTANT_SOLAR_IRRADIANCE)
        else:
            solar_irradiance = SOLAR_IRRADIANCE
        if use_ozone:
            absorption_extinction = OZONE_ABSORPTION_COEFFICIENTS
        else:
            absorption_extinction = np.zeros(len(wavelengths))
        return cls(
            wavelengths=wavelengths,
            solar_irradiance=solar_irradiance,
            absorption_extinction=absorption_extinction,
            max_sun_zenith_angle=(
                HALF_PRECISION_MAX_SUN_ZENITH_ANGLE if half_precision else MAX_SUN_ZENITH_ANGLE
            ),
            num_precomputed_wavelengths=num_precomputed_wavelengths,
            combine_scattering_textures=combine_scattering_textures,
            half_precision=half_precision,
        )

    @classmethod
    def from_artistic_controls(
        cls,
        rayleigh_density_scale: float = 1.0,
        mie_density_scale: float = 1.0,
        mie_phase_g: float = MIE_PHASE_FUNCTION_G,
        rayleigh_height: float = RAYLEIGH_SCALE_HEIGHT,
        mie_height: float = MIE_SCALE_HEIGHT,
        ground_albedo: float = DEFAULT_GROUND_ALBEDO,
        use_ozone: bool = True,
        ozone_density: float = 1.0,
        mie_angstrom_beta: float = MIE_ANGSTROM_BETA,
        **options,
    ) -> 'AtmosphereParameters':
        """
        Create atmosphere parameters from artistic control values.

        Args:
            rayleigh_density_scale: Multiplier for air molecule density
            mie_density_scale: Multiplier for aerosol density
            mie_phase_g: Mie phase function asymmetry parameter
            rayleigh_height: Scale height for air molecules (meters)
            mie_height: Scale height for aerosols (meters)
            ground_albedo: Ground reflectivity (0-1)
            use_ozone: Include ozone absorption layer
            ozone_density: Multiplier for ozone absorption (affects sunset colors)
            mie_angstrom_beta: Aerosol optical thickness (higher = denser haze)
            **options: Forwarded to earth_default (precision, packing, wavelengths count)
        """
        params = cls.earth_default(use_ozone=use_ozone, **options)
        lambda_um = params.wavelengths * 1e-3

        mie_extinction = (
            mie_angstrom_beta / mie_height * lambda_um ** -MIE_ANGSTROM_ALPHA * mie_density_scale
        )
        if not use_ozone or ozone_density <= 0:
            absorption_extinction = np.zeros_like(params.wavelengths)
        else:
            absorption_extinction = OZONE_ABSORPTION_COEFFICIENTS * ozone_density

        return params.replace(
            rayleigh_scattering=RAYLEIGH_SCATTERING_COEFFICIENTS * rayleigh_density_scale,
            rayleigh_density=DensityProfile.exponential(rayleigh_height),
            mie_scattering=mie_extinction * MIE_SINGLE_SCATTERING_ALBEDO,
            mie_extinction=mie_extinction,
            mie_phase_function_g=float(np.clip(mie_phase_g, -0.999, 0.999)),
            mie_density=DensityProfile.exponential(mie_height),
            ground_albedo=np.full(len(params.wavelengths), ground_albedo),
            absorption_extinction=absorption_extinction,
        )

    @classmethod
    def from_settings(cls, settings) -> 'AtmosphereParameters':
        """
        Create atmosphere parameters from any object exposing the artistic
        controls as attributes (a settings group, argparse namespace, ...).
        Missing attributes keep their defaults.
        """
        names = (
            'rayleigh_density_scale', 'mie_density_scale', 'mie_phase_g',
            'rayleigh_height', 'mie_height', 'ground_albedo', 'use_ozone',
            'ozone_density', 'mie_angstrom_beta', 'num_precomputed_wavelengths',
            'combine_scattering_textures', 'half_precision',
        )
        controls = {name: getattr(settings, name) for name in names if hasattr(settings, name)}
        return cls.from_artistic_controls(**controls)

    def replace(self, **changes) -> 'AtmosphereParameters':
        """Return a validated copy with some fields changed."""
        return dataclasses.replace(self, **changes)

    def get_atmosphere_height(self) -> float:
        """Return the atmosphere thickness in meters."""
        return self.top_radius - self.bottom_radius

    @property
    def mu_s_min(self) -> float:
        """Cosine of the maximum sun zenith angle."""
        return float(np.cos(self.max_sun_zenith_angle))

    @property
    def precompute_illuminance(self) -> bool:
        """True when the tables hold luminance rather than radiance."""
        return self.num_precomputed_wavelengths > 3

    @property
    def packing(self) -> TexturePacking:
        return TexturePacking(self.combine_scattering_textures, self.half_precision)

    def for_wavelengths(self, lambdas: Sequence[float]) -> KernelAtmosphere:
        """Sample every spectral quantity at ``lambdas`` and convert to the length unit."""
        lambdas = np.asarray(lambdas, dtype=np.float64)
        unit = self.length_unit_in_meters

        def sample(values, scale=1.0):
            return sample_spectrum(self.wavelengths, values, lambdas) * scale

        return KernelAtmosphere(
            lambdas=lambdas,
            solar_irradiance=sample(self.solar_irradiance),
            sun_angular_radius=self.sun_angular_radius,
            bottom_radius=self.bottom_radius / unit,
            top_radius=self.top_radius / unit,
            rayleigh_density=self.rayleigh_density.scaled(unit),
            rayleigh_scattering=sample(self.rayleigh_scattering, unit),
            mie_density=self.mie_density.scaled(unit),
            mie_scattering=sample(self.mie_scattering, unit),
            mie_extinction=sample(self.mie_extinction, unit),
            mie_phase_function_g=self.mie_phase_function_g,
            absorption_density=self.absorption_density.scaled(unit),
            absorption_extinction=sample(self.absorption_extinction, unit),
            ground_albedo=sample(self.ground_albedo),
            mu_s_min=self.mu_s_min,
        )


def ozone_density_profile() -> DensityProfile:
    """Ozone layer of the reference Earth atmosphere (tent shape peaking at 25km)."""
    return DensityProfile((
        DensityProfileLayer(
            width=OZONE_CENTER_ALTITUDE,
            linear_term=1.0 / OZONE_WIDTH,
            constant_term=-2.0 / 3.0,
        ),
        DensityProfileLayer(
            linear_term=-1.0 / OZONE_WIDTH,
            constant_term=8.0 / 3.0,
        ),
    ))
