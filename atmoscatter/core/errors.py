"""
Atmoscatter Errors - Exceptions raised by the model.
"""


class ConfigurationError(ValueError):
    """Invalid atmosphere, table or sampling configuration."""


class ApiUnavailableError(ConfigurationError):
    """
    Raised when a sampling entry point is not offered by the model's mode.

    Radiance entry points only exist when at most three wavelengths are
    precomputed; otherwise the tables hold luminance values.
    """


class PrecomputationError(RuntimeError):
    """The one-shot precomputation could not be resourced or prepared."""
