"""Exceptions raised while assembling recurrent models."""


class ConfigurationError(ValueError):
    """Raised when hyperparameters or the dictionary cannot describe a valid model."""
