"""Hyperparameters and model-name parsing for the recurrent model factory."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .errors import ConfigurationError


class CellFamily(enum.Enum):
    SRN = "srn"
    LSTM = "lstm"


class OutputHeadKind(enum.Enum):
    DENSE = "_sm"
    HIERARCHICAL = "_hsm"


@dataclass(frozen=True)
class ModelName:
    """Typed selection decoded from a free-form model name such as ``lstm_hsm``."""

    cell: CellFamily
    head: OutputHeadKind


def _single_match(name: str, options, what: str):
    matches = [option for option in options if option.value in name]
    if len(matches) != 1:
        tokens = " or ".join(f"`{option.value}`" for option in options)
        if matches:
            raise ConfigurationError(
                f"Ambiguous model name {name!r}: should include exactly one of {tokens}"
            )
        raise ConfigurationError(f"Wrong model name {name!r}: should include {tokens} ({what})")
    return matches[0]


def parse_model_name(name: str) -> ModelName:
    """Decode a name such as ``"lstm_hsm"`` into its cell family and output head.

    Raises:
        ConfigurationError: If the name holds none or both of ``srn`` / ``lstm``, or
            none or both of ``_sm`` / ``_hsm``.
    """
    if not isinstance(name, str):
        raise ConfigurationError(f"Model name must be a string, got {type(name).__name__}")
    cell = _single_match(name, list(CellFamily), "cell family")
    head = _single_match(name, list(OutputHeadKind), "output head")
    return ModelName(cell=cell, head=head)


@dataclass(frozen=True)
class Hyperparameters:
    """Hyperparameters consumed by :func:`rnnfactory.factory.make_model`.

    Args:
        name: Model name combining a cell family token (``srn`` or ``lstm``) and an
            output head token (``_sm`` or ``_hsm``), e.g. ``"srn_sm"``.
        n_hidden: Width of the hidden (and, for LSTMs, memory) state.
        non_linearity: ``"relu"`` or ``"sigmoid"``. Only read by SRN cells.
    """

    name: str
    n_hidden: int
    non_linearity: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.n_hidden, bool) or not isinstance(self.n_hidden, int):
            raise ConfigurationError(f"n_hidden must be an integer, got {self.n_hidden!r}")
        if self.n_hidden <= 0:
            raise ConfigurationError(f"n_hidden must be positive, got {self.n_hidden}")

    @property
    def model_name(self) -> ModelName:
        return parse_model_name(self.name)

    @classmethod
    def from_dict(cls, config_dict: Mapping[str, Any]) -> "Hyperparameters":
        """Create hyperparameters from a dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config_dict) - known)
        if unknown:
            raise ConfigurationError(f"Unknown hyperparameters: {', '.join(unknown)}")
        try:
            return cls(**config_dict)
        except TypeError as err:
            raise ConfigurationError(str(err)) from err

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "Hyperparameters":
        """Load hyperparameters from a YAML file."""
        with open(yaml_path, "r") as f:
            config_dict = yaml.safe_load(f)
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"{yaml_path} does not contain a mapping")
        return cls.from_dict(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def save_yaml(self, yaml_path: Union[str, Path]) -> None:
        with open(yaml_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)
