"""Vocabulary collaborator consumed by the model factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from torch import Tensor

from .errors import ConfigurationError


@dataclass(frozen=True)
class Dictionary:
    """Per-class statistics and clustering for a fixed vocabulary.

    Attributes:
        index_to_freq: Frequency of each class, ordered by class index. Only the
            length is read when building a model.
        mapping: Optional ``n_classes x 2`` table of ``(cluster, index in cluster)``
            rows used by the hierarchical softmax head.
    """

    index_to_freq: Union[Sequence[int], Tensor]
    mapping: Optional[Any] = None


def resolve_n_classes(dictionary: Any, n_classes: Optional[int] = None) -> int:
    """Return the explicit override when given, else the dictionary's class count."""

    if n_classes is None:
        index_to_freq = getattr(dictionary, "index_to_freq", None)
        if index_to_freq is None:
            raise ConfigurationError("Dictionary has no index_to_freq and n_classes was not given")
        n_classes = len(index_to_freq)
    if isinstance(n_classes, bool) or not isinstance(n_classes, int):
        raise ConfigurationError(f"n_classes must be an integer, got {n_classes!r}")
    if n_classes <= 0:
        raise ConfigurationError(f"n_classes must be positive, got {n_classes}")
    return n_classes
