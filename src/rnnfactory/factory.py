"""Assemble an encoder cell, an output head and its internal-layer registry."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Tuple, Union

import torch
from torch import nn

from .cells import RecurrentCell, build_lstm_cell, build_srn_cell, srn_activation
from .config import CellFamily, Hyperparameters, OutputHeadKind
from .dictionary import resolve_n_classes
from .errors import ConfigurationError
from .graph import Graph
from .heads import HierarchicalSoftmax, build_output_head, mapping_table
from .registry import InternalLayerRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Model:
    """Encoder cell plus exactly one of ``decoder`` or ``decoder_with_loss``.

    Attributes:
        encoder: Cell applied once per token, threading its state.
        decoder: Dense head producing ``(B, n_classes)`` log-probabilities.
        decoder_with_loss: Hierarchical softmax returning a scalar loss from
            ``(hidden, target)``.
        internal_layers: Named handles into the encoder's graph.
    """

    encoder: RecurrentCell
    decoder: Optional[Graph]
    decoder_with_loss: Optional[HierarchicalSoftmax]
    internal_layers: InternalLayerRegistry

    def __post_init__(self) -> None:
        if self.encoder is None:
            raise ValueError("Model requires an encoder")
        if (self.decoder is None) == (self.decoder_with_loss is None):
            raise ValueError("Exactly one of decoder and decoder_with_loss must be set")

    @property
    def head(self) -> nn.Module:
        return self.decoder if self.decoder is not None else self.decoder_with_loss

    def modules(self) -> Tuple[nn.Module, nn.Module]:
        return self.encoder, self.head

    def parameters(self) -> Iterator[nn.Parameter]:
        for module in self.modules():
            yield from module.parameters()

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def to(self, device: Union[str, torch.device]) -> "Model":
        for module in self.modules():
            module.to(device)
        return self


def make_model(
    params: Union[Hyperparameters, Mapping],
    dictionary: Any,
    n_classes: Optional[int] = None,
) -> Tuple[Model, InternalLayerRegistry]:
    """Build the model described by ``params`` for the vocabulary in ``dictionary``.

    Args:
        params: Hyperparameters, or a mapping accepted by ``Hyperparameters.from_dict``.
        dictionary: Object exposing ``index_to_freq`` and, for ``_hsm`` models,
            ``mapping``.
        n_classes: Number of output classes. Defaults to ``len(dictionary.index_to_freq)``.

    Returns:
        The model bundle and its internal-layer registry.

    Raises:
        ConfigurationError: If the name, non-linearity, sizes or class mapping are
            invalid. Nothing is built in that case.
    """

    if isinstance(params, Mapping):
        params = Hyperparameters.from_dict(params)
    n_classes = resolve_n_classes(dictionary, n_classes)
    model_name = params.model_name
    n_hidden = params.n_hidden

    # Validate everything up front so a failure leaves no half-built graph behind.
    mapping = None
    if model_name.cell is CellFamily.SRN:
        srn_activation(params.non_linearity)
    if model_name.head is OutputHeadKind.HIERARCHICAL:
        mapping = mapping_table(getattr(dictionary, "mapping", None), n_classes)

    if model_name.cell is CellFamily.SRN:
        encoder, handles = build_srn_cell(n_classes, n_hidden, params.non_linearity)
    elif model_name.cell is CellFamily.LSTM:
        encoder, handles = build_lstm_cell(n_classes, n_hidden)
    else:
        raise ConfigurationError(f"Unknown cell family: {model_name.cell}")

    decoder, decoder_with_loss = build_output_head(model_name.head, n_classes, n_hidden, mapping)
    internal_layers = InternalLayerRegistry(model_name.cell, handles, encoder.graph)

    model = Model(
        encoder=encoder,
        decoder=decoder,
        decoder_with_loss=decoder_with_loss,
        internal_layers=internal_layers,
    )
    logger.info(
        "Built %s model %r: %d classes, %d hidden, %d parameters",
        model_name.cell.name,
        params.name,
        n_classes,
        n_hidden,
        model.num_parameters(),
    )
    return model, internal_layers
