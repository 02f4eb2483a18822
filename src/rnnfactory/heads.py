"""Output heads turning a hidden state into class log-probabilities or a loss."""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import torch
import torch.nn.functional as F
from torch import Tensor, nn

from .config import OutputHeadKind
from .errors import ConfigurationError
from .graph import Graph, GraphBuilder

logger = logging.getLogger(__name__)


def build_dense_head(n_classes: int, n_hidden: int) -> Graph:
    """No-bias projection to ``n_classes`` followed by a log-softmax."""

    builder = GraphBuilder()
    hidden = builder.input("hidden", n_hidden)
    scores = builder.linear("decode", hidden, n_hidden, n_classes, bias=False)
    log_probs = builder.activation("log_probs", "log_softmax", scores)
    logger.debug("Built dense head: %d hidden -> %d classes", n_hidden, n_classes)
    return builder.build(inputs=(hidden,), outputs=(log_probs,))


def mapping_table(mapping: Any, n_classes: int) -> Tensor:
    """Validate a class clustering and return it as an ``(n_classes, 2)`` long tensor.

    Row ``y`` holds ``(cluster, index within cluster)`` for class ``y``. Clusters are
    numbered ``0..n_clusters-1`` without gaps and the indices within each cluster
    cover ``0..size-1`` exactly once.
    """

    if mapping is None:
        raise ConfigurationError("Hierarchical softmax requires a dictionary mapping")
    try:
        table = torch.as_tensor(mapping)
    except (TypeError, ValueError, RuntimeError) as err:
        raise ConfigurationError(f"Malformed class mapping: {err}") from err

    if table.dim() != 2 or table.shape[1] != 2:
        raise ConfigurationError(
            f"Class mapping must have shape (n_classes, 2), got {tuple(table.shape)}"
        )
    if table.shape[0] != n_classes:
        raise ConfigurationError(
            f"Class mapping has {table.shape[0]} rows but the model has {n_classes} classes"
        )
    if table.dtype == torch.bool or table.is_complex():
        raise ConfigurationError(f"Class mapping must hold integers, got {table.dtype}")
    if table.is_floating_point() and not torch.equal(table, table.round()):
        raise ConfigurationError("Class mapping must hold integral values")

    table = table.to(torch.long)
    if bool((table < 0).any()):
        raise ConfigurationError("Class mapping entries must be non-negative")

    clusters, slots = table[:, 0], table[:, 1]
    # A valid table never names more clusters or slots than there are classes.
    if int(clusters.max()) >= n_classes or int(slots.max()) >= n_classes:
        raise ConfigurationError(f"Class mapping entries must be below n_classes={n_classes}")
    sizes = torch.bincount(clusters)
    if bool((sizes == 0).any()):
        empty = torch.nonzero(sizes == 0).flatten().tolist()
        raise ConfigurationError(f"Class mapping skips cluster ids {empty}")
    if bool((slots >= sizes[clusters]).any()):
        raise ConfigurationError("Class mapping index exceeds its cluster size")
    keys = clusters * int(sizes.max()) + slots
    if torch.unique(keys).numel() != n_classes:
        raise ConfigurationError("Class mapping assigns two classes to the same slot")
    return table


class HierarchicalSoftmax(nn.Module):
    """Two-level softmax loss over clustered classes.

    ``log p(y | h) = log p(cluster(y) | h) + log p(y | cluster(y), h)``. The module
    fuses the final projection with the negative log-likelihood and returns the
    loss, never a full distribution over classes.
    """

    def __init__(
        self,
        mapping: Any,
        n_hidden: int,
        n_classes: Optional[int] = None,
        *,
        reduction: str = "mean",
    ) -> None:
        super().__init__()
        if reduction not in ("mean", "sum"):
            raise ConfigurationError(f"Unsupported reduction: {reduction}")
        if n_classes is None:
            if mapping is None:
                raise ConfigurationError("Hierarchical softmax requires a dictionary mapping")
            n_classes = len(mapping)
        table = mapping_table(mapping, n_classes)

        sizes = torch.bincount(table[:, 0])
        self.n_classes = n_classes
        self.n_hidden = n_hidden
        self.n_clusters = sizes.numel()
        self.max_cluster_size = int(sizes.max())
        self.reduction = reduction

        self.register_buffer("mapping", table)
        slots = torch.arange(self.max_cluster_size).unsqueeze(0)
        self.register_buffer("slot_mask", slots < sizes.unsqueeze(1))

        self.cluster_proj = nn.Linear(n_hidden, self.n_clusters)
        self.class_weight = nn.Parameter(torch.empty(self.n_clusters, self.max_cluster_size, n_hidden))
        self.class_bias = nn.Parameter(torch.zeros(self.n_clusters, self.max_cluster_size))

        nn.init.xavier_uniform_(self.cluster_proj.weight)
        nn.init.zeros_(self.cluster_proj.bias)
        nn.init.normal_(self.class_weight, mean=0.0, std=0.02)

    def log_prob(self, hidden: Tensor, target: Tensor) -> Tensor:
        """Per-example ``log p(target | hidden)`` with shape ``(B,)``."""
        assert hidden.dim() == 2 and hidden.shape[1] == self.n_hidden, "hidden must be (B, n_hidden)"
        assert target.shape == hidden.shape[:1], "target must be (B,)"

        clusters = self.mapping[target, 0]
        slots = self.mapping[target, 1]

        cluster_log_probs = F.log_softmax(self.cluster_proj(hidden), dim=-1)
        cluster_term = cluster_log_probs.gather(1, clusters.unsqueeze(1)).squeeze(1)

        logits = torch.einsum("bh,bsh->bs", hidden, self.class_weight[clusters])
        logits = logits + self.class_bias[clusters]
        logits = logits.masked_fill(~self.slot_mask[clusters], float("-inf"))
        class_term = F.log_softmax(logits, dim=-1).gather(1, slots.unsqueeze(1)).squeeze(1)

        return cluster_term + class_term

    def forward(self, hidden: Tensor, target: Tensor) -> Tensor:
        nll = -self.log_prob(hidden, target)
        if self.reduction == "sum":
            return nll.sum()
        return nll.mean()


def build_output_head(
    kind: OutputHeadKind, n_classes: int, n_hidden: int, mapping: Any = None
) -> Tuple[Optional[Graph], Optional[HierarchicalSoftmax]]:
    """Return ``(decoder, decoder_with_loss)``; exactly one of them is set."""

    if kind is OutputHeadKind.DENSE:
        return build_dense_head(n_classes, n_hidden), None
    if kind is OutputHeadKind.HIERARCHICAL:
        head = HierarchicalSoftmax(mapping, n_hidden, n_classes)
        logger.debug(
            "Built hierarchical softmax: %d hidden -> %d classes in %d clusters",
            n_hidden,
            n_classes,
            head.n_clusters,
        )
        return None, head
    raise ConfigurationError(f"Unknown output head: {kind}")
