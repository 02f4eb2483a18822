"""Named handles into a cell's intermediate nodes for external introspection."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Dict, Iterator, Tuple

from torch import Tensor, nn

from .config import CellFamily
from .graph import Graph, NodeHandle

SRN_LAYER_NAMES: Tuple[str, ...] = ("embed", "project")
LSTM_LAYER_NAMES: Tuple[str, ...] = (
    "embed1",
    "embed2",
    "embed3",
    "embed4",
    "project1",
    "project2",
    "project3",
    "project4",
)

LAYER_NAMES = {
    CellFamily.SRN: SRN_LAYER_NAMES,
    CellFamily.LSTM: LSTM_LAYER_NAMES,
}


class InternalLayerRegistry(Mapping):
    """Read-only, ordered mapping from well-known layer names to graph node handles.

    The set of names is fixed per cell family. Handles point at the
    pre-activation nodes (``W_x x_t`` and ``W_h h_{t-1}``) so analysis code can
    read their values from a trace or reach the owning parameters.
    """

    def __init__(self, family: CellFamily, handles: Mapping, graph: Graph) -> None:
        expected = LAYER_NAMES[family]
        if set(handles) != set(expected):
            raise ValueError(
                f"{family.name} registry needs exactly {sorted(expected)}, got {sorted(handles)}"
            )
        for name in expected:
            graph.node(handles[name])
        self._family = family
        self._graph = graph
        self._handles = MappingProxyType({name: handles[name] for name in expected})

    @property
    def family(self) -> CellFamily:
        return self._family

    def __getitem__(self, name: str) -> NodeHandle:
        return self._handles[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    def __repr__(self) -> str:
        entries = ", ".join(f"{name}={handle.index}" for name, handle in self._handles.items())
        return f"InternalLayerRegistry({self._family.name}: {entries})"

    def module(self, name: str) -> nn.Module:
        """Module holding the parameters behind layer ``name``."""
        return self._graph.module(self[name])

    def select(self, trace: Mapping) -> Dict[str, Tensor]:
        """Pick the registered layers' values out of a ``forward_debug`` trace."""
        return {name: trace[handle.name] for name, handle in self._handles.items()}
