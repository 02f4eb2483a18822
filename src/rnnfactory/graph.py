"""Static computation graphs addressed by stable node handles.

A :class:`GraphBuilder` appends nodes to an arena. Each node may only consume
nodes created before it, so arena order is already a topological order and a
node may feed any number of consumers. :meth:`GraphBuilder.build` freezes the
arena into a :class:`Graph` module that evaluates every node once per call.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor, nn


class NodeKind(enum.Enum):
    INPUT = "input"
    LINEAR = "linear"
    ELEMENTWISE = "elementwise"
    ACTIVATION = "activation"


@dataclass(frozen=True)
class NodeHandle:
    """Stable reference to a node: its arena index and unique name."""

    index: int
    name: str


@dataclass(frozen=True)
class Node:
    handle: NodeHandle
    kind: NodeKind
    op: str
    inputs: Tuple[int, ...]
    # Feature width of the produced tensor; ``None`` for integer token inputs.
    width: Optional[int]

    @property
    def name(self) -> str:
        return self.handle.name


_ACTIVATIONS: Dict[str, Callable[[], nn.Module]] = {
    "sigmoid": nn.Sigmoid,
    "tanh": nn.Tanh,
    "threshold": lambda: nn.Threshold(0.0, 0.0),
    "log_softmax": lambda: nn.LogSoftmax(dim=-1),
}

_ELEMENTWISE: Dict[str, Callable[[Tensor, Tensor], Tensor]] = {
    "add": torch.add,
    "mul": torch.mul,
}

GraphOutput = Union[Tensor, Tuple[Tensor, ...]]


class GraphBuilder:
    """Incrementally assembles a directed acyclic graph of tensor operations."""

    def __init__(self) -> None:
        self._nodes: List[Node] = []
        self._modules: Dict[str, nn.Module] = {}
        self._built = False

    def _node(self, handle: NodeHandle) -> Node:
        if not 0 <= handle.index < len(self._nodes) or self._nodes[handle.index].handle != handle:
            raise ValueError(f"{handle} does not belong to this graph")
        return self._nodes[handle.index]

    def _add(
        self,
        name: str,
        kind: NodeKind,
        op: str,
        inputs: Sequence[NodeHandle],
        width: Optional[int],
        module: Optional[nn.Module] = None,
    ) -> NodeHandle:
        if self._built:
            raise ValueError("Graph has already been built")
        if not name.isidentifier():
            raise ValueError(f"Node name must be an identifier, got {name!r}")
        if any(node.name == name for node in self._nodes):
            raise ValueError(f"Duplicate node name: {name}")
        if module is not None and hasattr(nn.ModuleDict(), name):
            raise ValueError(f"Node name {name!r} is reserved")
        sources = tuple(self._node(handle).handle.index for handle in inputs)
        handle = NodeHandle(index=len(self._nodes), name=name)
        self._nodes.append(Node(handle=handle, kind=kind, op=op, inputs=sources, width=width))
        if module is not None:
            self._modules[name] = module
        return handle

    def input(self, name: str, width: Optional[int] = None) -> NodeHandle:
        """Declare a graph input. Use ``width=None`` for integer token indices."""
        return self._add(name, NodeKind.INPUT, "input", (), width)

    def embedding(self, name: str, source: NodeHandle, n_classes: int, n_out: int) -> NodeHandle:
        """Lookup table mapping token indices from ``source`` to ``n_out`` features."""
        if self._node(source).width is not None:
            raise ValueError(f"{name}: embedding expects token indices, got width {self._node(source).width}")
        return self._add(name, NodeKind.LINEAR, "embedding", (source,), n_out, nn.Embedding(n_classes, n_out))

    def linear(
        self, name: str, source: NodeHandle, n_in: int, n_out: int, *, bias: bool = True
    ) -> NodeHandle:
        """Projection ``n_in -> n_out``; ``source`` must produce ``n_in`` features."""
        if self._node(source).width != n_in:
            raise ValueError(f"{name}: expected input width {n_in}, got {self._node(source).width}")
        return self._add(name, NodeKind.LINEAR, "linear", (source,), n_out, nn.Linear(n_in, n_out, bias=bias))

    def _elementwise(self, name: str, op: str, left: NodeHandle, right: NodeHandle) -> NodeHandle:
        widths = (self._node(left).width, self._node(right).width)
        if widths[0] != widths[1] or widths[0] is None:
            raise ValueError(f"{name}: cannot combine widths {widths[0]} and {widths[1]}")
        return self._add(name, NodeKind.ELEMENTWISE, op, (left, right), widths[0])

    def add(self, name: str, left: NodeHandle, right: NodeHandle) -> NodeHandle:
        """Elementwise sum of two nodes of equal width."""
        return self._elementwise(name, "add", left, right)

    def mul(self, name: str, left: NodeHandle, right: NodeHandle) -> NodeHandle:
        """Elementwise product of two nodes of equal width."""
        return self._elementwise(name, "mul", left, right)

    def activation(self, name: str, kind: str, source: NodeHandle) -> NodeHandle:
        """Apply ``sigmoid``, ``tanh``, ``threshold`` (at zero) or ``log_softmax``."""
        if kind not in _ACTIVATIONS:
            raise ValueError(f"Unsupported activation: {kind}")
        width = self._node(source).width
        return self._add(name, NodeKind.ACTIVATION, kind, (source,), width, _ACTIVATIONS[kind]())

    def build(self, inputs: Sequence[NodeHandle], outputs: Sequence[NodeHandle]) -> "Graph":
        """Freeze the arena. ``inputs`` gives the positional order of graph arguments."""
        declared = [node.handle for node in self._nodes if node.kind is NodeKind.INPUT]
        if sorted(h.index for h in inputs) != [h.index for h in declared]:
            raise ValueError("Every declared input must be listed exactly once")
        if not outputs:
            raise ValueError("Graph needs at least one output")
        for handle in list(inputs) + list(outputs):
            self._node(handle)
        self._built = True
        return Graph(self._nodes, self._modules, inputs, outputs)


class Graph(nn.Module):
    """Frozen node arena evaluated in creation order."""

    def __init__(
        self,
        nodes: Sequence[Node],
        modules: Dict[str, nn.Module],
        inputs: Sequence[NodeHandle],
        outputs: Sequence[NodeHandle],
    ) -> None:
        super().__init__()
        self._nodes: Tuple[Node, ...] = tuple(nodes)
        self._by_name = {node.name: node.handle for node in self._nodes}
        self.layers = nn.ModuleDict(modules)
        self.input_handles: Tuple[NodeHandle, ...] = tuple(inputs)
        self.output_handles: Tuple[NodeHandle, ...] = tuple(outputs)

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    def node(self, handle: NodeHandle) -> Node:
        if not 0 <= handle.index < len(self._nodes) or self._nodes[handle.index].handle != handle:
            raise KeyError(f"{handle} does not belong to this graph")
        return self._nodes[handle.index]

    def handle(self, name: str) -> NodeHandle:
        return self._by_name[name]

    def module(self, handle: NodeHandle) -> nn.Module:
        """Return the module owning the parameters (or activation) of ``handle``."""
        node = self.node(handle)
        if node.name not in self.layers:
            raise KeyError(f"Node {node.name} has no module")
        return self.layers[node.name]

    def consumers(self, handle: NodeHandle) -> Tuple[NodeHandle, ...]:
        index = self.node(handle).handle.index
        return tuple(node.handle for node in self._nodes if index in node.inputs)

    def forward(self, *inputs: Tensor) -> GraphOutput:
        outputs, _ = self.forward_debug(*inputs)
        return outputs

    def forward_debug(self, *inputs: Tensor) -> Tuple[GraphOutput, Dict[str, Tensor]]:
        """Evaluate the graph and also return every node's value keyed by node name."""
        assert len(inputs) == len(self.input_handles), (
            f"expected {len(self.input_handles)} inputs, got {len(inputs)}"
        )
        values: List[Optional[Tensor]] = [None] * len(self._nodes)
        for handle, value in zip(self.input_handles, inputs):
            values[handle.index] = value

        for node in self._nodes:
            if node.kind is NodeKind.INPUT:
                continue
            args = [values[i] for i in node.inputs]
            if node.kind is NodeKind.ELEMENTWISE:
                values[node.handle.index] = _ELEMENTWISE[node.op](args[0], args[1])
            else:
                values[node.handle.index] = self.layers[node.name](args[0])

        trace = {node.name: values[node.handle.index] for node in self._nodes}
        results = tuple(values[handle.index] for handle in self.output_handles)
        if len(results) == 1:
            return results[0], trace
        return results, trace
