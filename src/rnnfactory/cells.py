"""Simple recurrent (SRN) and LSTM cells built as explicit node graphs."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, Union

import torch
from torch import Tensor, nn

from .config import CellFamily
from .errors import ConfigurationError
from .graph import Graph, GraphBuilder, NodeHandle

logger = logging.getLogger(__name__)

LSTMState = Tuple[Tensor, Tensor]
CellState = Union[Tensor, LSTMState]

# Activation applied to the SRN pre-activation sum, keyed by ``non_linearity``.
SRN_NON_LINEARITIES = {
    "relu": "threshold",
    "sigmoid": "sigmoid",
}

# Gate order matches the numbering of ``embed1..4`` / ``project1..4``.
LSTM_GATES = (
    ("input", "sigmoid"),
    ("forget", "sigmoid"),
    ("output", "sigmoid"),
    ("candidate", "tanh"),
)


class RecurrentCell(nn.Module, ABC):
    """Base class for cells mapping ``(token, previous state)`` to the next state."""

    family: CellFamily

    def __init__(self, graph: Graph, n_classes: int, n_hidden: int) -> None:
        super().__init__()
        self.graph = graph
        self.n_classes = n_classes
        self.n_hidden = n_hidden

    @abstractmethod
    def hidden(self, state: CellState) -> Tensor:
        """Hidden vector ``(B, n_hidden)`` carried by ``state``."""

    @abstractmethod
    def initial_state(self, batch_size: int, device: Optional[torch.device] = None) -> CellState:
        """Zero state for a batch of ``batch_size`` sequences."""

    @abstractmethod
    def forward_debug(self, token: Tensor, state: CellState) -> Tuple[CellState, Dict[str, Tensor]]:
        """One step that also returns every graph node's value keyed by node name."""

    def forward_sequence(
        self,
        tokens: Tensor,
        state: Optional[CellState] = None,
        *,
        return_debug: bool = False,
    ) -> Union[Tuple[Tensor, CellState], Tuple[Tensor, CellState, List[Dict[str, Tensor]]]]:
        """Iterate the cell across a sequence of tokens.

        Args:
            tokens: Integer tensor shaped ``(B, T)``.
            state: Optional initial state. If omitted, a zero state is created.
            return_debug: When True, collects the per-timestep node trace.

        Returns:
            Hidden states for each timestep ``(B, T, n_hidden)``, the final state, and
            optionally the traces.
        """

        batch, seq_len = tokens.shape
        if state is None:
            state = self.initial_state(batch, tokens.device)

        outputs: List[Tensor] = []
        traces: List[Dict[str, Tensor]] = []
        for t in range(seq_len):
            if return_debug:
                state, trace = self.forward_debug(tokens[:, t], state)
                traces.append(trace)
            else:
                state = self(tokens[:, t], state)
            outputs.append(self.hidden(state).unsqueeze(1))

        hidden_seq = torch.cat(outputs, dim=1)

        if return_debug:
            return hidden_seq, state, traces
        return hidden_seq, state


class SRNCell(RecurrentCell):
    """``h_t = f(A x_t + R h_{t-1})`` with ``f`` a rectifier or logistic unit."""

    family = CellFamily.SRN

    def forward(self, token: Tensor, prev_hidden: Tensor) -> Tensor:
        assert token.shape[0] == prev_hidden.shape[0], "batch mismatch between token and state"
        return self.graph(token, prev_hidden)

    def forward_debug(self, token: Tensor, prev_hidden: Tensor) -> Tuple[Tensor, Dict[str, Tensor]]:
        return self.graph.forward_debug(token, prev_hidden)

    def hidden(self, state: Tensor) -> Tensor:
        return state

    @torch.no_grad()
    def initial_state(self, batch_size: int, device: Optional[torch.device] = None) -> Tensor:
        return torch.zeros(batch_size, self.n_hidden, device=device)


class LSTMCell(RecurrentCell):
    """LSTM cell whose four gates own separate input and recurrent weights."""

    family = CellFamily.LSTM

    def forward(self, token: Tensor, state: LSTMState) -> LSTMState:
        prev_hidden, prev_memory = state
        assert prev_hidden.shape == prev_memory.shape, "hidden and memory shapes mismatch"
        assert token.shape[0] == prev_hidden.shape[0], "batch mismatch between token and state"
        return self.graph(token, prev_hidden, prev_memory)

    def forward_debug(self, token: Tensor, state: LSTMState) -> Tuple[LSTMState, Dict[str, Tensor]]:
        prev_hidden, prev_memory = state
        return self.graph.forward_debug(token, prev_hidden, prev_memory)

    def hidden(self, state: LSTMState) -> Tensor:
        return state[0]

    @torch.no_grad()
    def initial_state(self, batch_size: int, device: Optional[torch.device] = None) -> LSTMState:
        h = torch.zeros(batch_size, self.n_hidden, device=device)
        return h, torch.zeros_like(h)


def srn_activation(non_linearity: Optional[str]) -> str:
    try:
        return SRN_NON_LINEARITIES[non_linearity]
    except KeyError:
        raise ConfigurationError(f"Wrong non-linearity {non_linearity!r}") from None


def build_srn_cell(
    n_classes: int, n_hidden: int, non_linearity: Optional[str]
) -> Tuple[SRNCell, Dict[str, NodeHandle]]:
    """Build ``h_t = f(A x_t + R h_{t-1})``.

    Args:
        n_classes: Vocabulary size, the input range of the embedding ``A``.
        n_hidden: Width of the hidden state.
        non_linearity: ``"relu"`` (threshold at zero) or ``"sigmoid"``.

    Returns:
        The cell and the handles of its ``embed`` and ``project`` nodes.

    Raises:
        ConfigurationError: If ``non_linearity`` is not supported. Nothing is built.
    """
    activation = srn_activation(non_linearity)

    builder = GraphBuilder()
    symbol = builder.input("symbol")
    prev_hidden = builder.input("prev_hidden", n_hidden)

    embed = builder.embedding("embed", symbol, n_classes, n_hidden)  # A x_t
    project = builder.linear("project", prev_hidden, n_hidden, n_hidden, bias=False)  # R h_{t-1}
    summed = builder.add("pre_activation", embed, project)
    hidden = builder.activation("hidden", activation, summed)

    graph = builder.build(inputs=(symbol, prev_hidden), outputs=(hidden,))
    logger.debug(
        "Built SRN cell: %d classes -> %d hidden (%s)", n_classes, n_hidden, non_linearity
    )
    return SRNCell(graph, n_classes, n_hidden), {"embed": embed, "project": project}


def build_lstm_cell(n_classes: int, n_hidden: int) -> Tuple[LSTMCell, Dict[str, NodeHandle]]:
    """Build an LSTM cell mapping ``(token, (h, c))`` to ``(h_new, c_new)``.

    Every gate has its own embedding ``embedN`` and no-bias projection
    ``projectN``, numbered input, forget, output, candidate.

    Returns:
        The cell and the handles of ``embed1..4`` and ``project1..4``.
    """
    builder = GraphBuilder()
    symbol = builder.input("symbol")
    prev_hidden = builder.input("prev_hidden", n_hidden)
    prev_memory = builder.input("prev_memory", n_hidden)

    layers: Dict[str, NodeHandle] = {}
    gates: Dict[str, NodeHandle] = {}
    for number, (gate, activation) in enumerate(LSTM_GATES, start=1):
        embed = builder.embedding(f"embed{number}", symbol, n_classes, n_hidden)
        project = builder.linear(f"project{number}", prev_hidden, n_hidden, n_hidden, bias=False)
        summed = builder.add(f"{gate}_sum", embed, project)
        gates[gate] = builder.activation(f"{gate}_gate", activation, summed)
        layers[f"embed{number}"] = embed
        layers[f"project{number}"] = project

    # c_t = f * c_{t-1} + i * g
    retained = builder.mul("retained_memory", gates["forget"], prev_memory)
    written = builder.mul("written_memory", gates["input"], gates["candidate"])
    new_memory = builder.add("new_memory", retained, written)
    # h_t = o * tanh(c_t)
    squashed = builder.activation("new_memory_tanh", "tanh", new_memory)
    new_hidden = builder.mul("new_hidden", gates["output"], squashed)

    graph = builder.build(
        inputs=(symbol, prev_hidden, prev_memory), outputs=(new_hidden, new_memory)
    )
    logger.debug("Built LSTM cell: %d classes -> %d hidden", n_classes, n_hidden)
    return LSTMCell(graph, n_classes, n_hidden), layers
