"""Top-level package for the SRN/LSTM recurrent language-model factory."""

from .cells import LSTMCell, RecurrentCell, SRNCell, build_lstm_cell, build_srn_cell
from .config import CellFamily, Hyperparameters, ModelName, OutputHeadKind, parse_model_name
from .dictionary import Dictionary
from .errors import ConfigurationError
from .factory import Model, make_model
from .graph import Graph, GraphBuilder, NodeHandle
from .heads import HierarchicalSoftmax, build_dense_head, build_output_head
from .registry import InternalLayerRegistry

__all__ = [
    "CellFamily",
    "ConfigurationError",
    "Dictionary",
    "Graph",
    "GraphBuilder",
    "HierarchicalSoftmax",
    "Hyperparameters",
    "InternalLayerRegistry",
    "LSTMCell",
    "Model",
    "ModelName",
    "NodeHandle",
    "OutputHeadKind",
    "RecurrentCell",
    "SRNCell",
    "build_dense_head",
    "build_lstm_cell",
    "build_output_head",
    "build_srn_cell",
    "make_model",
    "parse_model_name",
]
