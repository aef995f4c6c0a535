"""
Sparse Predictive Coding Layers (sparsepc)
==========================================

One layer of a hierarchical, online, sparse-coding predictive model.

Each layer encodes chunked sparse inputs into a chunked hidden representation
through competitive learning, and predicts the next input of each visible
layer from the hidden representation and top-down feedback. Per-chunk work is
distributed over a thread pool.
"""

from .compute import ComputeSystem, WorkItem
from .config import LearningRates, VisibleLayerDesc
from .errors import ConfigurationError, PreconditionError, SparsePCError, StreamFormatError
from .layers import Layer, sigmoid
from .model import LayerModel, prediction_accuracy
from .representation import encode_dense, to_dense
from .serialization import read_layer, write_layer

__version__ = '0.1.0'
