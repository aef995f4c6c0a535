"""
Sparse Predictive Layer

This module implements a single layer of a chunked sparse predictive
hierarchy. The layer encodes its visible (input) layers into a chunked hidden
representation by competitive learning, and predicts the next input of every
visible layer from that hidden representation and from top-down feedback.

All per-chunk work is done by three internal work items, which are submitted
to a ComputeSystem:

- ForwardWorkItem: encodes one hidden chunk and trains its winning unit
- BackwardWorkItem: trains the prediction weights owned by one hidden chunk
- PredictionWorkItem: predicts one chunk of one visible layer
"""

import logging
import math

import torch

from .compute import WorkItem
from .config import LearningRates, validate_layer_config
from .errors import PreconditionError
from .representation import as_chunks, to_dense, unit_position, validate
from .weights import Connectivity, SparseWeightStore

logger = logging.getLogger(__name__)


def _float32(x):
    # Learning rates are stored as 32-bit floats so that they survive a stream round trip
    return torch.tensor(x, dtype=torch.float32).item()


def sigmoid(x):
    """Logistic sigmoid of a float or tensor."""
    if isinstance(x, torch.Tensor):
        return torch.sigmoid(x)
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


class ForwardWorkItem(WorkItem):
    """
    Encode one hidden chunk

    Every candidate unit of the chunk is scored by the mean weight at the
    active inputs of its receptive fields. The best scoring unit becomes the
    chunk's state, and only that unit learns: the weights at active inputs
    move by the error of its reconstruction, the others decay by gamma.
    """

    def __init__(self, layer, hidden_chunk_index, alpha, gamma):
        self._layer = layer
        self._hidden_chunk_index = hidden_chunk_index
        self._alpha = alpha
        self._gamma = gamma

    def run(self, thread_index):
        layer = self._layer
        chunk_size = layer._chunk_size
        num_visible = layer.num_visible_layers

        activations = torch.zeros(chunk_size * chunk_size)
        counts = torch.zeros(chunk_size * chunk_size)
        hidden_indices = []

        for local in range(chunk_size * chunk_size):
            x, y = unit_position(self._hidden_chunk_index, local, layer._hidden_width, chunk_size)
            hidden_index = x + y * layer._hidden_width
            hidden_indices.append(hidden_index)

            for v in range(num_visible):
                activation, count = layer._feed_forward.dot(
                    v + num_visible * hidden_index, layer._dense_inputs[v]
                )
                activations[local] += activation
                counts[local] += count

        units = torch.tensor(hidden_indices, dtype=torch.long)
        layer._recon_activations[units] = activations
        layer._recon_counts[units] = counts

        # argmax returns the first maximal index, so ties go to the lowest unit
        winner = int(torch.argmax(activations / counts.clamp(min=1.0)))
        layer._hidden_states[self._hidden_chunk_index] = winner

        # The winner's reconstruction of its active inputs is its normalized
        # activation. Those inputs are 1, so their error is 1 - reconstruction.
        hidden_index = hidden_indices[winner]
        reconstruction = layer._recon_activations[hidden_index] / layer._recon_counts[hidden_index].clamp(min=1.0)
        error = 1.0 - reconstruction

        for v in range(num_visible):
            i = v + num_visible * hidden_index
            weights = layer._feed_forward.view(i)
            visible = layer._dense_inputs[v][layer._connectivity.indices[i]]

            # Inactive inputs decay
            delta = torch.where(
                visible > 0.0,
                self._alpha * error,
                -self._gamma * weights,
            )
            weights.add_(delta)


class BackwardWorkItem(WorkItem):
    """
    Train the prediction weights owned by one hidden chunk

    For each feedback source, the unit of this chunk that was active in the
    previous feedback is credited with the error between the prediction it
    took part in and the input that actually followed.
    """

    def __init__(self, layer, hidden_chunk_index, beta):
        self._layer = layer
        self._hidden_chunk_index = hidden_chunk_index
        self._beta = beta

    def run(self, thread_index):
        layer = self._layer
        num_visible = layer.num_visible_layers

        for f, store in enumerate(layer._prediction_weights):
            local = int(layer._feed_back_prev[f][self._hidden_chunk_index])
            x, y = unit_position(self._hidden_chunk_index, local, layer._hidden_width, layer._chunk_size)
            hidden_index = x + y * layer._hidden_width

            for v, desc in enumerate(layer._visible_layer_descs):
                if not desc.predict:
                    continue

                i = v + num_visible * hidden_index
                window = layer._connectivity.indices[i]
                target = layer._dense_inputs[v][window]
                error = target - layer._prediction_activations_prev[v][window]

                store.update(i, self._beta * error)


class PredictionWorkItem(WorkItem):
    """
    Predict one chunk of one visible layer

    The activation of a candidate visible unit adds the mean feed-forward
    weight of the active hidden units covering it (the generative path) to
    the prediction weights of the active feedback units covering it.
    """

    def __init__(self, layer, visible_layer_index, visible_chunk_index):
        self._layer = layer
        self._visible_layer_index = visible_layer_index
        self._visible_chunk_index = visible_chunk_index

    def run(self, thread_index):
        layer = self._layer
        v = self._visible_layer_index
        desc = layer._visible_layer_descs[v]
        num_candidates = desc.chunk_size * desc.chunk_size

        activations = torch.zeros(num_candidates)
        visible_indices = []

        for local in range(num_candidates):
            vx, vy = unit_position(self._visible_chunk_index, local, desc.width, desc.chunk_size)
            j = vx + vy * desc.width
            visible_indices.append(j)

            units, slots = layer._feed_forward.covering(v, j)
            active = layer._hidden_dense[units]
            num_active = active.sum()

            activation = torch.dot(layer._feed_forward.weights[slots], active) / num_active.clamp(min=1.0)

            for f, store in enumerate(layer._prediction_weights):
                units, slots = store.covering(v, j)
                active = layer._feed_back_dense[f][units]
                activation = activation + torch.dot(store.weights[slots], active)

            activations[local] = activation

        positions = torch.tensor(visible_indices, dtype=torch.long)
        layer._prediction_activations[v][positions] = torch.sigmoid(activations)
        layer._predictions[v][self._visible_chunk_index] = int(torch.argmax(activations))


class Layer:
    """
    A layer in the hierarchy

    A layer is empty until create() is called or it is read from a stream.

    Example:
        >>> layer = Layer()
        >>> layer.create(4, 4, 2, 1, [VisibleLayerDesc(4, 4, 2, 1, True)], seed=42)
        >>> with ComputeSystem(4) as cs:
        ...     layer.forward([[0, 1, 2, 3]], cs, alpha=0.1, gamma=0.01)
        ...     layer.backward([layer.get_hidden_states()], cs, beta=0.1)
    """

    def __init__(self):
        self._hidden_width = 0
        self._hidden_height = 0
        self._chunk_size = 0
        self._visible_layer_descs = []
        self._feed_back = []

        rates = LearningRates()
        self._alpha = _float32(rates.alpha)
        self._beta = _float32(rates.beta)
        self._gamma = _float32(rates.gamma)

    def create(self, hidden_width, hidden_height, chunk_size, num_feed_back, visible_layer_descs, seed,
               init_spread=0.05):
        """
        Create the layer

        Args:
            hidden_width (int): Width of the hidden layer in units
            hidden_height (int): Height of the hidden layer in units
            chunk_size (int): Chunk diameter of the hidden layer
            num_feed_back (int): Number of feedback sources
            visible_layer_descs (list): VisibleLayerDesc per visible layer
            seed (int): Seed for weight initialization
            init_spread (float, optional): Feed-forward weights start in
                (1 - init_spread, 1]. Defaults to 0.05.

        Raises:
            ConfigurationError: If any dimension is invalid.
        """
        validate_layer_config(hidden_width, hidden_height, chunk_size, num_feed_back, visible_layer_descs)

        self._allocate(hidden_width, hidden_height, chunk_size, num_feed_back, visible_layer_descs)

        # One generator per hidden chunk, so initialization does not depend on
        # the order in which chunks are visited
        generator = torch.Generator().manual_seed(seed)
        chunk_seeds = torch.randint(0, 2 ** 62, (self.num_hidden_chunks,), generator=generator).tolist()
        num_visible = self.num_visible_layers

        for c, chunk_seed in enumerate(chunk_seeds):
            chunk_generator = torch.Generator().manual_seed(chunk_seed)

            for local in range(chunk_size * chunk_size):
                x, y = unit_position(c, local, hidden_width, chunk_size)
                for v in range(num_visible):
                    weights = self._feed_forward.view(v + num_visible * (x + y * hidden_width))
                    weights.copy_(1.0 - init_spread * torch.rand(weights.numel(), generator=chunk_generator))

        logger.debug(
            "Created %dx%d layer (chunk size %d) with %d visible layers, %d feedback layers, %d feed-forward weights",
            hidden_width, hidden_height, chunk_size, num_visible, num_feed_back, self._feed_forward.size,
        )

    def _allocate(self, hidden_width, hidden_height, chunk_size, num_feed_back, visible_layer_descs):
        self._hidden_width = hidden_width
        self._hidden_height = hidden_height
        self._chunk_size = chunk_size
        self._visible_layer_descs = list(visible_layer_descs)

        num_hidden_chunks = self.num_hidden_chunks
        num_hidden_units = hidden_width * hidden_height

        self._hidden_states = torch.zeros(num_hidden_chunks, dtype=torch.long)
        self._hidden_states_prev = torch.zeros(num_hidden_chunks, dtype=torch.long)

        self._inputs = [torch.zeros(desc.num_chunks, dtype=torch.long) for desc in self._visible_layer_descs]
        self._inputs_prev = [torch.zeros(desc.num_chunks, dtype=torch.long) for desc in self._visible_layer_descs]
        self._refresh_dense_inputs()

        self._feed_back = [torch.zeros(num_hidden_chunks, dtype=torch.long) for _ in range(num_feed_back)]
        self._feed_back_prev = [torch.zeros(num_hidden_chunks, dtype=torch.long) for _ in range(num_feed_back)]

        self._connectivity = Connectivity(hidden_width, hidden_height, self._visible_layer_descs)
        predict = [desc.predict for desc in self._visible_layer_descs]
        self._feed_forward = SparseWeightStore(self._connectivity)
        self._prediction_weights = [SparseWeightStore(self._connectivity, predict) for _ in range(num_feed_back)]

        self._recon_activations = torch.zeros(num_hidden_units)
        self._recon_counts = torch.zeros(num_hidden_units)
        self._recon_activations_prev = torch.zeros(num_hidden_units)
        self._recon_counts_prev = torch.zeros(num_hidden_units)

        self._predictions = [
            torch.zeros(desc.num_chunks, dtype=torch.long) if desc.predict else None
            for desc in self._visible_layer_descs
        ]
        self._prediction_activations = [
            torch.zeros(desc.num_units) if desc.predict else None for desc in self._visible_layer_descs
        ]
        self._prediction_activations_prev = [
            torch.zeros(desc.num_units) if desc.predict else None for desc in self._visible_layer_descs
        ]

    def _refresh_dense_inputs(self):
        self._dense_inputs = [
            to_dense(rep, desc.width, desc.height, desc.chunk_size)
            for rep, desc in zip(self._inputs, self._visible_layer_descs)
        ]

    def forward(self, inputs, compute_system, alpha=0.1, gamma=0.01):
        """
        Forward activation and learning

        Args:
            inputs (list): One chunked representation per visible layer
            compute_system (ComputeSystem): Pool that runs the chunk work
            alpha (float, optional): Feed-forward learning rate. Defaults to 0.1.
            gamma (float, optional): Feed-forward weight decay. Defaults to 0.01.

        Raises:
            PreconditionError: If the inputs do not match the visible layers.
        """
        if len(inputs) != self.num_visible_layers:
            raise PreconditionError(
                f"Expected {self.num_visible_layers} inputs, got {len(inputs)}"
            )

        reps = []
        for v, (rep, desc) in enumerate(zip(inputs, self._visible_layer_descs)):
            rep = as_chunks(rep)
            validate(rep, desc.num_chunks, desc.chunk_size, name=f"Input {v}")
            reps.append(rep)

        # Keep the previous timestep before any chunk is touched
        self._hidden_states_prev = self._hidden_states.clone()
        self._inputs_prev = self._inputs
        self._recon_activations_prev = self._recon_activations.clone()
        self._recon_counts_prev = self._recon_counts.clone()

        self._inputs = reps
        self._refresh_dense_inputs()

        for c in range(self.num_hidden_chunks):
            compute_system.add_work_item(ForwardWorkItem(self, c, alpha, gamma))
        compute_system.wait()

        self._alpha = _float32(alpha)
        self._gamma = _float32(gamma)

    def backward(self, feed_back, compute_system, beta=0.1):
        """
        Backward activation: prediction learning and prediction

        Args:
            feed_back (list): One chunked representation per feedback source,
                each shaped like the hidden layer
            compute_system (ComputeSystem): Pool that runs the chunk work
            beta (float, optional): Prediction learning rate. Defaults to 0.1.

        Raises:
            PreconditionError: If the feedback does not match the hidden layer.
        """
        if len(feed_back) != self.num_feed_back_layers:
            raise PreconditionError(
                f"Expected {self.num_feed_back_layers} feedback layers, got {len(feed_back)}"
            )

        reps = []
        for f, rep in enumerate(feed_back):
            rep = as_chunks(rep)
            validate(rep, self.num_hidden_chunks, self._chunk_size, name=f"Feedback {f}")
            reps.append(rep)

        self._feed_back_prev = self._feed_back
        self._feed_back = reps
        self._prediction_activations_prev = [
            activations.clone() if activations is not None else None
            for activations in self._prediction_activations
        ]

        self._hidden_dense = to_dense(self._hidden_states, self._hidden_width, self._hidden_height, self._chunk_size)
        self._feed_back_dense = [
            to_dense(rep, self._hidden_width, self._hidden_height, self._chunk_size) for rep in reps
        ]

        # Learn from the previous prediction first, then predict
        if self.num_feed_back_layers > 0:
            for c in range(self.num_hidden_chunks):
                compute_system.add_work_item(BackwardWorkItem(self, c, beta))
            compute_system.wait()

        for v, desc in enumerate(self._visible_layer_descs):
            if not desc.predict:
                continue
            for c in range(desc.num_chunks):
                compute_system.add_work_item(PredictionWorkItem(self, v, c))
        compute_system.wait()

        self._beta = _float32(beta)

    @property
    def hidden_width(self):
        return self._hidden_width

    @property
    def hidden_height(self):
        return self._hidden_height

    @property
    def chunk_size(self):
        return self._chunk_size

    @property
    def num_hidden_chunks(self):
        return (self._hidden_width // self._chunk_size) * (self._hidden_height // self._chunk_size)

    @property
    def num_visible_layers(self):
        return len(self._visible_layer_descs)

    @property
    def num_feed_back_layers(self):
        return len(self._feed_back)

    @property
    def alpha(self):
        return self._alpha

    @property
    def beta(self):
        return self._beta

    @property
    def gamma(self):
        return self._gamma

    @property
    def rates(self):
        """Learning rates recorded by the last forward/backward calls."""
        return LearningRates(self._alpha, self._beta, self._gamma)

    @rates.setter
    def rates(self, rates):
        self._alpha = _float32(rates.alpha)
        self._beta = _float32(rates.beta)
        self._gamma = _float32(rates.gamma)

    def get_visible_layer_desc(self, v):
        return self._visible_layer_descs[v]

    def get_hidden_states(self):
        """Hidden states in chunked format."""
        return self._hidden_states.tolist()

    def get_hidden_states_prev(self):
        return self._hidden_states_prev.tolist()

    def get_inputs(self, v):
        return self._inputs[v].tolist()

    def get_inputs_prev(self, v):
        return self._inputs_prev[v].tolist()

    def get_predictions(self, v):
        """
        Predictions of a visible layer in chunked format

        Raises:
            PreconditionError: If the visible layer is not predicted.
        """
        if self._predictions[v] is None:
            raise PreconditionError(f"Visible layer {v} is not predicted")
        return self._predictions[v].tolist()

    def get_prediction_activations(self, v, prev=False):
        """Per-unit prediction probabilities of a predicted visible layer."""
        activations = self._prediction_activations_prev if prev else self._prediction_activations
        if activations[v] is None:
            raise PreconditionError(f"Visible layer {v} is not predicted")
        return activations[v].clone()

    def get_feed_back(self, f):
        return self._feed_back[f].tolist()

    def get_feed_back_prev(self, f):
        return self._feed_back_prev[f].tolist()

    def get_reconstruction(self, prev=False):
        """
        Reconstruction accumulators of every hidden unit

        Returns:
            tuple: (activations, counts) indexed by x + y * hidden_width
        """
        if prev:
            return self._recon_activations_prev.clone(), self._recon_counts_prev.clone()
        return self._recon_activations.clone(), self._recon_counts.clone()

    def get_feed_forward_weights(self, v, x, y):
        """Feed-forward weights of hidden unit (x, y) onto visible layer v."""
        return self._feed_forward.view(self._connectivity.unit_index(v, x, y)).clone()

    def get_prediction_weights(self, f, v, x, y):
        """Prediction weights of hidden unit (x, y) for feedback f onto visible layer v."""
        return self._prediction_weights[f].view(self._connectivity.unit_index(v, x, y)).clone()

    def get_receptive_field(self, v, x, y):
        """Inclusive window bounds (x0, y0, x1, y1) of hidden unit (x, y) on visible layer v."""
        return self._connectivity.fields[self._connectivity.unit_index(v, x, y)]

    def write(self, stream):
        """Write the layer to a binary stream."""
        from .serialization import write_layer

        write_layer(self, stream)

    @classmethod
    def read(cls, stream):
        """Read a layer from a binary stream."""
        from .serialization import read_layer

        return read_layer(stream)

    def save(self, path):
        with open(path, "wb") as stream:
            self.write(stream)

    @classmethod
    def load(cls, path):
        with open(path, "rb") as stream:
            return cls.read(stream)
