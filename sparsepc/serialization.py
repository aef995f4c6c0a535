"""
Layer Serialization

Layers are written as a flat little-endian stream of 32-bit integers and
floats. The header fixes every buffer length, so no per-field length prefixes
are stored:

    header         hidden_width, hidden_height, chunk_size, num_feed_back, num_visible
    visible        width, height, chunk_size, radius, predict (per visible layer)
    rates          alpha, beta, gamma
    states         hidden states (+prev), inputs (+prev), feedback (+prev), predictions
    weights        feed-forward arena, prediction arena per feedback source
    accumulators   reconstruction activations/counts (+prev), prediction activations (+prev)
"""

import io
import logging

import numpy as np
import torch

from .config import VisibleLayerDesc, validate_layer_config
from .errors import ConfigurationError, PreconditionError, StreamFormatError
from .representation import validate
from .weights import arena_size

logger = logging.getLogger(__name__)

INT_DTYPE = np.dtype("<i4")
FLOAT_DTYPE = np.dtype("<f4")
READ_BLOCK_SIZE = 1 << 20


def _write_ints(stream, values):
    stream.write(np.asarray(values, dtype=INT_DTYPE).tobytes())


def _write_floats(stream, values):
    stream.write(np.asarray(values, dtype=FLOAT_DTYPE).tobytes())


def _read_bytes(stream, num_bytes):
    # Read in blocks so that a header claiming a huge payload cannot force a
    # huge allocation before the stream runs out
    data = bytearray()
    while len(data) < num_bytes:
        block = stream.read(min(num_bytes - len(data), READ_BLOCK_SIZE))
        if not block:
            break
        data += block

    if len(data) != num_bytes:
        raise StreamFormatError(f"Truncated stream: expected {num_bytes} bytes, got {len(data)}")
    return bytes(data)


def _read(stream, dtype, count):
    data = _read_bytes(stream, dtype.itemsize * count)
    return np.frombuffer(data, dtype=dtype, count=count)


def _read_states(stream, count, chunk_size, name):
    rep = torch.from_numpy(_read(stream, INT_DTYPE, count).astype(np.int64))
    try:
        validate(rep, count, chunk_size, name=name)
    except PreconditionError as e:
        raise StreamFormatError(f"Malformed stream: {e}") from e
    return rep


def _read_floats(stream, count):
    return torch.from_numpy(_read(stream, FLOAT_DTYPE, count).copy())


def _payload_size(hidden_width, hidden_height, chunk_size, num_feed_back, descs):
    """Number of bytes that follow the learning rates."""
    num_hidden_chunks = (hidden_width // chunk_size) * (hidden_height // chunk_size)
    predict = [desc.predict for desc in descs]
    predicted = [desc for desc in descs if desc.predict]

    num_ints = 2 * num_hidden_chunks
    num_ints += sum(2 * desc.num_chunks for desc in descs)
    num_ints += 2 * num_feed_back * num_hidden_chunks
    num_ints += sum(desc.num_chunks for desc in predicted)

    num_floats = arena_size(hidden_width, hidden_height, descs)
    num_floats += num_feed_back * arena_size(hidden_width, hidden_height, descs, predict)
    num_floats += 4 * hidden_width * hidden_height
    num_floats += sum(2 * desc.num_units for desc in predicted)

    return INT_DTYPE.itemsize * num_ints + FLOAT_DTYPE.itemsize * num_floats


def write_layer(layer, stream):
    """
    Write a layer to a binary stream

    Args:
        layer (Layer): Layer to write
        stream: Writable binary file-like object
    """
    descs = layer._visible_layer_descs

    _write_ints(stream, [
        layer.hidden_width, layer.hidden_height, layer.chunk_size,
        layer.num_feed_back_layers, layer.num_visible_layers,
    ])
    for desc in descs:
        _write_ints(stream, [desc.width, desc.height, desc.chunk_size, desc.radius, int(desc.predict)])

    _write_floats(stream, [layer.alpha, layer.beta, layer.gamma])

    _write_ints(stream, layer._hidden_states.numpy())
    _write_ints(stream, layer._hidden_states_prev.numpy())

    for v in range(len(descs)):
        _write_ints(stream, layer._inputs[v].numpy())
        _write_ints(stream, layer._inputs_prev[v].numpy())

    for f in range(layer.num_feed_back_layers):
        _write_ints(stream, layer._feed_back[f].numpy())
        _write_ints(stream, layer._feed_back_prev[f].numpy())

    for v, desc in enumerate(descs):
        if desc.predict:
            _write_ints(stream, layer._predictions[v].numpy())

    _write_floats(stream, layer._feed_forward.weights.numpy())
    for store in layer._prediction_weights:
        _write_floats(stream, store.weights.numpy())

    _write_floats(stream, layer._recon_activations.numpy())
    _write_floats(stream, layer._recon_counts.numpy())
    _write_floats(stream, layer._recon_activations_prev.numpy())
    _write_floats(stream, layer._recon_counts_prev.numpy())

    for v, desc in enumerate(descs):
        if desc.predict:
            _write_floats(stream, layer._prediction_activations[v].numpy())
            _write_floats(stream, layer._prediction_activations_prev[v].numpy())

    logger.info("Wrote %dx%d layer with %d visible layers", layer.hidden_width, layer.hidden_height, len(descs))


def read_layer(stream):
    """
    Read a layer written by write_layer

    The layer is built into a fresh object that is only returned once the
    whole stream has been read.

    Args:
        stream: Readable binary file-like object

    Returns:
        Layer: The restored layer

    Raises:
        StreamFormatError: If the stream is truncated or malformed.
    """
    from .layers import Layer

    hidden_width, hidden_height, chunk_size, num_feed_back, num_visible = _read(stream, INT_DTYPE, 5).tolist()

    descs = []
    for _ in range(num_visible):
        width, height, visible_chunk_size, radius, predict = _read(stream, INT_DTYPE, 5).tolist()
        if predict not in (0, 1):
            raise StreamFormatError(f"Malformed stream: predict flag {predict}")
        descs.append(VisibleLayerDesc(width, height, visible_chunk_size, radius, bool(predict)))

    try:
        validate_layer_config(hidden_width, hidden_height, chunk_size, num_feed_back, descs)
    except ConfigurationError as e:
        raise StreamFormatError(f"Malformed stream header: {e}") from e

    alpha, beta, gamma = _read(stream, FLOAT_DTYPE, 3).tolist()

    # The whole payload is read before anything is allocated. The four
    # accumulator planes bound it from below, and reading them first keeps
    # the exact size computation proportional to data actually present.
    head = _read_bytes(stream, FLOAT_DTYPE.itemsize * 4 * hidden_width * hidden_height)
    size = _payload_size(hidden_width, hidden_height, chunk_size, num_feed_back, descs)
    stream = io.BytesIO(head + _read_bytes(stream, size - len(head)))

    layer = Layer()
    layer._allocate(hidden_width, hidden_height, chunk_size, num_feed_back, descs)
    layer._alpha, layer._beta, layer._gamma = alpha, beta, gamma

    num_hidden_chunks = layer.num_hidden_chunks
    layer._hidden_states = _read_states(stream, num_hidden_chunks, chunk_size, "Hidden states")
    layer._hidden_states_prev = _read_states(stream, num_hidden_chunks, chunk_size, "Previous hidden states")

    for v, desc in enumerate(descs):
        layer._inputs[v] = _read_states(stream, desc.num_chunks, desc.chunk_size, f"Input {v}")
        layer._inputs_prev[v] = _read_states(stream, desc.num_chunks, desc.chunk_size, f"Previous input {v}")
    layer._refresh_dense_inputs()

    for f in range(num_feed_back):
        layer._feed_back[f] = _read_states(stream, num_hidden_chunks, chunk_size, f"Feedback {f}")
        layer._feed_back_prev[f] = _read_states(stream, num_hidden_chunks, chunk_size, f"Previous feedback {f}")

    for v, desc in enumerate(descs):
        if desc.predict:
            layer._predictions[v] = _read_states(stream, desc.num_chunks, desc.chunk_size, f"Predictions {v}")

    layer._feed_forward.weights = _read_floats(stream, layer._feed_forward.size)
    for store in layer._prediction_weights:
        store.weights = _read_floats(stream, store.size)

    num_hidden_units = hidden_width * hidden_height
    layer._recon_activations = _read_floats(stream, num_hidden_units)
    layer._recon_counts = _read_floats(stream, num_hidden_units)
    layer._recon_activations_prev = _read_floats(stream, num_hidden_units)
    layer._recon_counts_prev = _read_floats(stream, num_hidden_units)

    for v, desc in enumerate(descs):
        if desc.predict:
            layer._prediction_activations[v] = _read_floats(stream, desc.num_units)
            layer._prediction_activations_prev[v] = _read_floats(stream, desc.num_units)

    logger.info("Read %dx%d layer with %d visible layers", hidden_width, hidden_height, num_visible)

    return layer
