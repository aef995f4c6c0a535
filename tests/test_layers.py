"""
Tests for the sparse predictive layer.
"""

import torch
import pytest
import sys
import os

# Add parent directory to path to import sparsepc
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sparsepc.compute import ComputeSystem
from sparsepc.config import VisibleLayerDesc
from sparsepc.errors import ConfigurationError, PreconditionError
from sparsepc.layers import Layer, sigmoid
from sparsepc.model import LayerModel
from sparsepc.representation import to_dense, unit_position


def make_layer(num_feed_back=0, visible_layer_descs=None, seed=42):
    """Create the 4x4 layer with 2x2 chunks used throughout these tests"""
    if visible_layer_descs is None:
        visible_layer_descs = [VisibleLayerDesc(width=4, height=4, chunk_size=2, radius=1, predict=True)]

    layer = Layer()
    layer.create(4, 4, 2, num_feed_back, visible_layer_descs, seed)
    return layer


@pytest.fixture
def cs():
    with ComputeSystem(num_workers=4) as compute_system:
        yield compute_system


def all_weights(layer):
    return [layer._feed_forward.weights.clone()] + [store.weights.clone() for store in layer._prediction_weights]


def test_sigmoid():
    """Test the sigmoid helper"""
    assert sigmoid(0.0) == 0.5
    assert sigmoid(1000.0) == pytest.approx(1.0)
    assert sigmoid(-1000.0) == pytest.approx(0.0)
    assert torch.allclose(sigmoid(torch.zeros(3)), torch.full((3,), 0.5))


def test_create():
    """Test layer creation"""
    layer = make_layer(num_feed_back=2)

    assert layer.hidden_width == 4
    assert layer.hidden_height == 4
    assert layer.chunk_size == 2
    assert layer.num_hidden_chunks == 4
    assert layer.num_visible_layers == 1
    assert layer.num_feed_back_layers == 2
    assert layer.get_visible_layer_desc(0) == VisibleLayerDesc(4, 4, 2, 1, True)

    assert layer.get_hidden_states() == [0, 0, 0, 0]
    assert layer.get_feed_back(1) == [0, 0, 0, 0]

    # Feed-forward weights start just below 1, prediction weights at 0
    weights = layer.get_feed_forward_weights(0, 1, 1)
    assert weights.numel() == 9
    assert torch.all(weights >= 0.95) and torch.all(weights <= 1.0)
    assert torch.all(layer.get_prediction_weights(1, 0, 1, 1) == 0.0)


def test_create_is_deterministic():
    """Test that the seed fixes the initial weights"""
    a = make_layer(seed=7)
    b = make_layer(seed=7)
    c = make_layer(seed=8)

    assert torch.equal(a._feed_forward.weights, b._feed_forward.weights)
    assert not torch.equal(a._feed_forward.weights, c._feed_forward.weights)


@pytest.mark.parametrize("args", [
    (4, 4, 2, 0, []),
    (0, 4, 2, 0, [VisibleLayerDesc(4, 4, 2, 1)]),
    (4, 4, 0, 0, [VisibleLayerDesc(4, 4, 2, 1)]),
    (4, 4, 3, 0, [VisibleLayerDesc(4, 4, 2, 1)]),
    (4, 4, 2, -1, [VisibleLayerDesc(4, 4, 2, 1)]),
    (4, 4, 2, 0, [VisibleLayerDesc(4, -4, 2, 1)]),
    (4, 4, 2, 0, [VisibleLayerDesc(4, 4, 0, 1)]),
    (4, 4, 2, 0, [VisibleLayerDesc(4, 4, 2, 0)]),
    (4, 4, 2, 0, [VisibleLayerDesc(5, 4, 2, 1)]),
])
def test_create_rejects_invalid_config(args):
    """Test configuration errors at creation time"""
    layer = Layer()
    with pytest.raises(ConfigurationError):
        layer.create(*args, seed=0)


def test_boundary_windows():
    """Test that receptive fields are clipped, not wrapped, at the borders"""
    layer = make_layer()

    corner = layer.get_feed_forward_weights(0, 0, 0)
    edge = layer.get_feed_forward_weights(0, 1, 0)
    interior = layer.get_feed_forward_weights(0, 1, 1)
    far_corner = layer.get_feed_forward_weights(0, 3, 3)

    assert corner.numel() == 4
    assert edge.numel() == 6
    assert interior.numel() == 9
    assert far_corner.numel() == 4
    assert corner.numel() < interior.numel()

    assert layer.get_receptive_field(0, 0, 0) == (0, 0, 1, 1)
    assert layer.get_receptive_field(0, 3, 3) == (2, 2, 3, 3)
    assert layer.get_receptive_field(0, 1, 2) == (0, 1, 2, 3)


def test_forward_one_hot_invariant(cs):
    """Test that every chunk reports exactly one active unit in range"""
    layer = make_layer(num_feed_back=1)
    generator = torch.Generator().manual_seed(0)

    for _ in range(20):
        inputs = [torch.randint(0, 4, (4,), generator=generator)]
        layer.forward(inputs, cs, alpha=0.1, gamma=0.01)
        layer.backward([layer.get_hidden_states()], cs, beta=0.1)

        hidden = layer.get_hidden_states()
        predictions = layer.get_predictions(0)
        assert len(hidden) == 4
        assert len(predictions) == 4
        assert all(0 <= s < 4 for s in hidden)
        assert all(0 <= p < 4 for p in predictions)


def test_forward_rejects_mismatched_inputs(cs):
    """Test precondition errors in forward"""
    layer = make_layer()
    layer.forward([[1, 2, 3, 0]], cs)
    hidden = layer.get_hidden_states()
    weights = all_weights(layer)

    with pytest.raises(PreconditionError):
        layer.forward([], cs)
    with pytest.raises(PreconditionError):
        layer.forward([[1, 2, 3, 0], [1, 2, 3, 0]], cs)
    with pytest.raises(PreconditionError):
        layer.forward([[1, 2, 3]], cs)
    with pytest.raises(PreconditionError):
        layer.forward([[1, 2, 3, 4]], cs)
    with pytest.raises(PreconditionError):
        layer.forward([[-1, 2, 3, 0]], cs)
    # Fractional winners are not truncated
    with pytest.raises(PreconditionError):
        layer.forward([[1.7, 2.9, 0.2, 3.5]], cs)
    with pytest.raises(PreconditionError):
        layer.forward([torch.tensor([1.5, 2.0, 3.0, 0.0])], cs)
    # Ragged input
    with pytest.raises(PreconditionError):
        layer.forward([[[0, 1], [2]]], cs)

    # Nothing was touched
    assert layer.get_hidden_states() == hidden
    assert layer.get_inputs(0) == [1, 2, 3, 0]
    for before, after in zip(weights, all_weights(layer)):
        assert torch.equal(before, after)


def test_backward_rejects_mismatched_feedback(cs):
    """Test precondition errors in backward"""
    layer = make_layer(num_feed_back=1)
    layer.forward([[0, 0, 0, 0]], cs)

    with pytest.raises(PreconditionError):
        layer.backward([], cs)
    with pytest.raises(PreconditionError):
        layer.backward([[0, 0, 0]], cs)
    with pytest.raises(PreconditionError):
        layer.backward([[0, 0, 0, 9]], cs)

    assert layer.get_feed_back(0) == [0, 0, 0, 0]


def test_previous_buffers(cs):
    """Test that forward and backward keep one step of history"""
    layer = make_layer(num_feed_back=1)

    layer.forward([[0, 1, 2, 3]], cs)
    first_hidden = layer.get_hidden_states()
    layer.backward([[3, 3, 3, 3]], cs)

    layer.forward([[3, 2, 1, 0]], cs)
    layer.backward([[1, 1, 1, 1]], cs)

    assert layer.get_inputs(0) == [3, 2, 1, 0]
    assert layer.get_inputs_prev(0) == [0, 1, 2, 3]
    assert layer.get_hidden_states_prev() == first_hidden
    assert layer.get_feed_back(0) == [1, 1, 1, 1]
    assert layer.get_feed_back_prev(0) == [3, 3, 3, 3]

    activations, counts = layer.get_reconstruction()
    prev_activations, prev_counts = layer.get_reconstruction(prev=True)
    assert activations.shape == (16,) and prev_counts.shape == (16,)
    assert torch.all(counts >= 1)


def test_only_winner_learns(cs):
    """Test winner-take-all learning in each hidden chunk"""
    layer = make_layer()

    before = {
        (x, y): layer.get_feed_forward_weights(0, x, y)
        for y in range(4) for x in range(4)
    }

    layer.forward([[0, 1, 2, 3]], cs, alpha=0.1, gamma=0.01)

    winners = set()
    for c, local in enumerate(layer.get_hidden_states()):
        winners.add(unit_position(c, local, 4, 2))

    for (x, y), weights in before.items():
        changed = not torch.equal(weights, layer.get_feed_forward_weights(0, x, y))
        assert changed == ((x, y) in winners)


def test_winner_learns_from_reconstruction_error(cs):
    """Test that the winner's update is driven by the reconstruction accumulators"""
    layer = make_layer()
    inputs = [0, 1, 2, 3]

    before = {
        (x, y): layer.get_feed_forward_weights(0, x, y)
        for y in range(4) for x in range(4)
    }

    layer.forward([inputs], cs, alpha=0.1, gamma=0.01)

    activations, counts = layer.get_reconstruction()
    dense = to_dense(inputs, 4, 4, 2)

    for c, local in enumerate(layer.get_hidden_states()):
        x, y = unit_position(c, local, 4, 2)
        hidden_index = x + y * 4
        x0, y0, x1, y1 = layer.get_receptive_field(0, x, y)
        window = dense.reshape(4, 4)[y0:y1 + 1, x0:x1 + 1].flatten()
        active = window > 0

        old = before[(x, y)]
        new = layer.get_feed_forward_weights(0, x, y)

        # The accumulators hold the winner's match before learning
        assert counts[hidden_index] == active.sum()
        reconstruction = activations[hidden_index] / counts[hidden_index]
        assert reconstruction.item() == pytest.approx(old[active].mean().item(), abs=1e-6)

        expected = old[active] + 0.1 * (1.0 - reconstruction)
        assert torch.allclose(new[active], expected, atol=1e-6)
        assert torch.allclose(new[~active], old[~active] * 0.99, atol=1e-6)


def test_skip_predict(cs):
    """Test that layers flagged predict=False get no prediction weights or predictions"""
    descs = [
        VisibleLayerDesc(4, 4, 2, 1, predict=True),
        VisibleLayerDesc(4, 4, 2, 1, predict=False),
    ]
    layer = make_layer(num_feed_back=1, visible_layer_descs=descs)

    for y in range(4):
        for x in range(4):
            assert layer.get_prediction_weights(0, 1, x, y).numel() == 0
            assert layer.get_prediction_weights(0, 0, x, y).numel() > 0

    assert layer._prediction_weights[0].size == layer._feed_forward.size // 2

    for step in range(5):
        layer.forward([[step % 4] * 4, [0, 1, 2, 3]], cs)
        layer.backward([layer.get_hidden_states()], cs)

    assert len(layer.get_predictions(0)) == 4
    with pytest.raises(PreconditionError):
        layer.get_predictions(1)


def run_steps(num_workers, steps=30):
    descs = [
        VisibleLayerDesc(8, 8, 2, 2, predict=True),
        VisibleLayerDesc(4, 4, 2, 1, predict=False),
    ]
    layer = Layer()
    layer.create(8, 8, 2, 2, descs, seed=123)

    generator = torch.Generator().manual_seed(5)
    with ComputeSystem(num_workers) as cs:
        for _ in range(steps):
            inputs = [
                torch.randint(0, 4, (16,), generator=generator),
                torch.randint(0, 4, (4,), generator=generator),
            ]
            layer.forward(inputs, cs, alpha=0.1, gamma=0.01)
            layer.backward([layer.get_hidden_states(), layer.get_hidden_states_prev()], cs, beta=0.1)

    return layer


def test_determinism_across_thread_counts():
    """Test that results do not depend on the number of worker threads"""
    single = run_steps(num_workers=1)
    pooled = run_steps(num_workers=4)
    again = run_steps(num_workers=4)

    for other in (pooled, again):
        assert other.get_hidden_states() == single.get_hidden_states()
        assert other.get_predictions(0) == single.get_predictions(0)
        for before, after in zip(all_weights(single), all_weights(other)):
            assert torch.equal(before, after)


def test_static_input_convergence(cs):
    """Test that hidden winners stop changing on a constant input"""
    layer = make_layer(num_feed_back=0)
    inputs = [[1, 2, 3, 0]]

    history = []
    for _ in range(50):
        layer.forward(inputs, cs, alpha=0.1, gamma=0.01)
        layer.backward([], cs, beta=0.1)
        history.append(layer.get_hidden_states())

    # Stable well before the end
    assert all(states == history[-1] for states in history[-40:])


def test_period_two_prediction(cs):
    """Test that an alternating sequence A, B, A, ... is predicted one step ahead"""
    layer = make_layer(num_feed_back=1)
    model = LayerModel(layer, cs)

    a = [0, 0, 0, 0]
    b = [3, 3, 3, 3]

    for step in range(400):
        model.step([a if step % 2 == 0 else b])

    # A and B end up with different hidden codes
    model.step([a])
    code_a = layer.get_hidden_states()
    model.step([b])
    code_b = layer.get_hidden_states()
    assert code_a != code_b

    for _ in range(3):
        predictions = model.step([a])
        assert predictions[0] == b
        predictions = model.step([b])
        assert predictions[0] == a
