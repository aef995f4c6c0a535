"""
Utilities for sparse predictive layers

This module provides helpers for visualizing and analysing layers:
feed-forward weight windows, hidden states, prediction accuracy curves, and
statistics of the chunked codes a layer produces.
"""

import torch
import numpy as np
import matplotlib.pyplot as plt
from torchvision.utils import make_grid

from .representation import as_chunks


def visualize_feed_forward_weights(layer, v=0, padding=1):
    """
    Visualize the feed-forward weights of every hidden unit

    Each hidden unit's weight window is drawn in its receptive field's shape,
    padded to a full (2 * radius + 1) square so that border units line up.

    Args:
        layer (Layer): Created layer
        v (int, optional): Visible layer index. Defaults to 0.
        padding (int, optional): Padding between tiles. Defaults to 1.

    Returns:
        plt.Figure: Matplotlib figure with the weight grid
    """
    radius = layer.get_visible_layer_desc(v).radius
    diameter = 2 * radius + 1

    tiles = []
    for y in range(layer.hidden_height):
        for x in range(layer.hidden_width):
            x0, y0, x1, y1 = layer.get_receptive_field(v, x, y)
            weights = layer.get_feed_forward_weights(v, x, y).reshape(y1 - y0 + 1, x1 - x0 + 1)

            tile = torch.zeros(diameter, diameter)
            tile[:weights.shape[0], :weights.shape[1]] = weights
            tiles.append(tile.unsqueeze(0))

    grid = make_grid(torch.stack(tiles), nrow=layer.hidden_width, padding=padding, pad_value=0.0)

    fig, ax = plt.subplots(figsize=(8, 8))
    im = ax.imshow(grid[0].numpy(), cmap='viridis')
    ax.set_title(f'Feed-forward weights (visible layer {v})')
    ax.axis('off')
    plt.colorbar(im, ax=ax)
    plt.tight_layout()
    return fig


def _states_map(states, width, height, chunk_size):
    chunks_in_x = width // chunk_size
    chunks_in_y = height // chunk_size
    return np.asarray(states, dtype=np.int64).reshape(chunks_in_y, chunks_in_x)


def visualize_hidden_states(layer):
    """
    Show the hidden states next to every visible layer's inputs and predictions

    Args:
        layer (Layer): Layer after at least one step

    Returns:
        plt.Figure: Matplotlib figure with visualizations
    """
    panels = [('Hidden states', _states_map(
        layer.get_hidden_states(), layer.hidden_width, layer.hidden_height, layer.chunk_size
    ))]

    for v in range(layer.num_visible_layers):
        desc = layer.get_visible_layer_desc(v)
        panels.append((f'Inputs {v}', _states_map(layer.get_inputs(v), desc.width, desc.height, desc.chunk_size)))
        if desc.predict:
            panels.append((f'Predictions {v}', _states_map(
                layer.get_predictions(v), desc.width, desc.height, desc.chunk_size
            )))

    fig, axes = plt.subplots(1, len(panels), figsize=(4*len(panels), 4))
    if len(panels) == 1:
        axes = [axes]

    for ax, (title, states) in zip(axes, panels):
        im = ax.imshow(states, cmap='tab20')
        ax.set_title(title)
        ax.axis('off')
        plt.colorbar(im, ax=ax)

    plt.tight_layout()
    return fig


def plot_accuracy_curves(history, title='Prediction Accuracy'):
    """
    Plot prediction accuracy per epoch

    Args:
        history (list): Accuracies, as returned by LayerModel.train_sequence
        title (str, optional): Plot title. Defaults to 'Prediction Accuracy'.

    Returns:
        plt.Figure: Matplotlib figure with plot
    """
    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(history)
    ax.set_title(title)
    ax.set_xlabel('Epoch')
    ax.set_ylabel('Accuracy')
    ax.set_ylim(0.0, 1.05)
    ax.grid(True)
    plt.tight_layout()
    return fig


def one_hot_codes(codes, chunk_size):
    """
    Expand chunked codes into one-hot feature vectors

    Args:
        codes (list): Chunked codes of equal length
        chunk_size (int): Chunk diameter of the codes

    Returns:
        np.ndarray: Array of shape (len(codes), num_chunks * chunk_size**2)
    """
    codes = torch.stack([as_chunks(code) for code in codes])
    features = torch.nn.functional.one_hot(codes, num_classes=chunk_size * chunk_size)
    return features.reshape(codes.shape[0], -1).float().numpy()


def visualize_representations(codes, labels, chunk_size, n_components=2):
    """
    Visualize hidden codes using dimensionality reduction

    Args:
        codes (list): Hidden states collected over time
        labels (list): Label per code, used for coloring
        chunk_size (int): Chunk diameter of the hidden layer
        n_components (int, optional): Number of PCA components (2 or 3). Defaults to 2.

    Returns:
        plt.Figure: Matplotlib figure with visualizations
    """
    from sklearn.decomposition import PCA

    features = one_hot_codes(codes, chunk_size)
    labels = np.asarray(labels)

    pca = PCA(n_components=n_components)
    reduced = pca.fit_transform(features)

    fig = plt.figure(figsize=(10, 8))
    if n_components == 3:
        ax = fig.add_subplot(111, projection='3d')
        scatter = ax.scatter(reduced[:, 0], reduced[:, 1], reduced[:, 2], c=labels, cmap='tab10', alpha=0.7)
        ax.set_zlabel('Component 3')
    else:
        ax = fig.add_subplot(111)
        scatter = ax.scatter(reduced[:, 0], reduced[:, 1], c=labels, cmap='tab10', alpha=0.7)
    ax.set_xlabel('Component 1')
    ax.set_ylabel('Component 2')

    legend = ax.legend(*scatter.legend_elements(), title="Labels")
    ax.add_artist(legend)

    ax.set_title('Hidden code representations')
    plt.tight_layout()
    return fig


def compute_code_statistics(codes, chunk_size):
    """
    Compute usage statistics of chunked codes

    Args:
        codes (list): Chunked codes collected over time
        chunk_size (int): Chunk diameter of the codes

    Returns:
        dict: Per chunk usage counts and entropy (in bits), plus the number
            of distinct codes
    """
    codes = torch.stack([as_chunks(code) for code in codes])
    num_units = chunk_size * chunk_size

    usage = torch.stack([
        torch.bincount(codes[:, c], minlength=num_units) for c in range(codes.shape[1])
    ])

    probabilities = usage.float() / codes.shape[0]
    logs = torch.where(probabilities > 0, torch.log2(probabilities), torch.zeros_like(probabilities))
    entropy = -(probabilities * logs).sum(dim=1)

    return {
        'usage': usage.numpy(),
        'entropy': entropy.numpy(),
        'mean_entropy': float(entropy.mean()),
        'distinct_codes': len({tuple(code) for code in codes.tolist()}),
    }
