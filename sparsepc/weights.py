"""
Sparse Weight Stores

Every hidden unit connects to a square window of each visible layer. The
window is centered on the unit's projected position and clipped at the
borders. Weight vectors of all (hidden unit, visible layer) pairs live in one
flat arena, addressed by

    i = v + num_visible_layers * (x + y * hidden_width)
"""

import logging

import torch

logger = logging.getLogger(__name__)


def receptive_field(x, y, hidden_width, hidden_height, desc):
    """
    Window of visible units a hidden unit connects to

    Args:
        x (int): Hidden unit column
        y (int): Hidden unit row
        hidden_width (int): Width of the hidden layer
        hidden_height (int): Height of the hidden layer
        desc (VisibleLayerDesc): Visible layer descriptor

    Returns:
        tuple: Inclusive bounds (x0, y0, x1, y1) in visible units
    """
    # floor((x + 0.5) * width / hidden_width) in integer arithmetic
    cx = ((2 * x + 1) * desc.width) // (2 * hidden_width)
    cy = ((2 * y + 1) * desc.height) // (2 * hidden_height)

    x0 = max(0, cx - desc.radius)
    y0 = max(0, cy - desc.radius)
    x1 = min(desc.width - 1, cx + desc.radius)
    y1 = min(desc.height - 1, cy + desc.radius)

    return x0, y0, x1, y1


def arena_size(hidden_width, hidden_height, visible_layer_descs, allocate=None):
    """
    Number of weights a store holds, without building its connectivity

    Window extents are separable, so the total is the product of the summed
    column and row extents per visible layer.
    """
    total = 0
    for v, desc in enumerate(visible_layer_descs):
        if allocate is not None and not allocate[v]:
            continue

        columns = 0
        for x in range(hidden_width):
            x0, _, x1, _ = receptive_field(x, 0, hidden_width, hidden_height, desc)
            columns += x1 - x0 + 1

        rows = 0
        for y in range(hidden_height):
            _, y0, _, y1 = receptive_field(0, y, hidden_width, hidden_height, desc)
            rows += y1 - y0 + 1

        total += columns * rows

    return total


class Connectivity:
    """
    Receptive fields of every (hidden unit, visible layer) pair

    Holds, per unit index, the flat visible indices (x + y * width) covered by
    the window in weight order, and per visible unit the list of hidden units
    that cover it.

    Args:
        hidden_width (int): Width of the hidden layer
        hidden_height (int): Height of the hidden layer
        visible_layer_descs (list): VisibleLayerDesc per visible layer
    """

    def __init__(self, hidden_width, hidden_height, visible_layer_descs):
        self.hidden_width = hidden_width
        self.hidden_height = hidden_height
        self.visible_layer_descs = list(visible_layer_descs)
        self.num_visible_layers = len(self.visible_layer_descs)

        self.fields = []
        self.indices = []

        # Per visible layer and visible unit: covering hidden units and the
        # position of that visible unit inside their weight vectors
        cover_units = [[[] for _ in range(desc.num_units)] for desc in self.visible_layer_descs]
        cover_positions = [[[] for _ in range(desc.num_units)] for desc in self.visible_layer_descs]

        for hidden_index in range(hidden_width * hidden_height):
            x = hidden_index % hidden_width
            y = hidden_index // hidden_width

            for v, desc in enumerate(self.visible_layer_descs):
                x0, y0, x1, y1 = receptive_field(x, y, hidden_width, hidden_height, desc)
                xs = torch.arange(x0, x1 + 1)
                ys = torch.arange(y0, y1 + 1)
                flat = (xs.unsqueeze(0) + ys.unsqueeze(1) * desc.width).flatten()

                self.fields.append((x0, y0, x1, y1))
                self.indices.append(flat)

                for k, j in enumerate(flat.tolist()):
                    cover_units[v][j].append(hidden_index)
                    cover_positions[v][j].append(k)

        self.cover_units = [
            [torch.tensor(units, dtype=torch.long) for units in per_layer] for per_layer in cover_units
        ]
        self.cover_positions = [
            [torch.tensor(positions, dtype=torch.long) for positions in per_layer] for per_layer in cover_positions
        ]

    def unit_index(self, v, x, y):
        return v + self.num_visible_layers * (x + y * self.hidden_width)

    def window_size(self, i):
        x0, y0, x1, y1 = self.fields[i]
        return x1 - x0 + 1, y1 - y0 + 1


class SparseWeightStore:
    """
    Flat arena of per-unit weight vectors

    Args:
        connectivity (Connectivity): Receptive fields shared by all stores of a layer
        allocate (list, optional): Per visible layer flag. Layers flagged False
            get zero-length vectors. Defaults to allocating every layer.
    """

    def __init__(self, connectivity, allocate=None):
        self.connectivity = connectivity
        num_visible = connectivity.num_visible_layers

        if allocate is None:
            allocate = [True] * num_visible
        self.allocate = list(allocate)

        lengths = [
            flat.numel() if self.allocate[i % num_visible] else 0
            for i, flat in enumerate(connectivity.indices)
        ]
        self.lengths = torch.tensor(lengths, dtype=torch.long)
        self.offsets = torch.zeros_like(self.lengths)
        if len(lengths) > 1:
            self.offsets[1:] = torch.cumsum(self.lengths, 0)[:-1]

        self.weights = torch.zeros(int(self.lengths.sum()), dtype=torch.float32)

        # Arena positions of every covering connection, per visible unit
        self._cover_slots = []
        for v in range(num_visible):
            if not self.allocate[v]:
                self._cover_slots.append(None)
                continue
            slots = []
            for units, positions in zip(connectivity.cover_units[v], connectivity.cover_positions[v]):
                slots.append(self.offsets[v + num_visible * units] + positions)
            self._cover_slots.append(slots)

        logger.debug("Allocated weight store with %d weights", self.weights.numel())

    @property
    def size(self):
        return self.weights.numel()

    def view(self, i):
        """Weight vector of unit index i (a view into the arena)."""
        offset = int(self.offsets[i])
        return self.weights[offset:offset + int(self.lengths[i])]

    def dot(self, i, dense):
        """
        Activation of unit index i against a dense visible vector

        Returns:
            tuple: (weighted sum, number of active visible units in the window)
        """
        visible = dense[self.connectivity.indices[i]]
        return torch.dot(self.view(i), visible), visible.sum()

    def update(self, i, delta):
        """Add delta to the weight vector of unit index i in place."""
        self.view(i).add_(delta)

    def covering(self, v, j):
        """
        Connections onto visible unit j of layer v

        Returns:
            tuple: (hidden unit indices, arena positions)
        """
        return self.connectivity.cover_units[v][j], self._cover_slots[v][j]
