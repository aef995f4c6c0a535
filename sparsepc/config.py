"""
Configuration for sparsepc layers

This module holds the immutable visible layer descriptor, the learning rate
bundle used by the single layer driver, and the validation applied when a
layer is created.
"""

from dataclasses import dataclass

from .errors import ConfigurationError


@dataclass(frozen=True)
class VisibleLayerDesc:
    """
    Visible (input) layer descriptor

    Args:
        width (int, optional): Width of the visible layer in units. Defaults to 36.
        height (int, optional): Height of the visible layer in units. Defaults to 36.
        chunk_size (int, optional): Diameter of a chunk. A chunk holds chunk_size**2 units. Defaults to 6.
        radius (int, optional): Radius of the receptive field in visible units. Defaults to 9.
        predict (bool, optional): Whether predictions are computed for this layer. Defaults to True.
    """

    width: int = 36
    height: int = 36
    chunk_size: int = 6
    radius: int = 9
    predict: bool = True

    @property
    def chunks_in_x(self):
        return self.width // self.chunk_size

    @property
    def chunks_in_y(self):
        return self.height // self.chunk_size

    @property
    def num_chunks(self):
        return self.chunks_in_x * self.chunks_in_y

    @property
    def num_units(self):
        return self.width * self.height


@dataclass
class LearningRates:
    """
    Learning rates applied at every step

    Args:
        alpha (float, optional): Feed-forward learning rate. Defaults to 0.1.
        beta (float, optional): Prediction learning rate. Defaults to 0.1.
        gamma (float, optional): Feed-forward weight decay. Defaults to 0.01.
    """

    alpha: float = 0.1
    beta: float = 0.1
    gamma: float = 0.01

    def __post_init__(self):
        for name in ("alpha", "beta", "gamma"):
            if getattr(self, name) < 0.0:
                raise ConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}")


def _check_grid(name, width, height, chunk_size):
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"{name} dimensions must be positive, got {width}x{height}")
    if chunk_size <= 0:
        raise ConfigurationError(f"{name} chunk size must be positive, got {chunk_size}")
    if width % chunk_size != 0 or height % chunk_size != 0:
        raise ConfigurationError(
            f"{name} dimensions {width}x{height} are not a multiple of chunk size {chunk_size}"
        )


def validate_layer_config(hidden_width, hidden_height, chunk_size, num_feed_back, visible_layer_descs):
    """
    Validate the arguments of Layer.create

    Raises:
        ConfigurationError: On the first invalid value found.
    """
    _check_grid("Hidden layer", hidden_width, hidden_height, chunk_size)

    if num_feed_back < 0:
        raise ConfigurationError(f"Number of feedback layers must be non-negative, got {num_feed_back}")

    if len(visible_layer_descs) == 0:
        raise ConfigurationError("At least one visible layer descriptor is required")

    for v, desc in enumerate(visible_layer_descs):
        if not isinstance(desc, VisibleLayerDesc):
            raise ConfigurationError(f"Visible layer {v}: expected VisibleLayerDesc, got {type(desc).__name__}")
        _check_grid(f"Visible layer {v}", desc.width, desc.height, desc.chunk_size)
        if desc.radius <= 0:
            raise ConfigurationError(f"Visible layer {v}: radius must be positive, got {desc.radius}")
