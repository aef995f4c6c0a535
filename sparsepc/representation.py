"""
Chunked Sparse Representations

A chunked representation of a width x height grid stores, for every
chunk_size x chunk_size chunk, the index of the single active unit inside
that chunk. Chunks are numbered row by row, and so are units within a chunk.
"""

import numpy as np
import torch

from .errors import PreconditionError


def num_chunks(width, height, chunk_size):
    """Number of chunks in a width x height grid."""
    return (width // chunk_size) * (height // chunk_size)


def chunk_of(x, y, width, chunk_size):
    """
    Locate the unit (x, y) in chunked coordinates

    Returns:
        tuple: (chunk index, local index within the chunk)
    """
    chunks_in_x = width // chunk_size
    chunk = (x // chunk_size) + (y // chunk_size) * chunks_in_x
    local = (x % chunk_size) + (y % chunk_size) * chunk_size
    return chunk, local


def unit_position(chunk, local, width, chunk_size):
    """Inverse of chunk_of: the (x, y) position of a unit."""
    chunks_in_x = width // chunk_size
    x = (chunk % chunks_in_x) * chunk_size + local % chunk_size
    y = (chunk // chunks_in_x) * chunk_size + local // chunk_size
    return x, y


def as_chunks(rep):
    """
    Convert a list, array or tensor of chunk winners to a flat int64 tensor

    Raises:
        PreconditionError: If rep is ragged or holds non-integral values.
    """
    if isinstance(rep, torch.Tensor):
        rep = rep.detach().cpu().numpy()

    try:
        array = np.asarray(rep)
    except ValueError as e:
        raise PreconditionError(f"Malformed chunked representation: {e}") from e

    if array.size == 0:
        return torch.zeros(0, dtype=torch.long)

    if np.issubdtype(array.dtype, np.floating):
        # Integral floats are accepted, fractional winners are not
        if not np.all(np.isfinite(array)) or not np.all(array == np.floor(array)):
            raise PreconditionError("Chunked representation holds non-integral winner indices")
    elif not np.issubdtype(array.dtype, np.integer):
        raise PreconditionError(f"Chunked representation has unsupported dtype {array.dtype}")

    return torch.from_numpy(array.astype(np.int64).ravel())


def validate(rep, expected_chunks, chunk_size, name="representation"):
    """
    Check that a chunked representation fits a grid

    Args:
        rep (torch.Tensor): Flat tensor of chunk winners
        expected_chunks (int): Required number of chunks
        chunk_size (int): Chunk diameter of the grid
        name (str, optional): Name used in error messages

    Raises:
        PreconditionError: If the length or any winner index is out of range.
    """
    if rep.numel() != expected_chunks:
        raise PreconditionError(f"{name} has {rep.numel()} chunks, expected {expected_chunks}")
    if rep.numel() > 0:
        lo = int(rep.min())
        hi = int(rep.max())
        if lo < 0 or hi >= chunk_size * chunk_size:
            raise PreconditionError(
                f"{name} holds winner indices in [{lo}, {hi}], expected [0, {chunk_size * chunk_size})"
            )


def to_dense(rep, width, height, chunk_size, dtype=torch.float32):
    """
    Expand a chunked representation into a flat dense 0/1 vector

    The returned vector is indexed by x + y * width.
    """
    rep = as_chunks(rep)
    chunks_in_x = width // chunk_size
    chunk = torch.arange(rep.numel())
    xs = (chunk % chunks_in_x) * chunk_size + rep % chunk_size
    ys = (chunk // chunks_in_x) * chunk_size + rep // chunk_size

    dense = torch.zeros(width * height, dtype=dtype)
    dense[xs + ys * width] = 1
    return dense


def encode_dense(activity, chunk_size, threshold=None):
    """
    Select the sparse code of a dense 2D activity map

    Each chunk's winner is its unit of maximal activity. Ties go to the lowest
    local index.

    Args:
        activity (array-like): Activity of shape (height, width)
        chunk_size (int): Chunk diameter
        threshold (float, optional): Chunks whose maximum falls below this
            value fall back to index 0. Defaults to None.

    Returns:
        torch.Tensor: Flat int64 tensor of chunk winners
    """
    activity = torch.as_tensor(np.asarray(activity, dtype=np.float32))
    if activity.dim() != 2:
        raise PreconditionError(f"Expected a 2D activity map, got shape {tuple(activity.shape)}")

    height, width = activity.shape
    if width % chunk_size != 0 or height % chunk_size != 0:
        raise PreconditionError(f"Activity map {width}x{height} is not a multiple of chunk size {chunk_size}")

    # (chunks_y, chunk_size, chunks_x, chunk_size) -> (chunks, chunk_size**2)
    blocks = activity.reshape(height // chunk_size, chunk_size, width // chunk_size, chunk_size)
    blocks = blocks.permute(0, 2, 1, 3).reshape(-1, chunk_size * chunk_size)

    values, winners = blocks.max(dim=1)
    # torch.max does not promise the first index on ties
    winners = (blocks == values.unsqueeze(1)).to(torch.float32).argmax(dim=1)

    if threshold is not None:
        winners[values < threshold] = 0

    return winners.to(torch.long)
