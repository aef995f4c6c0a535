"""
Exceptions for sparsepc

Configuration problems are reported when a layer is created, precondition
violations when a forward or backward step is handed badly shaped data, and
stream format problems when a layer is read back from disk.
"""


class SparsePCError(Exception):
    """Base class for all sparsepc errors."""


class ConfigurationError(SparsePCError, ValueError):
    """Invalid layer dimensions, chunk sizes, radii or descriptor lists."""


class PreconditionError(SparsePCError, ValueError):
    """Inputs or feedback that do not match the configured layer."""


class StreamFormatError(SparsePCError, IOError):
    """A truncated or malformed layer stream."""
