"""
Errors Module

Exception types raised by index building and search
"""


class PQCellError(Exception):
    """Base class for pqcell errors"""


class ConfigurationError(PQCellError, ValueError):
    """Invalid build or search parameters (M, k, w) or unusable input"""


class DimensionMismatch(PQCellError, ValueError):
    """Matrix shapes that cannot be combined"""


class ChunkClusteringFailure(PQCellError, RuntimeError):
    """k-means failed on a single chunk

    Raised by the chunk quantizer and absorbed by the index builder, which
    records the chunk as degenerate and continues with the others.
    """

    def __init__(self, chunk: int, reason: str):
        super().__init__(f"Chunk {chunk} clustering failed: {reason}")
        self.chunk = chunk
        self.reason = reason
