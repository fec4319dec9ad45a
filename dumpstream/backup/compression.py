"""
Streaming compression stage for the backup pipeline.

Dumps are gzip'd on the fly; nothing is written to disk and only the data
currently passing through the compressor is held in memory.
"""

import zlib


class CompressionError(Exception):
    """Raised when stream compression fails."""
    pass


# zlib keeps at most one deflate block of pending symbols internally, so the
# output of a single compress()/flush() call stays well under this size
ZLIB_PENDING_LIMIT = 128 * 1024


class GzipTransform:
    """
    Streaming gzip compressor.

    Output is a standard gzip member, readable with `gunzip` or
    gzip.decompress().
    """

    name = 'gzip'

    def __init__(self, level: int = 9):
        """
        Initialize the compressor.

        Args:
            level: Compression level 1-9 (default: 9, like gzip -9)
        """
        if not 1 <= level <= 9:
            raise ValueError(f"Invalid compression level: {level}. Valid options: 1-9")
        self.level = level
        # wbits 16 + MAX_WBITS selects the gzip container
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
        self.bytes_in = 0
        self.bytes_out = 0

    def process(self, data: bytes) -> bytes:
        try:
            out = self._compressor.compress(data)
        except zlib.error as e:
            raise CompressionError(f"Failed to compress stream: {e}")
        self.bytes_in += len(data)
        self.bytes_out += len(out)
        return out

    def flush(self) -> bytes:
        try:
            out = self._compressor.flush(zlib.Z_FINISH)
        except zlib.error as e:
            raise CompressionError(f"Failed to finish compressed stream: {e}")
        self.bytes_out += len(out)
        return out

    @staticmethod
    def memory_overhead(block_size: int) -> int:
        """Upper bound on bytes this stage holds at once."""
        return 2 * block_size + ZLIB_PENDING_LIMIT

    @property
    def ratio(self) -> float:
        """Space saved, in percent."""
        if not self.bytes_in:
            return 0.0
        return (1 - self.bytes_out / self.bytes_in) * 100


def create_transforms(compress: bool, level: int = 9) -> list:
    """
    Build the transform stages for a dump.

    Args:
        compress: Whether the dump needs external compression
        level: gzip level

    Returns:
        List of transform stages (possibly empty)
    """
    if not compress:
        return []
    return [GzipTransform(level)]
