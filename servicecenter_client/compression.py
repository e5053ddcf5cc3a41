# =============================================================================
# Service Center Client -- Compression Handler
# =============================================================================

from __future__ import annotations

import zlib


class CompressionHandler:
    """Zlib inflation for ``C:`` frames and raw zlib frames.

    Outbound frames are never compressed; the server decides when to
    compress what it sends.
    """

    def decompress(self, data: bytes, max_size: int = 0) -> bytes:
        """Inflate *data*; stop at *max_size* bytes when it is non-zero.

        Falls back to raw deflate (no zlib header).
        """
        try:
            return self._inflate(zlib.decompressobj(), data, max_size)
        except zlib.error:
            return self._inflate(zlib.decompressobj(-zlib.MAX_WBITS), data, max_size)

    @staticmethod
    def _inflate(inflater, data: bytes, max_size: int) -> bytes:
        if not max_size:
            return inflater.decompress(data) + inflater.flush()
        # One byte over the cap is enough to tell the caller it was exceeded
        return inflater.decompress(data, max_size + 1)
