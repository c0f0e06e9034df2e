"""
Streaming compression for backup data.

GzipCompressor compresses incrementally in a producer thread, so compressed
bytes are available downstream while the dump is still running. The output
is a standard gzip stream readable by gunzip.
"""

import os
import zlib
from datetime import datetime, timezone
from typing import Optional

from autobackup.errors import BackupCancelled, CompressionError, TransformError
from autobackup.utils.streams import CHUNK_SIZE, ByteStream, Pipe, PipeClosed, StageStream


# zlib window bits value that selects the gzip container
GZIP_WBITS = 16 + zlib.MAX_WBITS

GZIP_MAGIC = b'\x1f\x8b'


class GzipCompressor:
    """Gzip compression stage."""

    name = 'compress'

    def __init__(self, level: int = zlib.Z_BEST_COMPRESSION):
        """
        Args:
            level: zlib compression level 1-9 (default: 9)
        """
        if not 1 <= level <= 9:
            raise ValueError(f"Invalid compression level: {level}. Valid range: 1-9")
        self.level = level

    def compress(self, stream: ByteStream, context=None) -> ByteStream:
        """
        Wrap a stream with gzip compression.

        Errors reading the input surface as CompressionError on the
        returned stream.
        """

        def produce(upstream: ByteStream, pipe: Pipe):
            compressor = zlib.compressobj(self.level, zlib.DEFLATED, GZIP_WBITS)

            while True:
                try:
                    chunk = upstream.read(CHUNK_SIZE)
                except (TransformError, BackupCancelled, PipeClosed):
                    raise
                except Exception as e:
                    raise CompressionError(f"failed to read input: {e}") from e

                if not chunk:
                    break

                pipe.write(compressor.compress(chunk))

            pipe.write(compressor.flush())

        return StageStream(self.name, stream, produce, context)

    def decompress(self, stream: ByteStream, context=None) -> ByteStream:
        """Wrap a gzip stream with decompression."""

        def produce(upstream: ByteStream, pipe: Pipe):
            decompressor = zlib.decompressobj(GZIP_WBITS)

            try:
                while True:
                    chunk = upstream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    pipe.write(decompressor.decompress(chunk))

                pipe.write(decompressor.flush())
            except (TransformError, BackupCancelled, PipeClosed):
                raise
            except Exception as e:
                raise CompressionError(f"failed to decompress: {e}") from e

            if not decompressor.eof:
                raise CompressionError("failed to decompress: truncated gzip stream")

        return StageStream('decompress', stream, produce, context)

    def apply(self, stream: ByteStream, context=None) -> ByteStream:
        return self.compress(stream, context)

    def extension(self) -> str:
        return '.gz'


def generate_backup_filename(
    db_type: str,
    db_name: str,
    base_extension: str,
    now: Optional[datetime] = None
) -> str:
    """
    Generate a standardized backup filename.

    Format: {db_type}-{db_name}-{YYYYMMDD-HHMMSS}{base_extension}

    Transform suffixes (.gz, .enc) are appended by the pipeline.

    Args:
        db_type: Database type (postgres, mysql, mongodb)
        db_name: Database name
        base_extension: Extension of the raw dump, e.g. '.dump'
        now: Timestamp to use (default: current UTC time)

    Returns:
        Filename (without prefix)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    timestamp = now.strftime('%Y%m%d-%H%M%S')

    # Sanitize database name (replace spaces and special chars with underscores)
    safe_db_name = "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in db_name
    )

    return f"{db_type}-{safe_db_name}-{timestamp}{base_extension}"


def strip_transform_extensions(filename: str) -> str:
    """
    Strip pipeline suffixes from a backup filename.

    Handles .enc and .gz in any stacking applied by the pipeline, e.g.
    'postgres-app-20240101-000000.dump.gz.enc' -> '...dump'.

    Args:
        filename: Backup filename

    Returns:
        Filename without transform suffixes
    """
    base = os.path.basename(filename)
    while True:
        if base.endswith('.enc'):
            base = base[:-4]
        elif base.endswith('.gz'):
            base = base[:-3]
        else:
            return base
