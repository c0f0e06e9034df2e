"""
Transform pipeline: export -> [compress] -> [encrypt].

Each stage runs in its own producer thread connected by a one-slot pipe, so
memory stays bounded to one chunk per stage (the encryption stage buffers
the full plaintext). Reading the pipeline pulls through every stage.

Errors:
- A stage failure is raised from the next read(), or from close() if the
  consumer never saw it.
- The export process's exit status is only known after its output has been
  drained, so a failed dump is raised from close(). A fully read pipeline is
  not a successful backup until close() returns.
"""

import logging
from typing import BinaryIO, List, Optional

from autobackup.utils.crypto import AESEncryptor
from autobackup.utils.streams import CHUNK_SIZE, ByteStream
from .compression import GzipCompressor


logger = logging.getLogger(__name__)


class Pipeline(ByteStream):
    """Chain of transform stages over a source stream."""

    def __init__(self, source: ByteStream, stages: Optional[List] = None, context=None):
        """
        Args:
            source: Stage zero, usually an exporter's ProcessStream
            stages: Transform stages applied in order
            context: CancelContext shared by every stage
        """
        self.source = source
        self.stages = list(stages or [])

        stream = source
        for stage in self.stages:
            stream = stage.apply(stream, context)
        self._output = stream
        self._closed = False

    @property
    def extension(self) -> str:
        """Filename suffixes of the applied stages, in application order."""
        return ''.join(stage.extension() for stage in self.stages)

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def read(self, size: int = -1) -> bytes:
        return self._output.read(size)

    def abort(self):
        self._output.abort()

    def close(self):
        """
        Close every stage and the source.

        Raises:
            ExportError: If the export process failed
            TransformError: If a stage failed and the error was not yet raised
        """
        if self._closed:
            return
        self._closed = True
        self._output.close()

    def copy_to(self, fileobj: BinaryIO) -> int:
        """
        Read the pipeline to EOF into fileobj.

        Does not close the pipeline.

        Returns:
            Number of bytes written
        """
        total = 0
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return total
            fileobj.write(chunk)
            total += len(chunk)


def create_stages(
    compress: bool = True,
    encryption_key: Optional[bytes] = None,
    compression_level: int = 9
) -> List:
    """
    Create the transform stages in their fixed order: compress, encrypt.

    Call this before starting the export so key errors happen before I/O.

    Raises:
        InvalidKeySize: If encryption_key is given but not 32 bytes
    """
    stages = []

    if compress:
        stages.append(GzipCompressor(compression_level))
    if encryption_key:
        stages.append(AESEncryptor(encryption_key))

    return stages


def build_pipeline(
    source: ByteStream,
    compress: bool = True,
    encryption_key: Optional[bytes] = None,
    context=None,
    compression_level: int = 9
) -> Pipeline:
    """Build a pipeline over an already open source stream."""
    stages = create_stages(compress, encryption_key, compression_level)
    logger.debug(f"Pipeline stages: {[stage.name for stage in stages] or 'none'}")
    return Pipeline(source, stages, context)
