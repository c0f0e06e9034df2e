"""
Unit tests for the transform pipeline (autobackup/backup/pipeline.py).

Uses small Python child processes in place of database dump tools.
"""

import io
import gzip
import zlib
import threading

import pytest

from autobackup.backup.context import CancelContext
from autobackup.backup.pipeline import Pipeline, build_pipeline, create_stages
from autobackup.errors import BackupCancelled, ExportError, InvalidKeySize
from autobackup.utils.crypto import AESEncryptor
from autobackup.utils.streams import BytesStream, read_all


DUMP_SCRIPT = "import sys; sys.stdout.buffer.write(b'row,' * 50000)"

FAILING_DUMP_SCRIPT = (
    "import sys; "
    "sys.stdout.buffer.write(b'partial,' * 1000); "
    "sys.stdout.flush(); "
    "sys.stderr.write('FATAL: password authentication failed'); "
    "sys.exit(3)"
)

ENDLESS_DUMP_SCRIPT = (
    "import sys\n"
    "while True:\n"
    "    sys.stdout.buffer.write(b'x' * 65536)\n"
)

LATE_FAILURE_DUMP_SCRIPT = (
    "import os, sys, time; "
    "sys.stdout.buffer.write(b'row,' * 1000); "
    "sys.stdout.flush(); "
    "os.close(1); "
    "sys.stderr.write('could not finish dump'); "
    "sys.stderr.flush(); "
    "time.sleep(0.5); "
    "os._exit(3)"
)

HANGING_DUMP_SCRIPT = (
    "import sys, time; "
    "sys.stdout.buffer.write(b'header'); "
    "sys.stdout.flush(); "
    "time.sleep(60)"
)


class TestCreateStages:
    """Test stage construction."""

    def test_no_stages(self):
        assert create_stages(compress=False, encryption_key=None) == []

    def test_order_is_compress_then_encrypt(self, encryption_key):
        stages = create_stages(compress=True, encryption_key=encryption_key)

        assert [stage.name for stage in stages] == ['compress', 'encrypt']

    def test_invalid_key_rejected_before_io(self):
        """Test a bad key fails at construction, before any stream exists."""
        with pytest.raises(InvalidKeySize):
            create_stages(compress=True, encryption_key=b'k' * 16)

    def test_extension_follows_stage_order(self, encryption_key):
        pipeline = Pipeline(BytesStream(b''), create_stages(True, encryption_key))

        assert pipeline.extension == '.gz.enc'
        assert pipeline.stage_names == ['compress', 'encrypt']
        pipeline.abort()
        pipeline.close()

    def test_extension_without_stages(self):
        pipeline = Pipeline(BytesStream(b'data'))

        assert pipeline.extension == ''
        assert read_all(pipeline) == b'data'
        pipeline.close()


class TestPipeline:
    """Test data flow and error propagation through the pipeline."""

    def test_compress_and_encrypt_round_trip(self, python_process, encryption_key):
        """Test decrypt then gunzip recovers the dump exactly."""
        pipeline = build_pipeline(python_process(DUMP_SCRIPT), compress=True, encryption_key=encryption_key)

        output = io.BytesIO()
        size = pipeline.copy_to(output)
        pipeline.close()

        assert size == len(output.getvalue())
        plaintext = AESEncryptor(encryption_key).open(output.getvalue())
        assert gzip.decompress(plaintext) == b'row,' * 50000

    def test_compress_only(self, python_process):
        pipeline = build_pipeline(python_process(DUMP_SCRIPT), compress=True)

        data = read_all(pipeline)
        pipeline.close()

        assert gzip.decompress(data) == b'row,' * 50000

    def test_passthrough(self, python_process):
        pipeline = build_pipeline(python_process(DUMP_SCRIPT), compress=False)

        data = read_all(pipeline)
        pipeline.close()

        assert data == b'row,' * 50000

    @pytest.mark.parametrize('compress,use_key', [
        (False, False),
        (True, False),
        (True, True),
        (False, True),
    ])
    def test_export_failure_surfaces_on_close(self, python_process, encryption_key, compress, use_key):
        """Test a failed dump is not a success even after reading to EOF."""
        key = encryption_key if use_key else None
        pipeline = build_pipeline(
            python_process(FAILING_DUMP_SCRIPT, db_name='appdb'),
            compress=compress,
            encryption_key=key
        )

        # Reading succeeds, the exit status is only known on close
        read_all(pipeline)

        with pytest.raises(ExportError) as exc_info:
            pipeline.close()

        error = exc_info.value
        assert error.returncode == 3
        assert 'password authentication failed' in error.stderr
        assert "postgres database 'appdb'" in str(error)

    def test_failure_after_output_closed(self, python_process):
        """Test closing after the last gzip byte, before EOF, waits for the exit status."""
        pipeline = build_pipeline(python_process(LATE_FAILURE_DUMP_SCRIPT), compress=True)

        decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        data = b''
        while not decompressor.eof:
            chunk = pipeline.read()
            assert chunk
            data += decompressor.decompress(chunk)

        assert data == b'row,' * 1000

        with pytest.raises(ExportError) as exc_info:
            pipeline.close()

        assert exc_info.value.returncode == 3
        assert 'could not finish dump' in exc_info.value.stderr

    def test_close_is_idempotent(self, python_process):
        pipeline = build_pipeline(python_process(DUMP_SCRIPT), compress=True)
        read_all(pipeline)

        pipeline.close()
        pipeline.close()

    def test_early_abort_terminates_export(self, python_process):
        """Test aborting mid-stream kills the dump without raising on close."""
        source = python_process(ENDLESS_DUMP_SCRIPT)
        pipeline = build_pipeline(source, compress=True)

        assert pipeline.read()

        pipeline.abort()
        pipeline.close()

        assert source.process.poll() is not None

    def test_cancellation_unblocks_reader(self, python_process):
        """Test cancel wakes a reader blocked on a stalled dump."""
        context = CancelContext()
        source = python_process(HANGING_DUMP_SCRIPT, context=context)
        pipeline = build_pipeline(source, compress=True, context=context)

        timer = threading.Timer(0.2, context.cancel)
        timer.start()

        try:
            with pytest.raises(BackupCancelled):
                read_all(pipeline)

            with pytest.raises(BackupCancelled):
                pipeline.close()
        finally:
            timer.cancel()

        assert source.process.poll() is not None

    def test_temp_dir_removed_on_failure(self, python_process, tmp_path):
        """Test an exporter's scratch directory is removed even when the dump fails."""
        scratch = tmp_path / 'scratch'
        scratch.mkdir()
        (scratch / 'dump.bson').write_bytes(b'data')

        pipeline = build_pipeline(python_process(FAILING_DUMP_SCRIPT, temp_dir=str(scratch)), compress=False)
        read_all(pipeline)

        with pytest.raises(ExportError):
            pipeline.close()

        assert not scratch.exists()
