"""
Unit tests for byte streams (autobackup/utils/streams.py).
"""

import pytest

from autobackup.utils.streams import ByteStream, BytesStream, StageStream, read_all


class RecordingStream(BytesStream):
    """BytesStream that records abort() calls."""

    def __init__(self, data):
        super().__init__(data)
        self.aborted = False

    def abort(self):
        self.aborted = True


def copy(upstream, pipe):
    while True:
        chunk = upstream.read(4)
        if not chunk:
            return
        pipe.write(chunk)


class TestByteStream:

    def test_read_and_close_are_abstract(self):
        class ReadOnly(ByteStream):
            def read(self, size=-1):
                return b''

        with pytest.raises(TypeError):
            ReadOnly()

        with pytest.raises(TypeError):
            ByteStream()

    def test_context_manager_closes(self):
        stream = BytesStream(b'data')

        with stream:
            assert read_all(stream) == b'data'

        assert stream.closed


class TestStageStream:
    """Test producer shutdown on close."""

    def test_close_before_eof_aborts_running_producer(self):
        upstream = RecordingStream(b'x' * 64)
        stage = StageStream('copy', upstream, copy)

        assert stage.read() == b'xxxx'
        stage.close()

        assert upstream.aborted is True
        assert upstream.closed is True

    def test_close_after_producer_finished_does_not_abort(self):
        upstream = RecordingStream(b'abcd')
        stage = StageStream('copy', upstream, copy)

        assert stage.read() == b'abcd'
        stage._thread.join(timeout=5)
        stage.close()

        assert upstream.aborted is False
        assert upstream.closed is True
