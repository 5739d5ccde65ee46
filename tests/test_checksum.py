"""Tests for content digests."""

import hashlib
import io
import threading
from unittest.mock import AsyncMock, Mock, patch

import pytest

from conftest import file_url, write_file
from filesync.core import ChecksumReadError, ChecksumService, Digests, HashingReader, SourceClosedError
from filesync.endpoints.local import LocalEndpoint


ABC = Digests(md5="900150983cd24fb0d6963f7d28e17f72", sha1="a9993e364706816aba3e25717850c26c9cd0d89d")


class TestHashingReader:
    """Test digesting during a copy."""

    def test_digests_what_passes_through(self):
        reader = HashingReader(io.BytesIO(b"abc"))

        chunks = [reader.read(2), reader.read(2), reader.read(2)]

        assert chunks == [b"ab", b"c", b""]
        assert reader.bytes_read == 3
        assert reader.digests() == ABC
        assert reader.readable() is True
        assert reader.seekable() is False

    def test_partial_read_is_partial_digest(self):
        reader = HashingReader(io.BytesIO(b"abcdef"))
        reader.read(3)

        assert reader.bytes_read == 3
        assert reader.digests().md5 == hashlib.md5(b"abc").hexdigest()

    def test_read_after_close_raises(self):
        source = io.BytesIO(b"abc")
        reader = HashingReader(source)

        reader.close()
        reader.close()

        assert source.closed
        with pytest.raises(SourceClosedError):
            reader.read(1)

    def test_close_during_read_is_deferred(self):
        started, release = threading.Event(), threading.Event()

        class SlowStream(io.BytesIO):
            def read(self, size=-1):
                started.set()
                release.wait(5)
                return super().read(size)

        source = SlowStream(b"abc")
        reader = HashingReader(source)
        errors = []

        def upload():
            try:
                reader.read(2)
            except SourceClosedError as e:
                errors.append(e)

        thread = threading.Thread(target=upload)
        thread.start()
        assert started.wait(5)

        reader.close()
        assert not source.closed

        release.set()
        thread.join(5)

        assert source.closed
        assert len(errors) == 1


class TestChecksumService:
    """Test hashing entries through an endpoint."""

    @pytest.fixture
    def checksum(self, settings, metrics):
        service = ChecksumService(settings, metrics)
        yield service
        service.close()

    @pytest.fixture
    def endpoint(self, settings, metrics):
        return LocalEndpoint(settings=settings, metrics=metrics)

    def test_pool_size_from_settings(self, checksum):
        assert checksum.max_workers == 2

    def test_digest_stream_closes(self, checksum):
        stream = io.BytesIO(b"abc")

        assert checksum.digest_stream(stream) == ABC
        assert stream.closed

    @pytest.mark.asyncio
    async def test_hash_entry(self, checksum, endpoint, tmp_path):
        path = write_file(tmp_path / "a.txt", b"abc", 1000)

        digests = await checksum.hash_entry(endpoint, file_url(path))

        assert digests == ABC
        assert checksum.metrics.get_counter("checksum.files_hashed") == 1

    @pytest.mark.asyncio
    async def test_hash_entry_missing_file(self, checksum, endpoint, tmp_path):
        with pytest.raises(ChecksumReadError) as exc_info:
            await checksum.hash_entry(endpoint, file_url(tmp_path / "missing.txt"))

        assert exc_info.value.cause_kind == "not_found"
        assert exc_info.value.kind == "checksum_read"

    @pytest.mark.asyncio
    async def test_hash_entry_read_failure(self, checksum, endpoint):
        broken = Mock()
        broken.read.side_effect = OSError("device went away")

        with patch.object(endpoint, "read", AsyncMock(return_value=broken)):
            with pytest.raises(ChecksumReadError) as exc_info:
                await checksum.hash_entry(endpoint, "file:///data/a.txt")

        assert exc_info.value.cause_kind == "io"
        broken.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_hash_many_hashes_each_url_once(self, checksum, endpoint, tmp_path):
        a = file_url(write_file(tmp_path / "a.txt", b"abc", 1000))
        b = file_url(write_file(tmp_path / "b.txt", b"abcdef", 1000))
        missing = file_url(tmp_path / "missing.txt")

        with patch.object(endpoint, "read", wraps=endpoint.read) as read:
            results = await checksum.hash_many(endpoint, [a, b, a, missing])

        assert read.call_count == 3
        assert results[a] == ABC
        assert results[b].md5 == hashlib.md5(b"abcdef").hexdigest()
        assert isinstance(results[missing], ChecksumReadError)

    @pytest.mark.asyncio
    async def test_hash_many_empty(self, checksum, endpoint):
        assert await checksum.hash_many(endpoint, []) == {}
