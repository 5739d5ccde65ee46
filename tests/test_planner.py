"""Tests for planning mappings into pending actions."""

import asyncio
import hashlib
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError

from conftest import file_url, write_file
from filesync.core import ApplyStatus, FileSyncConnector, SyncEngineError, compare_content
from filesync.database.models import ActionKind, ServiceType, SyncDirection
from filesync.endpoints.base import EntryInfo


def entry(size=3, mtime=1000, md5sum=None, sha1sum=None):
    return EntryInfo(url="file:///x", filename="x", filepath="/", size=size, mtime=mtime, md5sum=md5sum, sha1sum=sha1sum)


class TestCompareContent:
    """Test the content equality rules."""

    def test_md5_decides(self):
        assert compare_content(entry(md5sum="a" * 32), entry(size=9, md5sum="a" * 32)) is True
        assert compare_content(entry(md5sum="a" * 32), entry(md5sum="b" * 32)) is False

    def test_sha1_checked_when_md5_matches(self):
        assert compare_content(
            entry(md5sum="a" * 32, sha1sum="1" * 40),
            entry(md5sum="a" * 32, sha1sum="2" * 40)
        ) is False

    def test_sha1_alone_decides(self):
        assert compare_content(entry(sha1sum="1" * 40), entry(sha1sum="1" * 40)) is True

    def test_size_and_mtime_fallback(self):
        assert compare_content(entry(size=3), entry(size=4)) is False
        assert compare_content(entry(mtime=1000), entry(mtime=1000)) is True
        assert compare_content(entry(mtime=1000), entry(mtime=2000)) is None

    def test_one_sided_digest_is_ignored(self):
        assert compare_content(entry(md5sum="a" * 32), entry()) is True


class TestSyncPlanner:
    """Test planning local to local mappings."""

    @pytest.fixture
    def roots(self, tmp_path):
        src, dst = tmp_path / "src", tmp_path / "dst"
        src.mkdir()
        dst.mkdir()
        return src, dst

    @pytest.fixture
    def mapping(self, connector, roots):
        src, dst = roots
        return connector.add_mapping(file_url(src), file_url(dst), name="docs")

    @pytest.mark.asyncio
    async def test_new_file_is_created(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "a.txt", b"abc", 1000)

        result = await connector.sync_mapping("docs")

        assert result.success
        assert result.src_listed == 1
        assert result.dst_listed == 0
        assert len(result.enqueued) == 1
        action = result.enqueued[0]
        assert action.action == ActionKind.CREATE
        assert action.direction == SyncDirection.FORWARD
        assert action.src_url == file_url(src / "a.txt")
        assert action.dst_url == file_url(dst / "a.txt")
        assert action.mapping_id == mapping.id

    @pytest.mark.asyncio
    async def test_identical_files_are_not_hashed(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "b.txt", b"same", 1000)
        write_file(dst / "b.txt", b"same", 1000)

        with patch.object(connector.checksum, "hash_entry", AsyncMock()) as hash_entry:
            result = await connector.sync_mapping("docs")

        hash_entry.assert_not_called()
        assert result.success
        assert result.enqueued == []
        assert connector.list_sync_cache() == []

    @pytest.mark.asyncio
    async def test_newer_source_updates_destination(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "a.txt", b"new content", 2000)
        write_file(dst / "a.txt", b"old", 1000)

        result = await connector.sync_mapping("docs")

        assert [(a.action, a.direction) for a in result.enqueued] == [(ActionKind.UPDATE, SyncDirection.FORWARD)]

    @pytest.mark.asyncio
    async def test_newer_destination_updates_source(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "a.txt", b"old", 1000)
        write_file(dst / "a.txt", b"newer elsewhere", 5000)

        result = await connector.sync_mapping("docs")

        action = result.enqueued[0]
        assert action.action == ActionKind.UPDATE
        assert action.direction == SyncDirection.REVERSE
        assert action.src_url == file_url(dst / "a.txt")
        assert action.dst_url == file_url(src / "a.txt")

    @pytest.mark.asyncio
    async def test_equal_size_different_mtime_forces_rehash(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "same.txt", b"abc", 2000)
        write_file(dst / "same.txt", b"abc", 1000)
        write_file(src / "diff.txt", b"abc", 2000)
        write_file(dst / "diff.txt", b"abd", 1000)

        result = await connector.sync_mapping("docs")

        assert result.hashed == 4
        assert [a.src_url for a in result.enqueued] == [file_url(src / "diff.txt")]

        record = connector.file_cache.lookup_url(ServiceType.LOCAL, str(src), file_url(src / "same.txt"))
        assert record.md5sum == hashlib.md5(b"abc").hexdigest()

    @pytest.mark.asyncio
    async def test_blacklisted_entries_are_never_queued(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "tmp" / "scratch.txt", b"x", 1000)
        write_file(src / "keep.txt", b"y", 1000)
        connector.add_blacklist_rule(file_url(src / "tmp"))

        result = await connector.sync_mapping("docs")

        assert result.blacklisted == 1
        assert [a.src_url for a in result.enqueued] == [file_url(src / "keep.txt")]

    @pytest.mark.asyncio
    async def test_second_plan_is_idempotent(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "a.txt", b"abc", 1000)

        first = await connector.sync_mapping("docs")
        second = await connector.sync_mapping("docs")

        assert len(first.enqueued) == 1
        assert first.cache_updates == 1
        assert second.enqueued == []
        assert second.duplicates == 1
        assert second.cache_updates == 0
        assert len(connector.list_sync_cache()) == 1

    @pytest.mark.asyncio
    async def test_destination_only_file_is_deleted(self, connector, roots, mapping):
        src, dst = roots
        write_file(dst / "stale.txt", b"old", 1000)

        result = await connector.sync_mapping("docs")

        action = result.enqueued[0]
        assert action.action == ActionKind.DELETE
        assert action.src_url == file_url(src / "stale.txt")
        assert action.dst_url == file_url(dst / "stale.txt")

    @pytest.mark.asyncio
    async def test_bidirectional_copies_back(self, connector, roots):
        src, dst = roots
        connector.add_mapping(file_url(src), file_url(dst), name="both", bidirectional=True)
        write_file(dst / "remote.txt", b"from dst", 1000)

        result = await connector.sync_mapping("both")

        action = result.enqueued[0]
        assert action.action == ActionKind.CREATE
        assert action.direction == SyncDirection.REVERSE
        assert action.src_url == file_url(dst / "remote.txt")
        assert action.dst_url == file_url(src / "remote.txt")

    @pytest.mark.asyncio
    async def test_last_run_set_on_success(self, connector, roots, mapping):
        assert mapping.last_run is None

        await connector.sync_mapping("docs")

        assert connector.get_mapping("docs").last_run is not None

    @pytest.mark.asyncio
    async def test_cancelled_plan_changes_nothing(self, connector, roots, mapping):
        src, dst = roots
        write_file(src / "a.txt", b"abc", 1000)
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await connector.sync_mapping("docs", cancel_event)

        assert result.cancelled
        assert not result.completed
        assert result.enqueued == []
        assert connector.get_mapping("docs").last_run is None

    @pytest.mark.asyncio
    async def test_missing_destination_root_lists_as_empty(self, connector, roots, tmp_path):
        src, _ = roots
        write_file(src / "a.txt", b"abc", 1000)
        target = tmp_path / "not-yet-created"
        connector.add_mapping(file_url(src), file_url(target), name="fresh")

        result = await connector.sync_mapping("fresh")

        assert result.success
        assert result.errors == []
        assert result.dst_listed == 0
        assert [(a.action, a.dst_url) for a in result.enqueued] == [(ActionKind.CREATE, file_url(target / "a.txt"))]
        assert connector.get_mapping("fresh").last_run is not None

        applied = await connector.process_action(result.enqueued[0].id)
        assert applied.status == ApplyStatus.SUCCESS
        assert (target / "a.txt").read_bytes() == b"abc"

    @pytest.mark.asyncio
    async def test_concurrent_plans_queue_each_pair_once(self, connector, roots, mapping):
        src, dst = roots
        for i in range(20):
            write_file(src / f"file{i:02d}.txt", b"x" * i, 1000)

        results = await asyncio.gather(*(connector.sync_mapping("docs") for _ in range(4)))

        assert all(r.success for r in results)
        assert sum(len(r.enqueued) for r in results) == 20
        assert sum(r.duplicates for r in results) == 60
        pairs = [(a.src_url, a.dst_url) for a in connector.list_sync_cache()]
        assert len(pairs) == 20
        assert len(set(pairs)) == 20

    @pytest.mark.asyncio
    async def test_missing_root_is_fatal(self, connector, tmp_path):
        connector.add_mapping(file_url(tmp_path / "absent"), file_url(tmp_path), name="broken")

        result = await connector.sync_mapping("broken")

        assert result.fatal_error is not None
        assert not result.success
        assert result.errors[0].kind == "not_found"
        assert connector.get_mapping("broken").last_run is None

    @pytest.mark.asyncio
    async def test_vanished_source_is_marked_missing(self, connector, roots, mapping):
        src, dst = roots
        path = write_file(src / "a.txt", b"abc", 1000)
        await connector.sync_mapping("docs")
        connector.remove_pending(file_url(path))
        path.unlink()

        await connector.sync_mapping("docs")

        assert connector.file_cache.lookup_url(ServiceType.LOCAL, str(src), file_url(path)) is None

    @pytest.mark.asyncio
    async def test_sync_all_isolates_mappings(self, connector, roots, tmp_path):
        src, dst = roots
        write_file(src / "a.txt", b"abc", 1000)
        connector.add_mapping(file_url(src), file_url(dst), name="good")
        connector.add_mapping(file_url(tmp_path / "absent"), file_url(dst), name="bad")

        results = await connector.sync_all()

        by_name = {r.mapping_name: r for r in results}
        assert by_name["good"].success
        assert len(by_name["good"].enqueued) == 1
        assert by_name["bad"].fatal_error is not None

    @pytest.mark.asyncio
    async def test_unknown_mapping(self, connector):
        with pytest.raises(SyncEngineError) as exc_info:
            await connector.sync_mapping("nope")

        assert exc_info.value.kind == "not_found"


UPLOADED = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeS3Client:
    """In-memory bucket answering the boto3 calls the S3 endpoint makes.

    Every upload is stamped with the same LastModified, later than any
    source mtime used below, the way a real store stamps upload time.
    """

    def __init__(self):
        self.objects = {}
        self.head_calls = 0

    def list_objects_v2(self, Bucket, Prefix, ContinuationToken=None):
        contents = [
            {"Key": key, "Size": len(obj["Body"]), "LastModified": UPLOADED, "ETag": obj["ETag"]}
            for key, obj in sorted(self.objects.items()) if key.startswith(Prefix)
        ]
        return {"Contents": contents, "IsTruncated": False}

    def head_object(self, Bucket, Key):
        self.head_calls += 1
        obj = self.objects.get(Key)
        if obj is None:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {
            "ContentLength": len(obj["Body"]), "LastModified": UPLOADED,
            "ETag": obj["ETag"], "Metadata": dict(obj["Metadata"])
        }

    def upload_fileobj(self, stream, bucket, key, ExtraArgs=None):
        body = stream.read()
        self.objects[key] = {
            "Body": body,
            "ETag": f'"{hashlib.md5(body).hexdigest()}"',
            "Metadata": (ExtraArgs or {}).get("Metadata", {})
        }


class TestObjectStoreDestination:
    """Test planning against an S3 destination that cannot keep mtimes."""

    @pytest.fixture
    def client(self):
        return FakeS3Client()

    @pytest_asyncio.fixture
    async def s3_connector(self, db_manager, settings, metrics, client):
        conn = FileSyncConnector(db_manager=db_manager, settings=settings, metrics=metrics, s3={"client": client})
        yield conn
        await conn.close()

    @pytest.mark.asyncio
    async def test_uploaded_object_keeps_source_mtime(self, s3_connector, client, tmp_path):
        src = tmp_path / "src"
        path = write_file(src / "a.txt", b"abc", 1000)
        s3_connector.add_mapping(file_url(src), "s3://bucket/backup", name="backup", bidirectional=True)

        first = await s3_connector.sync_mapping("backup")
        await s3_connector.process_action(first.enqueued[0].id)
        assert client.objects["backup/a.txt"]["Metadata"] == {"mtime": "1000"}

        heads = client.head_calls
        unchanged = await s3_connector.sync_mapping("backup")
        assert unchanged.enqueued == []
        assert client.head_calls == heads

        write_file(path, b"abcd", 2000)
        changed = await s3_connector.sync_mapping("backup")

        assert [(a.action, a.direction, a.dst_url) for a in changed.enqueued] == [
            (ActionKind.UPDATE, SyncDirection.FORWARD, "s3://bucket/backup/a.txt")
        ]

    @pytest.mark.asyncio
    async def test_foreign_object_is_stat_once(self, s3_connector, client, tmp_path):
        src = tmp_path / "src"
        src.mkdir()
        client.objects["backup/b.txt"] = {"Body": b"xyz", "ETag": '"etag-2"', "Metadata": {"mtime": "500"}}
        s3_connector.add_mapping(file_url(src), "s3://bucket/backup", name="backup", bidirectional=True)

        await s3_connector.sync_mapping("backup")
        await s3_connector.sync_mapping("backup")

        record = s3_connector.file_cache.lookup_url(ServiceType.S3, "bucket", "s3://bucket/backup/b.txt")
        assert record.filestat_st_mtime == 500
        assert record.filestat_backend_mtime == int(UPLOADED.timestamp())
        assert client.head_calls == 1
