"""Tests for the cache stores."""

import pytest

from filesync.cache import (
    Blacklist,
    BlacklistMatcher,
    CycleDetectedError,
    DirectoryMap,
    DirectoryTree,
    FileInfoCache,
    MappingStore,
    OrphanDirectoryError,
    SyncQueue
)
from filesync.database.models import (
    ActionKind,
    ActionStatus,
    BlacklistMatchType,
    BlacklistRule,
    DirectoryRecord,
    FileRecord,
    PendingActionCreate,
    ServiceType,
    SyncDirection,
    SyncMappingCreate
)
from filesync.endpoints.base import UnresolvableError


def make_record(name="a.txt", size=10, mtime=1000, md5sum=None, session="/data"):
    return FileRecord(
        filename=name,
        filepath=session,
        urlname=f"file://{session}/{name}",
        serviceid=session,
        servicetype=ServiceType.LOCAL,
        servicesession=session,
        md5sum=md5sum,
        filestat_st_mtime=mtime,
        filestat_st_size=size
    )


def folder(directory_id, name, parent_id=None, is_root=False):
    return DirectoryRecord(
        directory_id=directory_id,
        directory_name=name,
        parent_id=parent_id,
        is_root=is_root,
        servicesession="acct"
    )


class TestFileInfoCache:
    """Test the file record store."""

    @pytest.fixture
    def cache(self, db_manager):
        return FileInfoCache(db_manager)

    def test_needs_rehash_without_record(self, cache):
        assert cache.needs_rehash(make_record().key, 10, 1000) is True

    def test_needs_rehash_after_upsert(self, cache):
        record = cache.upsert(make_record())

        assert cache.needs_rehash(record.key, 10, 1000) is False
        assert cache.needs_rehash(record.key, 11, 1000) is True
        assert cache.needs_rehash(record.key, 10, 1001) is True

    def test_upsert_replaces_by_identity(self, cache):
        first = cache.upsert(make_record(md5sum="a" * 32))
        second = cache.upsert(make_record(size=20, mtime=2000, md5sum=None))

        assert first.id == second.id
        assert second.filestat_st_size == 20
        assert cache.needs_rehash(second.key, 20, 2000) is False
        assert len(cache.list_records()) == 1

    def test_upsert_is_idempotent(self, cache):
        cache.upsert(make_record())
        cache.upsert(make_record())

        assert len(cache.list_records()) == 1

    def test_remove(self, cache):
        record = cache.upsert(make_record())

        assert cache.remove(record.key) is True
        assert cache.lookup(record.key) is None
        assert cache.remove(record.key) is False

    def test_remove_by_id_forces_rehash(self, cache):
        record = cache.upsert(make_record())

        assert cache.remove_by_id(record.id) is True
        assert cache.needs_rehash(record.key, 10, 1000) is True

    def test_mark_missing_soft_deletes_and_upsert_revives(self, cache):
        kept = cache.upsert(make_record("kept.txt"))
        gone = cache.upsert(make_record("gone.txt"))

        count = cache.mark_missing(ServiceType.LOCAL, "/data", "file:///data/", {kept.urlname})

        assert count == 1
        assert cache.lookup(gone.key) is None
        assert cache.needs_rehash(gone.key, 10, 1000) is True
        assert len(cache.list_records(include_deleted=True)) == 2

        revived = cache.upsert(make_record("gone.txt"))
        assert revived.id == gone.id
        assert revived.deleted_at is None

    def test_load_scope_filters_by_prefix(self, cache):
        cache.upsert(make_record("a.txt", session="/data"))
        cache.upsert(make_record("b.txt", session="/data"))
        cache.upsert(make_record("c.txt", session="/other"))

        scope = cache.load_scope(ServiceType.LOCAL, "/data", "file:///data/")

        assert sorted(scope) == ["file:///data/a.txt", "file:///data/b.txt"]


class TestDirectoryTree:
    """Test the directory forest."""

    @pytest.fixture
    def tree(self, db_manager):
        tree = DirectoryTree(db_manager)
        tree.replace_tree(ServiceType.GDRIVE, "acct", [
            folder("root", "My Drive", is_root=True),
            folder("d1", "a", "root"),
            folder("d2", "b", "d1"),
        ])
        return tree

    def test_resolve_and_materialize(self, tree):
        assert tree.resolve_path(ServiceType.GDRIVE, "acct", ["My Drive", "a", "b"]) == ["root", "d1", "d2"]
        assert tree.materialize(ServiceType.GDRIVE, "acct", "d2") == "My Drive/a/b"

    def test_resolve_unknown_segment(self, tree):
        with pytest.raises(UnresolvableError):
            tree.resolve_path(ServiceType.GDRIVE, "acct", ["My Drive", "missing"])

    def test_upsert_cycle_leaves_tree_unchanged(self, tree):
        with pytest.raises(CycleDetectedError):
            tree.upsert(folder("d1", "a", "d2"))

        dmap = tree.load_map(ServiceType.GDRIVE, "acct")
        assert dmap.get("d1").parent_id == "root"
        assert tree.materialize(ServiceType.GDRIVE, "acct", "d2") == "My Drive/a/b"

    def test_upsert_self_parent(self, tree):
        with pytest.raises(CycleDetectedError):
            tree.upsert(folder("d3", "c", "d3"))

    def test_upsert_orphan(self, tree):
        with pytest.raises(OrphanDirectoryError):
            tree.upsert(folder("d3", "c", "nowhere"))

    def test_upsert_and_remove_subtree(self, tree):
        tree.upsert(folder("d3", "c", "d2"))
        assert tree.materialize(ServiceType.GDRIVE, "acct", "d3") == "My Drive/a/b/c"

        removed = tree.remove("d1", ServiceType.GDRIVE, "acct")

        assert sorted(removed) == ["d1", "d2", "d3"]
        assert len(tree.load_map(ServiceType.GDRIVE, "acct")) == 1

    def test_replace_tree_drops_orphans_and_cycles(self, db_manager):
        tree = DirectoryTree(db_manager)

        dmap, dropped = tree.replace_tree(ServiceType.GDRIVE, "acct", [
            folder("root", "My Drive", is_root=True),
            folder("ok", "ok", "root"),
            folder("x", "x", "y"),
            folder("y", "y", "x"),
            folder("lost", "lost", "unknown"),
        ])

        assert sorted(dmap.nodes) == ["ok", "root"]
        assert {e.identity: e.kind for e in dropped} == {
            "x": "cycle_detected",
            "y": "cycle_detected",
            "lost": "orphan_directory"
        }

    def test_map_prefers_lowest_id_on_duplicate_names(self):
        dmap = DirectoryMap([
            folder("root", "My Drive", is_root=True),
            folder("z9", "dup", "root"),
            folder("a1", "dup", "root"),
        ])

        assert dmap.resolve(["My Drive", "dup"]) == ["root", "a1"]


class TestBlacklist:
    """Test blacklist rules and matching."""

    def test_prefix_matches_path_boundaries(self):
        matcher = BlacklistMatcher([BlacklistRule(blacklist_url="file:///data/tmp")])

        assert matcher.is_blacklisted("file:///data/tmp")
        assert matcher.is_blacklisted("file:///data/tmp/x.txt")
        assert not matcher.is_blacklisted("file:///data/tmpfile.txt")

    def test_substring_and_glob(self):
        matcher = BlacklistMatcher([
            BlacklistRule(blacklist_url=".cache", match_type=BlacklistMatchType.SUBSTRING),
            BlacklistRule(blacklist_url="*.tmp", match_type=BlacklistMatchType.GLOB),
        ])

        assert matcher.is_blacklisted("s3://bucket/a/.cache/b")
        assert matcher.is_blacklisted("file:///data/x.tmp")
        assert not matcher.is_blacklisted("file:///data/x.txt")

    def test_store_normalizes_prefix_rules(self, db_manager):
        blacklist = Blacklist(db_manager)

        rule = blacklist.add("file:///data/My Files/")

        assert rule.blacklist_url == "file:///data/My%20Files"
        assert blacklist.is_blacklisted("file:///data/My%20Files/a.txt")

    def test_add_is_idempotent_and_remove(self, db_manager):
        blacklist = Blacklist(db_manager)
        blacklist.add("file:///data/tmp")
        blacklist.add("file:///data/tmp")

        assert len(blacklist.list_rules()) == 1
        assert blacklist.remove("file:///data/tmp") == 1
        assert blacklist.list_rules() == []


class TestMappingStore:
    """Test mapping registration."""

    def test_add_normalizes_and_updates_in_place(self, db_manager):
        store = MappingStore(db_manager)

        first = store.add(SyncMappingCreate(src_url="file:///data/src/", dst_url="s3://bucket/dst"))
        second = store.add(SyncMappingCreate(
            src_url="file:///data/src", dst_url="s3://bucket/dst", name="docs", bidirectional=True
        ))

        assert first.id == second.id
        assert second.src_url == "file:///data/src"
        assert store.get_by_name("docs").bidirectional is True
        assert len(store.list_all()) == 1
        assert first.last_run is None


class TestSyncQueue:
    """Test the pending action queue."""

    @pytest.fixture
    def queue(self, db_manager):
        return SyncQueue(db_manager)

    def enqueue(self, queue, src="file:///a/x", dst="file:///b/x"):
        return queue.enqueue(PendingActionCreate(src_url=src, dst_url=dst, action=ActionKind.CREATE))

    def test_enqueue_deduplicates_pairs(self, queue):
        first = self.enqueue(queue)
        second = self.enqueue(queue)

        assert first is not None
        assert second is None
        assert len(queue.list_actions()) == 1
        assert first.direction == SyncDirection.FORWARD

    def test_enqueue_rejects_reverse_of_queued_pair(self, queue):
        forward = queue.enqueue(PendingActionCreate(
            src_url="file:///a/x", dst_url="file:///b/x", action=ActionKind.UPDATE
        ))
        reverse = queue.enqueue(PendingActionCreate(
            src_url="file:///b/x", dst_url="file:///a/x",
            action=ActionKind.UPDATE, direction=SyncDirection.REVERSE
        ))

        assert forward is not None
        assert reverse is None
        assert [(a.src_url, a.dst_url) for a in queue.list_actions()] == [("file:///a/x", "file:///b/x")]

        queue.complete(forward.id)
        assert self.enqueue(queue, src="file:///b/x", dst="file:///a/x") is not None

    def test_claim_is_exclusive(self, queue):
        action = self.enqueue(queue)

        assert queue.claim(action.id) is True
        assert queue.claim(action.id) is False
        assert queue.get(action.id).status == ActionStatus.IN_PROGRESS
        assert queue.eligible_ids() == []

    def test_transient_failures_until_exhausted(self, queue):
        action = self.enqueue(queue)

        first = queue.record_transient_failure(action.id, "transient", "timeout", 0.0, 3)
        assert first.status == ActionStatus.PENDING
        assert first.attempts == 1
        assert first.needs_attention is False

        queue.record_transient_failure(action.id, "transient", "timeout", 0.0, 3)
        third = queue.record_transient_failure(action.id, "transient", "timeout", 0.0, 3)

        assert third.attempts == 3
        assert third.status == ActionStatus.FAILED
        assert third.needs_attention is True
        assert third.error_kind == "transient"

    def test_backoff_delays_eligibility(self, queue):
        action = self.enqueue(queue)

        queue.record_transient_failure(action.id, "transient", "timeout", 60.0, 3)

        assert queue.eligible_ids() == []
        assert queue.claim(action.id) is False

    def test_requeue_resets_failed_action(self, queue):
        action = self.enqueue(queue)
        queue.record_permanent_failure(action.id, "permanent", "denied")

        assert queue.requeue(action.id) is True

        reset = queue.get(action.id)
        assert reset.status == ActionStatus.PENDING
        assert reset.attempts == 0
        assert reset.needs_attention is False
        assert queue.eligible_ids() == [action.id]

    def test_discard_by_url(self, queue):
        self.enqueue(queue, "file:///a/x", "file:///b/x")
        self.enqueue(queue, "file:///a/y", "file:///b/y")

        assert queue.discard_by_url("file:///b/x") == 1
        assert [a.src_url for a in queue.list_actions()] == ["file:///a/y"]
