"""
Unit tests for the snapshot chain (nc_backup/snapper/chain.py).
"""

from datetime import datetime

import pytest

from nc_backup.snapper.chain import AnchorConflict, SnapshotChain
from nc_backup.snapper.snapshot import (ANCHOR_TAG, MANAGED_TAG, SYNCED_TAG,
                                        CleanupAlgorithm, SyncState)
from nc_backup.snapper.store import MetadataUnavailable
from nc_backup.utils.errors import ConsistencyError

SYNCED = {MANAGED_TAG: 'true', SYNCED_TAG: 'true'}
UNSYNCED = {MANAGED_TAG: 'true', SYNCED_TAG: 'false'}


@pytest.fixture
def chain(store):
    return SnapshotChain(store, CleanupAlgorithm.NUMBER)


class TestSnapshotState:
    """Test the state derived from the tags."""

    def test_sync_state_is_tri_state(self, store):
        unsynced = store.add(UNSYNCED)
        synced = store.add(SYNCED)
        undefined = store.add({MANAGED_TAG: 'true'})
        garbage = store.add({SYNCED_TAG: 'maybe'})

        assert unsynced.sync_state == SyncState.UNSYNCED
        assert synced.sync_state == SyncState.SYNCED
        assert undefined.sync_state == SyncState.UNDEFINED
        assert garbage.sync_state == SyncState.UNDEFINED
        assert synced.synced and not unsynced.synced

    def test_snapshot_path(self, store):
        snapshot = store.add(SYNCED)
        assert snapshot.path == store.subvolume / '.snapshots' / '1' / 'snapshot'
        assert snapshot.location == '1'


class TestListing:
    """Test listing and the identity of listed snapshots."""

    def test_list_snapshots_returns_same_instances(self, chain, store):
        store.add(SYNCED)
        store.add(UNSYNCED)

        first = chain.list_snapshots()
        second = chain.list_snapshots()

        assert [x.id for x in first] == [1, 2]
        assert all(a is b for a, b in zip(first, second))

    def test_listing_failure_propagates(self, chain, store):
        store.unavailable = True
        with pytest.raises(MetadataUnavailable):
            chain.list_snapshots()

    def test_create_snapshot_tags(self, chain, store):
        tracked = chain.create_snapshot(track_sync=True)
        untracked = chain.create_snapshot(track_sync=False)

        assert tracked.managed and tracked.sync_state == SyncState.UNSYNCED
        assert untracked.managed and untracked.sync_state == SyncState.UNDEFINED
        assert store.records[tracked.id].cleanup == CleanupAlgorithm.NUMBER


class TestAnchor:
    """Test promote / demote of the anchor."""

    def test_no_anchor_before_first_sync(self, chain, store):
        store.add(UNSYNCED)
        assert chain.current_anchor() is None

    def test_promote_moves_anchor(self, chain, store):
        store.add(SYNCED)
        store.add(SYNCED)
        a, b = chain.list_snapshots()

        chain.promote(a)
        assert chain.current_anchor() is a
        chain.promote(b)

        assert chain.current_anchor() is b
        assert a.anchored is False
        assert b.anchored is True
        assert store.records[a.id].user_data[ANCHOR_TAG] == 'false'

    def test_anchor_has_no_cleanup_and_demote_restores_it(self, chain, store):
        store.add(SYNCED, cleanup=CleanupAlgorithm.NUMBER)
        store.add(SYNCED, cleanup=CleanupAlgorithm.NUMBER)
        a, b = chain.list_snapshots()

        chain.promote(a)
        assert store.records[a.id].cleanup is None
        chain.promote(b)

        assert store.records[a.id].cleanup == CleanupAlgorithm.NUMBER
        assert store.records[b.id].cleanup is None

    def test_promote_same_snapshot_twice(self, chain, store):
        store.add(SYNCED)
        (a,) = chain.list_snapshots()
        chain.promote(a)
        chain.promote(a)
        assert chain.current_anchor() is a
        assert a.anchored

    def test_promote_unsynced_is_rejected(self, chain, store):
        store.add(UNSYNCED)
        (a,) = chain.list_snapshots()
        with pytest.raises(ConsistencyError):
            chain.promote(a)
        assert not store.records[a.id].anchored

    def test_multiple_anchors_are_a_consistency_error(self, chain, store):
        store.add({**SYNCED, ANCHOR_TAG: 'true'})
        store.add({**SYNCED, ANCHOR_TAG: 'true'})
        with pytest.raises(AnchorConflict):
            chain.current_anchor()

    def test_mark_synced(self, chain, store):
        store.add(UNSYNCED)
        (a,) = chain.list_snapshots()
        chain.mark_synced(a)
        assert a.synced
        assert store.records[a.id].user_data[SYNCED_TAG] == 'true'
        assert chain.unsynced_snapshots() == []


class TestUnsynced:
    """Test the order of unsynced snapshots."""

    def test_unsynced_oldest_first(self, chain, store):
        store.add(UNSYNCED, timestamp=datetime(2024, 1, 3))
        store.add(SYNCED, timestamp=datetime(2024, 1, 1))
        store.add(UNSYNCED, timestamp=datetime(2024, 1, 2))
        store.add({MANAGED_TAG: 'true'}, timestamp=datetime(2024, 1, 1))

        assert [x.id for x in chain.unsynced_snapshots()] == [3, 1]
