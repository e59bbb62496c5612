"""
Sync and anchor state of the snapshots of one backup target.

A snapshot is created unsynced, marked synced after it was transferred and
then either holds the anchor (parent of the next incremental transfer) or is
released. At most one snapshot holds the anchor. The chain assumes a single
writer: one nc-backup run per snapper config at a time.
"""
from typing import Dict, List, Optional

from loguru import logger

from nc_backup.snapper.snapshot import (ANCHOR_TAG, MANAGED_TAG, SYNCED_TAG,
                                        CleanupAlgorithm, Snapshot, SyncState)
from nc_backup.snapper.store import MetadataStore
from nc_backup.utils.errors import ConsistencyError

log = logger.bind(target='snapper::chain')


class AnchorConflict(ConsistencyError):
    """
    More than one snapshot holds the anchor.
    """


class SnapshotChain:
    """
    Anchor handling on top of a MetadataStore.
    Snapshots handed out are cached by number, so every caller sees the same
    instance and its state changes.
    """

    def __init__(self, store: MetadataStore,
                 cleanup_algorithm: Optional[CleanupAlgorithm] = None):
        """
        :param store: metadata of the snapshots
        :param cleanup_algorithm: cleanup algorithm of snapshots which are not the anchor
        """
        self.store = store
        self.cleanup_algorithm = cleanup_algorithm
        self._snapshots: Dict[int, Snapshot] = {}

    def _persist(self, snapshot: Snapshot):
        self.store.modify(snapshot)

    def create_snapshot(self, track_sync: bool) -> Snapshot:
        """
        Create a new snapshot for this backup cycle.
        :param track_sync: tag it as unsynced so the next sync picks it up
        """
        user_data = {MANAGED_TAG: 'true'}
        if track_sync:
            user_data[SYNCED_TAG] = SyncState.UNSYNCED.value
        snapshot = self.store.create_snapshot(user_data, self.cleanup_algorithm)
        self._snapshots[snapshot.id] = snapshot
        return snapshot

    def list_snapshots(self) -> List[Snapshot]:
        """
        All snapshots of the target with their tags, cleanup and date.
        :raises MetadataUnavailable: the store could not be queried
        """
        snapshots = []
        for fresh in self.store.list_snapshots():
            cached = self._snapshots.get(fresh.id)
            if cached is None:
                self._snapshots[fresh.id] = cached = fresh
            else:
                cached.update_from(fresh)
            snapshots.append(cached)
        return snapshots

    def current_anchor(self) -> Optional[Snapshot]:
        """
        :return: the anchored snapshot or None if nothing was synced yet
        :raises AnchorConflict: more than one snapshot is anchored
        """
        anchors = [x for x in self.list_snapshots() if x.anchored]
        if len(anchors) > 1:
            raise AnchorConflict(
                f'{self.store.name}: multiple anchored snapshots: '
                f'{", ".join(str(x.id) for x in anchors)}')
        return anchors[0] if anchors else None

    def unsynced_snapshots(self) -> List[Snapshot]:
        """
        Snapshots explicitly tagged as unsynced, oldest first.
        Normally this is the snapshot of the current run. More of them are a
        backlog of interrupted runs and are synced in order.
        """
        unsynced = [x for x in self.list_snapshots() if x.sync_state == SyncState.UNSYNCED]
        return sorted(unsynced, key=lambda x: (x.timestamp, x.id))

    def mark_synced(self, snapshot: Snapshot):
        snapshot.user_data[SYNCED_TAG] = SyncState.SYNCED.value
        self._persist(snapshot)
        log.debug(f'Marked {snapshot} as synced')

    def promote(self, snapshot: Snapshot):
        """
        Make the snapshot the anchor of the next incremental transfer.
        The previous anchor is demoted. The anchor has no cleanup algorithm,
        so snapper does not delete it.
        :raises ConsistencyError: the snapshot is not synced
        """
        if not snapshot.synced:
            raise ConsistencyError(f'{snapshot} can not be anchored, it is not synced')
        previous = self.current_anchor()
        # release first: an interrupted run leaves no anchor instead of two
        if previous is not None and previous != snapshot:
            self.demote(previous)
        snapshot.user_data[ANCHOR_TAG] = 'true'
        snapshot.cleanup = None
        self._persist(snapshot)
        self._snapshots[snapshot.id] = snapshot
        log.debug(f'Promoted snapshot to new anchor: {snapshot!r}')

    def demote(self, snapshot: Snapshot):
        """
        Release the anchor and restore the cleanup algorithm of normal snapshots.
        """
        snapshot.user_data[ANCHOR_TAG] = 'false'
        snapshot.cleanup = self.cleanup_algorithm
        self._persist(snapshot)
        log.debug(f'Released previous anchor snapshot: {snapshot!r}')
