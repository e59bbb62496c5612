"""
Backup of Nextcloud's data directory with snapper (btrfs snapshots).

Snapshots can additionally be sent to a sync destination with btrfs
send/receive. The last synced snapshot is kept as anchor, so the next
snapshot can be sent incrementally against it.
"""
import os
import subprocess
from pathlib import Path
from typing import List, Optional, Set

from nc_backup.backends.base import Backend
from nc_backup.nextcloud.client import Nextcloud
from nc_backup.snapper.chain import SnapshotChain
from nc_backup.snapper.snapshot import CleanupAlgorithm, Snapshot, SyncState
from nc_backup.snapper.store import MetadataStore, MetadataUnavailable, SnapperStore
from nc_backup.snapper.transfer import IncrementalTransferPipeline
from nc_backup.utils.errors import PreconditionError, ToolNotFound
from nc_backup.utils.logging import is_enabled
from nc_backup.utils.process import spawn


class SnapperConfigNotFound(PreconditionError):
    """
    No snapper config manages the data directory of Nextcloud.
    """


class SnapperBackend(Backend):
    """
    Atomic backup of the Nextcloud data directory.
    """
    name = 'snapper'
    pipeline_class = IncrementalTransferPipeline

    def __init__(self,
                 cleanup_algorithm: Optional[CleanupAlgorithm] = None,
                 sync_destination: Optional[Path] = None,
                 incrementally: bool = True,
                 sudo: bool = True,
                 config_id: Optional[str] = None,
                 store: Optional[MetadataStore] = None):
        """
        :param cleanup_algorithm: snapper cleanup algorithm of created snapshots.
            Snapper does not distinguish between snapshots created by nc-backup
            and its own ones.
        :param sync_destination: send snapshots to this btrfs directory.
            Deletions of snapshots are synced to the destination as well.
        :param incrementally: send snapshots incrementally against the anchor
        :param sudo: run btrfs with sudo
        :param config_id: name of the snapper config. default: lookup by the data directory
        :param store: metadata store. default: snapper config of the data directory
        """
        super().__init__()
        self.cleanup_algorithm = cleanup_algorithm
        self.sync_destination = Path(sync_destination) if sync_destination else None
        self.incrementally = incrementally
        self.sudo = sudo
        self.config_id = config_id or None
        self._store = store

    def store(self, nextcloud: Nextcloud) -> MetadataStore:
        """
        Snapper config managing the data directory of Nextcloud.
        """
        if self._store is None:
            if self.config_id:
                store = SnapperStore.by_id(self.config_id)
                wanted = self.config_id
            else:
                data_dir = nextcloud.occ.data_directory()
                store = SnapperStore.by_dir(data_dir)
                wanted = f'for {data_dir}'
            if store is None:
                raise SnapperConfigNotFound(f'Snapper config {wanted} not found')
            self.log.debug(f'Using {store}')
            self._store = store
        return self._store

    def chain(self, nextcloud: Nextcloud) -> SnapshotChain:
        return SnapshotChain(self.store(nextcloud), self.cleanup_algorithm)

    def backup(self, nextcloud: Nextcloud, dry_run: bool = False) -> None:
        chain = self.chain(nextcloud)
        if dry_run:
            # checks that the snapshots can be listed
            chain.list_snapshots()
            self.log.info(f'Dry run: would create a snapshot of {chain.store.subvolume}')
        else:
            snapshot = chain.create_snapshot(track_sync=self.sync_destination is not None)
            self.log.info(f'Created {snapshot!r}')

        if self.sync_destination is None:
            self.log.warning('Not syncing snapshots to other destination')
            return
        self.sync(chain, dry_run)

    def sync(self, chain: SnapshotChain, dry_run: bool = False) -> None:
        """
        Send all unsynced snapshots to the sync destination, oldest first.
        Each synced snapshot becomes the anchor of the next one.
        """
        if self.sync_destination.is_dir():
            self.sync_deletions(chain, dry_run)
        elif dry_run:
            self.log.info(f'Dry run: would create sync destination {self.sync_destination}')
        else:
            self.sync_destination.mkdir(parents=True)

        pipeline = self.pipeline_class(chain, self.sudo)
        anchor = chain.current_anchor()
        if anchor is not None:
            self.log.debug(f'Found anchor snapshot of last sync: {anchor!r}')
        unsynced = chain.unsynced_snapshots()
        if len(unsynced) > 1:
            self.log.warning(f'{len(unsynced)} unsynced snapshots, syncing the backlog oldest first')

        for snapshot in unsynced:
            parent = anchor if self.incrementally else None
            destination = self.sync_destination / str(snapshot.id)
            if dry_run:
                # directories are not created on a dry run, check the closest existing one
                existing = destination
                while not existing.is_dir() and existing != existing.parent:
                    existing = existing.parent
                pipeline.check(snapshot, parent, existing)
                self.log.info(f'Dry run: would sync {snapshot} '
                              f'{"against " + str(parent) if parent else "in full"}')
                continue
            destination.mkdir(exist_ok=True)
            pipeline.transfer(snapshot, parent, destination)
            chain.promote(snapshot)
            anchor = snapshot
        if anchor is not None:
            self.log.debug(f'Anchoring snapshot for next time: {anchor!r}')

    def _present_at_destination(self) -> List[tuple]:
        """
        Snapshots received at the sync destination.
        :return: list of (snapshot number, directory)
        """
        present = []
        for entry in os.scandir(self.sync_destination):
            if not entry.is_dir(follow_symlinks=False):
                continue
            path = Path(entry.path)
            if not any(path.iterdir()):
                present.append((None, path))
                continue
            if not entry.name.isdigit() or not (path / 'snapshot').is_dir():
                continue
            present.append((int(entry.name), path))
        return present

    def delete_command(self, subvolume: Path) -> List[str]:
        command = ['sudo', 'btrfs'] if self.sudo else ['btrfs']
        if is_enabled('TRACE'):
            command.append('-v')
        return command + ['subvolume', 'delete', str(subvolume)]

    def sync_deletions(self, chain: SnapshotChain, dry_run: bool = False) -> None:
        """
        Delete snapshots at the sync destination which are gone at the source.
        Nothing is deleted if the snapshots at the source can't be listed.
        """
        self.log.debug('Synchronize deletion to sync destination')
        try:
            source: Set[int] = {x.id for x in chain.list_snapshots()}
        except MetadataUnavailable as e:
            self.log.warning(f'Can\'t determine present snapshots, not syncing deletions: {e}')
            return
        self.log.trace(f'Snapshots present: {sorted(source)}')

        deletions = []
        for snapshot_id, path in self._present_at_destination():
            if snapshot_id is None:
                if dry_run:
                    self.log.debug(f'Dry run: would delete empty directory {path}')
                    continue
                try:
                    path.rmdir()
                    self.log.trace(f'Deleted empty directory at sync destination: {path}')
                except OSError as e:
                    self.log.warning(f'Could not delete empty directory {path}: {e}')
                continue
            if snapshot_id in source:
                continue
            command = self.delete_command(path / 'snapshot')
            if dry_run:
                self.log.info(f'Dry run: would delete snapshot {snapshot_id} at sync destination')
                continue
            self.log.debug(f'Sync deletion of snapshot to sync destination: {snapshot_id}')
            try:
                process = spawn(command, self.log, stdout=subprocess.DEVNULL,
                                stderr=subprocess.PIPE, text=True)
            except ToolNotFound as e:
                self.log.error(f'Deletion of snapshot {snapshot_id} at sync destination failed: {e}')
                continue
            deletions.append((process, snapshot_id, path))

        # deletions run concurrently
        for process, snapshot_id, path in deletions:
            _, stderr = process.communicate()
            if process.returncode != 0:
                self.log.error(f'Deletion of snapshot {snapshot_id} at sync destination '
                               f'failed with {process.returncode}: {stderr.strip()}')
                continue
            # the empty directory is removed by the next run
            self.log.trace(f'Finished deletion of snapshot at sync destination: {snapshot_id}')

    def get_existing_backups(self, nextcloud: Nextcloud) -> List[Snapshot]:
        """
        Snapshots created by nc-backup, newest first.
        :raises MetadataUnavailable: the snapshots can't be listed
        """
        snapshots = [x for x in self.chain(nextcloud).list_snapshots() if x.managed]
        return sorted(snapshots, key=lambda x: (x.timestamp, x.id), reverse=True)

    def is_protected(self, artifact: Snapshot) -> bool:
        if artifact.anchored:
            return True
        # not sent yet
        return self.sync_destination is not None and artifact.sync_state == SyncState.UNSYNCED

    def remove(self, artifact: Snapshot) -> None:
        self._store.delete(artifact)
