"""
Snapshots created by snapper and their sync state.
"""
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from nc_backup.utils.datatypes import Artifact, ArtifactKind

# user data tags persisted at the snapshots
MANAGED_TAG = 'nc_backup'
SYNCED_TAG = 'nc_backup_synced'
ANCHOR_TAG = 'nc_backup_anchor'


class SyncState(Enum):
    """
    Tri-state of the synced tag. Snapshots without the tag are UNDEFINED.
    """
    UNSYNCED = 'false'
    SYNCED = 'true'
    UNDEFINED = None


class CleanupAlgorithm(Enum):
    """
    Algorithms provided by snapper to clean up old snapshots.
    Snapper runs them independently of nc-backup in a daily timer.
    """
    # deletes old snapshots when a certain number of snapshots is reached
    NUMBER = 'number'
    # keeps a number of hourly, daily, weekly, monthly and yearly snapshots
    TIMELINE = 'timeline'

    def __str__(self):
        return self.value

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['CleanupAlgorithm']:
        """
        :param value: algorithm name. Empty or None: no algorithm.
        :raises ValueError: unknown algorithm
        """
        if not value:
            return None
        return cls(value)


class Snapshot(Artifact):
    """
    A snapshot of the Nextcloud data directory.
    """

    def __init__(self, snapshot_id: int, timestamp: datetime, subvolume: Path,
                 user_data: Optional[Dict[str, str]] = None,
                 cleanup: Optional[CleanupAlgorithm] = None,
                 description: Optional[str] = None):
        """
        :param snapshot_id: number of the snapshot
        :param timestamp: creation date
        :param subvolume: subvolume managed by the snapper config
        :param user_data: key/value tags
        :param cleanup: cleanup algorithm of snapper or None
        :param description: description of the snapshot
        """
        super().__init__(timestamp)
        self.id = snapshot_id
        self.subvolume = Path(subvolume)
        self.user_data: Dict[str, str] = dict(user_data or {})
        self.cleanup = cleanup
        self.description = description

    def __str__(self):
        return f'Snapshot {self.id}'

    def __repr__(self):
        return (f'Snapshot(id={self.id}, date={self.timestamp_str}, '
                f'sync_state={self.sync_state.name}, anchored={self.anchored}, '
                f'cleanup={self.cleanup})')

    def __eq__(self, other):
        return isinstance(other, Snapshot) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    @property
    def kind(self) -> ArtifactKind:
        return ArtifactKind.SNAPSHOT

    @property
    def location(self) -> str:
        return str(self.id)

    @property
    def path(self) -> Path:
        """
        Path to the read-only snapshot subvolume.
        """
        return self.subvolume / '.snapshots' / str(self.id) / 'snapshot'

    @property
    def managed(self) -> bool:
        """
        Whether the snapshot was created by nc-backup.
        """
        return self.user_data.get(MANAGED_TAG) == 'true'

    @property
    def sync_state(self) -> SyncState:
        value = self.user_data.get(SYNCED_TAG)
        try:
            return SyncState(value)
        except ValueError:
            return SyncState.UNDEFINED

    @property
    def synced(self) -> bool:
        return self.sync_state == SyncState.SYNCED

    @property
    def anchored(self) -> bool:
        return self.user_data.get(ANCHOR_TAG) == 'true'

    def update_from(self, other: 'Snapshot'):
        """
        Take over the metadata of a freshly listed instance of the same snapshot.
        """
        self.timestamp = other.timestamp
        self.subvolume = other.subvolume
        self.user_data = dict(other.user_data)
        self.cleanup = other.cleanup
        self.description = other.description
