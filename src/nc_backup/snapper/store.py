"""
Persistence of snapshot metadata.

The sync and anchor state of a snapshot lives in its user data tags.
`MetadataStore` is the narrow interface used by the snapshot chain,
`SnapperStore` implements it with the snapper command-line tool.
"""
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from nc_backup.snapper.snapshot import CleanupAlgorithm, Snapshot
from nc_backup.utils.converters import parse_snapper_date
from nc_backup.utils.errors import BackupError, PreconditionError
from nc_backup.utils.process import run_command

log = logger.bind(target='snapper::store')

SNAPSHOT_DESCRIPTION = 'Full Nextcloud Backup'


class MetadataUnavailable(BackupError):
    """
    The snapshots could not be listed.
    """


class SnapshotNotFound(PreconditionError):
    """
    A snapshot is not known to the metadata store.
    """


class MetadataStore(ABC):
    """
    Snapshots of one backup target and their metadata.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        identifier of the target
        """

    @property
    @abstractmethod
    def subvolume(self) -> Path:
        """
        subvolume that is snapshotted
        """

    @abstractmethod
    def list_snapshots(self) -> List[Snapshot]:
        """
        All snapshots of the target.
        :raises MetadataUnavailable: the store could not be queried
        """

    @abstractmethod
    def create_snapshot(self, user_data: Dict[str, str],
                        cleanup: Optional[CleanupAlgorithm] = None,
                        description: str = SNAPSHOT_DESCRIPTION) -> Snapshot:
        """
        Create a new snapshot with the given tags.
        """

    @abstractmethod
    def modify(self, snapshot: Snapshot) -> None:
        """
        Persist the full tag set, the cleanup algorithm and the description.
        """

    @abstractmethod
    def delete(self, snapshot: Snapshot) -> None:
        """
        Delete the snapshot.
        """

    def snapshot(self, snapshot_id: int) -> Snapshot:
        """
        :raises SnapshotNotFound: no snapshot with this number
        """
        for snapshot in self.list_snapshots():
            if snapshot.id == snapshot_id:
                return snapshot
        raise SnapshotNotFound(f'Snapshot {snapshot_id} not found in {self.name}')


def format_user_data(user_data: Dict[str, str]) -> str:
    return ','.join(f'{k}={v}' for k, v in user_data.items())


class SnapperStore(MetadataStore):
    """
    A snapper configuration.
    """

    def __init__(self, config_id: str, subvolume: Path):
        """
        :param config_id: name of the snapper config
        :param subvolume: subvolume managed by the config
        """
        self.config_id = config_id
        self._subvolume = Path(subvolume)

    def __str__(self):
        return f'Snapper config {self.config_id} ({self._subvolume})'

    def __eq__(self, other):
        return isinstance(other, SnapperStore) and self.config_id == other.config_id

    def __hash__(self):
        return hash(self.config_id)

    @property
    def name(self) -> str:
        return self.config_id

    @property
    def subvolume(self) -> Path:
        return self._subvolume

    @classmethod
    def create_config(cls, subvolume: Path, config_id: str) -> 'SnapperStore':
        """
        Create a new snapper config for the subvolume.
        """
        run_command(['snapper', '-c', config_id, 'create-config', str(subvolume)], log)
        return cls(config_id, subvolume)

    @classmethod
    def by_dir(cls, directory: Path) -> Optional['SnapperStore']:
        """
        Find an existing snapper config by its subvolume.
        """
        output = run_command(['snapper', '--jsonout', 'list-configs'], log)
        try:
            configs = json.loads(output)['configs']
        except (ValueError, KeyError) as e:
            raise MetadataUnavailable(f'Unexpected output of snapper list-configs: {e}') from e
        for config in configs:
            config_id = config.get('config')
            subvolume = config.get('subvolume')
            if config_id and subvolume and Path(subvolume) == Path(directory):
                return cls(config_id, Path(subvolume))
        return None

    @classmethod
    def by_id(cls, config_id: str) -> Optional['SnapperStore']:
        """
        Find an existing snapper config by its name.
        """
        output = run_command(['snapper', '--jsonout', '-c', config_id, 'get-config'], log)
        try:
            subvolume = json.loads(output).get('SUBVOLUME')
        except ValueError as e:
            raise MetadataUnavailable(f'Unexpected output of snapper get-config: {e}') from e
        if not subvolume:
            return None
        return cls(config_id, Path(subvolume))

    def _parse_snapshot(self, entry: dict) -> Optional[Snapshot]:
        snapshot_id = entry.get('number')
        date = entry.get('date')
        # snapshot 0 is the live filesystem without a date
        if not isinstance(snapshot_id, int) or not snapshot_id or not date:
            return None
        user_data = {
            k: v for k, v in (entry.get('userdata') or {}).items() if isinstance(v, str)
        }
        try:
            cleanup = CleanupAlgorithm.parse(entry.get('cleanup'))
        except ValueError:
            log.warning(f'Snapshot {snapshot_id} has an unknown cleanup algorithm: '
                        f'{entry.get("cleanup")}')
            cleanup = None
        return Snapshot(
            snapshot_id=snapshot_id,
            timestamp=parse_snapper_date(date),
            subvolume=self._subvolume,
            user_data=user_data,
            cleanup=cleanup,
            description=entry.get('description') or None,
        )

    def list_snapshots(self) -> List[Snapshot]:
        try:
            output = run_command([
                'snapper', '--jsonout', '-c', self.config_id, 'list',
                '--columns', 'number,userdata,cleanup,date,description'
            ], log)
        except BackupError as e:
            raise MetadataUnavailable(f'Listing snapshots of {self.config_id} failed: {e}') from e
        try:
            entries = json.loads(output)[self.config_id]
            snapshots = [self._parse_snapshot(entry) for entry in entries]
        except (ValueError, KeyError, TypeError) as e:
            raise MetadataUnavailable(
                f'Unexpected output of snapper list for {self.config_id}: {e}') from e
        return [x for x in snapshots if x]

    def create_snapshot(self, user_data: Dict[str, str],
                        cleanup: Optional[CleanupAlgorithm] = None,
                        description: str = SNAPSHOT_DESCRIPTION) -> Snapshot:
        log.info(f'Create snapshot: {self.config_id}')
        command = ['snapper', '-c', self.config_id, 'create', '--print-number',
                   '--userdata', format_user_data(user_data),
                   '--description', description]
        if cleanup:
            command += ['--cleanup-algorithm', str(cleanup)]
        output = run_command(command, log)
        try:
            snapshot_id = int(output.strip())
        except ValueError as e:
            raise BackupError(f'snapper printed no valid snapshot number: {output!r}') from e
        log.info(f'Created snapshot: {snapshot_id}')
        return self.snapshot(snapshot_id)

    def modify(self, snapshot: Snapshot) -> None:
        command = ['snapper', '-c', self.config_id, 'modify',
                   '--userdata', format_user_data(snapshot.user_data),
                   '--cleanup-algorithm', str(snapshot.cleanup) if snapshot.cleanup else '']
        if snapshot.description:
            command += ['--description', snapshot.description]
        command.append(str(snapshot.id))
        run_command(command, log)
        log.debug(f'Updated snapshot meta data: {snapshot!r}')

    def delete(self, snapshot: Snapshot) -> None:
        run_command(['snapper', '-c', self.config_id, 'delete', str(snapshot.id)], log)
