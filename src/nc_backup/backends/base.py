import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from loguru import logger

from nc_backup.nextcloud.client import Nextcloud
from nc_backup.utils.datatypes import Artifact, ArtifactKind, FileArtifact
from nc_backup.utils.errors import BackupError
from nc_backup.utils.retention import Retention, RetentionConfig


class Backend(ABC):
    """
    ABC for backend implementations.
    Implements how to create, list and delete the artifacts of a backend.
    """
    name: str = 'backend'

    def __init__(self):
        self.log = logger.bind(target=f'backend::{self.name}')

    @abstractmethod
    def backup(self, nextcloud: Nextcloud, dry_run: bool = False) -> None:
        """
        Backup the data managed by the backend.
        On a dry run no files are altered. Instead sanity checks are performed
        to determine if a real backup would succeed under the present conditions.
        :param nextcloud: Nextcloud installation
        :param dry_run: skip all mutations
        """

    @abstractmethod
    def get_existing_backups(self, nextcloud: Nextcloud) -> List[Artifact]:
        """
        Returns the artifacts of this backend, newest first.
        """

    @abstractmethod
    def remove(self, artifact: Artifact) -> None:
        """
        Removes the artifact.
        :param artifact: The artifact to remove.
        """

    def is_protected(self, artifact: Artifact) -> bool:
        """
        Protected artifacts are never removed by the retention.
        """
        return False

    def plan_retention(self, nextcloud: Nextcloud,
                       config: RetentionConfig) -> List[tuple]:
        """
        Decide for every existing artifact whether it is kept.
        :return: list of (artifact, keep) newest first
        """
        retention = Retention(config)
        plan = []
        for artifact in self.get_existing_backups(nextcloud):
            keep = retention.retain(artifact.timestamp)
            plan.append((artifact, keep or self.is_protected(artifact)))
        return plan

    def retention(self, nextcloud: Nextcloud, config: RetentionConfig,
                  dry_run: bool = False) -> None:
        """
        Remove every artifact which is not retained by the retention config.
        Nothing is removed if the artifacts can't be listed.
        :param nextcloud: Nextcloud installation
        :param config: quotas of the retention tiers
        :param dry_run: only log what would be removed
        """
        self.log.info(f'Applying retention: {config}')
        plan = self.plan_retention(nextcloud, config)
        failed = 0
        removed = 0
        for artifact, keep in plan:
            if keep:
                self.log.debug(f'Keeping {artifact} @ {artifact.timestamp_str}')
                continue
            if dry_run:
                self.log.info(f'Would remove {artifact} @ {artifact.timestamp_str}')
                continue
            self.log.info(f'Removing {artifact} @ {artifact.timestamp_str}')
            try:
                self.remove(artifact)
                removed += 1
            except (OSError, BackupError) as e:
                self.log.error(f'Could not remove {artifact}: {e}')
                failed += 1
        self.log.info(f'Finished retention. Kept: {sum(keep for _, keep in plan)}, '
                      f'removed: {removed}, failed: {failed}')
        if failed:
            raise BackupError(f'{failed} artifact(s) could not be removed')


class FileBackend(Backend):
    """
    Backend writing gzip compressed files into a sub folder of the backup root.
    """
    kind: ArtifactKind
    sub_folder: str

    def __init__(self, backup_root: Path):
        """
        :param backup_root: main dir for backups
        """
        super().__init__()
        self.backup_dir = Path(backup_root) / self.sub_folder
        if not self.backup_dir.is_absolute():
            self.log.warning(f'Backup dir is relative: {self.backup_dir}')

    def new_artifact(self) -> FileArtifact:
        """
        Artifact for a new backup. Its file must not exist yet.
        """
        return FileArtifact(self.kind, self.backup_dir)

    def get_existing_backups(self, nextcloud: Nextcloud) -> List[FileArtifact]:
        """
        Get all existing backups.
        :return: artifacts sorted newest first
        """
        if not self.backup_dir.is_dir():
            self.log.debug(f'No backups yet, {self.backup_dir} does not exist')
            return []
        artifacts = []
        for file in os.listdir(self.backup_dir):
            try:
                artifacts.append(FileArtifact.from_path(self.kind, self.backup_dir / file))
            except ValueError:
                self.log.warning(f'Invalid file name in backup dir: {file}')
        return sorted(artifacts, key=lambda x: x.timestamp, reverse=True)

    def remove(self, artifact: FileArtifact) -> None:
        os.remove(artifact.path)
