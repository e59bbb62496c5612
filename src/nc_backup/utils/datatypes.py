"""
Contains classes representing the artifacts created by the backends.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from .converters import format_timestamp, parse_file_name


class ArtifactKind(Enum):
    """
    Tags which backend produced an artifact.
    """
    CONFIG = 'config'
    DATABASE = 'database'
    SNAPSHOT = 'snapshot'


class Artifact(ABC):
    """
    Abstract base class for backup artifacts.
    """

    def __init__(self, timestamp: Optional[datetime] = None):
        """
        :param timestamp: creation time of the artifact. Second precision.
        """
        timestamp = timestamp if timestamp else datetime.now()
        self.timestamp = timestamp.replace(microsecond=0)

    def __str__(self):
        return f'{self.kind.value} artifact {self.location}'

    @property
    @abstractmethod
    def kind(self) -> ArtifactKind:
        """
        backend that produced the artifact
        """

    @property
    @abstractmethod
    def location(self) -> str:
        """
        file path or snapshot number
        """

    @property
    def timestamp_str(self) -> str:
        """
        timestamp as string
        :return: timestamp as string
        """
        return self.timestamp.strftime('%Y-%m-%d %H:%M:%S')


class FileArtifact(Artifact):
    """
    Gzip compressed file written by the config or database backend.
    """
    # (prefix, suffix) of the file names
    NAMING = {
        ArtifactKind.CONFIG: ('config', '.php.gz'),
        ArtifactKind.DATABASE: ('database', '.sql.gz'),
    }

    def __init__(self, kind: ArtifactKind, directory: Path,
                 timestamp: Optional[datetime] = None):
        """
        :param kind: config or database
        :param directory: directory containing the file
        :param timestamp: timestamp of the artifact
        """
        if kind not in self.NAMING:
            raise ValueError(f'No file naming for artifacts of kind {kind.value}')
        super().__init__(timestamp)
        self._kind = kind
        self.directory = Path(directory)

    def __str__(self):
        return f'{self._kind.value.capitalize()} Backup {self.path.name}'

    @property
    def kind(self) -> ArtifactKind:
        return self._kind

    @property
    def location(self) -> str:
        return str(self.path)

    @property
    def path(self) -> Path:
        prefix, suffix = self.NAMING[self._kind]
        return self.directory / f'{prefix}-{format_timestamp(self.timestamp)}{suffix}'

    @classmethod
    def from_path(cls, kind: ArtifactKind, path: Path) -> 'FileArtifact':
        """
        Restore an artifact from an existing file.
        :param kind: config or database
        :param path: path of the file
        :return: artifact
        :raises ValueError: the file name does not match the naming of the kind
        """
        prefix, suffix = cls.NAMING[kind]
        timestamp = parse_file_name(path, prefix, suffix)
        return cls(kind, Path(path).parent, timestamp)
