"""
Shared pytest fixtures for nc-backup tests.

This module provides fixtures for:
- In-memory snapshot metadata store
- Stub send/receive processes (the running interpreter instead of btrfs)
- A fake Nextcloud installation with a mocked occ
- Capturing loguru messages
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from loguru import logger

from nc_backup.nextcloud.client import Nextcloud
from nc_backup.snapper.snapshot import CleanupAlgorithm, Snapshot
from nc_backup.snapper.store import MetadataStore, MetadataUnavailable
from nc_backup.snapper.transfer import IncrementalTransferPipeline

CONFIG_PHP = """<?php
$CONFIG = array (
  'instanceid' => 'oc1234',
  'dbtype' => 'mysql',
  'dbname' => 'nextcloud',
  'dbuser' => 'nextcloud',
  'dbpassword' => 'secret123',
  'installed' => true,
);
"""

# writes <snapshot>/payload to stdout
PRODUCER_SCRIPT = """
import sys
args = sys.argv[1:]
parent = None
if args[0] == '-p':
    parent = args[1]
    args = args[2:]
sys.stderr.write('At subvol %s\\n' % args[0])
if parent:
    sys.stderr.write('parent %s\\n' % parent)
with open(args[0] + '/payload', 'rb') as f:
    sys.stdout.buffer.write(f.read())
"""

# writes stdin to <destination>/snapshot/payload
CONSUMER_SCRIPT = """
import os, sys
target = os.path.join(sys.argv[1], 'snapshot')
os.makedirs(target)
with open(os.path.join(target, 'payload'), 'wb') as f:
    f.write(sys.stdin.buffer.read())
sys.stderr.write('At snapshot snapshot\\n')
"""

FAILING_SCRIPT = """
import sys
sys.stderr.write('ERROR: boom\\n')
sys.exit(1)
"""


class InMemoryStore(MetadataStore):
    """
    MetadataStore keeping the snapshots in a dict.
    Snapshots get a directory with a payload file below the subvolume.
    """

    def __init__(self, subvolume: Path):
        self._subvolume = Path(subvolume)
        self.records: Dict[int, Snapshot] = {}
        self.next_id = 1
        self.modifications: List[int] = []
        self.deleted: List[int] = []
        self.unavailable = False
        self.clock = datetime(2024, 1, 1, 3, 0, 0)

    @property
    def name(self) -> str:
        return 'data'

    @property
    def subvolume(self) -> Path:
        return self._subvolume

    @staticmethod
    def _copy(snapshot: Snapshot) -> Snapshot:
        return Snapshot(snapshot.id, snapshot.timestamp, snapshot.subvolume,
                        dict(snapshot.user_data), snapshot.cleanup, snapshot.description)

    def list_snapshots(self) -> List[Snapshot]:
        if self.unavailable:
            raise MetadataUnavailable('snapper is gone')
        return [self._copy(x) for x in sorted(self.records.values(), key=lambda x: x.id)]

    def add(self, user_data: Dict[str, str], cleanup: Optional[CleanupAlgorithm] = None,
            timestamp: Optional[datetime] = None, payload: bytes = b'data') -> Snapshot:
        snapshot_id = self.next_id
        self.next_id += 1
        if timestamp is None:
            timestamp = self.clock
            self.clock += timedelta(days=1)
        snapshot = Snapshot(snapshot_id, timestamp, self._subvolume, user_data, cleanup,
                            'Full Nextcloud Backup')
        snapshot.path.mkdir(parents=True)
        (snapshot.path / 'payload').write_bytes(payload + f' {snapshot_id}'.encode())
        self.records[snapshot_id] = snapshot
        return self._copy(snapshot)

    def create_snapshot(self, user_data, cleanup=None, description='Full Nextcloud Backup'):
        return self.add(user_data, cleanup)

    def modify(self, snapshot: Snapshot) -> None:
        self.modifications.append(snapshot.id)
        self.records[snapshot.id] = self._copy(snapshot)

    def delete(self, snapshot: Snapshot) -> None:
        self.deleted.append(snapshot.id)
        del self.records[snapshot.id]


class StubPipeline(IncrementalTransferPipeline):
    """
    Pipeline running the stub scripts with the current interpreter.
    """
    producer_script = PRODUCER_SCRIPT
    consumer_script = CONSUMER_SCRIPT

    def producer_command(self, snapshot, parent, verbose):
        command = [sys.executable, '-c', self.producer_script]
        if parent is not None:
            command += ['-p', str(parent.path)]
        return command + [str(snapshot.path)]

    def consumer_command(self, destination, verbose):
        return [sys.executable, '-c', self.consumer_script, str(destination)]


@pytest.fixture
def store(tmp_path):
    """In-memory metadata store with its subvolume in a temp dir."""
    return InMemoryStore(tmp_path / 'data')


@pytest.fixture
def log_messages():
    """Records of all loguru messages logged during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level='TRACE')
    yield records
    logger.remove(handler_id)


@pytest.fixture
def nextcloud(tmp_path):
    """
    Nextcloud installation in a temp dir with a mocked occ.
    """
    root = tmp_path / 'nextcloud'
    (root / 'config').mkdir(parents=True)
    (root / 'occ').write_text('<?php\n')
    (root / 'config' / 'config.php').write_text(CONFIG_PHP)
    instance = Nextcloud(root)
    instance.occ = MagicMock()
    instance.occ.db_name.return_value = 'nextcloud'
    instance.occ.db_user.return_value = 'nextcloud'
    instance.occ.maintenance.return_value = False
    return instance
