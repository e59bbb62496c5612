"""
Tests for the config and database backends and the retention of files.
"""

import gzip
import sys
from datetime import datetime

import pytest

from nc_backup.backends import config_file, mariadb
from nc_backup.backends.config_file import ConfigBackend, mask_dbpassword
from nc_backup.backends.mariadb import MariaDbBackend
from nc_backup.utils.datatypes import ArtifactKind, FileArtifact
from nc_backup.utils.errors import BackupError, CommandFailed, DestinationExists
from nc_backup.utils.retention import RetentionConfig

ONLY_DAILY = dict(daily=2, weekly=0, monthly=0, quarterly=0, yearly=0)


def fixed_artifact(backend, timestamp=datetime(2024, 5, 1, 3, 0, 0)):
    return FileArtifact(backend.kind, backend.backup_dir, timestamp)


class TestMaskDbPassword:
    """Test masking of the database password."""

    def test_masks_every_assignment(self):
        lines = ["  'dbname' => 'nextcloud',",
                 "  'dbpassword' => 'secret123',",
                 "  'dbpassword' => 'other',"]
        processed, replaced = mask_dbpassword(lines)
        assert replaced
        assert processed == ["  'dbname' => 'nextcloud',",
                             "  'dbpassword' => 'DBPASSWORD',",
                             "  'dbpassword' => 'DBPASSWORD',"]

    def test_nothing_to_mask(self):
        lines = ["<?php", "$CONFIG = array ("]
        processed, replaced = mask_dbpassword(lines)
        assert not replaced
        assert processed == lines


class TestConfigBackend:
    """Test the backup of config.php."""

    def test_backup_writes_masked_gzip(self, nextcloud, tmp_path):
        backend = ConfigBackend(tmp_path / 'backups')
        backend.backup(nextcloud)

        (file,) = (tmp_path / 'backups' / 'config').iterdir()
        assert FileArtifact.from_path(ArtifactKind.CONFIG, file).path == file
        with gzip.open(file, 'rt', encoding='utf-8') as f:
            content = f.read()
        original = nextcloud.config_path.read_text()
        assert 'secret123' not in content
        assert "'dbpassword' => 'DBPASSWORD'," in content
        assert content.replace("'DBPASSWORD'", "'secret123'") == original

    def test_warns_if_no_password_found(self, nextcloud, tmp_path, log_messages):
        nextcloud.config_path.write_text("<?php\n$CONFIG = array ();\n")
        ConfigBackend(tmp_path / 'backups').backup(nextcloud)
        warnings = [x['message'] for x in log_messages if x['level'].name == 'WARNING']
        assert 'No dbpassword config entry found and masked!' in warnings
        (file,) = (tmp_path / 'backups' / 'config').iterdir()
        with gzip.open(file, 'rt', encoding='utf-8') as f:
            assert f.read() == nextcloud.config_path.read_text()

    def test_failed_write_removes_partial_file(self, nextcloud, tmp_path, monkeypatch):
        def lines():
            yield '<?php'
            raise OSError(28, 'No space left on device')

        monkeypatch.setattr(config_file, 'mask_dbpassword', lambda x: (lines(), True))
        backend = ConfigBackend(tmp_path / 'backups')

        with pytest.raises(OSError, match='No space left'):
            backend.backup(nextcloud)

        assert list(backend.backup_dir.iterdir()) == []
        assert backend.get_existing_backups(nextcloud) == []

    def test_never_overwrites(self, nextcloud, tmp_path, monkeypatch):
        backend = ConfigBackend(tmp_path / 'backups')
        artifact = fixed_artifact(backend)
        monkeypatch.setattr(backend, 'new_artifact', lambda: artifact)
        backend.backup_dir.mkdir(parents=True)
        artifact.path.write_text('old')

        with pytest.raises(DestinationExists):
            backend.backup(nextcloud)
        assert artifact.path.read_text() == 'old'

    def test_dry_run_writes_nothing(self, nextcloud, tmp_path):
        ConfigBackend(tmp_path / 'backups').backup(nextcloud, dry_run=True)
        assert not (tmp_path / 'backups').exists()


class TestMariaDbBackend:
    """Test the database dump with a fake dump tool."""

    @staticmethod
    def backend(tmp_path, monkeypatch, script):
        backend = MariaDbBackend(tmp_path / 'backups')
        monkeypatch.setattr(backend, 'dump_command',
                            lambda db_user, db_name: [sys.executable, '-c', script, db_name])
        return backend

    def test_dump_command(self):
        assert MariaDbBackend.dump_command('nc', 'nextcloud') == [
            'mariadb-dump', '--opt', '--single-transaction', '--user=nc', 'nextcloud']

    def test_backup_writes_gzip(self, nextcloud, tmp_path, monkeypatch):
        script = "import sys; print('-- dump of ' + sys.argv[1])"
        backend = self.backend(tmp_path, monkeypatch, script)

        backend.backup(nextcloud)

        (file,) = backend.backup_dir.iterdir()
        assert file.name.startswith('database-') and file.name.endswith('.sql.gz')
        with gzip.open(file, 'rt') as f:
            assert f.read() == '-- dump of nextcloud\n'

    def test_failed_dump_removes_partial_file(self, nextcloud, tmp_path, monkeypatch):
        script = "import sys; print('partial'); sys.stderr.write('access denied\\n'); sys.exit(2)"
        backend = self.backend(tmp_path, monkeypatch, script)

        with pytest.raises(CommandFailed) as e:
            backend.backup(nextcloud)

        assert e.value.returncode == 2
        assert 'access denied' in e.value.stderr
        assert list(backend.backup_dir.iterdir()) == []

    def test_failed_write_removes_partial_file(self, nextcloud, tmp_path, monkeypatch):
        def copyfileobj(source, target, length=0):
            target.write(b'x' * 10)
            raise OSError(28, 'No space left on device')

        backend = self.backend(tmp_path, monkeypatch, "print('dump')")
        monkeypatch.setattr(mariadb.shutil, 'copyfileobj', copyfileobj)

        with pytest.raises(OSError, match='No space left'):
            backend.backup(nextcloud)

        assert list(backend.backup_dir.iterdir()) == []
        assert backend.get_existing_backups(nextcloud) == []

    def test_concurrent_dump_is_kept(self, nextcloud, tmp_path, monkeypatch):
        def gzip_open(path, mode):
            # another dump appears between the check and the write
            path.write_text('old')
            raise FileExistsError(17, 'File exists', str(path))

        backend = self.backend(tmp_path, monkeypatch, "print('dump')")
        monkeypatch.setattr(mariadb.gzip, 'open', gzip_open)

        with pytest.raises(DestinationExists):
            backend.backup(nextcloud)

        (file,) = backend.backup_dir.iterdir()
        assert file.read_text() == 'old'

    def test_dry_run_discards_dump(self, nextcloud, tmp_path, monkeypatch):
        backend = self.backend(tmp_path, monkeypatch, "print('dump')")
        backend.backup(nextcloud, dry_run=True)
        assert not backend.backup_dir.exists()


class TestFileRetention:
    """Test the retention of backup files."""

    @pytest.fixture
    def backend(self, tmp_path):
        backend = ConfigBackend(tmp_path / 'backups')
        backend.backup_dir.mkdir(parents=True)
        for day in (1, 2, 3, 4):
            fixed_artifact(backend, datetime(2024, 5, day, 3, 0, 0)).path.write_text('x')
        return backend

    def test_existing_backups_newest_first(self, backend, nextcloud, log_messages):
        (backend.backup_dir / 'notes.txt').write_text('x')

        artifacts = backend.get_existing_backups(nextcloud)

        assert [x.timestamp.day for x in artifacts] == [4, 3, 2, 1]
        assert any('notes.txt' in x['message'] for x in log_messages
                   if x['level'].name == 'WARNING')

    def test_retention_removes_files(self, backend, nextcloud):
        backend.retention(nextcloud, RetentionConfig(**ONLY_DAILY))
        remaining = sorted(x.name for x in backend.backup_dir.iterdir())
        assert remaining == ['config-2024-05-03T03-00-00.php.gz',
                             'config-2024-05-04T03-00-00.php.gz']

    def test_retention_dry_run(self, backend, nextcloud):
        backend.retention(nextcloud, RetentionConfig(**ONLY_DAILY), dry_run=True)
        assert len(list(backend.backup_dir.iterdir())) == 4

    def test_failed_removal_does_not_stop_others(self, backend, nextcloud, monkeypatch):
        removed = []

        def remove(artifact):
            if artifact.timestamp.day == 2:
                raise PermissionError('read-only')
            removed.append(artifact.timestamp.day)

        monkeypatch.setattr(backend, 'remove', remove)
        with pytest.raises(BackupError):
            backend.retention(nextcloud, RetentionConfig(**ONLY_DAILY))
        assert removed == [1]

    def test_plan_retention(self, backend, nextcloud):
        plan = backend.plan_retention(nextcloud, RetentionConfig(**ONLY_DAILY))
        assert [keep for _, keep in plan] == [True, True, False, False]
