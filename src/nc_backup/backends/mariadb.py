"""
Backup of Nextcloud's MariaDB database with mariadb-dump.
"""
import gzip
import shutil
import subprocess
import threading
from typing import List

from nc_backup.backends.base import FileBackend
from nc_backup.nextcloud.client import Nextcloud
from nc_backup.utils.datatypes import ArtifactKind
from nc_backup.utils.errors import CommandFailed, DestinationExists
from nc_backup.utils.process import StreamDrain, spawn

DUMP_TOOL = 'mariadb-dump'


class MariaDbBackend(FileBackend):
    """
    Writes a gzip compressed dump of the Nextcloud database.
    """
    name = 'mariadb'
    kind = ArtifactKind.DATABASE
    sub_folder = 'db'

    @staticmethod
    def dump_command(db_user: str, db_name: str) -> List[str]:
        return [DUMP_TOOL, '--opt', '--single-transaction', f'--user={db_user}', db_name]

    def backup(self, nextcloud: Nextcloud, dry_run: bool = False) -> None:
        db_name = nextcloud.occ.db_name()
        db_user = nextcloud.occ.db_user()
        self.log.info(f'Create database dump of the Nextcloud database: {db_name}')
        self.log.debug(f"Using dbuser '{db_user}' for backup")

        artifact = self.new_artifact()
        if artifact.path.exists():
            raise DestinationExists(f'Database dump already exists: {artifact.path}')
        if not dry_run:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.log.debug(f'Save Nextcloud database dump at: {artifact.path}')

        command = self.dump_command(db_user, db_name)
        process = spawn(command, self.log, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        stderr = StreamDrain(process.stderr, DUMP_TOOL, self.log, level='DEBUG')
        drain = threading.Thread(target=stderr.drain, name=f'{DUMP_TOOL}-stderr', daemon=True)
        drain.start()
        try:
            if dry_run:
                self.log.trace(f'Discarding output of {DUMP_TOOL} on dry-run')
                for _ in iter(lambda: process.stdout.read(64 * 1024), b''):
                    pass
            else:
                try:
                    with gzip.open(artifact.path, 'xb') as f:
                        shutil.copyfileobj(process.stdout, f)
                except FileExistsError as e:
                    raise DestinationExists(
                        f'Database dump already exists: {artifact.path}') from e
                except BaseException:
                    self.log.warning(f'Removing incomplete dump {artifact.path}')
                    artifact.path.unlink(missing_ok=True)
                    raise
        finally:
            process.stdout.close()
            drain.join()
            returncode = process.wait()

        if returncode != 0:
            if not dry_run:
                self.log.warning(f'Removing incomplete dump {artifact.path}')
                artifact.path.unlink(missing_ok=True)
            raise CommandFailed(command, returncode, stderr.text)
        if stderr.error is not None:
            self.log.warning(f'Reading stderr of {DUMP_TOOL} failed: {stderr.error}')
        self.log.info('Finished Nextcloud database dump.')
