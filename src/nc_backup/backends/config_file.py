"""
Backup of Nextcloud's config.php.
"""
import gzip
import re
from typing import Iterable, Iterator, List, Tuple

from nc_backup.backends.base import FileBackend
from nc_backup.nextcloud.client import Nextcloud
from nc_backup.utils.datatypes import ArtifactKind
from nc_backup.utils.errors import DestinationExists

DBPASSWORD_PATTERN = re.compile(r'(dbpassword.*=>\s*).*,')
DBPASSWORD_PLACEHOLDER = r"\1'DBPASSWORD',"


def mask_dbpassword(lines: Iterable[str]) -> Tuple[List[str], bool]:
    """
    Replace the value of every dbpassword assignment with a placeholder.
    The password is not needed for a restore.
    :param lines: lines of config.php without line endings
    :return: 2-Tuple[processed lines, whether a line was masked]
    """
    replaced = False
    processed = []
    for line in lines:
        if DBPASSWORD_PATTERN.search(line):
            line = DBPASSWORD_PATTERN.sub(DBPASSWORD_PLACEHOLDER, line, count=1)
            replaced = True
        processed.append(line)
    return processed, replaced


def _read_lines(file) -> Iterator[str]:
    for line in file:
        yield line.rstrip('\r\n')


class ConfigBackend(FileBackend):
    """
    Writes a gzip compressed copy of config.php with the database password masked.
    """
    name = 'config'
    kind = ArtifactKind.CONFIG
    sub_folder = 'config'

    def backup(self, nextcloud: Nextcloud, dry_run: bool = False) -> None:
        config_path = nextcloud.config_path
        self.log.info(f'Create backup of Nextcloud config: {config_path}')

        with open(config_path, encoding='utf-8') as f:
            lines, replaced = mask_dbpassword(_read_lines(f))
        if replaced:
            self.log.trace('Masked dbpassword')
        else:
            self.log.warning('No dbpassword config entry found and masked!')

        artifact = self.new_artifact()
        if artifact.path.exists():
            raise DestinationExists(f'Config backup already exists: {artifact.path}')
        if dry_run:
            self.log.info(f'Dry run: not writing {artifact.path}')
            return

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.log.debug(f'Backup Nextcloud config to: {artifact.path}')
        try:
            with gzip.open(artifact.path, 'xt', encoding='utf-8') as f:
                for line in lines:
                    f.write(f'{line}\n')
        except FileExistsError as e:
            raise DestinationExists(f'Config backup already exists: {artifact.path}') from e
        except BaseException:
            self.log.warning(f'Removing incomplete config backup {artifact.path}')
            artifact.path.unlink(missing_ok=True)
            raise
        self.log.info('Finished backup of Nextcloud config')
