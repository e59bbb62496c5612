"""
Nextcloud installation / occ commands
"""
from pathlib import Path
from typing import List, Optional

from loguru import logger

from nc_backup.utils.errors import ConsistencyError, PreconditionError
from nc_backup.utils.process import run_command

log = logger.bind(target='nextcloud::occ')


class InstallationNotFound(PreconditionError):
    """
    The installation folder of Nextcloud or its occ couldn't be located.
    """


class Occ:
    """
    Access to the command-line interface of Nextcloud.
    """

    def __init__(self, occ_path: Path, php_user: Optional[str] = None):
        """
        :param occ_path: path to the occ php file
        :param php_user: run occ as this user with sudo. default: current user
        """
        occ_path = Path(occ_path)
        if not occ_path.exists():
            raise InstallationNotFound(f'Path to occ couldn\'t be located: {occ_path}')
        self.occ_path = occ_path
        self.php_user = php_user or None

    def execute_command(self, command: str, *args: str) -> str:
        """
        Run an occ command.
        :param command: e.g. maintenance:mode
        :param args: arguments of the command
        :return: stdout without trailing whitespace
        """
        cmd = ['php', str(self.occ_path), '--no-warnings', command, *args]
        if self.php_user:
            cmd = ['sudo', '-u', self.php_user, *cmd]
        return run_command(cmd, log).rstrip()

    def maintenance(self) -> bool:
        """
        :return: whether maintenance mode is enabled
        """
        return 'enabled' in self.execute_command('maintenance:mode')

    def enable_maintenance(self):
        self.execute_command('maintenance:mode', '--on')
        if not self.maintenance():
            raise ConsistencyError('Maintenance mode is still disabled after enabling it')
        log.debug('Maintenance Mode enabled.')

    def disable_maintenance(self):
        self.execute_command('maintenance:mode', '--off')
        if self.maintenance():
            raise ConsistencyError('Maintenance mode is still enabled after disabling it')
        log.debug('Maintenance Mode disabled.')

    def data_directory(self) -> Path:
        """
        :return: data directory of Nextcloud
        """
        data_directory = Path(self.execute_command('config:system:get', 'datadirectory'))
        if not data_directory.is_dir():
            raise PreconditionError(
                f'Nextcloud data directory is not an accessible directory: {data_directory}')
        return data_directory

    def db_name(self) -> str:
        return self.execute_command('config:system:get', 'dbname')

    def db_user(self) -> str:
        return self.execute_command('config:system:get', 'dbuser')

    def update_apps(self, show_only: bool = False) -> List[str]:
        """
        Update all apps.
        :param show_only: only show available updates (dry run)
        :return: lines of the update log
        """
        update_log = self.execute_command('app:update', '--show-only' if show_only else '--all')
        lines = update_log.splitlines()
        for line in lines:
            log.info(f'Update Apps: {line}')
        return lines

    def notify(self, user: str, message: str):
        """
        Send a notification to the Nextcloud user.
        """
        self.execute_command('notification:generate', user, message)


class Nextcloud:
    """
    A Nextcloud installation.
    """

    def __init__(self, document_root: Path, php_user: Optional[str] = None):
        """
        :param document_root: folder where the files of the installed version are located.
            e.g. /var/www/nextcloud
        :param php_user: run occ as this user
        """
        document_root = Path(document_root)
        if not document_root.is_dir():
            raise InstallationNotFound(
                f'Nextcloud installation directory couldn\'t be located: {document_root}')
        self.document_root = document_root
        self.occ = Occ(document_root / 'occ', php_user)

    def __str__(self):
        return f'Nextcloud @ {self.document_root}'

    @property
    def config_path(self) -> Path:
        """
        path to the config.php of Nextcloud
        """
        return self.document_root / 'config' / 'config.php'
