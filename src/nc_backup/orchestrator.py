"""
Runs the backends concurrently and aggregates their failures.
"""
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, List, Optional

from loguru import logger

from nc_backup.backends.base import Backend
from nc_backup.nextcloud.client import Nextcloud
from nc_backup.utils.errors import BackupError
from nc_backup.utils.retention import RetentionConfig

log = logger.bind(target='orchestrator')


class Action(Enum):
    BACKUP = 'backup'
    RETAIN = 'retain'


# bit of the exit status set on failure
STATUS_BITS = {
    'apps': 1 << 0,
    'snapper': 1 << 1,
    'config': 1 << 2,
    'mariadb': 1 << 3,
    'maintenance': 1 << 4,
}


class BackupOrchestrator:
    """
    Fans out one thread per enabled backend.
    Only one orchestrator may run against a Nextcloud installation at a time.
    """

    def __init__(self, nextcloud: Nextcloud, backends: List[Backend],
                 retention: Optional[RetentionConfig] = None, dry_run: bool = False):
        """
        :param nextcloud: Nextcloud installation
        :param backends: enabled backends
        :param retention: retention config for the retain action
        :param dry_run: perform all checks but skip mutations
        """
        self.nextcloud = nextcloud
        self.backends = backends
        self.retention = retention or RetentionConfig()
        self.dry_run = dry_run
        self.failures: Dict[str, BaseException] = {}

    def _run_backend(self, backend: Backend, action: Action) -> None:
        if action is Action.BACKUP:
            backend.backup(self.nextcloud, self.dry_run)
        else:
            backend.retention(self.nextcloud, self.retention, self.dry_run)

    def run_backends(self, action: Action) -> int:
        """
        Run the action on all backends and wait for all of them.
        A failing backend does not stop its siblings.
        :return: status with the bits of the failed backends set
        """
        status = 0
        if not self.backends:
            log.warning('No backends enabled')
            return status
        with ThreadPoolExecutor(max_workers=len(self.backends),
                                thread_name_prefix='backend') as executor:
            futures = {
                backend: executor.submit(self._run_backend, backend, action)
                for backend in self.backends
            }
            for backend, future in futures.items():
                try:
                    future.result()
                except Exception as e:
                    backend.log.opt(exception=not isinstance(e, BackupError)).error(
                        f'Fatal error: {e}')
                    self.failures[backend.name] = e
                    status |= STATUS_BITS.get(backend.name, 0)
        return status

    def backup(self, update_apps: bool = False) -> int:
        """
        Backup all backends while Nextcloud is in maintenance mode.
        :param update_apps: update the Nextcloud apps after the backup
        :return: exit status
        """
        occ = self.nextcloud.occ
        try:
            if self.dry_run:
                log.info(f'Dry run: not enabling maintenance mode (enabled: {occ.maintenance()})')
            else:
                occ.enable_maintenance()
        except BackupError as e:
            log.critical(f'Enabling maintenance mode failed, not running any backup: {e}')
            self.failures['maintenance'] = e
            return STATUS_BITS['maintenance']

        status = 0
        try:
            status |= self.run_backends(Action.BACKUP)
            if update_apps:
                try:
                    occ.update_apps(show_only=self.dry_run)
                except BackupError as e:
                    logger.bind(target='apps').error(f'Updating the Nextcloud apps failed: {e}')
                    self.failures['apps'] = e
                    status |= STATUS_BITS['apps']
        finally:
            if not self.dry_run:
                try:
                    occ.disable_maintenance()
                except BackupError as e:
                    log.critical(f'Disabling maintenance mode failed: {e}')
                    self.failures['maintenance'] = e
                    status |= STATUS_BITS['maintenance']
        return status

    def retain(self) -> int:
        """
        Apply the retention config to the artifacts of all backends.
        :return: exit status
        """
        return self.run_backends(Action.RETAIN)

    def run(self, action: Action, update_apps: bool = False) -> int:
        if self.dry_run:
            log.warning('Running in dry-run mode')
        log.info(f'Running {action.value} for {", ".join(x.name for x in self.backends)}')
        if action is Action.BACKUP:
            status = self.backup(update_apps)
        else:
            status = self.retain()
        if status:
            log.error(f'Finished {action.value} with failures: {", ".join(self.failures)}')
        else:
            log.info(f'Finished {action.value}')
        return status

    def summary(self, action: Action) -> str:
        if not self.failures:
            return f'nc-backup: {action.value} finished successfully'
        return (f'nc-backup: {action.value} failed for {", ".join(self.failures)}: '
                + '; '.join(f'{k}: {v}' for k, v in self.failures.items()))

    def notify(self, action: Action, admin: str) -> None:
        """
        Send a summary of the run to the admin account. Failures are only logged.
        """
        message = self.summary(action)
        if self.dry_run:
            log.info(f'Dry run: would notify {admin}: {message}')
            return
        try:
            self.nextcloud.occ.notify(admin, message)
        except BackupError as e:
            log.warning(f'Notifying {admin} failed: {e}')
