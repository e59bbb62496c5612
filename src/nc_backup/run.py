"""
Backups of a Nextcloud installation: config.php, database and data directory.
"""
import sys
from pathlib import Path
from typing import List, Optional

import click
from dynaconf import Dynaconf
from loguru import logger

from nc_backup.backends.base import Backend
from nc_backup.backends.config_file import ConfigBackend
from nc_backup.backends.mariadb import MariaDbBackend
from nc_backup.backends.snapper import SnapperBackend
from nc_backup.nextcloud.client import Nextcloud
from nc_backup.orchestrator import Action, BackupOrchestrator
from nc_backup.snapper.snapshot import CleanupAlgorithm
from nc_backup.snapper.store import SnapperStore
from nc_backup.utils.config import BACKENDS, DEFAULT_CONFIG_FOLDER, parse_config
from nc_backup.utils.errors import BackupError
from nc_backup.utils.logging import setup_logging
from nc_backup.utils.retention import RetentionConfig


class CtxArgs:
    """
    Cache object for arguments between click group and commands.
    """

    def __init__(self,
                 settings: Dynaconf, nextcloud: Nextcloud, backends: List[Backend],
                 retention: RetentionConfig, dry_run: bool,
                 admin: str, notification: bool):
        self.settings = settings
        self.nextcloud = nextcloud
        self.backends = backends
        self.retention = retention
        self.dry_run = dry_run
        self.admin = admin
        self.notification = notification

    def orchestrator(self) -> BackupOrchestrator:
        return BackupOrchestrator(self.nextcloud, self.backends, self.retention, self.dry_run)


def create_backends(settings: Dynaconf, names: List[str], backup_root: Path) -> List[Backend]:
    """
    Create the enabled backends.
    :param settings: settings
    :param names: names of the enabled backends
    :param backup_root: root folder of the file backends
    :return: backends in the order of BACKENDS
    """
    backends = []
    for name in BACKENDS:
        if name not in names:
            continue
        match name:
            case 'config':
                backends.append(ConfigBackend(backup_root))
            case 'mariadb':
                backends.append(MariaDbBackend(backup_root))
            case 'snapper':
                backends.append(SnapperBackend(
                    cleanup_algorithm=CleanupAlgorithm.parse(
                        settings('snapper.cleanup_algorithm', default='')),
                    sync_destination=settings('snapper.sync_destination', default='') or None,
                    incrementally=settings('snapper.incrementally', cast=bool, default=True),
                    sudo=settings('snapper.sudo', cast=bool, default=True),
                    config_id=settings('snapper.config_id', default='') or None,
                ))
    return backends


def parse_backends(ctx, param, value) -> Optional[List[str]]:
    if value is None:
        return None
    names = [x.strip().replace('-', '') for x in value.split(',') if x.strip()]
    for name in names:
        if name not in BACKENDS:
            raise click.BadParameter(f'{name} is not one of {", ".join(BACKENDS)}')
    return names


@click.group()
@click.option(
    '-c',
    '--config-folder',
    help=f'Folder where the config files are stored. {DEFAULT_CONFIG_FOLDER} by default.',
    default=DEFAULT_CONFIG_FOLDER,
)
@click.option('-d', '--document-root', default=None,
              help='Directory of the Nextcloud server installation.')
@click.option('-r', '--backup-root', default=None,
              help='Root folder used by the backends to put their data into.')
@click.option('-b', '--backends', default=None, callback=parse_backends,
              help=f'Comma separated list of enabled backends: {",".join(BACKENDS)}')
@click.option('--dry-run', is_flag=True, default=False,
              help='Simulative run which does not alter any files.')
@click.option('-v', '--verbose', default=None,
              type=click.Choice(['TRACE', 'DEBUG', 'INFO', 'WARNING', 'ERROR'],
                                case_sensitive=False),
              help='Verbosity of the output.')
@click.option('--admin', default=None, help='Nextcloud account receiving notifications.')
@click.option('--no-notification', is_flag=True, default=False,
              help='Do not send a summary notification to the admin account.')
@click.pass_context
@click.version_option(package_name='nc_backup')
def main(ctx, config_folder, document_root, backup_root, backends, dry_run, verbose,
         admin, no_notification):
    """
    Backup a Nextcloud installation and retain old backups.
    """
    try:
        settings = parse_config(Path(config_folder))
        log_dir = settings('logging.dir', default=None)
        setup_logging(Path(log_dir) if log_dir else None,
                      verbose or settings('logging.level', default='INFO'))

        nextcloud = Nextcloud(
            Path(document_root or settings('nextcloud.document_root')),
            php_user=settings('nextcloud.php_user', default='') or None,
        )
        backup_root = Path(backup_root or settings('backup.root'))
        names = backends if backends is not None else list(settings('backup.backends'))
        enabled = create_backends(settings, names, backup_root)
        retention = RetentionConfig.from_settings(settings)
    except Exception as e:
        logger.opt(exception=not isinstance(e, BackupError)).critical(
            f'Error during config parsing: {e}')
        sys.exit(255)

    ctx.obj = CtxArgs(
        settings=settings,
        nextcloud=nextcloud,
        backends=enabled,
        retention=retention,
        dry_run=dry_run,
        admin=admin or settings('nextcloud.admin', default='admin'),
        notification=(not no_notification
                      and settings('nextcloud.notification', cast=bool, default=True)),
    )


def _finish(args: CtxArgs, orchestrator: BackupOrchestrator, action: Action, status: int):
    if args.notification:
        orchestrator.notify(action, args.admin)
    sys.exit(status)


@main.command('backup')
@click.option('--update', is_flag=True, default=False,
              help='Update the Nextcloud apps after the backup.')
@click.pass_context
def backup_command(ctx, update):
    """
    Backup the Nextcloud config, database and data.
    Nextcloud is in maintenance mode during the backup.
    """
    args: CtxArgs = ctx.obj
    orchestrator = args.orchestrator()
    status = orchestrator.run(Action.BACKUP, update_apps=update)
    _finish(args, orchestrator, Action.BACKUP, status)


@main.command('retain')
@click.pass_context
def retain_command(ctx):
    """
    Remove old backups according to the retention config.
    """
    args: CtxArgs = ctx.obj
    orchestrator = args.orchestrator()
    status = orchestrator.run(Action.RETAIN)
    _finish(args, orchestrator, Action.RETAIN, status)


@main.command('list')
@click.pass_context
def list_command(ctx):
    """
    List all existing backups and whether the retention keeps them.
    """
    args: CtxArgs = ctx.obj
    output = click.style('Listing backups:\n', fg='green', bold=True)
    status = 0
    for backend in args.backends:
        output += click.style(f'\n{backend.name}:\n', fg='cyan', bold=True)
        try:
            plan = backend.plan_retention(args.nextcloud, args.retention)
        except BackupError as e:
            output += click.style(f'\tFailed to list backups: {e}\n', fg='red')
            status = 1
            continue
        if not plan:
            output += click.style('\tNone! You have to create a backup first...\n', fg='red')
        for artifact, keep in plan:
            output += click.style(f'\t{artifact} @ {artifact.timestamp_str}\t',
                                  fg='yellow')
            output += (click.style('keep', fg='bright_green') if keep
                       else click.style('remove', fg='red'))
            output += '\n'
    click.echo(output)
    sys.exit(status)


@main.command('init-snapper')
@click.option('--config-id', default=None,
              help='Name of the new snapper config. Default: snapper.config_id or "nextcloud".')
@click.pass_context
def init_snapper_command(ctx, config_id):
    """
    Create a snapper config for the data directory of Nextcloud.
    """
    args: CtxArgs = ctx.obj
    config_id = config_id or args.settings('snapper.config_id', default='') or 'nextcloud'
    try:
        data_dir = args.nextcloud.occ.data_directory()
        existing = SnapperStore.by_dir(data_dir)
        if existing is not None:
            logger.warning(f'{existing} already manages {data_dir}')
            sys.exit(0)
        if args.dry_run:
            logger.info(f'Dry run: would create snapper config {config_id} for {data_dir}')
            sys.exit(0)
        store = SnapperStore.create_config(data_dir, config_id)
    except BackupError as e:
        logger.error(f'Creating the snapper config failed: {e}')
        sys.exit(1)
    logger.info(f'Created {store}')


if __name__ == '__main__':
    main()
