"""
config handling for dynaconf
"""
import os
import sys
from importlib.resources import files
from pathlib import Path

from dynaconf import Dynaconf, Validator
from loguru import logger

from nc_backup.utils.retention import TIERS, parse_quota

DEFAULT_CONFIG_FOLDER = '/etc/nc-backup'
DEFAULT_DOCUMENT_ROOT = '/var/www/nextcloud/'
BACKENDS = ('config', 'mariadb', 'snapper')


def _valid_quota(value) -> bool:
    try:
        parse_quota(value)
    except (TypeError, ValueError):
        return False
    return True


def _valid_backends(value) -> bool:
    return all(x in BACKENDS for x in value)


def parse_config(config_folder: Path) -> Dynaconf:
    """
    Parse config with dynaconf.
    Writes the default config into the folder if it does not exist yet.
    :param config_folder: folder with default.toml and config.toml
    :return: settings
    """
    default_config = config_folder / 'default.toml'
    if not os.path.isfile(default_config):
        try:
            config_folder.mkdir(parents=True, exist_ok=True)
            with open(default_config, 'w', encoding='utf-8') as f:
                f.write(files('nc_backup.data').joinpath('default.toml').read_text())
            logger.debug(f'Wrote default config to {default_config}')
        except Exception as e:
            logger.critical(f'Failed to create default config {default_config}. '
                            'Consider creating the folder writeable for this user '
                            f'or choose a different path. Error: {e}')
            sys.exit(255)

    settings = Dynaconf(
        envvar_prefix='NC_BACKUP',
        settings_files=['default.toml', 'config.toml'],
        root_path=str(config_folder),
        merge_enabled=True,
        validators=[
            Validator('nextcloud.document_root', default=DEFAULT_DOCUMENT_ROOT),
            Validator('nextcloud.admin', default='admin'),
            Validator('nextcloud.notification', cast=bool, default=True),
            Validator('backup.backends', default=list(BACKENDS), condition=_valid_backends,
                      messages={'condition': f'backup.backends must be a subset of {BACKENDS}'}),
            *[
                Validator(f'retention.{tier}', condition=_valid_quota,
                          messages={'condition': f'retention.{tier} must be >= 0 or "unbounded"'})
                for tier in TIERS
            ],
            Validator('snapper.cleanup_algorithm', default=''),
            Validator('snapper.sync_destination', default=''),
            Validator('snapper.config_id', default=''),
            Validator('snapper.incrementally', cast=bool, default=True),
            Validator('snapper.sudo', cast=bool, default=True),
            Validator('logging.level', default='INFO'),
        ]
    )
    settings.validators.validate()
    return settings
