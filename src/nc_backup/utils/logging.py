import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

FORMAT = '{time:HH:mm:ss} | {level} | {extra[target]} | {message}'

# loguru's default stderr sink logs everything from DEBUG
_min_level = logger.level('DEBUG').no

logger.configure(extra={'target': 'nc-backup'})


def setup_logging(log_dir: Optional[Path], log_level: str):
    """
    Replace the default sink of loguru.
    :param log_dir: additionally log into a daily rotated file in this dir
    :param log_level: minimal level e.g. TRACE, DEBUG, INFO
    """
    global _min_level
    log_level = log_level.upper()
    _min_level = logger.level(log_level).no

    logger.remove()
    logger.add(sys.stderr, format=FORMAT, level=log_level)
    if not log_dir:
        return
    if not os.path.isdir(log_dir):
        os.makedirs(log_dir, exist_ok=True)
    logger.add(Path(log_dir) / 'nc-backup.log',
               format=FORMAT,
               rotation='00:00',
               retention='14 days',
               level=log_level,
               backtrace=True,
               diagnose=True)


def is_enabled(level: str) -> bool:
    """
    Check whether messages of the given level reach a sink.
    """
    return logger.level(level.upper()).no >= _min_level
