"""
helpers for converting values from one format to a different one
"""
import re
from datetime import datetime
from pathlib import Path

# colon-free ISO 8601 local time, used in file names
TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%S'
# date column of `snapper --jsonout list`
SNAPPER_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def parse_timestamp(timestamp: str) -> datetime:
    """
    Convert the given timestamp string to a datetime object.
    Format: TIMESTAMP_FORMAT
    :param timestamp: timestamp to parse
    :return: parsed timestamp
    """
    return datetime.strptime(timestamp, TIMESTAMP_FORMAT)


def format_timestamp(timestamp: datetime) -> str:
    """
    Convert the given datetime object to the correct string.
    :param timestamp: datetime object
    :return: formatted time
    """
    return timestamp.strftime(TIMESTAMP_FORMAT)


def parse_snapper_date(date: str) -> datetime:
    """
    Parse the creation date reported by snapper.
    :param date: e.g. 2024-01-03 04:05:06
    :return: parsed date
    """
    return datetime.strptime(date, SNAPPER_DATE_FORMAT)


def parse_file_name(file_path: str or Path, prefix: str, suffix: str) -> datetime:
    """
    Parse the given file_path.
    <prefix>-<timestamp><suffix> e.g. database-2024-01-03T04-05-06.sql.gz
    :param file_path: file name or path
    :param prefix: expected prefix of the file name
    :param suffix: expected suffix of the file name
    :return: timestamp encoded in the file name
    """
    name = Path(file_path).name
    match = re.fullmatch(
        rf'{re.escape(prefix)}-(\d{{4}}-\d{{2}}-\d{{2}}T\d{{2}}-\d{{2}}-\d{{2}}){re.escape(suffix)}',
        name
    )
    if not match:
        raise ValueError(f'Invalid file name: {file_path}')
    return parse_timestamp(match.group(1))
