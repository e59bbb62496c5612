"""
Exceptions shared by all components.

environment  -> ToolNotFound
execution    -> CommandFailed
precondition -> PreconditionError
consistency  -> ConsistencyError
"""
import shlex
from typing import List


class BackupError(Exception):
    """
    Base class of all errors raised by nc-backup.
    """


class ToolNotFound(BackupError):
    """
    An external tool could not be spawned. Usually it is not installed.
    """

    def __init__(self, command: List[str], error: OSError):
        self.command = command
        self.error = error
        super().__init__(f'{command[0]} could not be run: {error}')


class CommandFailed(BackupError):
    """
    An external tool exited with a non-zero status.
    """

    def __init__(self, command: List[str], returncode: int, stderr: str = ''):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f'Command {shlex.join(command)!r} exited {returncode}: {stderr.strip()}'
        )


class PreconditionError(BackupError):
    """
    An expected path or state is absent.
    """


class ConsistencyError(BackupError):
    """
    An invariant is violated.
    """


class DestinationExists(PreconditionError):
    """
    Backups never overwrite existing files.
    """
