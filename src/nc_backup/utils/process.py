"""
Helpers for running external tools.
"""
import shlex
import subprocess
from collections import deque
from typing import IO, List, Optional

from loguru import logger

from nc_backup.utils.errors import CommandFailed, ToolNotFound


def run_command(command: List[str], log=logger) -> str:
    """
    Run a command and capture its output.
    A non-empty stderr of a successful run is relayed as warning.
    :param command: command with arguments
    :param log: logger bound to the target of the caller
    :return: stdout
    :raises ToolNotFound: the command could not be spawned
    :raises CommandFailed: non-zero exit status
    """
    log.trace(f'Running: {shlex.join(command)}')
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=False)
    except OSError as e:
        raise ToolNotFound(command, e) from e
    if result.returncode != 0:
        raise CommandFailed(command, result.returncode, result.stderr)
    if result.stderr.strip():
        log.warning(result.stderr.strip())
    return result.stdout


def spawn(command: List[str], log=logger, **kwargs) -> subprocess.Popen:
    """
    Start a command for piping.
    :raises ToolNotFound: the command could not be spawned
    """
    log.trace(f'Running: {shlex.join(command)}')
    try:
        return subprocess.Popen(command, **kwargs)
    except OSError as e:
        raise ToolNotFound(command, e) from e


class StreamDrain:
    """
    Reads a diagnostic stream line by line until EOF.
    Lines are logged and the last ones are kept for error messages.
    Run `drain` on a dedicated thread.
    """

    def __init__(self, stream: IO[bytes], name: str, log=logger,
                 level: str = 'TRACE', keep: int = 20):
        """
        :param stream: stderr of a process
        :param name: prefix for logged lines
        :param log: logger bound to the target of the caller
        :param level: level of the logged lines
        :param keep: number of trailing lines kept
        """
        self.stream = stream
        self.name = name
        self.log = log
        self.level = level
        self.lines = deque(maxlen=keep)
        self.error: Optional[OSError] = None

    def drain(self):
        try:
            for raw in iter(self.stream.readline, b''):
                line = raw.decode(errors='replace').rstrip()
                if not line:
                    continue
                self.lines.append(line)
                self.log.log(self.level, f'{self.name}: {line}')
        except (OSError, ValueError) as e:
            # ValueError: stream closed underneath us
            self.error = e if isinstance(e, OSError) else OSError(str(e))
        finally:
            self.stream.close()

    @property
    def text(self) -> str:
        return '\n'.join(self.lines)
