"""
Transfer of snapshots to a sync destination.

btrfs send (producer) is piped into btrfs receive (consumer). The payload is
copied on the calling thread while the stderr of both processes is drained on
two dedicated threads. Unread diagnostics would fill the pipe buffers and
block both processes.
"""
import shlex
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from typing import List, Optional

from loguru import logger

from nc_backup.snapper.chain import SnapshotChain
from nc_backup.snapper.snapshot import Snapshot
from nc_backup.utils.errors import BackupError, PreconditionError, ToolNotFound
from nc_backup.utils.logging import is_enabled
from nc_backup.utils.process import StreamDrain, spawn

log = logger.bind(target='snapper::transfer')

CHUNK_SIZE = 1024 * 1024


class TransferError(BackupError):
    """
    Syncing a snapshot failed.
    """


class SnapshotPathNotFound(TransferError, PreconditionError):
    """
    The snapshot or its parent does not exist on disk.
    """


class AnchorNotSynced(TransferError, PreconditionError):
    """
    An incremental transfer requires a parent that was already synced.
    """


class DestinationNotFound(TransferError, PreconditionError):
    """
    The sync destination does not exist.
    """


class PipeFailed(TransferError):
    """
    Copying the stream from the producer to the consumer failed.
    """


class ProcessFailed(TransferError):
    """
    A process of the pipeline could not be spawned or exited non-zero.
    """
    role = 'process'

    def __init__(self, command: List[str], returncode: Optional[int] = None,
                 stderr: str = '', error: Optional[Exception] = None):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        if error is not None:
            message = f'{self.role} {command[0]} could not be run: {error}'
        else:
            message = f'{self.role} {shlex.join(command)!r} exited {returncode}: {stderr.strip()}'
        super().__init__(message)


class ProducerFailed(ProcessFailed):
    role = 'producer'


class ConsumerFailed(ProcessFailed):
    role = 'consumer'


class IncrementalTransferPipeline:
    """
    Sends snapshots in full or incrementally against a synced parent.
    """

    def __init__(self, chain: SnapshotChain, sudo: bool = True):
        """
        :param chain: chain of the snapshots. Successful transfers are marked synced.
        :param sudo: run btrfs with sudo
        """
        self.chain = chain
        self.sudo = sudo

    def _btrfs(self) -> List[str]:
        return ['sudo', 'btrfs'] if self.sudo else ['btrfs']

    def producer_command(self, snapshot: Snapshot, parent: Optional[Snapshot],
                         verbose: bool) -> List[str]:
        command = self._btrfs() + ['send']
        if verbose:
            command.append('-v')
        if parent is not None:
            command += ['-p', str(parent.path)]
        return command + [str(snapshot.path)]

    def consumer_command(self, destination: Path, verbose: bool) -> List[str]:
        command = self._btrfs() + ['receive']
        if verbose:
            command.append('-v')
        return command + [str(destination)]

    def check(self, snapshot: Snapshot, parent: Optional[Snapshot], destination: Path):
        """
        Precondition checks of a transfer.
        """
        if not snapshot.path.exists():
            raise SnapshotPathNotFound(f'{snapshot} does not exist at {snapshot.path}')
        if parent is not None:
            if not parent.path.exists():
                raise SnapshotPathNotFound(f'Parent {parent} does not exist at {parent.path}')
            if not parent.synced:
                raise AnchorNotSynced(f'Anchor snapshot isn\'t synced: {parent!r}')
        if not Path(destination).is_dir():
            raise DestinationNotFound(f'Sync destination wasn\'t found: {destination}')

    def transfer(self, snapshot: Snapshot, parent: Optional[Snapshot], destination: Path,
                 dry_run: bool = False):
        """
        Transfer the snapshot into the destination and mark it synced.
        :param snapshot: snapshot to send
        :param parent: send the delta against this synced snapshot. None: full copy.
        :param destination: existing directory receiving the snapshot
        :param dry_run: only perform the checks
        :raises TransferError: the transfer failed. Nothing is retried.
        """
        destination = Path(destination)
        self.check(snapshot, parent, destination)
        mode = f'incrementally against {parent}' if parent else 'in full'
        if dry_run:
            log.info(f'Dry run: would sync {snapshot} {mode} to {destination}')
            return

        log.info(f'Syncing {snapshot} {mode} to {destination}')
        verbose = is_enabled('TRACE')
        producer_command = self.producer_command(snapshot, parent, verbose)
        consumer_command = self.consumer_command(destination, verbose)

        try:
            producer = spawn(producer_command, log, stdout=subprocess.PIPE,
                             stderr=subprocess.PIPE, bufsize=0)
        except ToolNotFound as e:
            raise ProducerFailed(producer_command, error=e.error) from e
        try:
            consumer = spawn(consumer_command, log, stdin=subprocess.PIPE,
                             stderr=subprocess.PIPE)
        except ToolNotFound as e:
            producer.kill()
            producer.communicate()
            raise ConsumerFailed(consumer_command, error=e.error) from e

        drains = [
            StreamDrain(producer.stderr, 'send', log),
            StreamDrain(consumer.stderr, 'receive', log),
        ]
        threads = [
            threading.Thread(target=x.drain, name=f'{snapshot}-{x.name}-stderr', daemon=True)
            for x in drains
        ]
        for thread in threads:
            thread.start()

        pipe_error = None
        try:
            shutil.copyfileobj(producer.stdout, consumer.stdin, CHUNK_SIZE)
        except OSError as e:
            pipe_error = e
        finally:
            # EOF for the consumer. Closing our read end lets a stuck producer die of SIGPIPE.
            try:
                # flushes the remaining buffer
                consumer.stdin.close()
            except OSError as e:
                pipe_error = pipe_error or e
            producer.stdout.close()

        for thread in threads:
            thread.join()
        producer_returncode = producer.wait()
        consumer_returncode = consumer.wait()
        log.trace(f'send exited {producer_returncode}, receive exited {consumer_returncode}')

        # a producer killed by SIGPIPE lost its consumer
        consumer_died = producer_returncode == -signal.SIGPIPE and consumer_returncode != 0
        if producer_returncode != 0 and not consumer_died:
            raise ProducerFailed(producer_command, producer_returncode, drains[0].text)
        if consumer_returncode != 0:
            raise ConsumerFailed(consumer_command, consumer_returncode, drains[1].text)
        if pipe_error is not None:
            raise PipeFailed(
                f'pipe between send and receive failed: {pipe_error}') from pipe_error
        for drain in drains:
            if drain.error is not None:
                raise PipeFailed(
                    f'reading stderr of {drain.name} failed: {drain.error}') from drain.error

        self.chain.mark_synced(snapshot)
        log.info(f'Synced {snapshot} to {destination}')
