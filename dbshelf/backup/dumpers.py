"""
Dump/restore handlers for each database kind.

Supports:
- FileDumper: byte-identical copy of a local database file (e.g. SQLite)
- MySQLDumper: mysqldump / mysql client
- PostgresDumper: pg_dump / psql

Server dumps stream the tool's stdout straight into the caller's encoder;
restores feed the decoded artifact into the tool's stdin. The tool's stderr
is captured and surfaced verbatim when it exits non-zero.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from typing import BinaryIO, Dict, List, Optional

from dbshelf.errors import ConnectivityError, ExecutionError, FilesystemError
from dbshelf.models import DatabaseKind, DatabaseSpec
from .compression import CHUNK_SIZE, copy_stream


logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5


def _read_stderr(stderr_file) -> str:
    stderr_file.seek(0)
    return stderr_file.read().decode('utf-8', errors='replace').strip()


class FileDumper:
    """
    Handler for file-based databases.

    Copies the database file as-is; the caller's encoder does the rest.
    """

    def __init__(self, spec: DatabaseSpec, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT):
        self.spec = spec
        self.connect_timeout = connect_timeout

    @property
    def inner_filename(self) -> str:
        return os.path.basename(self.spec.path)

    def dump(self, writer: BinaryIO):
        """
        Copy the source file into ``writer``.

        Raises:
            FilesystemError: If the source file cannot be read
        """
        try:
            with open(self.spec.path, 'rb') as src:
                shutil.copyfileobj(src, writer, CHUNK_SIZE)
        except FileNotFoundError:
            raise FilesystemError(f"Source file does not exist: {self.spec.path}")
        except PermissionError as e:
            raise FilesystemError(f"Permission denied reading {self.spec.path}: {e}")

    def restore(self, reader: BinaryIO):
        """
        Write the decoded backup over the database file.

        Data goes to a sibling temp file first and replaces the target only
        once fully written.

        Raises:
            FilesystemError: If the destination cannot be written
        """
        target = os.path.abspath(self.spec.path)
        target_dir = os.path.dirname(target)

        try:
            os.makedirs(target_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.dbshelf-restore-', dir=target_dir)
        except OSError as e:
            raise FilesystemError(f"Failed to prepare restore of {target}: {e}")

        try:
            with os.fdopen(fd, 'wb') as dst:
                copy_stream(reader, dst)
            os.replace(tmp_path, target)
        except OSError as e:
            raise FilesystemError(f"Failed to write {target}: {e}")
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def test_connection(self):
        """
        Check the database file is reachable.

        Raises:
            ConnectivityError: If the file does not exist
        """
        if not os.path.isfile(self.spec.path):
            raise ConnectivityError(f"Database file not found: {self.spec.path}")


class _ServerDumper:
    """Shared process handling for client/server databases."""

    dump_program = ''
    restore_program = ''

    def __init__(self, spec: DatabaseSpec, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT):
        self.spec = spec
        self.connect_timeout = connect_timeout

    @property
    def inner_filename(self) -> str:
        return f"{self.spec.database}.sql"

    def _env(self) -> Dict[str, str]:
        return dict(os.environ)

    def _dump_args(self) -> List[str]:
        raise NotImplementedError

    def _restore_args(self) -> List[str]:
        raise NotImplementedError

    def _probe_args(self) -> List[str]:
        raise NotImplementedError

    def _start(self, args: List[str], **kwargs) -> subprocess.Popen:
        try:
            return subprocess.Popen(args, env=self._env(), **kwargs)
        except FileNotFoundError:
            raise ExecutionError(f"{args[0]} not found. Is it installed and on PATH?")
        except OSError as e:
            raise ExecutionError(f"Failed to start {args[0]}: {e}")

    def dump(self, writer: BinaryIO):
        """
        Run the dump tool and stream its stdout into ``writer``.

        Raises:
            ExecutionError: If the tool is missing or exits non-zero
        """
        args = self._dump_args()
        logger.debug(f"Running {args[0]} for {self.spec.name}")

        with tempfile.TemporaryFile() as stderr_file:
            process = self._start(args, stdout=subprocess.PIPE, stderr=stderr_file)
            try:
                shutil.copyfileobj(process.stdout, writer, CHUNK_SIZE)
            finally:
                process.stdout.close()
                returncode = process.wait()

            if returncode != 0:
                stderr = _read_stderr(stderr_file)
                if stderr:
                    raise ExecutionError(f"command failed: {stderr}", stderr=stderr)
                raise ExecutionError(f"command failed: {args[0]} exited with status {returncode}")

    def restore(self, reader: BinaryIO):
        """
        Feed ``reader`` into the restore tool's stdin.

        Raises:
            ExecutionError: If the tool is missing or exits non-zero
            CompressionError: If the artifact cannot be decoded
        """
        args = self._restore_args()
        logger.debug(f"Running {args[0]} for {self.spec.name}")

        with tempfile.TemporaryFile() as stderr_file:
            process = self._start(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr_file
            )
            broken_pipe = False
            try:
                copy_stream(reader, process.stdin)
            except BrokenPipeError:
                # The tool exited early; its exit status decides the outcome
                broken_pipe = True
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    broken_pipe = True
                returncode = process.wait()

            if returncode != 0:
                stderr = _read_stderr(stderr_file)
                if stderr:
                    raise ExecutionError(f"restore command failed: {stderr}", stderr=stderr)
                raise ExecutionError(
                    f"restore command failed: {args[0]} exited with status {returncode}"
                )
            if broken_pipe:
                raise ExecutionError(f"restore command failed: {args[0]} stopped reading input")

    def test_connection(self):
        """
        Probe the server with a short timeout.

        Raises:
            ConnectivityError: If the server is unreachable or rejects the login
            ExecutionError: If the client tool is missing
        """
        args = self._probe_args()
        try:
            completed = subprocess.run(
                args,
                env=self._env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=self.connect_timeout
            )
        except subprocess.TimeoutExpired:
            raise ConnectivityError(f"connection timed out after {self.connect_timeout}s")
        except FileNotFoundError:
            raise ExecutionError(f"{args[0]} not found. Is it installed and on PATH?")

        if completed.returncode != 0:
            stderr = (completed.stderr or b'').decode('utf-8', errors='replace').strip()
            if stderr:
                raise ConnectivityError(f"connection failed: {stderr}")
            raise ConnectivityError(f"connection failed: exit status {completed.returncode}")


class MySQLDumper(_ServerDumper):
    """Handler for MySQL/MariaDB via mysqldump and the mysql client."""

    dump_program = 'mysqldump'
    restore_program = 'mysql'

    def _env(self) -> Dict[str, str]:
        env = super()._env()
        if self.spec.password:
            env['MYSQL_PWD'] = self.spec.password
        return env

    def _connection_args(self) -> List[str]:
        return ['-h', self.spec.host, '-P', str(self.spec.port), '-u', self.spec.user]

    def _dump_args(self) -> List[str]:
        return [
            self.dump_program,
            *self._connection_args(),
            '--column-statistics=0',  # MariaDB compatibility
            '--add-drop-table',
            self.spec.database,
        ]

    def _restore_args(self) -> List[str]:
        return [
            self.restore_program,
            *self._connection_args(),
            f'--connect-timeout={self.connect_timeout}',
            self.spec.database,
        ]

    def _probe_args(self) -> List[str]:
        return [
            self.restore_program,
            *self._connection_args(),
            '-e', 'SELECT 1',
            self.spec.database,
        ]

    def dump(self, writer: BinaryIO):
        # mysqldump has no connect timeout of its own
        self.test_connection()
        super().dump(writer)


class PostgresDumper(_ServerDumper):
    """Handler for PostgreSQL via pg_dump and psql."""

    dump_program = 'pg_dump'
    restore_program = 'psql'

    def _env(self) -> Dict[str, str]:
        env = super()._env()
        env['PGCONNECT_TIMEOUT'] = str(self.connect_timeout)
        if self.spec.password:
            env['PGPASSWORD'] = self.spec.password
        return env

    def _connection_args(self) -> List[str]:
        return ['-h', self.spec.host, '-p', str(self.spec.port), '-U', self.spec.user]

    def _dump_args(self) -> List[str]:
        return [
            self.dump_program,
            *self._connection_args(),
            '--clean',
            '--if-exists',
            self.spec.database,
        ]

    def _restore_args(self) -> List[str]:
        return [self.restore_program, *self._connection_args(), '-d', self.spec.database]

    def _probe_args(self) -> List[str]:
        return [
            self.restore_program,
            *self._connection_args(),
            '-d', self.spec.database,
            '-c', 'SELECT 1',
        ]


def create_dumper(spec: DatabaseSpec, connect_timeout: Optional[int] = None):
    """
    Factory function to create the handler for a database kind.

    Args:
        spec: Database spec
        connect_timeout: Timeout in seconds for connectivity probes

    Returns:
        FileDumper, MySQLDumper or PostgresDumper instance

    Raises:
        ValueError: If the database kind is invalid
    """
    timeout = connect_timeout or DEFAULT_CONNECT_TIMEOUT

    if spec.kind is DatabaseKind.FILE:
        return FileDumper(spec, timeout)
    elif spec.kind is DatabaseKind.MYSQL:
        return MySQLDumper(spec, timeout)
    elif spec.kind is DatabaseKind.POSTGRES:
        return PostgresDumper(spec, timeout)
    else:
        raise ValueError(f"Invalid database type: {spec.kind}")
