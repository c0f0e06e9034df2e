"""
Database exporters.

Each exporter starts the database's native dump tool and returns its stdout
as a ProcessStream. The tool's exit status is only known after stdout has
been drained, so failures are raised from ProcessStream.close().

Supports:
- PostgresExporter: pg_dump custom format (.dump)
- MySQLExporter: mysqldump SQL (.sql)
- MongoDBExporter: mongodump directory, streamed as a tar archive (.tar)
"""

import os
import json
import shutil
import logging
import subprocess
import tempfile
import threading
from typing import Dict, List, Optional
from urllib.parse import unquote, urlsplit, urlunsplit

from autobackup.config import DatabaseConfig, DatabaseType
from autobackup.errors import BackupCancelled, ExportError
from autobackup.utils.streams import CHUNK_SIZE, ByteStream


logger = logging.getLogger(__name__)

# Keep the tail of stderr for error messages
MAX_STDERR_BYTES = 64 * 1024


class ProcessStream(ByteStream):
    """
    Stdout of a child process as a ByteStream.

    close() drains and closes stdout, waits for the process and raises
    ExportError with the captured stderr if it exited nonzero. A temporary
    directory handed to the stream is removed on close whatever the outcome.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        db_type: str,
        db_name: str,
        command: str,
        context=None,
        temp_dir: Optional[str] = None
    ):
        self.process = process
        self.db_type = db_type
        self.db_name = db_name
        self.command = command
        self.temp_dir = temp_dir
        self._context = context
        self._closed = False
        self._eof = False
        self._aborted = False
        self._stderr = bytearray()

        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name=f"{command}-stderr",
            daemon=True
        )
        self._stderr_thread.start()

        self._unregister = lambda: None
        if context is not None:
            self._unregister = context.register(self._terminate)

    def _drain_stderr(self):
        stderr = self.process.stderr
        if stderr is None:
            return
        for line in iter(lambda: stderr.read(4096), b''):
            self._stderr.extend(line)
            if len(self._stderr) > MAX_STDERR_BYTES:
                del self._stderr[:-MAX_STDERR_BYTES]

    @property
    def stderr_text(self) -> str:
        return self._stderr.decode('utf-8', errors='replace')

    def read(self, size: int = -1) -> bytes:
        if self._closed:
            raise ValueError("I/O operation on closed stream")

        try:
            if size is None or size < 0:
                data = self.process.stdout.read1(CHUNK_SIZE)
            else:
                data = self.process.stdout.read(size)
        except (OSError, ValueError) as e:
            if self._context is not None and self._context.is_cancelled:
                raise BackupCancelled() from e
            raise ExportError(self.db_type, self.db_name, f"failed to read {self.command} output: {e}") from e

        if not data and size != 0:
            self._eof = True
        return data

    def abort(self):
        """
        Terminate the process unless its output was read to the end.

        A process whose stdout is drained is left to exit on its own, so
        close() still reports its real exit status.
        """
        if self._eof:
            return
        self._terminate()

    def _terminate(self):
        self._aborted = True
        if self.process.poll() is None:
            logger.info(f"Terminating {self.command} (pid {self.process.pid})")
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    def close(self):
        """
        Finalize the export.

        Raises:
            BackupCancelled: If the run was cancelled
            ExportError: If the process exited with a nonzero status
        """
        if self._closed:
            return
        self._closed = True

        try:
            if not self._aborted:
                # Drain remaining output so the process can exit on its own
                while self.process.stdout.read(CHUNK_SIZE):
                    pass
            self.process.stdout.close()
            returncode = self.process.wait()
            self._stderr_thread.join()
            if self.process.stderr is not None:
                self.process.stderr.close()
        finally:
            self._unregister()
            self._remove_temp_dir()

        if self._context is not None and self._context.is_cancelled:
            raise BackupCancelled()

        # Killed by our own terminate; the caller holds the real error
        if self._aborted and returncode < 0:
            return

        if returncode != 0:
            raise ExportError(
                self.db_type,
                self.db_name,
                f"{self.command} exited with status {returncode}",
                returncode=returncode,
                stderr=self.stderr_text
            )

    def _remove_temp_dir(self):
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory {self.temp_dir}: {e}")


def start_process(
    args: List[str],
    db_type: str,
    db_name: str,
    env: Optional[Dict[str, str]] = None,
    context=None,
    temp_dir: Optional[str] = None
) -> ProcessStream:
    """
    Start a dump command with piped stdout and stderr.

    Raises:
        ExportError: If the command cannot be started
    """
    command = os.path.basename(args[0])

    try:
        process = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env
        )
    except OSError as e:
        if temp_dir:
            shutil.rmtree(temp_dir, ignore_errors=True)
        raise ExportError(db_type, db_name, f"failed to start {command}: {e}") from e

    return ProcessStream(process, db_type, db_name, command, context=context, temp_dir=temp_dir)


def url_password(url: str) -> str:
    """Decoded password of a connection URL, or '' if it has none."""
    if not url:
        return ''
    password = urlsplit(url).password
    return unquote(password) if password else ''


def strip_url_password(url: str) -> str:
    """Remove the password from a connection URL, keeping the user name."""
    parts = urlsplit(url)
    if parts.password is None:
        return url

    userinfo, _, hostinfo = parts.netloc.rpartition('@')
    user = userinfo.partition(':')[0]
    return urlunsplit(parts._replace(netloc=f"{user}@{hostinfo}"))


class PostgresExporter:
    """Exports a PostgreSQL database with pg_dump in custom format."""

    db_type = 'postgres'
    extension = '.dump'

    def __init__(self, config: DatabaseConfig):
        self.config = config

    @property
    def database_name(self) -> str:
        return self.config.name

    def build_args(self) -> List[str]:
        # A connection string carries host, user and database; the password
        # goes through PGPASSWORD
        if self.config.connection_string:
            return ['pg_dump', '--format=custom', f"--dbname={strip_url_password(self.config.connection_string)}"]

        args = [
            'pg_dump',
            '--format=custom',
            '--no-password',
            f"--host={self.config.host}",
            f"--port={self.config.port}",
            f"--dbname={self.config.name}",
        ]

        if self.config.user:
            args.append(f"--username={self.config.user}")

        return args

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        password = self.config.password or url_password(self.config.connection_string)
        if password:
            env['PGPASSWORD'] = password
        return env

    def export(self, context=None) -> ProcessStream:
        return start_process(self.build_args(), self.db_type, self.config.name, self.build_env(), context)


class MySQLExporter:
    """Exports a MySQL or MariaDB database with mysqldump."""

    db_type = 'mysql'
    extension = '.sql'

    def __init__(self, config: DatabaseConfig):
        self.config = config

    @property
    def database_name(self) -> str:
        return self.config.name

    def build_args(self) -> List[str]:
        args = [
            'mysqldump',
            '--single-transaction',
            '--routines',
            '--triggers',
            '--events',
            f"--host={self.config.host}",
            f"--port={self.config.port}",
        ]

        if self.config.user:
            args.append(f"--user={self.config.user}")

        args.append(self.config.name)
        return args

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        # Keeps the password out of the process list
        if self.config.password:
            env['MYSQL_PWD'] = self.config.password
        return env

    def export(self, context=None) -> ProcessStream:
        return start_process(self.build_args(), self.db_type, self.config.name, self.build_env(), context)


class MongoDBExporter:
    """
    Exports a MongoDB database with mongodump.

    mongodump writes a directory, so the dump goes to a temporary directory
    first and is then streamed as a tar archive. The directory is removed
    when the stream is closed.
    """

    db_type = 'mongodb'
    extension = '.tar'

    def __init__(self, config: DatabaseConfig, temp_root: Optional[str] = None):
        self.config = config
        self.temp_root = temp_root

    @property
    def database_name(self) -> str:
        return self.config.name

    def build_args(self, output_dir: str, config_path: Optional[str] = None) -> List[str]:
        """
        Build the mongodump command line.

        The password is never part of the command line. It is read from
        config_path, a file written by write_config().
        """
        if self.config.connection_string:
            args = ['mongodump', f"--uri={strip_url_password(self.config.connection_string)}"]
        else:
            args = [
                'mongodump',
                f"--host={self.config.host}",
                f"--port={self.config.port}",
                f"--db={self.config.name}",
            ]

            if self.config.user:
                args.append(f"--username={self.config.user}")

        if config_path:
            args.append(f"--config={config_path}")

        args.append(f"--out={output_dir}")
        return args

    def build_config(self) -> Dict[str, str]:
        password = self.config.password or url_password(self.config.connection_string)
        return {'password': password} if password else {}

    def write_config(self, directory: str) -> Optional[str]:
        """
        Write the mongodump --config file into directory, readable by the owner only.

        Returns:
            Path of the file, or None if there are no credentials to pass
        """
        options = self.build_config()
        if not options:
            return None

        path = os.path.join(directory, 'mongodump.yaml')
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'w') as f:
            # JSON strings are valid YAML scalars
            for key, value in options.items():
                f.write(f"{key}: {json.dumps(value)}\n")
        return path

    def export(self, context=None) -> ProcessStream:
        temp_dir = tempfile.mkdtemp(prefix='mongodump-', dir=self.temp_root)

        try:
            config_path = self.write_config(temp_dir)
            try:
                self._run_dump(os.path.join(temp_dir, 'dump'), context, config_path)
            finally:
                if config_path:
                    os.remove(config_path)
        except BaseException:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise

        return start_process(
            ['tar', '-cf', '-', '-C', temp_dir, 'dump'],
            self.db_type,
            self.config.name,
            context=context,
            temp_dir=temp_dir
        )

    def _run_dump(self, output_dir: str, context=None, config_path: Optional[str] = None):
        """
        Run mongodump to completion.

        Raises:
            ExportError: If mongodump fails
            BackupCancelled: If cancelled while running
        """
        try:
            process = subprocess.Popen(
                self.build_args(output_dir, config_path),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT
            )
        except OSError as e:
            raise ExportError(self.db_type, self.config.name, f"failed to start mongodump: {e}") from e

        unregister = context.register(process.terminate) if context is not None else (lambda: None)
        try:
            output, _ = process.communicate()
        finally:
            unregister()

        if context is not None and context.is_cancelled:
            raise BackupCancelled()

        if process.returncode != 0:
            raise ExportError(
                self.db_type,
                self.config.name,
                f"mongodump exited with status {process.returncode}",
                returncode=process.returncode,
                stderr=output.decode('utf-8', errors='replace')
            )


def create_exporter(config: DatabaseConfig, temp_root: Optional[str] = None):
    """
    Factory function to create the exporter for a database.

    Args:
        config: Database configuration
        temp_root: Parent directory for exporter scratch space

    Returns:
        PostgresExporter, MySQLExporter or MongoDBExporter instance

    Raises:
        ValueError: If the database type is not supported
    """
    if config.type == DatabaseType.POSTGRES:
        return PostgresExporter(config)
    elif config.type == DatabaseType.MYSQL:
        return MySQLExporter(config)
    elif config.type == DatabaseType.MONGODB:
        return MongoDBExporter(config, temp_root)
    else:
        raise ValueError(f"Unsupported database type: {config.type}")
