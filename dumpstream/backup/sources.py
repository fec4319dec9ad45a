"""
Dump strategies, one per database engine.

Supports:
- PostgresDump: pg_dump custom-format archive (already compressed)
- MySQLDump: mysqldump --single-transaction SQL (compressed by the pipeline)
- SQLiteDump: in-process sqlite3 iterdump() SQL (compressed by the pipeline)

Each strategy's open() returns a lazy DumpStream; nothing is read from the
database until the pipeline starts pulling bytes.
"""

import os
import re
import logging
import sqlite3
import subprocess
import threading
from collections import deque
from typing import Dict, List, Optional, Iterator, Type

from dumpstream.errors import (
    DatabaseAuthError,
    DatabaseConnectionError,
    EngineInvocationError,
)
from dumpstream.models import BackupJobSpec, Engine


logger = logging.getLogger(__name__)

AUTH_FAILURE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'password authentication failed',
        r'authentication failed',
        r'access denied for user',
        r'no password supplied',
        r'fe_sendauth',
    )
]

CONNECTION_FAILURE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'could not connect',
        r'connection refused',
        r"can't connect",
        r'could not translate host name',
        r'unknown mysql server host',
        r'name or service not known',
        r'no route to host',
        r'timeout expired',
        r'connection timed out',
        r'lost connection',
        r'server closed the connection',
    )
]


def classify_dump_failure(engine: str, returncode: int, stderr: str):
    """
    Turn a failed dump tool exit into the matching error.

    Args:
        engine: Engine name for the message
        returncode: Process exit status
        stderr: Tail of the tool's stderr

    Returns:
        DatabaseAuthError, DatabaseConnectionError or EngineInvocationError
    """
    detail = stderr.strip() or 'no error output'
    message = f"{engine} dump exited with status {returncode}: {detail}"

    if any(p.search(stderr) for p in AUTH_FAILURE_PATTERNS):
        return DatabaseAuthError(message)
    if any(p.search(stderr) for p in CONNECTION_FAILURE_PATTERNS):
        return DatabaseConnectionError(message)
    return EngineInvocationError(message)


class DumpStream:
    """
    Lazy, file-like byte stream produced by a dump strategy.

    read() raises the classified dump error once the producer has
    finished unsuccessfully. close() is always safe to call and stops a
    producer that is still running.
    """

    def __init__(self, engine: str):
        self.engine = engine
        self.bytes_read = 0
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        raise NotImplementedError

    def close(self):
        self.closed = True

    def terminate(self):
        """Stop the producer from another thread. In-process dumps stop on their own."""
        pass

    def __iter__(self) -> Iterator[bytes]:
        while True:
            block = self.read(64 * 1024)
            if not block:
                return
            yield block

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ProcessDumpStream(DumpStream):
    """Stream over the stdout of a dump subprocess."""

    STDERR_TAIL_LINES = 50

    def __init__(self, engine: str, command: List[str], env: Dict[str, str]):
        super().__init__(engine)
        self.command = command
        self._stderr_tail = deque(maxlen=self.STDERR_TAIL_LINES)
        self._finished = False

        try:
            self.process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            raise EngineInvocationError(f"{command[0]} not found - install the {engine} client tools")
        except OSError as e:
            raise EngineInvocationError(f"Failed to start {command[0]}: {e}")

        # stderr must be drained concurrently or a chatty tool blocks on a full pipe
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name=f'{engine}-dump-stderr', daemon=True
        )
        self._stderr_thread.start()

    def _drain_stderr(self):
        for raw in iter(self.process.stderr.readline, b''):
            line = raw.decode('utf-8', errors='replace').rstrip()
            if line:
                self._stderr_tail.append(line)
                logger.debug(f"[{self.engine}] {line}")

    @property
    def stderr(self) -> str:
        return '\n'.join(self._stderr_tail)

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise EngineInvocationError(f"{self.engine} dump stream is closed")

        data = self.process.stdout.read(size)
        if data:
            self.bytes_read += len(data)
            return data

        self._finish()
        return b''

    def _finish(self):
        if self._finished:
            return
        self._finished = True

        returncode = self.process.wait()
        self._stderr_thread.join(timeout=5)

        if returncode != 0:
            raise classify_dump_failure(self.engine, returncode, self.stderr)

    def terminate(self):
        if self.process.poll() is None:
            logger.info(f"Terminating {self.engine} dump process (PID: {self.process.pid})")
            self.process.terminate()
            try:
                self.process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()

    def close(self):
        if self.closed:
            return
        self.closed = True

        self.terminate()

        for pipe in (self.process.stdout, self.process.stderr):
            if pipe:
                pipe.close()


class IterDumpStream(DumpStream):
    """Stream over an iterator of text lines (sqlite3 iterdump)."""

    def __init__(self, engine: str, lines: Iterator[str], on_close=None):
        super().__init__(engine)
        self._lines = lines
        self._buffer = bytearray()
        self._exhausted = False
        self._on_close = on_close

    def _fill(self, size: int):
        while not self._exhausted and (size < 0 or len(self._buffer) < size):
            try:
                line = next(self._lines)
            except StopIteration:
                self._exhausted = True
                break
            except sqlite3.Error as e:
                self._exhausted = True
                raise EngineInvocationError(f"{self.engine} dump failed: {e}")
            self._buffer += line.encode('utf-8')
            self._buffer += b'\n'

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise EngineInvocationError(f"{self.engine} dump stream is closed")

        self._fill(size)
        if size < 0 or size >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]

        self.bytes_read += len(data)
        return data

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._buffer.clear()
        if self._on_close:
            self._on_close()


class DumpStrategy:
    """
    Base class for engine dump strategies.

    Attributes:
        engine: Engine this strategy handles
        extension: File extension of the stored object
        compress: Whether the pipeline should gzip the stream
    """

    engine: Engine = None
    extension = 'backup'
    compress = True

    def open(self, spec: BackupJobSpec) -> DumpStream:
        """
        Start a dump.

        Raises:
            DatabaseConnectionError, DatabaseAuthError, EngineInvocationError
        """
        raise NotImplementedError


_STRATEGIES: Dict[Engine, Type[DumpStrategy]] = {}


def register_strategy(cls: Type[DumpStrategy]) -> Type[DumpStrategy]:
    """Class decorator adding a strategy to the registry."""
    _STRATEGIES[cls.engine] = cls
    return cls


def registered_engines() -> List[Engine]:
    return list(_STRATEGIES)


@register_strategy
class PostgresDump(DumpStrategy):
    """
    pg_dump in custom archive format.

    The archive is self-describing and compressed by pg_dump itself, so the
    pipeline stores it as is. A single pg_dump run reads from one snapshot.
    """

    engine = Engine.POSTGRES
    extension = 'dump'
    compress = False

    def build_command(self, spec: BackupJobSpec) -> List[str]:
        command = [
            'pg_dump',
            '-h', spec.host,
            '-p', str(spec.port),
        ]
        if spec.user:
            command += ['-U', spec.user]
        command += [
            '-d', spec.database,
            '--no-password',
            '--clean',
            '--no-owner',
            '--no-privileges',
            '--format=custom',
            '--compress=9',
        ]
        return command

    def build_env(self, spec: BackupJobSpec) -> Dict[str, str]:
        env = os.environ.copy()
        if spec.password:
            env['PGPASSWORD'] = spec.password
        return env

    def open(self, spec: BackupJobSpec) -> DumpStream:
        logger.info(f"Starting PostgreSQL dump for {spec.database} on {spec.host}:{spec.port}")
        return ProcessDumpStream('postgres', self.build_command(spec), self.build_env(spec))


@register_strategy
class MySQLDump(DumpStrategy):
    """mysqldump with --single-transaction for a consistent, lock-free snapshot."""

    engine = Engine.MYSQL
    extension = 'sql.gz'
    compress = True

    def build_command(self, spec: BackupJobSpec) -> List[str]:
        command = [
            'mysqldump',
            '-h', spec.host,
            '-P', str(spec.port),
        ]
        if spec.user:
            command += ['-u', spec.user]
        command += [
            '--single-transaction',
            '--routines',
            '--triggers',
            '--hex-blob',
            '--opt',
            spec.database,
        ]
        return command

    def build_env(self, spec: BackupJobSpec) -> Dict[str, str]:
        # MYSQL_PWD keeps the password off the process list
        env = os.environ.copy()
        if spec.password:
            env['MYSQL_PWD'] = spec.password
        return env

    def open(self, spec: BackupJobSpec) -> DumpStream:
        logger.info(f"Starting MySQL dump for {spec.database} on {spec.host}:{spec.port}")
        return ProcessDumpStream('mysql', self.build_command(spec), self.build_env(spec))


@register_strategy
class SQLiteDump(DumpStrategy):
    """In-process logical dump of a SQLite file."""

    engine = Engine.SQLITE
    extension = 'db.gz'
    compress = True

    def open(self, spec: BackupJobSpec) -> DumpStream:
        path = os.path.expanduser(spec.database)

        if not os.path.exists(path):
            raise DatabaseConnectionError(f"SQLite database not found: {path}")
        if not os.path.isfile(path):
            raise DatabaseConnectionError(f"SQLite database is not a file: {path}")

        logger.info(f"Starting SQLite dump for {path}")

        try:
            # Read-only so a backup can never modify the database
            conn = sqlite3.connect(
                f"file:{os.path.abspath(path)}?mode=ro",
                uri=True,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise DatabaseConnectionError(f"Failed to open SQLite database {path}: {e}")

        try:
            lines = conn.iterdump()
        except sqlite3.Error as e:
            conn.close()
            raise EngineInvocationError(f"SQLite dump failed: {e}")

        return IterDumpStream('sqlite', lines, on_close=conn.close)


def create_strategy(engine: Engine) -> DumpStrategy:
    """
    Factory function to create the dump strategy for an engine.

    Args:
        engine: Database engine

    Returns:
        DumpStrategy instance

    Raises:
        ValueError: If no strategy is registered for the engine
    """
    try:
        return _STRATEGIES[engine]()
    except KeyError:
        raise ValueError(f"Invalid database engine: {engine}")
