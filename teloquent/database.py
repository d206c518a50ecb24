from __future__ import annotations
from .errors import ConfigurationError, tert
from .interfaces import CursorProtocol, DatabaseProtocol, DBContextProtocol
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from os import environ
from types import TracebackType
from typing import Any, AsyncIterator, Iterable, Optional, Type
import aiosqlite
import asyncio
import logging


logger = logging.getLogger(__name__)

CONNECTION_STRING_ENV = 'TELOQUENT_CONNECTION_STRING'

# open transactions visible to the current task and the tasks it spawns
_transactions: ContextVar[tuple] = ContextVar('teloquent_transactions', default=())


class AsyncSqliteContext:
    """Context manager for sqlite."""
    connection: aiosqlite.Connection
    cursor: aiosqlite.Cursor
    connection_info: str

    def __init__(self, connection_info: str = '') -> None:
        """Initialize the instance. Raises TypeError for non-str
            connection_info or ConfigurationError for an empty one.
        """
        if not connection_info and hasattr(self, 'connection_info'):
            connection_info = self.connection_info
        tert(type(connection_info) in (str, bytes),
            'connection_info must be str or bytes')
        if not connection_info:
            raise ConfigurationError('cannot use with empty connection_info')
        self.connection_info = connection_info

    async def __aenter__(self) -> CursorProtocol:
        """Enter the context block and return the cursor."""
        self.connection = await aiosqlite.connect(self.connection_info)
        self.cursor = await self.connection.cursor()
        return self.cursor

    async def new_cursor(self) -> CursorProtocol:
        """Return another cursor on the open connection."""
        return await self.connection.cursor()

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        """Exit the context block. Commit or rollback as appropriate,
            then close the connection.
        """
        try:
            if exc_type is not None:
                await self.connection.rollback()
            else:
                await self.connection.commit()
        finally:
            await self.connection.close()


@dataclass
class StatementResult:
    """What a single executed statement produced."""
    rowcount: int = field(default=0)
    lastrowid: Optional[int] = field(default=None)
    columns: list[str] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)


@dataclass
class TransactionState:
    """An open transaction: the entered context manager and the lock
        that serializes statements on its connection.
    """
    database: Database = field()
    context: DBContextProtocol = field()
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Database:
    """The database collaborator: executes SQL through the configured
        context manager and normalizes results. Every statement opens
        its own connection unless it runs inside `transaction()`.
    """
    connection_info: str
    context_manager: Type[DBContextProtocol]
    enable_logging: bool

    def __init__(self, connection_info: str = '',
                 context_manager: Type[DBContextProtocol] = AsyncSqliteContext,
                 enable_logging: bool = False) -> None:
        tert(type(connection_info) is str, 'connection_info must be str')
        tert(isinstance(context_manager, type),
             'context_manager must be class implementing DBContextProtocol')
        self.connection_info = connection_info
        self.context_manager = context_manager
        self.enable_logging = enable_logging

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(connection_info='{self.connection_info}')"

    def _transaction(self) -> Optional[TransactionState]:
        for state in _transactions.get():
            if state.database is self:
                return state
        return None

    @staticmethod
    async def _run(cursor: CursorProtocol, sql: str, params: list) -> StatementResult:
        await cursor.execute(sql, params)
        rows = await cursor.fetchall()
        columns = [d[0] for d in cursor.description] if cursor.description else []
        return StatementResult(
            rowcount=cursor.rowcount,
            lastrowid=cursor.lastrowid,
            columns=columns,
            rows=list(rows),
        )

    @staticmethod
    async def _run_in(state: TransactionState, sql: str, params: list) -> StatementResult:
        """Run one statement on its own cursor of the transaction's
            connection. Concurrent statements take turns so that no
            two interleave their execute and fetch.
        """
        async with state.lock:
            cursor = await state.context.new_cursor()
            try:
                return await Database._run(cursor, sql, params)
            finally:
                await cursor.close()

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> StatementResult:
        """Execute one statement and return its StatementResult. Driver
            errors are logged (when logging is enabled) and re-raised
            unchanged.
        """
        tert(type(sql) is str, 'sql must be str')
        params = list(params)
        if self.enable_logging:
            logger.debug('SQL: %s %s', sql, params)

        try:
            state = self._transaction()
            if state is not None:
                return await self._run_in(state, sql, params)
            async with self.context_manager(self.connection_info) as cursor:
                return await self._run(cursor, sql, params)
        except Exception as e:
            if self.enable_logging:
                logger.error('error executing SQL %s %s: %s', sql, params, e)
            raise

    async def select(self, sql: str, params: list = []) -> list[dict]:
        """Run a query and return the rows as dicts of column: value."""
        result = await self.execute(sql, params)
        return [
            {column: value for column, value in zip(result.columns, row)}
            for row in result.rows
        ]

    async def insert(self, table: str, row: dict) -> int:
        """Insert a row and return the rowid of the inserted row."""
        tert(isinstance(row, dict), 'row must be dict')
        if len(row) == 0:
            sql = f'INSERT INTO {table} DEFAULT VALUES'
        else:
            placeholders = ', '.join(['?' for _ in row])
            sql = f'INSERT INTO {table} ({", ".join(row.keys())}) VALUES ({placeholders})'
        result = await self.execute(sql, row.values())
        return result.lastrowid or 0

    async def update(self, table: str, row: dict, where_sql: str,
                     where_params: list = []) -> int:
        """Update the rows matching where_sql and return the number of
            rows affected.
        """
        tert(isinstance(row, dict), 'row must be dict')
        if len(row) == 0:
            return 0
        assignments = ', '.join([f'{column} = ?' for column in row])
        sql = f'UPDATE {table} SET {assignments} WHERE {where_sql}'
        result = await self.execute(sql, [*row.values(), *where_params])
        return result.rowcount

    async def delete(self, table: str, where_sql: str,
                     where_params: list = []) -> int:
        """Delete the rows matching where_sql and return the number of
            rows affected.
        """
        sql = f'DELETE FROM {table} WHERE {where_sql}'
        result = await self.execute(sql, where_params)
        return result.rowcount

    async def query(self, sql: str, params: list = []) -> tuple[int, list[tuple]]:
        """Execute raw SQL. Return rowcount and fetchall results."""
        result = await self.execute(sql, params)
        return (result.rowcount, result.rows)

    async def execute_script(self, sql: str) -> None:
        """Execute a multi-statement script without parameters."""
        tert(type(sql) is str, 'sql must be str')
        if self.enable_logging:
            logger.debug('SQL script: %s', sql)
        state = self._transaction()
        if state is not None:
            async with state.lock:
                cursor = await state.context.new_cursor()
                try:
                    await cursor.executescript(sql)
                finally:
                    await cursor.close()
            return
        async with self.context_manager(self.connection_info) as cursor:
            await cursor.executescript(sql)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Database]:
        """Run every statement issued in the block through one
            connection, each on a cursor of its own. Commits on normal
            exit, rolls back if an exception escapes the block. Nested
            calls, and tasks spawned inside the block, join the outer
            transaction.
        """
        if self._transaction() is not None:
            yield self
            return

        context = self.context_manager(self.connection_info)
        async with context:
            state = TransactionState(self, context)
            token = _transactions.set((*_transactions.get(), state))
            try:
                yield self
            finally:
                _transactions.reset(token)


@dataclass
class ConnectionConfig:
    """Settings the default database was initialized with."""
    connection_info: str = field(default='')
    context_manager: Type[DBContextProtocol] = field(default=AsyncSqliteContext)
    enable_logging: bool = field(default=False)


class Teloquent:
    """Process-wide holder for the default database. Models and query
        builders with no database of their own use this one.
    """
    _database: Optional[DatabaseProtocol] = None
    _config: Optional[ConnectionConfig] = None

    @classmethod
    def initialize(cls, connection_info: str = '',
                   context_manager: Type[DBContextProtocol] = AsyncSqliteContext,
                   enable_logging: bool = False,
                   database: Optional[DatabaseProtocol] = None) -> DatabaseProtocol:
        """Configure the default database and return it. If
            connection_info is empty, the TELOQUENT_CONNECTION_STRING
            environment variable is used. A prebuilt database may be
            passed instead. Raises ConfigurationError if there is
            nothing to connect to.
        """
        if cls._database is not None:
            logger.warning('Teloquent is already initialized; call reset() first to reconfigure')
            return cls._database

        if database is None:
            connection_info = connection_info or environ.get(CONNECTION_STRING_ENV, '')
            if not connection_info:
                raise ConfigurationError(
                    'no connection_info given and '
                    f'{CONNECTION_STRING_ENV} is not set'
                )
            database = Database(connection_info, context_manager, enable_logging)
        else:
            tert(isinstance(database, DatabaseProtocol),
                 'database must implement DatabaseProtocol')

        cls._config = ConnectionConfig(
            connection_info=getattr(database, 'connection_info', connection_info),
            context_manager=getattr(database, 'context_manager', context_manager),
            enable_logging=getattr(database, 'enable_logging', enable_logging),
        )
        cls._database = database
        return database

    @classmethod
    def reset(cls) -> None:
        """Forget the default database."""
        cls._database = None
        cls._config = None

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._database is not None

    @classmethod
    def get_config(cls) -> Optional[ConnectionConfig]:
        return cls._config

    @classmethod
    def get_database(cls) -> DatabaseProtocol:
        """Return the default database. Raises ConfigurationError if
            `initialize` has not been called.
        """
        if cls._database is None:
            raise ConfigurationError(
                'the database is not initialized; call Teloquent.initialize() first'
            )
        return cls._database

    @classmethod
    def enable_logging(cls, enable: bool = True) -> None:
        """Toggle statement logging on the default database."""
        if cls._config is not None:
            cls._config.enable_logging = enable
        if cls._database is not None and hasattr(cls._database, 'enable_logging'):
            cls._database.enable_logging = enable
