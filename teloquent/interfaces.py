"""
    The interfaces used by the package. `CursorProtocol` and
    `DBContextProtocol` must be implemented to bind the library to a new
    SQL driver. `DatabaseProtocol` describes the collaborator that the
    query builder and models issue statements through; any object that
    implements it can be bound to a model or query builder, which is how
    the tests record the emitted SQL.
"""


from __future__ import annotations
from types import TracebackType
from typing import (
    Any,
    AsyncContextManager,
    Callable,
    Iterable,
    Optional,
    Protocol,
    Type,
    runtime_checkable,
)


@runtime_checkable
class CursorProtocol(Protocol):
    """Interface showing how a DB cursor should function."""
    @property
    def rowcount(self) -> int:
        """The number of rows affected by the previous statement."""
        ...

    @property
    def lastrowid(self) -> Optional[int]:
        """The rowid of the last inserted row."""
        ...

    @property
    def description(self) -> Optional[tuple]:
        """Column descriptions of the previous query."""
        ...

    async def execute(self, sql: str, parameters: Iterable[Any] = ()) -> Any:
        """Execute a single query with the given parameters."""
        ...

    async def executescript(self, sql: str) -> Any:
        """Execute a SQL script without parameters. No implicit
            transaction handling.
        """
        ...

    async def fetchall(self) -> Iterable[tuple]:
        """Get all records returned by the previous query."""
        ...

    async def close(self) -> Any:
        """Release the cursor."""
        ...


@runtime_checkable
class DBContextProtocol(Protocol):
    """Interface showing how a context manager for connecting to a
        database should behave.
    """
    def __init__(self, connection_info: str = '') -> None:
        """Using the connection_info parameter is optional but should be
            supported.
        """
        ...

    async def __aenter__(self) -> CursorProtocol:
        """Enter the `async with` block. Should return a cursor useful
            for making db calls.
        """
        ...

    async def new_cursor(self) -> CursorProtocol:
        """Return another cursor on the connection opened by
            `__aenter__`. Only called inside the `async with` block.
        """
        ...

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        """Exit the `async with` block. Should commit on success, roll
            back on error, and close the connection.
        """
        ...


@runtime_checkable
class DatabaseProtocol(Protocol):
    """Interface of the database collaborator. Placeholders in all sql
        are positional `?` markers matched left to right with params.
    """
    async def select(self, sql: str, params: list = []) -> list[dict]:
        """Run a query and return the rows as dicts."""
        ...

    async def insert(self, table: str, row: dict) -> int:
        """Insert a row and return the id of the inserted row."""
        ...

    async def update(self, table: str, row: dict, where_sql: str,
                     where_params: list = []) -> int:
        """Update matching rows and return the number affected."""
        ...

    async def delete(self, table: str, where_sql: str,
                     where_params: list = []) -> int:
        """Delete matching rows and return the number affected."""
        ...

    async def query(self, sql: str, params: list = []) -> tuple[int, list[tuple]]:
        """Low-level escape hatch: run any statement and return the
            rowcount and the raw rows.
        """
        ...

    def transaction(self) -> AsyncContextManager:
        """Return an async context manager that runs every statement
            issued inside it in a single transaction.
        """
        ...


@runtime_checkable
class ModelProtocol(Protocol):
    """Interface showing how a model should function."""
    exists: bool

    @property
    def attributes(self) -> dict:
        """The current, possibly unsaved, column values."""
        ...

    @property
    def relations(self) -> dict:
        """Loaded relations by name."""
        ...

    def get_attribute(self, key: str) -> Any:
        """Look up an attribute, a loaded relation, or an accessor."""
        ...

    def set_attribute(self, key: str, value: Any) -> ModelProtocol:
        """Set an attribute and record the change."""
        ...

    def get_key(self) -> Any:
        """Return the primary key value."""
        ...

    def set_relation(self, name: str, value: Any) -> ModelProtocol:
        """Attach a loaded relation."""
        ...

    def is_dirty(self) -> bool:
        """True if there are unsaved changes."""
        ...

    async def save(self, /, *, suppress_events: bool = False) -> bool:
        """Insert or update the record."""
        ...

    async def delete(self, /, *, suppress_events: bool = False) -> bool:
        """Delete the record."""
        ...

    async def refresh(self) -> ModelProtocol:
        """Reload the record from the database."""
        ...

    def to_json(self) -> dict:
        """Return a serializable dict of the record."""
        ...

    @classmethod
    def query(cls) -> QueryBuilderProtocol:
        """Return a query builder for the model."""
        ...


@runtime_checkable
class QueryBuilderProtocol(Protocol):
    """Interface showing how a query builder should function."""
    @property
    def table(self) -> str:
        """The name of the table."""
        ...

    def where(self, column: str, operator: Any, value: Any = ...,
              boolean: str = 'and') -> QueryBuilderProtocol:
        """Add a WHERE condition."""
        ...

    def where_in(self, column: str, values: list,
                 boolean: str = 'and') -> QueryBuilderProtocol:
        """Add a WHERE column IN (...) condition."""
        ...

    def order_by(self, column: str, direction: str = 'asc') -> QueryBuilderProtocol:
        """Add an ORDER BY clause."""
        ...

    def with_(self, *relations: str) -> QueryBuilderProtocol:
        """Add relation paths to eager load."""
        ...

    def build_query(self) -> tuple[str, list]:
        """Render the SELECT statement and its params."""
        ...

    async def get(self) -> Any:
        """Run the query and return a Collection of models."""
        ...

    async def first(self) -> Optional[ModelProtocol]:
        """Run the query and return the first model or None."""
        ...

    async def count(self, column: str = '*') -> int:
        """Return the number of matching rows."""
        ...


@runtime_checkable
class RelationProtocol(Protocol):
    """Interface showing how a relation should function."""
    def add_constraints(self) -> RelationProtocol:
        """Narrow the inner query to the owning record."""
        ...

    async def get_results(self) -> Any:
        """Return the related model(s) for the owning record."""
        ...

    async def load_for_collection(self, collection: Any, relation_name: str,
                                  nested: Iterable[str] = ()) -> None:
        """Eager load the relation for every model in the collection
            with one query. Each nested path is eager loaded onto the
            related models.
        """
        ...


EventHandler = Callable[[ModelProtocol], Any]
