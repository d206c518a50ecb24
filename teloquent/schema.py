from __future__ import annotations
from .database import Teloquent
from .errors import tert, tressa, vert
from .interfaces import DatabaseProtocol
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import logging
import string


logger = logging.getLogger(__name__)


def _literal(value: Any) -> str:
    """Render a default value as a SQL literal."""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float)):
        return str(value)
    tert(type(value) is str, 'default value must be str, int, float, bool, or None')
    return "'" + value.replace("'", "''") + "'"


@dataclass
class Column:
    """Column class for building table definitions."""
    name: str = field()
    datatype: str = field()
    table: Table = field(repr=False)
    is_nullable: bool = field(default=True)
    is_primary: bool = field(default=False)
    is_autoincrement: bool = field(default=False)
    has_default: bool = field(default=False)
    default_value: Any = field(default=None)
    foreign_table: Optional[str] = field(default=None)
    foreign_column: Optional[str] = field(default=None)
    on_delete: Optional[str] = field(default=None)
    new_name: Optional[str] = field(default=None)

    def validate(self) -> None:
        """Validate the Column name. Raises TypeError or ValueError if
            the column name is invalid.
        """
        tert(type(self.name) is str, 'Column name must be str')
        vert(len(self.name) > 0, 'Column name must not be empty')
        allowed = set(string.ascii_letters + string.digits + "_")
        vert(all([n in allowed for n in self.name]),
               "Column name can contain only letters, numbers, and underscores")
        vert(self.name[0] in string.ascii_letters + "_",
               "Column name must start with a letter or underscore")

    def not_null(self) -> Column:
        """Marks the column as not nullable."""
        self.is_nullable = False
        return self

    def nullable(self) -> Column:
        """Marks the column as nullable."""
        self.is_nullable = True
        return self

    def default(self, value: Any) -> Column:
        """Sets the default value of the column."""
        self.has_default = True
        self.default_value = value
        return self

    def primary(self) -> Column:
        """Marks the column as the primary key."""
        self.is_primary = True
        return self

    def index(self) -> Column:
        """Creates an index on the column."""
        self.table.index([self])
        return self

    def unique(self) -> Column:
        """Creates an unique index on the column."""
        self.table.unique([self])
        return self

    def references(self, table: str, column: str = 'id',
                   on_delete: Optional[str] = None) -> Column:
        """Adds a foreign key constraint pointing at table.column."""
        tert(type(table) is str, 'table must be str')
        tert(type(column) is str, 'column must be str')
        if on_delete is not None:
            vert(on_delete.lower() in ('cascade', 'set null', 'restrict', 'no action'),
                 'on_delete must be cascade, set null, restrict, or no action')
        self.foreign_table = table
        self.foreign_column = column
        self.on_delete = on_delete
        return self

    def drop(self) -> Column:
        """Drops the column."""
        self.table.drop_column(self)
        return self

    def rename(self, new_name: str) -> Column:
        """Marks the column as needing to be renamed."""
        self.new_name = new_name
        self.table.rename_column(self)
        return self

    def definition(self) -> str:
        """The column clause used by create table and add column."""
        self.validate()
        clause = f"{self.name} {self.datatype}"
        if self.is_primary:
            clause += " primary key"
            if self.is_autoincrement:
                clause += " autoincrement"
        if not self.is_nullable:
            clause += " not null"
        if self.has_default:
            clause += f" default {_literal(self.default_value)}"
        if self.foreign_table:
            clause += f" references {self.foreign_table}({self.foreign_column})"
            if self.on_delete:
                clause += f" on delete {self.on_delete.lower()}"
        return clause


def get_index_name(table: Table, columns: list[Column|str],
                   is_unique: bool = False) -> str:
    """Generate the name for an index from the table, columns, and type."""
    name = 'udx_' if is_unique else 'idx_'
    name += table.name + '_'
    name += '_'.join([c if type(c) is str else c.name for c in columns])
    return name


@dataclass
class Table:
    """Table class for building DDL. Use `create`, `alter`, or `drop`,
        add columns and indices, then call `sql`.
    """
    name: str = field()
    new_name: Optional[str] = field(default=None)
    columns_to_add: list[Column] = field(default_factory=list)
    columns_to_drop: list[Column|str] = field(default_factory=list)
    columns_to_rename: list[Column|list[str]] = field(default_factory=list)
    indices_to_add: list[list[Column|str]] = field(default_factory=list)
    indices_to_drop: list[list[Column|str]] = field(default_factory=list)
    uniques_to_add: list[list[Column|str]] = field(default_factory=list)
    uniques_to_drop: list[list[Column|str]] = field(default_factory=list)
    is_create: bool = field(default=False)
    is_drop: bool = field(default=False)

    @classmethod
    def create(cls, name: str) -> Table:
        """For creating a table."""
        return cls(name=name, is_create=True)

    @classmethod
    def alter(cls, name: str) -> Table:
        """For altering a table."""
        return cls(name=name)

    @classmethod
    def drop(cls, name: str) -> Table:
        """For dropping a table."""
        return cls(name=name, is_drop=True)

    def rename(self, name: str) -> Table:
        self.new_name = name
        return self

    def index(self, columns: list[Column|str]) -> Table:
        """Create a simple index or a composite index."""
        self.indices_to_add.append(columns)
        return self

    def drop_index(self, columns: list[Column|str]) -> Table:
        self.indices_to_drop.append(columns)
        return self

    def unique(self, columns: list[Column|str]) -> Table:
        """Create a simple unique index or a composite unique index."""
        self.uniques_to_add.append(columns)
        return self

    def drop_unique(self, columns: list[Column|str]) -> Table:
        self.uniques_to_drop.append(columns)
        return self

    def drop_column(self, column: Column|str) -> Table:
        self.columns_to_drop.append(column)
        return self

    def rename_column(self, column: Column|list[str]) -> Table:
        self.columns_to_rename.append(column)
        return self

    def _column(self, name: str, datatype: str) -> Column:
        column = Column(name, datatype, table=self)
        column.validate()
        self.columns_to_add.append(column)
        return column

    def increments(self, name: str = 'id') -> Column:
        """Creates an autoincrementing integer primary key."""
        column = self._column(name, "integer").primary()
        column.is_autoincrement = True
        return column

    def integer(self, name: str) -> Column:
        return self._column(name, "integer")

    def numeric(self, name: str) -> Column:
        return self._column(name, "numeric")

    def real(self, name: str) -> Column:
        return self._column(name, "real")

    def text(self, name: str) -> Column:
        return self._column(name, "text")

    def blob(self, name: str) -> Column:
        return self._column(name, "blob")

    def boolean(self, name: str) -> Column:
        """Creates a boolean column, stored by sqlite as an integer."""
        return self._column(name, "boolean")

    def timestamps(self) -> Table:
        """Creates nullable created_at and updated_at text columns."""
        self._column("created_at", "text")
        self._column("updated_at", "text")
        return self

    def sql(self) -> list[str]:
        """Return the SQL for the table structure changes. Raises
            UsageError if the Table was used incorrectly. Raises
            TypeError or ValueError if a Column fails validation.
        """
        clauses = []
        others = (
            self.columns_to_add, self.columns_to_drop, self.columns_to_rename,
            self.indices_to_add, self.indices_to_drop,
            self.uniques_to_add, self.uniques_to_drop,
        )

        if self.is_drop:
            errmsg = "cannot combine drop table with other operations"
            tressa(not self.is_create, errmsg)
            tressa(self.new_name is None, errmsg)
            tressa(all([len(o) == 0 for o in others]), errmsg)
            return [f"drop table if exists {self.name}"]

        if self.new_name:
            errmsg = "cannot combine rename table with other operations"
            tressa(not self.is_create, errmsg)
            tressa(all([len(o) == 0 for o in others]), errmsg)
            return [f"alter table {self.name} rename to {self.new_name}"]

        for idx in self.uniques_to_drop:
            clauses.append(f"drop index if exists {get_index_name(self, idx, True)}")

        for idx in self.indices_to_drop:
            clauses.append(f"drop index if exists {get_index_name(self, idx)}")

        if self.is_create:
            tressa(len(self.columns_to_add) > 0, "cannot create table without columns")
            tressa(len([c for c in self.columns_to_add if c.is_primary]) <= 1,
                   "cannot create table with more than one primary key column")
            create = [col.definition() for col in self.columns_to_add]
            clauses.append(f"create table if not exists {self.name} ({', '.join(create)})")
        else:
            for col in self.columns_to_drop:
                if isinstance(col, Column):
                    col.validate()
                colname = col if type(col) is str else col.name
                clauses.append(f"alter table {self.name} drop column {colname}")

            for col in self.columns_to_add:
                clauses.append(f"alter table {self.name} add column {col.definition()}")

            for col in self.columns_to_rename:
                clause = f"alter table {self.name} rename column "
                if type(col) is Column:
                    col.validate()
                    clause += f"{col.name} to {col.new_name}"
                else:
                    clause += f"{col[0]} to {col[1]}"
                clauses.append(clause)

        for idx in self.uniques_to_add:
            colnames = [c if type(c) is str else c.name for c in idx]
            clause = f"create unique index if not exists {get_index_name(self, idx, True)} "
            clause += f"on {self.name} (" + ", ".join(colnames) + ")"
            clauses.append(clause)

        for idx in self.indices_to_add:
            colnames = [c if type(c) is str else c.name for c in idx]
            clause = f"create index if not exists {get_index_name(self, idx)} "
            clause += f"on {self.name} (" + ", ".join(colnames) + ")"
            clauses.append(clause)

        return clauses


class Schema:
    """Runs Table DDL against a database. Uses the default database if
        none is given.
    """
    database: Optional[DatabaseProtocol]

    def __init__(self, database: Optional[DatabaseProtocol] = None) -> None:
        self.database = database

    def get_database(self) -> DatabaseProtocol:
        return self.database if self.database is not None else Teloquent.get_database()

    async def run(self, table: Table) -> list[str]:
        """Execute every statement of the table in one transaction and
            return them.
        """
        statements = table.sql()
        database = self.get_database()
        async with database.transaction():
            for sql in statements:
                await database.query(sql)
        logger.info('applied %d schema statement(s) to %s', len(statements), table.name)
        return statements

    async def create_table(self, name: str, callback: Callable[[Table], Any]) -> list[str]:
        """Create a table. The callback receives the Table to define
            columns on.
        """
        tert(callable(callback), 'callback must be Callable[[Table], Any]')
        table = Table.create(name)
        callback(table)
        return await self.run(table)

    async def table(self, name: str, callback: Callable[[Table], Any]) -> list[str]:
        """Alter a table. The callback receives the Table to modify."""
        tert(callable(callback), 'callback must be Callable[[Table], Any]')
        table = Table.alter(name)
        callback(table)
        return await self.run(table)

    async def rename_table(self, name: str, new_name: str) -> list[str]:
        return await self.run(Table.alter(name).rename(new_name))

    async def drop_table(self, name: str) -> list[str]:
        return await self.run(Table.drop(name))

    async def drop_table_if_exists(self, name: str) -> list[str]:
        """Alias of drop_table; the statement is always conditional."""
        return await self.drop_table(name)

    async def has_table(self, name: str) -> bool:
        rows = await self.get_database().select(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            [name]
        )
        return len(rows) > 0
