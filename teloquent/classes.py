from __future__ import annotations
from .database import Teloquent
from .errors import ModelNotFoundError, tert, vert
from .interfaces import DatabaseProtocol, EventHandler, RelationProtocol
from .tools import foreign_key_for, pivot_table_for, table_name_for
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional, Type
import inspect
import json
import logging


logger = logging.getLogger(__name__)

_MISSING = object()

EVENTS = (
    'creating', 'created', 'updating', 'updated',
    'saving', 'saved', 'deleting', 'deleted',
)


@dataclass
class Condition:
    """A WHERE or HAVING predicate."""
    column: str = field()
    operator: str = field()
    value: Any = field(default=None)
    boolean: str = field(default='and')


@dataclass
class Order:
    """An ORDER BY clause."""
    column: str = field()
    direction: str = field(default='asc')


@dataclass
class JoinSpec:
    """Class for representing joins to be executed by a query builder."""
    table: str = field()
    first: str = field()
    operator: str = field()
    second: str = field()
    kind: str = field(default='inner')


def _wants_index(callback: Callable) -> bool:
    """True if callback takes at least two required positional
        parameters, in which case it is called as callback(item, index).
    """
    try:
        parameters = inspect.signature(callback).parameters.values()
    except (TypeError, ValueError):
        return False
    required = [
        p for p in parameters
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        and p.default is p.empty
    ]
    return len(required) >= 2


class Collection:
    """Ordered container of hydrated models. Every method that returns
        a Collection returns a new one; `each` is the only method that
        returns self.
    """
    _items: list

    def __init__(self, items: Iterable = ()) -> None:
        self._items = list(items)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._items!r})"

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return len(self._items) > 0

    def __iter__(self) -> Iterator:
        return iter(list(self._items))

    def __getitem__(self, index: int|slice) -> Any:
        if isinstance(index, slice):
            return self.__class__(self._items[index])
        return self._items[index]

    @staticmethod
    def _value_of(item: Any, key: str|Callable) -> Any:
        """Resolve a key name or callable against an item."""
        if callable(key):
            return key(item)
        if hasattr(item, 'get_attribute'):
            return item.get_attribute(key)
        if isinstance(item, dict):
            return item.get(key)
        return getattr(item, key, None)

    def all(self) -> list:
        """Return a list copy of the items."""
        return list(self._items)

    def first(self) -> Any:
        return self._items[0] if self._items else None

    def last(self) -> Any:
        return self._items[-1] if self._items else None

    def get(self, index: int) -> Any:
        """Return the item at index or None if out of range."""
        if -len(self._items) <= index < len(self._items):
            return self._items[index]
        return None

    def is_empty(self) -> bool:
        return len(self._items) == 0

    def count(self) -> int:
        return len(self._items)

    def _with_index(self, callback: Callable) -> Callable:
        if _wants_index(callback):
            return callback
        return lambda item, index: callback(item)

    def filter(self, callback: Callable[..., bool]) -> Collection:
        """Keep the items for which callback is truthy. Like `map`,
            `find` and `each`, a callback taking two parameters also
            receives the item's index.
        """
        call = self._with_index(callback)
        return self.__class__([
            item for index, item in enumerate(self._items) if call(item, index)
        ])

    def map(self, callback: Callable[..., Any]) -> Collection:
        call = self._with_index(callback)
        return self.__class__([
            call(item, index) for index, item in enumerate(self._items)
        ])

    def reduce(self, callback: Callable[[Any, Any], Any], initial: Any = None) -> Any:
        carry = initial
        for item in self._items:
            carry = callback(carry, item)
        return carry

    def find(self, callback: Callable[..., bool]) -> Any:
        """Return the first item for which callback is truthy, or None."""
        call = self._with_index(callback)
        for index, item in enumerate(self._items):
            if call(item, index):
                return item
        return None

    def sort_by(self, key: str|Callable, direction: str = 'asc') -> Collection:
        """Return a new Collection sorted by key. The sort is stable:
            items with equal keys keep their relative order. None sorts
            after every other value in ascending order.
        """
        vert(direction in ('asc', 'desc'), 'direction must be asc or desc')
        def sort_key(item):
            value = self._value_of(item, key)
            return (value is None, value) if direction == 'asc' else (value is not None, value)
        return self.__class__(sorted(
            self._items, key=sort_key, reverse=direction == 'desc'
        ))

    def group_by(self, key: str|Callable) -> dict[Any, Collection]:
        """Group items into Collections. Named keys are stringified."""
        groups: dict[Any, list] = {}
        for item in self._items:
            group_key = self._value_of(item, key)
            if not callable(key):
                group_key = str(group_key)
            groups.setdefault(group_key, []).append(item)
        return {k: self.__class__(v) for k, v in groups.items()}

    def pluck(self, key: str) -> list:
        """Values of key in item order, duplicates and Nones included."""
        return [self._value_of(item, key) for item in self._items]

    def key_by(self, key: str|Callable) -> dict[Any, Any]:
        """Index items by key; the last item wins on collision. Named
            keys are stringified.
        """
        result = {}
        for item in self._items:
            item_key = self._value_of(item, key)
            if not callable(key):
                item_key = str(item_key)
            result[item_key] = item
        return result

    def merge(self, items: Iterable) -> Collection:
        return self.__class__([*self._items, *items])

    def slice(self, start: int, end: Optional[int] = None) -> Collection:
        return self.__class__(self._items[start:end])

    def take(self, n: int) -> Collection:
        return self.slice(0, n)

    def take_last(self, n: int) -> Collection:
        if n <= 0:
            return self.__class__()
        return self.__class__(self._items[-n:])

    def each(self, callback: Callable[..., Any]) -> Collection:
        """Call callback for every item, then return self."""
        call = self._with_index(callback)
        for index, item in enumerate(self._items):
            call(item, index)
        return self

    def to_json(self) -> list:
        return [item.to_json() for item in self._items]


class QueryBuilder:
    """Main query builder class. Accumulates clauses, renders them into
        SQL with positional `?` params, and runs the result through the
        database collaborator. Every clause method returns self.
    """
    model: Type[Model]
    database: Optional[DatabaseProtocol]
    columns: list[str]
    wheres: list[Condition]
    havings: list[Condition]
    orders: list[Order]
    joins: list[JoinSpec]
    groups: list[str]
    limit_value: Optional[int]
    offset_value: Optional[int]
    eager_load: list[str]

    def __init__(self, model: Type[Model], table: str = '',
                 database: Optional[DatabaseProtocol] = None) -> None:
        """Initialize the instance. The table defaults to the model's.
            The database is resolved when the first statement runs if
            none is given here or bound to the model.
        """
        tert(isinstance(model, type) and issubclass(model, Model),
             'model must be subclass of Model')
        tert(type(table) is str, 'table must be str')
        self.model = model
        self._table = table or model.config().table
        self.database = database if database is not None else model.database
        self.columns = ['*']
        self.wheres = []
        self.havings = []
        self.orders = []
        self.joins = []
        self.groups = []
        self.limit_value = None
        self.offset_value = None
        self.eager_load = []

    def __repr__(self) -> str:
        sql, params = self.build_query()
        return f"{self.__class__.__name__}(sql='{sql}', params={params})"

    @property
    def table(self) -> str:
        """The table name for the base query."""
        return self._table

    def get_database(self) -> DatabaseProtocol:
        """Return the bound database or the process default. Raises
            ConfigurationError if neither exists.
        """
        if self.database is not None:
            return self.database
        return Teloquent.get_database()

    def clone(self) -> QueryBuilder:
        """Return an independent copy of this builder."""
        other = self.__class__(self.model, self._table, self.database)
        other.columns = [*self.columns]
        other.wheres = [replace(w) for w in self.wheres]
        other.havings = [replace(h) for h in self.havings]
        other.orders = [replace(o) for o in self.orders]
        other.joins = [replace(j) for j in self.joins]
        other.groups = [*self.groups]
        other.limit_value = self.limit_value
        other.offset_value = self.offset_value
        other.eager_load = [*self.eager_load]
        return other

    def select(self, *columns: str) -> QueryBuilder:
        """Replace the select list. An empty call resets it to `*`."""
        tert(all([type(c) is str for c in columns]), 'select columns must be str')
        self.columns = [*columns] if columns else ['*']
        return self

    def add_select(self, *columns: str) -> QueryBuilder:
        """Append to the select list, replacing a bare `*`."""
        tert(all([type(c) is str for c in columns]), 'select columns must be str')
        if self.columns == ['*']:
            self.columns = []
        self.columns.extend(columns)
        return self

    @staticmethod
    def _condition(column: str, operator: Any, value: Any, boolean: str) -> Condition:
        if value is _MISSING:
            operator, value = '=', operator
        if type(operator) is str:
            operator = operator.upper()
        return Condition(column, operator, value, boolean)

    def where(self, column: str, operator: Any, value: Any = _MISSING,
              boolean: str = 'and') -> QueryBuilder:
        """Add a WHERE condition. `where(column, value)` implies `=`."""
        tert(type(column) is str, 'column must be str')
        self.wheres.append(self._condition(column, operator, value, boolean))
        return self

    def or_where(self, column: str, operator: Any, value: Any = _MISSING) -> QueryBuilder:
        """Add a WHERE condition joined with OR."""
        return self.where(column, operator, value, 'or')

    def where_in(self, column: str, values: Iterable,
                 boolean: str = 'and') -> QueryBuilder:
        """Add a `column IN (?, ...)` condition with one param per value."""
        tert(type(column) is str, 'column must be str')
        self.wheres.append(Condition(column, 'IN', list(values), boolean))
        return self

    def or_where_in(self, column: str, values: Iterable) -> QueryBuilder:
        return self.where_in(column, values, 'or')

    def where_not_in(self, column: str, values: Iterable,
                     boolean: str = 'and') -> QueryBuilder:
        """Add a `column NOT IN (?, ...)` condition."""
        tert(type(column) is str, 'column must be str')
        self.wheres.append(Condition(column, 'NOT IN', list(values), boolean))
        return self

    def where_null(self, column: str, boolean: str = 'and') -> QueryBuilder:
        """Add a `column IS NULL` condition. Binds no params."""
        tert(type(column) is str, 'column must be str')
        self.wheres.append(Condition(column, 'NULL', None, boolean))
        return self

    def or_where_null(self, column: str) -> QueryBuilder:
        return self.where_null(column, 'or')

    def where_not_null(self, column: str, boolean: str = 'and') -> QueryBuilder:
        """Add a `column IS NOT NULL` condition. Binds no params."""
        tert(type(column) is str, 'column must be str')
        self.wheres.append(Condition(column, 'NOT NULL', None, boolean))
        return self

    def where_between(self, column: str, values: Iterable,
                      boolean: str = 'and') -> QueryBuilder:
        """Add a `column BETWEEN ? AND ?` condition."""
        values = list(values)
        vert(len(values) == 2, 'between requires exactly two values')
        self.wheres.append(Condition(column, 'BETWEEN', values, boolean))
        return self

    def where_not_between(self, column: str, values: Iterable,
                          boolean: str = 'and') -> QueryBuilder:
        """Add a `column NOT BETWEEN ? AND ?` condition."""
        values = list(values)
        vert(len(values) == 2, 'between requires exactly two values')
        self.wheres.append(Condition(column, 'NOT BETWEEN', values, boolean))
        return self

    def order_by(self, column: str, direction: str = 'asc') -> QueryBuilder:
        """Append an ORDER BY clause. Raises TypeError or ValueError for
            invalid column or direction.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(direction) is str, 'direction must be str')
        direction = direction.lower()
        vert(direction in ('asc', 'desc'), 'direction must be asc or desc')
        self.orders.append(Order(column, direction))
        return self

    def limit(self, limit: Optional[int]) -> QueryBuilder:
        tert(limit is None or type(limit) is int, 'limit must be int')
        self.limit_value = limit
        return self

    def offset(self, offset: Optional[int]) -> QueryBuilder:
        tert(offset is None or type(offset) is int, 'offset must be int')
        self.offset_value = offset
        return self

    def group_by(self, *columns: str) -> QueryBuilder:
        tert(all([type(c) is str for c in columns]), 'group by columns must be str')
        self.groups.extend(columns)
        return self

    def having(self, column: str, operator: Any, value: Any = _MISSING,
               boolean: str = 'and') -> QueryBuilder:
        """Add a HAVING condition. `having(column, value)` implies `=`."""
        tert(type(column) is str, 'column must be str')
        self.havings.append(self._condition(column, operator, value, boolean))
        return self

    def join(self, table: str, first: str, operator: str, second: str,
             kind: str = 'inner') -> QueryBuilder:
        """Add a join. Raises TypeError or ValueError for invalid kind."""
        tert(type(table) is str, 'table must be str')
        tert(type(kind) is str, 'kind must be str')
        kind = kind.lower()
        vert(kind in ('inner', 'left'), 'kind must be inner or left')
        self.joins.append(JoinSpec(table, first, operator, second, kind))
        return self

    def left_join(self, table: str, first: str, operator: str, second: str) -> QueryBuilder:
        return self.join(table, first, operator, second, 'left')

    def with_(self, *relations: str) -> QueryBuilder:
        """Add relation paths to eager load, e.g. 'posts.comments'."""
        tert(all([type(r) is str for r in relations]), 'relations must be str')
        self.eager_load.extend(relations)
        return self

    @staticmethod
    def _compile_condition(condition: Condition) -> tuple[str, list]:
        operator = condition.operator
        column = condition.column
        if operator in ('IN', 'NOT IN'):
            values = list(condition.value)
            placeholders = ', '.join(['?' for _ in values])
            return (f'{column} {operator} ({placeholders})', values)
        if operator == 'NULL':
            return (f'{column} IS NULL', [])
        if operator == 'NOT NULL':
            return (f'{column} IS NOT NULL', [])
        if operator in ('BETWEEN', 'NOT BETWEEN'):
            low, high = condition.value
            return (f'{column} {operator} ? AND ?', [low, high])
        return (f'{column} {operator} ?', [condition.value])

    @classmethod
    def _compile_conditions(cls, conditions: list[Condition]) -> tuple[str, list]:
        """Join predicates left to right. The first contributes no
            keyword; every later one is prefixed with its own boolean.
        """
        parts, params = [], []
        for index, condition in enumerate(conditions):
            sql, bindings = cls._compile_condition(condition)
            if index > 0:
                sql = f'{condition.boolean.upper()} {sql}'
            parts.append(sql)
            params.extend(bindings)
        return (' '.join(parts), params)

    def _compile_select(self, columns: list[str], paginate: bool = True) -> tuple[str, list]:
        sql = f'SELECT {", ".join(columns)} FROM {self.table}'
        params = []

        for join in self.joins:
            sql += f' {join.kind.upper()} JOIN {join.table} ON ' + \
                f'{join.first} {join.operator} {join.second}'

        if self.wheres:
            where_sql, where_params = self._compile_conditions(self.wheres)
            sql += f' WHERE {where_sql}'
            params.extend(where_params)

        if self.groups:
            sql += f' GROUP BY {", ".join(self.groups)}'

        if self.havings:
            having_sql, having_params = self._compile_conditions(self.havings)
            sql += f' HAVING {having_sql}'
            params.extend(having_params)

        if not paginate:
            return (sql, params)

        if self.orders:
            sql += ' ORDER BY ' + ', '.join([f'{o.column} {o.direction}' for o in self.orders])

        if self.limit_value is not None:
            sql += ' LIMIT ?'
            params.append(self.limit_value)
            if self.offset_value is not None:
                sql += ' OFFSET ?'
                params.append(self.offset_value)

        return (sql, params)

    def build_query(self) -> tuple[str, list]:
        """Render the SELECT statement. Return the sql and its params."""
        return self._compile_select(self.columns)

    def build_where_clause(self) -> tuple[str, list]:
        """Render only the WHERE predicates for UPDATE and DELETE. With
            no predicates the clause is `1=1`, i.e. unconditional.
        """
        if not self.wheres:
            return ('1=1', [])
        return self._compile_conditions(self.wheres)

    def to_sql(self) -> str:
        return self.build_query()[0]

    def get_bindings(self) -> list:
        return self.build_query()[1]

    async def get(self) -> Collection:
        """Run the query and return a Collection of hydrated models,
            with any requested relations eager loaded.
        """
        sql, params = self.build_query()
        rows = await self.get_database().select(sql, params)
        collection = Collection([self.model.new_from_row(row) for row in rows])
        if self.eager_load:
            await self.load_relations(collection)
        return collection

    async def load_relations(self, collection: Collection) -> Collection:
        """Eager load every requested relation path for the collection.
            Paths sharing a first segment are loaded together, so
            'posts.tags' and 'posts.user' query posts once. Relations load
            one at a time in order of first request. Unknown relation
            names are logged and skipped.
        """
        if collection.is_empty():
            return collection

        paths: dict[str, list[str]] = {}
        for path in self.eager_load:
            name, _, nested = path.partition('.')
            paths.setdefault(name, [])
            if nested:
                paths[name].append(nested)

        for name, nested in paths.items():
            relation = self.model.resolve_relation(collection.first(), name)
            if relation is None:
                logger.warning(
                    'relation "%s" does not exist on model %s',
                    name, self.model.__name__
                )
                continue
            await relation.load_for_collection(collection, name, nested)

        return collection

    async def first(self) -> Optional[Model]:
        """Run the query with a limit of 1 and return the model or None.
            The previous limit is restored afterwards.
        """
        original = self.limit_value
        self.limit_value = 1
        try:
            results = await self.get()
        finally:
            self.limit_value = original
        return results.first()

    async def first_or_fail(self) -> Model:
        """Like first, but raises ModelNotFoundError when nothing matches."""
        model = await self.first()
        if model is None:
            raise ModelNotFoundError(self.model.__name__)
        return model

    async def find(self, id: Any) -> Optional[Model]:
        """Add a primary key condition and return the first result."""
        return await self.where(self.model.config().primary_key, id).first()

    async def pluck(self, column: str) -> list:
        """Run the query and return the values of one column."""
        return (await self.get()).pluck(column)

    async def count(self, column: str = '*') -> int:
        """Return the number of matching rows. The stored select list is
            not changed.
        """
        sql, params = self._compile_select([f'COUNT({column}) AS aggregate'], paginate=False)
        rows = await self.get_database().select(sql, params)
        if not rows:
            return 0
        return rows[0].get('aggregate') or 0

    async def exists(self) -> bool:
        return await self.count() > 0

    async def insert(self, data: dict) -> int:
        """Insert a row into the table and return its id."""
        tert(isinstance(data, dict), 'data must be dict')
        return await self.get_database().insert(self.table, data)

    async def update(self, data: dict) -> int:
        """Update the matching rows and return the number affected."""
        tert(isinstance(data, dict), 'data must be dict')
        where_sql, where_params = self.build_where_clause()
        return await self.get_database().update(self.table, data, where_sql, where_params)

    async def delete(self) -> int:
        """Delete the matching rows and return the number affected."""
        where_sql, where_params = self.build_where_clause()
        return await self.get_database().delete(self.table, where_sql, where_params)


def cast_value(cast: str, value: Any) -> Any:
    """Coerce value to the named cast type. None is never coerced.
        Numeric strings such as '42', '1.5' and '1e3' cast to int by
        truncation; a non-numeric string raises ValueError.
    """
    if value is None:
        return None

    if cast in ('int', 'integer'):
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                return int(float(value))
        return int(value) if isinstance(value, (int, float)) else 0
    if cast in ('float', 'double'):
        return float(value) if isinstance(value, (str, int, float)) else 0.0
    if cast in ('bool', 'boolean'):
        return bool(value)
    if cast == 'string':
        return str(value)
    if cast == 'array':
        if isinstance(value, (list, tuple)):
            return list(value)
        return json.loads(value) if isinstance(value, str) else []
    if cast == 'object':
        if isinstance(value, dict):
            return value
        return json.loads(value) if isinstance(value, str) else {}
    if cast == 'date':
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            return datetime.fromisoformat(value.replace('Z', '+00:00'))
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, timezone.utc)
    return value

def storage_value(value: Any) -> Any:
    """Convert a value into something sqlite can bind."""
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def accessor(key: str) -> Callable:
    """Register the decorated method as the accessor for key. It is
        called with the model when key is neither an attribute nor a
        loaded relation.
    """
    def decorator(method: Callable) -> Callable:
        method._teloquent_accessor = key
        return method
    return decorator

def mutator(key: str) -> Callable:
    """Register the decorated method as the mutator for key. It is
        called with the model and the new value, and returns the value
        to store.
    """
    def decorator(method: Callable) -> Callable:
        method._teloquent_mutator = key
        return method
    return decorator

def relation(method: Callable) -> Callable:
    """Mark the decorated method as a relation so that `with_` and
        `load` may call it by name. Unmarked methods are never called
        by eager loading.
    """
    method._teloquent_relation = True
    return method


class EventRegistry:
    """Mapping of event name to the ordered list of handlers."""
    handlers: dict[str, list[EventHandler]]

    def __init__(self) -> None:
        self.handlers = {event: [] for event in EVENTS}

    def listen(self, event: str, handler: EventHandler) -> None:
        """Append a handler for the event. Raises ValueError for an
            unknown event or TypeError for a non-callable handler.
        """
        vert(event in EVENTS, f'event must be one of {EVENTS}')
        tert(callable(handler), 'handler must be callable')
        self.handlers[event].append(handler)

    async def fire(self, event: str, model: Model) -> None:
        """Call each handler in registration order, awaiting coroutine
            results one at a time. An exception stops the chain.
        """
        for handler in list(self.handlers.get(event, [])):
            result = handler(model)
            if inspect.isawaitable(result):
                await result


@dataclass
class ModelConfig:
    """Per-model settings, derived once from the class attributes."""
    table: str = field()
    primary_key: str = field(default='id')
    timestamps: bool = field(default=True)
    casts: dict[str, str] = field(default_factory=dict)
    hidden: tuple[str, ...] = field(default_factory=tuple)
    visible: tuple[str, ...] = field(default_factory=tuple)
    appends: tuple[str, ...] = field(default_factory=tuple)
    accessors: dict[str, Callable] = field(default_factory=dict)
    mutators: dict[str, Callable] = field(default_factory=dict)
    relations: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_class(cls, model: Type[Model]) -> ModelConfig:
        accessors, mutators, relations = {}, {}, set()
        for klass in reversed(model.__mro__):
            for name, member in vars(klass).items():
                if hasattr(member, '_teloquent_accessor'):
                    accessors[member._teloquent_accessor] = member
                if hasattr(member, '_teloquent_mutator'):
                    mutators[member._teloquent_mutator] = member
                if getattr(member, '_teloquent_relation', False):
                    relations.add(name)
                else:
                    relations.discard(name)

        return cls(
            table=model.table or table_name_for(model.__name__),
            primary_key=model.primary_key,
            timestamps=model.timestamps,
            casts=dict(model.casts),
            hidden=tuple(model.hidden),
            visible=tuple(model.visible),
            appends=tuple(model.appends),
            accessors=accessors,
            mutators=mutators,
            relations=frozenset(relations),
        )


_model_configs: dict[type, ModelConfig] = {}


class Model:
    """General model for mapping a SQL row to an in-memory object.
        Subclasses configure themselves with class attributes, which are
        read once into a ModelConfig when the subclass is created.
    """
    table: str = ''
    primary_key: str = 'id'
    timestamps: bool = True
    casts: dict[str, str] = {}
    hidden: tuple[str, ...] = ()
    visible: tuple[str, ...] = ()
    appends: tuple[str, ...] = ()
    database: Optional[DatabaseProtocol] = None
    query_builder_class: Type[QueryBuilder] = QueryBuilder
    events: EventRegistry = EventRegistry()

    attributes: dict
    original: dict
    changes: dict
    relations: dict
    exists: bool
    pivot: Optional[dict]

    def __init_subclass__(cls, **kwargs) -> None:
        super().__init_subclass__(**kwargs)
        _model_configs[cls] = ModelConfig.from_class(cls)

    def __init__(self, attributes: dict = {}) -> None:
        """Initialize the instance, mass-assigning any attributes."""
        self.attributes = {}
        self.original = {}
        self.changes = {}
        self.relations = {}
        self.exists = False
        self.pivot = None
        self.fill(attributes)

    def __repr__(self) -> str:
        """Pretty str representation."""
        return f"{self.__class__.__name__}(table='{self.config().table}', " + \
            f"attributes={self.attributes}, exists={self.exists})"

    def __getitem__(self, key: str) -> Any:
        return self.get_attribute(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set_attribute(key, value)

    def __contains__(self, key: str) -> bool:
        return key in self.attributes

    @classmethod
    def config(cls) -> ModelConfig:
        """Return the ModelConfig for this class."""
        if cls not in _model_configs:
            _model_configs[cls] = ModelConfig.from_class(cls)
        return _model_configs[cls]

    @classmethod
    def configure(cls, **changes) -> ModelConfig:
        """Replace fields of this class's ModelConfig and return it."""
        _model_configs[cls] = replace(cls.config(), **changes)
        return _model_configs[cls]

    @classmethod
    def get_table(cls) -> str:
        return cls.config().table

    @classmethod
    def get_primary_key(cls) -> str:
        return cls.config().primary_key

    # attributes

    def fill(self, attributes: dict) -> Model:
        """Set each attribute in order through set_attribute. Raises
            TypeError if attributes is not a dict.
        """
        tert(isinstance(attributes, dict), 'attributes must be dict')
        for key, value in attributes.items():
            self.set_attribute(key, value)
        return self

    def set_attribute(self, key: str, value: Any) -> Model:
        """Run any mutator and cast for key, then store the value and
            record the change.
        """
        config = self.config()
        if key in config.mutators:
            value = config.mutators[key](self, value)
        if key in config.casts:
            value = cast_value(config.casts[key], value)
        self.attributes[key] = value
        self.changes[key] = value
        return self

    def get_attribute(self, key: str) -> Any:
        """Look up key in the attributes, then the loaded relations,
            then the registered accessors. Return None if none has it.
        """
        if key in self.attributes:
            return self.attributes[key]
        if key in self.relations:
            return self.relations[key]
        accessors = self.config().accessors
        if key in accessors:
            return accessors[key](self)
        return None

    def get(self, key: str) -> Any:
        return self.get_attribute(key)

    def set(self, key: str, value: Any) -> Model:
        return self.set_attribute(key, value)

    def unset_attribute(self, key: str) -> Model:
        self.attributes.pop(key, None)
        self.changes.pop(key, None)
        return self

    def get_key(self) -> Any:
        return self.get_attribute(self.config().primary_key)

    def get_original(self, key: Optional[str] = None) -> Any:
        if key is None:
            return deepcopy(self.original)
        return self.original.get(key)

    def get_changes(self) -> dict:
        return dict(self.changes)

    def is_dirty(self, key: Optional[str] = None) -> bool:
        """True if anything (or the named key) changed since the last
            save.
        """
        if key is not None:
            return key in self.changes
        return len(self.changes) > 0

    def is_new(self) -> bool:
        return not self.exists

    def sync_original(self) -> Model:
        """Snapshot the current attributes as the persisted state."""
        self.original = deepcopy(self.attributes)
        return self

    def set_relation(self, name: str, value: Any) -> Model:
        self.relations[name] = value
        return self

    def get_relation(self, name: str) -> Any:
        return self.relations.get(name)

    def relation_loaded(self, name: str) -> bool:
        return name in self.relations

    @classmethod
    def new_from_row(cls, row: dict) -> Model:
        """Hydrate a model from a database row. Casts are applied; the
            result exists and is clean.
        """
        model = cls()
        casts = cls.config().casts
        for key, value in row.items():
            model.attributes[key] = cast_value(casts[key], value) if key in casts else value
        model.exists = True
        model.sync_original()
        return model

    @staticmethod
    def serialize_attributes(values: dict) -> dict:
        """Return a copy of values with each one converted for storage."""
        return {key: storage_value(value) for key, value in values.items()}

    # events

    @classmethod
    def register_event(cls, event: str, handler: EventHandler) -> None:
        """Register a handler that runs for every model on the event."""
        cls.events.listen(event, handler)

    @classmethod
    def on(cls, event: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of register_event."""
        def decorator(handler: EventHandler) -> EventHandler:
            cls.register_event(event, handler)
            return handler
        return decorator

    async def fire_event(self, event: str) -> None:
        await self.events.fire(event, self)

    # persistence

    @classmethod
    def query(cls) -> QueryBuilder:
        """Return a fresh query builder for the model."""
        return cls.query_builder_class(cls, database=cls.database)

    @classmethod
    async def all(cls) -> Collection:
        return await cls.query().get()

    @classmethod
    async def find(cls, id: Any) -> Optional[Model]:
        """Find a record by its primary key. Return None if it does not
            exist.
        """
        return await cls.query().find(id)

    @classmethod
    async def find_or_fail(cls, id: Any) -> Model:
        """Find a record by its primary key. Raises ModelNotFoundError
            if it does not exist.
        """
        model = await cls.find(id)
        if model is None:
            raise ModelNotFoundError(cls.__name__, id)
        return model

    @classmethod
    def where(cls, column: str, operator: Any, value: Any = _MISSING) -> QueryBuilder:
        return cls.query().where(column, operator, value)

    @classmethod
    def with_(cls, *relations: str) -> QueryBuilder:
        return cls.query().with_(*relations)

    @classmethod
    async def create(cls, attributes: dict = {}) -> Model:
        """Create, save, and return a new record."""
        model = cls(attributes)
        await model.save()
        return model

    @classmethod
    async def update_or_create(cls, attributes: dict, values: dict = {}) -> Model:
        """Update the first record matching attributes with values, or
            create one from both.
        """
        query = cls.query()
        for key, value in attributes.items():
            query.where(key, value)
        model = await query.first()
        if model is None:
            return await cls.create({**attributes, **values})
        model.fill(values)
        await model.save()
        return model

    @classmethod
    async def first_or_create(cls, attributes: dict, values: dict = {}) -> Model:
        """Return the first record matching attributes, or create one."""
        query = cls.query()
        for key, value in attributes.items():
            query.where(key, value)
        model = await query.first()
        if model is None:
            return await cls.create({**attributes, **values})
        return model

    @classmethod
    async def destroy(cls, *ids: Any) -> int:
        """Delete the records with the given keys, firing events for
            each. Return the number deleted.
        """
        deleted = 0
        for model in await cls.query().where_in(cls.config().primary_key, ids).get():
            if await model.delete():
                deleted += 1
        return deleted

    async def save(self, /, *, suppress_events: bool = False) -> bool:
        """Insert or update the record, then clear the changes. Return
            the success flag of the underlying call.
        """
        if not suppress_events:
            await self.fire_event('saving')

        if self.exists:
            result = await self.perform_update(suppress_events=suppress_events)
        else:
            result = await self.perform_insert(suppress_events=suppress_events)

        self.changes = {}

        if not suppress_events:
            await self.fire_event('saved')
        return result

    def _touch(self, *columns: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        for column in columns:
            self.set_attribute(column, now)

    async def perform_insert(self, /, *, suppress_events: bool = False) -> bool:
        """Insert every attribute as a new row."""
        config = self.config()
        if config.timestamps:
            self._touch('created_at', 'updated_at')

        if not suppress_events:
            await self.fire_event('creating')

        insert_id = await self.query().insert(self.serialize_attributes(self.attributes))

        if self.get_attribute(config.primary_key) is None:
            self.set_attribute(config.primary_key, insert_id)
        self.exists = True
        self.sync_original()

        if not suppress_events:
            await self.fire_event('created')
        return True

    async def perform_update(self, /, *, suppress_events: bool = False) -> bool:
        """Send only the changed columns. Does nothing if not dirty."""
        if not self.is_dirty():
            return True

        config = self.config()
        if config.timestamps:
            self._touch('updated_at')

        if not suppress_events:
            await self.fire_event('updating')

        rows_affected = await self.query().where(
            config.primary_key, self.get_key()
        ).update(self.serialize_attributes(self.changes))
        self.sync_original()

        if not suppress_events:
            await self.fire_event('updated')
        return rows_affected > 0

    async def delete(self, /, *, suppress_events: bool = False) -> bool:
        """Delete the record. Return False without touching the database
            if it does not exist, or if no row was deleted.
        """
        if not self.exists:
            return False

        if not suppress_events:
            await self.fire_event('deleting')

        rows_affected = await self.query().where(
            self.config().primary_key, self.get_key()
        ).delete()

        if rows_affected > 0:
            self.exists = False
            if not suppress_events:
                await self.fire_event('deleted')
            return True
        return False

    async def refresh(self) -> Model:
        """Reload the attributes from the database, discarding changes
            and loaded relations. Return self in monad pattern.
        """
        if not self.exists:
            return self

        fresh = await self.find(self.get_key())
        if fresh is not None:
            self.attributes = deepcopy(fresh.attributes)
            self.original = deepcopy(fresh.attributes)
            self.changes = {}
            self.relations = {}
        return self

    async def load(self, *relations: str) -> Model:
        """Eager load relation paths onto this record."""
        await self.query().with_(*relations).load_relations(Collection([self]))
        return self

    # serialization

    def to_json(self) -> dict:
        """Return a dict of the visible attributes (or all attributes
            minus hidden ones), the appended accessors, the pivot data,
            and every loaded relation.
        """
        config = self.config()
        if config.visible:
            keys = list(config.visible)
        else:
            keys = [k for k in self.attributes if k not in config.hidden]

        result = {key: self.get_attribute(key) for key in keys}
        for key in config.appends:
            result[key] = self.get_attribute(key)

        if self.pivot is not None:
            result['pivot'] = dict(self.pivot)

        for name, relation in self.relations.items():
            if isinstance(relation, (Model, Collection)):
                result[name] = relation.to_json()
            else:
                result[name] = relation
        return result

    # relations

    @classmethod
    def resolve_relation(cls, model: Model, name: str) -> Optional[RelationProtocol]:
        """Call the relation method called name on model and return the
            relation, or None if the model defines no such relation.
            Only methods marked with `@relation` are called.
        """
        if name not in model.config().relations:
            return None
        method = getattr(model, name, None)
        if not callable(method):
            return None
        relation = method()
        if not isinstance(relation, RelationProtocol):
            return None
        return relation

    def has_one(self, related: Type[Model], foreign_key: Optional[str] = None,
                local_key: Optional[str] = None):
        """One related record whose foreign_key references this one."""
        from .relations import HasOne
        foreign_key = foreign_key or foreign_key_for(self.__class__.__name__)
        local_key = local_key or self.config().primary_key
        return HasOne(related, self, foreign_key, local_key).add_constraints()

    def has_many(self, related: Type[Model], foreign_key: Optional[str] = None,
                 local_key: Optional[str] = None):
        """Any number of related records whose foreign_key references
            this one.
        """
        from .relations import HasMany
        foreign_key = foreign_key or foreign_key_for(self.__class__.__name__)
        local_key = local_key or self.config().primary_key
        return HasMany(related, self, foreign_key, local_key).add_constraints()

    def belongs_to(self, related: Type[Model], foreign_key: Optional[str] = None,
                   owner_key: Optional[str] = None):
        """The related record this one references with foreign_key."""
        from .relations import BelongsTo
        foreign_key = foreign_key or foreign_key_for(related.__name__)
        owner_key = owner_key or related.config().primary_key
        return BelongsTo(related, self, foreign_key, owner_key).add_constraints()

    def belongs_to_many(self, related: Type[Model], pivot_table: Optional[str] = None,
                        foreign_pivot_key: Optional[str] = None,
                        related_pivot_key: Optional[str] = None,
                        parent_key: Optional[str] = None,
                        related_key: Optional[str] = None):
        """Related records linked to this one through a pivot table."""
        from .relations import BelongsToMany
        pivot_table = pivot_table or pivot_table_for(self.__class__.__name__, related.__name__)
        foreign_pivot_key = foreign_pivot_key or foreign_key_for(self.__class__.__name__)
        related_pivot_key = related_pivot_key or foreign_key_for(related.__name__)
        parent_key = parent_key or self.config().primary_key
        related_key = related_key or related.config().primary_key
        return BelongsToMany(
            related, self, pivot_table, foreign_pivot_key,
            related_pivot_key, parent_key, related_key
        ).add_constraints()
