"""
    Teloquent is an async active-record ORM for sqlite. Model classes map
    table rows to objects with dirty tracking, attribute casting, and
    life cycle events; a fluent query builder renders parameterized SQL;
    and a relation system loads related records lazily or eagerly with
    one query per relation. A schema builder is included for creating
    and altering tables.
"""

from teloquent.classes import (
    Model,
    QueryBuilder,
    Collection,
    Condition,
    Order,
    JoinSpec,
    ModelConfig,
    EventRegistry,
    accessor,
    mutator,
    relation,
)
from teloquent.database import (
    AsyncSqliteContext,
    Database,
    Teloquent,
)
from teloquent.errors import (
    TeloquentError,
    UsageError,
    ConfigurationError,
    ModelNotFoundError,
)
from teloquent.interfaces import (
    CursorProtocol,
    DBContextProtocol,
    DatabaseProtocol,
    ModelProtocol,
    QueryBuilderProtocol,
    RelationProtocol,
)
from teloquent.relations import (
    Relation,
    HasOne,
    HasMany,
    BelongsTo,
    BelongsToMany,
)
from teloquent.schema import (
    Column,
    Table,
    Schema,
    get_index_name,
)
from teloquent.version import version
