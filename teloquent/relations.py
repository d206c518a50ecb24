from __future__ import annotations
from .classes import Collection, Model, QueryBuilder
from .errors import tert
from .interfaces import DatabaseProtocol
from abc import abstractmethod
from typing import Any, Iterable, Optional, Type


def normalize_key(value: Any) -> Optional[str]:
    """Join keys are compared as strings so that 1 and '1' match."""
    return None if value is None else str(value)

def unique_keys(values: Iterable) -> list:
    """Return the non-None values with duplicates removed, in order."""
    seen, keys = set(), []
    for value in values:
        if value is None or normalize_key(value) in seen:
            continue
        seen.add(normalize_key(value))
        keys.append(value)
    return keys


class Relation:
    """Base class for setting up relations. A relation is built in two
        steps: construct it, then call `add_constraints` to narrow the
        inner query to the owning record. Eager loading calls
        `load_for_collection` on an unconstrained relation instead.
    """
    related: Type[Model]
    parent: Model
    query: QueryBuilder
    constrained: bool

    def __init__(self, related: Type[Model], parent: Model) -> None:
        """Raises TypeError for an invalid related class or parent."""
        tert(isinstance(related, type) and issubclass(related, Model),
             'related must be subclass of Model')
        tert(isinstance(parent, Model), 'parent must be instance of Model')
        self.related = related
        self.parent = parent
        self.query = related.query()
        self.constrained = False

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parent={self.parent.__class__.__name__}, " + \
            f"related={self.related.__name__})"

    @abstractmethod
    def add_constraints(self) -> Relation:
        """Narrow the inner query to the owning record. Return self in
            monad pattern.
        """
        pass

    @abstractmethod
    async def get_results(self) -> Any:
        """Return the related model(s) of the owning record."""
        pass

    @abstractmethod
    async def load_for_collection(self, collection: Collection,
                                  relation_name: str,
                                  nested: Iterable[str] = ()) -> None:
        """Load the relation for every model in collection with one
            query and attach the results with `set_relation`. Nested
            paths, and anything after the first dot of relation_name,
            are eager loaded onto the related models.
        """
        pass

    def new_query(self) -> QueryBuilder:
        """Return a fresh, unconstrained query for the related model."""
        return self.related.query()

    def get_query(self) -> QueryBuilder:
        return self.query

    @staticmethod
    def base_name(relation_name: str) -> str:
        """'posts.comments' -> 'posts'"""
        return relation_name.split('.')[0]

    @staticmethod
    def nested_relation(relation_name: str) -> Optional[str]:
        """'posts.comments.author' -> 'comments.author'"""
        parts = relation_name.split('.')
        return '.'.join(parts[1:]) if len(parts) > 1 else None

    def _with_nested(self, query: QueryBuilder, relation_name: str,
                     nested: Iterable[str] = ()) -> QueryBuilder:
        paths = list(nested)
        inline = self.nested_relation(relation_name)
        if inline:
            paths.insert(0, inline)
        if paths:
            query.with_(*paths)
        return query

    # query pass-throughs

    def where(self, *args, **kwargs) -> Relation:
        self.query.where(*args, **kwargs)
        return self

    def or_where(self, *args, **kwargs) -> Relation:
        self.query.or_where(*args, **kwargs)
        return self

    def where_in(self, *args, **kwargs) -> Relation:
        self.query.where_in(*args, **kwargs)
        return self

    def where_null(self, *args, **kwargs) -> Relation:
        self.query.where_null(*args, **kwargs)
        return self

    def where_not_null(self, *args, **kwargs) -> Relation:
        self.query.where_not_null(*args, **kwargs)
        return self

    def order_by(self, *args, **kwargs) -> Relation:
        self.query.order_by(*args, **kwargs)
        return self

    def limit(self, limit: Optional[int]) -> Relation:
        self.query.limit(limit)
        return self

    def offset(self, offset: Optional[int]) -> Relation:
        self.query.offset(offset)
        return self

    def with_(self, *relations: str) -> Relation:
        self.query.with_(*relations)
        return self

    async def get(self) -> Collection:
        return await self.query.get()

    async def first(self) -> Optional[Model]:
        return await self.query.first()

    async def count(self, column: str = '*') -> int:
        return await self.query.count(column)

    async def exists(self) -> bool:
        return await self.query.exists()


class HasOne(Relation):
    """The related model holds a foreign key to the parent:
        related[foreign_key] = parent[local_key].
    """
    foreign_key: str
    local_key: str

    def __init__(self, related: Type[Model], parent: Model,
                 foreign_key: str, local_key: str) -> None:
        tert(type(foreign_key) is str, 'foreign_key must be str')
        tert(type(local_key) is str, 'local_key must be str')
        super().__init__(related, parent)
        self.foreign_key = foreign_key
        self.local_key = local_key

    def add_constraints(self) -> HasOne:
        if not self.constrained:
            self.query.where(self.foreign_key, self.parent.get_attribute(self.local_key))
            self.constrained = True
        return self

    async def get_results(self) -> Optional[Model]:
        return await self.query.first()

    def _match_query(self, collection: Collection, relation_name: str,
                     nested: Iterable[str] = ()) -> Optional[QueryBuilder]:
        keys = unique_keys(collection.pluck(self.local_key))
        if not keys:
            return None
        query = self.new_query().where_in(self.foreign_key, keys)
        return self._with_nested(query, relation_name, nested)

    async def load_for_collection(self, collection: Collection,
                                  relation_name: str,
                                  nested: Iterable[str] = ()) -> None:
        if collection.is_empty():
            return
        name = self.base_name(relation_name)
        query = self._match_query(collection, relation_name, nested)
        results = await query.get() if query else Collection()
        dictionary = results.key_by(
            lambda m: normalize_key(m.get_attribute(self.foreign_key))
        )
        collection.each(lambda m: m.set_relation(
            name, dictionary.get(normalize_key(m.get_attribute(self.local_key)))
        ))

    def make(self, attributes: dict = {}) -> Model:
        """Return an unsaved related model with the foreign key set."""
        model = self.related(attributes)
        model.set_attribute(self.foreign_key, self.parent.get_attribute(self.local_key))
        return model

    async def create(self, attributes: dict = {}) -> Model:
        """Create and save a related model owned by the parent."""
        model = self.make(attributes)
        await model.save()
        return model

    async def save(self, model: Model) -> Model:
        """Point model at the parent, then save it."""
        tert(isinstance(model, self.related),
             f'model must be instance of {self.related.__name__}')
        model.set_attribute(self.foreign_key, self.parent.get_attribute(self.local_key))
        await model.save()
        return model


class HasMany(HasOne):
    """Like HasOne, but any number of related models may point at the
        parent.
    """
    async def get_results(self) -> Collection:
        return await self.query.get()

    async def load_for_collection(self, collection: Collection,
                                  relation_name: str,
                                  nested: Iterable[str] = ()) -> None:
        if collection.is_empty():
            return
        name = self.base_name(relation_name)
        query = self._match_query(collection, relation_name, nested)
        results = await query.get() if query else Collection()

        dictionary: dict[str, list] = {}
        for model in results:
            key = normalize_key(model.get_attribute(self.foreign_key))
            dictionary.setdefault(key, []).append(model)

        collection.each(lambda m: m.set_relation(
            name,
            Collection(dictionary.get(normalize_key(m.get_attribute(self.local_key)), []))
        ))

    async def save_many(self, models: Iterable[Model]) -> list[Model]:
        return [await self.save(model) for model in models]


class BelongsTo(Relation):
    """The parent holds a foreign key to the related model:
        parent[foreign_key] = related[owner_key].
    """
    foreign_key: str
    owner_key: str

    def __init__(self, related: Type[Model], parent: Model,
                 foreign_key: str, owner_key: str) -> None:
        tert(type(foreign_key) is str, 'foreign_key must be str')
        tert(type(owner_key) is str, 'owner_key must be str')
        super().__init__(related, parent)
        self.foreign_key = foreign_key
        self.owner_key = owner_key

    def add_constraints(self) -> BelongsTo:
        """Constrain to the owner. A parent with no foreign key value
            gets no constraint; `get_results` then returns None.
        """
        value = self.parent.get_attribute(self.foreign_key)
        if not self.constrained and value is not None:
            self.query.where(self.owner_key, value)
            self.constrained = True
        return self

    async def get_results(self) -> Optional[Model]:
        if self.parent.get_attribute(self.foreign_key) is None:
            return None
        return await self.query.first()

    async def load_for_collection(self, collection: Collection,
                                  relation_name: str,
                                  nested: Iterable[str] = ()) -> None:
        if collection.is_empty():
            return
        name = self.base_name(relation_name)
        keys = unique_keys(collection.pluck(self.foreign_key))
        if keys:
            query = self._with_nested(
                self.new_query().where_in(self.owner_key, keys), relation_name, nested
            )
            results = await query.get()
        else:
            results = Collection()
        dictionary = results.key_by(
            lambda m: normalize_key(m.get_attribute(self.owner_key))
        )
        collection.each(lambda m: m.set_relation(
            name, dictionary.get(normalize_key(m.get_attribute(self.foreign_key)))
        ))

    async def associate(self, model: Model) -> Model:
        """Point the parent at model, then save the parent."""
        tert(isinstance(model, self.related),
             f'model must be instance of {self.related.__name__}')
        self.parent.set_attribute(self.foreign_key, model.get_attribute(self.owner_key))
        await self.parent.save()
        return self.parent

    async def dissociate(self) -> Model:
        """Clear the parent's foreign key, then save the parent."""
        self.parent.set_attribute(self.foreign_key, None)
        await self.parent.save()
        return self.parent


class BelongsToMany(Relation):
    """Many-to-many through a pivot table with the columns
        foreign_pivot_key (pointing at the parent) and related_pivot_key
        (pointing at the related model). Loaded models get a `pivot`
        dict of the pivot columns.
    """
    pivot_table: str
    foreign_pivot_key: str
    related_pivot_key: str
    parent_key: str
    related_key: str
    pivot_columns: list[str]

    def __init__(self, related: Type[Model], parent: Model, pivot_table: str,
                 foreign_pivot_key: str, related_pivot_key: str,
                 parent_key: str, related_key: str) -> None:
        for name, value in (
            ('pivot_table', pivot_table), ('foreign_pivot_key', foreign_pivot_key),
            ('related_pivot_key', related_pivot_key), ('parent_key', parent_key),
            ('related_key', related_key),
        ):
            tert(type(value) is str, f'{name} must be str')
        super().__init__(related, parent)
        self.pivot_table = pivot_table
        self.foreign_pivot_key = foreign_pivot_key
        self.related_pivot_key = related_pivot_key
        self.parent_key = parent_key
        self.related_key = related_key
        self.pivot_columns = [foreign_pivot_key, related_pivot_key]

    def perform_join(self, query: QueryBuilder) -> QueryBuilder:
        """Join the pivot table onto the related table."""
        return query.join(
            self.pivot_table,
            f'{self.related.config().table}.{self.related_key}',
            '=',
            f'{self.pivot_table}.{self.related_pivot_key}',
        )

    def add_constraints(self) -> BelongsToMany:
        if not self.constrained:
            self.perform_join(self.query)
            self.query.where(
                f'{self.pivot_table}.{self.foreign_pivot_key}',
                self.parent.get_attribute(self.parent_key)
            )
            self.constrained = True
        return self

    def with_pivot(self, *columns: str) -> BelongsToMany:
        """Also select these pivot columns into each model's pivot.
            Additive: every call appends. Repeated names are selected
            once.
        """
        tert(all([type(c) is str for c in columns]), 'columns must be str')
        self.pivot_columns.extend(columns)
        return self

    def selected_pivot_columns(self) -> list[str]:
        """The pivot columns in request order without repeats."""
        return list(dict.fromkeys(self.pivot_columns))

    def _select_pivot_columns(self, query: QueryBuilder) -> QueryBuilder:
        return query.select(
            f'{self.related.config().table}.*',
            *[
                f'{self.pivot_table}.{c} AS pivot_{c}'
                for c in self.selected_pivot_columns()
            ]
        )

    def _extract_pivot(self, model: Model) -> dict:
        """Move the pivot_ prefixed attributes into model.pivot."""
        pivot = {}
        for column in self.selected_pivot_columns():
            pivot[column] = model.get_attribute(f'pivot_{column}')
            model.unset_attribute(f'pivot_{column}')
        model.sync_original()
        model.pivot = pivot
        return pivot

    async def get(self) -> Collection:
        results = await self._select_pivot_columns(self.query).get()
        return results.each(self._extract_pivot)

    async def first(self) -> Optional[Model]:
        model = await self._select_pivot_columns(self.query).first()
        if model is not None:
            self._extract_pivot(model)
        return model

    async def get_results(self) -> Collection:
        return await self.get()

    async def load_for_collection(self, collection: Collection,
                                  relation_name: str,
                                  nested: Iterable[str] = ()) -> None:
        if collection.is_empty():
            return
        name = self.base_name(relation_name)
        keys = unique_keys(collection.pluck(self.parent_key))

        dictionary: dict[str, list] = {}
        if keys:
            query = self.perform_join(self.new_query())
            query.where_in(f'{self.pivot_table}.{self.foreign_pivot_key}', keys)
            self._select_pivot_columns(query)
            self._with_nested(query, relation_name, nested)
            for model in await query.get():
                pivot = self._extract_pivot(model)
                key = normalize_key(pivot[self.foreign_pivot_key])
                dictionary.setdefault(key, []).append(model)

        collection.each(lambda m: m.set_relation(
            name,
            Collection(dictionary.get(normalize_key(m.get_attribute(self.parent_key)), []))
        ))

    # pivot table operations

    def _database(self) -> DatabaseProtocol:
        return self.query.get_database()

    def new_pivot_query(self) -> QueryBuilder:
        """Return a query on the pivot table scoped to the parent."""
        query = QueryBuilder(self.related, self.pivot_table, self.query.database)
        return query.where(self.foreign_pivot_key, self.parent.get_attribute(self.parent_key))

    def convert_to_ids(self, ids: Any) -> list:
        """Accept one id, one model, or an iterable of either, and
            return a list of related keys.
        """
        if not isinstance(ids, (list, tuple, set, Collection)):
            ids = [ids]
        return [
            item.get_attribute(self.related_key) if isinstance(item, Model) else item
            for item in ids
        ]

    async def attach(self, ids: Any, attributes: dict = {}) -> None:
        """Insert one pivot row per id, with the extra attributes."""
        tert(isinstance(attributes, dict), 'attributes must be dict')
        database = self._database()
        parent_id = self.parent.get_attribute(self.parent_key)
        for id in self.convert_to_ids(ids):
            await database.insert(self.pivot_table, {
                self.foreign_pivot_key: parent_id,
                self.related_pivot_key: id,
                **attributes,
            })

    async def detach(self, ids: Any = None) -> int:
        """Delete the pivot rows for ids, or every pivot row of the
            parent when ids is None. Return the number deleted.
        """
        if ids is None:
            return await self.detach_all()
        ids = self.convert_to_ids(ids)
        if not ids:
            return 0
        return await self.new_pivot_query().where_in(self.related_pivot_key, ids).delete()

    async def detach_all(self) -> int:
        return await self.new_pivot_query().delete()

    async def sync(self, ids: Any, attributes: dict = {}) -> None:
        """Replace the parent's pivot rows with exactly ids in one
            transaction.
        """
        ids = self.convert_to_ids(ids)
        async with self._database().transaction():
            await self.detach_all()
            if ids:
                await self.attach(ids, attributes)

    async def update_existing_pivot(self, id: Any, attributes: dict) -> int:
        """Update the extra columns of one pivot row."""
        tert(isinstance(attributes, dict), 'attributes must be dict')
        id = self.convert_to_ids(id)[0]
        return await self.new_pivot_query().where(self.related_pivot_key, id).update(attributes)
