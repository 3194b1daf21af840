"""In-memory storage for development and testing.

Rows are plain dicts keyed by primary key tuple; predicates are Python callables taking an
entity. Every operation appends a pseudo statement to `MemoryOrm.statements` and notifies
statement listeners, so tests can see what would have reached a database.
"""
import copy
import typing

import attr

from active_entity.orm import (
    ConfigurationAction,
    EntityType,
    MaterializedCallback,
    Orm,
    Query,
    Repository,
    StatementCallback,
    TableMetadata,
)

AUDIT_COLUMNS = ("created_at", "updated_at", "is_deleted", "sort")


@attr.s(auto_attribs=True)
class Relation:
    target: typing.Type
    foreign_key: str


@attr.s(auto_attribs=True)
class MemoryTable:
    name: str
    primary_keys: typing.Tuple[str, ...]
    columns: typing.Tuple[str, ...]
    relations: typing.Dict[str, Relation] = attr.Factory(dict)
    rows: typing.Dict[tuple, typing.Dict[str, typing.Any]] = attr.Factory(dict)
    options: typing.Dict[str, typing.Any] = attr.Factory(dict)
    next_id: int = 1

    def key_for(self, values: typing.Dict[str, typing.Any]) -> tuple:
        if not self.primary_keys:
            return (len(self.rows),)
        return tuple(values[key] for key in self.primary_keys)


@attr.s(auto_attribs=True, frozen=True)
class Statement:
    sql: str
    transaction: typing.Any = None


class MemoryOrm(Orm):
    def __init__(self) -> None:
        self.tables: typing.Dict[typing.Type, MemoryTable] = {}
        self.statements: typing.List[Statement] = []
        self.repositories_created = 0
        self._listeners: typing.List[StatementCallback] = []

    def register(
        self,
        entity_type: typing.Type,
        columns: typing.Sequence[str],
        primary_keys: typing.Sequence[str] = ("id",),
        relations: typing.Optional[typing.Dict[str, Relation]] = None,
        name: typing.Optional[str] = None,
    ) -> MemoryTable:
        all_columns = tuple(dict.fromkeys((*primary_keys, *columns, *AUDIT_COLUMNS)))
        table = MemoryTable(
            name=name or entity_type.__name__.lower(),
            primary_keys=tuple(primary_keys),
            columns=all_columns,
            relations=dict(relations or {}),
        )
        self.tables[entity_type] = table
        return table

    def table_for(self, entity_type: typing.Type) -> MemoryTable:
        return self.tables[entity_type]

    def execute(self, sql: str, transaction: typing.Any = None) -> None:
        self.statements.append(Statement(sql, transaction))
        for listener in self._listeners:
            listener(sql)

    def add(self, entity: typing.Any) -> None:
        """Stores a row as-is, bypassing repositories; for seeding data."""
        table = self.table_for(type(entity))
        values = row_of(entity, table)
        table.rows[table.key_for(values)] = values

    def load(self, entity_type: typing.Type[EntityType], values: typing.Dict[str, typing.Any]) -> EntityType:
        entity = entity_type.__new__(entity_type)
        for key, value in values.items():
            setattr(entity, key, value)
        return entity

    def select_query(self, entity_type: typing.Type[EntityType]) -> "MemoryQuery[EntityType]":
        return MemoryQuery(self, entity_type)

    def repository_for(self, entity_type: typing.Type[EntityType]) -> "MemoryRepository[EntityType]":
        self.repositories_created += 1
        return MemoryRepository(self, entity_type)

    def table_metadata_for(self, entity_type: typing.Type) -> typing.Optional[TableMetadata]:
        table = self.tables.get(entity_type)
        if table is None:
            return None
        return TableMetadata(primary_keys=table.primary_keys)

    def configure_entity(self, entity_type: typing.Type, action: ConfigurationAction) -> None:
        action(self.table_for(entity_type))

    def on_statement_executed(self, callback: StatementCallback) -> None:
        self._listeners.append(callback)


def row_of(entity: typing.Any, table: MemoryTable) -> typing.Dict[str, typing.Any]:
    return {column: copy.copy(getattr(entity, column, None)) for column in table.columns}


class MemoryQuery(Query[EntityType]):
    def __init__(self, orm: MemoryOrm, entity_type: typing.Type[EntityType]) -> None:
        self._orm = orm
        self.entity_type = entity_type
        self.predicates: typing.Tuple[typing.Callable[[typing.Any], bool], ...] = ()
        self.cascade_predicates: typing.Tuple[typing.Callable[[typing.Any], bool], ...] = ()
        self.transaction: typing.Any = None
        self._callbacks: typing.Tuple[MaterializedCallback, ...] = ()

    def _with(self, **changes: typing.Any) -> "MemoryQuery[EntityType]":
        clone = copy.copy(self)
        clone.__dict__.update(changes)
        return clone

    def where(self, *predicates: typing.Callable[[typing.Any], bool]) -> "MemoryQuery[EntityType]":
        return self._with(predicates=self.predicates + predicates)

    def where_cascade(self, predicate: typing.Callable[[typing.Any], bool]) -> "MemoryQuery[EntityType]":
        return self._with(cascade_predicates=self.cascade_predicates + (predicate,))

    def with_transaction(self, transaction: typing.Any) -> "MemoryQuery[EntityType]":
        return self._with(transaction=transaction)

    def on_materialized(self, callback: MaterializedCallback) -> "MemoryQuery[EntityType]":
        return self._with(_callbacks=self._callbacks + (callback,))

    def _passes_cascade(self, entity: typing.Any) -> bool:
        return all(predicate(entity) for predicate in self.cascade_predicates)

    def _load(self, entity_type: typing.Type, values: typing.Dict[str, typing.Any]) -> typing.Any:
        entity = self._orm.load(entity_type, values)
        table = self._orm.table_for(entity_type)
        for name, relation in table.relations.items():
            (key,) = table.primary_keys
            children = [
                self._load(relation.target, row)
                for row in self._orm.table_for(relation.target).rows.values()
                if row[relation.foreign_key] == values[key]
            ]
            setattr(entity, name, [child for child in children if self._passes_cascade(child)])
        return entity

    def all(self) -> typing.List[EntityType]:
        table = self._orm.table_for(self.entity_type)
        self._orm.execute(f"SELECT * FROM {table.name}", self.transaction)
        results = []
        for values in table.rows.values():
            entity = self._load(self.entity_type, values)
            if self._passes_cascade(entity) and all(predicate(entity) for predicate in self.predicates):
                results.append(entity)

        for callback in self._callbacks:
            callback(results)
        return results


class MemoryRepository(Repository[EntityType]):
    def __init__(self, orm: MemoryOrm, entity_type: typing.Type[EntityType]) -> None:
        self._orm = orm
        self.entity_type = entity_type
        self.table = orm.table_for(entity_type)
        self.snapshots: typing.Dict[tuple, typing.Dict[str, typing.Any]] = {}

    def _identity(self, entity: EntityType) -> tuple:
        return tuple(getattr(entity, key, None) for key in self.table.primary_keys)

    def attach(self, entity: EntityType) -> None:
        self.snapshots[self._identity(entity)] = row_of(entity, self.table)

    def is_attached(self, entity: EntityType) -> bool:
        return self._identity(entity) in self.snapshots

    def insert(self, entity: EntityType, transaction: typing.Any = None) -> EntityType:
        if self.table.primary_keys == ("id",) and getattr(entity, "id", None) is None:
            entity.id = self.table.next_id
            self.table.next_id += 1

        values = row_of(entity, self.table)
        self.table.rows[self.table.key_for(values)] = values
        self._orm.execute(f"INSERT INTO {self.table.name} ({', '.join(values)})", transaction)
        self.attach(entity)
        return entity

    def update(self, entity: EntityType, transaction: typing.Any = None) -> int:
        identity = self._identity(entity)
        values = row_of(entity, self.table)
        snapshot = self.snapshots.get(identity)
        changed = {
            key: value
            for key, value in values.items()
            if key not in self.table.primary_keys and (snapshot is None or snapshot[key] != value)
        }
        if not changed:
            return 0

        self._orm.execute(
            f"UPDATE {self.table.name} SET {', '.join(changed)} WHERE {' AND '.join(self.table.primary_keys)}",
            transaction,
        )
        row = self.table.rows.get(identity)
        if row is None:
            return 0
        row.update(changed)
        self.attach(entity)
        return 1

    def delete(self, entity: EntityType, transaction: typing.Any = None) -> int:
        identity = self._identity(entity)
        self._orm.execute(f"DELETE FROM {self.table.name} WHERE {' AND '.join(self.table.primary_keys)}", transaction)
        self.snapshots.pop(identity, None)
        return 1 if self.table.rows.pop(identity, None) is not None else 0
