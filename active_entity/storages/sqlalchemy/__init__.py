import contextlib
import copy
import typing

import sqlalchemy
from sqlalchemy import delete, event, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapper, Session, sessionmaker, with_loader_criteria
from sqlalchemy.sql import Select

from active_entity.entity import BaseEntity
from active_entity.orm import (
    ConfigurationAction,
    EntityType,
    MaterializedCallback,
    Orm,
    Predicate,
    Query,
    Repository,
    StatementCallback,
    TableMetadata,
)
from active_entity.storages.sqlalchemy.entity import SqlAlchemyEntity


class SqlAlchemyOrm(Orm):
    """ORM handle over an engine. The ambient transaction, when there is one, is a `Session`.

    Materialized entities are always expunged, from the ambient session as well: they are
    tracked by their repository, and updates are written as explicit `UPDATE` statements.
    Objects loaded through the ambient session are therefore detached from it afterwards.
    """

    def __init__(self, engine: Engine, session_factory: typing.Optional[sessionmaker] = None) -> None:
        self.engine = engine
        self.session_factory = session_factory or sessionmaker(bind=engine, expire_on_commit=False)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.engine.url!r})"

    @contextlib.contextmanager
    def session_scope(self, transaction: typing.Optional[Session] = None) -> typing.Generator[Session, None, None]:
        if transaction is not None:
            yield transaction
            return

        with self.session_factory() as session, session.begin():
            yield session

    def select_query(self, entity_type: typing.Type[EntityType]) -> "SqlAlchemyQuery[EntityType]":
        return SqlAlchemyQuery(self, entity_type)

    def repository_for(self, entity_type: typing.Type[EntityType]) -> "SqlAlchemyRepository[EntityType]":
        return SqlAlchemyRepository(self, entity_type)

    def table_metadata_for(self, entity_type: typing.Type) -> typing.Optional[TableMetadata]:
        mapper: typing.Optional[Mapper] = sqlalchemy.inspect(entity_type, raiseerr=False)
        if mapper is None:
            return None
        return TableMetadata(primary_keys=_primary_key_attributes(mapper))

    def configure_entity(self, entity_type: typing.Type, action: ConfigurationAction) -> None:
        action(sqlalchemy.inspect(entity_type).local_table)

    def on_statement_executed(self, callback: StatementCallback) -> None:
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany) -> None:
            callback(statement)

        event.listen(self.engine, "before_cursor_execute", before_cursor_execute)


def _primary_key_attributes(mapper: Mapper) -> typing.Tuple[str, ...]:
    return tuple(mapper.get_property_by_column(column).key for column in mapper.primary_key)


class SqlAlchemyQuery(Query[EntityType]):
    def __init__(self, orm: SqlAlchemyOrm, entity_type: typing.Type[EntityType]) -> None:
        self._orm = orm
        self.entity_type = entity_type
        self.statement: Select = select(entity_type)
        self._transaction: typing.Optional[Session] = None
        self._callbacks: typing.Tuple[MaterializedCallback, ...] = ()
        self._cascade: typing.Tuple[typing.Callable[[typing.Any], Predicate], ...] = ()

    def _with(self, **changes: typing.Any) -> "SqlAlchemyQuery[EntityType]":
        clone = copy.copy(self)
        clone.__dict__.update(changes)
        return clone

    def where(self, *predicates: Predicate) -> "SqlAlchemyQuery[EntityType]":
        return self._with(statement=self.statement.where(*predicates))

    def where_cascade(self, predicate: typing.Callable[[typing.Any], Predicate]) -> "SqlAlchemyQuery[EntityType]":
        # applies to every entity sharing the audit fields, wherever it appears in the statement
        criteria = with_loader_criteria(BaseEntity, predicate, include_aliases=True)
        return self._with(statement=self.statement.options(criteria), _cascade=self._cascade + (predicate,))

    def with_transaction(self, transaction: typing.Optional[Session]) -> "SqlAlchemyQuery[EntityType]":
        return self._with(_transaction=transaction)

    def on_materialized(self, callback: MaterializedCallback) -> "SqlAlchemyQuery[EntityType]":
        return self._with(_callbacks=self._callbacks + (callback,))

    def options(self, *options: typing.Any) -> "SqlAlchemyQuery[EntityType]":
        return self._with(statement=self.statement.options(*options))

    def join(self, target: typing.Any, *args: typing.Any, **kwargs: typing.Any) -> "SqlAlchemyQuery[EntityType]":
        return self._with(statement=self.statement.join(target, *args, **kwargs))

    def order_by(self, *clauses: typing.Any) -> "SqlAlchemyQuery[EntityType]":
        return self._with(statement=self.statement.order_by(*clauses))

    def limit(self, limit: int) -> "SqlAlchemyQuery[EntityType]":
        return self._with(statement=self.statement.limit(limit))

    def offset(self, offset: int) -> "SqlAlchemyQuery[EntityType]":
        return self._with(statement=self.statement.offset(offset))

    def all(self) -> typing.List[EntityType]:
        with self._orm.session_scope(self._transaction) as session:
            results = session.scalars(self.statement).unique().all()
            for entity in results:
                session.expunge(entity)

        results = list(results)
        self._materialized(results)
        return results

    def first(self) -> typing.Optional[EntityType]:
        results = self.limit(1).all()
        return results[0] if results else None

    def one_or_none(self) -> typing.Optional[EntityType]:
        with self._orm.session_scope(self._transaction) as session:
            result = session.scalars(self.statement).unique().one_or_none()
            if result is not None:
                session.expunge(result)

        self._materialized(result)
        return result

    def count(self) -> int:
        # loader criteria do not survive as a subquery, so the root entity is filtered explicitly
        counted = self.statement.where(*(predicate(self.entity_type) for predicate in self._cascade))
        statement = select(func.count()).select_from(counted.subquery())
        with self._orm.session_scope(self._transaction) as session:
            return session.execute(statement).scalar_one()

    def _materialized(self, result: typing.Any) -> None:
        for callback in self._callbacks:
            callback(result)


class SqlAlchemyRepository(Repository[EntityType]):
    """Keeps column snapshots of attached entities, keyed by their primary key."""

    def __init__(self, orm: SqlAlchemyOrm, entity_type: typing.Type[EntityType]) -> None:
        self._orm = orm
        self.entity_type = entity_type
        self._mapper: Mapper = sqlalchemy.inspect(entity_type)
        self._primary_keys = _primary_key_attributes(self._mapper)
        self._snapshots: typing.Dict[tuple, typing.Dict[str, typing.Any]] = {}

    def _identity(self, entity: EntityType) -> tuple:
        return tuple(getattr(entity, key) for key in self._primary_keys)

    def _values(self, entity: EntityType) -> typing.Dict[str, typing.Any]:
        # deferred columns of a detached entity can not be loaded anymore
        unloaded = sqlalchemy.inspect(entity).unloaded
        return {
            prop.key: getattr(entity, prop.key) for prop in self._mapper.column_attrs if prop.key not in unloaded
        }

    def _where_identity(self, entity: EntityType) -> typing.List[typing.Any]:
        return [getattr(self.entity_type, key) == getattr(entity, key) for key in self._primary_keys]

    def attach(self, entity: EntityType) -> None:
        self._snapshots[self._identity(entity)] = self._values(entity)

    def is_attached(self, entity: EntityType) -> bool:
        return self._identity(entity) in self._snapshots

    def snapshot(self, entity: EntityType) -> typing.Optional[typing.Dict[str, typing.Any]]:
        return self._snapshots.get(self._identity(entity))

    def changes(self, entity: EntityType) -> typing.Dict[str, typing.Any]:
        """Columns whose value differs from the attached snapshot; every column if not attached."""
        values = self._values(entity)
        snapshot = self.snapshot(entity)
        changed = {key: value for key, value in values.items() if snapshot is None or snapshot.get(key) != value}
        for key in self._primary_keys:
            changed.pop(key, None)
        return changed

    def insert(self, entity: EntityType, transaction: typing.Optional[Session] = None) -> EntityType:
        with self._orm.session_scope(transaction) as session:
            session.add(entity)
            session.flush()
            session.expunge(entity)

        self.attach(entity)
        return entity

    def update(self, entity: EntityType, transaction: typing.Optional[Session] = None) -> int:
        changed = self.changes(entity)
        if not changed:
            return 0

        statement = (
            update(self.entity_type)
            .where(*self._where_identity(entity))
            .values(**changed)
            .execution_options(synchronize_session=False)
        )
        with self._orm.session_scope(transaction) as session:
            rowcount = session.execute(statement).rowcount

        self.attach(entity)
        return rowcount

    def delete(self, entity: EntityType, transaction: typing.Optional[Session] = None) -> int:
        statement = (
            delete(self.entity_type)
            .where(*self._where_identity(entity))
            .execution_options(synchronize_session=False)
        )
        with self._orm.session_scope(transaction) as session:
            rowcount = session.execute(statement).rowcount

        self._snapshots.pop(self._identity(entity), None)
        return rowcount


__all__ = ["SqlAlchemyEntity", "SqlAlchemyOrm", "SqlAlchemyQuery", "SqlAlchemyRepository"]
