import abc
import typing

import attr


class ActiveEntityError(Exception):
    pass


EntityType = typing.TypeVar("EntityType")
Predicate = typing.Any
Transaction = typing.Any
MaterializedCallback = typing.Callable[[typing.Any], None]
StatementCallback = typing.Callable[[str], None]
ConfigurationAction = typing.Callable[[typing.Any], None]


@attr.s(auto_attribs=True, frozen=True)
class TableMetadata:
    primary_keys: typing.Tuple[str, ...] = ()

    @property
    def has_primary_key(self) -> bool:
        return bool(self.primary_keys)


class Repository(typing.Generic[EntityType], metaclass=abc.ABCMeta):
    """Per-entity-type handle that remembers what an entity looked like when it was attached."""

    @abc.abstractmethod
    def attach(self, entity: EntityType) -> None:
        pass

    @abc.abstractmethod
    def is_attached(self, entity: EntityType) -> bool:
        pass

    @abc.abstractmethod
    def insert(self, entity: EntityType, transaction: Transaction = None) -> EntityType:
        pass

    @abc.abstractmethod
    def update(self, entity: EntityType, transaction: Transaction = None) -> int:
        """Persists only the columns that differ from the attached snapshot."""

    @abc.abstractmethod
    def delete(self, entity: EntityType, transaction: Transaction = None) -> int:
        pass


class Query(typing.Generic[EntityType], metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def where(self, *predicates: Predicate) -> "Query[EntityType]":
        pass

    def where_if(self, condition: bool, *predicates: Predicate) -> "Query[EntityType]":
        if not condition:
            return self
        return self.where(*predicates)

    @abc.abstractmethod
    def where_cascade(self, predicate: typing.Callable[[typing.Any], Predicate]) -> "Query[EntityType]":
        """Filter applied to the root entity and to every joined or navigated entity of the same kind."""

    @abc.abstractmethod
    def with_transaction(self, transaction: Transaction) -> "Query[EntityType]":
        pass

    @abc.abstractmethod
    def on_materialized(self, callback: MaterializedCallback) -> "Query[EntityType]":
        pass

    @abc.abstractmethod
    def all(self) -> typing.List[EntityType]:
        pass

    def first(self) -> typing.Optional[EntityType]:
        results = self.all()
        return results[0] if results else None

    def one_or_none(self) -> typing.Optional[EntityType]:
        return self.first()

    def __iter__(self) -> typing.Iterator[EntityType]:
        return iter(self.all())


class Orm(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def select_query(self, entity_type: typing.Type[EntityType]) -> Query[EntityType]:
        pass

    @abc.abstractmethod
    def repository_for(self, entity_type: typing.Type[EntityType]) -> Repository[EntityType]:
        pass

    @abc.abstractmethod
    def table_metadata_for(self, entity_type: typing.Type) -> typing.Optional[TableMetadata]:
        pass

    @abc.abstractmethod
    def configure_entity(self, entity_type: typing.Type, action: ConfigurationAction) -> None:
        pass

    @abc.abstractmethod
    def on_statement_executed(self, callback: StatementCallback) -> None:
        pass
