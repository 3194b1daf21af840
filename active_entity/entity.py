import functools
import typing
from datetime import datetime

from active_entity.orm import ConfigurationAction, Predicate, Query, Repository
from active_entity.runtime import Runtime, default_runtime
from active_entity.tracking import FIRST_ELEMENT, Trackable, track_result


T = typing.TypeVar("T", bound="ActiveRecord")


def not_deleted(entity: typing.Any) -> typing.Any:
    return entity.is_deleted == False  # noqa: E712 - builds a SQL expression for mapped columns


class BaseEntity(Trackable):
    """Entity carrying the audit fields: created_at, updated_at, is_deleted and sort.

    Class attributes are left unannotated so that declarative mappers pick columns up
    from storage-specific mixins only.
    """

    runtime = default_runtime
    tracking_policy = FIRST_ELEMENT

    created_at = None
    updated_at = None
    is_deleted = False
    sort = 0

    def __init__(self, **kwargs: typing.Any) -> None:
        kwargs.setdefault("created_at", datetime.now())
        kwargs.setdefault("is_deleted", False)
        kwargs.setdefault("sort", 0)
        cls = type(self)
        for key, value in kwargs.items():
            if not hasattr(cls, key):
                raise TypeError(f"{key!r} is an invalid keyword argument for {cls.__name__}")
            setattr(self, key, value)

    @classmethod
    def configure(cls, action: ConfigurationAction) -> None:
        cls.runtime.configure_entity(cls, action)


class ActiveRecord(BaseEntity):
    @classmethod
    def select(cls: typing.Type[T]) -> Query[T]:
        runtime: Runtime = cls.runtime
        orm = runtime.orm
        track = functools.partial(track_result, entity_type=cls, orm=orm, policy=cls.tracking_policy)
        return (
            orm.select_query(cls)
            .on_materialized(track)
            .with_transaction(runtime.current_transaction())
            .where_cascade(not_deleted)
        )

    @classmethod
    def where(cls: typing.Type[T], *predicates: Predicate) -> Query[T]:
        return cls.select().where(*predicates)

    @classmethod
    def where_if(cls: typing.Type[T], condition: bool, *predicates: Predicate) -> Query[T]:
        return cls.select().where_if(condition, *predicates)

    def _ensure_repository(self) -> Repository:
        if self.repository is None:
            self.repository = self.runtime.orm.repository_for(type(self).underlying_type())
        return self.repository

    def attach(self: T) -> T:
        """Remembers current field values, so that `update` persists only what changes afterwards."""
        self._ensure_repository().attach(self)
        return self

    def insert(self: T) -> T:
        self._ensure_repository().insert(self, self.runtime.current_transaction())
        return self

    def update(self) -> int:
        self.updated_at = datetime.now()
        return self._ensure_repository().update(self, self.runtime.current_transaction())

    def delete(self, physical: bool = False) -> int:
        if physical:
            return self._ensure_repository().delete(self, self.runtime.current_transaction())
        self.is_deleted = True
        return self.update()

    def restore(self) -> int:
        self.is_deleted = False
        return self.update()

    def save(self: T) -> T:
        if self.repository is not None and self.repository.is_attached(self):
            self.update()
        else:
            self.insert()
        return self
