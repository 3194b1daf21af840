import abc
import logging
import typing
from collections.abc import Iterable, Mapping

from active_entity.orm import Orm, Repository


logger = logging.getLogger(__name__)


class Trackable:
    """Capability of entities that can be attached to a repository and updated partially.

    Lazy-loading proxy classes point `__proxy_of__` at the entity they stand in for, so
    that table metadata and repositories are resolved against the declared entity type.
    """

    __proxy_of__ = None

    repository = None

    @classmethod
    def underlying_type(cls) -> typing.Type["Trackable"]:
        if cls.__dict__.get("__proxy_of__") is not None:
            return cls.__proxy_of__.underlying_type()
        return cls


def has_primary_key(entity_type: typing.Type, orm: Orm) -> bool:
    metadata = orm.table_metadata_for(entity_type)
    return metadata is not None and metadata.has_primary_key


class TrackingPolicy(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def reject_batch(
        self, first: typing.Any, entity_type: typing.Type, orm: Orm, homogeneous: bool
    ) -> typing.Optional[str]:
        """Returns the reason the whole batch is not tracked, judging by its first element, or None."""

    @abc.abstractmethod
    def admits(self, item: typing.Any, entity_type: typing.Type, orm: Orm) -> bool:
        pass


class FirstElementPolicy(TrackingPolicy):
    """Assumes one materialization is type-homogeneous: only the first element is introspected."""

    def reject_batch(
        self, first: typing.Any, entity_type: typing.Type, orm: Orm, homogeneous: bool
    ) -> typing.Optional[str]:
        if homogeneous:
            if not isinstance(first, Trackable) or not isinstance(first, entity_type):
                return f"first element is not a trackable {entity_type.__name__}"
            if not has_primary_key(entity_type, orm):
                return f"{entity_type.__name__} has no primary key"
            return None

        item_type = type(first)
        if item_type is object:
            return "element type is erased"
        if not issubclass(item_type, Trackable):
            return f"{item_type.__name__} is not trackable"
        if not has_primary_key(item_type.underlying_type(), orm):
            return f"{item_type.underlying_type().__name__} has no primary key"
        if not isinstance(first, entity_type):
            return f"{item_type.__name__} is not a {entity_type.__name__}"
        return None

    def admits(self, item: typing.Any, entity_type: typing.Type, orm: Orm) -> bool:
        return isinstance(item, Trackable) and isinstance(item, entity_type)


class StrictPolicy(TrackingPolicy):
    """Checks every element on its own and skips the ones that do not qualify."""

    def reject_batch(
        self, first: typing.Any, entity_type: typing.Type, orm: Orm, homogeneous: bool
    ) -> typing.Optional[str]:
        return None

    def admits(self, item: typing.Any, entity_type: typing.Type, orm: Orm) -> bool:
        if not isinstance(item, Trackable) or not isinstance(item, entity_type):
            return False
        return has_primary_key(type(item).underlying_type(), orm)


FIRST_ELEMENT = FirstElementPolicy()
STRICT = StrictPolicy()


def track_result(
    result: typing.Any, entity_type: typing.Type, orm: Orm, policy: typing.Optional[TrackingPolicy] = None
) -> int:
    """Attaches every qualifying entity of a materialized query result to a repository of its type.

    Never raises because an element can not be tracked or attached; such elements are left as they are.
    Returns the number of attached entities.
    """
    policy = policy or FIRST_ELEMENT

    if result is None:
        return 0

    if isinstance(result, Trackable):
        return _bind(Binder(orm), [result], entity_type, orm, policy, homogeneous=True)

    if isinstance(result, list):
        return _bind(Binder(orm), result, entity_type, orm, policy, homogeneous=True)

    if isinstance(result, (str, bytes, Mapping)) or not isinstance(result, Iterable):
        return 0

    if iter(result) is result:
        # one-shot iterators would be exhausted before the caller sees them
        logger.debug("Not tracking %s: result is a one-shot iterator", entity_type.__name__)
        return 0

    return _bind(Binder(orm), result, entity_type, orm, policy, homogeneous=False)


def _bind(
    binder: "Binder",
    items: typing.Iterable,
    entity_type: typing.Type,
    orm: Orm,
    policy: TrackingPolicy,
    homogeneous: bool,
) -> int:
    is_first = True
    for item in items:
        if item is None:
            break

        if is_first:
            is_first = False
            reason = policy.reject_batch(item, entity_type, orm, homogeneous)
            if reason:
                logger.debug("Not tracking %s result: %s", entity_type.__name__, reason)
                return 0

        if policy.admits(item, entity_type, orm):
            try:
                binder.bind(item)
            except Exception:
                logger.warning("Not tracking a %s: attaching it failed", type(item).__name__, exc_info=True)

    return binder.attached


class Binder:
    """Attaches entities, sharing one repository per entity type for the duration of one result."""

    def __init__(self, orm: Orm) -> None:
        self._orm = orm
        self._repositories: typing.Dict[typing.Type, Repository] = {}
        self.attached = 0

    def repository_for(self, entity_type: typing.Type) -> Repository:
        try:
            return self._repositories[entity_type]
        except KeyError:
            repository = self._repositories[entity_type] = self._orm.repository_for(entity_type)
            return repository

    def bind(self, entity: Trackable) -> None:
        repository = self.repository_for(type(entity).underlying_type())
        repository.attach(entity)
        entity.repository = repository
        self.attached += 1
