import logging
import threading
import typing
from collections import deque

import attr

from active_entity.orm import ActiveEntityError, ConfigurationAction, Orm, Transaction


logger = logging.getLogger(__name__)

TransactionResolver = typing.Callable[[], Transaction]

REMEDIATION = """Initialize the runtime before using any entity, e.g.:

    from sqlalchemy import create_engine
    from active_entity.runtime import initialize
    from active_entity.storages.sqlalchemy import SqlAlchemyOrm

    initialize(SqlAlchemyOrm(create_engine("sqlite:///test.db")), resolve_transaction=None)
"""


class UninitializedError(ActiveEntityError, RuntimeError):
    def __init__(self) -> None:
        super().__init__(f"active_entity runtime is not initialized.\n{REMEDIATION}")


class AlreadyInitializedError(ActiveEntityError, RuntimeError):
    pass


@attr.s(auto_attribs=True, frozen=True)
class ConfigurationRequest:
    entity_type: typing.Type
    action: ConfigurationAction


@attr.s(auto_attribs=True, eq=False)
class Runtime:
    """Holds the ORM handle and the transaction resolver once the application activates it.

    Entity configuration registered before activation is logged in order and replayed
    against the ORM exactly once, when `initialize` is called.
    """

    _orm: typing.Optional[Orm] = None
    _resolve_transaction: typing.Optional[TransactionResolver] = None
    _pending: typing.Deque[ConfigurationRequest] = attr.Factory(deque)
    _lock: threading.RLock = attr.ib(factory=threading.RLock, repr=False)
    _draining: bool = attr.ib(default=False, init=False, repr=False)

    @property
    def is_initialized(self) -> bool:
        return self._orm is not None

    @property
    def orm(self) -> Orm:
        if self._orm is None:
            raise UninitializedError()
        return self._orm

    def access(self) -> Orm:
        return self.orm

    @property
    def pending(self) -> typing.Tuple[ConfigurationRequest, ...]:
        with self._lock:
            return tuple(self._pending)

    def initialize(self, orm: Orm, resolve_transaction: typing.Optional[TransactionResolver] = None) -> None:
        with self._lock:
            if self._orm is not None:
                raise AlreadyInitializedError("active_entity runtime is already initialized")

            self._orm = orm
            self._resolve_transaction = resolve_transaction
            orm.on_statement_executed(_trace_statement)

            replayed = 0
            failure: typing.Optional[Exception] = None
            self._draining = True
            try:
                while self._pending:
                    request = self._pending.popleft()
                    replayed += 1
                    try:
                        orm.configure_entity(request.entity_type, request.action)
                    except Exception as error:
                        # the remaining requests are still applied, the first failure is raised afterwards
                        logger.exception("Deferred configuration of %s failed", request.entity_type.__name__)
                        failure = failure or error
            finally:
                self._draining = False

        logger.info("Runtime initialized with %r, replayed %d deferred configuration(s)", orm, replayed)
        if failure is not None:
            raise failure

    def configure_entity(self, entity_type: typing.Type, action: ConfigurationAction) -> None:
        with self._lock:
            # requests made by a replayed action queue up behind the ones already waiting
            if self._orm is None or self._draining:
                self._pending.append(ConfigurationRequest(entity_type, action))
                logger.debug("Deferred configuration of %s until initialization", entity_type.__name__)
            else:
                self._orm.configure_entity(entity_type, action)

    def current_transaction(self) -> Transaction:
        if self._resolve_transaction is None:
            return None
        return self._resolve_transaction()


def _trace_statement(statement: str) -> None:
    thread = threading.current_thread()
    logger.debug("Thread %s (%s): %s", threading.get_ident(), thread.name, statement)


default_runtime = Runtime()


def initialize(orm: Orm, resolve_transaction: typing.Optional[TransactionResolver] = None) -> None:
    default_runtime.initialize(orm, resolve_transaction)


def get_orm() -> Orm:
    return default_runtime.orm


def configure_entity(entity_type: typing.Type, action: ConfigurationAction) -> None:
    default_runtime.configure_entity(entity_type, action)
