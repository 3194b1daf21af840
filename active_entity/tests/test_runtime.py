import logging
import threading
import typing

import pytest

from active_entity import get_orm
from active_entity.entity import ActiveRecord
from active_entity.runtime import AlreadyInitializedError, Runtime, UninitializedError
from active_entity.storages.memory import MemoryOrm, MemoryTable


class User(ActiveRecord):
    id = None
    name = None


class Group(ActiveRecord):
    id = None


@pytest.fixture()
def memory_orm(memory_orm: MemoryOrm) -> MemoryOrm:
    memory_orm.register(User, columns=["name"])
    memory_orm.register(Group, columns=[])
    return memory_orm


def test_accessing_uninitialized_runtime_fails_with_remediation():
    runtime = Runtime()

    with pytest.raises(UninitializedError) as exc_info:
        runtime.orm

    assert "initialize(" in str(exc_info.value)
    assert not runtime.is_initialized
    assert runtime.pending == ()


def test_default_runtime_is_not_initialized_by_the_test_suite():
    with pytest.raises(UninitializedError):
        get_orm()


def test_initialize_exposes_orm(memory_orm: MemoryOrm):
    runtime = Runtime()

    runtime.initialize(memory_orm)

    assert runtime.is_initialized
    assert runtime.orm is memory_orm
    assert runtime.access() is memory_orm


def test_second_initialize_is_refused(memory_orm: MemoryOrm):
    runtime = Runtime()
    runtime.initialize(memory_orm)

    with pytest.raises(AlreadyInitializedError):
        runtime.initialize(MemoryOrm())

    assert runtime.orm is memory_orm


def test_deferred_configuration_is_replayed_in_order_once(memory_orm: MemoryOrm):
    runtime = Runtime()
    applied: typing.List[typing.Tuple[str, str]] = []

    runtime.configure_entity(User, lambda table: applied.append(("first", table.name)))
    runtime.configure_entity(User, lambda table: applied.append(("second", table.name)))
    runtime.configure_entity(Group, lambda table: applied.append(("third", table.name)))

    assert applied == []
    assert [request.entity_type for request in runtime.pending] == [User, User, Group]

    runtime.initialize(memory_orm, None)

    assert applied == [("first", "user"), ("second", "user"), ("third", "group")]
    assert runtime.pending == ()


def test_configuration_after_initialize_is_applied_immediately(memory_orm: MemoryOrm):
    runtime = Runtime()
    runtime.initialize(memory_orm)

    def mark(table: MemoryTable) -> None:
        table.options["marked"] = True

    runtime.configure_entity(User, mark)

    assert memory_orm.table_for(User).options == {"marked": True}
    assert runtime.pending == ()


def test_entity_configure_goes_through_its_runtime(runtime: Runtime, memory_orm: MemoryOrm):
    User.configure(lambda table: table.options.update(comment="users"))
    assert len(runtime.pending) == 1

    runtime.initialize(memory_orm)

    assert memory_orm.table_for(User).options == {"comment": "users"}


def test_configuration_may_configure_further_entities(memory_orm: MemoryOrm):
    runtime = Runtime()
    applied: typing.List[str] = []

    def configure_user(table: MemoryTable) -> None:
        applied.append(table.name)
        runtime.configure_entity(Group, lambda group_table: applied.append(group_table.name))

    runtime.configure_entity(User, configure_user)
    runtime.initialize(memory_orm)

    assert applied == ["user", "group"]
    assert runtime.pending == ()


def test_configuration_made_during_replay_is_applied_after_queued_requests(memory_orm: MemoryOrm):
    runtime = Runtime()
    applied: typing.List[str] = []

    def first(table: MemoryTable) -> None:
        applied.append("first")
        runtime.configure_entity(Group, lambda group_table: applied.append("nested"))

    runtime.configure_entity(User, first)
    runtime.configure_entity(User, lambda table: applied.append("second"))
    runtime.initialize(memory_orm)

    assert applied == ["first", "second", "nested"]

    runtime.configure_entity(Group, lambda table: applied.append("after"))
    assert applied[-1] == "after"


def test_failing_replay_still_applies_remaining_requests(memory_orm: MemoryOrm):
    runtime = Runtime()
    applied: typing.List[str] = []

    def fail(table: MemoryTable) -> None:
        raise ValueError("broken configuration")

    runtime.configure_entity(User, fail)
    runtime.configure_entity(Group, lambda table: applied.append(table.name))

    with pytest.raises(ValueError, match="broken configuration"):
        runtime.initialize(memory_orm)

    assert applied == ["group"]
    assert runtime.pending == ()
    assert runtime.orm is memory_orm

    runtime.configure_entity(User, lambda table: applied.append(table.name))
    assert applied == ["group", "user"]


def test_concurrent_configuration_is_applied_exactly_once(memory_orm: MemoryOrm):
    runtime = Runtime()
    applied: typing.List[int] = []
    lock = threading.Lock()
    start = threading.Barrier(9)

    def configure(number: int) -> None:
        start.wait()
        for index in range(50):
            value = number * 100 + index

            def record(table: MemoryTable, value: int = value) -> None:
                with lock:
                    applied.append(value)

            runtime.configure_entity(User, record)

    def activate() -> None:
        start.wait()
        runtime.initialize(memory_orm)

    threads = [threading.Thread(target=configure, args=(number,)) for number in range(8)]
    threads.append(threading.Thread(target=activate))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(applied) == sorted(number * 100 + index for number in range(8) for index in range(50))
    assert runtime.pending == ()
    for number in range(8):
        from_thread = [value for value in applied if value // 100 == number]
        assert from_thread == sorted(from_thread)


def test_executed_statements_are_traced_with_thread_identity(
    memory_orm: MemoryOrm, caplog: pytest.LogCaptureFixture
):
    caplog.set_level(logging.DEBUG, logger="active_entity.runtime")
    runtime = Runtime()
    runtime.initialize(memory_orm)

    memory_orm.execute("SELECT * FROM user")

    traced = [record.getMessage() for record in caplog.records if "SELECT * FROM user" in record.getMessage()]
    assert traced == [f"Thread {threading.get_ident()} ({threading.current_thread().name}): SELECT * FROM user"]


def test_current_transaction_resolves_lazily(memory_orm: MemoryOrm):
    runtime = Runtime()
    assert runtime.current_transaction() is None

    calls = []
    runtime.initialize(memory_orm, lambda: calls.append(1) or "tx")

    assert calls == []
    assert runtime.current_transaction() == "tx"
    assert calls == [1]
