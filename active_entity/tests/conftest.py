import pytest
from _pytest.config.argparsing import Parser

from active_entity.entity import BaseEntity
from active_entity.runtime import Runtime
from active_entity.storages.memory import MemoryOrm


def pytest_addoption(parser: Parser) -> None:
    parser.addoption("--sqlalchemy-url", action="store", default="sqlite://")


@pytest.fixture()
def runtime(monkeypatch: pytest.MonkeyPatch) -> Runtime:
    runtime = Runtime()
    monkeypatch.setattr(BaseEntity, "runtime", runtime)
    return runtime


@pytest.fixture()
def memory_orm() -> MemoryOrm:
    return MemoryOrm()
