from typing import Generator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, declarative_base

from active_entity.runtime import Runtime
from active_entity.storages.sqlalchemy import SqlAlchemyOrm


@pytest.fixture()
def sa_base() -> DeclarativeMeta:
    return declarative_base()


@pytest.fixture()
def orm(sa_base: DeclarativeMeta, engine: Engine) -> Generator[SqlAlchemyOrm, None, None]:
    sa_base.metadata.drop_all(engine)
    sa_base.metadata.create_all(engine)
    yield SqlAlchemyOrm(engine)
    sa_base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def initialized(runtime: Runtime, orm: SqlAlchemyOrm) -> SqlAlchemyOrm:
    runtime.initialize(orm)
    return orm
