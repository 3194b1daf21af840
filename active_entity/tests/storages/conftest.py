import pytest
from _pytest.fixtures import SubRequest
from sqlalchemy.engine import Engine, create_engine
from sqlalchemy.pool import StaticPool


@pytest.fixture()
def engine(request: SubRequest) -> Engine:
    connection_url = request.config.getoption("--sqlalchemy-url")
    if connection_url == "sqlite://":
        # every connection to an in-memory database would otherwise see an empty one
        return create_engine(connection_url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    return create_engine(connection_url)
