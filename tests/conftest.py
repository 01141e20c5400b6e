import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from greenfi.app import app
from greenfi.database import build_engine, build_session_factory, init_database

OWNER = "0xAAaaAAaaAAaaAAaaAAaaAAaaAAaaAAaaAAaaAAaa"
STAKER = "0xBBbbBBbbBBbbBBbbBBbbBBbbBBbbBBbbBBbbBBbb"
ETH = 10 ** 18


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def client(engine):
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    with TestClient(app) as c:
        yield c
