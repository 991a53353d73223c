from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from domain import Even, LineItem, Receipt, SplitMode
from main import app, get_session


@pytest.fixture
def session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(session):
    app.dependency_overrides[get_session] = lambda: session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def roster():
    return ["alice", "bob", "carol"]


@pytest.fixture
def dinner():
    """Alice pays 90.00, split evenly across the trip."""
    return Receipt(
        id="r1",
        payer="alice",
        total_amount=Decimal("90.00"),
        split_mode=SplitMode.LINE_ITEM,
        line_items=[LineItem(amount=Decimal("90.00"), policy=Even(["alice", "bob", "carol"]))],
    )


@pytest.fixture
def groceries():
    """Bob pays 60.00; Alice takes half, Bob and Carol a quarter each."""
    return Receipt(
        id="r2",
        payer="bob",
        total_amount=Decimal("60.00"),
        split_mode=SplitMode.FULL,
        splits=[("alice", Decimal("50")), ("bob", Decimal("25")), ("carol", Decimal("25"))],
    )
