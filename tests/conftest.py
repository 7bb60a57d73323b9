import pytest
import os
import uuid
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import stockledger.models  # noqa: F401
from stockledger.core import clock
from stockledger.core.deps import get_db
from stockledger.db.base import Base
from stockledger.main import app
from stockledger.models.medicine import Medicine, Supplier
from stockledger.services.stock_transaction_service import TransactionRequest, process_transaction
from stockledger.services.transaction_types import StockTransactionType


def _memory_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def test_context():
    engine, session_local = _memory_session_factory()

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_local():
    engine, factory = _memory_session_factory()
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_local):
    session = session_local()
    try:
        yield session
    finally:
        session.close()


def seed_medicine(db, *, name: str = "Amoxicillin", reorder_level: int = 0, **fields) -> Medicine:
    medicine = Medicine(id=str(uuid.uuid4()), name=name, reorder_level=reorder_level, **fields)
    db.add(medicine)
    db.commit()
    return medicine


def seed_supplier(db, *, name: str = "Medilink Distributors") -> Supplier:
    supplier = Supplier(id=str(uuid.uuid4()), name=name)
    db.add(supplier)
    db.commit()
    return supplier


@pytest.fixture()
def make_medicine(db):
    def _make(**fields) -> Medicine:
        return seed_medicine(db, **fields)

    return _make


@pytest.fixture()
def supplier(db) -> Supplier:
    return seed_supplier(db)


@pytest.fixture()
def receive_batch(db, supplier):
    """Receive a new batch through the engine and return the TransactionResult."""

    def _receive(medicine: Medicine, *, quantity: int = 100, batch_number: str | None = None, expiry_date=None, **fields):
        return process_transaction(
            db,
            TransactionRequest(
                transaction_type=StockTransactionType.IN_NEW_BATCH,
                medicine_id=medicine.id,
                quantity=quantity,
                supplier_id=supplier.id,
                batch_number=batch_number or f"B-{uuid.uuid4().hex[:8]}",
                expiry_date=expiry_date or clock.today() + timedelta(days=365),
                **fields,
            ),
        )

    return _receive
