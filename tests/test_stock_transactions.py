from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from stockledger.core import clock
from stockledger.core.errors import (
    BaselineBelowOnHand,
    BatchNotFound,
    DuplicateBatchNumber,
    InsufficientStock,
    InvalidQuantitySign,
    InvalidTransactionRequest,
    LedgerEntryImmutable,
    LedgerEntryNotFound,
    MedicineNotFound,
    MissingRequiredReference,
    StockLockTimeout,
    StockPersistenceError,
    SupplierNotFound,
    UnsupportedTransactionType,
)
from stockledger.models.batch import Batch
from stockledger.models.stock_ledger import StockLedgerEntry
from stockledger.services import stock_transaction_service
from stockledger.services.batch_locks import BatchLockRegistry
from stockledger.services.ledger_service import verify_batch_ledger
from stockledger.services.stock_summary_service import get_medicine_stock_summary
from stockledger.services.stock_transaction_service import TransactionRequest, process_transaction
from stockledger.services.transaction_types import DECREASING_TYPES, StockTransactionType


def _ledger_count(db) -> int:
    return int(db.execute(select(func.count(StockLedgerEntry.id))).scalar_one())


def _batch_count(db) -> int:
    return int(db.execute(select(func.count(Batch.id))).scalar_one())


def _request(transaction_type, medicine, **fields) -> TransactionRequest:
    fields.setdefault("quantity", 1)
    return TransactionRequest(transaction_type=transaction_type, medicine_id=medicine.id, **fields)


def test_receive_new_batch_creates_batch_entry_and_summary(db, make_medicine, receive_batch):
    medicine = make_medicine()

    result = receive_batch(medicine, quantity=100, batch_number="AMX-001", user_id="pharmacist-1")

    assert result.message == "New Batch Received processed successfully."
    assert result.batch.batch_number == "AMX-001"
    assert result.batch.quantity_received == 100
    assert result.batch.current_quantity == 100
    entry = result.ledger_entry
    assert entry.transaction_type == "IN_NEW_BATCH"
    assert entry.batch_id == result.batch.id
    assert entry.quantity_change == 100
    assert entry.quantity_after_transaction == 100
    assert entry.user_id == "pharmacist-1"
    assert entry.notes == "Received new batch AMX-001"
    assert result.summary.total_quantity_in_stock == 100


def test_dispense_reduces_batch_and_records_negative_change(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=100).batch

    result = process_transaction(
        db,
        _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=30),
    )

    assert result.batch.current_quantity == 70
    assert result.ledger_entry.quantity_change == -30
    assert result.ledger_entry.quantity_after_transaction == 70
    assert result.summary.total_quantity_in_stock == 70
    assert result.message == "Dispensed/Sold processed successfully."


def test_overdraw_is_rejected_and_leaves_no_trace(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=5, batch_number="AMX-005").batch
    entries_before = _ledger_count(db)

    with pytest.raises(InsufficientStock) as exc_info:
        process_transaction(
            db,
            _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=6),
        )

    error = exc_info.value
    assert error.attempted == 6
    assert error.available == 5
    assert error.batch_id == batch.id
    assert error.status_code == 422
    assert error.message == "Cannot Dispensed/Sold 6 units. Only 5 units available in batch AMX-005."
    assert _ledger_count(db) == entries_before
    db.refresh(batch)
    assert batch.current_quantity == 5
    assert get_medicine_stock_summary(db, medicine.id).total_quantity_in_stock == 5


def test_paracetamol_lifecycle(db, make_medicine, receive_batch):
    medicine = make_medicine(name="Paracetamol")
    received = receive_batch(medicine, quantity=100)
    batch = received.batch
    assert (batch.current_quantity, received.summary.total_quantity_in_stock) == (100, 100)

    dispensed = process_transaction(
        db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=30)
    )
    assert dispensed.ledger_entry.quantity_after_transaction == 70
    assert dispensed.summary.total_quantity_in_stock == 70

    with pytest.raises(InsufficientStock) as exc_info:
        process_transaction(db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=80))
    assert (exc_info.value.attempted, exc_info.value.available) == (80, 70)

    added = process_transaction(db, _request(StockTransactionType.ADJUST_ADD, medicine, batch_id=batch.id, quantity=5))
    assert added.batch.current_quantity == 75
    assert added.summary.total_quantity_in_stock == 75

    disposed = process_transaction(
        db, _request(StockTransactionType.DISPOSAL_EXPIRED, medicine, batch_id=batch.id, quantity=75)
    )
    assert disposed.ledger_entry.quantity_change == -75
    assert disposed.batch.current_quantity == 0
    assert disposed.summary.total_quantity_in_stock == 0
    assert verify_batch_ledger(db, disposed.batch).consistent


@pytest.mark.parametrize("transaction_type", sorted(DECREASING_TYPES, key=lambda member: member.value))
def test_every_decreasing_type_subtracts(db, make_medicine, receive_batch, transaction_type):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch

    result = process_transaction(db, _request(transaction_type, medicine, batch_id=batch.id, quantity=3))

    assert result.ledger_entry.quantity_change == -3
    assert result.ledger_entry.quantity_after_transaction == 7
    assert result.batch.current_quantity == 7


@pytest.mark.parametrize("transaction_type", sorted(DECREASING_TYPES, key=lambda member: member.value))
def test_decreasing_types_can_empty_a_batch(db, make_medicine, receive_batch, transaction_type):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=4).batch

    result = process_transaction(db, _request(transaction_type, medicine, batch_id=batch.id, quantity=4))

    assert result.batch.current_quantity == 0
    assert result.ledger_entry.quantity_after_transaction == 0


def test_adjust_add_increases_existing_batch(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch

    result = process_transaction(
        db,
        _request(StockTransactionType.ADJUST_ADD, medicine, batch_id=batch.id, quantity=4, notes="Recount"),
    )

    assert result.batch.current_quantity == 14
    assert result.ledger_entry.quantity_change == 4
    assert result.ledger_entry.notes == "Recount"
    assert result.summary.total_quantity_in_stock == 14


@pytest.mark.parametrize(
    "transaction_type",
    [StockTransactionType.ADJUST_ADD, *sorted(DECREASING_TYPES, key=lambda member: member.value)],
)
def test_batch_is_required_for_batch_types(db, make_medicine, transaction_type):
    medicine = make_medicine()

    with pytest.raises(MissingRequiredReference) as exc_info:
        process_transaction(db, _request(transaction_type, medicine, quantity=1))

    assert exc_info.value.details()["field"] == "batch_id"
    assert _ledger_count(db) == 0


def test_unsupported_type_is_rejected(db, make_medicine):
    medicine = make_medicine()

    with pytest.raises(UnsupportedTransactionType):
        process_transaction(db, _request("TRANSFER", medicine, quantity=1))


def test_type_strings_are_accepted(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=3).batch

    result = process_transaction(db, _request("out_dispense", medicine, batch_id=batch.id, quantity=1))

    assert result.transaction_type is StockTransactionType.OUT_DISPENSE


def test_medicine_is_required(db):
    with pytest.raises(MissingRequiredReference):
        process_transaction(
            db,
            TransactionRequest(transaction_type=StockTransactionType.INITIAL_STOCK, medicine_id=None, quantity=1),
        )


@pytest.mark.parametrize("quantity", [0, -3])
def test_non_positive_quantity_is_rejected_for_movements(db, make_medicine, receive_batch, quantity):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=3).batch

    with pytest.raises(InvalidTransactionRequest):
        process_transaction(
            db,
            _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=quantity),
        )


def test_future_transaction_date_is_rejected(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=3).batch

    with pytest.raises(InvalidTransactionRequest):
        process_transaction(
            db,
            _request(
                StockTransactionType.OUT_DISPENSE,
                medicine,
                batch_id=batch.id,
                transaction_date=clock.utcnow() + timedelta(hours=1),
            ),
        )


def test_backdated_naive_transaction_date_is_read_as_utc(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=3).batch
    backdated = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=2)

    result = process_transaction(
        db,
        _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, transaction_date=backdated),
    )

    assert result.ledger_entry.transaction_date.replace(tzinfo=None) == backdated


def test_unknown_references_are_rejected(db, make_medicine, receive_batch):
    medicine = make_medicine()
    receive_batch(medicine, quantity=3)

    with pytest.raises(MedicineNotFound):
        process_transaction(
            db,
            TransactionRequest(
                transaction_type=StockTransactionType.INITIAL_STOCK,
                medicine_id="missing-medicine",
                quantity=1,
            ),
        )
    with pytest.raises(BatchNotFound):
        process_transaction(db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id="missing-batch"))
    with pytest.raises(SupplierNotFound):
        process_transaction(
            db,
            _request(
                StockTransactionType.IN_NEW_BATCH,
                medicine,
                quantity=5,
                supplier_id="missing-supplier",
                batch_number="X-1",
                expiry_date=clock.today() + timedelta(days=90),
            ),
        )
    assert _batch_count(db) == 1


def test_batch_of_another_medicine_is_rejected(db, make_medicine, receive_batch):
    amoxicillin = make_medicine(name="Amoxicillin")
    paracetamol = make_medicine(name="Paracetamol")
    batch = receive_batch(amoxicillin, quantity=10).batch

    with pytest.raises(InvalidTransactionRequest):
        process_transaction(
            db,
            _request(StockTransactionType.OUT_DISPENSE, paracetamol, batch_id=batch.id, quantity=1),
        )

    db.refresh(batch)
    assert batch.current_quantity == 10


def test_batch_number_is_unique_per_medicine(db, make_medicine, receive_batch):
    amoxicillin = make_medicine(name="Amoxicillin")
    paracetamol = make_medicine(name="Paracetamol")
    receive_batch(amoxicillin, batch_number="LOT-1")

    with pytest.raises(DuplicateBatchNumber):
        receive_batch(amoxicillin, batch_number="LOT-1")

    other = receive_batch(paracetamol, batch_number="LOT-1")
    assert other.batch.batch_number == "LOT-1"
    assert _batch_count(db) == 2


def test_soft_deleted_batch_is_invisible_and_frees_its_number(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10, batch_number="LOT-9").batch
    batch.deleted_at = clock.utcnow()
    db.commit()

    with pytest.raises(BatchNotFound):
        process_transaction(db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id))

    replacement = receive_batch(medicine, quantity=4, batch_number="LOT-9")
    assert replacement.batch.id != batch.id
    assert replacement.summary.total_quantity_in_stock == 4


def test_new_batch_requires_its_details(db, make_medicine, supplier):
    medicine = make_medicine()

    with pytest.raises(MissingRequiredReference):
        process_transaction(
            db,
            _request(
                StockTransactionType.IN_NEW_BATCH,
                medicine,
                quantity=5,
                batch_number="X-1",
                expiry_date=clock.today() + timedelta(days=30),
            ),
        )
    with pytest.raises(InvalidTransactionRequest) as exc_info:
        process_transaction(
            db,
            _request(StockTransactionType.IN_NEW_BATCH, medicine, quantity=5, supplier_id=supplier.id),
        )
    assert exc_info.value.details()["missing_fields"] == ["batch_number", "expiry_date"]
    assert _batch_count(db) == 0


def test_expiry_before_manufacture_is_rejected(db, make_medicine, supplier):
    medicine = make_medicine()
    today = clock.today()

    with pytest.raises(InvalidTransactionRequest):
        process_transaction(
            db,
            _request(
                StockTransactionType.IN_NEW_BATCH,
                medicine,
                quantity=5,
                supplier_id=supplier.id,
                batch_number="X-1",
                manufacture_date=today,
                expiry_date=today - timedelta(days=1),
            ),
        )


def test_initial_stock_without_batch_records_medicine_total(db, make_medicine, receive_batch):
    medicine = make_medicine()
    receive_batch(medicine, quantity=40)
    batches_before = _batch_count(db)

    result = process_transaction(db, _request(StockTransactionType.INITIAL_STOCK, medicine, quantity=10))

    assert result.batch is None
    assert result.ledger_entry.batch_id is None
    assert result.ledger_entry.quantity_change == 10
    assert result.ledger_entry.quantity_after_transaction == 50
    assert _batch_count(db) == batches_before
    # The summary follows batches only.
    assert result.summary.total_quantity_in_stock == 40


def test_initial_stock_without_batch_ignores_expired_batches(db, make_medicine, receive_batch):
    medicine = make_medicine()
    receive_batch(medicine, quantity=40, expiry_date=clock.today() - timedelta(days=1))

    result = process_transaction(db, _request(StockTransactionType.INITIAL_STOCK, medicine, quantity=10))

    assert result.ledger_entry.quantity_after_transaction == 10


def test_initial_stock_accepts_zero(db, make_medicine):
    medicine = make_medicine()

    result = process_transaction(db, _request(StockTransactionType.INITIAL_STOCK, medicine, quantity=0))

    assert result.ledger_entry.quantity_change == 0
    assert result.ledger_entry.quantity_after_transaction == 0


def test_initial_stock_can_open_a_new_batch(db, make_medicine, supplier):
    medicine = make_medicine()

    result = process_transaction(
        db,
        _request(
            StockTransactionType.INITIAL_STOCK,
            medicine,
            quantity=25,
            create_new_batch=True,
            supplier_id=supplier.id,
            batch_number="OPEN-1",
            expiry_date=clock.today() + timedelta(days=200),
        ),
    )

    assert result.batch.batch_number == "OPEN-1"
    assert result.batch.current_quantity == 25
    assert result.ledger_entry.transaction_type == "INITIAL_STOCK"
    assert result.ledger_entry.quantity_after_transaction == 25
    assert result.summary.total_quantity_in_stock == 25


def test_initial_stock_rejects_batch_and_new_batch_together(db, make_medicine, receive_batch, supplier):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=3).batch

    with pytest.raises(InvalidTransactionRequest):
        process_transaction(
            db,
            _request(
                StockTransactionType.INITIAL_STOCK,
                medicine,
                batch_id=batch.id,
                create_new_batch=True,
                supplier_id=supplier.id,
                batch_number="OPEN-2",
                expiry_date=clock.today() + timedelta(days=200),
            ),
        )


def test_initial_stock_on_existing_batch_sets_baseline(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch

    result = process_transaction(
        db,
        _request(StockTransactionType.INITIAL_STOCK, medicine, batch_id=batch.id, quantity=25),
        baseline_override=True,
    )

    assert result.batch.current_quantity == 25
    assert result.ledger_entry.quantity_change == 15
    assert result.ledger_entry.quantity_after_transaction == 25
    assert verify_batch_ledger(db, result.batch).consistent


def test_initial_stock_baseline_below_on_hand_is_rejected(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch
    entries_before = _ledger_count(db)

    with pytest.raises(BaselineBelowOnHand):
        process_transaction(
            db,
            _request(StockTransactionType.INITIAL_STOCK, medicine, batch_id=batch.id, quantity=4),
            baseline_override=True,
        )

    db.refresh(batch)
    assert batch.current_quantity == 10
    assert _ledger_count(db) == entries_before


def test_initial_stock_on_existing_batch_adds_without_override(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch

    result = process_transaction(
        db,
        _request(StockTransactionType.INITIAL_STOCK, medicine, batch_id=batch.id, quantity=25),
        baseline_override=False,
    )

    assert result.batch.current_quantity == 35
    assert result.ledger_entry.quantity_change == 25


def test_related_transaction_must_exist(db, make_medicine, receive_batch):
    medicine = make_medicine()
    received = receive_batch(medicine, quantity=10)

    linked = process_transaction(
        db,
        _request(
            StockTransactionType.RETURN_SUPPLIER,
            medicine,
            batch_id=received.batch.id,
            quantity=2,
            related_transaction_id=received.ledger_entry.id,
        ),
    )
    assert linked.ledger_entry.related_transaction_id == received.ledger_entry.id

    with pytest.raises(LedgerEntryNotFound):
        process_transaction(
            db,
            _request(
                StockTransactionType.RETURN_SUPPLIER,
                medicine,
                batch_id=received.batch.id,
                quantity=2,
                related_transaction_id=987654,
            ),
        )


def test_ledger_replays_to_current_quantity(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=50).batch
    moves = [
        (StockTransactionType.OUT_DISPENSE, 12),
        (StockTransactionType.ADJUST_ADD, 3),
        (StockTransactionType.DISPOSAL_DAMAGED, 1),
        (StockTransactionType.INITIAL_STOCK, 60),
        (StockTransactionType.RETURN_SUPPLIER, 10),
    ]
    for transaction_type, quantity in moves:
        process_transaction(db, _request(transaction_type, medicine, batch_id=batch.id, quantity=quantity))

    db.refresh(batch)
    check = verify_batch_ledger(db, batch)
    assert batch.current_quantity == 50
    assert check.entry_count == 6
    assert check.replayed_quantity == 50
    assert check.last_quantity_after_transaction == 50
    assert check.consistent


def test_ledger_entries_cannot_be_changed(db, make_medicine, receive_batch):
    medicine = make_medicine()
    entry = receive_batch(medicine, quantity=5).ledger_entry

    entry.quantity_change = 500
    with pytest.raises(LedgerEntryImmutable):
        db.commit()
    db.rollback()

    db.delete(entry)
    with pytest.raises(LedgerEntryImmutable):
        db.commit()
    db.rollback()

    assert db.get(StockLedgerEntry, entry.id).quantity_change == 5


def test_wrong_sign_is_refused_as_invariant_violation(db, make_medicine, receive_batch, monkeypatch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch
    entries_before = _ledger_count(db)
    monkeypatch.setattr(stock_transaction_service, "resolve_signed_quantity", lambda _type, magnitude: magnitude)

    with pytest.raises(InvalidQuantitySign) as exc_info:
        process_transaction(db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=2))

    assert exc_info.value.status_code == 500
    db.refresh(batch)
    assert batch.current_quantity == 10
    assert _ledger_count(db) == entries_before


def test_failed_ledger_write_rolls_back_batch_change(db, make_medicine, receive_batch, monkeypatch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch
    entries_before = _ledger_count(db)

    def failing_append(*args, **kwargs):
        raise OperationalError("INSERT INTO stock_ledger", {}, Exception("disk I/O error"))

    monkeypatch.setattr(stock_transaction_service, "append_ledger_entry", failing_append)

    with pytest.raises(StockPersistenceError) as exc_info:
        process_transaction(db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=4))

    assert exc_info.value.retryable
    db.refresh(batch)
    assert batch.current_quantity == 10
    assert _ledger_count(db) == entries_before


def test_summary_refresh_failure_keeps_committed_movement(db, make_medicine, receive_batch, monkeypatch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch

    def failing_refresh(*args, **kwargs):
        raise SQLAlchemyError("summary table locked")

    monkeypatch.setattr(stock_transaction_service, "refresh_medicine_stock_summary", failing_refresh)

    result = process_transaction(db, _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=4))

    assert result.summary is None
    assert result.batch.current_quantity == 6
    assert db.get(StockLedgerEntry, result.ledger_entry.id) is not None


def test_busy_batch_times_out_without_changes(db, make_medicine, receive_batch):
    medicine = make_medicine()
    batch = receive_batch(medicine, quantity=10).batch
    locks = BatchLockRegistry()

    with locks.hold(batch.id, timeout=1):
        with pytest.raises(StockLockTimeout) as exc_info:
            process_transaction(
                db,
                _request(StockTransactionType.OUT_DISPENSE, medicine, batch_id=batch.id, quantity=1),
                locks=locks,
                lock_timeout=0.05,
            )

    assert exc_info.value.retryable
    assert exc_info.value.status_code == 503
    assert locks.active_batches() == 0
    db.refresh(batch)
    assert batch.current_quantity == 10
