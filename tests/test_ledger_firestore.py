from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from ledger_sync.common.errors import LedgerBusy, UpstreamReadFailure, UpstreamWriteFailure
from ledger_sync.ledger.firestore import FirestoreTransactionStore, LedgerWriteLease, stable_transaction_doc_id
from ledger_sync.ledger import firestore as ledger_firestore
from ledger_sync.ledger.models import Transaction
from ledger_sync.reconciliation.service import ReconciliationService

PATH = "artifacts/demo/public/data/transactions"


class _FakeSnap:
    def __init__(self, *, doc_id: str, exists: bool, data: dict[str, Any] | None):
        self.id = doc_id
        self.exists = bool(exists)
        self._data = dict(data or {})

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


class _FakeDocRef:
    def __init__(self, *, store: dict[str, dict[str, Any]], path: str, doc_id: str) -> None:
        self._store = store
        self.id = doc_id
        self.path = f"{path}/{doc_id}"

    def create(self, data: dict[str, Any]) -> None:
        from google.api_core.exceptions import AlreadyExists

        if self.path in self._store:
            raise AlreadyExists("already exists")
        self._store[self.path] = dict(data)

    def get(self, *, transaction: object = None) -> _FakeSnap:  # noqa: ARG002 - matches firestore shape
        data = self._store.get(self.path)
        return _FakeSnap(doc_id=self.id, exists=data is not None, data=data)


class _FakeCollection:
    def __init__(self, *, store: dict[str, dict[str, Any]], path: str, db: "_FakeDB") -> None:
        self._store = store
        self._path = path
        self._db = db

    def document(self, doc_id: str | None = None) -> _FakeDocRef:
        if doc_id is None:
            self._db.auto_ids += 1
            doc_id = f"auto{self._db.auto_ids}"
        return _FakeDocRef(store=self._store, path=self._path, doc_id=doc_id)

    def stream(self):
        if self._db.fail_reads:
            raise RuntimeError("firestore unavailable")
        prefix = self._path + "/"
        # Firestore streams a collection in document id order.
        for path, data in sorted(self._store.items()):
            rest = path[len(prefix):] if path.startswith(prefix) else None
            if rest and "/" not in rest:
                yield _FakeSnap(doc_id=rest, exists=True, data=data)


class _FakeTransaction:
    def __init__(self, *, store: dict[str, dict[str, Any]]) -> None:
        self._store = store

    def set(self, ref: _FakeDocRef, data: dict[str, Any]) -> None:
        self._store[ref.path] = dict(data)

    def delete(self, ref: _FakeDocRef) -> None:
        self._store.pop(ref.path, None)


class _FakeDB:
    def __init__(self) -> None:
        self.store: dict[str, dict[str, Any]] = {}
        self.auto_ids = 0
        self.fail_reads = False

    def collection(self, path: str) -> _FakeCollection:
        return _FakeCollection(store=self.store, path=path, db=self)

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(store=self.store)


class _FakeFirestoreModule:
    @staticmethod
    def transactional(fn):
        def _runner(txn):
            return fn(txn)

        return _runner


def _tx(order_id: str, *, hours: int = 0) -> Transaction:
    return Transaction(
        order_id=order_id,
        order_date=datetime(2025, 1, 2, tzinfo=timezone.utc) + timedelta(hours=hours),
        currency_slug="usdt",
        service_type="buy",
        currency_amount=Decimal("10"),
        currency_price=Decimal("100"),
        cost_basis=Decimal("100"),
        net_profit=Decimal("0"),
    )


def _lease(db: _FakeDB, *, holder: str, ttl_s: float = 60.0) -> LedgerWriteLease:
    return LedgerWriteLease(db=db, name="transactions", ttl_s=ttl_s, holder=holder, firestore_module=_FakeFirestoreModule())


def test_add_transaction_writes_under_stable_doc_id_and_reads_back() -> None:
    db = _FakeDB()
    store = FirestoreTransactionStore(collection_path=PATH, db=db)

    doc_id = store.add_transaction(_tx("o1"))
    history = store.load_history()

    assert doc_id == stable_transaction_doc_id(order_id="o1")
    assert [t.order_id for t in history] == ["o1"]
    assert history[0].cost_basis == Decimal("100")
    assert "createdAt" in db.store[f"{PATH}/{doc_id}"]


def test_add_transaction_twice_for_same_order_is_a_write_failure() -> None:
    store = FirestoreTransactionStore(collection_path=PATH, db=_FakeDB())
    store.add_transaction(_tx("o1"))

    with pytest.raises(UpstreamWriteFailure):
        store.add_transaction(_tx("o1"))


def test_transactions_without_order_id_get_auto_ids() -> None:
    db = _FakeDB()
    store = FirestoreTransactionStore(collection_path=PATH, db=db)

    a = store.add_transaction(_tx(""))
    b = store.add_transaction(_tx(""))

    assert a != b
    assert len(store.get_all_documents()) == 2


def test_get_all_documents_materializes_order_dates() -> None:
    db = _FakeDB()
    db.store[f"{PATH}/x"] = {"orderid": "x", "orderdate": "2025-01-02T09:00:00Z", "services_type": "buy"}

    docs = FirestoreTransactionStore(collection_path=PATH, db=db).get_all_documents()

    assert docs[0]["orderdate"] == datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc)


def test_read_errors_become_upstream_read_failures() -> None:
    db = _FakeDB()
    db.fail_reads = True

    with pytest.raises(UpstreamReadFailure):
        FirestoreTransactionStore(collection_path=PATH, db=db).get_all_documents()


def test_stored_document_without_order_date_is_a_read_failure() -> None:
    db = _FakeDB()
    db.store[f"{PATH}/x"] = {"orderid": "x"}

    with pytest.raises(UpstreamReadFailure):
        FirestoreTransactionStore(collection_path=PATH, db=db).get_all_documents()


def test_lease_is_written_and_removed() -> None:
    db = _FakeDB()

    with _lease(db, holder="a"):
        assert db.store["ledger_locks/transactions"]["holder"] == "a"

    assert "ledger_locks/transactions" not in db.store


def test_live_lease_held_by_someone_else_is_busy() -> None:
    db = _FakeDB()
    now = datetime.now(timezone.utc)
    db.store["ledger_locks/transactions"] = {"holder": "other", "expires_at": now + timedelta(minutes=5)}

    with pytest.raises(LedgerBusy):
        _lease(db, holder="a").acquire()

    # The process-local lock was released on failure: a fresh lease can still be taken once free.
    db.store.pop("ledger_locks/transactions")
    with _lease(db, holder="a"):
        pass


def test_expired_lease_is_taken_over() -> None:
    db = _FakeDB()
    db.store["ledger_locks/transactions"] = {
        "holder": "crashed",
        "expires_at": datetime.now(timezone.utc) - timedelta(seconds=1),
    }

    with _lease(db, holder="a"):
        assert db.store["ledger_locks/transactions"]["holder"] == "a"


def test_release_leaves_a_lease_taken_over_by_someone_else() -> None:
    db = _FakeDB()
    lease = _lease(db, holder="a")
    lease.acquire()
    db.store["ledger_locks/transactions"] = {"holder": "b", "expires_at": datetime.now(timezone.utc)}

    lease.release()

    assert db.store["ledger_locks/transactions"]["holder"] == "b"


def test_history_loads_in_arrival_order_not_doc_id_order() -> None:
    db = _FakeDB()
    t = datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc)
    db.store[f"{PATH}/aaa"] = {"orderid": "late", "orderdate": t, "services_type": "buy", "createdAt": t + timedelta(seconds=2)}
    db.store[f"{PATH}/zzz"] = {"orderid": "early", "orderdate": t, "services_type": "buy", "createdAt": t + timedelta(seconds=1)}
    db.store[f"{PATH}/mmm"] = {"orderid": "legacy", "orderdate": t, "services_type": "buy"}

    history = FirestoreTransactionStore(collection_path=PATH, db=db).load_history()

    assert [tx.order_id for tx in history] == ["legacy", "early", "late"]


def test_created_at_stamps_increase_when_the_clock_stands_still(monkeypatch) -> None:
    frozen = datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(ledger_firestore, "_utc_now", lambda: frozen)
    db = _FakeDB()
    store = FirestoreTransactionStore(collection_path=PATH, db=db)

    ids = [store.add_transaction(_tx(f"o{i}")) for i in range(3)]
    stamps = [db.store[f"{PATH}/{doc_id}"]["createdAt"] for doc_id in ids]

    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 3


def test_created_at_stamps_never_fall_behind_loaded_history(monkeypatch) -> None:
    now = datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(ledger_firestore, "_utc_now", lambda: now)
    db = _FakeDB()
    db.store[f"{PATH}/x"] = {"orderid": "x", "orderdate": now, "services_type": "buy", "createdAt": now + timedelta(minutes=1)}
    store = FirestoreTransactionStore(collection_path=PATH, db=db)
    store.load_history()

    doc_id = store.add_transaction(_tx("y"))

    assert db.store[f"{PATH}/{doc_id}"]["createdAt"] > now + timedelta(minutes=1)


def _same_date_records() -> list[dict[str, Any]]:
    t = "2025-01-02T09:00:00Z"
    # Doc ids sort o2 < o3 < o1, the reverse of the order these arrive in.
    return [
        {"orderid": "o1", "orderdate": t, "services_type": "sell", "currencie_slug": "usdt",
         "currency_amount": "5", "currency_price": "50"},
        {"orderid": "o2", "orderdate": t, "services_type": "buy", "currencie_slug": "usdt",
         "currency_amount": "10", "currency_price": "100"},
        {"orderid": "o3", "orderdate": "2025-01-02T10:00:00Z", "services_type": "sell", "currencie_slug": "usdt",
         "currency_amount": "1", "currency_price": "120", "Total Amount": "120"},
    ]


def test_same_date_orders_replay_in_arrival_order_across_batches() -> None:
    batch_db = _FakeDB()
    batch = ReconciliationService(store=FirestoreTransactionStore(collection_path=PATH, db=batch_db))
    in_one_batch = batch.reconcile_records(_same_date_records())

    single_db = _FakeDB()
    one_at_a_time = []
    for rec in _same_date_records():
        service = ReconciliationService(store=FirestoreTransactionStore(collection_path=PATH, db=single_db))
        one_at_a_time.extend(service.reconcile_records([rec]))

    # Sell first drives the pool to -5; the buy then lands on 5 units costing 1000.
    assert in_one_batch[2].cost_basis == Decimal("200")
    assert one_at_a_time[2].cost_basis == in_one_batch[2].cost_basis
    assert one_at_a_time[2].net_profit == in_one_batch[2].net_profit
