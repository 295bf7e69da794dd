from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from ledger_sync.common.errors import InvalidServiceType, UpstreamWriteFailure
from ledger_sync.ledger.models import Transaction
from ledger_sync.reconciliation.service import ReconciliationService, reconcile_batch

T0 = datetime(2025, 1, 2, 9, 0, tzinfo=timezone.utc)


def _record(i: int, side: str, amount: str, price: str, **extra: Any) -> dict[str, Any]:
    rec = {
        "orderid": f"o{i}",
        "orderdate": (T0 + timedelta(hours=i)).isoformat(),
        "services_type": side,
        "currencie_slug": extra.pop("slug", "usdt"),
        "currency_amount": amount,
        "currency_price": price,
    }
    rec.update(extra)
    return rec


def _tx(i: int, side: str, amount: str, price: str, **extra: Any) -> Transaction:
    return Transaction.from_record(_record(i, side, amount, price, **extra))


class _MemoryStore:
    def __init__(self, history: list[Transaction] | None = None, *, fail_on: str | None = None) -> None:
        self.docs: list[Transaction] = list(history or [])
        self.loads = 0
        self._fail_on = fail_on

    def load_history(self) -> list[Transaction]:
        self.loads += 1
        return list(self.docs)

    def add_transaction(self, tx: Transaction) -> str:
        if tx.order_id == self._fail_on:
            raise UpstreamWriteFailure(f"write failed for {tx.order_id}")
        self.docs.append(tx)
        return tx.order_id


def test_reconcile_batch_sell_after_buy_in_history() -> None:
    persisted: list[Transaction] = []
    history = [_tx(1, "buy", "10", "100")]
    new = [_tx(2, "sell", "4", "150", **{"Total Amount": "600", "ActualNetwork Wage": "5"})]

    out = reconcile_batch(history, new, persist=persisted.append)

    assert [t.order_id for t in persisted] == ["o2"]
    assert out[0].cost_basis == Decimal("100")
    assert out[0].net_profit == Decimal("195")


def test_reconcile_batch_first_transaction_on_empty_history() -> None:
    out = reconcile_batch([], [_tx(1, "buy", "10", "100")], persist=lambda tx: None)

    assert out[0].cost_basis == Decimal("100")
    assert out[0].net_profit == Decimal("0")


def test_later_items_see_earlier_items_of_the_same_batch() -> None:
    new = [_tx(1, "buy", "10", "100"), _tx(2, "buy", "10", "200"), _tx(3, "sell", "5", "250", **{"Total Amount": "1250"})]

    out = reconcile_batch([], new, persist=lambda tx: None)

    # Pool cost after two buys is 150, not the 0.98 fallback.
    assert out[2].cost_basis == Decimal("150")
    assert out[2].net_profit == Decimal("500")


def test_history_is_replayed_in_date_order_not_arrival_order() -> None:
    # Stored out of order: the later buy arrived first.
    history = [_tx(3, "buy", "10", "300"), _tx(1, "buy", "10", "100"), _tx(2, "sell", "10", "150")]

    out = reconcile_batch(history, [_tx(4, "sell", "1", "400", **{"Total Amount": "400"})], persist=lambda tx: None)

    # Date order: buy@100, sell all (cost stays 100), buy@300 -> (0*100 + 10*300)/10 = 300.
    assert out[0].cost_basis == Decimal("300")


def test_one_batch_of_n_matches_n_batches_of_one() -> None:
    records = [
        _record(1, "buy", "10", "100", **{"Vip Amount": "1"}),
        _record(2, "buy", "5", "130", **{"Fix Wage": "2"}),
        _record(3, "sell", "8", "150", **{"Total Amount": "1200", "ActualNetwork Wage": "3"}),
        _record(4, "sell", "2", "10", slug="btc", **{"Total Amount": "20"}),
        _record(5, "buy", "1", "90"),
        _record(6, "sell", "9", "160", **{"Total Amount": "1440"}),
    ]

    batch_store = _MemoryStore()
    ReconciliationService(store=batch_store).reconcile_records(records)

    single_store = _MemoryStore()
    single_service = ReconciliationService(store=single_store)
    for rec in records:
        single_service.reconcile_records([rec])

    assert single_store.loads == len(records)
    assert [(t.order_id, t.cost_basis, t.net_profit) for t in batch_store.docs] == [
        (t.order_id, t.cost_basis, t.net_profit) for t in single_store.docs
    ]


def test_failure_aborts_the_rest_of_the_batch_and_keeps_earlier_writes() -> None:
    store = _MemoryStore(fail_on="o2")
    service = ReconciliationService(store=store)

    with pytest.raises(UpstreamWriteFailure):
        service.reconcile_records([_record(1, "buy", "1", "10"), _record(2, "buy", "1", "10"), _record(3, "buy", "1", "10")])

    assert [t.order_id for t in store.docs] == ["o1"]


def test_invalid_service_type_fails_before_persisting_it() -> None:
    store = _MemoryStore()

    with pytest.raises(InvalidServiceType):
        ReconciliationService(store=store).reconcile_records([_record(1, "buy", "1", "10"), _record(2, "swap", "1", "10")])

    assert [t.order_id for t in store.docs] == ["o1"]


def test_invalid_service_type_in_history_fails_fast() -> None:
    store = _MemoryStore([_tx(1, "gift", "1", "10")])

    with pytest.raises(InvalidServiceType):
        ReconciliationService(store=store).reconcile_records([_record(2, "buy", "1", "10")])

    assert len(store.docs) == 1


def test_configured_fallback_discount_is_used() -> None:
    store = _MemoryStore()
    service = ReconciliationService(store=store, fallback_discount=Decimal("0.9"))

    out = service.reconcile_records([_record(1, "sell", "1", "100", **{"Total Amount": "100"})])

    assert out[0].cost_basis == Decimal("90.0")
    assert out[0].net_profit == Decimal("10.0")


def test_lease_is_held_around_read_and_writes() -> None:
    events: list[str] = []

    class _RecordingStore(_MemoryStore):
        def load_history(self) -> list[Transaction]:
            events.append("read")
            return super().load_history()

        def add_transaction(self, tx: Transaction) -> str:
            events.append(f"write:{tx.order_id}")
            return super().add_transaction(tx)

    @contextmanager
    def _lease():
        events.append("acquire")
        try:
            yield
        finally:
            events.append("release")

    service = ReconciliationService(store=_RecordingStore(), lease_factory=_lease)
    service.reconcile_records([_record(1, "buy", "1", "10"), _record(2, "sell", "1", "12")])

    assert events == ["acquire", "read", "write:o1", "write:o2", "release"]
