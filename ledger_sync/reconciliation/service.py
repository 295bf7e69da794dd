from __future__ import annotations

import contextlib
import logging
from decimal import Decimal
from typing import Any, Callable, ContextManager, Iterable, Mapping, Optional, Protocol, Sequence

from ledger_sync.common.config import DEFAULT_SELL_FALLBACK_DISCOUNT
from ledger_sync.common.logging import log_event
from ledger_sync.ledger.models import Transaction
from ledger_sync.ledger.pools import compute_cost_basis_and_profit, replay_pools

logger = logging.getLogger(__name__)


class TransactionStore(Protocol):
    def load_history(self) -> list[Transaction]: ...

    def add_transaction(self, tx: Transaction) -> str: ...


def enrich_transaction(
    history: Iterable[Transaction],
    tx: Transaction,
    *,
    fallback_discount: Decimal = Decimal(DEFAULT_SELL_FALLBACK_DISCOUNT),
) -> Transaction:
    """
    Cost basis + net profit for `tx` against pools replayed from `history`.

    The pools are rebuilt from empty on every call; nothing is cached between calls.
    """
    pools = replay_pools(history)
    cost_basis, net_profit = compute_cost_basis_and_profit(pools, tx, fallback_discount=fallback_discount)
    return tx.enriched(cost_basis=cost_basis, net_profit=net_profit)


def reconcile_batch(
    existing: Sequence[Transaction],
    new: Sequence[Transaction],
    *,
    persist: Callable[[Transaction], Any],
    fallback_discount: Decimal = Decimal(DEFAULT_SELL_FALLBACK_DISCOUNT),
) -> list[Transaction]:
    """
    Merge `new` into the ledger one transaction at a time, in input order.

    `existing` must be the complete committed history. Each new transaction sees
    pools replayed over the history plus every earlier item of this batch, sorted
    by order date (stable). Each enriched transaction is persisted before the next
    one is processed; a failure stops the batch and leaves earlier items committed.
    """
    working: list[Transaction] = list(existing)
    out: list[Transaction] = []

    for tx in new:
        enriched = enrich_transaction(working, tx, fallback_discount=fallback_discount)
        working.append(enriched)
        persist(enriched)
        out.append(enriched)
        log_event(
            logger,
            "reconcile.tx_enriched",
            order_id=enriched.order_id,
            currency_slug=enriched.currency_slug,
            service_type=enriched.service_type,
            cost_basis=enriched.cost_basis,
            net_profit=enriched.net_profit,
        )

    return out


class ReconciliationService:
    """
    Loads the full history, reconciles a batch of raw transactions against it and
    persists each enriched transaction through the store.

    `lease_factory` (optional) returns a context manager held around the
    read-history + append sequence so concurrent batches cannot interleave.
    """

    def __init__(
        self,
        *,
        store: TransactionStore,
        fallback_discount: Decimal = Decimal(DEFAULT_SELL_FALLBACK_DISCOUNT),
        lease_factory: Optional[Callable[[], ContextManager[Any]]] = None,
    ) -> None:
        self._store = store
        self._fallback_discount = fallback_discount
        self._lease_factory = lease_factory

    def reconcile_records(self, records: Sequence[Mapping[str, Any]]) -> list[Transaction]:
        # Parse everything up front: a malformed record fails the batch before any write.
        new = [Transaction.from_record(r) for r in records]
        return self.reconcile(new)

    def reconcile(self, new: Sequence[Transaction]) -> list[Transaction]:
        lease = self._lease_factory() if self._lease_factory is not None else contextlib.nullcontext()
        with lease:
            history = self._store.load_history()
            log_event(logger, "reconcile.batch_started", history_count=len(history), batch_count=len(new))
            out = reconcile_batch(
                history,
                new,
                persist=self._store.add_transaction,
                fallback_discount=self._fallback_discount,
            )
        log_event(logger, "reconcile.batch_completed", count=len(out))
        return out
