from __future__ import annotations

"""
Weighted-average cost pools over the order ledger.

Choice: weighted average cost (not FIFO lots).

- One pool per currency slug: (quantity, weighted_avg_cost).
- A buy blends its price into the pool cost, weighted by quantity.
- A sell only reduces quantity; it never changes the pool cost.
- Quantity may go negative (short); a buy that leaves the pool at or below zero
  resets the cost to 0 instead of dividing by a non-positive quantity.

Pools are never cached or persisted: callers rebuild them from the complete,
date-ordered history with `replay_pools` every time.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, MutableMapping

from ledger_sync.common.config import DEFAULT_SELL_FALLBACK_DISCOUNT
from ledger_sync.common.errors import InvalidServiceType
from ledger_sync.common.logging import log_event

from .models import BUY, SELL, Transaction

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


@dataclass(slots=True)
class CurrencyPool:
    quantity: Decimal = _ZERO
    weighted_avg_cost: Decimal = _ZERO


Pools = MutableMapping[str, CurrencyPool]


def _require_side(tx: Transaction) -> str:
    side = tx.service_type
    if side not in (BUY, SELL):
        raise InvalidServiceType(side, order_id=tx.order_id or None)
    return side


def apply_transaction(pools: Pools, tx: Transaction) -> Pools:
    """
    Fold one transaction into its currency pool (in place) and return `pools`.

    Only the entry for `tx.currency_slug` is touched.
    """
    side = _require_side(tx)
    pool = pools.get(tx.currency_slug)
    if pool is None:
        pool = CurrencyPool()
        pools[tx.currency_slug] = pool

    if side == BUY:
        new_qty = pool.quantity + tx.currency_amount
        if new_qty > 0:
            pool.weighted_avg_cost = (
                pool.quantity * pool.weighted_avg_cost + tx.currency_amount * tx.currency_price
            ) / new_qty
        else:
            pool.weighted_avg_cost = _ZERO
            log_event(
                logger,
                "pool.division_guard",
                severity="DEBUG",
                currency_slug=tx.currency_slug,
                order_id=tx.order_id,
                quantity_after=new_qty,
            )
        pool.quantity = new_qty
    else:
        pool.quantity -= tx.currency_amount

    return pools


def sort_by_order_date(transactions: Iterable[Transaction]) -> list[Transaction]:
    # sorted() is stable: equal order dates keep insertion order.
    return sorted(transactions, key=lambda t: t.order_date)


def replay_pools(transactions: Iterable[Transaction]) -> dict[str, CurrencyPool]:
    """
    Rebuild every pool from scratch over the date-ordered history.
    """
    pools: dict[str, CurrencyPool] = {}
    for tx in sort_by_order_date(transactions):
        apply_transaction(pools, tx)
    return pools


def compute_cost_basis_and_profit(
    pools: Pools,
    tx: Transaction,
    *,
    fallback_discount: Decimal = Decimal(DEFAULT_SELL_FALLBACK_DISCOUNT),
) -> tuple[Decimal, Decimal]:
    """
    Cost basis and net profit for `tx` against the current pool state.

    buy:
      cost_basis = price
      net_profit = vip + fix_wage + (network_wage - actual_network_wage)
    sell:
      cost_basis = pool cost, or price * fallback_discount with no buy history
      net_profit = total_amount - (cost_basis * amount + actual_network_wage)

    Does not mutate `pools`.
    """
    side = _require_side(tx)

    if side == BUY:
        cost_basis = tx.currency_price
        net_profit = tx.vip_amount + tx.fix_wage + (tx.network_wage - tx.actual_network_wage)
        return cost_basis, net_profit

    pool = pools.get(tx.currency_slug) or CurrencyPool()
    if pool.weighted_avg_cost > 0:
        cost_basis = pool.weighted_avg_cost
    else:
        cost_basis = tx.currency_price * fallback_discount
    net_profit = tx.total_amount - (cost_basis * tx.currency_amount + tx.actual_network_wage)
    return cost_basis, net_profit
