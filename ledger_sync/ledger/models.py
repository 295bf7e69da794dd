from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from ledger_sync.common.errors import LedgerSyncError
from ledger_sync.common.timeutils import parse_order_date


BUY = "buy"
SELL = "sell"
SERVICE_TYPES = frozenset({BUY, SELL})

_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class InvalidTransaction(LedgerSyncError):
    """Raised when an inbound record cannot be read as a transaction at all."""

    status_code = 400


def _norm_key(k: Any) -> str:
    # "Vip Amount", "Vip_Amount" and "vip_amount" are the same column.
    return re.sub(r"[^a-z0-9]", "", str(k).lower())


def to_decimal(v: Any) -> Decimal:
    """
    Lenient money parser: absent, blank or non-numeric values become 0.

    Never call Decimal(float) directly (binary float artifacts); go through str().
    """
    if v is None or isinstance(v, bool):
        return Decimal("0")
    if isinstance(v, Decimal):
        return v if v.is_finite() else Decimal("0")
    if isinstance(v, (int, float)):
        d = Decimal(str(v))
        return d if d.is_finite() else Decimal("0")
    if isinstance(v, str):
        s = v.strip().replace(",", "")
        if not s:
            return Decimal("0")
        try:
            d = Decimal(s)
        except InvalidOperation:
            return Decimal("0")
        return d if d.is_finite() else Decimal("0")
    return Decimal("0")


def _storable(d: Decimal) -> Decimal:
    # Firestore keeps money as a double; parse to the value it will read back as.
    return Decimal(str(float(d)))


def _text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, float) and v.is_integer():
        # A sheet round-trip can turn "12345" into 12345.0.
        return str(int(v))
    return str(v).strip()


def _created_at(v: Any) -> Optional[datetime]:
    try:
        return parse_order_date(v)
    except (TypeError, ValueError):
        return None


def _flag(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in {"1", "true", "yes", "y"}


# (attribute, stored field name, accepted aliases)
_TEXT_FIELDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("order_id", "orderid", ("order_id", "orderId")),
    ("user_id", "userid", ("user_id", "userId")),
    ("first_name", "first_name", ()),
    ("last_name", "last_name", ()),
    ("mobile", "Mobile", ("mobile_number",)),
    ("email", "Email", ()),
    ("service_slug", "service_slug", ()),
    ("category_title", "categories_title", ("category_title",)),
    ("service_type", "services_type", ("service_type", "serviceType")),
    ("currency", "currency", ()),
    ("currency_slug", "currencie_slug", ("currency_slug", "currencySlug")),
    ("source_wallet_address", "Source Wallet Address", ()),
    ("destination_wallet_address", "Destination Wallet Address", ()),
    ("txid", "Txid", ()),
    ("voucher_code", "Vouchers Code", ("voucher_code",)),
    ("description", "description", ()),
)

_MONEY_FIELDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("currency_amount", "currency_amount", ("currencyAmount",)),
    ("crypto_total_usdt", "crypto_total_usdt", ()),
    ("currency_price", "currency_price", ("currencyPrice",)),
    ("network_wage", "Network Wage", ()),
    ("actual_network_wage", "ActualNetwork Wage", ("actual_network_wage",)),
    ("fix_wage", "Fix Wage", ()),
    ("total_amount", "Total Amount", ()),
    ("vip_amount", "Vip Amount", ()),
    ("voucher_amount", "Voucher Amount", ()),
)

_DERIVED_FIELDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("cost_basis", "Cost_Basis", ("costBasis",)),
    ("net_profit", "NetProfit", ("net_profit", "netProfit")),
)

_ORDER_DATE_KEYS = ("orderdate", "order_date", "orderDate")
_IS_CRYPTO_KEYS = ("Is Crypto?", "is_crypto")
_CREATED_AT_KEYS = ("createdAt", "created_at")


def _alias_index(specs: tuple[tuple[str, str, tuple[str, ...]], ...]) -> dict[str, str]:
    out: dict[str, str] = {}
    for attr, stored, aliases in specs:
        for k in (attr, stored, *aliases):
            out[_norm_key(k)] = attr
    return out


_TEXT_INDEX = _alias_index(_TEXT_FIELDS)
_MONEY_INDEX = _alias_index(_MONEY_FIELDS)
_DERIVED_INDEX = _alias_index(_DERIVED_FIELDS)
_ORDER_DATE_INDEX = {_norm_key(k) for k in _ORDER_DATE_KEYS}
_IS_CRYPTO_INDEX = {_norm_key(k) for k in _IS_CRYPTO_KEYS}
_CREATED_AT_INDEX = {_norm_key(k) for k in _CREATED_AT_KEYS}


@dataclass(slots=True)
class Transaction:
    """
    One exchange order in the ledger.

    Identifier/label fields are always text and money fields are always Decimal;
    the record never sniffs types at runtime. Unknown inbound fields ride along in
    `extras` and are coerced by `coerce_numeric_fields` when persisted.

    Firestore path:
      artifacts/{project_id}/public/data/transactions/{doc_id}

    Mutable only while being enriched; `cost_basis`/`net_profit` are None until then.
    """

    order_id: str
    order_date: datetime
    currency_slug: str
    service_type: str
    currency_amount: Decimal = Decimal("0")
    currency_price: Decimal = Decimal("0")

    vip_amount: Decimal = Decimal("0")
    fix_wage: Decimal = Decimal("0")
    network_wage: Decimal = Decimal("0")
    actual_network_wage: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    voucher_amount: Decimal = Decimal("0")
    crypto_total_usdt: Decimal = Decimal("0")

    user_id: str = ""
    first_name: str = ""
    last_name: str = ""
    mobile: str = ""
    email: str = ""
    service_slug: str = ""
    category_title: str = ""
    currency: str = ""
    source_wallet_address: str = ""
    destination_wallet_address: str = ""
    txid: str = ""
    voucher_code: str = ""
    description: str = ""
    is_crypto: bool = False

    cost_basis: Optional[Decimal] = None
    net_profit: Optional[Decimal] = None

    # Stamped by the store on write; breaks order-date ties in arrival order.
    created_at: Optional[datetime] = None

    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def is_enriched(self) -> bool:
        return self.cost_basis is not None and self.net_profit is not None

    def enriched(self, *, cost_basis: Decimal, net_profit: Decimal) -> "Transaction":
        return replace(self, cost_basis=cost_basis, net_profit=net_profit, extras=dict(self.extras))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Transaction":
        """
        Build a transaction from a raw inbound row or a stored Firestore document.

        Accepts the stored field names ("Vip Amount"), their sheet-sanitized form
        ("Vip_Amount") and snake_case names ("vip_amount").
        """
        if not isinstance(record, Mapping):
            raise InvalidTransaction(f"transaction must be an object, got {type(record).__name__}")

        kwargs: dict[str, Any] = {}
        extras: dict[str, Any] = {}
        order_date_raw: Any = None

        for key, value in record.items():
            nk = _norm_key(key)
            if nk in _TEXT_INDEX:
                kwargs[_TEXT_INDEX[nk]] = _text(value)
            elif nk in _MONEY_INDEX:
                kwargs[_MONEY_INDEX[nk]] = _storable(to_decimal(value))
            elif nk in _DERIVED_INDEX:
                if value is not None and value != "":
                    kwargs[_DERIVED_INDEX[nk]] = _storable(to_decimal(value))
            elif nk in _ORDER_DATE_INDEX:
                order_date_raw = value
            elif nk in _IS_CRYPTO_INDEX:
                kwargs["is_crypto"] = _flag(value)
            elif nk in _CREATED_AT_INDEX:
                kwargs["created_at"] = _created_at(value)
            else:
                extras[str(key)] = value

        try:
            order_date = parse_order_date(order_date_raw)
        except (TypeError, ValueError) as e:
            oid = kwargs.get("order_id") or "?"
            raise InvalidTransaction(f"transaction {oid} has no usable order date: {e}") from e

        kwargs["service_type"] = str(kwargs.get("service_type") or "").strip().lower()
        kwargs.setdefault("order_id", "")
        kwargs.setdefault("currency_slug", "")

        for name in ("currency_amount", "currency_price"):
            if kwargs.get(name, Decimal("0")) < 0:
                raise InvalidTransaction(f"transaction {kwargs['order_id'] or '?'}: {name} must be >= 0")

        return cls(order_date=order_date, extras=extras, **kwargs)

    def to_document(self) -> dict[str, Any]:
        """
        Firestore document under the stored field names. Money is written as numbers,
        identifiers as text.

        Firestore has no decimal type: money goes out as a float. `from_record`
        already rounds inbound money to the nearest double, so a value reads back
        exactly as it was enriched. `createdAt` is left to the store, which stamps
        it on write.
        """
        doc: dict[str, Any] = coerce_numeric_fields(self.extras)
        for attr, stored, _ in _TEXT_FIELDS:
            doc[stored] = getattr(self, attr)
        for attr, stored, _ in _MONEY_FIELDS:
            doc[stored] = float(getattr(self, attr))
        for attr, stored, _ in _DERIVED_FIELDS:
            v = getattr(self, attr)
            doc[stored] = None if v is None else float(v)
        doc["orderdate"] = self.order_date
        doc["Is Crypto?"] = self.is_crypto
        return doc


def is_numeric_text(v: Any) -> bool:
    return isinstance(v, str) and bool(_NUMERIC_RE.match(v.strip()))


_TEXT_ONLY_EXACT = frozenset({"mobile", "mobilenumber", "orderid", "userid", "role", "email"})
_TEXT_ONLY_PARTS = ("name", "address", "slug", "code", "email", "mobile")


def is_text_only_field(key: str) -> bool:
    """
    Identifier/label fields stay text even when they look numeric (phone numbers,
    ids, wallet addresses, slugs, voucher codes...).
    """
    nk = _norm_key(key)
    if nk in _TEXT_ONLY_EXACT:
        return True
    return any(p in nk for p in _TEXT_ONLY_PARTS)


def coerce_numeric_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    """
    Return a copy with numeric-looking string values converted to numbers, except
    for identifier/label fields (see `is_text_only_field`).
    """
    out: dict[str, Any] = {}
    for k, v in record.items():
        if is_numeric_text(v) and not is_text_only_field(k):
            out[k] = float(v.strip())
        else:
            out[k] = v
    return out
