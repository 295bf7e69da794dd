from __future__ import annotations

import math
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from ledger_sync.common.errors import ConfigError

# Sell-side cost basis when a currency has no buy history yet. A heuristic carried
# over from the sheet-era workflow; pending confirmation from the desk.
DEFAULT_SELL_FALLBACK_DISCOUNT = "0.98"


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _env_float(name: str, default: str) -> float:
    raw = _env(name, default) or default
    try:
        v = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if not math.isfinite(v) or v <= 0:
        raise ConfigError(f"{name} must be a positive finite number, got {raw!r}")
    return v


def _env_decimal(name: str, default: str) -> Decimal:
    raw = _env(name, default) or default
    try:
        d = Decimal(raw)
    except InvalidOperation as e:
        raise ConfigError(f"{name} must be a decimal number, got {raw!r}") from e
    if not d.is_finite():
        raise ConfigError(f"{name} must be finite, got {raw!r}")
    return d


@dataclass(frozen=True)
class LedgerSyncConfig:
    """
    Runtime configuration for the ledger sync service.

    Secrets (sync header secret, service account key) are NOT stored here; only
    the secret names are, and they are resolved at call time via `get_secret`.
    """

    project_id: str | None
    sheet_id: str | None
    sheet_read_range: str
    sheet_append_range: str

    sell_fallback_discount: Decimal
    lease_ttl_s: float
    lease_name: str
    display_timezone: str

    sync_secret_name: str
    sheets_client_email: str | None
    sheets_private_key_name: str

    def transactions_collection_path(self) -> str:
        if not self.project_id:
            raise ConfigError("FIREBASE_PROJECT_ID is required to locate the transactions collection")
        return f"artifacts/{self.project_id}/public/data/transactions"

    def require_sheet_id(self) -> str:
        if not self.sheet_id:
            raise ConfigError("GOOGLE_SHEET_ID is required for spreadsheet access")
        return self.sheet_id


def from_env() -> LedgerSyncConfig:
    discount = _env_decimal("LEDGER_SELL_FALLBACK_DISCOUNT", DEFAULT_SELL_FALLBACK_DISCOUNT)
    if discount < 0:
        raise ConfigError("LEDGER_SELL_FALLBACK_DISCOUNT must be >= 0")

    return LedgerSyncConfig(
        project_id=_env("FIREBASE_PROJECT_ID") or _env("GOOGLE_CLOUD_PROJECT"),
        sheet_id=_env("GOOGLE_SHEET_ID"),
        sheet_read_range=_env("SHEET_READ_RANGE", "Sheet1!A:AC") or "Sheet1!A:AC",
        sheet_append_range=_env("SHEET_APPEND_RANGE", "Sheet1!A2") or "Sheet1!A2",
        sell_fallback_discount=discount,
        lease_ttl_s=_env_float("LEDGER_LEASE_TTL_S", "60"),
        lease_name=_env("LEDGER_LEASE_NAME", "transactions") or "transactions",
        display_timezone=_env("DISPLAY_TIMEZONE", "Asia/Tehran") or "Asia/Tehran",
        sync_secret_name=_env("SYNC_SECRET_NAME", "SYNC_SECRET_KEY") or "SYNC_SECRET_KEY",
        sheets_client_email=_env("GOOGLE_SERVICE_ACCOUNT_EMAIL"),
        sheets_private_key_name=_env("GOOGLE_PRIVATE_KEY_NAME", "GOOGLE_PRIVATE_KEY") or "GOOGLE_PRIVATE_KEY",
    )
