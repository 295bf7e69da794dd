from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Sequence
from urllib.parse import quote

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from ledger_sync.common.config import LedgerSyncConfig
from ledger_sync.common.errors import UpstreamReadFailure, UpstreamWriteFailure
from ledger_sync.common.logging import log_event
from ledger_sync.common.secrets import get_private_key
from ledger_sync.common.timeutils import format_display_date, parse_order_date
from ledger_sync.ledger.models import InvalidTransaction

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SCOPE_READWRITE = "https://www.googleapis.com/auth/spreadsheets"
SCOPE_READONLY = "https://www.googleapis.com/auth/spreadsheets.readonly"
_TOKEN_URI = "https://oauth2.googleapis.com/token"

_WS_RE = re.compile(r"\s+")

# Column order of the ledger sheet (A..AC). Appended rows MUST follow it.
# (inbound key, kind) where kind is "text" | "number" | "date" | "flag".
SHEET_COLUMNS: tuple[tuple[str, str], ...] = (
    ("orderid", "text"),
    ("orderdate", "date"),
    ("userid", "text"),
    ("first_name", "text"),
    ("last_name", "text"),
    ("Mobile", "text"),
    ("Email", "text"),
    ("service_slug", "text"),
    ("categories_title", "text"),
    ("services_type", "text"),
    ("currency", "text"),
    ("currencie_slug", "text"),
    ("Source Wallet Address", "text"),
    ("Destination Wallet Address", "text"),
    ("Txid", "text"),
    ("currency_amount", "number"),
    ("Is Crypto?", "flag"),
    ("crypto_total_usdt", "number"),
    ("currency_price", "number"),
    ("Cost_Basis", "number"),
    ("Network Wage", "number"),
    ("ActualNetwork Wage", "number"),
    ("Fix Wage", "number"),
    ("Total Amount", "number"),
    ("Vip Amount", "number"),
    ("Voucher Amount", "number"),
    ("Vouchers Code", "text"),
    ("description", "text"),
    ("NetProfit", "number"),
)


def sanitize_header(header: Any) -> str:
    """Whitespace runs become a single underscore ("Vip Amount" -> "Vip_Amount")."""
    return _WS_RE.sub("_", str(header or ""))


def rows_to_records(rows: Sequence[Sequence[Any]]) -> list[dict[str, Any]]:
    """
    First row is the header; every later row becomes a dict keyed by sanitized
    header. Short rows (the API trims trailing blanks) yield None for missing cells.
    """
    if not rows or len(rows) < 2:
        return []
    headers = [sanitize_header(h) for h in rows[0]]
    out: list[dict[str, Any]] = []
    for row in rows[1:]:
        out.append({h: (row[i] if i < len(row) else None) for i, h in enumerate(headers)})
    return out


def build_row(transaction: Mapping[str, Any], *, display_timezone: str) -> list[Any]:
    """
    Render one inbound transaction as a sheet row in `SHEET_COLUMNS` order.

    Missing text cells are "", missing numbers are 0; the crypto flag is "Yes"/"No".
    Lookup accepts the raw header name or its sanitized form.
    """
    def _get(key: str) -> Any:
        if key in transaction:
            return transaction[key]
        return transaction.get(sanitize_header(key))

    row: list[Any] = []
    for key, kind in SHEET_COLUMNS:
        v = _get(key)
        if kind == "date":
            if v in (None, ""):
                row.append("")
                continue
            try:
                row.append(format_display_date(parse_order_date(v), tz_name=display_timezone))
            except (TypeError, ValueError) as e:
                raise InvalidTransaction(f"unparseable {key}: {v!r}") from e
        elif kind == "flag":
            row.append("Yes" if v else "No")
        elif kind == "number":
            row.append(v if v not in (None, "") else 0)
        else:
            row.append(v if v not in (None, "") else "")
    return row


def _build_credentials(config: LedgerSyncConfig, *, scopes: list[str]):
    """
    Service account from (GOOGLE_SERVICE_ACCOUNT_EMAIL + GOOGLE_PRIVATE_KEY secret)
    when configured, otherwise Application Default Credentials.
    """
    if config.sheets_client_email:
        private_key = get_private_key(config.sheets_private_key_name, required=True)
        info = {
            "type": "service_account",
            "client_email": config.sheets_client_email,
            "private_key": private_key,
            "token_uri": _TOKEN_URI,
        }
        return service_account.Credentials.from_service_account_info(info, scopes=scopes)
    creds, _ = google.auth.default(scopes=scopes)
    return creds


class SheetsClient:
    """
    Spreadsheet collaborator over the Sheets v4 REST API.

    `session` is any requests-compatible session; `from_config` builds an
    AuthorizedSession bound to the configured credentials.
    """

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        session: requests.Session,
        timeout_s: float = 30.0,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._session = session
        self._timeout_s = float(timeout_s)

    @classmethod
    def from_config(cls, config: LedgerSyncConfig, *, readonly: bool = False) -> "SheetsClient":
        scopes = [SCOPE_READONLY if readonly else SCOPE_READWRITE]
        session = AuthorizedSession(_build_credentials(config, scopes=scopes))
        return cls(spreadsheet_id=config.require_sheet_id(), session=session)

    def _values_url(self, a1_range: str, suffix: str = "") -> str:
        return f"{SHEETS_API_BASE}/{self._spreadsheet_id}/values/{quote(a1_range, safe='!:')}{suffix}"

    def read_values(self, a1_range: str) -> list[list[Any]]:
        try:
            resp = self._session.get(self._values_url(a1_range), timeout=self._timeout_s)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamReadFailure("Error reading from Google Sheet", cause=e) from e

        values = body.get("values") if isinstance(body, dict) else None
        if values is None:
            return []
        if not isinstance(values, list):
            raise UpstreamReadFailure(f"Unexpected Sheets payload for {a1_range}: values is {type(values).__name__}")
        return values

    def read_rows(self, a1_range: str) -> list[dict[str, Any]]:
        rows = rows_to_records(self.read_values(a1_range))
        log_event(logger, "sheets.read", range=a1_range, count=len(rows))
        return rows

    def append_row(self, a1_range: str, row: Sequence[Any]) -> None:
        url = self._values_url(a1_range, ":append")
        try:
            resp = self._session.post(
                url,
                params={"valueInputOption": "USER_ENTERED"},
                json={"values": [list(row)]},
                timeout=self._timeout_s,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamWriteFailure("Error writing to Google Sheet", cause=e) from e
        log_event(logger, "sheets.append", range=a1_range, columns=len(row))
