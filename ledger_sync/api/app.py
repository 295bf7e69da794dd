from ledger_sync.common.logging import init_structured_logging, install_fastapi_request_id_middleware

init_structured_logging(service="ledger-sync")

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel

from ledger_sync.common.config import LedgerSyncConfig, from_env
from ledger_sync.common.errors import LedgerSyncError, MethodNotAllowed, Unauthorized
from ledger_sync.common.logging import log_event
from ledger_sync.common.secrets import get_secret
from ledger_sync.ledger.firestore import FirestoreTransactionStore, LedgerWriteLease
from ledger_sync.ledger.models import InvalidTransaction
from ledger_sync.reconciliation.service import ReconciliationService
from ledger_sync.sheets.client import SheetsClient, build_row

SERVICE_NAME = "ledger-sync"
SYNC_SECRET_HEADER = "x-sync-secret"
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

logger = logging.getLogger(__name__)


class SyncResponse(BaseModel):
    success: bool = True
    message: str
    count: int


class AckResponse(BaseModel):
    success: bool = True


class ErrorResponse(BaseModel):
    message: str
    error: Optional[str] = None


def build_reconciliation_service(config: LedgerSyncConfig) -> ReconciliationService:
    store = FirestoreTransactionStore(
        collection_path=config.transactions_collection_path(),
        project_id=config.project_id,
    )

    def _lease() -> LedgerWriteLease:
        return LedgerWriteLease(db=store.db, name=config.lease_name, ttl_s=config.lease_ttl_s)

    return ReconciliationService(
        store=store,
        fallback_discount=config.sell_fallback_discount,
        lease_factory=_lease,
    )


def resolve_sync_secret(config: LedgerSyncConfig) -> Optional[str]:
    return get_secret(config.sync_secret_name, required=True)


@dataclass
class Providers:
    """
    Collaborator factories. Resolved per request so a wrong verb or a bad secret
    never touches Firestore or Sheets.
    """

    config: Callable[[], LedgerSyncConfig] = from_env
    reconciliation_service: Callable[[LedgerSyncConfig], ReconciliationService] = build_reconciliation_service
    sheets_client: Callable[..., SheetsClient] = SheetsClient.from_config
    sync_secret: Callable[[LedgerSyncConfig], Optional[str]] = resolve_sync_secret


app = FastAPI(title="Ledger Sync")
install_fastapi_request_id_middleware(app, service=SERVICE_NAME)
app.state.providers = Providers()


def _providers(request: Request) -> Providers:
    return request.app.state.providers


def _failure(status_code: int, message: str, err: BaseException) -> JSONResponse:
    cause = err.cause_text if isinstance(err, LedgerSyncError) else (str(err) or type(err).__name__)
    body = ErrorResponse(message=message, error=cause)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(LedgerSyncError)
async def _ledger_sync_error_handler(request: Request, exc: LedgerSyncError) -> JSONResponse:
    if isinstance(exc, (MethodNotAllowed, Unauthorized)):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})
    return _failure(exc.status_code, exc.message, exc)


def _require_post(request: Request) -> None:
    if request.method != "POST":
        raise MethodNotAllowed("Only POST requests allowed")


def _require_sync_secret(request: Request, *, expected: Optional[str]) -> None:
    got = request.headers.get(SYNC_SECRET_HEADER) or ""
    if not expected or not got or not hmac.compare_digest(got.encode("utf-8"), expected.encode("utf-8")):
        log_event(
            logger,
            "auth_failure",
            severity="WARNING",
            reason="sync_secret_mismatch",
            header_present=bool(got),
        )
        raise Unauthorized("Unauthorized")


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise InvalidTransaction("Request body must be JSON", cause=e) from e


@app.api_route("/api/sync-from-sheet", methods=_ALL_METHODS)
async def sync_from_sheet(request: Request):
    """
    Reconcile a batch of transactions pushed from the ledger sheet into Firestore.
    """
    _require_post(request)
    providers = _providers(request)
    config = providers.config()
    _require_sync_secret(request, expected=providers.sync_secret(config))

    try:
        records = await _json_body(request)
        if not isinstance(records, list):
            raise InvalidTransaction("Request body must be a JSON array of transactions")
        service = providers.reconciliation_service(config)
        out = await run_in_threadpool(service.reconcile_records, records)
    except LedgerSyncError as e:
        logger.exception("Error syncing from Google Sheet")
        return _failure(e.status_code, "Error syncing data", e)
    except Exception as e:
        logger.exception("Error syncing from Google Sheet")
        return _failure(500, "Error syncing data", e)

    return SyncResponse(message=f"{len(out)} transactions synced.", count=len(out))


@app.api_route("/api/add-transaction", methods=_ALL_METHODS)
async def add_transaction(request: Request):
    """
    Append one transaction to the ledger sheet as a row in the fixed column order.
    """
    _require_post(request)
    providers = _providers(request)

    try:
        config = providers.config()
        transaction = await _json_body(request)
        if not isinstance(transaction, dict):
            raise InvalidTransaction("Request body must be a JSON object")
        row = build_row(transaction, display_timezone=config.display_timezone)
        sheets = providers.sheets_client(config)
        await run_in_threadpool(sheets.append_row, config.sheet_append_range, row)
    except LedgerSyncError as e:
        logger.exception("Error writing to Google Sheet")
        return _failure(e.status_code, "Error writing to Google Sheet", e)
    except Exception as e:
        logger.exception("Error writing to Google Sheet")
        return _failure(500, "Error writing to Google Sheet", e)

    log_event(logger, "transaction.appended", order_id=str(transaction.get("orderid") or ""))
    return AckResponse()


@app.get("/api/get-transactions")
async def get_transactions(request: Request):
    """
    Read the ledger sheet as a list of row objects keyed by sanitized header.
    """
    providers = _providers(request)
    try:
        config = providers.config()
        sheets = providers.sheets_client(config, readonly=True)
        rows = await run_in_threadpool(sheets.read_rows, config.sheet_read_range)
    except LedgerSyncError as e:
        logger.exception("Error reading from Google Sheet")
        return _failure(e.status_code, "Error reading from Google Sheet", e)
    except Exception as e:
        logger.exception("Error reading from Google Sheet")
        return _failure(500, "Error reading from Google Sheet", e)
    return rows


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {"ok": True, "service": SERVICE_NAME}
