from __future__ import annotations

"""
Error kinds surfaced by the ledger sync service.

Every handled error derives from `LedgerSyncError` and carries the HTTP status the
API boundary should answer with. Causes are chained with `raise ... from e` so the
boundary can report the underlying message.
"""


class LedgerSyncError(RuntimeError):
    """Base error for ledger sync failures."""

    status_code: int = 500

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause_text(self) -> str:
        c = self.__cause__
        if c is None:
            return self.message
        return str(c) or type(c).__name__


class MethodNotAllowed(LedgerSyncError):
    """Raised when a trigger endpoint is called with a verb other than POST."""

    status_code = 405


class Unauthorized(LedgerSyncError):
    """Raised when the shared sync secret is missing or does not match."""

    status_code = 401


class UpstreamReadFailure(LedgerSyncError):
    """Raised when the sheet or document store cannot be read (or returns garbage)."""


class UpstreamWriteFailure(LedgerSyncError):
    """Raised when appending a row or persisting a document fails."""


class InvalidServiceType(LedgerSyncError):
    """Raised when a transaction is neither a buy nor a sell."""

    def __init__(self, service_type: object, *, order_id: str | None = None) -> None:
        where = f" (order_id={order_id})" if order_id else ""
        super().__init__(f"invalid service type {service_type!r}{where}; expected 'buy' or 'sell'")
        self.service_type = service_type
        self.order_id = order_id


class LedgerBusy(LedgerSyncError):
    """Raised when another reconciliation holds the ledger write lease."""

    status_code = 409


class ConfigError(LedgerSyncError):
    """Raised when required configuration is missing or malformed."""
