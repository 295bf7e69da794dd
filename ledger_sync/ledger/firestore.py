from __future__ import annotations

import hashlib
import logging
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.api_core import exceptions as gexc

from ledger_sync.common.errors import LedgerBusy, UpstreamReadFailure, UpstreamWriteFailure
from ledger_sync.common.logging import log_event
from ledger_sync.common.timeutils import parse_order_date

from .models import Transaction

logger = logging.getLogger(__name__)

LEASES_COLLECTION = "ledger_locks"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# One reconciliation per process at a time; the Firestore lease covers other instances.
_LOCAL_WRITE_LOCK = threading.Lock()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _default_firestore_module():
    from firebase_admin import firestore as admin_firestore  # noqa: WPS433

    return admin_firestore


def _arrival_key(tx: Transaction) -> tuple[int, datetime]:
    if tx.created_at is None:
        return (0, _EPOCH)
    return (1, tx.created_at)


def stable_transaction_doc_id(*, order_id: str) -> str:
    """
    Deterministic doc id for an order so a second sync of the same order cannot
    silently create a twin document.
    """
    raw = f"transactions|{order_id}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:48]


class FirestoreTransactionStore:
    """
    Document store collaborator for the transaction ledger.

    Storage:
      {collection_path}/{docId}     (artifacts/{project_id}/public/data/transactions)

    Semantics:
    - `get_all_documents()` reads the full collection, with `orderdate` materialized
      as a tz-aware datetime.
    - `add_document(...)` uses Firestore `create()` -> append-only; a document that
      already exists is a write failure, never an overwrite.
    """

    def __init__(self, *, collection_path: str, db: Any = None, project_id: str | None = None) -> None:
        if db is None:
            from ledger_sync.persistence.firebase_client import get_firestore_client  # noqa: WPS433

            db = get_firestore_client(project_id=project_id)
        self._db = db
        self._collection_path = str(collection_path).strip().strip("/")
        self._last_created_at: Optional[datetime] = None

    @property
    def db(self) -> Any:
        return self._db

    @property
    def collection_path(self) -> str:
        return self._collection_path

    def _collection(self):
        return self._db.collection(self._collection_path)

    def get_all_documents(self) -> list[dict[str, Any]]:
        try:
            snaps = list(self._collection().stream())
        except Exception as e:
            raise UpstreamReadFailure(f"Error reading {self._collection_path}", cause=e) from e

        out: list[dict[str, Any]] = []
        for snap in snaps:
            data = dict(snap.to_dict() or {})
            try:
                data["orderdate"] = parse_order_date(data.get("orderdate"))
            except (TypeError, ValueError) as e:
                raise UpstreamReadFailure(f"Stored transaction {snap.id} has no usable orderdate", cause=e) from e
            out.append(data)

        log_event(logger, "ledger.history_read", collection=self._collection_path, count=len(out))
        return out

    def load_history(self) -> list[Transaction]:
        """
        Full history in arrival order (`createdAt`), so that a stable sort by
        order date keeps same-date transactions in the order they were synced.
        Documents without `createdAt` predate the stamp and come first.
        """
        txs = [Transaction.from_record(d) for d in self.get_all_documents()]
        txs.sort(key=_arrival_key)
        for tx in txs:
            self._note_created_at(tx.created_at)
        return txs

    def _note_created_at(self, ts: Optional[datetime]) -> None:
        if ts is not None and (self._last_created_at is None or ts > self._last_created_at):
            self._last_created_at = ts

    def _next_created_at(self) -> datetime:
        # Strictly increasing, even when the clock has not moved or lags the history.
        now = _utc_now()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    def add_document(self, record: dict[str, Any], *, doc_id: Optional[str] = None) -> str:
        doc = dict(record)
        if doc.get("createdAt") is None:
            doc["createdAt"] = self._next_created_at()
        col = self._collection()
        ref = col.document(doc_id) if doc_id else col.document()
        try:
            ref.create(doc)
        except gexc.AlreadyExists as e:
            raise UpstreamWriteFailure(
                f"Transaction document {ref.id} already exists in {self._collection_path}", cause=e
            ) from e
        except Exception as e:
            raise UpstreamWriteFailure(f"Error writing to {self._collection_path}", cause=e) from e
        return ref.id

    def add_transaction(self, tx: Transaction) -> str:
        doc_id = stable_transaction_doc_id(order_id=tx.order_id) if tx.order_id else None
        return self.add_document(tx.to_document(), doc_id=doc_id)


class LedgerWriteLease:
    """
    Serializes "read full history, then append" across instances.

    Storage:
      ledger_locks/{name}
        - holder (str)
        - acquired_at (timestamp)
        - expires_at (timestamp)

    The lease is taken inside a Firestore transaction: a live lease held by someone
    else raises `LedgerBusy`; an expired one is taken over. The expiry bounds how
    long a crashed holder can block the ledger.
    """

    def __init__(
        self,
        *,
        db: Any,
        name: str,
        ttl_s: float = 60.0,
        holder: str | None = None,
        firestore_module: Any = None,
        collection: str = LEASES_COLLECTION,
    ) -> None:
        self._db = db
        self._name = str(name).strip() or "transactions"
        self._ttl = timedelta(seconds=float(ttl_s))
        self._holder = holder or f"{os.getenv('K_REVISION') or 'local'}:{os.getpid()}:{uuid.uuid4().hex[:12]}"
        self._firestore = firestore_module or _default_firestore_module()
        self._collection = collection
        self._local_held = False

    @property
    def holder(self) -> str:
        return self._holder

    def _ref(self):
        return self._db.collection(self._collection).document(self._name)

    def acquire(self) -> None:
        if not _LOCAL_WRITE_LOCK.acquire(timeout=self._ttl.total_seconds()):
            raise LedgerBusy(f"Ledger {self._name!r} is busy in this process")
        self._local_held = True
        try:
            self._acquire_remote()
        except BaseException:
            self._release_local()
            raise

    def _acquire_remote(self) -> None:
        ref = self._ref()
        now = _utc_now()
        holder = self._holder
        ttl = self._ttl

        @self._firestore.transactional
        def _txn_body(txn):  # type: ignore[no-untyped-def]
            snap = ref.get(transaction=txn)
            if getattr(snap, "exists", False):
                cur = snap.to_dict() or {}
                cur_holder = str(cur.get("holder") or "")
                expires_at = cur.get("expires_at")
                if cur_holder and cur_holder != holder and isinstance(expires_at, datetime):
                    if parse_order_date(expires_at) > now:
                        raise LedgerBusy(f"Ledger is being reconciled by {cur_holder} until {expires_at.isoformat()}")
            txn.set(ref, {"holder": holder, "acquired_at": now, "expires_at": now + ttl})

        try:
            _txn_body(self._db.transaction())
        except LedgerBusy:
            raise
        except Exception as e:
            raise UpstreamWriteFailure(f"Could not acquire ledger lease {self._name!r}", cause=e) from e

        log_event(logger, "ledger.lease_acquired", lease=self._name, holder=holder, ttl_s=ttl.total_seconds())

    def release(self) -> None:
        try:
            self._release_remote()
        finally:
            self._release_local()

    def _release_remote(self) -> None:
        ref = self._ref()
        holder = self._holder

        @self._firestore.transactional
        def _txn_body(txn):  # type: ignore[no-untyped-def]
            snap = ref.get(transaction=txn)
            if getattr(snap, "exists", False) and str((snap.to_dict() or {}).get("holder") or "") == holder:
                txn.delete(ref)

        try:
            _txn_body(self._db.transaction())
        except Exception:
            # The lease expires on its own; a failed release only delays the next sync.
            logger.exception("ledger.lease_release_failed lease=%s holder=%s", self._name, holder)
            return
        log_event(logger, "ledger.lease_released", lease=self._name, holder=holder)

    def _release_local(self) -> None:
        if self._local_held:
            self._local_held = False
            _LOCAL_WRITE_LOCK.release()

    def __enter__(self) -> "LedgerWriteLease":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.release()
