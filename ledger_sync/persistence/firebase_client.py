from __future__ import annotations

import os
import threading
from typing import Optional

import firebase_admin
import google.auth
from google.auth import exceptions as gauth_exc
from firebase_admin import credentials, firestore

from ledger_sync.common.errors import ConfigError


_CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def is_local_execution() -> bool:
    """
    Treat execution as "local" when ENV=local, or when no managed GCP runtime
    markers (K_SERVICE, CLOUD_RUN_JOB, FUNCTION_TARGET) are present.
    """
    if (os.getenv("ENV") or "").strip().lower() == "local":
        return True
    for k in ("K_SERVICE", "CLOUD_RUN_JOB", "FUNCTION_TARGET"):
        if (os.getenv(k) or "").strip():
            return False
    return True


def require_firestore_emulator_or_allow_prod(*, caller: str) -> None:
    """
    Fail closed locally unless the Firestore emulator is configured.

    Local execution MUST set FIRESTORE_EMULATOR_HOST, unless explicitly overridden with
    ALLOW_PROD_FIRESTORE=1. The ledger is append-only; a stray local sync cannot be undone.
    """
    if not is_local_execution():
        return
    if (os.getenv("FIRESTORE_EMULATOR_HOST") or "").strip():
        return
    if (os.getenv("ALLOW_PROD_FIRESTORE") or "").strip() == "1":
        return
    raise ConfigError(
        f"Refusing to use production Firestore from local execution (caller={caller}). "
        "Set FIRESTORE_EMULATOR_HOST (example: '127.0.0.1:8080') or ALLOW_PROD_FIRESTORE=1."
    )


def _resolve_project_id(explicit_project_id: Optional[str] = None) -> Optional[str]:
    if explicit_project_id:
        return explicit_project_id
    return os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or None


_init_lock = threading.Lock()


def init_firebase_admin(*, project_id: Optional[str] = None) -> None:
    """
    Initialize Firebase Admin SDK exactly once, using Application Default Credentials.
    """
    require_firestore_emulator_or_allow_prod(caller="ledger_sync.persistence.firebase_client.init_firebase_admin")

    if firebase_admin._apps:
        return

    with _init_lock:
        if firebase_admin._apps:
            return

        try:
            cred = credentials.ApplicationDefault()
        except Exception as e:
            raise ConfigError(
                "Failed to load Application Default Credentials (ADC) for Firebase Admin SDK. "
                "Locally: run `gcloud auth application-default login`."
            ) from e

        resolved_project_id = _resolve_project_id(project_id)
        if not resolved_project_id:
            # Ask ADC for the active project id (common on Cloud Run).
            try:
                _, resolved_project_id = google.auth.default(scopes=[_CLOUD_PLATFORM_SCOPE])
            except gauth_exc.DefaultCredentialsError:
                resolved_project_id = None

        if not resolved_project_id:
            raise ConfigError(
                "Firebase project id could not be resolved. Set FIREBASE_PROJECT_ID "
                "(or ensure your ADC environment provides a project id)."
            )

        firebase_admin.initialize_app(cred, {"projectId": resolved_project_id})


def get_firestore_client(*, project_id: Optional[str] = None):
    init_firebase_admin(project_id=project_id)
    return firestore.client()
