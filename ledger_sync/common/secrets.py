from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from ledger_sync.common.errors import ConfigError


class SecretError(ConfigError):
    pass


def _is_truthy(v: object | None) -> bool:
    if v is None:
        return False
    return str(v).strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_fallback_allowed() -> bool:
    """
    Controls whether secrets may be sourced from environment variables.

    Policy:
    - Default: DISALLOW (prevents accidental reliance on shell exports in prod).
    - Allow only when explicitly enabled via ALLOW_ENV_SECRET_FALLBACK=1.
    """
    return _is_truthy(os.getenv("ALLOW_ENV_SECRET_FALLBACK"))


def _get_nonempty_env(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def _resolve_project_id() -> str:
    for k in ("GOOGLE_CLOUD_PROJECT", "GCP_PROJECT", "FIREBASE_PROJECT_ID"):
        v = _get_nonempty_env(k)
        if v:
            return v
    raise SecretError(
        "Missing GCP project id for Secret Manager. "
        "Set one of: GOOGLE_CLOUD_PROJECT, GCP_PROJECT, FIREBASE_PROJECT_ID."
    )


def _secret_resource_name(name: str, *, project_id: Optional[str], version: str) -> str:
    n = str(name or "").strip()
    if not n:
        raise SecretError("Secret name is empty")

    if n.startswith("projects/") and "/secrets/" in n and "/versions/" in n:
        return n
    if n.startswith("projects/") and "/secrets/" in n:
        return f"{n}/versions/{version}"

    pid = (project_id or "").strip() or _resolve_project_id()
    return f"projects/{pid}/secrets/{n}/versions/{version}"


@lru_cache(maxsize=64)
def _access_secret_version(resource_name: str) -> str:
    """
    Access a Secret Manager secret version and return its decoded payload.

    Cached: the sync secret is checked on every request.
    """
    from google.cloud import secretmanager  # noqa: WPS433

    client = secretmanager.SecretManagerServiceClient()
    try:
        resp = client.access_secret_version(request={"name": resource_name})
    except Exception as e:
        raise SecretError(f"Failed to access secret: {resource_name} ({type(e).__name__}: {e})") from e

    data = resp.payload.data or b""
    return data.decode("utf-8", errors="replace").strip()


def get_secret(
    name: str,
    *,
    required: bool = True,
    version: str = "latest",
    project_id: Optional[str] = None,
) -> Optional[str]:
    """
    Retrieve a secret value.

    Sources:
    - Local fallback: environment variable (ONLY when ALLOW_ENV_SECRET_FALLBACK=1)
    - Primary: Google Secret Manager
    """
    if _env_fallback_allowed():
        v = _get_nonempty_env(name)
        if v is not None:
            return v

    resource = _secret_resource_name(name, project_id=project_id, version=version)
    raw = _access_secret_version(resource)
    if raw:
        return raw
    if required:
        raise SecretError(f"Missing required secret: {resource}")
    return None


def get_private_key(name: str, **kwargs: object) -> Optional[str]:
    """
    PEM keys pasted into env vars/secrets usually carry literal "\\n" sequences.
    """
    v = get_secret(name, **kwargs)  # type: ignore[arg-type]
    if v is None:
        return None
    return v.replace("\\n", "\n")
