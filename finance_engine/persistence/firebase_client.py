from __future__ import annotations

import os
import sys
import threading
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore
import google.auth


_CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def is_local_execution() -> bool:
    """
    Heuristic: treat execution as "local" when either:
    - ENV=local, OR
    - we're not on a managed GCP runtime (no K_SERVICE, no CLOUD_RUN_JOB, and no GAE_* env vars).
    """
    if (os.getenv("ENV") or "").strip().lower() == "local":
        return True
    if (os.getenv("K_SERVICE") or "").strip():
        return False
    # Monthly close runs as a Cloud Run job.
    if (os.getenv("CLOUD_RUN_JOB") or "").strip():
        return False
    for k in os.environ.keys():
        if str(k).startswith("GAE_"):
            return False
    return True


def require_firestore_emulator_or_allow_prod(*, caller: str) -> None:
    """
    Fail closed locally unless the Firestore emulator is configured.

    Local execution MUST set FIRESTORE_EMULATOR_HOST, unless explicitly overridden with:
      ALLOW_PROD_FIRESTORE=1
    """
    if not is_local_execution():
        return
    if (os.getenv("FIRESTORE_EMULATOR_HOST") or "").strip():
        return
    if (os.getenv("ALLOW_PROD_FIRESTORE") or "").strip() == "1":
        return

    sys.stderr.write(
        "\n".join(
            [
                "ERROR: Refusing to touch production finance collections from local execution.",
                f"caller={caller}",
                "",
                "Fix:",
                "  - Set FIRESTORE_EMULATOR_HOST (example: '127.0.0.1:8080'), OR",
                "  - Intentionally override with ALLOW_PROD_FIRESTORE=1 (DANGEROUS).",
                "",
            ]
        )
        + "\n"
    )
    raise SystemExit(2)


def _resolve_project_id(explicit_project_id: Optional[str] = None) -> Optional[str]:
    if explicit_project_id:
        return explicit_project_id
    return os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or None


_init_lock = threading.Lock()


def init_firebase_admin(*, project_id: Optional[str] = None) -> None:
    """
    Initialize Firebase Admin SDK exactly once, using Application Default Credentials.

    Supported env:
    - GOOGLE_APPLICATION_CREDENTIALS (ADC on local machines/CI)
    - FIREBASE_PROJECT_ID (preferred) / GOOGLE_CLOUD_PROJECT
    """
    require_firestore_emulator_or_allow_prod(caller="finance_engine.persistence.firebase_client.init_firebase_admin")

    if firebase_admin._apps:
        return

    with _init_lock:
        if firebase_admin._apps:
            return

        try:
            cred = credentials.ApplicationDefault()
        except Exception as e:
            raise RuntimeError(
                "Failed to load Application Default Credentials (ADC) for Firebase Admin SDK. "
                "Locally: run `gcloud auth application-default login`."
            ) from e

        resolved_project_id = _resolve_project_id(project_id)
        if not resolved_project_id:
            try:
                _, resolved_project_id = google.auth.default(scopes=[_CLOUD_PLATFORM_SCOPE])
            except Exception:
                resolved_project_id = None

        if not resolved_project_id:
            raise RuntimeError(
                "Firebase project id could not be resolved. Set FIREBASE_PROJECT_ID "
                "(or ensure your ADC environment provides a project id)."
            )

        firebase_admin.initialize_app(cred, {"projectId": resolved_project_id})


def get_firestore_client(*, project_id: Optional[str] = None):
    init_firebase_admin(project_id=project_id)
    return firestore.client()
