from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _sanitize_service_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    firestore_enabled: bool
    firestore_project_id: str | None
    service_collection: str
    service_id: str
    service_env: str
    burns_collection: str
    metrics_collection: str
    metrics_doc_id: str
    used_signature_prefix: str
    burn_record_prefix: str
    payment_prefix: str
    bundle_prefix: str

    @classmethod
    def from_env(cls) -> "StorageSettings":
        service_collection = os.getenv("SERVICE_COLLECTION", "services").strip("/") or "services"
        service_id = _sanitize_service_id(os.getenv("SERVICE_ID", "treasury-burn"), "treasury-burn")

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            firestore_enabled=to_bool(os.getenv("FIRESTORE_ENABLED"), False),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            service_collection=service_collection,
            service_id=service_id,
            service_env=os.getenv("SERVICE_ENV") or os.getenv("ENVIRONMENT", "development"),
            burns_collection=os.getenv("FIRESTORE_BURNS_COLLECTION", "burns"),
            metrics_collection=os.getenv("FIRESTORE_METRICS_COLLECTION", "metrics"),
            metrics_doc_id=os.getenv("FIRESTORE_METRICS_DOC_ID", "burns"),
            used_signature_prefix=os.getenv("REDIS_USED_SIGNATURE_PREFIX", "burn:used_signature"),
            burn_record_prefix=os.getenv("REDIS_BURN_RECORD_PREFIX", "burn:record"),
            payment_prefix=os.getenv("REDIS_PAYMENT_PREFIX", "burn:payment"),
            bundle_prefix=os.getenv("REDIS_BUNDLE_PREFIX", "burn:bundle"),
        )
