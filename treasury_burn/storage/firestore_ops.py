from __future__ import annotations

import asyncio
import hashlib
from typing import Any

from google.cloud import firestore

from treasury_burn.common import guarded_call, log_event

from .helpers import to_int as _to_int
from .helpers import utc_day_id as _utc_day_id

_INTEGER_FIELDS = {"slippage_bps", "total_duration_ms", "target_decimals", "decision_confidence"}


def _firestore_payload(record: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key, value in record.items():
        if key in _INTEGER_FIELDS or (key.startswith("step_") and key.endswith("_ms")):
            payload[key] = _to_int(value)
        else:
            # raw token amounts stay strings; they overflow Firestore's int64
            payload[key] = value
    return payload


class FirestoreStorageOps:
    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    async def mirror_burn_record(self, *, invocation_id: str, record: dict[str, Any]) -> None:
        if self._burns_collection_ref is None:
            log_event(
                self._logger,
                level="debug",
                event="burn_mirror_skipped",
                message="Skipping Firestore mirror because client is not ready",
                invocation_id=invocation_id,
            )
            return

        payload = _firestore_payload(record)
        payload["service_id"] = self.settings.service_id
        payload["env"] = self.settings.service_env
        payload["mirrored_at"] = firestore.SERVER_TIMESTAMP

        doc_ref = self._burns_collection_ref.document(self._doc_id_from_text(invocation_id))
        await asyncio.to_thread(doc_ref.set, payload, merge=True)

        await guarded_call(
            lambda: self._update_burn_aggregates(invocation_id=invocation_id, status=str(record.get("status") or "")),
            logger=self._logger,
            event="burn_aggregate_update_failed",
            message="Failed to update burn aggregates",
            level="error",
            invocation_id=invocation_id,
        )

    async def _update_burn_aggregates(self, *, invocation_id: str, status: str) -> None:
        if self._metrics_doc_ref is None or self._daily_collection_ref is None:
            return

        base_payload: dict[str, Any] = {
            "updated_at": firestore.SERVER_TIMESTAMP,
            "burn_count": firestore.Increment(1),
            "completed_count": firestore.Increment(1 if status == "completed" else 0),
            "failed_count": firestore.Increment(1 if status == "failed" else 0),
            "service_id": self.settings.service_id,
            "env": self.settings.service_env,
        }

        runtime_payload = dict(base_payload)
        runtime_payload["last_invocation_id"] = invocation_id
        runtime_payload["last_status"] = status

        day_id = _utc_day_id()
        daily_payload = dict(base_payload)
        daily_payload["day_id"] = day_id

        daily_doc_ref = self._daily_collection_ref.document(day_id)
        await asyncio.gather(
            asyncio.to_thread(self._metrics_doc_ref.set, runtime_payload, merge=True),
            asyncio.to_thread(daily_doc_ref.set, daily_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        service_doc = firestore_client.document(f"{self.settings.service_collection}/{self.settings.service_id}")
        self._burns_collection_ref = service_doc.collection(self.settings.burns_collection)
        metrics_collection = service_doc.collection(self.settings.metrics_collection)
        self._metrics_doc_ref = metrics_collection.document(self.settings.metrics_doc_id)
        self._daily_collection_ref = self._metrics_doc_ref.collection("daily")

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
