from __future__ import annotations

import contextlib
import json
from typing import Any

from redis.asyncio.client import Redis

from treasury_burn.common import log_event

from .helpers import now_iso as _now_iso
from .helpers import serialize_for_redis as _serialize_for_redis
from .helpers import to_int as _to_int

_CREATE_IF_ABSENT = """
if redis.call('exists', KEYS[1]) == 1 then
  return 0
end
redis.call('hset', KEYS[1], unpack(ARGV))
return 1
"""

_UPDATE_UNLESS_TERMINAL = """
local status = redis.call('hget', KEYS[1], 'status')
if not status then
  return 0
end
if status == 'completed' or status == 'failed' then
  return 0
end
redis.call('hset', KEYS[1], unpack(ARGV))
return 1
"""


def _flatten(mapping: dict[str, Any]) -> list[str]:
    flat: list[str] = []
    for key, value in mapping.items():
        if value is None:
            continue
        flat.append(str(key))
        flat.append(_serialize_for_redis(value))
    return flat


def _decode_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    with contextlib.suppress(json.JSONDecodeError, TypeError):
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    return []


class RedisStorageOps:
    @staticmethod
    def _key(prefix: str, identifier: str) -> str:
        return f"{prefix}:{identifier}"

    async def insert_used_signature(
        self,
        *,
        signature_hash: str,
        entity: str,
        ttl_seconds: int,
    ) -> bool:
        redis_client = self._require_redis()
        key = self._key(self.settings.used_signature_prefix, signature_hash)
        inserted = await redis_client.set(key, entity, ex=max(1, ttl_seconds), nx=True)
        return bool(inserted)

    async def create_burn_record(self, *, invocation_id: str, record: dict[str, Any]) -> bool:
        redis_client = self._require_redis()
        key = self._key(self.settings.burn_record_prefix, invocation_id)
        created = await redis_client.eval(_CREATE_IF_ABSENT, 1, key, *_flatten(record))
        return bool(created)

    async def update_burn_record(self, *, invocation_id: str, fields: dict[str, Any]) -> bool:
        flat = _flatten(fields)
        if not flat:
            return True
        redis_client = self._require_redis()
        key = self._key(self.settings.burn_record_prefix, invocation_id)
        applied = await redis_client.eval(_UPDATE_UNLESS_TERMINAL, 1, key, *flat)
        if not applied:
            log_event(
                self._logger,
                level="debug",
                event="burn_record_update_refused",
                message="Burn record is missing or terminal",
                invocation_id=invocation_id,
            )
        return bool(applied)

    async def get_burn_record(self, *, invocation_id: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        payload = await redis_client.hgetall(self._key(self.settings.burn_record_prefix, invocation_id))
        return dict(payload) if payload else None

    async def list_burn_records(self, *, owner: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        redis_client = self._require_redis()
        normalized_limit = max(1, limit)
        pattern = f"{self.settings.burn_record_prefix}:*"

        records: list[dict[str, Any]] = []
        async for key in redis_client.scan_iter(match=pattern, count=min(1000, normalized_limit * 4)):
            payload = await redis_client.hgetall(key)
            if not payload:
                continue
            if owner and payload.get("owner") != owner:
                continue
            record = dict(payload)
            record.setdefault("invocation_id", key.split(":")[-1])
            records.append(record)
            if len(records) >= normalized_limit:
                break

        records.sort(key=lambda item: item.get("created_at", ""), reverse=True)
        return records

    async def save_payment(self, *, payment_id: str, record: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        mapping = {str(key): _serialize_for_redis(value) for key, value in record.items() if value is not None}
        mapping["updated_at"] = _now_iso()
        await redis_client.hset(self._key(self.settings.payment_prefix, payment_id), mapping=mapping)

    async def update_payment(
        self,
        *,
        payment_id: str,
        status: str,
        fields: dict[str, Any] | None = None,
    ) -> None:
        redis_client = self._require_redis()
        mapping: dict[str, str] = {"status": status, "updated_at": _now_iso()}
        if fields:
            mapping.update({str(key): _serialize_for_redis(value) for key, value in fields.items() if value is not None})
        await redis_client.hset(self._key(self.settings.payment_prefix, payment_id), mapping=mapping)

    async def get_payment(self, *, payment_id: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        payload = await redis_client.hgetall(self._key(self.settings.payment_prefix, payment_id))
        return dict(payload) if payload else None

    async def payment_stats(self, *, limit: int = 10_000) -> dict[str, Any]:
        redis_client = self._require_redis()
        counts: dict[str, int] = {}
        confirmed_micro = 0
        seen = 0
        async for key in redis_client.scan_iter(match=f"{self.settings.payment_prefix}:*", count=1000):
            payload = await redis_client.hgetall(key)
            if not payload:
                continue
            status = str(payload.get("status", "unknown"))
            counts[status] = counts.get(status, 0) + 1
            if status == "confirmed":
                confirmed_micro += _to_int(payload.get("amount_micro_usdc"))
            seen += 1
            if seen >= limit:
                break

        return {
            "total": seen,
            "by_status": counts,
            "confirmed_micro_usdc": confirmed_micro,
        }

    async def save_bundle(self, *, bundle_id: str, record: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        mapping = {str(key): _serialize_for_redis(value) for key, value in record.items() if value is not None}
        mapping["updated_at"] = _now_iso()
        await redis_client.hset(self._key(self.settings.bundle_prefix, bundle_id), mapping=mapping)

    async def update_bundle(
        self,
        *,
        bundle_id: str,
        status: str,
        fields: dict[str, Any] | None = None,
    ) -> None:
        redis_client = self._require_redis()
        mapping: dict[str, str] = {"status": status, "updated_at": _now_iso()}
        if fields:
            mapping.update({str(key): _serialize_for_redis(value) for key, value in fields.items() if value is not None})
        await redis_client.hset(self._key(self.settings.bundle_prefix, bundle_id), mapping=mapping)

    async def get_bundle(self, *, bundle_id: str) -> dict[str, Any] | None:
        redis_client = self._require_redis()
        payload = await redis_client.hgetall(self._key(self.settings.bundle_prefix, bundle_id))
        if not payload:
            return None
        record: dict[str, Any] = dict(payload)
        record["tx_signatures"] = _decode_list(payload.get("tx_signatures"))
        return record

    async def bundle_stats(self, *, limit: int = 10_000) -> dict[str, Any]:
        redis_client = self._require_redis()
        counts: dict[str, int] = {}
        execution_times: list[int] = []
        seen = 0
        async for key in redis_client.scan_iter(match=f"{self.settings.bundle_prefix}:*", count=1000):
            payload = await redis_client.hgetall(key)
            if not payload:
                continue
            status = str(payload.get("status", "unknown"))
            counts[status] = counts.get(status, 0) + 1
            if status == "landed" and payload.get("execution_time_ms"):
                execution_times.append(_to_int(payload.get("execution_time_ms")))
            seen += 1
            if seen >= limit:
                break

        landed = counts.get("landed", 0)
        settled = landed + counts.get("failed", 0) + counts.get("rejected", 0)
        return {
            "total": seen,
            "by_status": counts,
            "success_rate": round(landed / settled * 100, 2) if settled else 0.0,
            "avg_execution_time_ms": round(sum(execution_times) / len(execution_times), 1) if execution_times else 0.0,
        }

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
