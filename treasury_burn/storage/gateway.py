from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from treasury_burn.common import log_event

from .firestore_ops import FirestoreStorageOps
from .redis_ops import RedisStorageOps
from .settings import StorageSettings


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Redis holds the authoritative burn state; Firestore, when enabled, gets a mirror."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._burns_collection_ref: Any | None = None
        self._metrics_doc_ref: Any | None = None
        self._daily_collection_ref: Any | None = None

    @property
    def mirror_enabled(self) -> bool:
        return self._firestore is not None

    async def connect(self) -> None:
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

        if not self.settings.firestore_enabled:
            return

        firebase_credentials = os.getenv("FIREBASE_CREDENTIALS")
        if firebase_credentials and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = firebase_credentials

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._initialize_namespace_refs()
        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore",
            service_id=self.settings.service_id,
        )

    async def healthcheck(self) -> None:
        redis_client = self._require_redis()
        await redis_client.ping()

        if self._metrics_doc_ref is not None:
            await asyncio.to_thread(self._metrics_doc_ref.get)

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

        self._burns_collection_ref = None
        self._metrics_doc_ref = None
        self._daily_collection_ref = None
        self._firestore = None
