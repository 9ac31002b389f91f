from __future__ import annotations

import logging

from treasury_burn.common import log_event

from .errors import ReplayDetected
from .types import AUTH_WINDOW_MS, AuthorizationProof, UsedSignatureStore, signature_digest


class ReplayGuard:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: UsedSignatureStore,
        ttl_seconds: int = 600,
    ) -> None:
        self._logger = logger
        self._store = store
        # a proof stays valid from ts - window until ts + window, so the key must outlive both halves
        self._ttl_seconds = max(2 * AUTH_WINDOW_MS // 1000, ttl_seconds)

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    async def consume(self, proof: AuthorizationProof, *, entity: str) -> str:
        """Mark the proof's signature as used; the insert itself is the replay check."""
        signature_hash = signature_digest(bytes(proof.signature))
        inserted = await self._store.insert_used_signature(
            signature_hash=signature_hash,
            entity=entity,
            ttl_seconds=self._ttl_seconds,
        )
        if not inserted:
            log_event(
                self._logger,
                level="warning",
                event="replay_detected",
                message="Authorization signature was already consumed",
                identity=proof.identity,
                entity=entity,
                signature_hash_prefix=signature_hash[:8],
            )
            raise ReplayDetected("authorization has already been used")

        log_event(
            self._logger,
            level="debug",
            event="replay_guard_consumed",
            message="Authorization signature consumed",
            entity=entity,
            signature_hash_prefix=signature_hash[:8],
        )
        return signature_hash
