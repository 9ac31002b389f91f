from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from treasury_burn.common import log_event

from .errors import NoTokensAcquired
from .rpc import RpcMethodError
from .types import BalanceSnapshot


class TokenBalanceReader(Protocol):
    async def get_token_balance(
        self,
        owner: str,
        mint: str,
        *,
        min_context_slot: int | None = None,
    ) -> tuple[int, int | None, bool]:
        ...

    async def get_mint_decimals(self, mint: str) -> int:
        ...


class BalanceReconciler:
    """Measures exactly how many raw units a swap delivered.

    Both reads use the integer `amount` the chain reports, so the delta is
    exact. The post-swap read is retried while the balance has not moved yet.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        reader: TokenBalanceReader,
        max_attempts: int = 5,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._reader = reader
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = max(0.0, backoff_seconds)

    async def snapshot(self, owner: str, mint: str) -> BalanceSnapshot:
        raw, decimals, _has_account = await self._reader.get_token_balance(owner, mint)
        if decimals is None:
            decimals = await self._reader.get_mint_decimals(mint)
        return BalanceSnapshot(owner=owner, mint=mint, raw=raw, decimals=decimals)

    async def _read_raw(self, before: BalanceSnapshot, *, min_context_slot: int | None = None) -> int:
        if min_context_slot is None:
            raw, decimals, _has_account = await self._reader.get_token_balance(before.owner, before.mint)
        else:
            raw, decimals, _has_account = await self._reader.get_token_balance(
                before.owner,
                before.mint,
                min_context_slot=min_context_slot,
            )
        if decimals is not None and decimals != before.decimals:
            raise RuntimeError(
                f"token decimals changed between reads: before={before.decimals} after={decimals}"
            )
        return raw

    async def settled_delta(
        self,
        before: BalanceSnapshot,
        *,
        min_context_slot: int | None = None,
        invocation_id: str = "",
    ) -> int:
        """Balance change once the node has caught up with a transaction known to have landed.

        With `min_context_slot` the read is pinned to that slot and retried while
        the node is behind. Without it the read is retried while the balance has
        not moved, and an unchanged balance is accepted after the last attempt.
        Unlike `reconcile`, a zero or negative delta is returned, not raised.
        """
        delta = 0
        for attempt in range(1, self._max_attempts + 1):
            try:
                delta = await self._read_raw(before, min_context_slot=min_context_slot) - before.raw
            except RpcMethodError as error:
                if min_context_slot is None or attempt >= self._max_attempts:
                    raise
                log_event(
                    self._logger,
                    level="debug",
                    event="reconcile_node_behind",
                    message="Balance read refused until the node reaches the landing slot",
                    invocation_id=invocation_id,
                    attempt=attempt,
                    min_context_slot=min_context_slot,
                    error=str(error),
                )
            else:
                if min_context_slot is not None or delta > 0:
                    return delta
                log_event(
                    self._logger,
                    level="debug",
                    event="reconcile_balance_unchanged",
                    message="Post-landing balance has not moved yet",
                    invocation_id=invocation_id,
                    attempt=attempt,
                    pre_raw=str(before.raw),
                )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_seconds)

        log_event(
            self._logger,
            level="warning",
            event="reconcile_settled_without_change",
            message="Balance did not move after the landed transaction; accepting the last read",
            invocation_id=invocation_id,
            pre_raw=str(before.raw),
            delta_raw=str(delta),
        )
        return delta

    async def reconcile(self, before: BalanceSnapshot, *, invocation_id: str = "") -> int:
        post_raw = before.raw
        for attempt in range(1, self._max_attempts + 1):
            post_raw = await self._read_raw(before)
            if post_raw > before.raw:
                break
            log_event(
                self._logger,
                level="debug",
                event="reconcile_balance_unchanged",
                message="Post-swap balance has not moved yet",
                invocation_id=invocation_id,
                attempt=attempt,
                pre_raw=str(before.raw),
                post_raw=str(post_raw),
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_seconds)

        delta = post_raw - before.raw
        if delta <= 0:
            raise NoTokensAcquired(
                f"no tokens acquired: balance {before.raw} -> {post_raw} after {self._max_attempts} reads",
                pre_raw=before.raw,
                post_raw=post_raw,
            )

        log_event(
            self._logger,
            level="info",
            event="reconcile_completed",
            message="Acquired amount reconciled from balance delta",
            invocation_id=invocation_id,
            mint=before.mint,
            pre_raw=str(before.raw),
            post_raw=str(post_raw),
            delta_raw=str(delta),
            decimals=before.decimals,
        )
        return delta
