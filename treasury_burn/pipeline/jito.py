from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import aiohttp

from treasury_burn.common import log_event

MAX_BUNDLE_TRANSACTIONS = 5


class JitoBundleRateLimitError(RuntimeError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


def _is_jito_rate_limit_message(message: str) -> bool:
    lowered = message.lower()
    return any(
        marker in lowered
        for marker in (
            "rate limit",
            "too many requests",
            "network congested",
            "congested",
            "try again later",
        )
    )


class JitoBlockEngineClient:
    """JSON-RPC client for the Jito block engine bundle endpoint."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session: aiohttp.ClientSession,
        block_engine_url: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._session = session
        self._block_engine_url = block_engine_url.strip()
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._tip_accounts_cache: list[str] = []

    @property
    def block_engine_url(self) -> str:
        return self._block_engine_url

    async def _post(self, method: str, params: list[Any]) -> tuple[int, Any, str, float | None]:
        if not self._block_engine_url:
            raise RuntimeError("JITO_BLOCK_ENGINE_URL is required for bundle mode.")

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        async with self._session.post(self._block_engine_url, json=payload, timeout=self._timeout) as response:
            status = response.status
            retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
            raw_text = await response.text()

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}
        return status, parsed, raw_text, retry_after_seconds

    async def fetch_tip_accounts(self, *, force_refresh: bool = False) -> list[str]:
        if self._tip_accounts_cache and not force_refresh:
            return list(self._tip_accounts_cache)

        status, parsed, raw_text, _ = await self._post("getTipAccounts", [])
        if status >= 400:
            raise RuntimeError(f"Jito getTipAccounts failed: status={status} body={str(raw_text)[:240]!r}")

        if isinstance(parsed, dict) and parsed.get("error"):
            raise RuntimeError(f"Jito getTipAccounts failed: {parsed['error']}")

        result = parsed.get("result") if isinstance(parsed, dict) else None
        if not isinstance(result, list):
            raise RuntimeError(f"Unexpected getTipAccounts response: {parsed}")

        tip_accounts = [str(item).strip() for item in result if str(item).strip()]
        if not tip_accounts:
            raise RuntimeError("Jito getTipAccounts returned no tip accounts.")

        self._tip_accounts_cache = tip_accounts
        log_event(
            self._logger,
            level="info",
            event="jito_tip_accounts_loaded",
            message="Loaded Jito tip accounts",
            tip_account_count=len(tip_accounts),
        )
        return list(tip_accounts)

    async def select_tip_account(self, *, bundle_key: str) -> str:
        tip_accounts = await self.fetch_tip_accounts()
        if len(tip_accounts) == 1:
            return tip_accounts[0]
        index = int(hashlib.sha256(bundle_key.encode("utf-8")).hexdigest(), 16) % len(tip_accounts)
        return tip_accounts[index]

    async def send_bundle(
        self,
        *,
        signed_transactions: list[str],
        bundle_key: str,
    ) -> str:
        if not signed_transactions:
            raise ValueError("bundle must contain at least one transaction")
        if len(signed_transactions) > MAX_BUNDLE_TRANSACTIONS:
            raise ValueError(
                f"bundle too large: {len(signed_transactions)} transactions (max {MAX_BUNDLE_TRANSACTIONS})"
            )

        status, parsed, raw_text, retry_after_seconds = await self._post(
            "sendBundle",
            [signed_transactions, {"encoding": "base64"}],
        )

        if status == 429:
            raise JitoBundleRateLimitError(
                f"Jito bundle submission failed: status={status} body={str(raw_text)[:240]!r}",
                retry_after_seconds=retry_after_seconds,
            )

        if status >= 400:
            error_message = str(raw_text)
            if isinstance(parsed, dict) and parsed.get("error") is not None:
                error_message = _error_message_from_payload(parsed.get("error"))
            if _is_jito_rate_limit_message(error_message):
                raise JitoBundleRateLimitError(
                    f"Jito bundle submission rate-limited: status={status} error={error_message}",
                    retry_after_seconds=retry_after_seconds,
                )
            raise RuntimeError(f"Jito bundle submission failed: status={status} body={str(raw_text)[:240]!r}")

        if isinstance(parsed, dict) and parsed.get("error"):
            error_payload = parsed["error"]
            error_message = _error_message_from_payload(error_payload)
            if _is_jito_rate_limit_message(error_message):
                raise JitoBundleRateLimitError(
                    f"Jito bundle submission rate-limited: {error_message}",
                    retry_after_seconds=retry_after_seconds,
                )
            raise RuntimeError(f"Jito bundle submission failed: {error_payload}")

        bundle_id = None
        if isinstance(parsed, dict):
            result = parsed.get("result")
            if isinstance(result, str):
                bundle_id = result
            elif isinstance(result, dict):
                bundle_id = str(result.get("bundleId") or result.get("id") or "") or None
        if not bundle_id:
            raise RuntimeError(f"Jito sendBundle returned no bundle id: {str(parsed)[:240]}")

        log_event(
            self._logger,
            level="info",
            event="jito_bundle_submitted",
            message="Bundle submitted to Jito block engine",
            bundle_key=bundle_key,
            tx_count=len(signed_transactions),
            bundle_id=bundle_id,
        )
        return bundle_id

    async def get_bundle_status(self, bundle_id: str) -> dict[str, Any] | None:
        """Return the landed-bundle status entry, or None while the bundle is unknown to the engine."""
        status, parsed, raw_text, _ = await self._post("getBundleStatuses", [[bundle_id]])
        if status >= 400:
            raise RuntimeError(f"Jito getBundleStatuses failed: status={status} body={str(raw_text)[:240]!r}")
        if isinstance(parsed, dict) and parsed.get("error"):
            raise RuntimeError(f"Jito getBundleStatuses failed: {parsed['error']}")

        result = parsed.get("result") if isinstance(parsed, dict) else None
        values = result.get("value") if isinstance(result, dict) else None
        if not isinstance(values, list) or not values:
            return None
        entry = values[0]
        return entry if isinstance(entry, dict) else None
