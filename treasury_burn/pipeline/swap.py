from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import aiohttp
from solders.keypair import Keypair

from treasury_burn.common import log_event

from .errors import SwapFailed
from .rpc import (
    ConfirmationTimeoutError,
    SolanaRpcClient,
    TransactionFailedError,
    sign_serialized_transaction,
)
from .types import SOL_DECIMALS, SwapOutcome, from_raw


class SwapOutcomeUnknown(RuntimeError):
    """Raised once a swap may have been submitted but its result cannot be determined."""

    def __init__(self, message: str, *, reference: str | None = None) -> None:
        super().__init__(message)
        self.reference = reference


@dataclass(slots=True, frozen=True)
class SwapRequest:
    input_mint: str
    output_mint: str
    input_raw: int
    slippage_bps: int
    signer: Keypair = field(repr=False)

    @property
    def taker(self) -> str:
        return str(self.signer.pubkey())


class SwapProvider(Protocol):
    name: str
    supports_bundling: bool

    async def swap(self, request: SwapRequest) -> SwapOutcome:
        ...

    async def prepare(self, request: SwapRequest) -> SwapOutcome:
        ...


def _minimum_output(quoted_out: int, slippage_bps: int, threshold: Any) -> int:
    try:
        if threshold is not None and str(threshold).strip():
            return int(str(threshold))
    except ValueError:
        pass
    return quoted_out * (10_000 - max(0, min(10_000, slippage_bps))) // 10_000


class JupiterUltraProvider:
    name = "jupiter_ultra"
    supports_bundling = True

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session: aiohttp.ClientSession,
        api_base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._session = session
        self._api_base_url = api_base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _order(self, request: SwapRequest) -> dict[str, Any]:
        params = {
            "inputMint": request.input_mint,
            "outputMint": request.output_mint,
            "amount": str(request.input_raw),
            "taker": request.taker,
            "slippageBps": str(request.slippage_bps),
        }
        async with self._session.get(
            f"{self._api_base_url}/order",
            params=params,
            headers=self._headers(),
            timeout=self._timeout,
        ) as response:
            data = await response.json(content_type=None)
            if response.status >= 400:
                raise RuntimeError(f"Jupiter order failed: status={response.status} body={str(data)[:240]}")

        if not isinstance(data, dict):
            raise RuntimeError(f"Unexpected Jupiter order response: {str(data)[:240]}")
        if not data.get("transaction"):
            reason = data.get("errorMessage") or data.get("error") or "no transaction returned"
            raise RuntimeError(f"Jupiter order unavailable: {reason}")
        if not data.get("requestId") or "outAmount" not in data:
            raise RuntimeError(f"Unexpected Jupiter order response: {str(data)[:240]}")
        return data

    async def prepare(self, request: SwapRequest) -> SwapOutcome:
        order = await self._order(request)
        signed_tx, tx_signature = sign_serialized_transaction(
            base64.b64decode(order["transaction"]),
            request.signer,
        )
        quoted_out = int(str(order["outAmount"]))
        minimum_out = _minimum_output(quoted_out, request.slippage_bps, order.get("otherAmountThreshold"))
        return SwapOutcome(
            provider=self.name,
            reference=tx_signature,
            input_raw=int(str(order.get("inAmount") or request.input_raw)),
            output_raw=minimum_out,
            requires_reconciliation=True,
            signed_transaction=signed_tx,
            details={
                "request_id": order["requestId"],
                "quoted_out_raw": quoted_out,
                "swap_type": order.get("swapType"),
                "fee_bps": order.get("feeBps"),
            },
        )

    async def swap(self, request: SwapRequest) -> SwapOutcome:
        prepared = await self.prepare(request)
        payload = {
            "signedTransaction": prepared.signed_transaction,
            "requestId": prepared.details["request_id"],
        }
        try:
            async with self._session.post(
                f"{self._api_base_url}/execute",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            ) as response:
                data = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise SwapOutcomeUnknown(
                f"Jupiter execute did not answer: {error}",
                reference=prepared.reference,
            ) from error

        # Ultra broadcasts server-side, so only an explicit answer rules out a landed swap
        if status >= 500 or not isinstance(data, dict):
            raise SwapOutcomeUnknown(
                f"Jupiter execute answered without a result: status={status} body={str(data)[:240]}",
                reference=prepared.reference,
            )
        if status >= 400:
            raise RuntimeError(f"Jupiter execute refused: status={status} body={str(data)[:240]}")
        if data.get("status") != "Success":
            raise RuntimeError(
                f"Jupiter execute rejected: code={data.get('code')} error={data.get('error') or data.get('status')}"
            )

        reference = str(data.get("signature") or prepared.reference)
        output_raw: int | None = None
        if data.get("outputAmountResult") not in (None, ""):
            output_raw = int(str(data["outputAmountResult"]))

        return SwapOutcome(
            provider=self.name,
            reference=reference,
            input_raw=int(str(data.get("inputAmountResult") or prepared.input_raw)),
            output_raw=output_raw,
            requires_reconciliation=output_raw is None,
            details={
                "request_id": prepared.details["request_id"],
                "slot": data.get("slot"),
                "quoted_out_raw": prepared.details["quoted_out_raw"],
            },
        )


class PumpPortalProvider:
    """Bonding-curve buy through PumpPortal's local-signing endpoint.

    The response is an unsigned transaction only, so the acquired amount is
    never known up front and the balance reconciler has to measure it.
    """

    name = "pumpportal"
    supports_bundling = False

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session: aiohttp.ClientSession,
        rpc: SolanaRpcClient,
        api_url: str,
        pool: str = "pump",
        priority_fee_sol: float = 0.00001,
        timeout_seconds: float = 10.0,
        confirm_timeout_seconds: float = 60.0,
    ) -> None:
        self._logger = logger
        self._session = session
        self._rpc = rpc
        self._api_url = api_url
        self._pool = pool
        self._priority_fee_sol = priority_fee_sol
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._confirm_timeout_seconds = confirm_timeout_seconds

    async def prepare(self, request: SwapRequest) -> SwapOutcome:
        raise RuntimeError("PumpPortal trades cannot be bundled; output amount is unknown before landing")

    async def swap(self, request: SwapRequest) -> SwapOutcome:
        payload = {
            "publicKey": request.taker,
            "action": "buy",
            "mint": request.output_mint,
            "denominatedInSol": "true",
            "amount": float(from_raw(request.input_raw, SOL_DECIMALS)),
            "slippage": request.slippage_bps / 100,
            "priorityFee": self._priority_fee_sol,
            "pool": self._pool,
        }
        async with self._session.post(self._api_url, json=payload, timeout=self._timeout) as response:
            body = await response.read()
            if response.status != 200:
                raise RuntimeError(
                    f"PumpPortal trade failed: status={response.status} body={body[:240].decode('utf-8', 'replace')}"
                )

        signed_tx, tx_signature = sign_serialized_transaction(body, request.signer)
        try:
            await self._rpc.send_transaction(signed_tx)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise SwapOutcomeUnknown(
                f"PumpPortal swap submission did not answer: {error}",
                reference=tx_signature,
            ) from error
        try:
            await self._rpc.confirm_transaction(tx_signature, timeout_seconds=self._confirm_timeout_seconds)
        except TransactionFailedError as error:
            raise RuntimeError(f"PumpPortal swap failed on-chain: {error}") from error
        except ConfirmationTimeoutError as error:
            raise SwapOutcomeUnknown(
                f"PumpPortal swap submitted but not confirmed: {error}",
                reference=tx_signature,
            ) from error

        return SwapOutcome(
            provider=self.name,
            reference=tx_signature,
            input_raw=request.input_raw,
            output_raw=None,
            requires_reconciliation=True,
            details={"pool": self._pool, "input_sol": str(from_raw(request.input_raw, SOL_DECIMALS))},
        )


class SwapExecutor:
    def __init__(self, *, logger: logging.Logger, providers: Sequence[SwapProvider]) -> None:
        self._logger = logger
        self._providers = list(providers)

    @property
    def providers(self) -> list[SwapProvider]:
        return list(self._providers)

    @property
    def can_bundle(self) -> bool:
        return any(provider.supports_bundling for provider in self._providers)

    async def _run(self, request: SwapRequest, *, bundled: bool, invocation_id: str) -> SwapOutcome:
        errors: list[tuple[str, str]] = []
        candidates = [p for p in self._providers if p.supports_bundling] if bundled else self._providers
        for provider in candidates:
            try:
                outcome = await (provider.prepare(request) if bundled else provider.swap(request))
            except asyncio.CancelledError:
                raise
            except SwapOutcomeUnknown as error:
                # no fallback once funds may have moved
                errors.append((provider.name, str(error)))
                log_event(
                    self._logger,
                    level="error",
                    event="swap_outcome_unknown",
                    message="Swap submission outcome is unknown; not falling back",
                    invocation_id=invocation_id,
                    provider=provider.name,
                    tx_signature=error.reference,
                    error=str(error),
                )
                raise SwapFailed.from_unknown_outcome(errors, reference=error.reference) from error
            except Exception as error:
                errors.append((provider.name, str(error)[:400]))
                log_event(
                    self._logger,
                    level="warning",
                    event="swap_provider_failed",
                    message="Swap provider failed; trying next provider",
                    invocation_id=invocation_id,
                    provider=provider.name,
                    bundled=bundled,
                    error=str(error)[:400],
                )
                continue

            log_event(
                self._logger,
                level="info",
                event="swap_provider_succeeded",
                message="Swap provider produced an outcome",
                invocation_id=invocation_id,
                provider=provider.name,
                bundled=bundled,
                tx_signature=outcome.reference,
                output_raw=str(outcome.output_raw) if outcome.output_raw is not None else None,
                requires_reconciliation=outcome.requires_reconciliation,
            )
            return outcome

        raise SwapFailed.from_provider_errors(errors)

    async def execute(self, request: SwapRequest, *, invocation_id: str = "") -> SwapOutcome:
        return await self._run(request, bundled=False, invocation_id=invocation_id)

    async def prepare_bundle_leg(self, request: SwapRequest, *, invocation_id: str = "") -> SwapOutcome:
        return await self._run(request, bundled=True, invocation_id=invocation_id)