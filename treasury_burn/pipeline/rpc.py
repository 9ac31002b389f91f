from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import time
from typing import Any, Sequence

import aiohttp
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from treasury_burn.common import log_event

CONFIRMED_STATUSES = frozenset({"confirmed", "finalized"})


class RpcMethodError(RuntimeError):
    def __init__(self, message: str, *, method: str, status: int | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.status = status


class TransactionFailedError(RuntimeError):
    def __init__(self, message: str, *, tx_signature: str) -> None:
        super().__init__(message)
        self.tx_signature = tx_signature


class ConfirmationTimeoutError(RuntimeError):
    def __init__(self, message: str, *, tx_signature: str) -> None:
        super().__init__(message)
        self.tx_signature = tx_signature


def load_keypair(raw: str) -> Keypair:
    value = raw.strip()
    if not value:
        raise ValueError("TREASURY_PRIVATE_KEY is required.")

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("TREASURY_PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported TREASURY_PRIVATE_KEY format.")


def compile_and_sign(
    signer: Keypair,
    instructions: Sequence[Instruction],
    latest_blockhash: str,
) -> tuple[str, str]:
    """Build a v0 transaction paid by `signer` and return (base64 wire bytes, signature)."""
    message = MessageV0.try_compile(
        signer.pubkey(),
        list(instructions),
        [],
        Hash.from_string(latest_blockhash),
    )
    signed_tx = VersionedTransaction(message, [signer])
    if not signed_tx.signatures:
        raise RuntimeError("Signed transaction has no signatures.")
    return base64.b64encode(bytes(signed_tx)).decode("ascii"), str(signed_tx.signatures[0])


def sign_serialized_transaction(raw_tx: bytes, signer: Keypair) -> tuple[str, str]:
    """Sign a provider-built transaction whose fee payer is the treasury."""
    unsigned = VersionedTransaction.from_bytes(raw_tx)
    signed_tx = VersionedTransaction(unsigned.message, [signer])
    if not signed_tx.signatures:
        raise RuntimeError("Signed transaction has no signatures.")
    return base64.b64encode(bytes(signed_tx)).decode("ascii"), str(signed_tx.signatures[0])


class SolanaRpcClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        timeout_seconds: float = 10.0,
        read_retries: int = 2,
        read_retry_backoff_seconds: float = 0.5,
        confirm_poll_interval_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._timeout_seconds = timeout_seconds
        self._read_retries = max(0, read_retries)
        self._read_retry_backoff_seconds = max(0.0, read_retry_backoff_seconds)
        self._confirm_poll_interval_seconds = max(0.1, confirm_poll_interval_seconds)
        self._http_session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self.latest_blockhash()

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RpcMethodError(
                    f"RPC call failed: method={method} status={response.status} body={str(body)[:240]}",
                    method=method,
                    status=response.status,
                )

        if not isinstance(body, dict):
            raise RpcMethodError(f"Invalid RPC response for {method}: {str(body)[:240]}", method=method)

        if body.get("error"):
            raise RpcMethodError(f"RPC error for {method}: {body['error']}", method=method)

        return body.get("result")

    async def _read(self, method: str, params: list[Any] | None = None) -> Any:
        attempt = 0
        while True:
            try:
                return await self._rpc_call(method, params)
            except (aiohttp.ClientError, asyncio.TimeoutError) as error:
                if attempt >= self._read_retries:
                    raise
                attempt += 1
                log_event(
                    self._logger,
                    level="debug",
                    event="rpc_read_retry",
                    message="Retrying read-only RPC call",
                    method=method,
                    attempt=attempt,
                    error=str(error),
                )
                await asyncio.sleep(self._read_retry_backoff_seconds * attempt)

    async def latest_blockhash(self) -> str:
        result = await self._read("getLatestBlockhash", [{"commitment": "confirmed"}])
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash response: {result}")

        value = result.get("value")
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash payload: {result}")

        blockhash = value.get("blockhash")
        if not isinstance(blockhash, str) or not blockhash:
            raise RuntimeError(f"Missing blockhash in RPC response: {result}")

        return blockhash

    async def get_mint_decimals(self, mint: str) -> int:
        result = await self._read("getTokenSupply", [mint, {"commitment": "confirmed"}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict) or "decimals" not in value:
            raise RuntimeError(f"Unexpected getTokenSupply response for {mint}: {result}")
        return int(value["decimals"])

    async def get_token_balance(
        self,
        owner: str,
        mint: str,
        *,
        min_context_slot: int | None = None,
    ) -> tuple[int, int | None, bool]:
        """Return (raw amount, decimals, has_account) summed across the owner's accounts for `mint`.

        Amounts come from the RPC's string `amount` field and are never routed
        through `uiAmount` floats. With `min_context_slot` the node refuses to
        answer until it has processed that slot.
        """
        config: dict[str, Any] = {"encoding": "jsonParsed", "commitment": "confirmed"}
        if min_context_slot is not None:
            config["minContextSlot"] = min_context_slot
        result = await self._read("getTokenAccountsByOwner", [owner, {"mint": mint}, config])
        accounts = result.get("value") if isinstance(result, dict) else None
        if not isinstance(accounts, list):
            raise RuntimeError(f"Unexpected getTokenAccountsByOwner response: {str(result)[:240]}")

        total_raw = 0
        decimals: int | None = None
        for entry in accounts:
            token_amount = (
                entry.get("account", {})
                .get("data", {})
                .get("parsed", {})
                .get("info", {})
                .get("tokenAmount", {})
                if isinstance(entry, dict)
                else {}
            )
            if not isinstance(token_amount, dict) or "amount" not in token_amount:
                continue
            total_raw += int(str(token_amount["amount"]))
            if decimals is None and token_amount.get("decimals") is not None:
                decimals = int(token_amount["decimals"])

        return total_raw, decimals, bool(accounts)

    async def send_transaction(self, signed_tx_base64: str) -> str:
        # single submission; the node may rebroadcast the same signed bytes but we never re-sign
        result = await self._rpc_call(
            "sendTransaction",
            [
                signed_tx_base64,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": "confirmed",
                    "maxRetries": 3,
                },
            ],
        )
        if not isinstance(result, str) or not result:
            raise RuntimeError(f"Unexpected sendTransaction response: {result}")
        return result

    async def get_signature_status(self, tx_signature: str) -> dict[str, Any] | None:
        result = await self._read(
            "getSignatureStatuses",
            [[tx_signature], {"searchTransactionHistory": True}],
        )
        values = result.get("value") if isinstance(result, dict) else None
        if not isinstance(values, list) or not values:
            return None
        status = values[0]
        return status if isinstance(status, dict) else None

    async def confirm_transaction(self, tx_signature: str, *, timeout_seconds: float) -> dict[str, Any]:
        deadline = time.monotonic() + max(0.1, timeout_seconds)
        while True:
            status: dict[str, Any] | None = None
            try:
                status = await self.get_signature_status(tx_signature)
            except (aiohttp.ClientError, asyncio.TimeoutError, RpcMethodError) as error:
                log_event(
                    self._logger,
                    level="debug",
                    event="confirm_poll_failed",
                    message="Signature status poll failed",
                    tx_signature=tx_signature,
                    error=str(error),
                )

            if status is not None:
                if status.get("err"):
                    raise TransactionFailedError(
                        f"transaction failed on-chain: {status['err']}",
                        tx_signature=tx_signature,
                    )
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return status

            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"transaction not confirmed within {timeout_seconds:.0f}s",
                    tx_signature=tx_signature,
                )
            await asyncio.sleep(self._confirm_poll_interval_seconds)
