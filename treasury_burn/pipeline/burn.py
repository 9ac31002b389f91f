from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

import aiohttp
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import burn_checked, get_associated_token_address
from spl.token.models import BurnCheckedParams

from treasury_burn.common import guarded_call, log_event

from .errors import BundleFailed, BurnFailed
from .jito import JitoBlockEngineClient
from .rpc import (
    CONFIRMED_STATUSES,
    ConfirmationTimeoutError,
    RpcMethodError,
    SolanaRpcClient,
    TransactionFailedError,
    compile_and_sign,
)
from .types import BundleReceipt, BundleStore, BurnReceipt, SwapOutcome


def build_burn_instruction(owner: Pubkey, mint: Pubkey, raw_amount: int, decimals: int) -> Instruction:
    return burn_checked(
        BurnCheckedParams(
            program_id=TOKEN_PROGRAM_ID,
            mint=mint,
            account=get_associated_token_address(owner, mint),
            owner=owner,
            amount=raw_amount,
            decimals=decimals,
        )
    )


def _bundle_err_is_ok(err: Any) -> bool:
    if err is None:
        return True
    if isinstance(err, dict) and set(err.keys()) == {"Ok"}:
        return True
    return False


class BurnExecutor:
    """Destroys an exact raw amount of the target token held by the treasury.

    Direct mode sends one burn transaction. Bundled mode ships the signed swap,
    the burn and a Jito tip as a single all-or-nothing bundle.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpcClient,
        signer: Keypair,
        jito: JitoBlockEngineClient | None = None,
        bundle_store: BundleStore | None = None,
        confirm_timeout_seconds: float = 60.0,
        tip_lamports: int = 10_000,
        bundle_poll_interval_seconds: float = 2.0,
        bundle_timeout_seconds: float = 30.0,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._signer = signer
        self._jito = jito
        self._bundle_store = bundle_store
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._tip_lamports = max(1_000, tip_lamports)
        self._bundle_poll_interval_seconds = max(0.05, bundle_poll_interval_seconds)
        self._bundle_timeout_seconds = max(0.1, bundle_timeout_seconds)

    @property
    def bundling_available(self) -> bool:
        return self._jito is not None and bool(self._jito.block_engine_url)

    def _burn_instruction(self, mint: str, raw_amount: int, decimals: int) -> Instruction:
        if raw_amount <= 0:
            raise BurnFailed(f"refusing to burn non-positive amount {raw_amount}")
        return build_burn_instruction(self._signer.pubkey(), Pubkey.from_string(mint), raw_amount, decimals)

    async def burn(self, *, mint: str, raw_amount: int, decimals: int, invocation_id: str = "") -> BurnReceipt:
        instruction = self._burn_instruction(mint, raw_amount, decimals)

        tx_signature: str | None = None
        try:
            latest_blockhash = await self._rpc.latest_blockhash()
            signed_tx, tx_signature = compile_and_sign(self._signer, [instruction], latest_blockhash)
            await self._rpc.send_transaction(signed_tx)
            log_event(
                self._logger,
                level="info",
                event="burn_submitted",
                message="Burn transaction submitted",
                invocation_id=invocation_id,
                mint=mint,
                raw_amount=str(raw_amount),
                tx_signature=tx_signature,
            )
            await self._rpc.confirm_transaction(tx_signature, timeout_seconds=self._confirm_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except (
            TransactionFailedError,
            ConfirmationTimeoutError,
            RpcMethodError,
            aiohttp.ClientError,
            asyncio.TimeoutError,
            RuntimeError,
        ) as error:
            raise BurnFailed(f"burn transaction failed: {error}", tx_signature=tx_signature) from error

        log_event(
            self._logger,
            level="info",
            event="burn_confirmed",
            message="Burn transaction confirmed",
            invocation_id=invocation_id,
            mint=mint,
            raw_amount=str(raw_amount),
            tx_signature=tx_signature,
        )
        return BurnReceipt(reference=tx_signature, burned_raw=raw_amount)

    async def _tip_transaction(self, *, bundle_key: str, latest_blockhash: str) -> tuple[str, str]:
        if self._jito is None:
            raise RuntimeError("Jito client is not configured.")
        tip_account_raw = await self._jito.select_tip_account(bundle_key=bundle_key)
        try:
            tip_account = Pubkey.from_string(tip_account_raw)
        except Exception as error:
            raise RuntimeError(f"Invalid Jito tip account returned: {tip_account_raw}") from error

        instruction = transfer(
            TransferParams(
                from_pubkey=self._signer.pubkey(),
                to_pubkey=tip_account,
                lamports=self._tip_lamports,
            )
        )
        return compile_and_sign(self._signer, [instruction], latest_blockhash)

    async def _record_bundle(self, bundle_id: str, record: dict[str, Any]) -> None:
        if self._bundle_store is None:
            return
        await guarded_call(
            lambda: self._bundle_store.save_bundle(bundle_id=bundle_id, record=record),
            logger=self._logger,
            event="bundle_record_failed",
            message="Failed to persist bundle record",
            level="error",
            bundle_id=bundle_id,
        )

    async def _update_bundle(self, bundle_id: str, status: str, fields: dict[str, Any]) -> None:
        if self._bundle_store is None:
            return
        await guarded_call(
            lambda: self._bundle_store.update_bundle(bundle_id=bundle_id, status=status, fields=fields),
            logger=self._logger,
            event="bundle_record_update_failed",
            message="Failed to update bundle record",
            level="error",
            bundle_id=bundle_id,
            status=status,
        )

    async def _poll_bundle(self, bundle_id: str, burn_signature: str) -> tuple[str, str | None]:
        """Return (status, error) where status is landed, failed or rejected."""
        if self._jito is None:
            raise RuntimeError("Jito client is not configured.")
        deadline = time.monotonic() + self._bundle_timeout_seconds
        while True:
            try:
                entry = await self._jito.get_bundle_status(bundle_id)
                if entry is not None:
                    if not _bundle_err_is_ok(entry.get("err")):
                        return "failed", str(entry.get("err"))
                    if entry.get("confirmation_status") in CONFIRMED_STATUSES:
                        return "landed", None

                status = await self._rpc.get_signature_status(burn_signature)
                if status is not None:
                    if status.get("err"):
                        return "failed", str(status["err"])
                    if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                        return "landed", None
            except asyncio.CancelledError:
                raise
            except (RuntimeError, aiohttp.ClientError, asyncio.TimeoutError) as error:
                log_event(
                    self._logger,
                    level="debug",
                    event="bundle_status_poll_failed",
                    message="Bundle status poll failed",
                    bundle_id=bundle_id,
                    error=str(error),
                )

            if time.monotonic() >= deadline:
                return "rejected", f"bundle not confirmed within {self._bundle_timeout_seconds:.0f}s"
            await asyncio.sleep(self._bundle_poll_interval_seconds)

    async def burn_bundled(
        self,
        *,
        swap_leg: SwapOutcome,
        mint: str,
        raw_amount: int,
        decimals: int,
        invocation_id: str,
        owner: str,
    ) -> BurnReceipt:
        if self._jito is None:
            raise BundleFailed("bundle relay is not configured")
        if not swap_leg.signed_transaction:
            raise BundleFailed("swap leg carries no signed transaction")

        instruction = self._burn_instruction(mint, raw_amount, decimals)
        started = time.monotonic()
        try:
            latest_blockhash = await self._rpc.latest_blockhash()
            burn_tx, burn_signature = compile_and_sign(self._signer, [instruction], latest_blockhash)
            tip_tx, tip_signature = await self._tip_transaction(
                bundle_key=invocation_id,
                latest_blockhash=latest_blockhash,
            )
            # tip must be the last transaction in the bundle
            signed_transactions = [swap_leg.signed_transaction, burn_tx, tip_tx]
            bundle_id = await self._jito.send_bundle(
                signed_transactions=signed_transactions,
                bundle_key=invocation_id,
            )
        except asyncio.CancelledError:
            raise
        except (RuntimeError, ValueError, aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise BundleFailed(f"bundle submission failed: {error}") from error

        tx_signatures = (swap_leg.reference, burn_signature, tip_signature)
        await self._record_bundle(
            bundle_id,
            {
                "bundle_id": bundle_id,
                "invocation_id": invocation_id,
                "owner": owner,
                "status": "pending",
                "tx_signatures": list(tx_signatures),
                "tip_lamports": self._tip_lamports,
                "submitted_at": datetime.now(timezone.utc).isoformat(),
            },
        )

        status, error_message = await self._poll_bundle(bundle_id, burn_signature)
        execution_time_ms = int((time.monotonic() - started) * 1000)
        fields: dict[str, Any] = {"execution_time_ms": execution_time_ms}
        if error_message:
            fields["error"] = error_message[:400]
        else:
            fields["landed_at"] = datetime.now(timezone.utc).isoformat()
        await self._update_bundle(bundle_id, status, fields)

        log_event(
            self._logger,
            level="info" if status == "landed" else "error",
            event=f"bundle_{status}",
            message=f"Bundle {status}",
            invocation_id=invocation_id,
            bundle_id=bundle_id,
            execution_time_ms=execution_time_ms,
            error=error_message,
        )
        if status != "landed":
            raise BundleFailed(f"bundle {status}: {error_message}", bundle_id=bundle_id)

        landed_slot = await self._landed_slot(burn_signature, bundle_id=bundle_id, invocation_id=invocation_id)
        return BurnReceipt(
            reference=burn_signature,
            burned_raw=raw_amount,
            bundle=BundleReceipt(
                bundle_id=bundle_id,
                tx_signatures=tx_signatures,
                tip_lamports=self._tip_lamports,
                status=status,
                execution_time_ms=execution_time_ms,
                landed_slot=landed_slot,
            ),
        )

    async def _landed_slot(self, burn_signature: str, *, bundle_id: str, invocation_id: str) -> int | None:
        """Slot at which our own RPC node sees the bundle's burn, or None if it never catches up."""
        try:
            status = await self._rpc.confirm_transaction(
                burn_signature,
                timeout_seconds=self._confirm_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except (ConfirmationTimeoutError, TransactionFailedError, RpcMethodError) as error:
            log_event(
                self._logger,
                level="warning",
                event="bundle_landing_not_visible",
                message="RPC node has not confirmed the landed bundle; surplus read will poll instead",
                invocation_id=invocation_id,
                bundle_id=bundle_id,
                error=str(error),
            )
            return None
        slot = status.get("slot")
        return int(slot) if isinstance(slot, int) else None
