from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import ROUND_UP, Decimal
from typing import Any

import aiohttp
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address, transfer_checked
from spl.token.models import TransferCheckedParams

from treasury_burn.common import guarded_call, log_event

from .errors import InsufficientFunds, NoPayerAccount, PaymentConfirmFailed
from .rpc import ConfirmationTimeoutError, RpcMethodError, SolanaRpcClient, TransactionFailedError, compile_and_sign
from .types import USDC_DECIMALS, PaymentReceipt, PaymentStore, from_raw, to_raw

MICRO_USDC_QUANTUM = Decimal("0.000001")


def compute_service_fee(
    source_amount_sol: Decimal,
    *,
    sol_price_usd: Decimal | None,
    rate: Decimal,
    minimum_usd: Decimal,
) -> Decimal:
    """Fee in USD, rounded up to whole micro-USDC."""
    fee = minimum_usd
    if sol_price_usd is not None and sol_price_usd > 0:
        fee = max(minimum_usd, source_amount_sol * sol_price_usd * rate)
    return fee.quantize(MICRO_USDC_QUANTUM, rounding=ROUND_UP)


class FeeSettlement:
    """Pays the service fee in USDC before any treasury funds are spent.

    The transfer is submitted exactly once. The `pending` record carries the
    transaction signature before the send, and an unanswered send is still
    polled for confirmation, so every payment that may have landed stays
    traceable.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpcClient,
        payer: Keypair,
        store: PaymentStore,
        recipient: str,
        usdc_mint: str,
        production: bool,
        confirm_timeout_seconds: float = 60.0,
        network: str = "solana",
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._payer = payer
        self._store = store
        self._recipient = recipient
        self._usdc_mint = usdc_mint
        self._production = production
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._network = network

    def _base_record(self, *, payment_id: str, invocation_id: str, amount_micro: int) -> dict[str, Any]:
        return {
            "payment_id": payment_id,
            "invocation_id": invocation_id,
            "payment_type": "burn_service",
            "resource": f"burn/{invocation_id}",
            "payer": str(self._payer.pubkey()),
            "recipient": self._recipient,
            "amount_usdc": str(from_raw(amount_micro, USDC_DECIMALS)),
            "amount_micro_usdc": amount_micro,
            "network": self._network,
            "x402_version": 1,
            "scheme": "exact",
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

    async def settle(self, *, fee_usd: Decimal, invocation_id: str) -> PaymentReceipt:
        if not self._recipient:
            raise ValueError("SERVICE_FEE_RECIPIENT is required to settle fees.")

        amount_micro = to_raw(fee_usd.quantize(MICRO_USDC_QUANTUM, rounding=ROUND_UP), USDC_DECIMALS)
        payment_id = f"pay-{invocation_id}"
        payer = str(self._payer.pubkey())
        record = self._base_record(payment_id=payment_id, invocation_id=invocation_id, amount_micro=amount_micro)

        balance_raw, decimals, has_account = await self._rpc.get_token_balance(payer, self._usdc_mint)
        if not has_account:
            if self._production:
                raise NoPayerAccount("payer has no USDC token account")
            record.update({"status": "placeholder", "tx_signature": None})
            await self._store.save_payment(payment_id=payment_id, record=record)
            log_event(
                self._logger,
                level="warning",
                event="payment_placeholder_recorded",
                message="Payer has no USDC account; recorded an unsettled placeholder payment",
                invocation_id=invocation_id,
                payment_id=payment_id,
                amount_micro_usdc=amount_micro,
            )
            return PaymentReceipt(
                payment_id=payment_id,
                reference=None,
                amount_micro_usdc=amount_micro,
                status="placeholder",
                placeholder=True,
            )

        if balance_raw < amount_micro:
            raise InsufficientFunds(
                f"USDC balance {from_raw(balance_raw, USDC_DECIMALS)} is below the "
                f"{from_raw(amount_micro, USDC_DECIMALS)} service fee"
            )

        mint = Pubkey.from_string(self._usdc_mint)
        instruction = transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_associated_token_address(self._payer.pubkey(), mint),
                mint=mint,
                dest=get_associated_token_address(Pubkey.from_string(self._recipient), mint),
                owner=self._payer.pubkey(),
                amount=amount_micro,
                decimals=decimals if decimals is not None else USDC_DECIMALS,
            )
        )

        try:
            latest_blockhash = await self._rpc.latest_blockhash()
        except asyncio.CancelledError:
            raise
        except (RpcMethodError, aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as error:
            record.update({"status": "failed", "tx_signature": None, "error": str(error)[:400]})
            await guarded_call(
                lambda: self._store.save_payment(payment_id=payment_id, record=record),
                logger=self._logger,
                event="payment_record_failed",
                message="Failed to persist failed payment record",
                level="error",
                payment_id=payment_id,
            )
            raise PaymentConfirmFailed(f"fee transfer could not be built: {error}") from error

        # the signature is known before sending, so the record exists even if the send outcome is lost
        signed_tx, tx_signature = compile_and_sign(self._payer, [instruction], latest_blockhash)
        record.update({"status": "pending", "tx_signature": tx_signature})
        await self._store.save_payment(payment_id=payment_id, record=record)

        try:
            await self._rpc.send_transaction(signed_tx)
        except asyncio.CancelledError:
            raise
        except RpcMethodError as error:
            await self._store.update_payment(
                payment_id=payment_id,
                status="failed",
                fields={"error": str(error)[:400]},
            )
            raise PaymentConfirmFailed(
                f"fee transfer was refused by the node: {error}",
                payment_ref=tx_signature,
            ) from error
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as error:
            log_event(
                self._logger,
                level="warning",
                event="payment_submission_unanswered",
                message="Fee transfer submission got no answer; waiting for confirmation anyway",
                invocation_id=invocation_id,
                payment_id=payment_id,
                tx_signature=tx_signature,
                error=str(error)[:400],
            )
        else:
            log_event(
                self._logger,
                level="info",
                event="payment_submitted",
                message="Service fee transfer submitted",
                invocation_id=invocation_id,
                payment_id=payment_id,
                tx_signature=tx_signature,
                amount_micro_usdc=amount_micro,
            )

        try:
            await self._rpc.confirm_transaction(tx_signature, timeout_seconds=self._confirm_timeout_seconds)
        except (TransactionFailedError, ConfirmationTimeoutError) as error:
            await self._store.update_payment(
                payment_id=payment_id,
                status="failed",
                fields={"error": str(error)[:400]},
            )
            raise PaymentConfirmFailed(
                f"fee transfer was not confirmed: {error}",
                payment_ref=tx_signature,
            ) from error

        await self._store.update_payment(
            payment_id=payment_id,
            status="confirmed",
            fields={"confirmed_at": datetime.now(timezone.utc).isoformat()},
        )
        log_event(
            self._logger,
            level="info",
            event="payment_confirmed",
            message="Service fee transfer confirmed",
            invocation_id=invocation_id,
            payment_id=payment_id,
            tx_signature=tx_signature,
        )
        return PaymentReceipt(
            payment_id=payment_id,
            reference=tx_signature,
            amount_micro_usdc=amount_micro,
            status="confirmed",
        )
