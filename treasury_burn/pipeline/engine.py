from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from treasury_burn.common import elapsed_ms, guarded_call, log_event

from .approval import ApprovalGate
from .auth import SignatureAuthenticator
from .burn import BurnExecutor
from .errors import DecisionRejected, IntentRejected, PipelineError, SwapFailed
from .fees import FeeSettlement, compute_service_fee
from .ledger import LedgerRecorder
from .reconcile import BalanceReconciler
from .replay import ReplayGuard
from .swap import SwapExecutor, SwapRequest
from .types import (
    SOL_DECIMALS,
    SOL_MINT,
    STEP_APPROVAL,
    STEP_AUTHENTICATION,
    STEP_BURN,
    STEP_LEDGER,
    STEP_PAYMENT,
    STEP_RECONCILIATION,
    STEP_REPLAY_GUARD,
    STEP_SWAP,
    STEP_VALIDATION,
    ApprovalDecision,
    AuthorizationProof,
    BurnIntent,
    ExecutionError,
    ExecutionResult,
    make_invocation_id,
    to_raw,
)


@dataclass(slots=True, frozen=True)
class PipelineLimits:
    min_purchase_sol: Decimal = Decimal("0.001")
    min_service_fee_usd: Decimal = Decimal("0.005")
    service_fee_rate: Decimal = Decimal("0.001")


@dataclass(slots=True)
class _RunState:
    invocation_id: str
    intent: BurnIntent
    owner: str
    step: str = STEP_VALIDATION
    purchased_raw: int = 0
    burned_raw: int = 0
    target_decimals: int | None = None
    payment_ref: str | None = None
    swap_ref: str | None = None
    burn_ref: str | None = None
    bundle_ref: str | None = None
    swap_provider: str | None = None
    decision: ApprovalDecision | None = None


class BurnPipeline:
    """Runs one burn intent through authorize, decide, pay, swap, reconcile, burn and record.

    Steps run strictly in order and the first typed failure halts the run.
    Nothing is rolled back once the fee has been paid; the returned result
    reports how far the run got and which amounts moved.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        signer: Keypair,
        authenticator: SignatureAuthenticator,
        replay_guard: ReplayGuard,
        approval_gate: ApprovalGate,
        fee_settlement: FeeSettlement | None,
        swap_executor: SwapExecutor,
        reconciler: BalanceReconciler,
        burn_executor: BurnExecutor,
        ledger: LedgerRecorder,
        limits: PipelineLimits | None = None,
        prefer_bundle: bool = True,
    ) -> None:
        self._logger = logger
        self._signer = signer
        self._authenticator = authenticator
        self._replay_guard = replay_guard
        self._approval_gate = approval_gate
        self._fee_settlement = fee_settlement
        self._swap_executor = swap_executor
        self._reconciler = reconciler
        self._burn_executor = burn_executor
        self._ledger = ledger
        self._limits = limits or PipelineLimits()
        self._prefer_bundle = prefer_bundle
        self._identity_locks: dict[str, asyncio.Lock] = {}

    @property
    def treasury(self) -> str:
        return str(self._signer.pubkey())

    def _identity_lock(self, identity: str) -> asyncio.Lock:
        lock = self._identity_locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._identity_locks[identity] = lock
        return lock

    def _validate(self, intent: BurnIntent, sol_price_usd: Decimal | None) -> Decimal | None:
        """Check the intent offline and return the fee to charge (None when fees are off)."""
        try:
            to_raw(intent.source_amount, SOL_DECIMALS)
        except ValueError as error:
            raise IntentRejected(f"invalid purchase amount: {error}") from error
        if intent.source_amount < self._limits.min_purchase_sol:
            raise IntentRejected(
                f"purchase {intent.source_amount} SOL is below the {self._limits.min_purchase_sol} SOL minimum"
            )
        if not 1 <= intent.slippage_bps <= 10_000:
            raise IntentRejected(f"slippage {intent.slippage_bps} bps is outside 1..10000")
        try:
            Pubkey.from_string(intent.target_mint)
        except Exception as error:
            raise IntentRejected("target mint is not a valid address") from error
        if intent.target_mint == SOL_MINT:
            raise IntentRejected("target mint must differ from the source asset")

        if self._fee_settlement is None:
            return None
        fee_usd = intent.service_fee_usd
        if fee_usd is None:
            fee_usd = compute_service_fee(
                intent.source_amount,
                sol_price_usd=sol_price_usd,
                rate=self._limits.service_fee_rate,
                minimum_usd=self._limits.min_service_fee_usd,
            )
        if fee_usd < self._limits.min_service_fee_usd:
            raise IntentRejected(
                f"service fee {fee_usd} USD is below the {self._limits.min_service_fee_usd} USD minimum"
            )
        return fee_usd

    async def run(
        self,
        intent: BurnIntent,
        proof: AuthorizationProof,
        *,
        sol_price_usd: Decimal | None = None,
        now_ms: int | None = None,
    ) -> ExecutionResult:
        state = _RunState(invocation_id=make_invocation_id(), intent=intent, owner=self.treasury)
        started = time.monotonic()
        error: ExecutionError | None = None
        ledger_open = False

        log_event(
            self._logger,
            level="info",
            event="burn_pipeline_started",
            message="Burn pipeline started",
            invocation_id=state.invocation_id,
            intent_id=intent.intent_id,
            identity=proof.identity,
            target_mint=intent.target_mint,
            source_amount=str(intent.source_amount),
        )

        try:
            fee_usd = self._validate(intent, sol_price_usd)

            state.step = STEP_LEDGER
            await self._ledger.start(invocation_id=state.invocation_id, owner=state.owner, intent=intent)
            ledger_open = True

            await self._authorize(state, proof, now_ms=now_ms)
            await self._decide(state)

            async with self._identity_lock(state.owner):
                await self._pay(state, fee_usd)
                await self._acquire_and_burn(state)

            state.step = STEP_LEDGER
        except asyncio.CancelledError:
            raise
        except PipelineError as failure:
            error = ExecutionError(step=failure.step, code=failure.code, message=failure.message)
            self._absorb_failure_refs(state, failure)
        except Exception as failure:
            error = ExecutionError(step=state.step, code="UnexpectedError", message=str(failure)[:400])
            log_event(
                self._logger,
                level="exception",
                event="burn_pipeline_unexpected_error",
                message="Unexpected error in burn pipeline",
                invocation_id=state.invocation_id,
                step=state.step,
            )

        result = ExecutionResult(
            invocation_id=state.invocation_id,
            intent_id=intent.intent_id,
            owner=state.owner,
            step_reached=error.step if error else state.step,
            success=error is None,
            purchased_raw=state.purchased_raw,
            burned_raw=state.burned_raw,
            target_decimals=state.target_decimals,
            payment_ref=state.payment_ref,
            swap_ref=state.swap_ref,
            burn_ref=state.burn_ref,
            bundle_ref=state.bundle_ref,
            swap_provider=state.swap_provider,
            decision=state.decision,
            error=error,
            duration_ms=elapsed_ms(started),
        )

        if ledger_open:
            await self._ledger.finish(result)
        self._log_result(result)
        return result

    def _absorb_failure_refs(self, state: _RunState, failure: PipelineError) -> None:
        payment_ref = getattr(failure, "payment_ref", None)
        if payment_ref and not state.payment_ref:
            state.payment_ref = payment_ref
        if isinstance(failure, SwapFailed) and failure.reference and not state.swap_ref:
            state.swap_ref = failure.reference
            state.swap_provider = failure.provider
        burn_signature = getattr(failure, "tx_signature", None)
        if burn_signature and not state.burn_ref:
            state.burn_ref = burn_signature
        bundle_id = getattr(failure, "bundle_id", None)
        if bundle_id:
            state.bundle_ref = bundle_id

    async def _measure_unknown_swap(self, state: _RunState, failure: SwapFailed, before: Any) -> None:
        """Record what a swap with an unknown outcome actually delivered before the run halts."""
        state.swap_ref = failure.reference
        state.swap_provider = failure.provider
        delta = await guarded_call(
            lambda: self._reconciler.settled_delta(before, invocation_id=state.invocation_id),
            logger=self._logger,
            event="swap_unknown_balance_read_failed",
            message="Could not read the treasury balance after a swap with unknown outcome",
            level="error",
            default=0,
            invocation_id=state.invocation_id,
            swap_ref=failure.reference,
        )
        state.purchased_raw = max(0, delta or 0)
        log_event(
            self._logger,
            level="error",
            event="swap_outcome_measured",
            message="Balance measured after a swap with unknown outcome",
            invocation_id=state.invocation_id,
            swap_ref=failure.reference,
            provider=failure.provider,
            purchased_raw=str(state.purchased_raw),
        )

    async def _authorize(self, state: _RunState, proof: AuthorizationProof, *, now_ms: int | None) -> None:
        state.step = STEP_AUTHENTICATION
        step_started = time.monotonic()
        self._authenticator.verify(proof, intent_id=state.intent.intent_id, now_ms=now_ms)
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_AUTHENTICATION,
            elapsed_ms(step_started),
            identity=proof.identity,
        )

        state.step = STEP_REPLAY_GUARD
        step_started = time.monotonic()
        await self._replay_guard.consume(proof, entity=state.invocation_id)
        await self._ledger.step_completed(state.invocation_id, STEP_REPLAY_GUARD, elapsed_ms(step_started))

    async def _decide(self, state: _RunState) -> None:
        state.step = STEP_APPROVAL
        step_started = time.monotonic()
        decision = await self._approval_gate.evaluate(state.intent)
        state.decision = decision
        if not decision.approved:
            raise DecisionRejected(f"burn rejected by approval gate ({decision.confidence}%): {decision.reasoning}")
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_APPROVAL,
            elapsed_ms(step_started),
            decision_source=decision.source,
            decision_confidence=decision.confidence,
        )

    async def _pay(self, state: _RunState, fee_usd: Decimal | None) -> None:
        if self._fee_settlement is None or fee_usd is None:
            return
        state.step = STEP_PAYMENT
        step_started = time.monotonic()
        receipt = await self._fee_settlement.settle(fee_usd=fee_usd, invocation_id=state.invocation_id)
        state.payment_ref = receipt.reference or receipt.payment_id
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_PAYMENT,
            elapsed_ms(step_started),
            payment_ref=state.payment_ref,
            payment_status=receipt.status,
            fee_micro_usdc=receipt.amount_micro_usdc,
        )

    def _swap_request(self, state: _RunState) -> SwapRequest:
        return SwapRequest(
            input_mint=SOL_MINT,
            output_mint=state.intent.target_mint,
            input_raw=to_raw(state.intent.source_amount, SOL_DECIMALS),
            slippage_bps=state.intent.slippage_bps,
            signer=self._signer,
        )

    async def _acquire_and_burn(self, state: _RunState) -> None:
        state.step = STEP_SWAP
        step_started = time.monotonic()
        before = await self._reconciler.snapshot(state.owner, state.intent.target_mint)
        state.target_decimals = before.decimals
        request = self._swap_request(state)

        if (
            self._prefer_bundle
            and self._burn_executor.bundling_available
            and self._swap_executor.can_bundle
        ):
            try:
                leg = await self._swap_executor.prepare_bundle_leg(request, invocation_id=state.invocation_id)
            except SwapFailed as failure:
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_leg_unavailable",
                    message="No provider could prepare a bundle leg; using direct execution",
                    invocation_id=state.invocation_id,
                    error=failure.message,
                )
            else:
                await self._bundled_path(state, leg, before, step_started)
                return

        try:
            outcome = await self._swap_executor.execute(request, invocation_id=state.invocation_id)
        except SwapFailed as failure:
            if failure.outcome_unknown:
                await self._measure_unknown_swap(state, failure, before)
            raise
        state.swap_ref = outcome.reference
        state.swap_provider = outcome.provider
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_SWAP,
            elapsed_ms(step_started),
            swap_ref=outcome.reference,
            swap_provider=outcome.provider,
            swap_requires_reconciliation=outcome.requires_reconciliation,
        )

        if outcome.output_raw is not None and not outcome.requires_reconciliation:
            state.purchased_raw = outcome.output_raw
        else:
            state.step = STEP_RECONCILIATION
            step_started = time.monotonic()
            state.purchased_raw = await self._reconciler.reconcile(before, invocation_id=state.invocation_id)
            await self._ledger.step_completed(
                state.invocation_id,
                STEP_RECONCILIATION,
                elapsed_ms(step_started),
                purchased_raw=str(state.purchased_raw),
            )

        state.step = STEP_BURN
        step_started = time.monotonic()
        receipt = await self._burn_executor.burn(
            mint=state.intent.target_mint,
            raw_amount=state.purchased_raw,
            decimals=before.decimals,
            invocation_id=state.invocation_id,
        )
        state.burned_raw = receipt.burned_raw
        state.burn_ref = receipt.reference
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_BURN,
            elapsed_ms(step_started),
            burn_ref=receipt.reference,
            burned_raw=str(receipt.burned_raw),
        )

    async def _bundled_path(self, state: _RunState, leg: Any, before: Any, step_started: float) -> None:
        state.swap_provider = leg.provider
        minimum_out = int(leg.output_raw or 0)

        state.step = STEP_BURN
        receipt = await self._burn_executor.burn_bundled(
            swap_leg=leg,
            mint=state.intent.target_mint,
            raw_amount=minimum_out,
            decimals=before.decimals,
            invocation_id=state.invocation_id,
            owner=state.owner,
        )
        # the bundle is all-or-nothing: the swap and the minimum burn landed together
        state.swap_ref = leg.reference
        state.burn_ref = receipt.reference
        state.bundle_ref = receipt.bundle.bundle_id if receipt.bundle else None
        state.purchased_raw = receipt.burned_raw
        state.burned_raw = receipt.burned_raw
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_BURN,
            elapsed_ms(step_started),
            swap_ref=state.swap_ref,
            swap_provider=leg.provider,
            burn_ref=state.burn_ref,
            bundle_ref=state.bundle_ref,
            burned_raw=str(state.burned_raw),
        )

        # anything received above the guaranteed minimum is still in the treasury
        state.step = STEP_RECONCILIATION
        step_started = time.monotonic()
        landed_slot = receipt.bundle.landed_slot if receipt.bundle else None
        surplus = max(
            0,
            await self._reconciler.settled_delta(
                before,
                min_context_slot=landed_slot,
                invocation_id=state.invocation_id,
            ),
        )
        state.purchased_raw += surplus
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_RECONCILIATION,
            elapsed_ms(step_started),
            purchased_raw=str(state.purchased_raw),
            surplus_raw=str(surplus),
        )
        if surplus == 0:
            state.step = STEP_BURN
            return

        state.step = STEP_BURN
        step_started = time.monotonic()
        surplus_receipt = await self._burn_executor.burn(
            mint=state.intent.target_mint,
            raw_amount=surplus,
            decimals=before.decimals,
            invocation_id=state.invocation_id,
        )
        state.burned_raw += surplus_receipt.burned_raw
        await self._ledger.step_completed(
            state.invocation_id,
            STEP_BURN,
            elapsed_ms(step_started),
            surplus_burn_ref=surplus_receipt.reference,
            burned_raw=str(state.burned_raw),
        )

    def _log_result(self, result: ExecutionResult) -> None:
        if result.success:
            log_event(
                self._logger,
                level="info",
                event="burn_pipeline_completed",
                message="Burn pipeline completed",
                invocation_id=result.invocation_id,
                purchased_raw=str(result.purchased_raw),
                burned_raw=str(result.burned_raw),
                duration_ms=result.duration_ms,
            )
            return

        error = result.error
        if result.partial_failure:
            log_event(
                self._logger,
                level="critical",
                event="burn_partial_failure",
                message="Tokens purchased but not burned; operator action required",
                invocation_id=result.invocation_id,
                purchased_raw=str(result.purchased_raw),
                burned_raw=str(result.burned_raw),
                swap_ref=result.swap_ref,
                error_code=error.code if error else None,
                error_message=error.message if error else None,
            )
            return

        log_event(
            self._logger,
            level="warning",
            event="burn_pipeline_failed",
            message="Burn pipeline failed",
            invocation_id=result.invocation_id,
            step=result.step_reached,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            payment_ref=result.payment_ref,
        )
