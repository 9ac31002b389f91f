from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from solders.keypair import Keypair

from treasury_burn.pipeline.errors import NoTokensAcquired, SwapFailed
from treasury_burn.pipeline.reconcile import BalanceReconciler
from treasury_burn.pipeline.rpc import RpcMethodError
from treasury_burn.pipeline.swap import SwapExecutor, SwapOutcomeUnknown, SwapRequest, _minimum_output
from treasury_burn.pipeline.types import SOL_MINT, BalanceSnapshot, SwapOutcome

TARGET_MINT = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"


class FakeProvider:
    def __init__(
        self,
        name: str,
        *,
        outcome: SwapOutcome | None = None,
        error: Exception | None = None,
        supports_bundling: bool = False,
    ) -> None:
        self.name = name
        self.supports_bundling = supports_bundling
        self.swap = AsyncMock(side_effect=error, return_value=outcome)
        self.prepare = AsyncMock(side_effect=error, return_value=outcome)


def _request() -> SwapRequest:
    return SwapRequest(
        input_mint=SOL_MINT,
        output_mint=TARGET_MINT,
        input_raw=10_000_000,
        slippage_bps=100,
        signer=Keypair(),
    )


def _outcome(provider: str, output_raw: int | None) -> SwapOutcome:
    return SwapOutcome(
        provider=provider,
        reference=f"{provider}-sig",
        input_raw=10_000_000,
        output_raw=output_raw,
        requires_reconciliation=output_raw is None,
    )


class SwapExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.swap")

    async def test_first_provider_success_skips_the_rest(self) -> None:
        first = FakeProvider("jupiter_ultra", outcome=_outcome("jupiter_ultra", 1_000_000))
        second = FakeProvider("pumpportal", outcome=_outcome("pumpportal", None))

        outcome = await SwapExecutor(logger=self.logger, providers=[first, second]).execute(_request())

        self.assertEqual(outcome.provider, "jupiter_ultra")
        self.assertEqual(outcome.output_raw, 1_000_000)
        second.swap.assert_not_awaited()

    async def test_falls_back_to_next_provider(self) -> None:
        first = FakeProvider("jupiter_ultra", error=RuntimeError("no route"))
        second = FakeProvider("pumpportal", outcome=_outcome("pumpportal", None))

        outcome = await SwapExecutor(logger=self.logger, providers=[first, second]).execute(_request())

        self.assertEqual(outcome.provider, "pumpportal")
        self.assertTrue(outcome.requires_reconciliation)

    async def test_all_failures_are_aggregated_in_order(self) -> None:
        first = FakeProvider("jupiter_ultra", error=RuntimeError("no route"))
        second = FakeProvider("pumpportal", error=RuntimeError("bonding curve complete"))

        with self.assertRaises(SwapFailed) as caught:
            await SwapExecutor(logger=self.logger, providers=[first, second]).execute(_request())

        self.assertEqual(
            caught.exception.errors,
            [("jupiter_ultra", "no route"), ("pumpportal", "bonding curve complete")],
        )
        self.assertIn("jupiter_ultra: no route", caught.exception.message)
        self.assertIn("pumpportal: bonding curve complete", caught.exception.message)

    async def test_unknown_outcome_stops_fallback(self) -> None:
        first = FakeProvider("jupiter_ultra", error=SwapOutcomeUnknown("execute timed out", reference="sig"))
        second = FakeProvider("pumpportal", outcome=_outcome("pumpportal", None))

        with self.assertRaises(SwapFailed) as caught:
            await SwapExecutor(logger=self.logger, providers=[first, second]).execute(_request())

        second.swap.assert_not_awaited()
        self.assertTrue(caught.exception.outcome_unknown)
        self.assertEqual(caught.exception.reference, "sig")
        self.assertEqual(caught.exception.provider, "jupiter_ultra")

    async def test_definite_failure_carries_no_reference(self) -> None:
        first = FakeProvider("jupiter_ultra", error=RuntimeError("no route"))

        with self.assertRaises(SwapFailed) as caught:
            await SwapExecutor(logger=self.logger, providers=[first]).execute(_request())

        self.assertFalse(caught.exception.outcome_unknown)
        self.assertIsNone(caught.exception.reference)

    async def test_no_providers(self) -> None:
        with self.assertRaises(SwapFailed) as caught:
            await SwapExecutor(logger=self.logger, providers=[]).execute(_request())

        self.assertEqual(caught.exception.message, "no swap providers configured")

    async def test_bundle_leg_only_uses_bundling_providers(self) -> None:
        direct_only = FakeProvider("pumpportal", outcome=_outcome("pumpportal", None))
        bundling = FakeProvider("jupiter_ultra", outcome=_outcome("jupiter_ultra", 990_000), supports_bundling=True)
        executor = SwapExecutor(logger=self.logger, providers=[direct_only, bundling])

        leg = await executor.prepare_bundle_leg(_request())

        self.assertTrue(executor.can_bundle)
        self.assertEqual(leg.provider, "jupiter_ultra")
        direct_only.prepare.assert_not_awaited()

    def test_minimum_output_prefers_quoted_threshold(self) -> None:
        self.assertEqual(_minimum_output(1_000_000, 100, "995000"), 995_000)
        self.assertEqual(_minimum_output(1_000_000, 100, None), 990_000)
        self.assertEqual(_minimum_output(1_000_000, 100, "garbage"), 990_000)


class FakeBalanceReader:
    def __init__(self, balances: list[int], decimals: int | None = 6, *, refusals: int = 0) -> None:
        self._balances = list(balances)
        self._decimals = decimals
        self._refusals = refusals
        self.reads = 0
        self.slots: list[int | None] = []

    async def get_token_balance(
        self,
        owner: str,
        mint: str,
        *,
        min_context_slot: int | None = None,
    ) -> tuple[int, int | None, bool]:
        self.slots.append(min_context_slot)
        if self._refusals > 0:
            self._refusals -= 1
            raise RpcMethodError("Minimum context slot has not been reached", method="getTokenAccountsByOwner")
        index = min(self.reads, len(self._balances) - 1)
        self.reads += 1
        return self._balances[index], self._decimals, True

    async def get_mint_decimals(self, mint: str) -> int:
        return 6


class BalanceReconcilerTests(unittest.IsolatedAsyncioTestCase):
    def _reconciler(self, reader: FakeBalanceReader, attempts: int = 5) -> BalanceReconciler:
        return BalanceReconciler(
            logger=logging.getLogger("test.reconcile"),
            reader=reader,
            max_attempts=attempts,
            backoff_seconds=0,
        )

    async def test_delta_is_exact_integer_difference(self) -> None:
        reader = FakeBalanceReader([500, 500, 1_000_500])
        reconciler = self._reconciler(reader)

        before = await reconciler.snapshot("Treasury", TARGET_MINT)
        delta = await reconciler.reconcile(before)

        self.assertEqual(delta, 1_000_000)
        self.assertEqual(reader.reads, 3)

    async def test_unchanged_balance_raises_no_tokens_acquired(self) -> None:
        reader = FakeBalanceReader([500])
        reconciler = self._reconciler(reader, attempts=3)

        with self.assertRaises(NoTokensAcquired) as caught:
            await reconciler.reconcile(BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6))

        self.assertEqual(reader.reads, 3)
        self.assertEqual(caught.exception.pre_raw, 500)
        self.assertEqual(caught.exception.post_raw, 500)
        self.assertEqual(caught.exception.step, "reconciliation")

    async def test_snapshot_falls_back_to_mint_decimals(self) -> None:
        reader = FakeBalanceReader([0], decimals=None)

        snapshot = await self._reconciler(reader).snapshot("Treasury", TARGET_MINT)

        self.assertEqual(snapshot.raw, 0)
        self.assertEqual(snapshot.decimals, 6)

    async def test_decimals_mismatch_is_an_error(self) -> None:
        reader = FakeBalanceReader([900], decimals=9)

        with self.assertRaises(RuntimeError):
            await self._reconciler(reader).reconcile(
                BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6)
            )

    async def test_settled_delta_waits_for_pinned_slot(self) -> None:
        reader = FakeBalanceReader([510], refusals=2)
        before = BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6)

        delta = await self._reconciler(reader).settled_delta(before, min_context_slot=321)

        self.assertEqual(delta, 10)
        self.assertEqual(reader.slots, [321, 321, 321])

    async def test_settled_delta_accepts_zero_once_slot_is_reached(self) -> None:
        reader = FakeBalanceReader([500])
        before = BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6)

        delta = await self._reconciler(reader).settled_delta(before, min_context_slot=321)

        self.assertEqual(delta, 0)
        self.assertEqual(reader.reads, 1)

    async def test_settled_delta_gives_up_when_node_never_catches_up(self) -> None:
        reader = FakeBalanceReader([510], refusals=10)
        before = BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6)

        with self.assertRaises(RpcMethodError):
            await self._reconciler(reader, attempts=3).settled_delta(before, min_context_slot=321)

        self.assertEqual(len(reader.slots), 3)

    async def test_settled_delta_without_slot_retries_stale_reads(self) -> None:
        reader = FakeBalanceReader([500, 500, 510])
        before = BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6)

        delta = await self._reconciler(reader).settled_delta(before)

        self.assertEqual(delta, 10)
        self.assertEqual(reader.reads, 3)
        self.assertEqual(reader.slots, [None, None, None])

    async def test_settled_delta_without_slot_accepts_unchanged_balance(self) -> None:
        reader = FakeBalanceReader([500])
        before = BalanceSnapshot(owner="Treasury", mint=TARGET_MINT, raw=500, decimals=6)

        delta = await self._reconciler(reader, attempts=3).settled_delta(before)

        self.assertEqual(delta, 0)
        self.assertEqual(reader.reads, 3)


if __name__ == "__main__":
    unittest.main()
