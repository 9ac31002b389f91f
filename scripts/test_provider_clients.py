from __future__ import annotations

import base64
import json
import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from treasury_burn.pipeline.errors import SwapFailed
from treasury_burn.pipeline.jito import JitoBlockEngineClient, JitoBundleRateLimitError
from treasury_burn.pipeline.rpc import (
    ConfirmationTimeoutError,
    RpcMethodError,
    SolanaRpcClient,
    TransactionFailedError,
)
from treasury_burn.pipeline.swap import (
    JupiterUltraProvider,
    PumpPortalProvider,
    SwapExecutor,
    SwapOutcomeUnknown,
    SwapRequest,
)
from treasury_burn.pipeline.types import SOL_MINT, SwapOutcome

TARGET_MINT = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"
TREASURY = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


class _FakeResponse:
    def __init__(
        self,
        status: int,
        payload: Any = None,
        *,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status = status
        self.headers = headers or {}
        self._payload = payload
        self._body = body if body is not None else json.dumps(payload).encode("utf-8")

    async def json(self, content_type: str | None = None) -> Any:
        return self._payload

    async def text(self) -> str:
        return self._body.decode("utf-8")

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    """Answers requests in order and keeps what was sent."""

    def __init__(self, *responses: _FakeResponse) -> None:
        self._responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def _next(self, method: str, url: str, kwargs: dict[str, Any]) -> _FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        return self._responses.pop(0)

    def get(self, url: str, **kwargs: Any) -> _FakeResponse:
        return self._next("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        return self._next("POST", url, kwargs)


def _unsigned_transaction(payer: Keypair) -> bytes:
    instruction = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [instruction], [], Hash.default())
    return bytes(VersionedTransaction.populate(message, [Signature.default()]))


def _signature_of(signed_tx_base64: str) -> str:
    return str(VersionedTransaction.from_bytes(base64.b64decode(signed_tx_base64)).signatures[0])


def _request(signer: Keypair, *, slippage_bps: int = 100) -> SwapRequest:
    return SwapRequest(
        input_mint=SOL_MINT,
        output_mint=TARGET_MINT,
        input_raw=10_000_000,
        slippage_bps=slippage_bps,
        signer=signer,
    )


def _order(signer: Keypair) -> _FakeResponse:
    return _FakeResponse(
        200,
        {
            "transaction": base64.b64encode(_unsigned_transaction(signer)).decode("ascii"),
            "requestId": "req-1",
            "inAmount": "10000000",
            "outAmount": "1000000",
            "otherAmountThreshold": "990000",
            "swapType": "aggregator",
        },
    )


def _rpc_result(result: Any) -> _FakeResponse:
    return _FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": result})


def _token_account(amount: str, decimals: int = 6) -> dict[str, Any]:
    return {
        "pubkey": str(Keypair().pubkey()),
        "account": {
            "data": {
                "parsed": {
                    "info": {
                        "mint": TARGET_MINT,
                        "tokenAmount": {"amount": amount, "decimals": decimals, "uiAmount": 0.1},
                    }
                }
            }
        },
    }


class JupiterUltraProviderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.jupiter")
        self.signer = Keypair()

    def _provider(self, session: _FakeSession) -> JupiterUltraProvider:
        return JupiterUltraProvider(
            logger=self.logger,
            session=session,  # type: ignore[arg-type]
            api_base_url="https://api.jup.ag/ultra/v1/",
            api_key="key",
        )

    async def test_executed_output_amount_is_taken_as_reported(self) -> None:
        session = _FakeSession(
            _order(self.signer),
            _FakeResponse(
                200,
                {
                    "status": "Success",
                    "signature": "executed-sig",
                    "inputAmountResult": "10000000",
                    "outputAmountResult": "1003217",
                    "slot": "321",
                },
            ),
        )

        outcome = await self._provider(session).swap(_request(self.signer))

        self.assertEqual(outcome.reference, "executed-sig")
        self.assertEqual(outcome.output_raw, 1_003_217)
        self.assertFalse(outcome.requires_reconciliation)
        self.assertEqual(session.requests[0]["url"], "https://api.jup.ag/ultra/v1/order")
        self.assertEqual(session.requests[0]["params"]["taker"], str(self.signer.pubkey()))
        self.assertEqual(session.requests[0]["headers"]["x-api-key"], "key")
        execute = session.requests[1]["json"]
        self.assertEqual(execute["requestId"], "req-1")
        self.assertNotEqual(_signature_of(execute["signedTransaction"]), str(Signature.default()))

    async def test_missing_output_amount_requires_reconciliation(self) -> None:
        session = _FakeSession(_order(self.signer), _FakeResponse(200, {"status": "Success", "signature": "sig"}))

        outcome = await self._provider(session).swap(_request(self.signer))

        self.assertIsNone(outcome.output_raw)
        self.assertTrue(outcome.requires_reconciliation)

    async def test_prepared_leg_burns_the_quoted_minimum(self) -> None:
        session = _FakeSession(_order(self.signer))

        leg = await self._provider(session).prepare(_request(self.signer))

        self.assertEqual(leg.output_raw, 990_000)
        assert leg.signed_transaction is not None
        self.assertEqual(leg.reference, _signature_of(leg.signed_transaction))
        self.assertEqual(len(session.requests), 1)

    async def test_execute_server_error_leaves_outcome_unknown(self) -> None:
        session = _FakeSession(_order(self.signer), _FakeResponse(502, {"error": "bad gateway"}))

        with self.assertRaises(SwapOutcomeUnknown) as caught:
            await self._provider(session).swap(_request(self.signer))

        self.assertEqual(caught.exception.reference, _signature_of(session.requests[1]["json"]["signedTransaction"]))

    async def test_execute_body_that_is_not_an_object_leaves_outcome_unknown(self) -> None:
        session = _FakeSession(_order(self.signer), _FakeResponse(200, "upstream timeout"))

        with self.assertRaises(SwapOutcomeUnknown):
            await self._provider(session).swap(_request(self.signer))

    async def test_unknown_execute_result_never_reaches_the_next_provider(self) -> None:
        session = _FakeSession(_order(self.signer), _FakeResponse(503, None))
        fallback = AsyncMock()
        fallback.name = "pumpportal"
        fallback.supports_bundling = False
        executor = SwapExecutor(logger=self.logger, providers=[self._provider(session), fallback])

        with self.assertRaises(SwapFailed) as caught:
            await executor.execute(_request(self.signer))

        self.assertTrue(caught.exception.outcome_unknown)
        self.assertIsNotNone(caught.exception.reference)
        fallback.swap.assert_not_awaited()

    async def test_explicit_execute_refusal_falls_back(self) -> None:
        session = _FakeSession(
            _order(self.signer),
            _FakeResponse(200, {"status": "Failed", "code": -1005, "error": "slippage exceeded"}),
        )
        fallback = AsyncMock()
        fallback.name = "pumpportal"
        fallback.supports_bundling = False
        fallback.swap.return_value = SwapOutcome(
            provider="pumpportal",
            reference="fallback-sig",
            input_raw=10_000_000,
            output_raw=None,
            requires_reconciliation=True,
        )
        executor = SwapExecutor(logger=self.logger, providers=[self._provider(session), fallback])

        outcome = await executor.execute(_request(self.signer))

        self.assertEqual(outcome.provider, "pumpportal")
        fallback.swap.assert_awaited_once()

    async def test_order_without_transaction_is_a_failure(self) -> None:
        session = _FakeSession(_FakeResponse(200, {"requestId": "req-1", "errorMessage": "Insufficient funds"}))

        with self.assertRaises(RuntimeError) as caught:
            await self._provider(session).swap(_request(self.signer))

        self.assertNotIsInstance(caught.exception, SwapOutcomeUnknown)
        self.assertIn("Insufficient funds", str(caught.exception))


class PumpPortalProviderTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.signer = Keypair()
        self.rpc = AsyncMock()
        self.rpc.send_transaction.return_value = "sent"
        self.rpc.confirm_transaction.return_value = {"confirmationStatus": "confirmed", "slot": 5}

    def _provider(self, session: _FakeSession) -> PumpPortalProvider:
        return PumpPortalProvider(
            logger=logging.getLogger("test.pumpportal"),
            session=session,  # type: ignore[arg-type]
            rpc=self.rpc,
            api_url="https://pumpportal.fun/api/trade-local",
        )

    async def test_local_transaction_is_signed_and_submitted_once(self) -> None:
        session = _FakeSession(_FakeResponse(200, body=_unsigned_transaction(self.signer)))

        outcome = await self._provider(session).swap(_request(self.signer, slippage_bps=150))

        payload = session.requests[0]["json"]
        self.assertEqual(payload["action"], "buy")
        self.assertEqual(payload["amount"], 0.01)
        self.assertEqual(payload["slippage"], 1.5)
        self.assertEqual(payload["publicKey"], str(self.signer.pubkey()))
        self.rpc.send_transaction.assert_awaited_once()
        self.assertEqual(outcome.reference, _signature_of(self.rpc.send_transaction.await_args.args[0]))
        self.assertIsNone(outcome.output_raw)
        self.assertTrue(outcome.requires_reconciliation)

    async def test_fractional_slippage_is_not_truncated(self) -> None:
        session = _FakeSession(_FakeResponse(200, body=_unsigned_transaction(self.signer)))

        await self._provider(session).swap(_request(self.signer, slippage_bps=50))

        self.assertEqual(session.requests[0]["json"]["slippage"], 0.5)

    async def test_rejected_trade_request_sends_nothing(self) -> None:
        session = _FakeSession(_FakeResponse(400, body=b"Bad Request: bonding curve complete"))

        with self.assertRaises(RuntimeError) as caught:
            await self._provider(session).swap(_request(self.signer))

        self.assertIn("status=400", str(caught.exception))
        self.rpc.send_transaction.assert_not_awaited()

    async def test_unconfirmed_trade_is_unknown_with_its_signature(self) -> None:
        self.rpc.confirm_transaction.side_effect = ConfirmationTimeoutError("not confirmed", tx_signature="x")
        session = _FakeSession(_FakeResponse(200, body=_unsigned_transaction(self.signer)))

        with self.assertRaises(SwapOutcomeUnknown) as caught:
            await self._provider(session).swap(_request(self.signer))

        self.assertEqual(caught.exception.reference, _signature_of(self.rpc.send_transaction.await_args.args[0]))

    async def test_trade_that_fails_on_chain_is_a_definite_failure(self) -> None:
        self.rpc.confirm_transaction.side_effect = TransactionFailedError("slippage", tx_signature="x")
        session = _FakeSession(_FakeResponse(200, body=_unsigned_transaction(self.signer)))

        with self.assertRaises(RuntimeError) as caught:
            await self._provider(session).swap(_request(self.signer))

        self.assertNotIsInstance(caught.exception, SwapOutcomeUnknown)


class SolanaRpcClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, session: _FakeSession) -> SolanaRpcClient:
        client = SolanaRpcClient(
            logger=logging.getLogger("test.rpc"),
            rpc_url="https://rpc.example.com",
            read_retries=0,
            confirm_poll_interval_seconds=0.1,
        )
        client._http_session = session  # type: ignore[assignment]
        return client

    async def test_token_balance_sums_every_account_from_integer_amounts(self) -> None:
        session = _FakeSession(
            _rpc_result(
                {
                    "context": {"slot": 400},
                    "value": [_token_account("9007199254740993"), _token_account("7")],
                }
            )
        )

        raw, decimals, has_account = await self._client(session).get_token_balance(TREASURY, TARGET_MINT)

        self.assertEqual(raw, 9_007_199_254_741_000)
        self.assertEqual(decimals, 6)
        self.assertTrue(has_account)
        params = session.requests[0]["json"]["params"]
        self.assertEqual(params[:2], [TREASURY, {"mint": TARGET_MINT}])
        self.assertNotIn("minContextSlot", params[2])

    async def test_token_balance_without_accounts(self) -> None:
        session = _FakeSession(_rpc_result({"context": {"slot": 400}, "value": []}))

        self.assertEqual(await self._client(session).get_token_balance(TREASURY, TARGET_MINT), (0, None, False))

    async def test_token_balance_read_can_be_pinned_to_a_slot(self) -> None:
        session = _FakeSession(_rpc_result({"context": {"slot": 400}, "value": [_token_account("10")]}))

        await self._client(session).get_token_balance(TREASURY, TARGET_MINT, min_context_slot=321)

        self.assertEqual(session.requests[0]["json"]["params"][2]["minContextSlot"], 321)

    async def test_node_behind_the_pinned_slot_is_a_method_error(self) -> None:
        session = _FakeSession(
            _FakeResponse(
                200,
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "error": {"code": -32016, "message": "Minimum context slot has not been reached"},
                },
            )
        )

        with self.assertRaises(RpcMethodError) as caught:
            await self._client(session).get_token_balance(TREASURY, TARGET_MINT, min_context_slot=321)

        self.assertEqual(caught.exception.method, "getTokenAccountsByOwner")

    async def test_confirmation_returns_the_status_with_its_slot(self) -> None:
        session = _FakeSession(
            _rpc_result({"context": {"slot": 330}, "value": [None]}),
            _rpc_result({"context": {"slot": 331}, "value": [{"slot": 321, "confirmationStatus": "confirmed", "err": None}]}),
        )

        status = await self._client(session).confirm_transaction("sig", timeout_seconds=5)

        self.assertEqual(status["slot"], 321)
        self.assertEqual(len(session.requests), 2)
        self.assertEqual(session.requests[0]["json"]["method"], "getSignatureStatuses")

    async def test_confirmation_of_a_failed_transaction_raises(self) -> None:
        session = _FakeSession(
            _rpc_result(
                {
                    "context": {"slot": 331},
                    "value": [{"slot": 321, "confirmationStatus": "confirmed", "err": {"InstructionError": [0, 1]}}],
                }
            )
        )

        with self.assertRaises(TransactionFailedError) as caught:
            await self._client(session).confirm_transaction("sig", timeout_seconds=5)

        self.assertEqual(caught.exception.tx_signature, "sig")


class JitoBlockEngineClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, session: _FakeSession) -> JitoBlockEngineClient:
        return JitoBlockEngineClient(
            logger=logging.getLogger("test.jito"),
            session=session,  # type: ignore[arg-type]
            block_engine_url="https://block-engine.example.com/api/v1/bundles",
        )

    async def test_bundle_id_is_read_from_result(self) -> None:
        session = _FakeSession(_FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": "bundle-abc"}))

        bundle_id = await self._client(session).send_bundle(signed_transactions=["a", "b", "c"], bundle_key="burn-1")

        self.assertEqual(bundle_id, "bundle-abc")
        self.assertEqual(session.requests[0]["json"]["method"], "sendBundle")
        self.assertEqual(session.requests[0]["json"]["params"], [["a", "b", "c"], {"encoding": "base64"}])

    async def test_too_many_requests_carries_retry_after(self) -> None:
        session = _FakeSession(_FakeResponse(429, {"error": "slow down"}, headers={"Retry-After": "2"}))

        with self.assertRaises(JitoBundleRateLimitError) as caught:
            await self._client(session).send_bundle(signed_transactions=["a"], bundle_key="burn-1")

        self.assertEqual(caught.exception.retry_after_seconds, 2.0)

    async def test_congestion_error_in_body_is_a_rate_limit(self) -> None:
        session = _FakeSession(
            _FakeResponse(
                200,
                {"jsonrpc": "2.0", "id": 1, "error": {"code": -32097, "message": "Network congested. Try again later."}},
            )
        )

        with self.assertRaises(JitoBundleRateLimitError) as caught:
            await self._client(session).send_bundle(signed_transactions=["a"], bundle_key="burn-1")

        self.assertIsNone(caught.exception.retry_after_seconds)

    async def test_oversized_bundle_is_refused_before_sending(self) -> None:
        session = _FakeSession()

        with self.assertRaises(ValueError):
            await self._client(session).send_bundle(signed_transactions=["tx"] * 6, bundle_key="burn-1")

        self.assertEqual(session.requests, [])


if __name__ == "__main__":
    unittest.main()
