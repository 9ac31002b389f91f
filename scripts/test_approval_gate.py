from __future__ import annotations

import asyncio
import logging
import unittest
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

from treasury_burn.pipeline.approval import (
    FALLBACK_CONFIDENCE,
    UNAVAILABLE_REASONING,
    ApprovalGate,
    DecisionServiceUnavailable,
    parse_decision_content,
)
from treasury_burn.pipeline.types import ApprovalCriteria, BurnIntent


class _FakeResponse:
    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self._payload = payload

    async def json(self, content_type: str | None = None) -> Any:
        return self._payload

    async def __aenter__(self) -> "_FakeResponse":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    def __init__(self, response: _FakeResponse) -> None:
        self.response = response
        self.requests: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append({"url": url, **kwargs})
        return self.response


def _intent(criteria: ApprovalCriteria | None = ApprovalCriteria()) -> BurnIntent:
    return BurnIntent(
        intent_id="intent-1",
        source_amount=Decimal("0.01"),
        target_mint="Mint111",
        slippage_bps=100,
        approval_criteria=criteria,
    )


def _gate(session: Any = None, *, fail_open: bool = True, api_key: str = "key") -> ApprovalGate:
    return ApprovalGate(
        logger=logging.getLogger("test.approval"),
        session=session if session is not None else _FakeSession(_FakeResponse(200, {})),
        api_url="https://decisions.example.com/v1/chat/completions",
        api_key=api_key,
        model="deepseek-chat",
        fail_open=fail_open,
    )


def _chat(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class ParseDecisionContentTests(unittest.TestCase):
    def test_plain_json(self) -> None:
        self.assertEqual(
            parse_decision_content('{"approved": true, "confidence": 92, "reasoning": "healthy volume"}'),
            (True, 92, "healthy volume"),
        )

    def test_json_wrapped_in_prose_and_fences(self) -> None:
        content = 'Here is my answer:\n```json\n{"approved": false, "confidence": "40%", "reasoning": "thin"}\n```'

        self.assertEqual(parse_decision_content(content), (False, 40, "thin"))

    def test_confidence_is_clamped(self) -> None:
        approved, confidence, _ = parse_decision_content('{"approved": true, "confidence": 140}')

        self.assertTrue(approved)
        self.assertEqual(confidence, 100)

    def test_missing_confidence_is_unavailable(self) -> None:
        with self.assertRaises(DecisionServiceUnavailable):
            parse_decision_content('{"approved": true}')

    def test_no_json_is_unavailable(self) -> None:
        with self.assertRaises(DecisionServiceUnavailable):
            parse_decision_content("I think yes")


class ApprovalGateTests(unittest.IsolatedAsyncioTestCase):
    async def test_approved_above_threshold(self) -> None:
        session = _FakeSession(_FakeResponse(200, _chat('{"approved": true, "confidence": 92, "reasoning": "ok"}')))
        gate = _gate(session)

        decision = await gate.evaluate(_intent())

        self.assertTrue(decision.approved)
        self.assertEqual(decision.confidence, 92)
        self.assertEqual(decision.source, "service")
        self.assertEqual(session.requests[0]["headers"]["Authorization"], "Bearer key")

    async def test_external_approval_below_threshold_is_rejected(self) -> None:
        session = _FakeSession(_FakeResponse(200, _chat('{"approved": true, "confidence": 69, "reasoning": "meh"}')))

        decision = await _gate(session).evaluate(_intent(ApprovalCriteria(confidence_threshold=70)))

        self.assertFalse(decision.approved)
        self.assertEqual(decision.confidence, 69)

    async def test_external_rejection_wins_over_confidence(self) -> None:
        session = _FakeSession(_FakeResponse(200, _chat('{"approved": false, "confidence": 99, "reasoning": "no"}')))

        decision = await _gate(session).evaluate(_intent())

        self.assertFalse(decision.approved)

    async def test_timeout_fails_open_with_marked_reasoning(self) -> None:
        gate = _gate()
        gate._request_decision = AsyncMock(side_effect=asyncio.TimeoutError())  # type: ignore[method-assign]

        decision = await gate.evaluate(_intent())

        self.assertTrue(decision.approved)
        self.assertEqual(decision.confidence, FALLBACK_CONFIDENCE)
        self.assertEqual(decision.reasoning, UNAVAILABLE_REASONING)
        self.assertEqual(decision.source, "fallback")

    async def test_timeout_fails_closed_when_configured(self) -> None:
        gate = _gate(fail_open=False)
        gate._request_decision = AsyncMock(side_effect=asyncio.TimeoutError())  # type: ignore[method-assign]

        decision = await gate.evaluate(_intent())

        self.assertFalse(decision.approved)
        self.assertEqual(decision.confidence, 0)
        self.assertEqual(decision.reasoning, UNAVAILABLE_REASONING)

    async def test_server_error_applies_policy(self) -> None:
        decision = await _gate(_FakeSession(_FakeResponse(503, {"error": "overloaded"}))).evaluate(_intent())

        self.assertEqual(decision.reasoning, UNAVAILABLE_REASONING)
        self.assertTrue(decision.approved)

    async def test_missing_api_key_skips_the_step(self) -> None:
        session = _FakeSession(_FakeResponse(200, {}))

        decision = await _gate(session, api_key="", fail_open=False).evaluate(_intent())

        self.assertTrue(decision.approved)
        self.assertEqual(decision.confidence, 100)
        self.assertEqual(decision.source, "skipped")
        self.assertEqual(session.requests, [])

    async def test_no_criteria_skips_service(self) -> None:
        session = _FakeSession(_FakeResponse(200, {}))

        decision = await _gate(session).evaluate(_intent(criteria=None))

        self.assertTrue(decision.approved)
        self.assertEqual(decision.source, "skipped")
        self.assertEqual(session.requests, [])


if __name__ == "__main__":
    unittest.main()
