from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

import aiohttp

from treasury_burn.common import log_event

from .types import ApprovalCriteria, ApprovalDecision, BurnIntent

UNAVAILABLE_REASONING = "decision service unavailable"
FALLBACK_CONFIDENCE = 80
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class DecisionServiceUnavailable(RuntimeError):
    pass


def _system_prompt(criteria: ApprovalCriteria) -> str:
    return (
        "You review treasury token burn requests. Decide whether the burn should proceed "
        "given the parameters and criteria. Respond only with a JSON object containing "
        "'approved' (boolean), 'confidence' (integer 0-100) and 'reasoning' (string).\n\n"
        "Criteria:\n"
        f"- Minimum confidence threshold: {criteria.confidence_threshold}%\n"
        f"- Maximum burn as % of supply: {criteria.max_proportion_of_supply}%\n"
        f"- Require positive sentiment: {str(criteria.require_positive_sentiment).lower()}"
    )


def _user_prompt(intent: BurnIntent) -> str:
    return (
        "Analyze this burn request:\n"
        f"Intent: {intent.intent_id}\n"
        f"Token mint: {intent.target_mint}\n"
        f"Buy amount: {intent.source_amount} SOL\n"
        f"Slippage tolerance: {intent.slippage_bps} bps\n\n"
        "Should this burn be executed? Provide your confidence (0-100) and reasoning."
    )


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "approve", "approved", "1"}
    return False


def _coerce_confidence(value: Any) -> int:
    try:
        confidence = int(round(float(str(value).strip().rstrip("%"))))
    except (TypeError, ValueError) as error:
        raise DecisionServiceUnavailable(f"confidence is not numeric: {value!r}") from error
    return max(0, min(100, confidence))


def parse_decision_content(content: str) -> tuple[bool, int, str]:
    """Pull {approved, confidence, reasoning} out of a model reply that may wrap the JSON in prose."""
    text = (content or "").strip()
    if not text:
        raise DecisionServiceUnavailable("empty decision content")

    candidate: Any = None
    try:
        candidate = json.loads(text)
    except json.JSONDecodeError:
        match = JSON_OBJECT_RE.search(text)
        if match is None:
            raise DecisionServiceUnavailable("decision content has no JSON object")
        try:
            candidate = json.loads(match.group(0))
        except json.JSONDecodeError as error:
            raise DecisionServiceUnavailable("decision content JSON is malformed") from error

    if not isinstance(candidate, dict) or "confidence" not in candidate:
        raise DecisionServiceUnavailable("decision content lacks a confidence field")

    approved = _coerce_bool(candidate.get("approved", False))
    confidence = _coerce_confidence(candidate.get("confidence"))
    reasoning = str(candidate.get("reasoning") or "").strip() or "no reasoning supplied"
    return approved, confidence, reasoning[:1000]


class ApprovalGate:
    """Optional automated approval step in front of any spend.

    When the decision service cannot be reached or answers with something that
    cannot be parsed, the configured policy decides: fail-open substitutes an
    approval marked with UNAVAILABLE_REASONING, fail-closed rejects.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session: aiohttp.ClientSession | None,
        api_url: str,
        api_key: str,
        model: str,
        fail_open: bool = True,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._session = session
        self._api_url = api_url
        self._api_key = api_key
        self._model = model
        self._fail_open = fail_open
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self._session is not None and bool(self._api_key) and bool(self._api_url)

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    def unavailable_decision(self) -> ApprovalDecision:
        if self._fail_open:
            return ApprovalDecision(
                approved=True,
                confidence=FALLBACK_CONFIDENCE,
                reasoning=UNAVAILABLE_REASONING,
                source="fallback",
            )
        return ApprovalDecision(
            approved=False,
            confidence=0,
            reasoning=UNAVAILABLE_REASONING,
            source="fallback",
        )

    async def _request_decision(self, intent: BurnIntent, criteria: ApprovalCriteria) -> tuple[bool, int, str]:
        if self._session is None:
            raise DecisionServiceUnavailable("decision service session is not configured")

        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _system_prompt(criteria)},
                {"role": "user", "content": _user_prompt(intent)},
            ],
            "temperature": 0.2,
            "max_tokens": 300,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        async with self._session.post(self._api_url, json=payload, headers=headers, timeout=self._timeout) as response:
            if response.status < 200 or response.status >= 300:
                raise DecisionServiceUnavailable(f"decision service returned status {response.status}")
            try:
                data = await response.json(content_type=None)
            except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError) as error:
                raise DecisionServiceUnavailable("decision service body is not JSON") from error

        content = ""
        if isinstance(data, dict):
            choices = data.get("choices")
            if isinstance(choices, list) and choices and isinstance(choices[0], dict):
                message = choices[0].get("message")
                if isinstance(message, dict):
                    content = str(message.get("content") or "")
            elif "confidence" in data:
                content = json.dumps(data)
        return parse_decision_content(content)

    async def evaluate(self, intent: BurnIntent, criteria: ApprovalCriteria | None = None) -> ApprovalDecision:
        resolved = criteria or intent.approval_criteria
        if resolved is None:
            return ApprovalDecision(approved=True, confidence=100, reasoning="approval not required", source="skipped")
        if not self.enabled:
            log_event(
                self._logger,
                level="info",
                event="approval_skipped",
                message="Decision service is not configured; approval step skipped",
                intent_id=intent.intent_id,
            )
            return ApprovalDecision(
                approved=True,
                confidence=100,
                reasoning="decision service not configured",
                source="skipped",
            )

        try:
            external_approved, confidence, reasoning = await self._request_decision(intent, resolved)
        except asyncio.CancelledError:
            raise
        except (DecisionServiceUnavailable, aiohttp.ClientError, asyncio.TimeoutError) as error:
            decision = self.unavailable_decision()
            log_event(
                self._logger,
                level="warning",
                event="approval_service_unavailable",
                message="Decision service unavailable; applying configured policy",
                intent_id=intent.intent_id,
                fail_open=self._fail_open,
                approved=decision.approved,
                error=str(error),
            )
            return decision

        approved = external_approved and confidence >= resolved.confidence_threshold
        log_event(
            self._logger,
            level="info",
            event="approval_decided",
            message="Decision service answered",
            intent_id=intent.intent_id,
            external_approved=external_approved,
            confidence=confidence,
            threshold=resolved.confidence_threshold,
            approved=approved,
        )
        return ApprovalDecision(approved=approved, confidence=confidence, reasoning=reasoning)
