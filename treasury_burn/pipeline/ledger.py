from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from treasury_burn.common import guarded_call, log_event

from .types import (
    LEDGER_COMPLETED,
    LEDGER_FAILED,
    LEDGER_PENDING,
    BurnIntent,
    ExecutionResult,
    LedgerMirror,
    LedgerStore,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def step_duration_field(step: str) -> str:
    return f"step_{step}_ms"


@dataclass(slots=True, frozen=True)
class LedgerStats:
    total: int
    completed: int
    failed: int
    pending: int
    partial_failures: int
    success_rate: float
    avg_duration_ms: float
    total_burned_raw: int = 0
    burned_raw_by_mint: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["total_burned_raw"] = str(self.total_burned_raw)
        payload["burned_raw_by_mint"] = {mint: str(raw) for mint, raw in self.burned_raw_by_mint.items()}
        return payload


def summarize_records(records: list[dict[str, Any]]) -> LedgerStats:
    completed = [record for record in records if record.get("status") == LEDGER_COMPLETED]
    failed = [record for record in records if record.get("status") == LEDGER_FAILED]
    terminal = len(completed) + len(failed)

    burned_by_mint: dict[str, int] = {}
    for record in records:
        burned = _as_int(record.get("burned_raw"))
        if burned > 0:
            mint = str(record.get("target_mint") or "")
            burned_by_mint[mint] = burned_by_mint.get(mint, 0) + burned

    durations = [_as_int(record.get("total_duration_ms")) for record in completed]
    return LedgerStats(
        total=len(records),
        completed=len(completed),
        failed=len(failed),
        pending=len(records) - terminal,
        partial_failures=sum(1 for record in failed if str(record.get("partial_failure")) in {"1", "true", "True"}),
        success_rate=round(len(completed) / terminal * 100, 2) if terminal else 0.0,
        avg_duration_ms=round(sum(durations) / len(durations), 1) if durations else 0.0,
        total_burned_raw=sum(burned_by_mint.values()),
        burned_raw_by_mint=burned_by_mint,
    )


class LedgerRecorder:
    """One ledger record per pipeline invocation, updated in place until terminal.

    Records are never deleted; once a record reaches `completed` or `failed`
    the store refuses further writes.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: LedgerStore,
        mirror: LedgerMirror | None = None,
    ) -> None:
        self._logger = logger
        self._store = store
        self._mirror = mirror

    async def start(self, *, invocation_id: str, owner: str, intent: BurnIntent) -> None:
        record = {
            "invocation_id": invocation_id,
            "intent_id": intent.intent_id,
            "owner": owner,
            "target_mint": intent.target_mint,
            "source_amount": str(intent.source_amount),
            "slippage_bps": intent.slippage_bps,
            "status": LEDGER_PENDING,
            "current_step": "started",
            "created_at": _now_iso(),
            "updated_at": _now_iso(),
        }
        created = await self._store.create_burn_record(invocation_id=invocation_id, record=record)
        if not created:
            raise RuntimeError(f"ledger record {invocation_id} already exists")

    async def step_completed(self, invocation_id: str, step: str, duration_ms: int, **fields: Any) -> None:
        update: dict[str, Any] = {
            "current_step": step,
            step_duration_field(step): max(0, duration_ms),
            "updated_at": _now_iso(),
        }
        update.update({key: value for key, value in fields.items() if value is not None})

        async def write() -> None:
            applied = await self._store.update_burn_record(invocation_id=invocation_id, fields=update)
            if not applied:
                log_event(
                    self._logger,
                    level="warning",
                    event="ledger_update_rejected",
                    message="Ledger record is terminal or missing; step update dropped",
                    invocation_id=invocation_id,
                    step=step,
                )

        await guarded_call(
            write,
            logger=self._logger,
            event="ledger_step_update_failed",
            message="Failed to record pipeline step in ledger",
            level="error",
            invocation_id=invocation_id,
            step=step,
        )

    async def finish(self, result: ExecutionResult) -> bool:
        status = LEDGER_COMPLETED if result.success else LEDGER_FAILED
        update: dict[str, Any] = {
            "status": status,
            "current_step": result.step_reached,
            "total_duration_ms": result.duration_ms,
            "purchased_raw": str(result.purchased_raw),
            "burned_raw": str(result.burned_raw),
            "partial_failure": result.partial_failure,
            "payment_ref": result.payment_ref,
            "swap_ref": result.swap_ref,
            "burn_ref": result.burn_ref,
            "bundle_ref": result.bundle_ref,
            "swap_provider": result.swap_provider,
            "finished_at": _now_iso(),
            "updated_at": _now_iso(),
        }
        if result.target_decimals is not None:
            update["target_decimals"] = result.target_decimals
        if result.decision is not None:
            update["decision_approved"] = result.decision.approved
            update["decision_confidence"] = result.decision.confidence
            update["decision_reasoning"] = result.decision.reasoning
            update["decision_source"] = result.decision.source
        if result.error is not None:
            update["error_step"] = result.error.step
            update["error_code"] = result.error.code
            update["error_message"] = result.error.message
        update = {key: value for key, value in update.items() if value is not None}

        applied = await guarded_call(
            lambda: self._store.update_burn_record(invocation_id=result.invocation_id, fields=update),
            logger=self._logger,
            event="ledger_finish_failed",
            message="Failed to write terminal ledger status",
            level="critical",
            default=False,
            invocation_id=result.invocation_id,
            status=status,
        )
        if not applied:
            return False

        mirror = self._mirror
        if mirror is not None:

            async def write_mirror() -> None:
                record = await self._store.get_burn_record(invocation_id=result.invocation_id)
                if record is not None:
                    await mirror.mirror_burn_record(invocation_id=result.invocation_id, record=record)

            await guarded_call(
                write_mirror,
                logger=self._logger,
                event="ledger_mirror_failed",
                message="Failed to mirror ledger record",
                level="error",
                invocation_id=result.invocation_id,
            )
        return True

    async def get(self, invocation_id: str) -> dict[str, Any] | None:
        return await self._store.get_burn_record(invocation_id=invocation_id)

    async def stats(self, *, owner: str | None = None, limit: int = 10_000) -> LedgerStats:
        records = await self._store.list_burn_records(owner=owner, limit=limit)
        return summarize_records(records)
