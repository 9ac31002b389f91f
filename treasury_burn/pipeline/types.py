from __future__ import annotations

import hashlib
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal, localcontext
from typing import Any, Protocol

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOL_DECIMALS = 9
USDC_DECIMALS = 6
AUTH_WINDOW_MS = 5 * 60 * 1000

STEP_VALIDATION = "validation"
STEP_AUTHENTICATION = "authentication"
STEP_REPLAY_GUARD = "replay_guard"
STEP_APPROVAL = "approval"
STEP_PAYMENT = "payment"
STEP_SWAP = "swap"
STEP_RECONCILIATION = "reconciliation"
STEP_BURN = "burn"
STEP_LEDGER = "ledger"

LEDGER_PENDING = "pending"
LEDGER_COMPLETED = "completed"
LEDGER_FAILED = "failed"

# Decimal precision wide enough for any u64 amount at any token precision.
_RAW_PRECISION = 80


def to_raw(amount: Decimal | str | int, decimals: int) -> int:
    """Convert a human-unit amount into the asset's smallest indivisible unit.

    Raises ValueError when the amount is negative or carries more fractional
    digits than the asset supports; nothing is ever rounded.
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    with localcontext() as ctx:
        ctx.prec = _RAW_PRECISION
        value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
        if not value.is_finite():
            raise ValueError(f"amount must be finite, got {amount}")
        if value < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        scaled = value.scaleb(decimals)
        integral = scaled.to_integral_value()
        if scaled != integral:
            raise ValueError(f"amount {amount} exceeds {decimals} decimal places")
        return int(integral)


def from_raw(raw: int, decimals: int) -> Decimal:
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    with localcontext() as ctx:
        ctx.prec = _RAW_PRECISION
        return Decimal(int(raw)).scaleb(-decimals)


def signature_digest(signature: bytes) -> str:
    return hashlib.sha256(signature).hexdigest()


def make_invocation_id() -> str:
    return f"burn-{uuid.uuid4().hex[:20]}"


@dataclass(slots=True, frozen=True)
class ApprovalCriteria:
    confidence_threshold: int = 70
    max_proportion_of_supply: float = 5.0
    require_positive_sentiment: bool = True


@dataclass(slots=True, frozen=True)
class BurnIntent:
    intent_id: str
    source_amount: Decimal
    target_mint: str
    slippage_bps: int
    service_fee_usd: Decimal | None = None
    approval_criteria: ApprovalCriteria | None = None


@dataclass(slots=True, frozen=True)
class AuthorizationProof:
    identity: str
    signature: bytes = field(repr=False)
    message: str
    message_timestamp_ms: int | None = None


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    approved: bool
    confidence: int
    reasoning: str
    source: str = "service"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class SwapOutcome:
    provider: str
    reference: str
    input_raw: int
    output_raw: int | None
    requires_reconciliation: bool
    signed_transaction: str | None = field(default=None, repr=False)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class BalanceSnapshot:
    owner: str
    mint: str
    raw: int
    decimals: int


@dataclass(slots=True, frozen=True)
class PaymentReceipt:
    payment_id: str
    reference: str | None
    amount_micro_usdc: int
    status: str
    placeholder: bool = False


@dataclass(slots=True, frozen=True)
class BundleReceipt:
    bundle_id: str
    tx_signatures: tuple[str, ...]
    tip_lamports: int
    status: str
    execution_time_ms: int | None = None
    landed_slot: int | None = None


@dataclass(slots=True, frozen=True)
class BurnReceipt:
    reference: str
    burned_raw: int
    bundle: BundleReceipt | None = None


@dataclass(slots=True, frozen=True)
class ExecutionError:
    step: str
    code: str
    message: str


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    invocation_id: str
    intent_id: str
    owner: str
    step_reached: str
    success: bool
    purchased_raw: int = 0
    burned_raw: int = 0
    target_decimals: int | None = None
    payment_ref: str | None = None
    swap_ref: str | None = None
    burn_ref: str | None = None
    bundle_ref: str | None = None
    swap_provider: str | None = None
    decision: ApprovalDecision | None = None
    error: ExecutionError | None = None
    duration_ms: int = 0

    @property
    def partial_failure(self) -> bool:
        return not self.success and self.purchased_raw > self.burned_raw

    def to_dict(self) -> dict[str, Any]:
        amounts: dict[str, Any] = {
            "purchased_raw": str(self.purchased_raw),
            "burned_raw": str(self.burned_raw),
        }
        if self.target_decimals is not None:
            amounts["decimals"] = self.target_decimals
            amounts["purchased"] = str(from_raw(self.purchased_raw, self.target_decimals))
            amounts["burned"] = str(from_raw(self.burned_raw, self.target_decimals))

        return {
            "invocation_id": self.invocation_id,
            "intent_id": self.intent_id,
            "owner": self.owner,
            "step_reached": self.step_reached,
            "success": self.success,
            "partial_failure": self.partial_failure,
            "amounts": amounts,
            "references": {
                "payment_ref": self.payment_ref,
                "swap_ref": self.swap_ref,
                "burn_ref": self.burn_ref,
                "bundle_ref": self.bundle_ref,
            },
            "swap_provider": self.swap_provider,
            "decision": self.decision.to_dict() if self.decision else None,
            "error": asdict(self.error) if self.error else None,
            "duration_ms": self.duration_ms,
        }


class UsedSignatureStore(Protocol):
    async def insert_used_signature(
        self,
        *,
        signature_hash: str,
        entity: str,
        ttl_seconds: int,
    ) -> bool:
        ...


class LedgerStore(Protocol):
    async def create_burn_record(self, *, invocation_id: str, record: dict[str, Any]) -> bool:
        ...

    async def update_burn_record(self, *, invocation_id: str, fields: dict[str, Any]) -> bool:
        ...

    async def get_burn_record(self, *, invocation_id: str) -> dict[str, Any] | None:
        ...

    async def list_burn_records(self, *, owner: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        ...


class PaymentStore(Protocol):
    async def save_payment(self, *, payment_id: str, record: dict[str, Any]) -> None:
        ...

    async def update_payment(self, *, payment_id: str, status: str, fields: dict[str, Any] | None = None) -> None:
        ...


class BundleStore(Protocol):
    async def save_bundle(self, *, bundle_id: str, record: dict[str, Any]) -> None:
        ...

    async def update_bundle(self, *, bundle_id: str, status: str, fields: dict[str, Any] | None = None) -> None:
        ...


class LedgerMirror(Protocol):
    async def mirror_burn_record(self, *, invocation_id: str, record: dict[str, Any]) -> None:
        ...
