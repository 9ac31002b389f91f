from __future__ import annotations

from .types import (
    STEP_APPROVAL,
    STEP_AUTHENTICATION,
    STEP_BURN,
    STEP_PAYMENT,
    STEP_RECONCILIATION,
    STEP_REPLAY_GUARD,
    STEP_SWAP,
    STEP_VALIDATION,
)


class PipelineError(RuntimeError):
    """Typed failure that halts the pipeline at a known step."""

    step = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__


class IntentRejected(PipelineError):
    step = STEP_VALIDATION


class AuthInvalid(PipelineError):
    step = STEP_AUTHENTICATION


class AuthExpired(PipelineError):
    step = STEP_AUTHENTICATION


class AuthMalformed(PipelineError):
    step = STEP_AUTHENTICATION


class ReplayDetected(PipelineError):
    step = STEP_REPLAY_GUARD


class DecisionRejected(PipelineError):
    step = STEP_APPROVAL


class InsufficientFunds(PipelineError):
    step = STEP_PAYMENT


class NoPayerAccount(PipelineError):
    step = STEP_PAYMENT


class PaymentConfirmFailed(PipelineError):
    step = STEP_PAYMENT

    def __init__(self, message: str, *, payment_ref: str | None = None) -> None:
        super().__init__(message)
        self.payment_ref = payment_ref


class SwapFailed(PipelineError):
    step = STEP_SWAP

    def __init__(
        self,
        message: str,
        *,
        errors: list[tuple[str, str]] | None = None,
        reference: str | None = None,
        outcome_unknown: bool = False,
    ) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
        self.reference = reference
        self.outcome_unknown = outcome_unknown

    @property
    def provider(self) -> str | None:
        return self.errors[-1][0] if self.errors else None

    @classmethod
    def from_provider_errors(cls, errors: list[tuple[str, str]]) -> "SwapFailed":
        if not errors:
            return cls("no swap providers configured", errors=[])
        joined = "; ".join(f"{provider}: {message}" for provider, message in errors)
        return cls(f"all swap providers failed ({joined})", errors=errors)

    @classmethod
    def from_unknown_outcome(cls, errors: list[tuple[str, str]], *, reference: str | None) -> "SwapFailed":
        provider, message = errors[-1]
        return cls(
            f"swap outcome unknown at {provider}: {message}",
            errors=errors,
            reference=reference,
            outcome_unknown=True,
        )


class NoTokensAcquired(PipelineError):
    step = STEP_RECONCILIATION

    def __init__(self, message: str, *, pre_raw: int, post_raw: int) -> None:
        super().__init__(message)
        self.pre_raw = pre_raw
        self.post_raw = post_raw


class BurnFailed(PipelineError):
    step = STEP_BURN

    def __init__(self, message: str, *, tx_signature: str | None = None) -> None:
        super().__init__(message)
        self.tx_signature = tx_signature


class BundleFailed(BurnFailed):
    step = STEP_BURN

    def __init__(self, message: str, *, bundle_id: str | None = None, swap_landed: bool = False) -> None:
        super().__init__(message)
        self.bundle_id = bundle_id
        self.swap_landed = swap_landed
