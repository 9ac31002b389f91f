from .approval import ApprovalGate, DecisionServiceUnavailable, parse_decision_content
from .auth import SignatureAuthenticator, build_burn_message
from .burn import BurnExecutor
from .engine import BurnPipeline, PipelineLimits
from .errors import (
    AuthExpired,
    AuthInvalid,
    AuthMalformed,
    BundleFailed,
    BurnFailed,
    DecisionRejected,
    InsufficientFunds,
    IntentRejected,
    NoPayerAccount,
    NoTokensAcquired,
    PaymentConfirmFailed,
    PipelineError,
    ReplayDetected,
    SwapFailed,
)
from .fees import FeeSettlement, compute_service_fee
from .jito import JitoBlockEngineClient, JitoBundleRateLimitError
from .ledger import LedgerRecorder, LedgerStats
from .reconcile import BalanceReconciler
from .replay import ReplayGuard
from .rpc import SolanaRpcClient, load_keypair
from .swap import JupiterUltraProvider, PumpPortalProvider, SwapExecutor, SwapOutcomeUnknown, SwapRequest
from .types import (
    ApprovalCriteria,
    ApprovalDecision,
    AuthorizationProof,
    BurnIntent,
    ExecutionError,
    ExecutionResult,
    from_raw,
    to_raw,
)

__all__ = [
    "ApprovalCriteria",
    "ApprovalDecision",
    "ApprovalGate",
    "AuthExpired",
    "AuthInvalid",
    "AuthMalformed",
    "AuthorizationProof",
    "BalanceReconciler",
    "BundleFailed",
    "BurnExecutor",
    "BurnFailed",
    "BurnIntent",
    "BurnPipeline",
    "DecisionRejected",
    "DecisionServiceUnavailable",
    "ExecutionError",
    "ExecutionResult",
    "FeeSettlement",
    "InsufficientFunds",
    "IntentRejected",
    "JitoBlockEngineClient",
    "JitoBundleRateLimitError",
    "JupiterUltraProvider",
    "LedgerRecorder",
    "LedgerStats",
    "NoPayerAccount",
    "NoTokensAcquired",
    "PaymentConfirmFailed",
    "PipelineError",
    "PipelineLimits",
    "PumpPortalProvider",
    "ReplayDetected",
    "ReplayGuard",
    "SignatureAuthenticator",
    "SolanaRpcClient",
    "SwapExecutor",
    "SwapFailed",
    "SwapOutcomeUnknown",
    "SwapRequest",
    "build_burn_message",
    "compute_service_fee",
    "from_raw",
    "load_keypair",
    "parse_decision_content",
    "to_raw",
]
