from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from treasury_burn.pipeline.types import USDC_MINT


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: str) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return Decimal(default)
        return Decimal(str(value).strip())
    except InvalidOperation:
        return Decimal(default)


def normalize_burn_mode(value: str) -> str:
    mode = (value or "").strip().lower()
    if mode in {"direct", "bundle", "auto"}:
        return mode
    return "auto"


@dataclass(slots=True)
class AppSettings:
    log_level: str
    environment: str
    solana_rpc_url: str
    treasury_private_key: str
    usdc_mint: str
    fee_recipient: str
    service_fee_rate: Decimal
    min_service_fee_usd: Decimal
    min_purchase_sol: Decimal
    default_slippage_bps: int
    http_timeout_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    reconcile_max_attempts: int
    reconcile_backoff_seconds: float
    replay_ttl_seconds: int
    jupiter_ultra_api: str
    jupiter_api_key: str
    pumpportal_enabled: bool
    pumpportal_api: str
    pumpportal_pool: str
    pumpportal_priority_fee_sol: float
    decision_api_url: str
    decision_model: str
    decision_api_key: str
    approval_fail_open: bool
    burn_mode: str
    jito_block_engine_url: str
    jito_tip_lamports: int
    bundle_poll_interval_seconds: float
    bundle_timeout_seconds: float
    authorized_identities: tuple[str, ...]

    @property
    def is_production(self) -> bool:
        return self.environment in {"production", "prod", "mainnet"}

    @property
    def bundle_enabled(self) -> bool:
        if self.burn_mode == "direct":
            return False
        return bool(self.jito_block_engine_url)

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            environment=os.getenv("ENVIRONMENT", "development").strip().lower() or "development",
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
            treasury_private_key=os.getenv("TREASURY_PRIVATE_KEY", ""),
            usdc_mint=os.getenv("USDC_MINT", USDC_MINT),
            fee_recipient=os.getenv("SERVICE_FEE_RECIPIENT", ""),
            service_fee_rate=max(Decimal("0"), to_decimal(os.getenv("SERVICE_FEE_RATE"), "0.001")),
            min_service_fee_usd=max(Decimal("0"), to_decimal(os.getenv("MIN_SERVICE_FEE_USD"), "0.005")),
            min_purchase_sol=max(Decimal("0"), to_decimal(os.getenv("MIN_PURCHASE_SOL"), "0.001")),
            default_slippage_bps=max(1, min(10_000, to_int(os.getenv("DEFAULT_SLIPPAGE_BPS"), 100))),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 10.0)),
            confirm_timeout_seconds=max(5.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 60.0)),
            confirm_poll_interval_seconds=max(
                0.2,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            reconcile_max_attempts=max(1, to_int(os.getenv("RECONCILE_MAX_ATTEMPTS"), 5)),
            reconcile_backoff_seconds=max(0.0, to_float(os.getenv("RECONCILE_BACKOFF_SECONDS"), 1.0)),
            # never shorter than the 5 minute authorization window
            replay_ttl_seconds=max(600, to_int(os.getenv("REPLAY_TTL_SECONDS"), 600)),
            jupiter_ultra_api=os.getenv("JUPITER_ULTRA_API", "https://lite-api.jup.ag/ultra/v1"),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", ""),
            pumpportal_enabled=to_bool(os.getenv("PUMPPORTAL_ENABLED"), True),
            pumpportal_api=os.getenv("PUMPPORTAL_API", "https://pumpportal.fun/api/trade-local"),
            pumpportal_pool=os.getenv("PUMPPORTAL_POOL", "pump"),
            pumpportal_priority_fee_sol=max(0.0, to_float(os.getenv("PUMPPORTAL_PRIORITY_FEE_SOL"), 0.00001)),
            decision_api_url=os.getenv(
                "DECISION_API_URL",
                "https://api.deepseek.com/v1/chat/completions",
            ),
            decision_model=os.getenv("DECISION_MODEL", "deepseek-chat"),
            decision_api_key=os.getenv("DECISION_API_KEY", ""),
            approval_fail_open=to_bool(os.getenv("APPROVAL_FAIL_OPEN"), True),
            burn_mode=normalize_burn_mode(os.getenv("BURN_MODE", "auto")),
            jito_block_engine_url=os.getenv(
                "JITO_BLOCK_ENGINE_URL",
                "https://mainnet.block-engine.jito.wtf/api/v1/bundles",
            ).strip(),
            jito_tip_lamports=max(1_000, to_int(os.getenv("JITO_TIP_LAMPORTS"), 10_000)),
            bundle_poll_interval_seconds=max(0.5, to_float(os.getenv("BUNDLE_POLL_INTERVAL_SECONDS"), 2.0)),
            bundle_timeout_seconds=max(5.0, to_float(os.getenv("BUNDLE_TIMEOUT_SECONDS"), 30.0)),
            authorized_identities=tuple(
                item.strip() for item in os.getenv("AUTHORIZED_IDENTITIES", "").split(",") if item.strip()
            ),
        )
