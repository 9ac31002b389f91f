from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from treasury_burn.common import log_event
from treasury_burn.pipeline import (
    ApprovalGate,
    BalanceReconciler,
    BurnExecutor,
    BurnPipeline,
    FeeSettlement,
    JitoBlockEngineClient,
    JupiterUltraProvider,
    LedgerRecorder,
    PipelineLimits,
    PumpPortalProvider,
    ReplayGuard,
    SignatureAuthenticator,
    SolanaRpcClient,
    SwapExecutor,
    load_keypair,
)
from treasury_burn.pipeline.swap import SwapProvider
from treasury_burn.storage import StorageGateway, StorageSettings

from .settings import AppSettings


@dataclass(slots=True)
class Runtime:
    """Every long-lived client the pipeline needs, created once per process."""

    settings: AppSettings
    storage: StorageGateway
    rpc: SolanaRpcClient
    session: aiohttp.ClientSession
    pipeline: BurnPipeline
    ledger: LedgerRecorder

    async def healthcheck(self) -> None:
        await self.storage.healthcheck()
        await self.rpc.healthcheck()

    async def stats(self) -> dict[str, Any]:
        ledger_stats = await self.ledger.stats(owner=self.pipeline.treasury)
        return {
            "treasury": self.pipeline.treasury,
            "burns": ledger_stats.to_dict(),
            "payments": await self.storage.payment_stats(),
            "bundles": await self.storage.bundle_stats(),
        }

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self.session.close()
        with contextlib.suppress(Exception):
            await self.rpc.close()
        with contextlib.suppress(Exception):
            await self.storage.close()


def _build_providers(
    *,
    logger: logging.Logger,
    settings: AppSettings,
    session: aiohttp.ClientSession,
    rpc: SolanaRpcClient,
) -> list[SwapProvider]:
    providers: list[SwapProvider] = [
        JupiterUltraProvider(
            logger=logger,
            session=session,
            api_base_url=settings.jupiter_ultra_api,
            api_key=settings.jupiter_api_key,
            timeout_seconds=settings.http_timeout_seconds,
        )
    ]
    if settings.pumpportal_enabled:
        providers.append(
            PumpPortalProvider(
                logger=logger,
                session=session,
                rpc=rpc,
                api_url=settings.pumpportal_api,
                pool=settings.pumpportal_pool,
                priority_fee_sol=settings.pumpportal_priority_fee_sol,
                timeout_seconds=settings.http_timeout_seconds,
                confirm_timeout_seconds=settings.confirm_timeout_seconds,
            )
        )
    return providers


async def build_runtime(
    *,
    logger: logging.Logger,
    settings: AppSettings,
    storage_settings: StorageSettings,
) -> Runtime:
    if not settings.treasury_private_key:
        raise ValueError("TREASURY_PRIVATE_KEY is required.")
    signer = load_keypair(settings.treasury_private_key)

    storage = StorageGateway(storage_settings, logger)
    rpc = SolanaRpcClient(
        logger=logger,
        rpc_url=settings.solana_rpc_url,
        timeout_seconds=settings.http_timeout_seconds,
        confirm_poll_interval_seconds=settings.confirm_poll_interval_seconds,
    )
    session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=settings.http_timeout_seconds))

    try:
        await storage.connect()
        await rpc.connect()
    except Exception:
        with contextlib.suppress(Exception):
            await session.close()
        with contextlib.suppress(Exception):
            await rpc.close()
        with contextlib.suppress(Exception):
            await storage.close()
        raise

    jito = None
    if settings.bundle_enabled:
        jito = JitoBlockEngineClient(
            logger=logger,
            session=session,
            block_engine_url=settings.jito_block_engine_url,
            timeout_seconds=settings.http_timeout_seconds,
        )

    fee_settlement = None
    if settings.fee_recipient:
        fee_settlement = FeeSettlement(
            logger=logger,
            rpc=rpc,
            payer=signer,
            store=storage,
            recipient=settings.fee_recipient,
            usdc_mint=settings.usdc_mint,
            production=settings.is_production,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
        )

    ledger = LedgerRecorder(
        logger=logger,
        store=storage,
        mirror=storage if storage.mirror_enabled else None,
    )
    pipeline = BurnPipeline(
        logger=logger,
        signer=signer,
        authenticator=SignatureAuthenticator(
            logger=logger,
            authorized_identities=settings.authorized_identities,
        ),
        replay_guard=ReplayGuard(logger=logger, store=storage, ttl_seconds=settings.replay_ttl_seconds),
        approval_gate=ApprovalGate(
            logger=logger,
            session=session,
            api_url=settings.decision_api_url,
            api_key=settings.decision_api_key,
            model=settings.decision_model,
            fail_open=settings.approval_fail_open,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        fee_settlement=fee_settlement,
        swap_executor=SwapExecutor(
            logger=logger,
            providers=_build_providers(logger=logger, settings=settings, session=session, rpc=rpc),
        ),
        reconciler=BalanceReconciler(
            logger=logger,
            reader=rpc,
            max_attempts=settings.reconcile_max_attempts,
            backoff_seconds=settings.reconcile_backoff_seconds,
        ),
        burn_executor=BurnExecutor(
            logger=logger,
            rpc=rpc,
            signer=signer,
            jito=jito,
            bundle_store=storage,
            confirm_timeout_seconds=settings.confirm_timeout_seconds,
            tip_lamports=settings.jito_tip_lamports,
            bundle_poll_interval_seconds=settings.bundle_poll_interval_seconds,
            bundle_timeout_seconds=settings.bundle_timeout_seconds,
        ),
        ledger=ledger,
        limits=PipelineLimits(
            min_purchase_sol=settings.min_purchase_sol,
            min_service_fee_usd=settings.min_service_fee_usd,
            service_fee_rate=settings.service_fee_rate,
        ),
        prefer_bundle=settings.bundle_enabled,
    )

    log_event(
        logger,
        level="info",
        event="runtime_ready",
        message="Burn pipeline dependencies initialized",
        treasury=pipeline.treasury,
        environment=settings.environment,
        burn_mode=settings.burn_mode,
        fee_settlement=fee_settlement is not None,
        approval_fail_open=settings.approval_fail_open,
        mirror_enabled=storage.mirror_enabled,
    )
    return Runtime(
        settings=settings,
        storage=storage,
        rpc=rpc,
        session=session,
        pipeline=pipeline,
        ledger=ledger,
    )
