from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal, InvalidOperation
from typing import Sequence

from dotenv import load_dotenv
from solders.signature import Signature

from treasury_burn.common import log_event, now_ms
from treasury_burn.pipeline import (
    ApprovalCriteria,
    AuthorizationProof,
    BurnIntent,
    build_burn_message,
)
from treasury_burn.runtime import AppSettings, build_runtime, setup_logger
from treasury_burn.storage import StorageSettings


def _decimal_arg(value: str) -> Decimal:
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, ValueError) as error:
        raise argparse.ArgumentTypeError(f"not a decimal number: {value!r}") from error
    if not parsed.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite number: {value!r}")
    return parsed


def _signature_bytes(value: str) -> bytes:
    # malformed input is passed through empty so the pipeline records an AuthMalformed failure
    try:
        return bytes(Signature.from_string(value.strip()))
    except ValueError:
        return b""


def build_parser(default_slippage_bps: int) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="treasury-burn", description="Treasury buy-and-burn pipeline")
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Execute one signed burn intent")
    run_parser.add_argument("--intent-id", required=True)
    run_parser.add_argument("--amount-sol", required=True, type=_decimal_arg)
    run_parser.add_argument("--mint", required=True, help="Target token mint to buy and burn")
    run_parser.add_argument("--slippage-bps", type=int, default=default_slippage_bps)
    run_parser.add_argument("--fee-usd", type=_decimal_arg, default=None)
    run_parser.add_argument("--sol-price-usd", type=_decimal_arg, default=None)
    run_parser.add_argument("--identity", required=True, help="Wallet that signed the authorization")
    run_parser.add_argument("--signature", required=True, help="Base58 Ed25519 signature of --message")
    run_parser.add_argument("--message", required=True)
    run_parser.add_argument("--timestamp-ms", type=int, default=None)
    run_parser.add_argument("--require-approval", action="store_true")
    run_parser.add_argument("--confidence-threshold", type=int, default=70)
    run_parser.add_argument("--max-supply-percent", type=float, default=5.0)

    message_parser = commands.add_parser("message", help="Print the message a wallet must sign")
    message_parser.add_argument("--intent-id", required=True)
    message_parser.add_argument("--timestamp-ms", type=int, default=None)

    show_parser = commands.add_parser("show", help="Print the ledger record of one invocation")
    show_parser.add_argument("invocation_id")

    commands.add_parser("stats", help="Print burn, payment and bundle aggregates")
    commands.add_parser("health", help="Check Redis and RPC connectivity")
    return parser


def _intent_from_args(args: argparse.Namespace) -> BurnIntent:
    criteria = None
    if args.require_approval:
        criteria = ApprovalCriteria(
            confidence_threshold=max(0, min(100, args.confidence_threshold)),
            max_proportion_of_supply=args.max_supply_percent,
        )
    return BurnIntent(
        intent_id=args.intent_id,
        source_amount=args.amount_sol,
        target_mint=args.mint.strip(),
        slippage_bps=args.slippage_bps,
        service_fee_usd=args.fee_usd,
        approval_criteria=criteria,
    )


async def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    app_settings = AppSettings.from_env()
    args = build_parser(app_settings.default_slippage_bps).parse_args(argv)
    logger = setup_logger(app_settings.log_level)

    if args.command == "message":
        print(build_burn_message(args.intent_id, args.timestamp_ms or now_ms()))
        return 0

    runtime = await build_runtime(
        logger=logger,
        settings=app_settings,
        storage_settings=StorageSettings.from_env(),
    )
    try:
        if args.command == "health":
            await runtime.healthcheck()
            print(json.dumps({"status": "ok", "treasury": runtime.pipeline.treasury}))
            return 0

        if args.command == "show":
            record = await runtime.ledger.get(args.invocation_id)
            if record is None:
                print(json.dumps({"error": f"no ledger record for {args.invocation_id}"}))
                return 1
            payload = {
                "burn": record,
                "payment": await runtime.storage.get_payment(payment_id=f"pay-{args.invocation_id}"),
                "bundle": None,
            }
            if record.get("bundle_ref"):
                payload["bundle"] = await runtime.storage.get_bundle(bundle_id=record["bundle_ref"])
            print(json.dumps(payload, indent=2, default=str))
            return 0

        if args.command == "stats":
            print(json.dumps(await runtime.stats(), indent=2, default=str))
            return 0

        proof = AuthorizationProof(
            identity=args.identity.strip(),
            signature=_signature_bytes(args.signature),
            message=args.message,
            message_timestamp_ms=args.timestamp_ms,
        )
        result = await runtime.pipeline.run(
            _intent_from_args(args),
            proof,
            sol_price_usd=args.sol_price_usd,
        )
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1
    finally:
        await runtime.close()
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
