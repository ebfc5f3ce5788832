from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from .app import build_services, run_service
from .config import Settings
from .errors import JackpotError
from .verify import verify_audit


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def cmd_run(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        logging.getLogger("run").info("Interrupted, shutting down")
    return 0


async def _draw(args: argparse.Namespace) -> Dict[str, Any]:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    services = build_services(settings)
    log = logging.getLogger("draw")
    try:
        snapshot = await services.tracker.rescan()
        seed = args.seed or await services.gateway.get_recent_entropy()
    finally:
        await services.close()

    log.info("Seed (blockhash): %s", seed)
    selection = services.tracker.select_weighted_random(seed, snapshot)
    if selection is None:
        raise SystemExit("No eligible holders. Check mint / exclusions / minimum hold.")

    audit = selection.draw.to_audit()
    audit["metadata"] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "token_mint": settings.token_mint,
        "total_supply": snapshot.total_supply,
        "minimum_hold_amount": snapshot.minimum_hold_amount,
        "minimum_hold_percentage": settings.minimum_hold_percentage,
    }
    return audit


def cmd_draw(args: argparse.Namespace) -> int:
    audit = asyncio.run(_draw(args))

    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(audit, f, indent=2)

    meta = audit["metadata"]
    print("========================================")
    print("DIAGNOSTIC HOLDER DRAW (no payout)")
    print("========================================")
    print(f"Mint          : {meta['token_mint']}")
    print(f"Minimum hold  : {meta['minimum_hold_amount']}")
    print(f"Entrants      : {len(audit['all_entrants'])}")
    print(f"Seed          : {audit['seed_blockhash']}")
    print(f"Seed SHA-256  : {audit['seed_hash_hex']}")
    print("----------------------------------------")
    print(f"Winner        : {audit['winner']['address']}")
    print(f"Balance       : {audit['winner']['balance']}")
    print(f"Ticket        : {audit['winning_ticket']} of {audit['total_tickets']}")
    print("----------------------------------------")
    print(f"Wrote audit: {args.out}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    result = verify_audit(args.audit)
    print("AUDIT VERIFIED")
    print(f"Winner        : {result['winner']}")
    print(f"Winning Ticket: {result['winning_ticket']}")
    print(f"Total Tickets : {result['total_tickets']}")
    print(f"Seed SHA-256  : {result['seed_hash_hex']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="holder-jackpot",
        description="Recurring token-holder jackpot engine.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override primary RPC URL (else use env).")

    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Run the jackpot cycle until interrupted.")
    r.set_defaults(func=cmd_run)

    d = sub.add_parser("draw", help="Scan holders and run one weighted draw without paying out.")
    d.add_argument("--seed", default=None, help="Use this seed instead of the latest blockhash.")
    d.add_argument("--out", default="audit.json", help="Audit output JSON path.")
    d.set_defaults(func=cmd_draw)

    v = sub.add_parser(
        "verify", help="Verify a stored round file or draw audit deterministically."
    )
    v.add_argument("--audit", required=True, help="Path to a round JSON or audit.json.")
    v.set_defaults(func=cmd_verify)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    try:
        code = args.func(args)
    except JackpotError as e:
        logging.getLogger("cli").error("%s", e)
        code = 1
    raise SystemExit(code)
