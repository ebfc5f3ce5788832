"""
Offline re-check of a recorded draw.

Anyone holding a round file (or a ``holder-jackpot draw`` audit) can replay
the draw from its seed and entrant list; every recomputed value must match
what was recorded.
"""

from __future__ import annotations

import json
from typing import Any, Dict

from .draw import build_ranges, compute_ticket, find_winner
from .errors import AuditMismatch


def _expect(label: str, recorded: Any, recomputed: Any) -> None:
    if recorded != recomputed:
        raise AuditMismatch(f"{label} mismatch: audit={recorded} recomputed={recomputed}")


def verify_draw(audit: Dict[str, Any]) -> Dict[str, Any]:
    entrants = [(e["address"], int(e["balance"])) for e in audit["all_entrants"]]
    ranges, total_tickets = build_ranges(entrants)
    _expect("Total tickets", int(audit["total_tickets"]), total_tickets)

    ticket, seed_hash_hex, seed_int = compute_ticket(audit["seed_blockhash"], total_tickets)
    if "seed_hash_hex" in audit:
        _expect("Seed hash", audit["seed_hash_hex"], seed_hash_hex)
    _expect("Winning ticket", int(audit["winning_ticket"]), ticket)

    winner = find_winner(ranges, ticket)
    _expect("Winner", audit["winner"]["address"], winner.address)

    return {
        "ok": True,
        "seed_hash_hex": seed_hash_hex,
        "seed_int": seed_int,
        "winner": winner.address,
        "winning_ticket": ticket,
        "total_tickets": total_tickets,
    }


def verify_audit(audit_path: str) -> Dict[str, Any]:
    with open(audit_path, "r", encoding="utf-8") as f:
        record = json.load(f)
    # Round files wrap the draw under "audit"; CLI audits are the draw itself.
    audit = record.get("audit") if "audit" in record else record
    if not audit or "seed_blockhash" not in audit:
        raise AuditMismatch(f"{audit_path} holds no draw audit.")
    return verify_draw(audit)
