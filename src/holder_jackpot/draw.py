from __future__ import annotations

import hashlib
from bisect import bisect_left
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple


@dataclass(frozen=True)
class HolderRange:
    address: str
    balance: int
    start_ticket: int
    end_ticket: int  # exclusive


@dataclass(frozen=True)
class DrawResult:
    winner: HolderRange
    ticket: int
    total_tickets: int
    seed: str
    seed_hash_hex: str
    seed_int: int
    ranges: Tuple[HolderRange, ...]

    def to_audit(self) -> Dict[str, Any]:
        return {
            "seed_blockhash": self.seed,
            "seed_hash_hex": self.seed_hash_hex,
            "seed_int": str(self.seed_int),  # big int; store as string for safety
            "total_tickets": self.total_tickets,
            "winning_ticket": self.ticket,
            "winner": {"address": self.winner.address, "balance": self.winner.balance},
            # Entrants in draw order so anyone can re-run it.
            "all_entrants": [
                {
                    "address": r.address,
                    "balance": r.balance,
                    "start_ticket": r.start_ticket,
                    "end_ticket": r.end_ticket,
                }
                for r in self.ranges
            ],
        }


def build_ranges(eligible: Sequence[Tuple[str, int]]) -> Tuple[List[HolderRange], int]:
    ranges: List[HolderRange] = []
    cursor = 0
    for addr, bal in eligible:
        start = cursor
        end = cursor + bal
        ranges.append(HolderRange(addr, bal, start, end))
        cursor = end
    return ranges, cursor


def entropy_to_int(seed: str) -> Tuple[int, str]:
    """Fold an entropy string into a non-negative integer (via SHA-256)."""
    seed_hash_hex = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return int(seed_hash_hex, 16), seed_hash_hex


def compute_ticket(seed: str, total_tickets: int) -> Tuple[int, str, int]:
    seed_int, seed_hash_hex = entropy_to_int(seed)
    return seed_int % total_tickets, seed_hash_hex, seed_int


def find_winner(ranges: Sequence[HolderRange], ticket: int) -> HolderRange:
    """
    Walk the ranges subtracting each balance from the ticket; the first holder
    that brings it to zero or below wins. Equivalent to the first range whose
    cumulative end is >= ticket.
    """
    if not ranges:
        raise ValueError("Cannot draw from an empty holder list.")
    ends = [r.end_ticket for r in ranges]
    idx = bisect_left(ends, ticket)
    if idx >= len(ranges):
        return ranges[0]
    return ranges[idx]


def draw(eligible: Sequence[Tuple[str, int]], seed: str) -> DrawResult:
    ranges, total_tickets = build_ranges(eligible)
    if total_tickets <= 0:
        raise ValueError("No eligible tickets.")
    ticket, seed_hash_hex, seed_int = compute_ticket(seed, total_tickets)
    return DrawResult(
        winner=find_winner(ranges, ticket),
        ticket=ticket,
        total_tickets=total_tickets,
        seed=seed,
        seed_hash_hex=seed_hash_hex,
        seed_int=seed_int,
        ranges=tuple(ranges),
    )
