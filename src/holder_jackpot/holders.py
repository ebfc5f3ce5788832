"""
Holder tracker: the eligibility snapshot and weighted winner selection.

A snapshot is immutable and rebuilt wholesale on every rescan; the tracker
swaps its ``snapshot`` reference in one assignment, so readers always see
either the old or the new holder set, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import AbstractSet, Any, Dict, List, Optional, Sequence, Tuple

from .draw import DrawResult, draw
from .errors import JackpotError, NoEligibleHolders
from .events import ELIGIBILITY_CHANGE, HOLDER_UPDATE, EventBus
from .gateway import LedgerGateway
from .project_constants import RESCAN_MAX_INTERVAL_S, RESCAN_TIERS
from .scheduler import Scheduler
from .store import NullStore
from .token_accounts import filter_participants

log = logging.getLogger(__name__)

RESCAN_TIMER = "holder_rescan"


def minimum_hold_amount(total_supply: int, minimum_hold_percentage: float) -> int:
    """floor(total_supply * pct / 100), computed without float rounding."""
    amount = Decimal(total_supply) * Decimal(str(minimum_hold_percentage)) / Decimal(100)
    return int(amount)


def rescan_interval_for(holder_count: int) -> float:
    for below, interval_s in RESCAN_TIERS:
        if holder_count < below:
            return interval_s
    return RESCAN_MAX_INTERVAL_S


def short_address(address: str) -> str:
    return f"{address[:4]}...{address[-4:]}"


@dataclass(frozen=True)
class Holder:
    address: str
    balance: int
    percentage_of_supply: float
    is_eligible: bool
    last_observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "balance": self.balance,
            "percentage": self.percentage_of_supply,
            "is_eligible": self.is_eligible,
            "last_observed_at": self.last_observed_at.isoformat(),
        }


@dataclass(frozen=True)
class HolderSnapshot:
    holders: Tuple[Holder, ...] = ()
    total_supply: int = 0
    minimum_hold_amount: int = 0
    taken_at: Optional[datetime] = None
    by_address: Dict[str, Holder] = field(default_factory=dict, compare=False, repr=False)
    eligible: Tuple[Holder, ...] = field(default=(), compare=False, repr=False)

    @classmethod
    def build(
        cls,
        participants: Sequence[Tuple[str, int]],
        total_supply: int,
        minimum_hold_percentage: float,
        observed_at: Optional[datetime] = None,
    ) -> "HolderSnapshot":
        observed_at = observed_at or datetime.now(timezone.utc)
        threshold = minimum_hold_amount(total_supply, minimum_hold_percentage)
        holders = tuple(
            Holder(
                address=address,
                balance=balance,
                percentage_of_supply=(balance / total_supply) * 100 if total_supply else 0.0,
                is_eligible=balance >= threshold,
                last_observed_at=observed_at,
            )
            for address, balance in participants
        )
        return cls(
            holders=holders,
            total_supply=total_supply,
            minimum_hold_amount=threshold,
            taken_at=observed_at,
            by_address={h.address: h for h in holders},
            eligible=tuple(h for h in holders if h.is_eligible),
        )


@dataclass(frozen=True)
class WinnerSelection:
    holder: Holder
    draw: DrawResult


class HolderTracker:
    def __init__(
        self,
        gateway: LedgerGateway,
        minimum_hold_percentage: float,
        excluded: AbstractSet[str] = frozenset(),
        events: Optional[EventBus] = None,
        store: Optional[NullStore] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.gateway = gateway
        self.minimum_hold_percentage = minimum_hold_percentage
        self.excluded = frozenset(excluded)
        self.events = events or EventBus()
        self.store = store or NullStore()
        self.scheduler = scheduler or Scheduler()

        self.snapshot = HolderSnapshot()
        self.rescan_interval_s = RESCAN_MAX_INTERVAL_S
        self.last_scan_ms: Optional[int] = None
        self._scan_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def rescan(self) -> HolderSnapshot:
        async with self._scan_lock:
            started = time.monotonic()
            previous = self.snapshot

            total_supply = await self.gateway.get_total_supply()
            owner_to_balance = await self.gateway.get_token_holders()
            participants = filter_participants(owner_to_balance, self.excluded)

            snapshot = HolderSnapshot.build(
                participants, total_supply, self.minimum_hold_percentage
            )
            self.snapshot = snapshot

            self.last_scan_ms = int((time.monotonic() - started) * 1000)
            log.info(
                "Holder scan completed in %dms: %d total holders, %d eligible "
                "(supply %d, minimum hold %d)",
                self.last_scan_ms,
                len(snapshot.holders),
                len(snapshot.eligible),
                total_supply,
                snapshot.minimum_hold_amount,
            )

        await self._persist(snapshot)
        self._adapt_interval(len(snapshot.holders))
        self._emit_update(previous, snapshot)
        return snapshot

    async def _persist(self, snapshot: HolderSnapshot) -> None:
        try:
            await self.store.upsert_holders([h.to_dict() for h in snapshot.holders])
        except Exception as e:
            log.warning("Failed to persist %d holders: %s", len(snapshot.holders), e)

    def _adapt_interval(self, holder_count: int) -> None:
        interval_s = rescan_interval_for(holder_count)
        if interval_s != self.rescan_interval_s:
            log.info(
                "%d holders - rescanning every %.0fs (was %.0fs)",
                holder_count, interval_s, self.rescan_interval_s,
            )
        self.rescan_interval_s = interval_s
        self.scheduler.reschedule(RESCAN_TIMER, interval_s)

    def _emit_update(self, previous: HolderSnapshot, snapshot: HolderSnapshot) -> None:
        self.events.publish(
            HOLDER_UPDATE,
            {
                "total_holders": len(snapshot.holders),
                "eligible_holders": len(snapshot.eligible),
                "minimum_hold_amount": snapshot.minimum_hold_amount,
                "total_supply": snapshot.total_supply,
                "last_update": snapshot.taken_at,
                "holders": self.top_holders(10),
                "scan_time_ms": self.last_scan_ms,
            },
        )
        if len(snapshot.eligible) != len(previous.eligible):
            self.events.publish(
                ELIGIBILITY_CHANGE,
                {
                    "previous_count": len(previous.eligible),
                    "current_count": len(snapshot.eligible),
                    "change": len(snapshot.eligible) - len(previous.eligible),
                },
            )

    async def _periodic_rescan(self) -> None:
        try:
            await self.rescan()
        except JackpotError as e:
            log.error("Periodic holder scan failed, keeping previous snapshot: %s", e)

    def start(self) -> None:
        self.scheduler.every(RESCAN_TIMER, self.rescan_interval_s, self._periodic_rescan)

    def stop(self) -> None:
        self.scheduler.cancel(RESCAN_TIMER)

    @property
    def is_tracking(self) -> bool:
        return self.scheduler.is_running(RESCAN_TIMER)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_weighted_random(
        self, entropy: str, snapshot: Optional[HolderSnapshot] = None
    ) -> Optional[WinnerSelection]:
        """Balance-weighted pick over eligible holders; same snapshot + entropy, same winner."""
        snapshot = snapshot or self.snapshot
        if not snapshot.eligible:
            return None
        result = draw([(h.address, h.balance) for h in snapshot.eligible], entropy)
        return WinnerSelection(snapshot.by_address[result.winner.address], result)

    async def select_winner(self) -> WinnerSelection:
        # Pin the snapshot before the entropy await so a concurrent swap cannot change the entrants.
        snapshot = self.snapshot
        if not snapshot.eligible:
            raise NoEligibleHolders("No eligible holders in the current snapshot")
        entropy = await self.gateway.get_recent_entropy()
        selection = self.select_weighted_random(entropy, snapshot)
        if selection is None:
            raise NoEligibleHolders("No eligible holders in the current snapshot")
        log.info(
            "Winner selected: %s with balance %d (ticket %d of %d)",
            selection.holder.address,
            selection.holder.balance,
            selection.draw.ticket,
            selection.draw.total_tickets,
        )
        return selection

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def eligible_holders(self) -> List[Holder]:
        return list(self.snapshot.eligible)

    def get_holder(self, address: str) -> Optional[Holder]:
        return self.snapshot.by_address.get(address)

    def is_address_eligible(self, address: str) -> bool:
        holder = self.snapshot.by_address.get(address)
        return holder is not None and holder.is_eligible

    def top_holders(self, limit: int = 10) -> List[Dict[str, Any]]:
        ranked = sorted(self.snapshot.holders, key=lambda h: h.balance, reverse=True)
        return [
            {
                "address": h.address,
                "balance": h.balance,
                "percentage": h.percentage_of_supply,
                "is_eligible": h.is_eligible,
            }
            for h in ranked[:limit]
        ]

    def distribution(self) -> List[Dict[str, Any]]:
        """Share of the eligible weight per holder, for the wheel display."""
        eligible = self.snapshot.eligible
        total_weight = sum(h.balance for h in eligible)
        return [
            {
                "address": h.address,
                "balance": h.balance,
                "percentage": (h.balance / total_weight) * 100 if total_weight else 0.0,
                "display_name": short_address(h.address),
            }
            for h in eligible
        ]

    def stats(self) -> Dict[str, Any]:
        snapshot = self.snapshot
        return {
            "total_holders": len(snapshot.holders),
            "eligible_holders": len(snapshot.eligible),
            "total_supply": snapshot.total_supply,
            "minimum_hold_amount": snapshot.minimum_hold_amount,
            "minimum_hold_percentage": self.minimum_hold_percentage,
            "last_update": snapshot.taken_at,
            "rescan_interval_s": self.rescan_interval_s,
            "is_tracking": self.is_tracking,
            "top_holders": self.top_holders(5),
        }
