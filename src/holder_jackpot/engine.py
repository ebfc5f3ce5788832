"""
Game engine: the round state machine.

    waiting -> spinning -> winner_selected -> processing_payout -> completed -> waiting
    waiting <-> paused   (operator)

A periodic tick checks the spin deadline while ``waiting``. Claiming a round is
a check-and-set on ``state`` with no await in between, so two ticks (or a tick
and a forced spin) can never both start one. Whatever happens inside a round,
the engine ends up back in ``waiting`` with a fresh deadline.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from . import events as ev
from .config import Settings
from .errors import InvalidStateError, JackpotError, NoEligibleHolders
from .events import EventBus
from .gateway import LedgerGateway
from .holders import Holder, HolderTracker
from .ids import new_id
from .payouts import Payout, PayoutPipeline
from .project_constants import (
    POT_UPDATE_INTERVAL_S,
    ROUND_HISTORY_LIMIT,
    SPIN_GUARD_WINDOW_S,
    TICK_INTERVAL_S,
    WSOL_MINT,
)
from .scheduler import Scheduler
from .store import NullStore

log = logging.getLogger(__name__)

TICK_TIMER = "game_tick"
POT_TIMER = "pot_update"


class GameState(str, Enum):
    WAITING = "waiting"
    SPINNING = "spinning"
    WINNER_SELECTED = "winner_selected"
    PROCESSING_PAYOUT = "processing_payout"
    COMPLETED = "completed"
    PAUSED = "paused"


class RoundStatus(str, Enum):
    SPINNING = "spinning"
    WINNER_SELECTED = "winner_selected"
    PROCESSING_PAYOUT = "processing_payout"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def percent_of(amount: int, percentage: float) -> int:
    return int(Decimal(amount) * Decimal(str(percentage)) / Decimal(100))


def next_spin_time(
    now: datetime, interval_minutes: int, guard_s: float = SPIN_GUARD_WINDOW_S
) -> datetime:
    """Round ``now`` up to the next interval boundary, skipping one that is too close."""
    interval_s = interval_minutes * 60
    ts = now.timestamp()
    target = math.ceil(ts / interval_s) * interval_s
    if target - ts < guard_s:
        target += interval_s
    return datetime.fromtimestamp(target, tz=timezone.utc)


def apply_pool_growth(pot: int, growth_rate: float, max_growth: int, base_amount: int) -> Tuple[int, int]:
    """Returns (new pot, growth). The result never drops below ``base_amount``."""
    growth = min(int(Decimal(pot) * Decimal(str(growth_rate))), max_growth)
    return max(pot + growth, base_amount), growth


@dataclass
class PoolState:
    current_amount: int
    growth_rate: float
    base_amount: int
    max_growth_per_cycle: int

    def grow(self) -> int:
        self.current_amount, growth = apply_pool_growth(
            self.current_amount, self.growth_rate, self.max_growth_per_cycle, self.base_amount
        )
        return growth

    def raise_to(self, funded_amount: int) -> int:
        """Lift the pot to ``funded_amount`` if that is larger; never lowers it."""
        if funded_amount <= self.current_amount:
            return 0
        added = funded_amount - self.current_amount
        self.current_amount = funded_amount
        return added


@dataclass
class Round:
    id: str
    start_time: datetime
    pot_amount_at_start: int
    eligible_holder_count_at_start: int
    winner: Optional[Holder] = None
    winner_payout: int = 0
    creator_payout: int = 0
    settlement_reference: Optional[str] = None
    status: RoundStatus = RoundStatus.SPINNING
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    payout_id: Optional[str] = None
    audit: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "pot_amount": self.pot_amount_at_start,
            "eligible_holders": self.eligible_holder_count_at_start,
            "winner": None if self.winner is None else {
                "address": self.winner.address,
                "balance": self.winner.balance,
                "percentage": self.winner.percentage_of_supply,
            },
            "winner_payout": self.winner_payout,
            "creator_payout": self.creator_payout,
            "settlement_reference": self.settlement_reference,
            "status": self.status.value,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "payout_id": self.payout_id,
            "audit": self.audit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Round":
        start_time = datetime.fromisoformat(data["start_time"])
        winner = data.get("winner")
        return cls(
            id=data["id"],
            start_time=start_time,
            pot_amount_at_start=int(data["pot_amount"]),
            eligible_holder_count_at_start=int(data["eligible_holders"]),
            winner=None if not winner else Holder(
                address=winner["address"],
                balance=int(winner["balance"]),
                percentage_of_supply=float(winner.get("percentage", 0.0)),
                is_eligible=True,
                last_observed_at=start_time,
            ),
            winner_payout=int(data.get("winner_payout", 0)),
            creator_payout=int(data.get("creator_payout", 0)),
            settlement_reference=data.get("settlement_reference"),
            status=RoundStatus(data["status"]),
            end_time=datetime.fromisoformat(data["end_time"]) if data.get("end_time") else None,
            error=data.get("error"),
            payout_id=data.get("payout_id"),
            audit=data.get("audit"),
        )


class GameEngine:
    def __init__(
        self,
        settings: Settings,
        gateway: LedgerGateway,
        tracker: HolderTracker,
        pipeline: PayoutPipeline,
        events: Optional[EventBus] = None,
        store: Optional[NullStore] = None,
        scheduler: Optional[Scheduler] = None,
        monotonic: Callable[[], float] = time.monotonic,
        utcnow: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.tracker = tracker
        self.pipeline = pipeline
        self.events = events or EventBus()
        self.store = store or NullStore()
        self.scheduler = scheduler or Scheduler()
        self._monotonic = monotonic
        self._utcnow = utcnow

        self.state = GameState.WAITING
        self.current_round: Optional[Round] = None
        self.history: Deque[Round] = deque(maxlen=ROUND_HISTORY_LIMIT)
        self.pool = PoolState(
            current_amount=settings.pot_base_amount,
            growth_rate=settings.pot_growth_rate,
            base_amount=settings.pot_base_amount,
            max_growth_per_cycle=settings.pot_max_growth,
        )
        self.next_spin_at: Optional[datetime] = None
        # Authoritative for "is it time"; next_spin_at is for display only.
        self._spin_deadline = math.inf

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._restore()
        self.calculate_next_spin_time()
        await self.update_pot_balance()
        self._start_timers()
        log.info(
            "Game engine started: spins every %d minute(s), pot %d",
            self.settings.spin_interval_minutes, self.pool.current_amount,
        )

    def stop(self) -> None:
        self.scheduler.cancel(TICK_TIMER)
        self.scheduler.cancel(POT_TIMER)
        log.info("Game cycle stopped")

    @property
    def is_running(self) -> bool:
        return self.scheduler.is_running(TICK_TIMER)

    def _start_timers(self) -> None:
        self.scheduler.every(TICK_TIMER, TICK_INTERVAL_S, self.tick)
        self.scheduler.every(POT_TIMER, POT_UPDATE_INTERVAL_S, self.update_pot_balance)

    async def _restore(self) -> None:
        try:
            pot = await self.store.load_pool()
            records = await self.store.load_recent_rounds(ROUND_HISTORY_LIMIT)
        except Exception as e:
            log.warning("Failed to load game state from store: %s", e)
            return
        if pot is not None:
            self.pool.current_amount = pot
            log.info("Loaded pot balance from store: %d", pot)
        self.history.extend(Round.from_dict(r) for r in records)
        if records:
            log.info("Loaded %d recent rounds from store", len(records))
        # Restored failed rounds point at payout ids the pipeline must know to retry.
        await self.pipeline.restore()

    def calculate_next_spin_time(self) -> datetime:
        now = self._utcnow()
        self.next_spin_at = next_spin_time(now, self.settings.spin_interval_minutes)
        self._spin_deadline = self._monotonic() + (self.next_spin_at - now).total_seconds()
        log.info("Next spin scheduled for: %s", self.next_spin_at.isoformat())
        return self.next_spin_at

    def time_until_spin(self) -> float:
        return max(0.0, self._spin_deadline - self._monotonic())

    def _set_state(self, state: GameState) -> None:
        previous, self.state = self.state, state
        self.events.publish(
            ev.STATE_CHANGE,
            {
                "state": state.value,
                "previous_state": previous.value,
                "round_id": self.current_round.id if self.current_round else None,
                "pot_amount": self.pool.current_amount,
                "timestamp": self._utcnow(),
            },
        )

    # ------------------------------------------------------------------
    # Cadence
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        if self.state is GameState.WAITING and self._monotonic() >= self._spin_deadline:
            await self._run_round()

        if self.state is GameState.WAITING:
            self._emit_countdown()

    def _emit_countdown(self) -> None:
        self.events.publish(
            ev.COUNTDOWN,
            {
                "time_remaining_ms": int(self.time_until_spin() * 1000),
                "next_spin_time": self.next_spin_at,
                "game_state": self.state.value,
            },
        )

    async def _run_round(self) -> Optional[Round]:
        # Check-and-set with no await in between: only one caller wins the claim.
        if self.state is not GameState.WAITING:
            return None
        self._set_state(GameState.SPINNING)

        try:
            return await self._play_round()
        except Exception as e:
            log.exception("Round failed unexpectedly")
            game = self.current_round
            if game is not None and game.status not in (RoundStatus.COMPLETED, RoundStatus.FAILED):
                await self._fail_round(game, f"{type(e).__name__}: {e}")
            return game
        finally:
            self._set_state(GameState.WAITING)
            self.calculate_next_spin_time()
            self._emit_countdown()

    async def _play_round(self) -> Optional[Round]:
        log.info("Executing wheel spin...")
        game = Round(
            id=new_id("game"),
            start_time=self._utcnow(),
            pot_amount_at_start=self.pool.current_amount,
            eligible_holder_count_at_start=len(self.tracker.eligible_holders()),
        )
        self.current_round = game
        self.events.publish(
            ev.SPIN_START,
            {
                "game_id": game.id,
                "pot_amount": game.pot_amount_at_start,
                "eligible_holders": game.eligible_holder_count_at_start,
                "holder_distribution": self.tracker.distribution(),
            },
        )

        try:
            selection = await self.tracker.select_winner()
        except NoEligibleHolders:
            log.warning("No eligible holders found for spin; skipping cycle")
            self.current_round = None
            return None
        except JackpotError as e:
            await self._fail_round(game, f"Winner selection failed: {e}")
            return game

        game.winner = selection.holder
        game.audit = selection.draw.to_audit()
        game.status = RoundStatus.WINNER_SELECTED

        await asyncio.sleep(self.settings.spin_delay_seconds)
        self._set_state(GameState.WINNER_SELECTED)

        payout = await self._pay_winner(game, selection.holder)
        if payout.succeeded:
            await self._complete_round(game, payout)
        else:
            await self._fail_round(game, payout.error or "payout failed")
        return game

    async def _pay_winner(self, game: Round, winner: Holder) -> Payout:
        pot = game.pot_amount_at_start
        game.winner_payout = percent_of(pot, self.settings.winner_payout_percentage)
        game.creator_payout = percent_of(pot, self.settings.creator_payout_percentage)
        game.status = RoundStatus.PROCESSING_PAYOUT
        self._set_state(GameState.PROCESSING_PAYOUT)

        self.events.publish(
            ev.WINNER_SELECTED,
            {
                "game_id": game.id,
                "winner": {
                    "address": winner.address,
                    "balance": winner.balance,
                    "percentage": winner.percentage_of_supply,
                },
                "winner_payout": game.winner_payout,
                "creator_payout": game.creator_payout,
                "pot_amount": pot,
            },
        )

        payout = await self.pipeline.process_payout(
            winner.address, game.winner_payout, game.creator_payout
        )
        game.payout_id = payout.id
        return payout

    async def _complete_round(self, game: Round, payout: Payout) -> None:
        game.settlement_reference = payout.settlement_reference
        game.status = RoundStatus.COMPLETED
        game.end_time = self._utcnow()
        self._set_state(GameState.COMPLETED)
        await self._archive(game)

        self.events.publish(
            ev.PAYOUT_COMPLETED,
            {
                "game_id": game.id,
                "settlement_reference": game.settlement_reference,
                "winner": game.winner.address if game.winner else None,
                "winner_payout": game.winner_payout,
                "creator_payout": game.creator_payout,
                "simulated": payout.simulated,
            },
        )
        log.info(
            "Game %s completed successfully. Winner: %s",
            game.id, game.winner.address if game.winner else None,
        )
        await self.apply_pot_growth()

    async def _fail_round(self, game: Round, error: str) -> None:
        game.status = RoundStatus.FAILED
        game.error = error
        game.end_time = self._utcnow()
        log.error("Game %s failed: %s", game.id, error)
        await self._archive(game)
        self.events.publish(ev.PAYOUT_FAILED, {"game_id": game.id, "error": error})

    async def _archive(self, game: Round) -> None:
        if game not in self.history:
            self.history.appendleft(game)
        try:
            await self.store.save_round(game.to_dict())
        except Exception as e:
            log.warning("Failed to persist game %s: %s", game.id, e)

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    async def _funded_pot(self) -> Optional[Tuple[int, int]]:
        """(pot implied by the fee wallet, raw wallet balance), or None if unavailable."""
        wallet = self.settings.fee_collection_wallet
        if not wallet:
            return None
        try:
            balance = await self.gateway.get_token_balance(wallet, WSOL_MINT)
        except JackpotError as e:
            log.error("Failed to read pot funding wallet %s: %s", wallet, e)
            return None
        return int(Decimal(balance) * Decimal(str(self.settings.pot_funding_share))), balance

    async def apply_pot_growth(self) -> int:
        previous = self.pool.current_amount
        growth = self.pool.grow()

        funded = await self._funded_pot()
        if funded is not None:
            added = self.pool.raise_to(funded[0])
            if added:
                log.info("Added %d lamports from funding wallet to pot", added)

        log.info(
            "Applied pot growth: %d (%.1f%% of %d). New pot: %d",
            growth, self.pool.growth_rate * 100, previous, self.pool.current_amount,
        )
        self.events.publish(
            ev.POT_GROWTH,
            {
                "previous_pot": previous,
                "new_pot": self.pool.current_amount,
                "growth_amount": self.pool.current_amount - previous,
                "growth_percentage": ((self.pool.current_amount - previous) / previous) * 100 if previous else 0.0,
                "timestamp": self._utcnow(),
            },
        )
        await self._save_pool()
        return growth

    async def update_pot_balance(self) -> None:
        """Raise the pot to match the funding wallet; only between rounds."""
        if self.state is not GameState.WAITING:
            log.debug("Skipping pot update while %s", self.state.value)
            return
        funded = await self._funded_pot()
        if funded is None or self.state is not GameState.WAITING:
            return
        pot_from_wallet, wallet_balance = funded
        added = self.pool.raise_to(pot_from_wallet)
        self.events.publish(
            ev.POT_UPDATE,
            {
                "amount": self.pool.current_amount,
                "wallet_balance": wallet_balance,
                "pot_percentage": self.settings.pot_funding_share,
                "timestamp": self._utcnow(),
            },
        )
        if added:
            log.info("Updated pot balance: %d (+%d from funding wallet)", self.pool.current_amount, added)
            await self._save_pool()

    async def _save_pool(self) -> None:
        try:
            await self.store.save_pool(self.pool.current_amount)
        except Exception as e:
            log.warning("Failed to persist pot amount: %s", e)

    # ------------------------------------------------------------------
    # Admin controls
    # ------------------------------------------------------------------

    async def force_spin(self) -> Optional[Round]:
        if self.state is not GameState.WAITING:
            raise InvalidStateError("Cannot force spin while game is in progress")
        log.info("Forcing immediate spin...")
        return await self._run_round()

    def pause(self) -> None:
        if self.state is not GameState.WAITING:
            raise InvalidStateError(f"Cannot pause while {self.state.value}")
        self.stop()
        self._set_state(GameState.PAUSED)
        log.info("Game paused by admin")

    def resume(self) -> None:
        if self.state is not GameState.PAUSED:
            raise InvalidStateError(f"Cannot resume while {self.state.value}")
        self._set_state(GameState.WAITING)
        self.calculate_next_spin_time()
        self._start_timers()
        log.info("Game resumed by admin")

    async def retry_payout(self, payout_id: str) -> Payout:
        payout = await self.pipeline.retry_failed_payout(payout_id)
        game = next((g for g in self.history if g.payout_id == payout_id), None)
        if game is None:
            return payout
        game.end_time = self._utcnow()
        if not payout.succeeded:
            game.error = payout.error or "payout failed"
            log.error("Retry of payout %s for game %s failed: %s", payout_id, game.id, game.error)
            await self._archive(game)
            self.events.publish(
                ev.PAYOUT_FAILED, {"game_id": game.id, "error": game.error, "retried": True}
            )
        else:
            game.status = RoundStatus.COMPLETED
            game.settlement_reference = payout.settlement_reference
            game.error = None
            await self._archive(game)
            self.events.publish(
                ev.PAYOUT_COMPLETED,
                {
                    "game_id": game.id,
                    "settlement_reference": game.settlement_reference,
                    "winner": payout.winner_address,
                    "winner_payout": payout.winner_amount,
                    "creator_payout": payout.creator_amount,
                    "simulated": payout.simulated,
                    "retried": True,
                },
            )
        return payout

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_state(self) -> Dict[str, Any]:
        return {
            "game_state": self.state.value,
            "current_pot": self.pool.current_amount,
            "next_spin_time": self.next_spin_at,
            "time_remaining_ms": int(self.time_until_spin() * 1000),
            "current_game": self.current_round.to_dict() if self.current_round else None,
            "recent_games": [g.to_dict() for g in self.get_history(5)],
            "is_running": self.is_running,
            "spin_interval": self.settings.spin_interval_minutes,
        }

    def get_history(self, limit: int = 10) -> List[Round]:
        return list(self.history)[:limit]

    def get_stats(self) -> Dict[str, Any]:
        games = list(self.history)
        completed = [g for g in games if g.status is RoundStatus.COMPLETED]
        return {
            "total_games": len(games),
            "completed_games": len(completed),
            "failed_games": len(games) - len(completed),
            "total_payouts": sum(g.winner_payout for g in completed),
            "average_pot": sum(g.pot_amount_at_start for g in games) / len(games) if games else 0,
            "current_state": self.get_current_state(),
        }
