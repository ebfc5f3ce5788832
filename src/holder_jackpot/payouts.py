"""
Payout pipeline: turns (winner, amounts) into a confirmed settlement or a
definitive failure.

Every call returns a terminal ``Payout``; chain failures are recorded on the
payout (``error`` / ``error_type``) rather than raised. A payout sits in
``pending`` while it is being worked on and moves to the bounded history
exactly once when it reaches a terminal status.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .errors import (
    ConfigurationError,
    ConfirmationError,
    InsufficientFunds,
    NetworkError,
    PayoutNotFound,
)
from .gateway import LedgerGateway
from .ids import new_id
from .project_constants import LAMPORTS_PER_SOL, PAYOUT_HISTORY_LIMIT
from .signing import DisbursementSigner, Transfer
from .store import NullStore

log = logging.getLogger(__name__)


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SIMULATED = "simulated"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Payout:
    id: str
    winner_address: str
    winner_amount: int
    creator_amount: int
    status: PayoutStatus = PayoutStatus.PENDING
    attempts: int = 0
    settlement_reference: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def total_amount(self) -> int:
        return self.winner_amount + self.creator_amount

    @property
    def succeeded(self) -> bool:
        return self.status in (PayoutStatus.COMPLETED, PayoutStatus.SIMULATED)

    @property
    def simulated(self) -> bool:
        return self.status is PayoutStatus.SIMULATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "winner_address": self.winner_address,
            "winner_amount": self.winner_amount,
            "creator_amount": self.creator_amount,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "attempts": self.attempts,
            "settlement_reference": self.settlement_reference,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "error": self.error,
            "error_type": self.error_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Payout":
        return cls(
            id=data["id"],
            winner_address=data["winner_address"],
            winner_amount=int(data["winner_amount"]),
            creator_amount=int(data["creator_amount"]),
            status=PayoutStatus(data["status"]),
            attempts=int(data.get("attempts", 0)),
            settlement_reference=data.get("settlement_reference"),
            created_at=_parse_time(data.get("created_at")) or _now(),
            completed_at=_parse_time(data.get("completed_at")),
            failed_at=_parse_time(data.get("failed_at")),
            error=data.get("error"),
            error_type=data.get("error_type"),
        )


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class PayoutPipeline:
    def __init__(
        self,
        gateway: LedgerGateway,
        signer: Optional[DisbursementSigner],
        creator_wallet: Optional[str],
        max_retry_attempts: int = 3,
        retry_base_delay_s: float = 5.0,
        history_limit: int = PAYOUT_HISTORY_LIMIT,
        store: Optional[NullStore] = None,
    ) -> None:
        self.gateway = gateway
        self.signer = signer
        self.creator_wallet = creator_wallet
        self.max_retry_attempts = max_retry_attempts
        self.retry_base_delay_s = retry_base_delay_s
        self.store = store or NullStore()

        self.pending: Dict[str, Payout] = {}
        self.history: Deque[Payout] = deque(maxlen=history_limit)
        self._locks: Dict[str, asyncio.Lock] = {}

        if signer is None:
            log.info("No hot wallet configured - payouts run in simulated mode")

    @property
    def simulated_mode(self) -> bool:
        return self.signer is None

    async def restore(self) -> int:
        """Refill history from the store so failed payouts stay retryable across restarts."""
        known = {p.id for p in self.history}
        try:
            records = await self.store.load_recent_payouts(self.history.maxlen or PAYOUT_HISTORY_LIMIT)
            restored = [Payout.from_dict(r) for r in records if r["id"] not in known]
        except Exception as e:
            log.warning("Failed to load payout history from store: %s", e)
            return 0
        # Records arrive newest first; extend keeps them behind anything already live.
        self.history.extend(restored)
        if restored:
            log.info("Loaded %d recent payouts from store", len(restored))
        return len(restored)

    async def process_payout(
        self, winner_address: str, winner_amount: int, creator_amount: int
    ) -> Payout:
        payout = Payout(
            id=new_id("payout"),
            winner_address=winner_address,
            winner_amount=winner_amount,
            creator_amount=creator_amount,
        )

        if self.signer is None:
            payout.status = PayoutStatus.SIMULATED
            payout.settlement_reference = f"simulated_{payout.id}"
            payout.completed_at = _now()
            log.info(
                "Payout %s simulated (read-only mode): winner %s would get %d, creator would get %d",
                payout.id, winner_address, winner_amount, creator_amount,
            )
            await self._archive(payout)
            return payout

        log.info(
            "Processing payout %s: winner %s gets %d, creator gets %d",
            payout.id, winner_address, winner_amount, creator_amount,
        )
        return await self._execute(payout)

    async def retry_failed_payout(self, payout_id: str) -> Payout:
        payout = next(
            (p for p in self.history if p.id == payout_id and p.status is PayoutStatus.FAILED),
            None,
        )
        if payout is None:
            raise PayoutNotFound(f"Failed payout {payout_id} not found")

        log.info("Retrying failed payout %s", payout_id)
        self.history.remove(payout)
        payout.status = PayoutStatus.PENDING
        payout.attempts = 0
        payout.error = None
        payout.error_type = None
        payout.failed_at = None
        return await self._execute(payout)

    async def _execute(self, payout: Payout) -> Payout:
        signer = self.signer
        lock = self._locks.setdefault(payout.id, asyncio.Lock())
        async with lock:
            self.pending[payout.id] = payout
            try:
                if signer is None:
                    raise ConfigurationError("Hot wallet not configured")
                await self._check_balance(signer, payout.total_amount)
                transfers = await self._build_transfers(signer, payout)
                signature = await self._send_with_retry(signer, payout, transfers)
            except Exception as e:
                payout.status = PayoutStatus.FAILED
                payout.error = str(e)
                payout.error_type = type(e).__name__
                payout.failed_at = _now()
                log.error("Payout %s failed after %d attempt(s): %s", payout.id, payout.attempts, e)
            else:
                payout.status = PayoutStatus.COMPLETED
                payout.settlement_reference = signature
                payout.completed_at = _now()
                log.info("Payout %s completed successfully. Transaction: %s", payout.id, signature)
            finally:
                del self.pending[payout.id]
        self._locks.pop(payout.id, None)
        await self._archive(payout)
        return payout

    async def _check_balance(self, signer: DisbursementSigner, required: int) -> None:
        available = await self.gateway.get_token_balance(signer.address, signer.mint)
        if available < required:
            raise InsufficientFunds(required, available)

    async def _build_transfers(self, signer: DisbursementSigner, payout: Payout) -> List[Transfer]:
        legs = []
        if payout.winner_amount > 0:
            legs.append((payout.winner_address, payout.winner_amount))
        if payout.creator_amount > 0:
            if not self.creator_wallet:
                raise ConfigurationError("Creator wallet not configured")
            legs.append((self.creator_wallet, payout.creator_amount))

        transfers = []
        for recipient, amount in legs:
            exists = await self.gateway.account_exists(signer.receiving_account(recipient))
            transfers.append(Transfer(recipient, amount, create_account=not exists))
        return transfers

    async def _send_with_retry(
        self, signer: DisbursementSigner, payout: Payout, transfers: List[Transfer]
    ) -> str:
        for attempt in range(1, self.max_retry_attempts + 1):
            payout.attempts = attempt
            log.info(
                "Sending payout transaction %s, attempt %d/%d",
                payout.id, attempt, self.max_retry_attempts,
            )
            try:
                # Stale blockhashes are rejected, so every attempt signs against a fresh one.
                blockhash = await self.gateway.get_latest_blockhash()
                raw_tx = signer.build(transfers, blockhash)
                signature = await self.gateway.submit_transaction(raw_tx)
                await self.gateway.confirm_transaction(signature)
                return signature
            except (NetworkError, ConfirmationError) as e:
                log.warning("Payout transaction %s attempt %d failed: %s", payout.id, attempt, e)
                if attempt == self.max_retry_attempts:
                    raise
                await asyncio.sleep(self.retry_base_delay_s * 2 ** (attempt - 1))
        raise ConfigurationError(f"max_retry_attempts must be at least 1, got {self.max_retry_attempts}")

    async def _archive(self, payout: Payout) -> None:
        self.history.appendleft(payout)
        try:
            await self.store.save_payout(payout.to_dict())
        except Exception as e:
            log.warning("Failed to persist payout %s: %s", payout.id, e)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_history(self, limit: int = 20) -> List[Payout]:
        return list(self.history)[:limit]

    def get_pending(self) -> List[Payout]:
        return list(self.pending.values())

    def get_payout(self, payout_id: str) -> Optional[Payout]:
        if payout_id in self.pending:
            return self.pending[payout_id]
        return next((p for p in self.history if p.id == payout_id), None)

    def stats(self) -> Dict[str, Any]:
        completed = [p for p in self.history if p.status is PayoutStatus.COMPLETED]
        failed = [p for p in self.history if p.status is PayoutStatus.FAILED]
        total_paid_out = sum(p.total_amount for p in completed)
        return {
            "total_payouts": len(self.history),
            "completed_payouts": len(completed),
            "failed_payouts": len(failed),
            "pending_payouts": len(self.pending),
            "total_paid_out": total_paid_out,
            "total_winner_payouts": sum(p.winner_amount for p in completed),
            "total_creator_payouts": sum(p.creator_amount for p in completed),
            "average_payout_amount": total_paid_out / len(completed) if completed else 0,
            "success_rate": (len(completed) / len(self.history)) * 100 if self.history else 0,
            "simulated_mode": self.simulated_mode,
        }

    async def validate_disbursing_balance(self, minimum: int = LAMPORTS_PER_SOL // 10) -> Dict[str, Any]:
        if self.signer is None:
            return {"valid": False, "error": "Hot wallet not configured"}
        try:
            balance = await self.gateway.get_token_balance(self.signer.address, self.signer.mint)
        except NetworkError as e:
            log.error("Failed to validate hot wallet balance: %s", e)
            return {"valid": False, "error": str(e)}
        return {
            "valid": balance >= minimum,
            "balance": balance,
            "minimum_balance": minimum,
            "balance_sol": balance / LAMPORTS_PER_SOL,
            "address": self.signer.address,
        }
