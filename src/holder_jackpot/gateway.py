"""
Ledger gateway: one call surface over a primary and N backup RPC endpoints.

Every read and write the engine makes against the chain goes through
``LedgerGateway.execute_with_retry`` so that a flaky endpoint is rotated out
and the call retried with exponential backoff before anything upstream sees
an error.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TypeVar

from .errors import ConfirmationError, NetworkError
from .project_constants import CONFIRM_POLL_INTERVAL_S, CONFIRM_TIMEOUT_S
from .rpc import RpcClient
from .token_accounts import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    associated_token_address,
    balance_of,
    decode_b64_accounts,
    sum_balances_by_owner,
)

T = TypeVar("T")

log = logging.getLogger(__name__)

# Malformed RPC payloads surface as one of these while parsing.
_RETRYABLE = (NetworkError, KeyError, TypeError, ValueError)


class LedgerGateway:
    def __init__(
        self,
        clients: Sequence[RpcClient],
        token_mint: str,
        max_retries: int = 3,
        backoff_s: float = 1.0,
    ) -> None:
        if not clients:
            raise ValueError("At least one RPC client must be specified")
        self.clients = list(clients)
        self.token_mint = token_mint
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.active_index = 0

        self._success_count = 0
        self._failure_count = 0
        self._failover_count = 0

    @property
    def active_client(self) -> RpcClient:
        return self.clients[self.active_index]

    async def close(self) -> None:
        for client in self.clients:
            await client.close()

    async def execute_with_retry(
        self,
        operation: Callable[[RpcClient], Awaitable[T]],
        name: str,
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run ``operation`` against the active endpoint, failing over and
        backing off between attempts. Raises NetworkError with the last
        failure chained once ``max_retries`` attempts are used up.
        """
        retries = max_retries or self.max_retries
        last_error: Optional[BaseException] = None

        for attempt in range(1, retries + 1):
            try:
                result = await operation(self.active_client)
            except _RETRYABLE as e:
                last_error = e
                self._failure_count += 1
                log.warning(
                    "[%s] attempt %d/%d failed on endpoint #%d: %s",
                    name, attempt, retries, self.active_index, e,
                )
                if attempt < retries:
                    if len(self.clients) > 1:
                        await self.switch_to_backup()
                    await asyncio.sleep(self.backoff_s * 2 ** attempt)
                continue
            self._success_count += 1
            return result

        log.error("[%s] failed after %d attempts: %s", name, retries, last_error)
        if isinstance(last_error, NetworkError):
            raise last_error
        raise NetworkError(f"{name} failed after {retries} attempts: {last_error}") from last_error

    async def switch_to_backup(self) -> bool:
        """Advance to the next endpoint and report whether it answers."""
        if len(self.clients) <= 1:
            log.warning("No backup RPC endpoints available")
            return False

        self.active_index = (self.active_index + 1) % len(self.clients)
        self._failover_count += 1
        log.warning("Switched to RPC endpoint #%d", self.active_index)

        try:
            version = await self.active_client.get_version()
        except NetworkError as e:
            log.error("RPC endpoint #%d failed liveness check: %s", self.active_index, e)
            return False
        log.info("RPC endpoint #%d alive (solana-core %s)", self.active_index, version)
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            "endpoints": len(self.clients),
            "active_endpoint": self.active_index,
            "success_count": self._success_count,
            "failure_count": self._failure_count,
            "failover_count": self._failover_count,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_slot(self) -> int:
        return await self.execute_with_retry(lambda c: c.get_slot(), "get_slot")

    async def get_total_supply(self) -> int:
        return await self.execute_with_retry(
            lambda c: c.get_token_supply(self.token_mint), "get_total_supply"
        )

    async def get_token_holders(self) -> Dict[str, int]:
        """Owner wallet -> summed raw balance across classic and Token-2022 accounts."""
        classic_b64 = await self.execute_with_retry(
            lambda c: c.get_program_accounts_base64(
                program_id=TOKEN_PROGRAM_ID,
                mint=self.token_mint,
                classic_token_program=True,
            ),
            "scan_token_program",
        )
        t22_b64 = await self.execute_with_retry(
            lambda c: c.get_program_accounts_base64(
                program_id=TOKEN_2022_PROGRAM_ID,
                mint=self.token_mint,
                classic_token_program=False,
            ),
            "scan_token_2022_program",
        )
        log.debug("Accounts fetched: %d classic, %d token-2022", len(classic_b64), len(t22_b64))
        return sum_balances_by_owner(decode_b64_accounts(classic_b64 + t22_b64))

    async def get_latest_blockhash(self) -> str:
        blockhash, _height = await self.execute_with_retry(
            lambda c: c.get_latest_blockhash(), "get_latest_blockhash"
        )
        return blockhash

    async def get_recent_entropy(self) -> str:
        """A value nobody could know before the draw: the latest blockhash."""
        return await self.get_latest_blockhash()

    async def account_exists(self, address: str) -> bool:
        data = await self.execute_with_retry(
            lambda c: c.get_account_data(address), "account_exists"
        )
        return data is not None

    async def get_token_balance(self, wallet: str, mint: str) -> int:
        """Raw token balance of wallet for mint; associated account first, then any owned account."""
        ata = associated_token_address(wallet, mint)
        data = await self.execute_with_retry(
            lambda c: c.get_account_data(ata), "get_token_balance"
        )
        if data is not None:
            return balance_of(data)

        accounts = await self.execute_with_retry(
            lambda c: c.get_token_accounts_by_owner_base64(wallet, mint),
            "get_token_accounts_by_owner",
        )
        if accounts:
            balance = sum(a.amount for a in decode_b64_accounts(accounts) if a.owner == wallet)
            log.info("Found token balance for %s via owner scan: %d", wallet, balance)
            return balance

        log.warning("No token accounts found for wallet %s and mint %s", wallet, mint)
        return 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit_transaction(self, raw_tx: bytes) -> str:
        return await self.execute_with_retry(
            lambda c: c.send_transaction(raw_tx), "submit_transaction"
        )

    async def confirm_transaction(
        self,
        signature: str,
        timeout_s: float = CONFIRM_TIMEOUT_S,
        poll_interval_s: float = CONFIRM_POLL_INTERVAL_S,
    ) -> None:
        """Wait until signature is confirmed; raise ConfirmationError otherwise."""
        deadline = time.monotonic() + timeout_s
        while True:
            status = await self.execute_with_retry(
                lambda c: c.get_signature_status(signature), "confirm_transaction"
            )
            if status is not None:
                if status.get("err"):
                    raise ConfirmationError(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if time.monotonic() >= deadline:
                raise ConfirmationError(
                    f"Transaction {signature} not confirmed within {timeout_s:.0f}s"
                )
            await asyncio.sleep(poll_interval_s)
