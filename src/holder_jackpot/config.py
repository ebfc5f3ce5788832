from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from .errors import ConfigurationError


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    rpc_urls: Tuple[str, ...]
    token_mint: str
    fee_collection_wallet: Optional[str] = None
    creator_wallet: Optional[str] = None
    hot_wallet_secret: Optional[str] = field(default=None, repr=False)

    spin_interval_minutes: int = 5
    spin_delay_seconds: float = 4.0
    minimum_hold_percentage: float = 0.1
    winner_payout_percentage: float = 50.0
    creator_payout_percentage: float = 50.0

    pot_growth_rate: float = 0.05
    pot_base_amount: int = 10_000_000
    pot_max_growth: int = 1_000_000_000
    pot_funding_share: float = 0.7

    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 5.0

    rpc_max_retries: int = 3
    rpc_backoff_seconds: float = 1.0
    rpc_timeout_seconds: float = 60.0

    excluded_wallets_file: Optional[str] = None
    state_dir: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not self.rpc_urls:
            raise ConfigurationError("At least one RPC URL must be configured")
        if not self.token_mint:
            raise ConfigurationError("TOKEN_MINT_ADDRESS is required")
        if self.spin_interval_minutes <= 0:
            raise ConfigurationError("SPIN_INTERVAL_MINUTES must be positive")
        if not 0 <= self.minimum_hold_percentage <= 100:
            raise ConfigurationError("MINIMUM_HOLD_PERCENTAGE must be within 0..100")
        for name in ("winner_payout_percentage", "creator_payout_percentage"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        total = self.winner_payout_percentage + self.creator_payout_percentage
        if abs(total - 100.0) > 1e-9:
            raise ConfigurationError(
                f"Winner and creator payout percentages must sum to 100, got {total}"
            )
        if not 0 <= self.pot_growth_rate <= 1:
            raise ConfigurationError("POT_GROWTH_RATE must be within 0..1")
        if not 0 <= self.pot_funding_share <= 1:
            raise ConfigurationError("POT_FUNDING_SHARE must be within 0..1")
        if self.pot_base_amount < 0 or self.pot_max_growth < 0:
            raise ConfigurationError("Pot amounts must not be negative")
        if self.max_retry_attempts < 1 or self.rpc_max_retries < 1:
            raise ConfigurationError("Retry attempt counts must be at least 1")
        if self.retry_base_delay_seconds < 0 or self.rpc_backoff_seconds < 0:
            raise ConfigurationError("Retry delays must not be negative")
        # Both wallets get token accounts derived from them, which needs a real pubkey.
        for env_name, wallet in (
            ("FEE_COLLECTION_WALLET", self.fee_collection_wallet),
            ("CREATOR_WALLET", self.creator_wallet),
        ):
            if wallet is None:
                continue
            try:
                Pubkey.from_string(wallet)
            except ValueError:
                raise ConfigurationError(f"{env_name} is not a valid address: {wallet!r}")

    @property
    def spin_interval_seconds(self) -> float:
        return self.spin_interval_minutes * 60.0

    @staticmethod
    def from_env(rpc_url_override: str | None = None) -> "Settings":
        load_dotenv()

        # --rpc-url wins; otherwise SOLANA_RPC_URL / RPC_URL, else a Helius URL from the key.
        primary = rpc_url_override or _env_str("SOLANA_RPC_URL") or _env_str("RPC_URL")
        if not primary:
            helius_key = _env_str("HELIUS_API_KEY")
            if not helius_key:
                raise ConfigurationError(
                    "Missing SOLANA_RPC_URL (or RPC_URL / HELIUS_API_KEY). "
                    "Put it in .env or export it."
                )
            primary = f"https://mainnet.helius-rpc.com/?api-key={helius_key}"

        backups = [
            url
            for url in (_env_str("SOLANA_RPC_BACKUP_1"), _env_str("SOLANA_RPC_BACKUP_2"))
            if url
        ]

        token_mint = _env_str("TOKEN_MINT_ADDRESS")
        if not token_mint:
            raise ConfigurationError("Missing TOKEN_MINT_ADDRESS. Put it in .env or export it.")

        return Settings(
            rpc_urls=(primary, *backups),
            token_mint=token_mint,
            fee_collection_wallet=_env_str("FEE_COLLECTION_WALLET"),
            creator_wallet=_env_str("CREATOR_WALLET"),
            hot_wallet_secret=_env_str("HOT_WALLET_PRIVATE_KEY"),
            spin_interval_minutes=_env_int("SPIN_INTERVAL_MINUTES", 5),
            spin_delay_seconds=_env_float("SPIN_DELAY_SECONDS", 4.0),
            minimum_hold_percentage=_env_float("MINIMUM_HOLD_PERCENTAGE", 0.1),
            winner_payout_percentage=_env_float("WINNER_PAYOUT_PERCENTAGE", 50.0),
            creator_payout_percentage=_env_float("CREATOR_PAYOUT_PERCENTAGE", 50.0),
            pot_growth_rate=_env_float("POT_GROWTH_RATE", 0.05),
            pot_base_amount=_env_int("POT_BASE_AMOUNT", 10_000_000),
            pot_max_growth=_env_int("POT_MAX_GROWTH", 1_000_000_000),
            pot_funding_share=_env_float("POT_FUNDING_SHARE", 0.7),
            max_retry_attempts=_env_int("MAX_RETRY_ATTEMPTS", 3),
            retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 5.0),
            rpc_max_retries=_env_int("RPC_MAX_RETRIES", 3),
            rpc_backoff_seconds=_env_float("RPC_BACKOFF_SECONDS", 1.0),
            rpc_timeout_seconds=_env_float("RPC_TIMEOUT_SECONDS", 60.0),
            excluded_wallets_file=_env_str("EXCLUDED_WALLETS_FILE"),
            state_dir=_env_str("STATE_DIR"),
        )
