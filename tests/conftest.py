"""
Shared fixtures and test doubles.

FakeGateway stands in for LedgerGateway (same coroutine surface), FakeSigner
for DisbursementSigner, FakeRpcClient for a single RPC endpoint.
"""

import struct

import base58
import pytest

from holder_jackpot.config import Settings
from holder_jackpot.errors import NetworkError
from holder_jackpot.project_constants import WSOL_MINT


def pubkey(n: int) -> str:
    """Deterministic, valid base58 pubkey for tests."""
    return base58.b58encode(bytes([n]) * 32).decode("ascii")


def token_account_bytes(mint: str, owner: str, amount: int) -> bytes:
    data = base58.b58decode(mint) + base58.b58decode(owner) + struct.pack("<Q", amount)
    return data + bytes(165 - len(data))


def make_settings(**overrides) -> Settings:
    values = dict(
        rpc_urls=("http://primary",),
        token_mint="MintAddress",
        creator_wallet=pubkey(250),
        spin_interval_minutes=5,
        spin_delay_seconds=0.0,
        minimum_hold_percentage=0.1,
        winner_payout_percentage=60.0,
        creator_payout_percentage=40.0,
        pot_growth_rate=0.05,
        pot_base_amount=10_000_000,
        pot_max_growth=1_000_000,
        max_retry_attempts=3,
        retry_base_delay_seconds=0.0,
        rpc_backoff_seconds=0.0,
    )
    values.update(overrides)
    return Settings(**values)


class FakeGateway:
    def __init__(self, holders=None, total_supply=1_000_000, entropy="entropy-seed"):
        self.holders = dict(holders or {})
        self.total_supply = total_supply
        self.entropy = entropy
        self.token_balances = {}
        self.existing_accounts = set()
        self.submit_errors = []
        self.confirm_errors = []
        self.submitted = []
        self.blockhashes = []
        self.fail_scan = False
        self.fail_entropy = False
        self.fail_balance = False

    async def get_total_supply(self):
        if self.fail_scan:
            raise NetworkError("supply unavailable")
        return self.total_supply

    async def get_token_holders(self):
        if self.fail_scan:
            raise NetworkError("scan unavailable")
        return dict(self.holders)

    async def get_recent_entropy(self):
        if self.fail_entropy:
            raise NetworkError("entropy unavailable")
        return self.entropy

    async def get_latest_blockhash(self):
        blockhash = f"blockhash-{len(self.blockhashes) + 1}"
        self.blockhashes.append(blockhash)
        return blockhash

    async def get_token_balance(self, wallet, mint):
        if self.fail_balance:
            raise NetworkError("balance unavailable")
        return self.token_balances.get(wallet, 0)

    async def account_exists(self, address):
        return address in self.existing_accounts

    async def submit_transaction(self, raw_tx):
        self.submitted.append(raw_tx)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return f"sig-{len(self.submitted)}"

    async def confirm_transaction(self, signature):
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)


class FakeSigner:
    address = "HotWallet"
    mint = WSOL_MINT

    def __init__(self):
        self.built = []

    def receiving_account(self, owner):
        return f"ata:{owner}"

    def build(self, transfers, recent_blockhash):
        self.built.append((list(transfers), recent_blockhash))
        return recent_blockhash.encode("ascii")


class FakeRpcClient:
    def __init__(self, name, fail_times=0, alive=True):
        self.name = name
        self.fail_times = fail_times
        self.alive = alive
        self.calls = 0
        self.accounts = {}
        self.signature_status = None
        self.closed = False

    async def get_slot(self):
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise NetworkError(f"{self.name} unavailable")
        return 42

    async def get_version(self):
        if not self.alive:
            raise NetworkError(f"{self.name} is down")
        return "1.18.0"

    async def get_account_data(self, address):
        return self.accounts.get(address)

    async def get_token_accounts_by_owner_base64(self, owner, mint):
        return []

    async def get_signature_status(self, signature):
        return self.signature_status

    async def close(self):
        self.closed = True


@pytest.fixture
def gateway():
    return FakeGateway(
        holders={"HolderA": 700_000, "HolderB": 300_000, "HolderDust": 999},
        total_supply=100_000_000,
    )


@pytest.fixture
def signer():
    return FakeSigner()

