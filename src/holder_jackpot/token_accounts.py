"""
SPL token account decoding and holder filtering.

Only the fixed prefix of the account layout is read:

    mint (0..32) | owner (32..64) | amount (64..72, u64 LE)

Classic token accounts are exactly 165 bytes; Token-2022 accounts append
extensions after the same prefix, so one decoder serves both programs.
"""

from __future__ import annotations

import base64
import binascii
import struct
from collections import Counter
from typing import AbstractSet, Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

import base58
from solders.pubkey import Pubkey

from .project_constants import NON_PARTICIPANT_ADDRESSES, NON_PARTICIPANT_PREFIX

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWTe1oAUrpVtprj8"

_PREFIX = struct.Struct("<32s32sQ")


class TokenAccount(NamedTuple):
    mint: str
    owner: str
    amount: int


def decode_token_account(data: Optional[bytes]) -> Optional[TokenAccount]:
    if not data or len(data) < _PREFIX.size:
        return None
    mint, owner, amount = _PREFIX.unpack_from(data)
    return TokenAccount(
        base58.b58encode(mint).decode("ascii"),
        base58.b58encode(owner).decode("ascii"),
        amount,
    )


def decode_b64_accounts(b64_items: Iterable[str]) -> Iterator[TokenAccount]:
    """Decode base64 account payloads, skipping anything that is not a token account."""
    for item in b64_items:
        try:
            raw = base64.b64decode(item, validate=True)
        except (binascii.Error, ValueError):
            continue
        account = decode_token_account(raw)
        if account is not None:
            yield account


def balance_of(data: Optional[bytes]) -> int:
    account = decode_token_account(data)
    return account.amount if account else 0


def sum_balances_by_owner(accounts: Iterable[TokenAccount]) -> Dict[str, int]:
    """Owner wallet -> total raw balance over all of its non-empty accounts."""
    totals: Counter = Counter()
    for account in accounts:
        if account.amount > 0:
            totals[account.owner] += account.amount
    return dict(totals)


def is_non_participant(address: str, excluded: AbstractSet[str] = frozenset()) -> bool:
    if address in NON_PARTICIPANT_ADDRESSES or address in excluded:
        return True
    return address.startswith(NON_PARTICIPANT_PREFIX)


def filter_participants(
    owner_to_balance: Dict[str, int],
    excluded: AbstractSet[str] = frozenset(),
) -> List[Tuple[str, int]]:
    """Holders that take part in draws, ordered by address so draws are reproducible."""
    return sorted(
        (address, int(balance))
        for address, balance in owner_to_balance.items()
        if balance > 0 and not is_non_participant(address, excluded)
    )


def load_excluded_wallets(path: Optional[str]) -> Set[str]:
    """One address per line; blank lines and ``#`` comments (whole-line or trailing) are ignored."""
    if not path:
        return set()
    with open(path, "r", encoding="utf-8") as f:
        entries = (line.split("#", 1)[0].strip() for line in f)
        return {entry for entry in entries if entry}


def associated_token_address(owner: str, mint: str, token_program_id: str = TOKEN_PROGRAM_ID) -> str:
    address, _bump = Pubkey.find_program_address(
        [
            bytes(Pubkey.from_string(owner)),
            bytes(Pubkey.from_string(token_program_id)),
            bytes(Pubkey.from_string(mint)),
        ],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    return str(address)
