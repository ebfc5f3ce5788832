from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Sequence

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from .errors import ConfigurationError
from .project_constants import WSOL_MINT
from .token_accounts import associated_token_address

WSOL_DECIMALS = 9


@dataclass(frozen=True)
class Transfer:
    recipient: str
    amount: int
    create_account: bool = False


class DisbursementSigner:
    """Builds and signs token transfers from the hot wallet."""

    def __init__(self, keypair: Keypair, mint: str = WSOL_MINT, decimals: int = WSOL_DECIMALS) -> None:
        self.keypair = keypair
        self.mint = mint
        self.decimals = decimals

    @classmethod
    def from_secret(cls, secret: str, mint: str = WSOL_MINT) -> "DisbursementSigner":
        """Accepts a JSON byte array (solana-keygen format) or a base58 secret."""
        secret = secret.strip()
        try:
            raw = bytes(json.loads(secret)) if secret.startswith("[") else base58.b58decode(secret)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Hot wallet key could not be parsed: {e}") from e
        if len(raw) != 64:
            raise ConfigurationError(f"Hot wallet key must be 64 bytes, got {len(raw)}")
        try:
            keypair = Keypair.from_bytes(raw)
        except ValueError as e:
            raise ConfigurationError(f"Hot wallet key is not a valid keypair: {e}") from e
        return cls(keypair, mint)

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    def receiving_account(self, owner: str) -> str:
        return associated_token_address(owner, self.mint)

    def build(self, transfers: Sequence[Transfer], recent_blockhash: str) -> bytes:
        """Signed, serialized transaction carrying every transfer."""
        payer = self.keypair.pubkey()
        mint = Pubkey.from_string(self.mint)
        source = Pubkey.from_string(self.receiving_account(self.address))

        instructions = []
        for transfer in transfers:
            owner = Pubkey.from_string(transfer.recipient)
            dest = Pubkey.from_string(self.receiving_account(transfer.recipient))
            if transfer.create_account:
                instructions.append(create_associated_token_account(payer=payer, owner=owner, mint=mint))
            instructions.append(
                transfer_checked(
                    TransferCheckedParams(
                        program_id=TOKEN_PROGRAM_ID,
                        source=source,
                        mint=mint,
                        dest=dest,
                        owner=payer,
                        amount=transfer.amount,
                        decimals=self.decimals,
                    )
                )
            )

        blockhash = Hash.from_string(recent_blockhash)
        message = Message.new_with_blockhash(instructions, payer, blockhash)
        return bytes(Transaction([self.keypair], message, blockhash))
