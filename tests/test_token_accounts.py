import base64

from holder_jackpot.project_constants import NON_PARTICIPANT_PREFIX, WSOL_MINT
from holder_jackpot.token_accounts import (
    TokenAccount,
    associated_token_address,
    balance_of,
    decode_b64_accounts,
    decode_token_account,
    filter_participants,
    is_non_participant,
    load_excluded_wallets,
    sum_balances_by_owner,
)

from conftest import pubkey, token_account_bytes


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestDecoding:
    def test_prefix_fields_read_from_fixed_offsets(self):
        owner = pubkey(3)
        data = token_account_bytes(WSOL_MINT, owner, 123_456)

        assert decode_token_account(data) == TokenAccount(WSOL_MINT, owner, 123_456)
        assert balance_of(data) == 123_456

    def test_token_2022_extensions_are_ignored(self):
        owner = pubkey(3)
        data = token_account_bytes(WSOL_MINT, owner, 5) + b"\x02" * 40

        assert decode_token_account(data).amount == 5

    def test_short_or_missing_data_has_no_account(self):
        assert decode_token_account(b"\x00" * 10) is None
        assert balance_of(None) == 0

    def test_balances_summed_per_owner_skipping_junk(self):
        a, b = pubkey(1), pubkey(2)
        items = [
            b64(token_account_bytes(WSOL_MINT, a, 100)),
            b64(token_account_bytes(WSOL_MINT, a, 50)),
            b64(token_account_bytes(WSOL_MINT, b, 0)),
            "not base64!!",
            b64(b"\x01\x02"),
        ]

        assert sum_balances_by_owner(decode_b64_accounts(items)) == {a: 150}


class TestParticipants:
    def test_burn_and_prefixed_addresses_are_not_participants(self):
        assert is_non_participant("1nc1nerator11111111111111111111111111111111")
        assert is_non_participant(NON_PARTICIPANT_PREFIX + "2")
        assert is_non_participant("Wallet", excluded={"Wallet"})
        assert not is_non_participant(pubkey(9))

    def test_filter_drops_zero_and_excluded_and_sorts_by_address(self):
        result = filter_participants(
            {"Zed": 5, "Amy": 10, "Bob": 0, "Eve": 7},
            excluded={"Eve"},
        )
        assert result == [("Amy", 10), ("Zed", 5)]

    def test_exclusion_file_ignores_comments_and_blank_lines(self, tmp_path):
        path = tmp_path / "excluded.txt"
        path.write_text("# treasury\nWalletOne\n\n  WalletTwo  # team\n", encoding="utf-8")

        assert load_excluded_wallets(str(path)) == {"WalletOne", "WalletTwo"}
        assert load_excluded_wallets(None) == set()


def test_associated_token_address_is_stable_per_owner_and_mint():
    owner = pubkey(4)
    first = associated_token_address(owner, WSOL_MINT)

    assert first == associated_token_address(owner, WSOL_MINT)
    assert first != associated_token_address(pubkey(5), WSOL_MINT)
