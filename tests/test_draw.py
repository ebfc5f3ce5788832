import hashlib
from collections import Counter

import pytest

from holder_jackpot.draw import build_ranges, compute_ticket, draw, entropy_to_int, find_winner
from holder_jackpot.errors import AuditMismatch
from holder_jackpot.verify import verify_draw


class TestRanges:
    def test_ranges_are_contiguous_in_input_order(self):
        ranges, total = build_ranges([("A", 700), ("B", 300)])

        assert total == 1000
        assert [(r.address, r.start_ticket, r.end_ticket) for r in ranges] == [
            ("A", 0, 700),
            ("B", 700, 1000),
        ]

    @pytest.mark.parametrize(
        "ticket, expected",
        [(0, "A"), (650, "A"), (700, "A"), (701, "B"), (999, "B")],
    )
    def test_first_holder_bringing_ticket_to_zero_wins(self, ticket, expected):
        ranges, _ = build_ranges([("A", 700), ("B", 300)])
        assert find_winner(ranges, ticket).address == expected

    def test_ticket_past_every_range_falls_back_to_first_holder(self):
        ranges, _ = build_ranges([("A", 700), ("B", 300)])
        assert find_winner(ranges, 5000).address == "A"

    def test_empty_ranges_rejected(self):
        with pytest.raises(ValueError):
            find_winner([], 0)


class TestDraw:
    def test_entropy_is_sha256_big_endian(self):
        value, hex_digest = entropy_to_int("blockhash")
        expected = hashlib.sha256(b"blockhash").hexdigest()

        assert hex_digest == expected
        assert value == int(expected, 16)

    def test_ticket_is_hash_mod_total(self):
        ticket, _, seed_int = compute_ticket("seed", 1000)
        assert ticket == seed_int % 1000

    def test_same_entrants_and_seed_give_same_winner(self):
        eligible = [("A", 10), ("B", 20), ("C", 30)]
        first = draw(eligible, "5Xq9blockhash")
        second = draw(list(eligible), "5Xq9blockhash")

        assert first.winner == second.winner
        assert first.ticket == second.ticket

    def test_no_tickets_rejected(self):
        with pytest.raises(ValueError):
            draw([], "seed")

    def test_win_frequency_tracks_balance_share(self):
        eligible = [("A", 500), ("B", 300), ("C", 200)]
        wins = Counter(draw(eligible, f"seed-{i}").winner.address for i in range(20000))

        assert wins["A"] / 20000 == pytest.approx(0.5, abs=0.02)
        assert wins["B"] / 20000 == pytest.approx(0.3, abs=0.02)
        assert wins["C"] / 20000 == pytest.approx(0.2, abs=0.02)


class TestVerifyDraw:
    def test_recorded_draw_verifies(self):
        result = draw([("A", 700), ("B", 300)], "seed-xyz")
        verified = verify_draw(result.to_audit())

        assert verified["ok"] is True
        assert verified["winner"] == result.winner.address
        assert verified["winning_ticket"] == result.ticket

    def test_tampered_winner_detected(self):
        audit = draw([("A", 700), ("B", 300)], "seed-xyz").to_audit()
        other = "B" if audit["winner"]["address"] == "A" else "A"
        audit["winner"]["address"] = other

        with pytest.raises(AuditMismatch, match="Winner mismatch"):
            verify_draw(audit)

    def test_tampered_entrants_detected(self):
        audit = draw([("A", 700), ("B", 300)], "seed-xyz").to_audit()
        audit["all_entrants"][0]["balance"] = 701

        with pytest.raises(AuditMismatch, match="Total tickets mismatch"):
            verify_draw(audit)
