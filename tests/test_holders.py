import pytest

from holder_jackpot.errors import NetworkError, NoEligibleHolders
from holder_jackpot.events import ELIGIBILITY_CHANGE, HOLDER_UPDATE, EventBus
from holder_jackpot.holders import (
    HolderSnapshot,
    HolderTracker,
    minimum_hold_amount,
    rescan_interval_for,
    short_address,
)
from holder_jackpot.scheduler import Scheduler
from holder_jackpot.store import NullStore

from conftest import FakeGateway


class FailingStore(NullStore):
    async def upsert_holders(self, rows):
        raise OSError("disk full")


def make_tracker(gateway, **kwargs):
    kwargs.setdefault("minimum_hold_percentage", 0.1)
    return HolderTracker(gateway, **kwargs)


class TestThreshold:
    def test_minimum_hold_is_floored_percentage_of_supply(self):
        assert minimum_hold_amount(1_000_000, 0.1) == 1000
        assert minimum_hold_amount(999_999, 0.1) == 999
        assert minimum_hold_amount(0, 0.1) == 0

    def test_doubling_supply_doubles_threshold(self):
        assert minimum_hold_amount(2_000_000, 0.1) == 2 * minimum_hold_amount(1_000_000, 0.1)

    def test_balance_at_threshold_is_eligible_and_below_is_not(self):
        snapshot = HolderSnapshot.build([("Below", 999), ("Exact", 1000)], 1_000_000, 0.1)

        assert snapshot.minimum_hold_amount == 1000
        assert [h.address for h in snapshot.eligible] == ["Exact"]
        assert snapshot.by_address["Below"].is_eligible is False

    def test_percentage_of_supply(self):
        snapshot = HolderSnapshot.build([("A", 250_000)], 1_000_000, 0.1)
        assert snapshot.by_address["A"].percentage_of_supply == pytest.approx(25.0)


@pytest.mark.parametrize(
    "count, interval",
    [(0, 5.0), (49, 5.0), (50, 15.0), (199, 15.0), (200, 30.0), (5000, 30.0)],
)
def test_rescan_interval_tiers(count, interval):
    assert rescan_interval_for(count) == interval


def test_short_address():
    assert short_address("ABCDEFGHIJKL") == "ABCD...IJKL"


class TestRescan:
    @pytest.mark.asyncio
    async def test_rescan_swaps_in_filtered_snapshot(self):
        gateway = FakeGateway(
            holders={
                "HolderA": 5000,
                "HolderB": 999,
                "Zero": 0,
                "1nc1nerator11111111111111111111111111111111": 10_000,
                "Treasury": 50_000,
            },
            total_supply=1_000_000,
        )
        tracker = make_tracker(gateway, excluded={"Treasury"})

        snapshot = await tracker.rescan()

        assert tracker.snapshot is snapshot
        assert [h.address for h in snapshot.holders] == ["HolderA", "HolderB"]
        assert [h.address for h in tracker.eligible_holders()] == ["HolderA"]
        assert tracker.is_address_eligible("HolderA")
        assert not tracker.is_address_eligible("HolderB")
        assert not tracker.is_address_eligible("Treasury")
        assert tracker.get_holder("Missing") is None

    @pytest.mark.asyncio
    async def test_failed_scan_keeps_previous_snapshot(self, gateway):
        tracker = make_tracker(gateway)
        previous = await tracker.rescan()

        gateway.fail_scan = True
        with pytest.raises(NetworkError):
            await tracker.rescan()

        assert tracker.snapshot is previous

    @pytest.mark.asyncio
    async def test_periodic_scan_failure_is_logged_not_raised(self, gateway, caplog):
        tracker = make_tracker(gateway)
        gateway.fail_scan = True

        await tracker._periodic_rescan()

        assert "Periodic holder scan failed" in caplog.text

    @pytest.mark.asyncio
    async def test_persist_failure_does_not_abort_scan(self, gateway):
        tracker = make_tracker(gateway, store=FailingStore())

        snapshot = await tracker.rescan()

        assert len(snapshot.eligible) == 2

    @pytest.mark.asyncio
    async def test_scan_emits_update_and_eligibility_change(self, gateway):
        events = EventBus()
        sub = events.subscribe()
        tracker = make_tracker(gateway, events=events)

        await tracker.rescan()
        await tracker.rescan()

        names = [e.name for e in sub.drain()]
        assert names == [HOLDER_UPDATE, ELIGIBILITY_CHANGE, HOLDER_UPDATE]

    @pytest.mark.asyncio
    async def test_rescan_adapts_running_timer_interval(self, gateway):
        scheduler = Scheduler()
        tracker = make_tracker(gateway, scheduler=scheduler)
        tracker.start()
        try:
            assert tracker.is_tracking
            await tracker.rescan()
            assert tracker.rescan_interval_s == 5.0
            assert scheduler.timers["holder_rescan"].interval_s == 5.0
        finally:
            tracker.stop()
        assert not tracker.is_tracking


class TestSelection:
    @pytest.mark.asyncio
    async def test_select_winner_is_deterministic_for_snapshot_and_entropy(self, gateway):
        tracker = make_tracker(gateway)
        await tracker.rescan()

        first = await tracker.select_winner()
        second = await tracker.select_winner()

        assert first.holder == second.holder
        assert first.draw.seed == "entropy-seed"
        assert first.holder.address in {"HolderA", "HolderB"}

    @pytest.mark.asyncio
    async def test_select_winner_without_eligible_holders_raises(self):
        tracker = make_tracker(FakeGateway(holders={"Dust": 1}, total_supply=1_000_000))
        await tracker.rescan()

        with pytest.raises(NoEligibleHolders):
            await tracker.select_winner()

    def test_select_weighted_random_on_empty_snapshot_is_none(self):
        tracker = make_tracker(FakeGateway())
        assert tracker.select_weighted_random("seed") is None

    def test_draw_only_covers_eligible_holders(self):
        tracker = make_tracker(FakeGateway())
        tracker.snapshot = HolderSnapshot.build(
            [("Big", 10_000), ("Dust", 1)], total_supply=1_000_000, minimum_hold_percentage=0.1
        )

        for i in range(50):
            assert tracker.select_weighted_random(f"seed-{i}").holder.address == "Big"


class TestReads:
    @pytest.mark.asyncio
    async def test_top_holders_distribution_and_stats(self, gateway):
        tracker = make_tracker(gateway)
        await tracker.rescan()

        top = tracker.top_holders(2)
        assert [h["address"] for h in top] == ["HolderA", "HolderB"]

        shares = {d["address"]: d["percentage"] for d in tracker.distribution()}
        assert shares == pytest.approx({"HolderA": 70.0, "HolderB": 30.0})

        stats = tracker.stats()
        assert stats["total_holders"] == 3
        assert stats["eligible_holders"] == 2
        assert stats["minimum_hold_amount"] == 100_000
