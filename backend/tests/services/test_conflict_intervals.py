from __future__ import annotations

from datetime import datetime, timedelta, timezone

from escrowbook.services.conflict_checker import (
    aligned_slots,
    count_aligned_slots,
    expand,
    merge_intervals,
    overlaps,
    subtract_intervals,
    truncate_before,
)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 3, hour, minute, tzinfo=timezone.utc)


class TestOverlaps:
    def test_half_open_intervals_touching_do_not_overlap(self) -> None:
        assert not overlaps((at(9), at(10)), (at(10), at(11)))

    def test_contained_interval_overlaps(self) -> None:
        assert overlaps((at(9), at(12)), (at(10), at(11)))


class TestMerge:
    def test_merges_overlapping_and_touching(self) -> None:
        merged = merge_intervals([(at(12), at(13)), (at(9), at(10)), (at(10), at(11)), (at(10, 30), at(11, 30))])

        assert merged == [(at(9), at(11, 30)), (at(12), at(13))]

    def test_drops_empty_intervals(self) -> None:
        assert merge_intervals([(at(9), at(9))]) == []


class TestSubtract:
    def test_block_in_the_middle_splits_window(self) -> None:
        assert subtract_intervals([(at(9), at(17))], [(at(9, 45), at(10, 45))]) == [
            (at(9), at(9, 45)),
            (at(10, 45), at(17)),
        ]

    def test_block_covering_window_removes_it(self) -> None:
        assert subtract_intervals([(at(9), at(10))], [(at(8), at(11))]) == []

    def test_disjoint_block_is_ignored(self) -> None:
        assert subtract_intervals([(at(9), at(10))], [(at(11), at(12))]) == [(at(9), at(10))]


class TestHelpers:
    def test_truncate_before_cutoff(self) -> None:
        assert truncate_before([(at(9), at(10)), (at(11), at(12))], at(9, 30)) == [
            (at(9, 30), at(10)),
            (at(11), at(12)),
        ]

    def test_expand_pads_both_sides(self) -> None:
        assert expand((at(10), at(10, 30)), 15) == (at(9, 45), at(10, 45))

    def test_count_aligned_slots_stays_on_grid(self) -> None:
        free = [(at(9), at(9, 45)), (at(10, 45), at(17))]

        # 10:45 is off the 30 minute grid anchored at 09:00, so counting starts at 11:00
        assert count_aligned_slots(free, at(9), 30) == 1 + 12

    def test_count_matches_enumeration(self) -> None:
        window = (at(9), at(17))

        assert count_aligned_slots([window], at(9), 45) == len(aligned_slots(window, 45))

    def test_aligned_slots_drop_partial_tail(self) -> None:
        slots = aligned_slots((at(9), at(10, 15)), 30)

        assert slots == [(at(9), at(9, 30)), (at(9, 30), at(10))]
        assert all(end - start == timedelta(minutes=30) for start, end in slots)
