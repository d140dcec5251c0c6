"""Closed slot-interval set used for coverage and gap detection."""

from collections.abc import Iterable, Iterator


def ranges_from_slots(slots: Iterable[int]) -> list[tuple[int, int]]:
    """Collapse slot numbers into sorted inclusive ranges: [3, 4, 5, 9] -> [(3, 5), (9, 9)]."""
    ranges: list[tuple[int, int]] = []
    for slot in sorted(set(slots)):
        if ranges and ranges[-1][1] + 1 == slot:
            ranges[-1] = (ranges[-1][0], slot)
        else:
            ranges.append((slot, slot))
    return ranges


class SlotRangeSet:
    """Sorted, merged set of inclusive slot ranges.

    Adjacent ranges are merged, so [(1, 5), (6, 9)] is stored as [(1, 9)].
    """

    def __init__(self, ranges: Iterable[tuple[int, int]] = ()) -> None:
        self._ranges: list[tuple[int, int]] = []
        for start, end in ranges:
            self.add(start, end)

    def __iter__(self) -> Iterator[tuple[int, int]]:
        return iter(list(self._ranges))

    def __len__(self) -> int:
        return len(self._ranges)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SlotRangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def __repr__(self) -> str:
        return f"SlotRangeSet({self._ranges!r})"

    @property
    def ranges(self) -> list[tuple[int, int]]:
        return list(self._ranges)

    @property
    def slot_count(self) -> int:
        return sum(end - start + 1 for start, end in self._ranges)

    def add(self, start: int, end: int) -> tuple[int, int]:
        """Add [start, end] and return the merged range that now contains it."""
        if end < start:
            raise ValueError(f"invalid range [{start}, {end}]")
        merged_start, merged_end = start, end
        kept: list[tuple[int, int]] = []
        for s, e in self._ranges:
            if e + 1 < merged_start or s > merged_end + 1:
                kept.append((s, e))
            else:
                merged_start = min(merged_start, s)
                merged_end = max(merged_end, e)
        kept.append((merged_start, merged_end))
        kept.sort()
        self._ranges = kept
        return merged_start, merged_end

    def contains(self, slot: int) -> bool:
        return any(s <= slot <= e for s, e in self._ranges)

    def covers(self, start: int, end: int) -> bool:
        return any(s <= start and end <= e for s, e in self._ranges)

    def gaps_within(self, start: int, end: int) -> list[tuple[int, int]]:
        """Inclusive sub-ranges of [start, end] not in the set."""
        if end < start:
            return []
        gaps: list[tuple[int, int]] = []
        cursor = start
        for s, e in self._ranges:
            if e < cursor:
                continue
            if s > end:
                break
            if s > cursor:
                gaps.append((cursor, s - 1))
            cursor = max(cursor, e + 1)
            if cursor > end:
                break
        if cursor <= end:
            gaps.append((cursor, end))
        return gaps

    def contiguous_end(self, start: int) -> int:
        """Highest slot h such that [start, h] is covered; start - 1 if start is not."""
        for s, e in self._ranges:
            if s <= start <= e:
                return e
        return start - 1
