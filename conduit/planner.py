"""Chunk selection planning across several sources.

Chooses the order in which chunks are fetched and which source serves
each one, following the three-mode Intelligent Chunk Selection scheme:
rarest-first while few complete sources exist, shortest-to-complete once
there are a handful, and a random load-balanced spread when content is
widely available.
"""

from __future__ import annotations

import random
from enum import Enum
from typing import Optional, Sequence

Bitfields = Sequence[Sequence[bool]]


class IcsMode(Enum):
    """Chunk selection strategy, chosen from the number of complete sources."""

    RELEASE = "RELEASE"
    """At most 3 complete sources: rarest first, random tie-breaking."""
    SPREAD = "SPREAD"
    """4 to 10 complete sources: shortest-to-complete first, then rarest."""
    SHARE = "SHARE"
    """More than 10 complete sources: random order, load-balanced."""

    @classmethod
    def select(cls, complete_sources: int) -> IcsMode:
        """Pick the mode for the given number of complete sources."""
        if complete_sources <= 3:
            return cls.RELEASE
        if complete_sources <= 10:
            return cls.SPREAD
        return cls.SHARE

    def label(self) -> str:
        """Upper-case name of the mode, as shown to users."""
        return self.value


def _holds(bitfield: Sequence[bool], index: int) -> bool:
    return index < len(bitfield) and bool(bitfield[index])


def count_complete_sources(seeder_bitfields: Bitfields, chunk_count: int) -> int:
    """Number of sources whose bitfield covers every one of ``chunk_count`` chunks."""
    return sum(
        1
        for bitfield in seeder_bitfields
        if len(bitfield) >= chunk_count and all(bitfield[:chunk_count])
    )


def plan_chunk_assignments_ics(
    chunk_count: int,
    seeder_bitfields: Bitfields,
    complete_sources: int,
) -> tuple[list[int], list[Optional[int]], IcsMode]:
    """Plan a download with the mode chosen from ``complete_sources``.

    Returns ``(download_order, assignments, mode)``. ``download_order`` is a
    permutation of the chunk indices; ``assignments[i]`` is the index of the
    source chosen for chunk ``i``, or None when no source holds it. Sources
    are chosen greedily in download order, each chunk going to the least
    loaded source that holds it.
    """
    mode = IcsMode.select(complete_sources)

    rarity = [
        sum(1 for bitfield in seeder_bitfields if _holds(bitfield, ci))
        for ci in range(chunk_count)
    ]

    order = list(range(chunk_count))
    random.shuffle(order)

    if mode is IcsMode.RELEASE:
        order.sort(key=lambda ci: rarity[ci])
    elif mode is IcsMode.SPREAD:
        def spread_key(ci: int) -> tuple[int, int]:
            partial_holders = sum(
                1
                for bitfield in seeder_bitfields
                if _holds(bitfield, ci) and len(bitfield) < chunk_count
            )
            return -partial_holders, rarity[ci]

        order.sort(key=spread_key)

    assignments: list[Optional[int]] = [None] * chunk_count
    load = [0] * len(seeder_bitfields)

    for ci in order:
        holders = [si for si, bitfield in enumerate(seeder_bitfields) if _holds(bitfield, ci)]
        if holders:
            best = min(holders, key=lambda si: load[si])
            assignments[ci] = best
            load[best] += 1

    return order, assignments, mode


def plan_chunk_assignments(
    chunk_count: int, seeder_bitfields: Bitfields
) -> tuple[list[int], list[Optional[int]]]:
    """Rarest-first plan; same as :func:`plan_chunk_assignments_ics` in RELEASE mode."""
    order, assignments, _ = plan_chunk_assignments_ics(chunk_count, seeder_bitfields, 0)
    return order, assignments