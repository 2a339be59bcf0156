"""Helpers for turning a chunk plan into per-source batches and back into content.

Given an assignment plan (see :mod:`conduit.planner`), these functions
summarise how widely chunks are held, split the plan into one batch per
source in download order, spot chunks nobody holds, and reassemble the
downloaded chunks into the original byte stream.
"""

from __future__ import annotations

from typing import Optional, Sequence

Bitfields = Sequence[Sequence[bool]]


def _holds(bitfield: Sequence[bool], index: int) -> bool:
    return index < len(bitfield) and bool(bitfield[index])


def rarity_histogram(chunk_count: int, seeder_bitfields: Bitfields) -> dict[int, int]:
    """Map each holder count to the number of chunks held by that many sources.

    Keys are in ascending order. The values add up to ``chunk_count``.
    """
    histogram: dict[int, int] = {}
    for ci in range(chunk_count):
        holders = sum(1 for bitfield in seeder_bitfields if _holds(bitfield, ci))
        histogram[holders] = histogram.get(holders, 0) + 1
    return dict(sorted(histogram.items()))


def group_chunks_by_seeder(
    assignments: Sequence[Optional[int]], download_order: Sequence[int]
) -> dict[int, list[int]]:
    """Collect the chunks assigned to each source.

    Each source's chunks are listed in the order they appear in
    ``download_order`` (rarest first under a rarest-first plan). Chunks
    with no assigned source are left out.
    """
    position = {ci: pos for pos, ci in enumerate(download_order)}
    groups: dict[int, list[int]] = {}
    for ci, seeder in enumerate(assignments):
        if seeder is not None:
            groups.setdefault(seeder, []).append(ci)
    for chunks in groups.values():
        chunks.sort(key=lambda ci: position.get(ci, len(position)))
    return groups


def unassigned_chunks(
    assignments: Sequence[Optional[int]], download_order: Sequence[int]
) -> list[int]:
    """Chunks in ``download_order`` that no source was assigned to."""
    return [ci for ci in download_order if assignments[ci] is None]


def reassemble(chunks: Sequence[Optional[bytes]], original_size: int = 0) -> bytes:
    """Join chunks in index order, trimming padding past ``original_size``.

    An ``original_size`` of 0 means the size is unknown and nothing is
    trimmed. Raises :class:`LookupError` naming the first missing chunk.
    """
    parts = []
    for ci, chunk in enumerate(chunks):
        if chunk is None:
            raise LookupError(f"Missing encrypted chunk {ci}")
        parts.append(bytes(chunk))
    data = b"".join(parts)
    if original_size > 0 and len(data) > original_size:
        data = data[:original_size]
    return data