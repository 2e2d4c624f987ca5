"""Programme guide interval helpers.

Every schedule that reaches the store or a query passes through
:func:`normalize_schedule`, which keeps one channel's programmes sorted and
free of overlapping ``[start, end)`` intervals.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime

from .models import GuideData, ProgramGuideEntry

logger = logging.getLogger(__name__)


def normalize_schedule(entries: Iterable[ProgramGuideEntry]) -> list[ProgramGuideEntry]:
    """Return ``entries`` sorted by start with overlaps removed.

    Zero-length or inverted programmes are dropped. When two programmes
    overlap, the one starting first wins; identical starts keep the entry
    seen first.
    """

    ordered = sorted(
        (entry for entry in entries if entry.end > entry.start),
        key=lambda entry: entry.start,
    )
    kept: list[ProgramGuideEntry] = []
    dropped = 0
    for entry in ordered:
        if kept and entry.start < kept[-1].end:
            dropped += 1
            continue
        kept.append(entry)
    if dropped:
        logger.debug(
            "Dropped %s overlapping programmes for channel %s",
            dropped,
            kept[0].channel_id if kept else "?",
        )
    return kept


def group_by_channel(entries: Iterable[ProgramGuideEntry]) -> GuideData:
    grouped: GuideData = {}
    for entry in entries:
        grouped.setdefault(entry.channel_id, []).append(entry)
    return {channel: normalize_schedule(items) for channel, items in grouped.items()}


def merge_guides(*guides: Mapping[str, Iterable[ProgramGuideEntry]]) -> GuideData:
    """Merge guide maps from several sources.

    Earlier guides take precedence where programmes collide, so callers list
    their preferred source first.
    """

    merged: dict[str, list[ProgramGuideEntry]] = {}
    for guide in guides:
        for channel_id, entries in guide.items():
            merged.setdefault(channel_id, []).extend(entries)
    return {channel: normalize_schedule(items) for channel, items in merged.items()}


def count_programs(guide: Mapping[str, list[ProgramGuideEntry]]) -> int:
    return sum(len(entries) for entries in guide.values())


def current_entry(
    entries: Iterable[ProgramGuideEntry], now: datetime
) -> ProgramGuideEntry | None:
    for entry in entries:
        if entry.is_airing(now):
            return entry
    return None


def next_entry(
    entries: Iterable[ProgramGuideEntry], now: datetime
) -> ProgramGuideEntry | None:
    upcoming = [entry for entry in entries if entry.start > now]
    if not upcoming:
        return None
    return min(upcoming, key=lambda entry: entry.start)


def entries_in_range(
    entries: Iterable[ProgramGuideEntry], start: datetime, end: datetime
) -> list[ProgramGuideEntry]:
    return [entry for entry in entries if entry.overlaps(start, end)]
