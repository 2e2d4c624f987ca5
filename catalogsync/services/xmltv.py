"""XMLTV programme guide parsing."""

from __future__ import annotations

import gzip
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from lxml import etree  # type: ignore[import-untyped]

from ..errors import ParseFailure
from ..models import GuideData, ProgramGuideEntry
from ..schedule import group_by_channel

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"


@dataclass(slots=True)
class GuideChannel:
    id: str
    display_name: str
    icon_url: str | None = None


@dataclass(slots=True)
class ParsedGuide:
    channels: list[GuideChannel]
    programs: GuideData

    @property
    def program_count(self) -> int:
        return sum(len(entries) for entries in self.programs.values())


class GuideParser(Protocol):
    def parse(
        self,
        payload: bytes,
        *,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> ParsedGuide:
        ...


class XmltvParser:
    """Turn an XMLTV document into channel-keyed, non-overlapping schedules."""

    def parse(
        self,
        payload: bytes,
        *,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> ParsedGuide:
        if payload[:2] == _GZIP_MAGIC:
            try:
                payload = gzip.decompress(payload)
            except (OSError, EOFError) as exc:
                raise ParseFailure(f"Guide archive is corrupt: {exc}") from exc
        if not payload.strip():
            raise ParseFailure("Guide document is empty")

        parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)
        try:
            root = etree.fromstring(payload, parser=parser)
        except etree.XMLSyntaxError as exc:
            logger.error("XMLTV parsing error: %s", exc)
            raise ParseFailure(f"Malformed XMLTV document: {exc}") from exc
        if root.tag != "tv":
            raise ParseFailure(f"Unexpected XMLTV root element <{root.tag}>")

        channels = self._parse_channels(root)
        entries: list[ProgramGuideEntry] = []
        skipped = 0
        for programme in root.iterfind("programme"):
            entry = self._parse_programme(programme)
            if entry is None:
                skipped += 1
                continue
            if window_start is not None and entry.end <= window_start:
                continue
            if window_end is not None and entry.start >= window_end:
                continue
            entries.append(entry)

        programs = group_by_channel(entries)
        if skipped:
            logger.debug("Skipped %s incomplete programmes", skipped)
        logger.info(
            "XMLTV parsing complete: %s channels, %s programmes",
            len(channels),
            sum(len(items) for items in programs.values()),
        )
        return ParsedGuide(channels=channels, programs=programs)

    @staticmethod
    def _parse_channels(root) -> list[GuideChannel]:
        channels: list[GuideChannel] = []
        for channel in root.iterfind("channel"):
            channel_id = channel.get("id")
            if not channel_id:
                continue
            icon = channel.find("icon")
            channels.append(
                GuideChannel(
                    id=channel_id,
                    display_name=_text(channel, "display-name") or channel_id,
                    icon_url=icon.get("src") if icon is not None else None,
                )
            )
        return channels

    @staticmethod
    def _parse_programme(programme) -> ProgramGuideEntry | None:
        channel_id = programme.get("channel")
        start_raw = programme.get("start")
        stop_raw = programme.get("stop")
        title = _text(programme, "title")
        if not (channel_id and start_raw and stop_raw and title):
            return None
        try:
            start = parse_xmltv_time(start_raw)
            end = parse_xmltv_time(stop_raw)
        except ValueError:
            return None
        icon = programme.find("icon")
        return ProgramGuideEntry(
            channel_id=channel_id,
            title=title,
            start=start,
            end=end,
            description=_text(programme, "desc"),
            category=_text(programme, "category"),
            subtitle=_text(programme, "sub-title"),
            language=_language(programme),
            icon_url=icon.get("src") if icon is not None else None,
        )


def parse_xmltv_time(value: str) -> datetime:
    """Convert ``YYYYMMDDhhmmss ±zzzz`` to a naive UTC datetime.

    A missing offset is read as UTC.
    """

    parts = value.strip().split()
    if not parts or len(parts[0]) < 14:
        raise ValueError(f"Invalid XMLTV time {value!r}")
    moment = datetime.strptime(parts[0][:14], "%Y%m%d%H%M%S")
    offset = parts[1] if len(parts) > 1 else "+0000"
    if len(offset) != 5 or offset[0] not in "+-" or not offset[1:].isdigit():
        raise ValueError(f"Invalid XMLTV offset {offset!r}")
    sign = 1 if offset[0] == "+" else -1
    minutes = sign * (int(offset[1:3]) * 60 + int(offset[3:5]))
    return moment - timedelta(minutes=minutes)


def _text(element, tag: str) -> str | None:
    child = element.find(tag)
    if child is None or not child.text:
        return None
    return child.text.strip() or None


def _language(programme) -> str | None:
    title = programme.find("title")
    if title is not None and title.get("lang"):
        return title.get("lang")
    return _text(programme, "language")
