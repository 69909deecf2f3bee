"""ComicInfo.xml parsing for Longbox.

Reads the handful of ComicInfo.xml fields the library uses (series, number,
title, volume, year, publisher, writer, page count). Field semantics beyond
that are left to downstream tools.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import PurePosixPath
from typing import Optional

from pydantic import BaseModel

from .archive import Archive, COMIC_INFO_NAME

# ComicInfo tag names (case-insensitive in XML) -> model field
TAG_MAP = {
    "series": "series",
    "number": "number",
    "title": "title",
    "volume": "volume",
    "year": "year",
    "publisher": "publisher",
    "writer": "writer",
    "pagecount": "page_count",
}

INT_FIELDS = {"volume", "year", "page_count"}


class ComicInfoParsed(BaseModel):
    """Metadata parsed from ComicInfo.xml (all optional)."""

    model_config = {"extra": "ignore"}

    series: Optional[str] = None
    number: Optional[str] = None
    title: Optional[str] = None
    volume: Optional[int] = None
    year: Optional[int] = None
    publisher: Optional[str] = None
    writer: Optional[str] = None
    page_count: Optional[int] = None


def _text(elem: Optional[ET.Element]) -> Optional[str]:
    if elem is None or elem.text is None:
        return None
    t = elem.text.strip()
    return t or None


def _int_or_none(s: Optional[str]) -> Optional[int]:
    if s is None:
        return None
    try:
        return int(s.strip())
    except ValueError:
        return None


def _local_name(tag: str) -> str:
    """Return tag without namespace (e.g. '{http://...}Issue' -> 'issue')."""
    return tag.split("}")[-1].lower() if "}" in tag else tag.lower()


def parse_comicinfo_xml(xml_bytes: bytes) -> ComicInfoParsed:
    """Parse ComicInfo.xml content into a validated Pydantic model.

    Malformed XML yields an empty model rather than an error.
    """
    raw: dict[str, object] = {}
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError:
        return ComicInfoParsed()

    by_lower = {_local_name(elem.tag): elem for elem in root}

    for xml_tag_lower, our_key in TAG_MAP.items():
        text = _text(by_lower.get(xml_tag_lower))
        if text is None:
            continue
        if our_key in INT_FIELDS:
            val = _int_or_none(text)
            if val is not None:
                raw[our_key] = val
        else:
            raw[our_key] = text

    return ComicInfoParsed.model_validate(raw)


def find_comicinfo_name(names: list[str]) -> Optional[str]:
    return next(
        (n for n in names if PurePosixPath(n).name.lower() == COMIC_INFO_NAME),
        None,
    )


def read_comicinfo(archive: Archive) -> Optional[ComicInfoParsed]:
    """Parse ComicInfo.xml from an open archive, or None when it has none."""
    name = find_comicinfo_name(archive.list_names())
    if name is None:
        return None
    raw = archive.read(name)
    if not raw.strip():
        return None
    return parse_comicinfo_xml(raw)
