"""Tests for ComicInfo.xml parsing."""

import zipfile

from conftest import make_cbz
from longbox.archive import get_archive
from longbox.comicinfo import ComicInfoParsed, find_comicinfo_name, parse_comicinfo_xml, read_comicinfo


def test_parse_comicinfo_series_issue():
    """Parse a series issue (lowercase writer tag in XML)."""
    xml = b"""<?xml version="1.0"?>
<ComicInfo>
  <Series>Batman </Series>
  <Number>161</Number>
  <Volume>2016</Volume>
  <PageCount>31</PageCount>
  <writer>Jeph Loeb</writer>
  <Year>2025</Year>
  <Publisher>DC Comics</Publisher>
</ComicInfo>"""
    m = parse_comicinfo_xml(xml)
    assert m.series == "Batman"
    assert m.number == "161"
    assert m.volume == 2016
    assert m.page_count == 31
    assert m.writer == "Jeph Loeb"
    assert m.year == 2025
    assert m.publisher == "DC Comics"


def test_parse_comicinfo_with_namespace():
    """Parse ComicInfo with xmlns attributes."""
    xml = b"""<?xml version='1.0' encoding='utf-8'?>
<ComicInfo xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" xmlns:xsd="http://www.w3.org/2001/XMLSchema">
    <Series>Unbreakable X-Men </Series>
    <Number>1</Number>
    <Title>Opening Night</Title>
    <Year>2025</Year>
</ComicInfo>"""
    m = parse_comicinfo_xml(xml)
    assert m.series == "Unbreakable X-Men"
    assert m.number == "1"
    assert m.title == "Opening Night"


def test_non_numeric_integers_are_dropped():
    m = parse_comicinfo_xml(b"<ComicInfo><Year>unknown</Year><Number>1.5</Number></ComicInfo>")
    assert m.year is None
    assert m.number == "1.5"


def test_parse_comicinfo_empty_invalid():
    """Empty or invalid XML returns ComicInfoParsed with no fields set."""
    for xml in (b"", b"<root></root>", b"not xml at all"):
        m = parse_comicinfo_xml(xml)
        assert m.model_dump(exclude_none=True) == {}
    assert ComicInfoParsed().series is None


def test_find_comicinfo_name_in_subfolder():
    assert find_comicinfo_name(["001.jpg", "extras/comicinfo.XML"]) == "extras/comicinfo.XML"
    assert find_comicinfo_name(["001.jpg"]) is None


def test_read_comicinfo_from_archive(tmp_path):
    cbz = make_cbz(tmp_path / "a.cbz", comic_info="<ComicInfo><Series>Saga</Series></ComicInfo>")
    with get_archive(cbz) as archive:
        assert read_comicinfo(archive).series == "Saga"

    bare = make_cbz(tmp_path / "b.cbz")
    with get_archive(bare) as archive:
        assert read_comicinfo(archive) is None

    blank = tmp_path / "c.cbz"
    with zipfile.ZipFile(blank, "w") as zf:
        zf.writestr("ComicInfo.xml", "   ")
    with get_archive(blank) as archive:
        assert read_comicinfo(archive) is None
