"""Unit tests for the format registry."""
from app.conversion.formats import (
    MARKDOWN_FAMILY,
    DestFormat,
    dest_formats,
    is_valid_dest,
    is_valid_source,
    lookup_dest,
    source_formats,
)


def test_sources_and_destinations_are_separate_sides():
    assert is_valid_source("epub")
    assert not is_valid_dest("epub")
    assert is_valid_dest("pdf")
    assert not is_valid_source("pdf")
    assert is_valid_source("markdown") and is_valid_dest("markdown")


def test_unknown_and_empty_ids_are_rejected():
    for fmt in ("", None, "unknownformat", "PDF", "docx "):
        assert not is_valid_dest(fmt)
        assert not is_valid_source(fmt)
    assert lookup_dest("unknownformat") is None
    assert lookup_dest(None) is None


def test_markdown_destinations_use_md_extension():
    assert lookup_dest("gfm").extension == "md"
    assert lookup_dest("markdown").extension == "md"
    assert lookup_dest("gfm").mime_type == "text/plain"


def test_extension_and_mime_fallbacks():
    fmt = DestFormat("asciidoc", "AsciiDoc")
    assert fmt.extension == "asciidoc"
    assert fmt.mime_type == "application/octet-stream"


def test_known_mime_types():
    assert lookup_dest("pdf").mime_type == "application/pdf"
    assert lookup_dest("html").mime_type == "text/html"
    assert lookup_dest("docx").mime_type.startswith("application/vnd.openxmlformats-officedocument")


def test_only_office_formats_accept_templates():
    assert {f.value for f in dest_formats() if f.supports_template} == {"docx", "odt", "pptx"}


def test_only_pdf_is_fixed_layout():
    assert [f.value for f in dest_formats() if f.fixed_layout] == ["pdf"]


def test_listing_returns_copies():
    sources = source_formats()
    sources.clear()
    assert len(source_formats()) == 7
    assert MARKDOWN_FAMILY == {"markdown", "gfm"}
