"""Allowed pandoc source/destination formats with their file extension and MIME type."""
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class SourceFormat:
    value: str
    label: str


@dataclass(frozen=True)
class DestFormat:
    """A pandoc output format.

    ext defaults to the format id; mime defaults to application/octet-stream.
    fixed_layout formats are rendered through a PDF engine instead of `-t <value>`.
    supports_template formats accept a `--reference-doc` styling document.
    """

    value: str
    label: str
    ext: Optional[str] = None
    mime: Optional[str] = None
    fixed_layout: bool = False
    supports_template: bool = False

    @property
    def extension(self) -> str:
        return self.ext or self.value

    @property
    def mime_type(self) -> str:
        return self.mime or "application/octet-stream"


SOURCE_FORMATS: List[SourceFormat] = [
    SourceFormat("markdown", "Markdown (.md)"),
    SourceFormat("gfm", "GitHub-Flavored Markdown (.md)"),
    SourceFormat("html", "HTML (.html)"),
    SourceFormat("epub", "EPUB (.epub)"),
    SourceFormat("docx", "Microsoft Word (.docx)"),
    SourceFormat("latex", "LaTeX (.tex)"),
    SourceFormat("rst", "reStructuredText (.rst)"),
]

DEST_FORMATS: List[DestFormat] = [
    DestFormat("pdf", "Adobe PDF (.pdf)", mime="application/pdf", fixed_layout=True),
    DestFormat("html", "HTML (.html)", mime="text/html"),
    DestFormat("gfm", "GitHub-Flavored Markdown (.md)", ext="md", mime="text/plain"),
    DestFormat("markdown", "Pandoc's Markdown (.md)", ext="md", mime="text/plain"),
    DestFormat("rst", "reStructuredText (.rst)", mime="text/plain"),
    DestFormat("rtf", "Rich Text Format (.rtf)", mime="application/rtf"),
    DestFormat(
        "docx",
        "Microsoft Word (.docx)",
        mime="application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        supports_template=True,
    ),
    DestFormat(
        "odt",
        "OpenDocument Text (.odt)",
        mime="application/vnd.oasis.opendocument.text",
        supports_template=True,
    ),
    DestFormat(
        "pptx",
        "Microsoft PowerPoint (.pptx)",
        mime="application/vnd.openxmlformats-officedocument.presentationml.presentation",
        supports_template=True,
    ),
]

# Sources that understand pandoc's `-yaml_metadata_block` extension modifier
MARKDOWN_FAMILY = frozenset({"markdown", "gfm"})

_SOURCES: Dict[str, SourceFormat] = {f.value: f for f in SOURCE_FORMATS}
_DESTS: Dict[str, DestFormat] = {f.value: f for f in DEST_FORMATS}


def is_valid_source(fmt: Optional[str]) -> bool:
    return fmt in _SOURCES


def is_valid_dest(fmt: Optional[str]) -> bool:
    return fmt in _DESTS


def lookup_dest(fmt: Optional[str]) -> Optional[DestFormat]:
    return _DESTS.get(fmt) if fmt else None


def source_formats() -> List[SourceFormat]:
    return list(SOURCE_FORMATS)


def dest_formats() -> List[DestFormat]:
    return list(DEST_FORMATS)
