"""Unit tests for converter argument building and subprocess handling."""
import os

import pytest
from pydantic import ValidationError

from app.conversion.invoker import (
    FIXED_LAYOUT_ARGS,
    YAML_HINT,
    build_pandoc_args,
    get_pandoc_version,
    run_pandoc,
    sanitize_diagnostics,
    with_yaml_hint,
)
from app.models.schemas import ConversionOptions
from conftest import fake_args


def test_minimal_args():
    assert build_pandoc_args("/in.md", "/out.html", "markdown", "html") == [
        "/in.md", "-f", "markdown", "-t", "html", "-o", "/out.html",
    ]


def test_full_argument_order():
    options = ConversionOptions(
        toc=True,
        toc_depth=2,
        number_sections=True,
        embed_resources=True,
        reference_location="section",
        figure_caption_position="above",
        table_caption_position="below",
    )
    args = build_pandoc_args("/in.md", "/out.docx", "markdown", "docx", options, "/ref.docx")
    assert args == [
        "/in.md",
        "-f", "markdown",
        "-t", "docx",
        "--reference-doc", "/ref.docx",
        "--toc",
        "--toc-depth", "2",
        "--number-sections",
        "--embed-resources", "--standalone",
        "--reference-location", "section",
        "--figure-caption-position", "above",
        "--table-caption-position", "below",
        "-o", "/out.docx",
    ]


def test_template_ignored_for_formats_without_template_support():
    args = build_pandoc_args("/in.md", "/out.html", "markdown", "html", template_path="/ref.docx")
    assert "--reference-doc" not in args
    assert "/ref.docx" not in args


def test_pdf_uses_fixed_layout_args_instead_of_target():
    args = build_pandoc_args("/in.md", "/out.pdf", "markdown", "pdf")
    assert "-t" not in args
    assert args == ["/in.md", "-f", "markdown", *FIXED_LAYOUT_ARGS, "-o", "/out.pdf"]


def test_no_yaml_only_applies_to_markdown_sources():
    options = ConversionOptions(no_yaml=True)
    assert build_pandoc_args("/in.md", "/o", "gfm", "html", options)[2] == "gfm-yaml_metadata_block"
    assert build_pandoc_args("/in.html", "/o", "html", "docx", options)[2] == "html"


def test_toc_depth_requires_toc():
    args = build_pandoc_args("/in.md", "/o", "markdown", "html", ConversionOptions(toc_depth=3))
    assert "--toc" not in args
    assert "--toc-depth" not in args


def test_missing_source_lets_converter_infer():
    args = build_pandoc_args("/in.md", "/o.html", None, "html")
    assert "-f" not in args
    assert args[0] == "/in.md" and args[-2:] == ["-o", "/o.html"]


def test_unknown_destination_raises():
    with pytest.raises(ValueError):
        build_pandoc_args("/in.md", "/o", "markdown", "exe")


@pytest.mark.parametrize(
    "field, value",
    [
        ("reference_location", "elsewhere"),
        ("figure_caption_position", "left"),
        ("table_caption_position", "--output=/etc/passwd"),
        ("toc_depth", 9),
        ("toc_depth", 0),
    ],
)
def test_options_outside_allowed_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        ConversionOptions(**{field: value})


def test_sanitize_diagnostics_strips_staging_dir_and_caps_length(tmp_path):
    staging = str(tmp_path)
    text = f"Error reading {os.path.join(staging, 'abc.md')}\n"
    assert sanitize_diagnostics(text, staging, 4000) == "Error reading abc.md"

    long = sanitize_diagnostics("x" * 50, None, 10)
    assert long == "x" * 10 + "\n[truncated]"


def test_yaml_hint():
    assert with_yaml_hint("YAML parse exception", ConversionOptions()).endswith(YAML_HINT)
    assert with_yaml_hint("YAML parse exception", ConversionOptions(no_yaml=True)) == "YAML parse exception"
    assert with_yaml_hint("unknown reader", ConversionOptions()) == "unknown reader"


@pytest.mark.asyncio
async def test_run_pandoc_success(tmp_path, fake_pandoc):
    pandoc = fake_pandoc("ok")
    src = tmp_path / "in.md"
    src.write_text("# Hi")
    out = tmp_path / "out.html"

    result = await run_pandoc(str(src), str(out), "markdown", "html", pandoc_path=str(pandoc), timeout=5)

    assert result.success and result.error is None and result.returncode == 0
    assert out.read_text() == "converted by fake pandoc"
    assert fake_args(pandoc) == [str(src), "-f", "markdown", "-t", "html", "-o", str(out)]


@pytest.mark.asyncio
async def test_run_pandoc_failure_reports_sanitized_stderr(tmp_path, fake_pandoc):
    src = tmp_path / "in.md"
    src.write_text("---\nbad: [\n---\n")

    result = await run_pandoc(
        str(src), str(tmp_path / "out.html"), "markdown", "html",
        pandoc_path=str(fake_pandoc("fail")), timeout=5, staging_dir=str(tmp_path),
    )

    assert not result.success and not result.timed_out
    assert result.returncode == 64
    assert result.error.startswith("Error at in.md: YAML parse exception")
    assert result.error.endswith(YAML_HINT)
    assert str(tmp_path) not in result.error


@pytest.mark.asyncio
async def test_run_pandoc_failure_without_stderr(tmp_path, fake_pandoc):
    result = await run_pandoc(
        str(tmp_path / "in.md"), str(tmp_path / "o.html"), "markdown", "html",
        pandoc_path=str(fake_pandoc("silent_fail")), timeout=5,
    )
    assert not result.success
    assert result.error == "pandoc exited with code 3"


@pytest.mark.asyncio
async def test_run_pandoc_timeout_kills_process(tmp_path, fake_pandoc):
    result = await run_pandoc(
        str(tmp_path / "in.md"), str(tmp_path / "o.html"), "markdown", "html",
        pandoc_path=str(fake_pandoc("slow")), timeout=0.3,
    )
    assert not result.success
    assert result.timed_out
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_run_pandoc_missing_binary(tmp_path):
    result = await run_pandoc(
        str(tmp_path / "in.md"), str(tmp_path / "o.html"), "markdown", "html",
        pandoc_path=str(tmp_path / "no-such-pandoc"), timeout=5,
    )
    assert not result.success
    assert result.error.startswith("Could not start converter")


@pytest.mark.asyncio
async def test_run_pandoc_unknown_destination_never_spawns(tmp_path):
    result = await run_pandoc(
        str(tmp_path / "in.md"), str(tmp_path / "o"), "markdown", "exe",
        pandoc_path=str(tmp_path / "no-such-pandoc"),
    )
    assert not result.success
    assert "unknown destination" in result.error


@pytest.mark.asyncio
async def test_get_pandoc_version(tmp_path, fake_pandoc):
    assert await get_pandoc_version(str(fake_pandoc("ok"))) == "3.1.2"
    assert await get_pandoc_version(str(tmp_path / "no-such-pandoc")) is None
