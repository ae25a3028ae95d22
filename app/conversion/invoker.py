"""Pandoc invocation: whitelisted argument building, subprocess execution with timeout, and result interpretation.

The invoker never raises past its boundary. Every outcome (exit 0, non-zero exit,
spawn failure, timeout) comes back as a ConversionResult; callers decide how to
respond and always clean up the job's files.
"""
import asyncio
import os
import re
from dataclasses import dataclass
from typing import List, Optional

from app.conversion.formats import MARKDOWN_FAMILY, lookup_dest
from app.core.logging import get_logger
from app.models.schemas import ConversionOptions

logger = get_logger("pandoc")

# Fixed-layout (PDF) rendering: explicit geometry and engine instead of `-t pdf`
FIXED_LAYOUT_ARGS = ["-V", "geometry:margin=1in", "--pdf-engine=xelatex"]

YAML_HINT = (
    "\n\nTip: Try enabling 'Disable YAML Metadata' option (noYaml=true) "
    "if your file has problematic frontmatter."
)

VERSION_TIMEOUT_SECONDS = 10.0
_VERSION_RE = re.compile(r"^pandoc(?:\.exe)?\s+([\d.]+)", re.IGNORECASE)


@dataclass
class ConversionResult:
    success: bool
    error: Optional[str] = None
    timed_out: bool = False
    returncode: Optional[int] = None


def input_format_flag(source_format: str, options: ConversionOptions) -> str:
    if options.no_yaml and source_format in MARKDOWN_FAMILY:
        return f"{source_format}-yaml_metadata_block"
    return source_format


def build_pandoc_args(
    input_path: str,
    output_path: str,
    source_format: Optional[str],
    dest_format: str,
    options: Optional[ConversionOptions] = None,
    template_path: Optional[str] = None,
) -> List[str]:
    """Translate validated job parameters into pandoc's argument vector.

    Order: input, -f, destination (or fixed-layout args), --reference-doc, --toc[-depth],
    --number-sections, --embed-resources --standalone, reference/caption flags, -o last.
    Only enum values from ConversionOptions and registry format ids reach the list.
    """
    options = options or ConversionOptions()
    dest = lookup_dest(dest_format)
    if dest is None:
        raise ValueError(f"unknown destination format: {dest_format}")

    args = [input_path]
    if source_format:
        args += ["-f", input_format_flag(source_format, options)]

    if dest.fixed_layout:
        args += FIXED_LAYOUT_ARGS
    else:
        args += ["-t", dest.value]

    if template_path and dest.supports_template:
        args += ["--reference-doc", template_path]

    if options.toc:
        args.append("--toc")
        if options.toc_depth:
            args += ["--toc-depth", str(int(options.toc_depth))]
    if options.number_sections:
        args.append("--number-sections")
    if options.embed_resources:
        args += ["--embed-resources", "--standalone"]
    if options.reference_location:
        args += ["--reference-location", options.reference_location]
    if options.figure_caption_position:
        args += ["--figure-caption-position", options.figure_caption_position]
    if options.table_caption_position:
        args += ["--table-caption-position", options.table_caption_position]

    args += ["-o", output_path]
    return args


def sanitize_diagnostics(text: str, staging_dir: Optional[str], max_chars: int) -> str:
    """Strip the absolute staging directory from converter output and cap its length."""
    if staging_dir:
        root = os.path.abspath(staging_dir)
        text = text.replace(root + os.sep, "").replace(root, "")
    text = text.strip()
    if len(text) > max_chars:
        text = text[:max_chars].rstrip() + "\n[truncated]"
    return text


def with_yaml_hint(error: str, options: ConversionOptions) -> str:
    if "YAML" in error and not options.no_yaml:
        return error + YAML_HINT
    return error


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_pandoc(
    input_path: str,
    output_path: str,
    source_format: Optional[str],
    dest_format: str,
    options: Optional[ConversionOptions] = None,
    template_path: Optional[str] = None,
    *,
    pandoc_path: str = "pandoc",
    timeout: Optional[float] = None,
    staging_dir: Optional[str] = None,
    max_diagnostic_chars: int = 4000,
    log=None,
) -> ConversionResult:
    """Run pandoc without a shell and report the outcome. Diagnostics come from stderr only."""
    log = log or logger
    options = options or ConversionOptions()
    try:
        args = build_pandoc_args(input_path, output_path, source_format, dest_format, options, template_path)
    except ValueError as e:
        return ConversionResult(success=False, error=str(e))

    log.info("Running pandoc", extra={"pandoc_args": args})
    try:
        proc = await asyncio.create_subprocess_exec(
            pandoc_path,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log.error("Pandoc process error: %s", e)
        return ConversionResult(success=False, error=f"Could not start converter: {e.strerror or e}")

    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        log.error("Pandoc timed out", extra={"timeout_s": timeout})
        return ConversionResult(
            success=False,
            error=f"Conversion timed out after {timeout:g}s",
            timed_out=True,
        )
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    if proc.returncode == 0:
        log.info("Pandoc conversion successful")
        return ConversionResult(success=True, returncode=0)

    diagnostics = sanitize_diagnostics(
        stderr.decode("utf-8", errors="replace"), staging_dir, max_diagnostic_chars
    )
    log.error("Pandoc conversion failed", extra={"code": proc.returncode, "stderr": diagnostics})
    error = diagnostics or f"pandoc exited with code {proc.returncode}"
    return ConversionResult(
        success=False,
        error=with_yaml_hint(error, options),
        returncode=proc.returncode,
    )


async def get_pandoc_version(pandoc_path: str = "pandoc", timeout: float = VERSION_TIMEOUT_SECONDS) -> Optional[str]:
    """Return pandoc's version ("3.1.2"), "unknown" when the output does not parse, or None when it cannot run."""
    try:
        proc = await asyncio.create_subprocess_exec(
            pandoc_path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        return None

    if proc.returncode != 0:
        return None
    first_line = stdout.decode("utf-8", errors="replace").splitlines()[:1]
    match = _VERSION_RE.match(first_line[0]) if first_line else None
    return match.group(1) if match else "unknown"
