"""Stage untrusted uploads on disk under random names, enforcing size limits while copying.

The client filename is sanitized and kept for display only; the on-disk name is
always `<uuid4 hex><ext>`. Rejected requests leave no files behind.
"""
import os
import re
import unicodedata
import uuid
from dataclasses import dataclass
from typing import List, Optional

import aiofiles
import aiofiles.os
from starlette.datastructures import FormData, UploadFile
from starlette.requests import Request

from app.core.logging import get_logger
from app.guardrails.errors import AppError

logger = get_logger("staging")

CHUNK_SIZE = 1024 * 1024  # 1 MB
MAX_NAME_BYTES = 255
# multipart framing allowance on top of the file bytes
MULTIPART_OVERHEAD = 64 * 1024

_JOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_EXT_RE = re.compile(r"^\.[a-z0-9]{1,10}$")
_UNSAFE_CHARS_RE = re.compile(r'[\x00-\x1f\x7f<>:"|?*]')


def new_job_id() -> str:
    return uuid.uuid4().hex


def is_valid_job_id(job_id: Optional[str]) -> bool:
    return bool(job_id) and _JOB_ID_RE.match(job_id) is not None


def sanitize_filename(name: Optional[str]) -> str:
    """Display-safe version of a client filename: no directories, separators, control chars or traversal."""
    if not name:
        return ""
    name = unicodedata.normalize("NFC", name)
    # keep only the last path component, whichever separator the client used
    name = re.split(r"[\\/]", name)[-1]
    name = _UNSAFE_CHARS_RE.sub("", name)
    name = name.replace("..", "")
    name = name.strip().lstrip(".").strip()
    if name in ("", ".", ".."):
        return ""
    encoded = name.encode("utf-8")[:MAX_NAME_BYTES]
    return encoded.decode("utf-8", errors="ignore")


def safe_extension(name: Optional[str]) -> str:
    ext = os.path.splitext(sanitize_filename(name))[1].lower()
    return ext if _EXT_RE.match(ext) else ""


def first_upload(form: FormData, *names: str) -> Optional[UploadFile]:
    """First uploaded file among the given field names. Plain string values and extra repeats are ignored."""
    for name in names:
        for value in form.getlist(name):
            if isinstance(value, UploadFile):
                return value
    return None


@dataclass
class StagedUpload:
    job_id: str
    input_path: str
    original_name: str
    size: int
    template_path: Optional[str] = None

    @property
    def input_name(self) -> str:
        return os.path.basename(self.input_path)

    def paths(self) -> List[str]:
        return [p for p in (self.input_path, self.template_path) if p]


async def remove_files(*paths: Optional[str], log=None) -> None:
    """Best-effort delete. Missing files are fine; other failures are logged and swallowed."""
    log = log or logger
    for p in paths:
        if not p:
            continue
        try:
            await aiofiles.os.remove(p)
        except FileNotFoundError:
            continue
        except OSError as e:
            log.warning("Failed to cleanup file", extra={"file": os.path.basename(p), "err": str(e)})


async def _copy_upload(src: UploadFile, dest_path: str, per_file_limit: int, remaining_total: int) -> int:
    """Stream src into dest_path; raise FILE_TOO_LARGE the moment a ceiling is crossed."""
    total = 0
    async with aiofiles.open(dest_path, "wb") as dst:
        while True:
            chunk = await src.read(CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > per_file_limit:
                raise AppError.file_too_large(per_file_limit)
            if total > remaining_total:
                raise AppError.file_too_large(remaining_total)
            await dst.write(chunk)
    return total


class UploadStager:
    """Writes a request's main file and optional template into the upload dir.
    Why available: Single staging path for both /upload and /convert so validation and cleanup rules match."""

    def __init__(self, upload_dir: str, max_file_size: int, max_total_file_size: int):
        self.upload_dir = os.path.abspath(upload_dir)
        self.max_file_size = max_file_size
        self.max_total_file_size = max_total_file_size

    def check_content_length(self, header_value: Optional[str]) -> None:
        """Reject before parsing when the declared body already exceeds the combined ceiling."""
        if not header_value:
            return
        try:
            declared = int(header_value)
        except ValueError:
            return
        if declared > self.max_total_file_size + MULTIPART_OVERHEAD:
            raise AppError.file_too_large(self.max_total_file_size)

    def limited_request(self, request: Request) -> Request:
        """View of the request whose body raises FILE_TOO_LARGE as soon as more than the
        combined ceiling (plus framing) has arrived, declared length or not."""
        ceiling = self.max_total_file_size + MULTIPART_OVERHEAD
        received = 0

        async def receive():
            nonlocal received
            message = await request.receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > ceiling:
                    raise AppError.file_too_large(self.max_total_file_size)
            return message

        return Request(request.scope, receive)

    def path_for(self, name: str) -> str:
        return os.path.join(self.upload_dir, name)

    def output_path(self, job_id: str, extension: str) -> str:
        return self.path_for(f"{job_id}-output.{extension}")

    async def stage(
        self,
        main: UploadFile,
        template: Optional[UploadFile] = None,
        log=None,
    ) -> StagedUpload:
        log = log or logger
        await aiofiles.os.makedirs(self.upload_dir, exist_ok=True)

        job_id = new_job_id()
        original_name = sanitize_filename(main.filename) or "upload"
        input_path = self.path_for(f"{job_id}{safe_extension(main.filename)}")
        template_path = None
        written: List[str] = []

        try:
            written.append(input_path)
            size = await _copy_upload(main, input_path, self.max_file_size, self.max_total_file_size)
            if template is not None:
                template_path = self.path_for(f"{job_id}-template{safe_extension(template.filename)}")
                written.append(template_path)
                size += await _copy_upload(
                    template, template_path, self.max_file_size, self.max_total_file_size - size
                )
        except AppError:
            await remove_files(*written, log=log)
            raise
        except Exception as e:
            await remove_files(*written, log=log)
            log.error("Failed to save upload", exc_info=e)
            raise AppError.internal("Failed to save upload")

        log.info(
            "Files received",
            extra={"job_id": job_id, "original_name": original_name, "bytes": size, "has_template": template_path is not None},
        )
        return StagedUpload(
            job_id=job_id,
            input_path=input_path,
            original_name=original_name,
            size=size,
            template_path=template_path,
        )
