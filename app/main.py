import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import aiofiles
import anyio
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import FormData
from starlette.requests import ClientDisconnect

from app.conversion.formats import (
    dest_formats,
    is_valid_dest,
    is_valid_source,
    lookup_dest,
    source_formats,
)
from app.conversion.invoker import get_pandoc_version, run_pandoc
from app.core.config import Settings, settings
from app.core.logging import configure_logging, get_logger, request_logger
from app.guardrails.errors import AppError, AppErrorRoute, ErrorCode, register_exception_handlers
from app.guardrails.rate_limit import FixedWindowRateLimiter
from app.jobs.staging import CHUNK_SIZE, UploadStager, first_upload, remove_files
from app.jobs.store import JobStatusStore
from app.jobs.sweeper import CleanupSweeper
from app.jobs.worker import JobRunner, run_conversion_job
from app.models.schemas import (
    ConversionOptions,
    FormatItem,
    FormatsResponse,
    HealthResponse,
    JobStatus,
    LimitsResponse,
    StatusResponse,
    UploadResponse,
)
from app.observability.middleware import RequestTimingMiddleware

logger = get_logger("app")

router = APIRouter(route_class=AppErrorRoute)

# Request field name -> ConversionOptions attribute. Same names for form fields (/upload) and query params (/convert).
OPTION_FIELDS = {
    "toc": "toc",
    "tocDepth": "toc_depth",
    "numberSections": "number_sections",
    "noYaml": "no_yaml",
    "embedResources": "embed_resources",
    "referenceLocation": "reference_location",
    "figureCaptionPosition": "figure_caption_position",
    "tableCaptionPosition": "table_caption_position",
}
BOOL_FIELDS = {"toc", "numberSections", "noYaml", "embedResources"}


# -------------------------
# Helpers
# -------------------------

def parse_options(get: Callable[[str], Optional[str]]) -> ConversionOptions:
    """Build ConversionOptions from one request source. Booleans are true only for "true";
    a non-numeric tocDepth is ignored; enum values outside the allowed set are a 400."""
    raw = {}
    for field, attr in OPTION_FIELDS.items():
        value = get(field)
        if value is None or value == "":
            continue
        if field in BOOL_FIELDS:
            raw[attr] = value == "true"
        elif field == "tocDepth":
            try:
                raw[attr] = int(value)
            except ValueError:
                continue
        else:
            raw[attr] = value
    try:
        return ConversionOptions(**raw)
    except ValidationError as e:
        first = e.errors()[0]
        attr = first["loc"][0] if first.get("loc") else ""
        field = next((k for k, v in OPTION_FIELDS.items() if v == attr), attr)
        raise AppError.validation_error(f"Invalid value for '{field}': {first['msg']}")


def _form_str(form: FormData, name: str) -> Optional[str]:
    value = form.get(name)
    return value if isinstance(value, str) else None


def content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode("ascii") or "converted"
    header = f'attachment; filename="{ascii_name}"'
    if ascii_name != filename:
        header += f"; filename*=UTF-8''{quote(filename)}"
    return header


class CleanupStreamingResponse(StreamingResponse):
    """Streams an open file and runs cleanup when the response ends: completed, failed, or client gone.
    Why available: Sync convert and async download must delete every job file on every exit path."""

    def __init__(self, handle, cleanup: Callable[[], Awaitable[None]], log, **kwargs):
        self._handle = handle
        self._cleanup = cleanup
        self._log = log
        super().__init__(self._chunks(), **kwargs)

    async def _chunks(self):
        while True:
            chunk = await self._handle.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        except (OSError, ClientDisconnect) as e:
            # headers are already out; nothing more can be sent
            self._log.warning("Stream aborted", extra={"err": repr(e)})
        finally:
            with anyio.CancelScope(shield=True):
                await self._handle.close()
                self._log.info("Response finished, cleaning up")
                await self._cleanup()


async def stream_file(path: str, media_type: str, filename: str, cleanup, log) -> CleanupStreamingResponse:
    try:
        handle = await aiofiles.open(path, "rb")
    except OSError as e:
        log.error("Could not open output file", exc_info=e)
        await cleanup()
        raise AppError.file_read_error()
    return CleanupStreamingResponse(
        handle,
        cleanup,
        log,
        media_type=media_type,
        headers={"Content-Disposition": content_disposition(filename)},
    )


# -------------------------
# Root / info
# -------------------------

@router.get("/")
def root():
    """Minimal welcome payload with app name and docs URL."""
    return {"app": "Pandoc Web", "docs": "/docs"}


@router.get("/health")
async def health(request: Request):
    """Runs `pandoc --version`: 200 with the version when the converter is usable, 503 otherwise.
    Why available: Docker HEALTHCHECK / orchestration checks need to know the converter, not just the API, is up."""
    cfg: Settings = request.app.state.settings
    version = await get_pandoc_version(cfg.pandoc_path)
    healthy = version is not None
    request_logger(request).debug("Health check complete", extra={"pandoc_version": version})
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=HealthResponse(
            status="ok" if healthy else "degraded",
            pandoc=version if healthy else "unavailable",
        ).model_dump(),
    )


@router.get("/formats", response_model=FormatsResponse)
def formats():
    """Allowed source and destination formats, for the UI dropdowns."""
    return FormatsResponse(
        source_formats=[FormatItem(value=f.value, label=f.label) for f in source_formats()],
        dest_formats=[
            FormatItem(
                value=f.value,
                label=f.label,
                ext=f.extension,
                mime=f.mime_type,
                supports_template=f.supports_template,
            )
            for f in dest_formats()
        ],
    )


@router.get("/limits", response_model=LimitsResponse)
def limits(request: Request):
    """Current upload size, conversion timeout, and rate limit."""
    cfg: Settings = request.app.state.settings
    return LimitsResponse(
        max_file_size=cfg.max_file_size,
        max_total_file_size=cfg.max_total_file_size,
        conversion_timeout_seconds=cfg.conversion_timeout_seconds,
        rate_limit_requests=cfg.rate_limit_requests,
        rate_limit_window_seconds=cfg.rate_limit_window_seconds,
    )


# -------------------------
# Sync convert
# -------------------------

@router.post("/convert")
async def convert(request: Request):
    """POST /convert?from=FORMAT&to=FORMAT[&toc=true&tocDepth=N&...] with multipart `file` and optional `template`.
    Converts inline and streams the result back as an attachment; all job files are removed afterwards."""
    log = request_logger(request)
    log.info("Convert request received")
    state = request.app.state
    cfg: Settings = state.settings
    stager: UploadStager = state.stager

    state.rate_limiter.check(request)

    query = request.query_params
    src, to = query.get("from"), query.get("to")
    if not src or not to:
        raise AppError.bad_request("Query params 'from' and 'to' are required")
    if not is_valid_source(src):
        raise AppError.invalid_format(src, "source")
    if not is_valid_dest(to):
        raise AppError.invalid_format(to, "destination")
    dest = lookup_dest(to)
    options = parse_options(query.get)
    log.info("Conversion parameters", extra={"from": src, "to": to, "options": options.model_dump(exclude_defaults=True)})

    stager.check_content_length(request.headers.get("content-length"))
    async with stager.limited_request(request).form() as form:
        main = first_upload(form, "file", "files[0]")
        if main is None:
            raise AppError.missing_field("file")
        template = first_upload(form, "template") if dest.supports_template else None
        staged = await stager.stage(main, template, log)

    output_path = stager.output_path(staged.job_id, dest.extension)
    job_files = [*staged.paths(), output_path]

    async def cleanup():
        await remove_files(*job_files, log=log)

    try:
        result = await run_pandoc(
            staged.input_path,
            output_path,
            src,
            to,
            options,
            staged.template_path,
            pandoc_path=cfg.pandoc_path,
            timeout=cfg.conversion_timeout_seconds,
            staging_dir=stager.upload_dir,
            max_diagnostic_chars=cfg.max_diagnostic_chars,
            log=log,
        )
    except BaseException:
        with anyio.CancelScope(shield=True):
            await cleanup()
        raise

    if not result.success:
        await cleanup()
        if result.timed_out:
            raise AppError.conversion_timeout(cfg.conversion_timeout_seconds)
        raise AppError.conversion_failed(result.error)

    return await stream_file(output_path, dest.mime_type, f"converted.{dest.extension}", cleanup, log)


# -------------------------
# Async upload + status + download
# -------------------------

@router.post("/upload", response_model=UploadResponse)
async def upload(request: Request):
    """Stages the upload, writes the job status record, and returns the job id before conversion runs.
    Multipart fields: file (or files[0]), template, format, sourceFormat, and the option fields.
    Client polls GET /status?job=<id>, then fetches GET /download?job=<id>."""
    log = request_logger(request)
    state = request.app.state
    cfg: Settings = state.settings
    stager: UploadStager = state.stager
    store: JobStatusStore = state.store

    state.rate_limiter.check(request)
    stager.check_content_length(request.headers.get("content-length"))

    async with stager.limited_request(request).form() as form:
        dest_id = _form_str(form, "format")
        if not dest_id:
            raise AppError.missing_field("format")
        if not is_valid_dest(dest_id):
            raise AppError.invalid_format(dest_id, "destination")
        dest = lookup_dest(dest_id)

        source = _form_str(form, "sourceFormat") or None
        if source and not is_valid_source(source):
            raise AppError.invalid_format(source, "source")

        options = parse_options(lambda name: _form_str(form, name))

        main = first_upload(form, "file", "files[0]")
        if main is None:
            raise AppError.missing_field("file")
        template = first_upload(form, "template") if dest.supports_template else None
        staged = await stager.stage(main, template, log)

    job = JobStatus(
        id=staged.job_id,
        original_name=staged.original_name,
        input_name=staged.input_name,
        dest_format=dest.value,
        source_format=source,
        template_path=staged.template_path,
        options=options,
    )
    try:
        await store.create(job)
    except Exception as e:
        await remove_files(*staged.paths(), log=log)
        log.error("Writing a status record failed", exc_info=e)
        raise AppError.internal("Writing a status record failed")

    state.runner.submit(
        run_conversion_job(job, cfg, store, stager, log=log),
        name=f"convert-{job.id}",
    )
    return UploadResponse(name=job.id)


async def _require_job(request: Request) -> JobStatus:
    job_id = request.query_params.get("job")
    if not job_id:
        raise AppError.missing_field("job")
    job = await request.app.state.store.read(job_id)
    if job is None:
        raise AppError.not_found("Job not found")
    return job


@router.get("/status", response_model=StatusResponse)
async def status(request: Request):
    """Job status record for polling clients; 404 once the job is unknown or fully cleaned up."""
    job = await _require_job(request)
    return StatusResponse(status=job.public())


@router.get("/download")
async def download(request: Request):
    """Streams a finished job's output, then deletes the output and the status record."""
    log = request_logger(request)
    state = request.app.state
    stager: UploadStager = state.stager
    store: JobStatusStore = state.store

    job = await _require_job(request)
    if job.success is False:
        raise AppError(job.error or "Conversion failed", 409, _failure_code(job))
    if not job.success or not job.result:
        raise AppError.not_found("Results not available yet")

    dest = lookup_dest(job.dest_format)
    output_path = stager.path_for(job.result)
    stem = os.path.splitext(job.original_name)[0] or "converted"

    async def cleanup():
        await remove_files(output_path, stager.path_for(job.input_name), job.template_path, log=log)
        await store.delete(job.id)

    return await stream_file(output_path, dest.mime_type, f"{stem}.{dest.extension}", cleanup, log)


def _failure_code(job: JobStatus) -> ErrorCode:
    try:
        return ErrorCode(job.error_code) if job.error_code else ErrorCode.CONVERSION_FAILED
    except ValueError:
        return ErrorCode.CONVERSION_FAILED


# -------------------------
# App setup
# -------------------------

def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    cfg = app_settings or settings
    configure_logging(cfg.log_level, cfg.app_env)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the staging/status dirs and run the cleanup sweeper for the life of the process."""
        os.makedirs(cfg.upload_dir, exist_ok=True)
        os.makedirs(cfg.status_dir, exist_ok=True)
        logger.info("Starting Pandoc Web", extra={"upload_dir": cfg.upload_dir, "pandoc": cfg.pandoc_path})
        app.state.sweeper.start()

        yield

        # uvicorn turns SIGINT/SIGTERM into this shutdown phase
        logger.info("Shutting down Pandoc Web")
        await app.state.runner.shutdown()
        await app.state.sweeper.stop()

    app = FastAPI(title="Pandoc Web", version="0.1.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.stager = UploadStager(cfg.upload_dir, cfg.max_file_size, cfg.max_total_file_size)
    app.state.store = JobStatusStore(cfg.status_dir)
    app.state.runner = JobRunner()
    app.state.sweeper = CleanupSweeper(
        [cfg.upload_dir, cfg.status_dir],
        max_age_seconds=cfg.cleanup_max_age_seconds,
        interval_seconds=cfg.cleanup_interval_seconds,
    )
    app.state.rate_limiter = FixedWindowRateLimiter(
        max_requests=cfg.rate_limit_requests,
        window_seconds=cfg.rate_limit_window_seconds,
    )

    app.add_middleware(RequestTimingMiddleware)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.host, port=settings.port)
