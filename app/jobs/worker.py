"""Background conversion for the async upload flow, and the runner that owns those tasks."""
import asyncio
import os
from datetime import datetime, timezone
from typing import Awaitable, Optional, Set

from app.conversion.formats import lookup_dest
from app.conversion.invoker import run_pandoc
from app.conversion.scrapbox import is_scrapbox_export
from app.core.config import Settings
from app.core.logging import get_logger
from app.guardrails.errors import ErrorCode
from app.jobs.staging import UploadStager, remove_files
from app.jobs.store import JobStatusStore
from app.models.schemas import JobStatus

logger = get_logger("worker")


async def run_conversion_job(
    job: JobStatus,
    settings: Settings,
    store: JobStatusStore,
    stager: UploadStager,
    log=None,
) -> Optional[JobStatus]:
    """Convert one staged job and record the outcome. Never raises, except to pass on
    cancellation once the job has been cleaned up and marked failed.

    Input and template are removed once pandoc has exited; the output stays until
    it is downloaded (or swept). Any failure removes the output as well.
    """
    log = log or logger
    input_path = stager.path_for(job.input_name)
    dest = lookup_dest(job.dest_format)
    output_path = stager.output_path(job.id, dest.extension) if dest else None

    try:
        if await is_scrapbox_export(input_path, max_bytes=settings.max_file_size):
            log.info("Scrapbox export detected", extra={"job_id": job.id})
            return await store.update(job.id, scrapbox=True)

        result = await run_pandoc(
            input_path,
            output_path,
            job.source_format,
            job.dest_format,
            job.options,
            job.template_path,
            pandoc_path=settings.pandoc_path,
            timeout=settings.conversion_timeout_seconds,
            staging_dir=stager.upload_dir,
            max_diagnostic_chars=settings.max_diagnostic_chars,
            log=log,
        )
        # files go first so a terminal status never points at leftovers
        await remove_files(input_path, job.template_path, log=log)
        now = datetime.now(timezone.utc)
        if result.success:
            return await store.update(
                job.id, success=True, error=None, result=os.path.basename(output_path), completed_at=now
            )
        await remove_files(output_path, log=log)
        code = ErrorCode.CONVERSION_TIMEOUT if result.timed_out else ErrorCode.CONVERSION_FAILED
        return await store.update(
            job.id, success=False, error=result.error or "Conversion failed", error_code=code.value, completed_at=now
        )
    except asyncio.CancelledError:
        log.warning("Conversion job cancelled", extra={"job_id": job.id})
        # a second cancel must not interrupt the cleanup
        await asyncio.shield(
            _fail_job(job, store, "Conversion cancelled", ErrorCode.CONVERSION_CANCELLED, log,
                      input_path, job.template_path, output_path)
        )
        raise
    except Exception as e:
        log.error("Conversion job crashed", extra={"job_id": job.id}, exc_info=e)
        return await _fail_job(job, store, "Internal error", ErrorCode.INTERNAL_ERROR, log,
                               input_path, job.template_path, output_path)


async def _fail_job(job: JobStatus, store: JobStatusStore, error: str, code: ErrorCode, log, *paths) -> Optional[JobStatus]:
    """Remove the job's files, then record a terminal failure. Never raises."""
    await remove_files(*paths, log=log)
    try:
        return await store.update(
            job.id,
            success=False,
            error=error,
            error_code=code.value,
            completed_at=datetime.now(timezone.utc),
        )
    except Exception as store_err:
        log.error("Could not record job failure", extra={"job_id": job.id}, exc_info=store_err)
        return None


class JobRunner:
    """Owns fire-and-forget conversion tasks so they outlive the request that started them.

    Tasks are held until they finish (asyncio only keeps weak references), crashes are
    logged, and shutdown() drains in-flight jobs before cancelling the rest.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", extra={"task": task.get_name()}, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled unfinished conversions", extra={"count": len(still_running)})
            await asyncio.gather(*still_running, return_exceptions=True)
