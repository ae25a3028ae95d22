"""File-per-job status store: `<status_dir>/<job_id>.json`, written atomically, readable after the job's files are gone."""
import json
import os
import tempfile
from typing import Optional

import aiofiles
import aiofiles.os

from app.core.logging import get_logger
from app.jobs.staging import is_valid_job_id
from app.models.schemas import JobStatus

logger = get_logger("status")


class JobStatusStore:
    """Durable job records keyed by job id.
    Why available: Decouples upload from conversion; the polling endpoint reads what the background runner wrote."""

    def __init__(self, status_dir: str):
        self.status_dir = os.path.abspath(status_dir)

    def _path(self, job_id: str) -> str:
        return os.path.join(self.status_dir, f"{job_id}.json")

    async def _write(self, job: JobStatus) -> None:
        """Write to a temp file in the same directory, then rename over the target so readers never see a partial record."""
        await aiofiles.os.makedirs(self.status_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{job.id}.", suffix=".tmp", dir=self.status_dir)
        os.close(fd)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(job.model_dump_json(indent=2))
            await aiofiles.os.replace(tmp_path, self._path(job.id))
        except BaseException:
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                pass
            raise

    async def create(self, job: JobStatus) -> None:
        if not is_valid_job_id(job.id):
            raise ValueError(f"invalid job id: {job.id!r}")
        if await aiofiles.os.path.exists(self._path(job.id)):
            raise FileExistsError(job.id)
        await self._write(job)

    async def read(self, job_id: str) -> Optional[JobStatus]:
        """Return the record, or None when the id is unknown, malformed, or the file is unreadable."""
        if not is_valid_job_id(job_id):
            return None
        try:
            async with aiofiles.open(self._path(job_id), "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        try:
            return JobStatus.model_validate(json.loads(raw))
        except ValueError as e:
            logger.warning("Unreadable status record", extra={"job_id": job_id, "err": str(e)})
            return None

    async def update(self, job_id: str, **patch) -> Optional[JobStatus]:
        current = await self.read(job_id)
        if current is None:
            return None
        data = current.model_dump()
        data.update(patch)
        updated = JobStatus.model_validate(data)
        await self._write(updated)
        return updated

    async def delete(self, job_id: str) -> None:
        if not is_valid_job_id(job_id):
            return
        try:
            await aiofiles.os.remove(self._path(job_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete status record", extra={"job_id": job_id, "err": str(e)})
