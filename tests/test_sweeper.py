"""Unit tests for the cleanup sweeper."""
import os

import pytest

from app.jobs.sweeper import CleanupSweeper

NOW = 1_700_000_000


def _file(path, age: float):
    path.write_text("x")
    os.utime(path, (NOW - age, NOW - age))
    return path


@pytest.mark.asyncio
async def test_sweep_removes_only_stale_regular_files(tmp_path):
    stale = _file(tmp_path / "old-output.html", 4000)
    fresh = _file(tmp_path / "new.md", 10)
    readme = _file(tmp_path / "README.md", 99999)
    (tmp_path / "status").mkdir()

    sweeper = CleanupSweeper([str(tmp_path)], max_age_seconds=3600)
    removed = await sweeper.sweep_once(now=NOW)

    assert removed == 1
    assert not stale.exists()
    assert fresh.exists() and readme.exists()
    assert (tmp_path / "status").is_dir()


@pytest.mark.asyncio
async def test_age_equal_to_max_is_kept(tmp_path):
    boundary = _file(tmp_path / "edge.md", 3600)
    sweeper = CleanupSweeper([str(tmp_path)], max_age_seconds=3600)

    assert await sweeper.sweep_once(now=NOW) == 0
    assert boundary.exists()
    assert await sweeper.sweep_once(now=NOW + 1) == 1
    assert not boundary.exists()


@pytest.mark.asyncio
async def test_sweeps_every_directory_and_skips_missing_ones(tmp_path):
    uploads, status = tmp_path / "uploads", tmp_path / "status"
    uploads.mkdir()
    status.mkdir()
    _file(uploads / "a.md", 7200)
    _file(status / "b.json", 7200)

    sweeper = CleanupSweeper([str(uploads), str(tmp_path / "missing"), str(status)], clock=lambda: NOW)
    assert await sweeper.sweep_once() == 2
    assert os.listdir(uploads) == [] and os.listdir(status) == []


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(tmp_path):
    sweeper = CleanupSweeper([str(tmp_path)], interval_seconds=3600)
    assert not sweeper.running

    sweeper.start()
    task = sweeper._task
    sweeper.start()
    assert sweeper._task is task
    assert sweeper.running

    await sweeper.stop()
    await sweeper.stop()
    assert not sweeper.running
    assert task.cancelled()

    sweeper.start()
    assert sweeper.running
    await sweeper.stop()
