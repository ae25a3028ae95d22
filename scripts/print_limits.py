#!/usr/bin/env python3
"""Print upload, conversion, cleanup and API limits (from config). Run from repo root: python scripts/print_limits.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from app.core.config import settings


def _mb(n: int) -> str:
    return f"{n / (1024 * 1024):g} MB"


def main():
    """Print effective limits (MAX_FILE_SIZE, MAX_TOTAL_FILE_SIZE, timeouts, cleanup schedule, rate limit)."""
    print("Upload & conversion limits")
    print("--------------------------")
    print(f"  MAX_FILE_SIZE              = {_mb(settings.max_file_size)} (max size per uploaded file)")
    print(f"  MAX_TOTAL_FILE_SIZE        = {_mb(settings.max_total_file_size)} (file + template)")
    print(f"  CONVERSION_TIMEOUT_SECONDS = {settings.conversion_timeout_seconds:g} s")
    print(f"  CLEANUP_MAX_AGE_SECONDS    = {settings.cleanup_max_age_seconds:g} s (files older than this are swept)")
    print(f"  CLEANUP_INTERVAL_SECONDS   = {settings.cleanup_interval_seconds:g} s")
    print(
        f"  Rate limit                 = {settings.rate_limit_requests} requests / "
        f"{settings.rate_limit_window_seconds} s (per client IP)"
    )
    print(f"  PANDOC_PATH                = {settings.pandoc_path}")
    print(f"  UPLOAD_DIR / STATUS_DIR    = {settings.upload_dir} / {settings.status_dir}")
    print("")
    print("Env: see .env.example")


if __name__ == "__main__":
    main()
