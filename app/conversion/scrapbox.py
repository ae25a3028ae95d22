"""Detect Scrapbox project exports (JSON with pages of title + lines) that need their own flow instead of pandoc."""
import json
from typing import Optional

import aiofiles
import aiofiles.os


async def is_scrapbox_export(path: str, max_bytes: Optional[int] = None) -> bool:
    try:
        if max_bytes is not None and await aiofiles.os.path.getsize(path) > max_bytes:
            return False
        async with aiofiles.open(path, "rb") as f:
            head = await f.read(64)
            if not head.lstrip().startswith(b"{"):
                return False
            raw = head + await f.read()
        data = json.loads(raw.decode("utf-8"))
    except (OSError, UnicodeDecodeError, ValueError):
        return False

    pages = data.get("pages") if isinstance(data, dict) else None
    if not isinstance(pages, list) or not pages:
        return False
    return all(
        isinstance(p, dict) and "title" in p and isinstance(p.get("lines"), list)
        for p in pages
    )
