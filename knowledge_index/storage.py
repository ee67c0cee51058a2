# knowledge_index/storage.py
import logging
import os
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

import aiofiles

from knowledge_index.config import settings
from knowledge_index.exceptions import KnowledgeIndexError

logger = logging.getLogger(__name__)

READ_CHUNK = 1024 * 64


class UploadTooLarge(KnowledgeIndexError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Upload exceeds {limit} bytes", {"limit": limit})


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def safe_filename(filename: Optional[str]) -> str:
    # strip any client-side path parts
    return Path(filename or "uploaded").name or "uploaded"


async def save_upload(upload_file, dest_dir: Optional[str] = None,
                      max_size: Optional[int] = None) -> Tuple[str, str, int]:
    """
    Stream an UploadFile to disk. Returns (path, filename, size).
    Removes the partial file and raises UploadTooLarge past `max_size`.
    """
    dest_dir = dest_dir or settings.upload_dir
    max_size = max_size or settings.max_upload_size
    ensure_dir(dest_dir)
    filename = safe_filename(upload_file.filename)
    path = os.path.join(dest_dir, f"{uuid4()}__{filename}")

    written = 0
    try:
        async with aiofiles.open(path, "wb") as out_file:
            while True:
                chunk = await upload_file.read(READ_CHUNK)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_size:
                    raise UploadTooLarge(max_size)
                await out_file.write(chunk)
    except BaseException:
        remove_file(path)
        raise
    return path, filename, written


def remove_file(path: str) -> None:
    try:
        os.remove(path)
        logger.debug("Removed file %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove file %s: %s", path, e)
