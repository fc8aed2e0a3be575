"""
Delivery of completed files.

The transfer manager calls ``deliver(payload, file_name, media_type)`` exactly
once per completed transfer. ``DirectorySink`` is the stock "save to disk"
implementation; anything else (previews, uploads) can be plugged in instead.
"""

import asyncio
import logging
import os
import re
import tempfile
from enum import Enum
from pathlib import Path

from config import DEFAULT_SAVE_DIR

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r'[\x00-\x1f<>:"/\\|?*]')


class FileCategory(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    CSV = "csv"
    OTHER = "other"


def classify(media_type: str) -> FileCategory:
    """Bucket a MIME type the way the transfer UI groups files."""
    media_type = (media_type or "").lower()
    if media_type.startswith("image/"):
        return FileCategory.IMAGE
    if media_type == "application/pdf":
        return FileCategory.PDF
    if media_type in ("text/csv", "application/vnd.ms-excel"):
        return FileCategory.CSV
    return FileCategory.OTHER


def safe_file_name(file_name: str) -> str:
    """Strip directories and characters that are unsafe on common filesystems."""
    name = os.path.basename(file_name.replace("\\", "/"))
    name = _UNSAFE.sub("_", name).strip(" .")
    return name or "received-file"


class DirectorySink:
    """Deliver callback that writes each file into ``save_dir``."""

    def __init__(self, save_dir: str = DEFAULT_SAVE_DIR) -> None:
        self.save_dir = save_dir
        self.saved: list[Path] = []

    async def __call__(self, payload: bytes, file_name: str, media_type: str) -> Path:
        path = await asyncio.to_thread(self._write, payload, file_name)
        self.saved.append(path)
        logger.info(
            f"Saved '{path.name}' ({len(payload)} bytes, {classify(media_type).value}) "
            f"to {self.save_dir}"
        )
        return path

    def _write(self, payload: bytes, file_name: str) -> Path:
        directory = Path(self.save_dir)
        directory.mkdir(parents=True, exist_ok=True)

        # Write to a temp file first so a crash never leaves a truncated file
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".incoming-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            target = self._unique_path(directory, safe_file_name(file_name))
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return target

    @staticmethod
    def _unique_path(directory: Path, name: str) -> Path:
        candidate = directory / name
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem} ({counter}){suffix}"
            counter += 1
        return candidate
