"""Writes completed files into the download directory."""

import asyncio
import logging
import os
from pathlib import Path

from transfer.models import CompletedFile

logger = logging.getLogger(__name__)


def safe_file_name(name: str) -> str:
    """Strip any directory parts a peer may have put in the name."""
    cleaned = os.path.basename(name.replace("\\", "/")).strip()
    if cleaned in ("", ".", ".."):
        return "download"
    return cleaned


def unique_path(save_dir: Path, name: str) -> Path:
    """`name`, or `name (n)` if that is taken."""
    candidate = save_dir / name
    stem, suffix = os.path.splitext(name)
    n = 1
    while candidate.exists():
        candidate = save_dir / f"{stem} ({n}){suffix}"
        n += 1
    return candidate


def write_completed(completed: CompletedFile, save_dir: str | Path) -> Path:
    save_dir = Path(save_dir)
    os.makedirs(save_dir, exist_ok=True)
    path = unique_path(save_dir, safe_file_name(completed.meta.name))
    with open(path, "wb") as f:
        f.write(completed.data)
    logger.info(f"Saved {completed.meta.name} ({completed.meta.mime_type}) to {path}")
    return path


async def save_completed(completed: CompletedFile, save_dir: str | Path) -> Path:
    """Write the file off the event loop and drop the in-memory copy."""
    path = await asyncio.to_thread(write_completed, completed, save_dir)
    completed.path = path
    completed.data = b""
    return path
