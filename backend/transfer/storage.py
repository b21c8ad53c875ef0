"""Save sink for received files."""

import asyncio
import logging
import os

from transfer.models import ReceivedFile

logger = logging.getLogger(__name__)


def safe_file_name(name: str) -> str:
    """Strip any directory part a peer may have put in a file name."""
    base = os.path.basename(name.replace("\\", "/")).strip()
    if base in ("", ".", ".."):
        return "download"
    return base


def unique_path(directory: str, name: str) -> str:
    """Return a path in ``directory`` that does not exist yet ("a (1).txt", ...)."""
    path = os.path.join(directory, name)
    stem, ext = os.path.splitext(name)
    counter = 1
    while os.path.exists(path):
        path = os.path.join(directory, f"{stem} ({counter}){ext}")
        counter += 1
    return path


class DirectorySink:
    """Writes each received file into a download directory."""

    def __init__(self, save_dir: str) -> None:
        self.save_dir = save_dir

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    async def save(self, received: ReceivedFile) -> str:
        path = unique_path(self.save_dir, safe_file_name(received.name))
        await asyncio.to_thread(self._write, path, received.data)
        logger.info(f"Saved {received.name} ({received.size} bytes) to {path}")
        return path

    @staticmethod
    def _write(path: str, data: bytes) -> None:
        with open(path, "xb") as f:
            f.write(data)
