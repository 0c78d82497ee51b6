from pathlib import Path
from typing import Optional
import uuid

from loguru import logger


class AvatarStorage:
    """Avatar bytes on the local filesystem, one file per stored name."""

    def __init__(self, root: str):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, file_name: str) -> Path:
        path = (self.root / file_name).resolve()
        if path.parent != self.root:
            raise ValueError("avatar name escapes storage root: %r" % file_name)
        return path

    @staticmethod
    def unique_name(original_name: Optional[str]) -> str:
        base = Path(original_name or "avatar").name or "avatar"
        return f"{uuid.uuid4().hex}_{base}"

    def store(self, original_name: Optional[str], content: bytes) -> str:
        file_name = self.unique_name(original_name)
        self._path(file_name).write_bytes(content)
        logger.debug("Stored avatar {} ({} bytes)", file_name, len(content))
        return file_name

    def load(self, file_name: str) -> bytes:
        return self._path(file_name).read_bytes()

    def delete(self, file_name: str) -> bool:
        path = self._path(file_name)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Deleted avatar {}", file_name)
        return True
