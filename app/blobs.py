import logging
import os
import re
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class FileBlobStore:
    """Raw PDF bytes on disk, one file per study-file id."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or os.getenv("BLOB_STORAGE_DIR", "./blobs"))
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, file_id: str) -> Path:
        if not _SAFE_ID.match(file_id):
            raise ValueError(f"Invalid blob id {file_id!r}")
        return self.root / f"{file_id}.pdf"

    def put(self, file_id: str, data: bytes):
        self._path(file_id).write_bytes(data)
        logger.info("Stored blob %s (%s bytes)", file_id, len(data))

    def get(self, file_id: str) -> bytes:
        return self._path(file_id).read_bytes()

    def delete(self, file_id: str):
        self._path(file_id).unlink(missing_ok=True)

    def list_ids(self) -> List[str]:
        return sorted(path.stem for path in self.root.glob("*.pdf"))
