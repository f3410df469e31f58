"""File-blob storage for screenshots and reports, rooted at UPLOAD_DIR."""

import logging
import shutil
from pathlib import Path
from typing import Optional, Union

import config

logger = logging.getLogger(__name__)

AUDIT_NAMESPACE = "seo-audits"


def job_namespace(job_id: str) -> str:
    """Relative directory holding every artifact of one audit job."""
    return f"{AUDIT_NAMESPACE}/{job_id}"


class LocalBlobStore:
    """Stores blobs as files below a root directory, addressed by relative path."""

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root or config.UPLOAD_DIR).resolve()

    def _full_path(self, relative_path: str) -> Path:
        full = (self.root / relative_path).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValueError(f"Path escapes blob store root: {relative_path}")
        return full

    def put(self, relative_path: str, data: bytes) -> str:
        full = self._full_path(relative_path)
        full.parent.mkdir(parents=True, exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)
        return relative_path

    def get(self, relative_path: str) -> Optional[bytes]:
        try:
            full = self._full_path(relative_path)
        except ValueError:
            return None
        if not full.is_file():
            return None
        return full.read_bytes()

    def delete_directory(self, relative_prefix: str) -> bool:
        """Remove a directory and everything below it. Returns False if absent."""
        full = self._full_path(relative_prefix)
        if full == self.root:
            raise ValueError("Refusing to delete the blob store root")
        if not full.exists():
            return False
        shutil.rmtree(full)
        logger.info(f"Deleted blob directory: {relative_prefix}")
        return True
