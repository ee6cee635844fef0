"""
Scratch file allocation for pipeline tasks.
"""

import logging
import os
import shutil
import tempfile
import uuid
from typing import Optional, Set

from config import SCRATCH_DIR, TEMP_DIR_PREFIX
from models import ScratchKind

logger = logging.getLogger(__name__)


class ScratchAllocator:
    """Issues unique scratch paths inside one private directory and deletes them."""

    def __init__(self, root: Optional[str] = None, prefix: str = TEMP_DIR_PREFIX):
        base = root if root is not None else (SCRATCH_DIR or None)
        if base:
            os.makedirs(base, exist_ok=True)
        self.directory = tempfile.mkdtemp(prefix=prefix, dir=base)
        self._live: Set[str] = set()

    @property
    def live_paths(self) -> Set[str]:
        return set(self._live)

    def allocate(self, kind: ScratchKind) -> str:
        """Return a fresh path for ``kind``; the file itself is not created."""
        while True:
            path = os.path.join(self.directory, f"{kind.value}_{uuid.uuid4().hex}{kind.extension}")
            if path not in self._live and not os.path.exists(path):
                break
        self._live.add(path)
        return path

    def release(self, path: Optional[str]) -> bool:
        """Delete ``path`` if it exists. Missing files are not an error."""
        if not path:
            return False

        self._live.discard(path)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as error:
            logger.warning("Failed to remove scratch file %s: %s", path, error)
            return False
        return True

    def close(self) -> None:
        """Release every live path and drop the scratch directory."""
        for path in list(self._live):
            self.release(path)
        try:
            if os.path.isdir(self.directory):
                shutil.rmtree(self.directory)
        except OSError as error:
            logger.warning("Failed to remove scratch directory %s: %s", self.directory, error)
