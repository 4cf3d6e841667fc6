"""File-based locking for notes writes shared by several build processes."""

import fcntl
import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from testimpact.core.settings import settings

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class NotesLock:
    """Acquires an exclusive lock file inside a repository's git directory.

    Every process of a build that writes to the notes ref locks the same file,
    so concurrent ``git notes add`` calls never race on the ref update.
    """

    def __init__(self, git_dir: Path, timeout: float | None = None):
        self.timeout = settings.lock_timeout if timeout is None else timeout
        self.lock_file_path = Path(git_dir) / "testimpact-notes.lock"

    def _try_lock(self, handle) -> bool:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    @contextmanager
    def acquire(self) -> Generator[bool]:
        """Hold the lock for the duration of the block.

        Yields:
            True if the lock is held, False if ``timeout`` elapsed first
        """
        deadline = time.monotonic() + self.timeout
        with open(self.lock_file_path, "a") as handle:
            acquired = self._try_lock(handle)
            while not acquired and time.monotonic() < deadline:
                time.sleep(POLL_INTERVAL)
                acquired = self._try_lock(handle)

            if not acquired:
                logger.debug(f"Gave up waiting for {self.lock_file_path} after {self.timeout}s")

            try:
                yield acquired
            finally:
                if acquired:
                    fcntl.flock(handle, fcntl.LOCK_UN)
