"""One coordination server per repository root for the duration of a build."""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from testimpact.core.client import CoordinationClient
from testimpact.core.git_storage import GitStorage
from testimpact.core.impact_analyzer import ImpactAnalyzer
from testimpact.core.server import CoordinationServer

logger = logging.getLogger(__name__)


def find_repository_root(start: Path | str | None = None) -> Path | None:
    """Walk up from ``start`` to the first directory containing ``.git``."""
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


@dataclass(frozen=True)
class ExecutionContext:
    """What a command needs to act on one repository."""

    repository_root: Path
    storage: GitStorage
    client: CoordinationClient | None = None

    @classmethod
    def for_directory(cls, directory: Path | str | None = None, port: int | None = None) -> "ExecutionContext":
        """Build a context for the repository containing ``directory``.

        Raises:
            ValueError: If ``directory`` is not inside a git repository
        """
        root = find_repository_root(directory)
        if root is None:
            raise ValueError(f"{Path(directory or Path.cwd()).resolve()} is not inside a git repository")
        client = CoordinationClient(port) if port is not None else None
        return cls(repository_root=root, storage=GitStorage(root), client=client)


class AnalyzerRegistry:
    """Maps canonical repository roots to their running coordination server."""

    def __init__(self) -> None:
        self._servers: dict[Path, CoordinationServer] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(root: Path | str) -> Path:
        return Path(root).resolve()

    def get_or_create(self, root: Path | str, port: int | None = None) -> CoordinationServer:
        """Return the server for ``root``, starting one on first use.

        ``port`` only applies when the server is created.
        """
        key = self._key(root)
        with self._lock:
            server = self._servers.get(key)
            if server is None:
                logger.info(f"Creating test impact server for git repository {key}")
                server = CoordinationServer(ImpactAnalyzer(GitStorage(key)), port=port).start()
                self._servers[key] = server
            return server

    def get(self, root: Path | str) -> CoordinationServer | None:
        with self._lock:
            return self._servers.get(self._key(root))

    def close(self, root: Path | str) -> None:
        with self._lock:
            server = self._servers.pop(self._key(root), None)
        if server is not None:
            server.stop()

    def close_all(self) -> None:
        with self._lock:
            servers = list(self._servers.values())
            self._servers.clear()
        for server in servers:
            server.stop()

    def __len__(self) -> int:
        with self._lock:
            return len(self._servers)

    def __enter__(self) -> "AnalyzerRegistry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close_all()
