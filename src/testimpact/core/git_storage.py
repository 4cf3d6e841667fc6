"""Git-backed storage for test impact reports.

Reports live in a git note (``refs/notes/tests`` by default) attached to the
commit they were recorded on. Reading walks the first-parent ancestry of HEAD
to the nearest annotated commit, which becomes the baseline every change is
measured against.
"""

import logging
import os
import subprocess
from pathlib import Path

from testimpact.core.lock import NotesLock
from testimpact.core.models import RepositoryState
from testimpact.core.settings import settings

logger = logging.getLogger(__name__)

FALLBACK_IDENTITY = {
    "GIT_AUTHOR_NAME": "testimpact",
    "GIT_AUTHOR_EMAIL": "testimpact@localhost",
    "GIT_COMMITTER_NAME": "testimpact",
    "GIT_COMMITTER_EMAIL": "testimpact@localhost",
}


class StorageError(Exception):
    """A git command required by the storage failed."""


def parse_status_paths(output: bytes) -> set[str]:
    """Extract every path from ``git status --porcelain -z`` output.

    Renames and copies carry a second NUL-separated entry with the source
    path; both sides are reported.
    """
    paths: set[str] = set()
    entries = output.decode("utf-8", errors="replace").split("\0")
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.add(path)
        if "R" in status or "C" in status:
            if index < len(entries) and entries[index]:
                paths.add(entries[index])
            index += 1
    return paths


def split_nul(output: bytes) -> set[str]:
    return {item for item in output.decode("utf-8", errors="replace").split("\0") if item}


class GitStorage:
    """Reads repository state and reads/writes report notes through the git CLI."""

    def __init__(self, working_dir: Path | str | None = None, notes_ref: str | None = None):
        self.working_dir = Path(working_dir) if working_dir is not None else Path.cwd()
        self.notes_ref = notes_ref or settings.notes_ref

    def _git(
        self, *args: str, input: bytes | None = None, env: dict[str, str] | None = None
    ) -> subprocess.CompletedProcess[bytes]:
        return subprocess.run(
            ["git", *args],
            cwd=self.working_dir,
            capture_output=True,
            input=input,
            env=env,
            timeout=settings.git_timeout,
        )

    def _git_output(self, *args: str, input: bytes | None = None, env: dict[str, str] | None = None) -> str:
        """Run a git command that must succeed and return its stripped stdout."""
        return self._git_bytes(*args, input=input, env=env).decode("utf-8", errors="replace").strip()

    def get_head_commit(self) -> str | None:
        """Get the commit HEAD points to, or None outside a repository or before the first commit."""
        try:
            result = self._git("rev-parse", "--is-inside-work-tree")
            if result.returncode != 0 or result.stdout.strip() != b"true":
                return None

            result = self._git("rev-parse", "--verify", "--quiet", "HEAD^{commit}")
            if result.returncode != 0:
                return None

            return result.stdout.decode("ascii").strip() or None

        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError):
            return None

    def get_state(self) -> RepositoryState | None:
        """Read the baseline report and every file changed since it.

        Returns:
            The repository state, or None when there is no repository or no commit
        """
        head = self.get_head_commit()
        if head is None:
            logger.debug(f"No commit found in {self.working_dir}")
            return None

        uncommitted = self.get_uncommitted_files()

        if settings.fetch_remote_notes:
            self.fetch_notes()

        baseline = self.find_baseline_commit(head)
        if baseline is None:
            logger.debug(f"No commit reachable from {head[:12]} carries a note in {self.notes_ref}")
            return RepositoryState(uncommitted=frozenset(uncommitted))

        notes = self.read_notes(baseline)
        modified = self.get_modified_files(baseline, head)
        logger.debug(
            f"Baseline {baseline[:12]}: {len(modified)} modified, {len(uncommitted)} uncommitted file(s)"
        )

        return RepositoryState(
            baseline_commit=baseline,
            notes=notes,
            modified=frozenset(modified),
            uncommitted=frozenset(uncommitted),
        )

    def get_uncommitted_files(self) -> set[str]:
        """Paths with staged, unstaged or untracked changes."""
        output = self._git_bytes("status", "--porcelain=v1", "-z", "--untracked-files=all")
        return parse_status_paths(output)

    def is_clean(self) -> bool:
        """Check the working tree right now, untracked files included."""
        return not self.get_uncommitted_files()

    def get_modified_files(self, base: str, head: str = "HEAD") -> set[str]:
        """Paths differing between the trees of two commits."""
        if base == head:
            return set()
        output = self._git_bytes("diff", "--name-only", "--no-renames", "-z", base, head)
        return split_nul(output)

    def get_annotated_commits(self) -> dict[str, str]:
        """Map of annotated commit to note blob for every note in the notes ref."""
        try:
            result = self._git("notes", "--ref", self.notes_ref, "list")
        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
            raise StorageError(f"Unable to list notes in {self.notes_ref}: {e}") from e

        if result.returncode != 0:
            return {}

        annotated = {}
        for line in result.stdout.decode("ascii", errors="replace").splitlines():
            parts = line.split()
            if len(parts) == 2:
                blob, commit = parts
                annotated[commit] = blob
        return annotated

    def find_baseline_commit(self, head: str = "HEAD") -> str | None:
        """Walk first parents from ``head`` until a commit with a note is found."""
        annotated = self.get_annotated_commits()
        if not annotated:
            return None

        args = ["rev-list", "--first-parent"]
        if settings.max_ancestor_walk > 0:
            args.append(f"--max-count={settings.max_ancestor_walk}")
        args.append(head)

        for commit in self._git_output(*args).splitlines():
            if commit in annotated:
                return commit
        return None

    def read_notes(self, commit: str = "HEAD") -> str:
        """Get the note attached to a commit, or an empty string if it has none."""
        try:
            result = self._git("notes", "--ref", self.notes_ref, "list", commit)
        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
            raise StorageError(f"Unable to read the note of {commit}: {e}") from e

        if result.returncode != 0:
            return ""

        blob = result.stdout.decode("ascii").strip()
        return self._git_bytes("cat-file", "blob", blob).decode("utf-8")

    def write_notes(self, notes: str) -> bool:
        """Attach ``notes`` to HEAD if the working tree is clean right now.

        The blob is written as a git object before the notes ref moves, so a
        failure leaves the previous note in place.

        Returns:
            True if the note was written, False if the write was skipped
        """
        if not self.is_clean():
            logger.info("Test reports not stored: the working tree has uncommitted or untracked changes")
            return False

        head = self._git_output("rev-parse", "--verify", "HEAD^{commit}")
        env = self._notes_env()

        with NotesLock(self.get_git_common_dir()).acquire() as acquired:
            if not acquired:
                raise StorageError(f"Timed out waiting for the notes lock in {self.working_dir}")

            blob = self._git_output("hash-object", "-w", "--stdin", input=notes.encode("utf-8"))
            self._git_output("notes", "--ref", self.notes_ref, "add", "-f", "-C", blob, head, env=env)

        logger.info(f"Test reports stored in {self.notes_ref} for commit {head[:12]} ({len(notes)} chars)")
        return True

    def remove_notes(self) -> None:
        """Delete the note attached to HEAD, if any."""
        env = self._notes_env()
        with NotesLock(self.get_git_common_dir()).acquire() as acquired:
            if not acquired:
                raise StorageError(f"Timed out waiting for the notes lock in {self.working_dir}")
            self._git_output("notes", "--ref", self.notes_ref, "remove", "--ignore-missing", "HEAD", env=env)

    def fetch_notes(self) -> bool:
        """Fetch the notes ref from the configured remote when it advertises one.

        Transport failures are logged and leave the local ref untouched.
        """
        remote = settings.remote_name
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            remotes = self._git("remote")
            if remotes.returncode != 0 or remote not in remotes.stdout.decode("utf-8").split():
                return False

            advertised = self._git("ls-remote", remote, self.notes_ref, env=env)
            if advertised.returncode != 0:
                logger.warning(
                    f"Error accessing remote {remote}: {advertised.stderr.decode('utf-8', errors='replace').strip()}"
                )
                return False
            if not advertised.stdout.strip():
                return False

            fetched = self._git("fetch", remote, f"{self.notes_ref}:{self.notes_ref}", env=env)
            if fetched.returncode != 0:
                logger.warning(
                    f"Unable to fetch {self.notes_ref} from {remote}: "
                    f"{fetched.stderr.decode('utf-8', errors='replace').strip()}"
                )
                return False

        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
            logger.warning(f"Error accessing remote {remote}: {e}")
            return False

        return True

    def get_git_common_dir(self) -> Path:
        path = Path(self._git_output("rev-parse", "--git-common-dir"))
        if not path.is_absolute():
            path = self.working_dir / path
        return path.resolve()

    def _git_bytes(self, *args: str, input: bytes | None = None, env: dict[str, str] | None = None) -> bytes:
        try:
            result = self._git(*args, input=input, env=env)
        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError) as e:
            raise StorageError(f"git {' '.join(args)} failed: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise StorageError(f"git {' '.join(args)} exited with {result.returncode}: {stderr}")

        return result.stdout

    def _notes_env(self) -> dict[str, str] | None:
        """Environment for commands that commit to the notes ref.

        Falls back to a fixed identity only when the repository has none configured.
        """
        try:
            name = self._git("config", "user.name")
            email = self._git("config", "user.email")
        except (subprocess.TimeoutExpired, subprocess.SubprocessError, OSError):
            return None

        if name.returncode == 0 and email.returncode == 0:
            return None

        env = dict(os.environ)
        for key, value in FALLBACK_IDENTITY.items():
            env.setdefault(key, value)
        return env
