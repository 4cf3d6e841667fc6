"""Decides which tests can be skipped and accumulates new footprints.

One analyzer serves every module of a build against one repository. It reads
the baseline report once, in the background, drops every test touched by a
change since that baseline, and then answers queries from concurrent test
runners until the build ends.
"""

import logging
import os
import threading
from collections.abc import Iterable

from testimpact.core import report_codec
from testimpact.core.git_storage import GitStorage, StorageError
from testimpact.core.models import AnalyzerStatus, ImpactReport
from testimpact.core.settings import settings

logger = logging.getLogger(__name__)
build_logger = logging.getLogger("testimpact.build")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def class_to_path(class_name: str) -> str:
    """``org.foo.Bar$Inner`` -> ``org/foo/Bar``."""
    outer = class_name.split("$", 1)[0]
    return outer.replace(".", "/")


def strip_extension(path: str) -> str:
    return os.path.splitext(path)[0]


def matches_file(class_name: str, path: str) -> bool:
    """True if ``path`` is the source file of ``class_name``."""
    return strip_extension(path).endswith(class_to_path(class_name))


def is_impacted(test: str, classes: Iterable[str], changed_files: Iterable[str]) -> bool:
    """True if the test itself or any class it referenced lives in a changed file."""
    files = list(changed_files)
    return any(matches_file(name, path) for name in (test, *classes) for path in files)


def source_files(paths: Iterable[str], compiled_suffixes: Iterable[str] | None = None) -> set[str]:
    """Drop build output from a set of changed paths."""
    suffixes = tuple(settings.compiled_suffixes if compiled_suffixes is None else compiled_suffixes)
    return {path for path in paths if not path.endswith(suffixes)}


class ImpactAnalyzer:
    """In-memory view of the persisted reports for one repository."""

    def __init__(self, storage: GitStorage, start: bool = True):
        self.storage = storage
        self.status = AnalyzerStatus.PENDING
        self.initialization_error: Exception | None = None
        self.baseline_commit: str | None = None
        self.changed_files: set[str] = set()

        self._ready = threading.Event()
        self._reports_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()

        self._report = ImpactReport()
        self._pending: dict[str, dict[str, set[str]]] = {}

        self._init_thread: threading.Thread | None = None
        if start:
            self.start()

    def start(self) -> None:
        """Run initialization once, on a background thread."""
        if self._init_thread is not None:
            return
        self._init_thread = threading.Thread(target=self._initialize, name="testimpact-init", daemon=True)
        self._init_thread.start()

    def wait_until_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    @property
    def usable(self) -> bool:
        return self.status == AnalyzerStatus.USABLE

    def _initialize(self) -> None:
        try:
            state = self.storage.get_state()
            if state is None:
                logger.warning(f"No git history in {self.storage.working_dir}, test impact analysis disabled")
                self.status = AnalyzerStatus.UNUSABLE
                return

            try:
                report = report_codec.decode(state.notes)
            except report_codec.ReportFormatError as e:
                logger.error(
                    f"Test reports on {state.baseline_commit[:12]} are corrupt, running every test "
                    f"and replacing them on the next clean write: {e}"
                )
                self.initialization_error = e
                report = ImpactReport()

            self.baseline_commit = state.baseline_commit
            self.changed_files = source_files(state.changed_files)

            pruned = self._prune(report, self.changed_files)
            with self._reports_lock:
                self._report = report

            if state.uncommitted:
                logger.info("Working tree has uncommitted changes, test reports will not be stored")
            logger.info(
                f"Loaded {report.test_count()} test report(s) from "
                f"{state.baseline_commit[:12] if state.baseline_commit else 'no baseline'}, "
                f"{pruned} impacted by {len(self.changed_files)} changed file(s)"
            )
            self.status = AnalyzerStatus.USABLE

        except Exception as e:
            logger.error(f"Unable to load test reports: {e}", exc_info=True)
            self.initialization_error = e
            self.status = AnalyzerStatus.UNUSABLE

        finally:
            self._ready.set()

    @staticmethod
    def _prune(report: ImpactReport, changed_files: set[str]) -> int:
        """Remove every test impacted by ``changed_files``.

        Returns:
            Number of removed tests
        """
        if not changed_files:
            return 0

        pruned = 0
        for project, tests in report.footprints.items():
            impacted = [test for test, classes in tests.items() if is_impacted(test, classes, changed_files)]
            for test in impacted:
                del tests[test]
                logger.debug(f"{project}: {test} impacted by local changes")
            pruned += len(impacted)
        return pruned

    def disabled_tests(self, project: str, digest: str) -> set[str]:
        """Tests of ``project`` that can be skipped.

        Nothing is disabled on a first run or when the project's dependencies
        changed since its footprints were recorded.
        """
        self._ready.wait()

        with self._reports_lock:
            recorded = self._report.digests.get(project)
            if recorded is None:
                disabled = set()
                outcome = "no previous run"
            elif recorded != digest:
                logger.warning(f"{project}: dependencies have changed, ignoring existing test reports")
                disabled = set()
                outcome = "0 tests disabled"
            else:
                disabled = set(self._report.footprints.get(project, {}))
                outcome = f"{len(disabled)} tests disabled"

        logger.info(f"disabled_tests({project}) => {outcome}")
        return disabled

    def add_report(self, project: str, test: str, classes: Iterable[str]) -> None:
        """Accumulate referenced classes for a test until the project's report is written."""
        self._ready.wait()
        if not self.usable:
            return
        classes = list(classes)

        with self._pending_lock:
            self._pending.setdefault(project, {}).setdefault(test, set()).update(classes)

        logger.debug(f"add_report({project}, {test}) <= {len(classes)} class(es)")

    def write_report(self, project: str, digest: str) -> bool:
        """Merge the project's pending footprints and persist the whole report.

        Skipped when the repository is unusable, the working tree is dirty, or
        nothing was reported for the project. The in-memory report only changes
        once the note has been written.

        Returns:
            True if a note was written
        """
        self._ready.wait()

        if not self.usable:
            logger.debug(f"write_report({project}) => skipped, no usable repository state")
            return False

        try:
            if not self.storage.is_clean():
                logger.info(f"write_report({project}) => skipped as the git repository is not clean")
                return False
        except StorageError as e:
            logger.error(f"write_report({project}) => unable to check repository status: {e}")
            return False

        with self._pending_lock:
            pending = self._pending.pop(project, None)

        if not pending:
            logger.debug(f"write_report({project}) => nothing to write")
            return False

        # Writers are serialized; readers only block for the copy and the swap.
        with self._write_lock:
            with self._reports_lock:
                merged = self._report.copy_deep()
            tests = merged.footprints.setdefault(project, {})
            for test, classes in pending.items():
                tests.setdefault(test, set()).update(classes)
            merged.digests[project] = digest

            try:
                text = report_codec.encode(merged)
                written = self.storage.write_notes(text)
            except Exception as e:
                logger.error(f"Error writing test reports for {project}: {e}", exc_info=True)
                written = False

            if written:
                with self._reports_lock:
                    self._report = merged
                logger.info(f"write_report({project}) => {len(text)} chars written")

        if not written:
            self._restore_pending(project, pending)
        return written

    def _restore_pending(self, project: str, pending: dict[str, set[str]]) -> None:
        with self._pending_lock:
            tests = self._pending.setdefault(project, {})
            for test, classes in pending.items():
                tests.setdefault(test, set()).update(classes)

    def log(self, level: str, message: str) -> None:
        """Forward a message from a test runner to the build log."""
        numeric = LOG_LEVELS.get(level.lower())
        if numeric is None:
            raise ValueError(f"Unknown log level '{level}'")
        build_logger.log(numeric, message)

    def pending_projects(self) -> list[str]:
        with self._pending_lock:
            return sorted(self._pending)

    def snapshot(self) -> ImpactReport:
        """Deep copy of the current report."""
        self._ready.wait()
        with self._reports_lock:
            return self._report.copy_deep()
