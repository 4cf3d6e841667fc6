"""Tests for ImpactAnalyzer."""

import logging
import threading
from unittest.mock import MagicMock

import pytest
from conftest import commit_all, write_file

from testimpact.core import report_codec
from testimpact.core.git_storage import GitStorage, StorageError
from testimpact.core.impact_analyzer import (
    ImpactAnalyzer,
    class_to_path,
    is_impacted,
    matches_file,
    source_files,
)
from testimpact.core.models import AnalyzerStatus, ImpactReport, RepositoryState


def make_storage(state: RepositoryState | None, clean: bool = True) -> MagicMock:
    storage = MagicMock(spec=GitStorage)
    storage.working_dir = "/repo"
    storage.get_state.return_value = state
    storage.is_clean.return_value = clean
    storage.write_notes.return_value = True
    return storage


def baseline_state(report: ImpactReport, modified=(), uncommitted=()) -> RepositoryState:
    return RepositoryState(
        baseline_commit="a" * 40,
        notes=report_codec.encode(report),
        modified=frozenset(modified),
        uncommitted=frozenset(uncommitted),
    )


def ready(storage: MagicMock) -> ImpactAnalyzer:
    analyzer = ImpactAnalyzer(storage)
    assert analyzer.wait_until_ready(5)
    return analyzer


RECORDED = ImpactReport(
    footprints={
        "g:app": {
            "org.foo.BarTest": {"org.foo.Bar$Inner"},
            "org.foo.BazTest": {"org.foo.Baz"},
        },
        "g:lib": {"org.lib.UtilTest": {"org.lib.Util"}},
    },
    digests={"g:app": "D-APP", "g:lib": "D-LIB"},
)


class TestMatching:
    def test_class_to_path__drops_nested_class_suffix(self):
        assert class_to_path("org.foo.Bar$Inner$Deeper") == "org/foo/Bar"

    def test_matches_file__ignores_extension(self):
        assert matches_file("org.foo.Bar$Inner", "src/main/java/org/foo/Bar.java")
        assert matches_file("org.foo.Bar", "src/main/kotlin/org/foo/Bar.kt")

    def test_matches_file__different_class_does_not_match(self):
        assert not matches_file("org.foo.Bar$Inner", "src/main/java/org/foo/BarOther.java")

    def test_matches_file__suffix_match_is_literal(self):
        # Paths ending with the class path match even across a name boundary.
        assert matches_file("foo.Bar", "src/org/xfoo/Bar.java")

    def test_is_impacted__test_file_itself_changed(self):
        assert is_impacted("org.foo.BarTest", set(), {"test/org/foo/BarTest.java"})

    def test_is_impacted__no_changes(self):
        assert not is_impacted("org.foo.BarTest", {"org.foo.Bar"}, set())

    def test_is_impacted__referenced_class_changed(self):
        changed = iter(["docs/readme.md", "src/org/foo/Bar.java"])

        assert is_impacted("org.foo.BarTest", ["org.foo.Other", "org.foo.Bar$Inner"], changed)
        assert not is_impacted("org.foo.BarTest", ["org.foo.Other"], {"src/org/foo/Bar.java"})

    def test_source_files__drops_build_output(self):
        paths = {"src/A.java", "target/classes/A.class", "pkg/__pycache__/m.cpython-312.pyc"}

        assert source_files(paths) == {"src/A.java"}
        assert source_files(paths, compiled_suffixes=[]) == paths


class TestInitialization:
    def test_initialize__no_repository_is_unusable(self):
        analyzer = ready(make_storage(None))

        assert analyzer.status == AnalyzerStatus.UNUSABLE
        assert analyzer.initialization_error is None
        assert analyzer.disabled_tests("g:app", "D-APP") == set()

    def test_initialize__no_baseline_is_usable_and_empty(self):
        analyzer = ready(make_storage(RepositoryState(uncommitted=frozenset({"x.txt"}))))

        assert analyzer.usable
        assert analyzer.baseline_commit is None
        assert analyzer.snapshot() == ImpactReport()

    def test_initialize__prunes_impacted_tests(self):
        storage = make_storage(
            baseline_state(RECORDED, modified={"src/main/java/org/foo/Bar.java"}, uncommitted={"lib/org/lib/Util.kt"})
        )

        analyzer = ready(storage)

        assert analyzer.usable
        assert analyzer.baseline_commit == "a" * 40
        assert analyzer.snapshot().footprints == {
            "g:app": {"org.foo.BazTest": {"org.foo.Baz"}},
            "g:lib": {},
        }
        assert analyzer.snapshot().digests == RECORDED.digests

    def test_initialize__compiled_files_do_not_prune(self):
        storage = make_storage(baseline_state(RECORDED, uncommitted={"target/classes/org/foo/Bar.class"}))

        analyzer = ready(storage)

        assert analyzer.disabled_tests("g:app", "D-APP") == {"org.foo.BarTest", "org.foo.BazTest"}

    def test_initialize__corrupt_report_starts_empty_and_stays_writable(self, caplog):
        state = RepositoryState(baseline_commit="b" * 40, notes="{broken", modified=frozenset())
        storage = make_storage(state)

        with caplog.at_level(logging.ERROR):
            analyzer = ready(storage)

        assert analyzer.usable
        assert isinstance(analyzer.initialization_error, report_codec.ReportFormatError)
        assert "are corrupt, running every test" in caplog.text
        assert analyzer.snapshot() == ImpactReport()
        assert analyzer.disabled_tests("g:app", "D-APP") == set()

        analyzer.add_report("g:app", "org.foo.BarTest", ["org.foo.Bar"])
        assert analyzer.write_report("g:app", "D-APP") is True
        written = report_codec.decode(storage.write_notes.call_args.args[0])
        assert written.footprints == {"g:app": {"org.foo.BarTest": {"org.foo.Bar"}}}

    def test_initialize__storage_failure_is_unusable(self):
        storage = make_storage(None)
        storage.get_state.side_effect = StorageError("git exploded")

        analyzer = ready(storage)

        assert analyzer.status == AnalyzerStatus.UNUSABLE
        assert str(analyzer.initialization_error) == "git exploded"

    def test_operations__block_until_initialized(self):
        gate = threading.Event()
        storage = make_storage(baseline_state(RECORDED))
        original = storage.get_state.return_value
        storage.get_state.side_effect = lambda: gate.wait(5) and original

        analyzer = ImpactAnalyzer(storage)
        results = []
        waiter = threading.Thread(target=lambda: results.append(analyzer.disabled_tests("g:lib", "D-LIB")))
        waiter.start()
        waiter.join(0.2)

        assert waiter.is_alive()
        assert analyzer.status == AnalyzerStatus.PENDING

        gate.set()
        waiter.join(5)
        assert results == [{"org.lib.UtilTest"}]

    def test_start__is_idempotent(self):
        storage = make_storage(None)
        analyzer = ImpactAnalyzer(storage, start=False)

        analyzer.start()
        analyzer.start()
        analyzer.wait_until_ready(5)

        storage.get_state.assert_called_once()


class TestDisabledTests:
    def test_disabled_tests__first_run(self, caplog):
        analyzer = ready(make_storage(baseline_state(RECORDED)))

        with caplog.at_level(logging.INFO):
            assert analyzer.disabled_tests("g:new", "D") == set()

        assert "disabled_tests(g:new) => no previous run" in caplog.text

    def test_disabled_tests__digest_mismatch_disables_nothing(self, caplog):
        analyzer = ready(make_storage(baseline_state(RECORDED)))

        with caplog.at_level(logging.INFO):
            assert analyzer.disabled_tests("g:app", "CHANGED") == set()

        assert "dependencies have changed" in caplog.text
        assert "disabled_tests(g:app) => 0 tests disabled" in caplog.text
        assert analyzer.snapshot().footprints["g:app"] == RECORDED.footprints["g:app"]

    def test_disabled_tests__matching_digest_returns_surviving_tests(self, caplog):
        analyzer = ready(make_storage(baseline_state(RECORDED)))

        with caplog.at_level(logging.INFO):
            disabled = analyzer.disabled_tests("g:app", "D-APP")

        assert disabled == {"org.foo.BarTest", "org.foo.BazTest"}
        assert "disabled_tests(g:app) => 2 tests disabled" in caplog.text

    def test_disabled_tests__returns_a_copy(self):
        analyzer = ready(make_storage(baseline_state(RECORDED)))

        analyzer.disabled_tests("g:lib", "D-LIB").clear()

        assert analyzer.disabled_tests("g:lib", "D-LIB") == {"org.lib.UtilTest"}


class TestReports:
    def test_add_report__unions_classes(self):
        analyzer = ready(make_storage(RepositoryState()))

        analyzer.add_report("g:app", "T1", ["a.A", "b.B"])
        analyzer.add_report("g:app", "T1", ["b.B", "c.C"])
        analyzer.add_report("g:app", "T2", [])

        assert analyzer._pending == {"g:app": {"T1": {"a.A", "b.B", "c.C"}, "T2": set()}}
        assert analyzer.pending_projects() == ["g:app"]

    def test_add_report__concurrent_callers(self):
        analyzer = ready(make_storage(RepositoryState()))

        def report(worker: int) -> None:
            for i in range(200):
                analyzer.add_report("g:app", f"T{i % 10}", [f"c.W{worker}C{i}"])

        threads = [threading.Thread(target=report, args=(worker,)) for worker in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        pending = analyzer._pending["g:app"]
        assert len(pending) == 10
        assert sum(len(classes) for classes in pending.values()) == 8 * 200

    def test_write_report__persists_merged_report(self):
        storage = make_storage(baseline_state(RECORDED))
        analyzer = ready(storage)

        analyzer.add_report("g:lib", "org.lib.NewTest", ["org.lib.New"])
        assert analyzer.write_report("g:lib", "D-LIB-2") is True

        written = report_codec.decode(storage.write_notes.call_args.args[0])
        assert written.footprints["g:lib"] == {
            "org.lib.UtilTest": {"org.lib.Util"},
            "org.lib.NewTest": {"org.lib.New"},
        }
        assert written.digests == {"g:app": "D-APP", "g:lib": "D-LIB-2"}
        assert written.footprints["g:app"] == RECORDED.footprints["g:app"]
        assert analyzer.snapshot() == written
        assert analyzer.pending_projects() == []

    def test_write_report__replaces_footprint_of_rerun_test(self):
        storage = make_storage(baseline_state(RECORDED, modified={"src/org/lib/Util.java"}))
        analyzer = ready(storage)

        analyzer.add_report("g:lib", "org.lib.UtilTest", ["org.lib.Util", "org.lib.Helper"])
        analyzer.write_report("g:lib", "D-LIB")

        assert analyzer.snapshot().footprints["g:lib"] == {"org.lib.UtilTest": {"org.lib.Util", "org.lib.Helper"}}

    def test_write_report__dirty_tree_keeps_everything_in_memory(self, caplog):
        storage = make_storage(baseline_state(RECORDED), clean=False)
        analyzer = ready(storage)
        analyzer.add_report("g:lib", "T", ["c.C"])

        with caplog.at_level(logging.INFO):
            assert analyzer.write_report("g:lib", "D-LIB") is False

        assert "skipped as the git repository is not clean" in caplog.text
        storage.write_notes.assert_not_called()
        assert analyzer.pending_projects() == ["g:lib"]

    def test_write_report__nothing_pending(self):
        storage = make_storage(baseline_state(RECORDED))
        analyzer = ready(storage)

        assert analyzer.write_report("g:app", "D-APP") is False
        storage.write_notes.assert_not_called()

    def test_write_report__unusable_analyzer_writes_nothing(self):
        storage = make_storage(None)
        analyzer = ready(storage)
        analyzer.add_report("g:app", "T", ["c.C"])

        assert analyzer.pending_projects() == []
        assert analyzer.write_report("g:app", "D") is False
        storage.is_clean.assert_not_called()
        storage.write_notes.assert_not_called()

    def test_write_report__readers_do_not_wait_for_git(self):
        entered = threading.Event()
        release = threading.Event()

        def slow_write(text: str) -> bool:
            entered.set()
            release.wait(5)
            return True

        storage = make_storage(baseline_state(RECORDED))
        storage.write_notes.side_effect = slow_write
        analyzer = ready(storage)
        analyzer.add_report("g:lib", "org.lib.NewTest", ["org.lib.New"])

        writer = threading.Thread(target=analyzer.write_report, args=("g:lib", "D-LIB"))
        writer.start()
        assert entered.wait(5)

        results = []
        reader = threading.Thread(target=lambda: results.append(analyzer.disabled_tests("g:app", "D-APP")))
        reader.start()
        reader.join(2)
        finished_while_writing = not reader.is_alive()

        release.set()
        writer.join(5)
        reader.join(5)

        assert finished_while_writing
        assert results == [{"org.foo.BarTest", "org.foo.BazTest"}]
        assert "org.lib.NewTest" in analyzer.snapshot().footprints["g:lib"]

    def test_write_report__concurrent_writers_keep_every_project(self):
        storage = make_storage(baseline_state(RECORDED))
        analyzer = ready(storage)
        projects = [f"g:m{i}" for i in range(6)]
        for project in projects:
            analyzer.add_report(project, f"{project}.Test", [f"{project}.Impl"])

        threads = [threading.Thread(target=analyzer.write_report, args=(project, "D")) for project in projects]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = report_codec.decode(storage.write_notes.call_args.args[0])
        assert set(projects) <= set(final.footprints)
        assert analyzer.snapshot() == final

    def test_write_report__failure_restores_pending_and_report(self, caplog):
        storage = make_storage(baseline_state(RECORDED))
        storage.write_notes.side_effect = StorageError("disk full")
        analyzer = ready(storage)
        analyzer.add_report("g:app", "org.foo.NewTest", ["org.foo.New"])

        with caplog.at_level(logging.ERROR):
            assert analyzer.write_report("g:app", "D-APP-2") is False

        assert "Error writing test reports for g:app" in caplog.text
        assert analyzer.snapshot() == RECORDED
        assert analyzer._pending == {"g:app": {"org.foo.NewTest": {"org.foo.New"}}}

        storage.write_notes.side_effect = None
        assert analyzer.write_report("g:app", "D-APP-2") is True
        assert "org.foo.NewTest" in analyzer.snapshot().footprints["g:app"]

    def test_write_report__status_check_failure_is_logged(self):
        storage = make_storage(baseline_state(RECORDED))
        storage.is_clean.side_effect = StorageError("status failed")
        analyzer = ready(storage)
        analyzer.add_report("g:app", "T", ["c.C"])

        assert analyzer.write_report("g:app", "D") is False
        assert analyzer.pending_projects() == ["g:app"]


class TestLog:
    @pytest.mark.parametrize(
        "level,expected",
        [("debug", logging.DEBUG), ("INFO", logging.INFO), ("warn", logging.WARNING), ("error", logging.ERROR)],
    )
    def test_log__forwards_to_build_logger(self, caplog, level, expected):
        analyzer = ImpactAnalyzer(make_storage(None), start=False)

        with caplog.at_level(logging.DEBUG, logger="testimpact.build"):
            analyzer.log(level, "hello from a runner")

        record = caplog.records[-1]
        assert record.name == "testimpact.build"
        assert record.levelno == expected
        assert record.getMessage() == "hello from a runner"

    def test_log__unknown_level_raises(self):
        analyzer = ImpactAnalyzer(make_storage(None), start=False)

        with pytest.raises(ValueError, match="Unknown log level 'loud'"):
            analyzer.log("loud", "x")


class TestWithRealRepository:
    def test_analyzer__round_trip_through_git_notes(self, git_repo):
        first = ready(GitStorage(git_repo))
        assert first.disabled_tests("g:app", "D") == set()
        first.add_report("g:app", "org.foo.MyClassTest", ["org.foo.MyClass"])
        assert first.write_report("g:app", "D")

        second = ready(GitStorage(git_repo))
        assert second.disabled_tests("g:app", "D") == {"org.foo.MyClassTest"}

        write_file(git_repo, "src/org/foo/MyClass.java", "class MyClass { int changed; }\n")
        third = ready(GitStorage(git_repo))
        assert third.disabled_tests("g:app", "D") == set()
        assert third.snapshot().digests == {"g:app": "D"}

    def test_analyzer__dirty_at_write_time_is_rechecked(self, git_repo):
        analyzer = ready(GitStorage(git_repo))
        analyzer.add_report("g:app", "org.foo.MyClassTest", ["org.foo.MyClass"])

        write_file(git_repo, "scratch.txt", "temporary")
        assert analyzer.write_report("g:app", "D") is False

        (git_repo / "scratch.txt").unlink()
        assert analyzer.write_report("g:app", "D") is True
        assert GitStorage(git_repo).read_notes() == report_codec.encode(analyzer.snapshot())

    def test_analyzer__commits_after_baseline_prune_tests(self, git_repo):
        analyzer = ready(GitStorage(git_repo))
        analyzer.add_report("g:app", "org.foo.MyClassTest", ["org.foo.MyClass"])
        analyzer.write_report("g:app", "D")

        write_file(git_repo, "src/org/foo/MyClass.java", "class MyClass { int x; }\n")
        commit_all(git_repo, "touch MyClass")

        later = ready(GitStorage(git_repo))
        assert later.baseline_commit is not None
        assert later.changed_files == {"src/org/foo/MyClass.java"}
        assert later.disabled_tests("g:app", "D") == set()

    def test_analyzer__corrupt_ancestor_note_is_replaced_by_next_write(self, git_repo):
        GitStorage(git_repo).write_notes("{broken")
        write_file(git_repo, "docs/readme.md", "second commit\n")
        head = commit_all(git_repo, "second")

        analyzer = ready(GitStorage(git_repo))
        assert analyzer.usable
        assert analyzer.disabled_tests("g:app", "D") == set()
        analyzer.add_report("g:app", "org.foo.MyClassTest", ["org.foo.MyClass"])
        assert analyzer.write_report("g:app", "D") is True

        rebuilt = ready(GitStorage(git_repo))
        assert rebuilt.baseline_commit == head
        assert rebuilt.initialization_error is None
        assert rebuilt.disabled_tests("g:app", "D") == {"org.foo.MyClassTest"}
