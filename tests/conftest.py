"""Shared test fixtures and helpers."""

import subprocess
from pathlib import Path

import pytest


def run_git(repo: Path, *args: str) -> str:
    """Run a git command in ``repo`` and return its stdout."""
    result = subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def init_repo(path: Path) -> Path:
    """Initialize an empty repository with a local identity."""
    path.mkdir(parents=True, exist_ok=True)
    run_git(path, "init", "-q")
    run_git(path, "config", "user.email", "test@example.com")
    run_git(path, "config", "user.name", "Test User")
    run_git(path, "config", "commit.gpgsign", "false")
    return path


def commit_all(repo: Path, message: str) -> str:
    """Stage everything, commit, and return the new HEAD sha."""
    run_git(repo, "add", "-A")
    run_git(repo, "commit", "-q", "-m", message)
    return run_git(repo, "rev-parse", "HEAD")


def write_file(repo: Path, relative: str, content: str) -> Path:
    path = repo / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def empty_repo(tmp_path: Path) -> Path:
    """A repository without any commit."""
    return init_repo(tmp_path / "repo")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository with one source class and its test committed."""
    repo = init_repo(tmp_path / "repo")
    write_file(repo, "src/org/foo/MyClass.java", "class MyClass { }\n")
    write_file(repo, "test/org/foo/MyClassTest.java", "class MyClassTest { }\n")
    commit_all(repo, "Initial commit")
    return repo
