"""Dependency fingerprints used to invalidate stale footprints."""

import hashlib
from collections.abc import Iterable
from pathlib import Path


def compute_digest(artifacts: Iterable[str]) -> str:
    """Fingerprint a resolved dependency list.

    Args:
        artifacts: Dependency coordinates in resolution order

    Returns:
        Uppercase hex MD5 of the space-joined coordinates
    """
    joined = " ".join(artifacts)
    return hashlib.md5(joined.encode("utf-8"), usedforsecurity=False).hexdigest().upper()


def digest_files(paths: Iterable[Path | str]) -> str:
    """Fingerprint dependency manifests (lock files, requirements) by path and content."""
    entries = []
    for path in sorted(Path(p) for p in paths):
        content = hashlib.sha256(path.read_bytes()).hexdigest()
        entries.append(f"{path.as_posix()}@{content}")
    return compute_digest(entries)
