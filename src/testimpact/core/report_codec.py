"""Compact text encoding of impact reports.

A report is stored as a JSON object: ``digests`` maps project to dependency
fingerprint and every other key is a project mapping test id to referenced
classes. Two size optimisations are layered on top:

* dictionary mode: once a class name is referenced more than
  ``DICTIONARY_THRESHOLD`` times, every class name is replaced by a short hex
  index declared in a ``classes`` table, and each test's references become a
  single space-separated string of indices;
* compression: once the JSON exceeds ``COMPRESSION_THRESHOLD`` characters it is
  raw-deflated and base64 encoded. Such text never starts with ``{``.

Both are transparent: ``decode(encode(report)) == report``.
"""

import base64
import json
import zlib
from collections import Counter

from pydantic import TypeAdapter, ValidationError

from testimpact.core.models import ImpactReport

DICTIONARY_THRESHOLD = 1000
COMPRESSION_THRESHOLD = 100_000

CLASSES_KEY = "classes"
DIGESTS_KEY = "digests"

MIME_LINE_LENGTH = 76

_digests_adapter = TypeAdapter(dict[str, str])
_dictionary_adapter = TypeAdapter(dict[str, str])
_plain_projects_adapter = TypeAdapter(dict[str, dict[str, list[str]]])
_indexed_projects_adapter = TypeAdapter(dict[str, dict[str, str]])


class ReportFormatError(ValueError):
    """A persisted report could not be parsed."""


def _dumps(document: dict) -> str:
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False)


def count_references(footprints: dict[str, dict[str, set[str]]]) -> Counter[str]:
    """Count how many tests reference each class name, across all projects."""
    counts: Counter[str] = Counter()
    for tests in footprints.values():
        for classes in tests.values():
            counts.update(classes)
    return counts


def needs_dictionary(counts: Counter[str]) -> bool:
    return any(count > DICTIONARY_THRESHOLD for count in counts.values())


def build_dictionary(counts: Counter[str]) -> dict[str, str]:
    """Assign hex indices by descending frequency, ties broken by name.

    Returns:
        Mapping of class name to index
    """
    ordered = sorted(counts, key=lambda name: (-counts[name], name))
    return {name: format(position, "x") for position, name in enumerate(ordered, start=1)}


def _index_sort_key(index: str) -> tuple[int, str]:
    return len(index), index


def encode(report: ImpactReport) -> str:
    """Serialize a report, switching format as its size requires."""
    counts = count_references(report.footprints)

    if needs_dictionary(counts):
        indices = build_dictionary(counts)
        document: dict = {
            CLASSES_KEY: {index: name for name, index in indices.items()},
            DIGESTS_KEY: dict(sorted(report.digests.items())),
        }
        for project in sorted(report.footprints):
            tests = report.footprints[project]
            document[project] = {
                test: " ".join(sorted({indices[name] for name in tests[test]}, key=_index_sort_key))
                for test in sorted(tests)
            }
    else:
        document = {DIGESTS_KEY: dict(sorted(report.digests.items()))}
        for project in sorted(report.footprints):
            tests = report.footprints[project]
            document[project] = {test: sorted(tests[test]) for test in sorted(tests)}

    return compress_if_needed(_dumps(document))


def compress_if_needed(text: str) -> str:
    if len(text) > COMPRESSION_THRESHOLD:
        return compress(text)
    return text


def decode(text: str | None) -> ImpactReport:
    """Parse persisted text back into a report.

    Raises:
        ReportFormatError: If the text is not a valid report in either format
    """
    if text is None or not text.strip():
        return ImpactReport()

    text = text.strip()
    if not text.startswith("{"):
        text = uncompress(text)

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise ReportFormatError(f"Report is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise ReportFormatError(f"Report must be a JSON object, got {type(document).__name__}")

    try:
        digests = _digests_adapter.validate_python(document.pop(DIGESTS_KEY, {}))

        if CLASSES_KEY in document:
            dictionary = _dictionary_adapter.validate_python(document.pop(CLASSES_KEY))
            projects = _indexed_projects_adapter.validate_python(document)
            footprints = {
                project: {test: _resolve_indices(refs, dictionary) for test, refs in tests.items()}
                for project, tests in projects.items()
            }
        else:
            projects = _plain_projects_adapter.validate_python(document)
            footprints = {
                project: {test: set(refs) for test, refs in tests.items()} for project, tests in projects.items()
            }

    except ValidationError as e:
        raise ReportFormatError(f"Report does not match the expected schema: {e}") from e

    return ImpactReport(footprints=footprints, digests=digests)


def _resolve_indices(refs: str, dictionary: dict[str, str]) -> set[str]:
    if not refs.strip():
        return set()
    try:
        return {dictionary[index] for index in refs.split()}
    except KeyError as e:
        raise ReportFormatError(f"Unknown class index {e.args[0]!r} in report") from e


def compress(text: str) -> str:
    """Raw-deflate at maximum level, then MIME base64 (76 chars per line, CRLF)."""
    compressor = zlib.compressobj(zlib.Z_BEST_COMPRESSION, zlib.DEFLATED, -zlib.MAX_WBITS)
    data = compressor.compress(text.encode("utf-8")) + compressor.flush()
    encoded = base64.b64encode(data).decode("ascii")
    return "\r\n".join(encoded[i : i + MIME_LINE_LENGTH] for i in range(0, len(encoded), MIME_LINE_LENGTH))


def uncompress(text: str) -> str:
    """Reverse of :func:`compress`. Line breaks and other non-alphabet characters are ignored."""
    try:
        data = base64.b64decode("".join(text.split()), validate=True)
        return zlib.decompress(data, -zlib.MAX_WBITS).decode("utf-8")
    except (ValueError, zlib.error) as e:
        raise ReportFormatError(f"Report is neither JSON nor compressed JSON: {e}") from e
