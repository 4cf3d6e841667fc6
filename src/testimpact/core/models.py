"""Data models for test impact analysis.

Everything here is plain data: repository state read from git, the in-memory
report model, and the request/response documents of the coordination protocol.
"""

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class AnalyzerStatus(str, Enum):
    """Lifecycle of an ImpactAnalyzer."""

    PENDING = "pending"
    USABLE = "usable"
    UNUSABLE = "unusable"


class RepositoryState(BaseModel):
    """Point-in-time read of the repository.

    ``notes`` and ``modified`` are None when no ancestor of HEAD carries a
    report: there is no baseline to diff against.
    """

    model_config = ConfigDict(frozen=True)

    baseline_commit: str | None = None
    notes: str | None = None
    modified: frozenset[str] | None = None
    uncommitted: frozenset[str] = Field(default_factory=frozenset)

    @property
    def changed_files(self) -> set[str]:
        """Union of files changed since the baseline and uncommitted files."""
        changed = set(self.uncommitted)
        if self.modified is not None:
            changed.update(self.modified)
        return changed


class ImpactReport(BaseModel):
    """Footprints of every project plus the dependency digests they were recorded with."""

    footprints: dict[str, dict[str, set[str]]] = Field(
        default_factory=dict, description="project id -> test id -> referenced class names"
    )
    digests: dict[str, str] = Field(default_factory=dict, description="project id -> dependency fingerprint")

    def test_count(self) -> int:
        return sum(len(tests) for tests in self.footprints.values())

    def copy_deep(self) -> "ImpactReport":
        return ImpactReport(
            footprints={
                project: {test: set(classes) for test, classes in tests.items()}
                for project, tests in self.footprints.items()
            },
            digests=dict(self.digests),
        )


class DisabledTestsRequest(BaseModel):
    request: Literal["disabledTests"]
    project: str
    digest: str


class AddReportRequest(BaseModel):
    request: Literal["addReport"]
    project: str
    test: str
    classes: list[str]


class WriteReportRequest(BaseModel):
    request: Literal["writeReport"]
    project: str
    digest: str


class LogRequest(BaseModel):
    request: Literal["log"]
    level: str
    message: str


CoordinationRequest = Annotated[
    DisabledTestsRequest | AddReportRequest | WriteReportRequest | LogRequest,
    Field(discriminator="request"),
]

coordination_request_adapter: TypeAdapter[CoordinationRequest] = TypeAdapter(CoordinationRequest)


class CoordinationResponse(BaseModel):
    """Exactly one of ``result`` or ``error`` is set."""

    result: list[str] | str | None = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)
