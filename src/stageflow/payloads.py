"""Stage payload schemas and the signals the orchestrator reads from them.

Stage outputs are validated at the collaborator boundary (the task
executor) with the schema registered for their stage, then stored in
the run state as opaque dictionaries. The orchestrator itself only
reads two quality signals and a few file lists:

- has_failed_checks: the verification report has failing checks
- has_high_severity_issue: the review report flags an error
- extract_artifacts: file lists to accumulate on the run

All readers tolerate missing or malformed payloads.
"""

from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field

from stageflow.state.models import Stage


class Task(BaseModel):
    id: str
    title: str
    detail: Optional[str] = None
    estimate_hours: Optional[float] = None


class IntakeResult(BaseModel):
    """Scoping of the original request."""

    summary: str
    category: Optional[str] = None
    tasks: List[Task] = Field(default_factory=list)


class Finding(BaseModel):
    topic: str
    information: str
    sources: List[str] = Field(default_factory=list)
    relevance_score: float = Field(default=0, ge=0, le=10)


class ResearchResult(BaseModel):
    """Feasibility research output."""

    summary: str
    findings: List[Finding] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    technical_considerations: List[str] = Field(default_factory=list)
    potential_challenges: List[str] = Field(default_factory=list)
    best_practices: List[str] = Field(default_factory=list)


class ArchitecturePlan(BaseModel):
    """Design stage output."""

    project_name: str
    stack: List[str] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
    directories: List[str] = Field(default_factory=list)
    env_vars: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)
    initial_backlog: List[Task] = Field(default_factory=list)


class ImplementationResult(BaseModel):
    """Build stage output."""

    summary: str
    created_files: List[str] = Field(default_factory=list)
    modified_files: List[str] = Field(default_factory=list)
    commands_to_run: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class TestReport(BaseModel):
    """Verify stage output."""

    # Not a pytest test class.
    __test__ = False

    passed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    new_tests: List[str] = Field(default_factory=list)
    coverage_note: Optional[str] = None


class ReviewIssue(BaseModel):
    kind: str
    message: str
    path: Optional[str] = None
    severity: Literal["info", "warn", "error"]


class ReviewReport(BaseModel):
    """Review stage output."""

    summary: str
    issues: List[ReviewIssue] = Field(default_factory=list)
    score: float = Field(..., ge=0, le=100)
    action_items: List[Task] = Field(default_factory=list)


class DevOpsPlan(BaseModel):
    """Release stage output."""

    dockerized: bool
    artifacts: List[str] = Field(default_factory=list)
    preview_url: Optional[str] = None
    rollback: List[str] = Field(default_factory=list)


class DocsUpdate(BaseModel):
    """Publish stage output."""

    readme_updated: bool = True
    files: List[str] = Field(default_factory=list)
    changelog_entry: str


STAGE_SCHEMAS: Dict[Stage, Type[BaseModel]] = {
    Stage.INTAKE: IntakeResult,
    Stage.RESEARCH: ResearchResult,
    Stage.DESIGN: ArchitecturePlan,
    Stage.BUILD: ImplementationResult,
    Stage.VERIFY: TestReport,
    Stage.REVIEW: ReviewReport,
    Stage.RELEASE: DevOpsPlan,
    Stage.PUBLISH: DocsUpdate,
}

HIGH_SEVERITY = "error"


def validate_stage_payload(stage: Stage, raw: Any) -> Dict[str, Any]:
    """Validate a raw stage output against the stage's schema.

    Args:
        stage: The stage that produced the output.
        raw: The raw output (a mapping or a JSON string).

    Returns:
        The validated payload as a plain dictionary.

    Raises:
        pydantic.ValidationError: If the payload does not match the schema.
    """
    schema = STAGE_SCHEMAS[Stage(stage)]
    if isinstance(raw, (str, bytes)):
        model = schema.model_validate_json(raw)
    else:
        model = schema.model_validate(raw)
    return model.model_dump(mode="json")


def has_failed_checks(payload: Any) -> bool:
    """Return True when a verification payload reports failing checks."""
    if not isinstance(payload, dict):
        return False
    failed = payload.get("failed")
    return isinstance(failed, int) and not isinstance(failed, bool) and failed > 0


def has_high_severity_issue(payload: Any) -> bool:
    """Return True when a review payload has at least one error issue."""
    if not isinstance(payload, dict):
        return False
    issues = payload.get("issues")
    if not isinstance(issues, list):
        return False
    return any(
        isinstance(issue, dict) and issue.get("severity") == HIGH_SEVERITY
        for issue in issues
    )


# stage -> [(payload key, artifacts list)]
_ARTIFACT_FIELDS = {
    Stage.BUILD: [
        ("created_files", "generated_files"),
        ("modified_files", "modified_files"),
    ],
    Stage.VERIFY: [("new_tests", "test_files")],
    Stage.PUBLISH: [("files", "document_files")],
}


def extract_artifacts(stage: Stage, payload: Any) -> Dict[str, List[str]]:
    """Collect the file lists a stage payload contributes to the run.

    Example:
        >>> extract_artifacts(Stage.BUILD, {"created_files": ["app.py"]})
        {'generated_files': ['app.py']}
    """
    if not isinstance(payload, dict):
        return {}
    collected: Dict[str, List[str]] = {}
    for key, kind in _ARTIFACT_FIELDS.get(Stage(stage), []):
        values = payload.get(key)
        if isinstance(values, list):
            paths = [v for v in values if isinstance(v, str) and v]
            if paths:
                collected[kind] = paths
    return collected

