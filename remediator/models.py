"""
Data model for remediation sessions.

Everything here round-trips through JSON: sessions are persisted whole by the
session store, and the request/response models are the external API shape.
Attribute names are snake_case; the wire format is camelCase.
"""

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .config import settings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    """Return a unique session id, e.g. ``rem_20250101T120000_9f3c...``."""
    timestamp = _utcnow().strftime("%Y%m%dT%H%M%S")
    return f"rem_{timestamp}_{secrets.token_hex(8)}"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ENUMS
# =============================================================================


class SessionStatus(str, Enum):
    INVESTIGATING = "investigating"
    ANALYZED = "analyzed"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}


def max_risk(*levels: RiskLevel) -> RiskLevel:
    """Return the highest of the given risk levels (LOW when none given)."""
    return max(levels, key=lambda r: r.rank, default=RiskLevel.LOW)


class IssueStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    NONEXISTENT = "nonexistent"


class ExecutionMode(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class ResultStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    REJECTED = "rejected"


class DryRunStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"
    SKIPPED = "skipped"


# =============================================================================
# INVESTIGATION
# =============================================================================


class DataRequest(CamelModel):
    """One model-proposed, read-only cluster query."""

    operation_type: str
    resource: str = ""
    namespace: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    rationale: str = ""


class GatheredResult(CamelModel):
    """Outcome of one data request, including rejections."""

    command: str
    status: ResultStatus
    output: Optional[str] = None
    error: Optional[str] = None
    suggestion: Optional[str] = None
    reason: Optional[str] = None
    truncated: bool = False


class Iteration(CamelModel):
    step: int
    analysis: str = ""
    reasoning: str = ""
    data_requests: list[DataRequest] = Field(default_factory=list)
    gathered_data: dict[str, GatheredResult] = Field(default_factory=dict)
    complete: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)


class RemediationAction(CamelModel):
    description: str
    command: Optional[str] = None
    risk: RiskLevel
    rationale: str = ""
    full_resource_definition: Optional[str] = None
    dry_run: Optional[DryRunStatus] = None


class Analysis(CamelModel):
    """Converged root-cause analysis and remediation plan."""

    root_cause: str
    confidence: float = Field(ge=0.0, le=1.0)
    supporting_factors: list[str] = Field(default_factory=list)
    summary: str = ""
    remediation_actions: list[RemediationAction] = Field(default_factory=list)
    risk: RiskLevel = RiskLevel.LOW
    issue_status: IssueStatus = IssueStatus.ACTIVE
    validation_intent: Optional[str] = None

    @property
    def commands(self) -> list[str]:
        return [a.command for a in self.remediation_actions if a.command]


class InvestigationRecord(CamelModel):
    """Fields shared by a session and its follow-up investigations."""

    issue: str = Field(frozen=True)
    initial_context: dict[str, Any] = Field(default_factory=dict)
    iterations: list[Iteration] = Field(default_factory=list)
    final_analysis: Optional[Analysis] = None
    validation_feedback: list[str] = Field(default_factory=list)
    context_resets: int = 0
    failure_reason: Optional[str] = None

    @property
    def next_step(self) -> int:
        return self.iterations[-1].step + 1 if self.iterations else 1

    def set_final_analysis(self, analysis: Analysis) -> None:
        if self.final_analysis is not None:
            raise RuntimeError("final analysis is already set")
        self.final_analysis = analysis


class FollowUpInvestigation(InvestigationRecord):
    """Validation investigation nested inside an existing session."""

    seed_commands: list[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.INVESTIGATING
    created_at: datetime = Field(default_factory=_utcnow)


class ExecutionChoice(CamelModel):
    id: int
    label: str
    description: str
    risk: Optional[RiskLevel] = None


class ExecutionResult(CamelModel):
    command: str
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class InvestigationSession(InvestigationRecord):
    """One remediation attempt, from issue text to executed plan."""

    id: str = Field(default_factory=new_session_id, frozen=True)
    status: SessionStatus = SessionStatus.INVESTIGATING
    mode: ExecutionMode = ExecutionMode.MANUAL
    confidence_threshold: float = 0.8
    max_risk_level: RiskLevel = RiskLevel.LOW
    follow_ups: list[FollowUpInvestigation] = Field(default_factory=list)
    execution_results: list[ExecutionResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def latest_record(self) -> InvestigationRecord:
        """Return the newest follow-up, or the session itself when none exist.

        Investigation steps append to this record and its final analysis is
        the plan currently up for decision.
        """
        return self.follow_ups[-1] if self.follow_ups else self

    def total_iterations(self) -> int:
        return len(self.iterations) + sum(len(f.iterations) for f in self.follow_ups)

    def touch(self) -> None:
        self.updated_at = _utcnow()


# =============================================================================
# EXTERNAL API
# =============================================================================


class RemediateContext(CamelModel):
    """Optional hints supplied with the issue."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    prior_event: Optional[Any] = None
    logs: Optional[list[str]] = None
    interactive: Optional[bool] = None


class RemediateRequest(CamelModel):
    """Input for one remediation interaction."""

    issue: Optional[str] = Field(None, min_length=1, max_length=2000)
    context: Optional[RemediateContext] = None
    session_id: Optional[str] = Field(None, pattern=r"^[A-Za-z0-9_.-]{1,128}$")
    mode: ExecutionMode = ExecutionMode.MANUAL
    confidence_threshold: float = Field(
        default_factory=lambda: settings.default_confidence_threshold, ge=0.0, le=1.0
    )
    max_risk_level: RiskLevel = Field(
        default_factory=lambda: RiskLevel(settings.default_max_risk_level)
    )
    executed_commands: list[str] = Field(default_factory=list)
    execute_choice: Optional[Literal[1, 2, 3]] = None

    @field_validator("session_id")
    @classmethod
    def _no_relative_path_id(cls, value: Optional[str]) -> Optional[str]:
        if value in (".", ".."):
            raise ValueError("sessionId may not be '.' or '..'")
        return value

    @model_validator(mode="after")
    def _require_issue_or_session(self) -> "RemediateRequest":
        if not self.issue and not self.session_id:
            raise ValueError("either issue or sessionId is required")
        if self.executed_commands and not self.issue:
            raise ValueError("executedCommands requires an issue to validate")
        return self


class InvestigationSummary(CamelModel):
    iterations: int = 0
    data_gathered: list[str] = Field(default_factory=list)


class AnalysisSummary(CamelModel):
    root_cause: str = ""
    confidence: float = 0.0
    factors: list[str] = Field(default_factory=list)


class RemediationSummary(CamelModel):
    summary: str = ""
    actions: list[RemediationAction] = Field(default_factory=list)
    risk: RiskLevel = RiskLevel.LOW


class RemediateResponse(CamelModel):
    """Uniform result of one remediation interaction."""

    status: Literal["success", "failed", "awaiting_user_approval"]
    session_id: str
    investigation: InvestigationSummary = Field(default_factory=InvestigationSummary)
    analysis: AnalysisSummary = Field(default_factory=AnalysisSummary)
    remediation: RemediationSummary = Field(default_factory=RemediationSummary)
    issue_status: Optional[IssueStatus] = None
    validation_intent: Optional[str] = None
    execution_choices: Optional[list[ExecutionChoice]] = None
    executed: Optional[bool] = None
    results: Optional[list[ExecutionResult]] = None
    fallback_reason: Optional[str] = None
    message: Optional[str] = None
