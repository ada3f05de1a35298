"""
Parsing of model responses.

Model output is never trusted as control input directly: the first JSON object
in the text is extracted and validated against a strict schema. Anything that
does not validate raises ModelResponseMalformed.
"""

import json
from typing import Optional

from pydantic import Field, ValidationError, field_validator

from .errors import ModelResponseMalformed
from .models import (
    Analysis,
    CamelModel,
    DataRequest,
    IssueStatus,
    RemediationAction,
    RiskLevel,
    max_risk,
)


class InvestigationResponse(CamelModel):
    analysis: str
    data_requests: list[DataRequest] = Field(default_factory=list)
    investigation_complete: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    needs_more_specific_info: bool = False


class RemediationPlan(CamelModel):
    summary: str = ""
    actions: list[RemediationAction] = Field(default_factory=list)
    risk: RiskLevel = RiskLevel.LOW


class FinalAnalysisResponse(CamelModel):
    root_cause: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    factors: list[str] = Field(default_factory=list)
    issue_status: IssueStatus = IssueStatus.ACTIVE
    remediation: RemediationPlan = Field(default_factory=RemediationPlan)
    validation_intent: Optional[str] = None

    @field_validator("issue_status", mode="before")
    @classmethod
    def _lower_status(cls, value):
        return value.lower() if isinstance(value, str) else value

    def to_analysis(self) -> Analysis:
        """Overall risk is never lower than the riskiest action."""
        actions = self.remediation.actions
        return Analysis(
            root_cause=self.root_cause,
            confidence=self.confidence,
            supporting_factors=self.factors,
            summary=self.remediation.summary,
            remediation_actions=actions,
            risk=max_risk(self.remediation.risk, *(a.risk for a in actions)),
            issue_status=self.issue_status,
            validation_intent=self.validation_intent or None,
        )


def extract_json(text: str) -> dict:
    """Return the outermost JSON object embedded in ``text``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ModelResponseMalformed("no JSON object found in model response")
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ModelResponseMalformed(f"invalid JSON in model response: {exc}") from exc
    if not isinstance(data, dict):
        raise ModelResponseMalformed("model response is not a JSON object")
    return data


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    first = errors[0]
    location = ".".join(str(p) for p in first["loc"]) or "response"
    more = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
    return f"{location}: {first['msg']}{more}"


def parse_investigation(text: str) -> InvestigationResponse:
    data = extract_json(text)
    try:
        return InvestigationResponse.model_validate(data)
    except ValidationError as exc:
        raise ModelResponseMalformed(
            f"investigation response failed validation: {_validation_message(exc)}"
        ) from exc


def parse_final_analysis(text: str) -> Analysis:
    data = extract_json(text)
    try:
        return FinalAnalysisResponse.model_validate(data).to_analysis()
    except ValidationError as exc:
        raise ModelResponseMalformed(
            f"final analysis failed validation: {_validation_message(exc)}"
        ) from exc
