"""
Execution decision engine.

Pure function of the analysis and the caller's gating inputs; no I/O.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import (
    Analysis,
    ExecutionChoice,
    ExecutionMode,
    IssueStatus,
    RiskLevel,
)


class DecisionAction(str, Enum):
    NO_ACTION = "no_action"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTE = "execute"
    FALLBACK_TO_MANUAL = "fallback_to_manual"


CHOICE_EXECUTE = 1
CHOICE_MANUAL = 2
CHOICE_CANCEL = 3


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: str
    fallback_reason: Optional[str] = None
    execution_choices: list[ExecutionChoice] = field(default_factory=list)


def execution_choices(risk: RiskLevel) -> list[ExecutionChoice]:
    """The fixed three-item approval menu."""
    return [
        ExecutionChoice(
            id=CHOICE_EXECUTE,
            label="Execute automatically",
            description="Run the kubectl commands shown above through the remediation engine",
            risk=risk,
        ),
        ExecutionChoice(
            id=CHOICE_MANUAL,
            label="Copy commands to run manually",
            description="I'll copy and run the kubectl commands shown above myself",
            risk=risk,
        ),
        ExecutionChoice(
            id=CHOICE_CANCEL,
            label="Cancel this operation",
            description="Don't execute any remediation actions",
        ),
    ]


def _pct(value: float) -> str:
    return f"{value * 100:.2f}".rstrip("0").rstrip(".")


def decide(
    analysis: Analysis,
    mode: ExecutionMode,
    confidence_threshold: float,
    max_risk_level: RiskLevel,
    issue_status: Optional[IssueStatus] = None,
) -> Decision:
    """Decide what happens to an analyzed plan.

    Rules, first match wins:
    1. resolved or nonexistent issues need no action;
    2. manual mode always waits for approval;
    3. automatic mode executes only when confidence and risk are both within
       bounds and there is something to run, otherwise it falls back to manual
       with every violated threshold named.
    """
    status = issue_status or analysis.issue_status
    if status in (IssueStatus.RESOLVED, IssueStatus.NONEXISTENT):
        return Decision(
            action=DecisionAction.NO_ACTION,
            reason=f"Issue is {status.value}; no remediation needed",
        )

    if mode == ExecutionMode.MANUAL:
        return Decision(
            action=DecisionAction.AWAITING_APPROVAL,
            reason="Manual mode selected - requiring user approval",
            execution_choices=execution_choices(analysis.risk),
        )

    violations = []
    if analysis.confidence < confidence_threshold:
        violations.append(
            f"Analysis confidence ({_pct(analysis.confidence)}%) is below the required "
            f"threshold ({_pct(confidence_threshold)}%) by "
            f"{_pct(confidence_threshold - analysis.confidence)} points."
        )
    if analysis.risk.rank > max_risk_level.rank:
        levels = analysis.risk.rank - max_risk_level.rank
        violations.append(
            f"Remediation risk level ({analysis.risk.value}) exceeds the maximum allowed "
            f"level ({max_risk_level.value}) by {levels} level{'s' if levels > 1 else ''}."
        )
    if not analysis.commands:
        violations.append("The remediation plan contains no executable commands.")

    if violations:
        return Decision(
            action=DecisionAction.FALLBACK_TO_MANUAL,
            reason="Automatic execution thresholds not met",
            fallback_reason=" ".join(violations) + " Manual review recommended.",
            execution_choices=execution_choices(analysis.risk),
        )

    return Decision(
        action=DecisionAction.EXECUTE,
        reason=(
            f"Automatic execution approved - confidence {analysis.confidence:.2f} >= "
            f"{confidence_threshold:.2f}, risk {analysis.risk.value} <= {max_risk_level.value}"
        ),
    )
