"""
Context budgeting for the investigation loop.

Accumulated evidence is fed back to the model on every turn, so it grows with
each iteration. Before each model call the evidence is measured and, when it
does not fit, compacted in two stages:

1. Sliding window: the newest K iterations stay verbatim, older ones shrink to
   one-line findings (raw command output dropped).
2. Emergency reset: all verbatim history is dropped and a fresh context is
   seeded with the session id, issue text, initial hints and the findings
   summary only.

Compaction produces a new ``InvestigationContext``; the persisted session is
never modified, and the issue text and session id survive every path.
"""

import json
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Optional

import structlog

from .config import settings
from .metrics import remediator_context_compactions_total
from .models import InvestigationRecord, Iteration

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 4
HEADLINE_CHARS = 200
ERROR_CHARS = 120


@dataclass(frozen=True)
class TokenEstimate:
    tokens: int
    budget: int

    @property
    def over_budget(self) -> bool:
        return self.tokens > self.budget


@dataclass(frozen=True)
class InvestigationContext:
    """Evidence view handed to the prompt builder."""

    session_id: str
    issue: str
    initial_context: dict[str, Any] = field(default_factory=dict)
    summary: tuple[str, ...] = ()
    recent: tuple[dict[str, Any], ...] = ()
    reset: bool = False

    def serialize(self) -> str:
        return json.dumps(asdict(self), default=str)


def iteration_view(iteration: Iteration) -> dict[str, Any]:
    """Verbatim, prompt-ready form of an iteration."""
    return iteration.model_dump(
        mode="json",
        by_alias=True,
        exclude={"timestamp"},
        exclude_none=True,
    )


def compress_view(view: dict[str, Any]) -> str:
    """Reduce an iteration to its findings: headline plus per-request status."""
    analysis = (view.get("analysis") or "").strip()
    headline = analysis.splitlines()[0][:HEADLINE_CHARS] if analysis else "no analysis"
    parts = [f"Step {view.get('step')}: {headline}"]
    for result in (view.get("gatheredData") or {}).values():
        line = f"{result.get('command')} -> {result.get('status')}"
        if result.get("error"):
            line += f" ({result['error'][:ERROR_CHARS]})"
        parts.append(line)
    return "; ".join(parts)


class ContextBudgeter:
    """Estimates and bounds the evidence fed back to the model."""

    def __init__(self, budget: Optional[int] = None, recent: Optional[int] = None):
        self.budget = budget or settings.context_token_budget
        self.recent = max(1, recent or settings.context_recent_iterations)

    def build(self, session_id: str, record: InvestigationRecord) -> InvestigationContext:
        """Full, uncompressed context for a record."""
        return InvestigationContext(
            session_id=session_id,
            issue=record.issue,
            initial_context=dict(record.initial_context),
            recent=tuple(iteration_view(i) for i in record.iterations),
        )

    def estimate(self, context: InvestigationContext) -> TokenEstimate:
        return TokenEstimate(
            tokens=len(context.serialize()) // CHARS_PER_TOKEN,
            budget=self.budget,
        )

    def shrink(self, context: InvestigationContext) -> InvestigationContext:
        """Return a context that fits the budget where possible."""
        if not self.estimate(context).over_budget:
            return context

        # Sliding window: compress everything but the newest K iterations.
        older, newer = context.recent[: -self.recent], context.recent[-self.recent :]
        windowed = replace(
            context,
            summary=context.summary + tuple(compress_view(v) for v in older),
            recent=newer,
        )
        if older:
            remediator_context_compactions_total.labels(kind="window").inc()
        estimate = self.estimate(windowed)
        if not estimate.over_budget:
            logger.info(
                "Context compressed",
                session_id=context.session_id,
                compressed=len(older),
                tokens=estimate.tokens,
            )
            return windowed

        # Emergency reset: findings only, newest first to survive trimming.
        summary = windowed.summary + tuple(compress_view(v) for v in windowed.recent)
        reset = InvestigationContext(
            session_id=context.session_id,
            issue=context.issue,
            initial_context=context.initial_context,
            summary=summary,
            reset=True,
        )
        while reset.summary and self.estimate(reset).over_budget:
            reset = replace(reset, summary=reset.summary[1:])
        remediator_context_compactions_total.labels(kind="reset").inc()
        logger.warning(
            "Context emergency reset",
            session_id=context.session_id,
            kept_findings=len(reset.summary),
            dropped_findings=len(summary) - len(reset.summary),
            tokens=self.estimate(reset).tokens,
        )
        return reset

    def prepare(self, session_id: str, record: InvestigationRecord) -> InvestigationContext:
        return self.shrink(self.build(session_id, record))
