"""
Investigation loop controller.

Uses LangGraph to drive a bounded loop over one investigation record:

    investigate -> investigate | analyze | END
    analyze     -> investigate | END

Graph state carries only the session id. Each node loads the session from the
store, appends to the newest record (the session itself or its latest
follow-up) and persists before returning, so an interrupted run can be resumed
from whatever was last saved.
"""

import asyncio
import time
from typing import Callable, Literal, Optional, TypedDict, TypeVar

import structlog
from langgraph.graph import END, StateGraph

from .budget import ContextBudgeter
from .config import settings
from .errors import (
    InfrastructureUnavailable,
    IterationCeilingReached,
    ModelResponseMalformed,
    SessionNotFound,
)
from .gatherer import ClusterDataGatherer
from .llm import ModelBackend, get_model_backend
from .metrics import remediator_investigation_duration_seconds, remediator_iterations_total
from .models import (
    Analysis,
    DryRunStatus,
    FollowUpInvestigation,
    InvestigationRecord,
    InvestigationSession,
    Iteration,
    SessionStatus,
)
from .parsing import parse_final_analysis, parse_investigation
from .prompts import build_final_analysis_prompt, build_investigation_prompt, correction_hint
from .safety import Rejection, prepare_dry_run, validate_command, validate_request
from .session_store import SessionStore, get_session_store

logger = structlog.get_logger(__name__)

T = TypeVar("T")

VAGUE_ISSUE_MESSAGE = (
    "Unable to find relevant resources for the reported issue. Please be more specific "
    "about which resource type or component is having problems (e.g. \"deployment api in "
    "namespace shop\" instead of \"my app\")."
)

MAX_API_RESOURCES_CHARS = 20000


class InvestigationState(TypedDict):
    """State passed between graph nodes."""

    session_id: str
    outcome: str
    resume: bool


def record_status(session: InvestigationSession, record: InvestigationRecord) -> SessionStatus:
    if isinstance(record, FollowUpInvestigation):
        return record.status
    return session.status


def set_record_status(
    session: InvestigationSession, record: InvestigationRecord, status: SessionStatus
) -> None:
    if isinstance(record, FollowUpInvestigation):
        record.status = status
    else:
        session.status = status


def _seed_commands(record: InvestigationRecord) -> list[str]:
    if isinstance(record, FollowUpInvestigation):
        return record.seed_commands
    return []


class InvestigationController:
    """Runs the investigate/analyze loop for a stored session."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        backend: Optional[ModelBackend] = None,
        gatherer: Optional[ClusterDataGatherer] = None,
        budgeter: Optional[ContextBudgeter] = None,
        max_iterations: Optional[int] = None,
        dry_run_validation: Optional[bool] = None,
        discover_api_resources: Optional[bool] = None,
    ):
        self.store = store or get_session_store()
        self.backend = backend or get_model_backend()
        self.gatherer = gatherer or ClusterDataGatherer()
        self.budgeter = budgeter or ContextBudgeter()
        self.max_iterations = max_iterations or settings.max_iterations
        self.dry_run_validation = (
            settings.dry_run_validation if dry_run_validation is None else dry_run_validation
        )
        self.discover_api_resources = (
            settings.discover_api_resources
            if discover_api_resources is None
            else discover_api_resources
        )
        self._api_resources: Optional[str] = None
        self.graph = self._build_graph()

    # -------------------------------------------------------------------------
    # Collaborator helpers
    # -------------------------------------------------------------------------

    async def _load(self, session_id: str) -> InvestigationSession:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def _api_resource_list(self) -> Optional[str]:
        """Cluster API resource list, fetched once per controller."""
        if not self.discover_api_resources:
            return None
        if self._api_resources is None:
            result = await self.gatherer.runner.run(
                ("api-resources",), timeout=self.gatherer.timeout
            )
            if not result.ok:
                logger.error("API resource discovery failed", error=result.stderr[:200])
                raise InfrastructureUnavailable(
                    f"cluster API resource discovery failed: {result.stderr.strip()}"
                )
            self._api_resources = result.stdout[:MAX_API_RESOURCES_CHARS]
        return self._api_resources

    async def _fail(
        self, session: InvestigationSession, record: InvestigationRecord, reason: str
    ) -> None:
        record.failure_reason = reason
        set_record_status(session, record, SessionStatus.FAILED)
        await self.store.put(session)
        logger.warning("Investigation failed", session_id=session.id, reason=reason)

    async def _ask(
        self,
        session: InvestigationSession,
        record: InvestigationRecord,
        prompt: str,
        parse: Callable[[str], T],
        kind: str,
    ) -> T:
        """Send a prompt and parse the reply.

        Malformed replies and backend failures are each retried once. A second
        malformed reply raises ModelResponseMalformed; a second backend failure
        fails the record and raises InfrastructureUnavailable.
        """
        hint = ""
        backend_retries = 1
        malformed_retries = 1
        while True:
            try:
                text = await self.backend.send(prompt + hint, kind=kind)
            except Exception as exc:
                error = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
                if backend_retries:
                    backend_retries -= 1
                    logger.warning(
                        "Model call failed, retrying", session_id=session.id, kind=kind, error=error
                    )
                    continue
                await self._fail(session, record, f"Model backend unavailable: {error}")
                raise InfrastructureUnavailable(f"model backend unavailable: {error}") from exc

            try:
                return parse(text)
            except ModelResponseMalformed as exc:
                if not malformed_retries:
                    raise
                malformed_retries -= 1
                logger.warning(
                    "Malformed model response, retrying", session_id=session.id, kind=kind, error=str(exc)
                )
                hint = correction_hint(str(exc))

    async def _dry_run(self, analysis: Analysis) -> list[str]:
        """Validate each proposed command and dry-run it where supported."""
        failures = []
        approved = analysis.commands
        for action in analysis.remediation_actions:
            if not action.command:
                continue
            outcome = validate_command(action.command, approved, stdin=action.full_resource_definition)
            if isinstance(outcome, Rejection):
                action.dry_run = DryRunStatus.FAILED
                failures.append(f"{action.command}: rejected ({outcome.reason.value}): {outcome.message}")
                continue
            if not self.dry_run_validation or not outcome.mutating:
                action.dry_run = DryRunStatus.SKIPPED
                continue
            dry = prepare_dry_run(outcome)
            if dry is None:
                action.dry_run = DryRunStatus.UNSUPPORTED
                continue
            result = await self.gatherer.runner.run(
                dry.argv, timeout=self.gatherer.timeout, stdin=dry.stdin
            )
            if result.ok:
                action.dry_run = DryRunStatus.PASSED
            else:
                action.dry_run = DryRunStatus.FAILED
                error = (result.stderr or result.stdout).strip()
                failures.append(f"{action.command}: dry-run failed: {error}")
        return failures

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    def _build_graph(self):
        """Build the LangGraph workflow."""

        def after_investigate(
            state: InvestigationState,
        ) -> Literal["investigate", "analyze", "end"]:
            outcome = state["outcome"]
            if outcome == "continue":
                return "investigate"
            if outcome == "complete":
                return "analyze"
            return "end"

        def after_analyze(state: InvestigationState) -> Literal["investigate", "end"]:
            return "investigate" if state["outcome"] == "continue" else "end"

        workflow = StateGraph(InvestigationState)

        workflow.add_node("investigate", self._investigate_node)
        workflow.add_node("analyze", self._analyze_node)

        workflow.set_entry_point("investigate")

        workflow.add_conditional_edges(
            "investigate",
            after_investigate,
            {
                "investigate": "investigate",
                "analyze": "analyze",
                "end": END,
            },
        )
        workflow.add_conditional_edges(
            "analyze",
            after_analyze,
            {
                "investigate": "investigate",
                "end": END,
            },
        )

        return workflow.compile()

    async def _investigate_node(self, state: InvestigationState) -> dict:
        """One propose/validate/gather/record step."""
        session = await self._load(state["session_id"])
        record = session.latest_record()

        if record.final_analysis is not None or record_status(session, record) == SessionStatus.FAILED:
            return {"outcome": "done", "resume": False}
        # A run interrupted between convergence and analysis resumes at analysis.
        if state["resume"] and record.iterations and record.iterations[-1].complete:
            return {"outcome": "complete", "resume": False}
        if len(record.iterations) >= self.max_iterations:
            await self._fail(session, record, str(IterationCeilingReached(self.max_iterations)))
            return {"outcome": "exhausted", "resume": False}

        step = record.next_step
        api_resources = await self._api_resource_list()
        context = self.budgeter.prepare(session.id, record)
        if context.reset:
            record.context_resets += 1
        prompt = build_investigation_prompt(
            context,
            step=step,
            max_iterations=self.max_iterations,
            api_resources=api_resources,
            validation_feedback=record.validation_feedback,
            seed_commands=_seed_commands(record),
        )

        try:
            response = await self._ask(session, record, prompt, parse_investigation, "investigate")
        except ModelResponseMalformed as exc:
            await self._fail(session, record, f"Model response could not be parsed: {exc}")
            return {"outcome": "failed", "resume": False}

        if response.needs_more_specific_info:
            await self._fail(session, record, VAGUE_ISSUE_MESSAGE)
            return {"outcome": "failed", "resume": False}

        outcomes = [validate_request(r) for r in response.data_requests]
        gathered = await self.gatherer.gather(step, outcomes) if outcomes else {}

        record.iterations.append(
            Iteration(
                step=step,
                analysis=response.analysis,
                reasoning=response.reasoning,
                data_requests=response.data_requests,
                gathered_data=gathered,
                complete=response.investigation_complete,
                confidence=response.confidence,
            )
        )
        await self.store.put(session)
        remediator_iterations_total.inc()
        logger.info(
            "Investigation iteration recorded",
            session_id=session.id,
            step=step,
            requests=len(outcomes),
            complete=response.investigation_complete,
            confidence=response.confidence,
        )

        if response.investigation_complete:
            return {"outcome": "complete", "resume": False}
        if len(record.iterations) >= self.max_iterations:
            await self._fail(session, record, str(IterationCeilingReached(self.max_iterations)))
            return {"outcome": "exhausted", "resume": False}
        return {"outcome": "continue", "resume": False}

    async def _analyze_node(self, state: InvestigationState) -> dict:
        """Final analysis plus dry-run validation of the proposed plan."""
        session = await self._load(state["session_id"])
        record = session.latest_record()
        if record.final_analysis is not None:
            return {"outcome": "analyzed", "resume": False}

        context = self.budgeter.prepare(session.id, record)
        if context.reset:
            record.context_resets += 1
        prompt = build_final_analysis_prompt(
            context, iterations=len(record.iterations), seed_commands=_seed_commands(record)
        )
        try:
            analysis = await self._ask(session, record, prompt, parse_final_analysis, "final_analysis")
        except ModelResponseMalformed as exc:
            await self._fail(session, record, f"Final analysis could not be parsed: {exc}")
            return {"outcome": "failed", "resume": False}

        failures = await self._dry_run(analysis)
        if failures:
            record.validation_feedback.extend(failures)
            logger.warning(
                "Remediation plan failed validation",
                session_id=session.id,
                failures=len(failures),
            )
            if len(record.iterations) >= self.max_iterations:
                await self._fail(
                    session,
                    record,
                    "Remediation plan failed validation and the iteration limit was reached: "
                    + "; ".join(failures),
                )
                return {"outcome": "failed", "resume": False}
            await self.store.put(session)
            return {"outcome": "continue", "resume": False}

        record.set_final_analysis(analysis)
        set_record_status(session, record, SessionStatus.ANALYZED)
        await self.store.put(session)
        logger.info(
            "Analysis complete",
            session_id=session.id,
            confidence=analysis.confidence,
            risk=analysis.risk.value,
            issue_status=analysis.issue_status.value,
            actions=len(analysis.remediation_actions),
        )
        return {"outcome": "analyzed", "resume": False}

    async def run(self, session_id: str) -> InvestigationSession:
        """Drive the newest record of a session to analyzed or failed."""
        logger.info("Starting investigation", session_id=session_id)
        start = time.perf_counter()

        initial_state: InvestigationState = {
            "session_id": session_id,
            "outcome": "",
            "resume": True,
        }
        config = {"recursion_limit": self.max_iterations * 2 + 5}
        try:
            await self.graph.ainvoke(initial_state, config)
        finally:
            remediator_investigation_duration_seconds.observe(time.perf_counter() - start)

        return await self._load(session_id)


# Global instance
_controller: Optional[InvestigationController] = None


def get_investigation_controller() -> InvestigationController:
    """Get or create the InvestigationController singleton."""
    global _controller
    if _controller is None:
        _controller = InvestigationController()
    return _controller
