"""
Remediation facade.

One call per user interaction. ``Remediator.remediate`` dispatches on the
request shape:

- new issue: create a session, investigate, decide, maybe execute;
- ``session_id`` + ``execute_choice``: act on the reviewed plan;
- ``session_id`` + ``executed_commands``: validate manually executed commands
  with a follow-up investigation;
- ``session_id`` alone: resume an interrupted investigation or return the
  stored outcome.

Business outcomes are returned as data. Only InfrastructureUnavailable and
SessionNotFound are raised.
"""

from typing import Optional

import structlog

from .decision import (
    CHOICE_CANCEL,
    CHOICE_EXECUTE,
    CHOICE_MANUAL,
    Decision,
    DecisionAction,
    decide,
)
from .errors import SessionNotFound
from .executor import ExecutionEngine, get_execution_engine
from .investigation import InvestigationController, get_investigation_controller, record_status
from .metrics import remediator_sessions_total
from .models import (
    AnalysisSummary,
    ExecutionResult,
    InvestigationSession,
    InvestigationSummary,
    RemediateRequest,
    RemediateResponse,
    RemediationSummary,
    ResultStatus,
    SessionStatus,
)
from .session_store import SessionStore, get_session_store

logger = structlog.get_logger(__name__)

_WAITING = (DecisionAction.AWAITING_APPROVAL, DecisionAction.FALLBACK_TO_MANUAL)
_GATING_FIELDS = ("mode", "confidence_threshold", "max_risk_level")


class Remediator:
    """Single entry point tying investigation, decision and execution together."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        controller: Optional[InvestigationController] = None,
        engine: Optional[ExecutionEngine] = None,
    ):
        self.store = store or get_session_store()
        self.controller = controller or get_investigation_controller()
        self.engine = engine or get_execution_engine()

    async def remediate(self, request: RemediateRequest) -> RemediateResponse:
        session = None
        if request.session_id:
            session = await self.store.get(request.session_id)
            if session is None and (request.execute_choice or request.executed_commands or not request.issue):
                raise SessionNotFound(request.session_id)

        if session is None:
            response = await self._start(request)
        else:
            if self._apply_gating(session, request):
                await self.store.put(session)
            if request.execute_choice:
                response = await self._choose(session, request.execute_choice)
            elif request.executed_commands:
                response = await self._validate_manual(session, request)
            else:
                response = await self._resume(session)

        remediator_sessions_total.labels(outcome=response.status).inc()
        logger.info(
            "Remediation interaction finished",
            session_id=response.session_id,
            status=response.status,
            executed=bool(response.executed),
        )
        return response

    # -------------------------------------------------------------------------
    # Dispatch targets
    # -------------------------------------------------------------------------

    async def _start(self, request: RemediateRequest) -> RemediateResponse:
        fields = {
            "issue": request.issue,
            "initial_context": (
                request.context.model_dump(by_alias=True, exclude_none=True) if request.context else {}
            ),
            "mode": request.mode,
            "confidence_threshold": request.confidence_threshold,
            "max_risk_level": request.max_risk_level,
        }
        if request.session_id:
            fields["id"] = request.session_id
        session = InvestigationSession(**fields)
        await self.store.put(session)
        logger.info(
            "Session created",
            session_id=session.id,
            mode=session.mode.value,
            issue=session.issue[:100],
        )

        session = await self.controller.run(session.id)
        return await self._cascade(session)

    def _apply_gating(self, session: InvestigationSession, request: RemediateRequest) -> bool:
        """Explicitly supplied gating inputs override the stored ones."""
        changed = False
        for name in _GATING_FIELDS:
            if name in request.model_fields_set and getattr(session, name) != getattr(request, name):
                setattr(session, name, getattr(request, name))
                changed = True
        return changed

    async def _choose(self, session: InvestigationSession, choice: int) -> RemediateResponse:
        record = session.latest_record()
        if record.final_analysis is None or session.status != SessionStatus.AWAITING_APPROVAL:
            response = await self._stored_outcome(session)
            response.message = (
                f"Session is not awaiting approval (status: {session.status.value}); "
                "no action taken."
            )
            return response

        if choice == CHOICE_EXECUTE:
            logger.info("Execution approved", session_id=session.id)
            return await self._cascade(session, execute_first=True)

        if choice == CHOICE_MANUAL:
            decision = self._decide(session)
            commands = "\n".join(record.final_analysis.commands)
            return self._build_response(
                session,
                decision=decision,
                message=(
                    "Run these commands yourself, then call again with executedCommands "
                    f"to validate the result:\n{commands}"
                ),
            )

        # CHOICE_CANCEL
        session.status = SessionStatus.ANALYZED
        await self.store.put(session)
        logger.info("Remediation cancelled", session_id=session.id)
        response = self._build_response(
            session, message="Operation cancelled; no remediation actions were executed."
        )
        response.executed = False
        return response

    async def _validate_manual(
        self, session: InvestigationSession, request: RemediateRequest
    ) -> RemediateResponse:
        context = request.context.model_dump(by_alias=True, exclude_none=True) if request.context else {}
        self.engine.add_follow_up(session, request.issue, request.executed_commands, context)
        await self.store.put(session)
        session = await self.controller.run(session.id)
        return await self._cascade(session)

    async def _resume(self, session: InvestigationSession) -> RemediateResponse:
        record = session.latest_record()
        if record.final_analysis is None and record_status(session, record) != SessionStatus.FAILED:
            logger.info("Resuming investigation", session_id=session.id)
            session = await self.controller.run(session.id)
            return await self._cascade(session)
        return await self._stored_outcome(session)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _decide(self, session: InvestigationSession) -> Decision:
        return decide(
            session.latest_record().final_analysis,
            session.mode,
            session.confidence_threshold,
            session.max_risk_level,
        )

    async def _cascade(
        self, session: InvestigationSession, execute_first: bool = False
    ) -> RemediateResponse:
        """Decide on the newest plan; execute and re-decide while allowed."""
        executed: Optional[list[ExecutionResult]] = None
        while True:
            if execute_first:
                execute_first = False
            else:
                record = session.latest_record()
                if record.final_analysis is None:
                    return self._build_response(session, results=executed)
                decision = self._decide(session)
                logger.info(
                    "Execution decision made",
                    session_id=session.id,
                    action=decision.action.value,
                    reason=decision.reason,
                )
                if decision.action in _WAITING:
                    session.status = SessionStatus.AWAITING_APPROVAL
                    await self.store.put(session)
                    return self._build_response(session, decision=decision, results=executed)
                if decision.action == DecisionAction.NO_ACTION:
                    return self._build_response(session, results=executed)

            before = len(session.execution_results)
            rounds = len(session.follow_ups)
            session = await self.engine.execute_plan(session.id)
            executed = (executed or []) + session.execution_results[before:]
            if len(session.follow_ups) == rounds:
                return self._build_response(session, results=executed)

    async def _stored_outcome(self, session: InvestigationSession) -> RemediateResponse:
        decision = None
        if session.status == SessionStatus.AWAITING_APPROVAL and session.latest_record().final_analysis:
            decision = self._decide(session)
        response = self._build_response(session, decision=decision)
        if session.execution_results:
            response.executed = True
            response.results = session.execution_results
        return response

    def _build_response(
        self,
        session: InvestigationSession,
        decision: Optional[Decision] = None,
        results: Optional[list[ExecutionResult]] = None,
        message: Optional[str] = None,
    ) -> RemediateResponse:
        record = session.latest_record()
        analysis = record.final_analysis

        if analysis is None and record_status(session, record) == SessionStatus.FAILED:
            status = "failed"
            message = message or record.failure_reason
        elif session.status == SessionStatus.EXECUTING:
            status = "failed"
            message = message or (
                "Execution was interrupted before it finished; "
                f"{len(session.execution_results)} command result(s) were recorded. "
                "Verify the cluster state before retrying."
            )
        elif decision is not None and decision.action in _WAITING:
            status = "awaiting_user_approval"
        elif results is not None:
            status = "success" if all(r.success for r in results) else "failed"
        elif session.status == SessionStatus.FAILED:
            status = "failed"
        else:
            status = "success"

        gathered = [
            result.command
            for rec in [session, *session.follow_ups]
            for iteration in rec.iterations
            for result in iteration.gathered_data.values()
            if result.status == ResultStatus.OK
        ]
        response = RemediateResponse(
            status=status,
            session_id=session.id,
            investigation=InvestigationSummary(
                iterations=session.total_iterations(), data_gathered=gathered
            ),
            message=message,
        )
        if analysis is not None:
            response.analysis = AnalysisSummary(
                root_cause=analysis.root_cause,
                confidence=analysis.confidence,
                factors=analysis.supporting_factors,
            )
            response.remediation = RemediationSummary(
                summary=analysis.summary,
                actions=analysis.remediation_actions,
                risk=analysis.risk,
            )
            response.issue_status = analysis.issue_status
            response.validation_intent = analysis.validation_intent
        if decision is not None and decision.action in _WAITING:
            response.execution_choices = decision.execution_choices
            response.fallback_reason = decision.fallback_reason
        if results is not None:
            response.executed = True
            response.results = results
        elif decision is not None:
            response.executed = False
        return response


# Global instance
_remediator: Optional[Remediator] = None


def get_remediator() -> Remediator:
    """Get or create the Remediator singleton."""
    global _remediator
    if _remediator is None:
        _remediator = Remediator()
    return _remediator
