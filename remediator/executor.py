"""
Execution engine for approved remediation plans.

Commands run strictly in plan order, one at a time, and a failing command never
stops the batch. Every command is re-validated against the approved set right
before it runs.
"""

from typing import Collection, Optional, Sequence

import structlog

from .config import settings
from .errors import ExecutionPartialFailure, SessionNotFound
from .investigation import InvestigationController, get_investigation_controller
from .kubectl import KubectlRunner, get_kubectl_runner
from .metrics import remediator_commands_executed_total
from .models import (
    ExecutionResult,
    FollowUpInvestigation,
    InvestigationSession,
    RemediationAction,
    SessionStatus,
)
from .safety import Rejection, validate_command
from .session_store import SessionStore, get_session_store

logger = structlog.get_logger(__name__)


class ExecutionEngine:
    """Runs approved kubectl commands and schedules follow-up validation."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        runner: Optional[KubectlRunner] = None,
        controller: Optional[InvestigationController] = None,
        timeout: Optional[float] = None,
        max_validation_rounds: Optional[int] = None,
    ):
        self.store = store or get_session_store()
        self.runner = runner or get_kubectl_runner()
        self._controller = controller
        self.timeout = timeout or settings.command_timeout_seconds
        self.max_validation_rounds = (
            settings.max_validation_rounds if max_validation_rounds is None else max_validation_rounds
        )

    @property
    def controller(self) -> InvestigationController:
        if self._controller is None:
            self._controller = get_investigation_controller()
        return self._controller

    async def _run_one(self, action: RemediationAction, approved: Collection[str]) -> str:
        outcome = validate_command(action.command, approved, stdin=action.full_resource_definition)
        if isinstance(outcome, Rejection):
            raise ExecutionPartialFailure(
                action.command, f"rejected ({outcome.reason.value}): {outcome.message}"
            )
        result = await self.runner.run(outcome.argv, timeout=self.timeout, stdin=outcome.stdin)
        if not result.ok:
            message = (result.stderr or result.stdout).strip()
            raise ExecutionPartialFailure(
                action.command, message or f"kubectl exited with code {result.exit_code}"
            )
        return result.stdout

    async def execute(
        self, actions: Sequence[RemediationAction], approved_commands: Collection[str]
    ) -> list[ExecutionResult]:
        """Run each action's command in order, continuing past failures."""
        results = []
        runnable = [a for a in actions if a.command]
        for i, action in enumerate(runnable, start=1):
            logger.info(
                "Executing remediation command",
                index=i,
                total=len(runnable),
                command=action.command,
                risk=action.risk.value,
            )
            try:
                output = await self._run_one(action, approved_commands)
            except ExecutionPartialFailure as exc:
                logger.warning("Remediation command failed", command=exc.command, error=exc.message[:200])
                remediator_commands_executed_total.labels(result="failed").inc()
                results.append(ExecutionResult(command=action.command, success=False, error=exc.message))
                continue
            remediator_commands_executed_total.labels(result="succeeded").inc()
            results.append(ExecutionResult(command=action.command, success=True, output=output))

        logger.info(
            "Remediation batch finished",
            total=len(results),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    def add_follow_up(
        self,
        session: InvestigationSession,
        issue: str,
        seed_commands: Sequence[str],
        initial_context: Optional[dict] = None,
    ) -> FollowUpInvestigation:
        """Append a validation investigation to a session (not persisted)."""
        follow_up = FollowUpInvestigation(
            issue=issue,
            seed_commands=list(seed_commands),
            initial_context={"originalIssue": session.issue, **(initial_context or {})},
        )
        session.follow_ups.append(follow_up)
        logger.info(
            "Follow-up investigation added",
            session_id=session.id,
            round=len(session.follow_ups),
            commands=len(follow_up.seed_commands),
        )
        return follow_up

    async def execute_plan(self, session_id: str) -> InvestigationSession:
        """Execute the current plan of a session and validate the outcome.

        When the plan names a validation intent and the follow-up limit allows,
        a follow-up investigation is appended and driven to completion.
        """
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        analysis = session.latest_record().final_analysis
        if analysis is None:
            raise ValueError(f"session {session_id} has no analyzed plan to execute")

        session.status = SessionStatus.EXECUTING
        await self.store.put(session)

        results = await self.execute(analysis.remediation_actions, analysis.commands)
        session.execution_results.extend(results)
        session.status = (
            SessionStatus.SUCCEEDED if all(r.success for r in results) else SessionStatus.FAILED
        )

        if analysis.validation_intent and len(session.follow_ups) < self.max_validation_rounds:
            self.add_follow_up(
                session,
                analysis.validation_intent,
                [r.command for r in results if r.success],
                {"executionResults": [r.model_dump(mode="json", by_alias=True) for r in results]},
            )
            await self.store.put(session)
            return await self.controller.run(session.id)

        await self.store.put(session)
        return session


# Global instance
_execution_engine: Optional[ExecutionEngine] = None


def get_execution_engine() -> ExecutionEngine:
    """Get or create the ExecutionEngine singleton."""
    global _execution_engine
    if _execution_engine is None:
        _execution_engine = ExecutionEngine()
    return _execution_engine
