"""
Cluster data gatherer.

Executes validated read-only invocations and records every outcome,
failures included, as evidence for the next model turn. A failing query is
diagnostic signal, not a reason to abort the iteration.
"""

import asyncio
from typing import Optional, Sequence, Union

import structlog

from .config import settings
from .errors import ClusterQueryFailed
from .kubectl import KubectlRunner, get_kubectl_runner
from .metrics import remediator_data_requests_total
from .models import GatheredResult, ResultStatus
from .safety import Rejection, RejectionReason, SafeInvocation, SAFE_OPERATIONS

logger = structlog.get_logger(__name__)


def suggest_fix(error: str) -> Optional[str]:
    """Heuristic hint for a failed kubectl query."""
    lower = error.lower()
    if "namespace" in lower and "not found" in lower:
        return "Namespace does not exist. List namespaces first."
    if "not found" in lower:
        return (
            "Resource may not exist or may be in a different namespace. "
            "List the resource type first."
        )
    if "forbidden" in lower:
        return "Insufficient permissions. Check RBAC read access for this resource."
    if "doesn't have a resource type" in lower or "the server doesn't have" in lower:
        return "Unknown resource type. Check the cluster API resources list."
    if "connection refused" in lower or "timed out" in lower or "timeout" in lower:
        return "Cannot reach the cluster. Verify connectivity and kubectl configuration."
    return None


_REJECTION_HINTS = {
    RejectionReason.UNSUPPORTED_OPERATION: (
        f"Use read-only operations only: {', '.join(sorted(SAFE_OPERATIONS))}."
    ),
    RejectionReason.INVALID_ARGUMENT: "Narrow the request and use only supported filter flags.",
}


class ClusterDataGatherer:
    """Runs validated queries against the cluster with a bounded worker pool."""

    def __init__(
        self,
        runner: Optional[KubectlRunner] = None,
        timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
        max_output_chars: Optional[int] = None,
    ):
        self.runner = runner or get_kubectl_runner()
        self.timeout = timeout or settings.cluster_query_timeout_seconds
        self.concurrency = max(1, concurrency or settings.gather_concurrency)
        self.max_output_chars = max_output_chars or settings.max_output_chars

    async def _query(self, invocation: SafeInvocation, timeout: float) -> str:
        result = await self.runner.run(invocation.argv, timeout=timeout)
        if not result.ok:
            message = (result.stderr or result.stdout).strip()
            raise ClusterQueryFailed(
                invocation.display,
                message or f"kubectl exited with code {result.exit_code}",
                result.exit_code,
            )
        return result.stdout

    def _truncate(self, invocation: SafeInvocation, output: str) -> tuple[str, bool]:
        limit = self.max_output_chars
        if len(output) <= limit:
            return output, False
        # Logs are most useful at the end, listings at the start.
        if invocation.argv[0] == "logs":
            return "...[truncated]\n" + output[-limit:], True
        return output[:limit] + "\n...[truncated]", True

    async def execute(
        self, invocation: SafeInvocation, timeout: Optional[float] = None
    ) -> GatheredResult:
        """Execute one validated invocation, capturing failure as data."""
        try:
            output = await self._query(invocation, timeout or self.timeout)
        except ClusterQueryFailed as exc:
            logger.warning(
                "Cluster query failed",
                command=exc.command,
                exit_code=exc.exit_code,
                error=exc.message[:200],
            )
            remediator_data_requests_total.labels(result="error").inc()
            return GatheredResult(
                command=invocation.display,
                status=ResultStatus.ERROR,
                error=exc.message,
                suggestion=suggest_fix(exc.message),
            )

        text, truncated = self._truncate(invocation, output)
        remediator_data_requests_total.labels(result="ok").inc()
        return GatheredResult(
            command=invocation.display,
            status=ResultStatus.OK,
            output=text,
            truncated=truncated,
        )

    async def gather(
        self,
        step: int,
        outcomes: Sequence[Union[SafeInvocation, Rejection]],
    ) -> dict[str, GatheredResult]:
        """Process one iteration's validated requests.

        Rejections are recorded without touching the cluster. Invocations run
        concurrently; results keep request order.
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(outcome: Union[SafeInvocation, Rejection]) -> GatheredResult:
            if isinstance(outcome, Rejection):
                remediator_data_requests_total.labels(result="rejected").inc()
                return GatheredResult(
                    command=outcome.command,
                    status=ResultStatus.REJECTED,
                    error=outcome.message,
                    reason=outcome.reason.value,
                    suggestion=_REJECTION_HINTS.get(outcome.reason),
                )
            async with semaphore:
                return await self.execute(outcome)

        tasks = [asyncio.ensure_future(_one(o)) for o in outcomes]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        gathered = {f"req-{step}-{i}": r for i, r in enumerate(results)}
        logger.info(
            "Data gathering completed",
            step=step,
            total=len(gathered),
            ok=sum(1 for r in results if r.status == ResultStatus.OK),
            failed=sum(1 for r in results if r.status == ResultStatus.ERROR),
            rejected=sum(1 for r in results if r.status == ResultStatus.REJECTED),
        )
        return gathered
