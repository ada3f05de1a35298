"""Tests for remediator.gatherer and remediator.kubectl."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from remediator.errors import InfrastructureUnavailable
from remediator.gatherer import ClusterDataGatherer, suggest_fix
from remediator.kubectl import CommandOutput, KubectlRunner
from remediator.models import DataRequest, ResultStatus
from remediator.safety import Rejection, RejectionReason, SafeInvocation, validate_request

from conftest import FakeRunner


class TestSuggestFix:
    def test_namespace_not_found_checked_first(self):
        hint = suggest_fix('Error from server (NotFound): namespaces "shop" not found')
        assert hint.startswith("Namespace does not exist")

    def test_not_found(self):
        assert "different namespace" in suggest_fix('pods "api-0" not found')

    def test_forbidden(self):
        assert "RBAC" in suggest_fix("Error from server (Forbidden): pods is forbidden")

    def test_timeout(self):
        assert "connectivity" in suggest_fix("command timed out after 5s")

    def test_unknown(self):
        assert suggest_fix("something odd") is None


class TestGather:
    @pytest.mark.asyncio
    async def test_results_keyed_in_request_order(self):
        runner = FakeRunner(
            responses={
                ("get", "pods"): CommandOutput("api-0 Pending\n", "", 0),
                ("describe",): CommandOutput("", 'pods "web" not found', 1),
            }
        )
        gatherer = ClusterDataGatherer(runner=runner, timeout=5, concurrency=2)
        outcomes = [
            validate_request(DataRequest(operation_type="get", resource="pods", namespace="shop")),
            validate_request(DataRequest(operation_type="describe", resource="pod/web", namespace="shop")),
        ]

        gathered = await gatherer.gather(3, outcomes)

        assert list(gathered) == ["req-3-0", "req-3-1"]
        assert gathered["req-3-0"].status == ResultStatus.OK
        assert gathered["req-3-0"].output == "api-0 Pending\n"
        failed = gathered["req-3-1"]
        assert failed.status == ResultStatus.ERROR
        assert "not found" in failed.error
        assert failed.suggestion is not None
        assert failed.command == "kubectl describe pod/web -n shop"

    @pytest.mark.asyncio
    async def test_rejection_never_reaches_runner(self):
        runner = FakeRunner()
        gatherer = ClusterDataGatherer(runner=runner, timeout=5)
        rejection = validate_request(DataRequest(operation_type="delete", resource="pod/api-0"))

        gathered = await gatherer.gather(1, [rejection])

        assert runner.calls == []
        entry = gathered["req-1-0"]
        assert entry.status == ResultStatus.REJECTED
        assert entry.reason == RejectionReason.UNSUPPORTED_OPERATION.value
        assert entry.command == "kubectl delete pod/api-0"

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        active = 0
        peak = 0

        class SlowRunner:
            async def run(self, args, timeout, stdin=None):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return CommandOutput("ok", "", 0)

        gatherer = ClusterDataGatherer(runner=SlowRunner(), timeout=5, concurrency=2)
        outcomes = [SafeInvocation(argv=("get", "pods")) for _ in range(6)]

        gathered = await gatherer.gather(1, outcomes)

        assert len(gathered) == 6
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_long_output_truncated(self):
        runner = FakeRunner(default=CommandOutput("x" * 50, "", 0))
        gatherer = ClusterDataGatherer(runner=runner, timeout=5, max_output_chars=10)

        result = await gatherer.execute(SafeInvocation(argv=("get", "pods")))

        assert result.truncated is True
        assert result.output.startswith("x" * 10)

    @pytest.mark.asyncio
    async def test_logs_truncated_keeping_tail(self):
        runner = FakeRunner(default=CommandOutput("a" * 40 + "END", "", 0))
        gatherer = ClusterDataGatherer(runner=runner, timeout=5, max_output_chars=10)

        result = await gatherer.execute(SafeInvocation(argv=("logs", "pod/api-0")))

        assert result.output.endswith("END")

    @pytest.mark.asyncio
    async def test_missing_binary_propagates(self):
        runner = MagicMock()
        runner.run = AsyncMock(side_effect=InfrastructureUnavailable("no kubectl"))
        gatherer = ClusterDataGatherer(runner=runner, timeout=5)

        with pytest.raises(InfrastructureUnavailable):
            await gatherer.execute(SafeInvocation(argv=("get", "pods")))

    @pytest.mark.asyncio
    async def test_sibling_queries_cancelled_on_infrastructure_failure(self):
        cancelled = []

        class MixedRunner:
            async def run(self, args, timeout, stdin=None):
                if args[0] == "describe":
                    raise InfrastructureUnavailable("no kubectl")
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(args)
                    raise
                return CommandOutput("ok", "", 0)

        gatherer = ClusterDataGatherer(runner=MixedRunner(), timeout=5, concurrency=4)
        outcomes = [
            SafeInvocation(argv=("get", "pods")),
            SafeInvocation(argv=("describe", "pod/api-0")),
            SafeInvocation(argv=("get", "nodes")),
        ]

        with pytest.raises(InfrastructureUnavailable):
            await gatherer.gather(1, outcomes)

        assert sorted(cancelled) == [("get", "nodes"), ("get", "pods")]


class TestKubectlRunner:
    @pytest.mark.asyncio
    async def test_argv_passed_without_shell(self):
        proc = MagicMock()
        proc.communicate = AsyncMock(return_value=(b"out", b""))
        proc.returncode = 0
        runner = KubectlRunner("kubectl", kubeconfig_path="/kc", context="dev")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            result = await runner.run(("get", "pods"), timeout=5)

        args = spawn.call_args.args
        assert args == ("kubectl", "--kubeconfig=/kc", "--context=dev", "get", "pods")
        assert result.ok
        assert result.stdout == "out"

    @pytest.mark.asyncio
    async def test_stdin_forwarded(self):
        proc = MagicMock()
        proc.communicate = AsyncMock(return_value=(b"applied", b""))
        proc.returncode = 0
        runner = KubectlRunner()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            await runner.run(("apply", "-f", "-"), timeout=5, stdin="kind: ConfigMap")

        proc.communicate.assert_awaited_once_with(b"kind: ConfigMap")

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        runner = KubectlRunner("/nonexistent/kubectl")
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("nope"))):
            with pytest.raises(InfrastructureUnavailable):
                await runner.run(("get", "pods"), timeout=5)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        async def hang(*_):
            await asyncio.sleep(10)

        proc = MagicMock()
        proc.communicate = hang
        proc.kill = MagicMock()
        proc.wait = AsyncMock(return_value=-9)
        runner = KubectlRunner()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await runner.run(("get", "pods"), timeout=0.01)

        proc.kill.assert_called_once()
        assert result.exit_code == -1
        assert "timed out" in result.stderr


def test_rejection_is_frozen():
    rejection = Rejection(RejectionReason.INVALID_ARGUMENT, "bad")
    with pytest.raises(Exception):
        rejection.message = "changed"
