"""Tests for remediator.budget - context estimation and compaction."""

from remediator.budget import ContextBudgeter, compress_view, iteration_view
from remediator.models import GatheredResult, InvestigationSession, Iteration, ResultStatus


def _session(iterations: int, output_size: int = 2000) -> InvestigationSession:
    session = InvestigationSession(issue="pod api-0 pending in shop", initial_context={"logs": ["oom"]})
    for step in range(1, iterations + 1):
        session.iterations.append(
            Iteration(
                step=step,
                analysis=f"Step {step} finding\nmore detail",
                gathered_data={
                    f"req-{step}-0": GatheredResult(
                        command="kubectl get pods -n shop",
                        status=ResultStatus.OK,
                        output="x" * output_size,
                    ),
                    f"req-{step}-1": GatheredResult(
                        command="kubectl describe pod/web -n shop",
                        status=ResultStatus.ERROR,
                        error='pods "web" not found',
                    ),
                },
            )
        )
    return session


class TestEstimate:
    def test_chars_over_four(self):
        budgeter = ContextBudgeter(budget=1000)
        session = _session(1)
        context = budgeter.build(session.id, session)
        estimate = budgeter.estimate(context)
        assert estimate.tokens == len(context.serialize()) // 4
        assert estimate.budget == 1000


class TestShrink:
    def test_under_budget_unchanged(self):
        budgeter = ContextBudgeter(budget=100000, recent=3)
        session = _session(5)
        context = budgeter.build(session.id, session)
        assert budgeter.shrink(context) is context

    def test_sliding_window_keeps_recent_verbatim(self):
        session = _session(10, output_size=2000)
        budgeter = ContextBudgeter(budget=2500, recent=3)

        shrunk = budgeter.shrink(budgeter.build(session.id, session))

        assert not shrunk.reset
        assert [v["step"] for v in shrunk.recent] == [8, 9, 10]
        assert len(shrunk.summary) == 7
        assert shrunk.summary[0].startswith("Step 1: Step 1 finding")
        assert "x" * 100 not in "".join(shrunk.summary)

    def test_emergency_reset_keeps_issue_and_session_id(self):
        session = _session(10, output_size=20000)
        budgeter = ContextBudgeter(budget=3000, recent=3)

        shrunk = budgeter.shrink(budgeter.build(session.id, session))

        assert shrunk.reset
        assert shrunk.recent == ()
        assert shrunk.session_id == session.id
        assert shrunk.issue == session.issue
        assert shrunk.initial_context == {"logs": ["oom"]}
        assert len(shrunk.summary) == 10
        assert not budgeter.estimate(shrunk).over_budget

    def test_reset_trims_oldest_findings_first(self):
        session = _session(30, output_size=5000)
        budgeter = ContextBudgeter(budget=400, recent=3)

        shrunk = budgeter.shrink(budgeter.build(session.id, session))

        assert shrunk.reset
        assert shrunk.issue == session.issue
        assert shrunk.summary
        assert shrunk.summary[-1].startswith("Step 30:")
        assert len(shrunk.summary) < 30

    def test_persisted_session_untouched(self):
        session = _session(10, output_size=20000)
        before = session.model_dump_json()
        budgeter = ContextBudgeter(budget=3000, recent=3)

        budgeter.prepare(session.id, session)

        assert session.model_dump_json() == before
        assert session.context_resets == 0


def test_compress_view_lists_request_status():
    iteration = Iteration(
        step=2,
        analysis="Scheduler reports insufficient memory",
        gathered_data={
            "req-2-0": GatheredResult(command="kubectl get nodes", status=ResultStatus.OK, output="n1"),
            "req-2-1": GatheredResult(
                command="kubectl delete pod/x", status=ResultStatus.REJECTED, error="not permitted"
            ),
        },
    )
    line = compress_view(iteration_view(iteration))
    assert line == (
        "Step 2: Scheduler reports insufficient memory; "
        "kubectl get nodes -> ok; kubectl delete pod/x -> rejected (not permitted)"
    )
