"""Shared test fixtures for cluster-remediator."""

import json
import sys
from typing import Any, Callable, Optional, Sequence, Union

import pytest
import pytest_asyncio

from remediator.kubectl import CommandOutput


# ---------------------------------------------------------------------------
# Environment fixture (needed by any test that instantiates Settings)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings_env(monkeypatch):
    """Set minimal environment for Settings to load."""
    monkeypatch.setenv("REMEDIATOR_LLM_API_KEY", "test-key")
    monkeypatch.setenv("REMEDIATOR_REDIS_URL", "redis://localhost:6379")
    monkeypatch.setenv("REMEDIATOR_SESSION_BACKEND", "file")


# ---------------------------------------------------------------------------
# Singleton reset fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset all module-level singletons between tests."""
    modules_and_attrs = [
        ("remediator.kubectl", "_kubectl_runner"),
        ("remediator.session_store", "_session_store"),
        ("remediator.llm", "_model_backend"),
        ("remediator.investigation", "_controller"),
        ("remediator.executor", "_execution_engine"),
        ("remediator.remediate", "_remediator"),
    ]

    yield

    for mod_path, attr in modules_and_attrs:
        mod = sys.modules.get(mod_path)
        if mod is not None:
            setattr(mod, attr, None)


# ---------------------------------------------------------------------------
# Fake kubectl runner
# ---------------------------------------------------------------------------


class FakeRunner:
    """Records kubectl invocations and replies by argv prefix.

    ``responses`` maps an argv prefix to a CommandOutput (or a callable taking
    the argv and stdin). The first matching prefix wins.
    """

    def __init__(
        self,
        responses: Optional[dict[tuple, Union[CommandOutput, Callable]]] = None,
        default: Optional[CommandOutput] = None,
    ):
        self.responses = dict(responses or {})
        self.default = default or CommandOutput(stdout="ok\n", stderr="", exit_code=0)
        self.calls: list[tuple[tuple[str, ...], Optional[str]]] = []

    @property
    def argvs(self) -> list[tuple[str, ...]]:
        return [argv for argv, _ in self.calls]

    def calls_for(self, verb: str) -> list[tuple[str, ...]]:
        return [argv for argv in self.argvs if argv and argv[0] == verb]

    async def run(self, args: Sequence[str], timeout: float, stdin: Optional[str] = None):
        argv = tuple(args)
        self.calls.append((argv, stdin))
        for prefix, reply in self.responses.items():
            if argv[: len(prefix)] == prefix:
                return reply(argv, stdin) if callable(reply) else reply
        return self.default


@pytest.fixture
def fake_runner():
    """Return a FakeRunner answering every command successfully."""
    return FakeRunner(
        responses={
            ("api-resources",): CommandOutput(
                stdout="NAME  SHORTNAMES  APIVERSION  NAMESPACED  KIND\npods  po  v1  true  Pod\n",
                stderr="",
                exit_code=0,
            )
        }
    )


# ---------------------------------------------------------------------------
# Scripted model backend
# ---------------------------------------------------------------------------


class FakeBackend:
    """Replies with scripted texts in order; exceptions in the script are raised."""

    def __init__(self, replies: Sequence[Any] = ()):
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.kinds: list[str] = []

    def extend(self, replies: Sequence[Any]) -> None:
        self.replies.extend(replies)

    async def send(self, prompt: str, timeout: Optional[float] = None, kind: str = "investigate") -> str:
        self.prompts.append(prompt)
        self.kinds.append(kind)
        if not self.replies:
            raise RuntimeError("FakeBackend has no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def step_reply(
    analysis: str = "Looking at the cluster",
    requests: Sequence[dict] = (),
    complete: bool = False,
    confidence: float = 0.5,
    **extra,
) -> str:
    """JSON text of one investigation response."""
    body = {
        "analysis": analysis,
        "dataRequests": list(requests),
        "investigationComplete": complete,
        "confidence": confidence,
        "reasoning": "test reasoning",
    }
    body.update(extra)
    return json.dumps(body)


def final_reply(
    root_cause: str = "Pod cannot be scheduled: insufficient memory",
    confidence: float = 0.95,
    risk: str = "low",
    actions: Optional[Sequence[dict]] = None,
    issue_status: str = "active",
    validation_intent: Optional[str] = None,
) -> str:
    """JSON text of one final-analysis response."""
    if actions is None:
        actions = [
            {
                "description": "Lower the memory request",
                "command": "kubectl scale deployment api --replicas=1 -n shop",
                "risk": risk,
                "rationale": "Frees capacity for the pending pod",
            }
        ]
    body = {
        "rootCause": root_cause,
        "confidence": confidence,
        "factors": ["node memory exhausted"],
        "issueStatus": issue_status,
        "remediation": {"summary": "Scale down to free memory", "actions": list(actions), "risk": risk},
    }
    if validation_intent:
        body["validationIntent"] = validation_intent
    return f"Here is my analysis:\n```json\n{json.dumps(body)}\n```"


@pytest.fixture
def step():
    return step_reply


@pytest.fixture
def final():
    return final_reply


@pytest.fixture
def fake_backend():
    return FakeBackend()


# ---------------------------------------------------------------------------
# Session stores
# ---------------------------------------------------------------------------


@pytest.fixture
def file_store(tmp_path):
    """Return a FileSessionStore rooted in a temp directory."""
    from remediator.session_store import FileSessionStore

    return FileSessionStore(str(tmp_path / "sessions"))


class FakeRedis:
    """Dict-backed async Redis stand-in for tests."""

    def __init__(self):
        self._store: dict[str, Any] = {}
        self._expiry: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, **kwargs) -> None:
        self._store[key] = value
        if ex is not None:
            self._expiry[key] = ex

    async def delete(self, *keys: str) -> None:
        for k in keys:
            self._store.pop(k, None)

    async def close(self) -> None:
        pass


@pytest.fixture
def fake_redis():
    """Return a FakeRedis instance."""
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis):
    """Return a RedisSessionStore wired to a FakeRedis backend."""
    from remediator.session_store import RedisSessionStore

    store = RedisSessionStore("redis://fake:6379", ttl_seconds=3600)
    store._redis = fake_redis
    return store


# ---------------------------------------------------------------------------
# Wired components
# ---------------------------------------------------------------------------


@pytest.fixture
def controller(file_store, fake_backend, fake_runner):
    """InvestigationController wired to fakes, no API discovery."""
    from remediator.budget import ContextBudgeter
    from remediator.gatherer import ClusterDataGatherer
    from remediator.investigation import InvestigationController

    return InvestigationController(
        store=file_store,
        backend=fake_backend,
        gatherer=ClusterDataGatherer(runner=fake_runner, timeout=5, concurrency=2),
        budgeter=ContextBudgeter(budget=100000, recent=3),
        max_iterations=20,
        discover_api_resources=False,
    )


@pytest.fixture
def engine(file_store, fake_runner, controller):
    from remediator.executor import ExecutionEngine

    return ExecutionEngine(
        store=file_store,
        runner=fake_runner,
        controller=controller,
        timeout=5,
        max_validation_rounds=3,
    )


@pytest.fixture
def remediator(file_store, controller, engine):
    from remediator.remediate import Remediator

    return Remediator(store=file_store, controller=controller, engine=engine)


# ---------------------------------------------------------------------------
# httpx / FastAPI test client
# ---------------------------------------------------------------------------


@pytest.fixture
def app_no_lifespan(settings_env, remediator, file_store):
    """Create a FastAPI app instance without running lifespan (no real services)."""
    from remediator.api import app_state, create_app

    app_state.remediator = remediator
    app_state.store = file_store

    app = create_app()
    # Remove the lifespan so httpx can call routes directly
    app.router.lifespan_context = None
    yield app

    app_state.remediator = None
    app_state.store = None


@pytest_asyncio.fixture
async def async_client(app_no_lifespan):
    """Async httpx test client for FastAPI endpoint tests."""
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app_no_lifespan)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
