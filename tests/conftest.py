"""Test configuration and fixtures."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from ticket_forge.capabilities import ReasoningCapability, RepositoryCapability
from ticket_forge.db import DocumentStore, get_session_local, init_database
from ticket_forge.db.base import build_engine
from ticket_forge.errors import ProviderError
from ticket_forge.progress import ProgressPublisher
from ticket_forge.quality import QualityConfig, QualityEngine
from ticket_forge.quality.validators import Assessment, Validator
from ticket_forge.tickets import RepositoryRef, Ticket, TicketRepository
from ticket_forge.workflow.engine import EngineConfig, WorkflowEngine
from ticket_forge.workflow.models import OwnerScope

TWO_QUESTIONS = [
    {
        "id": "format",
        "text": "Which export format should be supported?",
        "input_type": "radio",
        "options": ["CSV", "XLSX"],
    },
    {
        "id": "limits",
        "text": "What is the maximum number of rows per export?",
        "input_type": "text",
        "default_assumption": "10,000 rows",
    },
]

DEFAULT_SPEC = {
    "title": "Add CSV export to the billing report page",
    "description": "Billing admins export the monthly billing report as CSV.",
    "ticket_type": "feature",
    "acceptance_criteria": [
        "Given a billing admin, when they click Export, then a CSV downloads",
        "The API returns 403 when a user without the billing role exports",
    ],
    "repo_paths": ["src/billing/export.py"],
}


class FakeReasoning(ReasoningCapability):
    """Scripted reasoning capability keyed on the request stage."""

    def __init__(
        self,
        questions_by_round: Optional[Dict[int, List[dict]]] = None,
        spec: Optional[dict] = None,
        analysis: Optional[dict] = None,
        fail_when: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None,
        delay: float = 0.0,
    ):
        self.questions_by_round = (
            {1: TWO_QUESTIONS} if questions_by_round is None else questions_by_round
        )
        self.spec = spec or DEFAULT_SPEC
        self.analysis = analysis or {"affected_areas": ["billing"], "risks": []}
        self.fail_when = fail_when
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        # Set `gate` to hold calls until released
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    def stages(self) -> List[str]:
        return [call["stage"] for call in self.calls]

    async def invoke(self, prompt: str, context: Dict[str, Any]) -> str:
        self.calls.append(context)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.entered.set()
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_when is not None:
                message = self.fail_when(context)
                if message:
                    raise ProviderError(message)

            stage = context["stage"]
            if stage == "analysis":
                return json.dumps(self.analysis)
            if stage == "questions":
                questions = self.questions_by_round.get(context["round_number"], [])
                return json.dumps({"questions": questions})
            return "Here is the ticket:\n```json\n" + json.dumps(self.spec) + "\n```"
        finally:
            self.in_flight -= 1


class FakeRepository(RepositoryCapability):
    """In-memory repository capability."""

    def __init__(self, tree: Sequence[str]):
        self.tree = list(tree)
        self.requested: List[str] = []

    async def get_file_tree(self, owner: str, repo: str, branch: str) -> List[str]:
        return list(self.tree)

    async def read_files(self, owner, repo, branch, paths):
        self.requested = list(paths)
        # Returns more than asked for; callers must keep their subset
        return {path: f"# {path}" for path in self.tree}


class FixedValidator(Validator):
    """Validator with a fixed score."""

    def __init__(self, criterion: str, score: float, blockers: Sequence[str] = ()):
        self.criterion = criterion
        self.score = score
        self.blockers = list(blockers)

    def assess(self, artifact) -> Assessment:
        return Assessment(score=self.score, blockers=list(self.blockers))


def fixed_quality(score: float, blockers: Sequence[str] = ()) -> QualityEngine:
    """Quality engine whose overall score is exactly ``score * 100``."""
    return QualityEngine(
        config=QualityConfig(weights={"acceptance_criteria": 1.0, "clarity": 1.0}),
        validators=[
            FixedValidator("acceptance_criteria", score, blockers),
            FixedValidator("clarity", score),
        ],
    )


@pytest.fixture
def store() -> DocumentStore:
    """Document store over an in-memory SQLite database."""
    engine = build_engine("sqlite://")
    init_database(engine)
    yield DocumentStore(get_session_local(engine))
    engine.dispose()


@pytest.fixture
def owner() -> OwnerScope:
    return OwnerScope(workspace_id="ws-1", user_id="user-1")


@pytest.fixture
def tickets(store) -> TicketRepository:
    """Ticket repository seeded with tickets "1" to "5"."""
    repo = TicketRepository(store)
    for index in range(1, 6):
        repo.save(
            Ticket(
                id=str(index),
                workspace_id="ws-1",
                title=f"Ticket {index}",
                description="Export the billing report",
                repository=RepositoryRef(owner="acme", name="billing"),
            )
        )
    return repo


@pytest.fixture
def reasoning() -> FakeReasoning:
    return FakeReasoning()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository(["package.json", "src/billing/export.py", "src/auth/login.py"])


@pytest.fixture
def make_engine(store, tickets, repository) -> Callable[..., WorkflowEngine]:
    """Factory for engines sharing the test store."""

    def _make(
        reasoning: ReasoningCapability,
        quality: Optional[QualityEngine] = None,
        publisher: Optional[ProgressPublisher] = None,
        **config: Any,
    ) -> WorkflowEngine:
        return WorkflowEngine(
            store,
            reasoning,
            repository=repository,
            quality=quality or fixed_quality(0.85),
            publisher=publisher,
            config=EngineConfig(**config),
        )

    return _make


@pytest.fixture
def engine(make_engine, reasoning) -> WorkflowEngine:
    return make_engine(reasoning)


@pytest.fixture
def make_reasoning() -> Callable[..., FakeReasoning]:
    return FakeReasoning


@pytest.fixture
def make_quality() -> Callable[..., QualityEngine]:
    return fixed_quality


@pytest.fixture
def fixed_validator() -> type:
    return FixedValidator
