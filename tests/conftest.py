from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.core.extractors import FLEXIBLE_SYSTEM_PROMPT
from app.core.normalizer import InboundMessage, parse_incoming
from app.core.plan_generator import PLAN_SYSTEM_PROMPT
from app.db.session import SessionLocal, configure_database, create_tables
from app.db.store import SqlPersistenceStore, UserRecord
from app.services.llm import LLMRequestError, get_text_generator
from app.services.messaging import get_messaging_gateway

PLAN_TEXT = (
    "Priorities:\n1. Ship the report\n2. Clear the inbox\n3. Call the bank\n"
    "Wellness:\n1. 20 minute walk\n2. Lights out by 22:30\n"
    "You've got this."
)
GENERAL_TEXT = "Happy to help! Send your check-in as: Sleep __h | Mood __ | Energy __ | Notes: __"


class FakeScenario(str, Enum):
    OK = "OK"
    FENCED_CHECKIN = "FENCED_CHECKIN"
    PROSE_CHECKIN = "PROSE_CHECKIN"
    NOTES_ONLY = "NOTES_ONLY"
    NOT_A_CHECKIN = "NOT_A_CHECKIN"
    MALFORMED_JSON = "MALFORMED_JSON"
    EMPTY = "EMPTY"
    TIMEOUT = "TIMEOUT"


class FakeTextGenerator:
    def __init__(self, scenario: FakeScenario, fixture_dir: Path) -> None:
        self.scenario = scenario
        self.fixture_dir = fixture_dir
        self.calls: list[dict] = []

    def _load_text(self, name: str) -> str:
        return (self.fixture_dir / name).read_text(encoding="utf-8")

    def _extraction_output(self) -> str:
        if self.scenario == FakeScenario.FENCED_CHECKIN:
            return self._load_text("FENCED_CHECKIN.txt")
        if self.scenario == FakeScenario.PROSE_CHECKIN:
            return self._load_text("PROSE_CHECKIN.txt")
        if self.scenario == FakeScenario.NOTES_ONLY:
            return '{"sleep": null, "mood": null, "energy": null, "notes": "slept badly, big meeting"}'
        if self.scenario == FakeScenario.MALFORMED_JSON:
            return self._load_text("MALFORMED_JSON.txt")
        if self.scenario == FakeScenario.EMPTY:
            return ""
        return '{"sleep": null, "mood": null, "energy": null, "notes": ""}'

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
        task_type: str = "reasoning",
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "task_type": task_type,
            }
        )
        if self.scenario == FakeScenario.TIMEOUT:
            raise LLMRequestError(provider="openai", model="gpt-4o-mini", message="simulated timeout", retryable=True)
        if system_prompt == FLEXIBLE_SYSTEM_PROMPT:
            return self._extraction_output()
        if self.scenario == FakeScenario.EMPTY:
            return ""
        if system_prompt == PLAN_SYSTEM_PROMPT:
            return PLAN_TEXT
        return GENERAL_TEXT

    def calls_for(self, system_prompt: str) -> list[dict]:
        return [call for call in self.calls if call["system_prompt"] == system_prompt]


class FakeGateway:
    def __init__(self, fail_send: bool = False) -> None:
        self.fail_send = fail_send
        self.sent: list[tuple[str, str]] = []

    def parse_incoming(self, payload) -> InboundMessage:
        return parse_incoming(payload)

    def send(self, to_handle: str, text: str) -> Optional[str]:
        if self.fail_send:
            return None
        self.sent.append((to_handle, text))
        return f"SM{uuid4().hex[:30]}"


def random_phone() -> str:
    return f"+1555{uuid4().int % 10_000_000:07d}"


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "llm"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "whatsapp_coach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from app.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(db_session: Session) -> SqlPersistenceStore:
    return SqlPersistenceStore(db_session)


@pytest.fixture
def create_user(store: SqlPersistenceStore) -> Callable[..., UserRecord]:
    def _create_user(name: Optional[str] = None, timezone: str = "UTC") -> UserRecord:
        return store.create_user(random_phone(), name, timezone)

    return _create_user


@pytest.fixture
def fake_llm_factory(fixture_dir: Path) -> Callable[[FakeScenario], FakeTextGenerator]:
    def _factory(scenario: FakeScenario) -> FakeTextGenerator:
        return FakeTextGenerator(scenario=scenario, fixture_dir=fixture_dir)

    return _factory


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def override_services(app, fake_llm_factory, fake_gateway):
    def _override(scenario: FakeScenario = FakeScenario.OK) -> FakeTextGenerator:
        generator = fake_llm_factory(scenario)
        app.dependency_overrides[get_text_generator] = lambda: generator
        app.dependency_overrides[get_messaging_gateway] = lambda: fake_gateway
        return generator

    return _override
