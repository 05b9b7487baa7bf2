from __future__ import annotations

import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from healthguide_agent_core import AgentExecutor, HookRunner, ToolRegistry  # noqa: E402
from healthguide_tools import HealthGuideToolset, SQLiteBookingGateway, register_tools  # noqa: E402
from memory import SessionStore, SQLiteMemoryDB  # noqa: E402
from model_utils import ScriptedModel  # noqa: E402

_PROVIDER_ENV = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
    "HEALTHGUIDE_CHAT_PROVIDER",
    "SUPABASE_URL",
    "SUPABASE_KEY",
)


@pytest.fixture
def memory_db(tmp_path) -> SQLiteMemoryDB:
    return SQLiteMemoryDB(str(tmp_path / "healthguide-unit.sqlite"))


@pytest.fixture
def session_store(memory_db) -> SessionStore:
    return SessionStore(memory_db)


@pytest.fixture
def gateway(memory_db) -> SQLiteBookingGateway:
    booking_gateway = SQLiteBookingGateway(memory_db)
    booking_gateway.seed_demo_doctors()
    return booking_gateway


@pytest.fixture
def hooks() -> HookRunner:
    return HookRunner()


@pytest.fixture
def executor(gateway, hooks) -> AgentExecutor:
    registry = ToolRegistry()
    register_tools(registry, HealthGuideToolset(gateway))
    return AgentExecutor(registry=registry, hooks=hooks)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "healthguide-test.sqlite"
    monkeypatch.setenv("HEALTHGUIDE_DB_PATH", str(db_path))
    monkeypatch.setenv("HEALTHGUIDE_SKIP_DOTENV", "true")
    monkeypatch.setenv("HEALTHGUIDE_SEED_DOCTORS", "true")
    # Keep CI deterministic; model traffic is scripted per test.
    for key in _PROVIDER_ENV:
        monkeypatch.delenv(key, raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def scripted_model(backend_module) -> ScriptedModel:
    model = ScriptedModel()
    backend_module.container.sessions.model = model
    return model


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client
