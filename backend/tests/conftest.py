from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


# Ensure `backend` package import works regardless of current working directory.
ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = ROOT
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from companion_app.core.config import settings
from companion_app.main import create_app
from companion_app.models.schemas import CompanionProfile
from companion_app.services.cache import CacheService
from companion_app.services.evaluation_scorer import SessionEvaluator
from companion_app.services.supabase_store import SessionStore
from tests.fakes.catalog import COMPANION_ROWS, LIVELY_SCRIPT
from tests.fakes.fake_clients import FakeMetricsClient, FakeSupabaseClient, FakeTransport, StaticRandom


@pytest.fixture(autouse=True)
def data_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "data"
    monkeypatch.setattr(settings, "DATA_ROOT", root)
    return root


@pytest.fixture()
def companion() -> CompanionProfile:
    return CompanionProfile.model_validate(COMPANION_ROWS[0])


@pytest.fixture()
def supabase_client() -> FakeSupabaseClient:
    return FakeSupabaseClient({settings.SUPABASE_COMPANIONS_TABLE: COMPANION_ROWS})


@pytest.fixture()
def store(supabase_client: FakeSupabaseClient) -> SessionStore:
    return SessionStore(client=supabase_client)


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport(script=LIVELY_SCRIPT)


@pytest.fixture()
def fake_metrics() -> FakeMetricsClient:
    return FakeMetricsClient()


@pytest.fixture()
def evaluator(fake_metrics: FakeMetricsClient) -> SessionEvaluator:
    return SessionEvaluator(fake_metrics, metrics_timeout_seconds=0.5, rng=StaticRandom(77))


@pytest.fixture()
def app(
    data_root: Path,
    store: SessionStore,
    fake_transport: FakeTransport,
    evaluator: SessionEvaluator,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(settings, "EVALUATION_COMPLETE_DISPLAY_SECONDS", 0.05)
    return create_app(
        store=store,
        transport=fake_transport,
        evaluator=evaluator,
        cache=CacheService(enabled=False),
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
