from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from companion_app.core.config import settings
from companion_app.main import create_app
from companion_app.services.cache import CacheService
from companion_app.services.supabase_store import SessionStore
from companion_app.services.voice_transport import VoiceConnectionError
from tests.fakes.catalog import COMPANION_ROWS, user_headers
from tests.fakes.fake_clients import FakeRedis, FakeSupabaseClient, FakeTransport


SESSIONS = settings.SUPABASE_SESSION_HISTORY_TABLE


def _seed_history(supabase_client) -> None:
    supabase_client.tables[SESSIONS] = [
        {
            "id": "s1",
            "companion_id": "comp-physics",
            "user_id": "user-a",
            "created_at": "2024-05-01T10:00:00Z",
            "score": 71,
            "summary": "first try",
        },
        {
            "id": "s2",
            "companion_id": "comp-physics",
            "user_id": "user-a",
            "created_at": "2024-05-03T10:00:00Z",
            "score": 86,
            "summary": "second try",
        },
    ]


@pytest.mark.integration
def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.integration
def test_session_lifecycle_over_http(client, supabase_client) -> None:
    headers = user_headers()

    started = client.post("/api/companions/comp-physics/session/start", headers=headers)
    assert started.status_code == 200
    body = started.json()
    assert body["ok"] is True
    assert body["session"]["state"] == "active"
    assert body["session"]["call_id"] == "conv_fake_1"

    again = client.post("/api/companions/comp-physics/session/start", headers=headers)
    assert again.status_code == 409

    muted = client.post("/api/companions/comp-physics/session/mute", headers=headers)
    assert muted.status_code == 200
    assert muted.json()["ok"] is True
    assert muted.json()["is_muted"] is True

    snapshot = client.get("/api/companions/comp-physics/session", headers=headers).json()
    assert snapshot["state"] == "active"
    assert len(snapshot["transcript"]) == 6

    ended = client.post("/api/companions/comp-physics/session/end", headers=headers)
    assert ended.status_code == 200
    body = ended.json()
    assert body["ok"] is True
    assert body["message"] == "Session saved"
    assert body["session"]["state"] == "finished"
    assert body["session"]["evaluation_complete"] is True
    assert body["session"]["last_record"]["score"] == 82
    assert body["session"]["last_evaluation"]["insights"]

    [row] = supabase_client.tables[SESSIONS]
    assert row["user_id"] == "user-a"
    assert row["vapi_call_id"] == "conv_fake_1"

    repeat = client.post("/api/companions/comp-physics/session/end", headers=headers)
    assert repeat.status_code == 200
    assert repeat.json()["ok"] is False
    assert len(supabase_client.tables[SESSIONS]) == 1


@pytest.mark.integration
def test_sessions_are_scoped_per_user(client) -> None:
    client.post("/api/companions/comp-physics/session/start", headers=user_headers("user-a"))

    other = client.get("/api/companions/comp-physics/session", headers=user_headers("user-b"))
    assert other.json()["state"] == "idle"

    started = client.post("/api/companions/comp-physics/session/start", headers=user_headers("user-b"))
    assert started.json()["ok"] is True


@pytest.mark.integration
def test_unknown_companion_is_404(client) -> None:
    response = client.post("/api/companions/nope/session/start", headers=user_headers())
    assert response.status_code == 404


@pytest.mark.integration
def test_mute_without_active_call_reports_not_ok(client) -> None:
    response = client.post("/api/companions/comp-maths/session/mute", headers=user_headers())
    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["is_muted"] is False


@pytest.mark.integration
def test_signed_out_session_is_not_saved(client, supabase_client) -> None:
    client.post("/api/companions/comp-physics/session/start")
    ended = client.post("/api/companions/comp-physics/session/end")

    assert ended.status_code == 200
    assert ended.json()["message"] == "Session ended (not saved: signed out)"
    assert ended.json()["session"]["last_evaluation"] is not None
    assert supabase_client.tables.get(SESSIONS, []) == []


@pytest.mark.integration
def test_save_failure_is_502_with_final_state(client, supabase_client) -> None:
    headers = user_headers()
    client.post("/api/companions/comp-physics/session/start", headers=headers)
    supabase_client.fail_next_inserts(2)

    ended = client.post("/api/companions/comp-physics/session/end", headers=headers)

    assert ended.status_code == 502
    body = ended.json()
    assert body["ok"] is False
    assert body["session"]["state"] == "finished"
    assert body["session"]["evaluation_complete"] is True


@pytest.mark.integration
def test_voice_connection_failure_reports_idle(store, evaluator) -> None:
    transport = FakeTransport(fail_with=VoiceConnectionError("handshake refused"))
    app = create_app(store=store, transport=transport, evaluator=evaluator, cache=CacheService(enabled=False))

    with TestClient(app) as client:
        response = client.post("/api/companions/comp-physics/session/start", headers=user_headers())

    assert response.status_code == 200
    assert response.json()["ok"] is False
    assert response.json()["message"] == "Voice connection failed"
    assert response.json()["session"]["state"] == "idle"


@pytest.mark.integration
def test_companion_list_is_enriched_for_signed_in_user(client, supabase_client) -> None:
    _seed_history(supabase_client)

    mine = client.get("/api/companions", headers=user_headers()).json()
    by_id = {row["id"]: row for row in mine}
    assert by_id["comp-physics"]["last_session_score"] == 86
    assert by_id["comp-physics"]["last_session_summary"] == "second try"
    assert by_id["comp-physics"]["last_session_date"] == "2024-05-03"
    assert by_id["comp-maths"]["last_session_score"] is None

    anonymous = client.get("/api/companions").json()
    assert all(row["last_session_score"] is None for row in anonymous)


@pytest.mark.integration
def test_companion_list_filters_and_pages(client) -> None:
    maths = client.get("/api/companions", params={"subject": "MATH"}).json()
    assert [row["id"] for row in maths] == ["comp-maths"]

    by_name = client.get("/api/companions", params={"topic": "memory keeper"}).json()
    assert [row["id"] for row in by_name] == ["comp-history"]

    second_page = client.get("/api/companions", params={"limit": 1, "page": 2}).json()
    assert [row["id"] for row in second_page] == ["comp-maths"]


@pytest.mark.integration
def test_recent_sessions_route(client, supabase_client) -> None:
    _seed_history(supabase_client)

    recent = client.get("/api/companions/recent", headers=user_headers()).json()
    assert [row["id"] for row in recent] == ["comp-physics"]
    assert recent[0]["last_session_score"] == 86

    assert client.get("/api/companions/recent").json() == []


@pytest.mark.integration
def test_companion_list_cache_is_invalidated_by_new_session(monkeypatch, store, supabase_client, fake_transport, evaluator) -> None:
    fake_redis = FakeRedis()
    monkeypatch.setattr(settings, "EVALUATION_COMPLETE_DISPLAY_SECONDS", 0.05)
    monkeypatch.setattr("companion_app.services.cache.redis_asyncio.from_url", lambda *_, **__: fake_redis)
    cache = CacheService(redis_url="redis://localhost:6379/0", enabled=True)
    app = create_app(store=store, transport=fake_transport, evaluator=evaluator, cache=cache)
    headers = user_headers()

    with TestClient(app) as client:
        first = client.get("/api/companions", headers=headers).json()
        assert first[0]["last_session_score"] is None
        assert len(fake_redis.storage) == 1

        list_queries = sum(1 for _table, _op, chain in supabase_client.queries if ("range", (0, 9)) in chain)
        client.get("/api/companions", headers=headers)
        assert sum(1 for _table, _op, chain in supabase_client.queries if ("range", (0, 9)) in chain) == list_queries

        client.post("/api/companions/comp-physics/session/start", headers=headers)
        client.post("/api/companions/comp-physics/session/end", headers=headers)
        assert fake_redis.storage == {}

        refreshed = client.get("/api/companions", headers=headers).json()
        assert refreshed[0]["last_session_score"] == 82


@pytest.mark.integration
def test_telemetry_routes_expose_recorded_events(client) -> None:
    client.post("/api/companions/comp-physics/session/start", headers=user_headers())

    recent = client.get("/api/telemetry/recent", params={"component": "controller"}).json()
    assert recent["count"] >= 1
    assert all(event["component"] == "controller" for event in recent["events"])
    assert any(event["action"] == "state_transition" for event in recent["events"])

    summary = client.get("/api/telemetry/summary", params={"companion_id": "comp-physics"}).json()
    assert summary["event_count"] >= 1


@pytest.mark.integration
def test_end_session_with_integer_row_ids_is_saved(monkeypatch, fake_transport, evaluator) -> None:
    monkeypatch.setattr(settings, "EVALUATION_COMPLETE_DISPLAY_SECONDS", 0.05)
    client = FakeSupabaseClient({settings.SUPABASE_COMPANIONS_TABLE: COMPANION_ROWS}, integer_ids=True)
    app = create_app(
        store=SessionStore(client=client),
        transport=fake_transport,
        evaluator=evaluator,
        cache=CacheService(enabled=False),
    )
    headers = user_headers()

    with TestClient(app) as test_client:
        test_client.post("/api/companions/comp-physics/session/start", headers=headers)
        ended = test_client.post("/api/companions/comp-physics/session/end", headers=headers)

    assert ended.status_code == 200
    assert ended.json()["message"] == "Session saved"
    assert ended.json()["session"]["last_record"]["id"] == 1
