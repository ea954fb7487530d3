import asyncio
import json

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from escrowchat.backend.api import create_app
from escrowchat.backend.collaborators import (
    InMemoryProfileService,
    InMemoryWalletService,
    LoggingAlertSink,
    RecordingModerationService,
)
from escrowchat.backend.config import load_settings
from escrowchat.backend.service import BillingService
from escrowchat.backend.store import InMemorySessionStore


def _client(balance: int = 500) -> tuple[TestClient, InMemoryWalletService]:
    profiles = InMemoryProfileService()
    profiles.add("m", {"gender": "male", "earnOptIn": False})
    profiles.add("w", {"gender": "female", "earnOptIn": True})
    wallet = InMemoryWalletService(balances={"m": balance})
    service = BillingService(
        store=InMemorySessionStore(),
        profiles=profiles,
        wallet=wallet,
        moderation=RecordingModerationService(),
        alerts=LoggingAlertSink(),
    )
    return TestClient(create_app(service=service, settings=load_settings())), wallet


def _create(client: TestClient) -> str:
    response = client.post(
        "/api/sessions",
        json={"participant_a": "m", "participant_b": "w", "initiator_id": "m"},
    )
    assert response.status_code == 200
    return response.json()["session_id"]


def test_post_sessions_returns_id_and_state() -> None:
    client, _ = _client()

    response = client.post(
        "/api/sessions",
        json={"participant_a": "m", "participant_b": "w", "initiator_id": "m"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["session_id"]
    assert data["state"]["state"] == "FREE_ACTIVE"
    assert data["state"]["roles"]["earnerId"] == "w"


def test_post_sessions_rejects_unknown_profile() -> None:
    client, _ = _client()

    response = client.post(
        "/api/sessions",
        json={"participant_a": "m", "participant_b": "ghost", "initiator_id": "m"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_PROFILE"


def test_get_session_returns_404_for_unknown_id() -> None:
    client, _ = _client()

    response = client.get("/api/sessions/missing")

    assert response.status_code == 404
    assert response.json()["code"] == "SESSION_NOT_FOUND"


def test_deposit_message_close_flow() -> None:
    client, wallet = _client()
    session_id = _create(client)

    deposit = client.post(f"/api/sessions/{session_id}/deposits", json={"payer_id": "m"})
    message = client.post(
        f"/api/sessions/{session_id}/messages",
        json={"sender_id": "w", "text": " ".join(["word"] * 77)},
    )
    close = client.post(f"/api/sessions/{session_id}/close", json={"requested_by": "m"})
    refunds = client.get(f"/api/sessions/{session_id}/refunds")

    assert deposit.status_code == 200
    assert deposit.json()["platform_fee"] == 35
    assert message.json()["token_cost"] == 7
    assert message.json()["remaining_tokens"] == 58
    assert close.json() == {"session_id": session_id, "state": "CLOSED", "refund_amount": 58}
    assert refunds.json()["refunds"][0]["reason"] == "MANUAL_CLOSE"
    assert wallet.balance_of("m") == 458


def test_deposit_by_non_payer_is_forbidden() -> None:
    client, _ = _client()
    session_id = _create(client)

    response = client.post(f"/api/sessions/{session_id}/deposits", json={"payer_id": "w"})

    assert response.status_code == 403
    assert response.json()["code"] == "NOT_PAYER"


def test_deposit_with_insufficient_funds_returns_402() -> None:
    client, _ = _client(balance=10)
    session_id = _create(client)

    response = client.post(f"/api/sessions/{session_id}/deposits", json={"payer_id": "m"})

    assert response.status_code == 402


def test_mismatch_route_refunds_platform_fee() -> None:
    client, wallet = _client()
    session_id = _create(client)
    client.post(f"/api/sessions/{session_id}/deposits", json={"payer_id": "m", "amount": 100})

    response = client.post(
        f"/api/sessions/{session_id}/mismatch",
        json={"reporter_id": "m", "suspect_id": "w"},
    )

    assert response.status_code == 200
    assert response.json()["terminated"] is True
    assert response.json()["refund_amount"] == 100
    assert wallet.balance_of("m") == 500


def test_rejected_message_is_an_outcome_not_an_error() -> None:
    client, _ = _client()
    session_id = _create(client)
    client.post(f"/api/sessions/{session_id}/close", json={"requested_by": "w"})

    response = client.post(f"/api/sessions/{session_id}/messages", json={"sender_id": "w", "text": "hi"})

    assert response.status_code == 200
    assert response.json()["allowed"] is False
    assert response.json()["reason"] == "SESSION_CLOSED"


def test_websocket_broadcasts_state_after_message() -> None:
    client, _ = _client()

    with client:
        session_id = _create(client)
        with client.websocket_connect(f"/ws/sessions/{session_id}") as websocket:
            initial = websocket.receive_json()
            client.post(f"/api/sessions/{session_id}/messages", json={"sender_id": "w", "text": "hello"})
            update = websocket.receive_json()

    assert initial["type"] == "session.state"
    assert initial["state"]["messageCount"] == 0
    assert update["type"] == "session.state"
    assert update["state"]["messageCount"] == 1


def test_websocket_rejects_unknown_session() -> None:
    client, _ = _client()

    with pytest.raises(Exception):
        with client.websocket_connect("/ws/sessions/missing"):
            pass


def test_default_app_serves_seeded_users(monkeypatch, tmp_path) -> None:
    seed = tmp_path / "seed.json"
    seed.write_text(
        json.dumps(
            {
                "users": {
                    "alice": {"gender": "male", "earnOptIn": False, "balance": 300},
                    "bob": {"gender": "female", "earnOptIn": True},
                }
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.delenv("ESCROWCHAT_DATABASE_URL", raising=False)
    monkeypatch.setenv("ESCROWCHAT_SEED_FILE", str(seed))
    client = TestClient(create_app())

    created = client.post(
        "/api/sessions",
        json={"participant_a": "alice", "participant_b": "bob", "initiator_id": "alice"},
    )
    session_id = created.json()["session_id"]
    deposit = client.post(f"/api/sessions/{session_id}/deposits", json={"payer_id": "alice"})
    message = client.post(
        f"/api/sessions/{session_id}/messages",
        json={"sender_id": "bob", "text": " ".join(["word"] * 22)},
    )

    assert created.status_code == 200
    assert created.json()["state"]["roles"]["payerId"] == "alice"
    assert deposit.status_code == 200
    assert deposit.json()["escrow_amount"] == 65
    assert message.json()["token_cost"] == 2


def test_default_app_without_seed_rejects_unknown_users(monkeypatch) -> None:
    monkeypatch.delenv("ESCROWCHAT_DATABASE_URL", raising=False)
    monkeypatch.delenv("ESCROWCHAT_SEED_FILE", raising=False)
    client = TestClient(create_app())

    response = client.post(
        "/api/sessions",
        json={"participant_a": "alice", "participant_b": "bob", "initiator_id": "alice"},
    )

    assert response.json()["code"] == "INVALID_PROFILE"


def test_create_session_reads_back_state_off_the_event_loop() -> None:
    client, _ = _client()
    service = client.app.state.billing
    loop_calls: list[bool] = []
    original = service.get_session

    def recording_get_session(session_id: str):
        try:
            asyncio.get_running_loop()
            loop_calls.append(True)
        except RuntimeError:
            loop_calls.append(False)
        return original(session_id)

    service.get_session = recording_get_session
    _create(client)

    assert loop_calls == [False]
