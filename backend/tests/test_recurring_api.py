from decimal import Decimal
from uuid import uuid4

from fastapi.testclient import TestClient

from paydue import main
from paydue.main import app
from paydue.services.transport import TOKEN_NOT_REGISTERED, InMemoryTransport
from paydue.store import store

client = TestClient(app)


def _headers(owner: str) -> dict[str, str]:
    return {"X-User-Id": owner}


def _create(owner: str, **overrides) -> dict:
    payload = {
        "occurrence": "month",
        "interval": 1,
        "startDate": "2020-01-15",
        "amount": "49.99",
        "type": "expense",
        "category": "Subscriptions",
        "paymentMode": "Card",
        "description": "Streaming",
    }
    payload.update(overrides)
    res = client.post("/api/v1/recurring-transactions", json=payload, headers=_headers(owner))
    assert res.status_code == 201, res.text
    return res.json()


def test_health() -> None:
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_create_get_and_list() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner)
    assert created["executionDate"] == "2020-01-15"
    assert created["anchorDate"] == "2020-01-15"
    assert created["status"] == "active"
    assert Decimal(created["amount"]) == Decimal("49.99")

    fetched = client.get(f"/api/v1/recurring-transactions/{created['id']}", headers=_headers(owner))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == created["id"]

    listed = client.get("/api/v1/recurring-transactions", headers=_headers(owner))
    assert [item["id"] for item in listed.json()] == [created["id"]]
    overdue = client.get("/api/v1/recurring-transactions/overdue", headers=_headers(owner))
    assert [item["id"] for item in overdue.json()] == [created["id"]]


def test_mark_done_creates_transaction_and_advances() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner)
    res = client.post(f"/api/v1/recurring-transactions/{created['id']}/done", headers=_headers(owner))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["transactionDate"] == "2020-01-15"
    assert body["recurringTransaction"]["executionDate"] == "2020-02-15"
    assert len(store.transactions) == 1


def test_skip_advances_without_transaction() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner, occurrence="week", interval=2)
    res = client.post(f"/api/v1/recurring-transactions/{created['id']}/skip", headers=_headers(owner))
    assert res.status_code == 200
    assert res.json()["executionDate"] == "2020-01-29"
    assert store.transactions == {}


def test_not_yet_due_returns_409() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner, startDate="2099-01-01")
    res = client.post(f"/api/v1/recurring-transactions/{created['id']}/done", headers=_headers(owner))
    assert res.status_code == 409
    assert res.json()["error"]["code"] == "NOT_DUE_YET"


def test_edit_payload_fields() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner, startDate="2099-01-01")
    res = client.put(
        f"/api/v1/recurring-transactions/{created['id']}",
        json={
            "occurrence": "month",
            "interval": 1,
            "amount": "59.99",
            "type": "expense",
            "category": "Subscriptions",
            "paymentMode": "Card",
        },
        headers=_headers(owner),
    )
    assert res.status_code == 200, res.text
    assert Decimal(res.json()["amount"]) == Decimal("59.99")
    assert res.json()["executionDate"] == "2099-01-01"


def test_other_owner_is_forbidden_and_unknown_id_is_404() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner)
    res = client.post(f"/api/v1/recurring-transactions/{created['id']}/skip", headers=_headers(str(uuid4())))
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "FORBIDDEN"

    res = client.get(f"/api/v1/recurring-transactions/{uuid4()}", headers=_headers(owner))
    assert res.status_code == 404
    assert res.json()["error"]["code"] == "NOT_FOUND"


def test_missing_identity_is_401() -> None:
    res = client.get("/api/v1/recurring-transactions")
    assert res.status_code == 401
    res = client.get("/api/v1/recurring-transactions", headers={"X-User-Id": "not-a-uuid"})
    assert res.status_code == 401


def test_delete_then_not_found() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner)
    res = client.delete(f"/api/v1/recurring-transactions/{created['id']}", headers=_headers(owner))
    assert res.status_code == 204
    res = client.get(f"/api/v1/recurring-transactions/{created['id']}", headers=_headers(owner))
    assert res.status_code == 404
    assert client.get("/api/v1/recurring-transactions", headers=_headers(owner)).json() == []


def test_occurrences_projection() -> None:
    store.reset()
    owner = str(uuid4())
    created = _create(owner, startDate="2024-01-31")
    res = client.get(
        f"/api/v1/recurring-transactions/{created['id']}/occurrences",
        params={"start": "2024-01-01", "end": "2024-04-30"},
        headers=_headers(owner),
    )
    assert res.status_code == 200
    assert res.json()["dates"] == ["2024-01-31", "2024-02-29", "2024-03-31", "2024-04-30"]

    res = client.get(
        f"/api/v1/recurring-transactions/{created['id']}/occurrences",
        params={"start": "2024-05-01", "end": "2024-04-01"},
        headers=_headers(owner),
    )
    assert res.status_code == 422


def test_due_notification_job_sends_once_and_prunes() -> None:
    store.reset()
    owner = str(uuid4())
    _create(owner, startDate="2024-03-10")
    _create(owner, startDate="2024-03-10", category="Gym")
    client.put("/api/v1/profile/timezone", json={"timezone": "UTC"}, headers=_headers(owner))
    for token in ("phone", "tablet"):
        res = client.post("/api/v1/notification-tokens", json={"token": token}, headers=_headers(owner))
        assert res.status_code == 201

    transport = InMemoryTransport(token_errors={"tablet": TOKEN_NOT_REGISTERED})
    original = main.dispatcher.transport
    main.dispatcher.transport = transport
    try:
        res = client.post("/api/v1/jobs/due-notifications/run", json={"now": "2024-03-10T00:30:00Z"})
        assert res.status_code == 200, res.text
        body = res.json()
        assert body["notificationsSent"] is True
        assert body["dueOwners"] == 1
        assert body["sent"] == 1
        assert body["invalidTokensPruned"] == 1
        assert [m.title for m in transport.sent] == ["2 Payments due"]
        assert list(store.notification_tokens) == ["phone"]

        again = client.post("/api/v1/jobs/due-notifications/run", json={"now": "2024-03-10T00:30:00Z"})
        assert again.json()["notificationsSent"] is False
        assert len(transport.sent) == 1
    finally:
        main.dispatcher.transport = original


def test_due_notification_job_without_tokens() -> None:
    store.reset()
    owner = str(uuid4())
    _create(owner, startDate="2024-03-10")
    res = client.post("/api/v1/jobs/due-notifications/run", json={"now": "2024-03-10T00:30:00Z"})
    assert res.status_code == 200
    assert res.json()["notificationsSent"] is False
    assert res.json()["noTokens"] is True


def test_debug_state_counts() -> None:
    store.reset()
    owner = str(uuid4())
    _create(owner)
    res = client.get("/api/v1/debug/state")
    assert res.status_code == 200
    assert res.json()["recurringTransactions"] == 1
    assert res.json()["activeRecurringTransactions"] == 1


def test_due_notification_job_rejects_future_time() -> None:
    store.reset()
    owner = str(uuid4())
    _create(owner, startDate="2030-06-01")
    client.post("/api/v1/notification-tokens", json={"token": "phone"}, headers=_headers(owner))

    transport = InMemoryTransport()
    original = main.dispatcher.transport
    main.dispatcher.transport = transport
    try:
        res = client.post("/api/v1/jobs/due-notifications/run", json={"now": "2099-01-01T00:00:00Z"})
        assert res.status_code == 422
        assert res.json()["error"]["code"] == "VALIDATION_ERROR"
        assert res.json()["error"]["details"][0]["field"] == "now"
        assert transport.sent == []
        assert all(row["last_notified_window_end"] is None for row in store.recurring_transactions.values())
    finally:
        main.dispatcher.transport = original
