from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from paydue.main import app

client = TestClient(app)

HEADERS = {"X-User-Id": str(uuid4())}

VALID = {
    "occurrence": "month",
    "interval": 1,
    "startDate": "2026-02-01",
    "amount": "250.00",
    "type": "expense",
    "category": "Energy",
    "paymentMode": "Bank transfer",
}


@pytest.mark.parametrize(
    "override",
    [
        {"interval": 0},
        {"interval": 501},
        {"occurrence": "fortnight"},
        {"type": "transfer"},
        {"amount": "-5"},
        {"amount": "10.001"},
        {"category": "   "},
        {"category2": "Energy"},
        {"category2": "Gas", "category3": "Gas"},
    ],
)
def test_invalid_recurring_payload_returns_422(override: dict) -> None:
    res = client.post("/api/v1/recurring-transactions", json={**VALID, **override}, headers=HEADERS)
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"


def test_unknown_timezone_returns_422() -> None:
    res = client.put("/api/v1/profile/timezone", json={"timezone": "Mars/Olympus_Mons"}, headers=HEADERS)
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"


def test_projection_range_is_bounded() -> None:
    created = client.post("/api/v1/recurring-transactions", json=VALID, headers=HEADERS)
    assert created.status_code == 201
    res = client.get(
        f"/api/v1/recurring-transactions/{created.json()['id']}/occurrences",
        params={"start": "2026-02-01", "end": "2040-02-01"},
        headers=HEADERS,
    )
    assert res.status_code == 422
    assert res.json()["error"]["details"][0]["field"] == "end"
