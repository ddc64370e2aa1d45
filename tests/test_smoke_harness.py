from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

pytestmark = [pytest.mark.integration, pytest.mark.smoke]


def test_smoke_coordinator_ready(client: TestClient) -> None:
    health = client.get("/health")
    metrics = client.get("/metrics")

    assert health.status_code == 200
    assert metrics.status_code == 200
    assert "generated_at" in metrics.json()


def test_smoke_full_run_round_trip(
    client: TestClient,
    worker,
    valid_filters,
    pdf_bytes: bytes,
) -> None:
    signup = client.post(
        "/auth/signup",
        json={"email": "smoke@example.com", "password": "correct-horse-battery"},
    )
    assert signup.status_code == 201
    headers = {"authorization": f"Bearer {signup.json()['token']}"}

    upload = client.put(
        "/resume",
        content=pdf_bytes,
        headers={**headers, "content-type": "application/pdf"},
    )
    assert upload.status_code == 200

    created = client.post("/runs", headers=headers, json={"filters": valid_filters})
    assert created.status_code == 201
    run_id = created.json()["runId"]

    dispatched = worker.calls[0]["json"]
    assert client.get(dispatched["resumeUrl"]).content == pdf_bytes

    callback = client.post(
        "/webhooks/callback",
        headers={"x-webhook-secret": "test-webhook-secret"},
        json={
            "runId": run_id,
            "jobs": [
                {
                    "title": "Backend Engineer",
                    "company": "Acme",
                    "location": "Remote",
                    "score": 87,
                    "description": "Python APIs",
                    "applyLink": "https://jobs.example.com/acme",
                    "coverLetter": "Dear Acme,",
                    "mailDraft": "Hi Acme,",
                }
            ],
        },
    )
    assert callback.json() == {"success": True, "jobsInserted": 1}

    detail = client.get(f"/runs/{run_id}", headers=headers).json()
    assert detail["status"] == "completed"
    assert detail["jobs"][0]["company"] == "Acme"
