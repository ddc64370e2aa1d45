from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import coordinator.dispatch as dispatch_module
import httpx
import pytest
from coordinator.main import create_app
from coordinator.repository import CoordinatorRepository
from coordinator.settings import CoordinatorSettings
from fastapi.testclient import TestClient

WEBHOOK_SECRET = "test-webhook-secret"
WORKER_URL = "http://worker.test/webhook/job-search"
PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"
TRANSPORT_ERROR = "transport_error"


class StubResponse:
    def __init__(self, status_code: int, text: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.headers: dict[str, str] = {}


class StubWorker:
    """Stands in for the external search worker behind ``httpx.AsyncClient``.

    Queued outcomes are consumed one per request: an int is answered as that
    status code, ``TRANSPORT_ERROR`` raises a connect error. Once the queue is
    empty every request is answered with 200.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.client_kwargs: list[dict[str, Any]] = []
        self.outcomes: list[int | str] = []

    def queue(self, *outcomes: int | str) -> None:
        self.outcomes.extend(outcomes)

    def client(self, *_: Any, **kwargs: Any) -> StubAsyncClient:
        self.client_kwargs.append(kwargs)
        return StubAsyncClient(self)


class StubAsyncClient:
    def __init__(self, worker: StubWorker) -> None:
        self.worker = worker

    async def __aenter__(self) -> StubAsyncClient:
        return self

    async def __aexit__(self, *_: object) -> bool:
        return False

    async def post(
        self,
        url: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> StubResponse:
        self.worker.calls.append({"url": url, "json": json, "headers": headers or {}})
        outcome = self.worker.outcomes.pop(0) if self.worker.outcomes else 200
        if outcome == TRANSPORT_ERROR:
            raise httpx.ConnectError("connection refused", request=httpx.Request("POST", url))
        return StubResponse(int(outcome), text="" if int(outcome) < 400 else "worker error")


@pytest.fixture
def settings(tmp_path: Path) -> CoordinatorSettings:
    return CoordinatorSettings(
        database_path=str(tmp_path / "coordinator.sqlite3"),
        resume_dir=str(tmp_path / "resumes"),
        webhook_secret=WEBHOOK_SECRET,
        worker_url=WORKER_URL,
        public_base_url="http://testserver",
        signing_key="test-signing-key",
    )


@pytest.fixture
def worker(monkeypatch: pytest.MonkeyPatch) -> StubWorker:
    stub = StubWorker()
    monkeypatch.setattr(dispatch_module.httpx, "AsyncClient", stub.client)
    return stub


@pytest.fixture
def client(settings: CoordinatorSettings, worker: StubWorker) -> Iterator[TestClient]:
    app = create_app(settings=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def valid_filters() -> dict[str, Any]:
    return {
        "keywords": "python backend engineer",
        "location": "Berlin",
        "experienceLevel": ["Associate", "Mid-Senior level"],
        "remote": ["Remote", "Hybrid"],
        "jobType": ["Full-time"],
        "easyApply": True,
    }


@pytest.fixture
def signup(client: TestClient) -> Callable[[str], tuple[str, dict[str, str]]]:
    def _signup(email: str) -> tuple[str, dict[str, str]]:
        response = client.post(
            "/auth/signup",
            json={"email": email, "password": "correct-horse-battery"},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        return body["userId"], {"authorization": f"Bearer {body['token']}"}

    return _signup


@pytest.fixture
def upload_resume(client: TestClient) -> Callable[[dict[str, str]], None]:
    def _upload(headers: dict[str, str]) -> None:
        response = client.put(
            "/resume",
            content=PDF_BYTES,
            headers={**headers, "content-type": "application/pdf"},
        )
        assert response.status_code == 200, response.text

    return _upload


@pytest.fixture
def start_run(
    client: TestClient,
    valid_filters: dict[str, Any],
) -> Callable[[dict[str, str]], str]:
    def _start(headers: dict[str, str]) -> str:
        response = client.post("/runs", headers=headers, json={"filters": valid_filters})
        assert response.status_code == 201, response.text
        return response.json()["runId"]

    return _start


@pytest.fixture
def count_rows() -> Callable[..., int]:
    def _count(repository: CoordinatorRepository, table: str, **where: str) -> int:
        sql = f"SELECT COUNT(1) FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(f"{column} = ?" for column in where)
        return int(repository.connection.execute(sql, tuple(where.values())).fetchone()[0])

    return _count


@pytest.fixture
def pdf_bytes() -> bytes:
    return PDF_BYTES


@pytest.fixture
def make_jobs() -> Callable[..., list[dict[str, Any]]]:
    def _make(scores: list[float], locations: list[str] | None = None) -> list[dict[str, Any]]:
        resolved_locations = locations or ["Remote"] * len(scores)
        return [
            {
                "title": f"Backend Engineer {index}",
                "company": f"Company {index}",
                "location": location,
                "score": score,
                "description": "Build Python services",
                "applyLink": f"https://jobs.example.com/{index}",
                "coverLetter": "Dear hiring manager,",
                "mailDraft": "Hello,",
            }
            for index, (score, location) in enumerate(
                zip(scores, resolved_locations, strict=True),
                start=1,
            )
        ]

    return _make


@pytest.fixture
def post_callback(client: TestClient) -> Callable[..., httpx.Response]:
    def _post(
        run_id: str | None,
        jobs: Any,
        *,
        secret: str | None = WEBHOOK_SECRET,
    ) -> httpx.Response:
        headers = {} if secret is None else {"x-webhook-secret": secret}
        body: dict[str, Any] = {"jobs": jobs}
        if run_id is not None:
            body["runId"] = run_id
        return client.post("/webhooks/callback", headers=headers, json=body)

    return _post
