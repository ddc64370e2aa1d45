from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import sqlite3
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from coordinator.dispatch import WorkerDispatcher
from coordinator.lifecycle import CoordinatorError, RunCoordinator, log_event
from coordinator.models import (
    CreateRunResponse,
    LoginRequest,
    MetricsSnapshot,
    Principal,
    ResumeStatus,
    ResumeUploadResponse,
    RunDetail,
    RunEventListResponse,
    RunListResponse,
    SessionResponse,
    SignupRequest,
)
from coordinator.observability import MetricsStore
from coordinator.repository import CoordinatorRepository, DuplicateEmailError
from coordinator.settings import CoordinatorSettings
from coordinator.storage import PDF_CONTENT_TYPE, ResumeStore

WEBHOOK_SECRET_HEADER = "x-webhook-secret"
PASSWORD_HASH_ITERATIONS = 120_000

ModelT = TypeVar("ModelT", bound=BaseModel)


def hash_password(password: str, *, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt.encode(),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algorithm, iterations, salt, expected = stored.split("$", 3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt.encode(),
        int(iterations),
    ).hex()
    return hmac.compare_digest(digest, expected)


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def route_template(request: Request) -> str:
    # Unmatched paths fall back to the raw path.
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def record_request(
    request: Request,
    status_code: int,
    started: float,
    *,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    duration_ms = (time.perf_counter() - started) * 1000
    route = route_template(request)
    request.app.state.metrics.observe(
        method=request.method,
        route=route,
        status_code=status_code,
        duration_ms=duration_ms,
    )
    log_event(
        "request_complete",
        level=logging.ERROR if status_code >= 500 else logging.INFO,
        exc_info=exc_info,
        request_id=request.state.request_id,
        method=request.method,
        route=route,
        path=request.url.path,
        status_code=status_code,
        duration_ms=round(duration_ms, 3),
        **fields,
    )


def to_http_exception(exc: CoordinatorError) -> HTTPException:
    if exc.details is None:
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": exc.message, "issues": exc.details},
    )


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


async def parse_body(request: Request, model: type[ModelT]) -> ModelT:
    body = await read_json_body(request)
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid request body",
                "issues": [
                    {"path": [str(part) for part in error["loc"]], "message": error["msg"]}
                    for error in exc.errors()
                ],
            },
        ) from exc


def create_app(
    *,
    settings: CoordinatorSettings | None = None,
    dispatcher: WorkerDispatcher | None = None,
) -> FastAPI:
    resolved_settings = settings or CoordinatorSettings.from_env()
    repository = CoordinatorRepository(database_path=resolved_settings.database_path)
    resume_store = ResumeStore(
        resolved_settings.resume_dir,
        signing_key=resolved_settings.signing_key,
        public_base_url=resolved_settings.public_base_url,
    )
    coordinator = RunCoordinator(
        repository=repository,
        resume_store=resume_store,
        dispatcher=dispatcher
        or WorkerDispatcher(
            resolved_settings.worker_url,
            timeout_seconds=resolved_settings.dispatch_timeout_seconds,
            max_attempts=resolved_settings.dispatch_max_attempts,
        ),
        settings=resolved_settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.settings = resolved_settings
        app.state.repository = repository
        app.state.resume_store = resume_store
        app.state.coordinator = coordinator
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Scoutline Coordinator", version="0.3.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            record_request(request, 500, started, exc_info=True, error=str(exc))
            response = JSONResponse(
                status_code=500,
                content={
                    "detail": "Internal Server Error",
                    "request_id": request.state.request_id,
                },
            )
        else:
            record_request(
                request,
                response.status_code,
                started,
                source_ip=request.client.host if request.client else None,
            )
        response.headers["x-request-id"] = request.state.request_id
        return response

    async def require_principal(request: Request) -> Principal:
        token = bearer_token(request)
        if token is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        principal = await run_in_threadpool(request.app.state.repository.resolve_session, token)
        if principal is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return principal

    async def issue_session(request: Request, user_id: str) -> SessionResponse:
        token, expires_at = await run_in_threadpool(
            request.app.state.repository.create_session,
            user_id,
            ttl_hours=request.app.state.settings.session_ttl_hours,
        )
        return SessionResponse(user_id=user_id, token=token, expires_at=expires_at)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "coordinator"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/auth/signup", response_model=SessionResponse, status_code=201)
    async def signup(request: Request) -> SessionResponse:
        payload = await parse_body(request, SignupRequest)
        repository: CoordinatorRepository = request.app.state.repository
        try:
            user_id = await run_in_threadpool(
                repository.create_principal,
                str(payload.email),
                hash_password(payload.password),
            )
        except DuplicateEmailError as exc:
            raise HTTPException(status_code=409, detail="Email already registered") from exc

        session = await issue_session(request, user_id)
        try:
            await run_in_threadpool(repository.create_profile, user_id, str(payload.email))
        except sqlite3.Error as exc:
            # Signup stands without a profile row.
            log_event(
                "profile_create_failed",
                level=logging.ERROR,
                request_id=request.state.request_id,
                user_id=user_id,
                error=str(exc),
            )
        log_event("signup", request_id=request.state.request_id, user_id=user_id)
        return session

    @app.post("/auth/login", response_model=SessionResponse)
    async def login(request: Request) -> SessionResponse:
        payload = await parse_body(request, LoginRequest)
        stored = await run_in_threadpool(
            request.app.state.repository.get_principal_by_email,
            str(payload.email),
        )
        if stored is None or not verify_password(payload.password, stored.password_hash):
            log_event(
                "login_rejected",
                level=logging.WARNING,
                request_id=request.state.request_id,
            )
            raise HTTPException(status_code=401, detail="Invalid email or password")
        return await issue_session(request, stored.user_id)

    @app.post("/auth/logout")
    async def logout(request: Request) -> dict[str, bool]:
        principal = await require_principal(request)
        revoked = await run_in_threadpool(
            request.app.state.repository.revoke_session,
            principal.session_id,
        )
        return {"revoked": revoked}

    @app.put("/resume", response_model=ResumeUploadResponse)
    async def upload_resume(request: Request) -> ResumeUploadResponse:
        principal = await require_principal(request)
        max_bytes = request.app.state.settings.max_resume_bytes
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type != PDF_CONTENT_TYPE:
            raise HTTPException(status_code=400, detail="Only PDF files are allowed")
        declared_length = request.headers.get("content-length", "")
        if declared_length.isdigit() and int(declared_length) > max_bytes:
            raise HTTPException(status_code=400, detail="File size must be less than 5MB")
        content = await request.body()
        if not content:
            raise HTTPException(status_code=400, detail="Resume file is empty")
        if len(content) > max_bytes:
            raise HTTPException(status_code=400, detail="File size must be less than 5MB")

        size = await run_in_threadpool(
            request.app.state.resume_store.upload,
            principal.user_id,
            content,
        )
        log_event(
            "resume_uploaded",
            request_id=request.state.request_id,
            user_id=principal.user_id,
            size=size,
        )
        return ResumeUploadResponse(uploaded=True, size=size)

    @app.get("/resume", response_model=ResumeStatus)
    async def resume_status(request: Request) -> ResumeStatus:
        principal = await require_principal(request)
        exists = await run_in_threadpool(
            request.app.state.resume_store.has_resume,
            principal.user_id,
        )
        return ResumeStatus(exists=exists)

    @app.get("/resume/files/{owner_id}")
    async def signed_resume_download(
        owner_id: str,
        request: Request,
        expires: int = Query(...),
        signature: str = Query(..., min_length=1),
    ) -> Response:
        store: ResumeStore = request.app.state.resume_store
        if not store.verify_signature(owner_id, expires, signature):
            raise HTTPException(status_code=403, detail="Invalid or expired signature")
        try:
            content = await run_in_threadpool(store.read, owner_id)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Resume not found") from exc
        return Response(content=content, media_type=PDF_CONTENT_TYPE)

    @app.post("/runs", response_model=CreateRunResponse, status_code=201)
    async def create_run(request: Request) -> CreateRunResponse:
        principal = await require_principal(request)
        body = await read_json_body(request)
        try:
            run_id = await request.app.state.coordinator.create_run(
                principal.user_id,
                body,
                request_id=request.state.request_id,
            )
        except CoordinatorError as exc:
            raise to_http_exception(exc) from exc
        return CreateRunResponse(run_id=run_id)

    @app.get("/runs", response_model=RunListResponse)
    async def list_runs(request: Request) -> RunListResponse:
        principal = await require_principal(request)
        runs = await request.app.state.coordinator.list_runs(principal.user_id)
        return RunListResponse(runs=runs)

    @app.get("/runs/{run_id}", response_model=RunDetail)
    async def get_run(
        run_id: str,
        request: Request,
        min_score: str | None = Query(default=None, alias="minScore"),
        remote_only: str | None = Query(default=None, alias="remoteOnly"),
    ) -> RunDetail:
        principal = await require_principal(request)
        parsed_min_score: int | None = None
        if min_score:
            try:
                parsed_min_score = int(min_score)
            except ValueError:
                parsed_min_score = None
        try:
            return await request.app.state.coordinator.get_run(
                principal.user_id,
                run_id,
                min_score=parsed_min_score,
                remote_only=remote_only == "true",
            )
        except CoordinatorError as exc:
            raise to_http_exception(exc) from exc

    @app.get("/runs/{run_id}/events", response_model=RunEventListResponse)
    async def list_run_events(run_id: str, request: Request) -> RunEventListResponse:
        principal = await require_principal(request)
        try:
            events = await request.app.state.coordinator.list_run_events(
                principal.user_id,
                run_id,
            )
        except CoordinatorError as exc:
            raise to_http_exception(exc) from exc
        return RunEventListResponse(events=events)

    @app.post("/webhooks/callback")
    async def worker_callback(request: Request) -> JSONResponse:
        request_id = request.state.request_id
        try:
            body = await read_json_body(request)
            result = await request.app.state.coordinator.ingest_callback(
                request.headers.get(WEBHOOK_SECRET_HEADER),
                body,
                request_id=request_id,
            )
        except CoordinatorError as exc:
            content: dict[str, Any] = {"success": False, "error": exc.message}
            if exc.details is not None:
                content["issues"] = exc.details
            return JSONResponse(status_code=exc.status_code, content=content)
        except Exception as exc:
            # Answer 200 so the worker does not retry; the failure is investigated from logs.
            log_event(
                "webhook_error",
                level=logging.ERROR,
                exc_info=True,
                request_id=request_id,
                error=str(exc),
            )
            return JSONResponse(
                status_code=200,
                content={"success": False, "error": "Internal server error"},
            )
        return JSONResponse(content=result.model_dump(by_alias=True, exclude_none=True))

    return app


app = create_app()
