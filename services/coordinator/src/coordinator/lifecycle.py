from __future__ import annotations

import hmac
import json
import logging
import sqlite3
from typing import Any

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from coordinator.dispatch import DispatchError, WorkerDispatcher
from coordinator.models import (
    RUN_FAILED,
    RUN_PENDING,
    RUN_PROCESSING,
    CallbackPayload,
    CallbackResult,
    CreateRunRequest,
    JobRecord,
    RunDetail,
    RunEvent,
    RunSummary,
)
from coordinator.repository import CoordinatorRepository
from coordinator.settings import CoordinatorSettings
from coordinator.storage import ResumeStore, ResumeStoreError

LOGGER = logging.getLogger("scoutline.coordinator")

RESUME_MISSING_MESSAGE = "Resume not uploaded. Please upload your resume first."
DISPATCH_FAILED_MESSAGE = "Failed to trigger job search workflow"


class CoordinatorError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidFilters(CoordinatorError):
    status_code = 400


class ResumeMissing(CoordinatorError):
    status_code = 400


class RunNotFound(CoordinatorError):
    status_code = 404


class WebhookForbidden(CoordinatorError):
    status_code = 403


class InvalidCallbackPayload(CoordinatorError):
    status_code = 400


class RunPersistenceError(CoordinatorError):
    status_code = 500


class ResumeAccessFailed(CoordinatorError):
    status_code = 500


class DispatchFailed(CoordinatorError):
    status_code = 500


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    LOGGER.log(level, json.dumps({"event": event, **fields}, default=str), exc_info=exc_info)


def filter_jobs(
    jobs: list[JobRecord],
    *,
    min_score: int | None = None,
    remote_only: bool = False,
) -> list[JobRecord]:
    selected = jobs
    if min_score is not None:
        selected = [job for job in selected if job.score >= min_score]
    if remote_only:
        selected = [job for job in selected if "remote" in (job.location or "").lower()]
    return sorted(selected, key=lambda job: job.score, reverse=True)


def _validation_issues(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "path": [str(part) for part in error["loc"]],
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


class RunCoordinator:
    """Owns the run state machine: dispatch, callback ingestion and queries."""

    def __init__(
        self,
        *,
        repository: CoordinatorRepository,
        resume_store: ResumeStore,
        dispatcher: WorkerDispatcher,
        settings: CoordinatorSettings,
    ) -> None:
        self.repository = repository
        self.resume_store = resume_store
        self.dispatcher = dispatcher
        self.settings = settings

    async def create_run(
        self,
        owner_id: str,
        body: Any,
        *,
        request_id: str | None = None,
    ) -> str:
        try:
            request = CreateRunRequest.model_validate(body)
        except ValidationError as exc:
            raise InvalidFilters("Invalid filters", details=_validation_issues(exc)) from exc
        filters = request.filters

        has_resume = await run_in_threadpool(self.resume_store.has_resume, owner_id)
        if not has_resume:
            raise ResumeMissing(RESUME_MISSING_MESSAGE)

        try:
            run = await run_in_threadpool(
                self.repository.create_run,
                owner_id,
                request_id=request_id,
            )
        except sqlite3.Error as exc:
            log_event(
                "run_create_failed",
                level=logging.ERROR,
                request_id=request_id,
                user_id=owner_id,
                error=str(exc),
            )
            raise RunPersistenceError("Failed to create job search run") from exc
        log_event("run_created", request_id=request_id, run_id=run.id, user_id=owner_id)

        try:
            resume_url = await run_in_threadpool(
                self.resume_store.create_signed_url,
                owner_id,
                self.settings.resume_url_ttl_seconds,
            )
        except ResumeStoreError as exc:
            await self._fail_run(run.id, request_id=request_id, reason=f"resume_url: {exc}")
            raise ResumeAccessFailed("Failed to access resume") from exc

        payload = {
            "runId": run.id,
            "userId": owner_id,
            "resumeUrl": resume_url,
            "filters": filters.to_dispatch_filters(),
        }
        try:
            await self.dispatcher.dispatch(payload)
        except DispatchError as exc:
            log_event(
                "dispatch_failed",
                level=logging.ERROR,
                request_id=request_id,
                run_id=run.id,
                status_code=exc.status_code,
                error=str(exc),
            )
            await self._fail_run(run.id, request_id=request_id, reason=f"dispatch: {exc}")
            raise DispatchFailed(DISPATCH_FAILED_MESSAGE) from exc

        try:
            advanced = await run_in_threadpool(
                self.repository.transition_run,
                run.id,
                from_statuses=(RUN_PENDING,),
                to_status=RUN_PROCESSING,
                request_id=request_id,
                message="dispatched to worker",
            )
        except sqlite3.Error as exc:
            # The worker already has the run; its callback will still be accepted from pending.
            log_event(
                "run_transition_failed",
                level=logging.ERROR,
                request_id=request_id,
                run_id=run.id,
                to_status=RUN_PROCESSING,
                error=str(exc),
            )
            return run.id
        if advanced:
            log_event(
                "run_transition",
                request_id=request_id,
                run_id=run.id,
                from_status=RUN_PENDING,
                to_status=RUN_PROCESSING,
            )
        else:
            log_event(
                "run_transition_skipped",
                level=logging.WARNING,
                request_id=request_id,
                run_id=run.id,
                to_status=RUN_PROCESSING,
            )
        return run.id

    async def _fail_run(self, run_id: str, *, request_id: str | None, reason: str) -> None:
        try:
            failed = await run_in_threadpool(
                self.repository.transition_run,
                run_id,
                from_statuses=(RUN_PENDING, RUN_PROCESSING),
                to_status=RUN_FAILED,
                request_id=request_id,
                message=reason,
            )
        except sqlite3.Error as exc:
            log_event(
                "run_transition_failed",
                level=logging.ERROR,
                request_id=request_id,
                run_id=run_id,
                to_status=RUN_FAILED,
                error=str(exc),
            )
            return
        log_event(
            "run_transition" if failed else "run_transition_skipped",
            level=logging.INFO if failed else logging.WARNING,
            request_id=request_id,
            run_id=run_id,
            to_status=RUN_FAILED,
            reason=reason,
        )

    def verify_secret(self, provided: str | None) -> bool:
        expected = self.settings.webhook_secret
        if not expected or not provided:
            return False
        return hmac.compare_digest(provided.encode(), expected.encode())

    async def ingest_callback(
        self,
        provided_secret: str | None,
        body: Any,
        *,
        request_id: str | None = None,
    ) -> CallbackResult:
        if not self.verify_secret(provided_secret):
            log_event(
                "webhook_rejected",
                level=logging.WARNING,
                request_id=request_id,
                reason="invalid_secret",
            )
            raise WebhookForbidden("Invalid webhook secret")

        try:
            payload = CallbackPayload.model_validate(body)
        except ValidationError as exc:
            log_event(
                "webhook_rejected",
                level=logging.WARNING,
                request_id=request_id,
                reason="invalid_payload",
                error_count=exc.error_count(),
            )
            raise InvalidCallbackPayload(
                "Invalid payload structure",
                details=_validation_issues(exc),
            ) from exc

        try:
            outcome = await run_in_threadpool(
                self.repository.complete_run,
                payload.run_id,
                payload.jobs,
                request_id=request_id,
            )
        except sqlite3.Error as exc:
            log_event(
                "webhook_persist_failed",
                level=logging.ERROR,
                request_id=request_id,
                run_id=payload.run_id,
                jobs=len(payload.jobs),
                error=str(exc),
            )
            raise RunPersistenceError("Failed to save job results") from exc

        if outcome.status == "not_found":
            log_event(
                "webhook_rejected",
                level=logging.WARNING,
                request_id=request_id,
                reason="run_not_found",
                run_id=payload.run_id,
            )
            raise RunNotFound("Run not found")
        if outcome.status == "terminal":
            log_event(
                "webhook_duplicate",
                level=logging.WARNING,
                request_id=request_id,
                run_id=payload.run_id,
                run_status=outcome.run_status,
            )
            return CallbackResult(success=True)

        log_event(
            "run_transition",
            request_id=request_id,
            run_id=payload.run_id,
            to_status=outcome.run_status,
            jobs_inserted=outcome.jobs_inserted,
        )
        return CallbackResult(success=True, jobs_inserted=outcome.jobs_inserted)

    async def list_runs(self, owner_id: str) -> list[RunSummary]:
        return await run_in_threadpool(self.repository.list_runs_for_owner, owner_id)

    async def get_run(
        self,
        owner_id: str,
        run_id: str,
        *,
        min_score: int | None = None,
        remote_only: bool = False,
    ) -> RunDetail:
        run = await run_in_threadpool(self.repository.get_run_for_owner, run_id, owner_id)
        if run is None:
            raise RunNotFound("Run not found")
        jobs = await run_in_threadpool(self.repository.list_jobs, run.id)
        return RunDetail(
            id=run.id,
            status=run.status,
            created_at=run.created_at,
            completed_at=run.completed_at,
            jobs=filter_jobs(jobs, min_score=min_score, remote_only=remote_only),
        )

    async def list_run_events(self, owner_id: str, run_id: str) -> list[RunEvent]:
        run = await run_in_threadpool(self.repository.get_run_for_owner, run_id, owner_id)
        if run is None:
            raise RunNotFound("Run not found")
        return await run_in_threadpool(self.repository.list_run_events, run.id)
