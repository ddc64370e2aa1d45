from __future__ import annotations

import json
import logging
from typing import Any

import httpx

LOGGER = logging.getLogger("scoutline.coordinator.dispatch")


class DispatchError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class WorkerDispatcher:
    """Posts run payloads to the external search worker.

    Each attempt is bounded by ``timeout_seconds``. Transport errors and 5xx
    answers are retried until ``max_attempts`` is reached; 4xx answers are
    final.
    """

    def __init__(self, url: str, *, timeout_seconds: float = 15.0, max_attempts: int = 2) -> None:
        self.url = url.strip()
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)

    async def dispatch(self, payload: dict[str, Any]) -> int:
        if not self.url:
            raise DispatchError("Worker webhook url is not configured")

        last_error = DispatchError("Worker dispatch was not attempted")
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(
                        self.url,
                        json=payload,
                        headers={"content-type": "application/json"},
                    )
            except httpx.RequestError as exc:
                last_error = DispatchError(f"Worker unreachable: {exc}")
                self._log_attempt(payload, attempt, status_code=None, error=str(exc))
                continue

            if 200 <= response.status_code < 300:
                return response.status_code

            self._log_attempt(
                payload,
                attempt,
                status_code=response.status_code,
                error=response.text[:500],
            )
            last_error = DispatchError(
                f"Worker answered {response.status_code}",
                status_code=response.status_code,
            )
            if response.status_code < 500:
                break

        raise last_error

    def _log_attempt(
        self,
        payload: dict[str, Any],
        attempt: int,
        *,
        status_code: int | None,
        error: str,
    ) -> None:
        LOGGER.warning(
            json.dumps(
                {
                    "event": "dispatch_attempt_failed",
                    "run_id": payload.get("runId"),
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "status_code": status_code,
                    "error": error,
                }
            )
        )
