"""Batch-job collaborator on an HTTP job service.

Wire protocol:

    POST {base}/jobs               -> {"job_id": "..."}
    GET  {base}/jobs/{job_id}      -> {"status", "total_units", "success_count",
                                       "failed_count", "failed_units",
                                       "pending_units", "updated_at", "error"}
    POST {base}/jobs/{job_id}/cancel

Transient HTTP failures (connection errors, timeouts, 429, 5xx) are retried
with exponential backoff. Polls that still fail afterwards are reported as
not done so the next advance simply asks again. So are payloads that do not
parse.

failed_units lists units that failed; pending_units lists units not yet
finished. A stale job fails both.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from autopipe.collaborators.base import CollaboratorAdapter, CompletionReport, RunContext
from autopipe.db.models import utcnow

logger = logging.getLogger(__name__)

# Status normalization sets
_RUNNING_STATUSES = frozenset({"queued", "pending", "running", "processing", "rendering"})
_COMPLETED_STATUSES = frozenset({"completed", "succeeded", "success", "done"})
_FAILED_STATUSES = frozenset({"failed", "error", "canceled", "cancelled"})


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying (429, 5xx)."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return isinstance(exc, httpx.TransportError)


def _unit_ids(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes, dict)):
        raise TypeError(f"expected a list of unit ids, got {type(value).__name__}")
    return tuple(str(u) for u in value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive UTC, or None."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class HttpJobAdapter(CollaboratorAdapter):
    """Stage adapter for a batch job service.

    Args:
        phase: Stage this adapter serves
        base_url: Job service root
        api_key: Sent as a bearer token when set
        timeout_seconds: Per-request timeout
        stale_after_seconds: A running job not updated for this long is
            treated as finished, with its unfinished units failed
        retry_attempts: Total attempts per request for transient errors
        retry_wait: Backoff strategy between attempts
        transport: Optional httpx transport (tests use MockTransport)
        clock: Naive-UTC clock used for stale detection
    """

    jobs_path = "/jobs"

    def __init__(
        self,
        phase: str,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        stale_after_seconds: int = 1800,
        retry_attempts: int = 5,
        retry_wait: Optional[wait_base] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.phase = phase
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.retry_attempts = max(retry_attempts, 1)
        self.retry_wait = retry_wait or (
            wait_exponential(multiplier=1, min=1, max=30) + wait_random(0, 1)
        )
        self.transport = transport
        self.clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self.transport,
            )
        return self._client

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, path, **kwargs)
        logger.debug("%s %s%s -> HTTP %d", method, self.base_url, path, response.status_code)
        response.raise_for_status()
        return response

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, retrying transient failures."""
        return await self._retrying()(self._send, method, path, **kwargs)

    def _job_path(self, job_ref: str, suffix: str = "") -> str:
        return f"{self.jobs_path}/{job_ref}{suffix}"

    def _kickoff_payload(self, ctx: RunContext, units: Optional[Sequence[str]]) -> dict:
        return {
            "run_id": str(ctx.run_id),
            "owner_ref": ctx.owner_ref,
            "phase": ctx.phase,
            "config": ctx.config,
            "inputs": ctx.linked_job_refs,
            "units": list(units) if units else None,
        }

    async def kickoff(
        self, ctx: RunContext, units: Optional[Sequence[str]] = None
    ) -> str:
        response = await self._request(
            "POST", self.jobs_path, json=self._kickoff_payload(ctx, units)
        )
        job_ref = str(response.json()["job_id"])
        logger.info(
            "Kicked off %s job %s for run %s (units=%s)",
            self.phase, job_ref, ctx.run_id, len(units) if units else "all",
        )
        return job_ref

    def _report_from_payload(self, data: dict) -> CompletionReport:
        """Normalize a job status payload.

        Raises:
            ValueError, TypeError: malformed counts or unit lists
        """
        status = str(data.get("status", "unknown")).lower()
        total = int(data.get("total_units") or 0)
        success = int(data.get("success_count") or 0)
        failed = int(data.get("failed_count") or 0)
        failed_units = _unit_ids(data.get("failed_units"))
        error = data.get("error")

        if status in _COMPLETED_STATUSES or status in _FAILED_STATUSES:
            return CompletionReport(
                done=True,
                success_count=success,
                failed_count=failed,
                total_units=total,
                failed_units=failed_units,
                detail=error or (None if status in _COMPLETED_STATUSES else f"job {status}"),
            )

        updated_at = _parse_timestamp(data.get("updated_at"))
        if updated_at is not None and self.clock() - updated_at > self.stale_after:
            unfinished = max(total - success, 0)
            logger.warning(
                "%s job stale since %s, failing %d unfinished units",
                self.phase, updated_at.isoformat(), unfinished,
            )
            # Units still pending in a dead job are failed along with the rest
            pending_units = _unit_ids(data.get("pending_units"))
            return CompletionReport(
                done=True,
                success_count=success,
                failed_count=unfinished,
                total_units=total,
                failed_units=tuple(dict.fromkeys(failed_units + pending_units)),
                detail=f"job stale since {updated_at.isoformat()}",
            )

        if status not in _RUNNING_STATUSES:
            logger.warning("Unknown %s job status %r, treating as running", self.phase, status)
        return CompletionReport(
            done=False,
            success_count=success,
            failed_count=failed,
            total_units=total,
            failed_units=failed_units,
        )

    async def _poll(self, job_ref: str) -> tuple[Optional[dict], CompletionReport]:
        try:
            response = await self._request("GET", self._job_path(job_ref))
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None, CompletionReport(done=True, detail=f"job {job_ref} not found")
            logger.warning("Polling %s job %s failed: %s", self.phase, job_ref, e)
            return None, CompletionReport(done=False, detail=f"poll error: {e}")
        except httpx.HTTPError as e:
            logger.warning("Polling %s job %s failed: %s", self.phase, job_ref, e)
            return None, CompletionReport(done=False, detail=f"poll error: {e}")
        try:
            data = response.json()
            if not isinstance(data, dict):
                raise TypeError(f"expected a JSON object, got {type(data).__name__}")
            return data, self._report_from_payload(data)
        except (ValueError, TypeError) as e:
            logger.warning("Bad %s job %s status payload: %s", self.phase, job_ref, e)
            return None, CompletionReport(done=False, detail=f"bad payload: {e}")

    async def is_complete(self, job_ref: str) -> CompletionReport:
        _, report = await self._poll(job_ref)
        return report

    async def progress_snapshot(self, job_ref: str) -> dict[str, Any]:
        data, report = await self._poll(job_ref)
        snapshot = {**report.model_dump(), "outcome": report.outcome}
        if data is not None:
            snapshot["status"] = data.get("status")
        return snapshot

    async def cancel(self, job_ref: str) -> None:
        try:
            await self._request("POST", self._job_path(job_ref, "/cancel"))
            logger.info("Canceled %s job %s", self.phase, job_ref)
        except httpx.HTTPError as e:
            logger.warning("Cancel of %s job %s failed: %s", self.phase, job_ref, e)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
