"""Async render-job collaborator.

The final render runs on a remote service as a single unit. Its result is a
signed download URL that expires, so the adapter can mint a fresh one on
demand:

    POST {base}/renders                  -> {"render_id": "..."}
    GET  {base}/renders/{id}             -> {"status", "progress", "error",
                                             "updated_at"}
    POST {base}/renders/{id}/url         -> {"url", "expires_at"}
    POST {base}/renders/{id}/cancel
"""

import logging
from typing import Optional, Sequence

import httpx

from autopipe.collaborators.base import ArtifactRef, CompletionReport, RunContext
from autopipe.collaborators.http_job import (
    _COMPLETED_STATUSES,
    _FAILED_STATUSES,
    HttpJobAdapter,
    _parse_timestamp,
)

logger = logging.getLogger(__name__)


class RenderJobAdapter(HttpJobAdapter):
    """Stage adapter for the remote video renderer."""

    jobs_path = "/renders"

    def _kickoff_payload(self, ctx: RunContext, units: Optional[Sequence[str]]) -> dict:
        # Renders are a single unit; a retry always re-renders the whole video
        return {
            "run_id": str(ctx.run_id),
            "owner_ref": ctx.owner_ref,
            "output_preset": ctx.config.get("output_preset"),
            "bgm_mode": ctx.config.get("bgm_mode"),
            "inputs": ctx.linked_job_refs,
        }

    async def kickoff(
        self, ctx: RunContext, units: Optional[Sequence[str]] = None
    ) -> str:
        response = await self._request(
            "POST", self.jobs_path, json=self._kickoff_payload(ctx, units)
        )
        render_id = str(response.json()["render_id"])
        logger.info("Started render %s for run %s", render_id, ctx.run_id)
        return render_id

    def _report_from_payload(self, data: dict) -> CompletionReport:
        status = str(data.get("status", "unknown")).lower()
        if status in _COMPLETED_STATUSES:
            return CompletionReport(done=True, success_count=1, total_units=1)
        if status in _FAILED_STATUSES:
            return CompletionReport(
                done=True,
                failed_count=1,
                total_units=1,
                detail=data.get("error") or f"render {status}",
            )

        updated_at = _parse_timestamp(data.get("updated_at"))
        if updated_at is not None and self.clock() - updated_at > self.stale_after:
            logger.warning("Render stale since %s", updated_at.isoformat())
            return CompletionReport(
                done=True,
                failed_count=1,
                total_units=1,
                detail=f"render stale since {updated_at.isoformat()}",
            )

        progress = data.get("progress")
        return CompletionReport(
            done=False,
            total_units=1,
            detail=f"{progress}%" if progress is not None else None,
        )

    async def fetch_artifact(self, job_ref: str) -> Optional[ArtifactRef]:
        """Mint a fresh signed URL for the rendered video.

        Returns None when the service cannot provide one right now; callers
        keep whatever reference they already hold.
        """
        try:
            response = await self._request("POST", self._job_path(job_ref, "/url"))
        except httpx.HTTPError as e:
            logger.warning("URL refresh for render %s failed: %s", job_ref, e)
            return None
        try:
            data = response.json()
        except ValueError as e:
            logger.warning("URL refresh for render %s returned bad JSON: %s", job_ref, e)
            return None
        if not isinstance(data, dict) or not data.get("url"):
            return None
        return ArtifactRef(url=data["url"], expires_at=_parse_timestamp(data.get("expires_at")))
