"""Advance driver: stage progression, partial failures, races and kickoffs."""

import asyncio
from datetime import timedelta

import httpx
import pytest
from tenacity import wait_none

from autopipe.collaborators.http_job import HttpJobAdapter
from autopipe.db.models import utcnow
from autopipe.orchestrator.driver import KICKOFF_FAILED


@pytest.mark.asyncio
async def test_init_advances_to_segmenting_and_kicks_off(orch, adapters, scheduler):
    run = await orch.start("p1", {"target_scene_count": 4})

    result = await orch.advance(run.id)
    assert result.action == "transitioned"
    assert (result.previous_phase, result.new_phase) == ("init", "segmenting")
    assert not result.idempotent

    # Kickoff is scheduled, not awaited
    assert adapters["segmenting"].kickoffs == []
    assert await scheduler.run_all() == 1
    ctx, units = adapters["segmenting"].kickoffs[0]
    assert ctx.run_id == run.id
    assert ctx.config["target_scene_count"] == 4
    assert units is None

    stored = await orch.store.get(run.id)
    assert stored.linked_job_refs == {"segmenting": "segmenting-job-1"}
    assert stored.lease_token is None


@pytest.mark.asyncio
async def test_advance_is_idempotent_without_external_change(orch, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")

    first = await orch.advance(run.id)
    second = await orch.advance(run.id)
    assert first.action == second.action == "waiting"
    assert first.new_phase == second.new_phase == "generating_images"
    assert first.idempotent and second.idempotent


@pytest.mark.asyncio
async def test_advance_while_kickoff_in_flight_is_locked(orch, scheduler):
    run = await orch.start("p1")
    await orch.advance(run.id)

    result = await orch.advance(run.id)
    assert result.action == "locked"
    assert result.new_phase == "segmenting"
    assert result.locked_until is not None
    assert result.idempotent


@pytest.mark.asyncio
async def test_partial_failure_retries_failed_units(orch, adapters, scheduler, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")
    images = adapters["generating_images"]
    images.report(
        done=True, success_count=3, failed_count=2, total_units=5,
        failed_units=("scene-2", "scene-4"),
    )

    result = await orch.advance(run.id)
    assert result.action == "retrying"
    assert result.new_phase == "generating_images"
    stored = await orch.store.get(run.id)
    assert stored.phase == "generating_images"
    assert stored.retry_count == 1
    assert stored.stage_retry_count == 1

    await scheduler.run_all()
    _, units = images.kickoffs[-1]
    assert units == ("scene-2", "scene-4")

    # The resubmitted units now all succeed
    images.report(done=True, success_count=2, total_units=2)
    result = await orch.advance(run.id)
    assert result.action == "transitioned"
    assert (result.previous_phase, result.new_phase) == ("generating_images", "generating_audio")
    stored = await orch.store.get(run.id)
    assert stored.stage_retry_count == 0
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_partial_failure_past_stage_ceiling_fails_run(orch, adapters, scheduler, drive, orch_config):
    run = await orch.start("p1")
    await drive(run.id, "generating_audio")
    audio = adapters["generating_audio"]

    for _ in range(orch_config.stage_retry_limit):
        audio.report(done=True, success_count=4, failed_count=1, total_units=5, failed_units=("line-3",))
        assert (await orch.advance(run.id)).action == "retrying"
        await scheduler.run_all()

    audio.report(done=True, success_count=4, failed_count=1, total_units=5, failed_units=("line-3",))
    result = await orch.advance(run.id)
    assert result.action == "failed"
    stored = await orch.store.get(run.id)
    assert stored.phase == "failed"
    assert stored.error_code == "AUDIO_GENERATION_FAILED"
    assert stored.error_phase == "generating_audio"
    assert stored.retry_count == orch_config.stage_retry_limit


@pytest.mark.asyncio
async def test_render_failure_fails_run(orch, adapters, drive):
    run = await orch.start("p1")
    await drive(run.id, "rendering")
    adapters["rendering"].report(done=True, failed_count=1, total_units=1, detail="encoder crashed")

    result = await orch.advance(run.id)
    assert (result.previous_phase, result.new_phase, result.action) == ("rendering", "failed", "failed")
    stored = await orch.store.get(run.id)
    assert stored.error_phase == "rendering"
    assert stored.error_code == "RENDER_FAILED"
    assert stored.error_message == "encoder crashed"


@pytest.mark.asyncio
async def test_empty_stage_fails(orch, adapters, drive):
    run = await orch.start("p1")
    await drive(run.id, "segmenting")
    adapters["segmenting"].report(done=True, total_units=0)

    result = await orch.advance(run.id)
    assert result.action == "failed"
    assert (await orch.store.get(run.id)).error_code == "SEGMENTATION_FAILED"


@pytest.mark.asyncio
async def test_full_run_completes(orch, adapters, drive):
    run = await orch.start("p1")
    await drive(run.id, "rendering")
    adapters["rendering"].succeed()

    result = await orch.advance(run.id)
    assert result.action == "completed"
    assert result.new_phase == "ready"

    stored = await orch.store.get(run.id)
    assert stored.completed_at is not None
    assert set(stored.linked_job_refs) == {"segmenting", "generating_images", "generating_audio", "rendering"}

    again = await orch.advance(run.id)
    assert again.action == "terminal"
    assert again.idempotent


@pytest.mark.asyncio
async def test_concurrent_advances_write_once(orch, adapters, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")
    adapters["generating_images"].succeed()

    writes = []
    original = orch.locks.transition

    async def counting_transition(*args, **kwargs):
        won = await original(*args, **kwargs)
        if won:
            writes.append(args)
        return won

    orch.locks.transition = counting_transition

    results = await asyncio.gather(*(orch.advance(run.id) for _ in range(5)))

    assert len(writes) == 1
    assert {r.new_phase for r in results} == {"generating_audio"}
    assert [r.idempotent for r in results].count(False) == 1
    winners = [r for r in results if not r.idempotent]
    assert winners[0].action == "transitioned"
    assert all(r.action in ("already_advanced", "locked") for r in results if r.idempotent)


@pytest.mark.asyncio
async def test_two_simultaneous_advances_agree_on_new_phase(orch, adapters, drive):
    run = await orch.start("p1")
    await drive(run.id, "segmenting")
    adapters["segmenting"].succeed()

    first, second = await asyncio.gather(orch.advance(run.id), orch.advance(run.id))
    assert first.new_phase == second.new_phase == "generating_images"
    assert sorted([first.idempotent, second.idempotent]) == [False, True]


@pytest.mark.asyncio
async def test_kickoff_failure_fails_run(orch, adapters, scheduler):
    run = await orch.start("p1")
    adapters["segmenting"].kickoff_error = RuntimeError("segmentation service down")

    await orch.advance(run.id)
    await scheduler.run_all()

    stored = await orch.store.get(run.id)
    assert stored.phase == "failed"
    assert stored.error_code == KICKOFF_FAILED
    assert stored.error_phase == "segmenting"
    assert "segmentation service down" in stored.error_message


@pytest.mark.asyncio
async def test_crashed_kickoff_is_reclaimed_after_lease_expiry(orch, adapters, scheduler, clock):
    run = await orch.start("p1")
    await orch.advance(run.id)
    # The process that owned the kickoff died
    scheduler.discard()

    assert (await orch.advance(run.id)).action == "locked"
    clock.advance(orch.config.lease_seconds + 1)

    result = await orch.advance(run.id)
    assert result.action == "kickoff"
    assert result.new_phase == "segmenting"
    await scheduler.run_all()
    assert (await orch.store.get(run.id)).linked_job_refs == {"segmenting": "segmenting-job-1"}


@pytest.mark.asyncio
async def test_late_kickoff_after_cancel_cancels_its_job(orch, adapters, scheduler):
    run = await orch.start("p1")
    await orch.advance(run.id)
    await orch.cancel(run.id)

    await scheduler.run_all()
    assert adapters["segmenting"].canceled == ["segmenting-job-1"]
    stored = await orch.store.get(run.id)
    assert stored.phase == "canceled"
    assert stored.linked_job_refs == {}


@pytest.mark.asyncio
async def test_audit_trail_records_transitions(orch, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")
    actions = [entry.action for entry in await orch.audit.for_run(run.id)]
    assert actions.count("run.started") == 1
    assert actions.count("run.advanced") == 2


async def _stale_images_report(**payload):
    """Completion report of a generating_images job that stopped updating."""
    payload = {
        "status": "running",
        "total_units": 5,
        "success_count": 2,
        "updated_at": (utcnow() - timedelta(hours=2)).isoformat(),
        **payload,
    }
    adapter = HttpJobAdapter(
        "generating_images",
        "http://images.test",
        retry_wait=wait_none(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)),
    )
    try:
        return await adapter.is_complete("img-1")
    finally:
        await adapter.close()


@pytest.mark.asyncio
async def test_stale_job_rekicks_every_unfinished_unit(orch, adapters, scheduler, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")
    images = adapters["generating_images"]
    images.reports[images.last_job] = await _stale_images_report(
        failed_units=["u3"], pending_units=["u4", "u5"]
    )

    assert (await orch.advance(run.id)).action == "retrying"
    await scheduler.run_all()
    _, units = images.kickoffs[-1]
    assert units == ("u3", "u4", "u5")


@pytest.mark.asyncio
async def test_stale_job_with_unnamed_units_fails_stage(orch, adapters, scheduler, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")
    images = adapters["generating_images"]
    images.reports[images.last_job] = await _stale_images_report(failed_units=["u3"])

    result = await orch.advance(run.id)
    assert result.action == "failed"
    assert "1 identified" in result.message
    await scheduler.run_all()
    assert len(images.kickoffs) == 1

    stored = await orch.store.get(run.id)
    assert stored.phase == "failed"
    assert stored.error_code == "IMAGE_GENERATION_FAILED"
    assert stored.stage_retry_count == 0


@pytest.mark.asyncio
async def test_partial_failure_without_unit_ids_is_not_resubmitted_whole(orch, adapters, scheduler, drive):
    run = await orch.start("p1")
    await drive(run.id, "generating_audio")
    audio = adapters["generating_audio"]
    audio.report(done=True, success_count=3, failed_count=2, total_units=5)

    assert (await orch.advance(run.id)).action == "failed"
    await scheduler.run_all()
    assert len(audio.kickoffs) == 1
    assert (await orch.store.get(run.id)).error_phase == "generating_audio"
