"""Explicit retry: rollback targets, ceiling, idempotence and owner conflicts."""

import pytest

from autopipe.config import OrchestratorConfig


async def _fail_in(orch, adapters, drive, phase: str):
    run = await orch.start("p1")
    await drive(run.id, phase)
    adapters[phase].report(done=True, failed_count=1, total_units=1, detail=f"{phase} broke")
    assert (await orch.advance(run.id)).action == "failed"
    return run


@pytest.mark.asyncio
async def test_retry_after_render_failure_rolls_back_to_audio(orch, adapters, drive, scheduler):
    run = await _fail_in(orch, adapters, drive, "rendering")
    before = await orch.store.get(run.id)

    result = await orch.retry(run.id)
    assert result.action == "retried"
    assert (result.previous_phase, result.new_phase) == ("failed", "generating_audio")
    assert result.retry_count == before.retry_count + 1

    stored = await orch.store.get(run.id)
    assert stored.phase == "generating_audio"
    assert stored.error_code is None
    assert stored.error_message is None
    assert stored.error_phase is None
    assert stored.manual_retry_count == 1
    assert "generating_audio" not in stored.linked_job_refs
    assert "rendering" not in stored.linked_job_refs
    assert "generating_images" in stored.linked_job_refs

    # The next advance re-kicks the stage
    advance = await orch.advance(run.id)
    assert advance.action == "kickoff"
    await scheduler.run_all()
    assert len(adapters["generating_audio"].kickoffs) == 2


@pytest.mark.asyncio
async def test_retry_is_idempotent_after_first_success(orch, adapters, drive):
    run = await _fail_in(orch, adapters, drive, "segmenting")

    first = await orch.retry(run.id)
    second = await orch.retry(run.id)
    assert first.action == "retried"
    assert second.action == "already_retried"
    assert second.idempotent
    assert second.new_phase == first.new_phase == "segmenting"
    assert (await orch.store.get(run.id)).manual_retry_count == 1


@pytest.mark.asyncio
async def test_retry_on_active_or_finished_run_is_phase_mismatch(orch, drive, adapters):
    run = await orch.start("p1")
    result = await orch.retry(run.id)
    assert result.action == "phase_mismatch"
    assert result.new_phase == "init"

    await drive(run.id, "ready")
    assert (await orch.retry(run.id)).action == "phase_mismatch"


@pytest.mark.asyncio
@pytest.mark.parametrize("orch_config", [OrchestratorConfig(max_manual_retries=2)])
async def test_retry_ceiling_is_exhausted_without_mutation(orch, adapters, drive, scheduler):
    run = await _fail_in(orch, adapters, drive, "segmenting")
    seen_counts = []

    for _ in range(2):
        assert (await orch.retry(run.id)).action == "retried"
        seen_counts.append((await orch.store.get(run.id)).retry_count)
        await orch.advance(run.id)
        await scheduler.run_all()
        adapters["segmenting"].report(done=True, failed_count=1, total_units=1)
        assert (await orch.advance(run.id)).action == "failed"

    before = await orch.store.get(run.id)
    result = await orch.retry(run.id)
    assert result.action == "exhausted"
    after = await orch.store.get(run.id)
    assert after.phase == "failed"
    assert after.retry_count == before.retry_count
    assert after.updated_at == before.updated_at
    assert seen_counts == sorted(seen_counts)


@pytest.mark.asyncio
async def test_retry_conflicts_with_newer_active_run(orch, adapters, drive):
    run = await _fail_in(orch, adapters, drive, "segmenting")
    newer = await orch.start("p1")

    result = await orch.retry(run.id)
    assert result.action == "conflict"
    assert (await orch.store.get(run.id)).phase == "failed"
    assert (await orch.find_active("p1")).id == newer.id
