"""Cancel, archive, start validation and run listing."""

import uuid

import pytest

from autopipe.orchestrator.errors import ActiveRunExists, InvalidPhase, RunConfigError, RunNotFound


@pytest.mark.asyncio
async def test_start_rejects_second_active_run(orch):
    await orch.start("p1", {"target_scene_count": 5})
    with pytest.raises(ActiveRunExists):
        await orch.start("p1", {"target_scene_count": 5})
    # Other owners are unaffected
    await orch.start("p2")


@pytest.mark.asyncio
async def test_start_freezes_validated_config(orch):
    run = await orch.start("p1", {"split_mode": "preserve"}, started_from="ui")
    assert run.config["split_mode"] == "preserve"
    assert run.config["target_scene_count"] == 5
    assert run.config["narration_voice"]["provider"] == "google"
    assert run.started_from == "ui"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "config",
    [
        {"target_scene_count": 11},
        {"output_preset": "square"},
        {"unexpected_field": True},
    ],
)
async def test_start_rejects_invalid_config(orch, config):
    with pytest.raises(RunConfigError) as exc_info:
        await orch.start("p1", config)
    assert exc_info.value.details["errors"]
    assert await orch.find_active("p1") is None


@pytest.mark.asyncio
async def test_cancel_stops_current_job(orch, adapters, drive, scheduler):
    run = await orch.start("p1")
    await drive(run.id, "generating_images")

    result = await orch.cancel(run.id)
    assert result.action == "canceled"
    assert (result.previous_phase, result.new_phase) == ("generating_images", "canceled")

    # Cancel does not wait for the collaborator
    assert adapters["generating_images"].canceled == []
    await scheduler.run_all()
    assert adapters["generating_images"].canceled == ["generating_images-job-1"]
    assert adapters["segmenting"].canceled == []

    stored = await orch.store.get(run.id)
    assert stored.phase == "canceled"
    assert stored.locked_until is None


@pytest.mark.asyncio
async def test_cancel_is_idempotent(orch):
    run = await orch.start("p1")
    first = await orch.cancel(run.id)
    second = await orch.cancel(run.id)
    assert first.action == "canceled"
    assert second.action == "already_terminal"
    assert second.new_phase == "canceled"
    assert second.idempotent


@pytest.mark.asyncio
async def test_cancel_ignores_kickoff_lease(orch):
    run = await orch.start("p1")
    await orch.advance(run.id)
    assert (await orch.store.get(run.id)).lease_token is not None

    assert (await orch.cancel(run.id)).action == "canceled"


@pytest.mark.asyncio
async def test_canceled_run_frees_owner_and_advance_is_terminal(orch):
    run = await orch.start("p1")
    await orch.cancel(run.id)
    assert (await orch.advance(run.id)).action == "terminal"
    assert await orch.find_active("p1") is None
    await orch.start("p1")


@pytest.mark.asyncio
async def test_archive(orch):
    run = await orch.start("p1")
    with pytest.raises(InvalidPhase):
        await orch.archive(run.id)

    await orch.cancel(run.id)
    archived = await orch.archive(run.id)
    assert archived.is_archived
    # Archiving twice is harmless
    await orch.archive(run.id)

    assert await orch.list_runs("p1") == []
    assert len(await orch.list_runs("p1", include_archived=True)) == 1


@pytest.mark.asyncio
async def test_unknown_run_raises_not_found(orch):
    missing = uuid.uuid4()
    for operation in (orch.advance, orch.retry, orch.cancel, orch.get_status, orch.archive):
        with pytest.raises(RunNotFound):
            await operation(missing)
