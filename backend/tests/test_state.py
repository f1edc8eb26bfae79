"""Phase table: edges, forward order and rollback targets."""

import pytest

from autopipe.orchestrator.state import (
    ALLOWED_TRANSITIONS,
    PIPELINE_PHASES,
    STAGE_ORDER,
    STAGE_PHASES,
    TERMINAL_PHASES,
    can_transition,
    is_terminal,
    next_phase,
    rollback_target,
    stages_from,
)


def test_every_edge_targets_a_known_phase():
    assert set(ALLOWED_TRANSITIONS) == set(PIPELINE_PHASES)
    for source, targets in ALLOWED_TRANSITIONS.items():
        assert targets <= set(PIPELINE_PHASES), source


def test_forward_order_never_skips():
    for current, following in zip(STAGE_ORDER, STAGE_ORDER[1:]):
        assert next_phase(current) == following
        assert can_transition(current, following)
    assert not can_transition("init", "generating_images")
    assert not can_transition("segmenting", "rendering")


def test_terminal_phases_have_no_forward_edges():
    assert not ALLOWED_TRANSITIONS["ready"]
    assert not ALLOWED_TRANSITIONS["canceled"]
    assert all(is_terminal(p) for p in ("ready", "failed", "canceled"))
    assert next_phase("ready") is None
    assert next_phase("failed") is None


def test_failed_only_reenters_stages():
    assert ALLOWED_TRANSITIONS["failed"] == frozenset(STAGE_PHASES)


@pytest.mark.parametrize("phase", [p for p in PIPELINE_PHASES if p not in TERMINAL_PHASES])
def test_every_active_phase_can_be_canceled(phase):
    assert can_transition(phase, "canceled")


@pytest.mark.parametrize(
    "error_phase,expected",
    [
        ("segmenting", "segmenting"),
        ("generating_images", "generating_images"),
        ("generating_audio", "generating_images"),
        ("rendering", "generating_audio"),
        (None, "segmenting"),
        ("init", "segmenting"),
        ("bogus", "segmenting"),
    ],
)
def test_rollback_target(error_phase, expected):
    assert rollback_target(error_phase) == expected
    assert can_transition("failed", rollback_target(error_phase))


def test_stages_from():
    assert stages_from("generating_audio") == ("generating_audio", "rendering")
    assert stages_from("segmenting") == STAGE_PHASES
    assert stages_from("ready") == ()
