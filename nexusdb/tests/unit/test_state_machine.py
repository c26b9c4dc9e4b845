from __future__ import annotations

import pytest

from nexusdb.domain.state import (
    IN_PROGRESS_STATES,
    SERVING_STATES,
    DeploymentState,
    allowed_targets,
    can_transition,
    is_terminal,
)


PIPELINE_PATH = [
    DeploymentState.REQUESTED,
    DeploymentState.QUOTA_VALIDATED,
    DeploymentState.PROVISIONING,
    DeploymentState.CONFIGURING,
    DeploymentState.REGISTERING,
    DeploymentState.HEALTH_VALIDATING,
    DeploymentState.ACTIVE,
]


def test_pipeline_path_is_a_chain_of_legal_edges() -> None:
    for current, target in zip(PIPELINE_PATH, PIPELINE_PATH[1:]):
        assert can_transition(current, target)


@pytest.mark.parametrize("state", [state for state in DeploymentState if not is_terminal(state)])
def test_every_live_state_can_fail(state: DeploymentState) -> None:
    assert can_transition(state, DeploymentState.FAILED)


@pytest.mark.parametrize("state", [DeploymentState.DESTROYED, DeploymentState.FAILED])
def test_terminal_states_have_no_exits(state: DeploymentState) -> None:
    assert is_terminal(state)
    assert allowed_targets(state) == frozenset()


def test_stages_cannot_be_skipped() -> None:
    assert not can_transition(DeploymentState.REQUESTED, DeploymentState.PROVISIONING)
    assert not can_transition(DeploymentState.PROVISIONING, DeploymentState.ACTIVE)
    assert not can_transition(DeploymentState.REQUESTED, DeploymentState.ACTIVE)


def test_scaling_only_returns_to_active_or_fails() -> None:
    assert allowed_targets(DeploymentState.SCALING) == frozenset({DeploymentState.ACTIVE, DeploymentState.FAILED})
    assert not can_transition(DeploymentState.SCALING, DeploymentState.DECOMMISSIONING)


def test_decommission_only_from_active() -> None:
    sources = {state for state in DeploymentState if can_transition(state, DeploymentState.DECOMMISSIONING)}
    assert sources == {DeploymentState.ACTIVE}


def test_string_values_are_accepted() -> None:
    assert can_transition("active", "scaling")
    assert not can_transition("destroyed", "active")


def test_state_groups_do_not_overlap() -> None:
    assert not SERVING_STATES & IN_PROGRESS_STATES
    assert DeploymentState.DECOMMISSIONING not in SERVING_STATES | IN_PROGRESS_STATES
