"""Tests for the episode state machine.

Covers the declared journey, guard evaluation, and graph validation of
custom transition tables.
"""

import pytest

from careflow.core.exceptions import InvalidDefinition
from careflow.core.machine import (
    EPISODE_TRANSITIONS,
    EpisodeStateMachine,
    EpisodeTransition,
    validate_transition_table,
)
from careflow.core.models import (
    EpisodeState,
    GuardContext,
    QuoteStatus,
    TransitionOutcome,
    Trigger,
)


@pytest.fixture
def machine() -> EpisodeStateMachine:
    return EpisodeStateMachine()


# ============================================================================
# Journey table
# ============================================================================


def test_default_table_is_valid(machine: EpisodeStateMachine) -> None:
    assert machine.validate() == []
    assert len(machine.transitions) == 11


def test_happy_path_walks_every_state(machine: EpisodeStateMachine) -> None:
    """Following each state's single trigger with all facts true reaches MAINTENANCE."""
    context = GuardContext(
        has_base_consent=True,
        has_specific_consent=True,
        quote_status=QuoteStatus.ACCEPTED,
        treatment_controlled=True,
        discharge_ready=True,
        recall_scheduled=True,
    )
    state = machine.initial_state
    visited = [state]
    while not machine.is_terminal(state):
        (trigger,) = machine.triggers_from(state)
        next_state = machine.next_state(state, trigger, context)
        assert next_state is not None
        state = next_state
        visited.append(state)

    assert visited == list(EpisodeState.ordered())


@pytest.mark.parametrize(
    "source,trigger,target",
    [
        (EpisodeState.CAPTURE, Trigger.LEAD_QUALIFIED, EpisodeState.TRIAGE),
        (EpisodeState.TRIAGE, Trigger.TRIAGE_ROUTED, EpisodeState.SCHEDULING),
        (EpisodeState.SCHEDULING, Trigger.APPOINTMENT_CONFIRMED, EpisodeState.RECEPTION),
        (EpisodeState.EXPLORATION, Trigger.EXPLORATION_COMPLETED, EpisodeState.DIAGNOSIS),
        (EpisodeState.DIAGNOSIS, Trigger.PLAN_CREATED, EpisodeState.PLAN),
        (EpisodeState.PLAN, Trigger.PLAN_PROPOSED, EpisodeState.BUDGET),
    ],
)
def test_unguarded_transitions(
    machine: EpisodeStateMachine,
    source: EpisodeState,
    trigger: Trigger,
    target: EpisodeState,
) -> None:
    decision = machine.evaluate(source, trigger)
    assert decision.allowed
    assert decision.target is target
    assert decision.transition is not None
    assert decision.transition.guard is None


def test_unknown_pair_is_no_transition(machine: EpisodeStateMachine) -> None:
    decision = machine.evaluate(EpisodeState.CAPTURE, Trigger.QUOTE_ACCEPTED)
    assert decision.outcome is TransitionOutcome.NO_TRANSITION
    assert decision.target is None
    assert "CAPTURE" in decision.reason
    assert not machine.can_transition(EpisodeState.CAPTURE, Trigger.QUOTE_ACCEPTED)


def test_terminal_state_has_no_triggers(machine: EpisodeStateMachine) -> None:
    assert machine.is_terminal(EpisodeState.MAINTENANCE)
    assert machine.triggers_from(EpisodeState.MAINTENANCE) == []


def test_describe(machine: EpisodeStateMachine) -> None:
    assert machine.describe(EpisodeState.PLAN, Trigger.PLAN_PROPOSED) == "Plan proposed to the patient"
    assert machine.describe(EpisodeState.PLAN, Trigger.LEAD_QUALIFIED) is None


# ============================================================================
# Guards
# ============================================================================


def test_base_consent_guard(machine: EpisodeStateMachine) -> None:
    rejected = machine.evaluate(EpisodeState.RECEPTION, Trigger.CONSENT_SIGNED_BASE)
    assert rejected.outcome is TransitionOutcome.GUARD_REJECTED
    assert rejected.transition is not None
    assert rejected.transition.guard_name == "require_base_consent"

    allowed = machine.evaluate(
        EpisodeState.RECEPTION,
        Trigger.CONSENT_SIGNED_BASE,
        GuardContext(has_base_consent=True),
    )
    assert allowed.target is EpisodeState.EXPLORATION


@pytest.mark.parametrize(
    "context",
    [
        GuardContext(has_specific_consent=True),
        GuardContext(quote_status=QuoteStatus.ACCEPTED),
        GuardContext(has_specific_consent=True, quote_status=QuoteStatus.PRESENTED),
    ],
)
def test_quote_guard_needs_consent_and_accepted_quote(
    machine: EpisodeStateMachine, context: GuardContext
) -> None:
    decision = machine.evaluate(EpisodeState.BUDGET, Trigger.QUOTE_ACCEPTED, context)
    assert decision.outcome is TransitionOutcome.GUARD_REJECTED


def test_quote_guard_passes(machine: EpisodeStateMachine) -> None:
    context = GuardContext(has_specific_consent=True, quote_status=QuoteStatus.ACCEPTED)
    assert machine.next_state(EpisodeState.BUDGET, Trigger.QUOTE_ACCEPTED, context) is (
        EpisodeState.TREATMENT
    )


@pytest.mark.parametrize(
    "source,trigger,fact",
    [
        (EpisodeState.TREATMENT, Trigger.TREATMENT_CONTROL_REACHED, "treatment_controlled"),
        (EpisodeState.FOLLOW_UP, Trigger.EPISODE_CLOSED, "discharge_ready"),
        (EpisodeState.DISCHARGE, Trigger.RECALL_SCHEDULED, "recall_scheduled"),
    ],
)
def test_clinical_guards_need_asserted_fact(
    machine: EpisodeStateMachine, source: EpisodeState, trigger: Trigger, fact: str
) -> None:
    assert not machine.can_transition(source, trigger, GuardContext())
    assert machine.can_transition(source, trigger, GuardContext(**{fact: True}))


# ============================================================================
# Table validation
# ============================================================================


def test_duplicate_pair_rejected() -> None:
    duplicate = EpisodeTransition(
        source=EpisodeState.CAPTURE,
        trigger=Trigger.LEAD_QUALIFIED,
        target=EpisodeState.SCHEDULING,
        description="shortcut",
    )
    errors = validate_transition_table(
        EPISODE_TRANSITIONS + (duplicate,),
        EpisodeState.CAPTURE,
        {EpisodeState.MAINTENANCE},
    )
    assert any("duplicate transition from 'CAPTURE'" in e for e in errors)


def test_terminal_with_outgoing_rejected() -> None:
    loop = EpisodeTransition(
        source=EpisodeState.MAINTENANCE,
        trigger=Trigger.LEAD_QUALIFIED,
        target=EpisodeState.TRIAGE,
        description="new episode",
    )
    errors = validate_transition_table(
        EPISODE_TRANSITIONS + (loop,),
        EpisodeState.CAPTURE,
        {EpisodeState.MAINTENANCE},
    )
    assert errors == ["terminal state 'MAINTENANCE' has outgoing transitions"]


def test_unreachable_states_rejected() -> None:
    truncated = tuple(t for t in EPISODE_TRANSITIONS if t.source is not EpisodeState.PLAN)
    with pytest.raises(InvalidDefinition) as exc_info:
        EpisodeStateMachine(truncated)

    errors = exc_info.value.errors
    assert "state 'BUDGET' unreachable from initial_state" in errors
    assert "state 'MAINTENANCE' unreachable from initial_state" in errors
    assert not any("'PLAN' unreachable" in e for e in errors)


def test_unknown_initial_state_rejected() -> None:
    errors = validate_transition_table(EPISODE_TRANSITIONS, "START", set())  # type: ignore[arg-type]
    assert errors == ["initial_state 'START' not a known state"]


def test_unknown_target_state_rejected() -> None:
    stray = EpisodeTransition(
        source=EpisodeState.CAPTURE,
        trigger=Trigger.TRIAGE_ROUTED,
        target="LIMBO",  # type: ignore[arg-type]
        description="routes nowhere",
    )
    errors = validate_transition_table(
        EPISODE_TRANSITIONS + (stray,),
        EpisodeState.CAPTURE,
        {EpisodeState.MAINTENANCE},
    )
    assert errors == ["transition on 'Triage.Routed' targets unknown state 'LIMBO'"]

    with pytest.raises(InvalidDefinition) as exc_info:
        EpisodeStateMachine(EPISODE_TRANSITIONS + (stray,))
    assert exc_info.value.errors == errors
