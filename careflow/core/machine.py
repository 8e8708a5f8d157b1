"""Episode state machine.

Declares the clinical journey as a table of guarded transitions and
answers questions about it. Pure decision logic, no side effects:
applying a transition to a stored episode is the job of
transitions.EpisodeTransitionService.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .exceptions import InvalidDefinition
from .models import EpisodeState, GuardContext, QuoteStatus, TransitionOutcome, Trigger

Guard = Callable[[GuardContext], bool]


def require_base_consent(context: GuardContext) -> bool:
    return context.has_base_consent


def require_specific_consent_and_quote(context: GuardContext) -> bool:
    return context.has_specific_consent and context.quote_status is QuoteStatus.ACCEPTED


def require_treatment_control(context: GuardContext) -> bool:
    return context.treatment_controlled


def require_discharge_ready(context: GuardContext) -> bool:
    return context.discharge_ready


def require_recall_scheduled(context: GuardContext) -> bool:
    return context.recall_scheduled


@dataclass(frozen=True)
class EpisodeTransition:
    """One edge of the journey graph."""

    source: EpisodeState
    trigger: Trigger
    target: EpisodeState
    description: str
    guard: Guard | None = None

    @property
    def guard_name(self) -> str | None:
        if self.guard is None:
            return None
        return getattr(self.guard, "__name__", repr(self.guard))


@dataclass(frozen=True)
class TransitionDecision:
    """Result of evaluating a trigger against a state."""

    outcome: TransitionOutcome
    target: EpisodeState | None
    transition: EpisodeTransition | None
    reason: str

    @property
    def allowed(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


EPISODE_TRANSITIONS: tuple[EpisodeTransition, ...] = (
    EpisodeTransition(
        source=EpisodeState.CAPTURE,
        trigger=Trigger.LEAD_QUALIFIED,
        target=EpisodeState.TRIAGE,
        description="Qualified lead moves to triage",
    ),
    EpisodeTransition(
        source=EpisodeState.TRIAGE,
        trigger=Trigger.TRIAGE_ROUTED,
        target=EpisodeState.SCHEDULING,
        description="Routed triage issues a scheduling order",
    ),
    EpisodeTransition(
        source=EpisodeState.SCHEDULING,
        trigger=Trigger.APPOINTMENT_CONFIRMED,
        target=EpisodeState.RECEPTION,
        description="Confirmed appointment, reception is prepared",
    ),
    EpisodeTransition(
        source=EpisodeState.RECEPTION,
        trigger=Trigger.CONSENT_SIGNED_BASE,
        target=EpisodeState.EXPLORATION,
        description="Signed base consent enables exploration",
        guard=require_base_consent,
    ),
    EpisodeTransition(
        source=EpisodeState.EXPLORATION,
        trigger=Trigger.EXPLORATION_COMPLETED,
        target=EpisodeState.DIAGNOSIS,
        description="Completed exploration yields a diagnosis",
    ),
    EpisodeTransition(
        source=EpisodeState.DIAGNOSIS,
        trigger=Trigger.PLAN_CREATED,
        target=EpisodeState.PLAN,
        description="Initial plan drafted after diagnosis",
    ),
    EpisodeTransition(
        source=EpisodeState.PLAN,
        trigger=Trigger.PLAN_PROPOSED,
        target=EpisodeState.BUDGET,
        description="Plan proposed to the patient",
    ),
    EpisodeTransition(
        source=EpisodeState.BUDGET,
        trigger=Trigger.QUOTE_ACCEPTED,
        target=EpisodeState.TREATMENT,
        description="Quote accepted with specific consent",
        guard=require_specific_consent_and_quote,
    ),
    EpisodeTransition(
        source=EpisodeState.TREATMENT,
        trigger=Trigger.TREATMENT_CONTROL_REACHED,
        target=EpisodeState.FOLLOW_UP,
        description="Clinical control reached, moves to follow-up",
        guard=require_treatment_control,
    ),
    EpisodeTransition(
        source=EpisodeState.FOLLOW_UP,
        trigger=Trigger.EPISODE_CLOSED,
        target=EpisodeState.DISCHARGE,
        description="Episode closed after follow-up",
        guard=require_discharge_ready,
    ),
    EpisodeTransition(
        source=EpisodeState.DISCHARGE,
        trigger=Trigger.RECALL_SCHEDULED,
        target=EpisodeState.MAINTENANCE,
        description="Preventive recall scheduled",
        guard=require_recall_scheduled,
    ),
)


def validate_transition_table(
    transitions: Iterable[EpisodeTransition],
    initial_state: EpisodeState,
    terminal_states: Iterable[EpisodeState],
) -> list[str]:
    """Validate that a transition table forms a usable journey graph.

    Returns list of error messages (empty = valid).

    Checks:
    - every (source, trigger) pair is declared once
    - terminal states have no outgoing transitions
    - all states are reachable from initial_state
    """
    errors = []
    transitions = list(transitions)
    terminal = set(terminal_states)

    if not isinstance(initial_state, EpisodeState):
        errors.append(f"initial_state '{initial_state}' not a known state")
        return errors

    for t in transitions:
        if not isinstance(t.target, EpisodeState):
            errors.append(
                f"transition on '{t.trigger.value}' targets unknown state '{t.target}'"
            )
    transitions = [t for t in transitions if isinstance(t.target, EpisodeState)]

    seen: set[tuple[EpisodeState, Trigger]] = set()
    for t in transitions:
        key = (t.source, t.trigger)
        if key in seen:
            errors.append(
                f"duplicate transition from '{t.source.value}' on '{t.trigger.value}'"
            )
        seen.add(key)

    for t in transitions:
        if t.source in terminal:
            errors.append(f"terminal state '{t.source.value}' has outgoing transitions")

    reachable = _find_reachable_states(initial_state, transitions)
    for state in EpisodeState:
        if state not in reachable:
            errors.append(f"state '{state.value}' unreachable from initial_state")

    return errors


def _find_reachable_states(
    start: EpisodeState, transitions: list[EpisodeTransition]
) -> set[EpisodeState]:
    """BFS over the transition table from start (start included)."""
    edges: dict[EpisodeState, list[EpisodeState]] = {}
    for t in transitions:
        edges.setdefault(t.source, []).append(t.target)

    visited = {start}
    queue = [start]
    while queue:
        current = queue.pop(0)
        for next_state in edges.get(current, []):
            if next_state not in visited:
                visited.add(next_state)
                queue.append(next_state)
    return visited


class EpisodeStateMachine:
    """Deterministic, guarded state machine over EpisodeState.

    Each (state, trigger) pair maps to at most one transition.
    """

    initial_state = EpisodeState.CAPTURE
    terminal_states = frozenset({EpisodeState.MAINTENANCE})

    def __init__(self, transitions: Iterable[EpisodeTransition] = EPISODE_TRANSITIONS):
        """Build the lookup index for a transition table.

        Raises:
            InvalidDefinition: If the table fails graph validation.
        """
        self.transitions = tuple(transitions)
        errors = self.validate()
        if errors:
            raise InvalidDefinition(errors)
        self._index = {(t.source, t.trigger): t for t in self.transitions}

    def validate(self) -> list[str]:
        return validate_transition_table(
            self.transitions, self.initial_state, self.terminal_states
        )

    def find(self, current: EpisodeState, trigger: Trigger) -> EpisodeTransition | None:
        """Transition declared for a state and trigger, ignoring guards."""
        return self._index.get((current, trigger))

    def evaluate(
        self,
        current: EpisodeState,
        trigger: Trigger,
        context: GuardContext | None = None,
    ) -> TransitionDecision:
        """Decide what a trigger would do to an episode in `current` state."""
        context = context or GuardContext()
        transition = self.find(current, trigger)
        if transition is None:
            return TransitionDecision(
                outcome=TransitionOutcome.NO_TRANSITION,
                target=None,
                transition=None,
                reason=f"No transition from '{current.value}' on '{trigger.value}'",
            )
        if transition.guard is not None and not transition.guard(context):
            return TransitionDecision(
                outcome=TransitionOutcome.GUARD_REJECTED,
                target=None,
                transition=transition,
                reason=f"Guard '{transition.guard_name}' not satisfied",
            )
        return TransitionDecision(
            outcome=TransitionOutcome.APPLIED,
            target=transition.target,
            transition=transition,
            reason=transition.description,
        )

    def next_state(
        self,
        current: EpisodeState,
        trigger: Trigger,
        context: GuardContext | None = None,
    ) -> EpisodeState | None:
        """Target state for a trigger, or None if it does not apply."""
        return self.evaluate(current, trigger, context).target

    def can_transition(
        self,
        current: EpisodeState,
        trigger: Trigger,
        context: GuardContext | None = None,
    ) -> bool:
        return self.next_state(current, trigger, context) is not None

    def describe(self, current: EpisodeState, trigger: Trigger) -> str | None:
        transition = self.find(current, trigger)
        return transition.description if transition else None

    def triggers_from(self, state: EpisodeState) -> list[Trigger]:
        """Triggers with a declared transition out of `state`."""
        return [t.trigger for t in self.transitions if t.source is state]

    def is_terminal(self, state: EpisodeState) -> bool:
        return state in self.terminal_states
