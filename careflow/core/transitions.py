"""Apply state machine decisions to stored episodes.

Each applied transition updates the episode and appends one
Episode.StateChanged entry to the log in a single compare-and-set
commit. Concurrent writers are detected by the store and resolved by
re-reading the episode and evaluating again.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .exceptions import EpisodeNotFound, GuardRejected, InvalidTransition, TransitionConflict
from .machine import EpisodeStateMachine
from .models import (
    DomainEvent,
    Episode,
    EventSubject,
    EventType,
    GuardContext,
    SubjectKind,
    TransitionOutcome,
    TransitionResult,
    Trigger,
)
from .ports import EpisodeStorePort

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EpisodeTransitionService:
    """Applies triggers to episodes through the state machine."""

    def __init__(
        self,
        episodes: EpisodeStorePort,
        machine: EpisodeStateMachine | None = None,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.episodes = episodes
        self.machine = machine or EpisodeStateMachine()
        self.max_attempts = max_attempts
        self.clock = clock

    async def apply(
        self,
        episode_id: str,
        trigger: Trigger,
        actor_user_id: str | None = None,
        context: GuardContext | None = None,
        meta: dict[str, Any] | None = None,
        strict: bool = False,
    ) -> TransitionResult:
        """Apply a trigger to an episode.

        Args:
            episode_id: Episode to move.
            trigger: Domain event driving the transition.
            actor_user_id: Who caused it (recorded on the log entry).
            context: Facts for the transition guard.
            meta: Extra data merged into the log entry meta.
            strict: Raise instead of returning an unchanged result.

        Returns:
            TransitionResult; `changed` is True only if the transition
            was committed.

        Raises:
            EpisodeNotFound: If the episode does not exist.
            InvalidTransition: In strict mode, if no transition matches.
            GuardRejected: In strict mode, if the guard does not hold.
            TransitionConflict: In strict mode, if concurrent writers won
                every attempt.
        """
        context = context or GuardContext()

        episode = await self._load(episode_id)
        for attempt in range(1, self.max_attempts + 1):
            decision = self.machine.evaluate(episode.state, trigger, context)

            if decision.outcome is TransitionOutcome.APPLIED and decision.target is episode.state:
                decision_outcome = TransitionOutcome.NO_TRANSITION
                reason = f"Trigger '{trigger.value}' leaves episode in '{episode.state.value}'"
            else:
                decision_outcome = decision.outcome
                reason = decision.reason

            if decision_outcome is not TransitionOutcome.APPLIED:
                logger.debug(
                    f"Transition not applied to episode {episode_id}: {reason}",
                    extra={
                        "episode_id": episode_id,
                        "state": episode.state.value,
                        "trigger": trigger.value,
                        "outcome": decision_outcome.value,
                    },
                )
                if strict:
                    if decision_outcome is TransitionOutcome.GUARD_REJECTED:
                        raise GuardRejected(
                            episode.state.value,
                            trigger.value,
                            decision.transition.guard_name if decision.transition else "unknown",
                        )
                    raise InvalidTransition(episode.state.value, trigger.value, reason)
                return TransitionResult(
                    episode_id=episode_id,
                    trigger=trigger,
                    outcome=decision_outcome,
                    previous_state=episode.state,
                    next_state=episode.state,
                    reason=reason,
                )

            assert decision.target is not None
            at = self.clock()
            event = DomainEvent(
                id=str(uuid.uuid4()),
                type=EventType.EPISODE_STATE_CHANGED.value,
                subject=EventSubject(SubjectKind.EPISODE, episode_id),
                timestamp=at,
                actor_user_id=actor_user_id,
                meta={
                    **(meta or {}),
                    "from": episode.state.value,
                    "to": decision.target.value,
                    "trigger": trigger.value,
                },
            )

            stored = await self.episodes.commit_transition(
                episode_id, episode.state, decision.target, at, event
            )
            if stored is not None:
                logger.info(
                    f"Episode {episode_id} moved {episode.state.value} -> "
                    f"{decision.target.value} on {trigger.value}",
                    extra={
                        "episode_id": episode_id,
                        "from_state": episode.state.value,
                        "to_state": decision.target.value,
                        "trigger": trigger.value,
                    },
                )
                return TransitionResult(
                    episode_id=episode_id,
                    trigger=trigger,
                    outcome=TransitionOutcome.APPLIED,
                    previous_state=episode.state,
                    next_state=decision.target,
                    event=stored,
                    reason=decision.reason,
                )

            logger.warning(
                f"Episode {episode_id} changed while applying {trigger.value} "
                f"(attempt {attempt}/{self.max_attempts})"
            )
            episode = await self._load(episode_id)

        if strict:
            raise TransitionConflict(episode_id, self.max_attempts)
        return TransitionResult(
            episode_id=episode_id,
            trigger=trigger,
            outcome=TransitionOutcome.CONFLICT,
            previous_state=episode.state,
            next_state=episode.state,
            reason=f"Gave up after {self.max_attempts} attempts",
        )

    async def _load(self, episode_id: str) -> Episode:
        episode = await self.episodes.get(episode_id)
        if episode is None:
            raise EpisodeNotFound(episode_id)
        return episode
