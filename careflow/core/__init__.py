"""Core domain logic for the careflow episode workflow.

This package contains zero external dependencies and represents
the pure business logic of the application. All adapters and
external integrations are handled by the adapters package.
"""

from .machine import EPISODE_TRANSITIONS, EpisodeStateMachine, EpisodeTransition
from .models import (
    Actor,
    DomainEvent,
    Episode,
    EpisodeState,
    EpisodeView,
    EventSubject,
    EventType,
    GuardContext,
    Patient,
    ProcessResult,
    SubjectKind,
    TransitionOutcome,
    TransitionResult,
    Trigger,
)

__all__ = [
    "Actor",
    "DomainEvent",
    "EPISODE_TRANSITIONS",
    "Episode",
    "EpisodeState",
    "EpisodeStateMachine",
    "EpisodeTransition",
    "EpisodeView",
    "EventSubject",
    "EventType",
    "GuardContext",
    "Patient",
    "ProcessResult",
    "SubjectKind",
    "TransitionOutcome",
    "TransitionResult",
    "Trigger",
]
