"""Port interfaces for the careflow episode workflow.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - EpisodeStorePort: Persist episodes and commit state transitions
   - EventLogPort: Append-only log of domain events
   - RecordStorePort: Document collections written by the workflow
   - NotificationPort: Tell staff about automation results
   - AccessPolicyPort: Decide whether an actor may run an operation

2. **Driving Ports** (adapters/external systems call into core)
   - WorkflowPort: Workflow commands and episode queries
   - AutomationPort: Event reactions run by the scheduler
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from .models import (
    Actor,
    AppointmentBooking,
    AppointmentConfirmation,
    ConsentSignature,
    DischargeRequest,
    DomainEvent,
    Episode,
    EpisodeState,
    EpisodeView,
    FollowUpSchedule,
    GuardContext,
    LeadRequest,
    PlanProposal,
    ProcedureCompletion,
    ProcessResult,
    QuoteAcceptance,
    QuotePresentation,
    StateCount,
    TransitionResult,
    TriageRouting,
    TriageSubmission,
    Trigger,
)


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class EpisodeStorePort(ABC):
    """Port for persisting episodes.

    The state column is special: it only changes through
    commit_transition, which also appends the matching log entry.
    Implementations must make that pair atomic.
    """

    @abstractmethod
    async def create(self, episode: Episode) -> str:
        """Store a new episode.

        Args:
            episode: Episode to persist (its id must be unique).

        Returns:
            The episode id.

        Raises:
            Exception: If an episode with the same id exists or on database error.
        """

    @abstractmethod
    async def get(self, episode_id: str) -> Episode | None:
        """Retrieve an episode by id, or None if it does not exist."""

    @abstractmethod
    async def get_many(self, episode_ids: list[str]) -> list[Episode]:
        """Retrieve several episodes. Unknown ids are skipped.

        Returns:
            Episodes in the order their ids were given.
        """

    @abstractmethod
    async def list(
        self, state: EpisodeState | None = None, limit: int = 60
    ) -> list[Episode]:
        """List episodes, most recently updated first.

        Args:
            state: Only episodes currently in this state (optional).
            limit: Maximum number of episodes to return.
        """

    @abstractmethod
    async def update_fields(
        self, episode_id: str, fields: dict[str, Any], at: datetime
    ) -> Episode:
        """Merge non-state fields into an episode and bump updated_at.

        Args:
            episode_id: Episode to update.
            fields: Attribute names of Episode mapped to new values.
            at: New updated_at value.

        Returns:
            The updated episode.

        Raises:
            EpisodeNotFound: If the episode does not exist.
            ValueError: If fields name the state or an unknown attribute.
        """

    @abstractmethod
    async def count_by_state(self) -> dict[EpisodeState, int]:
        """Count episodes per state. States with no episodes may be omitted."""

    @abstractmethod
    async def commit_transition(
        self,
        episode_id: str,
        expected_state: EpisodeState,
        next_state: EpisodeState,
        at: datetime,
        event: DomainEvent,
    ) -> DomainEvent | None:
        """Move an episode to next_state and log the event, atomically.

        The write only happens if the stored state still equals
        expected_state (compare-and-set).

        Args:
            episode_id: Episode to move.
            expected_state: State the caller evaluated the transition from.
            next_state: Target state.
            at: New updated_at value.
            event: The Episode.StateChanged entry to append.

        Returns:
            The appended event with its sequence, or None if the stored
            state no longer matched expected_state (nothing was written).

        Raises:
            EpisodeNotFound: If the episode does not exist.
        """


class EventLogPort(ABC):
    """Port for the append-only domain event log.

    There is deliberately no update or delete operation.
    """

    @abstractmethod
    async def append(self, event: DomainEvent) -> DomainEvent:
        """Append an event.

        Returns:
            The stored event, carrying its log-assigned sequence.
            Sequences increase monotonically.

        Raises:
            Exception: If an event with the same id was already appended.
        """

    @abstractmethod
    async def list_for_subject(
        self, subject_id: str, limit: int = 200
    ) -> list[DomainEvent]:
        """Events about a subject in ascending timestamp order."""

    @abstractmethod
    async def list_since(self, sequence: int, limit: int = 100) -> list[DomainEvent]:
        """Events with a sequence greater than `sequence`, ascending."""

    @abstractmethod
    async def get(self, event_id: str) -> DomainEvent | None:
        """Retrieve one event by id."""


class RecordStorePort(ABC):
    """Port for schemaless document collections.

    Records are JSON-compatible dicts. Returned records always include
    their id under the "id" key. Timestamps inside records are epoch
    milliseconds so they compare and serialize without conversion.
    """

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Insert a record under a generated id and return the id."""

    @abstractmethod
    async def set(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        """Create or replace a record under a known id.

        Args:
            merge: If True, top-level keys of data are merged into an
                existing record instead of replacing it.
        """

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Retrieve a record, or None if it does not exist."""

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """Records whose top-level fields equal every filter value.

        Args:
            order_by: Top-level field to sort on (optional).
            descending: Sort direction when order_by is given.
        """

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record. Returns True if it existed."""

    @abstractmethod
    async def delete_older_than(
        self, collection: str, field: str, cutoff: int, limit: int
    ) -> int:
        """Delete up to `limit` records whose `field` is below `cutoff`.

        Returns:
            Number of records deleted.
        """


class NotificationPort(ABC):
    """Port for telling staff about automation results.

    Callers log delivery failures and carry on; a failed notification
    never fails the workflow step that produced it.
    """

    @abstractmethod
    async def send(self, subject: str, text: str) -> None:
        """Deliver a short message.

        Args:
            subject: One-line summary (used as a title where supported).
            text: Message body.

        Raises:
            Exception: If delivery fails.
        """


class AccessPolicyPort(ABC):
    """Port for authorization decisions.

    Identity is established outside the core; the policy only sees the
    resulting Actor.
    """

    @abstractmethod
    async def authorize(self, actor: Actor | None, operation: str) -> None:
        """Check that an actor may run an operation.

        Raises:
            NotAuthenticated: If actor is None.
            PermissionDenied: If the actor's roles do not allow the operation.
        """


# ============================================================================
# DRIVING PORTS (Adapters/external systems call into core)
# ============================================================================


class WorkflowPort(ABC):
    """Port for workflow commands and episode queries.

    Driving port: the API receiver and CLI call these methods.
    Implementations live in the core (workflow.py).

    Commands return plain dicts with the ids and status of what they wrote.
    """

    @abstractmethod
    async def create_lead(self, actor: Actor | None, request: LeadRequest) -> dict[str, Any]:
        """Create a lead and its episode; optionally qualify it straight away."""

    @abstractmethod
    async def submit_triage(
        self, actor: Actor | None, request: TriageSubmission
    ) -> dict[str, Any]:
        """Record a triage form and merge its risk flags into the episode."""

    @abstractmethod
    async def route_triage(
        self, actor: Actor | None, request: TriageRouting
    ) -> dict[str, Any]:
        """Issue a scheduling order and move the episode to SCHEDULING."""

    @abstractmethod
    async def book_appointment(
        self, actor: Actor | None, request: AppointmentBooking
    ) -> dict[str, Any]:
        """Book an appointment for an episode."""

    @abstractmethod
    async def confirm_appointment(
        self, actor: Actor | None, request: AppointmentConfirmation
    ) -> dict[str, Any]:
        """Confirm an appointment and move the episode to RECEPTION."""

    @abstractmethod
    async def sign_consent(
        self, actor: Actor | None, request: ConsentSignature
    ) -> dict[str, Any]:
        """Record a signed consent; a base consent opens EXPLORATION."""

    @abstractmethod
    async def propose_plan(
        self, actor: Actor | None, request: PlanProposal
    ) -> dict[str, Any]:
        """Record a proposed treatment plan and move the episode to BUDGET."""

    @abstractmethod
    async def present_quote(
        self, actor: Actor | None, request: QuotePresentation
    ) -> dict[str, Any]:
        """Record a presented quote with its computed total."""

    @abstractmethod
    async def accept_quote(
        self, actor: Actor | None, request: QuoteAcceptance
    ) -> dict[str, Any]:
        """Accept a quote and move the episode to TREATMENT.

        Raises:
            ConsentRequired: If no specific consent was signed for the episode.
        """

    @abstractmethod
    async def complete_procedure(
        self, actor: Actor | None, request: ProcedureCompletion
    ) -> dict[str, Any]:
        """Mark a procedure completed and log its inventory deductions."""

    @abstractmethod
    async def schedule_followup(
        self, actor: Actor | None, request: FollowUpSchedule
    ) -> dict[str, Any]:
        """Schedule a follow-up for an episode."""

    @abstractmethod
    async def discharge_episode(
        self, actor: Actor | None, request: DischargeRequest
    ) -> dict[str, Any]:
        """Close an episode and optionally schedule its preventive recall."""

    @abstractmethod
    async def advance_episode(
        self,
        actor: Actor | None,
        episode_id: str,
        trigger: Trigger,
        asserted: GuardContext | None = None,
        meta: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Apply a caller-chosen trigger with resolved and asserted facts."""

    @abstractmethod
    async def list_episodes(
        self, state: EpisodeState | None = None, limit: int | None = None
    ) -> list[EpisodeView]:
        """Most recently updated episodes joined with their patients."""

    @abstractmethod
    async def get_episode(self, episode_id: str) -> EpisodeView:
        """One episode with its patient.

        Raises:
            EpisodeNotFound: If the episode does not exist.
        """

    @abstractmethod
    async def get_episodes(self, episode_ids: list[str]) -> list[EpisodeView]:
        """Several episodes with their patients; unknown ids are skipped."""

    @abstractmethod
    async def get_timeline(
        self, episode_id: str, limit: int | None = None
    ) -> list[DomainEvent]:
        """Events about an episode in ascending timestamp order."""

    @abstractmethod
    async def state_counts(self) -> list[StateCount]:
        """Episode count per state in journey order, zeros included."""


class AutomationPort(ABC):
    """Port for reacting to logged events.

    Driving port: the daemon scheduler, the API and the CLI call these
    methods. Implementations live in the core (automation.py).
    """

    @abstractmethod
    async def process_event(self, event: DomainEvent) -> str:
        """Run the handler for one event at most once.

        Returns:
            One of "processed", "duplicate", "unhandled" or "failed".
        """

    @abstractmethod
    async def process_pending(
        self, after_sequence: int = 0, limit: int = 100
    ) -> ProcessResult:
        """Process log entries after a sequence, in sequence order."""

    @abstractmethod
    async def purge_processed(self, older_than_days: int = 30) -> int:
        """Delete dedupe marks older than the retention window.

        Returns:
            Number of marks deleted.
        """
