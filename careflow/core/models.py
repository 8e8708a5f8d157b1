"""Domain models for the careflow episode workflow.

All models in this module use only Python standard library types,
keeping the core domain free of external dependencies.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any


class EpisodeState(Enum):
    """Stages of a patient's clinical journey.

    Declaration order is the journey order, from lead capture through
    preventive maintenance.
    """

    CAPTURE = "CAPTURE"
    TRIAGE = "TRIAGE"
    SCHEDULING = "SCHEDULING"
    RECEPTION = "RECEPTION"
    EXPLORATION = "EXPLORATION"
    DIAGNOSIS = "DIAGNOSIS"
    PLAN = "PLAN"
    BUDGET = "BUDGET"
    TREATMENT = "TREATMENT"
    FOLLOW_UP = "FOLLOW_UP"
    DISCHARGE = "DISCHARGE"
    MAINTENANCE = "MAINTENANCE"

    @property
    def label(self) -> str:
        """Human-readable stage name."""
        return _STATE_LABELS[self]

    @classmethod
    def ordered(cls) -> tuple["EpisodeState", ...]:
        """All states in journey order."""
        return tuple(cls)


_STATE_LABELS = {
    EpisodeState.CAPTURE: "Capture",
    EpisodeState.TRIAGE: "Triage",
    EpisodeState.SCHEDULING: "Scheduling",
    EpisodeState.RECEPTION: "Reception",
    EpisodeState.EXPLORATION: "Exploration",
    EpisodeState.DIAGNOSIS: "Diagnosis",
    EpisodeState.PLAN: "Plan",
    EpisodeState.BUDGET: "Budget",
    EpisodeState.TREATMENT: "Treatment",
    EpisodeState.FOLLOW_UP: "Follow-up",
    EpisodeState.DISCHARGE: "Discharge",
    EpisodeState.MAINTENANCE: "Maintenance",
}


class Trigger(Enum):
    """Domain events that may move an episode between states."""

    LEAD_QUALIFIED = "Lead.Qualified"
    TRIAGE_ROUTED = "Triage.Routed"
    APPOINTMENT_CONFIRMED = "Appointment.Confirmed"
    CONSENT_SIGNED_BASE = "Consent.Signed.Base"
    EXPLORATION_COMPLETED = "Exploration.Completed"
    PLAN_CREATED = "Plan.Created"
    PLAN_PROPOSED = "Plan.Proposed"
    QUOTE_ACCEPTED = "Quote.Accepted"
    TREATMENT_CONTROL_REACHED = "Treatment.ControlReached"
    EPISODE_CLOSED = "Episode.Closed"
    RECALL_SCHEDULED = "Recall.Scheduled"


class EventType(Enum):
    """Canonical event vocabulary written to the event log."""

    LEAD_CREATED = "Lead.Created"
    LEAD_QUALIFIED = "Lead.Qualified"
    TRIAGE_SUBMITTED = "Triage.Submitted"
    TRIAGE_ROUTED = "Triage.Routed"
    APPOINTMENT_BOOKED = "Appointment.Booked"
    APPOINTMENT_CONFIRMED = "Appointment.Confirmed"
    APPOINTMENT_COMPLETED = "Appointment.Completed"
    APPOINTMENT_CANCELLED = "Appointment.Cancelled"
    CONSENT_BASE_SIGNED = "Consent.Signed.Base"
    CONSENT_SPECIFIC_SIGNED = "Consent.Signed.Specific"
    EXPLORATION_COMPLETED = "Exploration.Completed"
    PLAN_CREATED = "Plan.Created"
    PLAN_PROPOSED = "Plan.Proposed"
    PLAN_APPROVED = "Plan.Approved"
    QUOTE_PRESENTED = "Quote.Presented"
    QUOTE_ACCEPTED = "Quote.Accepted"
    QUOTE_DECLINED = "Quote.Declined"
    PROCEDURE_COMPLETED = "Procedure.Completed"
    TREATMENT_CONTROL_REACHED = "Treatment.ControlReached"
    FOLLOWUP_SCHEDULED = "FollowUp.Scheduled"
    EPISODE_STATE_CHANGED = "Episode.StateChanged"
    EPISODE_CLOSED = "Episode.Closed"
    RECALL_SCHEDULED = "Recall.Scheduled"
    INVENTORY_DEDUCTED = "Inventory.Deducted"
    INVENTORY_ALERT = "Inventory.ReplenishAlert"
    NPS_SENT = "NPS.Sent"
    NPS_RECEIVED = "NPS.Received"


class SubjectKind(Enum):
    """What a logged event is about."""

    PATIENT = "patient"
    EPISODE = "episode"
    PLAN = "plan"
    PROCEDURE = "procedure"
    APPOINTMENT = "appointment"
    QUOTE = "quote"


class ConsentType(Enum):
    BASE = "BASE"
    SPECIFIC = "SPECIFIC"


class QuoteStatus(Enum):
    PRESENTED = "PRESENTED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class Channel(Enum):
    WEB = "WEB"
    PHONE = "PHONE"
    WHATSAPP = "WHATSAPP"
    REFERRAL = "REFERRAL"


class FollowUpKind(Enum):
    REVIEW = "REVIEW"
    PROS = "PROs"


class TriagePriority(Enum):
    NORMAL = "normal"
    HIGH = "alta"


class Submitter(Enum):
    PATIENT = "PATIENT"
    CLINICIAN = "CLINICIAN"


@dataclass(frozen=True)
class GuardContext:
    """Facts a transition guard may inspect.

    Missing facts are treated as false by every guard.
    """

    has_base_consent: bool = False
    has_specific_consent: bool = False
    quote_status: QuoteStatus | None = None
    exploration_completed: bool = False
    treatment_controlled: bool = False
    discharge_ready: bool = False
    recall_scheduled: bool = False

    def merge(self, other: "GuardContext | None") -> "GuardContext":
        """Combine two contexts; a fact holds if either side asserts it."""
        if other is None:
            return self
        return GuardContext(
            has_base_consent=self.has_base_consent or other.has_base_consent,
            has_specific_consent=self.has_specific_consent or other.has_specific_consent,
            quote_status=other.quote_status or self.quote_status,
            exploration_completed=self.exploration_completed or other.exploration_completed,
            treatment_controlled=self.treatment_controlled or other.treatment_controlled,
            discharge_ready=self.discharge_ready or other.discharge_ready,
            recall_scheduled=self.recall_scheduled or other.recall_scheduled,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "GuardContext":
        """Build a context from loosely typed input (API payloads, CLI args).

        Raises:
            ValueError: If quote_status is not a known status.
        """
        if not data:
            return cls()
        quote_status = data.get("quote_status")
        return cls(
            has_base_consent=bool(data.get("has_base_consent")),
            has_specific_consent=bool(data.get("has_specific_consent")),
            quote_status=QuoteStatus(quote_status) if quote_status else None,
            exploration_completed=bool(data.get("exploration_completed")),
            treatment_controlled=bool(data.get("treatment_controlled")),
            discharge_ready=bool(data.get("discharge_ready")),
            recall_scheduled=bool(data.get("recall_scheduled")),
        )


@dataclass(frozen=True)
class Actor:
    """The staff member issuing a command.

    Identity is established upstream; the core only sees the result.
    """

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_any_role(self, roles: frozenset[str] | set[str]) -> bool:
        return bool(self.roles & roles)


@dataclass
class Patient:
    """A person with one or more episodes."""

    id: str
    full_name: str
    created_at: datetime
    phone: str | None = None
    email: str | None = None
    dob: str | None = None
    tags: tuple[str, ...] = ()


@dataclass
class Episode:
    """One clinical journey of a patient.

    Note: This dataclass is mutable so stores can hydrate and update it,
    but the state field must only change through a committed transition.
    """

    id: str
    patient_id: str
    state: EpisodeState
    started_at: datetime
    updated_at: datetime
    owner_user_id: str | None = None
    reason: str | None = None
    tags: tuple[str, ...] = ()
    risk_flags: tuple[str, ...] = ()
    closed_at: datetime | None = None
    discharge_reason: str | None = None
    recall_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate episode invariants on creation or deserialization."""
        if not self.patient_id:
            raise ValueError("patient_id must be a non-empty string")
        if self.updated_at < self.started_at:
            raise ValueError(
                f"updated_at ({self.updated_at}) cannot be before "
                f"started_at ({self.started_at})"
            )

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


@dataclass(frozen=True)
class EventSubject:
    kind: SubjectKind
    id: str


@dataclass(frozen=True)
class DomainEvent:
    """An immutable event log entry.

    The sequence is assigned by the log on append and is None before that.
    """

    id: str
    type: str
    subject: EventSubject
    timestamp: datetime
    actor_user_id: str | None = None
    meta: dict[str, Any] | MappingProxyType[str, Any] = field(default_factory=dict)
    sequence: int | None = None

    def __post_init__(self) -> None:
        """Convert meta dict to read-only proxy."""
        if not self.type:
            raise ValueError("event type must be a non-empty string")
        if isinstance(self.meta, dict):
            object.__setattr__(self, "meta", MappingProxyType(self.meta))

    def with_sequence(self, sequence: int) -> "DomainEvent":
        return replace(self, meta=dict(self.meta), sequence=sequence)


class TransitionOutcome(Enum):
    """How a transition request ended."""

    APPLIED = "applied"
    NO_TRANSITION = "no_transition"
    GUARD_REJECTED = "guard_rejected"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class TransitionResult:
    """Summary of one transition request against an episode."""

    episode_id: str
    trigger: Trigger
    outcome: TransitionOutcome
    previous_state: EpisodeState
    next_state: EpisodeState
    event: DomainEvent | None = None
    reason: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


@dataclass(frozen=True)
class ProcessResult:
    """Summary of an automation cycle."""

    events_seen: int
    processed: int
    duplicates: int
    unhandled: int
    failed: int
    last_sequence: int


@dataclass(frozen=True)
class EpisodeView:
    """An episode joined with its patient record (which may be missing)."""

    episode: Episode
    patient: Patient | None


@dataclass(frozen=True)
class StateCount:
    state: EpisodeState
    total: int


# ============================================================================
# Workflow command requests
# ============================================================================


@dataclass(frozen=True)
class PatientData:
    full_name: str
    phone: str | None = None
    email: str | None = None
    dob: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class LeadRequest:
    """Open a new episode in CAPTURE, creating the patient if needed."""

    channel: Channel
    patient_id: str | None = None
    patient: PatientData | None = None
    tags: tuple[str, ...] = ()
    reason: str | None = None
    auto_qualify: bool = False


@dataclass(frozen=True)
class TriageSubmission:
    episode_id: str
    form_schema_key: str
    submitted_by: Submitter = Submitter.CLINICIAN
    channel: Channel = Channel.WEB
    answers: dict[str, Any] = field(default_factory=dict)
    risk_flags: tuple[str, ...] = ()
    report_url: str | None = None


@dataclass(frozen=True)
class TriageRouting:
    episode_id: str
    assigned_to_user_id: str
    notes: str | None = None
    priority: TriagePriority = TriagePriority.NORMAL


@dataclass(frozen=True)
class AppointmentBooking:
    """Times are epoch milliseconds, as the scheduling screens send them."""

    episode_id: str
    patient_id: str
    professional_id: str
    start: int
    end: int
    room_id: str | None = None
    kind: str = "consulta"
    notes: str | None = None


@dataclass(frozen=True)
class AppointmentConfirmation:
    appointment_id: str
    episode_id: str
    notes: str | None = None


@dataclass(frozen=True)
class ConsentSignature:
    patient_id: str
    type: ConsentType
    version: str
    signer_name: str
    episode_id: str | None = None
    signer_doc_id: str | None = None
    file_url: str | None = None
    source: str = "CLINIC"


@dataclass(frozen=True)
class Material:
    sku: str
    qty: float


@dataclass(frozen=True)
class PlanProposal:
    episode_id: str
    protocol_key: str
    sessions_planned: int
    sessions_done: int = 0
    materials: tuple[Material, ...] = ()
    consents_required: tuple[str, ...] = ()
    price_total: float | None = None


@dataclass(frozen=True)
class QuoteItem:
    label: str
    qty: float
    price: float

    @property
    def subtotal(self) -> float:
        return self.qty * self.price


@dataclass(frozen=True)
class QuotePresentation:
    episode_id: str
    items: tuple[QuoteItem, ...]
    quote_id: str | None = None
    notes: str | None = None

    @property
    def total(self) -> float:
        return sum(item.subtotal for item in self.items)


@dataclass(frozen=True)
class QuoteAcceptance:
    episode_id: str
    quote_id: str
    accepted_by: str | None = None
    signature_url: str | None = None


@dataclass(frozen=True)
class InventoryMovement:
    sku: str
    qty: float
    batch: str | None = None


@dataclass(frozen=True)
class ChecklistItem:
    key: str
    done: bool
    note: str | None = None


@dataclass(frozen=True)
class ProcedureCompletion:
    episode_id: str
    procedure_id: str
    notes: str | None = None
    checklist: tuple[ChecklistItem, ...] = ()
    inventory_movements: tuple[InventoryMovement, ...] = ()


@dataclass(frozen=True)
class FollowUpSchedule:
    """`date` is the target time in epoch milliseconds."""

    episode_id: str
    date: int
    kind: FollowUpKind
    scores: dict[str, float] | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DischargeRequest:
    episode_id: str
    reason: str | None = None
    metrics: dict[str, float] | None = None
    recall_date: int | None = None
