"""Workflow commands for the clinical episode journey.

Each command authorizes the actor, validates the request, writes its
records, logs its canonical event(s) and, where the journey calls for
it, applies the matching transition. Transitions are applied
non-strictly: a command whose trigger does not fit the episode's
current state still records its data and reports the unchanged state.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from . import records
from .exceptions import ConsentRequired, EpisodeNotFound, RecordNotFound, ValidationFailed
from .guards import GuardContextResolver
from .models import (
    Actor,
    AppointmentBooking,
    AppointmentConfirmation,
    ConsentSignature,
    ConsentType,
    DischargeRequest,
    DomainEvent,
    Episode,
    EpisodeState,
    EpisodeView,
    EventSubject,
    EventType,
    FollowUpSchedule,
    GuardContext,
    LeadRequest,
    PlanProposal,
    ProcedureCompletion,
    QuoteAcceptance,
    QuotePresentation,
    QuoteStatus,
    StateCount,
    SubjectKind,
    TransitionResult,
    TriageRouting,
    TriageSubmission,
    Trigger,
)
from .ports import (
    AccessPolicyPort,
    EpisodeStorePort,
    EventLogPort,
    RecordStorePort,
    WorkflowPort,
)
from .queries import EpisodeQueries
from .transitions import EpisodeTransitionService, utc_now

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 500
MAX_TAGS = 10
MAX_TAG_LENGTH = 40


class RequestValidator:
    """Collects rule violations for one request."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def required(self, name: str, value: str | None) -> None:
        if not value or not value.strip():
            self.errors.append(f"{name} is required")

    def note(self, name: str, value: str | None) -> None:
        if value is not None and len(value) > MAX_NOTE_LENGTH:
            self.errors.append(f"{name} must be at most {MAX_NOTE_LENGTH} characters")

    def tags(self, name: str, values: Iterable[str]) -> None:
        values = list(values)
        if len(values) > MAX_TAGS:
            self.errors.append(f"{name} must contain at most {MAX_TAGS} entries")
        for value in values:
            if len(value) > MAX_TAG_LENGTH:
                self.errors.append(
                    f"{name} entries must be at most {MAX_TAG_LENGTH} characters"
                )
                break

    def positive(self, name: str, value: float | None) -> None:
        if value is None or value <= 0:
            self.errors.append(f"{name} must be positive")

    def non_negative(self, name: str, value: float | None) -> None:
        if value is None or value < 0:
            self.errors.append(f"{name} must not be negative")

    def epoch_millis(self, name: str, value: int | None) -> None:
        if value is None or value <= 0:
            self.errors.append(f"{name} must be positive")
        elif value > records.MAX_MILLIS:
            self.errors.append(f"{name} is out of range")

    def check(self) -> None:
        if self.errors:
            raise ValidationFailed(self.errors)


class WorkflowService(WorkflowPort):
    """Implements the workflow commands and delegates reads to EpisodeQueries."""

    def __init__(
        self,
        episodes: EpisodeStorePort,
        events: EventLogPort,
        records_store: RecordStorePort,
        access: AccessPolicyPort,
        transitions: EpisodeTransitionService,
        guards: GuardContextResolver | None = None,
        queries: EpisodeQueries | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.episodes = episodes
        self.events = events
        self.records = records_store
        self.access = access
        self.transitions = transitions
        self.guards = guards or GuardContextResolver(records_store)
        self.queries = queries or EpisodeQueries(episodes, events, records_store)
        self.clock = clock

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_lead(self, actor: Actor | None, request: LeadRequest) -> dict[str, Any]:
        await self.access.authorize(actor, "create_lead")
        check = RequestValidator()
        if not request.patient_id and request.patient is None:
            check.errors.append("patient_id or patient data is required")
        if request.patient is not None and not request.patient_id:
            check.required("patient.full_name", request.patient.full_name)
            check.tags("patient.tags", request.patient.tags)
        check.tags("tags", request.tags)
        check.note("reason", request.reason)
        check.check()

        now = self.clock()
        patient_id = request.patient_id
        if not patient_id:
            assert request.patient is not None
            patient_id = await self.records.add(
                records.PATIENTS,
                {
                    "full_name": request.patient.full_name,
                    "phone": request.patient.phone,
                    "email": request.patient.email,
                    "dob": request.patient.dob,
                    "tags": list(request.patient.tags),
                    "source": request.channel.value,
                    "created_at": records.to_millis(now),
                    "updated_at": records.to_millis(now),
                },
            )

        episode = Episode(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            state=EpisodeState.CAPTURE,
            started_at=now,
            updated_at=now,
            owner_user_id=actor.user_id,
            reason=request.reason,
            tags=tuple(request.tags),
        )
        await self.episodes.create(episode)

        lead_id = await self.records.add(
            records.LEADS,
            {
                "patient_id": patient_id,
                "episode_id": episode.id,
                "channel": request.channel.value,
                "tags": list(request.tags),
                "reason": request.reason,
                "created_at": records.to_millis(now),
                "created_by": actor.user_id,
            },
        )

        await self._emit(
            EventType.LEAD_CREATED,
            SubjectKind.EPISODE,
            episode.id,
            actor,
            {"patient_id": patient_id, "channel": request.channel.value, "lead_id": lead_id},
        )
        logger.info(f"Lead {lead_id} opened episode {episode.id} for patient {patient_id}")

        state = episode.state
        if request.auto_qualify:
            result = await self.transitions.apply(
                episode.id, Trigger.LEAD_QUALIFIED, actor_user_id=actor.user_id
            )
            state = result.next_state

        return {
            "lead_id": lead_id,
            "episode_id": episode.id,
            "patient_id": patient_id,
            "state": state.value,
        }

    async def submit_triage(
        self, actor: Actor | None, request: TriageSubmission
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "submit_triage")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.required("form_schema_key", request.form_schema_key)
        check.tags("risk_flags", request.risk_flags)
        check.check()
        await self._require_episode(request.episode_id)

        now = self.clock()
        triage_id = await self.records.add(
            records.TRIAGE,
            {
                "episode_id": request.episode_id,
                "submitted_by": request.submitted_by.value,
                "channel": request.channel.value,
                "form_schema_key": request.form_schema_key,
                "answers": dict(request.answers),
                "risk_flags": list(request.risk_flags),
                "report_url": request.report_url,
                "created_at": records.to_millis(now),
                "created_by": actor.user_id,
            },
        )

        if request.risk_flags:
            await self.episodes.update_fields(
                request.episode_id, {"risk_flags": tuple(request.risk_flags)}, now
            )

        await self._emit(
            EventType.TRIAGE_SUBMITTED,
            SubjectKind.EPISODE,
            request.episode_id,
            actor,
            {
                "triage_id": triage_id,
                "form_schema_key": request.form_schema_key,
                "risk_flags": list(request.risk_flags),
            },
        )
        return {
            "triage_id": triage_id,
            "episode_id": request.episode_id,
            "risk_flags": list(request.risk_flags),
        }

    async def route_triage(
        self, actor: Actor | None, request: TriageRouting
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "route_triage")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.required("assigned_to_user_id", request.assigned_to_user_id)
        check.note("notes", request.notes)
        check.check()
        await self._require_episode(request.episode_id)

        now = self.clock()
        task_id = await self.records.add(
            records.TASKS,
            {
                "type": "SCHEDULING_ORDER",
                "episode_id": request.episode_id,
                "assigned_to_user_id": request.assigned_to_user_id,
                "notes": request.notes,
                "priority": request.priority.value,
                "status": "pending",
                "created_at": records.to_millis(now),
                "created_by": actor.user_id,
            },
        )

        await self._emit(
            EventType.TRIAGE_ROUTED,
            SubjectKind.EPISODE,
            request.episode_id,
            actor,
            {
                "assigned_to_user_id": request.assigned_to_user_id,
                "task_id": task_id,
                "priority": request.priority.value,
            },
        )
        result = await self.transitions.apply(
            request.episode_id, Trigger.TRIAGE_ROUTED, actor_user_id=actor.user_id
        )
        return {
            "task_id": task_id,
            "episode_id": request.episode_id,
            "assigned_to_user_id": request.assigned_to_user_id,
            "priority": request.priority.value,
            "state": result.next_state.value,
        }

    async def book_appointment(
        self, actor: Actor | None, request: AppointmentBooking
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "book_appointment")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.required("patient_id", request.patient_id)
        check.required("professional_id", request.professional_id)
        check.epoch_millis("start", request.start)
        check.epoch_millis("end", request.end)
        if request.end <= request.start:
            check.errors.append("end must be after start")
        check.note("notes", request.notes)
        check.check()
        await self._require_episode(request.episode_id)

        now = self.clock()
        appointment_id = await self.records.add(
            records.APPOINTMENTS,
            {
                "episode_id": request.episode_id,
                "patient_id": request.patient_id,
                "professional_id": request.professional_id,
                "room_id": request.room_id,
                "start": request.start,
                "end": request.end,
                "status": "BOOKED",
                "kind": request.kind,
                "notes": request.notes,
                "created_at": records.to_millis(now),
                "created_by": actor.user_id,
            },
        )

        await self._emit(
            EventType.APPOINTMENT_BOOKED,
            SubjectKind.APPOINTMENT,
            appointment_id,
            actor,
            {
                "episode_id": request.episode_id,
                "patient_id": request.patient_id,
                "professional_id": request.professional_id,
                "start": request.start,
            },
        )
        return {"appointment_id": appointment_id, "status": "BOOKED"}

    async def confirm_appointment(
        self, actor: Actor | None, request: AppointmentConfirmation
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "confirm_appointment")
        check = RequestValidator()
        check.required("appointment_id", request.appointment_id)
        check.required("episode_id", request.episode_id)
        check.note("notes", request.notes)
        check.check()
        await self._require_episode(request.episode_id)
        await self._require_record(
            records.APPOINTMENTS, request.appointment_id, request.episode_id
        )

        now = self.clock()
        await self.records.set(
            records.APPOINTMENTS,
            request.appointment_id,
            {
                "episode_id": request.episode_id,
                "status": "CONFIRMED",
                "confirmed_at": records.to_millis(now),
                "notes": request.notes,
                "updated_at": records.to_millis(now),
            },
            merge=True,
        )

        await self._emit(
            EventType.APPOINTMENT_CONFIRMED,
            SubjectKind.APPOINTMENT,
            request.appointment_id,
            actor,
            {"episode_id": request.episode_id},
        )
        result = await self.transitions.apply(
            request.episode_id,
            Trigger.APPOINTMENT_CONFIRMED,
            actor_user_id=actor.user_id,
            meta={"appointment_id": request.appointment_id},
        )
        return {
            "appointment_id": request.appointment_id,
            "episode_id": request.episode_id,
            "status": "CONFIRMED",
            "state": result.next_state.value,
        }

    async def sign_consent(
        self, actor: Actor | None, request: ConsentSignature
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "sign_consent")
        check = RequestValidator()
        check.required("patient_id", request.patient_id)
        check.required("version", request.version)
        check.required("signer_name", request.signer_name)
        check.check()
        if request.episode_id:
            await self._require_episode(request.episode_id)

        now = self.clock()
        consent_id = await self.records.add(
            records.CONSENTS,
            {
                "patient_id": request.patient_id,
                "episode_id": request.episode_id,
                "type": request.type.value,
                "version": request.version,
                "signer": {"name": request.signer_name, "doc_id": request.signer_doc_id},
                "file_url": request.file_url,
                "signed_at": records.to_millis(now),
                "source": request.source,
                "created_by": actor.user_id,
            },
        )

        event_type = (
            EventType.CONSENT_BASE_SIGNED
            if request.type is ConsentType.BASE
            else EventType.CONSENT_SPECIFIC_SIGNED
        )
        await self._emit(
            event_type,
            SubjectKind.PATIENT,
            request.patient_id,
            actor,
            {
                "consent_id": consent_id,
                "episode_id": request.episode_id,
                "version": request.version,
                "source": request.source,
            },
        )

        response: dict[str, Any] = {
            "consent_id": consent_id,
            "type": request.type.value,
            "version": request.version,
            "patient_id": request.patient_id,
            "episode_id": request.episode_id,
        }
        if request.type is ConsentType.BASE and request.episode_id:
            context = await self.guards.resolve(
                request.episode_id, GuardContext(has_base_consent=True)
            )
            result = await self.transitions.apply(
                request.episode_id,
                Trigger.CONSENT_SIGNED_BASE,
                actor_user_id=actor.user_id,
                context=context,
                meta={"consent_id": consent_id},
            )
            response["state"] = result.next_state.value
        return response

    async def propose_plan(
        self, actor: Actor | None, request: PlanProposal
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "propose_plan")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.required("protocol_key", request.protocol_key)
        check.positive("sessions_planned", request.sessions_planned)
        check.non_negative("sessions_done", request.sessions_done)
        for material in request.materials:
            check.required("materials.sku", material.sku)
            check.positive("materials.qty", material.qty)
        if request.price_total is not None:
            check.positive("price_total", request.price_total)
        check.check()
        await self._require_episode(request.episode_id)

        now = self.clock()
        plan_id = await self.records.add(
            records.PLANS,
            {
                "episode_id": request.episode_id,
                "protocol_key": request.protocol_key,
                "sessions_planned": request.sessions_planned,
                "sessions_done": request.sessions_done,
                "materials": [{"sku": m.sku, "qty": m.qty} for m in request.materials],
                "consents_required": list(request.consents_required),
                "price_total": request.price_total,
                "status": "PROPOSED",
                "created_at": records.to_millis(now),
                "updated_at": records.to_millis(now),
                "created_by": actor.user_id,
            },
        )

        await self._emit(
            EventType.PLAN_PROPOSED,
            SubjectKind.PLAN,
            plan_id,
            actor,
            {
                "episode_id": request.episode_id,
                "protocol_key": request.protocol_key,
                "sessions_planned": request.sessions_planned,
            },
        )
        result = await self.transitions.apply(
            request.episode_id,
            Trigger.PLAN_PROPOSED,
            actor_user_id=actor.user_id,
            meta={"plan_id": plan_id, "protocol_key": request.protocol_key},
        )
        return {
            "plan_id": plan_id,
            "episode_id": request.episode_id,
            "status": "PROPOSED",
            "state": result.next_state.value,
        }

    async def present_quote(
        self, actor: Actor | None, request: QuotePresentation
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "present_quote")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        if not request.items:
            check.errors.append("items must contain at least one entry")
        for item in request.items:
            check.required("items.label", item.label)
            check.positive("items.qty", item.qty)
            check.non_negative("items.price", item.price)
        check.note("notes", request.notes)
        check.check()
        await self._require_episode(request.episode_id)
        if request.quote_id:
            await self._reject_foreign_record(
                records.QUOTES, request.quote_id, request.episode_id, "quote_id"
            )

        now = self.clock()
        quote_id = request.quote_id or str(uuid.uuid4())
        total = request.total
        await self.records.set(
            records.QUOTES,
            quote_id,
            {
                "episode_id": request.episode_id,
                "items": [
                    {"label": i.label, "qty": i.qty, "price": i.price} for i in request.items
                ],
                "total": total,
                "status": QuoteStatus.PRESENTED.value,
                "notes": request.notes,
                "presented_at": records.to_millis(now),
                "updated_at": records.to_millis(now),
                "presented_by": actor.user_id,
            },
            merge=True,
        )

        await self._emit(
            EventType.QUOTE_PRESENTED,
            SubjectKind.QUOTE,
            quote_id,
            actor,
            {"episode_id": request.episode_id, "total": total, "items": len(request.items)},
        )
        return {"quote_id": quote_id, "status": QuoteStatus.PRESENTED.value, "total": total}

    async def accept_quote(
        self, actor: Actor | None, request: QuoteAcceptance
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "accept_quote")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.required("quote_id", request.quote_id)
        check.check()
        await self._require_episode(request.episode_id)
        await self._require_record(records.QUOTES, request.quote_id, request.episode_id)

        consents = await self.records.find(
            records.CONSENTS,
            {"episode_id": request.episode_id, "type": ConsentType.SPECIFIC.value},
            limit=1,
        )
        if not consents:
            raise ConsentRequired(request.episode_id, ConsentType.SPECIFIC.value)

        now = self.clock()
        await self.records.set(
            records.QUOTES,
            request.quote_id,
            {
                "status": QuoteStatus.ACCEPTED.value,
                "accepted_at": records.to_millis(now),
                "accepted_by": request.accepted_by,
                "signature_url": request.signature_url,
                "updated_at": records.to_millis(now),
            },
            merge=True,
        )

        await self._emit(
            EventType.QUOTE_ACCEPTED,
            SubjectKind.QUOTE,
            request.quote_id,
            actor,
            {
                "episode_id": request.episode_id,
                "quote_id": request.quote_id,
                "consent_id": consents[0]["id"],
                "accepted_by": request.accepted_by,
            },
        )
        context = await self.guards.resolve(request.episode_id)
        result = await self.transitions.apply(
            request.episode_id,
            Trigger.QUOTE_ACCEPTED,
            actor_user_id=actor.user_id,
            context=context,
            meta={"quote_id": request.quote_id},
        )
        return {
            "quote_id": request.quote_id,
            "episode_id": request.episode_id,
            "status": QuoteStatus.ACCEPTED.value,
            "state": result.next_state.value,
        }

    async def complete_procedure(
        self, actor: Actor | None, request: ProcedureCompletion
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "complete_procedure")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.required("procedure_id", request.procedure_id)
        check.note("notes", request.notes)
        for item in request.checklist:
            check.required("checklist.key", item.key)
        for movement in request.inventory_movements:
            check.required("inventory_movements.sku", movement.sku)
            check.positive("inventory_movements.qty", movement.qty)
        check.check()
        await self._require_episode(request.episode_id)
        await self._reject_foreign_record(
            records.PROCEDURES, request.procedure_id, request.episode_id, "procedure_id"
        )

        now = self.clock()
        await self.records.set(
            records.PROCEDURES,
            request.procedure_id,
            {
                "episode_id": request.episode_id,
                "status": "COMPLETED",
                "completed_at": records.to_millis(now),
                "notes": request.notes,
                "checklist": [
                    {"key": c.key, "done": c.done, "note": c.note} for c in request.checklist
                ]
                or None,
                "updated_at": records.to_millis(now),
                "completed_by": actor.user_id,
            },
            merge=True,
        )

        await self._emit(
            EventType.PROCEDURE_COMPLETED,
            SubjectKind.PROCEDURE,
            request.procedure_id,
            actor,
            {
                "episode_id": request.episode_id,
                "inventory_movements": len(request.inventory_movements),
            },
        )
        for movement in request.inventory_movements:
            await self._emit(
                EventType.INVENTORY_DEDUCTED,
                SubjectKind.PROCEDURE,
                request.procedure_id,
                actor,
                {
                    "episode_id": request.episode_id,
                    "sku": movement.sku,
                    "qty": movement.qty,
                    "batch": movement.batch,
                },
            )
        return {"procedure_id": request.procedure_id, "status": "COMPLETED"}

    async def schedule_followup(
        self, actor: Actor | None, request: FollowUpSchedule
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "schedule_followup")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.epoch_millis("date", request.date)
        check.note("notes", request.notes)
        check.check()
        await self._require_episode(request.episode_id)

        now = self.clock()
        follow_up_id = await self.records.add(
            records.FOLLOWUPS,
            {
                "episode_id": request.episode_id,
                "date": request.date,
                "kind": request.kind.value,
                "scores": dict(request.scores) if request.scores else None,
                "notes": request.notes,
                "status": "PENDING",
                "created_at": records.to_millis(now),
                "created_by": actor.user_id,
            },
        )

        await self._emit(
            EventType.FOLLOWUP_SCHEDULED,
            SubjectKind.EPISODE,
            request.episode_id,
            actor,
            {"follow_up_id": follow_up_id, "kind": request.kind.value, "date": request.date},
        )
        return {
            "follow_up_id": follow_up_id,
            "date": request.date,
            "kind": request.kind.value,
        }

    async def discharge_episode(
        self, actor: Actor | None, request: DischargeRequest
    ) -> dict[str, Any]:
        """Close an episode, then schedule its recall when a date is given.

        Closure fields and the Episode.Closed entry are only written if
        the episode actually moved to DISCHARGE.
        """
        await self.access.authorize(actor, "discharge_episode")
        check = RequestValidator()
        check.required("episode_id", request.episode_id)
        check.note("reason", request.reason)
        if request.recall_date is not None:
            check.epoch_millis("recall_date", request.recall_date)
        check.check()
        await self._require_episode(request.episode_id)

        closed = await self.transitions.apply(
            request.episode_id,
            Trigger.EPISODE_CLOSED,
            actor_user_id=actor.user_id,
            context=GuardContext(discharge_ready=True),
            meta={"reason": request.reason},
        )
        if not closed.changed:
            logger.info(
                f"Episode {request.episode_id} not discharged: {closed.reason}",
                extra={"episode_id": request.episode_id, "outcome": closed.outcome.value},
            )
            return {
                "episode_id": request.episode_id,
                "state": closed.next_state.value,
                "recall_date": None,
                "discharged": False,
            }

        now = self.clock()
        await self.episodes.update_fields(
            request.episode_id,
            {"closed_at": now, "discharge_reason": request.reason},
            now,
        )
        await self._emit(
            EventType.EPISODE_CLOSED,
            SubjectKind.EPISODE,
            request.episode_id,
            actor,
            {"reason": request.reason, "metrics": dict(request.metrics or {})},
        )

        state = closed.next_state
        if request.recall_date is not None:
            await self.episodes.update_fields(
                request.episode_id,
                {"recall_at": records.from_millis(request.recall_date)},
                self.clock(),
            )
            recall = await self.transitions.apply(
                request.episode_id,
                Trigger.RECALL_SCHEDULED,
                actor_user_id=actor.user_id,
                context=GuardContext(recall_scheduled=True),
                meta={"recall_date": request.recall_date},
            )
            state = recall.next_state

        return {
            "episode_id": request.episode_id,
            "state": state.value,
            "recall_date": request.recall_date,
            "discharged": True,
        }

    async def advance_episode(
        self,
        actor: Actor | None,
        episode_id: str,
        trigger: Trigger,
        asserted: GuardContext | None = None,
        meta: dict[str, Any] | None = None,
    ) -> TransitionResult:
        await self.access.authorize(actor, "advance_episode")
        context = await self.guards.resolve(episode_id, asserted)
        return await self.transitions.apply(
            episode_id,
            trigger,
            actor_user_id=actor.user_id,
            context=context,
            meta=meta,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_episodes(
        self, state: EpisodeState | None = None, limit: int | None = None
    ) -> list[EpisodeView]:
        return await self.queries.list_episodes(state=state, limit=limit)

    async def get_episode(self, episode_id: str) -> EpisodeView:
        return await self.queries.get_episode(episode_id)

    async def get_episodes(self, episode_ids: list[str]) -> list[EpisodeView]:
        return await self.queries.get_episodes(episode_ids)

    async def get_timeline(
        self, episode_id: str, limit: int | None = None
    ) -> list[DomainEvent]:
        return await self.queries.get_timeline(episode_id, limit=limit)

    async def state_counts(self) -> list[StateCount]:
        return await self.queries.state_counts()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _emit(
        self,
        event_type: EventType,
        subject_kind: SubjectKind,
        subject_id: str,
        actor: Actor,
        meta: dict[str, Any],
    ) -> DomainEvent:
        event = DomainEvent(
            id=str(uuid.uuid4()),
            type=event_type.value,
            subject=EventSubject(subject_kind, subject_id),
            timestamp=self.clock(),
            actor_user_id=actor.user_id,
            meta=meta,
        )
        return await self.events.append(event)

    async def _require_episode(self, episode_id: str) -> Episode:
        episode = await self.episodes.get(episode_id)
        if episode is None:
            raise EpisodeNotFound(episode_id)
        return episode

    async def _require_record(
        self, collection: str, record_id: str, episode_id: str | None = None
    ) -> dict[str, Any]:
        """Load a record, scoped to `episode_id` when one is given."""
        record = await self.records.get(collection, record_id)
        if record is None:
            raise RecordNotFound(collection, record_id)
        if episode_id is not None and record.get("episode_id") != episode_id:
            raise RecordNotFound(collection, record_id)
        return record

    async def _reject_foreign_record(
        self, collection: str, record_id: str, episode_id: str, field_name: str
    ) -> None:
        record = await self.records.get(collection, record_id)
        if record is not None and record.get("episode_id") != episode_id:
            raise ValidationFailed([f"{field_name} belongs to another episode"])
