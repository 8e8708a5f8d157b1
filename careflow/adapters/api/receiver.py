"""HTTP API receiver.

Maps JSON payloads onto WorkflowPort and AutomationPort calls and their
results back onto JSON-ready dicts. Framework-free: the HTTP server
adapter handles transport, authentication headers and status mapping
for raised errors.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from careflow.adapters.serialization import (
    episode_view_to_dict,
    event_to_dict,
    process_result_to_dict,
    state_counts_to_dict,
    transition_result_to_dict,
)
from careflow.core.exceptions import ValidationFailed
from careflow.core.models import (
    Actor,
    AppointmentBooking,
    AppointmentConfirmation,
    Channel,
    ChecklistItem,
    ConsentSignature,
    ConsentType,
    DischargeRequest,
    EpisodeState,
    FollowUpKind,
    FollowUpSchedule,
    GuardContext,
    InventoryMovement,
    LeadRequest,
    Material,
    PatientData,
    PlanProposal,
    ProcedureCompletion,
    QuoteAcceptance,
    QuoteItem,
    QuotePresentation,
    Submitter,
    TriagePriority,
    TriageRouting,
    TriageSubmission,
    Trigger,
)
from careflow.core.ports import AccessPolicyPort, AutomationPort, WorkflowPort

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

Handler = Callable[[Actor | None, dict[str, Any], dict[str, str]], Awaitable[dict[str, Any]]]


class PayloadReader:
    """Reads typed fields out of a JSON object, collecting errors."""

    def __init__(self, data: Any, prefix: str = ""):
        self.errors: list[str] = []
        self.prefix = prefix
        if not isinstance(data, dict):
            self.errors.append(f"{prefix or 'body'} must be a JSON object")
            data = {}
        self.data: dict[str, Any] = data

    def _name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def text(self, key: str, required: bool = False) -> str | None:
        value = self.data.get(key)
        if value is None:
            if required:
                self.errors.append(f"{self._name(key)} is required")
            return None
        if not isinstance(value, str):
            self.errors.append(f"{self._name(key)} must be a string")
            return None
        return value

    def number(self, key: str, required: bool = False) -> float | None:
        value = self.data.get(key)
        if value is None:
            if required:
                self.errors.append(f"{self._name(key)} is required")
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.errors.append(f"{self._name(key)} must be a number")
            return None
        return value

    def integer(self, key: str, required: bool = False) -> int | None:
        value = self.number(key, required)
        if value is not None and not float(value).is_integer():
            self.errors.append(f"{self._name(key)} must be an integer")
            return None
        return int(value) if value is not None else None

    def flag(self, key: str) -> bool:
        value = self.data.get(key, False)
        if not isinstance(value, bool):
            self.errors.append(f"{self._name(key)} must be a boolean")
            return False
        return value

    def strings(self, key: str) -> tuple[str, ...]:
        value = self.data.get(key) or []
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            self.errors.append(f"{self._name(key)} must be a list of strings")
            return ()
        return tuple(value)

    def objects(self, key: str) -> list["PayloadReader"]:
        value = self.data.get(key) or []
        if not isinstance(value, list):
            self.errors.append(f"{self._name(key)} must be a list")
            return []
        return [PayloadReader(item, f"{self._name(key)}[{i}].") for i, item in enumerate(value)]

    def mapping(self, key: str) -> dict[str, Any] | None:
        value = self.data.get(key)
        if value is None:
            return None
        if not isinstance(value, dict):
            self.errors.append(f"{self._name(key)} must be an object")
            return None
        return value

    def choice(self, key: str, enum_cls: type[E], default: E | None = None) -> E | None:
        value = self.data.get(key)
        if value is None:
            if default is None:
                self.errors.append(f"{self._name(key)} is required")
            return default
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(str(m.value) for m in enum_cls)
            self.errors.append(f"{self._name(key)} must be one of: {allowed}")
            return default

    def absorb(self, *readers: "PayloadReader") -> None:
        for reader in readers:
            self.errors.extend(reader.errors)

    def check(self) -> None:
        if self.errors:
            raise ValidationFailed(self.errors)


def _limit(query: dict[str, str]) -> int | None:
    raw = query.get("limit")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class ApiReceiver:
    """Routes API requests to the workflow and automation ports."""

    def __init__(
        self, workflow: WorkflowPort, automation: AutomationPort, access: AccessPolicyPort
    ):
        self.workflow = workflow
        self.automation = automation
        self.access = access
        self._post_routes: dict[str, tuple[Handler, int]] = {
            "/api/leads": (self.handle_create_lead, 201),
            "/api/triage/submit": (self.handle_submit_triage, 201),
            "/api/triage/route": (self.handle_route_triage, 201),
            "/api/appointments/book": (self.handle_book_appointment, 201),
            "/api/appointments/confirm": (self.handle_confirm_appointment, 200),
            "/api/consents/sign": (self.handle_sign_consent, 201),
            "/api/plan/propose": (self.handle_propose_plan, 201),
            "/api/quote/present": (self.handle_present_quote, 201),
            "/api/quote/accept": (self.handle_accept_quote, 200),
            "/api/procedures/complete": (self.handle_complete_procedure, 200),
            "/api/followups/schedule": (self.handle_schedule_followup, 201),
            "/api/episodes/discharge": (self.handle_discharge_episode, 200),
            "/api/episodes/advance": (self.handle_advance_episode, 200),
            "/api/automation/process": (self.handle_process_pending, 200),
            "/api/automation/purge": (self.handle_purge_processed, 200),
        }

    async def dispatch(
        self,
        method: str,
        path: str,
        actor: Actor | None,
        data: dict[str, Any] | None = None,
        query: dict[str, str] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """Run the handler for a request.

        Returns:
            (status code, JSON-ready body). Unknown routes give 404.

        Raises:
            CareflowError: Domain errors, for the server to map onto statuses.
        """
        data = data if data is not None else {}
        query = query or {}

        if method == "POST" and path in self._post_routes:
            handler, status = self._post_routes[path]
            return status, await handler(actor, data, query)

        if method == "GET":
            if path == "/api/episodes":
                return 200, await self.handle_list_episodes(actor, data, query)
            if path == "/api/episodes/counts":
                return 200, await self.handle_state_counts(actor, data, query)
            match = re.fullmatch(r"/api/episodes/([^/]+)(/events)?", path)
            if match:
                query = {**query, "episode_id": match.group(1)}
                if match.group(2):
                    return 200, await self.handle_timeline(actor, data, query)
                return 200, await self.handle_get_episode(actor, data, query)

        return 404, {"status": "error", "error": "Not found"}

    # ------------------------------------------------------------------
    # Workflow commands
    # ------------------------------------------------------------------

    async def handle_create_lead(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        patient = None
        patient_data = body.mapping("patient")
        if patient_data is not None:
            p = PayloadReader(patient_data, "patient.")
            patient = PatientData(
                full_name=p.text("full_name", required=True) or "",
                phone=p.text("phone"),
                email=p.text("email"),
                dob=p.text("dob"),
                tags=p.strings("tags"),
            )
            body.absorb(p)
        request = LeadRequest(
            channel=body.choice("channel", Channel, Channel.WEB),
            patient_id=body.text("patient_id"),
            patient=patient,
            tags=body.strings("tags"),
            reason=body.text("reason"),
            auto_qualify=body.flag("auto_qualify"),
        )
        body.check()
        result = await self.workflow.create_lead(actor, request)
        return self._success("create_lead", result)

    async def handle_submit_triage(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = TriageSubmission(
            episode_id=body.text("episode_id", required=True) or "",
            form_schema_key=body.text("form_schema_key", required=True) or "",
            submitted_by=body.choice("submitted_by", Submitter, Submitter.CLINICIAN),
            channel=body.choice("channel", Channel, Channel.WEB),
            answers=body.mapping("answers") or {},
            risk_flags=body.strings("risk_flags"),
            report_url=body.text("report_url"),
        )
        body.check()
        result = await self.workflow.submit_triage(actor, request)
        return self._success("submit_triage", result)

    async def handle_route_triage(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = TriageRouting(
            episode_id=body.text("episode_id", required=True) or "",
            assigned_to_user_id=body.text("assigned_to_user_id", required=True) or "",
            notes=body.text("notes"),
            priority=body.choice("priority", TriagePriority, TriagePriority.NORMAL),
        )
        body.check()
        result = await self.workflow.route_triage(actor, request)
        return self._success("route_triage", result)

    async def handle_book_appointment(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = AppointmentBooking(
            episode_id=body.text("episode_id", required=True) or "",
            patient_id=body.text("patient_id", required=True) or "",
            professional_id=body.text("professional_id", required=True) or "",
            start=body.integer("start", required=True) or 0,
            end=body.integer("end", required=True) or 0,
            room_id=body.text("room_id"),
            kind=body.text("kind") or "consulta",
            notes=body.text("notes"),
        )
        body.check()
        result = await self.workflow.book_appointment(actor, request)
        return self._success("book_appointment", result)

    async def handle_confirm_appointment(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = AppointmentConfirmation(
            appointment_id=body.text("appointment_id", required=True) or "",
            episode_id=body.text("episode_id", required=True) or "",
            notes=body.text("notes"),
        )
        body.check()
        result = await self.workflow.confirm_appointment(actor, request)
        return self._success("confirm_appointment", result)

    async def handle_sign_consent(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        signer = PayloadReader(body.mapping("signer") or {}, "signer.")
        request = ConsentSignature(
            patient_id=body.text("patient_id", required=True) or "",
            type=body.choice("type", ConsentType),
            version=body.text("version", required=True) or "",
            signer_name=signer.text("name", required=True) or "",
            episode_id=body.text("episode_id"),
            signer_doc_id=signer.text("doc_id"),
            file_url=body.text("file_url"),
            source=body.text("source") or "CLINIC",
        )
        body.absorb(signer)
        body.check()
        result = await self.workflow.sign_consent(actor, request)
        return self._success("sign_consent", result)

    async def handle_propose_plan(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        materials = []
        for item in body.objects("materials"):
            materials.append(
                Material(sku=item.text("sku", required=True) or "", qty=item.number("qty", required=True) or 0)
            )
            body.absorb(item)
        sessions_done = body.integer("sessions_done")
        request = PlanProposal(
            episode_id=body.text("episode_id", required=True) or "",
            protocol_key=body.text("protocol_key", required=True) or "",
            sessions_planned=body.integer("sessions_planned", required=True) or 0,
            sessions_done=sessions_done if sessions_done is not None else 0,
            materials=tuple(materials),
            consents_required=body.strings("consents_required"),
            price_total=body.number("price_total"),
        )
        body.check()
        result = await self.workflow.propose_plan(actor, request)
        return self._success("propose_plan", result)

    async def handle_present_quote(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        items = []
        for item in body.objects("items"):
            items.append(
                QuoteItem(
                    label=item.text("label", required=True) or "",
                    qty=item.number("qty", required=True) or 0,
                    price=item.number("price", required=True) or 0,
                )
            )
            body.absorb(item)
        request = QuotePresentation(
            episode_id=body.text("episode_id", required=True) or "",
            items=tuple(items),
            quote_id=body.text("quote_id"),
            notes=body.text("notes"),
        )
        body.check()
        result = await self.workflow.present_quote(actor, request)
        return self._success("present_quote", result)

    async def handle_accept_quote(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = QuoteAcceptance(
            episode_id=body.text("episode_id", required=True) or "",
            quote_id=body.text("quote_id", required=True) or "",
            accepted_by=body.text("accepted_by"),
            signature_url=body.text("signature_url"),
        )
        body.check()
        result = await self.workflow.accept_quote(actor, request)
        return self._success("accept_quote", result)

    async def handle_complete_procedure(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        checklist = []
        for item in body.objects("checklist"):
            checklist.append(
                ChecklistItem(
                    key=item.text("key", required=True) or "",
                    done=item.flag("done"),
                    note=item.text("note"),
                )
            )
            body.absorb(item)
        movements = []
        for item in body.objects("inventory_movements"):
            movements.append(
                InventoryMovement(
                    sku=item.text("sku", required=True) or "",
                    qty=item.number("qty", required=True) or 0,
                    batch=item.text("batch"),
                )
            )
            body.absorb(item)
        request = ProcedureCompletion(
            episode_id=body.text("episode_id", required=True) or "",
            procedure_id=body.text("procedure_id", required=True) or "",
            notes=body.text("notes"),
            checklist=tuple(checklist),
            inventory_movements=tuple(movements),
        )
        body.check()
        result = await self.workflow.complete_procedure(actor, request)
        return self._success("complete_procedure", result)

    async def handle_schedule_followup(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = FollowUpSchedule(
            episode_id=body.text("episode_id", required=True) or "",
            date=body.integer("date", required=True) or 0,
            kind=body.choice("kind", FollowUpKind),
            scores=body.mapping("scores"),
            notes=body.text("notes"),
        )
        body.check()
        result = await self.workflow.schedule_followup(actor, request)
        return self._success("schedule_followup", result)

    async def handle_discharge_episode(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        request = DischargeRequest(
            episode_id=body.text("episode_id", required=True) or "",
            reason=body.text("reason"),
            metrics=body.mapping("metrics"),
            recall_date=body.integer("recall_date"),
        )
        body.check()
        result = await self.workflow.discharge_episode(actor, request)
        return self._success("discharge_episode", result)

    async def handle_advance_episode(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        body = PayloadReader(data)
        episode_id = body.text("episode_id", required=True) or ""
        trigger = body.choice("trigger", Trigger)
        context_data = body.mapping("context")
        meta = body.mapping("meta")
        asserted = None
        if context_data is not None:
            try:
                asserted = GuardContext.from_mapping(context_data)
            except ValueError as e:
                body.errors.append(f"context: {e}")
        body.check()
        assert trigger is not None
        result = await self.workflow.advance_episode(actor, episode_id, trigger, asserted, meta)
        return self._success("advance_episode", transition_result_to_dict(result))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def handle_list_episodes(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        state = None
        if query.get("state"):
            try:
                state = EpisodeState(query["state"])
            except ValueError:
                raise ValidationFailed(f"Unknown state: {query['state']}")
        views = await self.workflow.list_episodes(state=state, limit=_limit(query))
        return self._success("list_episodes", [episode_view_to_dict(v) for v in views])

    async def handle_get_episode(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        view = await self.workflow.get_episode(query["episode_id"])
        return self._success("get_episode", episode_view_to_dict(view))

    async def handle_timeline(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        events = await self.workflow.get_timeline(query["episode_id"], limit=_limit(query))
        return self._success("get_timeline", [event_to_dict(e) for e in events])

    async def handle_state_counts(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        counts = await self.workflow.state_counts()
        return self._success("state_counts", state_counts_to_dict(counts))

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    async def handle_process_pending(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "process_pending")
        body = PayloadReader(data)
        after = body.integer("after_sequence")
        limit = body.integer("limit")
        body.check()
        result = await self.automation.process_pending(
            after_sequence=after or 0, limit=limit or 100
        )
        logger.info(
            "Automation run triggered via API",
            extra={"processed": result.processed, "failed": result.failed},
        )
        return self._success("process_pending", process_result_to_dict(result))

    async def handle_purge_processed(
        self, actor: Actor | None, data: dict[str, Any], query: dict[str, str]
    ) -> dict[str, Any]:
        await self.access.authorize(actor, "purge_processed")
        body = PayloadReader(data)
        days = body.integer("older_than_days")
        body.check()
        if days is not None and days < 1:
            raise ValidationFailed("older_than_days must be at least 1")
        deleted = await self.automation.purge_processed(older_than_days=days or 30)
        return self._success("purge_processed", {"deleted": deleted})

    @staticmethod
    def _success(operation: str, result: Any) -> dict[str, Any]:
        return {"status": "success", "operation": operation, "result": result}
