"""JSON-ready views of core models, shared by the API and CLI adapters."""

from datetime import datetime
from typing import Any

from careflow.core.models import (
    DomainEvent,
    Episode,
    EpisodeView,
    Patient,
    ProcessResult,
    StateCount,
    TransitionResult,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def episode_to_dict(episode: Episode) -> dict[str, Any]:
    return {
        "id": episode.id,
        "patient_id": episode.patient_id,
        "state": episode.state.value,
        "state_label": episode.state.label,
        "started_at": _iso(episode.started_at),
        "updated_at": _iso(episode.updated_at),
        "owner_user_id": episode.owner_user_id,
        "reason": episode.reason,
        "tags": list(episode.tags),
        "risk_flags": list(episode.risk_flags),
        "closed_at": _iso(episode.closed_at),
        "discharge_reason": episode.discharge_reason,
        "recall_at": _iso(episode.recall_at),
    }


def patient_to_dict(patient: Patient) -> dict[str, Any]:
    return {
        "id": patient.id,
        "full_name": patient.full_name,
        "phone": patient.phone,
        "email": patient.email,
        "dob": patient.dob,
        "tags": list(patient.tags),
        "created_at": _iso(patient.created_at),
    }


def episode_view_to_dict(view: EpisodeView) -> dict[str, Any]:
    data = episode_to_dict(view.episode)
    data["patient"] = patient_to_dict(view.patient) if view.patient else None
    return data


def event_to_dict(event: DomainEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "sequence": event.sequence,
        "type": event.type,
        "subject": {"kind": event.subject.kind.value, "id": event.subject.id},
        "actor_user_id": event.actor_user_id,
        "timestamp": _iso(event.timestamp),
        "meta": dict(event.meta),
    }


def transition_result_to_dict(result: TransitionResult) -> dict[str, Any]:
    return {
        "episode_id": result.episode_id,
        "trigger": result.trigger.value,
        "outcome": result.outcome.value,
        "changed": result.changed,
        "previous_state": result.previous_state.value,
        "next_state": result.next_state.value,
        "event_id": result.event.id if result.event else None,
        "reason": result.reason,
    }


def process_result_to_dict(result: ProcessResult) -> dict[str, Any]:
    return {
        "events_seen": result.events_seen,
        "processed": result.processed,
        "duplicates": result.duplicates,
        "unhandled": result.unhandled,
        "failed": result.failed,
        "last_sequence": result.last_sequence,
    }


def state_counts_to_dict(counts: list[StateCount]) -> list[dict[str, Any]]:
    return [
        {"state": c.state.value, "label": c.state.label, "total": c.total} for c in counts
    ]
