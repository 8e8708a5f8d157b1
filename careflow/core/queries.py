"""Read-side queries over episodes, patients and the event log."""

import logging
from typing import Any

from . import records
from .exceptions import EpisodeNotFound
from .models import DomainEvent, Episode, EpisodeState, EpisodeView, Patient, StateCount
from .ports import EpisodeStorePort, EventLogPort, RecordStorePort

logger = logging.getLogger(__name__)

DEFAULT_EPISODE_LIMIT = 60
MAX_EPISODE_LIMIT = 200
DEFAULT_TIMELINE_LIMIT = 200
MAX_TIMELINE_LIMIT = 500


def normalize_limit(limit: int | None, default: int, maximum: int) -> int:
    """Missing or non-positive limits use the default; large ones are capped."""
    if limit is None or limit <= 0:
        return default
    return min(limit, maximum)


def patient_from_record(record: dict[str, Any]) -> Patient:
    return Patient(
        id=record["id"],
        full_name=record.get("full_name", ""),
        created_at=records.from_millis(record.get("created_at", 0)),
        phone=record.get("phone"),
        email=record.get("email"),
        dob=record.get("dob"),
        tags=tuple(record.get("tags") or ()),
    )


class EpisodeQueries:
    """Episode listings joined with patient records, plus the timeline."""

    def __init__(
        self,
        episodes: EpisodeStorePort,
        events: EventLogPort,
        records_store: RecordStorePort,
    ):
        self.episodes = episodes
        self.events = events
        self.records = records_store

    async def list_episodes(
        self, state: EpisodeState | None = None, limit: int | None = None
    ) -> list[EpisodeView]:
        limit = normalize_limit(limit, DEFAULT_EPISODE_LIMIT, MAX_EPISODE_LIMIT)
        episodes = await self.episodes.list(state=state, limit=limit)
        return await self._join_patients(episodes)

    async def get_episode(self, episode_id: str) -> EpisodeView:
        episode = await self.episodes.get(episode_id)
        if episode is None:
            raise EpisodeNotFound(episode_id)
        views = await self._join_patients([episode])
        return views[0]

    async def get_episodes(self, episode_ids: list[str]) -> list[EpisodeView]:
        episodes = await self.episodes.get_many(episode_ids)
        return await self._join_patients(episodes)

    async def get_timeline(
        self, episode_id: str, limit: int | None = None
    ) -> list[DomainEvent]:
        if await self.episodes.get(episode_id) is None:
            raise EpisodeNotFound(episode_id)
        limit = normalize_limit(limit, DEFAULT_TIMELINE_LIMIT, MAX_TIMELINE_LIMIT)
        return await self.events.list_for_subject(episode_id, limit=limit)

    async def state_counts(self) -> list[StateCount]:
        counts = await self.episodes.count_by_state()
        return [
            StateCount(state=state, total=counts.get(state, 0))
            for state in EpisodeState.ordered()
        ]

    async def _join_patients(self, episodes: list[Episode]) -> list[EpisodeView]:
        patients: dict[str, Patient] = {}
        for patient_id in dict.fromkeys(e.patient_id for e in episodes):
            record = await self.records.get(records.PATIENTS, patient_id)
            if record is None:
                logger.debug(f"Patient {patient_id} not found for episode listing")
                continue
            patients[patient_id] = patient_from_record(record)
        return [EpisodeView(episode=e, patient=patients.get(e.patient_id)) for e in episodes]
